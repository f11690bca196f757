from __future__ import annotations

from pathlib import Path

import pytest

from frame_archive import __main__ as cli


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])
    assert args.config is None
    assert args.port == 8080
    assert args.log_level == "info"


def test_main_rejects_invalid_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_file = tmp_path / "archive.json"
    config_file.write_text('{"frame_rate": 0}', encoding="utf-8")
    assert cli.main(["--config", str(config_file)]) == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_main_serves_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: dict[str, object] = {}

    def fake_run(app, **kwargs) -> None:
        calls["app"] = app
        calls.update(kwargs)

    uvicorn = pytest.importorskip("uvicorn")
    monkeypatch.setattr(uvicorn, "run", fake_run)
    monkeypatch.setenv("FRAME_ARCHIVE_OUTPUT_DIR", str(tmp_path / "frames"))

    assert cli.main(["--port", "9000", "--log-level", "warning"]) == 0
    assert calls["port"] == 9000
    assert calls["log_level"] == "warning"
    assert calls["app"].state.archiver.config.output_dir == tmp_path / "frames"
