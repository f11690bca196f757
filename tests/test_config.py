from pathlib import Path
import json

import pytest

from frame_archive.config import (
    OUTPUT_DIR_ENV,
    ArchiveConfig,
    FrameDisposition,
    load_config,
)


def test_defaults_match_documented_values():
    config = ArchiveConfig()
    assert config.output_dir == Path("data/frames")
    assert config.max_frames_per_batch == 30
    assert config.queue_capacity == 100
    assert config.consolidation_interval == 10.0
    assert config.retention_window == 86400.0
    assert config.retention_sweep_interval == 300.0
    assert config.frame_rate == 30
    assert config.disposition is FrameDisposition.DELETE
    assert config.videos_dir == Path("data/frames") / "videos"
    assert config.consolidation_enabled is True
    assert config.event_log_path is None
    assert config.event_log_entries == 500


def test_disposition_follows_flags():
    keep = ArchiveConfig(delete_after_consolidation=False)
    renumber = ArchiveConfig(delete_after_consolidation=False, renumber_remaining=True)
    assert keep.disposition is FrameDisposition.KEEP
    assert renumber.disposition is FrameDisposition.RENUMBER


def test_delete_and_renumber_are_mutually_exclusive():
    with pytest.raises(ValueError, match="mutually exclusive"):
        ArchiveConfig(delete_after_consolidation=True, renumber_remaining=True)


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_frames_per_batch": 0},
        {"queue_capacity": -1},
        {"min_batch_frames": 40, "max_frames_per_batch": 30},
        {"frame_rate": 1000},
        {"consolidation_interval": 0},
        {"retention_window": float("nan")},
        {"jpeg_quality": 101},
        {"chunk_policy": "rolling"},
        {"encoder_backend": "gstreamer"},
        {"max_frame_storage_bytes": 0},
        {"max_frames_per_batch": True},
        {"event_log_entries": 0},
        {"event_log_path": "  "},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValueError):
        ArchiveConfig(**overrides)


def test_to_dict_round_trips_through_from_dict(tmp_path: Path):
    config = ArchiveConfig(output_dir=tmp_path, chunk_policy="SINGLE", max_frame_storage_bytes=2048)
    payload = config.to_dict()
    assert payload["output_dir"] == str(tmp_path)
    assert payload["chunk_policy"] == "single"
    assert payload["disposition"] == "delete"
    assert ArchiveConfig.from_dict(payload) == config


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ValueError, match="Unknown configuration keys"):
        ArchiveConfig.from_dict({"max_disk_usage": 10})


def test_load_config_reads_file_and_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    config_file = tmp_path / "archive.json"
    config_file.write_text(json.dumps({"max_frames_per_batch": 12, "frame_rate": 15}), encoding="utf-8")
    monkeypatch.setenv(OUTPUT_DIR_ENV, str(tmp_path / "frames"))
    config = load_config(config_file)
    assert config.max_frames_per_batch == 12
    assert config.frame_rate == 15
    assert config.output_dir == tmp_path / "frames"


def test_load_config_missing_file_yields_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(OUTPUT_DIR_ENV, raising=False)
    assert load_config(tmp_path / "absent.json") == ArchiveConfig()


def test_load_config_rejects_invalid_json(tmp_path: Path):
    config_file = tmp_path / "broken.json"
    config_file.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(config_file)


def test_event_log_path_is_normalised_and_serialised(tmp_path: Path):
    config = ArchiveConfig(event_log_path=str(tmp_path / "events.jsonl"), consolidation_enabled=0)
    assert config.event_log_path == tmp_path / "events.jsonl"
    assert config.consolidation_enabled is False
    payload = config.to_dict()
    assert payload["event_log_path"] == str(tmp_path / "events.jsonl")
    assert ArchiveConfig.from_dict(json.loads(json.dumps(payload))) == config
