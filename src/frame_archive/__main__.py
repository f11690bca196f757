"""Command line entry point serving the frame archive API."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .config import load_config


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the archive server."""

    parser = argparse.ArgumentParser(
        prog="python -m frame_archive",
        description="Persist camera frames and consolidate them into videos",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a JSON configuration file.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on.")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=("debug", "info", "warning", "error"),
        help="Logging verbosity.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(args.config)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    import uvicorn

    from .app import create_app

    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
