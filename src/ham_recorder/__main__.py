"""Command line entry point: ``python -m ham_recorder``."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Sequence

import uvicorn

from .app import create_app
from .version import APP_VERSION


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ham-recorder",
        description="Scheduled rig tuning and audio recording service",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path(os.getenv("HAM_RECORDER_DATA_DIR", "data")),
        help="Directory holding settings, schedules and logs (default: %(default)s)",
    )
    parser.add_argument(
        "--downloads-dir",
        type=Path,
        default=os.getenv("HAM_RECORDER_DOWNLOADS_DIR"),
        help="Where finished recordings are saved (default: <data-dir>/recordings)",
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8780)
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = create_app(args.data_dir, downloads_dir=args.downloads_dir)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
