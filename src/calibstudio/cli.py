#!/usr/bin/env python3
"""
calibstudio CLI - multi-camera ChArUco calibration.

Usage:
    calibstudio calibrate --config project.toml --detections det.json --output-dir out/
    calibstudio init-config project.toml
    calibstudio --help
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

logger = logging.getLogger("calibstudio")


def _calibrate(args: argparse.Namespace) -> int:
    from .config import load_project_config
    from .detections import load_detections
    from .errors import CalibrationError
    from .export import (
        build_diagnostic_record,
        save_calibration_toml,
        save_diagnostic_record,
    )
    from .pipeline import run_all, state_from_config

    try:
        config = load_project_config(args.config)
        detections = load_detections(args.detections)
        state = state_from_config(config, detections)
        state = run_all(
            state,
            bundle_adjustment=not args.no_bundle_adjustment,
            config=config.bundle_adjustment,
        )
    except CalibrationError as e:
        logger.error("%s", e)
        return 1

    for diagnostic in state.all_diagnostics:
        logger.warning("%s", diagnostic)

    if not state.extrinsics:
        logger.error("No camera could be posed; nothing written")
        return 1

    names = list(state.camera_names)
    try:
        save_calibration_toml(
            names,
            state.intrinsics,
            state.extrinsics,
            args.output_dir / "calibration.toml",
            reference=state.reference,
        )
        save_diagnostic_record(
            build_diagnostic_record(
                state.board,
                names,
                state.intrinsics,
                state.extrinsics,
                state.detections,
                list(state.points),
                reference=state.reference,
            ),
            args.output_dir / "calibration_diagnostics.json",
        )
    except CalibrationError as e:
        logger.error("%s", e)
        return 1

    posed = len(state.extrinsics)
    print(f"Calibrated {posed} of {len(names)} cameras -> {args.output_dir}")
    return 0 if posed == len(names) else 2


def _init_config(args: argparse.Namespace) -> int:
    from .config import create_default_project_config, save_project_config

    if args.path.exists() and not args.force:
        print(f"{args.path} already exists (use --force to overwrite)")
        return 1

    save_project_config(create_default_project_config(), args.path)
    print(f"Wrote {args.path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="calibstudio",
        description="Multi-camera ChArUco calibration",
    )
    sub = parser.add_subparsers(dest="command")

    calibrate = sub.add_parser("calibrate", help="Run all calibration stages")
    calibrate.add_argument("--config", type=Path, required=True, help="Project TOML")
    calibrate.add_argument(
        "--detections", type=Path, required=True, help="Detector JSON output"
    )
    calibrate.add_argument(
        "--output-dir", type=Path, default=Path("."), help="Where to write results"
    )
    calibrate.add_argument(
        "--no-bundle-adjustment",
        action="store_true",
        help="Stop after triangulation",
    )
    calibrate.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    calibrate.set_defaults(func=_calibrate)

    init = sub.add_parser("init-config", help="Write a default project TOML")
    init.add_argument("path", type=Path)
    init.add_argument("--force", action="store_true", help="Overwrite existing file")
    init.set_defaults(func=_init_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
