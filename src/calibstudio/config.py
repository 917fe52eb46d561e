"""
Configuration loading/saving.

Pure functions operating on dataclasses.
TOML project configuration: board, stage thresholds, bundle adjustment
settings and per-camera image sizes.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path

import rtoml

from .bundle_adjustment import BundleAdjustmentConfig
from .errors import MalformedInputError
from .types import BoardConfig, CalibrationSettings


@dataclass(frozen=True)
class ProjectConfig:
    """Complete project configuration."""

    board: BoardConfig
    settings: CalibrationSettings = field(default_factory=CalibrationSettings)
    bundle_adjustment: BundleAdjustmentConfig = field(
        default_factory=BundleAdjustmentConfig
    )
    cameras: dict[str, tuple[int, int]] = field(default_factory=dict)  # name -> size

    @property
    def camera_names(self) -> list[str]:
        return list(self.cameras.keys())


# ============================================================================
# TOML Project Configuration
# ============================================================================


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def load_project_config(path: Path) -> ProjectConfig:
    """
    Load project configuration from TOML file.

    Missing keys fall back to the dataclass defaults.

    Args:
        path: Path to config.toml file

    Returns:
        ProjectConfig dataclass

    Raises:
        MalformedInputError: If the [board] table lacks its dimensions
    """
    data = rtoml.load(Path(path))

    board_data = data.get("board", {})
    try:
        board = BoardConfig(
            columns=int(board_data["columns"]),
            rows=int(board_data["rows"]),
            square_length=float(board_data["square_length"]),
            marker_length=float(board_data["marker_length"]),
            dictionary=board_data.get("dictionary", "DICT_4X4_50"),
            legacy_pattern=board_data.get("legacy_pattern", False),
        )
    except KeyError as e:
        raise MalformedInputError(f"[board] missing {e}") from e

    settings = CalibrationSettings(**_known(CalibrationSettings, data.get("calibration", {})))
    bundle_adjustment = BundleAdjustmentConfig.from_dict(data.get("bundle_adjustment", {}))

    cameras = {}
    for name, cam_data in data.get("cameras", {}).items():
        size = cam_data.get("size")
        if size is None or len(size) != 2:
            raise MalformedInputError(f"[cameras.{name}] requires size = [width, height]")
        cameras[name] = (int(size[0]), int(size[1]))

    return ProjectConfig(
        board=board,
        settings=settings,
        bundle_adjustment=bundle_adjustment,
        cameras=cameras,
    )


def save_project_config(config: ProjectConfig, path: Path) -> None:
    """
    Save project configuration to TOML file.

    Args:
        config: ProjectConfig dataclass
        path: Path to save config.toml
    """
    calibration = {
        f.name: getattr(config.settings, f.name)
        for f in fields(CalibrationSettings)
        if getattr(config.settings, f.name) is not None
    }

    data = {
        "board": {
            "columns": config.board.columns,
            "rows": config.board.rows,
            "square_length": config.board.square_length,
            "marker_length": config.board.marker_length,
            "dictionary": config.board.dictionary,
            "legacy_pattern": config.board.legacy_pattern,
        },
        "calibration": calibration,
        "bundle_adjustment": config.bundle_adjustment.to_dict(),
        "cameras": {
            name: {"size": list(size)} for name, size in config.cameras.items()
        },
    }

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def create_default_project_config(
    cameras: dict[str, tuple[int, int]] | None = None,
) -> ProjectConfig:
    """
    Create a default project configuration.

    Args:
        cameras: Optional dict of camera name -> (width, height)

    Returns:
        ProjectConfig with sensible defaults
    """
    board = BoardConfig(
        columns=5,
        rows=4,
        square_length=0.05,  # 5cm squares
        marker_length=0.0375,
    )

    return ProjectConfig(
        board=board,
        cameras=cameras or {},
    )
