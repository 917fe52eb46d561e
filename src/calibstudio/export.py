"""
Export formats.

- Calibration record (TOML): one [cam_<i>] table per camera, values rounded
  to fixed precision for downstream consumers.
- Diagnostic record (JSON): everything needed to rebuild the bundle
  adjustment problem, plus per-frame intrinsic poses and per-point errors.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import rtoml

from .calibration.board import board_corner_positions
from .errors import MalformedInputError
from .types import (
    BoardConfig,
    DetectionStore,
    ExtrinsicPose,
    IntrinsicParameters,
    TriangulatedPoint,
)

logger = logging.getLogger(__name__)

MATRIX_DECIMALS = 6
DISTORTION_DECIMALS = 10
ROTATION_DECIMALS = 6
TRANSLATION_DECIMALS = 6


@dataclass(frozen=True, slots=True)
class CameraCalibration:
    """One camera as read back from a calibration record."""

    name: str
    size: tuple[int, int]
    matrix: np.ndarray  # 3x3
    distortion: np.ndarray  # (5,)
    rotation: np.ndarray  # (3,) axis-angle
    translation: np.ndarray  # (3,)


def _rounded(values, decimals: int) -> list:
    return np.round(np.asarray(values, dtype=np.float64), decimals).tolist()


def _json_float(value) -> float | None:
    value = float(value)
    return None if math.isnan(value) else value


# ============================================================================
# Calibration Record (TOML)
# ============================================================================


def calibration_to_dict(
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
) -> dict:
    """
    Calibration tables keyed cam_<i>, i being the camera's position in
    camera_names. Cameras without both intrinsics and a pose are skipped.

    Raises:
        MalformedInputError: If no camera is fully calibrated
    """
    data = {}
    for i, name in enumerate(camera_names):
        intr = intrinsics.get(name)
        extr = extrinsics.get(name)
        if intr is None or extr is None:
            continue

        data[f"cam_{i}"] = {
            "name": name,
            "size": [int(intr.image_size[0]), int(intr.image_size[1])],
            "matrix": _rounded(intr.matrix, MATRIX_DECIMALS),
            "distortions": _rounded(intr.distortion[:5], DISTORTION_DECIMALS),
            "rotation": _rounded(extr.rvec, ROTATION_DECIMALS),
            "translation": _rounded(extr.translation, TRANSLATION_DECIMALS),
        }

    if not data:
        raise MalformedInputError(
            "No camera has both intrinsics and extrinsics; nothing to export"
        )
    return data


def save_calibration_toml(
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
    path: Path,
    reference: str | None = None,
) -> None:
    """
    Save the calibration record to a TOML file.

    Args:
        camera_names: Cameras in export order
        intrinsics: Intrinsics per camera
        extrinsics: Poses per camera
        path: Output path
        reference: Reference camera noted in the header (default: first)
    """
    data = calibration_to_dict(camera_names, intrinsics, extrinsics)
    reference = reference or camera_names[0]

    header = (
        "# Multi-camera calibration\n"
        f"# Generated: {datetime.now(timezone.utc).isoformat()}\n"
        f"# Reference camera: {reference}\n\n"
    )

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        f.write(header)
        f.write(rtoml.dumps(data))

    logger.info("Saved calibration for %d cameras to %s", len(data), path)


def load_calibration_toml(path: Path) -> dict[str, CameraCalibration]:
    """
    Load a calibration record.

    Returns:
        camera name -> CameraCalibration, in cam_<i> order
    """
    data = rtoml.load(Path(path))

    cameras = {}
    for key in sorted(
        (k for k in data if k.startswith("cam_")), key=lambda k: int(k.split("_")[1])
    ):
        table = data[key]
        try:
            cameras[table["name"]] = CameraCalibration(
                name=table["name"],
                size=(int(table["size"][0]), int(table["size"][1])),
                matrix=np.asarray(table["matrix"], dtype=np.float64),
                distortion=np.asarray(table["distortions"], dtype=np.float64),
                rotation=np.asarray(table["rotation"], dtype=np.float64),
                translation=np.asarray(table["translation"], dtype=np.float64),
            )
        except KeyError as e:
            raise MalformedInputError(f"[{key}] missing field {e}") from e

    return cameras


# ============================================================================
# Diagnostic Record (JSON)
# ============================================================================


def build_diagnostic_record(
    board: BoardConfig,
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
    store: DetectionStore,
    points: list[TriangulatedPoint],
    reference: str | None = None,
    total_frames: int | None = None,
) -> dict:
    """
    Build the diagnostic record.

    Args:
        board: Board used for calibration
        camera_names: Cameras in order
        intrinsics: Intrinsics per camera
        extrinsics: Poses per camera
        store: All detections
        points: Triangulated points
        reference: Reference camera (default: first)
        total_frames: Video length, if known (default: frames in store)

    Returns:
        JSON-compatible dict
    """
    cameras = {}
    for name in camera_names:
        intr = intrinsics.get(name)
        extr = extrinsics.get(name)
        if intr is None or extr is None:
            continue

        cameras[name] = {
            "image_size": [int(intr.image_size[0]), int(intr.image_size[1])],
            "K": intr.matrix.tolist(),
            "dist_coeffs": intr.distortion.tolist(),
            "intrinsics_rms_error": float(intr.rms_error),
            "R": extr.rotation.tolist(),
            "rvec": extr.rvec.tolist(),
            "tvec": extr.translation.tolist(),
            "extrinsics_rms_error": float(extr.error),
            "intrinsic_poses": {
                "frames": list(intr.frame_indices),
                "rvecs": [r.tolist() for r in intr.rvecs],
                "tvecs": [t.tolist() for t in intr.tvecs],
                "per_frame_errors": [_json_float(e) for e in intr.per_frame_errors],
                "all_frames": list(intr.all_frame_indices),
                "all_per_frame_errors": [
                    _json_float(e) for e in intr.all_per_frame_errors
                ],
            },
        }

    observations = []
    for frame in sorted(store.keys()):
        views = {
            name: {
                "corner_ids": store[frame][name].corner_ids.tolist(),
                "corners_2d": store[frame][name].corners.tolist(),
                "num_corners": store[frame][name].count,
            }
            for name in camera_names
            if name in store[frame]
        }
        if views:
            observations.append({"frame": int(frame), "views": views})

    triangulated_points = [
        {
            "frame": int(p.frame),
            "corner_id": int(p.corner_id),
            "point_3d": np.asarray(p.xyz, dtype=np.float64).tolist(),
            "mean_reproj_error": _json_float(p.mean_error),
            "per_camera_errors": {
                cam: {
                    "error": float(r.error),
                    "detected": list(r.detected),
                    "projected": list(r.projected),
                }
                for cam, r in p.residuals.items()
            },
        }
        for p in points
    ]

    corners_3d = {
        str(corner_id): position.tolist()
        for corner_id, position in enumerate(board_corner_positions(board))
    }

    return {
        "metadata": {
            "generated": datetime.now(timezone.utc).isoformat(),
            "generator": "calibstudio",
            "reference_camera": reference or camera_names[0],
            "num_cameras": len(camera_names),
            "num_frames": total_frames if total_frames is not None else len(store),
            "num_detection_frames": len(observations),
            "num_triangulated_points": len(triangulated_points),
        },
        "board": {
            "type": "charuco",
            "board_x": board.columns,
            "board_y": board.rows,
            "square_length": board.square_length,
            "marker_length": board.marker_length,
            "dictionary": board.dictionary,
            "corners_3d": corners_3d,
        },
        "cameras": cameras,
        "observations": observations,
        "triangulated_points": triangulated_points,
    }


def save_diagnostic_record(record: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(record, f, indent=2)
    logger.info(
        "Saved diagnostic record: %d frames, %d points to %s",
        len(record["observations"]),
        len(record["triangulated_points"]),
        path,
    )


def load_diagnostic_record(path: Path) -> dict:
    with open(path) as f:
        return json.load(f)
