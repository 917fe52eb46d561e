"""
Core data structures for calibstudio.

All types are frozen dataclasses for immutability.
Logic is in separate pure functions - these are data containers only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

import cv2
import numpy as np


# ============================================================================
# Board Configuration
# ============================================================================


@dataclass(frozen=True)  # No slots - need properties
class BoardConfig:
    """
    Configuration of a planar ChArUco calibration target.

    columns/rows count squares, so the board has
    (columns - 1) * (rows - 1) interior corners.
    """

    columns: int
    rows: int
    square_length: float
    marker_length: float
    dictionary: str = "DICT_4X4_50"
    legacy_pattern: bool = False

    @property
    def corners_x(self) -> int:
        """Interior corners per row."""
        return self.columns - 1

    @property
    def corners_y(self) -> int:
        """Interior corners per column."""
        return self.rows - 1

    @property
    def corner_count(self) -> int:
        return self.corners_x * self.corners_y


# ============================================================================
# Detections
# ============================================================================


@dataclass(frozen=True, slots=True)
class Detection:
    """
    Corners detected for one camera in one frame.

    Produced by the external detector and never mutated.
    """

    corner_ids: np.ndarray  # (n,) int corner identifiers, unique
    corners: np.ndarray  # (n, 2) pixel coordinates (x, y)

    @property
    def count(self) -> int:
        return int(self.corner_ids.shape[0])


# frame index -> camera name -> Detection
DetectionStore = dict[int, dict[str, Detection]]


@dataclass(frozen=True, slots=True)
class CalibrationFrame:
    """A frame usable for intrinsic calibration of one camera."""

    frame: int
    object_points: np.ndarray  # (n, 3) board coordinates
    image_points: np.ndarray  # (n, 2) pixel coordinates


# ============================================================================
# Calibration Data
# ============================================================================


@dataclass(frozen=True, slots=True)
class BoardPose:
    """Board-to-camera transform for a single frame."""

    rotation: np.ndarray  # 3x3
    rvec: np.ndarray  # (3,)
    tvec: np.ndarray  # (3,)


@dataclass(frozen=True, slots=True)
class IntrinsicParameters:
    """
    Intrinsic calibration of a single camera.

    The fit-* fields describe the frames that went into the fit. The all-*
    fields cover every usable frame (excluded ones too) so excluded frames can
    still be compared against the fitted model.
    """

    camera_name: str
    image_size: tuple[int, int]  # (width, height)
    matrix: np.ndarray  # 3x3 camera matrix
    distortion: np.ndarray  # (5,) k1, k2, p1, p2, k3
    rms_error: float
    frames_used: int
    frame_indices: tuple[int, ...]  # video frames in the fit
    calibration_indices: tuple[int, ...]  # positions in the usable-frame list
    rvecs: tuple[np.ndarray, ...]
    tvecs: tuple[np.ndarray, ...]
    per_frame_errors: tuple[float, ...]
    all_frame_indices: tuple[int, ...] = ()
    all_rvecs: tuple[np.ndarray | None, ...] = ()
    all_tvecs: tuple[np.ndarray | None, ...] = ()
    all_per_frame_errors: tuple[float, ...] = ()

    @property
    def fx(self) -> float:
        return float(self.matrix[0, 0])

    @property
    def fy(self) -> float:
        return float(self.matrix[1, 1])

    @property
    def cx(self) -> float:
        return float(self.matrix[0, 2])

    @property
    def cy(self) -> float:
        return float(self.matrix[1, 2])


@dataclass(frozen=True, slots=True)
class CovisibleFrame:
    """A frame in which two cameras saw enough common corners."""

    frame: int
    common_ids: tuple[int, ...]


# camera -> other camera -> covisible frames, complete and symmetric
CovisibilityGraph = dict[str, dict[str, list[CovisibleFrame]]]


@dataclass(frozen=True, slots=True)
class RelativePose:
    """
    Transform from parent camera coordinates to child camera coordinates.

    x_child = rotation @ x_parent + translation
    """

    parent: str
    child: str
    rotation: np.ndarray  # 3x3
    rvec: np.ndarray  # (3,)
    translation: np.ndarray  # (3,)
    error: float  # std of per-frame translations
    frames_used: int


@dataclass(frozen=True, slots=True)
class ExtrinsicPose:
    """
    Pose of a camera relative to the reference camera.

    x_camera = rotation @ x_reference + translation
    """

    camera_name: str
    rotation: np.ndarray  # 3x3 rotation matrix
    rvec: np.ndarray  # (3,) axis-angle
    translation: np.ndarray  # (3,) translation vector
    error: float = 0.0


# ============================================================================
# 3D Points
# ============================================================================


@dataclass(frozen=True, slots=True)
class ReprojectionResidual:
    """Observed vs. reprojected position of a point in one camera."""

    error: float
    detected: tuple[float, float]
    projected: tuple[float, float]


@dataclass(frozen=True, slots=True)
class TriangulatedPoint:
    """A board corner reconstructed from two or more cameras."""

    frame: int
    corner_id: int
    xyz: np.ndarray  # (3,)
    cameras: tuple[str, ...]
    residuals: dict[str, ReprojectionResidual] = field(default_factory=dict)

    @property
    def mean_error(self) -> float:
        if not self.residuals:
            return float("nan")
        return float(np.mean([r.error for r in self.residuals.values()]))


TriangulationFailureReason = Literal[
    "point_at_infinity",
    "ill_conditioned",
    "behind_camera",
    "non_finite",
]


@dataclass(frozen=True, slots=True)
class TriangulationFailure:
    """A (frame, corner) whose triangulation was rejected."""

    frame: int
    corner_id: int
    cameras: tuple[str, ...]
    reason: TriangulationFailureReason


# ============================================================================
# Pipeline Settings
# ============================================================================


@dataclass(frozen=True, slots=True)
class CalibrationSettings:
    """Thresholds shared by the calibration stages."""

    min_corners: int = 6  # per frame, intrinsic calibration
    min_covisible: int = 6  # common corners for a covisibility edge
    min_triangulation_corners: int = 4  # per view, triangulation
    pose_min_corners: int = 6  # single-frame pose estimation
    min_edge_frames: int = 1  # valid frames for a relative pose
    reference_camera: str | None = None  # default: first camera


# ============================================================================
# Pure functions for computed properties
# ============================================================================


def identity_pose(camera_name: str) -> ExtrinsicPose:
    """Pose of the reference camera."""
    return ExtrinsicPose(
        camera_name=camera_name,
        rotation=np.eye(3, dtype=np.float64),
        rvec=np.zeros(3, dtype=np.float64),
        translation=np.zeros(3, dtype=np.float64),
        error=0.0,
    )


def rotation_to_rvec(rotation: np.ndarray) -> np.ndarray:
    """3x3 rotation matrix -> (3,) axis-angle vector."""
    return cv2.Rodrigues(np.asarray(rotation, dtype=np.float64))[0][:, 0]


def rvec_to_rotation(rvec: np.ndarray) -> np.ndarray:
    """(3,) axis-angle vector -> 3x3 rotation matrix."""
    return cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))[0]


def compute_transformation_matrix(pose: ExtrinsicPose) -> np.ndarray:
    """
    Compute 4x4 homogeneous transformation matrix from an extrinsic pose.
    """
    t = np.eye(4, dtype=np.float64)
    t[0:3, 0:3] = pose.rotation
    t[0:3, 3] = pose.translation
    return t


def compute_projection_matrix(
    intrinsics: IntrinsicParameters,
    pose: ExtrinsicPose,
) -> np.ndarray:
    """
    Compute 3x4 pixel projection matrix (distortion ignored).
    """
    t = compute_transformation_matrix(pose)
    return intrinsics.matrix @ t[0:3, :]


def camera_center(pose: ExtrinsicPose) -> np.ndarray:
    """Camera center in reference coordinates."""
    return -pose.rotation.T @ pose.translation
