"""
Intrinsic camera calibration.

Pure functions - no threading, no state. Caller manages exclusions.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable

import cv2
import numpy as np

from ..types import (
    BoardConfig,
    BoardPose,
    CalibrationFrame,
    Detection,
    IntrinsicParameters,
)
from .board import corner_object_points

logger = logging.getLogger(__name__)

MIN_CALIBRATION_FRAMES = 3
ASSUMED_FOV_DEGREES = 60.0


# ============================================================================
# Frame Selection
# ============================================================================


def usable_calibration_frames(
    detections: Iterable[tuple[int, Detection]],
    board: BoardConfig,
    min_corners: int,
) -> list[CalibrationFrame]:
    """
    Frames with at least min_corners detected corners, in input order.

    The position of a frame in the returned list is its calibration index,
    which is what intrinsic exclusions refer to.

    Args:
        detections: (frame, Detection) pairs for one camera
        board: BoardConfig for object point lookup
        min_corners: Minimum corners required per frame

    Returns:
        List of CalibrationFrame
    """
    frames = []
    for frame, detection in detections:
        if detection is None or detection.count < min_corners:
            continue
        frames.append(
            CalibrationFrame(
                frame=frame,
                object_points=corner_object_points(board, detection.corner_ids),
                image_points=detection.corners.astype(np.float64),
            )
        )
    return frames


def seed_camera_matrix(image_size: tuple[int, int]) -> np.ndarray:
    """
    Initial camera matrix: principal point at the image center and a focal
    length for a ~60 degree horizontal field of view.
    """
    width, height = image_size
    focal = width / (2.0 * math.tan(math.radians(ASSUMED_FOV_DEGREES / 2.0)))
    return np.array(
        [
            [focal, 0.0, width / 2.0],
            [0.0, focal, height / 2.0],
            [0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


# ============================================================================
# Single Frame Pose
# ============================================================================


def estimate_board_pose(
    object_points: np.ndarray,
    image_points: np.ndarray,
    matrix: np.ndarray,
    distortion: np.ndarray,
    min_corners: int = 6,
) -> BoardPose | None:
    """
    Estimate the board-to-camera pose for a single frame with solvePnP.

    Returns:
        BoardPose, or None with too few corners or if solvePnP fails
    """
    if len(object_points) < min_corners:
        return None

    try:
        success, rvec, tvec = cv2.solvePnP(
            np.ascontiguousarray(object_points, dtype=np.float64),
            np.ascontiguousarray(image_points, dtype=np.float64),
            matrix,
            distortion,
        )
    except cv2.error as e:
        logger.debug("solvePnP raised: %s", e)
        return None

    if not success:
        return None

    rvec = rvec[:, 0].astype(np.float64)
    tvec = tvec[:, 0].astype(np.float64)
    if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
        return None

    return BoardPose(rotation=cv2.Rodrigues(rvec)[0], rvec=rvec, tvec=tvec)


def compute_reprojection_error(
    object_points: np.ndarray,
    image_points: np.ndarray,
    rvec: np.ndarray,
    tvec: np.ndarray,
    matrix: np.ndarray,
    distortion: np.ndarray,
) -> float:
    """
    RMS pixel distance between observed and reprojected corners.
    """
    projected, _ = cv2.projectPoints(
        np.ascontiguousarray(object_points, dtype=np.float64),
        rvec,
        tvec,
        matrix,
        distortion,
    )
    diff = projected[:, 0, :] - image_points
    return float(np.sqrt(np.mean(np.sum(diff**2, axis=1))))


# ============================================================================
# Calibration
# ============================================================================


def calibrate_intrinsics(
    camera_name: str,
    detections: Iterable[tuple[int, Detection]],
    image_size: tuple[int, int],
    board: BoardConfig,
    min_corners: int = 6,
    exclusions: Iterable[int] = (),
    pose_min_corners: int = 6,
) -> IntrinsicParameters | None:
    """
    Calibrate camera intrinsics from ChArUco detections.

    Exclusions are positions in the usable-frame list (see
    usable_calibration_frames), not video frame numbers.

    Args:
        camera_name: Camera identifier
        detections: (frame, Detection) pairs for this camera, in frame order
        image_size: (width, height) of the frames
        board: BoardConfig
        min_corners: Minimum corners for a frame to be usable
        exclusions: Calibration indices to leave out of the fit
        pose_min_corners: Minimum corners for per-frame pose estimation

    Returns:
        IntrinsicParameters, or None if fewer than 3 frames remain or the
        OpenCV calibration fails
    """
    all_frames = usable_calibration_frames(detections, board, min_corners)
    excluded = set(exclusions)

    calibration_indices = [i for i in range(len(all_frames)) if i not in excluded]
    fit_frames = [all_frames[i] for i in calibration_indices]

    logger.debug(
        "%s: %d usable frames, %d after exclusions",
        camera_name,
        len(all_frames),
        len(fit_frames),
    )

    if len(fit_frames) < MIN_CALIBRATION_FRAMES:
        logger.warning(
            "%s: insufficient frames for calibration: %d (need at least %d)",
            camera_name,
            len(fit_frames),
            MIN_CALIBRATION_FRAMES,
        )
        return None

    object_points = [f.object_points.astype(np.float32) for f in fit_frames]
    image_points = [f.image_points.astype(np.float32) for f in fit_frames]

    seed_matrix = seed_camera_matrix(image_size)
    seed_distortion = np.zeros((5, 1), dtype=np.float64)

    try:
        (
            rms,
            matrix,
            distortion,
            rvecs,
            tvecs,
            _,
            _,
            per_view_errors,
        ) = cv2.calibrateCameraExtended(
            object_points,
            image_points,
            tuple(int(v) for v in image_size),
            seed_matrix.copy(),
            seed_distortion.copy(),
            flags=cv2.CALIB_USE_INTRINSIC_GUESS,
        )
    except cv2.error as e:
        logger.warning("%s: calibration failed: %s", camera_name, e)
        return None

    fx, fy = float(matrix[0, 0]), float(matrix[1, 1])
    cx, cy = float(matrix[0, 2]), float(matrix[1, 2])
    matrix = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
    distortion = np.asarray(distortion, dtype=np.float64).reshape(-1)[:5]

    # Per-frame pose and error for every usable frame, excluded ones included
    all_rvecs = []
    all_tvecs = []
    all_errors = []
    for frame in all_frames:
        pose = estimate_board_pose(
            frame.object_points,
            frame.image_points,
            matrix,
            distortion,
            min_corners=pose_min_corners,
        )
        if pose is None:
            all_rvecs.append(None)
            all_tvecs.append(None)
            all_errors.append(float("nan"))
            continue
        all_rvecs.append(pose.rvec)
        all_tvecs.append(pose.tvec)
        all_errors.append(
            compute_reprojection_error(
                frame.object_points,
                frame.image_points,
                pose.rvec,
                pose.tvec,
                matrix,
                distortion,
            )
        )

    logger.info(
        "%s: calibrated from %d frames, fx=%.1f fy=%.1f RMS=%.4fpx",
        camera_name,
        len(fit_frames),
        fx,
        fy,
        rms,
    )

    return IntrinsicParameters(
        camera_name=camera_name,
        image_size=(int(image_size[0]), int(image_size[1])),
        matrix=matrix,
        distortion=distortion,
        rms_error=float(rms),
        frames_used=len(fit_frames),
        frame_indices=tuple(f.frame for f in fit_frames),
        calibration_indices=tuple(calibration_indices),
        rvecs=tuple(np.asarray(r, dtype=np.float64).reshape(3) for r in rvecs),
        tvecs=tuple(np.asarray(t, dtype=np.float64).reshape(3) for t in tvecs),
        per_frame_errors=tuple(float(e) for e in np.asarray(per_view_errors).reshape(-1)),
        all_frame_indices=tuple(f.frame for f in all_frames),
        all_rvecs=tuple(all_rvecs),
        all_tvecs=tuple(all_tvecs),
        all_per_frame_errors=tuple(all_errors),
    )
