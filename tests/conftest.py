"""
Pytest configuration and shared fixtures.

The synthetic rig is four pinhole cameras (no distortion) around a ChArUco
board seen in eight poses; detections are exact projections.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest

from calibstudio.types import (
    BoardConfig,
    Detection,
    ExtrinsicPose,
    IntrinsicParameters,
)

IMAGE_SIZE = (1280, 720)
FOCAL = 900.0

# name -> (rvec, camera center) in reference coordinates
CAMERA_LAYOUT = {
    "cam0": ((0.0, 0.0, 0.0), (0.0, 0.0, 0.0)),
    "cam1": ((0.0, 0.2, 0.0), (0.3, 0.0, 0.0)),
    "cam2": ((0.0, -0.2, 0.0), (-0.3, 0.0, 0.0)),
    "cam3": ((0.2, 0.0, 0.0), (0.0, -0.25, 0.0)),
}

# frame -> (board rvec, board center) in reference coordinates
BOARD_POSES = {
    0: ((0.0, 0.0, 0.0), (0.0, 0.0, 1.2)),
    10: ((0.35, 0.0, 0.0), (0.05, 0.0, 1.1)),
    20: ((-0.35, 0.0, 0.0), (-0.05, 0.05, 1.3)),
    30: ((0.0, 0.35, 0.0), (0.0, -0.05, 1.2)),
    40: ((0.0, -0.35, 0.0), (0.1, 0.0, 1.0)),
    50: ((0.25, 0.25, 0.1), (-0.1, 0.0, 1.25)),
    60: ((-0.25, 0.25, -0.1), (0.0, 0.1, 1.15)),
    70: ((0.25, -0.25, 0.05), (0.05, -0.05, 1.35)),
}


def make_intrinsics(name, matrix, distortion=None, image_size=IMAGE_SIZE):
    """IntrinsicParameters for a known camera (no fit diagnostics)."""
    return IntrinsicParameters(
        camera_name=name,
        image_size=image_size,
        matrix=np.asarray(matrix, dtype=np.float64),
        distortion=(
            np.zeros(5, dtype=np.float64)
            if distortion is None
            else np.asarray(distortion, dtype=np.float64)
        ),
        rms_error=0.0,
        frames_used=0,
        frame_indices=(),
        calibration_indices=(),
        rvecs=(),
        tvecs=(),
        per_frame_errors=(),
    )


def make_pose(name, rvec, center):
    """ExtrinsicPose of a camera with the given rotation and center."""
    rotation = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))[0]
    translation = -rotation @ np.asarray(center, dtype=np.float64)
    return ExtrinsicPose(
        camera_name=name,
        rotation=rotation,
        rvec=cv2.Rodrigues(rotation)[0][:, 0],
        translation=translation,
    )


def board_points_in_reference(board, frame):
    """(35, 3) corner positions of the board in reference coordinates."""
    from calibstudio.calibration.board import board_corner_positions

    rvec, center = BOARD_POSES[frame]
    rotation = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))[0]
    corners = board_corner_positions(board)
    board_center = corners.mean(axis=0)
    translation = np.asarray(center, dtype=np.float64) - rotation @ board_center
    return corners @ rotation.T + translation


def project(points, matrix, pose, distortion=None):
    projected, _ = cv2.projectPoints(
        np.ascontiguousarray(points, dtype=np.float64),
        pose.rvec,
        pose.translation,
        matrix,
        np.zeros(5) if distortion is None else distortion,
    )
    return projected[:, 0, :]


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def sample_intrinsics_matrix():
    """Typical camera intrinsics matrix."""
    return np.array([
        [800.0, 0.0, 640.0],
        [0.0, 800.0, 360.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def sample_distortion():
    """Typical distortion coefficients (k1, k2, p1, p2, k3)."""
    return np.array([0.1, -0.25, 0.001, -0.001, 0.1], dtype=np.float64)


@pytest.fixture
def sample_intrinsics(sample_intrinsics_matrix, sample_distortion):
    """Sample IntrinsicParameters with distortion."""
    return make_intrinsics("TEST", sample_intrinsics_matrix, sample_distortion)


@pytest.fixture
def board():
    """8x6 squares, 35 interior corners."""
    return BoardConfig(
        columns=8,
        rows=6,
        square_length=0.05,
        marker_length=0.0375,
        dictionary="DICT_4X4_50",
    )


@pytest.fixture
def camera_names():
    return list(CAMERA_LAYOUT)


@pytest.fixture
def image_sizes(camera_names):
    return {name: IMAGE_SIZE for name in camera_names}


@pytest.fixture
def true_matrix():
    return np.array([
        [FOCAL, 0.0, IMAGE_SIZE[0] / 2],
        [0.0, FOCAL, IMAGE_SIZE[1] / 2],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def true_intrinsics(camera_names, true_matrix):
    return {name: make_intrinsics(name, true_matrix) for name in camera_names}


@pytest.fixture
def true_extrinsics():
    return {
        name: make_pose(name, rvec, center)
        for name, (rvec, center) in CAMERA_LAYOUT.items()
    }


@pytest.fixture
def synthetic_store(board, true_matrix, true_extrinsics):
    """
    Exact detections of every board pose in every camera.

    Frame 30 of cam2 only sees the first 20 corners.
    """
    store = {}
    for frame in BOARD_POSES:
        points = board_points_in_reference(board, frame)
        store[frame] = {}
        for name, pose in true_extrinsics.items():
            pixels = project(points, true_matrix, pose)
            ids = np.arange(board.corner_count, dtype=np.int32)
            if frame == 30 and name == "cam2":
                ids, pixels = ids[:20], pixels[:20]
            store[frame][name] = Detection(corner_ids=ids, corners=pixels)
    return store
