"""
Tests for calibstudio.calibration.intrinsic.
"""

import math

import numpy as np
import pytest

from calibstudio.calibration.board import corner_object_points
from calibstudio.calibration.intrinsic import (
    MIN_CALIBRATION_FRAMES,
    calibrate_intrinsics,
    compute_reprojection_error,
    estimate_board_pose,
    seed_camera_matrix,
    usable_calibration_frames,
)
from calibstudio.detections import camera_detections
from calibstudio.types import Detection

from conftest import FOCAL, IMAGE_SIZE


@pytest.fixture
def cam0_detections(synthetic_store):
    return camera_detections(synthetic_store, "cam0")


class TestSeedCameraMatrix:
    def test_principal_point_at_center(self):
        K = seed_camera_matrix((1280, 720))
        assert K[0, 2] == 640.0
        assert K[1, 2] == 360.0

    def test_sixty_degree_focal(self):
        K = seed_camera_matrix((1280, 720))
        expected = 1280 / (2 * math.tan(math.radians(30)))
        assert K[0, 0] == pytest.approx(expected)
        assert K[1, 1] == pytest.approx(expected)

    def test_structure(self):
        K = seed_camera_matrix((640, 480))
        assert K[2, 2] == 1.0
        assert K[0, 1] == 0.0 and K[1, 0] == 0.0


class TestUsableFrames:
    def test_threshold(self, board, cam0_detections):
        short = (99, Detection(np.arange(5, dtype=np.int32), np.zeros((5, 2))))
        frames = usable_calibration_frames(cam0_detections + [short], board, 6)
        assert len(frames) == len(cam0_detections)
        assert 99 not in [f.frame for f in frames]

    def test_keeps_frame_index(self, board, cam0_detections):
        frames = usable_calibration_frames(cam0_detections, board, 6)
        assert [f.frame for f in frames] == [frame for frame, _ in cam0_detections]


class TestEstimateBoardPose:
    def test_too_few_corners(self, board, true_matrix):
        ids = np.arange(5)
        pose = estimate_board_pose(
            corner_object_points(board, ids),
            np.random.default_rng(0).random((5, 2)) * 100,
            true_matrix,
            np.zeros(5),
        )
        assert pose is None

    def test_exact_pose(self, board, true_matrix, cam0_detections):
        frame, det = cam0_detections[0]
        obj = corner_object_points(board, det.corner_ids)
        pose = estimate_board_pose(obj, det.corners, true_matrix, np.zeros(5))

        assert pose is not None
        error = compute_reprojection_error(
            obj, det.corners, pose.rvec, pose.tvec, true_matrix, np.zeros(5)
        )
        assert error < 1e-6


class TestCalibrateIntrinsics:
    def test_two_frames_insufficient(self, board, cam0_detections):
        """Exactly 2 usable frames returns None rather than raising."""
        result = calibrate_intrinsics("cam0", cam0_detections[:2], IMAGE_SIZE, board)
        assert result is None

    def test_three_frames_succeed(self, board, cam0_detections):
        assert MIN_CALIBRATION_FRAMES == 3
        result = calibrate_intrinsics("cam0", cam0_detections[:3], IMAGE_SIZE, board)
        assert result is not None
        assert result.frames_used == 3

    def test_recovers_synthetic_intrinsics(self, board, synthetic_store):
        for name in ("cam0", "cam1", "cam2", "cam3"):
            result = calibrate_intrinsics(
                name, camera_detections(synthetic_store, name), IMAGE_SIZE, board
            )
            assert result is not None
            assert result.fx == pytest.approx(FOCAL, rel=0.005)
            assert result.fy == pytest.approx(FOCAL, rel=0.005)
            assert result.cx == pytest.approx(IMAGE_SIZE[0] / 2, rel=0.005)
            assert result.cy == pytest.approx(IMAGE_SIZE[1] / 2, rel=0.005)
            assert result.rms_error < 0.01

    def test_output_shape(self, board, cam0_detections):
        result = calibrate_intrinsics("cam0", cam0_detections, IMAGE_SIZE, board)

        assert result.matrix.shape == (3, 3)
        assert result.matrix[1, 0] == 0.0
        assert result.matrix[2, 0] == 0.0
        assert result.matrix[2, 1] == 0.0
        assert result.matrix[0, 1] == 0.0
        assert result.matrix[2, 2] == 1.0
        assert result.distortion.shape == (5,)
        assert result.image_size == IMAGE_SIZE

    def test_idempotent(self, board, cam0_detections):
        """Same detections and exclusions give bit-identical results."""
        a = calibrate_intrinsics("cam0", cam0_detections, IMAGE_SIZE, board, exclusions={2})
        b = calibrate_intrinsics("cam0", cam0_detections, IMAGE_SIZE, board, exclusions={2})

        np.testing.assert_array_equal(a.matrix, b.matrix)
        np.testing.assert_array_equal(a.distortion, b.distortion)
        assert a.rms_error == b.rms_error
        assert a.per_frame_errors == b.per_frame_errors
        np.testing.assert_array_equal(
            np.array(a.all_per_frame_errors), np.array(b.all_per_frame_errors)
        )

    def test_exclusion_removes_one_fit_frame(self, board, cam0_detections):
        """
        Excluding a frame drops exactly one entry from the fit while the
        all-frame diagnostics keep their length.
        """
        before = calibrate_intrinsics("cam0", cam0_detections, IMAGE_SIZE, board)
        after = calibrate_intrinsics(
            "cam0", cam0_detections, IMAGE_SIZE, board, exclusions={1}
        )

        assert len(after.per_frame_errors) == len(before.per_frame_errors) - 1
        assert len(after.all_per_frame_errors) == len(before.all_per_frame_errors)
        assert len(after.all_rvecs) == len(before.all_rvecs)

    def test_exclusion_is_positional(self, board, cam0_detections):
        """Exclusions index the usable-frame list, not video frames."""
        result = calibrate_intrinsics(
            "cam0", cam0_detections, IMAGE_SIZE, board, exclusions={1}
        )
        # Position 1 is video frame 10
        assert 10 not in result.frame_indices
        assert 10 in result.all_frame_indices
        assert 1 not in result.calibration_indices

    def test_excluded_frame_still_evaluated(self, board, cam0_detections):
        result = calibrate_intrinsics(
            "cam0", cam0_detections, IMAGE_SIZE, board, exclusions={1}
        )
        assert result.all_rvecs[1] is not None
        assert np.isfinite(result.all_per_frame_errors[1])
        assert result.all_per_frame_errors[1] < 0.01

    def test_exclusions_down_to_two_frames(self, board, cam0_detections):
        result = calibrate_intrinsics(
            "cam0", cam0_detections[:4], IMAGE_SIZE, board, exclusions={0, 3}
        )
        assert result is None

    def test_frames_below_threshold_ignored(self, board, cam0_detections):
        result = calibrate_intrinsics(
            "cam0", cam0_detections, IMAGE_SIZE, board, min_corners=36
        )
        assert result is None
