"""
Tests for calibstudio.calibration.extrinsic.
"""

import numpy as np
import pytest

from calibstudio.calibration.covisibility import build_covisibility_graph
from calibstudio.calibration.extrinsic import (
    chain_relative_poses,
    compute_extrinsics,
    compute_pairwise_relative_poses,
    estimate_relative_pose,
)
from calibstudio.calibration.intrinsic import calibrate_intrinsics
from calibstudio.detections import camera_detections
from calibstudio.types import RelativePose

from conftest import IMAGE_SIZE


class TestEstimateRelativePose:
    def test_exact_relative_pose(
        self, board, synthetic_store, camera_names, true_intrinsics, true_extrinsics
    ):
        graph = build_covisibility_graph(synthetic_store, camera_names, 6)
        pose = estimate_relative_pose(
            "cam0", "cam1", graph["cam0"]["cam1"], synthetic_store, board, true_intrinsics
        )

        assert pose is not None
        assert pose.frames_used == len(synthetic_store)
        np.testing.assert_allclose(pose.rotation, true_extrinsics["cam1"].rotation, atol=1e-6)
        np.testing.assert_allclose(
            pose.translation, true_extrinsics["cam1"].translation, atol=1e-6
        )
        assert pose.error < 1e-6

    def test_no_frames(self, board, synthetic_store, true_intrinsics):
        pose = estimate_relative_pose("cam0", "cam1", [], synthetic_store, board, true_intrinsics)
        assert pose is None

    def test_min_frames(
        self, board, synthetic_store, camera_names, true_intrinsics
    ):
        graph = build_covisibility_graph(synthetic_store, camera_names, 6)
        frames = graph["cam0"]["cam1"][:1]
        assert estimate_relative_pose(
            "cam0", "cam1", frames, synthetic_store, board, true_intrinsics, min_frames=2
        ) is None
        assert estimate_relative_pose(
            "cam0", "cam1", frames, synthetic_store, board, true_intrinsics, min_frames=1
        ) is not None


class TestChainRelativePoses:
    def _relative(self, parent, child, rvec, translation, error):
        import cv2

        rvec = np.asarray(rvec, dtype=np.float64)
        return RelativePose(
            parent=parent,
            child=child,
            rotation=cv2.Rodrigues(rvec)[0],
            rvec=rvec,
            translation=np.asarray(translation, dtype=np.float64),
            error=error,
            frames_used=3,
        )

    def test_composition(self):
        ab = self._relative("a", "b", [0.0, 0.1, 0.0], [0.1, 0.0, 0.0], 0.01)
        bc = self._relative("b", "c", [0.0, 0.0, 0.2], [0.0, 0.2, 0.0], 0.03)
        parent = {"a": None, "b": "a", "c": "b"}

        extrinsics, diagnostics = chain_relative_poses(
            {("a", "b"): ab, ("b", "c"): bc}, parent, "a", ["a", "b", "c"]
        )

        assert diagnostics == []
        np.testing.assert_allclose(
            extrinsics["c"].rotation, bc.rotation @ ab.rotation, atol=1e-12
        )
        np.testing.assert_allclose(
            extrinsics["c"].translation,
            bc.rotation @ ab.translation + bc.translation,
            atol=1e-12,
        )
        assert extrinsics["c"].error == pytest.approx(0.02)

    def test_reference_is_identity(self):
        extrinsics, _ = chain_relative_poses({}, {"a": None}, "a", ["a"])
        np.testing.assert_array_equal(extrinsics["a"].rotation, np.eye(3))
        np.testing.assert_array_equal(extrinsics["a"].translation, np.zeros(3))
        assert extrinsics["a"].error == 0.0

    def test_missing_edge_reported(self):
        bc = self._relative("b", "c", [0.0, 0.0, 0.2], [0.0, 0.2, 0.0], 0.03)
        parent = {"a": None, "b": "a", "c": "b"}

        extrinsics, diagnostics = chain_relative_poses(
            {("b", "c"): bc}, parent, "a", ["a", "b", "c"]
        )

        assert "b" not in extrinsics and "c" not in extrinsics
        assert {d.camera for d in diagnostics} == {"b", "c"}
        assert all(d.kind == "missing_relative_pose" for d in diagnostics)
        assert all(d.edge == ("a", "b") for d in diagnostics)


class TestComputeExtrinsics:
    def test_recovers_poses_with_true_intrinsics(
        self, board, synthetic_store, camera_names, true_intrinsics, true_extrinsics
    ):
        result = compute_extrinsics(
            synthetic_store, board, true_intrinsics, camera_names, "cam0"
        )

        assert result.diagnostics == []
        for name in camera_names:
            np.testing.assert_allclose(
                result.extrinsics[name].translation,
                true_extrinsics[name].translation,
                atol=1e-6,
            )

    def test_recovers_poses_with_calibrated_intrinsics(
        self, board, synthetic_store, camera_names, true_extrinsics
    ):
        """Full synthetic scenario: translations within 1e-3 board units."""
        intrinsics = {
            name: calibrate_intrinsics(
                name, camera_detections(synthetic_store, name), IMAGE_SIZE, board
            )
            for name in camera_names
        }
        result = compute_extrinsics(synthetic_store, board, intrinsics, camera_names, "cam0")

        for name in camera_names:
            np.testing.assert_allclose(
                result.extrinsics[name].translation,
                true_extrinsics[name].translation,
                atol=1e-3,
            )
            np.testing.assert_allclose(
                result.extrinsics[name].rvec, true_extrinsics[name].rvec, atol=1e-3
            )

    def test_reference_pose_identity(
        self, board, synthetic_store, camera_names, true_intrinsics
    ):
        result = compute_extrinsics(
            synthetic_store, board, true_intrinsics, camera_names, "cam2"
        )
        np.testing.assert_array_equal(result.extrinsics["cam2"].rotation, np.eye(3))
        np.testing.assert_array_equal(result.extrinsics["cam2"].translation, np.zeros(3))

    def test_isolated_reference(
        self, board, synthetic_store, camera_names, true_intrinsics
    ):
        """Every other camera is reported unreachable; reference stays identity."""
        store = {
            frame: {k: v for k, v in views.items() if k != "cam0"}
            for frame, views in synthetic_store.items()
        }
        result = compute_extrinsics(store, board, true_intrinsics, camera_names, "cam0")

        assert list(result.extrinsics) == ["cam0"]
        np.testing.assert_array_equal(result.extrinsics["cam0"].rotation, np.eye(3))
        unreachable = [d for d in result.diagnostics if d.kind == "unreachable_camera"]
        assert [d.camera for d in unreachable] == ["cam1", "cam2", "cam3"]

    def test_failed_edge_reported(
        self, board, synthetic_store, camera_names, true_intrinsics
    ):
        graph = build_covisibility_graph(synthetic_store, camera_names, 6)
        parent = {"cam0": None, "cam1": "cam0"}
        intrinsics = {"cam0": true_intrinsics["cam0"]}

        poses, diagnostics = compute_pairwise_relative_poses(
            graph, parent, synthetic_store, board, intrinsics, ["cam0", "cam1"]
        )

        assert poses == {}
        assert diagnostics[0].edge == ("cam0", "cam1")
