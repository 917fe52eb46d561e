"""
Tests for calibstudio.pipeline.
"""

import numpy as np
import pytest

from calibstudio.bundle_adjustment import BundleAdjustmentConfig
from calibstudio.config import ProjectConfig
from calibstudio.errors import MalformedInputError
from calibstudio.exclusions import (
    clear_extrinsic_exclusions,
    toggle_extrinsic_exclusion,
    toggle_intrinsic_exclusion,
)
from calibstudio.pipeline import (
    create_state,
    run_all,
    run_bundle_adjustment_stage,
    run_extrinsic_stage,
    run_intrinsic_stage,
    run_triangulation_stage,
    state_from_config,
    update_exclusions,
)
from calibstudio.types import CalibrationSettings


@pytest.fixture
def state(board, camera_names, image_sizes, synthetic_store):
    return create_state(board, camera_names, image_sizes, synthetic_store)


@pytest.fixture
def triangulated(state):
    state = run_intrinsic_stage(state)
    state = run_extrinsic_stage(state)
    return run_triangulation_stage(state)


class TestCreateState:
    def test_initial(self, state, camera_names):
        assert state.camera_names == tuple(camera_names)
        assert state.reference == "cam0"
        assert state.completed == frozenset()
        assert state.intrinsics == {}

    def test_no_cameras(self, board, synthetic_store):
        with pytest.raises(MalformedInputError):
            create_state(board, [], {}, synthetic_store)

    def test_duplicate_names(self, board, image_sizes, synthetic_store):
        with pytest.raises(MalformedInputError, match="unique"):
            create_state(board, ["cam0", "cam0"], image_sizes, synthetic_store)

    def test_missing_image_size(self, board, camera_names, synthetic_store):
        with pytest.raises(MalformedInputError, match="cam3"):
            create_state(
                board,
                camera_names,
                {name: (1280, 720) for name in camera_names[:3]},
                synthetic_store,
            )

    def test_unknown_reference(self, board, camera_names, image_sizes, synthetic_store):
        with pytest.raises(MalformedInputError, match="Reference"):
            create_state(
                board,
                camera_names,
                image_sizes,
                synthetic_store,
                CalibrationSettings(reference_camera="cam9"),
            )

    def test_from_config_uses_detection_cameras(self, board, image_sizes, synthetic_store):
        config = ProjectConfig(board=board, cameras={})
        with pytest.raises(MalformedInputError):
            # No image sizes without [cameras] tables
            state_from_config(config, synthetic_store)

        config = ProjectConfig(board=board, cameras=image_sizes)
        state = state_from_config(config, synthetic_store)
        assert state.camera_names == ("cam0", "cam1", "cam2", "cam3")


class TestStages:
    def test_intrinsic_stage(self, state, camera_names):
        state = run_intrinsic_stage(state)
        assert set(state.intrinsics) == set(camera_names)
        assert state.completed == frozenset({"intrinsics"})
        assert state.diagnostics["intrinsics"] == ()

    def test_intrinsic_failure_is_diagnostic(self, board, image_sizes, synthetic_store):
        store = {frame: synthetic_store[frame] for frame in (0, 10, 20)}
        store[0] = {k: v for k, v in store[0].items() if k != "cam3"}
        state = run_intrinsic_stage(
            create_state(board, list(image_sizes), image_sizes, store)
        )

        assert "cam3" not in state.intrinsics
        assert len(state.intrinsics) == 3
        (diagnostic,) = state.diagnostics["intrinsics"]
        assert diagnostic.kind == "insufficient_frames"
        assert diagnostic.camera == "cam3"

    def test_reference_without_intrinsics(self, board, image_sizes, synthetic_store):
        store = {
            frame: {k: v for k, v in views.items() if k != "cam0" or frame < 20}
            for frame, views in synthetic_store.items()
        }
        state = run_all(create_state(board, list(image_sizes), image_sizes, store))

        assert "cam0" not in state.intrinsics
        assert state.extrinsics == {}
        assert state.points == ()
        (diagnostic,) = state.diagnostics["extrinsics"]
        assert diagnostic.kind == "insufficient_frames"
        assert diagnostic.camera == "cam0"

    def test_full_pipeline(self, state, camera_names, true_extrinsics):
        state = run_all(state)

        assert state.completed == frozenset(
            {"intrinsics", "extrinsics", "triangulation", "bundle_adjustment"}
        )
        assert state.all_diagnostics == []
        assert state.bundle_adjustment is not None
        for name in camera_names:
            np.testing.assert_allclose(
                state.extrinsics[name].translation,
                true_extrinsics[name].translation,
                atol=1e-3,
            )
        np.testing.assert_array_equal(state.extrinsics["cam0"].translation, np.zeros(3))

    def test_without_bundle_adjustment(self, state):
        state = run_all(state, bundle_adjustment=False)
        assert "bundle_adjustment" not in state.completed
        assert state.bundle_adjustment is None
        assert len(state.points) > 0

    def test_bundle_adjustment_keeps_input_state(self, triangulated):
        before = {k: v.translation.copy() for k, v in triangulated.extrinsics.items()}
        result, adjusted = run_bundle_adjustment_stage(triangulated)

        assert adjusted.bundle_adjustment is result
        assert triangulated.bundle_adjustment is None
        for name, translation in before.items():
            np.testing.assert_array_equal(triangulated.extrinsics[name].translation, translation)

    def test_bundle_adjustment_non_convergence(self, triangulated):
        result, adjusted = run_bundle_adjustment_stage(
            triangulated, BundleAdjustmentConfig(max_iterations=1)
        )

        assert not result.converged
        assert result.status == "The maximum number of function evaluations is exceeded."
        assert adjusted.bundle_adjustment is result
        (diagnostic,) = adjusted.diagnostics["bundle_adjustment"]
        assert diagnostic.kind == "solver_non_convergence"
        assert "bundle_adjustment" in adjusted.completed

    def test_reference_follows_settings(
        self, board, camera_names, image_sizes, synthetic_store
    ):
        state = create_state(
            board,
            camera_names,
            image_sizes,
            synthetic_store,
            CalibrationSettings(reference_camera="cam2"),
        )
        state = run_extrinsic_stage(run_intrinsic_stage(state))
        np.testing.assert_array_equal(state.extrinsics["cam2"].rotation, np.eye(3))
        assert state.parent["cam2"] is None

    def test_idempotent(self, state):
        a = run_triangulation_stage(run_extrinsic_stage(run_intrinsic_stage(state)))
        b = run_triangulation_stage(run_extrinsic_stage(run_intrinsic_stage(state)))

        for name in state.camera_names:
            np.testing.assert_array_equal(a.intrinsics[name].matrix, b.intrinsics[name].matrix)
            np.testing.assert_array_equal(
                a.extrinsics[name].translation, b.extrinsics[name].translation
            )
        np.testing.assert_array_equal(
            np.array([p.xyz for p in a.points]), np.array([p.xyz for p in b.points])
        )


class TestInvalidation:
    def test_extrinsic_exclusion_keeps_intrinsics(self, triangulated):
        state = update_exclusions(triangulated, toggle_extrinsic_exclusion(10))

        assert state.intrinsics is triangulated.intrinsics
        assert state.extrinsics == {}
        assert state.points == ()
        assert state.completed == frozenset({"intrinsics"})
        assert state.version == triangulated.version + 1

    def test_intrinsic_exclusion_clears_everything(self, triangulated):
        state = update_exclusions(triangulated, toggle_intrinsic_exclusion("cam1", 2))

        assert state.intrinsics == {}
        assert state.extrinsics == {}
        assert state.completed == frozenset()
        assert state.exclusions.for_camera("cam1") == frozenset({2})

    def test_noop_update(self, triangulated):
        assert update_exclusions(triangulated, clear_extrinsic_exclusions()) is triangulated

    def test_excluded_frame_not_triangulated(self, triangulated):
        state = update_exclusions(triangulated, toggle_extrinsic_exclusion(10))
        state = run_triangulation_stage(run_extrinsic_stage(state))

        assert 10 not in {p.frame for p in state.points}
        assert 20 in {p.frame for p in state.points}

    def test_rerun_after_exclusion(self, triangulated):
        state = update_exclusions(triangulated, toggle_intrinsic_exclusion("cam1", 2))
        state = run_intrinsic_stage(state)

        assert 2 not in state.intrinsics["cam1"].calibration_indices
        assert 2 in state.intrinsics["cam0"].calibration_indices
