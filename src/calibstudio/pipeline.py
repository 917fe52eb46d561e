"""
Stage orchestration.

CalibrationState is a frozen snapshot; every stage function takes a state
and returns a new one via dataclasses.replace(). Stages:

    intrinsics -> extrinsics -> triangulation -> bundle_adjustment

Exclusion changes go through update_exclusions, which clears every stage
downstream of what changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from .bundle_adjustment import (
    BundleAdjustmentConfig,
    BundleAdjustmentResult,
    BundleAdjustmentSolver,
    apply_result,
    build_problem,
    run_bundle_adjustment,
)
from .calibration.extrinsic import compute_extrinsics
from .calibration.intrinsic import calibrate_intrinsics
from .config import ProjectConfig
from .detections import camera_detections, store_cameras, without_frames
from .errors import Diagnostic, MalformedInputError, insufficient_frames
from .exclusions import ExclusionSet, ExclusionUpdate, Stage, apply_exclusion_update
from .triangulation import triangulate_all
from .types import (
    BoardConfig,
    CalibrationSettings,
    CovisibilityGraph,
    DetectionStore,
    ExtrinsicPose,
    IntrinsicParameters,
    RelativePose,
    TriangulatedPoint,
    TriangulationFailure,
)

logger = logging.getLogger(__name__)

STAGES: tuple[Stage, ...] = ("intrinsics", "extrinsics", "triangulation", "bundle_adjustment")


@dataclass(frozen=True)
class CalibrationState:
    """
    Complete calibration state.

    Immutable - all updates create new instances via dataclasses.replace().
    Derived fields are empty until their stage has run.
    """

    board: BoardConfig
    camera_names: tuple[str, ...]
    image_sizes: dict[str, tuple[int, int]]
    detections: DetectionStore
    settings: CalibrationSettings = field(default_factory=CalibrationSettings)
    exclusions: ExclusionSet = field(default_factory=ExclusionSet)

    # Intrinsics
    intrinsics: dict[str, IntrinsicParameters] = field(default_factory=dict)

    # Extrinsics
    graph: CovisibilityGraph = field(default_factory=dict)
    parent: dict[str, str | None] = field(default_factory=dict)
    relative_poses: dict[tuple[str, str], RelativePose] = field(default_factory=dict)
    extrinsics: dict[str, ExtrinsicPose] = field(default_factory=dict)

    # Triangulation
    points: tuple[TriangulatedPoint, ...] = ()
    triangulation_failures: tuple[TriangulationFailure, ...] = ()

    # Bundle adjustment
    bundle_adjustment: BundleAdjustmentResult | None = None

    diagnostics: dict[str, tuple[Diagnostic, ...]] = field(default_factory=dict)
    completed: frozenset[str] = frozenset()
    version: int = 0

    @property
    def reference(self) -> str:
        return self.settings.reference_camera or self.camera_names[0]

    @property
    def all_diagnostics(self) -> list[Diagnostic]:
        return [d for stage in STAGES for d in self.diagnostics.get(stage, ())]


# ============================================================================
# Construction
# ============================================================================


def create_state(
    board: BoardConfig,
    camera_names: list[str],
    image_sizes: dict[str, tuple[int, int]],
    detections: DetectionStore,
    settings: CalibrationSettings | None = None,
) -> CalibrationState:
    """
    Initial state, before any stage has run.

    Raises:
        MalformedInputError: Missing cameras, duplicate names, missing image
            sizes or an unknown reference camera
    """
    settings = settings or CalibrationSettings()

    if not camera_names:
        raise MalformedInputError("At least one camera is required")
    if len(set(camera_names)) != len(camera_names):
        raise MalformedInputError("Camera names must be unique")

    missing = [name for name in camera_names if name not in image_sizes]
    if missing:
        raise MalformedInputError(f"No image size for cameras: {', '.join(missing)}")

    if settings.reference_camera is not None and settings.reference_camera not in camera_names:
        raise MalformedInputError(
            f"Reference camera {settings.reference_camera!r} is not a known camera"
        )

    return CalibrationState(
        board=board,
        camera_names=tuple(camera_names),
        image_sizes={name: tuple(image_sizes[name]) for name in camera_names},
        detections=detections,
        settings=settings,
    )


def state_from_config(config: ProjectConfig, detections: DetectionStore) -> CalibrationState:
    """
    Initial state from a project config. Cameras come from the config, or
    from the detections when the config lists none.
    """
    camera_names = config.camera_names or store_cameras(detections)
    return create_state(
        config.board,
        camera_names,
        config.cameras,
        detections,
        config.settings,
    )


# ============================================================================
# Invalidation
# ============================================================================


def _cleared(state: CalibrationState, stages) -> dict:
    """replace() arguments clearing the given stages."""
    stages = set(stages)
    changes = {
        "diagnostics": {k: v for k, v in state.diagnostics.items() if k not in stages},
        "completed": state.completed - stages,
    }
    if "intrinsics" in stages:
        changes["intrinsics"] = {}
    if "extrinsics" in stages:
        changes.update(graph={}, parent={}, relative_poses={}, extrinsics={})
    if "triangulation" in stages:
        changes.update(points=(), triangulation_failures=())
    if "bundle_adjustment" in stages:
        changes["bundle_adjustment"] = None
    return changes


def _downstream(stage: Stage) -> tuple[Stage, ...]:
    return STAGES[STAGES.index(stage) + 1 :]


def update_exclusions(state: CalibrationState, update: ExclusionUpdate) -> CalibrationState:
    """
    The single exclusion entry point.

    Returns:
        New state with the updated ExclusionSet and the affected stages
        cleared, or the same state if the update changed nothing
    """
    exclusions, invalidated = apply_exclusion_update(state.exclusions, update)
    if not invalidated:
        return state

    logger.info(
        "Exclusions v%d: invalidated %s",
        exclusions.version,
        ", ".join(s for s in STAGES if s in invalidated),
    )
    return replace(
        state,
        exclusions=exclusions,
        version=state.version + 1,
        **_cleared(state, invalidated),
    )


# ============================================================================
# Stages
# ============================================================================


def run_intrinsic_stage(state: CalibrationState) -> CalibrationState:
    """Calibrate every camera; cameras that fail get a diagnostic."""
    intrinsics = {}
    diagnostics = []

    for name in state.camera_names:
        result = calibrate_intrinsics(
            name,
            camera_detections(state.detections, name),
            state.image_sizes[name],
            state.board,
            min_corners=state.settings.min_corners,
            exclusions=state.exclusions.for_camera(name),
            pose_min_corners=state.settings.pose_min_corners,
        )
        if result is None:
            diagnostics.append(
                insufficient_frames(
                    f"Camera {name}: intrinsic calibration needs at least 3 usable "
                    f"frames with {state.settings.min_corners}+ corners",
                    camera=name,
                )
            )
            continue
        intrinsics[name] = result

    changes = _cleared(state, STAGES)
    changes["diagnostics"]["intrinsics"] = tuple(diagnostics)
    changes["completed"] = frozenset({"intrinsics"})

    return replace(
        state,
        version=state.version + 1,
        **{**changes, "intrinsics": intrinsics},
    )


def run_extrinsic_stage(state: CalibrationState) -> CalibrationState:
    """
    Covisibility graph, pose chain, relative poses and chaining, over the
    detections minus the extrinsic exclusions.

    Nothing can be posed without the reference camera's intrinsics, so in
    that case the stage records a single diagnostic and leaves every
    extrinsic field empty.
    """
    changes = _cleared(state, ("extrinsics",) + _downstream("extrinsics"))
    changes["completed"] = changes["completed"] | {"extrinsics"}

    if state.reference not in state.intrinsics:
        logger.warning("Reference camera %s has no intrinsics", state.reference)
        changes["diagnostics"]["extrinsics"] = (
            insufficient_frames(
                f"Reference camera {state.reference} has no intrinsics",
                camera=state.reference,
            ),
        )
        return replace(state, version=state.version + 1, **changes)

    detections = without_frames(state.detections, state.exclusions.extrinsic)
    cameras = [name for name in state.camera_names if name in state.intrinsics]

    result = compute_extrinsics(
        detections,
        state.board,
        state.intrinsics,
        cameras,
        state.reference,
        min_covisible=state.settings.min_covisible,
        min_corners=state.settings.pose_min_corners,
        min_frames=state.settings.min_edge_frames,
    )

    changes["diagnostics"]["extrinsics"] = tuple(result.diagnostics)
    changes.update(
        graph=result.graph,
        parent=result.parent,
        relative_poses=result.relative_poses,
        extrinsics=result.extrinsics,
    )

    return replace(state, version=state.version + 1, **changes)


def run_triangulation_stage(
    state: CalibrationState,
    progress_callback: callable | None = None,
) -> CalibrationState:
    """Triangulate all frames not excluded from the extrinsic stage."""
    result = triangulate_all(
        state.detections,
        list(state.camera_names),
        state.intrinsics,
        state.extrinsics,
        excluded_frames=state.exclusions.extrinsic,
        min_corners=state.settings.min_triangulation_corners,
        progress_callback=progress_callback,
    )

    changes = _cleared(state, ("triangulation",) + _downstream("triangulation"))
    changes["diagnostics"]["triangulation"] = tuple(result.diagnostics)
    changes["completed"] = changes["completed"] | {"triangulation"}
    changes.update(
        points=tuple(result.points),
        triangulation_failures=tuple(result.failures),
    )

    return replace(state, version=state.version + 1, **changes)


def run_bundle_adjustment_stage(
    state: CalibrationState,
    config: BundleAdjustmentConfig | None = None,
    solver: BundleAdjustmentSolver | None = None,
) -> tuple[BundleAdjustmentResult, CalibrationState]:
    """
    Refine all cameras and points jointly.

    The reference camera is held fixed. The returned state carries the
    optimized intrinsics/extrinsics; the input state is untouched, so the
    caller decides whether to swap it in. Points are not replaced.

    Raises:
        MalformedInputError: If there is nothing to adjust
    """
    config = config or BundleAdjustmentConfig()

    problem = build_problem(
        list(state.camera_names),
        state.intrinsics,
        state.extrinsics,
        list(state.points),
        state.detections,
        config,
    )
    if state.reference in problem.camera_names:
        problem = replace(
            problem,
            config=replace(
                config, reference_camera=problem.camera_names.index(state.reference)
            ),
        )

    result = run_bundle_adjustment(problem, solver)

    diagnostics = []
    if not result.converged:
        diagnostics.append(
            Diagnostic(
                "solver_non_convergence",
                f"Bundle adjustment did not converge: {result.status}",
            )
        )

    intrinsics, extrinsics = apply_result(
        result, list(problem.camera_names), state.intrinsics, state.extrinsics
    )

    new_state = replace(
        state,
        intrinsics=intrinsics,
        extrinsics=extrinsics,
        bundle_adjustment=result,
        diagnostics={**state.diagnostics, "bundle_adjustment": tuple(diagnostics)},
        completed=state.completed | {"bundle_adjustment"},
        version=state.version + 1,
    )
    return result, new_state


def run_all(
    state: CalibrationState,
    bundle_adjustment: bool = True,
    config: BundleAdjustmentConfig | None = None,
    solver: BundleAdjustmentSolver | None = None,
) -> CalibrationState:
    """
    Run every stage in order.

    Bundle adjustment is skipped (with a warning) when there are no
    triangulated points or fewer than two posed cameras.
    """
    state = run_intrinsic_stage(state)
    state = run_extrinsic_stage(state)
    state = run_triangulation_stage(state)

    if not bundle_adjustment:
        return state

    if not state.points or len(state.extrinsics) < 2:
        logger.warning(
            "Skipping bundle adjustment: %d points, %d posed cameras",
            len(state.points),
            len(state.extrinsics),
        )
        return state

    _, state = run_bundle_adjustment_stage(state, config, solver)
    return state
