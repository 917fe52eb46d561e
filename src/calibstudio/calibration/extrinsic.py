"""
Extrinsic camera calibration: relative poses along the pose chain, chained
into one pose per camera relative to the reference camera.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from ..errors import Diagnostic, insufficient_frames, unreachable_camera
from ..types import (
    BoardConfig,
    CovisibilityGraph,
    CovisibleFrame,
    DetectionStore,
    ExtrinsicPose,
    IntrinsicParameters,
    RelativePose,
    identity_pose,
    rotation_to_rvec,
    rvec_to_rotation,
)
from .board import corner_object_points
from .covisibility import (
    build_covisibility_graph,
    find_pose_chain,
    path_to_reference,
    unreachable_cameras,
)
from .intrinsic import estimate_board_pose

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtrinsicResult:
    """Output of the extrinsic stage."""

    extrinsics: dict[str, ExtrinsicPose]
    relative_poses: dict[tuple[str, str], RelativePose]
    parent: dict[str, str | None]
    graph: CovisibilityGraph
    diagnostics: list[Diagnostic] = field(default_factory=list)


# ============================================================================
# Relative Pose
# ============================================================================


def _board_pose_in(
    store: DetectionStore,
    frame: int,
    camera: str,
    board: BoardConfig,
    intrinsics: IntrinsicParameters,
    min_corners: int,
):
    detection = store.get(frame, {}).get(camera)
    if detection is None:
        return None
    return estimate_board_pose(
        corner_object_points(board, detection.corner_ids),
        detection.corners,
        intrinsics.matrix,
        intrinsics.distortion,
        min_corners=min_corners,
    )


def estimate_relative_pose(
    parent: str,
    child: str,
    covisible_frames: list[CovisibleFrame],
    store: DetectionStore,
    board: BoardConfig,
    intrinsics: dict[str, IntrinsicParameters],
    min_corners: int = 6,
    min_frames: int = 1,
) -> RelativePose | None:
    """
    Estimate the parent -> child camera transform from covisible frames.

    Per frame, the board pose is estimated independently in both cameras
    and composed. Rotations are averaged as the mean of their axis-angle
    vectors (an approximation that is fine for small spreads); translations
    are averaged arithmetically.

    Returns:
        RelativePose, or None if fewer than min_frames frames give a pose
        in both cameras
    """
    rotations = []
    translations = []

    for covisible in covisible_frames:
        pose_a = _board_pose_in(
            store, covisible.frame, parent, board, intrinsics[parent], min_corners
        )
        pose_b = _board_pose_in(
            store, covisible.frame, child, board, intrinsics[child], min_corners
        )
        if pose_a is None or pose_b is None:
            logger.debug(
                "%s -> %s: no pose pair on frame %d", parent, child, covisible.frame
            )
            continue

        r_rel = pose_b.rotation @ pose_a.rotation.T
        t_rel = pose_b.tvec - r_rel @ pose_a.tvec

        rotations.append(r_rel)
        translations.append(t_rel)

    if len(rotations) < max(min_frames, 1):
        logger.warning(
            "%s -> %s: %d valid pose pairs (need %d)",
            parent,
            child,
            len(rotations),
            max(min_frames, 1),
        )
        return None

    rvecs = np.array([rotation_to_rvec(r) for r in rotations])
    tvecs = np.array(translations)

    mean_rvec = rvecs.mean(axis=0)
    mean_tvec = tvecs.mean(axis=0)
    t_std = float(np.sqrt(np.mean(np.sum((tvecs - mean_tvec) ** 2, axis=1))))

    logger.info(
        "%s -> %s: %d poses averaged, T=[%.3f, %.3f, %.3f], std=%.4f",
        parent,
        child,
        len(rotations),
        *mean_tvec,
        t_std,
    )

    return RelativePose(
        parent=parent,
        child=child,
        rotation=rvec_to_rotation(mean_rvec),
        rvec=mean_rvec,
        translation=mean_tvec,
        error=t_std,
        frames_used=len(rotations),
    )


def compute_pairwise_relative_poses(
    graph: CovisibilityGraph,
    parent: dict[str, str | None],
    store: DetectionStore,
    board: BoardConfig,
    intrinsics: dict[str, IntrinsicParameters],
    camera_names: list[str],
    min_corners: int = 6,
    min_frames: int = 1,
) -> tuple[dict[tuple[str, str], RelativePose], list[Diagnostic]]:
    """
    Relative pose for every edge of the pose chain.

    Returns:
        ({(parent, child): RelativePose}, diagnostics for failed edges)
    """
    relative_poses = {}
    diagnostics = []

    for name in camera_names:
        source = parent.get(name)
        if source is None:
            continue

        edge = (source, name)
        if source not in intrinsics or name not in intrinsics:
            diagnostics.append(
                Diagnostic(
                    "missing_relative_pose",
                    f"Edge {source} -> {name}: intrinsics missing",
                    camera=name,
                    edge=edge,
                )
            )
            continue

        pose = estimate_relative_pose(
            source,
            name,
            graph[source][name],
            store,
            board,
            intrinsics,
            min_corners=min_corners,
            min_frames=min_frames,
        )
        if pose is None:
            diagnostics.append(
                insufficient_frames(
                    f"Edge {source} -> {name}: not enough frames with a board "
                    f"pose in both cameras",
                    camera=name,
                    edge=edge,
                )
            )
            continue

        relative_poses[edge] = pose

    return relative_poses, diagnostics


# ============================================================================
# Pose Chaining
# ============================================================================


def chain_relative_poses(
    relative_poses: dict[tuple[str, str], RelativePose],
    parent: dict[str, str | None],
    reference: str,
    camera_names: list[str],
) -> tuple[dict[str, ExtrinsicPose], list[Diagnostic]]:
    """
    Compose relative poses along each camera's path from the reference.

    R_new = R_rel @ R, t_new = R_rel @ t + t_rel. The reported error is the
    mean of the edge errors along the path.

    Returns:
        ({camera: ExtrinsicPose}, diagnostics for cameras whose path has a
        missing edge)
    """
    extrinsics = {reference: identity_pose(reference)}
    diagnostics = []

    for name in camera_names:
        if name == reference or name not in parent:
            continue

        rotation = np.eye(3, dtype=np.float64)
        translation = np.zeros(3, dtype=np.float64)
        errors = []
        missing = None

        current = reference
        for step in path_to_reference(parent, name):
            pose = relative_poses.get((current, step))
            if pose is None:
                missing = (current, step)
                break
            translation = pose.rotation @ translation + pose.translation
            rotation = pose.rotation @ rotation
            errors.append(pose.error)
            current = step

        if missing is not None:
            diagnostics.append(
                Diagnostic(
                    "missing_relative_pose",
                    f"Camera {name}: no relative pose for edge "
                    f"{missing[0]} -> {missing[1]} on its chain",
                    camera=name,
                    edge=missing,
                )
            )
            continue

        extrinsics[name] = ExtrinsicPose(
            camera_name=name,
            rotation=rotation,
            rvec=rotation_to_rvec(rotation),
            translation=translation,
            error=float(np.mean(errors)),
        )

    return extrinsics, diagnostics


def compute_extrinsics(
    store: DetectionStore,
    board: BoardConfig,
    intrinsics: dict[str, IntrinsicParameters],
    camera_names: list[str],
    reference: str,
    min_covisible: int = 6,
    min_corners: int = 6,
    min_frames: int = 1,
) -> ExtrinsicResult:
    """
    Full extrinsic stage: covisibility graph, pose chain, relative poses,
    chaining.

    Cameras without a path to the reference get an unreachable_camera
    diagnostic; the others are still calibrated.
    """
    graph = build_covisibility_graph(store, camera_names, min_covisible)
    parent = find_pose_chain(graph, reference, camera_names)

    diagnostics = []
    for name in unreachable_cameras(parent, camera_names):
        logger.warning("Camera %s is unreachable from reference %s", name, reference)
        diagnostics.append(unreachable_camera(name, reference))

    relative_poses, edge_diagnostics = compute_pairwise_relative_poses(
        graph,
        parent,
        store,
        board,
        intrinsics,
        camera_names,
        min_corners=min_corners,
        min_frames=min_frames,
    )
    diagnostics.extend(edge_diagnostics)

    extrinsics, chain_diagnostics = chain_relative_poses(
        relative_poses, parent, reference, camera_names
    )
    diagnostics.extend(chain_diagnostics)

    logger.info(
        "Extrinsics: %d of %d camera poses computed (reference %s)",
        len(extrinsics),
        len(camera_names),
        reference,
    )

    return ExtrinsicResult(
        extrinsics=extrinsics,
        relative_poses=relative_poses,
        parent=parent,
        graph=graph,
        diagnostics=diagnostics,
    )
