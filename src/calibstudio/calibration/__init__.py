"""
Calibration module for calibstudio.

All functions are pure - they take dataclasses and return dataclasses.
No threading, no state management. Caller handles concurrency.
"""

from .board import (
    ARUCO_DICTIONARIES,
    board_corner_positions,
    corner_id_at,
    corner_object_points,
    create_charuco_board,
)

from .intrinsic import (
    calibrate_intrinsics,
    estimate_board_pose,
    seed_camera_matrix,
    usable_calibration_frames,
)

from .covisibility import (
    build_covisibility_graph,
    find_pose_chain,
    unreachable_cameras,
)

from .extrinsic import (
    ExtrinsicResult,
    chain_relative_poses,
    compute_extrinsics,
    estimate_relative_pose,
)

__all__ = [
    # Board
    "ARUCO_DICTIONARIES",
    "board_corner_positions",
    "corner_id_at",
    "corner_object_points",
    "create_charuco_board",
    # Intrinsic
    "calibrate_intrinsics",
    "estimate_board_pose",
    "seed_camera_matrix",
    "usable_calibration_frames",
    # Covisibility
    "build_covisibility_graph",
    "find_pose_chain",
    "unreachable_cameras",
    # Extrinsic
    "ExtrinsicResult",
    "chain_relative_poses",
    "compute_extrinsics",
    "estimate_relative_pose",
]
