"""
Triangulation functions for 3D reconstruction.

DLT triangulation is batched per frame in a Numba kernel; every point is
solved independently against read-only camera arrays.
Pure functions operating on dataclasses.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import cv2
import numpy as np
from numba import jit, prange

from .errors import Diagnostic
from .types import (
    Detection,
    DetectionStore,
    ExtrinsicPose,
    IntrinsicParameters,
    ReprojectionResidual,
    TriangulatedPoint,
    TriangulationFailure,
    compute_transformation_matrix,
)

logger = logging.getLogger(__name__)

# |w| of the unit homogeneous solution below this is a point at infinity
INFINITY_TOLERANCE = 1e-10
# s[2] / s[0] below this means the null space is not one-dimensional
CONDITION_TOLERANCE = 1e-9


@dataclass(frozen=True)
class TriangulationResult:
    points: list[TriangulatedPoint] = field(default_factory=list)
    failures: list[TriangulationFailure] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


# ============================================================================
# Core Triangulation
# ============================================================================


@jit(nopython=True, parallel=True, cache=True)
def _triangulate_batch(
    poses: np.ndarray,
    obs_camera: np.ndarray,
    obs_xy: np.ndarray,
    starts: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Triangulate many points with the Direct Linear Transform via SVD.

    Args:
        poses: (c, 3, 4) [R | t] per camera
        obs_camera: (n,) camera index of each observation
        obs_xy: (n, 2) undistorted normalized image coordinates
        starts: (m + 1,) observations of point p are starts[p]:starts[p + 1]

    Returns:
        ((m, 4) unit homogeneous solutions, (m,) s[2] / s[0] ratios)
    """
    n_points = starts.shape[0] - 1
    xyzw = np.zeros((n_points, 4))
    conditioning = np.zeros(n_points)

    for p in prange(n_points):
        begin = starts[p]
        count = starts[p + 1] - begin
        A = np.zeros((count * 2, 4))

        for i in range(count):
            P = poses[obs_camera[begin + i]]
            x = obs_xy[begin + i, 0]
            y = obs_xy[begin + i, 1]
            A[i * 2] = x * P[2] - P[0]
            A[i * 2 + 1] = y * P[2] - P[1]

        u, s, vh = np.linalg.svd(A)
        xyzw[p] = vh[3]
        if s[0] > 0.0:
            conditioning[p] = s[2] / s[0]

    return xyzw, conditioning


# ============================================================================
# Undistortion / Projection
# ============================================================================


def _undistort_normalized(
    points: np.ndarray,
    intrinsics: IntrinsicParameters,
    iterations: int,
) -> np.ndarray:
    k1, k2, p1, p2, k3 = intrinsics.distortion[:5]
    fx, fy = intrinsics.fx, intrinsics.fy
    cx, cy = intrinsics.cx, intrinsics.cy

    x = (points[:, 0] - cx) / fx
    y = (points[:, 1] - cy) / fy
    x0, y0 = x.copy(), y.copy()

    for _ in range(iterations):
        r2 = x**2 + y**2
        k_inv = 1 / (1 + k1 * r2 + k2 * r2**2 + k3 * r2**3)
        delta_x = 2 * p1 * x * y + p2 * (r2 + 2 * x**2)
        delta_y = p1 * (r2 + 2 * y**2) + 2 * p2 * x * y
        x = (x0 - delta_x) * k_inv
        y = (y0 - delta_y) * k_inv

    return np.column_stack([x, y])


def undistort_points(
    points: np.ndarray,
    intrinsics: IntrinsicParameters,
    iterations: int = 5,
) -> np.ndarray:
    """
    Undistort 2D points using camera intrinsics.

    Uses iterative algorithm for better accuracy than cv2.undistortPoints.
    Based on: https://yangyushi.github.io/code/2020/03/04/opencv-undistort.html

    Args:
        points: (n, 2) array of distorted image coordinates
        intrinsics: Camera intrinsics with distortion coefficients
        iterations: Number of refinement iterations

    Returns:
        (n, 2) array of undistorted image coordinates
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if points.size == 0:
        return points.copy()

    normalized = _undistort_normalized(points, intrinsics, iterations)
    return np.column_stack(
        [
            normalized[:, 0] * intrinsics.fx + intrinsics.cx,
            normalized[:, 1] * intrinsics.fy + intrinsics.cy,
        ]
    )


def project_points(
    xyz: np.ndarray,
    intrinsics: IntrinsicParameters,
    pose: ExtrinsicPose,
) -> np.ndarray:
    """
    Project reference-frame 3D points into a camera, with distortion.

    Returns:
        (n, 2) pixel coordinates
    """
    xyz = np.ascontiguousarray(xyz, dtype=np.float64).reshape(-1, 3)
    if xyz.shape[0] == 0:
        return np.zeros((0, 2), dtype=np.float64)

    projected, _ = cv2.projectPoints(
        xyz,
        pose.rvec,
        pose.translation,
        intrinsics.matrix,
        intrinsics.distortion,
    )
    return projected[:, 0, :]


# ============================================================================
# High-Level API
# ============================================================================


def _solve(
    camera_names: list[str],
    observations: list[list[tuple[int, np.ndarray]]],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
) -> tuple[np.ndarray, list[str | None]]:
    """
    Triangulate points given as lists of (camera index, pixel xy).

    Returns:
        ((m, 3) points, per-point failure reason or None)
    """
    poses = np.stack(
        [compute_transformation_matrix(extrinsics[name])[0:3, :] for name in camera_names]
    )

    # Undistort per camera in one pass
    obs_camera = np.array(
        [cam for point in observations for cam, _ in point], dtype=np.int64
    )
    obs_pixels = np.array(
        [xy for point in observations for _, xy in point], dtype=np.float64
    ).reshape(-1, 2)
    obs_xy = np.zeros_like(obs_pixels)
    for idx, name in enumerate(camera_names):
        mask = obs_camera == idx
        if np.any(mask):
            obs_xy[mask] = _undistort_normalized(obs_pixels[mask], intrinsics[name], 5)

    starts = np.zeros(len(observations) + 1, dtype=np.int64)
    starts[1:] = np.cumsum([len(point) for point in observations])

    xyzw, conditioning = _triangulate_batch(
        np.ascontiguousarray(poses), obs_camera, np.ascontiguousarray(obs_xy), starts
    )

    xyz = np.full((len(observations), 3), np.nan, dtype=np.float64)
    reasons: list[str | None] = []

    for p, point in enumerate(observations):
        w = xyzw[p, 3]
        if not np.all(np.isfinite(xyzw[p])):
            reasons.append("non_finite")
            continue
        # A rank-deficient system has no unique solution, whatever w is
        if conditioning[p] < CONDITION_TOLERANCE:
            reasons.append("ill_conditioned")
            continue
        if abs(w) < INFINITY_TOLERANCE:
            reasons.append("point_at_infinity")
            continue

        candidate = xyzw[p, :3] / w
        depths = [
            (poses[cam] @ np.append(candidate, 1.0))[2] for cam, _ in point
        ]
        if min(depths) <= 0:
            reasons.append("behind_camera")
            continue

        xyz[p] = candidate
        reasons.append(None)

    return xyz, reasons


def _residuals(
    camera_names: list[str],
    points: list[list[tuple[int, np.ndarray]]],
    xyz: np.ndarray,
    reasons: list[str | None],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
) -> list[dict[str, ReprojectionResidual]]:
    residuals: list[dict[str, ReprojectionResidual]] = [{} for _ in points]

    for idx, name in enumerate(camera_names):
        hits = [
            (p, xy)
            for p, point in enumerate(points)
            if reasons[p] is None
            for cam, xy in point
            if cam == idx
        ]
        if not hits:
            continue

        projected = project_points(
            xyz[[p for p, _ in hits]], intrinsics[name], extrinsics[name]
        )
        for (p, xy), proj in zip(hits, projected):
            residuals[p][name] = ReprojectionResidual(
                error=float(np.linalg.norm(proj - xy)),
                detected=(float(xy[0]), float(xy[1])),
                projected=(float(proj[0]), float(proj[1])),
            )

    return residuals


def triangulate_point(
    image_points: dict[str, np.ndarray],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
    frame: int = 0,
    corner_id: int = 0,
) -> TriangulatedPoint | TriangulationFailure | None:
    """
    Triangulate a single 3D point from two or more camera observations.

    Args:
        image_points: camera name -> (2,) distorted pixel observation
        intrinsics: Intrinsics per camera
        extrinsics: Poses per camera

    Returns:
        TriangulatedPoint, TriangulationFailure for degenerate geometry, or
        None with fewer than 2 observations
    """
    camera_names = [name for name in image_points if name in extrinsics and name in intrinsics]
    if len(camera_names) < 2:
        return None

    point = [(i, np.asarray(image_points[name], dtype=np.float64)) for i, name in enumerate(camera_names)]
    xyz, reasons = _solve(camera_names, [point], intrinsics, extrinsics)

    if reasons[0] is not None:
        return TriangulationFailure(
            frame=frame,
            corner_id=corner_id,
            cameras=tuple(camera_names),
            reason=reasons[0],
        )

    residuals = _residuals(camera_names, [point], xyz, reasons, intrinsics, extrinsics)
    return TriangulatedPoint(
        frame=frame,
        corner_id=corner_id,
        xyz=xyz[0],
        cameras=tuple(camera_names),
        residuals=residuals[0],
    )


def triangulate_frame(
    frame: int,
    views: dict[str, Detection],
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
    min_corners: int = 4,
) -> tuple[list[TriangulatedPoint], list[TriangulationFailure]]:
    """
    Triangulate every corner seen by at least two cameras in one frame.

    Only cameras with both intrinsics and a pose, and at least min_corners
    detected corners, contribute.

    Returns:
        (triangulated points, failed points), ordered by corner ID
    """
    cameras = [
        name
        for name in camera_names
        if name in views
        and name in intrinsics
        and name in extrinsics
        and views[name].count >= min_corners
    ]
    if len(cameras) < 2:
        return [], []

    observed: dict[int, list[tuple[int, np.ndarray]]] = {}
    for idx, name in enumerate(cameras):
        detection = views[name]
        for corner_id, xy in zip(detection.corner_ids.tolist(), detection.corners):
            observed.setdefault(corner_id, []).append((idx, xy))

    corner_ids = sorted(cid for cid, obs in observed.items() if len(obs) >= 2)
    if not corner_ids:
        return [], []

    points = [observed[cid] for cid in corner_ids]
    xyz, reasons = _solve(cameras, points, intrinsics, extrinsics)
    residuals = _residuals(cameras, points, xyz, reasons, intrinsics, extrinsics)

    triangulated = []
    failures = []
    for p, corner_id in enumerate(corner_ids):
        contributing = tuple(cameras[cam] for cam, _ in points[p])
        if reasons[p] is not None:
            failures.append(
                TriangulationFailure(
                    frame=frame,
                    corner_id=corner_id,
                    cameras=contributing,
                    reason=reasons[p],
                )
            )
            continue
        triangulated.append(
            TriangulatedPoint(
                frame=frame,
                corner_id=corner_id,
                xyz=xyz[p],
                cameras=contributing,
                residuals=residuals[p],
            )
        )

    return triangulated, failures


def triangulate_all(
    store: DetectionStore,
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
    excluded_frames: Iterable[int] = (),
    min_corners: int = 4,
    progress_callback: callable | None = None,
) -> TriangulationResult:
    """
    Triangulate all frames and compute per-camera reprojection residuals.

    Args:
        store: Detections, frame -> camera -> Detection
        camera_names: Cameras in a fixed order
        intrinsics: Intrinsics per camera
        extrinsics: Poses per camera
        excluded_frames: Video frames left out (extrinsic exclusions)
        min_corners: Minimum corners for a view to contribute
        progress_callback: Optional callback(current, total) for progress

    Returns:
        TriangulationResult with points, failures and one degenerate_geometry
        diagnostic per failed point
    """
    excluded = set(excluded_frames)
    frames = [f for f in sorted(store.keys()) if f not in excluded]

    points = []
    failures = []
    total = len(frames)

    for i, frame in enumerate(frames):
        frame_points, frame_failures = triangulate_frame(
            frame,
            store[frame],
            camera_names,
            intrinsics,
            extrinsics,
            min_corners=min_corners,
        )
        points.extend(frame_points)
        failures.extend(frame_failures)

        if progress_callback is not None:
            progress_callback(i + 1, total)

    diagnostics = [
        Diagnostic(
            "degenerate_geometry",
            f"Frame {f.frame}, corner {f.corner_id}: {f.reason.replace('_', ' ')} "
            f"({', '.join(f.cameras)})",
            frame=f.frame,
            corner_id=f.corner_id,
        )
        for f in failures
    ]

    if failures:
        logger.warning("Triangulation: %d points rejected as degenerate", len(failures))

    mean_error = (
        float(np.mean([p.mean_error for p in points])) if points else float("nan")
    )
    logger.info(
        "Triangulation: %d frames, %d points, mean reprojection %.3fpx",
        total,
        len(points),
        mean_error,
    )

    return TriangulationResult(points=points, failures=failures, diagnostics=diagnostics)
