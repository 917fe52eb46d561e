"""
Bundle adjustment: problem assembly, validation, solving and write-back.

The orchestrator only builds problems and consumes results. Any engine
implementing BundleAdjustmentSolver can be plugged in; LeastSquaresSolver
is the default, built on scipy.optimize.least_squares.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Protocol

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from .detections import lookup_corner
from .errors import MalformedInputError
from .types import (
    DetectionStore,
    ExtrinsicPose,
    IntrinsicParameters,
    TriangulatedPoint,
    rvec_to_rotation,
)

logger = logging.getLogger(__name__)

ROBUST_LOSSES = {"none": "linear", "huber": "huber", "cauchy": "cauchy"}

# rvec (3), translation (3), fx fy cx cy (4), k1 k2 p1 p2 k3 (5)
CAMERA_PARAM_COUNT = 15
EXTRINSIC_PARAMS = range(0, 6)
INTRINSIC_PARAMS = range(6, 15)


# ============================================================================
# Data Structures
# ============================================================================


@dataclass(frozen=True)
class BundleAdjustmentConfig:
    """Solver configuration. Every field can be overridden."""

    max_iterations: int = 100  # bound on residual evaluations (max_nfev)
    cost_tolerance: float = 1e-6
    parameter_tolerance: float = 1e-8
    gradient_tolerance: float = 1e-10
    robust_loss: str = "huber"  # 'none', 'huber' or 'cauchy'
    robust_loss_param: float = 1.0
    optimize_extrinsics: bool = True
    optimize_points: bool = True
    optimize_intrinsics: bool = False
    outlier_threshold: float = 0.0  # pixels, 0 disables filtering
    reference_camera: int = 0  # index held fixed for gauge freedom
    ignore_frames: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ignore_frames"] = list(self.ignore_frames)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> BundleAdjustmentConfig:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "ignore_frames" in values:
            values["ignore_frames"] = tuple(int(f) for f in values["ignore_frames"])
        return cls(**values)


@dataclass(frozen=True)
class CameraParameters:
    """
    One camera as seen by the solver.

    rotation is a unit quaternion [w, x, y, z] mapping reference
    coordinates to camera coordinates.
    """

    rotation: np.ndarray  # (4,) w, x, y, z
    translation: np.ndarray  # (3,)
    focal: np.ndarray  # (2,) fx, fy
    principal: np.ndarray  # (2,) cx, cy
    distortion: np.ndarray  # (5,) k1, k2, p1, p2, k3

    @property
    def rvec(self) -> np.ndarray:
        w, x, y, z = self.rotation
        return Rotation.from_quat([x, y, z, w]).as_rotvec()

    @property
    def matrix(self) -> np.ndarray:
        return np.array(
            [
                [self.focal[0], 0.0, self.principal[0]],
                [0.0, self.focal[1], self.principal[1]],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    def to_dict(self) -> dict:
        return {
            "rotation": self.rotation.tolist(),
            "translation": self.translation.tolist(),
            "focal": self.focal.tolist(),
            "principal": self.principal.tolist(),
            "distortion": self.distortion.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> CameraParameters:
        try:
            return cls(
                rotation=np.asarray(data["rotation"], dtype=np.float64),
                translation=np.asarray(data["translation"], dtype=np.float64),
                focal=np.asarray(data["focal"], dtype=np.float64),
                principal=np.asarray(data["principal"], dtype=np.float64),
                distortion=np.asarray(data["distortion"], dtype=np.float64),
            )
        except KeyError as e:
            raise MalformedInputError(f"Camera record missing field {e}") from e


@dataclass(frozen=True)
class BundleAdjustmentProblem:
    """
    Flattened optimization problem.

    Observation i is the pixel observed[i] of point point_indices[i] in
    camera camera_indices[i].
    """

    cameras: tuple[CameraParameters, ...]
    points: np.ndarray  # (m, 3)
    camera_indices: np.ndarray  # (n,)
    point_indices: np.ndarray  # (n,)
    observed: np.ndarray  # (n, 2)
    point_to_frame: np.ndarray | None = None  # (m,) frame of each point
    camera_names: tuple[str, ...] = ()
    config: BundleAdjustmentConfig = field(default_factory=BundleAdjustmentConfig)

    @property
    def n_observations(self) -> int:
        return int(self.observed.shape[0])

    def to_dict(self) -> dict:
        return {
            "cameras": [c.to_dict() for c in self.cameras],
            "points": self.points.tolist(),
            "observations": [
                {"camera_idx": int(c), "point_idx": int(p), "x": float(xy[0]), "y": float(xy[1])}
                for c, p, xy in zip(self.camera_indices, self.point_indices, self.observed)
            ],
            "point_to_frame": (
                None if self.point_to_frame is None else self.point_to_frame.tolist()
            ),
            "camera_names": list(self.camera_names),
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> BundleAdjustmentProblem:
        for key in ("cameras", "points", "observations"):
            if data.get(key) is None:
                raise MalformedInputError(f"Problem requires '{key}'")

        observations = data["observations"]
        try:
            camera_indices = [o["camera_idx"] for o in observations]
            point_indices = [o["point_idx"] for o in observations]
            observed = [[o["x"], o["y"]] for o in observations]
        except (KeyError, TypeError) as e:
            raise MalformedInputError(f"Malformed observation record: {e}") from e

        point_to_frame = data.get("point_to_frame")
        return cls(
            cameras=tuple(CameraParameters.from_dict(c) for c in data["cameras"]),
            points=np.asarray(data["points"], dtype=np.float64).reshape(-1, 3),
            camera_indices=np.asarray(camera_indices, dtype=np.int64),
            point_indices=np.asarray(point_indices, dtype=np.int64),
            observed=np.asarray(observed, dtype=np.float64).reshape(-1, 2),
            point_to_frame=(
                None if point_to_frame is None else np.asarray(point_to_frame, dtype=np.int64)
            ),
            camera_names=tuple(data.get("camera_names", ())),
            config=BundleAdjustmentConfig.from_dict(data.get("config", {})),
        )


@dataclass(frozen=True)
class BundleAdjustmentResult:
    """Solver output. Returned even when the solver did not converge."""

    cameras: tuple[CameraParameters, ...]
    points: np.ndarray
    initial_cost: float  # sum of squared pixel residuals
    final_cost: float
    iterations: int  # Jacobian evaluations, i.e. TRF iterations
    converged: bool
    status: str
    num_observations_used: int = 0
    num_observations_filtered: int = 0
    num_observations_filtered_by_frame: int = 0

    def to_dict(self) -> dict:
        return {
            "cameras": [c.to_dict() for c in self.cameras],
            "points": self.points.tolist(),
            "initial_cost": self.initial_cost,
            "final_cost": self.final_cost,
            "iterations": self.iterations,
            "converged": self.converged,
            "status": self.status,
            "num_observations_used": self.num_observations_used,
            "num_observations_filtered": self.num_observations_filtered,
            "num_observations_filtered_by_frame": self.num_observations_filtered_by_frame,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BundleAdjustmentResult:
        return cls(
            cameras=tuple(CameraParameters.from_dict(c) for c in data["cameras"]),
            points=np.asarray(data["points"], dtype=np.float64).reshape(-1, 3),
            initial_cost=float(data["initial_cost"]),
            final_cost=float(data["final_cost"]),
            iterations=int(data["iterations"]),
            converged=bool(data["converged"]),
            status=str(data["status"]),
            num_observations_used=int(data.get("num_observations_used", 0)),
            num_observations_filtered=int(data.get("num_observations_filtered", 0)),
            num_observations_filtered_by_frame=int(
                data.get("num_observations_filtered_by_frame", 0)
            ),
        )


class BundleAdjustmentSolver(Protocol):
    def solve(self, problem: BundleAdjustmentProblem) -> BundleAdjustmentResult: ...


# ============================================================================
# Conversions
# ============================================================================


def camera_parameters(
    intrinsics: IntrinsicParameters,
    pose: ExtrinsicPose,
) -> CameraParameters:
    """Solver camera record from calibration results."""
    x, y, z, w = Rotation.from_matrix(pose.rotation).as_quat()
    return CameraParameters(
        rotation=np.array([w, x, y, z], dtype=np.float64),
        translation=np.asarray(pose.translation, dtype=np.float64).copy(),
        focal=np.array([intrinsics.fx, intrinsics.fy], dtype=np.float64),
        principal=np.array([intrinsics.cx, intrinsics.cy], dtype=np.float64),
        distortion=np.asarray(intrinsics.distortion, dtype=np.float64)[:5].copy(),
    )


def _camera_vector(camera: CameraParameters) -> np.ndarray:
    return np.concatenate(
        [
            camera.rvec,
            camera.translation,
            camera.focal,
            camera.principal,
            camera.distortion,
        ]
    )


def _camera_from_vector(vector: np.ndarray) -> CameraParameters:
    x, y, z, w = Rotation.from_rotvec(vector[0:3]).as_quat()
    return CameraParameters(
        rotation=np.array([w, x, y, z], dtype=np.float64),
        translation=vector[3:6].copy(),
        focal=vector[6:8].copy(),
        principal=vector[8:10].copy(),
        distortion=vector[10:15].copy(),
    )


# ============================================================================
# Problem Assembly
# ============================================================================


def _assemble(
    camera_names: list[str],
    cameras: list[CameraParameters],
    keys: list[tuple[int, int]],
    xyz: np.ndarray,
    lookup,
    config: BundleAdjustmentConfig,
) -> BundleAdjustmentProblem:
    camera_indices = []
    point_indices = []
    observed = []

    for p, (frame, corner_id) in enumerate(keys):
        for c, name in enumerate(camera_names):
            xy = lookup(frame, name, corner_id)
            if xy is None:
                continue
            camera_indices.append(c)
            point_indices.append(p)
            observed.append(xy)

    return BundleAdjustmentProblem(
        cameras=tuple(cameras),
        points=np.asarray(xyz, dtype=np.float64).reshape(-1, 3),
        camera_indices=np.asarray(camera_indices, dtype=np.int64),
        point_indices=np.asarray(point_indices, dtype=np.int64),
        observed=np.asarray(observed, dtype=np.float64).reshape(-1, 2),
        point_to_frame=np.asarray([frame for frame, _ in keys], dtype=np.int64),
        camera_names=tuple(camera_names),
        config=config,
    )


def build_problem(
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
    points: list[TriangulatedPoint],
    store: DetectionStore,
    config: BundleAdjustmentConfig | None = None,
) -> BundleAdjustmentProblem:
    """
    Assemble the problem from calibration results.

    Cameras lacking intrinsics or a pose are left out. Every detected corner
    whose (frame, corner ID) was triangulated becomes an observation.

    Returns:
        BundleAdjustmentProblem (not yet validated)
    """
    config = config or BundleAdjustmentConfig()
    names = [n for n in camera_names if n in intrinsics and n in extrinsics]
    skipped = [n for n in camera_names if n not in names]
    if skipped:
        logger.warning("Bundle adjustment: skipping uncalibrated cameras %s", skipped)

    cameras = [camera_parameters(intrinsics[n], extrinsics[n]) for n in names]
    keys = [(p.frame, p.corner_id) for p in points]
    xyz = np.array([p.xyz for p in points], dtype=np.float64).reshape(-1, 3)

    def lookup(frame, name, corner_id):
        detection = store.get(frame, {}).get(name)
        return None if detection is None else lookup_corner(detection, corner_id)

    return _assemble(names, cameras, keys, xyz, lookup, config)


def problem_from_record(
    record: dict,
    config: BundleAdjustmentConfig | None = None,
) -> BundleAdjustmentProblem:
    """
    Assemble the problem from a diagnostic record (see export).

    Raises:
        MalformedInputError: If the record lacks cameras, observations or
            triangulated points
    """
    for key in ("cameras", "observations", "triangulated_points"):
        if not record.get(key):
            raise MalformedInputError(f"Diagnostic record has no '{key}'")

    config = config or BundleAdjustmentConfig()
    names = list(record["cameras"].keys())

    cameras = []
    for name in names:
        cam = record["cameras"][name]
        try:
            K = np.asarray(cam["K"], dtype=np.float64)
            rotation = rvec_to_rotation(np.asarray(cam["rvec"], dtype=np.float64))
            x, y, z, w = Rotation.from_matrix(rotation).as_quat()
            cameras.append(
                CameraParameters(
                    rotation=np.array([w, x, y, z], dtype=np.float64),
                    translation=np.asarray(cam["tvec"], dtype=np.float64).reshape(3),
                    focal=np.array([K[0, 0], K[1, 1]]),
                    principal=np.array([K[0, 2], K[1, 2]]),
                    distortion=np.asarray(cam["dist_coeffs"], dtype=np.float64)[:5],
                )
            )
        except KeyError as e:
            raise MalformedInputError(f"Camera {name} missing field {e}") from e

    observed_2d = {}
    for i, frame_obs in enumerate(record["observations"]):
        try:
            frame = int(frame_obs["frame"])
            for name, view in frame_obs["views"].items():
                for corner_id, xy in zip(view["corner_ids"], view["corners_2d"]):
                    observed_2d[(frame, name, int(corner_id))] = xy
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInputError(f"Observation {i} is malformed: {e!r}") from e

    keys = []
    xyz = []
    for i, p in enumerate(record["triangulated_points"]):
        try:
            keys.append((int(p["frame"]), int(p["corner_id"])))
            xyz.append(np.asarray(p["point_3d"], dtype=np.float64).reshape(3))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInputError(f"Triangulated point {i} is malformed: {e!r}") from e
    xyz = np.array(xyz, dtype=np.float64)

    return _assemble(
        names,
        cameras,
        keys,
        xyz,
        lambda frame, name, corner_id: observed_2d.get((frame, name, corner_id)),
        config,
    )


# ============================================================================
# Validation
# ============================================================================


def validate_problem(problem: BundleAdjustmentProblem) -> None:
    """
    Check a problem before it reaches a solver.

    Raises:
        MalformedInputError: Describing the first problem found
    """
    config = problem.config
    n_cameras = len(problem.cameras)

    if n_cameras == 0:
        raise MalformedInputError("Bundle adjustment requires at least one camera")
    if problem.points.ndim != 2 or problem.points.shape[1] != 3 or problem.points.shape[0] == 0:
        raise MalformedInputError("Bundle adjustment requires an (m, 3) array of points")
    if problem.n_observations == 0:
        raise MalformedInputError("Bundle adjustment requires observations")

    n_points = problem.points.shape[0]
    n_obs = problem.n_observations

    if problem.observed.shape != (n_obs, 2):
        raise MalformedInputError("Observations must be (n, 2) pixel coordinates")
    if problem.camera_indices.shape != (n_obs,) or problem.point_indices.shape != (n_obs,):
        raise MalformedInputError("Observation index arrays do not match observations")
    if not np.all(np.isfinite(problem.observed)) or not np.all(np.isfinite(problem.points)):
        raise MalformedInputError("Observations and points must be finite")

    if problem.camera_indices.min() < 0 or problem.camera_indices.max() >= n_cameras:
        raise MalformedInputError("Observation camera index out of range")
    if problem.point_indices.min() < 0 or problem.point_indices.max() >= n_points:
        raise MalformedInputError("Observation point index out of range")

    for i, camera in enumerate(problem.cameras):
        shapes = {
            "rotation": (camera.rotation, 4),
            "translation": (camera.translation, 3),
            "focal": (camera.focal, 2),
            "principal": (camera.principal, 2),
            "distortion": (camera.distortion, 5),
        }
        for name, (values, size) in shapes.items():
            if np.shape(values) != (size,):
                raise MalformedInputError(f"Camera {i}: {name} must have {size} entries")
        if not np.isclose(np.linalg.norm(camera.rotation), 1.0, atol=1e-6):
            raise MalformedInputError(f"Camera {i}: rotation is not a unit quaternion")

    if problem.camera_names and len(problem.camera_names) != n_cameras:
        raise MalformedInputError("camera_names does not match the camera list")

    if problem.point_to_frame is not None and problem.point_to_frame.shape != (n_points,):
        raise MalformedInputError("point_to_frame must have one entry per point")
    if config.ignore_frames and problem.point_to_frame is None:
        raise MalformedInputError("ignore_frames requires point_to_frame")

    if config.robust_loss not in ROBUST_LOSSES:
        raise MalformedInputError(
            f"Unknown robust loss {config.robust_loss!r}; "
            f"expected one of {sorted(ROBUST_LOSSES)}"
        )
    if not 0 <= config.reference_camera < n_cameras:
        raise MalformedInputError(
            f"Reference camera index {config.reference_camera} out of range"
        )
    if config.max_iterations < 1:
        raise MalformedInputError("max_iterations must be positive")

    extrinsics_free = config.optimize_extrinsics and n_cameras > 1
    if not (extrinsics_free or config.optimize_points or config.optimize_intrinsics):
        raise MalformedInputError("Nothing to optimize")


# ============================================================================
# Residuals
# ============================================================================


def _project(
    camera_params: np.ndarray,
    points_3d: np.ndarray,
    camera_indices: np.ndarray,
    point_indices: np.ndarray,
) -> np.ndarray:
    projected = np.zeros((camera_indices.shape[0], 2), dtype=np.float64)

    for idx in np.unique(camera_indices):
        mask = camera_indices == idx
        p = camera_params[idx]
        matrix = np.array(
            [[p[6], 0.0, p[8]], [0.0, p[7], p[9]], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )
        proj, _ = cv2.projectPoints(
            np.ascontiguousarray(points_3d[point_indices[mask]]),
            np.ascontiguousarray(p[0:3]),
            np.ascontiguousarray(p[3:6]),
            matrix,
            np.ascontiguousarray(p[10:15]),
        )
        projected[mask] = proj[:, 0, :]

    return projected


def _unpack(params: np.ndarray, n_cameras: int) -> tuple[np.ndarray, np.ndarray]:
    camera_params = params[: n_cameras * CAMERA_PARAM_COUNT].reshape(
        n_cameras, CAMERA_PARAM_COUNT
    )
    points_3d = params[n_cameras * CAMERA_PARAM_COUNT :].reshape(-1, 3)
    return camera_params, points_3d


def _xy_reprojection_error(
    free_params: np.ndarray,
    full_params: np.ndarray,
    free: np.ndarray,
    n_cameras: int,
    camera_indices: np.ndarray,
    point_indices: np.ndarray,
    observed: np.ndarray,
) -> np.ndarray:
    params = full_params.copy()
    params[free] = free_params
    camera_params, points_3d = _unpack(params, n_cameras)
    projected = _project(camera_params, points_3d, camera_indices, point_indices)
    return (projected - observed).ravel()


def compute_observation_errors(
    problem: BundleAdjustmentProblem,
    cameras: tuple[CameraParameters, ...] | None = None,
    points: np.ndarray | None = None,
) -> np.ndarray:
    """
    Per-observation reprojection error in pixels.

    Defaults to the problem's own cameras/points; pass a result's to
    evaluate the optimized parameters.
    """
    cameras = problem.cameras if cameras is None else cameras
    points = problem.points if points is None else points
    camera_params = np.stack([_camera_vector(c) for c in cameras])
    projected = _project(
        camera_params, points, problem.camera_indices, problem.point_indices
    )
    return np.linalg.norm(projected - problem.observed, axis=1)


def _get_sparsity_pattern(
    camera_indices: np.ndarray,
    point_indices: np.ndarray,
    n_cameras: int,
    n_points: int,
    free: np.ndarray,
):
    """
    Build sparse Jacobian pattern for least_squares, restricted to the free
    parameters.
    """
    n_obs = camera_indices.shape[0]
    m = n_obs * 2  # 2 residuals per observation (x, y)
    n = n_cameras * CAMERA_PARAM_COUNT + n_points * 3

    A = lil_matrix((m, n), dtype=int)
    i = np.arange(n_obs)

    # Camera parameters affect their observations
    for s in range(CAMERA_PARAM_COUNT):
        A[2 * i, camera_indices * CAMERA_PARAM_COUNT + s] = 1
        A[2 * i + 1, camera_indices * CAMERA_PARAM_COUNT + s] = 1

    # 3D point parameters affect their observations
    offset = n_cameras * CAMERA_PARAM_COUNT
    for s in range(3):
        A[2 * i, offset + point_indices * 3 + s] = 1
        A[2 * i + 1, offset + point_indices * 3 + s] = 1

    return A.tocsc()[:, free]


# ============================================================================
# Default Solver
# ============================================================================


class LeastSquaresSolver:
    """
    Sparse trust-region bundle adjustment with scipy.optimize.least_squares.

    Observations whose point belongs to an ignored frame are dropped first,
    then observations whose initial error exceeds outlier_threshold. The
    reference camera's pose is held fixed.
    """

    def solve(self, problem: BundleAdjustmentProblem) -> BundleAdjustmentResult:
        config = problem.config
        n_cameras = len(problem.cameras)
        n_points = problem.points.shape[0]

        keep = np.ones(problem.n_observations, dtype=bool)

        filtered_by_frame = 0
        if config.ignore_frames:
            ignored = np.isin(
                problem.point_to_frame[problem.point_indices],
                np.asarray(config.ignore_frames, dtype=np.int64),
            )
            keep &= ~ignored
            filtered_by_frame = int(np.count_nonzero(ignored))

        initial_errors = compute_observation_errors(problem)

        filtered = 0
        if config.outlier_threshold > 0:
            outliers = keep & (initial_errors > config.outlier_threshold)
            keep &= ~outliers
            filtered = int(np.count_nonzero(outliers))

        used = int(np.count_nonzero(keep))
        logger.info(
            "Bundle adjustment: %d cameras, %d points, %d observations "
            "(%d filtered by frame, %d outliers)",
            n_cameras,
            n_points,
            used,
            filtered_by_frame,
            filtered,
        )

        camera_indices = problem.camera_indices[keep]
        point_indices = problem.point_indices[keep]
        observed = problem.observed[keep]
        initial_cost = float(np.sum(initial_errors[keep] ** 2))

        full_params = np.hstack(
            [
                np.concatenate([_camera_vector(c) for c in problem.cameras]),
                problem.points.ravel(),
            ]
        )
        free = self._free_parameters(config, n_cameras, n_points, camera_indices, point_indices)

        def result_for(params, final_cost, iterations, converged, status):
            camera_params, points_3d = _unpack(params, n_cameras)
            return BundleAdjustmentResult(
                cameras=tuple(_camera_from_vector(v) for v in camera_params),
                points=points_3d.copy(),
                initial_cost=initial_cost,
                final_cost=final_cost,
                iterations=iterations,
                converged=converged,
                status=status,
                num_observations_used=used,
                num_observations_filtered=filtered,
                num_observations_filtered_by_frame=filtered_by_frame,
            )

        if used == 0 or free.size == 0:
            status = (
                "No observations left after filtering"
                if used == 0
                else "No free parameters observed"
            )
            return result_for(full_params, initial_cost, 0, False, status)

        sparsity = _get_sparsity_pattern(
            camera_indices, point_indices, n_cameras, n_points, free
        )

        result = least_squares(
            _xy_reprojection_error,
            full_params[free],
            jac_sparsity=sparsity,
            verbose=0,
            x_scale="jac",
            loss=ROBUST_LOSSES[config.robust_loss],
            f_scale=config.robust_loss_param,
            ftol=config.cost_tolerance,
            xtol=config.parameter_tolerance,
            gtol=config.gradient_tolerance,
            max_nfev=config.max_iterations,
            method="trf",
            args=(full_params, free, n_cameras, camera_indices, point_indices, observed),
        )

        params = full_params.copy()
        params[free] = result.x

        return result_for(
            params,
            float(np.sum(result.fun**2)),
            int(result.njev),
            bool(result.status > 0),
            str(result.message),
        )

    @staticmethod
    def _free_parameters(
        config: BundleAdjustmentConfig,
        n_cameras: int,
        n_points: int,
        camera_indices: np.ndarray,
        point_indices: np.ndarray,
    ) -> np.ndarray:
        """Indices into the full parameter vector that the solver may change."""
        free = []
        observed_cameras = set(np.unique(camera_indices).tolist())

        for c in range(n_cameras):
            if c not in observed_cameras:
                continue
            base = c * CAMERA_PARAM_COUNT
            if config.optimize_extrinsics and c != config.reference_camera:
                free.extend(base + s for s in EXTRINSIC_PARAMS)
            if config.optimize_intrinsics:
                free.extend(base + s for s in INTRINSIC_PARAMS)

        if config.optimize_points:
            offset = n_cameras * CAMERA_PARAM_COUNT
            for p in np.unique(point_indices).tolist():
                free.extend(range(offset + p * 3, offset + p * 3 + 3))

        return np.asarray(sorted(free), dtype=np.int64)


# ============================================================================
# High-Level API
# ============================================================================


def run_bundle_adjustment(
    problem: BundleAdjustmentProblem,
    solver: BundleAdjustmentSolver | None = None,
) -> BundleAdjustmentResult:
    """
    Validate a problem and hand it to a solver.

    Args:
        problem: Assembled problem
        solver: Engine to use (default: LeastSquaresSolver)

    Returns:
        The solver's result, also when it did not converge

    Raises:
        MalformedInputError: Before any solver call, if the problem is invalid
    """
    validate_problem(problem)
    solver = solver or LeastSquaresSolver()

    result = solver.solve(problem)

    if not result.converged:
        logger.warning("Bundle adjustment did not converge: %s", result.status)

    logger.info(
        "Bundle adjustment: cost %.4f -> %.4f in %d iterations",
        result.initial_cost,
        result.final_cost,
        result.iterations,
    )
    return result


def apply_result(
    result: BundleAdjustmentResult,
    camera_names: list[str],
    intrinsics: dict[str, IntrinsicParameters],
    extrinsics: dict[str, ExtrinsicPose],
) -> tuple[dict[str, IntrinsicParameters], dict[str, ExtrinsicPose]]:
    """
    New intrinsics/extrinsics with the optimized camera parameters.

    The inputs are left untouched. Points are not merged here; re-triangulate
    to refresh them.

    Args:
        result: Solver result
        camera_names: Names of result.cameras, in order

    Returns:
        (intrinsics, extrinsics)
    """
    if len(camera_names) != len(result.cameras):
        raise MalformedInputError("camera_names does not match the result cameras")

    new_intrinsics = dict(intrinsics)
    new_extrinsics = dict(extrinsics)

    for name, camera in zip(camera_names, result.cameras):
        if name in intrinsics:
            new_intrinsics[name] = replace(
                intrinsics[name],
                matrix=camera.matrix,
                distortion=camera.distortion.copy(),
            )

        rvec = camera.rvec
        new_extrinsics[name] = ExtrinsicPose(
            camera_name=name,
            rotation=rvec_to_rotation(rvec),
            rvec=rvec,
            translation=camera.translation.copy(),
            error=extrinsics[name].error if name in extrinsics else 0.0,
        )

    return new_intrinsics, new_extrinsics


def compute_error_stats(errors) -> dict[str, float] | None:
    """
    Summary statistics of reprojection errors.

    Returns:
        dict with min, max, mean, median, p90, p95, p99 and count, or None
        for no errors
    """
    values = np.sort(np.asarray(errors, dtype=np.float64).reshape(-1))
    n = values.shape[0]
    if n == 0:
        return None

    return {
        "min": float(values[0]),
        "max": float(values[-1]),
        "mean": float(values.mean()),
        "median": float(np.median(values)),
        "p90": float(values[int(n * 0.9)]),
        "p95": float(values[int(n * 0.95)]),
        "p99": float(values[int(n * 0.99)]),
        "count": int(n),
    }
