# calibstudio - Multi-camera ChArUco calibration

__version__ = "0.1.0"

# Core types
from calibstudio.types import (
    BoardConfig,
    CalibrationSettings,
    Detection,
    DetectionStore,
    ExtrinsicPose,
    IntrinsicParameters,
    RelativePose,
    TriangulatedPoint,
    TriangulationFailure,
)

# Errors
from calibstudio.errors import (
    CalibrationError,
    Diagnostic,
    MalformedInputError,
)

# Detections
from calibstudio.detections import (
    load_detections,
    make_detection,
    save_detections,
)

# Configuration
from calibstudio.config import (
    ProjectConfig,
    load_project_config,
    save_project_config,
)

# Exclusions
from calibstudio.exclusions import (
    ExclusionSet,
    ExclusionUpdate,
    apply_exclusion_update,
    toggle_extrinsic_exclusion,
    toggle_intrinsic_exclusion,
)

# Triangulation
from calibstudio.triangulation import (
    triangulate_all,
    triangulate_frame,
    triangulate_point,
    undistort_points,
)

# Bundle adjustment
from calibstudio.bundle_adjustment import (
    BundleAdjustmentConfig,
    BundleAdjustmentProblem,
    BundleAdjustmentResult,
    LeastSquaresSolver,
    run_bundle_adjustment,
)

# Stages
from calibstudio.pipeline import (
    CalibrationState,
    create_state,
    run_all,
    update_exclusions,
)

# Export
from calibstudio.export import (
    build_diagnostic_record,
    load_calibration_toml,
    save_calibration_toml,
)

__all__ = [
    # Core types
    "BoardConfig",
    "CalibrationSettings",
    "Detection",
    "DetectionStore",
    "ExtrinsicPose",
    "IntrinsicParameters",
    "RelativePose",
    "TriangulatedPoint",
    "TriangulationFailure",
    # Errors
    "CalibrationError",
    "Diagnostic",
    "MalformedInputError",
    # Detections
    "load_detections",
    "make_detection",
    "save_detections",
    # Configuration
    "ProjectConfig",
    "load_project_config",
    "save_project_config",
    # Exclusions
    "ExclusionSet",
    "ExclusionUpdate",
    "apply_exclusion_update",
    "toggle_extrinsic_exclusion",
    "toggle_intrinsic_exclusion",
    # Triangulation
    "triangulate_all",
    "triangulate_frame",
    "triangulate_point",
    "undistort_points",
    # Bundle adjustment
    "BundleAdjustmentConfig",
    "BundleAdjustmentProblem",
    "BundleAdjustmentResult",
    "LeastSquaresSolver",
    "run_bundle_adjustment",
    # Stages
    "CalibrationState",
    "create_state",
    "run_all",
    "update_exclusions",
    # Export
    "build_diagnostic_record",
    "load_calibration_toml",
    "save_calibration_toml",
]
