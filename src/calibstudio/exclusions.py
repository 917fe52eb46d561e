"""
Frame exclusions for the intrinsic and extrinsic stages.

The two stages are excluded independently. Intrinsic exclusions are
positions in a camera's usable-frame list (calibration indices);
extrinsic exclusions are video frame numbers shared by all cameras.

ExclusionSet is immutable. Changes are described as ExclusionUpdate values
and applied through apply_exclusion_update, which returns the new set and
the stages it invalidates.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Literal

from .types import IntrinsicParameters

logger = logging.getLogger(__name__)

Stage = Literal["intrinsics", "extrinsics", "triangulation", "bundle_adjustment"]

INTRINSIC_DOWNSTREAM: frozenset[Stage] = frozenset(
    {"intrinsics", "extrinsics", "triangulation", "bundle_adjustment"}
)
EXTRINSIC_DOWNSTREAM: frozenset[Stage] = frozenset(
    {"extrinsics", "triangulation", "bundle_adjustment"}
)


@dataclass(frozen=True)
class ExclusionSet:
    intrinsic: Mapping[str, frozenset[int]] = field(default_factory=dict)
    extrinsic: frozenset[int] = frozenset()
    version: int = 0

    def for_camera(self, camera_name: str) -> frozenset[int]:
        """Excluded calibration indices of one camera."""
        return self.intrinsic.get(camera_name, frozenset())


@dataclass(frozen=True)
class ExclusionUpdate:
    kind: Literal[
        "toggle_intrinsic",
        "toggle_extrinsic",
        "clear_intrinsic",
        "clear_extrinsic",
    ]
    cameras: tuple[str, ...] = ()
    index: int | None = None  # calibration index or video frame


# ============================================================================
# Update Constructors
# ============================================================================


def toggle_intrinsic_exclusion(
    cameras: str | Iterable[str],
    calibration_index: int,
) -> ExclusionUpdate:
    """
    Toggle a calibration index for one or more cameras.

    With several cameras the index is included everywhere if any of them
    currently excludes it, and excluded everywhere otherwise.
    """
    if isinstance(cameras, str):
        cameras = (cameras,)
    return ExclusionUpdate("toggle_intrinsic", tuple(cameras), int(calibration_index))


def toggle_extrinsic_exclusion(frame: int) -> ExclusionUpdate:
    return ExclusionUpdate("toggle_extrinsic", index=int(frame))


def clear_intrinsic_exclusions(cameras: str | Iterable[str] = ()) -> ExclusionUpdate:
    """Clear intrinsic exclusions of the given cameras (default: all)."""
    if isinstance(cameras, str):
        cameras = (cameras,)
    return ExclusionUpdate("clear_intrinsic", tuple(cameras))


def clear_extrinsic_exclusions() -> ExclusionUpdate:
    return ExclusionUpdate("clear_extrinsic")


# ============================================================================
# Applying Updates
# ============================================================================


def apply_exclusion_update(
    exclusions: ExclusionSet,
    update: ExclusionUpdate,
) -> tuple[ExclusionSet, frozenset[Stage]]:
    """
    Apply an update.

    Returns:
        (new ExclusionSet with a bumped version, invalidated stages). An
        update that changes nothing returns the input set and no stages.
    """
    intrinsic = dict(exclusions.intrinsic)
    extrinsic = exclusions.extrinsic

    if update.kind == "toggle_intrinsic":
        index = update.index
        currently = any(index in intrinsic.get(cam, frozenset()) for cam in update.cameras)
        for cam in update.cameras:
            current = intrinsic.get(cam, frozenset())
            intrinsic[cam] = current - {index} if currently else current | {index}
        logger.info(
            "%s calibration frame %d for %s",
            "Included" if currently else "Excluded",
            index,
            ", ".join(update.cameras),
        )
        invalidated = INTRINSIC_DOWNSTREAM

    elif update.kind == "toggle_extrinsic":
        frame = update.index
        if frame in extrinsic:
            extrinsic = extrinsic - {frame}
            logger.info("Included video frame %d in extrinsics", frame)
        else:
            extrinsic = extrinsic | {frame}
            logger.info("Excluded video frame %d from extrinsics", frame)
        invalidated = EXTRINSIC_DOWNSTREAM

    elif update.kind == "clear_intrinsic":
        targets = update.cameras or tuple(intrinsic.keys())
        for cam in targets:
            intrinsic.pop(cam, None)
        invalidated = INTRINSIC_DOWNSTREAM

    elif update.kind == "clear_extrinsic":
        extrinsic = frozenset()
        invalidated = EXTRINSIC_DOWNSTREAM

    else:
        raise ValueError(f"Unknown exclusion update: {update.kind}")

    intrinsic = {cam: indices for cam, indices in intrinsic.items() if indices}
    if intrinsic == dict(exclusions.intrinsic) and extrinsic == exclusions.extrinsic:
        return exclusions, frozenset()

    return (
        ExclusionSet(
            intrinsic=intrinsic,
            extrinsic=extrinsic,
            version=exclusions.version + 1,
        ),
        invalidated,
    )


# ============================================================================
# Queries
# ============================================================================


def is_intrinsic_excluded(
    exclusions: ExclusionSet,
    camera_name: str,
    calibration_index: int,
) -> bool:
    return calibration_index in exclusions.for_camera(camera_name)


def is_extrinsic_excluded(exclusions: ExclusionSet, frame: int) -> bool:
    return frame in exclusions.extrinsic


def intrinsic_exclusion_count(exclusions: ExclusionSet) -> int:
    """Number of distinct calibration indices excluded in any camera."""
    indices = set()
    for excluded in exclusions.intrinsic.values():
        indices.update(excluded)
    return len(indices)


def calibration_index_for_frame(
    intrinsics: IntrinsicParameters,
    frame: int,
) -> int | None:
    """
    Calibration index of a video frame for one camera, or None if the frame
    was not usable for that camera.
    """
    try:
        return intrinsics.all_frame_indices.index(frame)
    except ValueError:
        return None


def exclusion_mismatches(
    exclusions: ExclusionSet,
    intrinsics: dict[str, IntrinsicParameters],
) -> dict[str, list[int]]:
    """
    Video frames excluded from one stage but not the other.

    Returns:
        camera -> sorted video frames where intrinsic and extrinsic
        exclusion disagree (cameras without mismatches are omitted)
    """
    mismatches = {}
    for name, params in intrinsics.items():
        excluded = exclusions.for_camera(name)
        frames = [
            frame
            for index, frame in enumerate(params.all_frame_indices)
            if (index in excluded) != (frame in exclusions.extrinsic)
        ]
        if frames:
            mismatches[name] = sorted(frames)
    return mismatches
