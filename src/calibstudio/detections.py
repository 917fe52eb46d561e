"""
Detection store helpers.

The store maps frame index -> camera name -> Detection. Detections come from
the external corner detector; this module only validates, filters and
(de)serializes them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

import numpy as np

from .errors import MalformedInputError
from .types import Detection, DetectionStore

logger = logging.getLogger(__name__)


def make_detection(corner_ids, corners) -> Detection:
    """
    Build a Detection, validating shape and uniqueness of corner IDs.

    Raises:
        MalformedInputError: On duplicate IDs or mismatched lengths
    """
    ids = np.asarray(corner_ids, dtype=np.int32).reshape(-1)
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)

    if ids.shape[0] != pts.shape[0]:
        raise MalformedInputError(
            f"Detection has {ids.shape[0]} ids but {pts.shape[0]} corners"
        )
    if np.unique(ids).shape[0] != ids.shape[0]:
        raise MalformedInputError("Detection contains duplicate corner ids")

    return Detection(corner_ids=ids, corners=pts)


def camera_detections(store: DetectionStore, camera_name: str) -> list[tuple[int, Detection]]:
    """
    All detections of one camera as (frame, Detection), in frame order.
    """
    return [
        (frame, views[camera_name])
        for frame, views in sorted(store.items())
        if camera_name in views
    ]


def store_cameras(store: DetectionStore) -> list[str]:
    """Camera names appearing in the store, sorted."""
    names = set()
    for views in store.values():
        names.update(views.keys())
    return sorted(names)


def without_frames(store: DetectionStore, frames: Iterable[int]) -> DetectionStore:
    """
    Copy of the store without the given frames.
    """
    excluded = set(frames)
    return {frame: views for frame, views in store.items() if frame not in excluded}


def lookup_corner(detection: Detection, corner_id: int) -> np.ndarray | None:
    """Pixel position of a corner in a detection, or None."""
    idx = np.flatnonzero(detection.corner_ids == corner_id)
    if idx.size == 0:
        return None
    return detection.corners[idx[0]]


# ============================================================================
# JSON (de)serialization
# ============================================================================


def detections_to_dict(store: DetectionStore) -> dict:
    frames = {}
    for frame, views in sorted(store.items()):
        frames[str(frame)] = {
            name: {
                "corner_ids": det.corner_ids.tolist(),
                "corners": det.corners.tolist(),
            }
            for name, det in sorted(views.items())
        }
    return {"frames": frames}


def detections_from_dict(data: dict) -> DetectionStore:
    """
    Parse the detector's JSON payload.

    Raises:
        MalformedInputError: If the payload is not a detection mapping
    """
    frames = data.get("frames")
    if not isinstance(frames, dict):
        raise MalformedInputError("Detection payload requires a 'frames' mapping")

    store: DetectionStore = {}
    for frame_key, views in frames.items():
        try:
            frame = int(frame_key)
        except ValueError as e:
            raise MalformedInputError(f"Invalid frame index: {frame_key!r}") from e

        store[frame] = {}
        for name, view in views.items():
            if "corner_ids" not in view or "corners" not in view:
                raise MalformedInputError(
                    f"Frame {frame}, camera {name}: missing corner_ids/corners"
                )
            store[frame][name] = make_detection(view["corner_ids"], view["corners"])

    return store


def save_detections(store: DetectionStore, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(detections_to_dict(store), f)


def load_detections(path: Path) -> DetectionStore:
    with open(path) as f:
        data = json.load(f)
    store = detections_from_dict(data)
    logger.info(
        "Loaded detections for %d frames, %d cameras from %s",
        len(store),
        len(store_cameras(store)),
        path,
    )
    return store
