"""
Covisibility graph and pose chain.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import logging
from collections import deque
from itertools import combinations

from ..types import CovisibilityGraph, CovisibleFrame, DetectionStore

logger = logging.getLogger(__name__)


def build_covisibility_graph(
    store: DetectionStore,
    camera_names: list[str],
    min_covisible: int,
) -> CovisibilityGraph:
    """
    Build the graph of camera pairs that saw the board together.

    For each frame, every pair of cameras whose detections both have at
    least min_covisible corners is checked; if they share at least
    min_covisible corner IDs the frame is added to the edge in both
    directions.

    Args:
        store: Detections, frame -> camera -> Detection
        camera_names: All cameras, in a fixed order
        min_covisible: Minimum common corners per frame

    Returns:
        Complete adjacency mapping, with empty lists for disconnected pairs
    """
    graph: CovisibilityGraph = {
        name: {other: [] for other in camera_names if other != name}
        for name in camera_names
    }

    for frame in sorted(store.keys()):
        views = store[frame]
        valid = [
            name
            for name in camera_names
            if name in views and views[name].count >= min_covisible
        ]

        for name_a, name_b in combinations(valid, 2):
            common = set(views[name_a].corner_ids.tolist()) & set(
                views[name_b].corner_ids.tolist()
            )
            if len(common) < min_covisible:
                continue

            entry = CovisibleFrame(frame=frame, common_ids=tuple(sorted(common)))
            graph[name_a][name_b].append(entry)
            graph[name_b][name_a].append(entry)

    edges = sum(
        len(graph[a][b]) for a, b in combinations(camera_names, 2)
    )
    logger.info(
        "Covisibility graph: %d cameras, %d covisible frame pairs",
        len(camera_names),
        edges,
    )

    return graph


def find_pose_chain(
    graph: CovisibilityGraph,
    reference: str,
    camera_names: list[str],
) -> dict[str, str | None]:
    """
    Breadth-first spanning tree rooted at the reference camera.

    Returns:
        camera -> parent camera (None for the reference). Cameras absent
        from the mapping are unreachable.
    """
    parent: dict[str, str | None] = {reference: None}
    queue = deque([reference])

    while queue:
        current = queue.popleft()
        for neighbor in camera_names:
            if neighbor == current or neighbor in parent:
                continue
            if graph.get(current, {}).get(neighbor):
                parent[neighbor] = current
                queue.append(neighbor)

    return parent


def unreachable_cameras(
    parent: dict[str, str | None],
    camera_names: list[str],
) -> list[str]:
    """Cameras not covered by the pose chain."""
    return [name for name in camera_names if name not in parent]


def path_to_reference(parent: dict[str, str | None], camera: str) -> list[str]:
    """
    Cameras from the reference (exclusive) down to camera (inclusive).
    """
    path = []
    current = camera
    while parent[current] is not None:
        path.append(current)
        current = parent[current]
    path.reverse()
    return path
