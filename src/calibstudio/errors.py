"""
Errors and diagnostics.

Only malformed input raises. Everything else that can go wrong for a single
camera, edge, frame or point is reported as a Diagnostic value so the other
cameras keep calibrating.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


class CalibrationError(Exception):
    """Base class for calibstudio errors."""


class MalformedInputError(CalibrationError, ValueError):
    """Required input missing or inconsistent. Raised before any solve."""


DiagnosticKind = Literal[
    "insufficient_frames",
    "unreachable_camera",
    "missing_relative_pose",
    "degenerate_geometry",
    "solver_non_convergence",
]


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """
    A recoverable failure, identifying what it concerns.
    """

    kind: DiagnosticKind
    message: str
    camera: str | None = None
    edge: tuple[str, str] | None = None
    frame: int | None = None
    corner_id: int | None = None

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


def insufficient_frames(
    message: str,
    camera: str | None = None,
    edge: tuple[str, str] | None = None,
) -> Diagnostic:
    return Diagnostic("insufficient_frames", message, camera=camera, edge=edge)


def unreachable_camera(camera: str, reference: str) -> Diagnostic:
    return Diagnostic(
        "unreachable_camera",
        f"Camera {camera} has no covisibility path to reference {reference}",
        camera=camera,
    )
