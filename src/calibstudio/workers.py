"""
QThread workers for long-running stages.

Each worker calls pure functions and emits results via signals.
Workers do NOT modify state directly - they emit new states to
CalibrationSession, which swaps them in.
"""

from __future__ import annotations

from dataclasses import replace

from PySide6.QtCore import QObject, QThread, Signal

from .bundle_adjustment import BundleAdjustmentConfig, BundleAdjustmentSolver
from .exclusions import ExclusionUpdate
from .pipeline import (
    CalibrationState,
    run_all,
    run_bundle_adjustment_stage,
    run_triangulation_stage,
    update_exclusions,
)


class TriangulationWorker(QThread):
    """Triangulate all frames of a state."""

    log_message = Signal(str)
    progress_update = Signal(int, int)  # current, total
    finished_state = Signal(object)  # CalibrationState
    error = Signal(str)

    def __init__(self, state: CalibrationState):
        super().__init__()
        self.state = state

    def run(self):
        try:
            self.log_message.emit(
                f"Triangulating {len(self.state.detections)} frames..."
            )
            new_state = run_triangulation_stage(
                self.state, progress_callback=self.progress_update.emit
            )
            self.log_message.emit(
                f"Triangulation complete: {len(new_state.points)} points, "
                f"{len(new_state.triangulation_failures)} rejected"
            )
            self.finished_state.emit(new_state)

        except Exception as e:
            self.error.emit(str(e))


class BundleAdjustmentWorker(QThread):
    """Run bundle adjustment on a state."""

    log_message = Signal(str)
    finished_state = Signal(object, object)  # BundleAdjustmentResult, CalibrationState
    error = Signal(str)

    def __init__(
        self,
        state: CalibrationState,
        config: BundleAdjustmentConfig | None = None,
        solver: BundleAdjustmentSolver | None = None,
    ):
        super().__init__()
        self.state = state
        self.config = config
        self.solver = solver

    def run(self):
        try:
            self.log_message.emit(
                f"Bundle adjustment: {len(self.state.extrinsics)} cameras, "
                f"{len(self.state.points)} points"
            )
            result, new_state = run_bundle_adjustment_stage(
                self.state, self.config, self.solver
            )
            self.log_message.emit(
                f"Cost {result.initial_cost:.4f} -> {result.final_cost:.4f} "
                f"({result.status})"
            )
            self.finished_state.emit(result, new_state)

        except Exception as e:
            self.error.emit(str(e))


class CalibrationWorker(QThread):
    """Run every stage."""

    log_message = Signal(str)
    finished_state = Signal(object)  # CalibrationState
    error = Signal(str)

    def __init__(
        self,
        state: CalibrationState,
        bundle_adjustment: bool = True,
        config: BundleAdjustmentConfig | None = None,
    ):
        super().__init__()
        self.state = state
        self.bundle_adjustment = bundle_adjustment
        self.config = config

    def run(self):
        try:
            self.log_message.emit(f"Calibrating {len(self.state.camera_names)} cameras...")
            new_state = run_all(self.state, self.bundle_adjustment, self.config)
            for diagnostic in new_state.all_diagnostics:
                self.log_message.emit(str(diagnostic))
            self.finished_state.emit(new_state)

        except Exception as e:
            self.error.emit(str(e))


class CalibrationSession(QObject):
    """
    Thin coordinator between a presentation layer and workers.

    Holds the current CalibrationState, spawns workers, and swaps in their
    results. A newer request supersedes older in-flight ones: results of
    superseded workers are dropped when they arrive.
    """

    state_changed = Signal(object)  # CalibrationState
    status_message = Signal(str)
    error_occurred = Signal(str)

    def __init__(self, state: CalibrationState, parent: QObject | None = None):
        super().__init__(parent)
        self._state = state
        self._request = 0
        self._workers: dict[int, QThread] = {}

    @property
    def state(self) -> CalibrationState:
        """Current calibration state."""
        return self._state

    def set_state(self, state: CalibrationState) -> None:
        self._state = state
        self.state_changed.emit(state)

    def update_settings(self, **kwargs) -> None:
        """Replace calibration settings; derived data is kept until re-run."""
        self.set_state(replace(self._state, settings=replace(self._state.settings, **kwargs)))

    def update_exclusions(self, update: ExclusionUpdate) -> None:
        new_state = update_exclusions(self._state, update)
        if new_state is not self._state:
            self.set_state(new_state)

    def _start(self, worker: QThread) -> QThread:
        self._request += 1
        worker.request = self._request
        self._workers[self._request] = worker

        worker.error.connect(self._on_error)
        worker.log_message.connect(self.status_message.emit)
        worker.start()
        return worker

    def _accept(self, worker: QThread, state: CalibrationState) -> None:
        self._workers.pop(worker.request, None)
        if worker.request != self._request:
            self.status_message.emit("Discarded superseded result")
            return
        self.set_state(state)

    def _on_state(self, state: CalibrationState) -> None:
        self._accept(self.sender(), state)

    def _on_adjusted(self, result, state: CalibrationState) -> None:
        self._accept(self.sender(), state)

    def _on_error(self, message: str) -> None:
        worker = self.sender()
        self._workers.pop(worker.request, None)
        if worker.request == self._request:
            self.error_occurred.emit(message)
            self.status_message.emit(f"Error: {message}")

    def calibrate(self, bundle_adjustment: bool = True) -> QThread:
        worker = CalibrationWorker(self._state, bundle_adjustment)
        worker.finished_state.connect(self._on_state)
        return self._start(worker)

    def triangulate(self) -> QThread:
        worker = TriangulationWorker(self._state)
        worker.finished_state.connect(self._on_state)
        return self._start(worker)

    def adjust(
        self,
        config: BundleAdjustmentConfig | None = None,
        solver: BundleAdjustmentSolver | None = None,
    ) -> QThread:
        worker = BundleAdjustmentWorker(self._state, config, solver)
        worker.finished_state.connect(self._on_adjusted)
        return self._start(worker)
