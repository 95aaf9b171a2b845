"""Unit-based progress reporting for a single run."""

import logging
from typing import Callable, Optional

from .models import GenerationProgress, PipelineStage

logger = logging.getLogger(__name__)

ProgressListener = Callable[[GenerationProgress], None]


class ProgressTracker:
    """
    Counts completed work units against the run's total. The percentage never
    decreases and only reaches 100 when the run completes.
    """

    def __init__(self, run_id: str, total_scenes: int, stage: PipelineStage):
        self.run_id = run_id
        self.total_scenes = total_scenes
        self.stage = stage
        self.total_units = 1
        self.completed_units = 0
        self.scene_index = 0
        self.last: Optional[GenerationProgress] = None
        self._listeners: list[ProgressListener] = []

    def subscribe(self, listener: Optional[ProgressListener]):
        if listener:
            self._listeners.append(listener)

    def start(self, total_units: int):
        self.total_units = max(total_units, 1)
        self.completed_units = 0

    @property
    def percentage(self) -> float:
        if self.stage == PipelineStage.COMPLETE:
            return 100.0
        pct = round(self.completed_units / self.total_units * 100, 1)
        return min(pct, 99.0)

    def enter(self, stage: PipelineStage, message: str = "", scene_index: Optional[int] = None):
        self.stage = stage
        if scene_index is not None:
            self.scene_index = scene_index
        self._emit(message)

    def advance(self, message: str = "", units: int = 1):
        self.completed_units = min(self.completed_units + units, self.total_units)
        self._emit(message)

    def complete(self, message: str = "Done"):
        self.completed_units = self.total_units
        self.stage = PipelineStage.COMPLETE
        self._emit(message)

    def fail(self, message: str):
        # Percentage stays where it was.
        self.stage = PipelineStage.FAILED
        self._emit(message)

    def _emit(self, message: str):
        progress = GenerationProgress(
            run_id=self.run_id,
            stage=self.stage,
            current_scene_index=self.scene_index,
            total_scenes=self.total_scenes,
            percentage=self.percentage,
            message=message,
        )
        if self.last and progress.percentage < self.last.percentage:
            progress.percentage = self.last.percentage
        self.last = progress
        logger.info(f"[{self.run_id}] {progress.stage.value} ({progress.percentage}%) {message}")
        for listener in self._listeners:
            listener(progress)
