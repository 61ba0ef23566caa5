"""
Progress accounting across weighted tasks.

Each task owns a band [floor, ceiling) of the 0-100 scale, where floor is
the total weight of tasks already finished and ceiling = floor + weight.
Output events nudge progress toward the ceiling without reaching it; only
completion lands on the ceiling. Progress never goes down.
"""

import math

from ..constants import PROGRESS_MAX


class ProgressTracker:
    """Tracks cumulative workflow progress for a sequence of weighted tasks."""

    def __init__(self, weights: list[float], progress: float = 0.0):
        self.weights = list(weights)
        self.progress = min(max(progress, 0.0), PROGRESS_MAX)
        self.floor = 0.0
        self.weight = 0.0
        self.events = 0

    @property
    def ceiling(self) -> float:
        return min(self.floor + self.weight, PROGRESS_MAX)

    @property
    def task_percent(self) -> float:
        """Progress of the current task as a percentage of its own weight."""
        if self.weight <= 0:
            return 0.0
        return min(max((self.progress - self.floor) / self.weight * 100, 0.0), 100.0)

    def floor_for(self, finished: list[int]) -> float:
        """Floor for the next task given the indices of finished tasks."""
        return min(sum(self.weights[i] for i in finished), PROGRESS_MAX)

    def begin(self, index: int, finished: list[int]) -> float:
        """Start tracking task ``index``."""
        self.floor = self.floor_for(finished)
        self.weight = self.weights[index]
        self.events = 0
        return self._advance(self.floor)

    def observe_event(self) -> float:
        """Nudge progress for one output event of the running task."""
        self.events += 1
        value = self.floor + self.weight * (1 - 1 / (1 + self.events))
        return self._advance(self._below_ceiling(value))

    def report(self, percent: float) -> float:
        """Apply a progress report (0-100 of the running task)."""
        percent = min(max(float(percent), 0.0), 100.0)
        value = self.floor + self.weight * percent / 100
        return self._advance(self._below_ceiling(value))

    def complete(self) -> float:
        """Running task finished successfully: jump to its ceiling."""
        return self._advance(self.ceiling)

    def freeze(self) -> float:
        """Running task failed or was skipped: keep the last value."""
        return self.progress

    def finish(self) -> float:
        """Workflow reached the end of its task list."""
        return self._advance(PROGRESS_MAX)

    def _below_ceiling(self, value: float) -> float:
        if self.weight <= 0:
            return self.floor
        return min(value, math.nextafter(self.ceiling, self.floor))

    def _advance(self, value: float) -> float:
        self.progress = min(max(self.progress, value), PROGRESS_MAX)
        return self.progress
