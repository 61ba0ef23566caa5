"""Tests for weighted progress accounting."""

import random

import pytest

from resumeflow.workflow import ProgressTracker


def _random_weights(rng: random.Random, count: int) -> list[float]:
    cuts = sorted(rng.uniform(0, 100) for _ in range(count - 1))
    bounds = [0.0, *cuts, 100.0]
    return [b - a for a, b in zip(bounds, bounds[1:], strict=False)]


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_begin_sets_floor_and_ceiling(self):
        tracker = ProgressTracker([25, 25, 50])
        tracker.begin(2, [0, 1])

        assert tracker.floor == 50
        assert tracker.ceiling == 100
        assert tracker.progress == 50

    def test_events_approach_but_never_reach_ceiling(self):
        tracker = ProgressTracker([40, 60])
        tracker.begin(0, [])

        values = [tracker.observe_event() for _ in range(200)]

        assert values[0] == pytest.approx(20.0)  # floor + w * (1 - 1/2)
        assert values[1] == pytest.approx(40 * (1 - 1 / 3))
        assert all(v < 40 for v in values)
        assert values == sorted(values)

    def test_completion_reaches_ceiling(self):
        tracker = ProgressTracker([40, 60])
        tracker.begin(0, [])
        tracker.observe_event()

        assert tracker.complete() == 40
        assert tracker.task_percent == 100

    def test_report_is_clamped_below_ceiling(self):
        tracker = ProgressTracker([50, 50])
        tracker.begin(1, [0])

        assert tracker.report(40) == pytest.approx(70)
        assert tracker.report(100) < 100
        assert tracker.report(250) < 100

    def test_report_never_lowers_progress(self):
        tracker = ProgressTracker([50, 50])
        tracker.begin(0, [])
        tracker.report(80)

        assert tracker.report(10) == pytest.approx(40)
        assert tracker.report(-5) == pytest.approx(40)

    def test_failure_freezes_progress(self):
        tracker = ProgressTracker([50, 50])
        tracker.begin(0, [])
        tracker.observe_event()
        frozen = tracker.freeze()

        # Next task starts from the floor after the failed task's weight
        assert tracker.begin(1, [0]) == 50
        assert frozen == 25

    def test_resume_keeps_saved_progress(self):
        tracker = ProgressTracker([25, 25, 25, 25], progress=50)
        assert tracker.begin(2, [0, 1]) == 50
        assert tracker.progress == 50

    def test_zero_weight_task(self):
        tracker = ProgressTracker([0, 100])
        tracker.begin(0, [])

        assert tracker.observe_event() == 0
        assert tracker.complete() == 0

    def test_finish(self):
        tracker = ProgressTracker([50, 50])
        tracker.begin(0, [])
        tracker.freeze()
        assert tracker.finish() == 100

    @pytest.mark.parametrize("seed", range(20))
    def test_progress_is_monotonic_and_bounded(self, seed):
        """Any mix of events, reports and outcomes keeps progress in [0, 100], non-decreasing."""
        rng = random.Random(seed)
        weights = _random_weights(rng, rng.randint(1, 8))
        tracker = ProgressTracker(weights)
        finished: list[int] = []
        history = [tracker.progress]

        for index in range(len(weights)):
            history.append(tracker.begin(index, finished))
            for _ in range(rng.randint(0, 30)):
                if rng.random() < 0.7:
                    history.append(tracker.observe_event())
                else:
                    history.append(tracker.report(rng.uniform(-20, 150)))
                assert history[-1] < tracker.ceiling or tracker.weight == 0

            outcome = rng.choice(["complete", "freeze", "freeze", "complete"])
            history.append(tracker.complete() if outcome == "complete" else tracker.freeze())
            finished.append(index)

        history.append(tracker.finish())

        assert all(0 <= v <= 100 for v in history)
        assert all(a <= b for a, b in zip(history, history[1:], strict=False))
        assert history[-1] == 100
