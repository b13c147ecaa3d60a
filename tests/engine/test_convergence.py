"""Tests for lvflow.simulation.convergence: termination policy of the fixed-point loop."""

from __future__ import annotations

import math

import pytest

from lvflow.diagnostics import Diagnostics
from lvflow.simulation.convergence import (
    ConvergenceController,
    ConvergenceStatus,
    IterationStep,
    StopReason,
)


def _halving(state: float, iteration: int) -> IterationStep[float]:
    nxt = state / 2.0
    return IterationStep(nxt, metric=abs(nxt), payload=iteration)


class TestConvergenceController:
    """Stop reasons and reported steps."""

    def test_converges_on_tolerance(self):
        report = ConvergenceController(max_iterations=20, tolerance=0.1).run(1.0, _halving)
        assert report.converged
        assert report.reason is StopReason.TOLERANCE
        # 0.5, 0.25, 0.125, 0.0625
        assert report.iterations == 4
        assert report.last.state == pytest.approx(0.0625)
        assert report.history == pytest.approx([0.5, 0.25, 0.125, 0.0625])

    def test_max_iterations(self):
        report = ConvergenceController(max_iterations=3, tolerance=1e-9, patience=None).run(1.0, _halving)
        assert report.status is ConvergenceStatus.NOT_CONVERGED
        assert report.reason is StopReason.MAX_ITERATIONS
        assert report.iterations == 3
        assert report.best is report.last

    def test_oscillation_detected(self):
        """A signature that comes back after a different one stops the loop."""
        pattern = ["A", "B", "A", "B"]

        def evaluate(state, iteration):
            return IterationStep(state, metric=1.0, signature=pattern[iteration - 1])

        report = ConvergenceController(max_iterations=10, tolerance=0.1, patience=None).run(None, evaluate)
        assert report.reason is StopReason.OSCILLATION
        assert report.iterations == 3

    def test_repeated_signature_is_not_oscillation(self):
        """The same signature on consecutive steps is a settled state, not a cycle."""
        def evaluate(state, iteration):
            return IterationStep(state, metric=1.0 / iteration, signature="A")

        report = ConvergenceController(max_iterations=5, tolerance=0.3, patience=None).run(None, evaluate)
        assert report.converged
        assert report.iterations == 4

    def test_no_progress(self):
        metrics = [5.0, 6.0, 7.0, 8.0, 9.0]

        def evaluate(state, iteration):
            return IterationStep(state, metric=metrics[iteration - 1], payload=iteration)

        report = ConvergenceController(max_iterations=10, tolerance=0.1, patience=3).run(None, evaluate)
        assert report.reason is StopReason.NO_PROGRESS
        assert report.iterations == 4
        assert report.best.payload == 1, "Best step must be the lowest metric"

    def test_non_finite_metric_never_converges(self):
        def evaluate(state, iteration):
            return IterationStep(state, metric=math.nan)

        report = ConvergenceController(max_iterations=2, tolerance=0.5, patience=None).run(None, evaluate)
        assert not report.converged
        assert report.history == [math.inf, math.inf]

    def test_state_fed_back(self):
        seen = []

        def evaluate(state, iteration):
            seen.append(state)
            return IterationStep(state + 1, metric=10.0 - state)

        ConvergenceController(max_iterations=4, tolerance=0.0, patience=None).run(0, evaluate)
        assert seen == [0, 1, 2, 3]

    @pytest.mark.parametrize("kwargs, message", [
        ({"max_iterations": 0}, "max_iterations"),
        ({"tolerance": -1.0}, "tolerance"),
    ])
    def test_invalid_settings(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            ConvergenceController(**kwargs)

    def test_diagnostics_events(self):
        diagnostics = Diagnostics(record=True)
        controller = ConvergenceController(max_iterations=20, tolerance=0.1, name="probe", diagnostics=diagnostics)
        controller.run(1.0, _halving)
        assert len(diagnostics.named("probe.iteration")) == 4
        done = diagnostics.named("probe.done")
        assert done[0].fields == {"status": "converged", "reason": "tolerance", "iterations": 4}

    def test_report_to_dict(self):
        report = ConvergenceController(max_iterations=20, tolerance=0.1).run(1.0, _halving)
        assert report.to_dict() == {
            "status": "converged",
            "reason": "tolerance",
            "iterations": 4,
            "metric": 0.0625,
            "best_metric": 0.0625,
        }
