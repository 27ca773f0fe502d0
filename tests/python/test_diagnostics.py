"""
Tests for Training Diagnostics
==============================
"""

import numpy as np
import pytest

from gamefit.diagnostics import (
    ConvergenceReason,
    CoordinateUpdateRecord,
    OptimizationTrace,
    OptimizerState,
    RandomEffectTrace,
    RoundRecord,
    format_history,
)


def _trace(values, converged=True, reason=ConvergenceReason.GRADIENT_CONVERGED):
    states = tuple(OptimizerState(i, v, 1.0 / (i + 1)) for i, v in enumerate(values))
    return OptimizationTrace("lbfgs", states, converged, reason, elapsed_seconds=0.01)


class TestOptimizationTrace:
    """Single optimizer run."""

    def test_iterations_and_values(self):
        trace = _trace([3.0, 2.0, 1.5])
        assert trace.iterations == 2
        assert trace.initial_value == 3.0
        assert trace.final_value == 1.5
        np.testing.assert_array_equal(trace.values, [3.0, 2.0, 1.5])

    def test_empty_trace(self):
        trace = OptimizationTrace("lbfgs", (), True, ConvergenceReason.NO_DATA)
        assert trace.iterations == 0
        assert np.isnan(trace.final_value)

    def test_summary_marks_non_convergence(self):
        trace = _trace([3.0, 2.0], converged=False, reason=ConvergenceReason.MAX_ITERATIONS)
        assert "NOT converged" in trace.summary()
        assert "max_iterations" in trace.summary()

    def test_to_frame(self):
        frame = _trace([3.0, 2.0, 1.5]).to_frame()
        assert frame.columns == ["iteration", "value", "gradient_norm"]
        assert frame["value"].to_list() == [3.0, 2.0, 1.5]


class TestRandomEffectTrace:
    """Aggregated entity runs."""

    @pytest.fixture
    def trace(self):
        return RandomEffectTrace(
            "userId",
            {
                "a": _trace([2.0, 1.0]),
                "b": _trace([2.0, 1.5, 1.2, 1.1], converged=False, reason=ConvergenceReason.MAX_ITERATIONS),
                "c": _trace([1.0, 0.9, 0.8]),
            },
            n_passive=4,
        )

    def test_counts(self, trace):
        assert trace.n_active == 3
        assert trace.n_converged == 2
        assert not trace.converged
        assert trace.non_converged_entities() == ["b"]

    def test_reasons_and_stats(self, trace):
        assert trace.convergence_reasons() == {"gradient_converged": 2, "max_iterations": 1}
        assert trace.iteration_stats() == {"min": 1.0, "mean": 2.0, "max": 3.0}

    def test_empty(self):
        trace = RandomEffectTrace("userId", {})
        assert trace.converged
        assert trace.iteration_stats()["max"] == 0.0
        assert "none" in trace.summary()

    def test_summary(self, trace):
        text = trace.summary()
        assert "3 active / 4 passive" in text
        assert "2 converged" in text


class TestFormatHistory:
    """Round history table."""

    def test_best_round_marked(self):
        update = CoordinateUpdateRecord(1, "global", _trace([2.0, 1.0]))
        rounds = [RoundRecord(0, 10.0), RoundRecord(1, 8.0, 0.7, (update,))]

        text = format_history(rounds, best_round=1)

        lines = text.splitlines()
        marked = [line for line in lines if line.rstrip().endswith("*")]
        assert len(marked) == 1
        assert marked[0].split()[0] == "1"
        assert "[1] global: lbfgs" in text
