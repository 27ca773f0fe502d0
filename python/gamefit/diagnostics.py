"""
Training Diagnostics
====================

Every model update returns a trace alongside the new model. Traces are plain
values: they never influence training and can be inspected, summarized or
converted to Polars DataFrames after the fact.

- :class:`OptimizationTrace`: one local optimizer run (one fixed-effect update
  or one random-effect entity).
- :class:`RandomEffectTrace`: all entity runs of one random-effect update,
  with convergence counts and iteration statistics.
- :class:`CoordinateUpdateRecord` / :class:`RoundRecord`: the coordinate
  descent history.

Optimization Divergence
-----------------------
A run that stops at its iteration budget is *not converged*. The iterate is
kept and training continues, but ``trace.converged`` is False and
``trace.convergence_reason`` is ``"max_iterations"``.

A run whose solver gives up (line search failure, loss of precision) is
``"optimizer_failed"``, and a run whose objective is not finite is
``"non_finite_objective"``. Neither counts as converged; a non-finite run
keeps its warm start. Check :meth:`RandomEffectTrace.non_converged_entities`
to find the entities whose local models may be of lower quality.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Mapping, Optional, Tuple, Union, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import polars as pl

__all__ = [
    "ConvergenceReason",
    "OptimizerState",
    "OptimizationTrace",
    "RandomEffectTrace",
    "CoordinateTrace",
    "CoordinateUpdateRecord",
    "RoundRecord",
    "format_history",
]


class ConvergenceReason:
    """String constants for why an optimizer run stopped."""
    GRADIENT_CONVERGED = "gradient_converged"
    FUNCTION_VALUES_CONVERGED = "function_values_converged"
    MAX_ITERATIONS = "max_iterations"
    OPTIMIZER_FAILED = "optimizer_failed"
    NON_FINITE_OBJECTIVE = "non_finite_objective"
    NO_DATA = "no_data"

    SUCCESSFUL = frozenset({GRADIENT_CONVERGED, FUNCTION_VALUES_CONVERGED, NO_DATA})


@dataclass(frozen=True)
class OptimizerState:
    """Objective value and gradient norm after one iteration."""
    iteration: int
    value: float
    gradient_norm: float


@dataclass(frozen=True)
class OptimizationTrace:
    """
    Record of one local optimizer run.

    Attributes
    ----------
    optimizer : str
        "lbfgs" or "tron".
    states : tuple of OptimizerState
        Iteration 0 is the warm start.
    converged : bool
        False when the run stopped at its iteration budget.
    convergence_reason : str
        One of the :class:`ConvergenceReason` constants.
    elapsed_seconds : float
        Wall time of the run.
    message : str
        Message of the underlying solver.
    """
    optimizer: str
    states: Tuple[OptimizerState, ...]
    converged: bool
    convergence_reason: str
    elapsed_seconds: float = 0.0
    message: str = ""

    @property
    def iterations(self) -> int:
        return max(len(self.states) - 1, 0)

    @property
    def initial_value(self) -> float:
        return self.states[0].value if self.states else float("nan")

    @property
    def final_value(self) -> float:
        return self.states[-1].value if self.states else float("nan")

    @property
    def values(self) -> np.ndarray:
        return np.array([s.value for s in self.states])

    def to_frame(self) -> "pl.DataFrame":
        """Per-iteration objective values as a Polars DataFrame."""
        import polars as pl

        return pl.DataFrame({
            "iteration": [s.iteration for s in self.states],
            "value": [s.value for s in self.states],
            "gradient_norm": [s.gradient_norm for s in self.states],
        })

    def summary(self) -> str:
        status = "converged" if self.converged else "NOT converged"
        return (
            f"{self.optimizer}: {status} ({self.convergence_reason}) after {self.iterations} iterations, "
            f"objective {self.initial_value:.6g} -> {self.final_value:.6g} in {self.elapsed_seconds:.3f}s"
        )


@dataclass(frozen=True)
class RandomEffectTrace:
    """
    Traces of every entity retrained in one random-effect update.

    Attributes
    ----------
    random_effect_type : str
        Entity type of the coordinate.
    entity_traces : mapping
        Entity id to its :class:`OptimizationTrace` (active entities only).
    n_passive : int
        Entities carried over from the previous model without retraining.
    """
    random_effect_type: str
    entity_traces: Mapping[Hashable, OptimizationTrace]
    n_passive: int = 0
    elapsed_seconds: float = 0.0

    @property
    def n_active(self) -> int:
        return len(self.entity_traces)

    @property
    def n_converged(self) -> int:
        return sum(1 for t in self.entity_traces.values() if t.converged)

    @property
    def converged(self) -> bool:
        return self.n_converged == self.n_active

    def non_converged_entities(self) -> List[Hashable]:
        return [e for e, t in self.entity_traces.items() if not t.converged]

    def convergence_reasons(self) -> Dict[str, int]:
        """Count of entities per convergence reason."""
        return dict(Counter(t.convergence_reason for t in self.entity_traces.values()))

    def iteration_stats(self) -> Dict[str, float]:
        """min / mean / max iterations across active entities."""
        iters = np.array([t.iterations for t in self.entity_traces.values()], dtype=np.float64)
        if len(iters) == 0:
            return {"min": 0.0, "mean": 0.0, "max": 0.0}
        return {"min": float(iters.min()), "mean": float(iters.mean()), "max": float(iters.max())}

    def to_frame(self) -> "pl.DataFrame":
        """One row per active entity."""
        import polars as pl

        entities = list(self.entity_traces)
        traces = [self.entity_traces[e] for e in entities]
        return pl.DataFrame({
            "entity_id": [str(e) for e in entities],
            "iterations": [t.iterations for t in traces],
            "converged": [t.converged for t in traces],
            "convergence_reason": [t.convergence_reason for t in traces],
            "initial_value": [t.initial_value for t in traces],
            "final_value": [t.final_value for t in traces],
        })

    def summary(self) -> str:
        stats = self.iteration_stats()
        reasons = ", ".join(f"{k}={v}" for k, v in sorted(self.convergence_reasons().items()))
        return (
            f"{self.random_effect_type}: {self.n_active} active / {self.n_passive} passive entities, "
            f"{self.n_converged} converged; iterations min={stats['min']:.0f} "
            f"mean={stats['mean']:.1f} max={stats['max']:.0f}; reasons: {reasons or 'none'}"
        )


CoordinateTrace = Union[OptimizationTrace, RandomEffectTrace]


@dataclass(frozen=True)
class CoordinateUpdateRecord:
    """One ``update_model`` call inside coordinate descent."""
    round: int
    coordinate_id: str
    trace: Optional[CoordinateTrace]
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class RoundRecord:
    """Metrics at the end of one coordinate descent round (round 0 = initial model)."""
    round: int
    training_loss: float
    validation_metric: Optional[float] = None
    updates: Tuple[CoordinateUpdateRecord, ...] = field(default_factory=tuple)


def format_history(
    rounds: List[RoundRecord],
    best_round: Optional[int] = None,
    title: str = "Coordinate Descent",
) -> str:
    """
    Format the round history as a text table.

    The best round is marked with ``*``.
    """
    lines = []
    lines.append("=" * 70)
    lines.append(title.center(70))
    lines.append("=" * 70)
    lines.append(f"{'Round':>6} {'Training loss':>18} {'Validation':>16} {'Updates':>10} {'':>4}")
    lines.append("-" * 70)
    for record in rounds:
        val = "" if record.validation_metric is None else f"{record.validation_metric:>16.6g}"
        mark = "*" if best_round is not None and record.round == best_round else ""
        lines.append(
            f"{record.round:>6} {record.training_loss:>18.6g} {val:>16} {len(record.updates):>10} {mark:>4}"
        )
    lines.append("-" * 70)
    for record in rounds:
        for update in record.updates:
            if update.trace is not None:
                lines.append(f"[{update.round}] {update.coordinate_id}: {update.trace.summary()}")
    lines.append("=" * 70)
    return "\n".join(lines)
