"""
Local Optimizer
===============

Minimizes a :class:`~gamefit.objective.GLMObjective` for one coefficient
vector, warm-started from the previous round's vector. The same solver is
used for the single large fixed-effect problem and for every small
random-effect entity problem.

Two methods are available, both on top of :func:`scipy.optimize.minimize`:

- **L-BFGS** (``"lbfgs"``, default): quasi-Newton with bounded memory. L1 and
  elastic net penalties are handled by splitting β = u - v with u, v ≥ 0,
  which turns ``λ₁·||β||₁`` into the linear term ``λ₁·Σ(u + v)`` that
  L-BFGS-B solves with simple bounds.
- **TRON** (``"tron"``): trust-region Newton with conjugate-gradient steps,
  using only Hessian-vector products of the objective. Smooth penalties only.

Convergence
-----------
Tolerances are relative: a run converges when the gradient norm falls below
``tolerance · max(1, ||∇F(β₀)||)`` or (L-BFGS) the relative reduction of the
objective falls below ``tolerance``. Only those two outcomes are converged.
A run that exhausts ``max_iterations`` is returned as is with
``converged=False``, and so is a run the solver abandons
(``"optimizer_failed"``). When the objective is not finite at the warm start
or at the solver's answer, the warm start is returned unchanged with reason
``"non_finite_objective"``. Callers decide how to surface all three.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Tuple

import numpy as np
from scipy.optimize import minimize

from gamefit.config import OptimizerConfig, OptimizerType
from gamefit.constants import DEFAULT_LBFGS_HISTORY
from gamefit.diagnostics import ConvergenceReason, OptimizationTrace, OptimizerState
from gamefit.objective import GLMObjective

logger = logging.getLogger(__name__)

__all__ = ["minimize_objective"]


def minimize_objective(
    objective: GLMObjective,
    initial: np.ndarray,
    config: OptimizerConfig,
) -> Tuple[np.ndarray, OptimizationTrace]:
    """
    Minimize ``objective`` starting from ``initial``.

    Parameters
    ----------
    objective : GLMObjective
        Objective whose ``l2_weight`` already holds the smooth penalty.
    initial : np.ndarray
        Warm start. Not modified.
    config : OptimizerConfig
        Method, budget and regularization.

    Returns
    -------
    coefficients : np.ndarray
        New coefficient vector (a fresh array).
    trace : OptimizationTrace
    """
    initial = np.array(initial, dtype=np.float64)
    start = time.perf_counter()

    if objective.n_samples == 0:
        value, gradient = objective.value_and_gradient(initial)
        state = OptimizerState(0, value, float(np.linalg.norm(gradient)))
        trace = OptimizationTrace(
            config.optimizer_type.value, (state,), True, ConvergenceReason.NO_DATA,
            time.perf_counter() - start, "no samples",
        )
        return initial, trace

    value0, gradient0 = objective.value_and_gradient(initial)
    if not (np.isfinite(value0) and np.all(np.isfinite(gradient0))):
        coefficients = initial
        states = [OptimizerState(0, float(value0), float(np.linalg.norm(gradient0)))]
        reason = ConvergenceReason.NON_FINITE_OBJECTIVE
        message = "objective is not finite at the initial coefficients"
    else:
        if config.optimizer_type == OptimizerType.TRON:
            coefficients, states, reason, message = _run_tron(objective, initial, config)
        elif config.l1_weight > 0:
            coefficients, states, reason, message = _run_lbfgs_l1(objective, initial, config)
        else:
            coefficients, states, reason, message = _run_lbfgs(objective, initial, config)

        if not (np.all(np.isfinite(coefficients)) and np.isfinite(objective.value(coefficients))):
            coefficients = initial
            reason = ConvergenceReason.NON_FINITE_OBJECTIVE
            message = f"objective is not finite at the solver's answer ({message})"

    trace = OptimizationTrace(
        optimizer=config.optimizer_type.value,
        states=tuple(states),
        converged=reason in ConvergenceReason.SUCCESSFUL,
        convergence_reason=reason,
        elapsed_seconds=time.perf_counter() - start,
        message=message,
    )
    logger.debug("%s", trace.summary())
    return coefficients, trace


# =============================================================================
# L-BFGS
# =============================================================================

def _record(states: List[OptimizerState], value: float, gradient: np.ndarray) -> None:
    states.append(OptimizerState(len(states), float(value), float(np.linalg.norm(gradient))))


def _lbfgs_reason(status: int, message: str) -> str:
    if status == 1:
        return ConvergenceReason.MAX_ITERATIONS
    if status == 0:
        if "GRAD" in message.upper():
            return ConvergenceReason.GRADIENT_CONVERGED
        return ConvergenceReason.FUNCTION_VALUES_CONVERGED
    return ConvergenceReason.OPTIMIZER_FAILED


def _run_lbfgs(objective: GLMObjective, initial: np.ndarray, config: OptimizerConfig):
    value0, gradient0 = objective.value_and_gradient(initial)
    states: List[OptimizerState] = []
    _record(states, value0, gradient0)

    def callback(intermediate_result):
        _record(states, *objective.value_and_gradient(intermediate_result.x))

    result = minimize(
        objective.value_and_gradient,
        initial,
        jac=True,
        method="L-BFGS-B",
        callback=callback,
        options={
            "maxiter": config.max_iterations,
            "ftol": config.tolerance,
            "gtol": config.tolerance * max(1.0, float(np.abs(gradient0).max(initial=0.0))),
            "maxcor": DEFAULT_LBFGS_HISTORY,
        },
    )
    message = str(result.message)
    return np.array(result.x, dtype=np.float64), states, _lbfgs_reason(result.status, message), message


def _run_lbfgs_l1(objective: GLMObjective, initial: np.ndarray, config: OptimizerConfig):
    """L-BFGS-B on the split problem β = u - v, u ≥ 0, v ≥ 0."""
    dim = len(initial)
    l1 = config.l1_weight

    def split_value_and_gradient(z):
        beta = z[:dim] - z[dim:]
        value, gradient = objective.value_and_gradient(beta)
        value += l1 * float(np.sum(z))
        return value, np.concatenate([gradient + l1, -gradient + l1])

    def full_value_and_gradient(beta):
        value, gradient = objective.value_and_gradient(beta)
        return value + l1 * float(np.abs(beta).sum()), gradient

    z0 = np.concatenate([np.maximum(initial, 0.0), np.maximum(-initial, 0.0)])
    value0, gradient0 = split_value_and_gradient(z0)
    states: List[OptimizerState] = []
    _record(states, *full_value_and_gradient(initial))

    def callback(intermediate_result):
        z = intermediate_result.x
        _record(states, *full_value_and_gradient(z[:dim] - z[dim:]))

    result = minimize(
        split_value_and_gradient,
        z0,
        jac=True,
        method="L-BFGS-B",
        bounds=[(0.0, None)] * (2 * dim),
        callback=callback,
        options={
            "maxiter": config.max_iterations,
            "ftol": config.tolerance,
            "gtol": config.tolerance * max(1.0, float(np.abs(gradient0).max(initial=0.0))),
            "maxcor": DEFAULT_LBFGS_HISTORY,
        },
    )
    beta = np.array(result.x[:dim] - result.x[dim:], dtype=np.float64)
    message = str(result.message)
    return beta, states, _lbfgs_reason(result.status, message), message


# =============================================================================
# TRON
# =============================================================================

def _run_tron(objective: GLMObjective, initial: np.ndarray, config: OptimizerConfig):
    value0, gradient0 = objective.value_and_gradient(initial)
    states: List[OptimizerState] = []
    _record(states, value0, gradient0)

    gtol = config.tolerance * max(1.0, float(np.linalg.norm(gradient0)))
    if np.linalg.norm(gradient0) <= gtol:
        return initial, states, ConvergenceReason.GRADIENT_CONVERGED, "initial point is optimal"

    def callback(intermediate_result):
        _record(states, *objective.value_and_gradient(intermediate_result.x))

    result = minimize(
        objective.value,
        initial,
        jac=objective.gradient,
        hessp=objective.hessian_vector,
        method="trust-ncg",
        callback=callback,
        options={"maxiter": config.max_iterations, "gtol": gtol},
    )
    if result.status == 0:
        reason = ConvergenceReason.GRADIENT_CONVERGED
    elif result.status == 1:
        reason = ConvergenceReason.MAX_ITERATIONS
    else:
        reason = ConvergenceReason.OPTIMIZER_FAILED
    return np.array(result.x, dtype=np.float64), states, reason, str(result.message)
