"""
Tests for the Local Optimizer
=============================

L-BFGS (with L1 via variable splitting) and TRON on problems with known
solutions.
"""

import numpy as np
import pytest
from scipy import sparse

import gamefit as gf
from gamefit.data import LocalDataset
from gamefit.diagnostics import ConvergenceReason
from gamefit.objective import GLMObjective
from gamefit.optimizer import _lbfgs_reason, minimize_objective


def _regression_block(n=200, p=5, seed=1):
    rng = np.random.RandomState(seed)
    X = np.column_stack([np.ones(n), rng.randn(n, p - 1)])
    y = X @ np.array([1.0, 2.0, -1.0, 0.5, 0.0]) + rng.randn(n) * 0.1
    block = LocalDataset(
        uids=np.arange(n, dtype=np.int64),
        features=sparse.csr_matrix(X),
        labels=y,
        offsets=np.zeros(n),
        weights=np.ones(n),
    )
    return block, X, y


def _logistic_block(n=300, p=6, seed=2):
    rng = np.random.RandomState(seed)
    X = np.column_stack([np.ones(n), rng.randn(n, p - 1)])
    prob = 1 / (1 + np.exp(-(X @ rng.randn(p))))
    y = (rng.rand(n) < prob).astype(float)
    return LocalDataset(
        uids=np.arange(n, dtype=np.int64),
        features=sparse.csr_matrix(X),
        labels=y,
        offsets=np.zeros(n),
        weights=np.ones(n),
    )


def _ridge_solution(X, y, lam):
    return np.linalg.solve(X.T @ X + lam * np.eye(X.shape[1]), X.T @ y)


class TestLBFGS:
    """Quasi-Newton optimizer with smooth penalties."""

    def test_matches_ridge_closed_form(self):
        block, X, y = _regression_block()
        config = gf.OptimizerConfig(tolerance=1e-10, regularization_weight=2.0)
        objective = GLMObjective("linear", [block], l2_weight=config.l2_weight)

        coef, trace = minimize_objective(objective, np.zeros(5), config)

        np.testing.assert_allclose(coef, _ridge_solution(X, y, 2.0), atol=1e-4)
        assert trace.converged
        assert trace.optimizer == "lbfgs"

    def test_objective_decreases(self):
        block = _logistic_block()
        config = gf.OptimizerConfig()
        objective = GLMObjective("logistic", [block], l2_weight=config.l2_weight)

        _, trace = minimize_objective(objective, np.zeros(6), config)

        assert trace.final_value < trace.initial_value
        assert trace.states[0].iteration == 0
        assert trace.iterations >= 1

    def test_does_not_modify_warm_start(self):
        block = _logistic_block()
        initial = np.full(6, 0.1)
        objective = GLMObjective("logistic", [block], l2_weight=1.0)

        coef, _ = minimize_objective(objective, initial, gf.OptimizerConfig())

        np.testing.assert_array_equal(initial, np.full(6, 0.1))
        assert coef is not initial

    def test_iteration_budget_is_not_converged(self):
        block = _logistic_block()
        config = gf.OptimizerConfig(max_iterations=1, regularization_type="none")
        objective = GLMObjective("logistic", [block])

        _, trace = minimize_objective(objective, np.zeros(6), config)

        assert not trace.converged
        assert trace.convergence_reason == ConvergenceReason.MAX_ITERATIONS

    def test_warm_start_at_optimum_stops_quickly(self):
        block = _logistic_block()
        config = gf.OptimizerConfig(tolerance=1e-8)
        objective = GLMObjective("logistic", [block], l2_weight=config.l2_weight)

        coef, first = minimize_objective(objective, np.zeros(6), config)
        _, second = minimize_objective(objective, coef, config)

        assert second.converged
        assert second.final_value <= first.final_value + 1e-9
        assert second.initial_value == pytest.approx(first.final_value)


class TestLBFGSWithL1:
    """L1 and elastic net through u - v splitting."""

    def test_large_l1_penalty_gives_exact_zeros(self):
        block, _, _ = _regression_block()
        config = gf.OptimizerConfig(regularization_type="l1", regularization_weight=1e6)
        objective = GLMObjective("linear", [block], l2_weight=config.l2_weight)

        coef, trace = minimize_objective(objective, np.zeros(5), config)

        np.testing.assert_array_equal(coef, np.zeros(5))
        assert trace.converged

    def test_l1_shrinks_towards_zero(self):
        block, _, _ = _regression_block()
        unpenalized = gf.OptimizerConfig(regularization_type="none", tolerance=1e-10)
        lasso = gf.OptimizerConfig(regularization_type="l1", regularization_weight=50.0, tolerance=1e-10)

        coef_ols, _ = minimize_objective(GLMObjective("linear", [block]), np.zeros(5), unpenalized)
        coef_l1, _ = minimize_objective(GLMObjective("linear", [block]), np.zeros(5), lasso)

        assert np.abs(coef_l1).sum() < np.abs(coef_ols).sum()

    def test_trace_reports_penalized_objective(self):
        block, _, _ = _regression_block()
        config = gf.OptimizerConfig(regularization_type="elastic_net", regularization_weight=4.0)
        objective = GLMObjective("linear", [block], l2_weight=config.l2_weight)

        coef, trace = minimize_objective(objective, np.zeros(5), config)

        expected = objective.value(coef) + config.l1_weight * np.abs(coef).sum()
        assert trace.final_value == pytest.approx(expected, rel=1e-6)


class TestTRON:
    """Trust-region Newton with Hessian-vector products."""

    def test_matches_ridge_closed_form(self):
        block, X, y = _regression_block()
        config = gf.OptimizerConfig(optimizer_type="tron", tolerance=1e-8, regularization_weight=2.0)
        objective = GLMObjective("linear", [block], l2_weight=config.l2_weight)

        coef, trace = minimize_objective(objective, np.zeros(5), config)

        np.testing.assert_allclose(coef, _ridge_solution(X, y, 2.0), atol=1e-5)
        assert trace.converged
        assert trace.optimizer == "tron"

    def test_agrees_with_lbfgs_on_logistic(self):
        block = _logistic_block()
        tron = gf.OptimizerConfig(optimizer_type="tron", tolerance=1e-9)
        lbfgs = gf.OptimizerConfig(tolerance=1e-12)

        coef_tron, _ = minimize_objective(GLMObjective("logistic", [block], l2_weight=1.0), np.zeros(6), tron)
        coef_lbfgs, _ = minimize_objective(GLMObjective("logistic", [block], l2_weight=1.0), np.zeros(6), lbfgs)

        np.testing.assert_allclose(coef_tron, coef_lbfgs, atol=1e-4)

    def test_tron_rejects_l1(self):
        with pytest.raises(gf.ConfigurationError, match="TRON"):
            gf.OptimizerConfig(optimizer_type="tron", regularization_type="l1")


class TestNoData:
    """An empty block is returned unchanged."""

    def test_empty_block(self):
        block = LocalDataset(
            uids=np.empty(0, dtype=np.int64),
            features=sparse.csr_matrix((0, 3)),
            labels=np.empty(0),
            offsets=np.empty(0),
            weights=np.empty(0),
        )
        initial = np.array([1.0, 2.0, 3.0])

        coef, trace = minimize_objective(GLMObjective("logistic", [block]), initial, gf.OptimizerConfig())

        np.testing.assert_array_equal(coef, initial)
        assert trace.converged
        assert trace.convergence_reason == ConvergenceReason.NO_DATA


class TestFailureReporting:
    """Only a genuine solver success counts as converged."""

    @pytest.mark.parametrize("status, message, reason", [
        (0, "CONVERGENCE: NORM OF PROJECTED GRADIENT <= PGTOL", ConvergenceReason.GRADIENT_CONVERGED),
        (0, "CONVERGENCE: REL_REDUCTION_OF_F <= FACTR*EPSMCH", ConvergenceReason.FUNCTION_VALUES_CONVERGED),
        (1, "STOP: TOTAL NO. OF ITERATIONS REACHED LIMIT", ConvergenceReason.MAX_ITERATIONS),
        (2, "ABNORMAL_TERMINATION_IN_LNSRCH", ConvergenceReason.OPTIMIZER_FAILED),
    ])
    def test_lbfgs_status_mapping(self, status, message, reason):
        assert _lbfgs_reason(status, message) == reason

    def test_max_iterations_is_not_converged(self):
        block = _logistic_block()
        config = gf.OptimizerConfig(max_iterations=1, regularization_type="none")

        _, trace = minimize_objective(GLMObjective("logistic", [block]), np.zeros(6), config)

        assert trace.convergence_reason == ConvergenceReason.MAX_ITERATIONS
        assert not trace.converged

    @pytest.mark.filterwarnings("ignore::RuntimeWarning")
    @pytest.mark.parametrize("optimizer_type", ["lbfgs", "tron"])
    def test_non_finite_objective_returns_warm_start(self, optimizer_type):
        n = 4
        block = LocalDataset(
            uids=np.arange(n, dtype=np.int64),
            features=sparse.csr_matrix(np.ones((n, 2))),
            labels=np.ones(n),
            offsets=np.full(n, 1e200),
            weights=np.ones(n),
        )
        initial = np.array([0.25, -0.25])
        config = gf.OptimizerConfig(optimizer_type=optimizer_type)

        coef, trace = minimize_objective(GLMObjective("linear", [block]), initial, config)

        np.testing.assert_array_equal(coef, initial)
        assert not trace.converged
        assert trace.convergence_reason == ConvergenceReason.NON_FINITE_OBJECTIVE
