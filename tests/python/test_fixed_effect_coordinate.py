"""
Tests for the Fixed-Effect Coordinate
=====================================
"""

import warnings
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor

import numpy as np
import pytest

import gamefit as gf


class TestFixedEffectScoring:
    """score() is pure and covers every sample once."""

    def test_zero_model_scores_zero(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        scores = coordinate.score(coordinate.initialize_model())

        assert scores.is_all_zero()

    def test_one_score_per_sample(self, game_data, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        scores = coordinate.score(gf.FixedEffectModel(np.ones(10)))

        assert len(scores) == fixed_dataset.n_samples
        np.testing.assert_array_equal(scores.uids, np.sort(game_data["uids"]))

    def test_scores_are_dot_products(self, game_data, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        beta = np.linspace(-1, 1, 10)

        scores = coordinate.score(gf.FixedEffectModel(beta))

        np.testing.assert_allclose(scores.lookup(game_data["uids"]), game_data["X"] @ beta)

    def test_deterministic(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model = gf.FixedEffectModel(np.arange(10, dtype=float))

        assert coordinate.score(model).equals(coordinate.score(model))

    def test_short_model_raises_dimension_mismatch(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        with pytest.raises(gf.DimensionMismatch, match="out of range"):
            coordinate.score(gf.FixedEffectModel(np.zeros(5)))

    def test_longer_model_is_allowed(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        beta = np.concatenate([np.ones(10), [5.0, 5.0]])

        scores = coordinate.score(gf.FixedEffectModel(beta))
        expected = coordinate.score(gf.FixedEffectModel(np.ones(10)))

        assert scores.allclose(expected)


class TestFixedEffectUpdate:
    """update_model() retrains against the residual."""

    def test_update_learns_something(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model = coordinate.initialize_model()

        new_model, trace = coordinate.update_model(model)

        assert not coordinate.score(new_model).is_all_zero()
        assert trace.converged
        assert trace.final_value < trace.initial_value

    def test_input_model_untouched(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model = gf.FixedEffectModel(np.full(10, 0.01))

        new_model, _ = coordinate.update_model(model)

        np.testing.assert_array_equal(model.coefficients, np.full(10, 0.01))
        assert new_model is not model

    def test_residual_changes_the_fit(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model = coordinate.initialize_model()
        residual = gf.Scores(fixed_dataset.uids, np.full(fixed_dataset.n_samples, 3.0))

        plain, _ = coordinate.update_model(model)
        shifted, _ = coordinate.update_model(model, residual)

        # A large positive offset pushes the intercept down
        assert shifted.coefficients[0] < plain.coefficients[0]

    def test_dataset_unchanged_by_residual(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        residual = gf.Scores(fixed_dataset.uids, np.ones(fixed_dataset.n_samples))

        coordinate.update_model(coordinate.initialize_model(), residual)

        for block in coordinate.dataset.partitions:
            np.testing.assert_array_equal(block.offsets, np.zeros(block.n_samples))

    def test_simple_variances(self, fixed_dataset):
        config = gf.FixedEffectCoordinateConfig(variance_computation="simple")
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic", config)

        model, _ = coordinate.update_model(coordinate.initialize_model())

        assert model.variances is not None
        assert model.variances.shape == (10,)
        assert np.all(model.variances > 0)
        assert np.all(np.isfinite(model.variances))

    def test_no_variances_by_default(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model, _ = coordinate.update_model(coordinate.initialize_model())
        assert model.variances is None

    def test_non_convergence_warns(self, fixed_dataset):
        config = gf.FixedEffectCoordinateConfig(
            optimizer=gf.OptimizerConfig(max_iterations=1, regularization_type="none")
        )
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic", config)

        with pytest.warns(gf.OptimizationDivergence, match=r"did not converge \(max_iterations"):
            model, trace = coordinate.update_model(coordinate.initialize_model())

        assert not trace.converged
        assert not coordinate.score(model).is_all_zero()

    def test_wrong_dimension_model_raises(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        with pytest.raises(gf.DimensionMismatch):
            coordinate.update_model(gf.FixedEffectModel(np.zeros(12)))

    def test_wrong_model_type_raises(self, fixed_dataset):
        coordinate = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        with pytest.raises(gf.ValidationError):
            coordinate.update_model(gf.RandomEffectModel.empty("userId", 10))

    def test_executor_matches_sequential(self, fixed_dataset):
        sequential = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model_seq, _ = sequential.update_model(sequential.initialize_model())

        with ThreadPoolExecutor(max_workers=4) as executor:
            threaded = gf.FixedEffectCoordinate(fixed_dataset, "logistic", executor=executor)
            model_thr, _ = threaded.update_model(threaded.initialize_model())

        np.testing.assert_allclose(model_thr.coefficients, model_seq.coefficients, rtol=1e-10)

    def test_process_pool_matches_sequential(self, fixed_dataset):
        sequential = gf.FixedEffectCoordinate(fixed_dataset, "logistic")
        model_seq, _ = sequential.update_model(sequential.initialize_model())

        with ProcessPoolExecutor(max_workers=2) as executor:
            pooled = gf.FixedEffectCoordinate(fixed_dataset, "logistic", executor=executor)
            model_pool, trace = pooled.update_model(pooled.initialize_model())
            scores_pool = pooled.score(model_pool)

        assert trace.converged
        np.testing.assert_allclose(model_pool.coefficients, model_seq.coefficients, rtol=1e-10)
        assert scores_pool.allclose(sequential.score(model_seq))

    def test_tron_matches_lbfgs(self, fixed_dataset):
        lbfgs = gf.FixedEffectCoordinate(
            fixed_dataset, "logistic",
            gf.FixedEffectCoordinateConfig(optimizer=gf.OptimizerConfig(tolerance=1e-10)),
        )
        tron = gf.FixedEffectCoordinate(
            fixed_dataset, "logistic",
            gf.FixedEffectCoordinateConfig(optimizer=gf.OptimizerConfig(optimizer_type="tron", tolerance=1e-8)),
        )

        model_lbfgs, _ = lbfgs.update_model(lbfgs.initialize_model())
        with warnings.catch_warnings():
            warnings.simplefilter("error", gf.OptimizationDivergence)
            model_tron, trace = tron.update_model(tron.initialize_model())

        assert trace.optimizer == "tron"
        np.testing.assert_allclose(model_tron.coefficients, model_lbfgs.coefficients, atol=1e-3)

    def test_is_a_coordinate(self, fixed_dataset):
        assert isinstance(gf.FixedEffectCoordinate(fixed_dataset), gf.Coordinate)
