"""
Tests for Input Validation
==========================

Bad sample columns fail with clear ValidationError messages before any
dataset is built.
"""

from decimal import Decimal

import numpy as np
import pytest

import gamefit as gf
from gamefit.validation import (
    coerce_to_float64,
    validate_feature_matrix,
    validate_labels,
    validate_sample_arrays,
    validate_uids,
    validate_weights,
)


class TestCoercion:

    def test_decimal_values(self):
        result = coerce_to_float64(np.array([Decimal("1.5"), Decimal("2")], dtype=object))
        assert result.dtype == np.float64
        np.testing.assert_array_equal(result, [1.5, 2.0])

    def test_nan_rejected(self):
        with pytest.raises(gf.ValidationError, match="NaN"):
            coerce_to_float64([1.0, np.nan], "offsets")

    def test_inf_rejected(self):
        with pytest.raises(gf.ValidationError, match="infinite"):
            coerce_to_float64([1.0, np.inf])

    def test_text_rejected(self):
        with pytest.raises(gf.ValidationError, match="numeric"):
            coerce_to_float64(["a", "b"])


class TestSampleColumns:

    def test_uids_must_be_unique(self):
        with pytest.raises(gf.ValidationError, match="1 duplicates"):
            validate_uids([1, 2, 2])

    def test_logistic_labels_range(self):
        with pytest.raises(gf.ValidationError, match="Recode"):
            validate_labels([0, 1, 2], "logistic")

    def test_constant_labels_allowed(self):
        np.testing.assert_array_equal(validate_labels([1, 1, 1], "logistic"), [1.0, 1.0, 1.0])

    def test_poisson_negative(self):
        with pytest.raises(gf.ValidationError, match="non-negative"):
            validate_labels([1, -1], "poisson")

    def test_poisson_non_integer_warns(self):
        with pytest.warns(UserWarning, match="non-integer"):
            validate_labels([0.5, 1.0], "poisson")

    def test_negative_weights(self):
        with pytest.raises(gf.ValidationError, match="negative"):
            validate_weights([1.0, -1.0], 2)

    def test_mostly_zero_weights_warn(self):
        with pytest.warns(UserWarning, match="zero"):
            validate_weights([0.0, 0.0, 1.0], 3)


class TestFeatureMatrix:

    def test_dense_becomes_csr_without_zeros(self):
        matrix = validate_feature_matrix(np.array([[1.0, 0.0], [0.0, 2.0]]), 2)
        assert matrix.format == "csr"
        assert matrix.nnz == 2

    def test_row_count_mismatch(self):
        with pytest.raises(gf.ValidationError, match="rows"):
            validate_feature_matrix(np.ones((3, 2)), 2)

    def test_nan_in_features(self):
        with pytest.raises(gf.ValidationError, match="NaN"):
            validate_feature_matrix(np.array([[np.nan]]), 1)

    def test_combined(self):
        uids, X, y, offsets, weights = validate_sample_arrays([5, 6], np.eye(2), [0, 1], "logistic")
        assert X.shape == (2, 2)
        np.testing.assert_array_equal(offsets, [0.0, 0.0])
        np.testing.assert_array_equal(weights, [1.0, 1.0])

    def test_combined_label_length(self):
        with pytest.raises(gf.ValidationError, match="labels has 3 values"):
            validate_sample_arrays([5, 6], np.eye(2), [0, 1, 1], "logistic")
