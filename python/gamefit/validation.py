"""
Input validation for GAME datasets.

Provides validation of sample ids, labels, feature matrices, weights, and
offsets before a dataset is built, to catch common data issues early with
actionable error messages. Follows patterns from statsmodels and scikit-learn.
"""

from __future__ import annotations

import warnings
from typing import Optional, Tuple

import numpy as np
from scipy import sparse

from gamefit.exceptions import ValidationError


__all__ = [
    "validate_sample_arrays",
    "validate_uids",
    "validate_labels",
    "validate_feature_matrix",
    "validate_weights",
    "validate_offsets",
    "coerce_to_float64",
]


# =============================================================================
# Array Coercion
# =============================================================================

def coerce_to_float64(
    arr: np.ndarray,
    name: str = "array",
    allow_nan: bool = False,
    allow_inf: bool = False,
) -> np.ndarray:
    """
    Coerce array to a 1-D float64 array, handling Decimal and other numeric types.

    Parameters
    ----------
    arr : np.ndarray
        Input array (may be object dtype with Decimal, mixed types, etc.)
    name : str
        Name for error messages.
    allow_nan : bool
        If False, raises on NaN values.
    allow_inf : bool
        If False, raises on Inf values.

    Returns
    -------
    np.ndarray
        Array coerced to float64.

    Raises
    ------
    ValidationError
        If array cannot be coerced or contains invalid values.
    """
    try:
        result = np.array(arr, dtype=np.float64)
    except (ValueError, TypeError) as e:
        raise ValidationError(
            f"{name} cannot be converted to numeric values. "
            f"Ensure all values are numeric (int, float, Decimal). Error: {e}"
        )

    if result.ndim != 1:
        raise ValidationError(f"{name} must be 1-dimensional, got shape {result.shape}.")

    nan_count = np.isnan(result).sum()
    if nan_count > 0 and not allow_nan:
        nan_pct = 100 * nan_count / len(result)
        raise ValidationError(
            f"{name} contains {nan_count} NaN values ({nan_pct:.1f}%). "
            "Either remove rows with missing values or impute them before training."
        )

    inf_count = np.isinf(result).sum()
    if inf_count > 0 and not allow_inf:
        raise ValidationError(
            f"{name} contains {inf_count} infinite values. "
            "Replace Inf/-Inf with finite values or remove those rows."
        )

    return result


# =============================================================================
# Sample Ids
# =============================================================================

def validate_uids(uids: np.ndarray, name: str = "sample ids") -> np.ndarray:
    """
    Validate unique sample ids.

    Sample ids key every score, so they must be integral and unique.
    """
    try:
        result = np.array(uids, dtype=np.int64)
    except (ValueError, TypeError, OverflowError) as e:
        raise ValidationError(f"{name} must be integers. Error: {e}")

    if result.ndim != 1:
        raise ValidationError(f"{name} must be 1-dimensional, got shape {result.shape}.")

    if len(np.unique(result)) != len(result):
        n_dup = len(result) - len(np.unique(result))
        raise ValidationError(
            f"{name} contain {n_dup} duplicates. Every sample needs a unique id so "
            "that scores from different coordinates can be joined."
        )
    return result


# =============================================================================
# Labels by Task
# =============================================================================

def validate_labels(
    labels: np.ndarray,
    task: str,
    name: str = "labels",
) -> np.ndarray:
    """
    Validate labels for the given task.

    Unlike a single GLM fit, a constant label vector is allowed here: one
    entity of a random effect may easily see only positives.

    Parameters
    ----------
    labels : np.ndarray
        Response values.
    task : str
        Task name ("logistic", "linear", "poisson" or their aliases).
    name : str
        Name for error messages.

    Returns
    -------
    np.ndarray
        Validated labels as float64.
    """
    labels = coerce_to_float64(labels, name)
    task_lower = task.lower()

    if task_lower in ("logistic", "binomial", "logistic_regression"):
        _validate_binary_labels(labels, name)
    elif task_lower in ("poisson", "poisson_regression"):
        _validate_count_labels(labels, name)

    return labels


def _validate_binary_labels(y: np.ndarray, name: str) -> None:
    """Logistic labels must be in [0, 1]."""
    if np.any(y < 0) or np.any(y > 1):
        n_invalid = np.sum((y < 0) | (y > 1))
        raise ValidationError(
            f"Logistic regression requires {name} in [0, 1]. "
            f"Found {n_invalid} values outside this range (min={y.min():.4g}, max={y.max():.4g}). "
            "Recode negatives (e.g. -1) to 0."
        )


def _validate_count_labels(y: np.ndarray, name: str) -> None:
    """Poisson labels must be non-negative."""
    if np.any(y < 0):
        n_neg = np.sum(y < 0)
        raise ValidationError(
            f"Poisson regression requires non-negative {name} (counts). "
            f"Found {n_neg} negative values."
        )

    if not np.allclose(y, np.round(y)):
        warnings.warn(
            f"Poisson {name} contain non-integer values. "
            "The Poisson loss still works but is designed for count data.",
            UserWarning
        )


# =============================================================================
# Feature Matrix
# =============================================================================

def validate_feature_matrix(
    features,
    n_obs: int,
    name: str = "features",
) -> sparse.csr_matrix:
    """
    Validate and convert a feature matrix to CSR.

    Dense arrays are converted; explicit zeros are dropped so that the
    stored column indices are exactly the features a sample uses.
    """
    if sparse.issparse(features):
        matrix = sparse.csr_matrix(features, dtype=np.float64, copy=True)
    else:
        dense = np.asarray(features, dtype=np.float64)
        if dense.ndim == 1:
            dense = dense.reshape(-1, 1)
        if dense.ndim != 2:
            raise ValidationError(
                f"{name} must be 2-dimensional (n_samples x n_features). Got shape {dense.shape}."
            )
        matrix = sparse.csr_matrix(dense)

    if matrix.shape[0] != n_obs:
        raise ValidationError(
            f"{name} has {matrix.shape[0]} rows but there are {n_obs} samples. They must match."
        )

    if not np.all(np.isfinite(matrix.data)):
        raise ValidationError(
            f"{name} contains NaN or infinite values. Replace them before building the dataset."
        )

    matrix.eliminate_zeros()
    matrix.sort_indices()
    return matrix


# =============================================================================
# Weights and Offsets
# =============================================================================

def validate_weights(
    weights: Optional[np.ndarray],
    n_obs: int,
    name: str = "weights",
) -> np.ndarray:
    """
    Validate observation weights, defaulting to ones.

    Returns
    -------
    np.ndarray
        Validated weights as float64.
    """
    if weights is None:
        return np.ones(n_obs, dtype=np.float64)

    weights = coerce_to_float64(weights, name)

    if len(weights) != n_obs:
        raise ValidationError(
            f"{name} length ({len(weights)}) does not match number of samples ({n_obs})."
        )

    if np.any(weights < 0):
        n_neg = np.sum(weights < 0)
        raise ValidationError(
            f"{name} contains {n_neg} negative values. "
            "Weights must be non-negative."
        )

    n_zero = np.sum(weights == 0)
    if n_obs > 0 and n_zero > 0:
        pct_zero = 100 * n_zero / n_obs
        if pct_zero > 50:
            warnings.warn(
                f"{pct_zero:.1f}% of {name} are zero. "
                "These samples will not contribute to the fit.",
                UserWarning
            )

    return weights


def validate_offsets(
    offsets: Optional[np.ndarray],
    n_obs: int,
    name: str = "offsets",
) -> np.ndarray:
    """Validate offsets, defaulting to zeros."""
    if offsets is None:
        return np.zeros(n_obs, dtype=np.float64)

    offsets = coerce_to_float64(offsets, name)

    if len(offsets) != n_obs:
        raise ValidationError(
            f"{name} length ({len(offsets)}) does not match number of samples ({n_obs})."
        )

    return offsets


# =============================================================================
# Combined Validation
# =============================================================================

def validate_sample_arrays(
    uids: np.ndarray,
    features,
    labels: np.ndarray,
    task: str,
    offsets: Optional[np.ndarray] = None,
    weights: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, sparse.csr_matrix, np.ndarray, np.ndarray, np.ndarray]:
    """
    Validate all sample columns before building a dataset.

    Returns
    -------
    tuple
        (uids, features, labels, offsets, weights) validated and coerced.

    Raises
    ------
    ValidationError
        If any validation check fails.
    """
    uids = validate_uids(uids)
    n_obs = len(uids)

    labels = validate_labels(labels, task)
    if len(labels) != n_obs:
        raise ValidationError(
            f"labels has {len(labels)} values but there are {n_obs} sample ids."
        )

    features = validate_feature_matrix(features, n_obs)
    offsets = validate_offsets(offsets, n_obs)
    weights = validate_weights(weights, n_obs)

    return uids, features, labels, offsets, weights
