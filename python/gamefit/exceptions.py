"""
Custom exceptions for gamefit with actionable error messages.

This module provides a hierarchy of exceptions that give users clear
guidance on how to resolve issues.
"""

__all__ = [
    "GameFitError",
    "ConfigurationError",
    "DimensionMismatch",
    "ParseError",
    "ValidationError",
    "OptimizationDivergence",
    "wrap_dimension_error",
]


class GameFitError(Exception):
    """Base exception for all gamefit errors."""
    pass


class ConfigurationError(GameFitError):
    """
    Malformed job or optimizer parameters.

    Raised before any partition work starts.

    Common causes:
    - Missing required output or input directory
    - Unparsable date range (expected yyyyMMdd-yyyyMMdd)
    - Unknown field-name type
    - Malformed shard-to-section map string
    - Optimizer settings that do not combine (e.g. TRON with L1)
    """
    pass


class DimensionMismatch(GameFitError):
    """
    A sample references a feature index beyond the model's coefficients.

    This is fatal and is never retried: it means the feature index map used
    to vectorize the data differs from the one the model was trained with.

    Check:
    - Training and scoring used the same index map
    - The coordinate's feature shard id matches the model's
    """
    pass


class ParseError(GameFitError):
    """
    Malformed persisted text.

    A record that cannot be parsed aborts the read rather than being
    dropped, so no rows are lost silently.
    """
    pass


class ValidationError(GameFitError):
    """
    Input validation error.

    Common causes:
    - NaN or infinite values in labels, offsets or weights
    - Incompatible array shapes
    - Labels outside the range of the task (e.g. logistic labels not in {0, 1})
    - Duplicate sample ids
    """
    pass


class OptimizationDivergence(GameFitError, RuntimeWarning):
    """
    The local optimizer did not converge within its iteration budget.

    This is not fatal. The non-converged iterate is kept, the event is
    recorded in the optimization trace, and (for fixed effects) emitted as a
    warning. Random-effect coordinates count these per entity.

    Try:
    - Increasing max_iterations
    - Increasing the regularization weight
    - Scaling the features
    """
    pass


def wrap_dimension_error(
    max_index: int,
    dimension: int,
    context: str = "",
) -> DimensionMismatch:
    """
    Build a DimensionMismatch with an actionable message.

    Parameters
    ----------
    max_index : int
        Largest feature index found in the data.
    dimension : int
        Length of the model's coefficient vector.
    context : str
        Additional context about what was being scored.

    Returns
    -------
    DimensionMismatch
    """
    return DimensionMismatch(
        f"Feature index {max_index} is out of range for a model with "
        f"{dimension} coefficients. The data was probably vectorized with a "
        f"different index map than the one used to train this model.\n"
        f"{context}"
    )
