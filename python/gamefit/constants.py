"""
Central configuration and constants for gamefit.

This module provides a single source of truth for all default values
and magic numbers used throughout the library.
"""

__all__ = [
    # Local optimizer
    "DEFAULT_MAX_ITER",
    "DEFAULT_TOLERANCE",
    "DEFAULT_REGULARIZATION_WEIGHT",
    "DEFAULT_ELASTIC_NET_ALPHA",
    "DEFAULT_LBFGS_HISTORY",
    # Coordinate descent
    "DEFAULT_NUM_ITERATIONS",
    "DEFAULT_DESCENT_TOLERANCE",
    "DEFAULT_PATIENCE",
    # Data
    "DEFAULT_NUM_PARTITIONS",
    # Feature indexing
    "GLOBAL_NAMESPACE",
    "FEATURE_KEY_DELIMITER",
    "NAME_TERM_DELIMITER",
    "INTERCEPT_NAME",
    "INTERCEPT_TERM",
    "INTERCEPT_KEY",
    "INDEX_FILE_PREFIX",
    "INDEX_FILE_SUFFIX",
    # Numerical Stability
    "EPSILON",
    "MAX_EXP_MARGIN",
]

# =============================================================================
# Local Optimizer Defaults
# =============================================================================
DEFAULT_MAX_ITER = 100
DEFAULT_TOLERANCE = 1e-6
DEFAULT_REGULARIZATION_WEIGHT = 1.0
DEFAULT_ELASTIC_NET_ALPHA = 0.5
DEFAULT_LBFGS_HISTORY = 10  # Number of correction pairs kept by L-BFGS

# =============================================================================
# Coordinate Descent Defaults
# =============================================================================
DEFAULT_NUM_ITERATIONS = 5
DEFAULT_DESCENT_TOLERANCE = 1e-5  # Relative training-loss improvement
DEFAULT_PATIENCE = 2

# =============================================================================
# Data Partitioning
# =============================================================================
DEFAULT_NUM_PARTITIONS = 4

# =============================================================================
# Feature Indexing
# =============================================================================
GLOBAL_NAMESPACE = "global"
FEATURE_KEY_DELIMITER = "\u0001"  # Between name and term inside an index key
NAME_TERM_DELIMITER = "\t"        # Between name and term in feature-set text files
INTERCEPT_NAME = "(INTERCEPT)"
INTERCEPT_TERM = ""
INTERCEPT_KEY = INTERCEPT_NAME + FEATURE_KEY_DELIMITER + INTERCEPT_TERM
INDEX_FILE_PREFIX = "part-"
INDEX_FILE_SUFFIX = ".tsv"

# =============================================================================
# Numerical Stability
# =============================================================================
EPSILON = 1e-10
MAX_EXP_MARGIN = 700.0  # exp() overflows float64 shortly above 709
