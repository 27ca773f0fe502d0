"""
gamefit: Generalized Additive Mixed-Effect Models by Coordinate Descent
======================================================================

A GAME model adds a global ("fixed-effect") GLM to many small per-entity
("random-effect") GLMs, e.g. one model per user and one per item. The
models are fit jointly by block coordinate descent: each coordinate in turn
is retrained against the current fit of all the others.

Quick Start
-----------
>>> import gamefit as gf
>>> import numpy as np
>>>
>>> fixed_data = gf.FixedEffectDataset.from_arrays(uids, X, y, num_partitions=4)
>>> user_data = gf.RandomEffectDataset.from_arrays(
...     uids, user_ids, X_user, y, random_effect_type="userId", num_partitions=4
... )
>>> descent = gf.CoordinateDescent({
...     "global": gf.FixedEffectCoordinate(fixed_data, "logistic"),
...     "per-user": gf.RandomEffectCoordinate(user_data, "logistic"),
... }, num_iterations=5)
>>> result = descent.run()
>>> print(result.summary())

Available Families
------------------
- **logistic**: Binary labels (0/1)
- **linear**: Continuous labels, squared loss
- **poisson**: Count labels, log rate

Parallelism
-----------
Every coordinate accepts an optional ``concurrent.futures.Executor``. Work
is split by partition; random-effect entities never span partitions, so
each entity's model is trained by one worker.

Logging
-------
gamefit logs through the standard ``logging`` module under the ``gamefit``
logger and installs no handlers. Enable progress output with
``logging.basicConfig(level=logging.INFO)``.
"""

import logging

# Version of the package
__version__ = "0.1.0"

from gamefit import families
from gamefit.config import (
    FeatureIndexingConfig,
    FieldNamesType,
    FixedEffectCoordinateConfig,
    OptimizerConfig,
    OptimizerType,
    RandomEffectCoordinateConfig,
    VarianceComputationType,
)
from gamefit.coordinates import Coordinate, FixedEffectCoordinate, RandomEffectCoordinate
from gamefit.data import FixedEffectDataset, LocalDataset, RandomEffectDataset
from gamefit.descent import CoordinateDescent, CoordinateDescentResult
from gamefit.evaluation import (
    AUCEvaluator,
    Evaluator,
    LogisticLossEvaluator,
    PoissonLossEvaluator,
    RMSEEvaluator,
    SquaredLossEvaluator,
    evaluator_for_task,
)
from gamefit.exceptions import (
    ConfigurationError,
    DimensionMismatch,
    GameFitError,
    OptimizationDivergence,
    ParseError,
    ValidationError,
)
from gamefit.indexing import IndexMap, NameAndTerm, NameAndTermFeatureSetContainer, build_index_maps, vectorize
from gamefit.models import FixedEffectModel, GameModel, RandomEffectModel
from gamefit.objective import RegularizationType
from gamefit.scores import Scores

logging.getLogger(__name__).addHandler(logging.NullHandler())

# What gets exported when someone does `from gamefit import *`
__all__ = [
    # Version
    "__version__",
    # Driver
    "CoordinateDescent",
    "CoordinateDescentResult",
    # Coordinates
    "Coordinate",
    "FixedEffectCoordinate",
    "RandomEffectCoordinate",
    # Data and models
    "LocalDataset",
    "FixedEffectDataset",
    "RandomEffectDataset",
    "FixedEffectModel",
    "RandomEffectModel",
    "GameModel",
    "Scores",
    # Configuration
    "OptimizerConfig",
    "OptimizerType",
    "RegularizationType",
    "VarianceComputationType",
    "FixedEffectCoordinateConfig",
    "RandomEffectCoordinateConfig",
    "FeatureIndexingConfig",
    "FieldNamesType",
    # Evaluation
    "Evaluator",
    "LogisticLossEvaluator",
    "PoissonLossEvaluator",
    "SquaredLossEvaluator",
    "RMSEEvaluator",
    "AUCEvaluator",
    "evaluator_for_task",
    # Feature indexing
    "NameAndTerm",
    "NameAndTermFeatureSetContainer",
    "IndexMap",
    "build_index_maps",
    "vectorize",
    # Sub-modules
    "families",
    # Exceptions
    "GameFitError",
    "ConfigurationError",
    "DimensionMismatch",
    "ParseError",
    "ValidationError",
    "OptimizationDivergence",
]
