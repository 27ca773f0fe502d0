"""
Coordinates
===========

A coordinate is one block of the block coordinate-descent problem: it owns
one dataset and trains one kind of model. Both kinds expose the same
operations, so the driver treats them uniformly:

- ``score(model)`` → :class:`~gamefit.scores.Scores`, one value per sample
  (the model's contribution to the margin, without offsets).
- ``update_model(model, residual_scores)`` → ``(new_model, trace)``: retrain
  against the dataset with ``residual_scores`` (the other coordinates' current
  fit) added to the offsets. The input model is never modified.
- ``initialize_model()`` → the zero model of the right shape.

Fixed effect
------------
One coefficient vector over the whole dataset. The gradient and
Hessian-vector products are folded over partitions.

Random effect
-------------
One coefficient vector per entity. Every entity with rows in the dataset
(*active*) is retrained on its own rows only, warm-started from its previous
vector; entities in the previous model without rows (*passive*) are carried
over untouched. Entities never share data or state, so partitions are
trained independently.

Example
-------
>>> coordinate = RandomEffectCoordinate(dataset, "logistic", RandomEffectCoordinateConfig("userId"))
>>> model = coordinate.initialize_model()
>>> coordinate.score(model).is_all_zero()
True
>>> new_model, trace = coordinate.update_model(model)
>>> print(trace.summary())
"""

from __future__ import annotations

import logging
import time
import warnings
from concurrent.futures import Executor
from functools import partial
from typing import Dict, Hashable, Optional, Protocol, Tuple, runtime_checkable

import numpy as np
from scipy import sparse

from gamefit.config import (
    FixedEffectCoordinateConfig,
    RandomEffectCoordinateConfig,
    VarianceComputationType,
)
from gamefit.data import FixedEffectDataset, LocalDataset, RandomEffectDataset
from gamefit.diagnostics import (
    ConvergenceReason,
    CoordinateTrace,
    OptimizationTrace,
    RandomEffectTrace,
)
from gamefit.exceptions import (
    DimensionMismatch,
    OptimizationDivergence,
    ValidationError,
    wrap_dimension_error,
)
from gamefit.families import LossFamily, resolve_family
from gamefit.models import DatumModel, FixedEffectModel, RandomEffectModel
from gamefit.objective import GLMObjective
from gamefit.optimizer import minimize_objective
from gamefit.parallel import map_partitions
from gamefit.scores import Scores

logger = logging.getLogger(__name__)

__all__ = ["Coordinate", "FixedEffectCoordinate", "RandomEffectCoordinate"]


@runtime_checkable
class Coordinate(Protocol):
    """Interface shared by fixed-effect and random-effect coordinates."""

    def initialize_model(self) -> DatumModel: ...

    def score(self, model: DatumModel) -> Scores: ...

    def update_model(
        self,
        model: DatumModel,
        residual_scores: Optional[Scores] = None,
    ) -> Tuple[DatumModel, CoordinateTrace]: ...


def _contribution(features: sparse.csr_matrix, coefficients: np.ndarray) -> np.ndarray:
    """features · coefficients for a matrix whose used columns fit in the vector."""
    n_cols = features.shape[1]
    dim = len(coefficients)
    if n_cols > dim:
        features = features[:, :dim]
    elif n_cols < dim:
        coefficients = coefficients[:n_cols]
    return np.asarray(features @ coefficients, dtype=np.float64)


def _score_block(coefficients: np.ndarray, block: LocalDataset) -> np.ndarray:
    return _contribution(block.features, coefficients)


# =============================================================================
# Fixed Effect
# =============================================================================

class FixedEffectCoordinate:
    """
    Coordinate training one global GLM.

    Parameters
    ----------
    dataset : FixedEffectDataset
        All samples, partitioned.
    family : str or LossFamily
        "logistic", "linear" or "poisson".
    config : FixedEffectCoordinateConfig, optional
        Optimizer and variance settings.
    executor : concurrent.futures.Executor, optional
        Engine for the per-partition work.
    """

    def __init__(
        self,
        dataset: FixedEffectDataset,
        family="logistic",
        config: Optional[FixedEffectCoordinateConfig] = None,
        executor: Optional[Executor] = None,
    ):
        self.dataset = dataset
        self.family = resolve_family(family)
        self.config = config or FixedEffectCoordinateConfig(feature_shard_id=dataset.feature_shard_id)
        self.executor = executor

    def initialize_model(self) -> FixedEffectModel:
        return FixedEffectModel.zeros(self.dataset.dimension, self.dataset.feature_shard_id)

    def _check_model(self, model: FixedEffectModel) -> None:
        if not isinstance(model, FixedEffectModel):
            raise ValidationError(
                f"FixedEffectCoordinate needs a FixedEffectModel, got {type(model).__name__}."
            )
        max_index = self.dataset.max_feature_index()
        if max_index >= model.dimension:
            raise wrap_dimension_error(
                max_index, model.dimension, f"Fixed-effect shard '{self.dataset.feature_shard_id}'."
            )

    def score(self, model: FixedEffectModel) -> Scores:
        """Contribution ``x·β`` of the model for every sample."""
        self._check_model(model)
        coefficients = model.coefficients
        parts = map_partitions(
            partial(_score_block, coefficients), self.dataset.partitions, self.executor
        )
        return Scores(self.dataset.uids, np.concatenate(parts))

    def update_model(
        self,
        model: FixedEffectModel,
        residual_scores: Optional[Scores] = None,
    ) -> Tuple[FixedEffectModel, OptimizationTrace]:
        """Retrain the global coefficients, warm-started from ``model``."""
        self._check_model(model)
        if model.dimension != self.dataset.dimension:
            raise DimensionMismatch(
                f"Model has {model.dimension} coefficients but shard "
                f"'{self.dataset.feature_shard_id}' has {self.dataset.dimension} features."
            )

        dataset = self.dataset.add_scores_to_offsets(residual_scores)
        optimizer_config = self.config.optimizer
        objective = GLMObjective(
            self.family,
            dataset.partitions,
            l2_weight=optimizer_config.l2_weight,
            executor=self.executor,
        )
        coefficients, trace = minimize_objective(objective, model.coefficients, optimizer_config)

        variances = None
        if self.config.variance_computation == VarianceComputationType.SIMPLE:
            diagonal = objective.hessian_diagonal(coefficients)
            with np.errstate(divide="ignore"):
                variances = np.where(diagonal > 0, 1.0 / diagonal, np.inf)

        if not trace.converged:
            warnings.warn(
                OptimizationDivergence(
                    f"Fixed-effect optimization on shard '{self.dataset.feature_shard_id}' did not converge "
                    f"({trace.convergence_reason} after {trace.iterations} iterations): {trace.message}"
                ),
                stacklevel=2,
            )
        logger.info("Fixed effect [%s]: %s", self.dataset.feature_shard_id, trace.summary())

        return FixedEffectModel(coefficients, model.feature_shard_id, variances), trace

    def __repr__(self) -> str:
        return f"FixedEffectCoordinate({self.dataset!r}, family={self.family.name!r})"


# =============================================================================
# Random Effect
# =============================================================================
#
# Partition handlers are module-level and receive plain dicts so that a
# process pool can pickle them.

def _score_entity_partition(item) -> Tuple[np.ndarray, np.ndarray]:
    partition, coefficients = item
    uids, values = [], []
    for entity_id, block in partition.items():
        uids.append(block.uids)
        if entity_id in coefficients:
            values.append(_contribution(block.features, coefficients[entity_id]))
        else:
            values.append(np.zeros(block.n_samples))
    if not uids:
        return np.empty(0, dtype=np.int64), np.empty(0)
    return np.concatenate(uids), np.concatenate(values)


def _fit_entity(
    family: LossFamily,
    config: RandomEffectCoordinateConfig,
    dimension: int,
    entity_id: Hashable,
    block: LocalDataset,
    warm_start: Optional[np.ndarray],
) -> Tuple[np.ndarray, OptimizationTrace]:
    optimizer_config = config.optimizer_for(entity_id)
    if config.active_data_upper_bound is not None:
        block = block.downsample(config.active_data_upper_bound)
    initial = np.zeros(dimension) if warm_start is None else warm_start
    objective = GLMObjective(family, [block], l2_weight=optimizer_config.l2_weight)
    return minimize_objective(objective, initial, optimizer_config)


def _train_entity_partition(family: LossFamily, config: RandomEffectCoordinateConfig, dimension: int, item):
    partition, warm_starts = item
    coefficients, traces = {}, {}
    for entity_id, block in partition.items():
        coefficients[entity_id], traces[entity_id] = _fit_entity(
            family, config, dimension, entity_id, block, warm_starts.get(entity_id)
        )
    return coefficients, traces


class RandomEffectCoordinate:
    """
    Coordinate training one independent GLM per entity.

    Parameters
    ----------
    dataset : RandomEffectDataset
        Samples grouped by entity, each entity in one partition.
    family : str or LossFamily
        "logistic", "linear" or "poisson".
    config : RandomEffectCoordinateConfig, optional
        Shared optimizer settings, per-entity overrides and the active data cap.
    executor : concurrent.futures.Executor, optional
        Engine for the per-partition work.
    """

    def __init__(
        self,
        dataset: RandomEffectDataset,
        family="logistic",
        config: Optional[RandomEffectCoordinateConfig] = None,
        executor: Optional[Executor] = None,
    ):
        self.dataset = dataset
        self.family = resolve_family(family)
        self.config = config or RandomEffectCoordinateConfig(
            random_effect_type=dataset.random_effect_type,
            feature_shard_id=dataset.feature_shard_id,
        )
        if self.config.random_effect_type != dataset.random_effect_type:
            raise ValidationError(
                f"Config is for random effect '{self.config.random_effect_type}' but the dataset "
                f"holds '{dataset.random_effect_type}'."
            )
        self.executor = executor

    def initialize_model(self) -> RandomEffectModel:
        return RandomEffectModel.empty(
            self.dataset.random_effect_type,
            self.dataset.dimension,
            self.dataset.feature_shard_id,
        )

    def _check_model(self, model: RandomEffectModel) -> None:
        if not isinstance(model, RandomEffectModel):
            raise ValidationError(
                f"RandomEffectCoordinate needs a RandomEffectModel, got {type(model).__name__}."
            )
        if model.random_effect_type != self.dataset.random_effect_type:
            raise ValidationError(
                f"Model is for random effect '{model.random_effect_type}' but the dataset "
                f"holds '{self.dataset.random_effect_type}'."
            )
        max_index = self.dataset.max_feature_index()
        if max_index >= model.dimension:
            raise wrap_dimension_error(
                max_index, model.dimension, f"Random effect '{self.dataset.random_effect_type}'."
            )

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score(self, model: RandomEffectModel) -> Scores:
        """
        Contribution of each sample's entity model.

        Samples whose entity has no vector in ``model`` score 0.
        """
        self._check_model(model)
        items = [
            (partition, {e: model.get(e) for e in partition if e in model})
            for partition in self.dataset.partitions
        ]
        parts = map_partitions(_score_entity_partition, items, self.executor)
        return Scores(
            np.concatenate([u for u, _ in parts]),
            np.concatenate([v for _, v in parts]),
        )

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def update_model(
        self,
        model: RandomEffectModel,
        residual_scores: Optional[Scores] = None,
    ) -> Tuple[RandomEffectModel, RandomEffectTrace]:
        """
        Retrain every active entity and carry passive entities over.
        """
        self._check_model(model)
        if model.dimension != self.dataset.dimension:
            raise DimensionMismatch(
                f"Model has {model.dimension} coefficients per entity but random effect "
                f"'{self.dataset.random_effect_type}' has {self.dataset.dimension} features."
            )
        start = time.perf_counter()
        dataset = self.dataset.add_scores_to_offsets(residual_scores)

        items = [
            (partition, {e: model.get(e) for e in partition if e in model})
            for partition in dataset.partitions
        ]
        results = map_partitions(
            partial(_train_entity_partition, self.family, self.config, self.dataset.dimension),
            items,
            self.executor,
        )

        # Passive entities keep their previous (frozen) vectors
        new_coefficients: Dict[Hashable, np.ndarray] = dict(model.coefficients)
        entity_traces: Dict[Hashable, OptimizationTrace] = {}
        for coefficients, traces in results:
            new_coefficients.update(coefficients)
            entity_traces.update(traces)
        n_passive = sum(1 for e in model if e not in entity_traces)

        trace = RandomEffectTrace(
            random_effect_type=self.dataset.random_effect_type,
            entity_traces=entity_traces,
            n_passive=n_passive,
            elapsed_seconds=time.perf_counter() - start,
        )
        n_failed = trace.n_active - trace.n_converged
        if n_failed:
            logger.warning(
                "Random effect [%s]: %d of %d entities did not converge (%s)",
                self.dataset.random_effect_type, n_failed, trace.n_active,
                ", ".join(
                    f"{reason}={count}" for reason, count in sorted(trace.convergence_reasons().items())
                    if reason not in ConvergenceReason.SUCCESSFUL
                ),
            )
        logger.info("Random effect [%s]: %s", self.dataset.random_effect_type, trace.summary())

        new_model = RandomEffectModel(
            new_coefficients,
            model.random_effect_type,
            model.dimension,
            model.feature_shard_id,
        )
        return new_model, trace

    def __repr__(self) -> str:
        return f"RandomEffectCoordinate({self.dataset!r}, family={self.family.name!r})"
