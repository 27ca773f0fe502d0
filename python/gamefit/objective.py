"""
Regularized GLM Objective
=========================

The objective minimized by every coordinate is

    F(β) = Σᵢ wᵢ · l(xᵢ·β + offsetᵢ, yᵢ)  +  (λ₂ / 2) · ||β||²

where ``l`` is the pointwise loss of a :mod:`gamefit.families` family. L1
penalties are not smooth and are handled by the optimizer, see
:mod:`gamefit.optimizer`.

The data term is a sum over samples, so it is computed per partition and
combined with an explicit fold. Each partition produces an
:class:`ObjectiveAccumulator` ``(value, gradient, count)``; accumulators add
associatively, which makes the reduction independent of how partitions are
executed (sequentially, in a thread pool, or in a process pool).

Contract
--------
- ``value_and_gradient(β)`` → ``(F, ∇F)``
- ``hessian_vector(β, v)`` → ``∇²F · v`` (never materializes the Hessian)
- ``hessian_diagonal(β)`` → ``diag(∇²F)`` (for coefficient variances)
"""

from __future__ import annotations

import enum
import operator
from concurrent.futures import Executor
from dataclasses import dataclass
from functools import partial
from typing import Iterable, Optional, Tuple

import numpy as np

from gamefit.constants import DEFAULT_ELASTIC_NET_ALPHA
from gamefit.data import LocalDataset
from gamefit.exceptions import ConfigurationError, DimensionMismatch
from gamefit.families import LossFamily, resolve_family
from gamefit.parallel import fold_partitions, map_partitions

__all__ = [
    "RegularizationType",
    "RegularizationContext",
    "ObjectiveAccumulator",
    "GLMObjective",
]


# =============================================================================
# Regularization
# =============================================================================

class RegularizationType(str, enum.Enum):
    NONE = "none"
    L1 = "l1"
    L2 = "l2"
    ELASTIC_NET = "elastic_net"


@dataclass(frozen=True)
class RegularizationContext:
    """
    Split of a total regularization weight λ into L1 and L2 parts.

    For elastic net with mixing ``alpha``: λ₁ = alpha·λ, λ₂ = (1 - alpha)·λ.
    """
    regularization_type: RegularizationType = RegularizationType.NONE
    elastic_net_alpha: float = DEFAULT_ELASTIC_NET_ALPHA

    def __post_init__(self):
        object.__setattr__(self, "regularization_type", RegularizationType(self.regularization_type))
        if self.regularization_type == RegularizationType.ELASTIC_NET and not 0.0 < self.elastic_net_alpha < 1.0:
            raise ConfigurationError(
                f"elastic_net_alpha must be in (0, 1) for elastic net, got {self.elastic_net_alpha}. "
                "Use regularization_type='l1' or 'l2' for the end points."
            )

    def l1_weight(self, weight: float) -> float:
        if self.regularization_type == RegularizationType.L1:
            return weight
        if self.regularization_type == RegularizationType.ELASTIC_NET:
            return self.elastic_net_alpha * weight
        return 0.0

    def l2_weight(self, weight: float) -> float:
        if self.regularization_type == RegularizationType.L2:
            return weight
        if self.regularization_type == RegularizationType.ELASTIC_NET:
            return (1.0 - self.elastic_net_alpha) * weight
        return 0.0


# =============================================================================
# Partition Accumulator
# =============================================================================

@dataclass(frozen=True)
class ObjectiveAccumulator:
    """Partition-local (loss, gradient, sample count) triple."""
    value: float
    gradient: np.ndarray
    count: int

    def __add__(self, other: "ObjectiveAccumulator") -> "ObjectiveAccumulator":
        return ObjectiveAccumulator(
            self.value + other.value,
            self.gradient + other.gradient,
            self.count + other.count,
        )


# =============================================================================
# Partition-local pieces
# =============================================================================
#
# Module-level so that process pools can pickle them together with their
# bound arguments.

def _margins(coefficients: np.ndarray, block: LocalDataset) -> np.ndarray:
    return block.features @ coefficients + block.offsets


def _block_value_and_gradient(
    family: LossFamily, dimension: int, coefficients: np.ndarray, block: LocalDataset
) -> ObjectiveAccumulator:
    if block.n_samples == 0:
        return ObjectiveAccumulator(0.0, np.zeros(dimension), 0)
    loss, dz = family.loss_and_dz(_margins(coefficients, block), block.labels)
    value = float(np.dot(block.weights, loss))
    gradient = block.features.T @ (block.weights * dz)
    return ObjectiveAccumulator(value, np.asarray(gradient, dtype=np.float64), block.n_samples)


def _block_hessian_vector(
    family: LossFamily, dimension: int, coefficients: np.ndarray, vector: np.ndarray, block: LocalDataset
) -> np.ndarray:
    if block.n_samples == 0:
        return np.zeros(dimension)
    d2 = family.d2z(_margins(coefficients, block), block.labels)
    xv = block.features @ vector
    return np.asarray(block.features.T @ (block.weights * d2 * xv), dtype=np.float64)


def _block_hessian_diagonal(
    family: LossFamily, dimension: int, coefficients: np.ndarray, block: LocalDataset
) -> np.ndarray:
    if block.n_samples == 0:
        return np.zeros(dimension)
    d2 = family.d2z(_margins(coefficients, block), block.labels)
    squared = block.features.multiply(block.features)
    return np.asarray(squared.T @ (block.weights * d2), dtype=np.float64).ravel()


# =============================================================================
# Objective
# =============================================================================

class GLMObjective:
    """
    Weighted GLM loss plus L2 penalty over one or more sample blocks.

    Parameters
    ----------
    family : str or LossFamily
        Pointwise loss ("logistic", "linear", "poisson").
    blocks : iterable of LocalDataset
        Partitions of the data. A random-effect entity passes one block.
    l2_weight : float
        λ₂ of the smooth penalty.
    executor : concurrent.futures.Executor, optional
        Engine for the per-partition map. ``None`` runs sequentially.
    """

    def __init__(
        self,
        family,
        blocks: Iterable[LocalDataset],
        l2_weight: float = 0.0,
        executor: Optional[Executor] = None,
    ):
        self.family: LossFamily = resolve_family(family)
        self.blocks: Tuple[LocalDataset, ...] = tuple(blocks)
        if not self.blocks:
            raise ValueError("GLMObjective needs at least one block of samples.")
        self.l2_weight = float(l2_weight)
        self.executor = executor
        self.dimension = self.blocks[0].dimension
        self._cache_key: Optional[bytes] = None
        self._cache_value: Optional[Tuple[float, np.ndarray]] = None

    @property
    def n_samples(self) -> int:
        return sum(b.n_samples for b in self.blocks)

    def _check_dimension(self, coefficients: np.ndarray) -> None:
        if len(coefficients) != self.dimension:
            raise DimensionMismatch(
                f"Coefficient vector has length {len(coefficients)} but the data has "
                f"{self.dimension} features."
            )

    # -------------------------------------------------------------------------
    # Objective contract
    # -------------------------------------------------------------------------

    def accumulate(self, coefficients: np.ndarray) -> ObjectiveAccumulator:
        """Fold of the partition accumulators for the data term only."""
        coefficients = np.asarray(coefficients, dtype=np.float64)
        self._check_dimension(coefficients)
        return fold_partitions(
            partial(_block_value_and_gradient, self.family, self.dimension, coefficients),
            self.blocks,
            operator.add,
            self.executor,
        )

    def value_and_gradient(self, coefficients: np.ndarray) -> Tuple[float, np.ndarray]:
        """Regularized objective value and gradient."""
        coefficients = np.asarray(coefficients, dtype=np.float64)
        key = coefficients.tobytes()
        if key == self._cache_key:
            value, gradient = self._cache_value
            return value, gradient.copy()

        acc = self.accumulate(coefficients)
        value = acc.value + 0.5 * self.l2_weight * float(np.dot(coefficients, coefficients))
        gradient = acc.gradient + self.l2_weight * coefficients

        self._cache_key = key
        self._cache_value = (value, gradient)
        return value, gradient.copy()

    def value(self, coefficients: np.ndarray) -> float:
        return self.value_and_gradient(coefficients)[0]

    def gradient(self, coefficients: np.ndarray) -> np.ndarray:
        return self.value_and_gradient(coefficients)[1]

    def hessian_vector(self, coefficients: np.ndarray, vector: np.ndarray) -> np.ndarray:
        """∇²F(β) · v."""
        coefficients = np.asarray(coefficients, dtype=np.float64)
        vector = np.asarray(vector, dtype=np.float64)
        self._check_dimension(coefficients)
        parts = map_partitions(
            partial(_block_hessian_vector, self.family, self.dimension, coefficients, vector),
            self.blocks,
            self.executor,
        )
        return np.sum(parts, axis=0) + self.l2_weight * vector

    def hessian_diagonal(self, coefficients: np.ndarray) -> np.ndarray:
        """diag(∇²F(β))."""
        coefficients = np.asarray(coefficients, dtype=np.float64)
        self._check_dimension(coefficients)
        parts = map_partitions(
            partial(_block_hessian_diagonal, self.family, self.dimension, coefficients),
            self.blocks,
            self.executor,
        )
        return np.sum(parts, axis=0) + self.l2_weight
