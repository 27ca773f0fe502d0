"""
GAME Model Values
=================

Models are immutable values. ``Coordinate.update_model`` never changes the
model it is given; it returns a new one, so every round of coordinate descent
can be inspected or rolled back.

- :class:`FixedEffectModel`: one coefficient vector shared by all samples.
- :class:`RandomEffectModel`: one small coefficient vector per entity. An
  entity without a vector is implicitly the zero vector.
- :class:`GameModel`: the ordered collection of per-coordinate models whose
  scores add up to the composite prediction.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Hashable, Iterator, Mapping, Optional, Tuple, Union

import numpy as np

from gamefit.constants import GLOBAL_NAMESPACE
from gamefit.exceptions import ValidationError

__all__ = ["FixedEffectModel", "RandomEffectModel", "GameModel", "DatumModel"]


def _frozen_vector(values, name: str = "coefficients") -> np.ndarray:
    vector = np.array(values, dtype=np.float64)
    if vector.ndim != 1:
        raise ValidationError(f"{name} must be 1-dimensional, got shape {vector.shape}.")
    vector.setflags(write=False)
    return vector


class FixedEffectModel:
    """
    Global coefficient vector.

    Parameters
    ----------
    coefficients : array-like
        Coefficient means, one per feature of the shard.
    feature_shard_id : str
        Feature shard the coefficients index into.
    variances : array-like, optional
        Coefficient variances, when computed.
    """

    __slots__ = ("coefficients", "variances", "feature_shard_id")

    def __init__(
        self,
        coefficients,
        feature_shard_id: str = GLOBAL_NAMESPACE,
        variances=None,
    ):
        self.coefficients = _frozen_vector(coefficients)
        self.variances = None if variances is None else _frozen_vector(variances, "variances")
        self.feature_shard_id = feature_shard_id
        if self.variances is not None and self.variances.shape != self.coefficients.shape:
            raise ValidationError(
                f"variances has shape {self.variances.shape} but coefficients has shape {self.coefficients.shape}."
            )

    @classmethod
    def zeros(cls, dimension: int, feature_shard_id: str = GLOBAL_NAMESPACE) -> "FixedEffectModel":
        return cls(np.zeros(dimension), feature_shard_id)

    @property
    def dimension(self) -> int:
        return len(self.coefficients)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FixedEffectModel):
            return NotImplemented
        return (
            self.feature_shard_id == other.feature_shard_id
            and np.array_equal(self.coefficients, other.coefficients)
        )

    __hash__ = None

    def __repr__(self) -> str:
        return f"FixedEffectModel(shard={self.feature_shard_id!r}, dim={self.dimension})"


class RandomEffectModel:
    """
    Per-entity coefficient vectors.

    Parameters
    ----------
    coefficients : mapping
        Entity id to coefficient vector. Every vector has length ``dimension``.
    random_effect_type : str
        Entity type these models belong to (e.g. ``"userId"``).
    dimension : int
        Length of every per-entity vector.
    feature_shard_id : str
        Feature shard the coefficients index into.
    """

    __slots__ = ("_coefficients", "random_effect_type", "feature_shard_id", "dimension")

    def __init__(
        self,
        coefficients: Mapping[Hashable, np.ndarray],
        random_effect_type: str,
        dimension: int,
        feature_shard_id: str = GLOBAL_NAMESPACE,
    ):
        frozen: Dict[Hashable, np.ndarray] = {}
        for entity_id, vector in coefficients.items():
            # Vectors that are already frozen are shared, not copied
            if isinstance(vector, np.ndarray) and not vector.flags.writeable and vector.dtype == np.float64:
                frozen[entity_id] = vector
            else:
                frozen[entity_id] = _frozen_vector(vector, f"coefficients[{entity_id!r}]")
            if len(frozen[entity_id]) != dimension:
                raise ValidationError(
                    f"Entity {entity_id!r} has {len(frozen[entity_id])} coefficients, expected {dimension}."
                )
        self._coefficients = MappingProxyType(frozen)
        self.random_effect_type = random_effect_type
        self.feature_shard_id = feature_shard_id
        self.dimension = int(dimension)

    @classmethod
    def empty(
        cls,
        random_effect_type: str,
        dimension: int,
        feature_shard_id: str = GLOBAL_NAMESPACE,
    ) -> "RandomEffectModel":
        """Model with no entities: every entity scores as the zero vector."""
        return cls({}, random_effect_type, dimension, feature_shard_id)

    @property
    def coefficients(self) -> Mapping[Hashable, np.ndarray]:
        """Read-only view of entity id to coefficient vector."""
        return self._coefficients

    def get(self, entity_id: Hashable) -> Optional[np.ndarray]:
        return self._coefficients.get(entity_id)

    def __getitem__(self, entity_id: Hashable) -> np.ndarray:
        return self._coefficients[entity_id]

    def __contains__(self, entity_id: Hashable) -> bool:
        return entity_id in self._coefficients

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._coefficients)

    def __len__(self) -> int:
        return len(self._coefficients)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RandomEffectModel):
            return NotImplemented
        if (
            self.random_effect_type != other.random_effect_type
            or self.feature_shard_id != other.feature_shard_id
            or self.dimension != other.dimension
            or set(self._coefficients) != set(other._coefficients)
        ):
            return False
        return all(np.array_equal(v, other._coefficients[k]) for k, v in self._coefficients.items())

    __hash__ = None

    def __repr__(self) -> str:
        return (
            f"RandomEffectModel(type={self.random_effect_type!r}, shard={self.feature_shard_id!r}, "
            f"entities={len(self)}, dim={self.dimension})"
        )


DatumModel = Union[FixedEffectModel, RandomEffectModel]


class GameModel:
    """
    Ordered collection of coordinate models.

    The composite prediction of a sample is the sum of every coordinate
    model's score for it.

    Parameters
    ----------
    models : mapping
        Coordinate id to model, in update order.
    """

    __slots__ = ("_models",)

    def __init__(self, models: Mapping[str, DatumModel]):
        self._models = MappingProxyType(dict(models))

    @property
    def models(self) -> Mapping[str, DatumModel]:
        return self._models

    def coordinate_ids(self) -> Tuple[str, ...]:
        return tuple(self._models)

    def __getitem__(self, coordinate_id: str) -> DatumModel:
        return self._models[coordinate_id]

    def __contains__(self, coordinate_id: str) -> bool:
        return coordinate_id in self._models

    def __iter__(self):
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def updated(self, coordinate_id: str, model: DatumModel) -> "GameModel":
        """New GameModel with one coordinate's model replaced."""
        models = dict(self._models)
        models[coordinate_id] = model
        return GameModel(models)

    def __eq__(self, other) -> bool:
        if not isinstance(other, GameModel):
            return NotImplemented
        return list(self._models) == list(other._models) and all(
            self._models[k] == other._models[k] for k in self._models
        )

    __hash__ = None

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v!r}" for k, v in self._models.items())
        return f"GameModel({inner})"
