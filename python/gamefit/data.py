"""
Partitioned GAME Datasets
=========================

Samples reach the training core already vectorized. A sample is

    (uid, feature vector, label, offset, weight)

and is stored column-wise in a :class:`LocalDataset`: sample ids, a sparse
CSR feature matrix, labels, offsets and weights. All arrays are read-only;
changing offsets produces a new dataset.

Two partitioned containers sit on top:

- :class:`FixedEffectDataset` splits all samples into contiguous partitions.
  The fixed-effect coordinate reduces over them.
- :class:`RandomEffectDataset` groups samples by entity (e.g. user id) and
  places each entity in exactly one partition, chosen by
  :func:`entity_partition`. Because an entity never spans partitions, every
  per-entity model can be trained by one worker with no shuffle and no lock.

Offsets
-------
The ``offset`` of a sample is the prediction contribution that is held fixed
while a coordinate trains. During coordinate descent it is the base offset
from the data plus the scores of all the *other* coordinates, see
:meth:`LocalDataset.add_scores_to_offsets`.

Example
-------
>>> ds = RandomEffectDataset.from_arrays(
...     uids=np.arange(4),
...     entity_ids=["a", "a", "b", "c"],
...     features=np.eye(4),
...     labels=[1, 0, 1, 1],
...     random_effect_type="userId",
...     num_partitions=2,
... )
>>> sorted(ds.entity_ids())
['a', 'b', 'c']
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Tuple, TYPE_CHECKING

import numpy as np
from scipy import sparse

from gamefit.constants import DEFAULT_NUM_PARTITIONS, GLOBAL_NAMESPACE
from gamefit.exceptions import ValidationError
from gamefit.scores import Scores
from gamefit.validation import validate_sample_arrays

if TYPE_CHECKING:
    import polars as pl

__all__ = [
    "LocalDataset",
    "FixedEffectDataset",
    "RandomEffectDataset",
    "entity_partition",
    "uid_hash",
]


# =============================================================================
# Hashing
# =============================================================================

def entity_partition(entity_id: Hashable, num_partitions: int) -> int:
    """
    Partition index for an entity.

    Uses CRC32 of the entity id's string form, so the assignment is the same
    in every process (Python's built-in ``hash`` of a str is salted per run).
    """
    if num_partitions < 1:
        raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
    return zlib.crc32(str(entity_id).encode("utf-8")) % num_partitions


def uid_hash(uids: np.ndarray) -> np.ndarray:
    """Deterministic 64-bit mix (splitmix64 finalizer) of sample ids."""
    z = np.asarray(uids, dtype=np.int64).astype(np.uint64)
    z = z + np.uint64(0x9E3779B97F4A7C15)
    z = (z ^ (z >> np.uint64(30))) * np.uint64(0xBF58476D1CE4E5B9)
    z = (z ^ (z >> np.uint64(27))) * np.uint64(0x94D049BB133111EB)
    return z ^ (z >> np.uint64(31))


def _read_only(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


# =============================================================================
# Local Dataset
# =============================================================================

@dataclass(frozen=True, eq=False)
class LocalDataset:
    """
    A block of samples processed by one worker.

    Attributes
    ----------
    uids : np.ndarray
        Unique sample ids (int64).
    features : scipy.sparse.csr_matrix
        Feature matrix, one row per sample.
    labels : np.ndarray
        Responses.
    offsets : np.ndarray
        Fixed contribution added to the margin of each sample.
    weights : np.ndarray
        Sample weights.
    """
    uids: np.ndarray
    features: sparse.csr_matrix
    labels: np.ndarray
    offsets: np.ndarray
    weights: np.ndarray

    def __post_init__(self):
        n = len(self.uids)
        for name in ("labels", "offsets", "weights"):
            if len(getattr(self, name)) != n:
                raise ValidationError(
                    f"LocalDataset {name} has {len(getattr(self, name))} values but there are {n} samples."
                )
        if self.features.shape[0] != n:
            raise ValidationError(
                f"LocalDataset features has {self.features.shape[0]} rows but there are {n} samples."
            )
        for name in ("uids", "labels", "offsets", "weights"):
            _read_only(getattr(self, name))

    @property
    def n_samples(self) -> int:
        return len(self.uids)

    @property
    def dimension(self) -> int:
        """Number of feature columns."""
        return self.features.shape[1]

    def max_feature_index(self) -> int:
        """Largest column index used by any sample, or -1 if there are no features."""
        if self.features.nnz == 0:
            return -1
        return int(self.features.indices.max())

    def take(self, rows: np.ndarray) -> "LocalDataset":
        """New dataset with the given rows, in the given order."""
        rows = np.asarray(rows)
        return LocalDataset(
            uids=self.uids[rows].copy(),
            features=self.features[rows],
            labels=self.labels[rows].copy(),
            offsets=self.offsets[rows].copy(),
            weights=self.weights[rows].copy(),
        )

    def with_offsets(self, offsets: np.ndarray) -> "LocalDataset":
        return LocalDataset(
            uids=self.uids,
            features=self.features,
            labels=self.labels,
            offsets=np.asarray(offsets, dtype=np.float64),
            weights=self.weights,
        )

    def with_weights(self, weights: np.ndarray) -> "LocalDataset":
        return LocalDataset(
            uids=self.uids,
            features=self.features,
            labels=self.labels,
            offsets=self.offsets,
            weights=np.asarray(weights, dtype=np.float64),
        )

    def add_scores_to_offsets(self, scores: Optional[Scores]) -> "LocalDataset":
        """New dataset whose offsets include ``scores`` (missing ids add 0)."""
        if scores is None or len(scores) == 0:
            return self
        return self.with_offsets(self.offsets + scores.lookup(self.uids))

    def downsample(self, max_samples: int) -> "LocalDataset":
        """
        Keep at most ``max_samples`` rows, chosen deterministically.

        Rows with the smallest :func:`uid_hash` are kept and their weights are
        scaled by ``n / max_samples`` so the weighted loss keeps the scale of
        the full data. Order of the kept rows follows the original order.
        """
        n = self.n_samples
        if max_samples <= 0 or n <= max_samples:
            return self
        keep = np.sort(np.argsort(uid_hash(self.uids), kind="stable")[:max_samples])
        sampled = self.take(keep)
        return sampled.with_weights(sampled.weights * (n / max_samples))

    @classmethod
    def concatenate(cls, blocks: Iterable["LocalDataset"], dimension: int) -> "LocalDataset":
        blocks = list(blocks)
        if not blocks:
            return cls(
                uids=np.empty(0, dtype=np.int64),
                features=sparse.csr_matrix((0, dimension)),
                labels=np.empty(0),
                offsets=np.empty(0),
                weights=np.empty(0),
            )
        return cls(
            uids=np.concatenate([b.uids for b in blocks]),
            features=sparse.vstack([b.features for b in blocks], format="csr"),
            labels=np.concatenate([b.labels for b in blocks]),
            offsets=np.concatenate([b.offsets for b in blocks]),
            weights=np.concatenate([b.weights for b in blocks]),
        )


def _samples_frame(block: LocalDataset) -> "pl.DataFrame":
    import polars as pl

    return pl.DataFrame({
        "uid": block.uids,
        "label": block.labels,
        "offset": block.offsets,
        "weight": block.weights,
    })


# =============================================================================
# Fixed-Effect Dataset
# =============================================================================

class FixedEffectDataset:
    """
    All samples of one feature shard, split into contiguous partitions.

    Parameters
    ----------
    partitions : sequence of LocalDataset
        The partitions. They must share the same feature dimension.
    feature_shard_id : str
        Which feature shard (index-map namespace) the features come from.
    """

    def __init__(self, partitions: Iterable[LocalDataset], feature_shard_id: str = GLOBAL_NAMESPACE):
        self.partitions: Tuple[LocalDataset, ...] = tuple(partitions)
        if not self.partitions:
            raise ValidationError("FixedEffectDataset needs at least one partition.")
        dims = {p.dimension for p in self.partitions}
        if len(dims) != 1:
            raise ValidationError(f"Partitions disagree on feature dimension: {sorted(dims)}")
        self.feature_shard_id = feature_shard_id

    @classmethod
    def from_arrays(
        cls,
        uids: np.ndarray,
        features,
        labels: np.ndarray,
        offsets: Optional[np.ndarray] = None,
        weights: Optional[np.ndarray] = None,
        feature_shard_id: str = GLOBAL_NAMESPACE,
        num_partitions: int = DEFAULT_NUM_PARTITIONS,
        task: str = "logistic",
    ) -> "FixedEffectDataset":
        """
        Validate sample columns and split them into ``num_partitions`` blocks.
        """
        uids, features, labels, offsets, weights = validate_sample_arrays(
            uids, features, labels, task, offsets=offsets, weights=weights
        )
        whole = LocalDataset(uids, features, labels, offsets, weights)
        n_parts = max(1, min(num_partitions, max(whole.n_samples, 1)))
        chunks = np.array_split(np.arange(whole.n_samples), n_parts)
        return cls([whole.take(rows) for rows in chunks], feature_shard_id)

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    @property
    def n_samples(self) -> int:
        return sum(p.n_samples for p in self.partitions)

    @property
    def dimension(self) -> int:
        return self.partitions[0].dimension

    @property
    def uids(self) -> np.ndarray:
        return np.concatenate([p.uids for p in self.partitions])

    def max_feature_index(self) -> int:
        return max(p.max_feature_index() for p in self.partitions)

    def add_scores_to_offsets(self, scores: Optional[Scores]) -> "FixedEffectDataset":
        if scores is None or len(scores) == 0:
            return self
        return FixedEffectDataset(
            [p.add_scores_to_offsets(scores) for p in self.partitions],
            self.feature_shard_id,
        )

    def samples_frame(self) -> "pl.DataFrame":
        """(uid, label, offset, weight) for every sample as a Polars DataFrame."""
        import polars as pl

        return pl.concat([_samples_frame(p) for p in self.partitions])

    def __repr__(self) -> str:
        return (
            f"FixedEffectDataset(shard={self.feature_shard_id!r}, n={self.n_samples}, "
            f"dim={self.dimension}, partitions={self.num_partitions})"
        )


# =============================================================================
# Random-Effect Dataset
# =============================================================================

class RandomEffectDataset:
    """
    Samples grouped by entity, with every entity in exactly one partition.

    Parameters
    ----------
    partitions : sequence of dict
        ``partitions[i]`` maps entity id to that entity's :class:`LocalDataset`.
    random_effect_type : str
        The entity type (e.g. ``"userId"``).
    feature_shard_id : str
        Which feature shard the features come from.
    dimension : int
        Feature dimension shared by every entity.
    """

    def __init__(
        self,
        partitions: Iterable[Mapping[Hashable, LocalDataset]],
        random_effect_type: str,
        dimension: int,
        feature_shard_id: str = GLOBAL_NAMESPACE,
    ):
        self.partitions: Tuple[Dict[Hashable, LocalDataset], ...] = tuple(dict(p) for p in partitions)
        if not self.partitions:
            raise ValidationError("RandomEffectDataset needs at least one partition.")
        self.random_effect_type = random_effect_type
        self.feature_shard_id = feature_shard_id
        self.dimension = int(dimension)

        seen = set()
        for part in self.partitions:
            for entity_id, block in part.items():
                if entity_id in seen:
                    raise ValidationError(
                        f"Entity {entity_id!r} appears in more than one partition; "
                        "all rows of an entity must be co-located."
                    )
                seen.add(entity_id)
                if block.dimension != self.dimension:
                    raise ValidationError(
                        f"Entity {entity_id!r} has dimension {block.dimension}, expected {self.dimension}."
                    )

    @classmethod
    def from_arrays(
        cls,
        uids: np.ndarray,
        entity_ids: Iterable[Hashable],
        features,
        labels: np.ndarray,
        offsets: Optional[np.ndarray] = None,
        weights: Optional[np.ndarray] = None,
        random_effect_type: str = "entity",
        feature_shard_id: str = GLOBAL_NAMESPACE,
        num_partitions: int = DEFAULT_NUM_PARTITIONS,
        task: str = "logistic",
    ) -> "RandomEffectDataset":
        """
        Validate sample columns, group them by entity and hash-partition the entities.

        Rows of one entity keep their input order.
        """
        uids, features, labels, offsets, weights = validate_sample_arrays(
            uids, features, labels, task, offsets=offsets, weights=weights
        )
        entity_ids = list(entity_ids)
        if len(entity_ids) != len(uids):
            raise ValidationError(
                f"entity_ids has {len(entity_ids)} values but there are {len(uids)} samples."
            )

        rows_by_entity: Dict[Hashable, List[int]] = {}
        for row, entity_id in enumerate(entity_ids):
            rows_by_entity.setdefault(entity_id, []).append(row)

        whole = LocalDataset(uids, features, labels, offsets, weights)
        partitions: List[Dict[Hashable, LocalDataset]] = [{} for _ in range(num_partitions)]
        for entity_id, rows in rows_by_entity.items():
            partitions[entity_partition(entity_id, num_partitions)][entity_id] = whole.take(rows)

        return cls(partitions, random_effect_type, features.shape[1], feature_shard_id)

    @classmethod
    def from_entity_datasets(
        cls,
        entity_datasets: Mapping[Hashable, LocalDataset],
        random_effect_type: str,
        dimension: int,
        feature_shard_id: str = GLOBAL_NAMESPACE,
        num_partitions: int = DEFAULT_NUM_PARTITIONS,
    ) -> "RandomEffectDataset":
        partitions: List[Dict[Hashable, LocalDataset]] = [{} for _ in range(num_partitions)]
        for entity_id, block in entity_datasets.items():
            partitions[entity_partition(entity_id, num_partitions)][entity_id] = block
        return cls(partitions, random_effect_type, dimension, feature_shard_id)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    def entity_ids(self) -> Iterator[Hashable]:
        for part in self.partitions:
            yield from part.keys()

    def items(self) -> Iterator[Tuple[Hashable, LocalDataset]]:
        for part in self.partitions:
            yield from part.items()

    @property
    def n_entities(self) -> int:
        return sum(len(p) for p in self.partitions)

    @property
    def n_samples(self) -> int:
        return sum(block.n_samples for _, block in self.items())

    @property
    def uids(self) -> np.ndarray:
        blocks = [block.uids for _, block in self.items()]
        return np.concatenate(blocks) if blocks else np.empty(0, dtype=np.int64)

    def entity_dataset(self, entity_id: Hashable) -> Optional[LocalDataset]:
        return self.partitions[entity_partition(entity_id, self.num_partitions)].get(entity_id)

    def max_feature_index(self) -> int:
        return max((block.max_feature_index() for _, block in self.items()), default=-1)

    # -------------------------------------------------------------------------
    # Transformations
    # -------------------------------------------------------------------------

    def _map_blocks(self, fn) -> "RandomEffectDataset":
        return RandomEffectDataset(
            [{entity_id: fn(entity_id, block) for entity_id, block in part.items()} for part in self.partitions],
            self.random_effect_type,
            self.dimension,
            self.feature_shard_id,
        )

    def add_scores_to_offsets(self, scores: Optional[Scores]) -> "RandomEffectDataset":
        if scores is None or len(scores) == 0:
            return self
        return self._map_blocks(lambda _, block: block.add_scores_to_offsets(scores))

    def filter_entities(self, keep) -> "RandomEffectDataset":
        """New dataset with only the entities for which ``keep(entity_id)`` is true."""
        return RandomEffectDataset(
            [{e: b for e, b in part.items() if keep(e)} for part in self.partitions],
            self.random_effect_type,
            self.dimension,
            self.feature_shard_id,
        )

    def replace_entity(self, entity_id: Hashable, block: LocalDataset) -> "RandomEffectDataset":
        """New dataset with one entity's rows replaced (or added)."""
        partitions = [dict(p) for p in self.partitions]
        partitions[entity_partition(entity_id, self.num_partitions)][entity_id] = block
        return RandomEffectDataset(partitions, self.random_effect_type, self.dimension, self.feature_shard_id)

    def samples_frame(self) -> "pl.DataFrame":
        """(uid, label, offset, weight) for every sample as a Polars DataFrame."""
        import polars as pl

        frames = [_samples_frame(block) for _, block in self.items()]
        if not frames:
            return pl.DataFrame(
                {"uid": [], "label": [], "offset": [], "weight": []},
                schema={"uid": pl.Int64, "label": pl.Float64, "offset": pl.Float64, "weight": pl.Float64},
            )
        return pl.concat(frames)

    def __repr__(self) -> str:
        return (
            f"RandomEffectDataset(type={self.random_effect_type!r}, shard={self.feature_shard_id!r}, "
            f"entities={self.n_entities}, n={self.n_samples}, dim={self.dimension}, "
            f"partitions={self.num_partitions})"
        )
