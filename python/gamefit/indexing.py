"""
Feature Indexing
================

Turns raw feature names into the integer columns the training core works
with, and persists the mapping so scoring jobs resolve features identically.

Features are ``(name, term)`` pairs, e.g. ``("age_band", "25-34")``. Inside an
index map a feature is identified by its key ``name + "\\u0001" + term``.

Stores
------
Feature-set text store (:class:`NameAndTermFeatureSetContainer`)
    One directory per feature section, one ``name\\tterm`` line per feature.
    A line with a single token is a bare name with an empty term.

Index-map store (:class:`IndexMapWriter`, :class:`IndexMap`)
    ``<root>/<namespace>/part-<idx:05d>.tsv`` with one ``key\\tlocal_index``
    line per feature. Each writer partition numbers its features from 0; a
    loaded map shifts every partition by the sizes of the partitions before
    it, so global indices are contiguous. The namespace is the feature shard
    id, ``"global"`` by default.

Writers in one process share :data:`INDEX_MAP_WRITER_LOCK`; each writer holds
it for its whole lifetime.

Example
-------
>>> config = FeatureIndexingConfig(output_dir="/tmp/index", partition_num=2)
>>> build_index_maps(records, config)
{'global': 42}
>>> index_map = IndexMap.load("/tmp/index")
>>> X = vectorize(records, index_map)
"""

from __future__ import annotations

import glob
import logging
import os
import shutil
import threading
import zlib
from concurrent.futures import Executor
from dataclasses import dataclass
from functools import partial
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set

import numpy as np
from scipy import sparse

from gamefit.config import FeatureIndexingConfig, FieldNames, FieldNamesType
from gamefit.constants import (
    FEATURE_KEY_DELIMITER,
    GLOBAL_NAMESPACE,
    INDEX_FILE_PREFIX,
    INDEX_FILE_SUFFIX,
    INTERCEPT_KEY,
    INTERCEPT_NAME,
    INTERCEPT_TERM,
    NAME_TERM_DELIMITER,
)
from gamefit.exceptions import ConfigurationError, ParseError, ValidationError
from gamefit.parallel import map_partitions

logger = logging.getLogger(__name__)

__all__ = [
    "NameAndTerm",
    "NameAndTermFeatureSetContainer",
    "INDEX_MAP_WRITER_LOCK",
    "IndexMapWriter",
    "IndexMap",
    "feature_key",
    "build_index_maps",
    "vectorize",
    "sample_columns",
]

INDEX_MAP_WRITER_LOCK = threading.Lock()

_FEATURE_SET_FILE = "part-00000.txt"


def feature_key(name: str, term: str = "") -> str:
    """Index-map key of a feature."""
    return f"{name}{FEATURE_KEY_DELIMITER}{term}"


# =============================================================================
# Name and Term
# =============================================================================

@dataclass(frozen=True, order=True)
class NameAndTerm:
    """A feature identified by its name and (possibly empty) term."""
    name: str
    term: str = ""

    @property
    def key(self) -> str:
        return feature_key(self.name, self.term)

    def __str__(self) -> str:
        return f"{self.name}{NAME_TERM_DELIMITER}{self.term}"

    @classmethod
    def parse(cls, line: str) -> "NameAndTerm":
        """
        Parse a ``name\\tterm`` or bare ``name`` line.

        Raises
        ------
        ParseError
            When the line splits into more than two tokens.
        """
        tokens = line.split(NAME_TERM_DELIMITER)
        if len(tokens) == 1:
            return cls(tokens[0], "")
        if len(tokens) == 2:
            return cls(tokens[0], tokens[1])
        raise ParseError(
            f"Unexpected entry {line!r} when parsing it to NameAndTerm: after splitting by tab "
            f"the expected number of tokens is 1 or 2, but found {len(tokens)}."
        )

    @classmethod
    def from_key(cls, key: str) -> "NameAndTerm":
        name, _, term = key.partition(FEATURE_KEY_DELIMITER)
        return cls(name, term)


NameAndTerm.INTERCEPT = NameAndTerm(INTERCEPT_NAME, INTERCEPT_TERM)


def _check_storable(text: str, what: str) -> None:
    if NAME_TERM_DELIMITER in text or "\n" in text or "\r" in text:
        raise ValidationError(f"{what} {text!r} contains a tab or newline and cannot be stored as text.")


# =============================================================================
# Feature-Set Text Store
# =============================================================================

class NameAndTermFeatureSetContainer:
    """
    Sets of features keyed by feature section (bag) name.

    Parameters
    ----------
    feature_sets : mapping
        Section key to an iterable of :class:`NameAndTerm`.
    """

    def __init__(self, feature_sets: Mapping[str, Iterable[NameAndTerm]]):
        self.feature_sets: Dict[str, frozenset] = {
            section: frozenset(features) for section, features in feature_sets.items()
        }

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping],
        section_keys: Iterable[str],
        field_names: Optional[FieldNames] = None,
    ) -> "NameAndTermFeatureSetContainer":
        """Collect the distinct features of each section over ``records``."""
        field_names = field_names or FieldNamesType.TRAINING_EXAMPLE.field_names
        section_keys = list(section_keys)
        sets: Dict[str, Set[NameAndTerm]] = {section: set() for section in section_keys}
        for record in records:
            for section in section_keys:
                for feature in _section_features(record, section):
                    sets[section].add(NameAndTerm(
                        str(feature[field_names.name]), str(feature.get(field_names.term) or "")
                    ))
        return cls(sets)

    def feature_name_and_term_to_index_map(
        self,
        section_keys: Iterable[str],
        add_intercept: bool,
    ) -> Dict[NameAndTerm, int]:
        """
        Index the union of the selected sections.

        Features are numbered in sorted order; the intercept, when added,
        takes the last index.
        """
        selected = set(section_keys)
        features: Set[NameAndTerm] = set()
        for section, feature_set in self.feature_sets.items():
            if section in selected:
                features |= feature_set
        features.discard(NameAndTerm.INTERCEPT)

        index_map = {feature: i for i, feature in enumerate(sorted(features))}
        if add_intercept:
            index_map[NameAndTerm.INTERCEPT] = len(index_map)
        return index_map

    def save_as_text_files(self, output_dir: str, overwrite: bool = False) -> None:
        """Write one directory per section under ``output_dir``."""
        for section, feature_set in self.feature_sets.items():
            section_dir = os.path.join(output_dir, section)
            if os.path.exists(section_dir):
                if not overwrite:
                    raise ConfigurationError(
                        f"Feature set directory '{section_dir}' already exists. Pass overwrite=True to replace it."
                    )
                shutil.rmtree(section_dir)
            os.makedirs(section_dir)
            with open(os.path.join(section_dir, _FEATURE_SET_FILE), "w", encoding="utf-8", newline="\n") as f:
                for feature in sorted(feature_set):
                    _check_storable(feature.name, "Feature name")
                    _check_storable(feature.term, "Feature term")
                    f.write(f"{feature}\n")
            logger.debug("Wrote %d features of section '%s' to %s", len(feature_set), section, section_dir)

    @classmethod
    def read_from_text_files(
        cls,
        input_dir: str,
        section_keys: Iterable[str],
    ) -> "NameAndTermFeatureSetContainer":
        """
        Read the given sections back.

        Raises
        ------
        ConfigurationError
            When a section directory is missing.
        ParseError
            When a line has more than two tab-separated tokens.
        """
        sets: Dict[str, Set[NameAndTerm]] = {}
        for section in section_keys:
            section_dir = os.path.join(input_dir, section)
            if not os.path.isdir(section_dir):
                raise ConfigurationError(f"Feature set directory '{section_dir}' does not exist.")
            features: Set[NameAndTerm] = set()
            for path in sorted(glob.glob(os.path.join(section_dir, "part-*"))):
                with open(path, encoding="utf-8", newline="") as f:
                    for line in f:
                        line = line.rstrip("\r\n")
                        if line:
                            features.add(NameAndTerm.parse(line))
            sets[section] = features
        return cls(sets)

    def __eq__(self, other) -> bool:
        if not isinstance(other, NameAndTermFeatureSetContainer):
            return NotImplemented
        return self.feature_sets == other.feature_sets

    __hash__ = None

    def __repr__(self) -> str:
        sizes = ", ".join(f"{k}={len(v)}" for k, v in sorted(self.feature_sets.items()))
        return f"NameAndTermFeatureSetContainer({sizes})"


# =============================================================================
# Index-Map Store
# =============================================================================

def _partition_path(root: str, namespace: str, partition_idx: int) -> str:
    return os.path.join(root, namespace, f"{INDEX_FILE_PREFIX}{partition_idx:05d}{INDEX_FILE_SUFFIX}")


class IndexMapWriter:
    """
    Writes one partition of a namespace's index map.

    Use under :data:`INDEX_MAP_WRITER_LOCK`::

        with INDEX_MAP_WRITER_LOCK:
            with IndexMapWriter(root, 0) as writer:
                writer.put(feature_key("age"), 0)
    """

    def __init__(self, output_dir: str, partition_idx: int, namespace: str = GLOBAL_NAMESPACE):
        if partition_idx < 0:
            raise ValueError(f"partition_idx must be >= 0, got {partition_idx}")
        self.path = _partition_path(output_dir, namespace, partition_idx)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._file = open(self.path, "w", encoding="utf-8", newline="\n")
        self.count = 0

    def put(self, key: str, index: int) -> None:
        _check_storable(key, "Feature key")
        self._file.write(f"{key}\t{int(index)}\n")
        self.count += 1

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> "IndexMapWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class IndexMap(Mapping):
    """
    Read-only map from feature key to global column index.

    Parameters
    ----------
    forward : mapping
        Feature key to index. Indices must be exactly ``0 .. n-1``.
    namespace : str
        Feature shard id of the map.
    """

    def __init__(self, forward: Mapping[str, int], namespace: str = GLOBAL_NAMESPACE):
        self._forward: Dict[str, int] = {str(k): int(v) for k, v in forward.items()}
        self.namespace = namespace
        self._reverse: List[Optional[str]] = [None] * len(self._forward)
        for key, index in self._forward.items():
            if not 0 <= index < len(self._forward) or self._reverse[index] is not None:
                raise ValidationError(
                    f"Index map '{namespace}' is not a bijection onto 0..{len(self._forward) - 1} "
                    f"(offending key {key!r} -> {index})."
                )
            self._reverse[index] = key

    @classmethod
    def from_feature_map(cls, feature_map: Mapping[NameAndTerm, int], namespace: str = GLOBAL_NAMESPACE) -> "IndexMap":
        return cls({feature.key: index for feature, index in feature_map.items()}, namespace)

    @classmethod
    def load(cls, root: str, namespace: str = GLOBAL_NAMESPACE) -> "IndexMap":
        """
        Load every partition of ``namespace`` under ``root``.

        Raises
        ------
        ConfigurationError
            When the namespace directory does not exist.
        ParseError
            When a line is not ``key\\tinteger``.
        """
        ns_dir = os.path.join(root, namespace)
        if not os.path.isdir(ns_dir):
            raise ConfigurationError(f"Index map directory '{ns_dir}' does not exist.")
        pattern = os.path.join(ns_dir, f"{INDEX_FILE_PREFIX}*{INDEX_FILE_SUFFIX}")

        forward: Dict[str, int] = {}
        offset = 0
        for path in sorted(glob.glob(pattern)):
            size = 0
            with open(path, encoding="utf-8", newline="") as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.rstrip("\r\n")
                    if not line:
                        continue
                    tokens = line.split("\t")
                    if len(tokens) != 2:
                        raise ParseError(
                            f"{path}:{line_no}: expected 'key<TAB>index', found {len(tokens)} tokens."
                        )
                    try:
                        local = int(tokens[1])
                    except ValueError:
                        raise ParseError(f"{path}:{line_no}: index {tokens[1]!r} is not an integer.")
                    forward[tokens[0]] = offset + local
                    size += 1
            offset += size
        logger.debug("Loaded %d features for namespace '%s' from %s", len(forward), namespace, ns_dir)
        return cls(forward, namespace)

    def __getitem__(self, key: str) -> int:
        return self._forward[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._forward)

    def __len__(self) -> int:
        return len(self._forward)

    @property
    def dimension(self) -> int:
        return len(self._forward)

    def get_index(self, name: str, term: str = "") -> Optional[int]:
        return self._forward.get(feature_key(name, term))

    def get_feature_key(self, index: int) -> Optional[str]:
        """Reverse lookup; None for out-of-range indices."""
        if 0 <= index < len(self._reverse):
            return self._reverse[index]
        return None

    def get_feature(self, index: int) -> Optional[NameAndTerm]:
        key = self.get_feature_key(index)
        return None if key is None else NameAndTerm.from_key(key)

    def __repr__(self) -> str:
        return f"IndexMap(namespace={self.namespace!r}, size={len(self)})"


# =============================================================================
# Building and Vectorization
# =============================================================================

def _section_features(record: Mapping, section: str) -> List[Mapping]:
    if section not in record:
        raise ValidationError(f"Feature section not found: {section}")
    return record[section] or []


def _record_features(record: Mapping, sections: Optional[Iterable[str]], field_names: FieldNames) -> Iterator[Mapping]:
    if sections is None:
        yield from _section_features(record, field_names.features)
        return
    for section in sections:
        yield from _section_features(record, section)


def _unique_feature_keys(records: List[Mapping], sections, field_names: FieldNames) -> Set[str]:
    keys = set()
    for record in records:
        for feature in _record_features(record, sections, field_names):
            keys.add(feature_key(str(feature[field_names.name]), str(feature.get(field_names.term) or "")))
    return keys


def _write_bucket(output_dir: str, namespace: str, item) -> int:
    partition_idx, keys = item
    with INDEX_MAP_WRITER_LOCK:
        with IndexMapWriter(output_dir, partition_idx, namespace) as writer:
            for local_index, key in enumerate(keys):
                writer.put(key, local_index)
            return writer.count


def build_index_maps(
    records: Iterable[Mapping],
    config: FeatureIndexingConfig,
    executor: Optional[Executor] = None,
) -> Dict[str, int]:
    """
    Build and write the index map of every feature shard.

    Without ``config.shard_sections`` a single ``"global"`` map over the
    default feature bag is built. Distinct keys are hash-partitioned into
    ``config.partition_num`` buckets, and each bucket is written by its own
    writer under :data:`INDEX_MAP_WRITER_LOCK`.

    Returns
    -------
    dict
        Namespace to number of indexed features.
    """
    records = list(records)
    field_names = config.field_names
    shards = config.shard_sections if config.shard_sections is not None else {GLOBAL_NAMESPACE: None}
    n_buckets = config.partition_num

    counts: Dict[str, int] = {}
    for namespace, sections in shards.items():
        keys = _unique_feature_keys(records, sections, field_names)
        if config.intercept_for(namespace):
            keys.add(INTERCEPT_KEY)

        buckets: List[List[str]] = [[] for _ in range(n_buckets)]
        for key in sorted(keys):
            buckets[zlib.crc32(key.encode("utf-8")) % n_buckets].append(key)

        ns_dir = os.path.join(config.output_dir, namespace)
        if os.path.isdir(ns_dir):
            shutil.rmtree(ns_dir)

        written = map_partitions(
            partial(_write_bucket, config.output_dir, namespace), list(enumerate(buckets)), executor
        )
        counts[namespace] = sum(written)
        logger.info("Total number of features indexed for namespace '%s': [%d]", namespace, counts[namespace])
    return counts


def vectorize(
    records: Iterable[Mapping],
    index_map: Mapping[str, int],
    field_names: Optional[FieldNames] = None,
    feature_sections: Optional[Iterable[str]] = None,
    add_intercept: Optional[bool] = None,
) -> sparse.csr_matrix:
    """
    Turn records into a CSR feature matrix with ``len(index_map)`` columns.

    Features missing from the map are dropped; repeated features add up. The
    intercept column is set to 1 when the map has one (or when
    ``add_intercept`` is True).
    """
    field_names = field_names or FieldNamesType.TRAINING_EXAMPLE.field_names
    sections = list(feature_sections) if feature_sections is not None else None
    if add_intercept is None:
        add_intercept = INTERCEPT_KEY in index_map
    intercept_index = index_map.get(INTERCEPT_KEY) if add_intercept else None
    if add_intercept and intercept_index is None:
        raise ConfigurationError("add_intercept=True but the index map has no intercept feature.")

    rows: List[int] = []
    cols: List[int] = []
    data: List[float] = []
    n_rows = 0
    for row, record in enumerate(records):
        n_rows = row + 1
        for feature in _record_features(record, sections, field_names):
            key = feature_key(str(feature[field_names.name]), str(feature.get(field_names.term) or ""))
            col = index_map.get(key)
            if col is None or key == INTERCEPT_KEY:
                continue
            rows.append(row)
            cols.append(col)
            data.append(float(feature.get(field_names.value, 1.0)))
        if intercept_index is not None:
            rows.append(row)
            cols.append(intercept_index)
            data.append(1.0)

    matrix = sparse.coo_matrix((data, (rows, cols)), shape=(n_rows, len(index_map)), dtype=np.float64)
    return matrix.tocsr()


def sample_columns(records: Iterable[Mapping], field_names: Optional[FieldNames] = None) -> Dict[str, np.ndarray]:
    """
    Extract ``uid``, ``label``, ``offset`` and ``weight`` columns from records.

    Missing offsets default to 0 and missing weights to 1. A record without
    a uid gets its row number.
    """
    field_names = field_names or FieldNamesType.TRAINING_EXAMPLE.field_names
    uids, labels, offsets, weights = [], [], [], []
    for row, record in enumerate(records):
        uid = record.get(field_names.uid)
        uids.append(row if uid is None else int(uid))
        if field_names.response not in record:
            raise ValidationError(f"Record {row} has no '{field_names.response}' field.")
        labels.append(float(record[field_names.response]))
        offset = record.get(field_names.offset)
        offsets.append(0.0 if offset is None else float(offset))
        weight = record.get(field_names.weight)
        weights.append(1.0 if weight is None else float(weight))
    return {
        "uid": np.array(uids, dtype=np.int64),
        "label": np.array(labels, dtype=np.float64),
        "offset": np.array(offsets, dtype=np.float64),
        "weight": np.array(weights, dtype=np.float64),
    }
