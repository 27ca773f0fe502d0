"""
Configuration for gamefit
=========================

Configuration objects are frozen dataclasses validated on construction, so a
malformed job fails with :class:`~gamefit.exceptions.ConfigurationError`
before any partition work starts.

This module also parses the string forms in which job parameters usually
arrive:

>>> parse_shard_sections_map("userShard:features,userFeatures|itemShard:itemFeatures")
{'userShard': {'features', 'userFeatures'}, 'itemShard': {'itemFeatures'}}
>>> parse_shard_intercept_map("userShard:true|itemShard:false")
{'userShard': True, 'itemShard': False}
>>> DateRange.from_string("20150501-20150531").days
31
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Hashable, Mapping, Optional, Set

from gamefit.constants import (
    DEFAULT_ELASTIC_NET_ALPHA,
    DEFAULT_MAX_ITER,
    DEFAULT_REGULARIZATION_WEIGHT,
    DEFAULT_TOLERANCE,
    GLOBAL_NAMESPACE,
)
from gamefit.exceptions import ConfigurationError
from gamefit.objective import RegularizationContext, RegularizationType

__all__ = [
    "OptimizerType",
    "VarianceComputationType",
    "OptimizerConfig",
    "FixedEffectCoordinateConfig",
    "RandomEffectCoordinateConfig",
    "FieldNames",
    "FieldNamesType",
    "FeatureIndexingConfig",
    "DateRange",
    "DaysRange",
    "resolve_range",
    "parse_shard_sections_map",
    "parse_shard_intercept_map",
]


# =============================================================================
# Optimizer
# =============================================================================

class OptimizerType(str, enum.Enum):
    LBFGS = "lbfgs"
    TRON = "tron"


class VarianceComputationType(str, enum.Enum):
    NONE = "none"
    SIMPLE = "simple"  # 1 / diag(H) at the optimum


def _enum_value(enum_cls, value, what: str):
    try:
        return enum_cls(value.lower() if isinstance(value, str) else value)
    except ValueError:
        options = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"Unknown {what} '{value}'. Use one of: {options}.")


@dataclass(frozen=True)
class OptimizerConfig:
    """
    Settings of the local optimizer for one model.

    Parameters
    ----------
    optimizer_type : {"lbfgs", "tron"}
        L-BFGS supports every regularization type; TRON (trust-region Newton)
        supports none and L2 only.
    max_iterations : int
        Iteration budget. Hitting it is recorded as non-convergence.
    tolerance : float
        Relative convergence tolerance.
    regularization_type : {"none", "l1", "l2", "elastic_net"}
    regularization_weight : float
        Total penalty weight λ.
    elastic_net_alpha : float
        L1 share of λ for elastic net.
    """
    optimizer_type: OptimizerType = OptimizerType.LBFGS
    max_iterations: int = DEFAULT_MAX_ITER
    tolerance: float = DEFAULT_TOLERANCE
    regularization_type: RegularizationType = RegularizationType.L2
    regularization_weight: float = DEFAULT_REGULARIZATION_WEIGHT
    elastic_net_alpha: float = DEFAULT_ELASTIC_NET_ALPHA

    def __post_init__(self):
        object.__setattr__(self, "optimizer_type", _enum_value(OptimizerType, self.optimizer_type, "optimizer"))
        object.__setattr__(
            self, "regularization_type",
            _enum_value(RegularizationType, self.regularization_type, "regularization type"),
        )

        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}.")
        if not self.tolerance > 0:
            raise ConfigurationError(f"tolerance must be > 0, got {self.tolerance}.")
        if self.regularization_weight < 0:
            raise ConfigurationError(
                f"regularization_weight must be >= 0, got {self.regularization_weight}."
            )
        if self.optimizer_type == OptimizerType.TRON and self.regularization_type in (
            RegularizationType.L1, RegularizationType.ELASTIC_NET
        ):
            raise ConfigurationError(
                "TRON needs a twice-differentiable objective and does not support L1 or "
                "elastic net regularization. Use optimizer_type='lbfgs'."
            )
        # Raises for an invalid elastic net mix
        self.regularization_context

    @property
    def regularization_context(self) -> RegularizationContext:
        return RegularizationContext(self.regularization_type, self.elastic_net_alpha)

    @property
    def l1_weight(self) -> float:
        return self.regularization_context.l1_weight(self.regularization_weight)

    @property
    def l2_weight(self) -> float:
        return self.regularization_context.l2_weight(self.regularization_weight)


# =============================================================================
# Coordinates
# =============================================================================

@dataclass(frozen=True)
class FixedEffectCoordinateConfig:
    """Settings of a fixed-effect coordinate."""
    feature_shard_id: str = GLOBAL_NAMESPACE
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    variance_computation: VarianceComputationType = VarianceComputationType.NONE

    def __post_init__(self):
        object.__setattr__(
            self, "variance_computation",
            _enum_value(VarianceComputationType, self.variance_computation, "variance computation type"),
        )


@dataclass(frozen=True)
class RandomEffectCoordinateConfig:
    """
    Settings of a random-effect coordinate.

    Parameters
    ----------
    random_effect_type : str
        Entity type (e.g. "userId").
    feature_shard_id : str
        Feature shard of the per-entity models.
    optimizer : OptimizerConfig
        Shared by every entity unless overridden.
    entity_optimizers : mapping, optional
        Per-entity optimizer overrides.
    active_data_upper_bound : int, optional
        Cap on the rows used to fit one entity.
    """
    random_effect_type: str
    feature_shard_id: str = GLOBAL_NAMESPACE
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    entity_optimizers: Mapping[Hashable, OptimizerConfig] = field(default_factory=dict)
    active_data_upper_bound: Optional[int] = None

    def __post_init__(self):
        if not self.random_effect_type:
            raise ConfigurationError("random_effect_type must be a non-empty string.")
        if self.active_data_upper_bound is not None and self.active_data_upper_bound < 1:
            raise ConfigurationError(
                f"active_data_upper_bound must be >= 1, got {self.active_data_upper_bound}."
            )

    def optimizer_for(self, entity_id: Hashable) -> OptimizerConfig:
        return self.entity_optimizers.get(entity_id, self.optimizer)


# =============================================================================
# Record Field Names
# =============================================================================

@dataclass(frozen=True)
class FieldNames:
    """Names of the record fields read during feature indexing and vectorization."""
    uid: str
    response: str
    offset: str
    weight: str
    features: str
    name: str
    term: str
    value: str


class FieldNamesType(str, enum.Enum):
    TRAINING_EXAMPLE = "TRAINING_EXAMPLE"
    RESPONSE_PREDICTION = "RESPONSE_PREDICTION"

    @classmethod
    def from_name(cls, name: str) -> "FieldNamesType":
        try:
            return cls(name.upper())
        except (ValueError, AttributeError):
            raise ConfigurationError(
                f"Input training file's field name type cannot be '{name}'. "
                f"Use one of: {', '.join(m.value for m in cls)}."
            )

    @property
    def field_names(self) -> FieldNames:
        if self == FieldNamesType.RESPONSE_PREDICTION:
            return FieldNames("uid", "response", "offset", "weight", "features", "name", "term", "value")
        return FieldNames("uid", "label", "offset", "weight", "features", "name", "term", "value")


# =============================================================================
# Feature Indexing Job
# =============================================================================

@dataclass(frozen=True)
class FeatureIndexingConfig:
    """
    Settings of the feature indexing job.

    Parameters
    ----------
    output_dir : str
        Root directory of the index-map store. Required.
    partition_num : int
        Number of writer partitions per namespace.
    add_intercept : bool
        Add the intercept feature to every namespace (unless overridden).
    field_names_type : FieldNamesType
        Record layout.
    shard_sections : mapping, optional
        Feature shard id to the feature bags it combines. When absent a single
        "global" index over the default feature bag is built.
    shard_intercepts : mapping, optional
        Per-shard intercept override.
    """
    output_dir: str
    partition_num: int = 1
    add_intercept: bool = True
    field_names_type: FieldNamesType = FieldNamesType.TRAINING_EXAMPLE
    shard_sections: Optional[Mapping[str, FrozenSet[str]]] = None
    shard_intercepts: Optional[Mapping[str, bool]] = None

    def __post_init__(self):
        if not self.output_dir:
            raise ConfigurationError("output_dir is required for feature indexing.")
        if os.path.exists(self.output_dir) and not os.path.isdir(self.output_dir):
            raise ConfigurationError(f"output_dir '{self.output_dir}' exists and is not a directory.")
        if self.partition_num < 1:
            raise ConfigurationError(f"partition_num must be >= 1, got {self.partition_num}.")
        if not isinstance(self.field_names_type, FieldNamesType):
            object.__setattr__(self, "field_names_type", FieldNamesType.from_name(self.field_names_type))

    @property
    def field_names(self) -> FieldNames:
        return self.field_names_type.field_names

    def intercept_for(self, shard_id: str) -> bool:
        return (self.shard_intercepts or {}).get(shard_id, self.add_intercept)


# =============================================================================
# String Parsers
# =============================================================================

def parse_shard_sections_map(text: str) -> Dict[str, Set[str]]:
    """
    Parse ``shardId1:section1,section2|shardId2:section3``.

    A shard without ``:`` maps to an empty set of sections.
    """
    if text is None or not text.strip():
        raise ConfigurationError("Shard-to-section map is empty.")
    result: Dict[str, Set[str]] = {}
    for entry in text.split("|"):
        parts = entry.split(":")
        if len(parts) == 1:
            key, sections = parts[0], set()
        elif len(parts) == 2:
            key = parts[0]
            sections = {s.strip() for s in parts[1].split(",") if s.strip()}
        else:
            raise ConfigurationError(
                f"Malformed shard-to-section map entry '{entry}'. Expected shardId:section1,section2."
            )
        key = key.strip()
        if not key:
            raise ConfigurationError(f"Malformed shard-to-section map entry '{entry}': empty shard id.")
        result[key] = sections
    return result


def parse_shard_intercept_map(text: str) -> Dict[str, bool]:
    """
    Parse ``shardId1:true|shardId2:false``. A bare shard id means true.
    """
    if text is None or not text.strip():
        raise ConfigurationError("Shard-to-intercept map is empty.")
    result: Dict[str, bool] = {}
    for entry in text.split("|"):
        parts = entry.split(":")
        if len(parts) == 1:
            key, flag = parts[0], True
        elif len(parts) == 2:
            key, raw = parts
            raw = raw.strip().lower()
            if raw not in ("true", "false"):
                raise ConfigurationError(
                    f"Malformed shard-to-intercept map entry '{entry}'. The flag must be true or false."
                )
            flag = raw == "true"
        else:
            raise ConfigurationError(
                f"Malformed shard-to-intercept map entry '{entry}'. Expected shardId:true|false."
            )
        key = key.strip()
        if not key:
            raise ConfigurationError(f"Malformed shard-to-intercept map entry '{entry}': empty shard id.")
        result[key] = flag
    return result


_DATE_FORMAT = "%Y%m%d"


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates."""
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ConfigurationError(f"Invalid date range: start {self.start} is after end {self.end}.")

    @classmethod
    def from_string(cls, text: str) -> "DateRange":
        """Parse ``yyyyMMdd-yyyyMMdd``."""
        parts = (text or "").split("-")
        if len(parts) != 2:
            raise ConfigurationError(
                f"Couldn't parse the date range '{text}'. Expected start.date-end.date, e.g. 20150501-20150531."
            )
        try:
            start = datetime.strptime(parts[0].strip(), _DATE_FORMAT).date()
            end = datetime.strptime(parts[1].strip(), _DATE_FORMAT).date()
        except ValueError as e:
            raise ConfigurationError(f"Couldn't parse the date range '{text}': {e}")
        return cls(start, end)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def dates(self):
        for offset in range(self.days):
            yield self.start + timedelta(days=offset)


@dataclass(frozen=True)
class DaysRange:
    """Range expressed as days ago, e.g. 90-1 means from 90 days ago to yesterday."""
    start_days_ago: int
    end_days_ago: int

    def __post_init__(self):
        if self.start_days_ago < 0 or self.end_days_ago < 0:
            raise ConfigurationError("Days-ago values must be non-negative.")
        if self.start_days_ago < self.end_days_ago:
            raise ConfigurationError(
                f"Invalid days range: start ({self.start_days_ago} days ago) is after "
                f"end ({self.end_days_ago} days ago)."
            )

    @classmethod
    def from_string(cls, text: str) -> "DaysRange":
        """Parse ``startDaysAgo-endDaysAgo``."""
        parts = (text or "").split("-")
        if len(parts) != 2:
            raise ConfigurationError(
                f"Couldn't parse the days range '{text}'. Expected start.daysAgo-end.daysAgo, e.g. 90-1."
            )
        try:
            return cls(int(parts[0]), int(parts[1]))
        except ValueError as e:
            raise ConfigurationError(f"Couldn't parse the days range '{text}': {e}")

    def to_date_range(self, today: Optional[date] = None) -> DateRange:
        today = today or date.today()
        return DateRange(today - timedelta(days=self.start_days_ago), today - timedelta(days=self.end_days_ago))


def resolve_range(
    date_range: Optional[DateRange],
    days_range: Optional[DaysRange],
    today: Optional[date] = None,
) -> Optional[DateRange]:
    """
    Resolve the two optional range parameters into one date range.

    Specifying both is a configuration error.
    """
    if date_range is not None and days_range is not None:
        raise ConfigurationError("Specify either a date range or a days-ago range, not both.")
    if days_range is not None:
        return days_range.to_date_range(today)
    return date_range
