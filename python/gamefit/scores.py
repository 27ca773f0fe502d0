"""
Sample-id keyed scores.

A :class:`Scores` object is the output of ``Coordinate.score``: one real
value per sample, keyed by the sample's unique id so it can always be joined
back against the dataset it came from.

Arithmetic
----------
``a + b`` and ``a - b`` join on sample id. An id present on only one side is
treated as a zero contribution on the other side, which is what an absent
random-effect entity or a coordinate that does not cover a sample means.

Comparison
----------
Two scores are comparable only when they key the same ids; :meth:`equals`
and :meth:`allclose` return False otherwise.

Examples
--------
>>> a = Scores([1, 2, 3], [0.5, 1.0, -1.0])
>>> b = Scores([2, 3, 4], [1.0, 1.0, 2.0])
>>> (a + b).to_dict()
{1: 0.5, 2: 2.0, 3: 0.0, 4: 2.0}
"""

from __future__ import annotations

from typing import Dict, Iterable, TYPE_CHECKING

import numpy as np

from gamefit.exceptions import ValidationError

if TYPE_CHECKING:
    import polars as pl

__all__ = ["Scores"]


class Scores:
    """
    Immutable mapping from sample id to score.

    Parameters
    ----------
    uids : array-like of int
        Unique sample ids.
    values : array-like of float
        Score for each id.
    """

    __slots__ = ("_uids", "_values")

    def __init__(self, uids: Iterable[int], values: Iterable[float]):
        uids = np.asarray(uids, dtype=np.int64)
        values = np.asarray(values, dtype=np.float64)
        if uids.shape != values.shape or uids.ndim != 1:
            raise ValidationError(
                f"Scores need matching 1-D ids and values, got shapes {uids.shape} and {values.shape}."
            )

        order = np.argsort(uids, kind="stable")
        uids = uids[order]
        values = values[order]
        if len(uids) > 1 and np.any(uids[1:] == uids[:-1]):
            raise ValidationError("Scores contain duplicate sample ids.")

        uids.setflags(write=False)
        values.setflags(write=False)
        self._uids = uids
        self._values = values

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def zeros(cls, uids: Iterable[int]) -> "Scores":
        """Zero score for every id."""
        uids = np.asarray(uids, dtype=np.int64)
        return cls(uids, np.zeros(len(uids), dtype=np.float64))

    @classmethod
    def empty(cls) -> "Scores":
        return cls(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64))

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def uids(self) -> np.ndarray:
        """Sorted sample ids (read-only)."""
        return self._uids

    @property
    def values(self) -> np.ndarray:
        """Scores aligned with :attr:`uids` (read-only)."""
        return self._values

    def __len__(self) -> int:
        return len(self._uids)

    def __repr__(self) -> str:
        return f"Scores(n={len(self)})"

    def lookup(self, uids: Iterable[int], default: float = 0.0) -> np.ndarray:
        """
        Scores for the requested ids, in the requested order.

        Ids without a score get ``default``.
        """
        uids = np.asarray(uids, dtype=np.int64)
        result = np.full(len(uids), default, dtype=np.float64)
        if len(self._uids) == 0 or len(uids) == 0:
            return result

        pos = np.searchsorted(self._uids, uids)
        pos_clipped = np.minimum(pos, len(self._uids) - 1)
        found = self._uids[pos_clipped] == uids
        result[found] = self._values[pos_clipped[found]]
        return result

    def to_dict(self) -> Dict[int, float]:
        return {int(u): float(v) for u, v in zip(self._uids, self._values)}

    def to_frame(self) -> "pl.DataFrame":
        """Convert to a Polars DataFrame with ``uid`` and ``score`` columns."""
        import polars as pl

        return pl.DataFrame({"uid": self._uids, "score": self._values})

    # -------------------------------------------------------------------------
    # Algebra
    # -------------------------------------------------------------------------

    def _combine(self, other: "Scores", sign: float) -> "Scores":
        if not isinstance(other, Scores):
            return NotImplemented
        if len(self._uids) == len(other._uids) and np.array_equal(self._uids, other._uids):
            return Scores(self._uids, self._values + sign * other._values)

        uids = np.union1d(self._uids, other._uids)
        values = self.lookup(uids) + sign * other.lookup(uids)
        return Scores(uids, values)

    def __add__(self, other: "Scores") -> "Scores":
        return self._combine(other, 1.0)

    def __sub__(self, other: "Scores") -> "Scores":
        return self._combine(other, -1.0)

    def __neg__(self) -> "Scores":
        return Scores(self._uids, -self._values)

    # -------------------------------------------------------------------------
    # Comparison
    # -------------------------------------------------------------------------

    def same_keys(self, other: "Scores") -> bool:
        """True when both scores key exactly the same sample ids."""
        return np.array_equal(self._uids, other._uids)

    def equals(self, other: "Scores") -> bool:
        """Exact equality of ids and values."""
        return self.same_keys(other) and np.array_equal(self._values, other._values)

    def allclose(self, other: "Scores", rtol: float = 1e-7, atol: float = 1e-10) -> bool:
        """Approximate equality; False when the id sets differ."""
        return self.same_keys(other) and np.allclose(self._values, other._values, rtol=rtol, atol=atol)

    def is_all_zero(self, atol: float = 1e-12) -> bool:
        return bool(np.all(np.abs(self._values) <= atol))
