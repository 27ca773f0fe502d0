"""
Evaluators
==========

An evaluator reduces per-sample ``(score, label, weight)`` triples to one
scalar and defines which of two values is better.

Two entry points:

- ``evaluate(scores, labels, weights)`` on aligned arrays, where ``scores``
  are full margins (offsets already included).
- ``evaluate_scores(Scores)`` for keyed scores. The evaluator holds a
  ``(uid, label, offset, weight)`` frame; scores are inner-joined on uid and
  the sample's offset is added before evaluation.

Loss-type metrics are lower-is-better, AUC is higher-is-better.
``better_than`` is strict, so equal values are never "better": callers
decide ties (coordinate descent keeps the earlier round).

+------------------------------+---------------------------+-----------+
| Evaluator                    | Value                     | Better    |
+==============================+===========================+===========+
| LogisticLossEvaluator        | Σ w·(log(1+e^s) - y·s)    | lower     |
| PoissonLossEvaluator         | Σ w·(e^s - y·s)           | lower     |
| SquaredLossEvaluator         | Σ w·½(s - y)²             | lower     |
| RMSEEvaluator                | √(Σ w·(s - y)² / Σ w)     | lower     |
| AUCEvaluator                 | weighted ROC AUC          | higher    |
+------------------------------+---------------------------+-----------+
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

import numpy as np

from gamefit.exceptions import ConfigurationError, ValidationError
from gamefit.families import LogisticLoss, LossFamily, PoissonLoss, SquaredLoss
from gamefit.scores import Scores
from gamefit.validation import coerce_to_float64

if TYPE_CHECKING:
    import polars as pl

__all__ = [
    "Evaluator",
    "LogisticLossEvaluator",
    "PoissonLossEvaluator",
    "SquaredLossEvaluator",
    "RMSEEvaluator",
    "AUCEvaluator",
    "evaluator_for_task",
]


class Evaluator:
    """
    Base class for metrics over keyed scores.

    Parameters
    ----------
    samples : polars.DataFrame, optional
        Frame with ``uid``, ``label``, ``offset`` and ``weight`` columns, as
        returned by ``dataset.samples_frame()``. Needed for
        :meth:`evaluate_scores` only.
    """

    name = "evaluator"
    higher_is_better = False

    def __init__(self, samples: Optional["pl.DataFrame"] = None):
        self.samples = samples

    def evaluate(self, scores, labels, weights=None) -> float:
        scores = coerce_to_float64(scores, "scores")
        labels = coerce_to_float64(labels, "labels")
        if weights is None:
            weights = np.ones_like(scores)
        else:
            weights = coerce_to_float64(weights, "weights")
        if not (len(scores) == len(labels) == len(weights)):
            raise ValidationError(
                f"scores, labels and weights must have the same length, got "
                f"{len(scores)}, {len(labels)} and {len(weights)}."
            )
        return float(self._evaluate(scores, labels, weights))

    def _evaluate(self, scores: np.ndarray, labels: np.ndarray, weights: np.ndarray) -> float:
        raise NotImplementedError

    def evaluate_scores(self, scores: Scores) -> float:
        """Evaluate keyed scores against the held sample frame."""
        if self.samples is None:
            raise ConfigurationError(
                f"{type(self).__name__} was built without a samples frame; "
                "pass samples=dataset.samples_frame() to evaluate keyed scores."
            )
        joined = self.samples.join(scores.to_frame(), on="uid", how="inner").sort("uid")
        margins = joined["score"].to_numpy() + joined["offset"].to_numpy()
        return self.evaluate(margins, joined["label"].to_numpy(), joined["weight"].to_numpy())

    def better_than(self, a: float, b: float) -> bool:
        """Whether metric value ``a`` is strictly better than ``b``."""
        return a > b if self.higher_is_better else a < b

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class _PointwiseLossEvaluator(Evaluator):
    """Weighted sum of a family's pointwise loss."""

    family: LossFamily

    def _evaluate(self, scores, labels, weights):
        loss, _ = self.family.loss_and_dz(scores, labels)
        return np.dot(weights, loss)


class LogisticLossEvaluator(_PointwiseLossEvaluator):
    name = "logistic_loss"
    family = LogisticLoss()


class PoissonLossEvaluator(_PointwiseLossEvaluator):
    name = "poisson_loss"
    family = PoissonLoss()


class SquaredLossEvaluator(_PointwiseLossEvaluator):
    name = "squared_loss"
    family = SquaredLoss()


class RMSEEvaluator(Evaluator):
    name = "rmse"

    def _evaluate(self, scores, labels, weights):
        total = weights.sum()
        if total <= 0:
            return float("nan")
        diff = scores - labels
        return np.sqrt(np.dot(weights, diff * diff) / total)


class AUCEvaluator(Evaluator):
    """
    Weighted area under the ROC curve.

    Labels > 0.5 are positives. Tied scores count half. Returns NaN when
    only one class is present.
    """

    name = "auc"
    higher_is_better = True

    def _evaluate(self, scores, labels, weights):
        positive = labels > 0.5
        pos_total = weights[positive].sum()
        neg_total = weights[~positive].sum()
        if pos_total <= 0 or neg_total <= 0:
            return float("nan")

        order = np.argsort(scores, kind="mergesort")
        s = scores[order]
        pos_w = np.where(positive[order], weights[order], 0.0)
        neg_w = np.where(positive[order], 0.0, weights[order])

        # Group tied scores
        boundaries = np.flatnonzero(np.diff(s)) + 1
        pos_groups = np.add.reduceat(pos_w, np.r_[0, boundaries])
        neg_groups = np.add.reduceat(neg_w, np.r_[0, boundaries])
        neg_below = np.cumsum(neg_groups) - neg_groups

        area = np.dot(pos_groups, neg_below + 0.5 * neg_groups)
        return area / (pos_total * neg_total)


_TASK_EVALUATORS = {
    "logistic": LogisticLossEvaluator,
    "logistic_regression": LogisticLossEvaluator,
    "binomial": LogisticLossEvaluator,
    "poisson": PoissonLossEvaluator,
    "poisson_regression": PoissonLossEvaluator,
    "linear": SquaredLossEvaluator,
    "linear_regression": SquaredLossEvaluator,
    "gaussian": SquaredLossEvaluator,
    "squared": SquaredLossEvaluator,
}

_NAMED_EVALUATORS = {
    cls.name: cls
    for cls in (LogisticLossEvaluator, PoissonLossEvaluator, SquaredLossEvaluator, RMSEEvaluator, AUCEvaluator)
}


def evaluator_for_task(task_type, samples: Optional["pl.DataFrame"] = None) -> Evaluator:
    """
    Default evaluator (the training loss) for a task type or family.

    Metric names ("auc", "rmse", "logistic_loss", ...) are accepted too.
    """
    if isinstance(task_type, LossFamily):
        task_type = task_type.name
    key = str(task_type).lower()
    cls = _TASK_EVALUATORS.get(key) or _NAMED_EVALUATORS.get(key)
    if cls is None:
        raise ConfigurationError(
            f"Unknown task type or metric '{task_type}'. Use one of: "
            f"{', '.join(sorted(set(_TASK_EVALUATORS) | set(_NAMED_EVALUATORS)))}."
        )
    return cls(samples)
