"""
Pointwise Loss Families
=======================

A loss family specifies, for one sample with margin ``z`` (the linear
predictor ``x·β + offset``) and label ``y``:

1. the loss ``l(z, y)``
2. its first derivative with respect to the margin, ``dl/dz``
3. its second derivative, ``d²l/dz²``
4. the mean function turning a margin into a prediction

Everything else in training (gradients, Hessian-vector products, the
random-effect local fits) is built from these three numbers per sample, so a
new model family only needs a new class here.

Choosing the Right Family
-------------------------

+------------------+-------------------+--------------+----------------------+
| Data Type        | Example           | Family       | Loss                 |
+==================+===================+==============+======================+
| Binary (0 or 1)  | Did they click?   | Logistic     | log(1 + e^z) - y·z   |
| Continuous       | Watch time        | Linear       | ½(z - y)²            |
| Counts (0,1,2,..)| Number of visits  | Poisson      | e^z - y·z            |
+------------------+-------------------+--------------+----------------------+

Understanding the Second Derivative
-----------------------------------

The Hessian of the full objective is ``Xᵀ D X`` with ``D = diag(w·l''(z))``:

- **Logistic**: l'' = p(1-p), largest at p = 0.5, vanishing for confident
  predictions. Linearly separable data therefore needs regularization.
- **Linear**: l'' = 1, the Hessian does not depend on the coefficients.
- **Poisson**: l'' = e^z, grows with the predicted rate.

Examples
--------
>>> import gamefit as gf
>>> import numpy as np
>>>
>>> family = gf.families.Logistic()
>>> z = np.array([0.0, 2.0])
>>> y = np.array([1.0, 0.0])
>>> loss, dz = family.loss_and_dz(z, y)
>>> family.d2z(z, y)  # [0.25, 0.105]
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy.special import expit

from gamefit.constants import MAX_EXP_MARGIN
from gamefit.exceptions import ConfigurationError

__all__ = [
    "LossFamily",
    "LogisticLoss",
    "SquaredLoss",
    "PoissonLoss",
    "Logistic",
    "Linear",
    "Poisson",
    "resolve_family",
]


class LossFamily:
    """Base class for pointwise losses of the margin."""

    name = "base"

    def loss_and_dz(self, margin: np.ndarray, label: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Per-sample loss and first derivative w.r.t. the margin."""
        raise NotImplementedError

    def d2z(self, margin: np.ndarray, label: np.ndarray) -> np.ndarray:
        """Per-sample second derivative w.r.t. the margin."""
        raise NotImplementedError

    def mean(self, margin: np.ndarray) -> np.ndarray:
        """Prediction on the response scale."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class LogisticLoss(LossFamily):
    """Negative Bernoulli log-likelihood with labels in [0, 1]."""

    name = "logistic"

    def loss_and_dz(self, margin, label):
        margin = np.asarray(margin, dtype=np.float64)
        label = np.asarray(label, dtype=np.float64)
        # log(1 + e^z) computed without overflow
        loss = np.logaddexp(0.0, margin) - label * margin
        dz = expit(margin) - label
        return loss, dz

    def d2z(self, margin, label):
        p = expit(np.asarray(margin, dtype=np.float64))
        return p * (1.0 - p)

    def mean(self, margin):
        return expit(np.asarray(margin, dtype=np.float64))


class SquaredLoss(LossFamily):
    """Half squared error."""

    name = "linear"

    def loss_and_dz(self, margin, label):
        diff = np.asarray(margin, dtype=np.float64) - np.asarray(label, dtype=np.float64)
        return 0.5 * diff * diff, diff

    def d2z(self, margin, label):
        return np.ones_like(np.asarray(margin, dtype=np.float64))

    def mean(self, margin):
        return np.asarray(margin, dtype=np.float64)


class PoissonLoss(LossFamily):
    """Negative Poisson log-likelihood (without the log(y!) constant)."""

    name = "poisson"

    def loss_and_dz(self, margin, label):
        margin = np.minimum(np.asarray(margin, dtype=np.float64), MAX_EXP_MARGIN)
        label = np.asarray(label, dtype=np.float64)
        rate = np.exp(margin)
        return rate - label * margin, rate - label

    def d2z(self, margin, label):
        return np.exp(np.minimum(np.asarray(margin, dtype=np.float64), MAX_EXP_MARGIN))

    def mean(self, margin):
        return np.exp(np.minimum(np.asarray(margin, dtype=np.float64), MAX_EXP_MARGIN))


def Logistic() -> LogisticLoss:
    """
    Logistic family for binary labels (0/1).

    The margin is the log-odds: p = 1 / (1 + e^(-z)).

    Example
    -------
    >>> family = gf.families.Logistic()
    >>> family.mean(np.array([0.0]))  # [0.5]
    """
    return LogisticLoss()


def Linear() -> SquaredLoss:
    """
    Linear (Gaussian) family for continuous labels.

    The margin is the prediction itself.
    """
    return SquaredLoss()


def Poisson() -> PoissonLoss:
    """
    Poisson family for count labels.

    The margin is the log rate: E[y] = e^z. Offsets such as log(exposure)
    enter through the margin like any other fixed contribution.
    """
    return PoissonLoss()


_FAMILIES = {
    "logistic": Logistic,
    "logistic_regression": Logistic,
    "binomial": Logistic,
    "linear": Linear,
    "linear_regression": Linear,
    "gaussian": Linear,
    "squared": Linear,
    "poisson": Poisson,
    "poisson_regression": Poisson,
}


def resolve_family(family) -> LossFamily:
    """
    Map a family name (or instance) to a :class:`LossFamily`.

    Raises
    ------
    ConfigurationError
        For unknown names.
    """
    if isinstance(family, LossFamily):
        return family
    key = str(family).lower()
    if key not in _FAMILIES:
        raise ConfigurationError(
            f"Unknown family '{family}'. Use one of: logistic, linear, poisson."
        )
    return _FAMILIES[key]()
