"""
Coordinate Descent
==================

Fits a GAME model by block coordinate descent over an ordered set of
coordinates (e.g. ``"global"`` fixed effect, then ``"per-user"`` and
``"per-item"`` random effects).

The driver keeps the latest score of every coordinate. The composite
prediction of a sample is the sum of these scores (plus the sample's base
offset). One round visits every coordinate in order:

1. ``residual = total - own``: the other coordinates' current fit.
2. ``update_model(model, residual)``: retrain against that residual.
3. ``score`` the new model and swap it into the total.

After each round the training loss (and, when validation coordinates are
given, the validation metric) is recorded.

Termination
-----------
Whichever comes first:

- ``num_iterations`` rounds have run;
- the validation metric did not improve for ``patience`` consecutive rounds;
- the relative training-loss improvement of a round is below ``tolerance``
  (``"training_loss_converged"``), or the loss got worse by more than
  ``tolerance`` (``"training_loss_increased"``).

The best model across rounds is kept as well as the last one. It is chosen
by the validation metric when available, else by training loss. Round 0 is
the initial model, and ties keep the earlier round.

Example
-------
>>> descent = CoordinateDescent({"global": fixed, "per-user": per_user}, num_iterations=5)
>>> result = descent.run()
>>> print(result.summary())
>>> result.best_model["per-user"]
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union, TYPE_CHECKING

from gamefit.constants import (
    DEFAULT_DESCENT_TOLERANCE,
    DEFAULT_NUM_ITERATIONS,
    DEFAULT_PATIENCE,
    EPSILON,
)
from gamefit.coordinates import Coordinate
from gamefit.diagnostics import CoordinateUpdateRecord, RoundRecord, format_history
from gamefit.evaluation import Evaluator, evaluator_for_task
from gamefit.exceptions import ConfigurationError
from gamefit.models import GameModel
from gamefit.scores import Scores

if TYPE_CHECKING:
    import polars as pl

logger = logging.getLogger(__name__)

__all__ = ["TerminationReason", "CoordinateDescent", "CoordinateDescentResult"]


class TerminationReason:
    """String constants for why coordinate descent stopped."""
    MAX_ITERATIONS = "max_iterations"
    VALIDATION_NOT_IMPROVING = "validation_not_improving"
    TRAINING_LOSS_CONVERGED = "training_loss_converged"
    TRAINING_LOSS_INCREASED = "training_loss_increased"


@dataclass(frozen=True)
class CoordinateDescentResult:
    """
    Outcome of :meth:`CoordinateDescent.run`.

    Attributes
    ----------
    model : GameModel
        Model after the last round.
    best_model : GameModel
        Model of the best round.
    best_round : int
        Index of the best round (0 is the initial model).
    history : tuple of RoundRecord
        One record per round, starting with round 0.
    termination_reason : str
        One of the :class:`TerminationReason` constants.
    """
    model: GameModel
    best_model: GameModel
    best_round: int
    history: Tuple[RoundRecord, ...]
    termination_reason: str

    @property
    def n_rounds(self) -> int:
        """Rounds run after the initial model."""
        return len(self.history) - 1

    @property
    def training_losses(self) -> Tuple[float, ...]:
        return tuple(r.training_loss for r in self.history)

    @property
    def validation_metrics(self) -> Tuple[Optional[float], ...]:
        return tuple(r.validation_metric for r in self.history)

    def to_frame(self) -> "pl.DataFrame":
        """Round history as a Polars DataFrame."""
        import polars as pl

        return pl.DataFrame({
            "round": [r.round for r in self.history],
            "training_loss": [r.training_loss for r in self.history],
            "validation_metric": [r.validation_metric for r in self.history],
            "n_updates": [len(r.updates) for r in self.history],
        })

    def summary(self) -> str:
        text = format_history(list(self.history), self.best_round)
        return f"{text}\nTerminated: {self.termination_reason}; best round {self.best_round}"


def _ordered_coordinates(coordinates) -> Tuple[Tuple[str, Coordinate], ...]:
    items = tuple(coordinates.items()) if isinstance(coordinates, Mapping) else tuple(coordinates)
    if not items:
        raise ConfigurationError("CoordinateDescent needs at least one coordinate.")
    ids = [cid for cid, _ in items]
    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate coordinate ids in {ids}.")
    for cid, coordinate in items:
        if not isinstance(coordinate, Coordinate):
            raise ConfigurationError(
                f"Coordinate '{cid}' ({type(coordinate).__name__}) does not implement "
                "initialize_model / score / update_model."
            )
    return items


def _sum_scores(scores: Iterable[Scores]) -> Scores:
    total = Scores.empty()
    for s in scores:
        total = total + s
    return total


class CoordinateDescent:
    """
    Block coordinate descent over GAME coordinates.

    Parameters
    ----------
    coordinates : mapping or sequence of (id, Coordinate)
        Training coordinates in update order.
    training_evaluator : Evaluator, optional
        Evaluator holding the training samples frame. Defaults to the loss of
        the first coordinate's ``family`` over its ``dataset``; required when
        that coordinate lacks either attribute.
    validation_coordinates : mapping, optional
        Coordinates built on validation data, used only to score. Keys must
        match ``coordinates``.
    validation_evaluator : Evaluator, optional
        Evaluator holding the validation samples frame. Required with
        ``validation_coordinates``.
    num_iterations : int
        Round budget.
    tolerance : float
        Stop when a round's relative training-loss improvement is below this.
    patience : int
        Stop when the validation metric has not improved for this many rounds.
    locked_coordinates : iterable of str
        Coordinates that are scored but never retrained.
    """

    def __init__(
        self,
        coordinates: Union[Mapping[str, Coordinate], Iterable[Tuple[str, Coordinate]]],
        training_evaluator: Optional[Evaluator] = None,
        validation_coordinates: Optional[Mapping[str, Coordinate]] = None,
        validation_evaluator: Optional[Evaluator] = None,
        num_iterations: int = DEFAULT_NUM_ITERATIONS,
        tolerance: float = DEFAULT_DESCENT_TOLERANCE,
        patience: int = DEFAULT_PATIENCE,
        locked_coordinates: Iterable[str] = (),
    ):
        self.coordinates = _ordered_coordinates(coordinates)
        ids = [cid for cid, _ in self.coordinates]

        if num_iterations < 1:
            raise ConfigurationError(f"num_iterations must be >= 1, got {num_iterations}.")
        if tolerance < 0:
            raise ConfigurationError(f"tolerance must be >= 0, got {tolerance}.")
        if patience < 1:
            raise ConfigurationError(f"patience must be >= 1, got {patience}.")

        self.locked_coordinates = frozenset(locked_coordinates)
        unknown = self.locked_coordinates.difference(ids)
        if unknown:
            raise ConfigurationError(f"Locked coordinates {sorted(unknown)} are not among {ids}.")

        if validation_coordinates is not None:
            missing = set(ids).difference(validation_coordinates)
            if missing:
                raise ConfigurationError(f"No validation coordinate for {sorted(missing)}.")
            if validation_evaluator is None:
                raise ConfigurationError("validation_coordinates need a validation_evaluator.")
        elif validation_evaluator is not None:
            raise ConfigurationError("validation_evaluator needs validation_coordinates to score with.")

        if training_evaluator is None:
            first_id, first = self.coordinates[0]
            family, dataset = getattr(first, "family", None), getattr(first, "dataset", None)
            if family is None or dataset is None:
                raise ConfigurationError(
                    f"Coordinate '{first_id}' has no family and dataset to build the default "
                    "training evaluator from; pass a training_evaluator."
                )
            training_evaluator = evaluator_for_task(family, dataset.samples_frame())

        self.training_evaluator = training_evaluator
        self.validation_coordinates = validation_coordinates
        self.validation_evaluator = validation_evaluator
        self.num_iterations = num_iterations
        self.tolerance = tolerance
        self.patience = patience

    def initialize_model(self) -> GameModel:
        return GameModel({cid: coordinate.initialize_model() for cid, coordinate in self.coordinates})

    def _validation_metric(self, model: GameModel) -> Optional[float]:
        if self.validation_coordinates is None:
            return None
        total = _sum_scores(
            self.validation_coordinates[cid].score(model[cid]) for cid, _ in self.coordinates
        )
        return self.validation_evaluator.evaluate_scores(total)

    def run(self, initial_model: Optional[GameModel] = None) -> CoordinateDescentResult:
        """
        Run coordinate descent from ``initial_model`` (zero models by default).
        """
        model = initial_model if initial_model is not None else self.initialize_model()
        missing = [cid for cid, _ in self.coordinates if cid not in model]
        if missing:
            raise ConfigurationError(f"Initial model has no entry for coordinates {missing}.")

        scores: Dict[str, Scores] = {cid: c.score(model[cid]) for cid, c in self.coordinates}
        total = _sum_scores(scores.values())

        training_loss = self.training_evaluator.evaluate_scores(total)
        validation = self._validation_metric(model)
        history = [RoundRecord(0, training_loss, validation)]
        logger.info("Round 0: training loss %.6g, validation %s", training_loss, validation)

        selecting_on_validation = validation is not None
        selection_evaluator = self.validation_evaluator if selecting_on_validation else self.training_evaluator
        best_model, best_round = model, 0
        best_metric = validation if selecting_on_validation else training_loss
        rounds_without_improvement = 0
        reason = TerminationReason.MAX_ITERATIONS

        for round_idx in range(1, self.num_iterations + 1):
            updates = []
            for cid, coordinate in self.coordinates:
                if cid in self.locked_coordinates:
                    continue
                start = time.perf_counter()
                residual = total - scores[cid]
                new_model, trace = coordinate.update_model(model[cid], residual)
                new_scores = coordinate.score(new_model)

                model = model.updated(cid, new_model)
                scores[cid] = new_scores
                total = residual + new_scores

                elapsed = time.perf_counter() - start
                updates.append(CoordinateUpdateRecord(round_idx, cid, trace, elapsed))
                logger.info("Round %d: updated coordinate '%s' in %.3fs", round_idx, cid, elapsed)

            previous_loss = training_loss
            training_loss = self.training_evaluator.evaluate_scores(total)
            validation = self._validation_metric(model)
            history.append(RoundRecord(round_idx, training_loss, validation, tuple(updates)))
            logger.info(
                "Round %d: training loss %.6g, validation %s", round_idx, training_loss, validation
            )

            metric = validation if selecting_on_validation else training_loss
            if selection_evaluator.better_than(metric, best_metric):
                best_model, best_round, best_metric = model, round_idx, metric
                rounds_without_improvement = 0
            else:
                rounds_without_improvement += 1

            if selecting_on_validation and rounds_without_improvement >= self.patience:
                reason = TerminationReason.VALIDATION_NOT_IMPROVING
                break
            improvement = (previous_loss - training_loss) / max(abs(previous_loss), EPSILON)
            if self.training_evaluator.higher_is_better:
                improvement = -improvement
            if improvement < -self.tolerance:
                reason = TerminationReason.TRAINING_LOSS_INCREASED
                break
            if improvement < self.tolerance:
                reason = TerminationReason.TRAINING_LOSS_CONVERGED
                break

        logger.info(
            "Coordinate descent stopped after %d rounds (%s); best round %d",
            len(history) - 1, reason, best_round,
        )
        return CoordinateDescentResult(model, best_model, best_round, tuple(history), reason)
