"""
Partition-parallel execution helpers.

Every coordinate runs the same local computation on each partition of its
dataset and combines the results at a single barrier. This module keeps that
pattern independent of the execution engine: pass any
``concurrent.futures.Executor`` (threads, processes) or nothing to run
sequentially.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from functools import reduce
from typing import Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

__all__ = ["map_partitions", "fold_partitions"]


def map_partitions(
    handler: Callable[[T], R],
    partitions: Iterable[T],
    executor: Optional[Executor] = None,
) -> List[R]:
    """
    Apply ``handler`` to every partition and return results in partition order.

    Parameters
    ----------
    handler : callable
        Pure function of one partition. A process pool needs it picklable:
        a module-level function or a ``functools.partial`` of one.
    partitions : iterable
        The partitions.
    executor : concurrent.futures.Executor, optional
        Engine to run on. ``None`` runs sequentially in the calling thread.

    Returns
    -------
    list
        One result per partition, in the input order.
    """
    partitions = list(partitions)
    if not partitions:
        return []

    if executor is None:
        return [handler(partition) for partition in partitions]

    logger.debug("Dispatching %d partitions to %s", len(partitions), type(executor).__name__)
    # Executor.map preserves input order, which keeps reductions deterministic
    return list(executor.map(handler, partitions))


def fold_partitions(
    handler: Callable[[T], R],
    partitions: Iterable[T],
    combine: Callable[[R, R], R],
    executor: Optional[Executor] = None,
) -> R:
    """
    Map every partition to a local accumulator and fold them with ``combine``.

    ``combine`` must be associative; the fold runs in partition order so the
    floating point result is reproducible for a fixed partitioning.
    """
    results = map_partitions(handler, partitions, executor)
    if not results:
        raise ValueError("Cannot fold an empty collection of partitions.")
    return reduce(combine, results)
