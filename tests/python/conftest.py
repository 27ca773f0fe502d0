"""
Shared fixtures: synthetic GAME data.

Labels are generated from a fixed effect plus a per-entity effect with no
noise, so they are linearly separable in the combined model.
"""

import numpy as np
import pytest

import gamefit as gf


def make_game_data(n_samples=1000, n_entities=10, dim=10, seed=42):
    """
    Dense features with an intercept column, entity ids and separable labels.

    Returns a dict with ``uids``, ``entity_ids``, ``X``, ``y``.
    """
    rng = np.random.RandomState(seed)
    X = np.column_stack([np.ones(n_samples), rng.randn(n_samples, dim - 1)])
    entity_ids = np.array([f"user{i}" for i in rng.randint(0, n_entities, n_samples)])

    beta = rng.randn(dim)
    entity_beta = {f"user{i}": rng.randn(dim) * 0.5 for i in range(n_entities)}
    margin = X @ beta + np.array([X[i] @ entity_beta[e] for i, e in enumerate(entity_ids)])
    y = (margin > 0).astype(float)

    # Non-contiguous ids so nothing relies on uid == row
    uids = np.arange(n_samples, dtype=np.int64) * 7 + 3
    return {"uids": uids, "entity_ids": entity_ids, "X": X, "y": y}


@pytest.fixture(scope="module")
def game_data():
    return make_game_data()


@pytest.fixture
def fixed_dataset(game_data):
    return gf.FixedEffectDataset.from_arrays(
        game_data["uids"], game_data["X"], game_data["y"], num_partitions=4,
    )


@pytest.fixture
def random_dataset(game_data):
    return gf.RandomEffectDataset.from_arrays(
        game_data["uids"],
        game_data["entity_ids"],
        game_data["X"],
        game_data["y"],
        random_effect_type="userId",
        num_partitions=3,
    )
