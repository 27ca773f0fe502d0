"""
Tests for Keyed Scores
======================
"""

import numpy as np
import pytest

import gamefit as gf


class TestScoresConstruction:
    """Ids are sorted, unique and read-only."""

    def test_sorted_by_uid(self):
        scores = gf.Scores([5, 1, 3], [0.5, 0.1, 0.3])

        np.testing.assert_array_equal(scores.uids, [1, 3, 5])
        np.testing.assert_array_equal(scores.values, [0.1, 0.3, 0.5])

    def test_duplicate_uids_raise(self):
        with pytest.raises(gf.ValidationError, match="duplicate"):
            gf.Scores([1, 2, 1], [0.0, 0.0, 0.0])

    def test_shape_mismatch_raises(self):
        with pytest.raises(gf.ValidationError):
            gf.Scores([1, 2], [0.0])

    def test_arrays_are_read_only(self):
        scores = gf.Scores([1, 2], [1.0, 2.0])
        with pytest.raises(ValueError):
            scores.values[0] = 10.0

    def test_does_not_alias_input(self):
        values = np.array([1.0, 2.0])
        scores = gf.Scores(np.array([1, 2]), values)
        values[0] = 99.0
        assert scores.values[0] == 1.0


class TestScoresAlgebra:
    """Addition joins by uid with zero fill."""

    def test_add_same_keys(self):
        a = gf.Scores([1, 2], [1.0, 2.0])
        b = gf.Scores([2, 1], [0.5, 0.25])

        total = a + b

        np.testing.assert_array_equal(total.uids, [1, 2])
        np.testing.assert_array_equal(total.values, [1.25, 2.5])

    def test_add_disjoint_keys_zero_fills(self):
        a = gf.Scores([1, 2], [1.0, 2.0])
        b = gf.Scores([2, 3], [10.0, 30.0])

        total = a + b

        assert total.to_dict() == {1: 1.0, 2: 12.0, 3: 30.0}

    def test_subtract_and_negate(self):
        a = gf.Scores([1, 2], [1.0, 2.0])
        b = gf.Scores([1, 2], [0.5, 0.5])

        assert (a - b).to_dict() == {1: 0.5, 2: 1.5}
        assert (-a).to_dict() == {1: -1.0, 2: -2.0}

    def test_residual_round_trip(self):
        """total - own + own gives back total."""
        own = gf.Scores([1, 2, 3], [0.1, 0.2, 0.3])
        other = gf.Scores([1, 2, 3], [1.0, -1.0, 0.5])
        total = own + other

        assert ((total - own) + own).allclose(total)

    def test_lookup_with_default(self):
        scores = gf.Scores([10, 20], [1.0, 2.0])
        np.testing.assert_array_equal(scores.lookup([20, 15, 10]), [2.0, 0.0, 1.0])
        np.testing.assert_array_equal(gf.Scores.empty().lookup([1]), [0.0])


class TestScoresComparison:
    """Comparisons require identical id sets."""

    def test_equals_requires_same_keys(self):
        a = gf.Scores([1, 2], [0.0, 0.0])
        b = gf.Scores([1, 3], [0.0, 0.0])

        assert not a.same_keys(b)
        assert not a.equals(b)
        assert a.equals(gf.Scores([2, 1], [0.0, 0.0]))

    def test_is_all_zero(self):
        assert gf.Scores.zeros([1, 2, 3]).is_all_zero()
        assert not gf.Scores([1], [1e-3]).is_all_zero()

    def test_to_frame(self):
        frame = gf.Scores([2, 1], [0.2, 0.1]).to_frame()

        assert frame.columns == ["uid", "score"]
        assert frame["uid"].to_list() == [1, 2]
        assert frame["score"].to_list() == [0.1, 0.2]
