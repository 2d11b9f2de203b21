"""Tests for concordance-at-the-top curves."""

import numpy as np
import pandas as pd
import pytest

from batchcompare.stats.concordance import cat_curve, cat_table

GENES = [f"g{i}" for i in range(5)]


class TestCATCurve:

    def test_hand_computed_curve(self):
        a = pd.Series([5.0, 4.0, 3.0, 2.0, 1.0], index=GENES)
        b = pd.Series([5.0, 4.0, 1.0, 2.0, 3.0], index=GENES)

        curve = cat_curve(a, b)

        np.testing.assert_allclose(curve.concordance, [1.0, 1.0, 2 / 3, 0.75, 1.0])
        np.testing.assert_array_equal(curve.ranks, np.arange(1, 6))
        assert curve.n_features == 5

    def test_identical_rankings(self):
        rng = np.random.RandomState(0)
        stat = pd.Series(rng.normal(size=200), index=[f"g{i}" for i in range(200)])
        curve = cat_curve(stat, stat * 3)
        np.testing.assert_array_equal(curve.concordance, np.ones(200))

    def test_abs_ignores_sign(self):
        a = pd.Series([3.0, -2.0, 1.0], index=GENES[:3])
        b = pd.Series([-3.0, 2.0, -1.0], index=GENES[:3])
        np.testing.assert_array_equal(cat_curve(a, b).concordance, [1.0, 1.0, 1.0])
        assert cat_curve(a, b, rank_by="signed").concordance[0] == 0.0

    def test_ascending_for_p_values(self):
        p_a = pd.Series([0.001, 0.5, 0.9], index=GENES[:3])
        p_b = pd.Series([0.002, 0.8, 0.3], index=GENES[:3])
        curve = cat_curve(p_a, p_b, rank_by="ascending")
        assert curve.concordance[0] == 1.0
        assert curve.concordance[1] == 0.5

    def test_aligns_on_shared_index(self):
        a = pd.Series([3.0, 2.0, 1.0], index=["g0", "g1", "g2"])
        b = pd.Series([1.0, 3.0, 2.0, 9.0], index=["g2", "g0", "g1", "other"])
        curve = cat_curve(a, b)
        assert curve.n_features == 3
        np.testing.assert_array_equal(curve.concordance, [1.0, 1.0, 1.0])

    def test_max_rank_truncates(self):
        rng = np.random.RandomState(1)
        index = [f"g{i}" for i in range(50)]
        curve = cat_curve(pd.Series(rng.normal(size=50), index=index),
                          pd.Series(rng.normal(size=50), index=index), max_rank=10)
        assert curve.max_rank == 10
        assert len(curve.to_frame()) == 10

    def test_random_rankings_near_chance(self):
        rng = np.random.RandomState(2)
        index = [f"g{i}" for i in range(2000)]
        curve = cat_curve(pd.Series(rng.normal(size=2000), index=index),
                          pd.Series(rng.normal(size=2000), index=index))
        assert curve.concordance[999] == pytest.approx(0.5, abs=0.05)
        assert curve.concordance[-1] == 1.0

    def test_disjoint_features(self):
        with pytest.raises(ValueError, match="share no features"):
            cat_curve(pd.Series([1.0], index=["a"]), pd.Series([1.0], index=["b"]))

    def test_unknown_rank_by(self):
        a = pd.Series([1.0, 2.0], index=GENES[:2])
        with pytest.raises(ValueError, match="Unknown rank_by"):
            cat_curve(a, a, rank_by="median")


class TestCATTable:

    def test_long_format(self):
        reference = pd.Series([5.0, 4.0, 3.0, 2.0, 1.0], index=GENES)
        others = {
            '+sva': reference.copy(),
            'none': pd.Series([1.0, 2.0, 3.0, 4.0, 5.0], index=GENES),
        }

        table = cat_table(reference, others, max_rank=3)

        assert list(table.columns) == ['adjustment', 'rank', 'concordance']
        assert len(table) == 6
        assert table.groupby('adjustment')['concordance'].first().to_dict() == {'+sva': 1.0, 'none': 0.0}

    def test_empty(self):
        table = cat_table(pd.Series([1.0], index=["a"]), {})
        assert table.empty
        assert list(table.columns) == ['adjustment', 'rank', 'concordance']
