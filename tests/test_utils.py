"""Tests for shared statistical helpers and atomic writers."""

import json

import numpy as np
import pandas as pd
import pytest

from batchcompare.utils.fileio import atomic_write_csv, atomic_write_json, atomic_write_text
from batchcompare.utils.statistics import bh_adjust, encode_binary, otsu_threshold, safe_pearson


class TestOtsuThreshold:

    def test_separates_two_modes(self):
        rng = np.random.RandomState(0)
        values = np.concatenate([rng.normal(-5, 0.5, 30), rng.normal(5, 0.5, 30)])
        threshold = otsu_threshold(values)
        assert values[:30].max() < threshold < values[30:].min()

    def test_small_sample_uses_median(self):
        assert otsu_threshold(np.array([1.0, 2.0, 9.0, np.nan])) == 2.0


class TestEncodeBinary:

    def test_sorted_first_level_is_zero(self):
        coded = encode_binary(pd.Series(['male', 'female', None, 'male']))
        np.testing.assert_array_equal(coded[[0, 1, 3]], [1.0, 0.0, 1.0])
        assert np.isnan(coded[2])

    def test_numeric_passthrough(self):
        np.testing.assert_array_equal(encode_binary(np.array([0.5, 2.0])), [0.5, 2.0])

    def test_too_many_levels(self):
        with pytest.raises(ValueError, match="at most two levels"):
            encode_binary(pd.Series(['CEU', 'YRI', 'JPT']))


class TestSafePearson:

    def test_matches_numpy(self):
        rng = np.random.RandomState(1)
        x, y = rng.normal(size=20), rng.normal(size=20)
        assert safe_pearson(x, y) == pytest.approx(np.corrcoef(x, y)[0, 1])

    def test_pairwise_complete(self):
        x = np.array([1.0, 2.0, np.nan, 4.0])
        y = np.array([2.0, 4.0, 5.0, 8.0])
        assert safe_pearson(x, y) == pytest.approx(1.0)

    def test_degenerate_inputs(self):
        assert np.isnan(safe_pearson(np.ones(5), np.arange(5.0)))
        assert np.isnan(safe_pearson(np.array([1.0, 2.0]), np.array([3.0, 4.0])))


class TestBHAdjust:

    def test_known_values(self):
        p = np.array([0.01, 0.04, 0.03, 0.5])
        np.testing.assert_allclose(bh_adjust(p), [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.5])

    def test_nan_preserved(self):
        adjusted = bh_adjust(np.array([0.01, np.nan, 0.02]))
        assert np.isnan(adjusted[1])
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.02])


class TestAtomicWriters:

    def test_json(self, tmp_path):
        path = tmp_path / "nested" / "summary.json"
        atomic_write_json(path, {'n': 1, 'path': tmp_path})
        data = json.loads(path.read_text())
        assert data == {'n': 1, 'path': str(tmp_path)}

    def test_text_overwrites(self, tmp_path):
        path = tmp_path / "report.html"
        atomic_write_text(path, "old")
        atomic_write_text(path, "new")
        assert path.read_text() == "new"
        assert list(tmp_path.iterdir()) == [path]

    def test_csv(self, tmp_path):
        path = tmp_path / "table.csv"
        frame = pd.DataFrame({'r': [0.5, -0.2]}, index=pd.Index(['a', 'b'], name='gene'))
        atomic_write_csv(path, frame)
        pd.testing.assert_frame_equal(pd.read_csv(path, index_col=0), frame)

    def test_failed_write_leaves_no_file(self, tmp_path):
        path = tmp_path / "report.html"
        with pytest.raises(TypeError):
            atomic_write_text(path, None)
        assert list(tmp_path.iterdir()) == []
