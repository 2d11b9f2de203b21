"""Tests for MeanCountFilter."""

import numpy as np
import pandas as pd
import pytest

from batchcompare.core.expression import ExpressionMatrix
from batchcompare.quality import MeanCountFilter
from conftest import N_LOW_GENES


def _matrix(data):
    data = np.asarray(data, dtype=float)
    return ExpressionMatrix(
        data,
        pd.Index([f"g{i}" for i in range(data.shape[0])]),
        pd.Index([f"s{j}" for j in range(data.shape[1])]),
    )


class TestMeanCountFilter:

    def test_threshold_is_exclusive(self):
        matrix = _matrix([[5, 5, 5], [6, 5, 5], [0, 0, 30]])
        filtered = MeanCountFilter(min_mean=5).apply(matrix)
        assert list(filtered.feature_ids) == ["g1", "g2"]

    def test_removes_low_genes(self, count_matrix):
        filtered = MeanCountFilter(min_mean=5).apply(count_matrix)
        assert filtered.n_features == count_matrix.n_features - N_LOW_GENES
        assert filtered.n_samples == count_matrix.n_samples

    def test_passing_genes_report(self):
        result = MeanCountFilter(min_mean=1).get_passing_genes(_matrix([[0, 1], [4, 4]]))
        assert result.passed_genes == {"g1"}
        assert result.failed_genes == {"g0"}
        assert result.pass_rate == pytest.approx(0.5)
        assert result.parameters == {"min_mean": 1}

    def test_no_gene_passes(self):
        with pytest.raises(ValueError, match="No genes"):
            MeanCountFilter(min_mean=100).apply(_matrix([[1, 2]]))

    def test_rejects_negative_counts(self):
        with pytest.raises(ValueError, match="negative"):
            MeanCountFilter().apply(_matrix([[-1, 20]]))

    def test_rejects_nan(self):
        with pytest.raises(ValueError, match="NaN"):
            MeanCountFilter().apply(_matrix([[np.nan, 20]]))

    def test_repr(self):
        assert "min_mean=5.0" in repr(MeanCountFilter())
