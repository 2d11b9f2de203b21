"""Tests for surrogate variable analysis."""

import numpy as np
import pytest
from scipy import stats

from batchcompare.batch.sva import edge_lfdr, estimate_surrogate_variables, f_pvalue, num_sv
from batchcompare.stats.design_matrix import model_matrix
from batchcompare.stats.normalization import upper_quartile_normalization
from batchcompare.utils.statistics import safe_pearson


def planted_factor_data(n_genes=500, n_samples=30, loading=2.0, seed=0):
    """Gaussian noise plus two orthogonal sample factors on separate gene blocks."""
    rng = np.random.RandomState(seed)
    data = rng.normal(size=(n_genes, n_samples))
    f1 = np.where(np.arange(n_samples) < n_samples // 2, 1.0, -1.0)
    f2 = np.where(np.arange(n_samples) % 2 == 0, 1.0, -1.0)
    data[:100] += loading * f1
    data[100:200] += loading * f2
    return data, f1, f2


@pytest.fixture
def log_uq(expressed_matrix):
    return np.log(upper_quartile_normalization(expressed_matrix.data).data + 1.0)


class TestFPValue:

    def test_matches_two_sample_t_test(self):
        rng = np.random.RandomState(1)
        data = rng.normal(size=(20, 10))
        group = np.repeat([0.0, 1.0], 5)
        mod = np.column_stack([np.ones(10), group])

        p = f_pvalue(data, mod)
        expected = stats.ttest_ind(data[:, :5], data[:, 5:], axis=1).pvalue
        np.testing.assert_allclose(p, expected)

    def test_null_must_be_smaller(self):
        mod = np.ones((6, 1))
        with pytest.raises(ValueError, match="larger than null model"):
            f_pvalue(np.zeros((3, 6)), mod, mod)

    def test_no_residual_df(self):
        with pytest.raises(ValueError, match="No residual degrees of freedom"):
            f_pvalue(np.zeros((3, 2)), np.eye(2))


class TestEdgeLfdr:

    def test_uniform_p_values_are_null(self):
        p = np.random.RandomState(2).uniform(size=2000)
        lfdr = edge_lfdr(p)
        assert ((lfdr >= 0) & (lfdr <= 1)).all()
        assert np.median(lfdr) > 0.8

    def test_signal_gets_low_lfdr(self):
        rng = np.random.RandomState(3)
        p = np.concatenate([rng.uniform(0, 1e-4, size=100), rng.uniform(size=900)])
        lfdr = edge_lfdr(p)
        assert lfdr[:100].mean() < 0.2
        assert lfdr[100:].mean() > 0.7

    def test_monotone_in_p(self):
        p = np.random.RandomState(4).beta(0.5, 1.0, size=500)
        lfdr = edge_lfdr(p)
        order = np.argsort(p)
        assert np.all(np.diff(lfdr[order]) >= 0)

    def test_rejects_nan_and_short_input(self):
        with pytest.raises(ValueError, match="NaN"):
            edge_lfdr(np.array([0.1, np.nan, 0.5]))
        with pytest.raises(ValueError, match="at least two"):
            edge_lfdr(np.array([0.1]))


class TestNumSV:

    def test_counts_planted_factors(self):
        data, _, _ = planted_factor_data()
        assert num_sv(data, np.ones((30, 1)), seed=0) == 2

    def test_pure_noise(self):
        data = np.random.RandomState(5).normal(size=(500, 20))
        assert num_sv(data, np.ones((20, 1)), seed=0) <= 1

    def test_reproducible_with_seed(self):
        data, _, _ = planted_factor_data(loading=0.4, seed=6)
        mod = np.ones((30, 1))
        assert num_sv(data, mod, seed=7) == num_sv(data, mod, seed=7)


class TestEstimateSurrogateVariables:

    def test_recovers_planted_factors(self):
        data, f1, f2 = planted_factor_data()
        covariate = np.random.RandomState(10).normal(size=30)
        mod = np.column_stack([np.ones(30), covariate])
        result = estimate_surrogate_variables(data, mod, n_sv=2)

        assert result.method == 'sva'
        assert result.names == ['sva_1', 'sva_2']
        # both factors carry the same loading, so only their span is identified
        basis = np.column_stack([np.ones(30), result.factors.to_numpy()])
        for planted in (f1, f2):
            coef, *_ = np.linalg.lstsq(basis, planted, rcond=None)
            resid = planted - basis @ coef
            r_squared = 1.0 - resid @ resid / np.sum((planted - planted.mean()) ** 2)
            assert r_squared > 0.95

    def test_study_recovered_when_sex_is_protected(self, expressed_matrix, log_uq, study_codes):
        design = model_matrix(expressed_matrix.sample_metadata, ['sex'])
        result = estimate_surrogate_variables(
            log_uq, design.X, n_sv=1, sample_ids=expressed_matrix.sample_ids,
        )

        assert (result.factors.index == expressed_matrix.sample_ids).all()
        assert abs(safe_pearson(result.factors['sva_1'].to_numpy(), study_codes)) > 0.9
        assert result.diagnostics['pprob_gam'].shape == (expressed_matrix.n_features,)

    def test_estimates_number_when_not_given(self, expressed_matrix, log_uq):
        design = model_matrix(expressed_matrix.sample_metadata, ['sex'])
        result = estimate_surrogate_variables(log_uq, design.X, seed=0)
        assert result.k >= 1
        assert result.diagnostics['n_sv'] == result.k

    def test_zero_surrogate_variables(self):
        data = np.random.RandomState(8).normal(size=(50, 10))
        with pytest.warns(UserWarning, match="No significant surrogate variables"):
            result = estimate_surrogate_variables(data, np.ones((10, 1)), n_sv=0)
        assert result.is_empty
        assert len(result.factors) == 10

    def test_too_many_surrogate_variables(self):
        data = np.random.RandomState(9).normal(size=(50, 6))
        with pytest.raises(ValueError, match="no residual df"):
            estimate_surrogate_variables(data, np.ones((6, 1)), n_sv=5)
