"""
Tests for limma-style empirical Bayes moderation.

Prior recovery uses variances simulated from the hierarchical model
    1/sigma² ~ Gamma(d0/2, rate = d0 s0² / 2),  s² | sigma² ~ sigma² chi²(d) / d
"""

import numpy as np
import pytest
from scipy.special import polygamma

from batchcompare.stats.ebayes import fit_f_dist, moderated_t, squeeze_var, trigamma_inverse


def _simulate_variances(n_genes, d0, s0_sq, df, seed=0):
    rng = np.random.RandomState(seed)
    sigma2 = d0 * s0_sq / rng.chisquare(d0, size=n_genes)
    return sigma2 * rng.chisquare(df, size=n_genes) / df


class TestTrigammaInverse:

    @pytest.mark.parametrize("y", [0.05, 0.5, 2.0, 10.0, 150.0])
    def test_inverts_trigamma(self, y):
        assert trigamma_inverse(float(polygamma(1, y))) == pytest.approx(y, rel=1e-5)

    def test_non_positive_input(self):
        assert np.isinf(trigamma_inverse(0.0))
        assert np.isinf(trigamma_inverse(-1.0))


class TestFitFDist:

    def test_recovers_prior(self):
        s2 = _simulate_variances(20000, d0=8.0, s0_sq=0.5, df=4)
        d0, s0_sq = fit_f_dist(s2, 4)
        assert d0 == pytest.approx(8.0, rel=0.3)
        assert s0_sq == pytest.approx(0.5, rel=0.1)

    def test_common_variance_gives_large_prior_df(self):
        rng = np.random.RandomState(1)
        s2 = rng.chisquare(4, size=20000) / 4
        d0, s0_sq = fit_f_dist(s2, 4)
        assert d0 > 30
        assert s0_sq == pytest.approx(1.0, rel=0.05)

    def test_per_gene_df(self):
        s2 = _simulate_variances(5000, d0=10.0, s0_sq=2.0, df=6, seed=3)
        d0_scalar, s0_scalar = fit_f_dist(s2, 6)
        d0_array, s0_array = fit_f_dist(s2, np.full(5000, 6.0))
        assert d0_array == pytest.approx(d0_scalar)
        assert s0_array == pytest.approx(s0_scalar)

    def test_too_few_variances(self):
        d0, s0_sq = fit_f_dist(np.array([1.0, 3.0]), 4)
        assert np.isinf(d0)
        assert s0_sq == pytest.approx(2.0)


class TestSqueezeVar:

    def test_posterior_between_sample_and_prior(self):
        s2 = np.array([0.1, 1.0, 10.0])
        post, df_total = squeeze_var(s2, 4.0, d0=4.0, s0_sq=1.0)
        np.testing.assert_allclose(post, [0.55, 1.0, 5.5])
        assert df_total == 8.0

    def test_infinite_prior(self):
        post, df_total = squeeze_var(np.array([0.1, 10.0]), np.array([4.0, 4.0]), d0=np.inf, s0_sq=2.0)
        np.testing.assert_array_equal(post, [2.0, 2.0])
        assert np.isinf(df_total).all()


class TestModeratedT:

    def test_large_effect_is_significant(self):
        rng = np.random.RandomState(5)
        n = 2000
        sigma2 = _simulate_variances(n, d0=6.0, s0_sq=0.2, df=10, seed=6)
        coef = rng.normal(0, 0.05, size=n)
        coef[:20] = 4.0
        stdev_unscaled = np.full(n, np.sqrt(2 / 6))

        result = moderated_t(coef, stdev_unscaled, sigma2, 10)

        assert (result.p_value[:20] < 1e-3).all()
        assert np.median(result.p_value[20:]) > 0.3
        assert result.df_total == pytest.approx(10 + result.d0)
        np.testing.assert_allclose(result.t, coef / (stdev_unscaled * np.sqrt(result.sigma2_post)))

    def test_p_values_in_unit_interval(self):
        rng = np.random.RandomState(7)
        result = moderated_t(rng.normal(size=100), np.ones(100), rng.chisquare(5, 100) / 5, 5)
        assert ((result.p_value >= 0) & (result.p_value <= 1)).all()
