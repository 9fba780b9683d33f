"""Tests for empirical Bayes variance moderation."""

import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma

from voomde.core.errors import ConfigurationError
from voomde.stats.contrasts import ContrastFit
from voomde.stats.empirical_bayes import (
    e_bayes,
    fit_f_dist,
    squeeze_var,
    tmixture_vector,
    trigamma_inverse,
)


def _contrast_fit(coefficients, stdev_unscaled, sigma, df):
    coefficients = np.asarray(coefficients, dtype=float).reshape(-1, 1)
    n = coefficients.shape[0]
    stdev_unscaled = np.broadcast_to(np.asarray(stdev_unscaled, dtype=float), (n, 1)).copy()
    sigma = np.asarray(sigma, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), (n,)).copy()
    t_raw = coefficients / (stdev_unscaled * sigma[:, None])
    return ContrastFit(
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        sigma=sigma,
        df_residual=df,
        amean=np.zeros(n),
        flags=np.zeros(n, dtype=np.int64),
        feature_ids=pd.Index([f"g{i}" for i in range(n)]),
        contrast_names=("c",),
        contrast_matrix=pd.DataFrame({"c": [1.0]}, index=["x"]),
        t_raw=t_raw,
        p_raw=np.full_like(t_raw, np.nan),
    )


class TestTrigammaInverse:

    @pytest.mark.parametrize("y", [0.05, 0.5, 2.0, 10.0, 300.0])
    def test_inverts_trigamma(self, y):
        np.testing.assert_allclose(trigamma_inverse(polygamma(1, y)), y, rtol=1e-6)

    def test_non_positive_input(self):
        assert np.isinf(trigamma_inverse(0.0))


class TestFitFDist:

    def test_recovers_prior(self):
        rng = np.random.RandomState(7)
        d0, s0_sq, df, n = 6.0, 0.5, 8.0, 20000
        true_var = d0 * s0_sq / rng.chisquare(d0, size=n)
        s2 = true_var * rng.chisquare(df, size=n) / df

        est_d0, est_s0_sq = fit_f_dist(s2, df)
        assert 4.5 < est_d0 < 8.0
        np.testing.assert_allclose(est_s0_sq, s0_sq, rtol=0.1)

    def test_too_few_variances_means_no_prior(self):
        d0, _ = fit_f_dist(np.array([0.1, 0.2]), 4.0)
        assert d0 == 0.0

    def test_nan_variances_ignored(self):
        rng = np.random.RandomState(3)
        s2 = rng.chisquare(5, size=500) / 5
        with_nan = np.append(s2, [np.nan, np.nan])
        assert fit_f_dist(with_nan, 5.0) == fit_f_dist(s2, 5.0)


class TestSqueezeVar:

    def test_zero_prior_df_is_unshrunk(self):
        s2 = np.array([0.1, 0.5, 2.0])
        post, df_total = squeeze_var(s2, 4.0, d0=0.0, s0_sq=1.0)
        np.testing.assert_array_equal(post, s2)
        np.testing.assert_array_equal(df_total, 4.0)

    def test_vanishing_prior_df_approaches_unshrunk(self):
        s2 = np.array([0.1, 0.5, 2.0])
        post, _ = squeeze_var(s2, 4.0, d0=1e-10, s0_sq=1.0)
        np.testing.assert_allclose(post, s2, rtol=1e-9)

    def test_posterior_between_raw_and_prior(self):
        s2 = np.array([0.1, 0.5, 2.0])
        post, df_total = squeeze_var(s2, 4.0, d0=4.0, s0_sq=1.0)
        np.testing.assert_allclose(post, (4.0 * 1.0 + 4.0 * s2) / 8.0)
        np.testing.assert_array_equal(df_total, 8.0)

    def test_infinite_prior_df_takes_prior(self):
        post, df_total = squeeze_var(np.array([0.1, 2.0]), 4.0, d0=np.inf, s0_sq=0.7)
        np.testing.assert_array_equal(post, 0.7)
        assert np.all(np.isinf(df_total))

    def test_nan_stays_nan(self):
        post, _ = squeeze_var(np.array([0.1, np.nan]), np.array([4.0, np.nan]), d0=3.0, s0_sq=1.0)
        assert np.isnan(post[1])


class TestTmixture:

    def test_large_effects_give_positive_prior_variance(self):
        rng = np.random.RandomState(11)
        t = rng.standard_t(10, size=2000)
        t[:40] = rng.normal(0, 8, size=40)
        v0 = tmixture_vector(t, np.full(2000, 0.5), np.full(2000, 10.0), proportion=0.02)
        assert v0 > 0

    def test_too_few_genes(self):
        assert np.isnan(tmixture_vector(np.array([]), np.array([]), np.array([]), 0.01))


class TestEBayes:

    def test_returns_new_object_by_default(self, contrast_fit):
        moderated = e_bayes(contrast_fit)
        assert moderated is not contrast_fit
        assert not contrast_fit.is_moderated
        assert moderated.is_moderated

    def test_in_place(self, contrast_fit):
        same = e_bayes(contrast_fit, in_place=True)
        assert same is contrast_fit
        assert contrast_fit.t is not None

    def test_moderated_statistics(self, moderated):
        assert moderated.df_prior > 0
        assert moderated.s2_prior > 0
        s2 = moderated.sigma ** 2
        lo = np.minimum(s2, moderated.s2_prior)
        hi = np.maximum(s2, moderated.s2_prior)
        assert np.all((moderated.s2_post >= lo - 1e-12) & (moderated.s2_post <= hi + 1e-12))

        expected_t = moderated.coefficients / moderated.stdev_unscaled / np.sqrt(moderated.s2_post)[:, None]
        np.testing.assert_allclose(moderated.t, expected_t)
        assert np.all((moderated.p_value > 0) & (moderated.p_value <= 1))
        assert np.all(np.isfinite(moderated.lods))

    def test_total_df_capped_at_pooled_df(self, moderated):
        assert np.all(moderated.df_total <= np.sum(moderated.df_residual))
        assert np.all(moderated.df_total >= moderated.df_residual)

    def test_de_genes_rank_highest(self, moderated):
        """The 20 simulated DE genes are up in A.D, so A.C - A.D is negative."""
        k = moderated.contrast_index("A_CvsD")
        de = np.zeros(moderated.n_genes, dtype=bool)
        de[:20] = True
        assert np.median(moderated.t[de, k]) < -5
        assert np.median(moderated.lods[de, k]) > np.median(moderated.lods[~de, k])

    def test_fallback_reduces_to_raw_statistics(self):
        """With fewer than three variances no prior is estimated."""
        fit = _contrast_fit([1.0, -0.5], 0.5, [0.4, 0.9], 6.0)
        moderated = e_bayes(fit)

        assert moderated.df_prior == 0.0
        np.testing.assert_allclose(moderated.s2_post, fit.sigma ** 2)
        np.testing.assert_allclose(moderated.t, fit.t_raw)
        np.testing.assert_array_equal(moderated.df_total, 6.0)

    def test_near_identical_variances_are_not_shrunk(self):
        """Variances less dispersed than sampling error give no usable prior."""
        rng = np.random.RandomState(5)
        n = 200
        sigma = np.sqrt(0.3 * (1.0 + 1e-3 * rng.standard_normal(n)))
        fit = _contrast_fit(rng.normal(0, 1, size=n), 0.5, sigma, 4.0)

        moderated = e_bayes(fit)

        assert moderated.df_prior == 0.0
        np.testing.assert_allclose(moderated.s2_post, sigma ** 2)
        np.testing.assert_array_equal(moderated.df_total, 4.0)
        np.testing.assert_allclose(moderated.t, fit.t_raw)
        assert np.all(np.isfinite(moderated.lods))

    def test_not_tested_genes_stay_nan(self, contrast_fit):
        contrast_fit.flags[0] = 5
        contrast_fit.sigma[0] = np.nan
        moderated = e_bayes(contrast_fit)
        assert np.isnan(moderated.t[0]).all()
        assert np.isnan(moderated.p_value[0]).all()
        assert np.all(np.isfinite(moderated.t[1:]))

    def test_invalid_proportion(self, contrast_fit):
        with pytest.raises(ConfigurationError):
            e_bayes(contrast_fit, proportion=0.0)
