"""Tests for normalization factors and CPM."""

import numpy as np
import pandas as pd
import pytest

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import ConfigurationError
from voomde.stats import normalization
from voomde.stats.normalization import calc_norm_factors, cpm


def _from_array(data):
    return CountMatrix(
        data=np.asarray(data, dtype=np.int64),
        feature_ids=pd.Index([f"g{i}" for i in range(data.shape[0])]),
        sample_ids=pd.Index([f"s{j}" for j in range(data.shape[1])]),
    )


class TestCalcNormFactors:

    @pytest.mark.parametrize("method", ["TMM", "upperquartile", "none"])
    def test_geometric_mean_is_one(self, counts, method):
        nf = calc_norm_factors(counts, method=method)
        assert len(nf.factors) == counts.n_samples
        assert np.all(nf.factors > 0)
        np.testing.assert_allclose(np.exp(np.mean(np.log(nf.factors))), 1.0, rtol=1e-10)

    def test_method_name_is_case_insensitive(self, counts):
        nf = calc_norm_factors(counts, method="tmm")
        assert nf.method == "TMM"

    def test_identical_samples_get_unit_factors(self):
        rng = np.random.RandomState(0)
        column = rng.poisson(50, size=200)
        data = np.column_stack([column] * 4)
        nf = calc_norm_factors(_from_array(data))
        np.testing.assert_allclose(nf.factors, 1.0)

    def test_composition_bias_detected(self):
        """A few hugely inflated genes shrink that sample's factor."""
        rng = np.random.RandomState(1)
        data = rng.poisson(100, size=(1000, 4))
        data[:10, 3] *= 100
        nf = calc_norm_factors(_from_array(data))

        assert nf.factors[3] < nf.factors[:3].min()
        # Effective library of the biased sample approaches the others
        eff = nf.effective_lib_sizes
        assert eff[3] / eff[:3].mean() < nf.lib_sizes[3] / nf.lib_sizes[:3].mean()

    def test_reference_is_closest_to_geometric_mean(self):
        rng = np.random.RandomState(2)
        data = rng.poisson(100, size=(300, 3))
        data[:, 0] *= 2
        data[:, 2] //= 2
        nf = calc_norm_factors(_from_array(data))
        assert nf.ref_column == 1

    def test_zero_library_raises(self):
        data = np.array([[5, 0, 3], [7, 0, 1], [2, 0, 9]])
        with pytest.raises(ConfigurationError, match="zero total counts"):
            calc_norm_factors(_from_array(data))

    def test_unknown_method_raises(self, counts):
        with pytest.raises(ConfigurationError):
            calc_norm_factors(counts, method="RLE")

    def test_trim_out_of_range_raises(self, counts):
        with pytest.raises(ConfigurationError):
            calc_norm_factors(counts, logratio_trim=0.6)

    def test_counts_not_modified(self, counts):
        before = counts.data.copy()
        calc_norm_factors(counts)
        np.testing.assert_array_equal(counts.data, before)

    def test_to_series_indexed_by_sample(self, counts, norm_factors):
        series = norm_factors.to_series()
        assert series.index.equals(counts.sample_ids)


class TestUndefinedTmmFactor:

    def test_zero_total_weight_gives_nan(self):
        """Inverse-variance weights that all vanish leave the factor undefined."""
        obs = np.full(10, 1e-320)
        ref = np.arange(1.0, 11.0)
        f = normalization._tmm_factor(
            obs=obs,
            ref=ref,
            lib_obs=1e-319,
            lib_ref=ref.sum(),
            logratio_trim=0.3,
            sum_trim=0.05,
            do_weighting=True,
            a_cutoff=-1e10,
        )
        assert np.isnan(f)

    def test_undefined_factor_raises(self, counts, monkeypatch):
        monkeypatch.setattr(normalization, "_tmm_factor", lambda **kwargs: np.nan)
        with pytest.raises(ConfigurationError, match="undefined"):
            calc_norm_factors(counts, method="TMM")


class TestCpm:

    def test_columns_sum_to_one_million(self, counts):
        values = cpm(counts.data, counts.library_sizes)
        np.testing.assert_allclose(values.sum(axis=0), 1e6)

    def test_log_cpm_uses_pseudocount(self):
        values = cpm(np.array([[0, 10]]), np.array([100.0, 100.0]), log=True, prior_count=0.5)
        expected = np.log2((np.array([0, 10]) + 0.5) / 101.0 * 1e6)
        np.testing.assert_allclose(values[0], expected)
