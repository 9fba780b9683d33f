"""Tests for the expression filter."""

import numpy as np
import pytest

from voomde.core.errors import ConfigurationError, DataAlignmentError
from voomde.quality.filtering import ExpressionFilter, filter_by_expression
from voomde.stats.normalization import calc_norm_factors


class TestExpressionFilter:

    def test_monotonic_in_cutoff(self, counts, norm_factors):
        cutoffs = [0.0, 1.0, 3.0, 10.0, 100.0, 1000.0]
        surviving = [
            set(filter_by_expression(counts, norm_factors, c).feature_ids) for c in cutoffs
        ]
        for lower, higher in zip(surviving, surviving[1:]):
            assert higher <= lower

    @pytest.mark.parametrize("cutoff", [1.0, 3.0, 50.0])
    def test_all_zero_gene_never_survives(self, counts, norm_factors, cutoff):
        zero_gene = counts.feature_ids[-1]
        assert counts.data[-1].sum() == 0

        filtered = ExpressionFilter(cutoff, norm_factors).apply(counts)
        assert zero_gene not in filtered.feature_ids

    def test_preserves_sample_order(self, counts, norm_factors):
        filtered = ExpressionFilter(3.0, norm_factors).apply(counts)
        assert filtered.sample_ids.equals(counts.sample_ids)
        assert filtered.sample_metadata.index.equals(counts.sample_ids)

    def test_keeps_gene_order(self, counts, norm_factors):
        filtered = ExpressionFilter(3.0, norm_factors).apply(counts)
        positions = counts.feature_ids.get_indexer(filtered.feature_ids)
        assert np.all(np.diff(positions) > 0)

    def test_cutoff_uses_normalized_cpm(self, counts, norm_factors):
        lib = norm_factors.effective_lib_sizes
        max_cpm = (counts.data / lib[None, :] * 1e6).max(axis=1)
        filtered = ExpressionFilter(10.0, norm_factors).apply(counts)
        assert filtered.n_features == int(np.sum(max_cpm >= 10.0))

    def test_get_passing_genes_partitions(self, counts, norm_factors):
        result = ExpressionFilter(3.0, norm_factors).get_passing_genes(counts)
        assert result.n_passed + result.n_failed == counts.n_features
        assert not result.passed_genes & result.failed_genes
        assert 0 < result.pass_rate <= 1

    def test_negative_cutoff_rejected(self):
        with pytest.raises(ConfigurationError):
            ExpressionFilter(min_cpm=-1.0)

    def test_factors_for_other_samples_rejected(self, counts):
        other = calc_norm_factors(counts.select_samples(np.arange(counts.n_samples) < 8))
        with pytest.raises(DataAlignmentError):
            ExpressionFilter(3.0, other).apply(counts.select_samples(np.arange(counts.n_samples) >= 8))

    def test_validate_accepts_matrix_with_counts(self, counts):
        assert ExpressionFilter(3.0).validate(counts) == []
