"""
Expression filtering for count matrices.

Removes genes whose normalized counts-per-million never reach a cutoff in any
sample. Implements the Transform interface for composable pipelines.

Engineering Design:
    - Pure functions (Transform): input matrix -> output matrix
    - CPM is computed against effective library sizes (lib_size * factor)
    - Monotonic: a higher cutoff never keeps a gene a lower cutoff dropped
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import numpy as np

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import ConfigurationError, DataAlignmentError
from voomde.core.transform import Transform
from voomde.stats.normalization import NormalizationFactors, cpm

logger = logging.getLogger(__name__)

__all__ = ['ExpressionFilter', 'ExpressionFilterResult', 'filter_by_expression']


@dataclass
class ExpressionFilterResult:
    """Results from expression filtering with full provenance."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class ExpressionFilter(Transform):
    """
    Keep genes whose maximum normalized CPM across samples reaches a cutoff.

    The cutoff has no universally correct value; it depends on sequencing
    depth and must be chosen per dataset.

    Params:
        min_cpm: A gene survives if max CPM across samples >= min_cpm.
        norm_factors: Normalization factors for the matrix being filtered.
            When omitted, raw library sizes are used.

    Examples:
        >>> nf = calc_norm_factors(counts)
        >>> filtered = ExpressionFilter(min_cpm=3.0, norm_factors=nf).apply(counts)
    """

    def __init__(
        self,
        min_cpm: float = 3.0,
        norm_factors: Optional[NormalizationFactors] = None,
    ):
        if not np.isfinite(min_cpm) or min_cpm < 0:
            raise ConfigurationError(f"min_cpm must be a non-negative number, got {min_cpm}")

        super().__init__(
            name="ExpressionFilter",
            params={
                "min_cpm": min_cpm,
                "norm_method": norm_factors.method if norm_factors is not None else None,
            }
        )
        self.min_cpm = float(min_cpm)
        self.norm_factors = norm_factors

    def _effective_lib_sizes(self, matrix: CountMatrix) -> np.ndarray:
        if self.norm_factors is None:
            return matrix.library_sizes.astype(np.float64)
        if not self.norm_factors.sample_ids.equals(matrix.sample_ids):
            raise DataAlignmentError(
                "Normalization factors were computed for different samples than the "
                "matrix being filtered"
            )
        return self.norm_factors.effective_lib_sizes

    def _compute_keep_mask(self, matrix: CountMatrix) -> np.ndarray:
        lib_sizes = self._effective_lib_sizes(matrix)
        if np.any(lib_sizes <= 0):
            zero = matrix.sample_ids[lib_sizes <= 0].tolist()
            raise ConfigurationError(f"Samples with zero library size cannot be filtered: {zero}")

        normalized = cpm(matrix.data, lib_sizes)
        if normalized.shape[0] == 0:
            return np.zeros(0, dtype=bool)
        return normalized.max(axis=1) >= self.min_cpm

    def apply(self, matrix: CountMatrix) -> CountMatrix:
        """Return the matrix restricted to genes passing the cutoff."""
        keep_mask = self._compute_keep_mask(matrix)

        n_kept = int(keep_mask.sum())
        n_removed = matrix.n_features - n_kept
        pct = 100 * n_kept / matrix.n_features if matrix.n_features else 0.0

        logger.info(f"Filtering complete (max CPM >= {self.min_cpm}): Kept {n_kept}/"
                    f"{matrix.n_features} genes ({pct:.1f}%), Removed {n_removed}")

        return matrix.select_features(keep_mask)

    def get_passing_genes(self, matrix: CountMatrix) -> ExpressionFilterResult:
        """
        Get genes passing the filter without subsetting the matrix.

        Args:
            matrix: CountMatrix to evaluate

        Returns:
            ExpressionFilterResult with passed/failed gene sets
        """
        keep_mask = self._compute_keep_mask(matrix)
        feature_ids = matrix.feature_ids

        return ExpressionFilterResult(
            passed_genes=set(feature_ids[keep_mask]),
            failed_genes=set(feature_ids[~keep_mask]),
            parameters=dict(self.params),
        )

    def validate(self, matrix: CountMatrix) -> list[str]:
        errors = super().validate(matrix)
        if np.any(matrix.library_sizes == 0):
            errors.append("Matrix contains samples with zero total counts")
        return errors


def filter_by_expression(
    counts: CountMatrix,
    norm_factors: NormalizationFactors,
    min_cpm: float,
) -> CountMatrix:
    """Functional shortcut for ``ExpressionFilter(min_cpm, norm_factors).apply(counts)``."""
    return ExpressionFilter(min_cpm=min_cpm, norm_factors=norm_factors).apply(counts)
