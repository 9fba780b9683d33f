"""
Voom: log-CPM transformation with mean-variance precision weights.

Count data are heteroscedastic: low counts are relatively noisier than high
counts. Voom estimates the mean-variance relationship non-parametrically and
turns it into one precision weight per observation, so an ordinary weighted
linear model can be used on log-CPM values.

Algorithm (Law et al. 2014):
    1. y = log2((count + 0.5) / (lib + 1) × 10⁶), lib = effective library size
    2. Unweighted per-gene fit of y on the design
    3. x = average log2 count of each gene, s = sqrt(residual SD)
    4. Lowess trend s ~ x over all genes with non-zero counts
    5. For each observation, the trend at its fitted log2 count predicts
       sqrt(SD); weight = 1 / predicted⁴ (inverse variance)

The trend is shared by every gene, so a degenerate trend (too few genes,
non-finite or non-positive predictions) fails the whole run.

References:
    - Law et al. (2014) Genome Biology 15:R29
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from statsmodels.nonparametric.smoothers_lowess import lowess

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import ConfigurationError, DataAlignmentError, NumericDegeneracyError
from voomde.stats.design_matrix import DesignMatrix
from voomde.stats.linear_model import lm_fit
from voomde.stats.normalization import NormalizationFactors

logger = logging.getLogger(__name__)

__all__ = ['ExpressionWeights', 'voom']


@dataclass(frozen=True)
class ExpressionWeights:
    """Log-expression values and their precision weights.

    The two matrices are produced together and must be consumed together;
    subsetting goes through ``select_features`` so they stay aligned.

    Attributes:
        log_expr: log2-CPM values (n_genes, n_samples)
        weights: Precision weights, strictly positive (n_genes, n_samples)
        feature_ids: Gene identifiers
        sample_ids: Sample identifiers
        lib_sizes: Effective library sizes used for log-CPM
        trend_x: Abscissae of the fitted mean-variance trend (sorted, unique)
        trend_y: Trend values, sqrt(residual SD)
        span: Lowess span used for the trend
    """

    log_expr: NDArray[np.float64]
    weights: NDArray[np.float64]
    feature_ids: pd.Index
    sample_ids: pd.Index
    lib_sizes: NDArray[np.float64]
    trend_x: NDArray[np.float64]
    trend_y: NDArray[np.float64]
    span: float

    def __post_init__(self) -> None:
        if self.log_expr.shape != self.weights.shape:
            raise ValueError(
                f"Expression {self.log_expr.shape} and weights {self.weights.shape} must align"
            )
        if self.log_expr.shape != (len(self.feature_ids), len(self.sample_ids)):
            raise ValueError("Expression shape does not match feature and sample identifiers")

    @property
    def n_genes(self) -> int:
        return self.log_expr.shape[0]

    @property
    def n_samples(self) -> int:
        return self.log_expr.shape[1]

    def select_features(self, mask: NDArray[np.bool_]) -> ExpressionWeights:
        """Subset genes, keeping expression and weights together."""
        mask = np.asarray(mask, dtype=bool)
        return ExpressionWeights(
            log_expr=self.log_expr[mask],
            weights=self.weights[mask],
            feature_ids=self.feature_ids[mask],
            sample_ids=self.sample_ids,
            lib_sizes=self.lib_sizes,
            trend_x=self.trend_x,
            trend_y=self.trend_y,
            span=self.span,
        )

    def to_frames(self) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Return (log_expr, weights) as genes × samples DataFrames."""
        expr = pd.DataFrame(self.log_expr, index=self.feature_ids, columns=self.sample_ids)
        weights = pd.DataFrame(self.weights, index=self.feature_ids, columns=self.sample_ids)
        return expr, weights


def _trend_curve(
    x: NDArray[np.float64],
    y: NDArray[np.float64],
    span: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Lowess trend, collapsed to unique abscissae for interpolation."""
    smoothed = lowess(y, x, frac=span, it=3, return_sorted=True)
    curve_x, curve_y = smoothed[:, 0], smoothed[:, 1]

    # np.interp needs strictly increasing x; tied abscissae share one value
    unique_x, inverse = np.unique(curve_x, return_inverse=True)
    unique_y = np.bincount(inverse, weights=curve_y) / np.bincount(inverse)
    return unique_x, unique_y


def voom(
    counts: CountMatrix,
    factors: NormalizationFactors,
    design: DesignMatrix,
    span: float = 0.5,
    prior_count: float = 0.5,
) -> ExpressionWeights:
    """
    Transform counts to log2-CPM and estimate observation-level weights.

    Args:
        counts: Filtered count matrix.
        factors: Normalization factors for the same samples. Effective library
            sizes are the filtered matrix's column sums times the factors.
        design: Design matrix with one row per sample.
        span: Lowess span (fraction of genes in each local fit).
        prior_count: Pseudocount added to every count before the log.

    Returns:
        ExpressionWeights with strictly positive finite weights.

    Raises:
        DataAlignmentError: If counts, factors and design disagree on samples.
        ConfigurationError: If span or prior_count are out of range, or a
            library is empty.
        NumericDegeneracyError: If the trend cannot be fitted or produces
            unusable weights.

    Example:
        >>> nf = calc_norm_factors(counts)
        >>> filtered = ExpressionFilter(3.0, nf).apply(counts)
        >>> ew = voom(filtered, nf, design)
        >>> fit = lm_fit(ew, design)
    """
    if not factors.sample_ids.equals(counts.sample_ids):
        raise DataAlignmentError("Normalization factors and counts refer to different samples")
    if not design.sample_ids.equals(counts.sample_ids):
        raise DataAlignmentError("Design rows and count columns refer to different samples")
    if not 0 < span <= 1:
        raise ConfigurationError(f"span must lie in (0, 1], got {span}")
    if prior_count <= 0:
        raise ConfigurationError(f"prior_count must be positive, got {prior_count}")

    if counts.n_features < 2:
        raise NumericDegeneracyError(
            f"Need at least 2 genes to fit a mean-variance trend, got {counts.n_features}"
        )

    lib_sizes = counts.library_sizes.astype(np.float64) * factors.factors
    if np.any(lib_sizes <= 0):
        raise ConfigurationError(
            f"Empty libraries after filtering: {counts.sample_ids[lib_sizes <= 0].tolist()}"
        )

    data = counts.data.astype(np.float64)
    log_expr = np.log2((data + prior_count) / (lib_sizes[None, :] + 1.0) * 1e6)

    fit = lm_fit(log_expr, design)

    sx = fit.amean + np.mean(np.log2(lib_sizes + 1.0)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma)

    # Genes with zero counts everywhere have zero variance by construction
    usable = (data.sum(axis=1) > 0) & np.isfinite(sy)
    if usable.sum() < 2:
        raise NumericDegeneracyError(
            f"Need at least 2 genes with non-zero counts for the trend, got {int(usable.sum())}"
        )

    trend_x, trend_y = _trend_curve(sx[usable], sy[usable], span)
    if not np.all(np.isfinite(trend_y)):
        raise NumericDegeneracyError("Mean-variance trend contains non-finite values")

    fitted_values = fit.coefficients @ design.X.T
    fitted_logcount = np.log2(2.0 ** fitted_values * 1e-6 * (lib_sizes[None, :] + 1.0))

    # Constant extrapolation beyond the observed range
    predicted = np.interp(fitted_logcount, trend_x, trend_y)
    if np.any(predicted <= 0):
        raise NumericDegeneracyError(
            "Mean-variance trend predicts non-positive variance; "
            "residual variances are degenerate"
        )

    weights = 1.0 / predicted ** 4
    if not np.all(np.isfinite(weights)) or np.any(weights <= 0):
        raise NumericDegeneracyError("Voom produced non-finite or non-positive weights")

    logger.info(
        f"voom: {counts.n_features} genes, trend fitted on {int(usable.sum())} genes "
        f"(span={span}), weights range [{weights.min():.3g}, {weights.max():.3g}]"
    )

    return ExpressionWeights(
        log_expr=log_expr,
        weights=weights,
        feature_ids=counts.feature_ids,
        sample_ids=counts.sample_ids,
        lib_sizes=lib_sizes,
        trend_x=trend_x,
        trend_y=trend_y,
        span=float(span),
    )
