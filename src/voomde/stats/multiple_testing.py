"""
Multiple-testing correction across the genes of one contrast.

- BH: Benjamini-Hochberg step-up adjustment (statsmodels ``fdr_bh``), which
  applies the running minimum from the largest p-value down so adjusted
  values are non-decreasing in raw p-value rank.
- qvalue: Storey's q-values, BH values scaled by an estimate π₀ of the
  proportion of true null hypotheses.

Genes whose test is undefined (NaN p-value, i.e. not-tested) stay NaN and are
excluded from the number of tests N.
"""

from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from statsmodels.stats.multitest import multipletests

from voomde.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ['FDR_METHODS', 'adjust_pvalues', 'estimate_pi0']

FDR_METHODS = ("BH", "qvalue")


def estimate_pi0(pvalues: NDArray[np.float64]) -> float:
    """
    Storey's estimate of the proportion of true null hypotheses.

    pi0(λ) = #{p > λ} / (m (1 - λ)) over λ = 0.05, 0.10, ..., 0.90, each capped
    at 1; the median of the grid is returned.

    Args:
        pvalues: Raw p-values without NaN.

    Returns:
        pi0 in (0, 1].
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    m = pvalues.size
    if m == 0:
        return 1.0

    lambda_vals = np.arange(0.05, 0.95, 0.05)
    pi0_estimates = [min(np.sum(pvalues > lam) / (m * (1 - lam)), 1.0) for lam in lambda_vals]
    pi0 = float(np.median(pi0_estimates))

    # A zero estimate would make every q-value zero
    return min(1.0, max(pi0, 1.0 / m))


def adjust_pvalues(
    pvalues: NDArray[np.float64],
    method: str = "BH",
) -> NDArray[np.float64]:
    """
    Adjust p-values for multiple testing.

    Args:
        pvalues: Raw p-values; NaN marks not-tested genes.
        method: "BH" (Benjamini-Hochberg) or "qvalue" (Storey).

    Returns:
        Adjusted p-values, NaN where the input is NaN.

    Raises:
        ConfigurationError: On an unknown method.
    """
    if method not in FDR_METHODS:
        raise ConfigurationError(f"Unknown FDR method '{method}'. Use one of {FDR_METHODS}")

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    _, adj_pvals[valid_mask], _, _ = multipletests(pvalues[valid_mask], method="fdr_bh")

    if method == "qvalue":
        pi0 = estimate_pi0(pvalues[valid_mask])
        adj_pvals[valid_mask] = pi0 * adj_pvals[valid_mask]
        logger.info(f"q-values: estimated pi0 = {pi0:.3f} over {int(valid_mask.sum())} tests")

    return adj_pvals
