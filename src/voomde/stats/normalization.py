"""
Library-size and composition normalization for RNA-seq counts.

Implements edgeR-style scale-factor estimation:
- TMM (trimmed mean of M-values): weighted trimmed mean of per-gene log
  fold changes of each sample against a reference sample
- Upper quartile: 75th percentile of library-scaled counts
- None: all factors equal to one

The fundamental assumption underlying TMM is that most genes are not
differentially expressed, so the bulk of the log-ratio distribution between
two libraries reflects composition bias rather than biology. Factors never
modify the counts; they rescale the effective library size
(``lib_size * factor``) used by every CPM computation downstream.

References:
    - Robinson & Oshlack (2010) Genome Biology 11:R25 (TMM)
    - Bullard et al. (2010) BMC Bioinformatics 11:94 (upper quartile)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.stats import rankdata

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    'NormalizationMethod',
    'NormalizationFactors',
    'calc_norm_factors',
    'cpm',
]


class NormalizationMethod(Enum):
    """Available scale-factor methods."""

    TMM = "TMM"
    UPPER_QUARTILE = "upperquartile"
    NONE = "none"


@dataclass(frozen=True)
class NormalizationFactors:
    """One positive scale factor per sample.

    Attributes:
        sample_ids: Sample identifiers, in count-matrix column order
        lib_sizes: Raw library sizes (column sums)
        factors: Scale factors, geometric mean 1
        method: Method used to compute the factors
        ref_column: Index of the reference sample (TMM only)
    """

    sample_ids: pd.Index
    lib_sizes: NDArray[np.float64]
    factors: NDArray[np.float64]
    method: str
    ref_column: int | None = None

    @property
    def effective_lib_sizes(self) -> NDArray[np.float64]:
        """Library sizes rescaled by the normalization factors."""
        return self.lib_sizes * self.factors

    def to_series(self) -> pd.Series:
        return pd.Series(self.factors, index=self.sample_ids, name="norm_factor")


def _tmm_factor(
    obs: NDArray[np.float64],
    ref: NDArray[np.float64],
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
    do_weighting: bool,
    a_cutoff: float,
) -> float:
    """
    TMM factor of one sample relative to the reference sample.

    Genes are trimmed symmetrically on both the log-ratio (M) and the average
    log-expression (A) scales; the surviving log-ratios are averaged with
    inverse asymptotic-variance weights.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r = log_r[finite]
    abs_e = abs_e[finite]
    v = v[finite]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if not np.any(keep):
        return 1.0

    if do_weighting:
        with np.errstate(divide='ignore', invalid='ignore'):
            w = 1.0 / v[keep]
            ok = np.isfinite(w)
            f = np.sum(log_r[keep][ok] * w[ok]) / np.sum(w[ok]) if np.any(ok) else np.nan
    else:
        f = np.mean(log_r[keep])

    # NaN propagates to the caller, which rejects undefined factors
    return float(2.0 ** f)


def _choose_reference(lib_sizes: NDArray[np.float64]) -> int:
    """Sample whose library size is closest to the geometric mean (log scale)."""
    log_lib = np.log(lib_sizes)
    return int(np.argmin(np.abs(log_lib - np.mean(log_lib))))


def calc_norm_factors(
    counts: CountMatrix,
    method: str | NormalizationMethod = NormalizationMethod.TMM,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    ref_column: int | None = None,
) -> NormalizationFactors:
    """
    Compute one normalization factor per sample.

    Args:
        counts: Raw count matrix (genes × samples).
        method: "TMM" (default), "upperquartile" or "none".
        logratio_trim: Fraction trimmed from each tail of the log-ratios (TMM).
        sum_trim: Fraction trimmed from each tail of the average
            log-expression (TMM).
        do_weighting: Weight log-ratios by inverse asymptotic variance (TMM).
        a_cutoff: Minimum average log-expression for a gene to enter TMM.
        ref_column: Reference sample index for TMM. Defaults to the sample
            whose library size is closest to the geometric mean.

    Returns:
        NormalizationFactors with factors rescaled to geometric mean 1.

    Raises:
        ConfigurationError: If a sample has zero total counts, trimming
            fractions are out of range, or a factor is undefined.

    Example:
        >>> nf = calc_norm_factors(counts, method="TMM")
        >>> np.exp(np.mean(np.log(nf.factors)))
        1.0
    """
    if isinstance(method, str):
        lookup = {m.value.lower(): m for m in NormalizationMethod}
        method = lookup.get(method.lower(), method)
    try:
        method = NormalizationMethod(method)
    except ValueError:
        valid = [m.value for m in NormalizationMethod]
        raise ConfigurationError(f"Unknown normalization method '{method}'. Use one of {valid}")

    if not 0 <= logratio_trim < 0.5 or not 0 <= sum_trim < 0.5:
        raise ConfigurationError(
            f"Trim fractions must lie in [0, 0.5): logratio_trim={logratio_trim}, sum_trim={sum_trim}"
        )

    x = counts.data.astype(np.float64)
    lib_sizes = x.sum(axis=0)

    zero_libs = counts.sample_ids[lib_sizes == 0].tolist()
    if zero_libs:
        raise ConfigurationError(
            f"Normalization factors are undefined for samples with zero total counts: {zero_libs}"
        )

    # All-zero genes carry no composition information
    x = x[x.sum(axis=1) > 0, :]
    n_samples = x.shape[1]

    if method is NormalizationMethod.NONE:
        factors = np.ones(n_samples)
        ref = None
    elif method is NormalizationMethod.UPPER_QUARTILE:
        factors = np.quantile(x / lib_sizes[None, :], 0.75, axis=0)
        ref = None
    else:
        if ref_column is None:
            ref = _choose_reference(lib_sizes)
        else:
            if not 0 <= ref_column < n_samples:
                raise ConfigurationError(
                    f"ref_column {ref_column} out of range for {n_samples} samples"
                )
            ref = int(ref_column)
        factors = np.array([
            _tmm_factor(
                obs=x[:, j],
                ref=x[:, ref],
                lib_obs=lib_sizes[j],
                lib_ref=lib_sizes[ref],
                logratio_trim=logratio_trim,
                sum_trim=sum_trim,
                do_weighting=do_weighting,
                a_cutoff=a_cutoff,
            )
            for j in range(n_samples)
        ])

    bad = ~np.isfinite(factors) | (factors <= 0)
    if np.any(bad):
        raise ConfigurationError(
            f"Normalization factor undefined for samples {counts.sample_ids[bad].tolist()} "
            f"(method={method.value})"
        )

    factors = factors / np.exp(np.mean(np.log(factors)))

    if ref is not None:
        logger.info(
            f"{method.value} normalization: reference sample {counts.sample_ids[ref]}, "
            f"factors range [{factors.min():.3f}, {factors.max():.3f}]"
        )
    else:
        logger.info(
            f"{method.value} normalization: factors range "
            f"[{factors.min():.3f}, {factors.max():.3f}]"
        )

    return NormalizationFactors(
        sample_ids=counts.sample_ids,
        lib_sizes=lib_sizes,
        factors=factors,
        method=method.value,
        ref_column=ref,
    )


def cpm(
    counts: NDArray,
    lib_sizes: NDArray[np.float64],
    log: bool = False,
    prior_count: float = 0.5,
) -> NDArray[np.float64]:
    """
    Counts per million against (effective) library sizes.

    Args:
        counts: Count array (genes × samples).
        lib_sizes: Library size per sample, usually
            ``NormalizationFactors.effective_lib_sizes``.
        log: Return log2-CPM with a pseudocount.
        prior_count: Pseudocount added to every count when ``log`` is True;
            the library size is offset by twice this value.

    Returns:
        CPM matrix with the same shape as counts.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)

    if log:
        return np.log2((counts + prior_count) / (lib_sizes[None, :] + 2.0 * prior_count) * 1e6)
    return counts / lib_sizes[None, :] * 1e6
