"""
Empirical Bayes moderation of per-gene variances (limma eBayes).

With few replicates each gene's residual variance is estimated from a
handful of degrees of freedom and is unreliable. The variances are assumed
to follow a scaled inverse-χ² prior across genes:

    1/σ²_g ~ (1 / (d₀ s₀²)) χ²_{d₀}

The hyperparameters (d₀, s₀²) are estimated by matching the first two
moments of log s²_g; each gene's variance is then replaced by its posterior
mean, a df-weighted average of its own estimate and the prior:

    s̃²_g = (d₀ s₀² + d_g s²_g) / (d₀ + d_g)

Moderated t-statistics use s̃²_g and follow a t-distribution on d₀ + d_g
degrees of freedom. The B-statistic (log-odds of differential expression)
further needs the prior variance of non-zero effects, estimated from the most
extreme t-statistics.

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular
      Biology 3:Article 3
    - Phipson et al. (2016) Annals of Applied Statistics 10:946-963
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

from voomde.core.errors import ConfigurationError
from voomde.stats.contrasts import ContrastFit

logger = logging.getLogger(__name__)

__all__ = [
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'tmixture_vector',
    'e_bayes',
]


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Compute the inverse of the trigamma function using Newton's method.

    Solves for y where trigamma(y) = x. This is a core utility for
    estimating the prior degrees of freedom in Empirical Bayes.

    The implementation follows limma's trigammaInverse:
    - Initial guess: y = 0.5 + 1/x (valid since 1/trigamma(y) > y - 0.5)
    - Newton iteration until the relative step falls below tol

    Args:
        x: Target trigamma value (must be positive)
        tol: Convergence tolerance
        max_iter: Maximum Newton iterations

    Returns:
        y such that trigamma(y) ≈ x, or inf for non-positive x
    """
    if x <= 0:
        return np.inf

    # Asymptotes: trigamma(y) ≈ 1/y² as y -> 0 and ≈ 1/y as y -> inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x

    for _ in range(max_iter):
        tri = polygamma(1, y)
        delta = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + delta
        if y <= 0:
            raise ArithmeticError(f"trigamma_inverse diverged for x={x}")
        if -delta / y < tol:
            break

    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior d₀ and s₀² via method of moments (limma fitFDist).

    Mathematical basis:
        Assume s²_g ~ s₀² F(d_g, d₀). Then
        E[log s²_g] = log s₀² + digamma(d_g/2) - log(d_g/2) - digamma(d₀/2) + log(d₀/2)
        Var[log s²_g] = trigamma(d_g/2) + trigamma(d₀/2)

    Algorithm:
        1. z = log(s²) - digamma(df/2) + log(df/2)
        2. evar = var(z) - mean(trigamma(df/2))
        3. d₀ = 2 × trigamma⁻¹(evar)
        4. s₀² = exp(mean(z) + digamma(d₀/2) - log(d₀/2))

    Variances are floored at 1e-5 × their median before the log so a few
    exact zeros do not dominate the moments.

    Args:
        sigma2: Residual variances (n_genes,). NaN entries are ignored.
        df: Residual degrees of freedom (scalar or per gene).

    Returns:
        Tuple (d0, s0_sq). d0 is inf when the variances are less dispersed
        than sampling error alone predicts, and 0 when fewer than three
        usable variances exist (no shrinkage).
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    valid = np.isfinite(sigma2) & np.isfinite(df) & (df > 1e-15)
    x = np.maximum(sigma2[valid], 0.0)
    d = df[valid]

    if x.size < 3:
        s0_sq = float(np.median(x)) if x.size > 0 else np.nan
        return 0.0, s0_sq

    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    df_half = d / 2.0
    e = np.log(x) - digamma(df_half) + np.log(df_half)
    emean = np.mean(e)
    evar = np.var(e, ddof=1) - np.mean(polygamma(1, df_half))

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    s0_sq = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    return float(d0), float(s0_sq)


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Posterior variances (limma squeezeVar).

    Formula:
        s²_post = (d₀ × s₀² + df × s²) / (d₀ + df)

    Edge cases:
        - d₀ = inf: every gene takes the prior variance
        - d₀ <= 0 or NaN: no shrinkage, posterior equals the raw variance
          and the total df equals the residual df

    Args:
        sigma2: Sample variances (n_genes,)
        df: Residual degrees of freedom, scalar or per gene
        d0: Prior degrees of freedom
        s0_sq: Prior variance

    Returns:
        Tuple (s2_post, df_total), both arrays of shape (n_genes,)
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape).astype(np.float64)

    if not np.isfinite(d0) and d0 > 0:
        s2_post = np.where(np.isfinite(sigma2), s0_sq, np.nan)
        return s2_post, np.where(np.isfinite(df), np.inf, np.nan)

    if np.isnan(d0) or d0 <= 0:
        return sigma2.copy(), df.copy()

    s2_post = (d0 * s0_sq + df * sigma2) / (d0 + df)
    return s2_post, d0 + df


def tmixture_vector(
    tstat: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    df: NDArray[np.float64],
    proportion: float,
    v0_lim: Sequence[float] | None = None,
) -> float:
    """
    Prior variance of non-zero effects from the top t-statistics.

    Assumes a fraction ``proportion`` of genes are differentially expressed
    with effects ~ N(0, v₀ σ²). The largest |t| values are matched against
    the order statistics expected under that mixture to solve for v₀.

    Args:
        tstat: Moderated t-statistics for one contrast.
        stdev_unscaled: Unscaled standard errors for the same contrast.
        df: Total degrees of freedom per gene.
        proportion: Assumed fraction of differentially expressed genes.
        v0_lim: Optional (lower, upper) limits for v₀.

    Returns:
        Mean estimated v₀, or NaN when too few genes are available.
    """
    tstat = np.asarray(tstat, dtype=np.float64)
    stdev_unscaled = np.asarray(stdev_unscaled, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), tstat.shape).copy()

    ok = np.isfinite(tstat)
    tstat = np.abs(tstat[ok])
    stdev_unscaled = stdev_unscaled[ok]
    df = df[ok]

    n_genes = tstat.size
    n_target = int(np.ceil(proportion / 2.0 * n_genes))
    if n_target < 1:
        return np.nan

    p = max(n_target / n_genes, proportion)

    # Put every statistic on the largest df so order statistics are comparable
    max_df = np.max(df)
    lower = df < max_df
    if np.any(lower):
        tail = scipy_stats.t.logsf(tstat[lower], df[lower])
        tstat[lower] = scipy_stats.t.isf(np.exp(tail), max_df)
        df[lower] = max_df

    top = np.argsort(-tstat, kind="stable")[:n_target]
    tstat = tstat[top]
    v1 = stdev_unscaled[top] ** 2

    r = np.arange(1, n_target + 1)
    p0 = 2.0 * scipy_stats.t.sf(tstat, max_df)
    p_target = ((r - 0.5) / n_genes - (1.0 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = p_target > p0
    if np.any(pos):
        q_target = scipy_stats.t.isf(p_target[pos] / 2.0, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / q_target) ** 2 - 1.0)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])

    return float(np.mean(v0))


def e_bayes(
    fit: ContrastFit,
    proportion: float = 0.01,
    stdev_coef_lim: tuple[float, float] = (0.1, 4.0),
    in_place: bool = False,
) -> ContrastFit:
    """
    Moderated t-statistics, p-values and log-odds for every contrast.

    Args:
        fit: Contrast estimates from ``contrasts_fit``.
        proportion: Assumed fraction of differentially expressed genes
            (B-statistic prior).
        stdev_coef_lim: Limits on the prior standard deviation of log fold
            changes for differentially expressed genes.
        in_place: Write the moderated statistics into ``fit`` instead of
            returning a new object.

    Returns:
        ContrastFit with ``t``, ``p_value``, ``lods``, ``s2_post``,
        ``df_total``, ``s2_prior`` and ``df_prior`` set. Not-tested genes
        carry NaN. When the prior df is infinite (near-identical variances),
        non-positive or undefined, ``df_prior`` is 0 and every gene keeps its
        own variance and residual df.

    Raises:
        ConfigurationError: If proportion or the limits are out of range.
    """
    if not 0 < proportion < 1:
        raise ConfigurationError(f"proportion must lie in (0, 1), got {proportion}")
    if len(stdev_coef_lim) != 2 or not 0 < stdev_coef_lim[0] <= stdev_coef_lim[1]:
        raise ConfigurationError("stdev_coef_lim must be (low, high) with 0 < low <= high")

    tested = fit.tested & np.isfinite(fit.sigma)
    sigma2 = np.where(tested, fit.sigma ** 2, np.nan)
    df_residual = np.where(tested, fit.df_residual, np.nan)

    d0, s0_sq = fit_f_dist(sigma2[tested], df_residual[tested])
    if not np.isfinite(d0) or d0 <= 0:
        logger.warning(
            f"Prior degrees of freedom not estimable (estimate {d0}, "
            f"{int(tested.sum())} usable variances); variances are not shrunk"
        )
        d0 = 0.0

    s2_post, df_total = squeeze_var(sigma2, df_residual, d0, s0_sq)
    df_total = np.minimum(df_total, np.nansum(df_residual))

    stdev_unscaled = fit.stdev_unscaled
    with np.errstate(divide='ignore', invalid='ignore'):
        t = fit.coefficients / stdev_unscaled / np.sqrt(s2_post)[:, None]
    p_value = 2.0 * scipy_stats.t.sf(np.abs(t), df_total[:, None])

    # B-statistic
    var_prior_lim = np.asarray(stdev_coef_lim, dtype=np.float64) ** 2 / s0_sq
    var_prior = np.empty(fit.n_contrasts)
    for k in range(fit.n_contrasts):
        var_prior[k] = tmixture_vector(
            t[tested, k], stdev_unscaled[tested, k], df_total[tested], proportion, var_prior_lim
        )
    if np.any(np.isnan(var_prior)):
        var_prior[np.isnan(var_prior)] = 1.0 / s0_sq
        logger.warning("Estimation of var.prior failed for some contrasts; set to default value")

    with np.errstate(divide='ignore', invalid='ignore'):
        r = (stdev_unscaled ** 2 + var_prior[None, :]) / stdev_unscaled ** 2
        t2 = t ** 2
        df_col = df_total[:, None]
        if d0 > 1e6:
            kernel = t2 * (1.0 - 1.0 / r) / 2.0
        else:
            kernel = (1.0 + df_col) / 2.0 * np.log((t2 + df_col) / (t2 / r + df_col))
        lods = np.log(proportion / (1.0 - proportion)) - np.log(r) / 2.0 + kernel

    logger.info(
        f"Empirical Bayes: prior df {d0:.3g}, prior variance {s0_sq:.4g}, "
        f"{int(tested.sum())}/{fit.n_genes} genes tested"
    )

    moderated = dict(
        t=t,
        p_value=p_value,
        lods=lods,
        s2_post=s2_post,
        df_total=df_total,
        s2_prior=float(s0_sq),
        df_prior=float(d0),
    )

    if in_place:
        for name, value in moderated.items():
            setattr(fit, name, value)
        return fit
    return dataclasses.replace(fit, **moderated)
