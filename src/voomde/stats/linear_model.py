"""
Per-gene weighted least squares against a shared design matrix.

Every gene is regressed on the same design X with its own observation
weights w_g:

    β_g = (X' W_g X)⁻¹ X' W_g y_g
    σ²_g = Σ w_gs (y_gs - x_s β_g)² / (n_informative_g - p)
    Cov(β_g) = σ²_g (X' W_g X)⁻¹

The design-dependent parts are prepared once. For unweighted fits a single QR
decomposition of X serves every gene. For weighted fits the per-sample outer
products x_s x_s' are precomputed, so each gene's X' W_g X is one weighted sum
over samples, and all genes are solved in a single batched call.

A gene with fewer informative (non-zero weight) samples than design columns
has no residual degrees of freedom. Such genes, and genes whose weighted
design loses rank, receive NaN statistics and a GeneFlag instead of a
zero-variance fit.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from voomde.core.errors import DataAlignmentError, UnderdeterminedFitWarning
from voomde.core.flags import GeneFlag, is_tested
from voomde.stats.design_matrix import DesignMatrix

if TYPE_CHECKING:
    from voomde.stats.voom import ExpressionWeights

logger = logging.getLogger(__name__)

__all__ = ['GeneFit', 'lm_fit']


@dataclass(frozen=True)
class GeneFit:
    """Per-gene linear model fit.

    Attributes:
        coefficients: Estimated coefficients (n_genes, n_params)
        stdev_unscaled: sqrt(diag((X'WX)⁻¹)) per gene (n_genes, n_params)
        cov_unscaled: (X'WX)⁻¹ per gene (n_genes, n_params, n_params)
        sigma: Residual standard deviation (n_genes,)
        df_residual: Residual degrees of freedom (n_genes,)
        amean: Average log-expression (n_genes,)
        flags: GeneFlag bits per gene (n_genes,)
        feature_ids: Gene identifiers
        col_names: Design column names
    """

    coefficients: NDArray[np.float64]
    stdev_unscaled: NDArray[np.float64]
    cov_unscaled: NDArray[np.float64]
    sigma: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    amean: NDArray[np.float64]
    flags: NDArray[np.int64]
    feature_ids: pd.Index
    col_names: tuple[str, ...]

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]

    @property
    def tested(self) -> NDArray[np.bool_]:
        """Genes with a fully defined fit."""
        return is_tested(self.flags)

    def coefficients_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.coefficients, index=self.feature_ids, columns=list(self.col_names))


def _as_arrays(
    expr: ExpressionWeights | pd.DataFrame | NDArray,
    weights: NDArray | pd.DataFrame | None,
) -> tuple[NDArray[np.float64], NDArray[np.float64] | None, pd.Index, pd.Index | None]:
    """Unpack expression input into (values, weights, feature ids, sample ids)."""
    sample_ids = None
    if hasattr(expr, "log_expr") and hasattr(expr, "weights"):
        if weights is None:
            weights = expr.weights
        feature_ids = expr.feature_ids
        sample_ids = expr.sample_ids
        values = expr.log_expr
    elif isinstance(expr, pd.DataFrame):
        feature_ids = pd.Index(expr.index)
        sample_ids = pd.Index(expr.columns)
        values = expr.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(expr, dtype=np.float64)
        if values.ndim == 1:
            values = values.reshape(1, -1)
        feature_ids = pd.RangeIndex(values.shape[0])

    if isinstance(weights, pd.DataFrame):
        weights = weights.to_numpy(dtype=np.float64)

    values = np.asarray(values, dtype=np.float64)
    if values.ndim != 2:
        raise ValueError(f"Expression values must be 2D (genes × samples), got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise ValueError("Expression values contain NaN or infinite entries")

    if weights is not None:
        weights = np.asarray(weights, dtype=np.float64)
        if weights.ndim == 1:
            weights = np.broadcast_to(weights, values.shape)
        if weights.shape != values.shape:
            raise ValueError(
                f"Weights shape {weights.shape} does not match expression shape {values.shape}"
            )
        if not np.all(np.isfinite(weights)) or np.any(weights < 0):
            raise ValueError("Weights must be finite and non-negative")

    return values, weights, feature_ids, sample_ids


def _fit_unweighted(Y: NDArray[np.float64], X: NDArray[np.float64]):
    n_genes = Y.shape[0]
    n, p = X.shape

    Q, R = np.linalg.qr(X)
    coef = np.linalg.solve(R, Q.T @ Y.T).T

    R_inv = np.linalg.inv(R)
    cov = R_inv @ R_inv.T
    cov_unscaled = np.broadcast_to(cov, (n_genes, p, p)).copy()

    resid = Y - coef @ X.T
    df = np.full(n_genes, float(n - p))
    sigma = np.sqrt(np.sum(resid ** 2, axis=1) / df)
    flags = np.zeros(n_genes, dtype=np.int64)
    return coef, cov_unscaled, sigma, df, flags


def _fit_weighted(Y: NDArray[np.float64], W: NDArray[np.float64], X: NDArray[np.float64]):
    n_genes = Y.shape[0]
    p = X.shape[1]

    # x_s x_s' per sample, shared by every gene
    outer = np.einsum('si,sj->sij', X, X)
    xtwx = np.einsum('gs,sij->gij', W, outer)
    xtwy = np.einsum('gs,si->gi', W * Y, X)

    n_informative = np.sum(W > 0, axis=1)
    df = (n_informative - p).astype(np.float64)

    underdetermined = df <= 0
    rank = np.linalg.matrix_rank(xtwx)
    singular = (rank < p) & ~underdetermined

    flags = np.zeros(n_genes, dtype=np.int64)
    flags[underdetermined] |= int(GeneFlag.UNDERDETERMINED | GeneFlag.NOT_TESTED)
    flags[singular] |= int(GeneFlag.SINGULAR_WEIGHTED_DESIGN | GeneFlag.NOT_TESTED)
    ok = flags == GeneFlag.OK

    coef = np.full((n_genes, p), np.nan)
    cov_unscaled = np.full((n_genes, p, p), np.nan)
    sigma = np.full(n_genes, np.nan)
    df[~ok] = np.nan

    if np.any(ok):
        cov_ok = np.linalg.inv(xtwx[ok])
        coef_ok = np.einsum('gij,gj->gi', cov_ok, xtwy[ok])
        resid = Y[ok] - coef_ok @ X.T
        rss = np.sum(W[ok] * resid ** 2, axis=1)

        coef[ok] = coef_ok
        cov_unscaled[ok] = cov_ok
        sigma[ok] = np.sqrt(rss / df[ok])

    return coef, cov_unscaled, sigma, df, flags


def lm_fit(
    expr: ExpressionWeights | pd.DataFrame | NDArray,
    design: DesignMatrix,
    weights: NDArray | pd.DataFrame | None = None,
) -> GeneFit:
    """
    Fit one (weighted) least-squares model per gene.

    Args:
        expr: ExpressionWeights from voom (expression and weights travel
            together), or a genes × samples matrix of log-expression values.
        design: Validated design matrix; rows must correspond to samples.
        weights: Precision weights (genes × samples, or one per sample).
            Overrides the weights carried by ExpressionWeights when given.

    Returns:
        GeneFit. Genes without residual degrees of freedom or with a
        rank-deficient weighted design are flagged and carry NaN statistics.

    Raises:
        DataAlignmentError: If sample identifiers of expr and design differ.
        ValueError: If shapes disagree or values are non-finite.

    Warns:
        UnderdeterminedFitWarning: Once per call when any gene is flagged.
    """
    Y, W, feature_ids, sample_ids = _as_arrays(expr, weights)
    X = design.X

    if sample_ids is not None and not sample_ids.equals(design.sample_ids):
        raise DataAlignmentError(
            "Expression columns and design rows refer to different samples "
            "(compared by identifier)"
        )
    if Y.shape[1] != design.n_samples:
        raise ValueError(
            f"Expression has {Y.shape[1]} samples but design has {design.n_samples} rows"
        )

    amean = Y.mean(axis=1)

    if W is None:
        coef, cov_unscaled, sigma, df, flags = _fit_unweighted(Y, X)
    else:
        coef, cov_unscaled, sigma, df, flags = _fit_weighted(Y, W, X)

    stdev_unscaled = np.sqrt(np.diagonal(cov_unscaled, axis1=1, axis2=2))

    n_flagged = int(np.sum(flags != GeneFlag.OK))
    if n_flagged:
        flagged_ids = feature_ids[flags != GeneFlag.OK]
        warnings.warn(
            f"{n_flagged} gene(s) have too few informative samples for the design "
            f"and are marked not-tested",
            UnderdeterminedFitWarning,
        )
        logger.warning(f"Not-tested genes (undefined fit): {list(flagged_ids[:20])}"
                       + (" ..." if n_flagged > 20 else ""))

    logger.info(f"Fitted {Y.shape[0]} genes against {design.n_params} design columns "
                f"({'weighted' if W is not None else 'unweighted'}), {n_flagged} not tested")

    return GeneFit(
        coefficients=coef,
        stdev_unscaled=stdev_unscaled,
        cov_unscaled=cov_unscaled,
        sigma=sigma,
        df_residual=df,
        amean=amean,
        flags=flags,
        feature_ids=feature_ids,
        col_names=design.col_names,
    )
