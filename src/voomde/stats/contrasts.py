"""
Contrasts: named linear combinations of design coefficients.

A contrast matrix C (n_params × n_contrasts) maps each gene's coefficients to
effect sizes; the unscaled standard error of each effect is the quadratic
form of the contrast vector against that gene's coefficient covariance:

    effect_g = C' β_g
    stdev_unscaled_gk = sqrt(c_k' (X' W_g X)⁻¹ c_k)

Contrasts are given as expressions over design column names, e.g.
``"groupA.C - groupA.D"`` or ``"(groupA.C + groupB.C)/2 - (groupA.D + groupB.D)/2"``.
Column names may contain dots and colons, so names are substituted with
plain identifiers before the expression is parsed with ``ast``. Only
linear expressions are accepted.

The contrast matrix is validated by row label against the design's column
order: a matrix built for a different column order would silently test the
wrong comparison.
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats

from voomde.core.errors import ConfigurationError
from voomde.core.flags import is_tested
from voomde.stats.design_matrix import DesignMatrix
from voomde.stats.linear_model import GeneFit

logger = logging.getLogger(__name__)

__all__ = ['ContrastFit', 'make_contrasts', 'parse_contrast', 'contrasts_fit']


@dataclass
class ContrastFit:
    """
    Per-gene, per-contrast effect estimates.

    This is the one pipeline entity whose statistics change after creation:
    ``e_bayes(..., in_place=True)`` fills the moderated fields. Until then the
    raw t and p values are not valid for reporting.

    Attributes:
        coefficients: Effect sizes (log2 fold changes) (n_genes, n_contrasts)
        stdev_unscaled: Unscaled standard errors (n_genes, n_contrasts)
        sigma: Residual standard deviation (n_genes,)
        df_residual: Residual degrees of freedom (n_genes,)
        amean: Average log-expression (n_genes,)
        flags: GeneFlag bits from the linear model fit (n_genes,)
        feature_ids: Gene identifiers
        contrast_names: Names of the contrasts (columns)
        contrast_matrix: Contrast matrix as a DataFrame (design columns × contrasts)
        t_raw: Ordinary t-statistics (n_genes, n_contrasts)
        p_raw: Ordinary two-sided p-values (n_genes, n_contrasts)
    """

    coefficients: NDArray[np.float64]
    stdev_unscaled: NDArray[np.float64]
    sigma: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    amean: NDArray[np.float64]
    flags: NDArray[np.int64]
    feature_ids: pd.Index
    contrast_names: tuple[str, ...]
    contrast_matrix: pd.DataFrame
    t_raw: NDArray[np.float64]
    p_raw: NDArray[np.float64]

    # Filled by empirical Bayes moderation
    t: NDArray[np.float64] | None = None
    p_value: NDArray[np.float64] | None = None
    lods: NDArray[np.float64] | None = None
    s2_post: NDArray[np.float64] | None = None
    df_total: NDArray[np.float64] | None = None
    s2_prior: float | None = None
    df_prior: float | None = None

    @property
    def n_genes(self) -> int:
        return self.coefficients.shape[0]

    @property
    def n_contrasts(self) -> int:
        return self.coefficients.shape[1]

    @property
    def tested(self) -> NDArray[np.bool_]:
        return is_tested(self.flags)

    @property
    def is_moderated(self) -> bool:
        return self.t is not None

    def contrast_index(self, contrast: int | str) -> int:
        """Resolve a contrast name or position to a column index."""
        if isinstance(contrast, str):
            if contrast not in self.contrast_names:
                raise ConfigurationError(
                    f"Unknown contrast '{contrast}'. Available: {list(self.contrast_names)}"
                )
            return self.contrast_names.index(contrast)
        if not -self.n_contrasts <= contrast < self.n_contrasts:
            raise ConfigurationError(
                f"Contrast index {contrast} out of range for {self.n_contrasts} contrasts"
            )
        return int(contrast) % self.n_contrasts


_NUMBER = (int, float)


def _substitute_names(expression: str, col_names: Sequence[str]) -> tuple[str, dict[str, int]]:
    """Replace column names with safe identifiers, longest names first."""
    tokens: dict[str, int] = {}
    order = sorted(range(len(col_names)), key=lambda i: -len(col_names[i]))
    for i in order:
        token = f"__col{i}__"
        pattern = r'(?<![\w.:])' + re.escape(col_names[i]) + r'(?![\w.:])'
        expression, n = re.subn(pattern, token, expression)
        if n:
            tokens[token] = i
    return expression, tokens


def _linear_terms(node: ast.AST, tokens: dict[str, int], p: int) -> tuple[NDArray, float]:
    """Evaluate an expression node to (coefficient vector, constant)."""
    if isinstance(node, ast.Expression):
        return _linear_terms(node.body, tokens, p)

    if isinstance(node, ast.Constant) and isinstance(node.value, _NUMBER) \
            and not isinstance(node.value, bool):
        return np.zeros(p), float(node.value)

    if isinstance(node, ast.Name):
        if node.id not in tokens:
            raise ConfigurationError(f"Unknown design column '{node.id}' in contrast")
        vec = np.zeros(p)
        vec[tokens[node.id]] = 1.0
        return vec, 0.0

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
        vec, const = _linear_terms(node.operand, tokens, p)
        sign = -1.0 if isinstance(node.op, ast.USub) else 1.0
        return sign * vec, sign * const

    if isinstance(node, ast.BinOp):
        lv, lc = _linear_terms(node.left, tokens, p)
        rv, rc = _linear_terms(node.right, tokens, p)
        l_const = not np.any(lv)
        r_const = not np.any(rv)

        if isinstance(node.op, ast.Add):
            return lv + rv, lc + rc
        if isinstance(node.op, ast.Sub):
            return lv - rv, lc - rc
        if isinstance(node.op, ast.Mult):
            if l_const:
                return lc * rv, lc * rc
            if r_const:
                return rc * lv, rc * lc
            raise ConfigurationError("Contrast is not linear: product of two design columns")
        if isinstance(node.op, ast.Div):
            if not r_const:
                raise ConfigurationError("Contrast is not linear: division by a design column")
            if rc == 0:
                raise ConfigurationError("Division by zero in contrast")
            return lv / rc, lc / rc

    if isinstance(node, ast.Attribute):
        raise ConfigurationError(f"Unknown design column '{ast.unparse(node)}' in contrast")

    raise ConfigurationError(f"Unsupported syntax in contrast: {ast.dump(node)}")


def parse_contrast(expression: str, col_names: Sequence[str]) -> NDArray[np.float64]:
    """
    Parse one contrast expression into a vector over design columns.

    Args:
        expression: Linear expression in design column names, e.g.
            ``"groupA.C - groupA.D"``.
        col_names: Design column names, in design order.

    Returns:
        Contrast vector of length len(col_names).

    Raises:
        ConfigurationError: On unknown names, non-linear terms, constant
            offsets, or an all-zero contrast.
    """
    col_names = [str(c) for c in col_names]
    substituted, tokens = _substitute_names(expression, col_names)
    try:
        tree = ast.parse(substituted, mode="eval")
    except SyntaxError:
        raise ConfigurationError(f"Cannot parse contrast expression '{expression}'") from None

    vec, const = _linear_terms(tree, tokens, len(col_names))
    if const != 0:
        raise ConfigurationError(
            f"Contrast '{expression}' contains a constant term; only combinations of "
            f"design columns are allowed"
        )
    if not np.any(vec):
        raise ConfigurationError(f"Contrast '{expression}' is identically zero")
    return vec


def make_contrasts(
    design: DesignMatrix | Sequence[str],
    contrasts: Mapping[str, str] | None = None,
    **named: str,
) -> pd.DataFrame:
    """
    Build a contrast matrix from named expressions.

    Args:
        design: DesignMatrix or its column names.
        contrasts: Mapping contrast name -> expression.
        **named: Further contrasts as keyword arguments.

    Returns:
        DataFrame indexed by design column names (design order) with one
        column per contrast.

    Example:
        >>> make_contrasts(design, {"A_CvsD": "groupA.C - groupA.D"})
                  A_CvsD
        groupA.C     1.0
        groupA.D    -1.0
        groupB.C     0.0
        groupB.D     0.0
    """
    col_names = list(design.col_names) if isinstance(design, DesignMatrix) else [str(c) for c in design]
    spec = dict(contrasts or {})
    overlap = set(spec) & set(named)
    if overlap:
        raise ConfigurationError(f"Contrasts defined twice: {sorted(overlap)}")
    spec.update(named)
    if not spec:
        raise ConfigurationError("At least one contrast is required")

    columns = {name: parse_contrast(expr, col_names) for name, expr in spec.items()}
    return pd.DataFrame(columns, index=pd.Index(col_names))


def _resolve_contrasts(
    contrasts: pd.DataFrame | pd.Series | NDArray | Sequence | int | str,
    col_names: tuple[str, ...],
) -> tuple[NDArray[np.float64], tuple[str, ...]]:
    p = len(col_names)

    if isinstance(contrasts, (int, np.integer, str)) and not isinstance(contrasts, bool):
        if isinstance(contrasts, str):
            if contrasts not in col_names:
                raise ConfigurationError(
                    f"Unknown design column '{contrasts}'. Columns: {list(col_names)}"
                )
            idx = col_names.index(contrasts)
        else:
            if not 0 <= contrasts < p:
                raise ConfigurationError(f"Coefficient index {contrasts} out of range for {p} columns")
            idx = int(contrasts)
        matrix = np.zeros((p, 1))
        matrix[idx, 0] = 1.0
        return matrix, (col_names[idx],)

    if isinstance(contrasts, pd.Series):
        contrasts = contrasts.to_frame(name=contrasts.name if contrasts.name is not None else "contrast1")

    if isinstance(contrasts, pd.DataFrame):
        rows = [str(r) for r in contrasts.index]
        if rows != list(col_names):
            if set(rows) == set(col_names):
                raise ConfigurationError(
                    f"Contrast rows are ordered {rows} but the design columns are "
                    f"{list(col_names)}; reorder the contrast matrix explicitly"
                )
            raise ConfigurationError(
                f"Contrast rows {rows} do not match design columns {list(col_names)}"
            )
        matrix = contrasts.to_numpy(dtype=np.float64)
        names = tuple(str(c) for c in contrasts.columns)
    else:
        matrix = np.asarray(contrasts, dtype=np.float64)
        if matrix.ndim == 1:
            matrix = matrix.reshape(-1, 1)
        if matrix.ndim != 2 or matrix.shape[0] != p:
            raise ConfigurationError(
                f"Contrast length {matrix.shape[0] if matrix.ndim else 0} does not equal "
                f"the number of design columns ({p})"
            )
        names = tuple(f"contrast{k + 1}" for k in range(matrix.shape[1]))

    if not np.all(np.isfinite(matrix)):
        raise ConfigurationError("Contrast matrix contains NaN or infinite values")
    zero = [names[k] for k in range(matrix.shape[1]) if not np.any(matrix[:, k])]
    if zero:
        raise ConfigurationError(f"Contrasts are identically zero: {zero}")
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Contrast names must be unique: {list(names)}")
    return matrix, names


def contrasts_fit(
    fit: GeneFit,
    contrasts: pd.DataFrame | pd.Series | NDArray | Sequence | int | str,
) -> ContrastFit:
    """
    Estimate contrasts for every gene from a linear model fit.

    Args:
        fit: Per-gene fit from ``lm_fit``.
        contrasts: Contrast matrix DataFrame (rows labeled by design column,
            in design order), a vector or matrix with one row per design
            column, or a single coefficient given by index or column name.

    Returns:
        A new ContrastFit with raw (unmoderated) t and p values. The input
        fit is not modified.

    Raises:
        ConfigurationError: If the contrast does not match the design.
    """
    matrix, names = _resolve_contrasts(contrasts, fit.col_names)

    coefficients = fit.coefficients @ matrix
    variance = np.einsum('ik,gij,jk->gk', matrix, fit.cov_unscaled, matrix)
    stdev_unscaled = np.sqrt(variance)

    se = stdev_unscaled * fit.sigma[:, None]
    with np.errstate(divide='ignore', invalid='ignore'):
        t_raw = coefficients / se
    p_raw = 2.0 * stats.t.sf(np.abs(t_raw), fit.df_residual[:, None])

    logger.info(f"Estimated {len(names)} contrast(s) {list(names)} for {fit.n_genes} genes")

    return ContrastFit(
        coefficients=coefficients,
        stdev_unscaled=stdev_unscaled,
        sigma=fit.sigma.copy(),
        df_residual=fit.df_residual.copy(),
        amean=fit.amean.copy(),
        flags=fit.flags.copy(),
        feature_ids=fit.feature_ids,
        contrast_names=names,
        contrast_matrix=pd.DataFrame(matrix, index=list(fit.col_names), columns=list(names)),
        t_raw=t_raw,
        p_raw=p_raw,
    )
