"""
Ranked result tables and per-contrast decisions.

The table is the terminal entity of the statistical pipeline: one row per
gene with the effect size, average expression, moderated t, raw and adjusted
p-values and the B-statistic. Not-tested genes are kept (never dropped) and
appended after the ranked genes with NaN statistics.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from voomde.core.errors import ConfigurationError
from voomde.stats.contrasts import ContrastFit
from voomde.stats.multiple_testing import adjust_pvalues

logger = logging.getLogger(__name__)

__all__ = ['RESULT_COLUMNS', 'top_table', 'decide_tests', 'summarize_decisions']

RESULT_COLUMNS = [
    "log2fc",
    "ave_expr",
    "t_statistic",
    "p_value",
    "adj_p_value",
    "lods",
    "significant",
    "status",
]

_SORT_KEYS = ("p", "t", "logfc", "B", "none")


def _require_moderated(fit: ContrastFit) -> None:
    if not fit.is_moderated:
        raise ConfigurationError(
            "Contrast statistics have not been moderated; run e_bayes before "
            "building result tables"
        )


def top_table(
    moderated: ContrastFit,
    coef: int | str = 0,
    adjust_method: str = "BH",
    sort_by: str = "p",
    significance_threshold: float = 0.05,
    number: int | None = None,
) -> pd.DataFrame:
    """
    Build the ranked result table for one contrast.

    Args:
        moderated: ContrastFit after ``e_bayes``.
        coef: Contrast name or position.
        adjust_method: "BH" or "qvalue".
        sort_by: "p" (ascending raw p-value), "t" (descending |t|),
            "logfc" (descending |log2fc|), "B" (descending lods) or "none".
        significance_threshold: Adjusted p-value cutoff for ``significant``.
        number: Keep only the first ``number`` rows.

    Returns:
        DataFrame indexed by gene id with columns RESULT_COLUMNS. ``status``
        is "up", "down", "not_significant" or "not_tested".

    Raises:
        ConfigurationError: If the fit is unmoderated or arguments are invalid.
    """
    _require_moderated(moderated)
    if sort_by not in _SORT_KEYS:
        raise ConfigurationError(f"sort_by must be one of {_SORT_KEYS}, got '{sort_by}'")
    if not 0 < significance_threshold <= 1:
        raise ConfigurationError(
            f"significance_threshold must lie in (0, 1], got {significance_threshold}"
        )

    k = moderated.contrast_index(coef)
    p_value = moderated.p_value[:, k]
    tested = moderated.tested & np.isfinite(p_value)
    p_value = np.where(tested, p_value, np.nan)

    adj = adjust_pvalues(p_value, method=adjust_method)
    log2fc = np.where(tested, moderated.coefficients[:, k], np.nan)
    t_stat = np.where(tested, moderated.t[:, k], np.nan)
    lods = np.where(tested, moderated.lods[:, k], np.nan)

    significant = tested & (adj < significance_threshold)
    status = np.full(moderated.n_genes, "not_significant", dtype=object)
    status[significant & (log2fc > 0)] = "up"
    status[significant & (log2fc < 0)] = "down"
    status[~tested] = "not_tested"

    table = pd.DataFrame(
        {
            "log2fc": log2fc,
            "ave_expr": moderated.amean,
            "t_statistic": t_stat,
            "p_value": p_value,
            "adj_p_value": adj,
            "lods": lods,
            "significant": significant,
            "status": status,
        },
        index=pd.Index(moderated.feature_ids, name="gene_id"),
    )

    ranked = table[tested]
    if sort_by == "p":
        ranked = ranked.sort_values("p_value", kind="stable")
    elif sort_by == "t":
        ranked = ranked.iloc[np.argsort(-np.abs(ranked["t_statistic"].to_numpy()), kind="stable")]
    elif sort_by == "logfc":
        ranked = ranked.iloc[np.argsort(-np.abs(ranked["log2fc"].to_numpy()), kind="stable")]
    elif sort_by == "B":
        ranked = ranked.sort_values("lods", ascending=False, kind="stable")

    table = pd.concat([ranked, table[~tested]])
    if number is not None:
        table = table.head(number)

    logger.info(
        f"Contrast '{moderated.contrast_names[k]}': {int(significant.sum())} significant "
        f"({adjust_method} < {significance_threshold}), {int((~tested).sum())} not tested"
    )
    return table


def decide_tests(
    moderated: ContrastFit,
    adjust_method: str = "BH",
    significance_threshold: float = 0.05,
    lfc: float = 0.0,
) -> pd.DataFrame:
    """
    Classify each gene in each contrast as down (-1), not significant (0) or up (+1).

    Each contrast is adjusted separately. Not-tested genes are 0.
    """
    _require_moderated(moderated)
    decisions = np.zeros((moderated.n_genes, moderated.n_contrasts), dtype=np.int64)
    for k in range(moderated.n_contrasts):
        p_value = np.where(moderated.tested, moderated.p_value[:, k], np.nan)
        adj = adjust_pvalues(p_value, method=adjust_method)
        effect = moderated.coefficients[:, k]
        call = np.isfinite(adj) & (adj < significance_threshold) & (np.abs(effect) >= lfc)
        decisions[call, k] = np.sign(effect[call]).astype(np.int64)

    return pd.DataFrame(
        decisions,
        index=pd.Index(moderated.feature_ids, name="gene_id"),
        columns=list(moderated.contrast_names),
    )


def summarize_decisions(decisions: pd.DataFrame) -> pd.DataFrame:
    """Counts of down, not significant and up genes per contrast."""
    return pd.DataFrame(
        {
            name: [
                int((col == -1).sum()),
                int((col == 0).sum()),
                int((col == 1).sum()),
            ]
            for name, col in decisions.items()
        },
        index=["down", "not_sig", "up"],
    )
