"""
Result assembly and output.

Merges a ranked result table with gene annotation and per-sample normalized
log-expression, then writes tab-delimited output.

Engineering Design:
    - Row order of the ranked table is preserved
    - Annotation is matched by versioned id, or by the unversioned id when
      ``strip_version`` is set (ENSG00000000003.15 -> ENSG00000000003)
    - Genes absent from the annotation keep empty annotation fields
"""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

from voomde.stats.voom import ExpressionWeights

logger = logging.getLogger(__name__)

__all__ = ['strip_gene_version', 'assemble_results', 'write_result_table']


def strip_gene_version(ids: pd.Index) -> pd.Index:
    """Remove a trailing ``.<version>`` from gene identifiers."""
    return pd.Index(ids.astype(str).str.replace(r"\.\d+$", "", regex=True))


def assemble_results(
    table: pd.DataFrame,
    annotation: pd.DataFrame | None = None,
    expression: ExpressionWeights | pd.DataFrame | None = None,
    strip_version: bool = True,
) -> pd.DataFrame:
    """
    Merge statistics, annotation and normalized expression.

    Args:
        table: Ranked result table from ``top_table``.
        annotation: Gene annotation indexed by versioned gene id.
        expression: ExpressionWeights (its log-expression is used) or a
            genes × samples DataFrame of log-CPM values.
        strip_version: Add a ``gene_id`` column without version suffix and
            fall back to it when matching annotation.

    Returns:
        DataFrame with a ``gene_id_version`` column first, then the
        statistics, annotation fields and one column per sample.
    """
    out = table.copy()
    ids = pd.Index(out.index.astype(str))
    out.index = ids
    out.insert(0, "gene_id_version", ids)
    if strip_version:
        out.insert(1, "gene_id", strip_gene_version(ids))

    if annotation is not None:
        ann = annotation.copy()
        ann.index = ann.index.astype(str)
        fields = [c for c in ann.columns if c not in out.columns]
        merged = ann[fields].reindex(ids)
        if strip_version:
            unmatched = merged.isna().all(axis=1).to_numpy()
            if unmatched.any():
                by_gene = ann[fields].copy()
                by_gene.index = strip_gene_version(by_gene.index)
                by_gene = by_gene[~by_gene.index.duplicated(keep="first")]
                fallback = by_gene.reindex(strip_gene_version(ids[unmatched]))
                merged.iloc[unmatched] = fallback.to_numpy()
        n_annotated = int((~merged.isna().all(axis=1)).sum())
        logger.info(f"Annotated {n_annotated}/{len(ids)} genes")
        out = pd.concat([out, merged], axis=1)

    if expression is not None:
        if isinstance(expression, ExpressionWeights):
            expression = expression.to_frames()[0]
        expr = expression.copy()
        expr.index = expr.index.astype(str)
        expr.columns = [str(c) for c in expr.columns]
        out = pd.concat([out, expr.reindex(ids)], axis=1)

    out.index.name = None
    return out


def write_result_table(df: pd.DataFrame, path: Path | str) -> Path:
    """
    Write a result table as tab-delimited text without the index.

    Creates parent directories as needed and overwrites existing files.
    """
    path = Path(path)
    if path.parent != Path('.') and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)

    df.to_csv(path, sep="\t", index=False, float_format="%.6g")
    logger.info(f"Wrote {len(df)} rows to {path}")
    return path
