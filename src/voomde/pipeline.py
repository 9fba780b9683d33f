"""
End-to-end differential expression run.

Stages, in order:
    1. Metadata alignment (by sample identifier)
    2. Design matrix and contrast matrix (validated before any computation)
    3. Normalization factors (TMM by default)
    4. Expression filter (max normalized CPM >= cutoff)
    5. voom: log-CPM and precision weights
    6. Weighted linear model per gene
    7. Contrast estimation
    8. Empirical Bayes moderation
    9. Multiple-testing correction and ranked tables, one per contrast

Every call builds fresh stage outputs from its inputs; nothing is shared
between runs, so switching designs or contrasts never reuses a stale fit.

Examples:
    >>> from voomde import load_config, load_count_table, run_pipeline
    >>> counts = load_count_table("counts.tsv")
    >>> config = load_config("analysis.yaml")
    >>> result = run_pipeline(counts, None, config)
    >>> result.tables["A_CvsD"].head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import pandas as pd

from voomde.config import PipelineConfig
from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import ConfigurationError
from voomde.io.metadata import align_metadata, derive_factors, make_group
from voomde.io.writers import assemble_results
from voomde.quality.filtering import ExpressionFilter
from voomde.stats.contrasts import ContrastFit, contrasts_fit, make_contrasts
from voomde.stats.design_matrix import DesignMatrix
from voomde.stats.empirical_bayes import e_bayes
from voomde.stats.linear_model import GeneFit, lm_fit
from voomde.stats.normalization import NormalizationFactors, calc_norm_factors
from voomde.stats.results import decide_tests, summarize_decisions, top_table
from voomde.stats.voom import ExpressionWeights, voom

logger = logging.getLogger(__name__)

__all__ = ['PipelineResult', 'run_pipeline', 'prepare_metadata']


@dataclass(frozen=True)
class PipelineResult:
    """All stage outputs of one run."""
    config: PipelineConfig
    normalization: NormalizationFactors
    filtered: CountMatrix
    design: DesignMatrix
    contrast_matrix: pd.DataFrame
    expression: ExpressionWeights
    fit: GeneFit
    contrasts: ContrastFit
    moderated: ContrastFit
    tables: Dict[str, pd.DataFrame]

    def decisions(self) -> pd.DataFrame:
        """Up/down/not-significant counts per contrast."""
        return summarize_decisions(
            decide_tests(
                self.moderated,
                adjust_method=self.config.fdr_method,
                significance_threshold=self.config.significance_threshold,
            )
        )

    def assemble(self, contrast: str, annotation: pd.DataFrame | None = None) -> pd.DataFrame:
        """Result table of one contrast with annotation and log-CPM columns."""
        if contrast not in self.tables:
            raise ConfigurationError(
                f"Unknown contrast '{contrast}'. Available: {list(self.tables)}"
            )
        return assemble_results(self.tables[contrast], annotation, self.expression)


def prepare_metadata(
    counts: CountMatrix,
    metadata: pd.DataFrame | None,
    config: PipelineConfig,
) -> pd.DataFrame:
    """
    Resolve and align sample metadata for a run.

    Uses, in order: the metadata argument, the metadata carried by ``counts``,
    or factors derived from sample ids with ``config.sample_pattern``.
    """
    if metadata is None:
        if len(counts.sample_metadata.columns):
            metadata = counts.sample_metadata
        elif config.sample_pattern:
            metadata = derive_factors(counts.sample_ids, config.sample_pattern)
        else:
            raise ConfigurationError(
                "No sample metadata: pass a metadata table or set sample_pattern"
            )

    metadata = align_metadata(metadata, counts.sample_ids, reorder=config.reorder_metadata)

    if config.group_factors:
        metadata = metadata.copy()
        metadata["group"] = make_group(metadata, config.group_factors)
    return metadata


def run_pipeline(
    counts: CountMatrix,
    metadata: pd.DataFrame | None,
    config: PipelineConfig | Mapping[str, Any],
) -> PipelineResult:
    """
    Run the full analysis.

    Args:
        counts: Raw count matrix (genes × samples).
        metadata: Per-sample covariates indexed by sample id, or None to use
            the counts' own metadata or ``config.sample_pattern``.
        config: PipelineConfig or a plain mapping accepted by
            ``PipelineConfig.from_dict``.

    Returns:
        PipelineResult with one ranked table per contrast.

    Raises:
        ConfigurationError: Invalid design, contrasts or settings (raised
            before normalization starts).
        DataAlignmentError: Metadata does not correspond to count columns.
        NumericDegeneracyError: The voom trend cannot be fitted.
    """
    if not isinstance(config, PipelineConfig):
        config = PipelineConfig.from_dict(dict(config))
    else:
        config.validate()

    metadata = prepare_metadata(counts, metadata, config)
    counts = counts.with_metadata(metadata)

    design = config.design_builder().build(metadata)
    contrast_matrix = make_contrasts(design, config.contrasts)

    normalization = calc_norm_factors(
        counts,
        method=config.normalization.method,
        logratio_trim=config.normalization.logratio_trim,
        sum_trim=config.normalization.sum_trim,
    )

    filtered = ExpressionFilter(
        min_cpm=config.expression_cutoff,
        norm_factors=normalization,
    ).apply(counts)

    expression = voom(filtered, normalization, design, span=config.voom_span)
    fit = lm_fit(expression, design)
    contrast_fit = contrasts_fit(fit, contrast_matrix)
    moderated = e_bayes(contrast_fit, proportion=config.eb_proportion)

    tables = {
        name: top_table(
            moderated,
            coef=name,
            adjust_method=config.fdr_method,
            significance_threshold=config.significance_threshold,
        )
        for name in moderated.contrast_names
    }

    logger.info(
        f"Pipeline complete: {filtered.n_features}/{counts.n_features} genes tested "
        f"across {len(tables)} contrast(s)"
    )

    return PipelineResult(
        config=config,
        normalization=normalization,
        filtered=filtered,
        design=design,
        contrast_matrix=contrast_matrix,
        expression=expression,
        fit=fit,
        contrasts=contrast_fit,
        moderated=moderated,
        tables=tables,
    )
