"""
voomde - Differential Expression for RNA-seq Counts

A batch pipeline that finds differentially expressed genes from read counts:
TMM normalization, expression filtering, voom precision weights, weighted
linear models, contrasts, empirical Bayes moderation and FDR control.
"""

__version__ = "0.1.0"

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import (
    ConfigurationError,
    DataAlignmentError,
    NumericDegeneracyError,
    UnderdeterminedFitWarning,
)
from voomde.core.flags import GeneFlag
from voomde.config import PipelineConfig, load_config
from voomde.io.loaders import load_annotation, load_count_table
from voomde.pipeline import PipelineResult, run_pipeline

__all__ = [
    "CountMatrix",
    "GeneFlag",
    "ConfigurationError",
    "DataAlignmentError",
    "NumericDegeneracyError",
    "UnderdeterminedFitWarning",
    "PipelineConfig",
    "load_config",
    "load_annotation",
    "load_count_table",
    "PipelineResult",
    "run_pipeline",
]
