"""
Statistical core of the differential expression pipeline.

Exports, in pipeline order:
- Normalization factors (TMM, upper quartile) and CPM
- Design matrix construction from covariate specifications
- Voom transformation with precision weights
- Per-gene weighted linear models and contrasts
- Empirical Bayes moderation
- Multiple testing correction and ranked result tables
"""

from .normalization import (
    NormalizationMethod,
    NormalizationFactors,
    calc_norm_factors,
    cpm,
)
from .design_matrix import (
    CovariateSpec,
    DesignBuilder,
    DesignMatrix,
)
from .voom import ExpressionWeights, voom
from .linear_model import GeneFit, lm_fit
from .contrasts import ContrastFit, contrasts_fit, make_contrasts, parse_contrast
from .empirical_bayes import (
    e_bayes,
    fit_f_dist,
    squeeze_var,
    tmixture_vector,
    trigamma_inverse,
)
from .multiple_testing import adjust_pvalues, estimate_pi0
from .results import decide_tests, summarize_decisions, top_table

__all__ = [
    "NormalizationMethod",
    "NormalizationFactors",
    "calc_norm_factors",
    "cpm",
    "CovariateSpec",
    "DesignBuilder",
    "DesignMatrix",
    "ExpressionWeights",
    "voom",
    "GeneFit",
    "lm_fit",
    "ContrastFit",
    "contrasts_fit",
    "make_contrasts",
    "parse_contrast",
    "e_bayes",
    "fit_f_dist",
    "squeeze_var",
    "tmixture_vector",
    "trigamma_inverse",
    "adjust_pvalues",
    "estimate_pi0",
    "decide_tests",
    "summarize_decisions",
    "top_table",
]
