"""
Core data structures shared by every pipeline stage.

1. CountMatrix: gene × sample read counts with sample covariates
2. Transform: abstract base class for immutable matrix transformations
3. GeneFlag: per-gene status bits for undefined fits
4. Error taxonomy: ConfigurationError, DataAlignmentError,
   UnderdeterminedFitWarning, NumericDegeneracyError
"""

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import (
    ConfigurationError,
    DataAlignmentError,
    NumericDegeneracyError,
    UnderdeterminedFitWarning,
)
from voomde.core.flags import GeneFlag
from voomde.core.transform import Transform

__all__ = [
    'CountMatrix',
    'Transform',
    'GeneFlag',
    'ConfigurationError',
    'DataAlignmentError',
    'NumericDegeneracyError',
    'UnderdeterminedFitWarning',
]
