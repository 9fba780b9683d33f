"""
Error taxonomy for the differential expression pipeline.

Four failure classes, each with a distinct propagation policy:

    ConfigurationError
        Singular design, malformed contrast, undefined normalization factor,
        invalid configuration values. Fatal, raised before any downstream
        stage runs.
    DataAlignmentError
        Sample identifiers of the count matrix and the sample metadata do not
        correspond. Detected by explicit identifier comparison. Fatal.
    UnderdeterminedFitWarning
        A gene has too few informative samples for the design. The gene is
        marked not-tested and excluded from multiple-testing correction; the
        run continues for every other gene.
    NumericDegeneracyError
        The shared mean-variance trend cannot be fitted or yields non-finite
        weights. Fatal for the whole run since every gene shares the trend.
"""

from __future__ import annotations

__all__ = [
    'ConfigurationError',
    'DataAlignmentError',
    'UnderdeterminedFitWarning',
    'NumericDegeneracyError',
]


class ConfigurationError(ValueError):
    """Invalid model specification or pipeline configuration."""


class DataAlignmentError(ValueError):
    """Sample identifiers of counts and metadata do not correspond."""


class UnderdeterminedFitWarning(UserWarning):
    """One or more genes have no residual degrees of freedom."""


class NumericDegeneracyError(ArithmeticError):
    """Mean-variance trend fit failed or produced unusable weights."""
