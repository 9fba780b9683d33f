"""
Per-gene status flags for linear model fits.

Mirrors the bitwise provenance idea used for per-value quality tracking, but
at gene granularity: a gene whose fit is undefined carries one or more flags
and is reported as not-tested instead of receiving fabricated statistics.

Examples:
    >>> from voomde.core.flags import GeneFlag
    >>> flag = GeneFlag.UNDERDETERMINED | GeneFlag.NOT_TESTED
    >>> bool(flag & GeneFlag.NOT_TESTED)
    True
"""

from __future__ import annotations

from enum import IntFlag

import numpy as np

__all__ = ['GeneFlag', 'is_tested']


class GeneFlag(IntFlag):
    """
    Bitwise flags describing why a gene could not be tested.

    Attributes:
        OK: Fit is fully defined (0)
        UNDERDETERMINED: Fewer informative samples than design columns,
            residual df <= 0 (1)
        SINGULAR_WEIGHTED_DESIGN: Weighted design loses rank for this gene,
            e.g. every sample of one group carries zero weight (2)
        NOT_TESTED: Excluded from testing and from the multiple-testing N (4)
    """

    OK = 0
    UNDERDETERMINED = 1
    SINGULAR_WEIGHTED_DESIGN = 2
    NOT_TESTED = 4


def is_tested(flags: np.ndarray) -> np.ndarray:
    """Boolean mask of genes whose flags are all clear."""
    return np.asarray(flags) == GeneFlag.OK
