"""
Sample metadata: factor derivation and alignment with the count matrix.

The alignment between count-matrix columns and metadata rows is the single
most safety-critical invariant of the pipeline. A metadata table sorted
differently from the count columns produces a design matrix that assigns
samples to the wrong groups, and every downstream statistic is silently
wrong. Alignment is therefore checked by identifier, never by position.

Examples:
    >>> from voomde.io.metadata import derive_factors, make_group, align_metadata
    >>>
    >>> # Factors encoded in sample ids: A_C_1 -> factor1=A, factor2=C
    >>> meta = derive_factors(counts.sample_ids, r"(?P<factor1>[AB])_(?P<factor2>[CD])_\\d+")
    >>> meta["group"] = make_group(meta, ["factor1", "factor2"])
    >>> meta["group"].iloc[0]
    'A.C'
    >>> counts = counts.with_metadata(align_metadata(meta, counts.sample_ids))
"""

from __future__ import annotations

import logging
import re
from typing import List, Sequence, Union

import pandas as pd

from voomde.core.errors import ConfigurationError, DataAlignmentError

logger = logging.getLogger(__name__)

__all__ = ['derive_factors', 'make_group', 'align_metadata']


def derive_factors(
    sample_ids: Union[pd.Index, Sequence[str]],
    pattern: str,
) -> pd.DataFrame:
    """
    Extract experimental factors from sample identifiers.

    Args:
        sample_ids: Sample identifiers.
        pattern: Regular expression with named groups; each group becomes a
            column. The whole identifier must match.

    Returns:
        DataFrame indexed by sample id with one column per named group.

    Raises:
        ConfigurationError: If the pattern has no named groups or any
            identifier does not match.
    """
    compiled = re.compile(pattern)
    if not compiled.groupindex:
        raise ConfigurationError(f"Pattern '{pattern}' defines no named groups")

    ids = [str(s) for s in sample_ids]
    rows = []
    unmatched = []
    for sid in ids:
        match = compiled.fullmatch(sid)
        if match is None:
            unmatched.append(sid)
        else:
            rows.append(match.groupdict())

    if unmatched:
        raise ConfigurationError(
            f"{len(unmatched)} sample id(s) do not match '{pattern}': {unmatched[:5]}"
        )

    return pd.DataFrame(rows, index=pd.Index(ids), columns=list(compiled.groupindex))


def make_group(metadata: pd.DataFrame, factors: List[str], sep: str = ".") -> pd.Series:
    """
    Combine factor columns into one group label per sample.

    ``factor1=A, factor2=C`` gives ``"A.C"``, which a no-intercept design
    turns into the column ``groupA.C``.
    """
    missing = [f for f in factors if f not in metadata.columns]
    if missing:
        raise ConfigurationError(f"Factors not found in metadata: {missing}")
    if not factors:
        raise ConfigurationError("At least one factor is required to form groups")

    labels = metadata[factors].astype(str).agg(sep.join, axis=1)
    return labels.rename("group")


def align_metadata(
    metadata: pd.DataFrame,
    sample_ids: pd.Index,
    reorder: bool = False,
) -> pd.DataFrame:
    """
    Verify that metadata rows correspond to count-matrix columns.

    Args:
        metadata: Per-sample covariates indexed by sample id.
        sample_ids: Count-matrix column identifiers, in column order.
        reorder: Reindex metadata by identifier when it holds the same
            samples in a different order. Without it an order mismatch is
            an error.

    Returns:
        Metadata whose index equals ``sample_ids``.

    Raises:
        DataAlignmentError: On missing, extra or duplicated identifiers, or
            on an order mismatch when ``reorder`` is False.
    """
    # Compared as strings; the result carries the caller's own index
    target_ids = pd.Index(sample_ids)
    meta_ids = pd.Index(metadata.index.astype(str))
    sample_ids = pd.Index(target_ids.astype(str))

    if not meta_ids.is_unique:
        dupes = meta_ids[meta_ids.duplicated()].unique().tolist()
        raise DataAlignmentError(f"Duplicated sample identifiers in metadata: {dupes[:5]}")

    missing = sample_ids.difference(meta_ids).tolist()
    extra = meta_ids.difference(sample_ids).tolist()
    if missing or extra:
        raise DataAlignmentError(
            f"Sample identifiers differ between counts and metadata. "
            f"Missing from metadata: {missing[:5]}; not in counts: {extra[:5]}"
        )

    metadata = metadata.copy()
    metadata.index = meta_ids

    if meta_ids.equals(sample_ids):
        metadata.index = target_ids
        return metadata

    if not reorder:
        first = next(i for i, (a, b) in enumerate(zip(meta_ids, sample_ids)) if a != b)
        raise DataAlignmentError(
            f"Metadata rows are in a different order than the count columns "
            f"(first difference at position {first}: '{meta_ids[first]}' vs "
            f"'{sample_ids[first]}'). Pass reorder=True to reindex by identifier."
        )

    logger.info(f"Reordered {len(sample_ids)} metadata rows to match count-matrix columns")
    metadata = metadata.loc[sample_ids]
    metadata.index = target_ids
    return metadata
