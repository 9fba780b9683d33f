"""
Readers for count tables, gene annotation and sample sheets.

Biological Context:
    Count tables come from an upstream quantification step (featureCounts,
    HTSeq, salmon + tximport) as delimited text:
    - Rows = genes, identified by versioned Ensembl IDs (ENSG00000000003.15)
    - Columns = samples, whose identifiers often encode the experimental
      factors (A_C_1 = factor1 A, factor2 C, replicate 1)
    - Values = integer read counts

    Annotation tables map the versioned gene ID to symbols, biotypes and
    coordinates, and are merged into the final result table.

Engineering Design:
    - Strict: duplicated identifiers, missing or non-integer counts raise
      instead of being coerced, since every later stage trusts the matrix
    - Tab-delimited by default, delimiter configurable

Examples:
    >>> from voomde.io.loaders import load_count_table, load_annotation
    >>> counts = load_count_table("counts.tsv")
    >>> annotation = load_annotation("genes.tsv", id_column="gene_id_version")
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from voomde.core.countmatrix import CountMatrix

logger = logging.getLogger(__name__)

__all__ = ['load_count_table', 'load_annotation', 'load_sample_sheet']


def _read_table(path: Path | str, sep: str, **kwargs) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")

    try:
        df = pd.read_csv(path, sep=sep, **kwargs)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"File is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e

    if df.empty:
        raise ValueError(f"File contains no data: {path}")
    return df


def load_count_table(path: Path | str, sep: str = "\t") -> CountMatrix:
    """
    Load a gene × sample count table.

    Expected format (tab-delimited)::

        gene_id             A_C_1   A_C_2   A_D_1
        ENSG00000000003.15  612     598     1310
        ENSG00000000005.6   0       1       0

    Args:
        path: Path to the count table.
        sep: Field delimiter.

    Returns:
        CountMatrix with empty sample metadata.

    Raises:
        FileNotFoundError: If path does not exist.
        ValueError: If the table is empty, identifiers repeat, or values are
            missing, non-numeric, non-integer or negative.
    """
    df = _read_table(path, sep, index_col=0)

    if df.index.duplicated().any():
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated gene identifiers in {path}: {dupes[:5]}")
    if df.columns.duplicated().any():
        dupes = df.columns[df.columns.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated sample identifiers in {path}: {dupes[:5]}")

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric count columns in {path}: {non_numeric[:5]}")

    data = df.to_numpy(dtype=np.float64)
    if np.isnan(data).any():
        rows, cols = np.nonzero(np.isnan(data))
        examples = [f"{df.index[i]}/{df.columns[j]}" for i, j in zip(rows[:5], cols[:5])]
        raise ValueError(f"Missing counts in {path} ({len(rows)} cells), e.g. {examples}")

    matrix = CountMatrix(
        data=data,
        feature_ids=pd.Index(df.index.astype(str)),
        sample_ids=pd.Index(df.columns.astype(str)),
    )
    logger.info(f"Loaded {matrix.n_features} genes × {matrix.n_samples} samples from {path}")
    return matrix


def load_annotation(path: Path | str, id_column: str = "gene_id_version", sep: str = "\t") -> pd.DataFrame:
    """
    Load a gene annotation table indexed by versioned gene identifier.

    Raises:
        ValueError: If the id column is absent or contains duplicates.
    """
    df = _read_table(path, sep)
    if id_column not in df.columns:
        raise ValueError(
            f"Annotation column '{id_column}' not found in {path}. Available: {list(df.columns)}"
        )
    if df[id_column].duplicated().any():
        dupes = df.loc[df[id_column].duplicated(), id_column].unique().tolist()
        raise ValueError(f"Duplicated annotation identifiers in {path}: {dupes[:5]}")

    df = df.set_index(id_column)
    df.index = df.index.astype(str)
    logger.info(f"Loaded annotation for {len(df)} genes ({df.shape[1]} fields) from {path}")
    return df


def load_sample_sheet(path: Path | str, sample_column: str, sep: str = "\t") -> pd.DataFrame:
    """
    Load per-sample covariates indexed by sample identifier.

    Row order is whatever the file has; use ``align_metadata`` to check it
    against the count matrix.
    """
    df = _read_table(path, sep)
    if sample_column not in df.columns:
        raise ValueError(
            f"Sample column '{sample_column}' not found in {path}. Available: {list(df.columns)}"
        )
    if df[sample_column].duplicated().any():
        dupes = df.loc[df[sample_column].duplicated(), sample_column].unique().tolist()
        raise ValueError(f"Duplicated sample identifiers in {path}: {dupes[:5]}")

    df = df.set_index(sample_column)
    df.index = df.index.astype(str)
    return df
