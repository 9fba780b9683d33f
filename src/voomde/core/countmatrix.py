"""
Core data structure for RNA-seq read-count matrices.

CountMatrix couples the integer count table with its identifiers and the
per-sample covariates used to build the design matrix.

Biological Context:
    Read-count matrices are the starting point of every differential
    expression analysis:
    - Rows = genes (stable identifiers such as versioned Ensembl IDs)
    - Columns = samples (libraries)
    - Values = number of reads assigned to the gene in that library

    A silent mismatch between count columns and sample covariates corrupts
    every downstream statistic without raising an error, so the container
    refuses to exist in a misaligned state.

Engineering Design:
    - Immutable: subsetting returns new instances
    - Validated: identifiers unique, counts non-negative integers
    - Order-preserving: row removal never touches column order

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from voomde.core.countmatrix import CountMatrix
    >>>
    >>> counts = CountMatrix(
    ...     data=np.array([[10, 20], [0, 3]]),
    ...     feature_ids=pd.Index(["ENSG001.1", "ENSG002.4"]),
    ...     sample_ids=pd.Index(["A_C_1", "A_D_1"]),
    ... )
    >>> counts.library_sizes
    array([10, 23])
    >>> expressed = counts.select_features(counts.data.sum(axis=1) > 5)
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from voomde.core.errors import DataAlignmentError

__all__ = ['CountMatrix']


class CountMatrix:
    """
    Immutable container for a gene × sample read-count matrix.

    Attributes:
        data: Integer count matrix (genes × samples)
        feature_ids: Row identifiers (gene IDs)
        sample_ids: Column identifiers (sample IDs)
        sample_metadata: Per-sample covariates indexed by sample_ids

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids (same ids, same order)
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: Optional[pd.DataFrame] = None,
    ):
        """
        Initialize CountMatrix with validation.

        Args:
            data: Count matrix (genes × samples). Floating arrays are accepted
                when every value is integral and are stored as int64.
            feature_ids: Unique gene identifiers
            sample_ids: Unique sample identifiers
            sample_metadata: Optional covariates; index must equal sample_ids.
                Defaults to an empty frame indexed by sample_ids.

        Raises:
            TypeError: If argument types are wrong
            ValueError: If shapes disagree, identifiers repeat, or values are
                not non-negative integers
            DataAlignmentError: If sample_metadata is not indexed by
                sample_ids in the same order
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if sample_metadata is None:
            sample_metadata = pd.DataFrame(index=sample_ids)
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if not feature_ids.is_unique:
            dupes = feature_ids[feature_ids.duplicated()].unique().tolist()
            raise ValueError(f"feature_ids must be unique; duplicated: {dupes[:5]}")
        if not sample_ids.is_unique:
            dupes = sample_ids[sample_ids.duplicated()].unique().tolist()
            raise ValueError(f"sample_ids must be unique; duplicated: {dupes[:5]}")

        if not np.issubdtype(data.dtype, np.integer):
            if not np.issubdtype(data.dtype, np.floating):
                raise TypeError(f"data must be numeric, got dtype {data.dtype}")
            if not np.all(np.isfinite(data)):
                raise ValueError("Counts contain NaN or infinite values")
            if not np.all(data == np.round(data)):
                raise ValueError("Counts must be integers")
            data = data.astype(np.int64)
        if data.size and data.min() < 0:
            raise ValueError("Counts must be non-negative")

        if not sample_metadata.index.equals(sample_ids):
            raise DataAlignmentError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        self._data = data
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata

    @property
    def data(self) -> np.ndarray:
        """Count matrix (genes × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def shape(self) -> tuple[int, int]:
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def library_sizes(self) -> np.ndarray:
        """Total counts per sample (column sums)."""
        return self._data.sum(axis=0)

    def select_features(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset genes (rows), preserving sample order and metadata.

        Args:
            mask: Boolean array/Series of length n_features

        Returns:
            New CountMatrix with the selected genes

        Raises:
            ValueError: If mask length doesn't match n_features
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return CountMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def select_samples(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset samples (columns), carrying the matching metadata rows.

        Args:
            mask: Boolean array/Series of length n_samples

        Returns:
            New CountMatrix with the selected samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        kept = self._sample_ids[mask]
        return CountMatrix(
            data=self._data[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=kept,
            sample_metadata=self._sample_metadata.loc[kept],
        )

    def with_metadata(self, sample_metadata: pd.DataFrame) -> CountMatrix:
        """
        Return a copy carrying new sample metadata.

        The metadata must already be aligned; use
        ``voomde.io.metadata.align_metadata`` to align by identifier first.
        """
        return CountMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata,
        )

    def to_frame(self) -> pd.DataFrame:
        """Counts as a DataFrame (genes × samples)."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def copy(self, deep: bool = True) -> CountMatrix:
        if deep:
            return CountMatrix(
                data=self._data.copy(),
                feature_ids=self._feature_ids.copy(),
                sample_ids=self._sample_ids.copy(),
                sample_metadata=self._sample_metadata.copy(),
            )
        return CountMatrix(
            data=self._data,
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"CountMatrix({self.n_features} genes × {self.n_samples} samples)"
        return (
            f"CountMatrix({self.n_features} genes × {self.n_samples} samples)\n"
            f"  Genes: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )
