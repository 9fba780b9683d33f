"""Tests for the CountMatrix container."""

import numpy as np
import pandas as pd
import pytest

from voomde.core.countmatrix import CountMatrix
from voomde.core.errors import DataAlignmentError


def _matrix(data, metadata=None):
    data = np.asarray(data)
    return CountMatrix(
        data=data,
        feature_ids=pd.Index([f"g{i}" for i in range(data.shape[0])]),
        sample_ids=pd.Index([f"s{j}" for j in range(data.shape[1])]),
        sample_metadata=metadata,
    )


class TestConstruction:

    def test_library_sizes_are_column_sums(self):
        m = _matrix([[10, 20], [0, 3]])
        np.testing.assert_array_equal(m.library_sizes, [10, 23])
        assert m.shape == (2, 2)

    def test_integral_floats_are_stored_as_integers(self):
        m = _matrix(np.array([[1.0, 2.0], [3.0, 4.0]]))
        assert np.issubdtype(m.data.dtype, np.integer)

    def test_non_integer_counts_rejected(self):
        with pytest.raises(ValueError, match="integers"):
            _matrix(np.array([[1.5, 2.0], [3.0, 4.0]]))

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            _matrix([[1, -2], [3, 4]])

    def test_nan_counts_rejected(self):
        with pytest.raises(ValueError):
            _matrix(np.array([[1.0, np.nan], [3.0, 4.0]]))

    def test_duplicated_feature_ids_rejected(self):
        with pytest.raises(ValueError, match="unique"):
            CountMatrix(
                data=np.ones((2, 2), dtype=int),
                feature_ids=pd.Index(["g", "g"]),
                sample_ids=pd.Index(["a", "b"]),
            )

    def test_shape_mismatch_rejected(self):
        with pytest.raises(ValueError):
            CountMatrix(
                data=np.ones((2, 3), dtype=int),
                feature_ids=pd.Index(["g1", "g2"]),
                sample_ids=pd.Index(["a", "b"]),
            )

    def test_wrong_types_rejected(self):
        with pytest.raises(TypeError):
            CountMatrix(
                data=[[1, 2]],
                feature_ids=pd.Index(["g1"]),
                sample_ids=pd.Index(["a", "b"]),
            )

    def test_misordered_metadata_rejected(self):
        metadata = pd.DataFrame({"group": ["x", "y"]}, index=pd.Index(["s1", "s0"]))
        with pytest.raises(DataAlignmentError):
            _matrix([[1, 2], [3, 4]], metadata=metadata)


class TestSubsetting:

    def test_select_features_preserves_sample_order(self, counts):
        mask = np.zeros(counts.n_features, dtype=bool)
        mask[[3, 1, 7]] = True
        subset = counts.select_features(mask)

        assert subset.n_features == 3
        assert subset.sample_ids.equals(counts.sample_ids)
        assert subset.sample_metadata.equals(counts.sample_metadata)
        np.testing.assert_array_equal(subset.data, counts.data[mask])

    def test_select_features_does_not_modify_input(self, counts):
        before = counts.data.copy()
        counts.select_features(counts.data.sum(axis=1) > 100)
        np.testing.assert_array_equal(counts.data, before)

    def test_select_samples_carries_metadata(self, counts):
        mask = counts.sample_metadata["factor1"].to_numpy() == "A"
        subset = counts.select_samples(mask)

        assert subset.n_samples == 8
        assert subset.sample_metadata.index.equals(subset.sample_ids)
        assert set(subset.sample_metadata["factor1"]) == {"A"}

    def test_mask_length_checked(self, counts):
        with pytest.raises(ValueError):
            counts.select_features(np.ones(3, dtype=bool))

    def test_with_metadata_requires_alignment(self, counts):
        reversed_meta = counts.sample_metadata.iloc[::-1]
        with pytest.raises(DataAlignmentError):
            counts.with_metadata(reversed_meta)

    def test_to_frame(self, counts):
        df = counts.to_frame()
        assert df.shape == counts.shape
        assert df.columns.equals(counts.sample_ids)
