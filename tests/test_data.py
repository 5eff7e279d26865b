"""Tests for input bundling and the compatibility layer."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scmarginal._compat import _ensure_count_frame, _ensure_pandas_df
from scmarginal.data import MarginalData


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def covariates():
    return pd.DataFrame(
        {"cell_type": ["A", "A", "B", "B"], "batch": ["x", "y", "x", "y"]},
        index=["c1", "c2", "c3", "c4"],
    )


class TestEnsurePandasDf:
    def test_pandas_passthrough(self, covariates):
        assert _ensure_pandas_df(covariates) is covariates

    def test_rejects_invalid_type(self):
        with pytest.raises(TypeError, match="'covariates'"):
            _ensure_pandas_df([1, 2], name="covariates")

    def test_polars_converted(self):
        pl = pytest.importorskip("polars")
        result = _ensure_pandas_df(pl.DataFrame({"a": [1, 2]}))
        assert isinstance(result, pd.DataFrame)
        assert result["a"].tolist() == [1, 2]


class TestEnsureCountFrame:
    def test_ndarray_labelled(self, covariates):
        frame = _ensure_count_frame(np.zeros((4, 2)), covariates.index)
        assert list(frame.columns) == ["feature_0", "feature_1"]
        assert frame.index.equals(covariates.index)

    def test_sparse_densified(self, covariates):
        mat = sparse.csr_matrix(np.eye(4))
        frame = _ensure_count_frame(mat, covariates.index, ["a", "b", "c", "d"])
        np.testing.assert_allclose(frame.to_numpy(), np.eye(4))

    def test_dataframe_reordered(self, covariates):
        counts = pd.DataFrame({"g": [1, 2, 3, 4]}, index=["c4", "c3", "c2", "c1"])
        frame = _ensure_count_frame(counts, covariates.index)
        assert frame["g"].tolist() == [4, 3, 2, 1]

    def test_row_mismatch(self, covariates):
        with pytest.raises(ValueError, match="has 3 rows"):
            _ensure_count_frame(np.zeros((3, 1)), covariates.index)

    def test_negative_counts(self, covariates):
        with pytest.raises(ValueError, match="non-negative"):
            _ensure_count_frame(-np.ones((4, 1)), covariates.index)

    def test_duplicate_features(self, covariates):
        with pytest.raises(ValueError, match="unique"):
            _ensure_count_frame(np.zeros((4, 2)), covariates.index, ["g", "g"])

    def test_wrong_name_count(self, covariates):
        with pytest.raises(ValueError, match="feature names"):
            _ensure_count_frame(np.zeros((4, 2)), covariates.index, ["g"])


class TestMarginalData:
    def test_from_arrays(self, covariates, rng):
        counts = rng.poisson(3, size=(4, 3))
        data = MarginalData.from_arrays(covariates, counts, feature_names=["a", "b", "c"])
        assert data.feature_names == ["a", "b", "c"]
        assert data.n_features == 3
        assert data.filtered_features == frozenset()

    def test_integer_index_becomes_string(self, rng):
        cov = pd.DataFrame({"cell_type": ["A", "B"]}, index=[10, 11])
        counts = pd.DataFrame({"g": [1, 2]}, index=[11, 10])
        data = MarginalData.from_arrays(cov, counts)
        assert list(data.covariates.index) == ["10", "11"]
        assert data.counts["g"].tolist() == [2, 1]

    def test_duplicate_row_ids(self):
        cov = pd.DataFrame({"x": [1, 2]}, index=["a", "a"])
        with pytest.raises(ValueError, match="unique"):
            MarginalData.from_arrays(cov, np.zeros((2, 1)))

    def test_unknown_filtered_feature(self, covariates):
        with pytest.raises(ValueError, match="not in the count matrix"):
            MarginalData.from_arrays(
                covariates, np.zeros((4, 1)), feature_names=["g"], filtered_features=["h"]
            )

    def test_min_nonzero_filters(self, covariates):
        counts = np.array([[0, 1], [0, 2], [1, 3], [0, 4]])
        data = MarginalData.from_arrays(
            covariates, counts, feature_names=["sparse", "dense"], min_nonzero=1
        )
        assert data.filtered_features == frozenset({"sparse"})
