"""Input compatibility layer for covariate tables and count matrices.

Internally every covariate table is a ``pandas.DataFrame`` and every
count matrix is a dense ``pandas.DataFrame`` of observations × features.
This module converts the other shapes callers commonly hold at the
boundary so that the fitting code never branches on input type:

* Polars ``DataFrame`` / ``LazyFrame`` covariate tables (optional
  dependency, detected at import time).
* NumPy arrays and SciPy sparse matrices as count matrices, labelled
  with the covariate table's row index and caller-supplied feature
  names.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, TypeAlias

import numpy as np
import pandas as pd
from scipy import sparse

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

CountsLike: TypeAlias = "pd.DataFrame | np.ndarray | sparse.spmatrix | sparse.sparray"

# Polars is optional; detect it at import time.
try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "input") -> pd.DataFrame:
    """Convert *obj* to a :class:`pandas.DataFrame` if necessary.

    Accepted types:
        * ``pandas.DataFrame`` — returned as-is.
        * ``polars.DataFrame`` — converted via ``.to_pandas()``.
        * ``polars.LazyFrame`` — collected then converted.

    Raises:
        TypeError: If *obj* is not a recognised DataFrame type.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return obj.collect().to_pandas()
        if isinstance(obj, pl.DataFrame):
            return obj.to_pandas()

    raise TypeError(
        f"'{name}' must be a pandas DataFrame"
        + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )


def _ensure_count_frame(
    counts: CountsLike,
    index: pd.Index,
    feature_names: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Return *counts* as an observations × features DataFrame.

    Args:
        counts: Count matrix with one row per observation.
        index: Row labels of the covariate table; a DataFrame input
            must already carry them, array inputs receive them.
        feature_names: Column labels for array inputs.  Defaults to
            ``"feature_0"``, ``"feature_1"`` ...

    Raises:
        ValueError: On a row-count or row-label mismatch, negative
            counts, or a wrong number of feature names.
        TypeError: If *counts* is not a supported matrix type.
    """
    if isinstance(counts, pd.DataFrame):
        frame = counts
        if not frame.index.equals(index):
            if set(frame.index) != set(index):
                raise ValueError(
                    "Count matrix rows do not match the covariate table rows."
                )
            frame = frame.loc[index]
    else:
        if sparse.issparse(counts):
            values = np.asarray(counts.todense())
        elif isinstance(counts, np.ndarray):
            values = counts
        else:
            raise TypeError(
                "Count matrix must be a pandas DataFrame, NumPy array or SciPy "
                f"sparse matrix, got {type(counts).__name__}."
            )
        if values.ndim != 2:
            raise ValueError(f"Count matrix must be 2-D, got shape {values.shape}.")
        if values.shape[0] != len(index):
            raise ValueError(
                f"Count matrix has {values.shape[0]} rows but the covariate "
                f"table has {len(index)}."
            )
        if feature_names is None:
            feature_names = [f"feature_{j}" for j in range(values.shape[1])]
        if len(feature_names) != values.shape[1]:
            raise ValueError(
                f"Got {len(feature_names)} feature names for "
                f"{values.shape[1]} count-matrix columns."
            )
        frame = pd.DataFrame(values, index=index, columns=list(feature_names))

    if frame.columns.has_duplicates:
        raise ValueError("Feature names in the count matrix must be unique.")
    if (frame.to_numpy() < 0).any():
        raise ValueError("Count matrix must be non-negative.")
    return frame


__all__ = ["CountsLike", "DataFrameLike"]
