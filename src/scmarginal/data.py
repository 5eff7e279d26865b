"""Input bundle consumed by :func:`~scmarginal.fit_marginal`."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from ._compat import CountsLike, DataFrameLike, _ensure_count_frame, _ensure_pandas_df


@dataclass(frozen=True)
class MarginalData:
    """Covariate table, count matrix and pre-filtered feature set.

    Construct through :meth:`from_arrays`, which validates and aligns
    the pieces.  The bundle is read-only for the duration of a fitting
    call and is broadcast unchanged to every worker.

    Attributes:
        covariates: One row per observation; row labels are the
            observation identifiers.
        counts: Observations × features, rows aligned to *covariates*.
        filtered_features: Features expressed in too few observations
            to be fitted.
    """

    covariates: pd.DataFrame
    counts: pd.DataFrame
    filtered_features: frozenset[str] = field(default_factory=frozenset)

    @property
    def feature_names(self) -> list[str]:
        return [str(c) for c in self.counts.columns]

    @property
    def n_features(self) -> int:
        return self.counts.shape[1]

    @classmethod
    def from_arrays(
        cls,
        covariates: DataFrameLike,
        counts: CountsLike,
        *,
        feature_names: Sequence[str] | None = None,
        filtered_features: Iterable[str] | None = None,
        min_nonzero: int | None = None,
    ) -> MarginalData:
        """Validate and bundle the inputs.

        Args:
            covariates: Covariate table (pandas or Polars).
            counts: Count matrix (DataFrame, ndarray or sparse).
            feature_names: Column labels for array count matrices.
            filtered_features: Explicit pre-filtered feature ids.
            min_nonzero: When given, features with at most this many
                non-zero observations are added to the filtered set.

        Raises:
            ValueError: On duplicated observation ids, unknown filtered
                features, or any count-matrix problem reported by
                :func:`~scmarginal._compat._ensure_count_frame`.
        """
        cov = _ensure_pandas_df(covariates, name="covariates")
        if cov.index.has_duplicates:
            raise ValueError("Covariate table row labels must be unique.")
        # Observation ids are carried as strings so that results from
        # every worker share one index type.
        cov = cov.copy()
        cov.index = cov.index.map(str)
        if isinstance(counts, pd.DataFrame):
            counts = counts.set_axis(counts.index.map(str), axis=0)
        frame = _ensure_count_frame(counts, cov.index, feature_names)
        frame.columns = [str(c) for c in frame.columns]

        filtered = set(str(f) for f in (filtered_features or ()))
        unknown = filtered.difference(frame.columns)
        if unknown:
            raise ValueError(
                f"Filtered features not in the count matrix: {sorted(unknown)[:5]}"
            )
        if min_nonzero is not None:
            nonzero = np.count_nonzero(frame.to_numpy(), axis=0)
            filtered.update(frame.columns[nonzero <= min_nonzero])
        return cls(cov, frame, frozenset(filtered))


__all__ = ["MarginalData"]
