"""EDF ~ Gini acceleration.

Fitting a smoother with a large basis dimension (``k ≥ 200``) is
expensive, and most features do not need anywhere near that much
flexibility.  When acceleration is enabled on a large call the work is
split in two passes:

1. A uniform random subsample of ``EDF_SUBSET_SIZE`` features is fitted
   at the requested basis dimension.  Each successful fit contributes
   one pair (Gini coefficient of ``log1p(counts)``, realised EDF).
2. A simple linear regression ``EDF ~ Gini`` is fitted on those pairs.
   Every remaining feature is refitted with the basis dimension of its
   first smoother set to the *upper* ``EDF_CONFIDENCE`` confidence
   bound of the regression's fitted value at that feature's Gini
   coefficient.  Erring high keeps the smoother from underfitting.

The Gini coefficient is cheap (one sort per feature) and tracks how
concentrated a feature's expression is; concentrated features tend to
need wigglier smoothers.

Notes
~~~~~
* The predicted dimension is rounded and floored at ``MIN_BASIS_DIM``
  so the cubic B-spline basis stays constructible.
* Subsample features without a realised EDF (failed smooth fits,
  fast-path fits) are left out of the regression.  With fewer than
  ``EDF_MIN_PAIRS`` pairs left the model is not fitted and the
  remaining features run at the requested dimension.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ._config import (
    EDF_CONFIDENCE,
    EDF_MIN_BASIS_DIM,
    EDF_MIN_PAIRS,
    EDF_SUBSET_SIZE,
    MIN_BASIS_DIM,
)
from ._results import FitResult

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Gini coefficient
# ------------------------------------------------------------------ #


def gini(x: Any, weights: Any = None) -> float:
    """Area-based Gini coefficient of *x*.

    Sort *x* ascending, accumulate the weight fraction ``p`` and the
    weighted-value fraction ``nu`` (normalised to end at 1), and return
    ``Σ nu[i]·p[i−1] − Σ nu[i−1]·p[i]``.

    Args:
        x: Non-negative values.
        weights: Observation weights; uniform when ``None``.

    Returns:
        The coefficient in ``[0, 1)``.  A constant vector gives 0, and
        so does an all-zero vector (no mass to distribute).

    Examples:
        >>> gini([1, 1, 1, 1])
        0.0
        >>> round(gini([0, 0, 0, 1]), 2)
        0.75
    """
    x = np.asarray(x, dtype=float).ravel()
    w = np.ones_like(x) if weights is None else np.asarray(weights, dtype=float).ravel()
    if x.shape != w.shape:
        raise ValueError("x and weights must have the same length.")
    if x.size == 0:
        raise ValueError("gini() needs at least one value.")
    if np.ptp(x) == 0:
        return 0.0
    order = np.argsort(x, kind="stable")
    x, w = x[order], w[order] / w.sum()
    p = np.cumsum(w)
    nu = np.cumsum(w * x)
    if nu[-1] == 0:
        return 0.0
    nu = nu / nu[-1]
    return float(np.sum(nu[1:] * p[:-1]) - np.sum(nu[:-1] * p[1:]))


def feature_gini(counts: pd.DataFrame, features: Sequence[str]) -> pd.Series:
    """Gini coefficient of ``log1p(counts)`` for each of *features*."""
    return pd.Series(
        [gini(np.log1p(counts[f].to_numpy(dtype=float))) for f in features],
        index=list(features),
        dtype=float,
    )


# ------------------------------------------------------------------ #
# Activation and subsampling
# ------------------------------------------------------------------ #


def should_accelerate(n_features: int, basis_dim: int, edf_flexible: bool) -> bool:
    """Whether the two-pass scheme runs for this call."""
    return bool(edf_flexible) and n_features > EDF_SUBSET_SIZE and basis_dim >= EDF_MIN_BASIS_DIM


def split_features(
    features: Sequence[str],
    random_state: int | np.random.Generator | None = None,
) -> tuple[list[str], list[str]]:
    """Draw the Gini subsample.

    Returns:
        ``(subset, remaining)``: disjoint, covering *features*, both in
        input order.
    """
    rng = np.random.default_rng(random_state)
    n = len(features)
    picked = np.sort(rng.choice(n, size=min(EDF_SUBSET_SIZE, n), replace=False))
    chosen = set(picked.tolist())
    subset = [features[i] for i in picked]
    remaining = [f for i, f in enumerate(features) if i not in chosen]
    return subset, remaining


# ------------------------------------------------------------------ #
# EDF ~ Gini regression
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class EdfGiniModel:
    """Linear relation between Gini coefficient and realised EDF.

    Attributes:
        results: statsmodels ``RegressionResults`` of ``edf ~ gini``.
        confidence: Two-sided confidence level whose upper bound is
            used as the prediction.
        n_pairs: Number of (Gini, EDF) pairs the model was fitted on.
    """

    results: Any
    confidence: float = EDF_CONFIDENCE
    n_pairs: int = 0

    @classmethod
    def fit(
        cls,
        gini_values: Sequence[float],
        edf_values: Sequence[float],
        confidence: float = EDF_CONFIDENCE,
    ) -> EdfGiniModel:
        """Fit ``edf ~ gini`` by ordinary least squares.

        Raises:
            ValueError: On mismatched lengths or fewer than
                ``EDF_MIN_PAIRS`` pairs.
        """
        g = np.asarray(gini_values, dtype=float)
        e = np.asarray(edf_values, dtype=float)
        if g.shape != e.shape:
            raise ValueError("gini_values and edf_values must have the same length.")
        if g.size < EDF_MIN_PAIRS:
            raise ValueError(
                f"Need at least {EDF_MIN_PAIRS} (gini, edf) pairs, got {g.size}."
            )
        X = sm.add_constant(g, has_constant="add")
        results = sm.OLS(e, X).fit()
        return cls(results=results, confidence=confidence, n_pairs=int(g.size))

    @property
    def intercept(self) -> float:
        return float(self.results.params[0])

    @property
    def slope(self) -> float:
        return float(self.results.params[1])

    def predict_upper(self, gini_values: Sequence[float]) -> np.ndarray:
        """Upper confidence bound of the fitted EDF at *gini_values*."""
        g = np.atleast_1d(np.asarray(gini_values, dtype=float))
        X = sm.add_constant(g, has_constant="add")
        frame = self.results.get_prediction(X).summary_frame(alpha=1 - self.confidence)
        return frame["mean_ci_upper"].to_numpy(dtype=float)

    def predict_basis_dim(self, gini_values: Sequence[float]) -> np.ndarray:
        """Rounded upper-bound EDF, floored at ``MIN_BASIS_DIM``."""
        upper = np.round(self.predict_upper(gini_values))
        return np.maximum(upper, MIN_BASIS_DIM).astype(int)


def learn_overrides(
    subset_results: Mapping[str, FitResult],
    counts: pd.DataFrame,
    remaining: Sequence[str],
) -> tuple[EdfGiniModel | None, dict[str, int]]:
    """Fit the EDF model on the subsample and predict for *remaining*.

    Returns:
        ``(model, overrides)``.  When too few usable pairs exist the
        model is ``None`` and *overrides* is empty.
    """
    usable = [f for f, r in subset_results.items() if r.edf is not None and np.isfinite(r.edf)]
    if len(usable) < EDF_MIN_PAIRS:
        logger.warning(
            "Only %d of %d subsample features produced an EDF; fitting the "
            "remaining features at the requested basis dimension.",
            len(usable),
            len(subset_results),
        )
        return None, {}

    model = EdfGiniModel.fit(
        feature_gini(counts, usable).to_numpy(),
        [subset_results[f].edf for f in usable],
    )
    logger.info(
        "EDF ~ Gini fitted on %d features: edf = %.3f + %.3f * gini",
        model.n_pairs,
        model.intercept,
        model.slope,
    )
    if not remaining:
        return model, {}
    dims = model.predict_basis_dim(feature_gini(counts, remaining).to_numpy())
    return model, dict(zip(remaining, dims.tolist()))


__all__ = [
    "EdfGiniModel",
    "feature_gini",
    "gini",
    "learn_overrides",
    "should_accelerate",
    "split_features",
]
