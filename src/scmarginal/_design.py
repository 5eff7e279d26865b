"""Design-matrix construction shared by both model classes.

The parametric part of a formula is expanded with patsy (categorical
covariates become treatment-coded dummy columns, the intercept is
always present).  Smooth terms become a statsmodels
:class:`~statsmodels.gam.api.BSplines` basis: cubic, centred so it is
identifiable next to the intercept, one block per smoothed covariate.

``te()`` smoothers have no tensor-product counterpart in statsmodels;
their covariates enter as separate additive B-spline blocks.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from statsmodels.gam.api import BSplines

from ._config import DISCRETE_GRID_SIZE
from .formula import SmoothSpec

DEFAULT_BASIS_DIM = 10
SPLINE_DEGREE = 3


def linear_design(data: pd.DataFrame, rhs: str) -> pd.DataFrame:
    """Expand the parametric right-hand side *rhs* over *data*."""
    return patsy.dmatrix(rhs, data, return_type="dataframe", NA_action="raise")


def smooth_variables(smooths: Sequence[SmoothSpec]) -> list[tuple[str, int]]:
    """Distinct ``(covariate, basis_dim)`` pairs, first occurrence wins."""
    out: dict[str, int] = {}
    for spec in smooths:
        k = spec.basis_dim if spec.basis_dim is not None else DEFAULT_BASIS_DIM
        for var in spec.variables:
            out.setdefault(var, k)
    return list(out.items())


def discretise(x: np.ndarray, n_grid: int = DISCRETE_GRID_SIZE) -> np.ndarray:
    """Snap every column of *x* with more than *n_grid* unique values
    onto an evenly spaced grid of *n_grid* points."""
    out = np.array(x, dtype=float, copy=True)
    for j in range(out.shape[1]):
        col = out[:, j]
        if np.unique(col).size <= n_grid:
            continue
        lo, hi = col.min(), col.max()
        step = (hi - lo) / (n_grid - 1)
        out[:, j] = lo + np.round((col - lo) / step) * step
    return out


def spline_basis(
    data: pd.DataFrame,
    smooths: Sequence[SmoothSpec],
    discrete: bool = False,
) -> BSplines:
    """Build the B-spline smoother for *smooths* over *data*."""
    pairs = smooth_variables(smooths)
    names = [name for name, _ in pairs]
    x = data[names].to_numpy(dtype=float)
    if discrete:
        x = discretise(x)
    return BSplines(
        x,
        df=[k for _, k in pairs],
        degree=[SPLINE_DEGREE] * len(pairs),
        constraints="center",
        variable_names=names,
    )


def full_design(
    data: pd.DataFrame,
    rhs: str,
    smooths: Sequence[SmoothSpec] = (),
) -> np.ndarray:
    """Linear design with unpenalised spline columns appended."""
    X = linear_design(data, rhs).to_numpy()
    if not smooths:
        return X
    basis = spline_basis(data, smooths).basis
    return np.column_stack([X, np.asarray(basis)])


def profile_nb_alpha(y: np.ndarray, mu: np.ndarray) -> float:
    """Estimate the NB2 dispersion given fitted means *mu*.

    Fits an intercept-only ``sm.NegativeBinomial`` with ``log(mu)`` as
    offset, so the mean structure of an existing fit is kept and only
    the dispersion is estimated.

    Raises:
        FloatingPointError: If the estimate is not finite.
    """
    offset = np.log(np.asarray(mu, dtype=float))
    nb = sm.NegativeBinomial(y, np.ones((len(y), 1)), offset=offset).fit(
        disp=0, maxiter=200
    )
    alpha = float(np.exp(nb.lnalpha))
    if not np.isfinite(alpha):
        raise FloatingPointError("NB dispersion estimate is not finite.")
    return alpha


__all__ = [
    "DEFAULT_BASIS_DIM",
    "discretise",
    "full_design",
    "linear_design",
    "profile_nb_alpha",
    "smooth_variables",
    "spline_basis",
]
