"""Smooth-model backends.

Each backend implements :class:`SmootherBackend`: given the working
covariate table (with the feature's counts attached under the
predictor name), a :class:`~scmarginal.formula.CompiledFormula` and a
:class:`~scmarginal.families.Family`, it fits the smooth additive
model and returns a :class:`SmoothFit`.

Two backends exist:

* ``"standard"`` — :class:`~._gam.GamSmoother` on the full-resolution
  smooth covariates, penalty weight chosen by information criterion.
* ``"large_data"`` — the same smoother on covariates snapped to a
  fixed grid (``DISCRETE_GRID_SIZE`` points), which keeps the B-spline
  basis evaluation and the penalty search cheap on many observations.

:func:`resolve_smoother` maps the compiled formula's backend choice to
a cached instance.  The per-feature fitter never branches on backend
names itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ..families import Family
    from ..formula import CompiledFormula


@dataclass(frozen=True)
class SmoothFit:
    """Outcome of a smooth-model fit.

    Attributes:
        results: statsmodels results object (``GLMGamResults`` or
            ``GLMResults``).
        mean: Fitted mean per observation.
        sigma: Dispersion per observation (constant for this model).
        edf: Realised effective degrees of freedom.
        aic: Akaike information criterion.
    """

    results: Any
    mean: np.ndarray
    sigma: np.ndarray
    edf: float
    aic: float


@runtime_checkable
class SmootherBackend(Protocol):
    """Interface that every smooth-model backend must implement."""

    @property
    def name(self) -> str: ...

    def fit(
        self,
        data: pd.DataFrame,
        predictor: str,
        formula: CompiledFormula,
        family: Family,
    ) -> SmoothFit:
        """Fit the smooth additive model for one feature.

        Args:
            data: Working covariate table including the predictor
                column.
            predictor: Name of the response column in *data*.
            formula: Mean formula compiled for this backend.
            family: Family of the feature.

        Returns:
            The fitted model and its aligned parameter vectors.
        """
        ...


# One instance per backend name.
_BACKEND_CACHE: dict[str, SmootherBackend] = {}


def resolve_smoother(large_data: bool = False) -> SmootherBackend:
    """Return the smooth-model backend for the compiled formula.

    Args:
        large_data: ``True`` for the large-data backend.  The formula
            compiler only sets this when the formula has a smoother.
    """
    name = "large_data" if large_data else "standard"
    if name in _BACKEND_CACHE:
        return _BACKEND_CACHE[name]

    from ._gam import GamSmoother

    backend: SmootherBackend = GamSmoother(discrete=large_data)
    _BACKEND_CACHE[name] = backend
    return backend


__all__ = ["SmoothFit", "SmootherBackend", "resolve_smoother"]
