"""statsmodels GAM backend.

Formulas without smoothers are fitted as a plain ``sm.GLM``.  Formulas
with smoothers are fitted as a penalised ``GLMGam`` over a cubic
B-spline basis:

1. The model is fitted once at unit penalty weight, then the penalty
   weight is chosen by ``GLMGam.select_penweight`` under the criterion
   carried in the compiled smoother keywords.
2. The model is refitted by PIRLS at that weight.
3. For the negative-binomial families the mean structure is first
   fitted under Poisson, the NB2 dispersion α is profiled from those
   means, and the model is refitted under ``NegativeBinomial(α)``
   at the same penalty weight.  statsmodels GLM families need α
   fixed up front; this is the same calibrate-then-fit order used for
   the closed-form NB fit.

Warnings raised by statsmodels (convergence, perfect separation,
overflow) are deliberately *not* suppressed here: the per-feature
fitter captures them into the feature's diagnostic log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.gam.api import GLMGam

from .._design import linear_design, profile_nb_alpha, spline_basis
from . import SmoothFit

if TYPE_CHECKING:
    from ..families import Family
    from ..formula import CompiledFormula


def _realised_edf(results: Any) -> float:
    """Total effective degrees of freedom of a fitted model.

    ``GLMGamResults`` reports one EDF per coefficient; an unpenalised
    GLM spends one degree of freedom per coefficient.
    """
    edf = getattr(results, "edf", None)
    if edf is None:
        return float(results.df_model + 1)
    return float(np.sum(edf))


@dataclass(frozen=True)
class GamSmoother:
    """Penalised B-spline GAM via ``statsmodels.gam``.

    Attributes:
        discrete: Snap smooth covariates onto a fixed grid before
            building the basis (large-data backend).
    """

    discrete: bool = False

    @property
    def name(self) -> str:
        return "large_data" if self.discrete else "standard"

    def fit(
        self,
        data: pd.DataFrame,
        predictor: str,
        formula: CompiledFormula,
        family: Family,
    ) -> SmoothFit:
        y = data[predictor].to_numpy(dtype=float)
        X = linear_design(data, formula.linear)
        if not formula.has_smooth:
            return self._fit_glm(y, X, family)

        keywords = formula.smooths[0].keywords
        maxiter = int(keywords.get("maxiter", 1000))
        smoother = spline_basis(data, formula.smooths, discrete=self.discrete)
        n_smooth = len(smoother.smoothers)

        first = sm.families.Poisson() if family.is_negative_binomial else family.smooth_target()
        search = GLMGam(y, exog=X, smoother=smoother, alpha=np.ones(n_smooth), family=first)
        # select_penweight reads the scale of a fitted model.
        search.fit(maxiter=maxiter)
        penweight, _, _ = search.select_penweight(
            criterion=keywords.get("criterion", "aic"), method="minimize"
        )
        results = GLMGam(y, exog=X, smoother=smoother, alpha=penweight, family=first).fit(
            maxiter=maxiter
        )

        nb_alpha: float | None = None
        if family.is_negative_binomial:
            nb_alpha = profile_nb_alpha(y, results.fittedvalues)
            results = GLMGam(
                y,
                exog=X,
                smoother=smoother,
                alpha=penweight,
                family=family.smooth_target(nb_alpha),
            ).fit(maxiter=maxiter)
        return self._package(results, family, nb_alpha)

    def _fit_glm(self, y: np.ndarray, X: pd.DataFrame, family: Family) -> SmoothFit:
        if family.is_negative_binomial:
            poisson = sm.GLM(y, X, family=sm.families.Poisson()).fit()
            nb_alpha = profile_nb_alpha(y, poisson.fittedvalues)
            results = sm.GLM(y, X, family=family.smooth_target(nb_alpha)).fit()
            return self._package(results, family, nb_alpha)
        results = sm.GLM(y, X, family=family.smooth_target()).fit()
        return self._package(results, family, None)

    @staticmethod
    def _package(results: Any, family: Family, nb_alpha: float | None) -> SmoothFit:
        mean = np.asarray(results.fittedvalues, dtype=float)
        if nb_alpha is not None:
            dispersion = nb_alpha
        elif family.value == "gaussian":
            dispersion = float(np.sqrt(results.scale))
        else:
            # Poisson / binomial: GLM scale is fixed at 1.
            dispersion = 1.0
        return SmoothFit(
            results=results,
            mean=mean,
            sigma=np.full(mean.shape, dispersion, dtype=float),
            edf=_realised_edf(results),
            aic=float(results.aic),
        )


__all__ = ["GamSmoother"]
