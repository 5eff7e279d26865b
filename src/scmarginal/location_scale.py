"""Distributional (location-scale-shape) regression.

:class:`LocationScaleModel` fits separate linear predictors for the
mean (``mu``) and the dispersion (``sigma``) of a count or continuous
outcome, plus an intercept-only zero-inflation parameter (``nu``) for
ZINBI.  It is a ``statsmodels`` ``GenericLikelihoodModel``: the
likelihood is written out per family and statsmodels does the
optimisation, the numerical score/Hessian and the information
criteria.

Parameterisations and links (gamlss conventions)
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

=======  ==============================  =========  ===========  =========
Target   Density                         mu link    sigma link   nu link
=======  ==============================  =========  ===========  =========
BI       Bernoulli(mu)                   logit      —            —
PO       Poisson(mu)                     log        —            —
NO       Normal(mu, sd = sigma)          identity   log          —
NBI      NB, Var = mu + sigma·mu²        log        log          —
ZIP      P(0) = sigma + (1−sigma)·PO(0)  log        logit        —
ZINBI    P(0) = nu + (1−nu)·NBI(0)       log        log          logit
=======  ==============================  =========  ===========  =========

For ZIP the gamlss ``sigma`` *is* the zero-inflation probability, so
the dispersion formula drives the inflation there.

Smooth terms enter the mean and dispersion designs as unpenalised
B-spline columns of the requested basis dimension.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.base.model import GenericLikelihoodModel

from ._design import full_design
from .families import DistributionalTarget, Family
from .formula import CompiledFormula

logger = logging.getLogger(__name__)


def _zero_inflated(
    log_base: np.ndarray,
    log_base_zero: np.ndarray,
    pi: np.ndarray,
    is_zero: np.ndarray,
) -> np.ndarray:
    """Mix extra zero mass *pi* into a base log-density."""
    zero = np.logaddexp(np.log(pi), np.log1p(-pi) + log_base_zero)
    return np.where(is_zero, zero, np.log1p(-pi) + log_base)


class LocationScaleModel(GenericLikelihoodModel):
    """Location-scale-shape regression for one feature.

    Parameters
    ----------
    endog : array_like
        Response of shape ``(n,)``.
    exog : array_like
        Mean design ``(n, k_mu)``, intercept included.
    exog_sigma : array_like
        Dispersion design ``(n, k_sigma)``, intercept included.
        Ignored for targets without ``sigma``.
    target : DistributionalTarget
        Distribution to fit.
    """

    def __init__(
        self,
        endog: Any,
        exog: Any,
        exog_sigma: Any,
        target: DistributionalTarget,
        **kwds: Any,
    ) -> None:
        self.target = target
        self.exog_sigma = np.asarray(exog_sigma, dtype=float)
        self.k_mu = np.asarray(exog).shape[1]
        self.k_sigma = self.exog_sigma.shape[1] if target.has_sigma else 0
        self.k_nu = 1 if target.has_nu else 0
        extra = [f"sigma_{j}" for j in range(self.k_sigma)]
        if self.k_nu:
            extra.append("nu_0")
        super().__init__(endog, exog, extra_params_names=extra or None, **kwds)

    # ---- Parameter mapping -----------------------------------------

    def parameter_vectors(self, params: np.ndarray) -> dict[str, np.ndarray]:
        """Map a coefficient vector to per-observation ``mu``/``sigma``/``nu``."""
        params = np.asarray(params, dtype=float)
        beta = params[: self.k_mu]
        eta_mu = self.exog @ beta
        name = self.target.name
        if name == "NO":
            mu = eta_mu
        elif name == "BI":
            mu = special.expit(eta_mu)
        else:
            mu = np.exp(eta_mu)
        out = {"mu": mu}
        if self.k_sigma:
            gamma = params[self.k_mu : self.k_mu + self.k_sigma]
            eta_sigma = self.exog_sigma @ gamma
            out["sigma"] = special.expit(eta_sigma) if name == "ZIP" else np.exp(eta_sigma)
        if self.k_nu:
            out["nu"] = np.full(mu.shape, special.expit(params[-1]))
        return out

    # ---- Likelihood -------------------------------------------------

    def loglikeobs(self, params: np.ndarray) -> np.ndarray:
        y = self.endog
        p = self.parameter_vectors(params)
        mu = p["mu"]
        name = self.target.name
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            if name == "BI":
                return stats.binom.logpmf(y, 1, mu)
            if name == "PO":
                return stats.poisson.logpmf(y, mu)
            if name == "NO":
                return stats.norm.logpdf(y, loc=mu, scale=p["sigma"])
            if name == "ZIP":
                return _zero_inflated(
                    stats.poisson.logpmf(y, mu), -mu, p["sigma"], y == 0
                )
            size = 1.0 / p["sigma"]
            prob = 1.0 / (1.0 + p["sigma"] * mu)
            log_nb = stats.nbinom.logpmf(y, size, prob)
            if name == "NBI":
                return log_nb
            if name == "ZINBI":
                return _zero_inflated(log_nb, size * np.log(prob), p["nu"], y == 0)
        raise ValueError(f"Unsupported distributional target {name!r}.")

    def loglike(self, params: np.ndarray) -> float:
        return float(np.sum(self.loglikeobs(params)))

    # ---- Starting values --------------------------------------------

    def start_values(self) -> np.ndarray:
        """Intercept-only moment estimates; all slopes start at zero."""
        y = np.asarray(self.endog, dtype=float)
        ybar = max(float(np.mean(y)), 1e-3)
        name = self.target.name
        start = np.zeros(self.k_mu + self.k_sigma + self.k_nu)
        intercept = _intercept_column(self.exog)
        if name == "NO":
            mu0 = float(np.mean(y))
        elif name == "BI":
            mu0 = float(special.logit(np.clip(np.mean(y), 1e-3, 1 - 1e-3)))
        else:
            mu0 = float(np.log(ybar))
        if intercept is not None:
            start[intercept] = mu0
        if self.k_sigma:
            if name == "NO":
                sigma0 = float(np.log(max(np.std(y), 1e-3)))
            elif name == "ZIP":
                sigma0 = float(special.logit(0.1))
            else:
                var = float(np.var(y))
                sigma0 = float(np.log(max((var - ybar) / ybar**2, 1e-2)))
            s_int = _intercept_column(self.exog_sigma)
            if s_int is not None:
                start[self.k_mu + s_int] = sigma0
        if self.k_nu:
            start[-1] = float(special.logit(0.1))
        return start

    def fit(self, start_params: Any = None, method: str = "bfgs", maxiter: int = 500, **kwargs: Any) -> Any:
        if start_params is None:
            start_params = self.start_values()
        return super().fit(
            start_params=start_params, method=method, maxiter=maxiter, disp=0, **kwargs
        )


def _intercept_column(X: np.ndarray) -> int | None:
    """Index of the first constant, non-zero column of *X*, if any."""
    X = np.asarray(X)
    for j in range(X.shape[1]):
        col = X[:, j]
        if np.all(col == col[0]) and col[0] != 0:
            return j
    return None


@dataclass(frozen=True)
class DistributionalFit:
    """Outcome of a distributional-model fit.

    Attributes:
        results: statsmodels ``GenericLikelihoodModelResults``.
        mean: Fitted ``mu`` per observation.
        sigma: Fitted ``sigma`` per observation (ones for targets
            without a dispersion parameter).
        aic: Akaike information criterion.
    """

    results: Any
    mean: np.ndarray
    sigma: np.ndarray
    aic: float


def fit_location_scale(
    data: pd.DataFrame,
    predictor: str,
    mu_formula: CompiledFormula,
    sigma_formula: CompiledFormula,
    family: Family,
) -> DistributionalFit:
    """Fit the distributional model for one feature.

    Args:
        data: Working covariate table including the predictor column.
        predictor: Name of the response column.
        mu_formula: Compiled mean formula.
        sigma_formula: Compiled dispersion formula.
        family: Family of the feature.

    Returns:
        The fitted model and its aligned parameter vectors.
    """
    y = data[predictor].to_numpy(dtype=float)
    X_mu = full_design(data, mu_formula.linear, mu_formula.smooths)
    X_sigma = full_design(data, sigma_formula.linear, sigma_formula.smooths)
    model = LocationScaleModel(y, X_mu, X_sigma, family.distributional_target)
    results = model.fit()
    vectors = model.parameter_vectors(results.params)
    mean = vectors["mu"]
    sigma = vectors.get("sigma", np.ones_like(mean))
    return DistributionalFit(
        results=results,
        mean=np.asarray(mean, dtype=float),
        sigma=np.asarray(sigma, dtype=float),
        aic=float(results.aic),
    )


__all__ = ["DistributionalFit", "LocationScaleModel", "fit_location_scale"]
