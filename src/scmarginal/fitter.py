"""Per-feature fitter.

:func:`fit_feature` turns one column of the count matrix into a
:class:`~scmarginal._results.FitResult`.  It is a module-level function
taking only picklable arguments so every parallel backend can ship it
to a worker unchanged.

Control flow::

    pre-filtered? ──yes──▶ skip record (warning, no fit)
         │no
    EDF override → first smoother's k
         │
    attach counts under the predictor name
         │
    cell filter (all-categorical formulas, when enabled)
         │
    validate family ──invalid──▶ InvalidFamilyError (aborts the call)
         │
    mean formula is "group" or "group + batch"?
         ├─yes─▶ fast path: intercept-only NB per split
         └─no──▶ general path:
                   smooth fit ("gam")
                   distributional fit ("gamlss") when zero-inflated
                     or the dispersion formula is non-trivial
                   selection:
                     SmoothOnly ──gamlss ok──▶ DistributionalCandidate
                     DistributionalCandidate ──sanity + AIC──▶ Accepted
                     any failed check ──▶ back to the smooth fit

Failure isolation
~~~~~~~~~~~~~~~~~
Every fitting primitive runs through :meth:`FeatureLog.run`, which
records warnings and exceptions against a source tag.  Anything that
still escapes is caught at the :func:`fit_feature` boundary and turned
into a fit-absent result carrying an error entry, so one feature never
takes down the batch.  :class:`~scmarginal.families.InvalidFamilyError`
is the one exception that propagates: an unsupported family aborts the
whole call.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ._backends import SmoothFit, resolve_smoother
from ._config import AIC_MARGIN, FitOptions
from ._context import FeatureLog
from ._results import FitResult
from .diagnostics import check_distributional_fit
from .families import Family, InvalidFamilyError, resolve_family
from .filters import filter_cells
from .formula import Formula, Intercept, Linear, compile_formula, parse_formula
from .location_scale import DistributionalFit, fit_location_scale

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Fast path
# ------------------------------------------------------------------ #


def fast_path_keys(mu_formula: Formula, options: FitOptions) -> list[str] | None:
    """Grouping columns when *mu_formula* is a canonical categorical
    formula, else ``None``.

    The two canonical formulas are ``group`` and ``group + batch``
    (intercept implicit), with the column names taken from *options*.
    """
    terms = tuple(t for t in mu_formula.terms if not isinstance(t, Intercept))
    group = Linear(options.group_covariate)
    batch = Linear(options.batch_covariate)
    if terms == (group,):
        return [options.group_covariate]
    if terms == (group, batch):
        return [options.group_covariate, options.batch_covariate]
    return None


def _intercept_nb(y: np.ndarray) -> tuple[float, float, Any]:
    """Intercept-only NB2 maximum likelihood fit.

    Returns:
        ``(mean, alpha, results)``.

    Raises:
        FloatingPointError: If either estimate is not finite.
    """
    results = sm.NegativeBinomial(y, np.ones((len(y), 1))).fit(disp=0, maxiter=200)
    mean = float(np.exp(results.params[0]))
    alpha = float(np.exp(results.lnalpha))
    if not (np.isfinite(mean) and np.isfinite(alpha)):
        raise FloatingPointError("Intercept-only NB fit returned non-finite estimates.")
    return mean, alpha, results


def _fit_fast_path(
    data: pd.DataFrame,
    predictor: str,
    keys: list[str],
    log: FeatureLog,
) -> tuple[dict[Any, Any], np.ndarray, np.ndarray]:
    """Fit every category (× batch) split independently.

    Split-level estimates are written back by row position, so the
    returned vectors follow the row order of *data* whatever order the
    splits come in.  A failed split keeps its observed values as the
    mean with dispersion zero.
    """
    y = data[predictor].to_numpy(dtype=float)
    mean = np.full(len(y), np.nan)
    sigma = np.full(len(y), np.nan)
    fits: dict[Any, Any] = {}

    grouped = data.groupby(keys, observed=True, sort=False)
    for key, positions in grouped.indices.items():
        outcome = log.run("glm.nb", _intercept_nb, y[positions])
        if outcome is None:
            mean[positions] = y[positions]
            sigma[positions] = 0.0
            log.add(
                "glm.nb",
                "warning",
                f"{log.feature}: closed-form fit failed for split {key}; "
                "observed values used as the mean.",
            )
            continue
        mu_hat, alpha, results = outcome
        mean[positions] = mu_hat
        sigma[positions] = alpha
        fits[key] = results
    return fits, mean, sigma


# ------------------------------------------------------------------ #
# Selection
# ------------------------------------------------------------------ #


def select_model(
    family: Family,
    smooth: SmoothFit | None,
    distributional: DistributionalFit | None,
    observed: np.ndarray,
    log: FeatureLog,
) -> str | None:
    """Choose between the smooth and the distributional fit.

    Returns:
        ``"gamlss"`` when the distributional fit is accepted, ``"gam"``
        when the smooth fit is used, ``None`` when neither is usable.
    """
    fallback = "gam" if smooth is not None else None
    if distributional is None:
        return fallback

    sanity = check_distributional_fit(
        distributional.mean, distributional.sigma, observed, family
    )
    if not sanity.ok:
        log.add(
            "fit_marginal",
            "warning",
            f"{log.feature} gamlss returns abnormal fitting values!",
        )
        logger.debug("%s: rejected distributional fit (%s)", log.feature, sanity.reasons())
        return fallback

    if smooth is not None and smooth.aic - distributional.aic < AIC_MARGIN:
        return "gam"
    return "gamlss"


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def fit_feature(
    feature: str,
    family: str | Family,
    covariates: pd.DataFrame,
    counts: pd.DataFrame,
    mu_formula: str | Formula,
    sigma_formula: str | Formula,
    predictor: str,
    filtered_features: Collection[str],
    options: FitOptions,
    edf: float | None = None,
) -> FitResult:
    """Fit the marginal model of one feature.

    Args:
        feature: Column of *counts* to fit.
        family: Family label or :class:`Family`.
        covariates: Shared covariate table, rows aligned to *counts*.
        counts: Shared count matrix.
        mu_formula: Mean formula.
        sigma_formula: Dispersion formula.
        predictor: Name the feature's counts are attached under.
        filtered_features: Features to skip.
        options: Resolved per-call flags.
        edf: Basis-dimension override for the first smoother of the
            mean formula (predicted by the EDF ~ Gini model).

    Returns:
        The feature's :class:`FitResult`.

    Raises:
        InvalidFamilyError: If *family* is not supported.
    """
    log = FeatureLog(feature)
    if feature in filtered_features:
        log.add("fit_marginal", "warning", f"{feature} is expressed in too few cells.")
        return FitResult(feature=feature, log=log.entries(), skipped=True)

    try:
        return _fit(
            feature, family, covariates, counts, mu_formula, sigma_formula,
            predictor, options, edf, log,
        )
    except InvalidFamilyError:
        raise
    except Exception as exc:  # noqa: BLE001
        log.add("fit_marginal", "error", f"{type(exc).__name__}: {exc}")
        logger.warning("Fitting %s failed: %s", feature, exc)
        return FitResult(feature=feature, log=log.entries())


def _fit(
    feature: str,
    family: str | Family,
    covariates: pd.DataFrame,
    counts: pd.DataFrame,
    mu_formula: str | Formula,
    sigma_formula: str | Formula,
    predictor: str,
    options: FitOptions,
    edf: float | None,
    log: FeatureLog,
) -> FitResult:
    mu = parse_formula(mu_formula, predictor)
    sigma = parse_formula(sigma_formula, predictor)
    if edf is not None:
        mu = mu.with_basis_dim(int(round(edf)))

    data = covariates.copy()
    data[predictor] = counts[feature].to_numpy()

    removed: tuple[str, ...] | None = None
    if options.filter_cells:
        filtered = filter_cells(data, predictor, mu, sigma)
        data, mu, sigma = filtered.data, filtered.mu_formula, filtered.sigma_formula
        removed = filtered.removed_cells

    family = resolve_family(family)
    logger.debug("Fitting %s as %s: %s", feature, family.value, mu.render(predictor))

    keys = fast_path_keys(mu, options)
    if keys is not None:
        fits, mean, dispersion = _fit_fast_path(data, predictor, keys, log)
        if options.simplify:
            for results in fits.values():
                log.run("fit_marginal", results.remove_data)
        return _package(
            feature, family, fits, "glm.nb", data.index, mean, dispersion,
            removed, None, log, options,
        )

    mu_compiled = compile_formula(mu, options.usebam)
    sigma_compiled = compile_formula(sigma)
    smoother = resolve_smoother(mu_compiled.large_data)

    smooth = log.run("gam", smoother.fit, data, predictor, mu_compiled, family, slot=0)

    distributional: DistributionalFit | None = None
    if family.is_zero_inflated or not sigma.is_intercept_only:
        distributional = log.run(
            "gamlss", fit_location_scale, data, predictor, mu_compiled,
            sigma_compiled, family, slot=1,
        )
        if distributional is None and not sigma.is_intercept_only:
            log.add(
                "fit_marginal",
                "warning",
                f"{feature}: the distributional fit failed; the dispersion "
                "formula is ignored by the smooth fit.",
            )

    observed = data[predictor].to_numpy(dtype=float)
    chosen = select_model(family, smooth, distributional, observed, log)
    edf_realised = smooth.edf if smooth is not None else None

    if chosen is None:
        logger.warning("No usable fit for %s", feature)
        return _package(
            feature, family, None, None, data.index, None, None,
            removed, edf_realised, log, options,
        )

    selected = distributional if chosen == "gamlss" else smooth
    if options.simplify:
        log.run("fit_marginal", selected.results.remove_data)
    return _package(
        feature, family, selected.results, chosen, data.index, selected.mean,
        selected.sigma, removed, edf_realised, log, options,
    )


def _package(
    feature: str,
    family: Family,
    fit: Any,
    model_type: str | None,
    index: pd.Index,
    mean: np.ndarray | None,
    dispersion: np.ndarray | None,
    removed: tuple[str, ...] | None,
    edf: float | None,
    log: FeatureLog,
    options: FitOptions,
) -> FitResult:
    def series(values: np.ndarray | None) -> pd.Series | None:
        if values is None:
            return None
        return pd.Series(np.asarray(values, dtype=float), index=index)

    zero = None if mean is None else pd.Series(0.0, index=index)
    return FitResult(
        feature=feature,
        family=family,
        fit=fit,
        model_type=model_type,
        mean=series(mean),
        dispersion=series(dispersion),
        zero=zero,
        removed_cells=removed,
        edf=edf,
        log=log.entries() if options.trace else None,
        time=log.times() if options.trace else None,
    )


__all__ = ["fast_path_keys", "fit_feature", "select_model"]
