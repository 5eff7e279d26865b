"""Cell filter for all-categorical mean formulas.

When every covariate of the mean formula is categorical, a category
whose total count for the feature is exactly zero carries no
information about the feature's mean and makes the fit degenerate
(a log-link coefficient running off to −∞).  For each covariate:

* no zero categories → nothing to do;
* zero categories covering **all but one** level → the covariate
  cannot discriminate at all and is dropped from the mean formula
  (and from the dispersion formula where it appears there);
* otherwise → the observations in the zero categories are removed.

Removals from all covariates are pooled into one set of observation
ids and dropped from the working table in one step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import pandas as pd
from pandas.api.types import is_bool_dtype, is_numeric_dtype

from .formula import Formula

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CellFilterResult:
    """Reduced table and formulas after cell filtering.

    Attributes:
        data: Working covariate table (rows possibly removed).
        mu_formula: Mean formula (covariates possibly dropped).
        sigma_formula: Dispersion formula (same drops where present).
        removed_cells: Removed observation ids, or ``None``.
        dropped_covariates: Covariates removed from the formulas.
    """

    data: pd.DataFrame
    mu_formula: Formula
    sigma_formula: Formula
    removed_cells: tuple[str, ...] | None = None
    dropped_covariates: tuple[str, ...] = ()


def is_categorical(series: pd.Series) -> bool:
    """``True`` for categorical, string/object and boolean columns."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return True
    if is_bool_dtype(series.dtype):
        return True
    return not is_numeric_dtype(series.dtype)


def filter_applies(data: pd.DataFrame, mu_formula: Formula) -> bool:
    """Whether the filter applies: at least one covariate, all categorical."""
    covariates = mu_formula.covariates
    if not covariates:
        return False
    return all(name in data.columns and is_categorical(data[name]) for name in covariates)


def filter_cells(
    data: pd.DataFrame,
    predictor: str,
    mu_formula: Formula,
    sigma_formula: Formula,
) -> CellFilterResult:
    """Remove degenerate categories for one feature.

    Args:
        data: Working covariate table with the feature's values under
            *predictor*.
        predictor: Name of the response column.
        mu_formula: Mean formula.
        sigma_formula: Dispersion formula.

    Returns:
        The reduced table and formulas.  When the filter does not
        apply, the inputs are returned unchanged.
    """
    if not filter_applies(data, mu_formula):
        return CellFilterResult(data, mu_formula, sigma_formula)

    remove: list[str] = []
    drop: list[str] = []
    for name in mu_formula.covariates:
        totals = data.groupby(data[name], observed=True, sort=False)[predictor].sum()
        zero_levels = totals.index[totals == 0]
        if len(zero_levels) == 0:
            continue
        if len(zero_levels) == data[name].nunique() - 1:
            drop.append(name)
            continue
        mask = data[name].isin(zero_levels)
        remove.extend(data.index[mask])

    removed: tuple[str, ...] | None = None
    if remove:
        removed = tuple(dict.fromkeys(remove))
        data = data.drop(index=list(removed))
        for name in mu_formula.covariates:
            if isinstance(data[name].dtype, pd.CategoricalDtype):
                data[name] = data[name].cat.remove_unused_categories()

    if drop:
        mu_formula = mu_formula.drop(*drop)
        shared = [name for name in drop if name in sigma_formula.covariates]
        if shared:
            sigma_formula = sigma_formula.drop(*shared)
        logger.debug("Dropped non-discriminating covariates %s", drop)

    return CellFilterResult(data, mu_formula, sigma_formula, removed, tuple(drop))


__all__ = ["CellFilterResult", "filter_applies", "filter_cells", "is_categorical"]
