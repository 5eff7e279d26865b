"""Marginal-model fitting across features.

:func:`fit_marginal` is the package entry point.  For every feature
(column) of a count matrix it fits a conditional regression of the
feature's counts on per-observation covariates, independently of every
other feature, and returns the fitted mean, dispersion and
zero-probability vectors per observation.

Orchestration
~~~~~~~~~~~~~
1. **Resolve once.**  Families are expanded and validated, formulas
   are parsed, the concurrency backend and its configuration are
   resolved, and the per-call flags are frozen into a
   :class:`~scmarginal._config.FitOptions`.  Everything that can abort
   the call does so here, before any worker starts.
2. **Dispatch.**  :func:`~scmarginal.parallel.dispatch` runs
   :func:`~scmarginal.fitter.fit_feature` over the features.
3. **Accelerate (optional).**  When the EDF ~ Gini scheme applies
   (see :mod:`scmarginal.acceleration`), step 2 runs twice: once on a
   random subsample at the requested basis dimension, then on the
   rest with per-feature predicted dimensions.
4. **Assemble.**  Results are merged back into input feature order.

Error tiers
~~~~~~~~~~~
Call-level errors raise: a family list of the wrong length
(``ValueError``), an unknown family label
(:class:`~scmarginal.families.InvalidFamilyError`), an incompatible
parallel configuration
(:class:`~scmarginal.parallel.ParallelConfigError`).  Everything that
goes wrong while fitting one feature stays with that feature's result.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np

from ._config import FitOptions, ParallelBackend, get_parallel_backend
from ._results import MarginalFits, assemble_results
from .acceleration import learn_overrides, should_accelerate, split_features
from .data import MarginalData
from .families import Family, expand_families
from .fitter import fit_feature
from .formula import Formula, parse_formula
from .parallel import ClusterConfig, dispatch, resolve_parallel_config

logger = logging.getLogger(__name__)


def fit_marginal(
    data: MarginalData,
    predictor: str = "gene",
    mu_formula: str | Formula = "1",
    sigma_formula: str | Formula = "1",
    family_use: str | Family | Sequence[str | Family] = "nb",
    n_cores: int = 1,
    usebam: bool = False,
    edf_flexible: bool = False,
    parallelization: str | ParallelBackend | None = None,
    parallel_config: ClusterConfig | None = None,
    trace: bool = False,
    simplify: bool = False,
    filter_cells: bool = False,
    random_state: int | np.random.Generator | None = None,
    group_covariate: str = "cell_type",
    batch_covariate: str = "batch",
    debug: bool = False,
) -> MarginalFits:
    """Fit the marginal regression model of every feature.

    Args:
        data: Covariate table, count matrix and pre-filtered features,
            built with :meth:`MarginalData.from_arrays`.
        predictor: Name the feature's counts are attached under in the
            working table.  Must not be a covariate column.
        mu_formula: Mean formula, e.g. ``"s(pseudotime, k = 10)"`` or
            ``"gene ~ cell_type + batch"``.
        sigma_formula: Dispersion formula.  Anything but ``"1"`` fits
            the distributional model alongside the smooth model.
        family_use: One family for all features, or one per feature:
            ``"binomial"``, ``"poisson"``, ``"gaussian"``, ``"nb"``,
            ``"zip"`` or ``"zinb"``.
        n_cores: Maximum number of concurrent workers.
        usebam: Use the large-data smoother backend for formulas with a
            smoother.
        edf_flexible: Enable the EDF ~ Gini acceleration.  It only
            activates with more than 100 features and a requested basis
            dimension of at least 200.
        parallelization: Concurrency backend (``"multiprocess"``,
            ``"cluster"``, ``"progress"`` or an alias).  ``None`` uses
            the configured default.
        parallel_config: :class:`ClusterConfig` for the cluster
            backend; must be ``None`` for the others.
        trace: Keep each feature's diagnostic log and timings.
        simplify: Strip data arrays from the fitted model objects.
        filter_cells: Drop zero-count categories for all-categorical
            mean formulas.
        random_state: Seed of the acceleration subsample.
        group_covariate: Category column of the fast-path formulas.
        batch_covariate: Batch column of the fast-path formulas.
        debug: Fit only the first feature, in-process.

    Returns:
        :class:`MarginalFits` keyed by feature, in input order.

    Raises:
        TypeError: If *data* is not a :class:`MarginalData`.
        ValueError: If *family_use* has the wrong length, the formulas
            are malformed, or *predictor* is a covariate column.
        InvalidFamilyError: If a family label is not supported.
        ParallelConfigError: If *parallel_config* does not fit the
            backend.
    """
    if not isinstance(data, MarginalData):
        raise TypeError(
            f"'data' must be a MarginalData bundle, got {type(data).__name__}. "
            "Build one with MarginalData.from_arrays()."
        )
    if predictor in data.covariates.columns:
        raise ValueError(
            f"The predictor name {predictor!r} is a covariate column; "
            "choose a predictor name that is not a covariate."
        )

    features = data.feature_names
    families = expand_families(family_use, len(features))
    mu = parse_formula(mu_formula, predictor)
    sigma = parse_formula(sigma_formula, predictor)

    backend = get_parallel_backend(parallelization)
    config = resolve_parallel_config(backend, parallel_config, n_cores)

    options = FitOptions(
        usebam=usebam,
        filter_cells=filter_cells,
        trace=trace,
        simplify=simplify,
        group_covariate=group_covariate,
        batch_covariate=batch_covariate,
    )
    shared: dict[str, Any] = {
        "covariates": data.covariates,
        "counts": data.counts,
        "mu_formula": mu,
        "sigma_formula": sigma,
        "predictor": predictor,
        "filtered_features": data.filtered_features,
        "options": options,
    }

    if debug:
        if not features:
            return MarginalFits({})
        logger.info("Debug mode: fitting %s only", features[0])
        result = fit_feature(feature=features[0], family=families[0], **shared)
        return MarginalFits({features[0]: result})

    family_of = dict(zip(features, families))

    def run(subset: Sequence[str], overrides: dict[str, int] | None = None) -> dict[str, Any]:
        return dispatch(
            fit_feature,
            subset,
            [family_of[f] for f in subset],
            shared,
            overrides,
            backend=backend,
            n_cores=n_cores,
            config=config,
        )

    if not should_accelerate(len(features), mu.basis_dim, edf_flexible):
        return assemble_results(features, run(features))

    logger.info(
        "EDF ~ Gini acceleration on: %d features, requested basis dimension %d",
        len(features),
        mu.basis_dim,
    )
    subset, remaining = split_features(features, random_state)
    first = run(subset)
    edf_model, overrides = learn_overrides(first, data.counts, remaining)
    second = run(remaining, overrides)
    return assemble_results(
        features, first, second, edf_model=edf_model, gini_features=subset
    )


__all__ = ["fit_marginal"]
