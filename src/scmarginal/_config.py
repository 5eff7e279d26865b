"""Configuration for the scmarginal package.

Two kinds of configuration live here:

* **Concurrency backend policy** — which worker pool fans the
  per-feature fitter out across features.
* **Fit options and constants** — the resolved flags that are threaded
  explicitly into every per-feature call, plus the fixed thresholds of
  the acceleration heuristic and the fit sanity checks.

Backend resolution order (first match wins):
    1. An explicit ``parallelization=`` argument to
       :func:`~scmarginal.fit_marginal`.
    2. Programmatic override via :func:`set_parallel_backend`.
    3. The ``SCMARGINAL_PARALLEL`` environment variable.
    4. Platform default: ``"multiprocess"``, or ``"cluster"`` on
       platforms whose :mod:`multiprocessing` has no ``fork`` start
       method.

Valid backend names are ``"multiprocess"``, ``"cluster"`` and
``"progress"`` (case-insensitive).  The historical names
``"mcmapply"``, ``"bpmapply"`` and ``"pbmcmapply"`` are accepted as
aliases.

Examples:
    Force the cluster pool from the shell::

        export SCMARGINAL_PARALLEL=cluster

    Programmatically::

        import scmarginal
        scmarginal.set_parallel_backend("progress")

    Re-enable the platform default::

        scmarginal.set_parallel_backend("auto")
"""

from __future__ import annotations

import multiprocessing
import os
from dataclasses import dataclass
from enum import Enum

# ------------------------------------------------------------------ #
# Constants
# ------------------------------------------------------------------ #

EDF_SUBSET_SIZE = 100
"""Number of features fitted in full to learn the EDF ~ Gini relation."""

EDF_MIN_BASIS_DIM = 200
"""Smallest requested basis dimension for which acceleration activates."""

EDF_CONFIDENCE = 0.95
"""Confidence level of the upper bound used as the predicted EDF."""

EDF_MIN_PAIRS = 3
"""Fewest usable (Gini, EDF) pairs needed to fit the regression."""

MIN_BASIS_DIM = 4
"""Smallest basis dimension a cubic B-spline smoother can take."""

MEAN_OVERMAX_RATIO = 10.0
"""A fitted mean above this multiple of the largest count is rejected."""

NB_DISPERSION_CEILING = 1000.0
"""A fitted NB dispersion above this value is rejected as runaway."""

AIC_MARGIN = float("-inf")
"""Required AIC improvement of the distributional fit over the smooth fit.

Negative infinity: the comparison never excludes a distributional fit
that passed the sanity checks.
"""

DISCRETE_GRID_SIZE = 256
"""Number of grid points smooth covariates are snapped to by the
large-data smoother backend."""


# ------------------------------------------------------------------ #
# Concurrency backend policy
# ------------------------------------------------------------------ #


class ParallelBackend(str, Enum):
    """Interchangeable worker pools for the per-feature fan-out."""

    MULTIPROCESS = "multiprocess"
    CLUSTER = "cluster"
    PROGRESS = "progress"


_ALIASES: dict[str, ParallelBackend] = {
    "multiprocess": ParallelBackend.MULTIPROCESS,
    "mcmapply": ParallelBackend.MULTIPROCESS,
    "cluster": ParallelBackend.CLUSTER,
    "bpmapply": ParallelBackend.CLUSTER,
    "progress": ParallelBackend.PROGRESS,
    "pbmcmapply": ParallelBackend.PROGRESS,
}

_VALID_BACKENDS = set(_ALIASES) | {"auto"}

# Sentinel indicating "no programmatic override has been set".
_backend_override: str | None = None


def _platform_can_fork() -> bool:
    """Return ``True`` if the platform offers the ``fork`` start method."""
    return "fork" in multiprocessing.get_all_start_methods()


def _normalise(name: str | ParallelBackend) -> ParallelBackend:
    if isinstance(name, ParallelBackend):
        return name
    key = name.strip().lower()
    if key not in _ALIASES:
        raise ValueError(
            f"Unknown parallel backend '{name}'. "
            f"Choose from: {sorted(_VALID_BACKENDS)}"
        )
    return _ALIASES[key]


def get_parallel_backend(name: str | ParallelBackend | None = None) -> ParallelBackend:
    """Return the active concurrency backend.

    Args:
        name: Explicit request.  ``None`` (or ``"auto"``) defers to the
            override, the environment variable and the platform default,
            in that order.

    Returns:
        The resolved :class:`ParallelBackend`.  On platforms without
        ``fork`` every process-forking backend is replaced by
        ``ParallelBackend.CLUSTER``.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    resolved: ParallelBackend | None = None

    # 1. Explicit argument
    if name is not None and not (isinstance(name, str) and name.strip().lower() == "auto"):
        resolved = _normalise(name)

    # 2. Programmatic override
    if resolved is None and _backend_override is not None and _backend_override != "auto":
        resolved = _normalise(_backend_override)

    # 3. Environment variable
    if resolved is None:
        env = os.environ.get("SCMARGINAL_PARALLEL", "").strip().lower()
        if env in _ALIASES:
            resolved = _ALIASES[env]

    # 4. Platform default
    if resolved is None:
        resolved = ParallelBackend.MULTIPROCESS

    if not _platform_can_fork():
        return ParallelBackend.CLUSTER
    return resolved


def set_parallel_backend(name: str) -> None:
    """Override the concurrency backend selection.

    Args:
        name: ``"multiprocess"``, ``"cluster"``, ``"progress"`` (or an
            alias), or ``"auto"`` to restore the default resolution
            order.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown parallel backend '{name}'. "
            f"Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised


# ------------------------------------------------------------------ #
# Per-call fit options
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitOptions:
    """Flags resolved once at call entry and passed to every feature fit.

    Attributes:
        usebam: Request the large-data smoother backend.  Only honoured
            for formulas that contain a smoother.
        filter_cells: Run the cell filter for all-categorical formulas.
        trace: Keep the per-feature diagnostic log and timings.
        simplify: Strip data arrays from the selected fit object.
        group_covariate: Covariate name of the fast-path grouping.
        batch_covariate: Covariate name of the fast-path batch.
    """

    usebam: bool = False
    filter_cells: bool = False
    trace: bool = False
    simplify: bool = False
    group_covariate: str = "cell_type"
    batch_covariate: str = "batch"


__all__ = [
    "AIC_MARGIN",
    "DISCRETE_GRID_SIZE",
    "EDF_CONFIDENCE",
    "EDF_MIN_BASIS_DIM",
    "EDF_MIN_PAIRS",
    "EDF_SUBSET_SIZE",
    "FitOptions",
    "MEAN_OVERMAX_RATIO",
    "MIN_BASIS_DIM",
    "NB_DISPERSION_CEILING",
    "ParallelBackend",
    "get_parallel_backend",
    "set_parallel_backend",
]
