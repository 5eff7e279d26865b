"""scmarginal — Per-feature marginal regression for single-cell counts.

Fits, independently for every feature of a count matrix, a conditional
regression of the feature's expected value and dispersion on
per-observation covariates (cell type, batch, pseudotime, spatial
coordinates ...).  Each feature gets a penalised smooth GLM and, where
the family or dispersion formula calls for it, a location-scale
distributional model; sanity checks pick between the two.  Canonical
categorical formulas take a closed-form negative-binomial fast path,
and large smoothers can be sized per feature from an EDF ~ Gini
regression.

Public API:
    .. autosummary::
        fit_marginal
        MarginalData
        MarginalFits
        FitResult
        LogEntry
        Family
        resolve_family
        InvalidFamilyError
        Formula
        parse_formula
        Intercept
        Linear
        Smooth
        filter_cells
        fit_feature
        gini
        EdfGiniModel
        dispatch
        ParallelBackend
        ClusterConfig
        ParallelConfigError
        get_parallel_backend
        set_parallel_backend
"""

from ._config import ParallelBackend, get_parallel_backend, set_parallel_backend
from ._results import FitResult, LogEntry, MarginalFits
from .acceleration import EdfGiniModel, gini
from .core import fit_marginal
from .data import MarginalData
from .families import Family, InvalidFamilyError, resolve_family
from .filters import filter_cells
from .fitter import fit_feature
from .formula import Formula, Intercept, Linear, Smooth, parse_formula
from .parallel import ClusterConfig, ParallelConfigError, dispatch

__all__ = [
    "fit_marginal",
    "MarginalData",
    "MarginalFits",
    "FitResult",
    "LogEntry",
    "Family",
    "resolve_family",
    "InvalidFamilyError",
    "Formula",
    "parse_formula",
    "Intercept",
    "Linear",
    "Smooth",
    "filter_cells",
    "fit_feature",
    "gini",
    "EdfGiniModel",
    "dispatch",
    "ParallelBackend",
    "ClusterConfig",
    "ParallelConfigError",
    "get_parallel_backend",
    "set_parallel_backend",
]

__version__ = "0.1.0"
