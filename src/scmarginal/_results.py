"""Typed result objects for marginal fits.

Frozen dataclasses that provide:

* **Attribute access** — ``result.mean``, ``result.dispersion``, etc.
* **Dict-like access** — ``result["mean"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy and pandas types converted to native Python.

:class:`FitResult` is the per-feature record; :class:`MarginalFits`
is the feature-ordered collection returned by
:func:`~scmarginal.fit_marginal`.  Both are immutable once built: the
result assembler only ever creates new collections.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

from ._context import LogEntry

if TYPE_CHECKING:
    from .acceleration import EdfGiniModel
    from .families import Family

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy/pandas objects to Python-native types.

    Handles nested dicts, lists, tuples, ``pd.Series`` (→ dict keyed
    by index label), ``np.ndarray``, ``np.integer`` and ``np.floating``
    so that :meth:`to_dict` returns a fully JSON-serialisable structure.
    """
    if isinstance(obj, pd.Series):
        return {str(k): _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, LogEntry):
        return {"source": obj.source, "severity": obj.severity, "message": obj.message}
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "family": lambda f: None if f is None else f.value,
    }

    # Opaque fitted model objects are not serialised.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"fit"})

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# FitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitResult(_DictAccessMixin):
    """Marginal fit of one feature.

    The three parameter vectors are ``pd.Series`` indexed by
    observation id, in the row order of the (possibly cell-filtered)
    covariate table the feature was fitted on.

    Attributes:
        feature: Feature identifier.
        family: Resolved family, or ``None`` for skipped features.
        fit: Selected fitted model object (statsmodels results), or
            ``None`` when no usable fit exists.  Closed-form fast-path
            fits carry the per-split results in a dict.
        model_type: ``"gam"``, ``"gamlss"``, ``"glm.nb"`` or ``None``.
        mean: Fitted mean per observation.
        dispersion: Fitted dispersion (``sigma``) per observation.
        zero: Zero-inflation probability per observation (all zero:
            it is not exposed separately).
        removed_cells: Observation ids dropped by the cell filter, or
            ``None``.
        edf: Realised effective degrees of freedom of the smooth fit,
            or ``None`` when no smooth fit succeeded.
        log: Captured diagnostics; ``None`` unless trace is on or the
            feature was skipped / failed outright.
        time: ``(smooth_seconds, distributional_seconds)`` when trace
            is on, else ``None``.
        skipped: ``True`` for pre-filtered features.
    """

    feature: str
    family: Family | None = None
    fit: Any = None
    model_type: str | None = None
    mean: pd.Series | None = None
    dispersion: pd.Series | None = None
    zero: pd.Series | None = None
    removed_cells: tuple[str, ...] | None = None
    edf: float | None = None
    log: tuple[LogEntry, ...] | None = None
    time: tuple[float | None, float | None] | None = None
    skipped: bool = False

    @property
    def has_fit(self) -> bool:
        return self.mean is not None

    @property
    def warnings(self) -> tuple[LogEntry, ...]:
        """Log entries with severity ``"warning"``."""
        return tuple(e for e in (self.log or ()) if e.severity == "warning")


# ------------------------------------------------------------------ #
# MarginalFits
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MarginalFits(Mapping[str, FitResult]):
    """Feature-keyed fits in input feature order.

    Attributes:
        results: Per-feature results, keyed by feature id.
        edf_model: The EDF ~ Gini model when acceleration ran.
        gini_features: Features fitted in the subsample pass.
    """

    results: dict[str, FitResult]
    edf_model: EdfGiniModel | None = None
    gini_features: tuple[str, ...] = field(default_factory=tuple)

    def __getitem__(self, key: str) -> FitResult:
        return self.results[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    @property
    def features(self) -> list[str]:
        return list(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {k: v.to_dict() for k, v in self.results.items()}


def assemble_results(
    feature_names: Sequence[str],
    *parts: Mapping[str, FitResult],
    edf_model: EdfGiniModel | None = None,
    gini_features: Sequence[str] = (),
) -> MarginalFits:
    """Merge feature-keyed result sets back into input feature order.

    Args:
        feature_names: Every feature of the call, in input order.
        *parts: Result mappings from one or more dispatch passes.
            Their key sets must be disjoint and together cover
            *feature_names*.

    Raises:
        ValueError: If a feature appears in two parts or is missing.
    """
    merged: dict[str, FitResult] = {}
    for part in parts:
        overlap = merged.keys() & part.keys()
        if overlap:
            raise ValueError(f"Features fitted twice: {sorted(overlap)[:5]}")
        merged.update(part)
    missing = [f for f in feature_names if f not in merged]
    if missing:
        raise ValueError(f"No result for features: {missing[:5]}")
    ordered = {f: merged[f] for f in feature_names}
    return MarginalFits(ordered, edf_model, tuple(gini_features))


__all__ = ["FitResult", "LogEntry", "MarginalFits", "assemble_results"]
