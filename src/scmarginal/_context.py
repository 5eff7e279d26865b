"""Per-feature diagnostic accumulator.

A :class:`FeatureLog` is created fresh inside every per-feature fit,
collects warnings, errors and timings while the fit runs, and is
frozen into the :class:`~scmarginal._results.FitResult` at the end.
It is never shared between features or workers.

Lifecycle::

    ┌─────────────────────────────────────────────────────┐
    │  fit_feature()                                      │
    │  ├─ log = FeatureLog(feature)                       │
    │  ├─ log.run("gam", backend.fit, …, slot=0)          │
    │  │   ├─ statsmodels warnings → ("gam", "warning")   │
    │  │   ├─ exception           → ("gam", "error")      │
    │  │   └─ elapsed seconds     → log.timings[0]        │
    │  ├─ log.run("gamlss", fit_location_scale, slot=1)   │
    │  ├─ log.add("fit_marginal", "warning", …)           │
    │  └─ FitResult(log=log.entries(), time=log.times())  │
    └─────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LogEntry:
    """One captured diagnostic.

    Attributes:
        source: Which step produced it (``"gam"``, ``"gamlss"``,
            ``"glm.nb"``, ``"fit_marginal"``).
        severity: ``"warning"`` or ``"error"``.
        message: Human-readable text.
    """

    source: str
    severity: str
    message: str


@dataclass
class FeatureLog:
    """Mutable accumulator owned by a single feature fit."""

    feature: str
    _entries: list[LogEntry] = field(default_factory=list)
    timings: list[float | None] = field(default_factory=lambda: [None, None])

    def add(self, source: str, severity: str, message: str) -> None:
        self._entries.append(LogEntry(source, severity, message))
        logger.debug("[%s] %s %s: %s", self.feature, source, severity, message)

    def run(
        self,
        source: str,
        fn: Callable[..., T],
        *args: Any,
        slot: int | None = None,
        **kwargs: Any,
    ) -> T | None:
        """Call *fn* and record what happens.

        Every warning raised during the call becomes a ``"warning"``
        entry; an exception becomes an ``"error"`` entry and the call
        returns ``None``.  When *slot* is given, the elapsed wall time
        of a successful call is stored in ``timings[slot]``.
        """
        start = time.perf_counter()
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001
                self._record_warnings(source, caught)
                self.add(source, "error", f"{type(exc).__name__}: {exc}")
                return None
        self._record_warnings(source, caught)
        if slot is not None:
            self.timings[slot] = time.perf_counter() - start
        return result

    def _record_warnings(self, source: str, caught: list[warnings.WarningMessage]) -> None:
        for w in caught:
            self.add(source, "warning", f"{w.category.__name__}: {w.message}")

    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def times(self) -> tuple[float | None, float | None]:
        return (self.timings[0], self.timings[1])


__all__ = ["FeatureLog", "LogEntry"]
