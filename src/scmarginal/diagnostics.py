"""Sanity checks on a distributional fit.

A location-scale fit can converge numerically and still be useless
downstream.  Three pathologies are checked before a distributional fit
may replace the smooth fit:

* **Non-finite values**: any infinite entry in ``mu + sigma``.
* **Mean overshoot**: the largest fitted mean exceeds
  ``MEAN_OVERMAX_RATIO`` × the largest observed value.
* **Overdispersion runaway** (negative-binomial families only): the
  largest fitted dispersion exceeds ``NB_DISPERSION_CEILING``.

Any tripped check sends the selection back to the smooth fit.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ._config import MEAN_OVERMAX_RATIO, NB_DISPERSION_CEILING
from .families import Family


@dataclass(frozen=True)
class FitSanity:
    """Outcome of :func:`check_distributional_fit`."""

    infinite: bool
    over_max: bool
    over_dispersed: bool

    @property
    def ok(self) -> bool:
        return not (self.infinite or self.over_max or self.over_dispersed)

    def reasons(self) -> list[str]:
        out = []
        if self.infinite:
            out.append("infinite fitted values")
        if self.over_max:
            out.append(f"fitted mean above {MEAN_OVERMAX_RATIO:g}x the largest count")
        if self.over_dispersed:
            out.append(f"dispersion above {NB_DISPERSION_CEILING:g}")
        return out


def check_distributional_fit(
    mean: np.ndarray,
    sigma: np.ndarray,
    observed: np.ndarray,
    family: Family,
) -> FitSanity:
    """Run the three sanity checks on fitted ``mu`` / ``sigma`` vectors.

    NaNs are ignored by the maximum-based checks, as they would be by a
    ``max(..., na.rm = TRUE)``.
    """
    mean = np.asarray(mean, dtype=float)
    sigma = np.asarray(sigma, dtype=float)
    observed = np.asarray(observed, dtype=float)

    infinite = bool(np.isinf(mean + sigma).any())
    with np.errstate(invalid="ignore"):
        over_max = bool(np.nanmax(mean) > MEAN_OVERMAX_RATIO * np.nanmax(observed))
        over_dispersed = bool(
            family.is_negative_binomial and np.nanmax(sigma) > NB_DISPERSION_CEILING
        )
    return FitSanity(infinite, over_max, over_dispersed)


__all__ = ["FitSanity", "check_distributional_fit"]
