"""Distribution registry.

Every feature is fitted under one of six count/continuous families.
Each family resolves to two backend-specific targets:

=============  ====================================  ========================
Family         Smooth-model target                   Distributional target
=============  ====================================  ========================
``binomial``   ``sm.families.Binomial``              ``BI`` (mu)
``poisson``    ``sm.families.Poisson``               ``PO`` (mu)
``gaussian``   ``sm.families.Gaussian``              ``NO`` (mu, sigma)
``nb``         ``sm.families.NegativeBinomial``      ``NBI`` (mu, sigma)
``zip``        ``sm.families.Poisson``               ``ZIP`` (mu, sigma)
``zinb``       ``sm.families.NegativeBinomial``      ``ZINBI`` (mu, sigma, nu)
=============  ====================================  ========================

The smooth backend has no zero-inflated families, so ``zip``/``zinb``
fall back to their non-inflated base there; the distributional backend
models the extra zero mass directly.

:class:`Family` is a closed enumeration: every property dispatches
over all six members and ends in an unreachable ``raise``, so adding a
member without extending every branch fails loudly.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

import statsmodels.api as sm


class InvalidFamilyError(ValueError):
    """Raised when a family label is outside the supported set."""


@dataclass(frozen=True)
class DistributionalTarget:
    """Location-scale-shape family used by the distributional model.

    Attributes:
        name: gamlss-style family code (``"NBI"``, ``"ZIP"`` ...).
        parameters: Modelled distribution parameters, in order.
    """

    name: str
    parameters: tuple[str, ...]

    @property
    def has_sigma(self) -> bool:
        return "sigma" in self.parameters

    @property
    def has_nu(self) -> bool:
        return "nu" in self.parameters


class Family(str, Enum):
    """Supported marginal distributions."""

    BINOMIAL = "binomial"
    POISSON = "poisson"
    GAUSSIAN = "gaussian"
    NB = "nb"
    ZIP = "zip"
    ZINB = "zinb"

    @property
    def is_zero_inflated(self) -> bool:
        return self in (Family.ZIP, Family.ZINB)

    @property
    def is_negative_binomial(self) -> bool:
        return self in (Family.NB, Family.ZINB)

    def smooth_target(self, alpha: float = 1.0) -> sm.families.Family:
        """Return the statsmodels GLM family for the smooth model.

        Args:
            alpha: NB2 dispersion, used by the negative-binomial
                families only.
        """
        if self is Family.BINOMIAL:
            return sm.families.Binomial()
        if self in (Family.POISSON, Family.ZIP):
            return sm.families.Poisson()
        if self is Family.GAUSSIAN:
            return sm.families.Gaussian()
        if self in (Family.NB, Family.ZINB):
            return sm.families.NegativeBinomial(alpha=alpha)
        raise InvalidFamilyError(f"No smooth-model target for {self!r}.")

    @property
    def distributional_target(self) -> DistributionalTarget:
        """Return the location-scale-shape target for this family."""
        if self is Family.BINOMIAL:
            return DistributionalTarget("BI", ("mu",))
        if self is Family.POISSON:
            return DistributionalTarget("PO", ("mu",))
        if self is Family.GAUSSIAN:
            return DistributionalTarget("NO", ("mu", "sigma"))
        if self is Family.NB:
            return DistributionalTarget("NBI", ("mu", "sigma"))
        if self is Family.ZIP:
            return DistributionalTarget("ZIP", ("mu", "sigma"))
        if self is Family.ZINB:
            return DistributionalTarget("ZINBI", ("mu", "sigma", "nu"))
        raise InvalidFamilyError(f"No distributional target for {self!r}.")


_ALIASES: dict[str, Family] = {
    "negative_binomial": Family.NB,
    "negative-binomial": Family.NB,
    "negbin": Family.NB,
    "zero_inflated_poisson": Family.ZIP,
    "zero-inflated-poisson": Family.ZIP,
    "zero_inflated_negative_binomial": Family.ZINB,
    "zero-inflated-negative-binomial": Family.ZINB,
    "normal": Family.GAUSSIAN,
}


def resolve_family(family: str | Family) -> Family:
    """Map a family label to a :class:`Family`.

    Labels are case-insensitive; the long spellings listed in
    ``_ALIASES`` are accepted alongside the short codes.

    Raises:
        InvalidFamilyError: If *family* is not a supported label.
    """
    if isinstance(family, Family):
        return family
    if not isinstance(family, str):
        raise InvalidFamilyError(
            f"Family must be a string label, got {type(family).__name__}."
        )
    key = family.strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Family(key)
    except ValueError:
        available = ", ".join(f.value for f in Family)
        raise InvalidFamilyError(
            f"Unknown family {family!r}.  The regression distribution must be "
            f"one of: {available}."
        ) from None


def expand_families(
    family_use: str | Family | Sequence[str | Family],
    n_features: int,
) -> list[Family]:
    """Expand a family assignment to one resolved family per feature.

    Args:
        family_use: A single label applied to every feature, or one
            label per feature.
        n_features: Number of features in the count matrix.

    Raises:
        ValueError: If a sequence does not have exactly *n_features*
            entries.
        InvalidFamilyError: If any label is unsupported.
    """
    if isinstance(family_use, (str, Family)):
        single = resolve_family(family_use)
        return [single] * n_features
    labels = list(family_use)
    if len(labels) == 1:
        return [resolve_family(labels[0])] * n_features
    if len(labels) != n_features:
        raise ValueError(
            "The family_use must be either a single string or a sequence with "
            f"the same length as all features ({n_features}); got {len(labels)}."
        )
    return [resolve_family(label) for label in labels]


__all__ = [
    "DistributionalTarget",
    "Family",
    "InvalidFamilyError",
    "expand_families",
    "resolve_family",
]
