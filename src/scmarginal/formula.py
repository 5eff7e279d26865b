"""Formula compiler for the mean and dispersion formulas.

User formulas arrive as text in the usual R/patsy mini-language::

    "s(pseudotime, k = 10, bs = 'cr') + batch"
    "gene ~ cell_type + batch"
    "1"

They are parsed exactly once into an immutable :class:`Formula`, an
ordered tuple of typed terms (:class:`Intercept`, :class:`Linear`,
:class:`Smooth`).  Every later manipulation (basis-dimension override,
dropping a covariate that cannot discriminate, reordering for the
backend) works on the structured form.  Text is produced again only
at the edge: :meth:`Formula.render` for logs and fast-path matching,
and :func:`compile_formula` for the fitting backends.

Smoothers
~~~~~~~~~
``s(...)`` and ``te(...)`` terms are smoothers.  Positional arguments
are the smoothed covariates; ``k = <int>`` is the basis dimension; all
other keywords (``bs``, ``m`` ...) are preserved verbatim.  When more
than one smoother is present, the basis-dimension override only ever
touches the first one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Union

_IDENTIFIER = re.compile(r"[A-Za-z_.][A-Za-z0-9_.]*")
_SMOOTH = re.compile(r"^(s|te)\s*\((.*)\)$", re.DOTALL)

STANDARD_KEYWORDS: dict[str, Any] = {"criterion": "aic", "discrete": False, "maxiter": 1000}
"""Smoother keywords rendered for the standard backend."""

LARGE_DATA_KEYWORDS: dict[str, Any] = {"criterion": "aic", "discrete": True, "maxiter": 100}
"""Smoother keywords rendered for the large-data backend."""


# ------------------------------------------------------------------ #
# Terms
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Intercept:
    """The explicit intercept term ``1``."""

    @property
    def covariates(self) -> tuple[str, ...]:
        return ()

    def render(self) -> str:
        return "1"


@dataclass(frozen=True)
class Linear:
    """A parametric term such as ``batch`` or ``C(batch)``."""

    text: str

    @property
    def covariates(self) -> tuple[str, ...]:
        return _identifiers(self.text)

    def render(self) -> str:
        return self.text


@dataclass(frozen=True)
class Smooth:
    """A smoother term ``s(...)`` / ``te(...)``.

    Attributes:
        kind: ``"s"`` or ``"te"``.
        variables: Smoothed covariate names, in order.
        basis_dim: ``k``, or ``None`` when not given.
        options: Remaining keywords as ``(name, raw_text)`` pairs.
    """

    kind: str
    variables: tuple[str, ...]
    basis_dim: int | None = None
    options: tuple[tuple[str, str], ...] = ()

    @property
    def covariates(self) -> tuple[str, ...]:
        return self.variables

    def render(self) -> str:
        args = list(self.variables)
        if self.basis_dim is not None:
            args.append(f"k = {self.basis_dim}")
        args.extend(f"{key} = {value}" for key, value in self.options)
        return f"{self.kind}({', '.join(args)})"


Term = Union[Intercept, Linear, Smooth]


# ------------------------------------------------------------------ #
# Formula
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Formula:
    """Immutable, ordered collection of formula terms.

    The intercept is implicit, as in R: ``Formula(())`` and
    ``Formula((Intercept(),))`` both describe the intercept-only model.
    """

    terms: tuple[Term, ...] = ()

    @property
    def linear_terms(self) -> tuple[Linear, ...]:
        return tuple(t for t in self.terms if isinstance(t, Linear))

    @property
    def smooth_terms(self) -> tuple[Smooth, ...]:
        return tuple(t for t in self.terms if isinstance(t, Smooth))

    @property
    def has_smooth(self) -> bool:
        return bool(self.smooth_terms)

    @property
    def is_intercept_only(self) -> bool:
        return all(isinstance(t, Intercept) for t in self.terms)

    @property
    def covariates(self) -> tuple[str, ...]:
        """Distinct covariate names in order of first appearance."""
        seen: dict[str, None] = {}
        for term in self.terms:
            for name in term.covariates:
                seen.setdefault(name, None)
        return tuple(seen)

    @property
    def basis_dim(self) -> int:
        """Basis dimension of the first smoother, or ``0`` if none."""
        for term in self.smooth_terms:
            if term.basis_dim is not None:
                return term.basis_dim
        return 0

    def with_basis_dim(self, k: int) -> Formula:
        """Return a copy whose first smoother has basis dimension *k*."""
        terms = list(self.terms)
        for i, term in enumerate(terms):
            if isinstance(term, Smooth):
                terms[i] = replace(term, basis_dim=int(k))
                return Formula(tuple(terms))
        return self

    def drop(self, *covariates: str) -> Formula:
        """Return a copy without any term that references *covariates*."""
        gone = set(covariates)
        kept = tuple(t for t in self.terms if not gone.intersection(t.covariates))
        return Formula(kept)

    def ordered_for_backend(self) -> tuple[Term, ...]:
        """Linear terms in original order, followed by smooth terms."""
        return self.linear_terms + self.smooth_terms

    def rhs(self) -> str:
        body = [t.render() for t in self.terms if not isinstance(t, Intercept)]
        return " + ".join(body) if body else "1"

    def render(self, predictor: str | None = None) -> str:
        """Render as text, with ``predictor ~`` when a predictor is given."""
        if predictor is None:
            return f"~{self.rhs()}"
        return f"{predictor} ~ {self.rhs()}"

    def __str__(self) -> str:
        return self.rhs()


# ------------------------------------------------------------------ #
# Parsing
# ------------------------------------------------------------------ #


def _identifiers(text: str) -> tuple[str, ...]:
    """Covariate names in *text*, skipping function names like ``C``."""
    names: list[str] = []
    for match in _IDENTIFIER.finditer(text):
        tail = text[match.end():].lstrip()
        if tail.startswith("("):
            continue
        name = match.group(0)
        if name not in names:
            names.append(name)
    return tuple(names)


def _split_top_level(text: str, sep: str) -> list[str]:
    """Split *text* on *sep* outside parentheses and quotes."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0
    for i, ch in enumerate(text):
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in formula {text!r}.")
        elif ch == sep and depth == 0:
            parts.append(text[start:i])
            start = i + 1
    if depth != 0 or quote is not None:
        raise ValueError(f"Unbalanced parentheses or quotes in formula {text!r}.")
    parts.append(text[start:])
    return parts


def _parse_smooth(kind: str, inner: str, source: str) -> Smooth:
    variables: list[str] = []
    basis_dim: int | None = None
    options: list[tuple[str, str]] = []
    for arg in _split_top_level(inner, ","):
        arg = arg.strip()
        if not arg:
            continue
        key, eq, value = arg.partition("=")
        if not eq:
            variables.append(arg)
            continue
        key, value = key.strip(), value.strip()
        if key == "k":
            try:
                basis_dim = int(value)
            except ValueError:
                raise ValueError(
                    f"Basis dimension must be an integer in {source!r}, got {value!r}."
                ) from None
        else:
            options.append((key, value))
    if not variables:
        raise ValueError(f"Smoother {source!r} names no covariate.")
    return Smooth(kind, tuple(variables), basis_dim, tuple(options))


def _parse_term(text: str) -> Term:
    text = text.strip()
    if not text:
        raise ValueError("Empty term in formula.")
    if text == "1":
        return Intercept()
    if text in ("0", "-1"):
        raise ValueError("Formulas without an intercept are not supported.")
    m = _SMOOTH.match(text)
    if m is not None:
        return _parse_smooth(m.group(1), m.group(2), text)
    return Linear(text)


def parse_formula(text: str | Formula, predictor: str | None = None) -> Formula:
    """Parse a formula string into a :class:`Formula`.

    Args:
        text: Right-hand side (``"s(x, k = 10) + batch"``) or full
            formula (``"gene ~ cell_type"``).  A :class:`Formula` is
            returned unchanged.
        predictor: When given, a left-hand side must equal it, and the
            right-hand side must not reference it.

    Returns:
        The parsed formula.

    Raises:
        ValueError: On malformed input, a left-hand side that is not
            the predictor, or a right-hand side that uses the predictor
            as a covariate.
    """
    if isinstance(text, Formula):
        return text
    lhs, tilde, rhs = text.partition("~")
    if not tilde:
        lhs, rhs = "", text
    lhs = lhs.strip()
    if lhs and predictor is not None and lhs != predictor:
        raise ValueError(
            f"Formula response {lhs!r} does not match the predictor {predictor!r}."
        )
    terms = tuple(_parse_term(part) for part in _split_top_level(rhs, "+"))
    formula = Formula(terms)
    if predictor is not None and predictor in formula.covariates:
        raise ValueError(
            f"The predictor name {predictor!r} is also used as a covariate; "
            "choose a predictor name that is not a covariate column."
        )
    return formula


# ------------------------------------------------------------------ #
# Backend compilation
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SmoothSpec:
    """One smoother, rendered for a fitting backend."""

    variables: tuple[str, ...]
    basis_dim: int | None
    options: dict[str, str] = field(default_factory=dict)
    keywords: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompiledFormula:
    """A formula rendered for the fitting backends.

    Attributes:
        linear: patsy right-hand side for the parametric part,
            always carrying the intercept (``"1 + batch"``).
        smooths: Rewritten smoother terms, in term order.
        large_data: Whether the large-data backend was selected.
        source: The structured formula this was compiled from.
    """

    linear: str
    smooths: tuple[SmoothSpec, ...]
    large_data: bool
    source: Formula

    @property
    def has_smooth(self) -> bool:
        return bool(self.smooths)


def compile_formula(formula: Formula, usebam: bool = False) -> CompiledFormula:
    """Rewrite *formula* for the smooth-model backends.

    The large-data backend is used only when *usebam* is set **and**
    the formula contains a smoother; otherwise the standard keywords
    are rendered.  A formula without smoothers compiles to its linear
    part alone.
    """
    large = bool(usebam and formula.has_smooth)
    keywords = LARGE_DATA_KEYWORDS if large else STANDARD_KEYWORDS
    ordered = formula.ordered_for_backend()
    linear = " + ".join(["1"] + [t.render() for t in ordered if isinstance(t, Linear)])
    smooths = tuple(
        SmoothSpec(
            variables=t.variables,
            basis_dim=t.basis_dim,
            options=dict(t.options),
            keywords=dict(keywords),
        )
        for t in ordered
        if isinstance(t, Smooth)
    )
    return CompiledFormula(linear=linear, smooths=smooths, large_data=large, source=formula)


__all__ = [
    "CompiledFormula",
    "Formula",
    "Intercept",
    "LARGE_DATA_KEYWORDS",
    "Linear",
    "STANDARD_KEYWORDS",
    "Smooth",
    "SmoothSpec",
    "Term",
    "compile_formula",
    "parse_formula",
]
