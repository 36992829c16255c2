"""
Balanced factorial grids for conjoint estimand computation.

Responsibilities:
- Validate attribute/level declarations.
- Enumerate the full factorial grid of alternatives (one per level combination).
- Build the paired grid (every ordered pair of distinct alternatives) for
  models that predict a whole choice task at once, and its one-row-per-
  alternative long layout.
"""

# Import modules
from __future__ import annotations
import itertools
import math
from typing import Iterable, Mapping, NamedTuple, Sequence

from conjoint.errors import ConfigurationError
from conjoint.models import INTERCEPT, Alternative, Attribute

# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

def validate_attributes(attributes: Sequence[Attribute]) -> None:
    """Raise ``ConfigurationError`` for degenerate or colliding declarations."""
    if not attributes:
        raise ConfigurationError("At least one attribute is required")

    seen: set[str] = set()
    for attr in attributes:
        if attr.name in seen:
            raise ConfigurationError(f"Attribute name '{attr.name}' is declared more than once")
        seen.add(attr.name)

        if len(attr.levels) < 2:
            raise ConfigurationError(
                f"Attribute '{attr.name}' has {len(attr.levels)} level(s); at least 2 are required"
            )
        if len(set(attr.levels)) != len(attr.levels):
            dupes = sorted({lv for lv in attr.levels if attr.levels.count(lv) > 1})
            raise ConfigurationError(f"Attribute '{attr.name}' repeats level(s) {dupes}")
        if attr.reference is not None and attr.reference not in attr.levels:
            raise ConfigurationError(
                f"Reference level '{attr.reference}' not found in attribute '{attr.name}'"
            )


# ------------------------------------------------------------------
# Grid construction
# ------------------------------------------------------------------

class LongRow(NamedTuple):
    """One alternative of a synthetic choice task in long layout."""

    task_id: int
    position: int
    alternative: Alternative


def build_grid(attributes: Sequence[Attribute]) -> list[Alternative]:
    """
    Cartesian product of all attribute levels, in declaration order.

    The first attribute varies slowest.  ``len(result)`` is the product of
    the level counts and every row is distinct.
    """
    validate_attributes(attributes)
    names = [a.name for a in attributes]
    return [
        Alternative(levels=dict(zip(names, combo)))
        for combo in itertools.product(*(a.levels for a in attributes))
    ]


def build_paired_grid(grid: Sequence[Alternative]) -> list[tuple[Alternative, Alternative]]:
    """
    Ordered self cross join of *grid*, dropping pairs of identical alternatives.

    For a grid of ``n`` distinct alternatives this yields ``n**2 - n`` pairs.
    Each alternative appears ``n - 1`` times in each position, so the paired
    grid stays balanced.
    """
    return [(a, b) for a in grid for b in grid if a != b]


def flatten_to_long(pairs: Iterable[tuple[Alternative, ...]]) -> list[LongRow]:
    """Stack each pair into rows sharing a synthetic task id (1-based)."""
    rows: list[LongRow] = []
    for task_id, task in enumerate(pairs, start=1):
        for position, alt in enumerate(task, start=1):
            rows.append(LongRow(task_id, position, alt))
    return rows


# ------------------------------------------------------------------
# AttributeSpace
# ------------------------------------------------------------------

class AttributeSpace:
    """
    Validated attribute structure of a study.

    Parameters
    ----------
    attributes : sequence of Attribute
        Ordered attribute declarations.  Order determines grid order and
        the coefficient order returned by :meth:`parameter_index`.
    """

    def __init__(self, attributes: Sequence[Attribute]) -> None:
        validate_attributes(attributes)
        self._attributes = tuple(attributes)
        self._by_name = {a.name: a for a in self._attributes}
        self._grid: list[Alternative] | None = None
        self._paired: list[tuple[Alternative, Alternative]] | None = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def attributes(self) -> tuple[Attribute, ...]:
        return self._attributes

    @property
    def names(self) -> list[str]:
        return [a.name for a in self._attributes]

    @property
    def grid_size(self) -> int:
        return math.prod(len(a.levels) for a in self._attributes)

    def attribute(self, name: str) -> Attribute:
        try:
            return self._by_name[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown attribute '{name}'; declared attributes are {self.names}"
            ) from None

    def parameter_index(self, *, include_intercept: bool = False) -> list[tuple[str, str]]:
        """
        Ordered (attribute, level) pairs of all non-reference levels.

        This is the coefficient order expected for covariance matrices.  The
        intercept, when requested, comes first as ``("(Intercept)", "")``.
        """
        index: list[tuple[str, str]] = [(INTERCEPT, "")] if include_intercept else []
        for attr in self._attributes:
            index.extend(
                (attr.name, lv) for lv in attr.levels if lv != attr.reference_level
            )
        return index

    # ------------------------------------------------------------------
    # Alternatives
    # ------------------------------------------------------------------

    def validate_alternative(self, alternative: Alternative) -> None:
        """Check that *alternative* assigns one declared level to every attribute."""
        missing = [n for n in self.names if n not in alternative.levels]
        if missing:
            raise ConfigurationError(f"Alternative {alternative} is missing attribute(s) {missing}")
        extra = [n for n in alternative.levels if n not in self._by_name]
        if extra:
            raise ConfigurationError(f"Alternative {alternative} has undeclared attribute(s) {extra}")
        for name, level in alternative.levels.items():
            if level not in self._by_name[name].levels:
                raise ConfigurationError(
                    f"Level '{level}' is not declared for attribute '{name}'"
                )

    def alternative(self, levels: Mapping[str, str]) -> Alternative:
        """Build and validate an alternative, ordering levels by declaration."""
        ordered = {n: levels[n] for n in self.names if n in levels}
        alt = Alternative(levels=ordered | dict(levels))
        self.validate_alternative(alt)
        return alt

    # ------------------------------------------------------------------
    # Grids (built lazily, then reused)
    # ------------------------------------------------------------------

    def grid(self) -> list[Alternative]:
        if self._grid is None:
            self._grid = build_grid(self._attributes)
        return list(self._grid)

    def paired_grid(self) -> list[tuple[Alternative, Alternative]]:
        if self._paired is None:
            self._paired = build_paired_grid(self.grid())
        return list(self._paired)

    def long_grid(self) -> list[LongRow]:
        return flatten_to_long(self.paired_grid())

    def __repr__(self) -> str:
        dims = " x ".join(f"{a.name}[{len(a.levels)}]" for a in self._attributes)
        return f"AttributeSpace({dims})"
