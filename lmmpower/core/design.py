"""
Design construction for LMMPower simulations.

Builds the crossed (and optionally nested) experimental design table:
participants x levels of each within-participant factor x items, with
between-participant factors splitting participants into balanced blocks.
Two-level factors are stored both as a label column and as a numeric
deviation code (first level -0.5, second level +0.5), so a fixed slope
equals the difference between the two level means.
"""

import itertools
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..errors import DomainError
from ..stats.random_source import RandomSource
from ..utils.validators import _validate_count, _validate_probabilities

PARTICIPANT = "participant_id"
ITEM = "item_id"
RESPONSE = "response"
DEFAULT_NESTING_COLUMN = "group_id"
CODE_SUFFIX = "_code"

# Deviation coding for two-level factors (reference level first)
CONTRAST_CODES = (-0.5, 0.5)

_RESERVED = {PARTICIPANT, ITEM, RESPONSE}


@dataclass(frozen=True)
class GroupingFactor:
    """A two-level categorical factor of the design.

    Attributes:
        name: Column name of the factor (e.g. ``"genre"``).
        levels: Number of levels, or explicit level labels. Labels default
            to ``"<name>1"``, ``"<name>2"``.
        between: ``True`` if each participant sees only one level;
            ``False`` (default) if the factor is crossed with participants.
    """

    name: str
    levels: Union[int, Tuple[str, ...]] = 2
    between: bool = False

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name:
            raise DomainError("Factor name must be a non-empty string")
        if self.name in _RESERVED or self.name.endswith(CODE_SUFFIX) or ":" in self.name:
            raise DomainError(f"Factor name '{self.name}' is reserved or malformed")

        if isinstance(self.levels, int) and not isinstance(self.levels, bool):
            _validate_count(self.levels, f"Level count of '{self.name}'").raise_if_invalid()
            labels = tuple(f"{self.name}{i + 1}" for i in range(self.levels))
        else:
            labels = tuple(str(level) for level in self.levels)
            if len(set(labels)) != len(labels):
                raise DomainError(f"Level labels of '{self.name}' must be unique")

        if len(labels) != 2:
            raise DomainError(f"Factor '{self.name}' has {len(labels)} levels; only two-level factors are supported")
        object.__setattr__(self, "levels", labels)

    @property
    def code_column(self) -> str:
        return self.name + CODE_SUFFIX

    @property
    def codes(self) -> dict:
        """Mapping from level label to contrast code."""
        return dict(zip(self.levels, CONTRAST_CODES))


def _as_factor(spec) -> GroupingFactor:
    if isinstance(spec, GroupingFactor):
        return spec
    name, levels = spec
    return GroupingFactor(name, levels)


@dataclass(frozen=True, eq=False)
class Design:
    """A design table plus the metadata needed to interpret it.

    Attributes:
        table: One row per observation. Always has ``participant_id`` and
            ``item_id``; one label and one ``<name>_code`` column per
            factor; optionally a nesting column and ``response``.
        factors: The factors used to build the table.
        nesting_column: Name of the nesting column, if assigned.
    """

    table: pd.DataFrame
    factors: Tuple[GroupingFactor, ...] = ()
    nesting_column: Optional[str] = None

    @property
    def n_rows(self) -> int:
        return len(self.table)

    @property
    def has_response(self) -> bool:
        return RESPONSE in self.table.columns

    @property
    def response(self) -> np.ndarray:
        if not self.has_response:
            raise DomainError("Design has no response column; run synthesize() first")
        return self.table[RESPONSE].to_numpy()

    def factor(self, name: str) -> Optional[GroupingFactor]:
        for f in self.factors:
            if f.name == name:
                return f
        return None

    def level_ids(self, column: str) -> np.ndarray:
        """Sorted distinct level-instance ids of a grouping column."""
        if column not in self.table.columns:
            raise DomainError(f"Design has no grouping column '{column}'")
        return np.sort(self.table[column].unique())

    def predictor_values(self, name: str) -> np.ndarray:
        """Numeric values of a predictor for every row.

        A factor name gives its contrast code; a numeric column gives its
        values; ``"a:b"`` gives the elementwise product of its parts.
        """
        if ":" in name:
            values = np.ones(self.n_rows)
            for part in name.split(":"):
                values = values * self.predictor_values(part)
            return values

        factor = self.factor(name)
        if factor is not None:
            return self.table[factor.code_column].to_numpy(dtype=float)
        if name in self.table.columns and pd.api.types.is_numeric_dtype(self.table[name]) and name not in _RESERVED:
            return self.table[name].to_numpy(dtype=float)
        raise DomainError(f"Unknown predictor '{name}'")

    def with_column(self, name: str, values) -> "Design":
        """Copy of the design with *name* set to *values*."""
        table = self.table.copy()
        table[name] = values
        return replace(self, table=table)

    def with_response(self, values: np.ndarray) -> "Design":
        return self.with_column(RESPONSE, values)


def build_design(
    participant_count: int,
    factors: Sequence = (),
    items_per_group: int = 1,
    shared_items: bool = False,
) -> Design:
    """Build the crossed design table.

    Rows are ordered participant-major, then by within-factor level
    combination, then by item index.

    Args:
        participant_count: Number of participants (ids ``1..P``).
        factors: ``GroupingFactor`` objects or ``(name, level_count)``
            tuples. Tuples describe within-participant factors.
        items_per_group: Items per within-factor level combination.
        shared_items: If ``True``, item ``k`` is the same item under every
            level combination; otherwise items are namespaced by level.

    Returns:
        A ``Design`` with ``P x prod(within levels) x items_per_group`` rows.

    Raises:
        DomainError: On non-positive counts, duplicate factor names, or
            fewer participants than between-participant cells.

    Example:
        >>> design = build_design(10, [("genre", 2)], items_per_group=5)
        >>> design.n_rows
        100
    """
    _validate_count(participant_count, "participant_count").raise_if_invalid()
    _validate_count(items_per_group, "items_per_group").raise_if_invalid()

    factors = tuple(_as_factor(f) for f in factors)
    names = [f.name for f in factors]
    if len(set(names)) != len(names):
        raise DomainError(f"Duplicate factor names: {names}")

    between = [f for f in factors if f.between]
    within = [f for f in factors if not f.between]

    between_cells = list(itertools.product(*[f.levels for f in between]))
    within_cells = list(itertools.product(*[f.levels for f in within]))
    if participant_count < len(between_cells):
        raise DomainError(f"Need at least {len(between_cells)} participants to fill every between-participant cell, got {participant_count}")

    n_within = len(within_cells)
    rows_per_participant = n_within * items_per_group

    participant_ids = np.arange(1, participant_count + 1)
    # Balanced consecutive blocks of participants per between cell
    cell_of_participant = (np.arange(participant_count) * len(between_cells)) // participant_count

    within_idx = np.tile(np.repeat(np.arange(n_within), items_per_group), participant_count)
    item_idx = np.tile(np.arange(1, items_per_group + 1), participant_count * n_within)

    data = {PARTICIPANT: np.repeat(participant_ids, rows_per_participant)}

    for j, f in enumerate(between):
        per_participant = np.array([between_cells[c][j] for c in cell_of_participant], dtype=object)
        data[f.name] = np.repeat(per_participant, rows_per_participant)
    for j, f in enumerate(within):
        per_cell = np.array([cell[j] for cell in within_cells], dtype=object)
        data[f.name] = per_cell[within_idx]

    if shared_items or not within:
        data[ITEM] = item_idx.astype(str).astype(object)
    else:
        prefixes = np.array([":".join(cell) for cell in within_cells], dtype=object)
        data[ITEM] = prefixes[within_idx] + ":" + item_idx.astype(str).astype(object)

    table = pd.DataFrame(data)
    for f in factors:
        table[f.code_column] = table[f.name].map(f.codes).astype(float)
        table[f.name] = pd.Categorical(table[f.name], categories=list(f.levels))

    return Design(table=table, factors=factors)


def assign_nesting_group(
    design: Design,
    level_names: Sequence[str],
    probabilities: Sequence[float],
    source: RandomSource,
    column: str = DEFAULT_NESTING_COLUMN,
) -> Design:
    """Assign every participant to one higher-level group.

    One categorical draw per distinct participant, broadcast to all of that
    participant's rows.

    Raises:
        DomainError: If *probabilities* do not match *level_names*, are
            negative, or do not sum to 1, or if *column* already exists.
    """
    _validate_probabilities(list(probabilities), len(level_names)).raise_if_invalid()
    if column in design.table.columns or column in _RESERVED:
        raise DomainError(f"Column '{column}' already exists in the design")

    participants = design.level_ids(PARTICIPANT)
    draws = source.categorical(len(participants), list(level_names), probabilities)
    membership = pd.Series(draws, index=participants)

    table = design.table.copy()
    table[column] = table[PARTICIPANT].map(membership).astype(object)
    return Design(table=table, factors=design.factors, nesting_column=column)


@dataclass(frozen=True)
class NestingSpec:
    """Higher-level grouping of participants (e.g. countries)."""

    levels: Tuple[str, ...]
    probabilities: Tuple[float, ...]
    column: str = DEFAULT_NESTING_COLUMN

    def __post_init__(self):
        object.__setattr__(self, "levels", tuple(str(level) for level in self.levels))
        object.__setattr__(self, "probabilities", tuple(float(p) for p in self.probabilities))
        _validate_probabilities(list(self.probabilities), len(self.levels)).raise_if_invalid()


@dataclass(frozen=True)
class DesignSpec:
    """Immutable recipe for a design, rebuilt in every repetition.

    Example:
        >>> spec = DesignSpec(participants=40, factors=(("genre", 2),), items_per_group=10)
        >>> spec.build().n_rows
        800
    """

    participants: int
    factors: Tuple[GroupingFactor, ...] = ()
    items_per_group: int = 1
    shared_items: bool = False
    nesting: Optional[NestingSpec] = field(default=None)

    def __post_init__(self):
        _validate_count(self.participants, "participants").raise_if_invalid()
        _validate_count(self.items_per_group, "items_per_group").raise_if_invalid()
        object.__setattr__(self, "factors", tuple(_as_factor(f) for f in self.factors))

    def build(self, source: Optional[RandomSource] = None) -> Design:
        design = build_design(self.participants, self.factors, self.items_per_group, self.shared_items)
        if self.nesting is not None:
            if source is None:
                source = RandomSource()
            design = assign_nesting_group(design, self.nesting.levels, self.nesting.probabilities, source, column=self.nesting.column)
        return design

    def with_participants(self, participants: int) -> "DesignSpec":
        return replace(self, participants=participants)
