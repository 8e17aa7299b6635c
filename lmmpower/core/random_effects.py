"""
Random-effect sampling for mixed-model simulations.

For every grouping level (participants, items, nesting groups) one vector
of effects is drawn per level-instance and shared by all rows of that
instance. A pair of effects at the same level may be correlated; the
covariance matrix is then ``[[sd_a², sd_a·sd_b·ρ], [sd_a·sd_b·ρ, sd_b²]]``.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..errors import DomainError
from ..stats.random_source import RandomSource
from ..utils.validators import _validate_correlation, _validate_sd
from .design import Design

INTERCEPT = "intercept"


@dataclass(frozen=True)
class VarianceSpec:
    """Standard deviations of the random effects at one grouping level.

    Attributes:
        grouping: Design column holding the level-instance ids
            (``"participant_id"``, ``"item_id"``, ``"group_id"``, ...).
        sds: Effect name -> standard deviation. ``"intercept"`` is the
            random intercept; any other name is a random slope on the
            predictor of that name. Stored as an ordered tuple of pairs.
        correlation: Correlation between the two named effects. Only
            allowed when exactly two effects are named.

    Example:
        >>> VarianceSpec("participant_id", {"intercept": 7.0, "genre": 3.5}, correlation=-0.2)
    """

    grouping: str
    sds: Union[Mapping[str, float], Tuple[Tuple[str, float], ...]]
    correlation: Optional[float] = None

    def __post_init__(self):
        pairs = tuple(self.sds.items()) if isinstance(self.sds, Mapping) else tuple(tuple(p) for p in self.sds)
        if not pairs:
            raise DomainError(f"No random effects named for grouping '{self.grouping}'")
        names = [name for name, _ in pairs]
        if len(set(names)) != len(names):
            raise DomainError(f"Duplicate random effect names for grouping '{self.grouping}': {names}")
        for name, sd in pairs:
            _validate_sd(sd, f"SD of random {name} for '{self.grouping}'").raise_if_invalid()
        object.__setattr__(self, "sds", tuple((name, float(sd)) for name, sd in pairs))

        if self.correlation is not None:
            _validate_correlation(self.correlation).raise_if_invalid()
            if len(pairs) != 2:
                raise DomainError(f"A correlation needs exactly two named effects, got {len(pairs)} for '{self.grouping}'")

    @property
    def effect_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.sds)

    @property
    def slope_names(self) -> Tuple[str, ...]:
        return tuple(name for name in self.effect_names if name != INTERCEPT)

    def sd(self, name: str) -> float:
        return dict(self.sds)[name]

    def covariance(self) -> np.ndarray:
        """Covariance matrix of the named effects (diagonal when uncorrelated)."""
        sd = np.array([s for _, s in self.sds])
        cov = np.diag(sd**2)
        if self.correlation is not None:
            cov[0, 1] = cov[1, 0] = sd[0] * sd[1] * self.correlation
        return cov


@dataclass(frozen=True, eq=False)
class RandomEffectTable:
    """Sampled effects for one grouping level, keyed by level-instance id.

    ``values`` is indexed by id with one column per effect name.
    """

    grouping: str
    values: pd.DataFrame

    @property
    def effect_names(self) -> Tuple[str, ...]:
        return tuple(self.values.columns)

    @property
    def ids(self) -> np.ndarray:
        return self.values.index.to_numpy()

    def __len__(self):
        return len(self.values)

    def lookup(self, ids: Iterable, effect: str) -> np.ndarray:
        """Effect values for each id in *ids* (key-based, vectorised).

        Raises:
            DomainError: If any id has no sampled entry.
        """
        looked_up = self.values[effect].reindex(pd.Index(ids))
        if looked_up.isna().any():
            missing = looked_up.index[looked_up.isna()].unique()[:5].tolist()
            raise DomainError(f"No sampled {effect} for {self.grouping} ids {missing}")
        return looked_up.to_numpy(dtype=float)


def sample_effects(
    level_instance_ids: Iterable,
    spec: VarianceSpec,
    source: RandomSource,
) -> RandomEffectTable:
    """Draw one effect vector per distinct level-instance id.

    Ids are de-duplicated and sorted, so the same seed always maps the same
    draws to the same ids.

    Args:
        level_instance_ids: Ids of the grouping level (duplicates allowed).
        spec: Standard deviations (and optional correlation) of the effects.
        source: Random variate source; consumed in a fixed order.

    Returns:
        A ``RandomEffectTable`` with exactly one row per distinct id.
    """
    ids = pd.Index(pd.unique(pd.Series(list(level_instance_ids)))).sort_values()
    n = len(ids)

    if spec.correlation is not None:
        draws = source.multivariate_normal(n, np.zeros(2), spec.covariance())
        columns = {name: draws[:, j] for j, name in enumerate(spec.effect_names)}
    else:
        columns = {name: source.normal(n, 0.0, sd) for name, sd in spec.sds}

    values = pd.DataFrame(columns, index=ids.rename(spec.grouping))
    return RandomEffectTable(grouping=spec.grouping, values=values)


def sample_all_effects(
    design: Design,
    specs: Sequence[VarianceSpec],
    source: RandomSource,
) -> Dict[str, RandomEffectTable]:
    """Sample every grouping level of *specs* against the ids in *design*."""
    tables: Dict[str, RandomEffectTable] = {}
    for spec in specs:
        if spec.grouping in tables:
            raise DomainError(f"Grouping '{spec.grouping}' is specified more than once")
        for slope in spec.slope_names:
            # Fails early on unknown slope predictors
            design.predictor_values(slope)
        tables[spec.grouping] = sample_effects(design.level_ids(spec.grouping), spec, source)
    return tables
