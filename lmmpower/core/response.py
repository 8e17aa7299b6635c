"""
Response synthesis.

Combines fixed effects, per-instance random effects and per-row residual
noise into the linear predictor, then maps it to the observed response:

- ``identity``: the response is the linear predictor.
- ``logit``: the linear predictor is read on the probability scale,
  clamped to [0, 1] and turned into a single Bernoulli outcome per row.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple, Union

import numpy as np

from ..errors import DomainError
from ..stats.random_source import RandomSource
from ..utils.validators import _validate_numeric_parameter, _validate_sd
from .design import Design
from .random_effects import INTERCEPT, RandomEffectTable, VarianceSpec, sample_all_effects

IDENTITY = "identity"
LOGIT = "logit"
LINKS = (IDENTITY, LOGIT)


@dataclass(frozen=True)
class FixedEffects:
    """Population-level coefficients.

    Attributes:
        intercept: Baseline (grand mean under deviation coding).
        slopes: Predictor name -> coefficient. Predictors are factor names,
            numeric design columns, or interactions such as ``"genre:color"``.
        link: ``"identity"`` or ``"logit"``.
    """

    intercept: float = 0.0
    slopes: Union[Mapping[str, float], Tuple[Tuple[str, float], ...]] = ()
    link: str = IDENTITY

    def __post_init__(self):
        _validate_numeric_parameter(self.intercept, "intercept").raise_if_invalid()
        pairs = tuple(self.slopes.items()) if isinstance(self.slopes, Mapping) else tuple(tuple(p) for p in self.slopes)
        for name, coef in pairs:
            _validate_numeric_parameter(coef, f"coefficient of '{name}'").raise_if_invalid()
        object.__setattr__(self, "slopes", tuple((name, float(coef)) for name, coef in pairs))
        if self.link not in LINKS:
            raise DomainError(f"Unknown link '{self.link}'. Valid options: {', '.join(LINKS)}")

    @property
    def predictors(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.slopes)

    def coefficient(self, name: str) -> float:
        """Coefficient of *name* (``"intercept"`` or a predictor); 0 if absent."""
        if name == INTERCEPT:
            return self.intercept
        return dict(self.slopes).get(name, 0.0)

    def with_slope(self, name: str, coef: float) -> "FixedEffects":
        slopes = dict(self.slopes)
        slopes[name] = coef
        return FixedEffects(self.intercept, slopes, self.link)


@dataclass(frozen=True)
class EffectSpec:
    """The complete data-generating process apart from the design.

    Attributes:
        fixed: Fixed effects and link.
        random: One ``VarianceSpec`` per grouping level.
        residual_sd: SD of the per-row residual noise.
    """

    fixed: FixedEffects
    random: Tuple[VarianceSpec, ...] = field(default=())
    residual_sd: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "random", tuple(self.random))
        _validate_sd(self.residual_sd, "residual_sd").raise_if_invalid()
        groupings = [spec.grouping for spec in self.random]
        if len(set(groupings)) != len(groupings):
            raise DomainError(f"Each grouping may appear only once, got {groupings}")

    def with_fixed(self, fixed: FixedEffects) -> "EffectSpec":
        return EffectSpec(fixed, self.random, self.residual_sd)


def linear_predictor(
    design: Design,
    fixed: FixedEffects,
    random_tables: Mapping[str, RandomEffectTable],
    residuals: np.ndarray,
) -> np.ndarray:
    """Linear predictor for every row of *design* (no link applied)."""
    eta = np.full(design.n_rows, fixed.intercept, dtype=float)

    for name, coef in fixed.slopes:
        eta += coef * design.predictor_values(name)

    for grouping, table in random_tables.items():
        if grouping not in design.table.columns:
            raise DomainError(f"Design has no grouping column '{grouping}'")
        ids = design.table[grouping].to_numpy()
        for effect in table.effect_names:
            values = table.lookup(ids, effect)
            if effect == INTERCEPT:
                eta += values
            else:
                eta += values * design.predictor_values(effect)

    return eta + residuals


def synthesize(
    design: Design,
    fixed: FixedEffects,
    random_tables: Mapping[str, RandomEffectTable],
    residual_sd: float,
    source: RandomSource,
    residuals: Optional[np.ndarray] = None,
) -> Design:
    """Populate the ``response`` column of a copy of *design*.

    Args:
        design: Design table (not modified).
        fixed: Fixed effects and link.
        random_tables: Grouping column -> sampled random effects.
        residual_sd: SD of the residual noise (one fresh draw per row).
        source: Random variate source for residuals and Bernoulli draws.
        residuals: Explicit residual draws; when given, no residuals are
            drawn from *source*.

    Returns:
        A new ``Design`` with a ``response`` column.
    """
    _validate_sd(residual_sd, "residual_sd").raise_if_invalid()
    if residuals is None:
        residuals = source.normal(design.n_rows, 0.0, residual_sd)
    else:
        residuals = np.asarray(residuals, dtype=float)
        if residuals.shape != (design.n_rows,):
            raise DomainError(f"Expected {design.n_rows} residuals, got shape {residuals.shape}")

    eta = linear_predictor(design, fixed, random_tables, residuals)

    if fixed.link == LOGIT:
        probability = np.clip(eta, 0.0, 1.0)
        response = source.bernoulli(probability)
    else:
        response = eta

    return design.with_response(response)


def simulate_dataset(design: Design, effects: EffectSpec, source: RandomSource) -> Design:
    """Sample fresh random effects and synthesize one dataset."""
    tables = sample_all_effects(design, effects.random, source)
    return synthesize(design, effects.fixed, tables, effects.residual_sd, source)


def check_effects_against_design(design: Design, effects: EffectSpec) -> None:
    """Raise ``DomainError`` if *effects* names predictors or groupings *design* lacks."""
    for name in effects.fixed.predictors:
        design.predictor_values(name)
    for spec in effects.random:
        design.level_ids(spec.grouping)
        for slope in spec.slope_names:
            design.predictor_values(slope)

