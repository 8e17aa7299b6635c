"""LMMPower - simulation-based power analysis for mixed-effects designs.

Builds crossed and nested experimental designs (participants x factor
levels x items), simulates responses with fixed effects, correlated
random intercepts and slopes, and residual noise, and estimates power by
refitting the analysis model to many simulated datasets.

Example:
    >>> from lmmpower import DesignSpec, EffectSpec, FixedEffects, LMMPower, ModelSpec, RandomTerm, VarianceSpec
    >>>
    >>> design = DesignSpec(participants=40, factors=[("genre", 2)], items_per_group=10)
    >>> effects = EffectSpec(
    ...     FixedEffects(800, {"genre": 20}),
    ...     random=[VarianceSpec("participant_id", {"intercept": 100}), VarianceSpec("item_id", {"intercept": 80})],
    ...     residual_sd=200,
    ... )
    >>> model = ModelSpec(fixed=("genre",), random=(RandomTerm("participant_id"), RandomTerm("item_id")))
    >>> LMMPower(design, effects, model, target="genre").set_simulations(500).find_power(print_results=True)
"""

from importlib.metadata import version as _get_version

from .core import (
    Design,
    DesignSpec,
    EffectSpec,
    FixedEffects,
    GroupingFactor,
    NestingSpec,
    PowerResult,
    SampleSizeResult,
    SimulationRunner,
    VarianceSpec,
    estimate_power,
)
from .errors import DomainError, NonconvergentFit, StructuralSingularity, UnknownTerm
from .model import LMMPower
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .stats.fitting import Decision, ModelSpec, RandomTerm, TermPValue, fit_model
from .stats.random_source import RandomSource

__version__ = _get_version("LMMPower")

__all__ = [
    "LMMPower",
    # Specs
    "DesignSpec",
    "GroupingFactor",
    "NestingSpec",
    "EffectSpec",
    "FixedEffects",
    "VarianceSpec",
    "ModelSpec",
    "RandomTerm",
    # Running
    "RandomSource",
    "SimulationRunner",
    "estimate_power",
    "TermPValue",
    "Decision",
    "fit_model",
    # Results
    "Design",
    "PowerResult",
    "SampleSizeResult",
    # Errors
    "DomainError",
    "NonconvergentFit",
    "StructuralSingularity",
    "UnknownTerm",
    "SimulationCancelled",
    # Progress
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
