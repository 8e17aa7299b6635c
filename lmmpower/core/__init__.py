"""Core components for LMMPower.

Re-exports the building blocks of a simulation:

- ``GroupingFactor``, ``Design``, ``DesignSpec``, ``build_design``,
  ``assign_nesting_group`` - experimental design tables.
- ``VarianceSpec``, ``RandomEffectTable``, ``sample_effects`` - random
  effects per grouping level.
- ``FixedEffects``, ``EffectSpec``, ``synthesize``, ``simulate_dataset`` -
  response synthesis.
- ``SimulationRunner``, ``estimate_power``, ``power_curve`` - the Monte
  Carlo loop.
- ``PowerResult``, ``SampleSizeResult``, ``compare_to_truth`` - results.
"""

from .design import Design, DesignSpec, GroupingFactor, NestingSpec, assign_nesting_group, build_design
from .random_effects import RandomEffectTable, VarianceSpec, sample_all_effects, sample_effects
from .response import EffectSpec, FixedEffects, simulate_dataset, synthesize
from .results import PowerResult, RepetitionOutcome, SampleSizeResult, build_power_result, compare_to_truth
from .simulation import SimulationRunner, estimate_power, power_curve

__all__ = [
    # Design
    "GroupingFactor",
    "Design",
    "DesignSpec",
    "NestingSpec",
    "build_design",
    "assign_nesting_group",
    # Random effects
    "VarianceSpec",
    "RandomEffectTable",
    "sample_effects",
    "sample_all_effects",
    # Response
    "FixedEffects",
    "EffectSpec",
    "synthesize",
    "simulate_dataset",
    # Simulation
    "SimulationRunner",
    "estimate_power",
    "power_curve",
    # Results
    "RepetitionOutcome",
    "PowerResult",
    "SampleSizeResult",
    "build_power_result",
    "compare_to_truth",
]
