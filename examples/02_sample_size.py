"""
Sample Size Example
===================

A two-group experiment (each participant sees one condition) with a
small standardised effect. How many participants reach 80% power?
"""

from lmmpower import DesignSpec, EffectSpec, FixedEffects, GroupingFactor, LMMPower, ModelSpec

design = DesignSpec(participants=100, factors=[GroupingFactor("condition", between=True)])
effects = EffectSpec(FixedEffects(0.5, {"condition": 0.2}), residual_sd=1.0)

model = LMMPower(design, effects, ModelSpec(fixed=("condition",)), target="condition")

# About 0.17 with 50 participants per condition
model.find_power(print_results=True)

model.set_parallel(True)
model.find_sample_size(list(range(100, 1001, 100)), target_power=0.8, print_results=True)
