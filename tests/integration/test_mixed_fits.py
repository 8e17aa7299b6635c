"""
End-to-end mixed-model fits on simulated designs.
"""

import warnings

import numpy as np
import pytest

from lmmpower import (
    DesignSpec,
    EffectSpec,
    FixedEffects,
    ModelSpec,
    NestingSpec,
    RandomSource,
    RandomTerm,
    SimulationRunner,
    StructuralSingularity,
    TermPValue,
    VarianceSpec,
    estimate_power,
    fit_model,
)
from lmmpower.core.design import ITEM, PARTICIPANT
from lmmpower.core.response import simulate_dataset
from tests.config import LME_N_SIMS_QUICK, LME_THRESHOLD_MODERATE, SEED

pytestmark = pytest.mark.lme


@pytest.fixture(autouse=True)
def _no_singular_noise():
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", StructuralSingularity)
        yield


def _simulate(design, effects, seed=SEED):
    source = RandomSource(seed)
    return simulate_dataset(design.build(source), effects, source)


class TestRandomSlopes:
    def test_correlated_slope_fit(self):
        design = DesignSpec(participants=40, factors=[("genre", 2)], items_per_group=10)
        effects = EffectSpec(
            FixedEffects(500.0, {"genre": 20.0}),
            random=[VarianceSpec(PARTICIPANT, {"intercept": 50.0, "genre": 25.0}, correlation=-0.2)],
            residual_sd=30.0,
        )
        model = ModelSpec(fixed=("genre",), random=(RandomTerm(PARTICIPANT, ("genre",)),))
        fit = fit_model(_simulate(design, effects), model)

        assert fit.method == "mixedlm"
        assert fit.estimate("genre") == pytest.approx(20.0, abs=15.0)
        assert fit.variance_components[f"{PARTICIPANT}:genre"] == pytest.approx(25.0, rel=0.5)

    def test_single_item_per_level_is_singular(self):
        """One row per participant and level cannot separate the slope variance from the residual."""
        design = DesignSpec(participants=30, factors=[("genre", 2)], items_per_group=1)
        effects = EffectSpec(
            FixedEffects(0.0, {"genre": 0.5}),
            random=[VarianceSpec(PARTICIPANT, {"intercept": 1.0, "genre": 0.5})],
            residual_sd=1.0,
        )
        model = ModelSpec(fixed=("genre",), random=(RandomTerm(PARTICIPANT, ("genre",)),))
        runner = SimulationRunner(LME_N_SIMS_QUICK, seed=SEED, max_failed_simulations=1.0)
        try:
            result = runner.run_power_simulations(design, effects, TermPValue(model, "genre"))
        except RuntimeError as e:
            assert "All simulations failed" in str(e)
        else:
            assert result.n_singular + result.n_skipped > 0


class TestNestedDesign:
    def test_participants_within_groups(self):
        design = DesignSpec(
            participants=60,
            factors=[("genre", 2)],
            items_per_group=4,
            nesting=NestingSpec(("DE", "PL", "US", "UK"), (0.25, 0.25, 0.25, 0.25)),
        )
        effects = EffectSpec(
            FixedEffects(0.0, {"genre": 0.5}),
            random=[
                VarianceSpec("group_id", {"intercept": 1.0}),
                VarianceSpec(PARTICIPANT, {"intercept": 1.0}),
            ],
            residual_sd=1.0,
        )
        data = _simulate(design, effects)
        per_participant = data.table.groupby(PARTICIPANT)["group_id"].nunique()
        assert (per_participant == 1).all()

        fit = fit_model(data, ModelSpec(fixed=("genre",), random=(RandomTerm("group_id"), RandomTerm(PARTICIPANT))))
        assert fit.method == "mixedlm_vc"
        assert "group_id:intercept" in fit.variance_components

    def test_crossed_power_run(self, crossed_design, crossed_effects, crossed_model):
        runner = SimulationRunner(LME_N_SIMS_QUICK, seed=SEED, max_failed_simulations=LME_THRESHOLD_MODERATE)
        result = runner.run_power_simulations(crossed_design, crossed_effects, TermPValue(crossed_model, "genre"))
        assert 0.0 <= result.power <= 1.0
        assert np.isnan(result.p_values).sum() == result.n_skipped


class TestBinomialGLMM:
    def test_variational_bayes_fit(self):
        design = DesignSpec(participants=40, factors=[("genre", 2)], items_per_group=10)
        effects = EffectSpec(
            FixedEffects(0.5, {"genre": 0.3}, link="logit"),
            random=[VarianceSpec(PARTICIPANT, {"intercept": 0.1})],
            residual_sd=0.05,
        )
        data = _simulate(design, effects)
        assert set(np.unique(data.response)) <= {0, 1}

        fit = fit_model(data, ModelSpec(fixed=("genre",), random=(RandomTerm(PARTICIPANT),), family="binomial"))
        assert fit.method == "bayes_glmm"
        assert fit.estimate("genre") > 0
        assert 0.0 <= fit.p_value("genre") <= 1.0
        assert f"{PARTICIPANT}:intercept" in fit.variance_components

    def test_crossed_binomial(self):
        design = DesignSpec(participants=30, factors=[("genre", 2)], items_per_group=6)
        effects = EffectSpec(
            FixedEffects(0.5, {"genre": 0.2}, link="logit"),
            random=[VarianceSpec(PARTICIPANT, {"intercept": 0.1}), VarianceSpec(ITEM, {"intercept": 0.05})],
            residual_sd=0.0,
        )
        fit = fit_model(
            _simulate(design, effects),
            ModelSpec(fixed=("genre",), random=(RandomTerm(PARTICIPANT), RandomTerm(ITEM)), family="binomial"),
        )
        assert {f"{PARTICIPANT}:intercept", f"{ITEM}:intercept"} <= set(fit.variance_components)


class TestBinomialPower:
    MODEL = ModelSpec(fixed=("genre",), family="binomial")

    def test_glm_power_run(self):
        design = DesignSpec(participants=60, factors=[("genre", 2)], items_per_group=2)
        effects = EffectSpec(FixedEffects(0.5, {"genre": 0.4}, link="logit"), residual_sd=0.0)
        result = estimate_power(LME_N_SIMS_QUICK, design, effects, TermPValue(self.MODEL, "genre"), seed=SEED)
        assert result.n_skipped == 0
        assert result.power > 0.9

    def test_separated_outcomes_fail(self):
        """Fully separated data must fail the fit rather than report p close to 1."""
        design = DesignSpec(participants=30, factors=[("genre", 2)], items_per_group=2)
        effects = EffectSpec(FixedEffects(0.5, {"genre": 1.0}, link="logit"), residual_sd=0.0)
        with pytest.raises(RuntimeError, match="PerfectSeparation"):
            estimate_power(LME_N_SIMS_QUICK, design, effects, TermPValue(self.MODEL, "genre"), seed=SEED)
