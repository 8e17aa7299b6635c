"""
Shared pytest fixtures for LMMPower tests.
"""

import contextlib
import io

import pytest

from lmmpower import (
    DesignSpec,
    EffectSpec,
    FixedEffects,
    GroupingFactor,
    ModelSpec,
    RandomSource,
    RandomTerm,
    VarianceSpec,
)
from lmmpower.core.design import ITEM, PARTICIPANT
from tests.config import (
    RT_GENRE_EFFECT,
    RT_INTERCEPT,
    RT_ITEM_SD,
    RT_PARTICIPANT_SD,
    RT_RESIDUAL_SD,
    SEED,
)


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: Monte Carlo runs with many repetitions")
    config.addinivalue_line("markers", "lme: tests that fit mixed-effects models")


@pytest.fixture
def suppress_output():
    """Suppress stdout during a test."""
    with contextlib.redirect_stdout(io.StringIO()):
        yield


@pytest.fixture
def source():
    """Seeded random source."""
    return RandomSource(SEED)


@pytest.fixture
def between_design():
    """100 participants split over a two-level between-participant condition."""
    return DesignSpec(participants=100, factors=[GroupingFactor("condition", between=True)])


@pytest.fixture
def between_effects():
    """Small standardised condition effect (d = 0.2), no random effects."""
    return EffectSpec(FixedEffects(0.5, {"condition": 0.2}), residual_sd=1.0)


@pytest.fixture
def crossed_design():
    """Participants crossed with a within-participant genre factor and items."""
    return DesignSpec(participants=20, factors=[("genre", 2)], items_per_group=8)


@pytest.fixture
def crossed_effects():
    """Reading-time style process with participant and item intercepts."""
    return EffectSpec(
        FixedEffects(RT_INTERCEPT, {"genre": RT_GENRE_EFFECT}),
        random=[
            VarianceSpec(PARTICIPANT, {"intercept": RT_PARTICIPANT_SD}),
            VarianceSpec(ITEM, {"intercept": RT_ITEM_SD}),
        ],
        residual_sd=RT_RESIDUAL_SD,
    )


@pytest.fixture
def crossed_model():
    return ModelSpec(fixed=("genre",), random=(RandomTerm(PARTICIPANT), RandomTerm(ITEM)))
