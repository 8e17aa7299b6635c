"""
Correlated random intercepts and slopes reproduce the requested correlation.
"""

import numpy as np

from lmmpower.core.design import PARTICIPANT
from lmmpower.core.random_effects import VarianceSpec, sample_effects
from lmmpower.stats.random_source import RandomSource
from tests.config import SEED

SPEC = VarianceSpec(PARTICIPANT, {"intercept": 7.0, "genre": 3.5}, correlation=-0.2)


def _correlation(n, seed):
    table = sample_effects(range(1, n + 1), SPEC, RandomSource(seed))
    return np.corrcoef(table.values["intercept"], table.values["genre"])[0, 1]


class TestRandomEffectCorrelation:
    def test_hundred_participants_on_average(self):
        correlations = [_correlation(100, SEED + k) for k in range(200)]
        assert -0.35 <= np.mean(correlations) <= -0.10

    def test_large_draw_close_to_rho(self):
        assert abs(_correlation(10_000, SEED) - (-0.2)) < 0.05

    def test_standard_deviations(self):
        table = sample_effects(range(10_000), SPEC, RandomSource(SEED))
        assert abs(table.values["intercept"].std() - 7.0) < 0.3
        assert abs(table.values["genre"].std() - 3.5) < 0.15

    def test_same_seed_same_table(self):
        a = sample_effects(range(100), SPEC, RandomSource(SEED)).values
        b = sample_effects(range(100), SPEC, RandomSource(SEED)).values
        assert a.equals(b)
