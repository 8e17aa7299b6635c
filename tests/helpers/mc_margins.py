"""
Monte Carlo margin-of-error calculations.

Single source of truth for all MC tolerance computations.
"""

import numpy as np

from tests.config import ALLOWED_BIAS, MC_Z


def mc_proportion_margin(p, n, z=MC_Z):
    """
    MC margin of error for a proportion (0-1 scale) estimated from *n* draws.
    """
    return z * np.sqrt(p * (1 - p) / n) + ALLOWED_BIAS


def mc_mean_margin(sd, n, z=MC_Z):
    """MC margin of error for a sample mean with known SD."""
    return z * sd / np.sqrt(n)
