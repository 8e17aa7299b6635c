"""Random variate generation and model fitting."""

from . import fitting as fitting
from . import random_source as random_source
