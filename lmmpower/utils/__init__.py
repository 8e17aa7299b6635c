"""
LMMPower utilities package.
Internal utilities - not part of public API.
"""

from . import validators

__all__ = ["validators"]
