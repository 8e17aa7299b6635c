"""
Validation utilities for LMMPower.

This module provides validation functions for simulation settings and
for the parameters of the data-generating process. Every check returns a
``_ValidationResult``; callers decide when to raise.
"""

import math
import numbers
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

from ..errors import DomainError

__all__ = []


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self):
        """Raise ``DomainError`` if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise DomainError(error_msg)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type (``bool`` never counts as a number)."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within the closed range [min_val, max_val]."""
        if isinstance(value, float) and not math.isfinite(value):
            return f"{name} must be finite, got {value}"
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        return _ValidationResult(False, [type_error], [])

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_count(value: Any, name: str, min_val: int = 1) -> _ValidationResult:
    """Validate a cardinality (participants, items, levels)."""
    return _validate_numeric_parameter(value, name, expected_types=(numbers.Integral,), min_val=min_val)


def _validate_sd(value: Any, name: str) -> _ValidationResult:
    """Validate a standard deviation (finite, non-negative)."""
    return _validate_numeric_parameter(value, name, min_val=0.0)


def _validate_correlation(value: Any, name: str = "correlation") -> _ValidationResult:
    """Validate a correlation coefficient in [-1, 1]."""
    return _validate_numeric_parameter(value, name, min_val=-1.0, max_val=1.0)


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate alpha level parameter (0-0.25]."""
    result = _validate_numeric_parameter(alpha, "Alpha", min_val=0, max_val=0.25)
    if result.is_valid and alpha == 0:
        return _ValidationResult(False, ["Alpha must be greater than 0"], [])
    return result


def _validate_power(power: Any) -> _ValidationResult:
    """Validate target power as a proportion (0-1)."""
    return _validate_numeric_parameter(power, "Target power", min_val=0, max_val=1)


def _validate_simulations(n_simulations: Any) -> _ValidationResult:
    """Validate the number of simulation repetitions."""
    result = _validate_count(n_simulations, "Number of simulations")
    if result.is_valid and n_simulations < 500:
        result.warnings.append(f"Low simulation count ({n_simulations}). Consider using at least 500 for reliable results.")
    return result


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate a base seed (non-negative int or ``None``)."""
    if seed is None:
        return _ValidationResult(True, [], [])
    return _validate_numeric_parameter(seed, "seed", expected_types=(int,), min_val=0, max_val=3_000_000_000)


def _validate_failure_threshold(value: Any) -> _ValidationResult:
    """Validate the maximum tolerated fraction of skipped fits."""
    return _validate_numeric_parameter(value, "max_failed_simulations", min_val=0.0, max_val=1.0)


def _validate_probabilities(probabilities: Sequence[float], n_levels: int, tol: float = 1e-8) -> _ValidationResult:
    """Validate categorical probabilities: one per level, non-negative, summing to 1."""
    errors: List[str] = []

    if len(probabilities) != n_levels:
        errors.append(f"Expected {n_levels} probabilities (one per level), got {len(probabilities)}")
        return _ValidationResult(False, errors, [])

    for p in probabilities:
        error = _validator._check_range(p, 0.0, 1.0, "probability")
        if error:
            errors.append(error)

    if not errors and abs(sum(probabilities) - 1.0) > tol:
        errors.append(f"Probabilities must sum to 1, got {sum(probabilities):.6g}")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_participant_counts(counts: Any) -> _ValidationResult:
    """Validate a sweep of participant counts (positive, strictly increasing)."""
    errors: List[str] = []
    counts = list(counts)
    if not counts:
        return _ValidationResult(False, ["At least one participant count is required"], [])

    for c in counts:
        error = _validator._check_type(c, (numbers.Integral,), "participant count") or _validator._check_range(c, 1, None, "participant count")
        if error:
            errors.append(error)

    if not errors and any(b <= a for a, b in zip(counts, counts[1:])):
        errors.append("Participant counts must be strictly increasing")

    warnings: List[str] = []
    if len(counts) > 50:
        warnings.append(f"Large number of participant counts to test ({len(counts)}). This may take significant time.")

    return _ValidationResult(len(errors) == 0, errors, warnings)


def _validate_parallel_settings(enable: Any, n_cores: Optional[int]) -> Tuple[Tuple[bool, int], _ValidationResult]:
    """Validate parallel processing settings.

    Args:
        enable: ``True`` or ``False``.
        n_cores: Number of worker processes (positive int or ``None`` for
            half of the available cores).

    Returns:
        ((enable, n_cores), ValidationResult)
    """
    import multiprocessing as mp

    errors = []

    if enable not in (True, False):
        errors.append(f"enable must be True or False, got {enable!r}")
        return (False, 1), _ValidationResult(False, errors, [])

    max_cores = mp.cpu_count() or 1
    validated_n_cores = max(1, max_cores // 2)

    if n_cores is not None:
        if isinstance(n_cores, bool) or not isinstance(n_cores, int) or n_cores <= 0:
            errors.append(f"n_cores must be a positive integer, got {n_cores}")
        else:
            validated_n_cores = min(n_cores, max_cores)

    return (bool(enable), validated_n_cores), _ValidationResult(len(errors) == 0, errors, [])
