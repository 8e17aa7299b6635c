"""
Seeded random variate source.

Wraps a ``numpy.random.Generator`` so that every draw in the simulation
pipeline comes from an explicit, caller-owned stream. No function in
LMMPower touches the global numpy random state.
"""

from typing import Optional, Sequence, Union

import numpy as np

from ..errors import DomainError

PSD_TOLERANCE = 1e-10
PROBABILITY_SUM_TOLERANCE = 1e-8


class RandomSource:
    """Reproducible source of normal, Bernoulli, multivariate-normal and
    categorical draws.

    Args:
        seed: Integer seed. ``None`` draws fresh OS entropy.

    Example:
        >>> source = RandomSource(2137)
        >>> source.normal(3, mean=0.0, sd=1.0).shape
        (3,)
    """

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    @classmethod
    def for_repetition(cls, base_seed: Optional[int], index: int) -> "RandomSource":
        """Independent stream for repetition *index* (seeded ``base_seed + index``)."""
        if base_seed is None:
            return cls(None)
        return cls(base_seed + index)

    def normal(self, n: int, mean: float = 0.0, sd: float = 1.0) -> np.ndarray:
        """Draw *n* independent normal values."""
        if n < 0:
            raise DomainError(f"n must be non-negative, got {n}")
        if not np.isfinite(sd) or sd < 0:
            raise DomainError(f"Standard deviation must be a non-negative number, got {sd}")
        return self._rng.normal(mean, sd, size=n)

    def bernoulli(self, p: Union[float, np.ndarray]) -> Union[int, np.ndarray]:
        """Draw a 0/1 outcome with success probability *p*.

        A scalar *p* gives a single ``int``; an array gives one draw per entry.
        """
        p_arr = np.asarray(p, dtype=float)
        if not np.all(np.isfinite(p_arr)) or np.any(p_arr < 0.0) or np.any(p_arr > 1.0):
            raise DomainError("Bernoulli probability must lie in [0, 1]")
        draws = self._rng.binomial(1, p_arr)
        if p_arr.ndim == 0:
            return int(draws)
        return draws.astype(np.int64)

    def multivariate_normal(self, n: int, mean: Sequence[float], cov: np.ndarray) -> np.ndarray:
        """Draw *n* vectors from MVN(mean, cov).

        Returns:
            Array of shape ``(n, k)``.

        Raises:
            DomainError: If *cov* is not a symmetric positive semi-definite
                ``(k, k)`` matrix matching *mean*.
        """
        mean_arr = np.asarray(mean, dtype=float)
        cov_arr = np.asarray(cov, dtype=float)
        _check_covariance(cov_arr, len(mean_arr))
        return self._rng.multivariate_normal(mean_arr, cov_arr, size=n, method="eigh")

    def categorical(self, n: int, levels: Sequence, probabilities: Sequence[float]) -> np.ndarray:
        """Draw *n* labels from *levels* with the given probabilities."""
        probs = np.asarray(probabilities, dtype=float)
        if len(levels) == 0:
            raise DomainError("At least one level is required")
        if probs.shape != (len(levels),):
            raise DomainError(f"Expected {len(levels)} probabilities, got {probs.size}")
        if np.any(probs < 0) or not np.all(np.isfinite(probs)):
            raise DomainError("Probabilities must be non-negative")
        if abs(probs.sum() - 1.0) > PROBABILITY_SUM_TOLERANCE:
            raise DomainError(f"Probabilities must sum to 1, got {probs.sum():.6g}")
        idx = self._rng.choice(len(levels), size=n, p=probs / probs.sum())
        return np.asarray(levels, dtype=object)[idx]


def _check_covariance(cov: np.ndarray, k: int) -> None:
    if cov.shape != (k, k):
        raise DomainError(f"Covariance matrix must be {k}x{k}, got shape {cov.shape}")
    if not np.all(np.isfinite(cov)):
        raise DomainError("Covariance matrix contains non-finite values")
    if not np.allclose(cov, cov.T):
        raise DomainError("Covariance matrix must be symmetric")
    eigenvalues = np.linalg.eigvalsh(cov)
    scale = max(1.0, float(np.max(np.abs(eigenvalues))))
    if eigenvalues.min() < -PSD_TOLERANCE * scale:
        raise DomainError(f"Covariance matrix is not positive semi-definite (min eigenvalue {eigenvalues.min():.3g})")
