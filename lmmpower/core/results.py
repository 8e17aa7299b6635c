"""
Results processing for LMMPower.

This module turns per-repetition outcomes into power estimates, collects
sample-size sweeps, and compares fitted estimates to the ground-truth
parameters used for simulation.
"""

from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from ..stats.fitting import RESIDUAL, FitResult
from .response import EffectSpec


class RepetitionOutcome(NamedTuple):
    """What one repetition produced.

    ``p_value`` is ``None`` for a skipped fit; ``failure_reason`` then says why.
    """

    index: int
    p_value: Optional[float]
    singular: bool = False
    failure_reason: Optional[str] = None


@dataclass(frozen=True, eq=False)
class PowerResult:
    """Power estimate from one simulation run.

    Attributes:
        power: Rejection rate among completed repetitions (0-1).
        alpha: Significance level.
        n_simulations: Repetitions requested.
        n_used: Repetitions with a valid p-value (the denominator).
        n_skipped: Repetitions whose fit failed or gave no finite p-value.
        n_singular: Completed repetitions with a boundary (singular) fit.
        p_values: One entry per repetition in index order; ``NaN`` where
            skipped.
        failure_reasons: Reason -> count for skipped repetitions.
        seed: Base seed of the run.
    """

    power: float
    alpha: float
    n_simulations: int
    n_used: int
    n_skipped: int
    n_singular: int
    p_values: np.ndarray
    failure_reasons: Dict[str, int] = field(default_factory=dict)
    seed: Optional[int] = None

    @property
    def n_rejections(self) -> int:
        valid = self.p_values[~np.isnan(self.p_values)]
        return int(np.sum(valid < self.alpha))

    def confidence_interval(self, level: float = 0.95) -> Tuple[float, float]:
        """Wilson score interval for the power estimate."""
        n = self.n_used
        if n == 0:
            return (0.0, 1.0)
        z = norm.ppf(0.5 + level / 2)
        p = self.power
        denom = 1 + z**2 / n
        centre = (p + z**2 / (2 * n)) / denom
        half = z * np.sqrt(p * (1 - p) / n + z**2 / (4 * n**2)) / denom
        return (max(0.0, centre - half), min(1.0, centre + half))

    def summary(self) -> str:
        lo, hi = self.confidence_interval()
        lines = [
            f"Power: {self.power:.3f} (95% CI {lo:.3f}-{hi:.3f}) at alpha={self.alpha}",
            f"Repetitions: {self.n_used} used / {self.n_simulations} requested, {self.n_skipped} skipped, {self.n_singular} singular",
        ]
        for reason, count in sorted(self.failure_reasons.items(), key=lambda kv: -kv[1]):
            lines.append(f"  skipped {count}x: {reason}")
        return "\n".join(lines)

    def __str__(self):
        return self.summary()


def build_power_result(
    outcomes: Sequence[RepetitionOutcome],
    alpha: float,
    n_simulations: int,
    seed: Optional[int] = None,
) -> PowerResult:
    """Aggregate repetition outcomes (in any order) into a ``PowerResult``.

    Skipped repetitions leave both numerator and denominator.
    """
    ordered = sorted(outcomes, key=lambda o: o.index)
    p_values = np.array([np.nan if o.p_value is None else o.p_value for o in ordered], dtype=float)
    used = ~np.isnan(p_values)
    n_used = int(used.sum())

    failure_reasons: Dict[str, int] = {}
    for o in ordered:
        if o.p_value is None:
            reason = o.failure_reason or "Unknown"
            failure_reasons[reason] = failure_reasons.get(reason, 0) + 1

    n_rejected = int(np.sum(p_values[used] < alpha))
    power = n_rejected / n_used if n_used > 0 else float("nan")

    return PowerResult(
        power=power,
        alpha=alpha,
        n_simulations=n_simulations,
        n_used=n_used,
        n_skipped=len(ordered) - n_used,
        n_singular=sum(1 for o in ordered if o.p_value is not None and o.singular),
        p_values=p_values,
        failure_reasons=failure_reasons,
        seed=seed,
    )


@dataclass(frozen=True, eq=False)
class SampleSizeResult:
    """Power across a sweep of participant counts."""

    participant_counts: List[int]
    results: List[PowerResult]
    target_power: float = 0.8

    @property
    def powers(self) -> List[float]:
        return [r.power for r in self.results]

    @property
    def first_achieved(self) -> Optional[int]:
        """Smallest participant count reaching ``target_power`` (``None`` if none does)."""
        for count, result in zip(self.participant_counts, self.results):
            if result.power >= self.target_power:
                return count
        return None

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for count, r in zip(self.participant_counts, self.results):
            lo, hi = r.confidence_interval()
            rows.append(
                {
                    "participants": count,
                    "power": r.power,
                    "ci_lower": lo,
                    "ci_upper": hi,
                    "n_used": r.n_used,
                    "n_skipped": r.n_skipped,
                    "n_singular": r.n_singular,
                }
            )
        return pd.DataFrame(rows)


def compare_to_truth(fit: FitResult, effects: EffectSpec, level: float = 0.95) -> pd.DataFrame:
    """Put recovered estimates next to the parameters used for simulation.

    Fixed effects are compared coefficient by coefficient (with a Wald
    interval and whether it covers the true value). Random-effect and
    residual standard deviations are compared where the fit reports them.
    Binomial fits estimate on the logit scale, so their fixed effects are
    not on the scale of the simulated probabilities.

    Returns:
        DataFrame with columns ``kind``, ``term``, ``true``, ``estimate``,
        ``std_error``, ``bias`` and ``covered``.
    """
    z = norm.ppf(0.5 + level / 2)
    rows = []

    for term, row in fit.coefficients.iterrows():
        true = effects.fixed.coefficient(term)
        est, se = float(row["estimate"]), float(row["std_error"])
        rows.append(
            {
                "kind": "fixed",
                "term": term,
                "true": true,
                "estimate": est,
                "std_error": se,
                "bias": est - true,
                "covered": bool(abs(est - true) <= z * se) if np.isfinite(se) else False,
            }
        )

    for spec in effects.random:
        for effect, sd in spec.sds:
            key = f"{spec.grouping}:{effect}"
            est = fit.variance_components.get(key, np.nan)
            rows.append({"kind": "random_sd", "term": key, "true": sd, "estimate": est, "std_error": np.nan, "bias": est - sd, "covered": None})

    if RESIDUAL in fit.variance_components:
        est = fit.variance_components[RESIDUAL]
        rows.append(
            {
                "kind": "residual_sd",
                "term": RESIDUAL,
                "true": effects.residual_sd,
                "estimate": est,
                "std_error": np.nan,
                "bias": est - effects.residual_sd,
                "covered": None,
            }
        )

    frame = pd.DataFrame(rows, columns=["kind", "term", "true", "estimate", "std_error", "bias", "covered"])
    return frame
