"""
Simulation execution for LMMPower.

Each repetition builds the design, samples fresh random effects and
residuals, synthesizes a response, and hands the dataset to a
decision-statistic extractor (usually ``TermPValue``). Repetition ``i`` is
seeded with ``seed + i``, so results do not depend on whether repetitions
run sequentially or in worker processes.

Fits that fail (non-convergence, numerical errors, non-finite p-values)
are excluded from both the numerator and the denominator of the power
estimate and counted by reason. The run aborts when the failure rate
exceeds ``max_failed_simulations``.
"""

import math
import warnings
from typing import Callable, Iterator, List, Optional, Sequence, Union

from ..errors import DomainError, NonconvergentFit, StructuralSingularity, UnknownTerm
from ..progress import SimulationCancelled
from ..stats.random_source import RandomSource
from ..utils.validators import (
    _validate_alpha,
    _validate_failure_threshold,
    _validate_participant_counts,
    _validate_power,
    _validate_seed,
    _validate_simulations,
)
from .design import PARTICIPANT, Design, DesignSpec
from .response import EffectSpec, check_effects_against_design, simulate_dataset
from .results import PowerResult, RepetitionOutcome, SampleSizeResult, build_power_result

Extractor = Callable[[Design], object]

# Errors that signal a broken configuration rather than an unlucky dataset
_PROPAGATE = (DomainError, UnknownTerm, ImportError, SimulationCancelled)


def _decision(value):
    """Read ``(p_value, singular)`` from an extractor's return value."""
    p_value = getattr(value, "p_value", value)
    singular = bool(getattr(value, "singular", False))
    return float(p_value), singular


def _run_repetition(
    index: int,
    design: Union[Design, DesignSpec],
    effects: EffectSpec,
    extractor: Extractor,
    seed: Optional[int],
    fail_fast: bool = False,
) -> RepetitionOutcome:
    """Execute one repetition.

    Module-level so joblib can pickle it for worker processes.

    Raises:
        NonconvergentFit: Only when *fail_fast* is set and the fit fails.
    """
    source = RandomSource.for_repetition(seed, index)
    base = design.build(source) if isinstance(design, DesignSpec) else design
    data = simulate_dataset(base, effects, source)

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", StructuralSingularity)
            warnings.simplefilter("ignore", RuntimeWarning)
            p_value, singular = _decision(extractor(data))
    except _PROPAGATE:
        raise
    except NonconvergentFit as e:
        if fail_fast:
            raise
        return RepetitionOutcome(index, None, False, f"NonconvergentFit: {e}")
    except Exception as e:
        if fail_fast:
            raise NonconvergentFit(f"Repetition {index} failed: {type(e).__name__}: {e}") from e
        return RepetitionOutcome(index, None, False, type(e).__name__)

    if not math.isfinite(p_value):
        if fail_fast:
            raise NonconvergentFit(f"Repetition {index} produced a non-finite p-value")
        return RepetitionOutcome(index, None, singular, "Non-finite p-value")

    return RepetitionOutcome(index, p_value, singular, None)


class SimulationRunner:
    """Executes Monte Carlo repetitions and aggregates them into power.

    Args:
        n_simulations: Number of repetitions.
        seed: Base seed; repetition ``i`` uses ``seed + i``. ``None`` gives
            non-reproducible runs.
        alpha: Significance level.
        parallel: Run repetitions in joblib worker processes.
        n_cores: Number of worker processes when *parallel* is set.
        max_failed_simulations: Maximum tolerated share of skipped fits
            (0-1). Exceeding it raises ``RuntimeError``.
        fail_fast: Raise on the first failed fit instead of skipping it.
    """

    def __init__(
        self,
        n_simulations: int,
        seed: Optional[int] = None,
        alpha: float = 0.05,
        parallel: bool = False,
        n_cores: int = 1,
        max_failed_simulations: float = 0.1,
        fail_fast: bool = False,
    ):
        _validate_simulations(n_simulations).raise_if_invalid()
        _validate_seed(seed).raise_if_invalid()
        _validate_alpha(alpha).raise_if_invalid()
        _validate_failure_threshold(max_failed_simulations).raise_if_invalid()

        self.n_simulations = n_simulations
        self.seed = seed
        self.alpha = alpha
        self.parallel = parallel
        self.n_cores = n_cores
        self.max_failed_simulations = max_failed_simulations
        self.fail_fast = fail_fast

    def run_power_simulations(
        self,
        design: Union[Design, DesignSpec],
        effects: EffectSpec,
        extractor: Extractor,
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> PowerResult:
        """Run all repetitions and estimate power.

        Args:
            design: A fixed ``Design`` reused by every repetition, or a
                ``DesignSpec`` rebuilt per repetition (needed when nesting
                groups are drawn at random).
            effects: Data-generating process.
            extractor: ``extractor(dataset)`` returns a p-value or anything
                with ``p_value`` (and optionally ``singular``) attributes.
            progress: Optional ``ProgressReporter`` (advanced by 1 per
                repetition).
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            A ``PowerResult``.

        Raises:
            DomainError: If *effects* do not match *design*.
            SimulationCancelled: If *cancel_check* fires.
            NonconvergentFit: On the first failed fit when ``fail_fast``.
            RuntimeError: If every fit fails or the failure rate exceeds
                ``max_failed_simulations``.
        """
        probe = design.build(RandomSource(self.seed)) if isinstance(design, DesignSpec) else design
        check_effects_against_design(probe, effects)
        if progress is not None:
            progress.begin_block(len(probe.level_ids(PARTICIPANT)))

        outcomes = self._collect(design, effects, extractor, progress, cancel_check)
        result = build_power_result(outcomes, self.alpha, self.n_simulations, self.seed)

        if result.n_used == 0:
            raise RuntimeError(f"All simulations failed: {result.failure_reasons}")

        failed_pct = result.n_skipped / self.n_simulations
        if failed_pct > self.max_failed_simulations:
            raise RuntimeError(
                f"Too many failed simulations: {result.n_skipped}/{self.n_simulations} "
                f"({failed_pct:.1%}), threshold: {self.max_failed_simulations:.1%}"
            )
        elif result.n_skipped > 0:
            warnings.warn(f"{result.n_skipped} simulations failed ({failed_pct:.1%}) and were excluded from the power estimate")

        singular_pct = result.n_singular / result.n_used
        if singular_pct > 0.10:
            warnings.warn(
                f"Singular fit in {result.n_singular}/{result.n_used} simulations ({singular_pct:.1%}). "
                f"Some variance components are estimated at zero; consider simplifying the random-effect structure.",
                StructuralSingularity,
            )

        return result

    def _tasks(self, design, effects, extractor):
        for index in range(self.n_simulations):
            yield index, design, effects, extractor, self.seed, self.fail_fast

    def _run_sequential(self, design, effects, extractor, progress, cancel_check) -> List[RepetitionOutcome]:
        outcomes = []
        for task in self._tasks(design, effects, extractor):
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            outcomes.append(_run_repetition(*task))
            if progress is not None:
                progress.advance(1)
        return outcomes

    def _run_parallel(self, design, effects, extractor, progress, cancel_check) -> List[RepetitionOutcome]:
        from joblib import Parallel, delayed

        generator: Iterator[RepetitionOutcome] = Parallel(
            n_jobs=self.n_cores,
            backend="loky",
            verbose=0,
            return_as="generator",
        )(delayed(_run_repetition)(*task) for task in self._tasks(design, effects, extractor))

        outcomes = []
        for outcome in generator:
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            outcomes.append(outcome)
            if progress is not None:
                progress.advance(1)
        return outcomes

    def _collect(self, design, effects, extractor, progress, cancel_check) -> List[RepetitionOutcome]:
        if not (self.parallel and self.n_cores > 1):
            return self._run_sequential(design, effects, extractor, progress, cancel_check)

        try:
            return self._run_parallel(design, effects, extractor, progress, cancel_check)
        except (NonconvergentFit,) + _PROPAGATE:
            raise
        except Exception as e:
            warnings.warn(f"Parallel execution failed ({e}). Falling back to sequential.")
            if progress is not None:
                progress.restart_block()
            return self._run_sequential(design, effects, extractor, progress, cancel_check)


def estimate_power(
    repetitions: int,
    design: Union[Design, DesignSpec],
    effects: EffectSpec,
    extractor: Extractor,
    alpha: float = 0.05,
    seed: Optional[int] = None,
    **runner_kwargs,
) -> PowerResult:
    """Estimate power as the rejection rate across *repetitions* datasets.

    Example:
        >>> from lmmpower import DesignSpec, EffectSpec, FixedEffects, ModelSpec, TermPValue
        >>> result = estimate_power(
        ...     200,
        ...     DesignSpec(40, [("genre", 2)], items_per_group=10),
        ...     EffectSpec(FixedEffects(500, {"genre": 20}), residual_sd=100),
        ...     TermPValue(ModelSpec(fixed=("genre",)), "genre"),
        ...     seed=2137,
        ... )
    """
    runner = SimulationRunner(repetitions, seed=seed, alpha=alpha, **runner_kwargs)
    return runner.run_power_simulations(design, effects, extractor)


def power_curve(
    participant_counts: Sequence[int],
    design: DesignSpec,
    effects: EffectSpec,
    extractor: Extractor,
    runner: SimulationRunner,
    target_power: float = 0.8,
    progress=None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> SampleSizeResult:
    """Estimate power for each participant count in turn.

    Every count reuses the runner's seed, so curves are reproducible and
    neighbouring counts share common random numbers.
    """
    result = _validate_participant_counts(participant_counts)
    for warning in result.warnings:
        warnings.warn(warning)
    result.raise_if_invalid()
    _validate_power(target_power).raise_if_invalid()

    counts = [int(c) for c in participant_counts]
    results = []
    for count in counts:
        if cancel_check is not None and cancel_check():
            raise SimulationCancelled("Simulation cancelled by user")
        results.append(runner.run_power_simulations(design.with_participants(count), effects, extractor, progress, cancel_check))

    return SampleSizeResult(counts, results, target_power)
