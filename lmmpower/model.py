"""
LMMPower - simulation-based power analysis for mixed-effects designs.

This module provides the ``LMMPower`` class that ties together design
construction, data synthesis, model fitting and the Monte Carlo loop.
"""

import multiprocessing as mp
from typing import Callable, Optional, Sequence, Union

import pandas as pd

from .core import (
    Design,
    DesignSpec,
    EffectSpec,
    PowerResult,
    SampleSizeResult,
    SimulationRunner,
    compare_to_truth,
    power_curve,
    simulate_dataset,
)
from .core.response import check_effects_against_design
from .errors import UnknownTerm
from .progress import PrintReporter, ProgressReporter
from .stats.fitting import FitResult, ModelSpec, TermPValue, fit_model
from .stats.random_source import RandomSource
from .utils.validators import (
    _validate_alpha,
    _validate_failure_threshold,
    _validate_parallel_settings,
    _validate_power,
    _validate_seed,
    _validate_simulations,
)


class LMMPower:
    """Monte Carlo power analysis for a mixed-effects design.

    The design, the data-generating process and the analysis model are
    immutable spec objects; run settings are changed through chained
    ``set_*`` methods.

    Attributes:
        seed: Base random seed (default: 2137).
        alpha: Significance level (default: 0.05).
        n_simulations: Number of repetitions (default: 1000).
        parallel: Run repetitions in worker processes (default: ``False``).
        n_cores: Worker processes used when parallel.
        max_failed_simulations: Maximum tolerated share of skipped fits
            (default: 0.1).
        fail_fast: Abort on the first failed fit (default: ``False``).

    Example:
        >>> design = DesignSpec(participants=100, factors=[GroupingFactor("condition", between=True)])
        >>> effects = EffectSpec(FixedEffects(0.5, {"condition": 0.2}), residual_sd=1.0)
        >>> model = LMMPower(design, effects, ModelSpec(fixed=("condition",)), target="condition")
        >>> model.set_simulations(1000).find_power().power
    """

    def __init__(
        self,
        design: DesignSpec,
        effects: EffectSpec,
        model: ModelSpec,
        target: str,
    ):
        """Store the specs and set run settings to their defaults.

        Args:
            design: Design recipe (participants, factors, items, nesting).
            effects: Fixed effects, random-effect SDs and residual SD.
            model: Analysis model fitted to every simulated dataset.
            target: Fixed term whose p-value decides each repetition.

        Raises:
            DomainError: If *effects* name predictors or groupings that
                *design* does not produce.
            UnknownTerm: If *target* is neither ``"intercept"`` nor one of the
                model's fixed predictors.
        """
        if target != "intercept" and target not in model.fixed:
            raise UnknownTerm(f"Target '{target}' is not a fixed term of the model. Available: {', '.join(('intercept',) + model.fixed)}")

        self.design = design
        self.effects = effects
        self.model = model
        self.target = target

        self.seed: Optional[int] = 2137
        self.alpha = 0.05
        self.n_simulations = 1000
        self.parallel = False
        self.n_cores = max(1, (mp.cpu_count() or 1) // 2)
        self.max_failed_simulations = 0.1
        self.fail_fast = False

        check_effects_against_design(self.design.build(RandomSource(self.seed)), self.effects)

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_parallel(self, enable: bool = True, n_cores: Optional[int] = None):
        """Enable or disable parallel repetitions (needs ``joblib``).

        Args:
            enable: ``True`` for a joblib process pool, ``False`` for
                sequential execution.
            n_cores: Worker processes. Defaults to ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if enable is False:
            self.parallel, self.n_cores = False, 1
            return self

        try:
            import joblib  # noqa: F401 - availability check only
        except ImportError:
            print("Warning: joblib not available. Install with: pip install LMMPower[parallel]")
            print("Warning: Continuing with sequential processing.")
            self.parallel = False
            return self

        settings, result = _validate_parallel_settings(enable, n_cores)
        result.raise_if_invalid()
        self.parallel, self.n_cores = settings
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set the base seed. ``None`` enables non-reproducible seeding.

        Returns:
            self: For method chaining.
        """
        _validate_seed(seed).raise_if_invalid()
        self.seed = seed
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level (0-0.25).

        Returns:
            self: For method chaining.
        """
        _validate_alpha(alpha).raise_if_invalid()
        self.alpha = float(alpha)
        return self

    def set_simulations(self, n_simulations: int):
        """Set the number of repetitions per power estimate.

        Returns:
            self: For method chaining.
        """
        result = _validate_simulations(n_simulations)
        for warning in result.warnings:
            print(f"Warning: {warning}")
        result.raise_if_invalid()
        self.n_simulations = n_simulations
        return self

    def set_max_failed_simulations(self, percentage: float):
        """Set the maximum tolerated share (0-1) of skipped fits.

        Skipped fits are excluded from the estimate; beyond this share the
        run raises instead of returning an unreliable estimate.

        Returns:
            self: For method chaining.
        """
        _validate_failure_threshold(percentage).raise_if_invalid()
        self.max_failed_simulations = float(percentage)
        return self

    def set_fail_fast(self, enable: bool = True):
        """Abort on the first failed fit instead of skipping it.

        Returns:
            self: For method chaining.
        """
        self.fail_fast = bool(enable)
        return self

    # =========================================================================
    # Single datasets
    # =========================================================================

    def simulate(self, seed: Optional[int] = None) -> Design:
        """Build the design and synthesize one dataset."""
        source = RandomSource(self.seed if seed is None else seed)
        return simulate_dataset(self.design.build(source), self.effects, source)

    def fit(self, dataset: Design) -> FitResult:
        """Fit the analysis model to *dataset*."""
        return fit_model(dataset, self.model)

    def recover(self, seed: Optional[int] = None) -> pd.DataFrame:
        """Simulate one dataset, fit it, and compare estimates to the true values."""
        return compare_to_truth(self.fit(self.simulate(seed)), self.effects)

    # =========================================================================
    # Power analysis
    # =========================================================================

    def _runner(self) -> SimulationRunner:
        return SimulationRunner(
            self.n_simulations,
            seed=self.seed,
            alpha=self.alpha,
            parallel=self.parallel,
            n_cores=self.n_cores,
            max_failed_simulations=self.max_failed_simulations,
            fail_fast=self.fail_fast,
        )

    def _reporter(self, progress_callback, print_results: bool, n_participant_counts: int = 1):
        if progress_callback is None:
            callback = PrintReporter() if print_results else None
        elif progress_callback is False:
            callback = None
        else:
            callback = progress_callback

        if callback is None:
            return None
        return ProgressReporter(self.n_simulations, callback, n_blocks=n_participant_counts)

    def find_power(
        self,
        print_results: bool = False,
        progress_callback: Union[None, bool, Callable[[int, int], None]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> PowerResult:
        """Estimate power for the configured design.

        Args:
            print_results: Print a summary (and default console progress).
            progress_callback: ``None`` for console progress when
                *print_results* is set, ``False`` to disable, or a
                ``(current, total)`` callable.
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            A ``PowerResult``.
        """
        reporter = self._reporter(progress_callback, print_results)
        if reporter is not None:
            reporter.start()

        extractor = TermPValue(self.model, self.target)
        result = self._runner().run_power_simulations(self.design, self.effects, extractor, reporter, cancel_check)

        if reporter is not None:
            reporter.finish()
        if print_results:
            print(f"\n{'=' * 80}")
            print("MONTE CARLO POWER ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(f"Target: {self.target}, participants: {self.design.participants}")
            print(result.summary())
        return result

    def find_sample_size(
        self,
        participant_counts: Sequence[int],
        target_power: float = 0.8,
        print_results: bool = False,
        progress_callback: Union[None, bool, Callable[[int, int], None]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> SampleSizeResult:
        """Estimate power at each participant count.

        Args:
            participant_counts: Strictly increasing participant counts.
            target_power: Power (0-1) that ``first_achieved`` looks for.

        Returns:
            A ``SampleSizeResult``.
        """
        _validate_power(target_power).raise_if_invalid()
        reporter = self._reporter(progress_callback, print_results, len(participant_counts))
        if reporter is not None:
            reporter.start()

        extractor = TermPValue(self.model, self.target)
        result = power_curve(participant_counts, self.design, self.effects, extractor, self._runner(), target_power, reporter, cancel_check)

        if reporter is not None:
            reporter.finish()
        if print_results:
            print(f"\n{'=' * 80}")
            print("SAMPLE SIZE ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(result.to_frame().to_string(index=False))
            achieved = result.first_achieved
            if achieved is None:
                print(f"Target power {target_power:.0%} not reached in the tested range")
            else:
                print(f"First participant count reaching {target_power:.0%} power: {achieved}")
        return result

    def __repr__(self):
        return f"LMMPower(target='{self.target}', participants={self.design.participants}, family='{self.model.family}')"
