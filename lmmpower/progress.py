"""
Progress reporting for LMMPower simulations.

A run is made of blocks of repetitions: ``find_power`` runs one block,
``find_sample_size`` runs one block per participant count. Callbacks
receive ``(current, total)`` over the whole run. A callback that also
defines ``set_block(participants)`` is told which participant count the
current block simulates.
"""

import sys
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised when a simulation run is cancelled by the caller."""

    pass


class ProgressReporter:
    """Counts completed repetitions across the blocks of one run.

    Advances never move the count past the end of the current block, and
    ``restart_block`` rewinds it to the block start, so a block that is
    rerun (e.g. after a parallel failure) does not overshoot the total.

    Args:
        n_simulations: Repetitions per block.
        callback: Called as ``callback(current, total)``.
        n_blocks: Number of blocks (participant counts) in the run.
        update_every: Fire at most once per this many advances. Defaults to
            ``max(1, total // 200)``.
    """

    def __init__(
        self,
        n_simulations: int,
        callback: Callable[[int, int], None],
        n_blocks: int = 1,
        update_every: Optional[int] = None,
    ):
        self.n_simulations = n_simulations
        self.n_blocks = n_blocks
        self.total = n_simulations * n_blocks
        self._callback = callback
        self._current = 0
        self._block = -1
        self.update_every = update_every if update_every is not None else max(1, self.total // 200)

    @property
    def current(self) -> int:
        return self._current

    @property
    def block(self) -> int:
        """Index of the block in progress (``-1`` before the first one)."""
        return self._block

    def _block_bounds(self):
        start = max(self._block, 0) * self.n_simulations
        return start, min(start + self.n_simulations, self.total)

    def _emit(self):
        self._callback(self._current, self.total)

    def start(self):
        self._current = 0
        self._block = -1
        self._emit()

    def begin_block(self, participants: Optional[int] = None):
        """Move to the next block; a block left unfinished counts as done."""
        self._block = min(self._block + 1, self.n_blocks - 1)
        self._current = self._block_bounds()[0]
        set_block = getattr(self._callback, "set_block", None)
        if set_block is not None and participants is not None:
            set_block(participants)

    def restart_block(self):
        """Rewind the count to the start of the current block."""
        self._current = self._block_bounds()[0]
        self._emit()

    def advance(self, n: int = 1):
        end = self._block_bounds()[1]
        self._current = min(self._current + n, end)
        if self._current >= end or self._current % self.update_every == 0:
            self._emit()

    def finish(self):
        if self._current < self.total:
            self._current = self.total
            self._emit()


class PrintReporter:
    """Console reporter on stderr: ``Progress:  45.2% (452/1000 repetitions, 40 participants)``."""

    def __init__(self):
        self.participants: Optional[int] = None

    def set_block(self, participants: int):
        self.participants = participants

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        where = f", {self.participants} participants" if self.participants is not None else ""
        sys.stderr.write(f"\rProgress: {100.0 * current / total:5.1f}% ({current}/{total} repetitions{where})")
        if current >= total:
            sys.stderr.write("\n")
        sys.stderr.flush()


class TqdmReporter:
    """tqdm progress bar (needs the ``progress`` extra).

    The participant count of the running block is shown as the bar postfix::

        from lmmpower.progress import TqdmReporter
        model.find_sample_size([20, 40, 60], progress_callback=TqdmReporter(desc="genre"))
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None
        self._participants = None

    def set_block(self, participants: int):
        self._participants = participants
        if self._bar is not None:
            self._bar.set_postfix(participants=participants)

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="rep", **self._tqdm_kwargs)
            if self._participants is not None:
                self._bar.set_postfix(participants=self._participants)

        # n can move backwards when a block is restarted
        self._bar.n = current
        self._bar.refresh()

        if current >= total:
            self._bar.close()
            self._bar = None
