from __future__ import annotations

import time
from collections.abc import Callable


class ComputeBudget:
    """
    Per-invocation compute quota.

    Two limits stand in for the host's hard quotas: a ceiling on rows fetched
    (the fetch-call ceiling) and a wall-clock allowance. The budget fraction is
    whichever of the two is further along. One instance lives for exactly one
    invocation; the orchestrator asks for a fresh one each time.
    """

    def __init__(
        self,
        max_rows: int,
        max_seconds: float,
        yield_fraction: float = 0.9,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_rows < 1:
            raise ValueError("max_rows must be >= 1")
        if max_seconds <= 0:
            raise ValueError("max_seconds must be > 0")
        if not 0 < yield_fraction <= 1:
            raise ValueError("yield_fraction must be in (0, 1]")
        self.max_rows = int(max_rows)
        self.max_seconds = float(max_seconds)
        self.yield_fraction = float(yield_fraction)
        self._clock = clock
        self._started = clock()
        self.rows_fetched = 0
        self.iterations = 0

    def record_fetch(self, rows: int) -> None:
        self.rows_fetched += max(0, int(rows))

    def complete_iteration(self) -> None:
        self.iterations += 1

    def elapsed(self) -> float:
        return self._clock() - self._started

    def used_fraction(self) -> float:
        return max(self.rows_fetched / self.max_rows, self.elapsed() / self.max_seconds)

    def row_allowance(self, cursors: int) -> int:
        """Rows each of `cursors` cursors may still fetch under the row ceiling."""
        remaining = self.max_rows - self.rows_fetched
        if remaining <= 0 or cursors <= 0:
            return 0
        return remaining // cursors

    def exhausted(self) -> bool:
        return self.rows_fetched >= self.max_rows or self.used_fraction() >= self.yield_fraction
