from __future__ import annotations

import math
from dataclasses import dataclass

SHRINK_ABOVE = 0.70
GROW_BELOW = 0.50
SHRINK_FACTOR = 0.75
GROW_FACTOR = 1.25


@dataclass(frozen=True)
class AdaptiveBatchSizer:
    """
    Turns the fraction of compute budget consumed into the next batch size.

      fraction > 0.70  -> floor(size * 0.75)
      fraction < 0.50  -> ceil(size * 1.25)
      otherwise        -> unchanged

    The result is always clamped to [min_batch, max_batch].
    """

    min_batch: int
    max_batch: int

    def __post_init__(self) -> None:
        if self.min_batch < 1:
            raise ValueError(f"min_batch must be >= 1 (got {self.min_batch})")
        if self.max_batch < self.min_batch:
            raise ValueError(f"max_batch ({self.max_batch}) must be >= min_batch ({self.min_batch})")

    def clamp(self, size: int) -> int:
        return max(self.min_batch, min(self.max_batch, int(size)))

    def next_batch_size(self, current_size: int, budget_used_fraction: float) -> int:
        if budget_used_fraction > SHRINK_ABOVE:
            new_size = math.floor(current_size * SHRINK_FACTOR)
        elif budget_used_fraction < GROW_BELOW:
            new_size = math.ceil(current_size * GROW_FACTOR)
        else:
            new_size = current_size
        return self.clamp(new_size)
