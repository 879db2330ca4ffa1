"""XP → level curve.

Level 1 costs ``base_xp`` to complete; every completed level multiplies the
next threshold by ``growth_rate`` (floored to an integer).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

BASE_XP = 100
GROWTH_RATE = 1.3


@dataclass(frozen=True)
class LevelInfo:
    level: int
    xp_into_level: int
    xp_to_next: int
    progress_percent: int


def level_of(total_xp: int, base_xp: int = BASE_XP, growth_rate: float = GROWTH_RATE) -> LevelInfo:
    """Map cumulative XP to the current level and progress toward the next one.

    ``total_xp`` must be non-negative.
    """
    level = 1
    remainder = total_xp
    threshold = base_xp

    while remainder >= threshold:
        remainder -= threshold
        level += 1
        threshold = math.floor(threshold * growth_rate)

    return LevelInfo(
        level=level,
        xp_into_level=remainder,
        xp_to_next=threshold,
        progress_percent=(remainder * 100) // threshold,
    )
