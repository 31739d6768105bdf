from __future__ import annotations

import random
import secrets
from typing import Hashable, Iterable, List, Optional, TypeVar

T = TypeVar("T", bound=Hashable)


def draw_winners(
    pool: Iterable[T], count: int, *, rng: Optional[random.Random] = None
) -> List[T]:
    """Pick up to ``count`` distinct entries from ``pool`` without replacement.

    The pool is never mutated. Asking for more winners than there are entries
    returns the whole pool in random order.
    """
    if count < 0:
        raise ValueError("count must not be negative")
    population = list(dict.fromkeys(pool))
    winners_count = min(count, len(population))
    if winners_count == 0:
        return []
    rng = rng or secrets.SystemRandom()
    return rng.sample(population, winners_count)
