"""Weighted Allocator for mystery box openings."""
import random
from typing import Optional, Sequence, List, Tuple

from .conf import EDITIONS_RANDOM_SEED
from .exceptions import ExhaustedPoolError
from .models import MysteryBoxItem


_seeded: Optional[random.Random] = None


def default_rng() -> random.Random:
    """RNG used when the caller does not inject one.

    With ``EDITIONS_RANDOM_SEED`` set, every caller shares one seeded
    generator, so successive draws keep advancing the same sequence.
    """
    global _seeded
    if EDITIONS_RANDOM_SEED is not None:
        if _seeded is None:
            _seeded = random.Random(int(EDITIONS_RANDOM_SEED))
        return _seeded
    return random.SystemRandom()


def available(
    candidates: Sequence[MysteryBoxItem]
) -> List[Tuple[int, MysteryBoxItem]]:
    """Candidates still in stock, with their index in the pool."""
    return [
        (idx, item) for idx, item in enumerate(candidates)
        if item.remaining_quantity > 0
    ]


def weighted_index(
    candidates: Sequence[MysteryBoxItem],
    rng: Optional[random.Random] = None
) -> int:
    """Index (in ``candidates``) of the item picked by a roulette wheel.

    Exhausted items are filtered out before weighting. The pool is
    never mutated.
    """
    pool = available(candidates)
    if not pool:
        raise ExhaustedPoolError()
    rng = rng or default_rng()
    total_weight = sum(item.weight for _, item in pool)
    roll = rng.random() * total_weight
    for idx, item in pool:
        roll -= item.weight
        if roll <= 0:
            return idx
    # float rounding can leave a positive residue
    return pool[-1][0]


def select_weighted(
    candidates: Sequence[MysteryBoxItem],
    rng: Optional[random.Random] = None
) -> MysteryBoxItem:
    """Pick one in-stock item, weighted by ``weight``."""
    return candidates[weighted_index(candidates, rng)]
