import random
from dataclasses import dataclass
from typing import Any, Generic, List, Optional, Sequence, TypeVar, Union

T = TypeVar("T")

Seed = Union[int, str, None]


@dataclass(frozen=True)
class WeightedItem(Generic[T]):
    item: T
    weight: float


def weighted_sample_without_replacement(
    items: Sequence[WeightedItem[T]],
    sample_size: int,
    seed: Seed = None,
) -> List[T]:
    """
    Draw up to sample_size distinct items, each with probability proportional
    to its weight among the items still in the pool.

    Weights <= 0 count as 0. When the remaining total weight reaches 0 the
    draw stops early and fewer items are returned. Ties resolve in scan order,
    so the same seed and input order always give the same result.
    """
    rng = random.Random(seed)
    pool = list(items)
    results: List[T] = []
    k = min(sample_size, len(pool))

    for _ in range(max(k, 0)):
        total_weight = sum(max(it.weight, 0) for it in pool)
        if total_weight <= 0:
            break

        r = rng.random() * total_weight
        chosen_index = 0
        for j, it in enumerate(pool):
            w = max(it.weight, 0)
            if r < w:
                chosen_index = j
                break
            r -= w
        else:
            # Float drift past the last bucket; take the last weighted item
            chosen_index = max(j for j, it in enumerate(pool) if it.weight > 0)

        results.append(pool.pop(chosen_index).item)

    return results


def make_seed(seed: Optional[Any] = None) -> Seed:
    """Return seed as-is, or a fresh random one so the draw can be replayed"""
    if seed is None or seed == "":
        return random.SystemRandom().getrandbits(32)
    if isinstance(seed, (int, str)):
        return seed
    return str(seed)
