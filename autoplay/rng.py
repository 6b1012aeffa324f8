"""Deterministic pseudo-random source for bot decisions.

Every run owns its own ``DeterministicRNG`` built from a scenario-derived seed
string, so two runs never share state and a replay with the same seed and the
same call sequence yields the same values. All arithmetic wraps at 2**32 with
unsigned semantics, which keeps sequences bit-identical with any other
implementation of the same linear congruential generator.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")

MODULUS = 2**32
MULTIPLIER = 1664525
INCREMENT = 1013904223
_MASK = MODULUS - 1


def hash_string(value: str) -> int:
    """Fold a string into an unsigned 32-bit integer (``h = h * 31 + unit``).

    Iterates UTF-16 code units rather than code points so non-BMP characters hash
    the same way they do in engines that index strings by UTF-16 unit.
    """

    h = 0
    encoded = value.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + unit) & _MASK
    return h


class DeterministicRNG:
    """Seeded linear congruential generator."""

    def __init__(self, seed: str) -> None:
        self.seed = seed
        self.state = hash_string(seed)

    def next(self) -> float:
        """Advance the generator and return a float in [0, 1)."""
        self.state = (self.state * MULTIPLIER + INCREMENT) % MODULUS
        return self.state / MODULUS

    def next_int(self, min_value: int, max_value: int) -> int:
        """Return an integer in the inclusive range [min_value, max_value]."""
        if max_value < min_value:
            raise ValueError(f"next_int range is empty: [{min_value}, {max_value}]")
        return int(self.next() * (max_value - min_value + 1)) + min_value

    def next_boolean(self, probability: float = 0.5) -> bool:
        return self.next() < probability

    def choose(self, items: Sequence[T]) -> Optional[T]:
        """Pick one element uniformly; ``None`` for an empty sequence."""
        if not items:
            return None
        return items[self.next_int(0, len(items) - 1)]

    def weighted_choose(self, items: Sequence[Tuple[T, float]]) -> Optional[T]:
        """Pick an item by cumulative-weight subtraction.

        Returns ``None`` when the total weight is not positive. Falls back to the
        last item when floating-point rounding leaves a positive remainder.
        """

        if not items:
            return None
        total = sum(weight for _, weight in items)
        if total <= 0:
            return None

        remaining = self.next() * total
        for item, weight in items:
            remaining -= weight
            if remaining <= 0:
                return item
        return items[-1][0]
