"""Dice rolls for playful bot mentions."""

from __future__ import annotations

import random
from typing import List, Optional

_RANDOM = random.Random()  # nosec B311 - dice rolls are for fun


class Dice:
    """Rolls ``count`` dice with ``faces`` sides, clamped to sane limits."""

    MAXIMUM_DICE = 20
    MAXIMUM_FACES = 120

    def __init__(self, count: int, faces: int, rng: Optional[random.Random] = None) -> None:
        self.count = max(1, min(int(count), self.MAXIMUM_DICE))
        self.faces = max(1, min(int(faces), self.MAXIMUM_FACES))
        self._random = rng or _RANDOM

    def roll(self) -> List[int]:
        return [self._random.randint(1, self.faces) for _ in range(self.count)]


__all__ = ["Dice"]
