# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.

import random
from typing import Optional

__all__ = ["Jitter"]


class Jitter:
    """Bounded random offset applied to check and retry intervals.

    Offsets are float seconds, so sub-second jitter is kept as is.

    Args:
        rng: random generator to draw from, a fresh unseeded one is used by default

    Examples:
        >>> from random import Random
        >>> jitter = Jitter(Random(0))
        >>> -10 <= jitter(10) <= 10
        True
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng if rng is not None else random.Random()

    def jitter(self, base: float) -> float:
        """Return an offset uniformly drawn from [-|base|, +|base|]"""
        bound = abs(base)
        if bound == 0:
            return 0.0
        return self._rng.uniform(-bound, bound)

    __call__ = jitter
