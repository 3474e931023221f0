from __future__ import annotations

import math


def round_half_up(value: float) -> int:
    """Round to the nearest integer, with .5 always going up."""

    return int(math.floor(value + 0.5))


def clamp_percent(value: float, upper: int = 100) -> int:
    return max(0, min(upper, round_half_up(value)))


__all__ = ["clamp_percent", "round_half_up"]
