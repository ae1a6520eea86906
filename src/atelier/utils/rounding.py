"""Rounding helpers for Atelier."""

import math


def round_half_up(value: float) -> int:
    """Round halves up (``72.5 -> 73``); ``round()`` rounds them to even."""
    return math.floor(value + 0.5)
