"""Polish decisions and execution."""

from atelier.polish.decision import (
    PolishInstruction,
    build_excellence_polish_prompt,
    build_rescue_polish_prompt,
    decide,
    normalize_polish_mode,
)
from atelier.polish.polisher import accepted_improvement, polish_with_timeout

__all__ = [
    "PolishInstruction",
    "accepted_improvement",
    "build_excellence_polish_prompt",
    "build_rescue_polish_prompt",
    "decide",
    "normalize_polish_mode",
    "polish_with_timeout",
]
