"""CLI command implementations."""

from .phases import phases
from .run import run
from .validate import validate

__all__ = ["phases", "run", "validate"]
