"""External service contracts.

The HTTP implementation lives in ``atelier.services.http`` and is imported
from there; it depends on the evaluation package, which depends on these
protocols.
"""

from atelier.services.base import (
    Evaluator,
    Fingerprinter,
    ImageGenerator,
    PanelSaver,
    Polisher,
    PromptGenerator,
)

__all__ = [
    "Evaluator",
    "Fingerprinter",
    "ImageGenerator",
    "PanelSaver",
    "Polisher",
    "PromptGenerator",
]
