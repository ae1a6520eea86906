"""Contracts of the external studio services.

The orchestrator only depends on these protocols. ``StudioClient`` in
``atelier.services.http`` implements all of them over HTTP; tests use
in-memory fakes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Protocol, runtime_checkable

from atelier.core.models import (
    EvaluationCriteria,
    FingerprintFeatures,
    GeneratedImage,
    GeneratedPrompt,
    ImageEvaluation,
    PolishRequest,
    PolishResult,
    RegenerationRequest,
)


@runtime_checkable
class PromptGenerator(Protocol):
    """Produces a fresh prompt batch from the creative context and feedback."""

    async def regenerate(self, request: RegenerationRequest) -> list[GeneratedPrompt]:
        ...


@runtime_checkable
class ImageGenerator(Protocol):
    """Generates one image per prompt and streams status updates.

    The stream yields GeneratedImage updates keyed by prompt id and ends once
    every prompt has reached a terminal status (complete or failed).
    """

    def generate(self, prompts: Sequence[GeneratedPrompt]) -> AsyncIterator[GeneratedImage]:
        ...


@runtime_checkable
class Evaluator(Protocol):
    """Scores one image against the criteria.

    Raises ServiceError on failure; batch helpers convert that into a
    sentinel evaluation.
    """

    async def evaluate(
        self,
        image_url: str,
        prompt_id: str,
        criteria: EvaluationCriteria,
    ) -> ImageEvaluation:
        ...


@runtime_checkable
class Polisher(Protocol):
    """Touches up one image and re-evaluates it."""

    async def polish(self, request: PolishRequest) -> PolishResult:
        ...


@runtime_checkable
class Fingerprinter(Protocol):
    """Extracts closed-enum visual features from an image."""

    async def analyze(self, image_url: str) -> FingerprintFeatures:
        ...


@runtime_checkable
class PanelSaver(Protocol):
    """Saves an image to the user's panel; True on success.

    ``image_url`` is the url to save when it differs from the generated one,
    e.g. after a polish replaced it.
    """

    async def save(
        self,
        prompt_id: str,
        prompt_text: str,
        image_url: str | None = None,
    ) -> bool:
        ...
