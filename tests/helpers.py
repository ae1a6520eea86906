"""Shared test helpers for Atelier tests: in-memory service fakes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence

from atelier.core.errors import ServiceError
from atelier.core.models import (
    EvaluationCriteria,
    FingerprintFeatures,
    GeneratedImage,
    GeneratedPrompt,
    ImageEvaluation,
    ImageStatus,
    PolishRequest,
    PolishResult,
    RegenerationRequest,
)


class Gate:
    """Blocks calls whose prompt id matches ``when`` until cancelled.

    ``entered`` is set as soon as the first matching call blocks.
    """

    def __init__(self, when: Callable[[str], bool] | None = None) -> None:
        self.when = when
        self.entered = asyncio.Event()

    async def pass_through(self, prompt_id: str) -> None:
        if self.when is None or not self.when(prompt_id):
            return
        self.entered.set()
        await asyncio.Event().wait()


def make_prompts(prefix: str, count: int = 2) -> list[GeneratedPrompt]:
    """Prompts with ids ``{prefix}-1`` .. ``{prefix}-{count}``."""
    return [
        GeneratedPrompt(
            id=f"{prefix}-{i}",
            text=f"wide shot of a neon market, scene {i}",
            scene_number=i,
        )
        for i in range(1, count + 1)
    ]


def make_evaluation(prompt_id: str, score: int, **fields: object) -> ImageEvaluation:
    """Evaluation with approval computed by the standard rule at threshold 70."""
    evaluation = ImageEvaluation(prompt_id=prompt_id, approved=False, score=score, **fields)
    return evaluation.model_copy(update={"approved": evaluation.meets_approval(70)})


class FakePromptGenerator:
    """Returns a fresh prompt batch per call: ``it1-1``, ``it1-2``, then ``it2-*``...

    Pass ``batches`` to return fixed batches in order (the last one repeats),
    or ``error`` to fail every call.
    """

    def __init__(
        self,
        batches: list[list[GeneratedPrompt]] | None = None,
        per_batch: int = 2,
        error: Exception | None = None,
    ) -> None:
        self.batches = batches
        self.per_batch = per_batch
        self.error = error
        self.requests: list[RegenerationRequest] = []

    async def regenerate(self, request: RegenerationRequest) -> list[GeneratedPrompt]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.batches is not None:
            index = min(len(self.requests), len(self.batches)) - 1
            return [p.model_copy() for p in self.batches[index]]
        return make_prompts(f"it{len(self.requests)}", self.per_batch)


class FakeImageGenerator:
    """Streams a generating update, then a terminal one, per prompt.

    Args:
        failing: Prompt ids whose generation fails.
        dropped: Prompt ids that get no update at all on the first call.
        hang: Block forever after the first update.
    """

    def __init__(
        self,
        failing: set[str] | None = None,
        dropped: set[str] | None = None,
        hang: bool = False,
    ) -> None:
        self.failing = failing or set()
        self.dropped = dropped or set()
        self.hang = hang
        self.calls: list[list[str]] = []

    async def generate(self, prompts: Sequence[GeneratedPrompt]) -> AsyncIterator[GeneratedImage]:
        self.calls.append([p.id for p in prompts])
        first_call = len(self.calls) == 1
        for prompt in prompts:
            if first_call and prompt.id in self.dropped:
                continue
            yield GeneratedImage(prompt_id=prompt.id, status=ImageStatus.GENERATING)
            if self.hang:
                await asyncio.Event().wait()
            if prompt.id in self.failing:
                yield GeneratedImage(
                    prompt_id=prompt.id,
                    status=ImageStatus.FAILED,
                    error="content filtered",
                )
            else:
                yield GeneratedImage(
                    prompt_id=prompt.id,
                    status=ImageStatus.COMPLETE,
                    url=f"https://images.test/{prompt.id}.png",
                )


class FakeEvaluator:
    """Scores images with ``score_for(prompt_id)``; raises for ids in ``failing``."""

    def __init__(
        self,
        score_for: Callable[[str], int] | int = 80,
        failing: set[str] | None = None,
        gate: Gate | None = None,
        **fields: object,
    ) -> None:
        self.score_for = score_for
        self.failing = failing or set()
        self.gate = gate or Gate()
        self.fields = fields
        self.calls: list[tuple[str, str]] = []
        self.criteria: list[EvaluationCriteria] = []

    async def evaluate(
        self,
        image_url: str,
        prompt_id: str,
        criteria: EvaluationCriteria,
    ) -> ImageEvaluation:
        self.calls.append((image_url, prompt_id))
        self.criteria.append(criteria)
        await self.gate.pass_through(prompt_id)
        if prompt_id in self.failing or "*" in self.failing:
            raise ServiceError("evaluation", "vision model unavailable")
        score = self.score_for(prompt_id) if callable(self.score_for) else self.score_for
        return make_evaluation(prompt_id, score, **self.fields)


class FakePolisher:
    """Polish service returning ``result_for(request)``; counts calls per prompt id."""

    def __init__(
        self,
        result_for: Callable[[PolishRequest], PolishResult] | None = None,
        delay: float = 0.0,
        gate: Gate | None = None,
    ) -> None:
        self.result_for = result_for
        self.delay = delay
        self.gate = gate or Gate()
        self.requests: list[PolishRequest] = []

    def calls_for(self, prompt_id: str) -> int:
        return sum(1 for r in self.requests if r.prompt_id == prompt_id)

    async def polish(self, request: PolishRequest) -> PolishResult:
        self.requests.append(request)
        await self.gate.pass_through(request.prompt_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.result_for is not None:
            return self.result_for(request)
        return PolishResult(success=True, improved=False, score_delta=0)


class FakeFingerprinter:
    def __init__(self, features: FingerprintFeatures | None = None) -> None:
        self.features = features or FingerprintFeatures(
            color_tone="neon",
            composition="wide",
            subject_focus="environment",
            mood="mysterious",
            lighting="night",
            camera_angle="eye-level",
            activity="subtle",
        )
        self.calls: list[str] = []

    async def analyze(self, image_url: str) -> FingerprintFeatures:
        self.calls.append(image_url)
        return self.features


class FakePanelSaver:
    """Records saves; ``ok=False`` reports failure, ``error`` raises."""

    def __init__(
        self,
        ok: bool = True,
        error: Exception | None = None,
        gate: Gate | None = None,
    ) -> None:
        self.ok = ok
        self.error = error
        self.gate = gate or Gate()
        self.saved: list[tuple[str, str, str | None]] = []

    async def save(self, prompt_id: str, prompt_text: str, image_url: str | None = None) -> bool:
        await self.gate.pass_through(prompt_id)
        if self.error is not None:
            raise self.error
        if self.ok:
            self.saved.append((prompt_id, prompt_text, image_url))
        return self.ok


