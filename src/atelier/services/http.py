"""HTTP client for the studio AI services.

``StudioClient`` implements every service protocol against the studio API:

    POST /prompts/regenerate   prompt batch from context + feedback
    POST /images/generate      start one image job
    GET  /images/{job_id}      image job status
    POST /evaluate-image       score one image
    POST /polish-image         polish and re-evaluate one image
    POST /analyze-diversity    visual fingerprint of one image
    POST /panel/save           save an image to the user's panel

Wire payloads are camelCase JSON. Every response carries ``success``; a
false value, a non-2xx status, a transport error or an unreadable body
raises ServiceError.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from atelier.core.config import ServiceConfig
from atelier.core.errors import ServiceError
from atelier.core.logging import get_logger
from atelier.core.models import (
    Dimension,
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
from atelier.evaluation.evaluator import evaluation_from_dict

_logger = get_logger("services.http")

POLL_EXHAUSTED_MESSAGE = "Image generation did not finish in time"


def _criteria_payload(criteria: EvaluationCriteria) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "originalPrompt": criteria.original_prompt,
        "expectedAspects": criteria.expected_aspects,
        "outputMode": criteria.output_mode,
        "approvalThreshold": criteria.approval_threshold,
    }
    if criteria.breakdown is not None:
        payload["breakdown"] = {
            "format": criteria.breakdown.format,
            "keyElements": criteria.breakdown.key_elements,
        }
    return payload


def _dimension_payload(dimension: Dimension) -> dict[str, Any]:
    return {
        "id": dimension.id,
        "type": dimension.type,
        "label": dimension.label,
        "reference": dimension.reference,
        "weight": dimension.weight,
    }


class StudioClient:
    """Async HTTP client for the studio services.

    Attributes:
        config: Endpoint, timeout and polling settings.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Service settings. Defaults to ServiceConfig().
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
        """
        self.config = config or ServiceConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client.

        Lazy initialization to avoid creating the client before the event loop.
        """
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=httpx.Timeout(self.config.timeout_seconds),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        service: str,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.ConnectError as e:
            raise ServiceError(service, f"Connection error: {e}") from e
        except httpx.TimeoutException as e:
            raise ServiceError(service, f"Timeout: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ServiceError(
                service,
                f"HTTP error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(service, f"Transport error: {e}") from e
        except ValueError as e:
            raise ServiceError(service, f"Invalid JSON response: {e}") from e

        if not isinstance(data, dict):
            raise ServiceError(service, "Response body is not a JSON object")
        if data.get("success") is False:
            raise ServiceError(service, str(data.get("error") or "request failed"))
        return data

    # -------------------------------------------------------------------------
    # PromptGenerator
    # -------------------------------------------------------------------------

    async def regenerate(self, request: RegenerationRequest) -> list[GeneratedPrompt]:
        payload: dict[str, Any] = {
            "baseImage": request.base_image,
            "outputMode": request.output_mode.value,
            "visionSentence": request.vision_sentence,
            "dimensions": [_dimension_payload(d) for d in request.dimensions],
            "iterationContext": request.iteration_context,
        }
        if request.feedback is not None and not request.feedback.is_empty:
            payload["feedback"] = {
                "positive": request.feedback.positive,
                "negative": request.feedback.negative,
            }
        data = await self._request("prompts", "POST", "/prompts/regenerate", payload)
        return self._parse_prompts(data.get("prompts"))

    def _parse_prompts(self, items: Any) -> list[GeneratedPrompt]:
        """Parse the prompt list, skipping entries without an id or text."""
        if not isinstance(items, list):
            raise ServiceError("prompts", "Response has no prompt list")
        prompts: list[GeneratedPrompt] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            prompt_id = item.get("id")
            text = item.get("prompt") or item.get("text")
            if not prompt_id or not text:
                continue
            scene_number = item.get("sceneNumber")
            scene_type = item.get("sceneType")
            prompts.append(
                GeneratedPrompt(
                    id=str(prompt_id),
                    text=str(text),
                    scene_number=scene_number if isinstance(scene_number, int) else None,
                    scene_type=str(scene_type) if scene_type else None,
                )
            )
        return prompts

    # -------------------------------------------------------------------------
    # ImageGenerator
    # -------------------------------------------------------------------------

    async def _start_job(self, prompt: GeneratedPrompt) -> GeneratedImage | str:
        """Start one image job; returns the job id or a failed image."""
        try:
            data = await self._request(
                "images",
                "POST",
                "/images/generate",
                {
                    "promptId": prompt.id,
                    "prompt": prompt.text,
                    "aspectRatio": self.config.aspect_ratio,
                },
            )
        except ServiceError as e:
            return GeneratedImage(prompt_id=prompt.id, status=ImageStatus.FAILED, error=str(e))
        job_id = data.get("jobId")
        if not job_id:
            return GeneratedImage(
                prompt_id=prompt.id,
                status=ImageStatus.FAILED,
                error="Response has no job id",
            )
        return str(job_id)

    async def _poll_job(self, prompt_id: str, job_id: str) -> GeneratedImage:
        try:
            data = await self._request("images", "GET", f"/images/{job_id}")
        except ServiceError as e:
            # A failed poll is not terminal; the job is polled again next round.
            _logger.debug("studio.poll_failed", prompt_id=prompt_id, error=str(e))
            return GeneratedImage(prompt_id=prompt_id, status=ImageStatus.GENERATING)

        status = str(data.get("status", "")).lower()
        if status == ImageStatus.COMPLETE.value and data.get("imageUrl"):
            return GeneratedImage(
                prompt_id=prompt_id,
                status=ImageStatus.COMPLETE,
                url=str(data["imageUrl"]),
            )
        if status == ImageStatus.FAILED.value:
            return GeneratedImage(
                prompt_id=prompt_id,
                status=ImageStatus.FAILED,
                error=str(data.get("error") or "Image generation failed"),
            )
        return GeneratedImage(prompt_id=prompt_id, status=ImageStatus.GENERATING)

    async def generate(self, prompts: Sequence[GeneratedPrompt]) -> AsyncIterator[GeneratedImage]:
        """Start one job per prompt and stream status updates until all are terminal.

        Jobs are polled at a fixed interval. A job still running after
        ``max_poll_attempts`` rounds is reported as failed.
        """
        jobs: dict[str, str] = {}
        for prompt in prompts:
            started = await self._start_job(prompt)
            if isinstance(started, GeneratedImage):
                yield started
                continue
            jobs[prompt.id] = started
            yield GeneratedImage(prompt_id=prompt.id, status=ImageStatus.GENERATING)

        attempts = 0
        while jobs:
            if attempts >= self.config.max_poll_attempts:
                for prompt_id in list(jobs):
                    _logger.warning("studio.poll_exhausted", prompt_id=prompt_id, attempts=attempts)
                    yield GeneratedImage(
                        prompt_id=prompt_id,
                        status=ImageStatus.FAILED,
                        error=POLL_EXHAUSTED_MESSAGE,
                    )
                return
            await asyncio.sleep(self.config.poll_interval_seconds)
            attempts += 1
            updates = await asyncio.gather(
                *(self._poll_job(prompt_id, job_id) for prompt_id, job_id in jobs.items())
            )
            for update in updates:
                if update.is_terminal:
                    jobs.pop(update.prompt_id, None)
                    yield update

    # -------------------------------------------------------------------------
    # Evaluator / Polisher / Fingerprinter / PanelSaver
    # -------------------------------------------------------------------------

    async def evaluate(
        self,
        image_url: str,
        prompt_id: str,
        criteria: EvaluationCriteria,
    ) -> ImageEvaluation:
        data = await self._request(
            "evaluation",
            "POST",
            "/evaluate-image",
            {
                "imageUrl": image_url,
                "promptId": prompt_id,
                "criteria": _criteria_payload(criteria),
            },
        )
        return self._parse_evaluation(
            data.get("evaluation"), prompt_id, criteria.approval_threshold
        )

    def _parse_evaluation(self, data: Any, prompt_id: str, threshold: int) -> ImageEvaluation:
        if not isinstance(data, dict):
            raise ServiceError("evaluation", "Response has no evaluation")
        try:
            return evaluation_from_dict(data, prompt_id, threshold)
        except ValueError as e:
            raise ServiceError("evaluation", str(e)) from e

    async def polish(self, request: PolishRequest) -> PolishResult:
        payload: dict[str, Any] = {
            "imageUrl": request.image_url,
            "promptId": request.prompt_id,
            "polishPrompt": request.polish_prompt,
            "criteria": _criteria_payload(request.criteria),
            "polishType": request.polish_type,
            "aspectRatio": request.aspect_ratio,
            "minScoreImprovement": request.min_score_improvement,
        }
        if request.original_score is not None:
            payload["originalScore"] = request.original_score
        client = await self._get_client()
        try:
            response = await client.post("/polish-image", json=payload)
            data = response.json()
        except httpx.HTTPError as e:
            raise ServiceError("polish", f"Transport error: {e}") from e
        except ValueError as e:
            raise ServiceError("polish", f"Invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise ServiceError("polish", "Response body is not a JSON object", response.status_code)
        # Unsuccessful polish responses are results, not errors.
        return self._parse_polish_result(data, request)

    def _parse_polish_result(self, data: dict[str, Any], request: PolishRequest) -> PolishResult:
        re_evaluation = None
        if isinstance(data.get("reEvaluation"), dict):
            try:
                re_evaluation = evaluation_from_dict(
                    data["reEvaluation"],
                    request.prompt_id,
                    request.criteria.approval_threshold,
                )
            except ValueError:
                re_evaluation = None
        score_delta = data.get("scoreDelta")
        polished_url = data.get("polishedUrl")
        return PolishResult(
            success=bool(data.get("success")),
            improved=bool(data.get("improved")),
            polished_url=str(polished_url) if polished_url else None,
            re_evaluation=re_evaluation,
            score_delta=int(score_delta) if isinstance(score_delta, (int, float)) else None,
            error=str(data["error"]) if data.get("error") else None,
        )

    async def analyze(self, image_url: str) -> FingerprintFeatures:
        data = await self._request(
            "diversity", "POST", "/analyze-diversity", {"imageUrl": image_url}
        )
        raw = data.get("fingerprint")
        if not isinstance(raw, dict):
            raise ServiceError("diversity", "Response has no fingerprint")
        try:
            return FingerprintFeatures(
                color_tone=str(raw.get("colorTone") or ""),
                composition=raw.get("composition"),
                subject_focus=raw.get("subjectFocus"),
                mood=raw.get("mood"),
                lighting=raw.get("lighting"),
                camera_angle=raw.get("cameraAngle"),
                activity=raw.get("activity"),
            )
        except ValidationError as e:
            raise ServiceError("diversity", f"Invalid fingerprint: {e}") from e

    async def save(
        self,
        prompt_id: str,
        prompt_text: str,
        image_url: str | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"promptId": prompt_id, "prompt": prompt_text}
        if image_url:
            payload["imageUrl"] = image_url
        data = await self._request("panel", "POST", "/panel/save", payload)
        return bool(data.get("success", True))

    async def close(self) -> None:
        """Close the HTTP client connection."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> StudioClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
