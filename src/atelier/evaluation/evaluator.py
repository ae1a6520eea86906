"""Batch image evaluation and refinement feedback extraction.

``evaluate_images`` fans out one evaluation call per image and never lets a
single failure escape: a failed call becomes an unapproved sentinel
evaluation. ``extract_refinement_feedback`` turns a batch of evaluations
into targeted positive/negative guidance for the next prompt generation.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Iterable, Sequence
from typing import Any

from atelier.autoplay.cancellation import CancellationToken
from atelier.core.logging import get_logger
from atelier.core.models import (
    DEFAULT_APPROVAL_THRESHOLD,
    EvaluationCriteria,
    GeneratedImage,
    ImageEvaluation,
    RefinementFeedback,
)
from atelier.services.base import Evaluator
from atelier.utils.rounding import round_half_up

_logger = get_logger("evaluator")

_WEAK_CATEGORY_THRESHOLD = 75
_LOW_SUBSCORE = 70


def failed_evaluation(prompt_id: str, message: str) -> ImageEvaluation:
    """Sentinel for an image whose evaluation call failed."""
    return ImageEvaluation(
        prompt_id=prompt_id,
        approved=False,
        score=0,
        feedback=f"Evaluation error: {message}",
        improvements=["Unable to evaluate - retry recommended"],
        strengths=[],
    )


async def evaluate_images(
    evaluator: Evaluator,
    images: Sequence[GeneratedImage],
    criteria: EvaluationCriteria,
    token: CancellationToken | None = None,
) -> list[ImageEvaluation]:
    """Evaluate every image concurrently.

    Results keep the order of ``images``. Per-image failures (service
    errors, malformed answers, cancellation) become sentinel evaluations.

    Args:
        evaluator: Evaluation service.
        images: Completed images; each must carry a url.
        criteria: Shared scoring rubric.
        token: Run cancellation token.

    Returns:
        One evaluation per image.
    """
    token = token or CancellationToken()

    async def _one(image: GeneratedImage) -> ImageEvaluation:
        if not image.url:
            return failed_evaluation(image.prompt_id, "image has no url")
        try:
            return await token.run(
                evaluator.evaluate(image.url, image.prompt_id, criteria)
            )
        except Exception as e:
            _logger.warning(
                "evaluator.image_failed",
                prompt_id=image.prompt_id,
                error=str(e),
            )
            return failed_evaluation(image.prompt_id, str(e))

    return list(await asyncio.gather(*(_one(image) for image in images)))


def _average(values: Iterable[int | None]) -> int | None:
    defined = [value for value in values if value is not None]
    if not defined:
        return None
    return round_half_up(sum(defined) / len(defined))


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def extract_refinement_feedback(evaluations: Sequence[ImageEvaluation]) -> RefinementFeedback:
    """Build next-iteration feedback from a batch of evaluations.

    Negative feedback names mode violations, then the weakest sub-score
    category when it averages below 75 (with improvements from rejected
    images that scored low in that category). Without sub-scores it falls
    back to the rejected images' improvements. Positive feedback keeps the
    first three distinct strengths.
    """
    approved = [e for e in evaluations if e.approved]
    rejected = [e for e in evaluations if not e.approved]
    negative_parts: list[str] = []

    avg_technical = _average(e.technical_score for e in evaluations)
    avg_goal_fit = _average(e.goal_fit_score for e in evaluations)
    avg_aesthetic = _average(e.aesthetic_score for e in evaluations)
    mode_violations = [e for e in evaluations if e.mode_compliance is False]

    if mode_violations:
        negative_parts.append(
            f"Mode violation in {len(mode_violations)}/{len(evaluations)} images "
            "— ensure correct UI/style for output mode"
        )

    if avg_technical is not None and avg_goal_fit is not None and avg_aesthetic is not None:
        weakest = min(avg_technical, avg_goal_fit, avg_aesthetic)
        if weakest == avg_technical and avg_technical < _WEAK_CATEGORY_THRESHOLD:
            fixes = [
                improvement
                for e in rejected
                if (e.technical_score if e.technical_score is not None else 100) < _LOW_SUBSCORE
                for improvement in e.improvements
            ][:2]
            detail = ", ".join(fixes) if fixes else "fix artifacts, rendering issues"
            negative_parts.append(f"Technical quality weak (avg {avg_technical}): {detail}")
        elif weakest == avg_goal_fit and avg_goal_fit < _WEAK_CATEGORY_THRESHOLD:
            fixes = [
                improvement
                for e in rejected
                if (e.goal_fit_score if e.goal_fit_score is not None else 100) < _LOW_SUBSCORE
                for improvement in e.improvements
            ][:2]
            detail = ", ".join(fixes) if fixes else "better match prompt content and dimensions"
            negative_parts.append(f"Goal alignment weak (avg {avg_goal_fit}): {detail}")
        elif weakest == avg_aesthetic and avg_aesthetic < _WEAK_CATEGORY_THRESHOLD:
            negative_parts.append(
                f"Aesthetic quality weak (avg {avg_aesthetic}): "
                "improve composition, lighting, color harmony"
            )

    if not negative_parts and rejected:
        improvements = _unique(i for e in rejected for i in e.improvements)
        if improvements:
            negative_parts.append(f"Avoid: {', '.join(improvements[:3])}")

    strengths = _unique(s for e in [*approved, *rejected] for s in e.strengths)
    positive = f"Keep: {', '.join(strengths[:3])}" if strengths else ""

    return RefinementFeedback(positive=positive, negative=". ".join(negative_parts))


# =============================================================================
# Raw model answer parsing
# =============================================================================

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _clamp_score(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return max(0, min(100, round_half_up(float(value))))
    except (TypeError, ValueError):
        return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


def parse_evaluation_response(
    text: str,
    prompt_id: str,
    approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD,
) -> ImageEvaluation:
    """Parse a vision model's JSON answer into an ImageEvaluation.

    Code fences and prose around the JSON object are tolerated. Scores are
    clamped to 0-100 and approval is recomputed with the standard rule, so
    a model claiming approval for a non-compliant image does not get it.

    Raises:
        ValueError: If no JSON object with a usable score is found.
    """
    cleaned = _CODE_FENCE.sub("", text.strip())
    match = _JSON_OBJECT.search(cleaned)
    if match is None:
        raise ValueError("evaluation answer contains no JSON object")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValueError(f"evaluation answer is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("evaluation answer is not a JSON object")

    return evaluation_from_dict(data, prompt_id, approval_threshold)


def evaluation_from_dict(
    data: dict[str, Any],
    prompt_id: str,
    approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD,
) -> ImageEvaluation:
    """Build an ImageEvaluation from camelCase evaluation fields.

    Raises:
        ValueError: If there is no numeric score.
    """
    score = _clamp_score(data.get("score"))
    if score is None:
        raise ValueError("evaluation answer has no numeric score")

    mode_compliance = data.get("modeCompliance")
    evaluation = ImageEvaluation(
        prompt_id=prompt_id,
        approved=False,
        score=score,
        technical_score=_clamp_score(data.get("technicalScore")),
        goal_fit_score=_clamp_score(data.get("goalFitScore")),
        aesthetic_score=_clamp_score(data.get("aestheticScore")),
        mode_compliance=mode_compliance if isinstance(mode_compliance, bool) else None,
        feedback=str(data["feedback"]) if data.get("feedback") else None,
        improvements=_string_list(data.get("improvements")),
        strengths=_string_list(data.get("strengths")),
    )
    return evaluation.model_copy(
        update={"approved": evaluation.meets_approval(approval_threshold)}
    )
