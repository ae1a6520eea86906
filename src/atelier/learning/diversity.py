"""Diversity director: keeps a run's saved images from looking alike.

After images are saved, their visual fingerprints are added to an inventory
that counts how often each feature value (composition, mood, lighting...)
occurs. Values never seen are gaps; values covering at least 40% of the
saved images are saturated. Guidance derived from the inventory is merged
into the feedback for the next prompt generation. It is advisory text and
never blocks generation.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import get_args

from atelier.autoplay.cancellation import CancellationToken
from atelier.core.errors import OperationCancelled, ServiceError
from atelier.core.logging import get_logger
from atelier.core.models import (
    Activity,
    CameraAngle,
    Composition,
    GeneratedImage,
    Lighting,
    Mood,
    OutputMode,
    RefinementFeedback,
    SubjectFocus,
    VisualFingerprint,
)
from atelier.services.base import Fingerprinter

_logger = get_logger("diversity")

FEATURE_OPTIONS: dict[str, tuple[str, ...]] = {
    "composition": get_args(Composition),
    "subject_focus": get_args(SubjectFocus),
    "mood": get_args(Mood),
    "lighting": get_args(Lighting),
    "camera_angle": get_args(CameraAngle),
    "activity": get_args(Activity),
}

SATURATION_THRESHOLD = 0.4
"""Share of saved images at which a feature value counts as overused."""

_PRIORITY_CATEGORIES = ("composition", "mood", "lighting")


@dataclass
class DiversityInventory:
    """Feature counts over all fingerprinted images of a run."""

    fingerprints: list[VisualFingerprint] = field(default_factory=list)
    """Every fingerprint added so far, oldest first."""

    counts: dict[str, dict[str, int]] = field(
        default_factory=lambda: {category: {} for category in FEATURE_OPTIONS}
    )
    """Occurrences per feature value, per category."""

    gaps: list[str] = field(default_factory=list)
    """"category:value" entries never seen."""

    saturated: list[str] = field(default_factory=list)
    """"category:value" entries at or above the saturation share."""

    @classmethod
    def empty(cls) -> DiversityInventory:
        return cls()


@dataclass
class DiversityGuidance:
    """Advice for the next generation round."""

    prompt_prefix: str
    emphasize: list[str] = field(default_factory=list)
    avoid: list[str] = field(default_factory=list)
    suggested_shot: dict[str, str] = field(default_factory=dict)


def _balance(counts: dict[str, dict[str, int]], total: int) -> tuple[list[str], list[str]]:
    gaps: list[str] = []
    saturated: list[str] = []
    threshold = max(1.0, total * SATURATION_THRESHOLD)
    for category, options in FEATURE_OPTIONS.items():
        category_counts = counts.get(category, {})
        for option in options:
            seen = category_counts.get(option, 0)
            if seen == 0:
                gaps.append(f"{category}:{option}")
            elif total > 1 and seen >= threshold:
                saturated.append(f"{category}:{option}")
    return gaps, saturated


def update_inventory(
    inventory: DiversityInventory,
    fingerprint: VisualFingerprint,
) -> DiversityInventory:
    """Return a new inventory with ``fingerprint`` added and balance recomputed."""
    counts = {category: dict(values) for category, values in inventory.counts.items()}
    features = fingerprint.features
    for category in FEATURE_OPTIONS:
        value = getattr(features, category)
        category_counts = counts.setdefault(category, {})
        category_counts[value] = category_counts.get(value, 0) + 1

    fingerprints = [*inventory.fingerprints, fingerprint]
    gaps, saturated = _balance(counts, len(fingerprints))
    return DiversityInventory(
        fingerprints=fingerprints,
        counts=counts,
        gaps=gaps,
        saturated=saturated,
    )


async def extract_fingerprints(
    fingerprinter: Fingerprinter,
    images: Sequence[GeneratedImage],
    token: CancellationToken | None = None,
) -> list[VisualFingerprint]:
    """Fingerprint images concurrently; failures are logged and dropped."""
    token = token or CancellationToken()

    async def _one(image: GeneratedImage) -> VisualFingerprint | None:
        if not image.url:
            return None
        try:
            features = await token.run(fingerprinter.analyze(image.url))
        except (ServiceError, OperationCancelled, ValueError) as e:
            _logger.warning(
                "diversity.fingerprint_failed",
                prompt_id=image.prompt_id,
                error=str(e),
            )
            return None
        return VisualFingerprint(prompt_id=image.prompt_id, image_url=image.url, features=features)

    results = await asyncio.gather(*(_one(image) for image in images))
    return [fingerprint for fingerprint in results if fingerprint is not None]


def _readable(feature: str) -> str:
    return feature.replace("-", " ")


def _values_for(entries: list[str], category: str) -> list[str]:
    prefix = f"{category}:"
    return [entry[len(prefix):] for entry in entries if entry.startswith(prefix)]


def generate_diversity_guidance(
    inventory: DiversityInventory,
    target_count: int,
    output_mode: OutputMode,
    rng: random.Random | None = None,
) -> DiversityGuidance:
    """Derive guidance from the inventory.

    One random gap each from composition, mood and lighting is emphasized;
    every saturated value is listed to avoid; the suggested shot takes the
    first gap of each of those categories.
    """
    rng = rng or random.Random()
    remaining = target_count - len(inventory.fingerprints)

    emphasize: list[str] = []
    suggested_shot: dict[str, str] = {}
    for category in _PRIORITY_CATEGORIES:
        category_gaps = _values_for(inventory.gaps, category)
        if category_gaps:
            emphasize.append(f"{category}: {_readable(rng.choice(category_gaps))}")
            suggested_shot[category] = category_gaps[0]

    avoid = []
    for entry in inventory.saturated:
        category, _, feature = entry.partition(":")
        avoid.append(f"{category}: {_readable(feature)}")

    parts: list[str] = []
    if remaining > 1:
        parts.append(f"Generate {remaining} DISTINCTLY DIFFERENT scenes.")
    if emphasize:
        parts.append(f"Explore these underrepresented aspects: {', '.join(emphasize[:3])}.")
    if avoid:
        parts.append(f"Avoid overused elements: {', '.join(avoid[:2])}.")
    if output_mode == OutputMode.SKETCH:
        parts.append("Vary the sketch style: some loose, some detailed, different perspectives.")
    elif output_mode == OutputMode.GAMEPLAY:
        parts.append(
            "Vary gameplay situations: exploration, combat, dialogue, inventory management."
        )

    return DiversityGuidance(
        prompt_prefix=" ".join(parts),
        emphasize=emphasize,
        avoid=avoid,
        suggested_shot=suggested_shot,
    )


def apply_diversity_to_prompt(prompt: str, guidance: DiversityGuidance) -> str:
    """Prefix a prompt with the suggested shot, e.g. "[DIVERSITY: wide shot, tense mood] "."""
    if not guidance.prompt_prefix and not guidance.emphasize:
        return prompt
    block = []
    if "composition" in guidance.suggested_shot:
        block.append(f"{guidance.suggested_shot['composition']} shot")
    if "mood" in guidance.suggested_shot:
        block.append(f"{guidance.suggested_shot['mood']} mood")
    if "lighting" in guidance.suggested_shot:
        block.append(f"{guidance.suggested_shot['lighting']} lighting")
    if not block:
        return prompt
    return f"[DIVERSITY: {', '.join(block)}] {prompt}"


def apply_diversity_to_feedback(
    feedback: RefinementFeedback,
    guidance: DiversityGuidance,
) -> RefinementFeedback:
    positive = feedback.positive
    negative = feedback.negative
    if guidance.emphasize:
        text = f"Explore: {', '.join(guidance.emphasize[:2])}"
        positive = f"{positive}. {text}" if positive else text
    if guidance.avoid:
        text = f"Avoid repeating: {', '.join(guidance.avoid[:2])}"
        negative = f"{negative}. {text}" if negative else text
    return RefinementFeedback(positive=positive, negative=negative)


def needs_diversity_guidance(inventory: DiversityInventory) -> bool:
    return bool(inventory.fingerprints) and bool(inventory.gaps or inventory.saturated)


def diversity_summary(inventory: DiversityInventory) -> str:
    """One-line description for logs."""
    if not inventory.fingerprints:
        return "No images analyzed yet"
    parts = [f"{len(inventory.fingerprints)} images analyzed"]
    if inventory.gaps:
        parts.append(f"{len(inventory.gaps)} unexplored aspects")
    if inventory.saturated:
        parts.append(f"{len(inventory.saturated)} overrepresented aspects")
    return ", ".join(parts)
