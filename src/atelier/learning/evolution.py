"""Prompt evolution: learn which prompt phrasing gets approved.

Each iteration the prompts of evaluated images are scanned for known
phrases (shot types, lighting terms, style words, intensifiers). Every
phrase accumulates success/failure counts across the run; evaluator
strengths count as a double success. Phrases are then bucketed into a
success formula:

- core: confidence >= 0.7 (top 5)
- optional: 0.5 <= confidence < 0.7 (top 5)
- avoid: confidence < 0.4 with at least two failures (top 5)

Future prompts are mutated toward the formula: missing core phrases are
added, avoid phrases removed, and strong core phrases occasionally
emphasized. Applied mutations are kept as pending history entries and
resolved to success/failure once a later batch uses their target.
"""

from __future__ import annotations

import random
import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Literal

from atelier.core.logging import get_logger
from atelier.core.models import RefinementFeedback
from atelier.utils.rounding import round_half_up

_logger = get_logger("evolution")

PatternType = Literal["element", "modifier", "structure", "subject", "style", "composition"]
MutationType = Literal["emphasize", "de-emphasize", "add", "remove", "substitute"]
MutationResult = Literal["success", "failure", "pending"]

MIN_SAMPLES_FOR_FORMULA = 2
CORE_PATTERN_THRESHOLD = 0.7
OPTIONAL_PATTERN_THRESHOLD = 0.5
AVOID_PATTERN_THRESHOLD = 0.4
FEEDBACK_CONFIDENCE_THRESHOLD = 0.3
MAX_MUTATIONS = 3
_FORMULA_BUCKET_SIZE = 5
_FULL_CONFIDENCE_SAMPLES = 10
_STRENGTH_WEIGHT = 2

ELEMENT_PATTERNS: tuple[re.Pattern[str], ...] = (
    # composition
    re.compile(
        r"\b(wide shot|close-?up|medium shot|portrait|establishing shot|aerial view)\b",
        re.IGNORECASE,
    ),
    # lighting
    re.compile(
        r"\b(dramatic lighting|rim lighting|backlit|golden hour|volumetric|ambient occlusion)\b",
        re.IGNORECASE,
    ),
    # style
    re.compile(
        r"\b(cinematic|photorealistic|stylized|painterly|cel-?shaded|hyper-?detailed)\b",
        re.IGNORECASE,
    ),
    # mood
    re.compile(r"\b(dramatic|peaceful|tense|mysterious|epic|intimate)\b", re.IGNORECASE),
    # technical
    re.compile(
        r"\b(high detail|8k|unreal engine|ray tracing|depth of field|bokeh)\b",
        re.IGNORECASE,
    ),
    # color
    re.compile(
        r"\b(warm tones|cool tones|vibrant colors|muted palette|high contrast)\b",
        re.IGNORECASE,
    ),
)

MODIFIER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(extremely|highly|very|ultra|incredibly)\s+\w+", re.IGNORECASE),
    re.compile(r"\b(masterpiece|award-?winning|professional|stunning)\b", re.IGNORECASE),
)

_CATEGORY_RULES: tuple[tuple[re.Pattern[str], PatternType], ...] = (
    (re.compile(r"shot|view|angle|perspective|frame"), "composition"),
    (re.compile(r"lighting|lit|shadow|glow|ray"), "style"),
    (re.compile(r"character|warrior|hero|figure|person"), "subject"),
    (re.compile(r"dramatic|peaceful|epic|tense|mood"), "style"),
    (re.compile(r"extremely|highly|very|ultra"), "modifier"),
)

_LEADING_TARGET = re.compile(r"shot|angle|view", re.IGNORECASE)


@dataclass
class PromptPattern:
    """A phrase seen in evaluated prompts, with its track record."""

    id: str
    type: PatternType
    pattern: str
    """Lower-cased phrase text."""

    success_count: int
    failure_count: int
    confidence: float
    """success / (success + failure)."""

    average_score: float


@dataclass
class SuccessFormula:
    """Confidence-bucketed phrases derived from all patterns of a run."""

    core_patterns: list[PromptPattern] = field(default_factory=list)
    optional_patterns: list[PromptPattern] = field(default_factory=list)
    avoid_patterns: list[str] = field(default_factory=list)
    formula_confidence: float = 0.0
    """min(1, sample_size / 10)."""

    sample_size: int = 0
    """Total pattern observations behind the formula."""


@dataclass
class PromptMutation:
    type: MutationType
    target: str
    reason: str
    confidence: float
    replacement: str | None = None


@dataclass
class MutationRecord:
    """A mutation applied to a prompt and what came of it."""

    iteration: int
    mutation: PromptMutation
    result: MutationResult = "pending"


@dataclass
class EvaluationContext:
    """One evaluated prompt as seen by the evolution engine."""

    prompt_id: str
    prompt_text: str
    score: int
    approved: bool
    feedback: str | None = None
    improvements: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)


@dataclass
class EvolutionState:
    patterns: list[PromptPattern] = field(default_factory=list)
    formula: SuccessFormula | None = None
    mutation_history: list[MutationRecord] = field(default_factory=list)
    total_samples: int = 0


# =============================================================================
# Pattern extraction
# =============================================================================


def extract_patterns_from_prompt(prompt_text: str) -> list[str]:
    """Return the distinct known phrases in a prompt, lower-cased, in scan order."""
    found: list[str] = []
    for regex in (*ELEMENT_PATTERNS, *MODIFIER_PATTERNS):
        found.extend(match.group(0).lower() for match in regex.finditer(prompt_text))
    return list(dict.fromkeys(found))


def categorize_pattern(pattern: str) -> PatternType:
    lowered = pattern.lower()
    for regex, pattern_type in _CATEGORY_RULES:
        if regex.search(lowered):
            return pattern_type
    return "element"


@dataclass
class _PatternStats:
    type: PatternType
    success_count: int = 0
    failure_count: int = 0
    total_score: float = 0.0


def _by_confidence(patterns: list[PromptPattern]) -> list[PromptPattern]:
    return sorted(patterns, key=lambda p: p.confidence, reverse=True)


def extract_success_patterns(contexts: Sequence[EvaluationContext]) -> list[PromptPattern]:
    """Tally phrase outcomes over a batch of evaluated prompts.

    Phrases in an approved prompt count one success, in a rejected prompt
    one failure. Evaluator strengths are taken verbatim as phrases and
    count two successes each.

    Returns:
        Patterns sorted by confidence, highest first.
    """
    stats: dict[str, _PatternStats] = {}
    for context in contexts:
        for phrase in extract_patterns_from_prompt(context.prompt_text):
            entry = stats.setdefault(phrase, _PatternStats(type=categorize_pattern(phrase)))
            if context.approved:
                entry.success_count += 1
            else:
                entry.failure_count += 1
            entry.total_score += context.score

        for strength in context.strengths:
            entry = stats.setdefault(strength.lower(), _PatternStats(type="element"))
            entry.success_count += _STRENGTH_WEIGHT
            entry.total_score += context.score

    patterns: list[PromptPattern] = []
    for index, (phrase, entry) in enumerate(stats.items()):
        total = entry.success_count + entry.failure_count
        if total == 0:
            continue
        patterns.append(
            PromptPattern(
                id=f"pattern-{index}",
                type=entry.type,
                pattern=phrase,
                success_count=entry.success_count,
                failure_count=entry.failure_count,
                confidence=entry.success_count / total,
                average_score=entry.total_score / total,
            )
        )
    return _by_confidence(patterns)


def build_success_formula(patterns: Sequence[PromptPattern]) -> SuccessFormula:
    core: list[PromptPattern] = []
    optional: list[PromptPattern] = []
    avoid: list[str] = []
    for pattern in patterns:
        if pattern.confidence >= CORE_PATTERN_THRESHOLD:
            core.append(pattern)
        elif pattern.confidence >= OPTIONAL_PATTERN_THRESHOLD:
            optional.append(pattern)
        elif pattern.confidence < AVOID_PATTERN_THRESHOLD and pattern.failure_count >= 2:
            avoid.append(pattern.pattern)

    sample_size = sum(p.success_count + p.failure_count for p in patterns)
    return SuccessFormula(
        core_patterns=core[:_FORMULA_BUCKET_SIZE],
        optional_patterns=optional[:_FORMULA_BUCKET_SIZE],
        avoid_patterns=avoid[:_FORMULA_BUCKET_SIZE],
        formula_confidence=min(1.0, sample_size / _FULL_CONFIDENCE_SAMPLES),
        sample_size=sample_size,
    )


def merge_patterns(
    existing: Sequence[PromptPattern],
    new: Sequence[PromptPattern],
) -> list[PromptPattern]:
    """Combine counts of phrases seen before with a fresh batch."""
    merged: dict[str, PromptPattern] = {pattern.pattern: pattern for pattern in existing}
    for pattern in new:
        previous = merged.get(pattern.pattern)
        if previous is None:
            merged[pattern.pattern] = pattern
            continue
        success = previous.success_count + pattern.success_count
        failure = previous.failure_count + pattern.failure_count
        total = success + failure
        previous_total = previous.success_count + previous.failure_count
        new_total = pattern.success_count + pattern.failure_count
        merged[pattern.pattern] = replace(
            previous,
            success_count=success,
            failure_count=failure,
            confidence=success / total,
            average_score=(
                previous.average_score * previous_total + pattern.average_score * new_total
            )
            / total,
        )
    return _by_confidence(list(merged.values()))


def _resolve_mutation(
    record: MutationRecord,
    contexts: Sequence[EvaluationContext],
) -> MutationRecord:
    if record.result != "pending":
        return record
    target = record.mutation.target.lower()
    users = [c for c in contexts if target in c.prompt_text.lower()]
    if not users:
        return record
    result: MutationResult = "success" if any(c.approved for c in users) else "failure"
    return replace(record, result=result)


def update_evolution_state(
    state: EvolutionState,
    contexts: Sequence[EvaluationContext],
    iteration: int,
) -> EvolutionState:
    """Fold a batch of evaluations into the run's evolution state.

    Args:
        state: Current state; not modified.
        contexts: Evaluated prompts of the batch.
        iteration: Iteration the batch belongs to.

    Returns:
        New state with merged patterns, a rebuilt formula once at least two
        samples exist, and pending mutations resolved against the batch.
    """
    patterns = merge_patterns(state.patterns, extract_success_patterns(contexts))
    total_samples = state.total_samples + len(contexts)
    formula = build_success_formula(patterns) if total_samples >= MIN_SAMPLES_FOR_FORMULA else None
    history = [_resolve_mutation(record, contexts) for record in state.mutation_history]

    _logger.debug(
        "evolution.state_updated",
        iteration=iteration,
        samples=total_samples,
        patterns=len(patterns),
        core=len(formula.core_patterns) if formula else 0,
    )
    return EvolutionState(
        patterns=patterns,
        formula=formula,
        mutation_history=history,
        total_samples=total_samples,
    )


# =============================================================================
# Mutations
# =============================================================================


def generate_prompt_mutations(
    prompt: str,
    formula: SuccessFormula,
    history: Sequence[MutationRecord],
    rng: random.Random | None = None,
) -> list[PromptMutation]:
    """Propose at most three mutations moving ``prompt`` toward the formula.

    Missing core phrases are added unless adding that exact phrase failed
    before; present avoid phrases are removed; present core phrases with
    confidence above 0.8 are emphasized on a coin flip.
    """
    rng = rng or random.Random()
    lowered = prompt.lower()
    failed_targets = {r.mutation.target for r in history if r.result == "failure"}
    mutations: list[PromptMutation] = []

    for pattern in formula.core_patterns:
        if pattern.pattern.lower() in lowered or pattern.pattern in failed_targets:
            continue
        mutations.append(
            PromptMutation(
                type="add",
                target=pattern.pattern,
                reason=f"Core pattern ({round_half_up(pattern.confidence * 100)}% success rate)",
                confidence=pattern.confidence,
            )
        )

    for avoid in formula.avoid_patterns:
        if avoid.lower() in lowered:
            mutations.append(
                PromptMutation(
                    type="remove",
                    target=avoid,
                    reason="Correlated with failures",
                    confidence=0.6,
                )
            )

    for pattern in formula.core_patterns:
        if pattern.pattern.lower() not in lowered:
            continue
        if pattern.confidence > 0.8 and rng.random() > 0.5:
            mutations.append(
                PromptMutation(
                    type="emphasize",
                    target=pattern.pattern,
                    replacement=f"highly detailed {pattern.pattern}",
                    reason=f"High success rate ({round_half_up(pattern.confidence * 100)}%)",
                    confidence=pattern.confidence,
                )
            )

    return mutations[:MAX_MUTATIONS]


def _cleanup(text: str) -> str:
    text = re.sub(r",\s*,", ",", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"^,\s*", "", text)
    return re.sub(r",\s*$", "", text)


def apply_prompt_mutations(prompt: str, mutations: Sequence[PromptMutation]) -> str:
    """Apply mutations in order and tidy up the commas they leave behind.

    Added shot/angle/view phrases go to the front, other additions to the
    end. Targets are matched as whole words, case-insensitively.
    """
    result = prompt
    for mutation in mutations:
        target = re.escape(mutation.target)
        if mutation.type == "add":
            if _LEADING_TARGET.search(mutation.target):
                result = f"{mutation.target}, {result}"
            else:
                result = f"{result}, {mutation.target}"
        elif mutation.type == "remove":
            result = re.sub(rf"\b{target}\b,?\s*", "", result, flags=re.IGNORECASE)
        elif mutation.type in ("emphasize", "substitute"):
            if mutation.replacement:
                replacement = mutation.replacement
                result = re.sub(
                    rf"\b{target}\b",
                    lambda _match: replacement,
                    result,
                    flags=re.IGNORECASE,
                )
        elif mutation.type == "de-emphasize":
            plain = mutation.target
            result = re.sub(
                rf"(extremely|highly|very|ultra)\s+{target}",
                lambda _match: plain,
                result,
                flags=re.IGNORECASE,
            )
    return _cleanup(result)


# =============================================================================
# Feedback and reporting
# =============================================================================


def enhance_feedback_with_evolution(
    feedback: RefinementFeedback,
    formula: SuccessFormula | None,
) -> RefinementFeedback:
    """Append core and avoid phrases once the formula is at least 30% confident."""
    if formula is None or formula.formula_confidence < FEEDBACK_CONFIDENCE_THRESHOLD:
        return feedback

    positive = feedback.positive
    negative = feedback.negative
    if formula.core_patterns:
        hints = ", ".join(p.pattern for p in formula.core_patterns[:2])
        positive = f"{positive}. Emphasize: {hints}" if positive else f"Emphasize: {hints}"
    if formula.avoid_patterns:
        hints = ", ".join(formula.avoid_patterns[:2])
        negative = f"{negative}. Avoid: {hints}" if negative else f"Avoid: {hints}"
    return RefinementFeedback(positive=positive, negative=negative)


def evolution_summary(state: EvolutionState) -> str:
    if state.total_samples == 0:
        return "No samples processed yet"
    parts = [f"{state.total_samples} samples, {len(state.patterns)} patterns"]
    if state.formula is not None:
        parts.append(
            f"{len(state.formula.core_patterns)} core, {len(state.formula.avoid_patterns)} avoid"
        )
        parts.append(f"{round_half_up(state.formula.formula_confidence * 100)}% confidence")
    return ", ".join(parts)


def should_apply_evolution(state: EvolutionState) -> bool:
    return state.total_samples >= MIN_SAMPLES_FOR_FORMULA and state.formula is not None
