"""Polish decision engine.

Maps an evaluation to save, polish or reject, and writes the polish
instruction when polishing:

- score >= excellence ceiling: save, already excellent
- score >= approval threshold: excellence polish (if enabled), else save
- score >= rescue floor: rescue polish (if enabled)
- otherwise: reject, the prompt needs a full regeneration

Rescue prompts translate the evaluator's improvement notes into concrete
touch-up instructions through a keyword table; excellence prompts start from
a per-mode template and add focus lines for sub-scores that lag.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

import jinja2

from atelier.core.models import (
    DEFAULT_APPROVAL_THRESHOLD,
    ImageEvaluation,
    OutputMode,
    PolishConfig,
    PolishDecision,
)

PolishMode = Literal["gameplay", "concept"]


class PolishInstruction(str, Enum):
    """Touch-up instructions the rescue polish can ask for."""

    SHARPEN = "Sharpen and enhance detail clarity throughout the image"
    REMOVE_ARTIFACTS = (
        "Remove visual artifacts, noise, and rendering glitches while preserving composition"
    )
    FIX_DEFORMATIONS = "Fix anatomical deformations, incorrect proportions, and unnatural poses"
    IMPROVE_RENDERING = "Improve rendering quality, surface detail, and material definition"
    OVERALL_QUALITY = "Enhance overall image quality and technical execution"
    REDUCE_NOISE = "Reduce noise and grain while maintaining detail"
    FIX_DISTORTION = "Correct distortions and perspective issues"
    FIX_HANDS = "Fix hand anatomy - correct number of fingers with natural positioning"
    FIX_FINGERS = "Correct finger count and positioning for natural appearance"
    FIX_FACE = "Improve facial features and expression clarity"
    FIX_EYES = "Correct eye alignment and expression"
    FIX_BODY = "Fix body proportions and anatomical accuracy"
    STYLE_CONSISTENCY = "Enhance style consistency and artistic coherence throughout"
    ATMOSPHERE = "Intensify atmosphere, mood, and environmental ambiance"
    COMPOSITION = "Improve compositional balance, visual flow, and focal point clarity"
    ADD_DETAIL = "Add missing details and enrich the scene with visual interest"
    MATCH_VISION = "Better align the image with the intended creative vision"
    FOLLOW_PROMPT = "Strengthen adherence to the original prompt direction"
    ADD_GAME_UI = (
        "Add more prominent and authentic game UI elements (HUD, health bars, minimap)"
    )
    ENHANCE_HUD = "Enhance HUD visibility with genre-appropriate placement and styling"
    ADD_INTERFACE = "Add clear game interface elements that feel authentic to the genre"
    IN_GAME_FEEL = "Make the image feel more like an authentic in-game screenshot"
    REMOVE_UI_ARTIFACTS = "Remove any accidental UI artifacts for pure concept art presentation"
    REMOVE_OVERLAYS = "Remove unwanted overlay elements for clean concept visualization"
    COLOR_HARMONY = "Improve color harmony, saturation balance, and palette cohesion"
    LIGHTING = "Enhance lighting quality, shadows, and illumination consistency"
    CONTRAST = "Improve contrast and tonal range for visual impact"
    SATURATION = "Balance color saturation for more vibrant yet natural appearance"
    BRIGHTEN = "Brighten dark areas while maintaining mood and atmosphere"
    TONE_DOWN = "Balance overly bright areas for better detail visibility"
    CREATIVE_FLOURISH = "Add unique creative flourishes and distinctive visual interest"
    DISTINCTIVE = "Enhance distinctive elements that make the image memorable"
    REALISM = "Enhance realism and photographic quality where appropriate"
    DRAMA = "Intensify dramatic lighting, contrast, and visual impact"
    PROFESSIONAL_POLISH = "Apply overall refinement and professional polish"
    REFINE = "Refine details and enhance overall presentation quality"


# Ordered: the first keyword found in an improvement note wins.
IMPROVEMENT_KEYWORDS: tuple[tuple[str, PolishInstruction], ...] = (
    # technical
    ("blur", PolishInstruction.SHARPEN),
    ("blurry", PolishInstruction.SHARPEN),
    ("artifact", PolishInstruction.REMOVE_ARTIFACTS),
    ("artifacts", PolishInstruction.REMOVE_ARTIFACTS),
    ("deform", PolishInstruction.FIX_DEFORMATIONS),
    ("deformation", PolishInstruction.FIX_DEFORMATIONS),
    ("render", PolishInstruction.IMPROVE_RENDERING),
    ("rendering", PolishInstruction.IMPROVE_RENDERING),
    ("quality", PolishInstruction.OVERALL_QUALITY),
    ("noise", PolishInstruction.REDUCE_NOISE),
    ("distort", PolishInstruction.FIX_DISTORTION),
    # anatomy
    ("hand", PolishInstruction.FIX_HANDS),
    ("hands", PolishInstruction.FIX_HANDS),
    ("finger", PolishInstruction.FIX_FINGERS),
    ("face", PolishInstruction.FIX_FACE),
    ("eye", PolishInstruction.FIX_EYES),
    ("body", PolishInstruction.FIX_BODY),
    # goal fit
    ("style", PolishInstruction.STYLE_CONSISTENCY),
    ("atmosphere", PolishInstruction.ATMOSPHERE),
    ("composition", PolishInstruction.COMPOSITION),
    ("detail", PolishInstruction.ADD_DETAIL),
    ("details", PolishInstruction.ADD_DETAIL),
    ("match", PolishInstruction.MATCH_VISION),
    ("prompt", PolishInstruction.FOLLOW_PROMPT),
    # gameplay mode
    ("ui", PolishInstruction.ADD_GAME_UI),
    ("hud", PolishInstruction.ENHANCE_HUD),
    ("interface", PolishInstruction.ADD_INTERFACE),
    ("gameplay", PolishInstruction.IN_GAME_FEEL),
    # concept mode
    ("clean", PolishInstruction.REMOVE_UI_ARTIFACTS),
    ("overlay", PolishInstruction.REMOVE_OVERLAYS),
    # color and lighting
    ("color", PolishInstruction.COLOR_HARMONY),
    ("lighting", PolishInstruction.LIGHTING),
    ("contrast", PolishInstruction.CONTRAST),
    ("saturation", PolishInstruction.SATURATION),
    ("dark", PolishInstruction.BRIGHTEN),
    ("bright", PolishInstruction.TONE_DOWN),
    # creative
    ("creative", PolishInstruction.CREATIVE_FLOURISH),
    ("unique", PolishInstruction.DISTINCTIVE),
    ("realistic", PolishInstruction.REALISM),
    ("dramatic", PolishInstruction.DRAMA),
    ("polish", PolishInstruction.PROFESSIONAL_POLISH),
    ("refine", PolishInstruction.REFINE),
)

EXCELLENCE_TEMPLATES: dict[PolishMode, dict[str, str]] = {
    "gameplay": {
        "subtle": (
            "Enhance this game screenshot with subtle professional polish:\n"
            "- Sharpen UI elements for crisp readability\n"
            "- Add subtle atmospheric effects (light particles, ambient glow)\n"
            "- Enhance color grading for cinematic feel\n"
            "- Refine material quality and surface details"
        ),
        "creative": (
            "Elevate this gameplay to showcase-quality:\n"
            "- Intensify the mood and atmospheric depth\n"
            "- Add dynamic lighting effects and volumetric elements\n"
            "- Enhance material reflections and surface quality\n"
            "- Make it feel like a AAA marketing screenshot"
        ),
    },
    "concept": {
        "subtle": (
            "Polish this concept art with subtle refinements:\n"
            "- Enhance brush strokes and artistic detail\n"
            "- Improve color harmony and tonal balance\n"
            "- Add atmospheric depth and dimension\n"
            "- Refine compositional focal points"
        ),
        "creative": (
            "Elevate to gallery-quality concept art:\n"
            "- Add painterly flourishes and artistic touches\n"
            "- Intensify emotional impact and mood\n"
            "- Enhance unique stylistic elements\n"
            "- Achieve master artist level of polish and refinement"
        ),
    },
}

DEFAULT_RESCUE_INSTRUCTION = (
    "Enhance overall quality, fix visible issues, and improve visual appeal"
)

_MAX_RESCUE_INSTRUCTIONS = 5
_MAX_RESCUE_STRENGTHS = 3
_RESCUE_PRIORITY_BELOW = 60
_EXCELLENCE_FOCUS_BELOW = 85

_RESCUE_TEMPLATE = """\
Polish this {{ subject }} with targeted improvements:

{% for line in priorities %}
{{ line }}
{% endfor %}
{% if priorities %}

{% endif %}
IMPROVEMENTS NEEDED:
{% for instruction in instructions %}
- {{ instruction }}
{% endfor %}
{% if strengths %}

PRESERVE THESE STRENGTHS:
{% for strength in strengths %}
- {{ strength }}
{% endfor %}
{% endif %}

Keep the core composition and subject matter intact. Apply focused refinements that \
address the specific issues while preserving what works well. The goal is to elevate \
quality without fundamentally changing the image."""

_EXCELLENCE_TEMPLATE = """\
{{ template }}
{% if strengths %}

CRITICAL - PRESERVE THESE STRENGTHS:
{% for strength in strengths %}
- {{ strength }}
{% endfor %}
{% endif %}
{% if enhancements %}

ADDITIONAL FOCUS:
{% for enhancement in enhancements %}
- {{ enhancement }}
{% endfor %}
{% endif %}

The image is already approved quality. Apply professional polish to make it \
exceptional while preserving its strengths."""

_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
)
_rescue_template = _env.from_string(_RESCUE_TEMPLATE)
_excellence_template = _env.from_string(_EXCELLENCE_TEMPLATE)


def normalize_polish_mode(output_mode: OutputMode | str) -> PolishMode:
    """Polish only distinguishes "has game UI" (gameplay) from everything else."""
    value = output_mode.value if isinstance(output_mode, OutputMode) else output_mode
    return "gameplay" if value == OutputMode.GAMEPLAY.value else "concept"


def match_instruction(improvement: str) -> PolishInstruction | None:
    """Instruction for one improvement note (case-insensitive substring match)."""
    lowered = improvement.lower()
    for keyword, instruction in IMPROVEMENT_KEYWORDS:
        if keyword in lowered:
            return instruction
    return None


def build_rescue_polish_prompt(evaluation: ImageEvaluation, mode: PolishMode) -> str:
    """Polish prompt aimed at pushing a near-miss image over the approval bar."""
    instructions: list[str] = []
    for improvement in evaluation.improvements:
        instruction = match_instruction(improvement)
        if instruction is not None and instruction.value not in instructions:
            instructions.append(instruction.value)

    priorities: list[str] = []
    if evaluation.technical_score is not None and evaluation.technical_score < _RESCUE_PRIORITY_BELOW:
        priorities.append("PRIORITY: Fix technical quality issues (artifacts, blur, deformations)")
    if evaluation.goal_fit_score is not None and evaluation.goal_fit_score < _RESCUE_PRIORITY_BELOW:
        priorities.append("PRIORITY: Better match the intended creative vision and prompt")
    if evaluation.aesthetic_score is not None and evaluation.aesthetic_score < _RESCUE_PRIORITY_BELOW:
        priorities.append("PRIORITY: Enhance visual appeal, composition, and color harmony")
    if evaluation.mode_compliance is False:
        if mode == "gameplay":
            priorities.append("CRITICAL: Add visible game UI elements (HUD, health bars, minimap)")
        else:
            priorities.append("CRITICAL: Remove any game UI overlays for clean concept art")

    return _rescue_template.render(
        subject="game screenshot" if mode == "gameplay" else "concept art",
        priorities=priorities,
        instructions=instructions[:_MAX_RESCUE_INSTRUCTIONS] or [DEFAULT_RESCUE_INSTRUCTION],
        strengths=evaluation.strengths[:_MAX_RESCUE_STRENGTHS],
    )


def build_excellence_polish_prompt(
    evaluation: ImageEvaluation,
    mode: PolishMode,
    intensity: Literal["subtle", "creative"],
) -> str:
    """Polish prompt aimed at elevating an already-approved image."""
    enhancements: list[str] = []
    if evaluation.technical_score is not None and evaluation.technical_score < _EXCELLENCE_FOCUS_BELOW:
        enhancements.append("Enhance technical quality and fine detail")
    if evaluation.aesthetic_score is not None and evaluation.aesthetic_score < _EXCELLENCE_FOCUS_BELOW:
        enhancements.append("Boost visual appeal and artistic refinement")
    if evaluation.goal_fit_score is not None and evaluation.goal_fit_score < _EXCELLENCE_FOCUS_BELOW:
        enhancements.append("Strengthen alignment with the creative vision")

    return _excellence_template.render(
        template=EXCELLENCE_TEMPLATES[mode][intensity],
        strengths=evaluation.strengths,
        enhancements=enhancements,
    )


def decide(
    evaluation: ImageEvaluation,
    config: PolishConfig | None = None,
    output_mode: OutputMode | str = OutputMode.GAMEPLAY,
    approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD,
) -> PolishDecision:
    """Decide whether to save, polish or reject one evaluated image.

    Args:
        evaluation: The image's evaluation.
        config: Polish thresholds (defaults when None).
        output_mode: Output mode of the run.
        approval_threshold: Score required for approval.

    Returns:
        The decision; polish decisions carry the polish prompt and type.
    """
    config = config or PolishConfig()
    score = evaluation.score
    mode = normalize_polish_mode(output_mode)

    if score >= config.excellence_ceiling:
        return PolishDecision(
            action="save",
            reason=f"Score {score} is already excellent (>= {config.excellence_ceiling})",
        )

    if score >= approval_threshold:
        if config.excellence_enabled:
            return PolishDecision(
                action="polish",
                reason=f"Score {score} is approved but can be elevated to excellence",
                polish_prompt=build_excellence_polish_prompt(
                    evaluation, mode, config.excellence_intensity
                ),
                polish_type="excellence",
            )
        return PolishDecision(action="save", reason=f"Score {score} meets approval threshold")

    if score >= config.rescue_floor and config.rescue_enabled:
        return PolishDecision(
            action="polish",
            reason=(
                f"Score {score} is {approval_threshold - score} points from approval"
                " - attempting rescue polish"
            ),
            polish_prompt=build_rescue_polish_prompt(evaluation, mode),
            polish_type="rescue",
        )

    return PolishDecision(
        action="reject",
        reason=(
            f"Score {score} is below rescue floor ({config.rescue_floor})"
            " - needs full regeneration"
        ),
    )
