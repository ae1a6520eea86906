"""Evaluation criteria and the vision-model scoring prompt.

The criteria are derived from the creative context of the run; the prompt
rendered from them tells the vision model how to score an image and what
JSON to answer with.
"""

from __future__ import annotations

import jinja2

from atelier.core.models import (
    DEFAULT_APPROVAL_THRESHOLD,
    CreativeContext,
    EvaluationCriteria,
    OutputMode,
)

_GAMEPLAY_CONTEXT = """\
This is a GAMEPLAY screenshot.

GAMEPLAY MODE REQUIREMENTS:
- MUST include visible game UI elements (HUD, health bars, minimap, inventory icons, etc.)
- Should feel like an authentic in-game capture
- Game mechanics should be visually implied (player stats, action states)
- UI placement should feel genre-appropriate

SCORING EMPHASIS for gameplay:
- Goal Fit: Does it look like a real game screenshot?
- Mode Compliance: Are UI elements present and genre-appropriate?
- Reward images that feel "playable" - like a screenshot from active gameplay."""

_CONCEPT_CONTEXT = """\
This is CONCEPT ART visualization.

CONCEPT MODE REQUIREMENTS:
- MUST NOT have game UI overlays or HUD elements
- Should emphasize artistic interpretation and visual style
- Focus on composition, lighting, and aesthetic quality
- Stylized rendering and artistic exploration encouraged

SCORING EMPHASIS for concept:
- Goal Fit: Does it capture the creative vision artistically?
- Mode Compliance: Is it clean without any game interface?
- Reward images that feel like polished concept illustrations."""

_EVALUATION_TEMPLATE = """\
You are an expert image quality evaluator for AI-generated game visuals.

Evaluate this generated image against the following criteria:

ORIGINAL PROMPT:
"{{ criteria.original_prompt }}"

MODE CONTEXT:
{{ mode_context }}

{% if criteria.expected_aspects %}
Expected aspects: {{ criteria.expected_aspects | join(', ') }}
{% else %}
Evaluate based on general quality and coherence.
{% endif %}
{% if criteria.breakdown %}

CREATIVE VISION CONTEXT:
The user's vision was analyzed as "{{ criteria.breakdown.format }}" format.
{% if key_elements %}
Key elements to preserve:
{% for element in key_elements %}
- {{ element }}
{% endfor %}
{% if hidden_elements > 0 %}
- (and {{ hidden_elements }} more...)
{% endif %}
{% endif %}

When scoring GOAL FIT, consider:
- Does the image feel authentic to the "{{ criteria.breakdown.format }}" format?
- Are the key elements visibly incorporated?
- Images that clearly preserve the creative vision should score higher.
{% endif %}

EVALUATION CRITERIA:
1. TECHNICAL QUALITY (0-100): Check for artifacts, blur, deformations, anatomical issues, rendering problems
2. GOAL FIT (0-100): How well does the image match the prompt and expected aspects?\
{% if criteria.breakdown %} Consider format and key elements.{% endif %}

3. AESTHETIC APPEAL (0-100): Composition, lighting, color harmony, visual interest
4. MODE COMPLIANCE: Does it correctly include/exclude UI elements based on the mode?

RESPOND IN THIS EXACT JSON FORMAT (no markdown, no code blocks).
IMPORTANT: Keep feedback under 50 words, max 2 items per array:
{
  "approved": true/false,
  "score": <overall score 0-100>,
  "technicalScore": <0-100>,
  "goalFitScore": <0-100>,
  "aestheticScore": <0-100>,
  "modeCompliance": true/false,
  "feedback": "<brief feedback, max 50 words>",
  "improvements": ["<key improvement>"],
  "strengths": ["<key strength>"]
}

APPROVAL LOGIC:
- Approve if overall score >= {{ criteria.approval_threshold }}
- Do NOT approve if modeCompliance is false
- Do NOT approve if technicalScore < 50 (major quality issues)

Be constructive in feedback - focus on actionable improvements for the next iteration."""

_MAX_LISTED_KEY_ELEMENTS = 5

_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
)
_template = _env.from_string(_EVALUATION_TEMPLATE)


def build_evaluation_criteria(
    context: CreativeContext,
    approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD,
) -> EvaluationCriteria:
    """Build the scoring rubric for the current creative context.

    The vision sentence is the project's identity and wins over the base
    image description. Only dimensions with a filled reference become
    expected aspects.
    """
    return EvaluationCriteria(
        original_prompt=context.vision_sentence or context.base_image,
        expected_aspects=[
            f"{dimension.label}: {dimension.reference}"
            for dimension in context.dimensions
            if dimension.reference.strip()
        ],
        output_mode=context.output_mode.value,
        approval_threshold=approval_threshold,
        breakdown=context.breakdown,
    )


def build_evaluation_prompt(criteria: EvaluationCriteria) -> str:
    """Render the vision-model prompt for one set of criteria."""
    key_elements = criteria.breakdown.key_elements if criteria.breakdown else []
    mode_context = (
        _GAMEPLAY_CONTEXT
        if criteria.output_mode == OutputMode.GAMEPLAY.value
        else _CONCEPT_CONTEXT
    )
    return _template.render(
        criteria=criteria,
        mode_context=mode_context,
        key_elements=key_elements[:_MAX_LISTED_KEY_ELEMENTS],
        hidden_elements=max(0, len(key_elements) - _MAX_LISTED_KEY_ELEMENTS),
    )
