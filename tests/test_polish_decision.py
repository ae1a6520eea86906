"""Tests for atelier.polish.decision module."""

from __future__ import annotations

import pytest

from atelier.core.models import ImageEvaluation, OutputMode, PolishConfig
from atelier.polish.decision import (
    DEFAULT_RESCUE_INSTRUCTION,
    EXCELLENCE_TEMPLATES,
    IMPROVEMENT_KEYWORDS,
    PolishInstruction,
    build_excellence_polish_prompt,
    build_rescue_polish_prompt,
    decide,
    match_instruction,
    normalize_polish_mode,
)


def evaluation(score: int, **fields: object) -> ImageEvaluation:
    return ImageEvaluation(prompt_id="p1", approved=score >= 70, score=score, **fields)


class TestDecide:
    """Tests for the save/polish/reject bands with default thresholds."""

    def test_excellent_score_saved(self):
        decision = decide(evaluation(95), PolishConfig(), "gameplay", 70)
        assert decision.action == "save"
        assert decision.polish_prompt is None
        assert decision.polish_type is None

    def test_approved_score_gets_excellence_polish(self):
        decision = decide(evaluation(75, mode_compliance=True), PolishConfig(), "gameplay", 70)
        assert decision.action == "polish"
        assert decision.polish_type == "excellence"
        assert decision.polish_prompt

    def test_near_miss_gets_rescue_polish(self):
        decision = decide(evaluation(55), PolishConfig(), "concept", 70)
        assert decision.action == "polish"
        assert decision.polish_type == "rescue"
        assert "15 points from approval" in decision.reason

    def test_low_score_rejected(self):
        decision = decide(evaluation(30), PolishConfig(), "concept", 70)
        assert decision.action == "reject"
        assert "below rescue floor (50)" in decision.reason

    @pytest.mark.parametrize(
        ("score", "action"),
        [
            (90, "save"),
            (89, "polish"),
            (70, "polish"),
            (69, "polish"),
            (50, "polish"),
            (49, "reject"),
        ],
    )
    def test_band_edges(self, score, action):
        assert decide(evaluation(score)).action == action

    def test_excellence_disabled_saves_approved(self):
        config = PolishConfig(excellence_enabled=False)
        decision = decide(evaluation(80), config)
        assert decision.action == "save"
        assert decision.reason == "Score 80 meets approval threshold"

    def test_rescue_disabled_rejects_near_miss(self):
        config = PolishConfig(rescue_enabled=False)
        assert decide(evaluation(60), config).action == "reject"

    def test_custom_approval_threshold(self):
        decision = decide(evaluation(75), PolishConfig(), OutputMode.CONCEPT, approval_threshold=80)
        assert decision.polish_type == "rescue"

    def test_defaults_when_config_missing(self):
        assert decide(evaluation(92)).action == "save"


class TestNormalizePolishMode:
    def test_gameplay(self):
        assert normalize_polish_mode(OutputMode.GAMEPLAY) == "gameplay"
        assert normalize_polish_mode("gameplay") == "gameplay"

    @pytest.mark.parametrize("mode", ["sketch", "trailer", "realistic", "concept", "poster"])
    def test_everything_else_is_concept(self, mode):
        assert normalize_polish_mode(mode) == "concept"


class TestKeywordTable:
    """Tests for improvement note to instruction matching."""

    def test_case_insensitive_substring(self):
        assert match_instruction("Image is BLURRY in the background") == PolishInstruction.SHARPEN

    def test_first_keyword_in_table_order_wins(self):
        # "artifact" precedes "hand" in the table.
        assert match_instruction("hand has artifacts") == PolishInstruction.REMOVE_ARTIFACTS

    def test_substring_inside_word(self):
        assert match_instruction("unrealistic proportions") == PolishInstruction.REALISM

    def test_no_match(self):
        assert match_instruction("more cowbell") is None

    def test_every_keyword_is_lowercase(self):
        assert all(keyword == keyword.lower() for keyword, _ in IMPROVEMENT_KEYWORDS)


class TestRescuePrompt:
    def test_instructions_deduplicated_and_capped(self):
        prompt = build_rescue_polish_prompt(
            evaluation(
                55,
                improvements=[
                    "too blurry",
                    "blur on edges",
                    "face looks off",
                    "hands have six fingers",
                    "add HUD",
                    "lighting is flat",
                    "colors are dull",
                ],
            ),
            "gameplay",
        )
        assert prompt.startswith("Polish this game screenshot with targeted improvements:")
        assert prompt.count(PolishInstruction.SHARPEN.value) == 1
        assert PolishInstruction.FIX_FACE.value in prompt
        assert PolishInstruction.LIGHTING.value in prompt
        assert PolishInstruction.COLOR_HARMONY.value not in prompt

    def test_default_instruction_without_matches(self):
        prompt = build_rescue_polish_prompt(evaluation(55, improvements=["meh"]), "concept")
        assert prompt.startswith("Polish this concept art")
        assert f"- {DEFAULT_RESCUE_INSTRUCTION}" in prompt

    def test_priorities_for_low_subscores(self):
        prompt = build_rescue_polish_prompt(
            evaluation(55, technical_score=40, goal_fit_score=59, aesthetic_score=60),
            "concept",
        )
        assert "PRIORITY: Fix technical quality issues" in prompt
        assert "PRIORITY: Better match the intended creative vision" in prompt
        assert "PRIORITY: Enhance visual appeal" not in prompt

    def test_mode_violation_gameplay(self):
        prompt = build_rescue_polish_prompt(evaluation(55, mode_compliance=False), "gameplay")
        assert "CRITICAL: Add visible game UI elements" in prompt

    def test_mode_violation_concept(self):
        prompt = build_rescue_polish_prompt(evaluation(55, mode_compliance=False), "concept")
        assert "CRITICAL: Remove any game UI overlays" in prompt

    def test_strengths_preserved(self):
        prompt = build_rescue_polish_prompt(
            evaluation(55, strengths=["moody palette", "strong silhouette", "clear HUD", "fog"]),
            "gameplay",
        )
        assert "PRESERVE THESE STRENGTHS:\n- moody palette" in prompt
        assert "- clear HUD" in prompt
        assert "- fog" not in prompt

    def test_no_strengths_section_when_empty(self):
        prompt = build_rescue_polish_prompt(evaluation(55), "gameplay")
        assert "PRESERVE" not in prompt
        assert prompt.endswith("without fundamentally changing the image.")


class TestExcellencePrompt:
    def test_uses_mode_template(self):
        prompt = build_excellence_polish_prompt(evaluation(80), "concept", "subtle")
        assert prompt.startswith(EXCELLENCE_TEMPLATES["concept"]["subtle"])
        assert "ADDITIONAL FOCUS" not in prompt

    def test_focus_lines_for_lagging_subscores(self):
        prompt = build_excellence_polish_prompt(
            evaluation(80, technical_score=84, aesthetic_score=85, goal_fit_score=70),
            "gameplay",
            "creative",
        )
        assert "- Enhance technical quality and fine detail" in prompt
        assert "Boost visual appeal" not in prompt
        assert "- Strengthen alignment with the creative vision" in prompt

    def test_all_strengths_preserved(self):
        prompt = build_excellence_polish_prompt(
            evaluation(80, strengths=["a", "b", "c", "d"]),
            "gameplay",
            "creative",
        )
        assert "CRITICAL - PRESERVE THESE STRENGTHS:" in prompt
        assert "- d" in prompt

    def test_intensity_from_config(self):
        decision = decide(evaluation(80), PolishConfig(excellence_intensity="subtle"), "gameplay")
        assert decision.polish_prompt is not None
        assert decision.polish_prompt.startswith(EXCELLENCE_TEMPLATES["gameplay"]["subtle"])
