"""Image evaluation: criteria, scoring prompt, batch evaluation and feedback."""

from atelier.evaluation.criteria import build_evaluation_criteria, build_evaluation_prompt
from atelier.evaluation.evaluator import (
    evaluate_images,
    evaluation_from_dict,
    extract_refinement_feedback,
    failed_evaluation,
    parse_evaluation_response,
)

__all__ = [
    "build_evaluation_criteria",
    "build_evaluation_prompt",
    "evaluate_images",
    "evaluation_from_dict",
    "extract_refinement_feedback",
    "failed_evaluation",
    "parse_evaluation_response",
]
