"""Cross-iteration learning: diversity tracking and prompt evolution."""

from atelier.learning.diversity import (
    DiversityGuidance,
    DiversityInventory,
    diversity_summary,
    generate_diversity_guidance,
    update_inventory,
)
from atelier.learning.evolution import (
    EvaluationContext,
    EvolutionState,
    PromptMutation,
    SuccessFormula,
    apply_prompt_mutations,
    build_success_formula,
    generate_prompt_mutations,
    update_evolution_state,
)
from atelier.learning.intelligence import IntelligenceConfig, RunIntelligence

__all__ = [
    "DiversityGuidance",
    "DiversityInventory",
    "EvaluationContext",
    "EvolutionState",
    "IntelligenceConfig",
    "PromptMutation",
    "RunIntelligence",
    "SuccessFormula",
    "apply_prompt_mutations",
    "build_success_formula",
    "diversity_summary",
    "generate_diversity_guidance",
    "generate_prompt_mutations",
    "update_evolution_state",
    "update_inventory",
]
