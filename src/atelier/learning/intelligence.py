"""Run intelligence: diversity and evolution tracking for one autoplay run.

Wraps the diversity director and the prompt evolution engine behind the
few calls the orchestrator makes: after images are saved, before feedback
goes to the prompt generator, and for each newly generated prompt.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass

from atelier.autoplay.cancellation import CancellationToken
from atelier.autoplay.events import AutoplayEventType, EventLog
from atelier.core.logging import get_logger
from atelier.core.models import (
    GeneratedImage,
    GeneratedPrompt,
    ImageEvaluation,
    OutputMode,
    RefinementFeedback,
)
from atelier.learning.diversity import (
    DiversityGuidance,
    DiversityInventory,
    apply_diversity_to_feedback,
    diversity_summary,
    extract_fingerprints,
    generate_diversity_guidance,
    needs_diversity_guidance,
    update_inventory,
)
from atelier.learning.evolution import (
    EvaluationContext,
    EvolutionState,
    MutationRecord,
    apply_prompt_mutations,
    enhance_feedback_with_evolution,
    evolution_summary,
    generate_prompt_mutations,
    should_apply_evolution,
    update_evolution_state,
)
from atelier.services.base import Fingerprinter

_logger = get_logger("intelligence")

_NO_DIVERSITY = "No images analyzed yet"
_NO_EVOLUTION = "No samples processed yet"


@dataclass(frozen=True)
class IntelligenceConfig:
    target_count: int
    output_mode: OutputMode
    diversity_enabled: bool = True
    evolution_enabled: bool = True


class RunIntelligence:
    """Diversity inventory and evolution state of the current run.

    Nothing happens until ``initialize`` is called; every method is then a
    no-op for the features disabled in the config.
    """

    def __init__(self, event_log: EventLog | None = None, rng: random.Random | None = None) -> None:
        self._events = event_log
        self._rng = rng or random.Random()
        self._config: IntelligenceConfig | None = None
        self.inventory = DiversityInventory.empty()
        self.evolution = EvolutionState()
        self.last_guidance: DiversityGuidance | None = None
        self.processed_count = 0

    def _log(self, event_type: AutoplayEventType, message: str) -> None:
        if self._events is not None:
            self._events.record(event_type, message)

    def initialize(self, config: IntelligenceConfig) -> None:
        self.reset()
        self._config = config
        self._log(AutoplayEventType.PHASE_STARTED, "Intelligent autoplay initialized")

    def reset(self) -> None:
        self._config = None
        self.inventory = DiversityInventory.empty()
        self.evolution = EvolutionState()
        self.last_guidance = None
        self.processed_count = 0

    async def process_saved_images(
        self,
        fingerprinter: Fingerprinter | None,
        images: Sequence[GeneratedImage],
        evaluations: Sequence[ImageEvaluation],
        prompts: Sequence[GeneratedPrompt],
        iteration: int,
        token: CancellationToken | None = None,
    ) -> None:
        """Learn from an iteration's results.

        Saved images are fingerprinted into the diversity inventory; all
        evaluations of the iteration feed the evolution state.

        Args:
            fingerprinter: Feature extraction service; diversity tracking is
                skipped without one.
            images: Images saved this iteration.
            evaluations: Latest evaluation per prompt of the iteration.
            prompts: Prompts of the iteration, to recover prompt text.
            iteration: Current iteration number.
            token: Run cancellation token.
        """
        config = self._config
        if config is None:
            return

        if config.diversity_enabled and fingerprinter is not None and images:
            self._log(
                AutoplayEventType.IMAGE_COMPLETE,
                f"Analyzing {len(images)} images for diversity",
            )
            for fingerprint in await extract_fingerprints(fingerprinter, images, token):
                self.inventory = update_inventory(self.inventory, fingerprint)
            self._log(
                AutoplayEventType.FEEDBACK_APPLIED,
                f"Diversity updated: {diversity_summary(self.inventory)}",
            )

        if config.evolution_enabled and evaluations:
            texts = {prompt.id: prompt.text for prompt in prompts}
            contexts = [
                EvaluationContext(
                    prompt_id=evaluation.prompt_id,
                    prompt_text=texts.get(evaluation.prompt_id, ""),
                    score=evaluation.score,
                    approved=evaluation.approved,
                    feedback=evaluation.feedback,
                    improvements=list(evaluation.improvements),
                    strengths=list(evaluation.strengths),
                )
                for evaluation in evaluations
            ]
            self.evolution = update_evolution_state(self.evolution, contexts, iteration)
            self._log(
                AutoplayEventType.FEEDBACK_APPLIED,
                f"Evolution updated: {evolution_summary(self.evolution)}",
            )

        self.processed_count += len(images)

    def enhance_feedback(self, feedback: RefinementFeedback) -> RefinementFeedback:
        """Merge diversity guidance, then evolution hints, into ``feedback``."""
        config = self._config
        if config is None:
            return feedback

        enhanced = feedback
        if config.diversity_enabled and needs_diversity_guidance(self.inventory):
            guidance = generate_diversity_guidance(
                self.inventory,
                config.target_count,
                config.output_mode,
                rng=self._rng,
            )
            self.last_guidance = guidance
            enhanced = apply_diversity_to_feedback(enhanced, guidance)
            if guidance.emphasize:
                self._log(
                    AutoplayEventType.DIMENSION_ADJUSTED,
                    f"Diversity: emphasize {', '.join(guidance.emphasize[:2])}",
                )

        if config.evolution_enabled and should_apply_evolution(self.evolution):
            enhanced = enhance_feedback_with_evolution(enhanced, self.evolution.formula)
            self._log(AutoplayEventType.FEEDBACK_APPLIED, "Evolution insights applied to feedback")

        return enhanced

    def evolve_prompt(self, prompt: str, iteration: int) -> str:
        """Mutate a prompt toward the success formula and remember the mutations."""
        config = self._config
        if config is None or not config.evolution_enabled:
            return prompt
        formula = self.evolution.formula
        if formula is None or not should_apply_evolution(self.evolution):
            return prompt

        mutations = generate_prompt_mutations(
            prompt,
            formula,
            self.evolution.mutation_history,
            rng=self._rng,
        )
        if not mutations:
            return prompt

        evolved = apply_prompt_mutations(prompt, mutations)
        for mutation in mutations:
            self.evolution.mutation_history.append(
                MutationRecord(iteration=iteration, mutation=mutation)
            )
            self._log(
                AutoplayEventType.DIMENSION_ADJUSTED,
                f'Mutation: {mutation.type} "{mutation.target}" - {mutation.reason}',
            )
        _logger.debug(
            "intelligence.prompt_evolved",
            iteration=iteration,
            mutations=len(mutations),
        )
        return evolved

    def summary(self) -> str:
        parts = []
        diversity = diversity_summary(self.inventory)
        if diversity != _NO_DIVERSITY:
            parts.append(f"Diversity: {diversity}")
        evolution = evolution_summary(self.evolution)
        if evolution != _NO_EVOLUTION:
            parts.append(f"Evolution: {evolution}")
        return " | ".join(parts) if parts else "Initializing..."
