"""Autoplay orchestrator.

Drives one autoplay run: observes the state machine, runs the side effects
of each status exactly once, and advances the machine with their results.

    generating  regenerate prompts, stream images for them
    evaluating  score the images, pick polish candidates
    polishing   polish candidates one by one
    refining    save the best approved images, learn, build feedback

Side effects are keyed by ``(status, iteration, total_saved)``. A key is
dispatched at most once per run, however often the machine notifies.

Only four failures end a run with an error: no prompts, no image generated,
no image to evaluate, and the generation watchdog. An exception a handler
does not expect also ends the run with an error instead of leaving it
running. Everything else is recorded in the event log and the run
continues with safe defaults.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Sequence

from atelier.autoplay.cancellation import CancellationToken
from atelier.autoplay.events import AutoplayEventType, EventLog
from atelier.autoplay.state_machine import AutoplayStateMachine
from atelier.core.config import OrchestratorConfig
from atelier.core.errors import AtelierError, AutoplayStartError, OperationCancelled, ServiceError
from atelier.core.logging import RunContext, get_logger, with_context
from atelier.core.models import (
    AutoplayConfig,
    AutoplayState,
    AutoplayStatus,
    CompletionReason,
    CreativeContext,
    EvaluationCriteria,
    GeneratedImage,
    GeneratedPrompt,
    ImageEvaluation,
    ImageStatus,
    OutputMode,
    PolishCandidate,
    PolishConfig,
    PolishOutcome,
    PolishRequest,
    RefinementFeedback,
    RegenerationRequest,
)
from atelier.evaluation.criteria import build_evaluation_criteria
from atelier.evaluation.evaluator import evaluate_images, extract_refinement_feedback
from atelier.learning.intelligence import IntelligenceConfig, RunIntelligence
from atelier.polish.decision import decide
from atelier.polish.polisher import accepted_improvement, polish_with_timeout
from atelier.services.base import (
    Evaluator,
    Fingerprinter,
    ImageGenerator,
    PanelSaver,
    Polisher,
    PromptGenerator,
)

_logger = get_logger("orchestrator")

DispatchKey = tuple[AutoplayStatus, int, int]

NO_PROMPTS_MESSAGE = "No prompts available for generation"
ALL_GENERATIONS_FAILED_MESSAGE = "All image generations failed"
NO_IMAGES_MESSAGE = "No images to evaluate"
GENERATION_TIMEOUT_MESSAGE = "Generation timed out - please try again"
ABORT_MESSAGE = "Autoplay aborted"

RUNNING_REASON = "Autoplay is currently running"
POSTER_REASON = "Autoplay not available in Poster mode"
NO_BASE_IMAGE_REASON = "Add a base image to start autoplay"

_DIRECTIVE_SEPARATOR = " — "
_MAX_DIRECTIVE_ROUNDS = 2
_MAX_FIX_LENGTH = 120


def _unique(items: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(item for item in items if item))


class AutoplayOrchestrator:
    """Runs autoplay for one creative context against a set of services.

    All per-run bookkeeping (dispatch keys, active prompt ids, image table,
    polish attempts, refinement brief, evolved base image, tokens) belongs
    to the instance and is reset together when a run starts.

    Example:
        orchestrator = AutoplayOrchestrator(
            context,
            prompt_generator=client,
            image_generator=client,
            evaluator=client,
            polisher=client,
            panel_saver=client,
            fingerprinter=client,
        )
        state = await orchestrator.run(AutoplayConfig(target_saved_count=2))
    """

    def __init__(
        self,
        context: CreativeContext,
        *,
        prompt_generator: PromptGenerator,
        image_generator: ImageGenerator,
        evaluator: Evaluator,
        polisher: Polisher,
        panel_saver: PanelSaver,
        fingerprinter: Fingerprinter | None = None,
        polish_config: PolishConfig | None = None,
        config: OrchestratorConfig | None = None,
        event_log: EventLog | None = None,
        intelligence: RunIntelligence | None = None,
    ) -> None:
        self.context = context
        self.prompt_generator = prompt_generator
        self.image_generator = image_generator
        self.evaluator = evaluator
        self.polisher = polisher
        self.panel_saver = panel_saver
        self.fingerprinter = fingerprinter
        self.polish_config = polish_config or PolishConfig()
        self.config = config or OrchestratorConfig()
        self.events = event_log or EventLog()
        self.intelligence = intelligence or RunIntelligence(self.events)

        self.machine = AutoplayStateMachine(approval_threshold=self.config.approval_threshold)
        self.machine.subscribe(self._on_state_change)
        self._wake = asyncio.Event()

        self._token = CancellationToken()
        self._generation_token: CancellationToken | None = None
        self._watchdog: asyncio.Task[None] | None = None
        self._watchdog_iteration: int | None = None
        self._run_context = RunContext(output_mode=context.output_mode.value)
        self._reset_run_state()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> AutoplayState:
        return self.machine.state

    @property
    def dispatch_counts(self) -> dict[DispatchKey, int]:
        """How often each key was dispatched; every value is 1 in a healthy run."""
        return dict(self._dispatch_counts)

    @property
    def skipped_dispatches(self) -> int:
        return self._skipped_dispatches

    @property
    def refinement_brief(self) -> str:
        return self._brief

    @property
    def evolved_base_image(self) -> str:
        """Base image description sent to the prompt generator next."""
        return self._compose_base_image()

    @property
    def polish_attempts(self) -> dict[str, int]:
        return dict(self._polish_attempts)

    @property
    def images(self) -> dict[str, GeneratedImage]:
        return dict(self._images)

    def can_start_reason(self) -> str | None:
        """Why a run cannot start right now, or None if it can."""
        if not self.machine.can_start:
            return RUNNING_REASON
        if self.context.output_mode == OutputMode.POSTER:
            return POSTER_REASON
        if not self.context.base_image.strip() and not self.context.prompts:
            return NO_BASE_IMAGE_REASON
        return None

    def start_autoplay(self, config: AutoplayConfig) -> None:
        """Reset all run bookkeeping and start the state machine.

        Raises:
            AutoplayStartError: If ``can_start_reason`` reports a reason.
        """
        reason = self.can_start_reason()
        if reason is not None:
            _logger.warning("orchestrator.start_rejected", reason=reason)
            raise AutoplayStartError(reason)

        self._disarm_watchdog()
        self._token.dispose()
        self._token = CancellationToken()
        self._run_context = RunContext(output_mode=self.context.output_mode.value)
        self._reset_run_state()
        self.events.clear()
        self.intelligence.initialize(
            IntelligenceConfig(
                target_count=config.target_saved_count,
                output_mode=self.context.output_mode,
                diversity_enabled=self.config.diversity_enabled,
                evolution_enabled=self.config.evolution_enabled,
            )
        )
        self.machine.start(config)
        self.events.record(
            AutoplayEventType.PHASE_STARTED,
            f"Autoplay started (target {config.target_saved_count}, "
            f"max {config.max_iterations} iterations)",
        )
        _logger.info(
            "orchestrator.started",
            run_id=self._run_context.run_id,
            target_saved_count=config.target_saved_count,
            max_iterations=config.max_iterations,
        )

    async def run(self, config: AutoplayConfig) -> AutoplayState:
        """Start a run and drive it to completion or error.

        Returns:
            The final state.

        Raises:
            AutoplayStartError: If the run cannot start.
        """
        self.start_autoplay(config)
        with with_context(self._run_context):
            try:
                await self._control_loop()
            finally:
                self._disarm_watchdog()
                self._token.dispose()

        final = self.machine.state
        if final.status == AutoplayStatus.ERROR:
            self.events.record(AutoplayEventType.ERROR, f"Autoplay stopped: {final.error}")
        else:
            reason = final.completion_reason.value if final.completion_reason else "unknown"
            self.events.record(
                AutoplayEventType.PHASE_COMPLETED,
                f"Autoplay complete: {reason} ({final.total_saved} saved)",
            )
        _logger.info(
            "orchestrator.finished",
            status=final.status.value,
            completion_reason=final.completion_reason.value if final.completion_reason else None,
            total_saved=final.total_saved,
            iterations=final.current_iteration,
            skipped_dispatches=self._skipped_dispatches,
            intelligence=self.intelligence.summary(),
        )
        return final

    def abort(self) -> bool:
        """Request abort; in-flight service calls are cancelled.

        Returns:
            False if no run was active.
        """
        if not self.machine.abort():
            return False
        self._token.cancel(ABORT_MESSAGE)
        return True

    def reset(self) -> None:
        """Stop everything and go back to idle."""
        self._token.cancel(ABORT_MESSAGE)
        self._disarm_watchdog()
        self.machine.reset()
        self.intelligence.reset()
        self.events.clear()
        self._reset_run_state()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _reset_run_state(self) -> None:
        self._last_key: DispatchKey | None = None
        self._dispatch_counts: Counter[DispatchKey] = Counter()
        self._skipped_dispatches = 0
        self._active_ids: list[str] = []
        self._prompts: dict[str, GeneratedPrompt] = {p.id: p for p in self.context.prompts}
        self._images: dict[str, GeneratedImage] = {}
        self._polish_attempts: dict[str, int] = {}
        self._brief = ""
        self._directive_rounds: list[str] = []
        self._criteria: EvaluationCriteria | None = None
        self._watchdog_iteration = None

    def _on_state_change(self, state: AutoplayState) -> None:
        self._wake.set()

    async def _control_loop(self) -> None:
        feedback: RefinementFeedback | None = None
        while True:
            state = self.machine.state
            if not state.is_running:
                return
            if state.abort_requested:
                self.events.record(AutoplayEventType.PHASE_COMPLETED, "Autoplay aborted by user")
                self.machine.complete(CompletionReason.ABORTED)
                continue

            key: DispatchKey = (state.status, state.current_iteration, state.total_saved)
            if key == self._last_key:
                self._skipped_dispatches += 1
                _logger.debug("orchestrator.duplicate_skipped", status=state.status.value)
                self._wake.clear()
                await self._wake.wait()
                continue

            self._last_key = key
            self._dispatch_counts[key] += 1
            self._wake.clear()
            ctx = self._run_context.with_iteration(state.current_iteration)
            with with_context(ctx):
                _logger.debug("orchestrator.dispatch", status=state.status.value)
                try:
                    feedback = await self._dispatch(state, feedback)
                except Exception as e:
                    self._fail_unexpected(state.status, e)
                    return

    def _fail_unexpected(self, status: AutoplayStatus, error: Exception) -> None:
        """End the run with an error after a handler raised."""
        message = str(error) or type(error).__name__
        _logger.error(
            "orchestrator.handler_failed",
            status=status.value,
            error=message,
            exc_info=True,
        )
        self.events.record(
            AutoplayEventType.ERROR,
            f"Unexpected error while {status.value}: {message}",
        )
        if self.machine.is_running:
            self.machine.set_error(message)

    async def _dispatch(
        self,
        state: AutoplayState,
        feedback: RefinementFeedback | None,
    ) -> RefinementFeedback | None:
        """Run the handler for the current status; returns feedback for the next generation."""
        if state.status == AutoplayStatus.GENERATING:
            await self._handle_generating(state.current_iteration, feedback)
            return None
        if state.status == AutoplayStatus.EVALUATING:
            await self._handle_evaluating()
        elif state.status == AutoplayStatus.POLISHING:
            await self._handle_polishing(state)
        elif state.status == AutoplayStatus.REFINING:
            return await self._handle_refining(state)
        return feedback

    # ------------------------------------------------------------------
    # Generating
    # ------------------------------------------------------------------

    def _arm_watchdog(self, iteration: int) -> None:
        if self._watchdog_iteration == iteration:
            return
        self._disarm_watchdog()
        self._watchdog_iteration = iteration
        self._watchdog = asyncio.create_task(
            self._watch_generation(iteration),
            name=f"autoplay-watchdog-{iteration}",
        )
        self._watchdog.add_done_callback(self._on_watchdog_done)

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()
        self._watchdog = None

    def _on_watchdog_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        _logger.error("orchestrator.watchdog_failed", error=str(error), task_name=task.get_name())
        self.events.record(
            AutoplayEventType.ERROR,
            f"Generation watchdog failed: {error}",
        )

    async def _watch_generation(self, iteration: int) -> None:
        await asyncio.sleep(self.config.generation_timeout_seconds)
        state = self.machine.state
        if state.status != AutoplayStatus.GENERATING or state.current_iteration != iteration:
            return
        self.events.record(
            AutoplayEventType.TIMEOUT,
            f"Generation timed out after {self.config.generation_timeout_seconds:g}s",
            iteration=iteration,
        )
        self.machine.set_error(GENERATION_TIMEOUT_MESSAGE)
        if self._generation_token is not None:
            self._generation_token.cancel(GENERATION_TIMEOUT_MESSAGE)

    async def _handle_generating(
        self,
        iteration: int,
        feedback: RefinementFeedback | None,
    ) -> None:
        self._arm_watchdog(iteration)
        token = self._token.child()
        self._generation_token = token
        self.events.record(
            AutoplayEventType.IMAGE_GENERATING,
            f"Starting image generation (iteration {iteration})",
        )
        try:
            prompts = await self._obtain_prompts(iteration, feedback, token)
            if not prompts:
                self.events.record(AutoplayEventType.ERROR, NO_PROMPTS_MESSAGE)
                self.machine.set_error(NO_PROMPTS_MESSAGE)
                return
            await self._generate_images(prompts, token)
        except OperationCancelled as e:
            _logger.info("orchestrator.generation_cancelled", reason=e.reason)
            return
        finally:
            token.dispose()
            self._generation_token = None

        if self.machine.status != AutoplayStatus.GENERATING:
            return
        completed = [pid for pid in self._active_ids if self._is_usable(pid)]
        if not completed:
            self.events.record(AutoplayEventType.ERROR, ALL_GENERATIONS_FAILED_MESSAGE)
            self.machine.set_error(ALL_GENERATIONS_FAILED_MESSAGE)
            return
        self.machine.on_generation_complete(list(self._active_ids))

    def _compose_base_image(self) -> str:
        base = self.context.base_image
        if not self._directive_rounds:
            return base
        rounds = _DIRECTIVE_SEPARATOR.join(self._directive_rounds[-_MAX_DIRECTIVE_ROUNDS:])
        return f"{base}{_DIRECTIVE_SEPARATOR}{rounds}" if base else rounds

    async def _obtain_prompts(
        self,
        iteration: int,
        feedback: RefinementFeedback | None,
        token: CancellationToken,
    ) -> list[GeneratedPrompt]:
        """Regenerate prompts, falling back to known prompts that have no image yet."""
        self.events.record(AutoplayEventType.PROMPT_GENERATED, "Regenerating prompts with feedback")
        request = RegenerationRequest(
            base_image=self._compose_base_image(),
            output_mode=self.context.output_mode,
            vision_sentence=self.context.vision_sentence,
            dimensions=self.context.dimensions,
            feedback=feedback,
            iteration_context=self._brief or None,
        )
        try:
            prompts = await token.run(self.prompt_generator.regenerate(request))
        except ServiceError as e:
            prompts = [p for p in self._prompts.values() if p.id not in self._images]
            self.events.record(
                AutoplayEventType.ERROR,
                f"Prompt regeneration failed: {e}",
                fallback_prompts=len(prompts),
            )

        evolved = [
            prompt.model_copy(
                update={"text": self.intelligence.evolve_prompt(prompt.text, iteration)}
            )
            for prompt in prompts
        ]
        limit = self.config.max_prompts_per_iteration
        selected = evolved[:limit] if limit else evolved
        for prompt in selected:
            self._prompts[prompt.id] = prompt
        self._active_ids = [prompt.id for prompt in selected]
        if selected:
            self.events.record(
                AutoplayEventType.PROMPT_GENERATED,
                f"{len(selected)} prompts ready (of {len(prompts)} available)",
            )
        return selected

    def _is_usable(self, prompt_id: str) -> bool:
        image = self._images.get(prompt_id)
        return image is not None and image.is_usable

    async def _consume_images(
        self,
        prompts: Sequence[GeneratedPrompt],
        token: CancellationToken,
    ) -> None:
        active = set(self._active_ids)
        async for update in token.iterate(self.image_generator.generate(prompts)):
            if update.prompt_id not in active:
                continue
            self._images[update.prompt_id] = update
            if update.status == ImageStatus.COMPLETE:
                self.events.record(
                    AutoplayEventType.IMAGE_COMPLETE,
                    "Image complete",
                    prompt_id=update.prompt_id,
                )
            elif update.status == ImageStatus.FAILED:
                self.events.record(
                    AutoplayEventType.IMAGE_FAILED,
                    f"Image failed: {update.error or 'unknown error'}",
                    prompt_id=update.prompt_id,
                )

    async def _generate_images(
        self,
        prompts: Sequence[GeneratedPrompt],
        token: CancellationToken,
    ) -> None:
        """Stream images for the prompts, re-triggering prompts that never produced one.

        Called only after regeneration has returned, so a re-trigger never
        overlaps an in-flight regeneration.
        """
        await self._consume_images(prompts, token)

        for attempt in range(1, self.config.backup_trigger_attempts + 1):
            missing = [p for p in prompts if p.id not in self._images]
            pending = [
                pid for pid in self._active_ids
                if pid in self._images and not self._images[pid].is_terminal
            ]
            if not missing or pending:
                break
            self.events.record(
                AutoplayEventType.IMAGE_GENERATING,
                f"Backup trigger: re-generating {len(missing)} missing image(s)",
                attempt=attempt,
            )
            await self._consume_images(missing, token)

        for prompt in prompts:
            image = self._images.get(prompt.id)
            if image is None or not image.is_terminal:
                self._images[prompt.id] = GeneratedImage(
                    prompt_id=prompt.id,
                    status=ImageStatus.FAILED,
                    error="No image produced",
                )

    # ------------------------------------------------------------------
    # Evaluating
    # ------------------------------------------------------------------

    async def _handle_evaluating(self) -> None:
        images = [self._images[pid] for pid in self._active_ids if self._is_usable(pid)]
        if not images:
            self.events.record(AutoplayEventType.ERROR, NO_IMAGES_MESSAGE)
            self.machine.set_error(NO_IMAGES_MESSAGE)
            return

        self.events.record(
            AutoplayEventType.IMAGE_COMPLETE,
            f"{len(images)} images generated, evaluating...",
        )
        criteria = build_evaluation_criteria(self.context, self.config.approval_threshold)
        self._criteria = criteria

        try:
            evaluations = await evaluate_images(self.evaluator, images, criteria, self._token)
        except AtelierError as e:
            self.events.record(AutoplayEventType.ERROR, f"Evaluation failed: {e}")
            evaluations = [
                ImageEvaluation(
                    prompt_id=image.prompt_id,
                    approved=False,
                    score=0,
                    feedback=f"Evaluation error: {e}. Retry in next iteration.",
                    improvements=["Retry evaluation"],
                )
                for image in images
            ]

        candidates: list[PolishCandidate] = []
        for evaluation in evaluations:
            self._record_evaluation(evaluation)
            candidate = self._polish_candidate(evaluation)
            if candidate is not None:
                candidates.append(candidate)
                self.events.record(
                    AutoplayEventType.POLISH_STARTED,
                    f"Queued for {candidate.polish_type} polish (score: {evaluation.score})",
                    prompt_id=evaluation.prompt_id,
                    score=evaluation.score,
                )

        self.machine.on_evaluation_complete(evaluations, candidates or None)

    def _record_evaluation(self, evaluation: ImageEvaluation) -> None:
        if evaluation.approved:
            self.events.record(
                AutoplayEventType.IMAGE_APPROVED,
                f"Image approved (score: {evaluation.score})",
                prompt_id=evaluation.prompt_id,
                score=evaluation.score,
                approved=True,
            )
        else:
            summary = (evaluation.feedback or "No feedback")[:80]
            self.events.record(
                AutoplayEventType.IMAGE_REJECTED,
                f"Image rejected (score: {evaluation.score}): {summary}",
                prompt_id=evaluation.prompt_id,
                score=evaluation.score,
                approved=False,
                feedback=evaluation.feedback,
            )

    def _polish_candidate(self, evaluation: ImageEvaluation) -> PolishCandidate | None:
        attempts = self._polish_attempts.get(evaluation.prompt_id, 0)
        if attempts >= self.polish_config.max_polish_attempts:
            return None
        decision = decide(
            evaluation,
            self.polish_config,
            self.context.output_mode,
            self.config.approval_threshold,
        )
        if decision.action != "polish" or not decision.polish_prompt or not decision.polish_type:
            return None
        image = self._images.get(evaluation.prompt_id)
        if image is None or not image.url:
            return None
        return PolishCandidate(
            prompt_id=evaluation.prompt_id,
            image_url=image.url,
            original_score=evaluation.score,
            polish_prompt=decision.polish_prompt,
            polish_type=decision.polish_type,
        )

    # ------------------------------------------------------------------
    # Polishing
    # ------------------------------------------------------------------

    async def _handle_polishing(self, state: AutoplayState) -> None:
        iteration = state.current
        candidates = iteration.polish_candidates if iteration is not None else None
        if not candidates:
            self.machine.on_polish_complete([])
            return
        criteria = self._criteria
        if criteria is None:
            self.events.record(
                AutoplayEventType.ERROR, "No evaluation criteria available for polish"
            )
            self.machine.on_polish_complete([])
            return

        self.events.record(
            AutoplayEventType.POLISH_STARTED,
            f"Starting polish for {len(candidates)} image(s)",
        )
        outcomes: list[PolishOutcome] = []
        for index, candidate in enumerate(candidates):
            if self.machine.state.abort_requested:
                skipped = candidates[index:]
                self.events.record(
                    AutoplayEventType.POLISH_SKIPPED,
                    f"Polish skipped for {len(skipped)} image(s) after abort",
                    prompt_ids=[c.prompt_id for c in skipped],
                )
                break
            outcomes.append(await self._polish_one(candidate, criteria))
        self.machine.on_polish_complete(outcomes)

    async def _polish_one(
        self,
        candidate: PolishCandidate,
        criteria: EvaluationCriteria,
    ) -> PolishOutcome:
        prompt_id = candidate.prompt_id
        self._polish_attempts[prompt_id] = self._polish_attempts.get(prompt_id, 0) + 1
        request = PolishRequest(
            image_url=candidate.image_url,
            prompt_id=prompt_id,
            polish_prompt=candidate.polish_prompt,
            criteria=criteria,
            polish_type=candidate.polish_type,
            min_score_improvement=self.polish_config.min_score_improvement,
            original_score=candidate.original_score,
        )
        try:
            result = await polish_with_timeout(
                self.polisher,
                request,
                self.polish_config.polish_timeout_ms,
                self._token,
            )
        except Exception as e:
            _logger.warning("orchestrator.polish_raised", prompt_id=prompt_id, error=str(e))
            self.events.record(
                AutoplayEventType.POLISH_ERROR,
                f"Polish failed: {e}",
                prompt_id=prompt_id,
            )
            return PolishOutcome(prompt_id=prompt_id, improved=False, error=str(e))

        if not result.success and result.error:
            self.events.record(
                AutoplayEventType.POLISH_ERROR,
                f"Polish failed: {result.error}",
                prompt_id=prompt_id,
            )
            return PolishOutcome(prompt_id=prompt_id, improved=False, error=result.error)

        re_evaluation = result.re_evaluation
        improved = accepted_improvement(
            result, candidate.original_score, self.polish_config.min_score_improvement
        )
        if improved and re_evaluation is not None and result.polished_url:
            self._images[prompt_id] = self._images[prompt_id].model_copy(
                update={"url": result.polished_url}
            )
            self.events.record(
                AutoplayEventType.IMAGE_POLISHED,
                f"Polish improved score: {candidate.original_score} → {re_evaluation.score}",
                prompt_id=prompt_id,
                score=re_evaluation.score,
                approved=re_evaluation.approved,
            )
            return PolishOutcome(
                prompt_id=prompt_id,
                improved=True,
                new_score=re_evaluation.score,
                polished_url=result.polished_url,
                re_evaluation=re_evaluation,
            )

        delta = result.score_delta
        if delta is None and re_evaluation is not None:
            delta = re_evaluation.score - candidate.original_score
        self.events.record(
            AutoplayEventType.POLISH_NO_IMPROVEMENT,
            f"Polish did not improve (delta: {delta or 0})",
            prompt_id=prompt_id,
            score=candidate.original_score,
        )
        return PolishOutcome(
            prompt_id=prompt_id,
            improved=False,
            new_score=re_evaluation.score if re_evaluation else None,
        )

    # ------------------------------------------------------------------
    # Refining
    # ------------------------------------------------------------------

    async def _handle_refining(self, state: AutoplayState) -> RefinementFeedback | None:
        iteration = state.current
        if iteration is None:
            return None
        evaluations = iteration.latest_evaluations()

        saved_images = await self._save_best(evaluations, state)
        if saved_images:
            self.machine.on_images_saved(len(saved_images))

        await self.intelligence.process_saved_images(
            self.fingerprinter,
            saved_images,
            evaluations,
            [self._prompts[pid] for pid in self._active_ids if pid in self._prompts],
            state.current_iteration,
            self._token,
        )

        feedback = self.intelligence.enhance_feedback(extract_refinement_feedback(evaluations))
        self._append_insight(state.current_iteration, evaluations)
        self._evolve_base_image(evaluations)

        if not feedback.is_empty:
            summary = (feedback.negative or feedback.positive)[:80]
            self.events.record(
                AutoplayEventType.FEEDBACK_APPLIED,
                f"Feedback: {summary}",
                feedback=feedback.negative or feedback.positive,
            )

        self.machine.on_refine_complete()
        await asyncio.sleep(self.config.settle_delay_seconds)
        self.events.record(
            AutoplayEventType.ITERATION_COMPLETE,
            f"Iteration {state.current_iteration} complete ({len(saved_images)} saved)",
        )
        self.machine.on_iteration_complete()
        return None if feedback.is_empty else feedback

    async def _save_best(
        self,
        evaluations: Sequence[ImageEvaluation],
        state: AutoplayState,
    ) -> list[GeneratedImage]:
        """Save the best approved images up to the remaining target."""
        approved = sorted(
            (e for e in evaluations if e.approved),
            key=lambda e: e.score,
            reverse=True,
        )
        remaining = state.config.target_saved_count - state.total_saved
        saved: list[GeneratedImage] = []
        for evaluation in approved[: max(1, remaining)]:
            prompt = self._prompts.get(evaluation.prompt_id)
            image = self._images.get(evaluation.prompt_id)
            if prompt is None or image is None:
                continue
            try:
                ok = await self._token.run(
                    self.panel_saver.save(prompt.id, prompt.text, image_url=image.url)
                )
            except Exception as e:
                _logger.warning("orchestrator.save_failed", prompt_id=prompt.id, error=str(e))
                self.events.record(
                    AutoplayEventType.ERROR,
                    f"Save failed: {e}",
                    prompt_id=prompt.id,
                )
                continue
            if ok:
                saved.append(image)
                self.events.record(
                    AutoplayEventType.IMAGE_SAVED,
                    f"Image saved (score: {evaluation.score})",
                    prompt_id=prompt.id,
                    score=evaluation.score,
                )
        return saved

    def _append_insight(self, iteration: int, evaluations: Sequence[ImageEvaluation]) -> None:
        if not evaluations:
            return
        best = sorted(evaluations, key=lambda e: e.score, reverse=True)[0]
        insights: list[str] = []
        if best.strengths:
            insights.append(f"Strengths: {', '.join(best.strengths[:2])}")
        if best.score:
            insights.append(f"top score {best.score}/100")
        fixes = [e.feedback for e in evaluations if not e.approved and e.feedback][:2]
        if fixes:
            insights.append(f"Fix: {'; '.join(fixes)[:_MAX_FIX_LENGTH]}")
        if not insights:
            return
        entry = f"[Iter {iteration}] {'. '.join(insights)}"
        self._brief = f"{self._brief}\n{entry}" if self._brief else entry

    def _evolve_base_image(self, evaluations: Sequence[ImageEvaluation]) -> None:
        strengths = _unique([s for e in evaluations for s in e.strengths])[:3]
        improvements = _unique(
            [i for e in evaluations if not e.approved for i in e.improvements]
        )[:3]
        directives = []
        if strengths:
            directives.append(f"emphasize {', '.join(strengths)}")
        if improvements:
            directives.append(f"improve {', '.join(improvements)}")
        if not directives:
            return
        directive = "; ".join(directives)
        self._directive_rounds = [*self._directive_rounds[-(_MAX_DIRECTIVE_ROUNDS - 1):], directive]
        self.events.record(
            AutoplayEventType.FEEDBACK_APPLIED,
            f"Base image evolved: ...{directive[:60]}",
        )
