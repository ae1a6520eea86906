"""Multi-phase autoplay.

Runs a sketch phase and then a gameplay phase. Each phase is driven by the
single-mode orchestrator switched to the phase's output mode. A phase keeps
starting runs for its remaining target until one of these happens:

    target met          advance to the next phase
    run ended in error  the whole flow stops in ERROR (retry resumes there)
    abort               the whole flow completes as aborted
    run budget spent    the whole flow completes short of its target
    phase timeout       the whole flow stops in ERROR

Saved images are counted per phase from the orchestrator's ``image_saved``
events, so progress made before an error or timeout is kept for retry.
"""

from __future__ import annotations

import asyncio

from atelier.autoplay.events import AutoplayEventType, AutoplayLogEntry, EventLog
from atelier.autoplay.orchestrator import NO_BASE_IMAGE_REASON, AutoplayOrchestrator
from atelier.core.errors import AutoplayStartError
from atelier.core.logging import get_logger
from atelier.core.models import (
    AutoplayConfig,
    AutoplayPhase,
    AutoplayStatus,
    CompletionReason,
    MultiPhaseConfig,
    MultiPhaseState,
    PhaseProgress,
)
from atelier.utils.rounding import round_half_up

_logger = get_logger("phases")

MULTI_PHASE_RUNNING_REASON = "Multi-phase autoplay is currently running"
NOTHING_TO_RETRY_REASON = "Only a failed multi-phase run can be retried"
SINGLE_PHASE_ERROR = "Single-phase error"


class MultiPhaseOrchestrator:
    """Sequences single-mode autoplay runs across output-mode phases.

    Example:
        phases = MultiPhaseOrchestrator(orchestrator)
        state = await phases.run(MultiPhaseConfig(sketch_count=2, gameplay_count=2))
    """

    def __init__(
        self,
        orchestrator: AutoplayOrchestrator,
        event_log: EventLog | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.events = event_log or EventLog()
        self._base_context = orchestrator.context
        self._state = MultiPhaseState()
        orchestrator.events.subscribe(self._on_run_event)

    @property
    def state(self) -> MultiPhaseState:
        return self._state.model_copy(deep=True)

    def can_start_reason(self) -> str | None:
        if self._state.is_running:
            return MULTI_PHASE_RUNNING_REASON
        if not self._base_context.base_image.strip() and not self._base_context.prompts:
            return NO_BASE_IMAGE_REASON
        return None

    async def run(self, config: MultiPhaseConfig) -> MultiPhaseState:
        """Run every phase of ``config`` and return the final state.

        Raises:
            AutoplayStartError: If ``can_start_reason`` reports a reason.
        """
        reason = self.can_start_reason()
        if reason is not None:
            raise AutoplayStartError(reason)

        first = AutoplayPhase.SKETCH if config.sketch_count > 0 else AutoplayPhase.GAMEPLAY
        self._state = MultiPhaseState(
            phase=first,
            config=config,
            sketch_progress=PhaseProgress(target=config.sketch_count),
            gameplay_progress=PhaseProgress(target=config.gameplay_count),
        )
        self.events.clear()
        _logger.info(
            "phases.started",
            sketch_count=config.sketch_count,
            gameplay_count=config.gameplay_count,
            max_iterations_per_image=config.max_iterations_per_image,
        )
        return await self._drive()

    async def retry(self) -> MultiPhaseState:
        """Resume a failed run from the phase that errored, keeping progress."""
        if self._state.phase != AutoplayPhase.ERROR:
            raise AutoplayStartError(NOTHING_TO_RETRY_REASON)
        phase = self._state.error_phase or AutoplayPhase.GAMEPLAY
        self.events.record(
            AutoplayEventType.PHASE_STARTED,
            f"Retrying from {phase.value} phase",
            phase=phase.value,
        )
        self._state.phase = phase
        self._state.error = None
        self._state.error_phase = None
        return await self._drive()

    def abort(self) -> bool:
        """Stop after the current run; returns False when nothing is running."""
        if not self._state.is_running:
            return False
        self._state.aborted = True
        self.orchestrator.abort()
        return True

    def reset(self) -> None:
        self.orchestrator.reset()
        self.orchestrator.context = self._base_context
        self._state = MultiPhaseState()
        self.events.clear()

    # ------------------------------------------------------------------

    def _on_run_event(self, entry: AutoplayLogEntry) -> None:
        if entry.type != AutoplayEventType.IMAGE_SAVED or not self._state.is_running:
            return
        self._state.progress_for(self._state.phase).saved += 1

    async def _drive(self) -> MultiPhaseState:
        try:
            while self._state.is_running:
                phase = self._state.phase
                self.events.record(
                    AutoplayEventType.PHASE_STARTED,
                    f"Starting {phase.value} phase",
                    phase=phase.value,
                )
                await self._run_phase(phase)
                if self._state.phase != phase:
                    break
                self.events.record(
                    AutoplayEventType.PHASE_COMPLETED,
                    f"{phase.value} phase completed",
                    phase=phase.value,
                )
                self._state.phase = self._next_phase(phase)
        finally:
            self.orchestrator.context = self._base_context

        final = self.state
        reason = final.completion_reason
        if final.phase == AutoplayPhase.COMPLETE:
            self.events.record(
                AutoplayEventType.PHASE_COMPLETED,
                f"Autoplay complete: {reason.value if reason else 'unknown'} "
                f"({final.total_saved}/{final.target_saved} saved)",
            )
        _logger.info(
            "phases.finished",
            phase=final.phase.value,
            completion_reason=reason.value if reason else None,
            sketch_saved=final.sketch_progress.saved,
            gameplay_saved=final.gameplay_progress.saved,
            runs=final.runs,
        )
        return final

    def _next_phase(self, phase: AutoplayPhase) -> AutoplayPhase:
        if phase == AutoplayPhase.SKETCH and self._state.config.gameplay_count > 0:
            return AutoplayPhase.GAMEPLAY
        return AutoplayPhase.COMPLETE

    async def _run_phase(self, phase: AutoplayPhase) -> None:
        progress = self._state.progress_for(phase)
        timeout = self._state.config.phase_timeout(progress.target)
        try:
            await asyncio.wait_for(self._fill_phase(phase), timeout)
        except TimeoutError:
            self.orchestrator.reset()
            self.events.record(
                AutoplayEventType.TIMEOUT,
                f"Phase '{phase.value}' timed out after {round_half_up(timeout)}s",
                phase=phase.value,
            )
            self._fail(phase, f"Phase '{phase.value}' timed out - please try again")

    async def _fill_phase(self, phase: AutoplayPhase) -> None:
        """Start single-mode runs until the phase target is met or the phase stops."""
        config = self._state.config
        progress = self._state.progress_for(phase)
        self.orchestrator.context = self._base_context.model_copy(
            update={"output_mode": phase.output_mode}
        )
        runs = 0
        while progress.remaining > 0:
            if self._state.aborted:
                self._state.phase = AutoplayPhase.COMPLETE
                return
            if runs >= config.max_runs_per_phase:
                self.events.record(
                    AutoplayEventType.ERROR,
                    f"{phase.value} phase stopped after {runs} runs "
                    f"({progress.saved}/{progress.target} saved)",
                    phase=phase.value,
                )
                self._state.phase = AutoplayPhase.COMPLETE
                return

            runs += 1
            self._state.runs += 1
            self.events.record(
                AutoplayEventType.PHASE_STARTED,
                f"Generating {progress.remaining} {phase.value} image(s)",
                phase=phase.value,
            )
            try:
                final = await self.orchestrator.run(
                    AutoplayConfig(
                        target_saved_count=progress.remaining,
                        max_iterations=config.max_iterations_per_image,
                    )
                )
            except AutoplayStartError as e:
                self._fail(phase, str(e))
                return

            if progress.remaining == 0:
                return
            if final.status == AutoplayStatus.ERROR:
                self._fail(phase, final.error or SINGLE_PHASE_ERROR)
                return
            if final.completion_reason == CompletionReason.ABORTED or self._state.aborted:
                self._state.aborted = True
                self._state.phase = AutoplayPhase.COMPLETE
                return
            self.events.record(
                AutoplayEventType.ITERATION_COMPLETE,
                f"Iteration complete, need {progress.remaining} more {phase.value} images",
                phase=phase.value,
            )

    def _fail(self, phase: AutoplayPhase, message: str) -> None:
        self.events.record(AutoplayEventType.ERROR, f"Phase failed: {message}", phase=phase.value)
        self._state.phase = AutoplayPhase.ERROR
        self._state.error = message
        self._state.error_phase = phase
