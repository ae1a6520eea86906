"""Autoplay state machine.

The authoritative state of one autoplay run. Transitions:

    idle -> generating -> evaluating -> polishing -> refining -> generating ...
                                  \\-> refining (no polish candidates)

``complete`` and ``error`` are terminal sinks reachable from any running
state. Every transition method validates its source state and raises
StateTransitionError from an illegal one, leaving the state untouched.

Listeners registered with ``subscribe`` are called synchronously with a
snapshot of the new state after every successful transition.
"""

from __future__ import annotations

from collections.abc import Callable, Collection

from atelier.core.errors import StateTransitionError
from atelier.core.logging import get_logger
from atelier.core.models import (
    DEFAULT_APPROVAL_THRESHOLD,
    RUNNING_STATUSES,
    AutoplayConfig,
    AutoplayIteration,
    AutoplayState,
    AutoplayStatus,
    CompletionReason,
    ImageEvaluation,
    PolishCandidate,
    PolishOutcome,
)
from atelier.utils.time import utc_now

_logger = get_logger("state_machine")

StateListener = Callable[[AutoplayState], None]

_STARTABLE = (AutoplayStatus.IDLE, AutoplayStatus.COMPLETE, AutoplayStatus.ERROR)


class AutoplayStateMachine:
    """Reducer-style owner of an AutoplayState.

    Attributes:
        approval_threshold: Score a polished re-evaluation needs to count
            as approved.
    """

    def __init__(self, approval_threshold: int = DEFAULT_APPROVAL_THRESHOLD) -> None:
        self.approval_threshold = approval_threshold
        self._state = AutoplayState()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> AutoplayState:
        """Deep copy of the current state."""
        return self._state.model_copy(deep=True)

    @property
    def status(self) -> AutoplayStatus:
        return self._state.status

    @property
    def is_running(self) -> bool:
        return self._state.status in RUNNING_STATUSES

    @property
    def can_start(self) -> bool:
        return self._state.status in _STARTABLE

    @property
    def completion_reason(self) -> CompletionReason | None:
        """Why the run ended; None while idle or running."""
        if self._state.status in (AutoplayStatus.COMPLETE, AutoplayStatus.ERROR):
            return self._state.completion_reason
        return None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a transition listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, config: AutoplayConfig) -> None:
        """Begin a run at iteration 1, discarding any previous run."""
        self._require("start", _STARTABLE)
        self._state = AutoplayState(
            status=AutoplayStatus.GENERATING,
            config=config,
            current_iteration=1,
            iterations=[AutoplayIteration(iteration_number=1)],
        )
        _logger.info(
            "state_machine.started",
            target_saved_count=config.target_saved_count,
            max_iterations=config.max_iterations,
        )
        self._notify()

    def on_generation_complete(self, prompt_ids: list[str]) -> None:
        self._require("on_generation_complete", (AutoplayStatus.GENERATING,))
        self._current().prompt_ids = list(prompt_ids)
        self._set_status(AutoplayStatus.EVALUATING)

    def on_evaluation_complete(
        self,
        evaluations: list[ImageEvaluation],
        polish_candidates: list[PolishCandidate] | None = None,
    ) -> None:
        """Store evaluations; go polishing if there is anything to polish."""
        self._require("on_evaluation_complete", (AutoplayStatus.EVALUATING,))
        iteration = self._current()
        iteration.evaluations = list(evaluations)
        iteration.polish_candidates = list(polish_candidates) if polish_candidates else None
        if polish_candidates:
            self._set_status(AutoplayStatus.POLISHING)
        else:
            self._set_status(AutoplayStatus.REFINING)

    def on_polish_complete(self, results: list[PolishOutcome]) -> None:
        """Store polish outcomes and move to refining.

        The re-evaluation of every improved image is appended as a new
        evaluation; the original record is never modified.
        """
        self._require("on_polish_complete", (AutoplayStatus.POLISHING,))
        iteration = self._current()
        iteration.polish_results = list(results)
        for outcome in results:
            if not outcome.improved or outcome.re_evaluation is None:
                continue
            re_evaluation = outcome.re_evaluation
            iteration.evaluations.append(
                re_evaluation.model_copy(
                    update={
                        "prompt_id": outcome.prompt_id,
                        "polished": True,
                        "approved": re_evaluation.meets_approval(self.approval_threshold),
                    }
                )
            )
        self._set_status(AutoplayStatus.REFINING)

    def on_images_saved(self, count: int) -> None:
        """Add successful saves to the totals; status is unchanged."""
        self._require("on_images_saved", (AutoplayStatus.REFINING,))
        if count < 0:
            raise ValueError("saved count cannot be negative")
        self._state.total_saved += count
        self._current().saved_count += count
        _logger.info(
            "state_machine.images_saved",
            count=count,
            total_saved=self._state.total_saved,
        )
        self._notify()

    def on_refine_complete(self) -> None:
        """Mark feedback for the next iteration as available."""
        self._require("on_refine_complete", (AutoplayStatus.REFINING,))
        self._current().feedback_ready = True
        self._notify()

    def on_iteration_complete(self) -> None:
        """Close the iteration, then stop or start the next one.

        Checked in order: abort, save target, iteration cap.
        """
        self._require("on_iteration_complete", (AutoplayStatus.REFINING,))
        state = self._state
        self._current().completed_at = utc_now()

        if state.abort_requested:
            self._finish(CompletionReason.ABORTED)
        elif state.total_saved >= state.config.target_saved_count:
            self._finish(CompletionReason.TARGET_MET)
        elif state.current_iteration >= state.config.max_iterations:
            self._finish(CompletionReason.MAX_ITERATIONS)
        else:
            state.current_iteration += 1
            state.iterations.append(
                AutoplayIteration(iteration_number=state.current_iteration)
            )
            self._set_status(AutoplayStatus.GENERATING)

    def complete(self, reason: CompletionReason) -> None:
        """Force completion from any running state (used for abort)."""
        self._require("complete", RUNNING_STATUSES)
        iteration = self._state.current
        if iteration is not None and iteration.completed_at is None:
            iteration.completed_at = utc_now()
        self._finish(reason)

    def set_error(self, message: str) -> None:
        """Fatal failure: keep partial results, surface the message."""
        self._require("set_error", RUNNING_STATUSES)
        self._state.error = message
        self._state.completion_reason = CompletionReason.ERROR
        _logger.error("state_machine.error", message=message)
        self._set_status(AutoplayStatus.ERROR)

    def abort(self) -> bool:
        """Request cooperative abort.

        Status does not change here; the orchestrator completes the run with
        reason ``aborted`` on its next dispatch.

        Returns:
            True if the request was recorded, False if no run was active.
        """
        if not self.is_running:
            _logger.debug("state_machine.abort_ignored", status=self._state.status.value)
            return False
        if not self._state.abort_requested:
            self._state.abort_requested = True
            _logger.info("state_machine.abort_requested", status=self._state.status.value)
            self._notify()
        return True

    def reset(self) -> None:
        """Back to idle, discarding all history."""
        self._state = AutoplayState()
        _logger.debug("state_machine.reset")
        self._notify()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, operation: str, allowed: Collection[AutoplayStatus]) -> None:
        if self._state.status not in allowed:
            _logger.warning(
                "state_machine.illegal_transition",
                operation=operation,
                status=self._state.status.value,
            )
            raise StateTransitionError(operation, self._state.status.value)

    def _current(self) -> AutoplayIteration:
        iteration = self._state.current
        if iteration is None:
            raise StateTransitionError("current_iteration", self._state.status.value)
        return iteration

    def _finish(self, reason: CompletionReason) -> None:
        self._state.completion_reason = reason
        self._set_status(AutoplayStatus.COMPLETE, reason=reason.value)

    def _set_status(self, new_status: AutoplayStatus, reason: str | None = None) -> None:
        old_status = self._state.status
        self._state.status = new_status
        _logger.info(
            "state_machine.transition",
            from_state=old_status.value,
            to_state=new_status.value,
            iteration=self._state.current_iteration,
            total_saved=self._state.total_saved,
            reason=reason,
        )
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.state
        for listener in list(self._listeners):
            listener(snapshot)
