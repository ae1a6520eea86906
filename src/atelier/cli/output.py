"""Rich output formatting for the Atelier CLI.

Color schemes for run status and event types, plus the tables printed at
the end of a run.
"""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.table import Table

from atelier.autoplay.events import AutoplayEventType, AutoplayLogEntry
from atelier.core.models import AutoplayPhase, AutoplayState, AutoplayStatus, MultiPhaseState

console = Console()


class StatusColors:
    """Color mappings for run status and event types."""

    RUN_STATUS: dict[AutoplayStatus, str] = {
        AutoplayStatus.IDLE: "dim",
        AutoplayStatus.GENERATING: "blue",
        AutoplayStatus.EVALUATING: "blue",
        AutoplayStatus.POLISHING: "magenta",
        AutoplayStatus.REFINING: "cyan",
        AutoplayStatus.COMPLETE: "green",
        AutoplayStatus.ERROR: "red",
    }

    EVENT_TYPE: dict[AutoplayEventType, str] = {
        AutoplayEventType.IMAGE_APPROVED: "green",
        AutoplayEventType.IMAGE_SAVED: "green",
        AutoplayEventType.IMAGE_POLISHED: "green",
        AutoplayEventType.IMAGE_REJECTED: "yellow",
        AutoplayEventType.POLISH_NO_IMPROVEMENT: "yellow",
        AutoplayEventType.IMAGE_FAILED: "red",
        AutoplayEventType.POLISH_ERROR: "red",
        AutoplayEventType.ERROR: "red",
        AutoplayEventType.TIMEOUT: "red",
    }

    @classmethod
    def for_status(cls, status: AutoplayStatus) -> str:
        return cls.RUN_STATUS.get(status, "white")

    @classmethod
    def for_event(cls, event_type: AutoplayEventType) -> str:
        return cls.EVENT_TYPE.get(event_type, "white")


def format_status(status: AutoplayStatus) -> str:
    color = StatusColors.for_status(status)
    return f"[{color}]{status.value.upper()}[/{color}]"


def build_summary_table(state: AutoplayState) -> Table:
    """One row per iteration with evaluation and save counts."""
    table = Table(title="Autoplay summary", show_header=True, header_style="bold")
    table.add_column("Iteration", justify="right")
    table.add_column("Images", justify="right")
    table.add_column("Approved", justify="right")
    table.add_column("Best score", justify="right")
    table.add_column("Polished", justify="right")
    table.add_column("Saved", justify="right")

    for iteration in state.iterations:
        latest = iteration.latest_evaluations()
        approved = sum(1 for e in latest if e.approved)
        best = max((e.score for e in latest), default=None)
        polished = sum(1 for r in iteration.polish_results or [] if r.improved)
        table.add_row(
            str(iteration.iteration_number),
            str(len(iteration.prompt_ids)),
            str(approved),
            "-" if best is None else str(best),
            str(polished),
            str(iteration.saved_count),
        )
    return table


def build_event_table(entries: Sequence[AutoplayLogEntry]) -> Table:
    table = Table(title="Event log", show_header=True, header_style="bold")
    table.add_column("Time", style="dim")
    table.add_column("Type")
    table.add_column("Message")
    for entry in entries:
        color = StatusColors.for_event(entry.type)
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            f"[{color}]{entry.type.value}[/{color}]",
            entry.message,
        )
    return table


def print_run_result(state: AutoplayState, entries: Sequence[AutoplayLogEntry]) -> None:
    console.print(build_event_table(entries))
    console.print(build_summary_table(state))
    target = state.config.target_saved_count
    line = f"Status: {format_status(state.status)}  Saved: {state.total_saved}/{target}"
    if state.completion_reason is not None:
        line += f"  Reason: {state.completion_reason.value}"
    console.print(line)
    if state.error:
        console.print(f"[red]Error:[/red] {state.error}")


def build_phase_table(state: MultiPhaseState) -> Table:
    """Saved against target for each phase."""
    table = Table(title="Phases", show_header=True, header_style="bold")
    table.add_column("Phase")
    table.add_column("Saved", justify="right")
    table.add_column("Target", justify="right")
    for phase in (AutoplayPhase.SKETCH, AutoplayPhase.GAMEPLAY):
        progress = state.progress_for(phase)
        if progress.target == 0:
            continue
        table.add_row(phase.value, str(progress.saved), str(progress.target))
    return table


def print_phases_result(state: MultiPhaseState, entries: Sequence[AutoplayLogEntry]) -> None:
    console.print(build_event_table(entries))
    console.print(build_phase_table(state))
    color = "red" if state.phase == AutoplayPhase.ERROR else "green"
    line = (
        f"Phase: [{color}]{state.phase.value.upper()}[/{color}]"
        f"  Saved: {state.total_saved}/{state.target_saved}"
    )
    if state.completion_reason is not None:
        line += f"  Reason: {state.completion_reason.value}"
    console.print(line)
    if state.error:
        console.print(f"[red]Error:[/red] {state.error}")
