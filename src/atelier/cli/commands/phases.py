"""Phases command: a sketch phase followed by a gameplay phase."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from pydantic import ValidationError

from atelier.autoplay.orchestrator import AutoplayOrchestrator
from atelier.autoplay.phases import MultiPhaseOrchestrator
from atelier.core.config import AtelierConfig
from atelier.core.errors import AutoplayStartError, ConfigurationError
from atelier.core.logging import configure_logging, get_logger
from atelier.core.models import AutoplayPhase, MultiPhaseConfig, MultiPhaseState
from atelier.services.http import StudioClient

from ..output import console, print_phases_result

_logger = get_logger("cli")


def phases(
    config_file: Path = typer.Argument(
        ...,
        help="Path to YAML run configuration file",
        exists=True,
        readable=True,
    ),
    sketches: int | None = typer.Option(
        None,
        "--sketches",
        "-s",
        min=0,
        max=4,
        help="Override the number of sketch images to save",
    ),
    gameplay: int | None = typer.Option(
        None,
        "--gameplay",
        "-g",
        min=0,
        max=4,
        help="Override the number of gameplay images to save",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log at DEBUG level",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as JSON lines",
    ),
) -> None:
    """Fill the sketch target, then the gameplay target.

    Exit codes:
      0: All phases completed
      1: A phase ended in error or the run could not start
    """
    try:
        config = AtelierConfig.from_yaml(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1) from None

    overrides: dict[str, int] = {}
    if sketches is not None:
        overrides["sketch_count"] = sketches
    if gameplay is not None:
        overrides["gameplay_count"] = gameplay
    try:
        phase_config = MultiPhaseConfig.model_validate(
            {**config.phases.model_dump(), **overrides}
        )
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1) from None

    configure_logging(
        level="DEBUG" if verbose else config.logging.level,
        format="json" if json_logs else config.logging.format,
        file_path=config.logging.file_path,
    )

    try:
        state = asyncio.run(_run_phases(config, phase_config))
    except AutoplayStartError as e:
        console.print(f"[red]Cannot start autoplay:[/red] {e}")
        raise typer.Exit(1) from None

    if state.phase == AutoplayPhase.ERROR:
        raise typer.Exit(1)


async def _run_phases(config: AtelierConfig, phase_config: MultiPhaseConfig) -> MultiPhaseState:
    async with StudioClient(config.services) as client:
        orchestrator = AutoplayOrchestrator(
            config.context,
            prompt_generator=client,
            image_generator=client,
            evaluator=client,
            polisher=client,
            panel_saver=client,
            fingerprinter=client,
            polish_config=config.polish,
            config=config.orchestrator,
        )
        multi_phase = MultiPhaseOrchestrator(orchestrator)
        _logger.info("cli.phases_started", base_url=config.services.base_url)
        state = await multi_phase.run(phase_config)
        print_phases_result(state, multi_phase.events.entries)
        return state
