"""Run command: execute one autoplay run from a YAML configuration."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from atelier.autoplay.orchestrator import AutoplayOrchestrator
from atelier.core.config import AtelierConfig
from atelier.core.errors import AutoplayStartError, ConfigurationError
from atelier.core.logging import configure_logging, get_logger
from atelier.core.models import AutoplayConfig, AutoplayState, AutoplayStatus
from atelier.services.http import StudioClient

from ..output import console, print_run_result

_logger = get_logger("cli")


def run(
    config_file: Path = typer.Argument(
        ...,
        help="Path to YAML run configuration file",
        exists=True,
        readable=True,
    ),
    target: int | None = typer.Option(
        None,
        "--target",
        "-t",
        min=1,
        max=4,
        help="Override the number of images to save",
    ),
    iterations: int | None = typer.Option(
        None,
        "--iterations",
        "-i",
        min=1,
        help="Override the iteration limit (capped at 3)",
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
    """Run autoplay until the save target is met or iterations run out.

    Exit codes:
      0: Run completed
      1: Run ended in error or could not start
    """
    try:
        config = AtelierConfig.from_yaml(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1) from None

    overrides: dict[str, int] = {}
    if target is not None:
        overrides["target_saved_count"] = target
    if iterations is not None:
        overrides["max_iterations"] = iterations
    autoplay = AutoplayConfig.model_validate({**config.autoplay.model_dump(), **overrides})

    configure_logging(
        level="DEBUG" if verbose else config.logging.level,
        format="json" if json_logs else config.logging.format,
        file_path=config.logging.file_path,
    )

    try:
        state = asyncio.run(_run_autoplay(config, autoplay))
    except AutoplayStartError as e:
        console.print(f"[red]Cannot start autoplay:[/red] {e}")
        raise typer.Exit(1) from None

    if state.status == AutoplayStatus.ERROR:
        raise typer.Exit(1)


async def _run_autoplay(config: AtelierConfig, autoplay: AutoplayConfig) -> AutoplayState:
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
        _logger.info("cli.run_started", base_url=config.services.base_url)
        state = await orchestrator.run(autoplay)
        print_run_result(state, orchestrator.events.entries)
        return state
