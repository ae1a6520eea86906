"""Validate command: load a run configuration and report what it would do."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from atelier.core.config import AtelierConfig
from atelier.core.errors import ConfigurationError
from atelier.core.models import OutputMode

from ..output import console


def validate(
    config_file: Path = typer.Argument(
        ...,
        help="Path to YAML run configuration file",
        exists=True,
        readable=True,
    ),
) -> None:
    """Validate a run configuration file.

    Exit codes:
      0: Valid
      1: Invalid (unreadable, not YAML, or schema errors)
    """
    try:
        config = AtelierConfig.from_yaml(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1) from None

    console.print("[green]✓[/green] Configuration valid")

    table = Table(show_header=False, box=None)
    table.add_column("Setting", style="dim")
    table.add_column("Value")
    context = config.context
    table.add_row("Output mode", context.output_mode.value)
    table.add_row("Base image", context.base_image or "-")
    table.add_row("Seed prompts", str(len(context.prompts)))
    table.add_row("Dimensions", str(len(context.dimensions)))
    table.add_row("Target saved", str(config.autoplay.target_saved_count))
    table.add_row("Max iterations", str(config.autoplay.max_iterations))
    table.add_row("Approval threshold", str(config.orchestrator.approval_threshold))
    table.add_row("Services", config.services.base_url)
    console.print(table)

    if context.output_mode == OutputMode.POSTER:
        console.print("[yellow]Warning:[/yellow] autoplay is not available in poster mode")
    elif not context.base_image.strip() and not context.prompts:
        console.print(
            "[yellow]Warning:[/yellow] no base image or seed prompts; autoplay cannot start"
        )
