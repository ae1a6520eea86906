"""Atelier CLI.

    atelier run CONFIG [--target N] [--iterations N] [--verbose] [--json-logs]
    atelier validate CONFIG
    atelier --version
"""

from __future__ import annotations

import typer

from atelier import __version__

from .commands import phases, run, validate
from .output import console

app = typer.Typer(
    name="atelier",
    help="Autoplay image generation with evaluation, polish and adaptive prompts",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Atelier Autoplay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Atelier - autoplay orchestration for image generation."""


app.command()(run)
app.command()(validate)
app.command()(phases)

__all__ = ["app", "console"]
