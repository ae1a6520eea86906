"""Pytest fixtures for Atelier tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from atelier.core.config import OrchestratorConfig
from atelier.core.models import CreativeContext, Dimension, OutputMode


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def creative_context() -> CreativeContext:
    return CreativeContext(
        vision_sentence="A rain-soaked cyberpunk market at night",
        base_image="Neon-lit street market, third-person view",
        output_mode=OutputMode.GAMEPLAY,
        dimensions=[
            Dimension(
                id="env",
                type="environment",
                label="Environment",
                reference="Blade Runner streets",
            ),
            Dimension(id="mood", type="mood", label="Mood", reference=""),
        ],
    )


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    """Orchestrator config without the settle pause."""
    return OrchestratorConfig(settle_delay_seconds=0)


@pytest.fixture
def sample_yaml(tmp_path: Path) -> Path:
    """A complete run configuration file."""
    path = tmp_path / "run.yaml"
    path.write_text(
        """\
context:
  vision_sentence: "A rain-soaked cyberpunk market at night"
  base_image: "Neon-lit street market, third-person view"
  output_mode: gameplay
  dimensions:
    - {id: env, label: Environment, reference: "Blade Runner streets"}
autoplay:
  target_saved_count: 2
  max_iterations: 3
services:
  base_url: http://studio.test/api/ai
""",
        encoding="utf-8",
    )
    return path
