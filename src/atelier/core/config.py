"""Configuration models for Atelier.

An autoplay run is described by one YAML file:

    context:
      vision_sentence: "A rain-soaked cyberpunk market at night"
      base_image: "Neon-lit street market, third-person view"
      output_mode: gameplay
      dimensions:
        - {id: env, label: Environment, reference: "Blade Runner streets"}
    autoplay:
      target_saved_count: 2
      max_iterations: 3
    phases:
      sketch_count: 2
      gameplay_count: 2
    services:
      base_url: http://localhost:3000/api/ai
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from atelier.core.errors import ConfigurationError
from atelier.core.models import (
    DEFAULT_APPROVAL_THRESHOLD,
    AutoplayConfig,
    CreativeContext,
    MultiPhaseConfig,
    PolishConfig,
)


class OrchestratorConfig(BaseModel):
    """Timing and policy knobs of the orchestrator."""

    approval_threshold: int = Field(
        default=DEFAULT_APPROVAL_THRESHOLD,
        ge=0,
        le=100,
        description="Evaluation score required for approval",
    )
    generation_timeout_seconds: float = Field(
        default=240.0,
        gt=0,
        description="Watchdog for a single generating phase (prompts + images)",
    )
    settle_delay_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Pause between refine completion and the next iteration",
    )
    max_prompts_per_iteration: int | None = Field(
        default=None,
        ge=1,
        description="Use only the first N regenerated prompts (None = all)",
    )
    diversity_enabled: bool = True
    evolution_enabled: bool = True
    backup_trigger_attempts: int = Field(
        default=1,
        ge=0,
        description="Re-triggers for active prompts that never produced an image",
    )


class ServiceConfig(BaseModel):
    """Where the studio services live and how to talk to them."""

    base_url: str = "http://localhost:3000/api/ai"
    timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Fixed interval between image job status polls",
    )
    max_poll_attempts: int = Field(
        default=60,
        ge=1,
        description="Polls before an image job is treated as failed",
    )
    aspect_ratio: Literal["16:9", "9:16", "1:1", "4:3", "3:4"] = "16:9"


class LogConfig(BaseModel):
    """Logging output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["console", "json"] = "console"
    file_path: Path | None = None


class AtelierConfig(BaseModel):
    """Top-level configuration of an autoplay run."""

    context: CreativeContext = Field(default_factory=CreativeContext)
    autoplay: AutoplayConfig = Field(default_factory=AutoplayConfig)
    phases: MultiPhaseConfig = Field(default_factory=MultiPhaseConfig)
    polish: PolishConfig = Field(default_factory=PolishConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    services: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @model_validator(mode="after")
    def _check_polish_bands(self) -> AtelierConfig:
        polish = self.polish
        if polish.rescue_floor > self.orchestrator.approval_threshold:
            raise ValueError(
                "polish.rescue_floor must not exceed orchestrator.approval_threshold"
            )
        if polish.excellence_floor > polish.excellence_ceiling:
            raise ValueError("polish.excellence_floor must not exceed polish.excellence_ceiling")
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> AtelierConfig:
        """Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, not YAML, or invalid.
        """
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e
        return cls.from_yaml_string(text)

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> AtelierConfig:
        """Load configuration from a YAML string."""
        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e
