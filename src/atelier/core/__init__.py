"""Core models, configuration, errors and logging."""

from atelier.core.config import AtelierConfig, LogConfig, OrchestratorConfig, ServiceConfig
from atelier.core.errors import (
    AtelierError,
    AutoplayStartError,
    ConfigurationError,
    OperationCancelled,
    ServiceError,
    StateTransitionError,
)
from atelier.core.models import (
    AutoplayConfig,
    AutoplayState,
    AutoplayStatus,
    CompletionReason,
    CreativeContext,
    ImageEvaluation,
    OutputMode,
    PolishConfig,
)

__all__ = [
    "AtelierConfig",
    "AtelierError",
    "AutoplayConfig",
    "AutoplayStartError",
    "AutoplayState",
    "AutoplayStatus",
    "CompletionReason",
    "ConfigurationError",
    "CreativeContext",
    "ImageEvaluation",
    "LogConfig",
    "OperationCancelled",
    "OrchestratorConfig",
    "OutputMode",
    "PolishConfig",
    "ServiceConfig",
    "ServiceError",
    "StateTransitionError",
]
