"""Autoplay run control: state machine, cancellation, event log, orchestrator.

The orchestrator lives in ``atelier.autoplay.orchestrator`` and is not
re-exported here, since it depends on the evaluation, polish and learning
packages, which themselves use the cancellation tokens below.
"""

from atelier.autoplay.cancellation import CancellationToken
from atelier.autoplay.events import AutoplayEventType, AutoplayLogEntry, EventLog
from atelier.autoplay.state_machine import AutoplayStateMachine

__all__ = [
    "AutoplayEventType",
    "AutoplayLogEntry",
    "AutoplayStateMachine",
    "CancellationToken",
    "EventLog",
]
