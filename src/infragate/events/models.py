"""Pipeline event models for observability.

This module defines the data models for the stage-transition event stream:
- EventType: Enum of all event types emitted by the engine
- PipelineEvent: Structured event with run, stage, status and findings

Events are the engine's egress for external logging, metrics and
notification consumers. They are informational only; nothing in the engine
depends on an event being delivered.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from infragate.gates.models import Finding


class EventType(str, Enum):
    """Types of events emitted by the pipeline engine.

    Attributes:
        STAGE_TRANSITION: A run moved between statuses.
        STAGE_RESULT: A stage attempt was finalized.
        ERROR: A stage attempt or run failed.
        COMPLETION: A run reached a terminal status.
        TIMEOUT: A stage attempt exceeded its time limit.
        APPROVAL: Approval was requested, decided or expired.
    """

    STAGE_TRANSITION = "stage_transition"
    STAGE_RESULT = "stage_result"
    ERROR = "error"
    COMPLETION = "completion"
    TIMEOUT = "timeout"
    APPROVAL = "approval"


class PipelineEvent(BaseModel):
    """Structured event emitted by the pipeline engine.

    Attributes:
        event_type: The category of event.
        run_id: Run the event belongs to.
        target_state_id: Shared state the run targets.
        stage: Stage the event concerns, if any.
        status: Run status or stage status, depending on event type.
        timestamp: When the event occurred (UTC).
        findings: Findings attached to a stage result.
        details: Additional context specific to the event type.

    Details Field Conventions:
        For STAGE_TRANSITION events:
            - from_status / to_status: Run statuses

        For STAGE_RESULT events:
            - attempt, correlation_id, exit_code

        For ERROR and TIMEOUT events:
            - error_kind, error_message, attempt

        For COMPLETION events:
            - error_kind (failed or aborted runs), duration_seconds

        For APPROVAL events:
            - action (requested, approve, reject, expired), actor, deadline
    """

    event_type: EventType
    run_id: str = Field(..., min_length=1)
    target_state_id: str = Field(..., min_length=1)
    stage: Optional[str] = None
    status: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    findings: List[Finding] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert the event to a flat dictionary for structured logging.

        Example:
            >>> event = PipelineEvent(
            ...     event_type=EventType.ERROR,
            ...     run_id="3f2a",
            ...     target_state_id="prod/network",
            ...     details={"error_kind": "timeout"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "target_state_id": self.target_state_id,
            "stage": self.stage,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "findings": [f.model_dump(mode="json") for f in self.findings],
            **self.details,
        }
