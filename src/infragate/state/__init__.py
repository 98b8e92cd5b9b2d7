"""Pipeline run state: models, state machine and repositories."""

from infragate.state.machine import (
    FinalizedResultError,
    InvalidTransitionError,
    RunNotFoundError,
    RunRepository,
    RunStateMachine,
    VersionConflictError,
)
from infragate.state.memory import InMemoryRunRepository
from infragate.state.models import (
    PIPELINE_STAGES,
    STAGE_BY_NAME,
    VALID_TRANSITIONS,
    ApprovalDecision,
    ApprovalState,
    ErrorKind,
    ExecutionErrorRecord,
    PipelineRun,
    RunError,
    RunStatus,
    StageDefinition,
    StageName,
    StageResult,
    StageStatus,
    StatusTransition,
    TriggerEvent,
    is_terminal_status,
    is_valid_transition,
)
from infragate.state.repository import (
    DatabaseError,
    PostgresRunRepository,
    create_pool,
)

__all__ = [
    "RunStatus",
    "StageName",
    "StageStatus",
    "ErrorKind",
    "ApprovalDecision",
    "StageDefinition",
    "PIPELINE_STAGES",
    "STAGE_BY_NAME",
    "ExecutionErrorRecord",
    "StageResult",
    "RunError",
    "ApprovalState",
    "StatusTransition",
    "TriggerEvent",
    "PipelineRun",
    "VALID_TRANSITIONS",
    "is_valid_transition",
    "is_terminal_status",
    "RunStateMachine",
    "RunRepository",
    "InvalidTransitionError",
    "RunNotFoundError",
    "VersionConflictError",
    "FinalizedResultError",
    "InMemoryRunRepository",
    "PostgresRunRepository",
    "DatabaseError",
    "create_pool",
]
