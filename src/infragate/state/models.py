"""Pipeline run state models.

This module defines the data models for the pipeline state machine, including:
- RunStatus: Enum of all run states
- StageName / StageDefinition / PIPELINE_STAGES: The fixed stage sequence
- StageResult: Append-only record of one stage attempt
- PipelineRun: Complete state of one run for one source revision
- VALID_TRANSITIONS: Map defining allowed run state transitions

The pipeline is a linear sequence with one optional branch (approval), so
it is modelled as a tagged state enumeration with an explicit transition
table rather than a general workflow graph.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from infragate.artifacts.models import ArtifactRef
from infragate.gates.models import Finding, Severity


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """States a pipeline run progresses through.

    Stage Flow:
        created → validating → linting → scanning_security → planning
        → [awaiting_approval] → applying → succeeded

    Any non-terminal state before applying can transition to failed or
    aborted. Applying can only end in succeeded or failed: cancellation
    never interrupts an in-flight mutation.
    """

    CREATED = "created"
    VALIDATING = "validating"
    LINTING = "linting"
    SCANNING_SECURITY = "scanning_security"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLYING = "applying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class StageName(str, Enum):
    """Named steps of the fixed pipeline sequence."""

    VALIDATE = "validate"
    LINT = "lint"
    SECURITY_SCAN = "security_scan"
    PLAN = "plan"
    APPROVAL = "approval"
    APPLY = "apply"


class StageStatus(str, Enum):
    """Status of one stage attempt."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    SUSPENDED = "suspended"


FINAL_STAGE_STATUSES = frozenset(
    {StageStatus.PASSED, StageStatus.FAILED, StageStatus.SKIPPED}
)


class ErrorKind(str, Enum):
    """Error taxonomy carried by failed and aborted runs.

    Attributes:
        GATE_FAILURE: Policy violation; halts the run, never retried.
        EXECUTION_ERROR: Tool crash or transient infra failure; retried.
        TIMEOUT: Stage exceeded its wall-clock bound; retried.
        LOCK_FENCED: Lease lost or reclaimed; fatal to the attempt.
        ALREADY_LOCKED: Another run holds the target's lease.
        CONFIGURATION_ERROR: Malformed ruleset or adapter; operator mistake.
        APPROVAL_REJECTED: An approver rejected the change.
        APPROVAL_TIMEOUT: No decision before the approval deadline.
        CANCELLED: An operator cancelled the run.
        RECONCILIATION_FAILED: Could not prove whether an apply completed.
    """

    GATE_FAILURE = "gate_failure"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    LOCK_FENCED = "lock_fenced"
    ALREADY_LOCKED = "already_locked"
    CONFIGURATION_ERROR = "configuration_error"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_TIMEOUT = "approval_timeout"
    CANCELLED = "cancelled"
    RECONCILIATION_FAILED = "reconciliation_failed"


class ApprovalDecision(str, Enum):
    """External decision on a run awaiting approval."""

    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class StageDefinition:
    """Static description of one pipeline stage.

    Attributes:
        name: Stage name.
        run_status: Run status while the stage executes.
        gating: Failure halts the run.
        mutating: Requires the target's lock.
        inputs: Stages whose artifacts the stage consumes.
        produces_artifact: Stage output is persisted for later stages.
    """

    name: StageName
    run_status: RunStatus
    gating: bool = True
    mutating: bool = False
    inputs: Tuple[StageName, ...] = ()
    produces_artifact: bool = False


PIPELINE_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition(StageName.VALIDATE, RunStatus.VALIDATING),
    StageDefinition(StageName.LINT, RunStatus.LINTING),
    StageDefinition(StageName.SECURITY_SCAN, RunStatus.SCANNING_SECURITY),
    StageDefinition(
        StageName.PLAN,
        RunStatus.PLANNING,
        produces_artifact=True,
    ),
    StageDefinition(
        StageName.APPROVAL,
        RunStatus.AWAITING_APPROVAL,
    ),
    StageDefinition(
        StageName.APPLY,
        RunStatus.APPLYING,
        mutating=True,
        inputs=(StageName.PLAN,),
    ),
)

STAGE_BY_NAME: Dict[StageName, StageDefinition] = {
    stage.name: stage for stage in PIPELINE_STAGES
}

STAGE_FOR_STATUS: Dict[RunStatus, StageDefinition] = {
    stage.run_status: stage for stage in PIPELINE_STAGES
}


class ExecutionErrorRecord(BaseModel):
    """Infrastructure-level failure of a stage attempt.

    Distinct from findings: a timeout or tool crash says nothing about
    policy compliance.

    Attributes:
        kind: TIMEOUT, EXECUTION_ERROR, LOCK_FENCED, ALREADY_LOCKED,
              CONFIGURATION_ERROR or RECONCILIATION_FAILED.
        message: Human-readable description.
    """

    kind: ErrorKind
    message: str = ""


class StageResult(BaseModel):
    """Outcome of one attempt of one stage within one run.

    Records are append-only once finalized (passed, failed, skipped): a
    retry appends a new attempt record rather than rewriting history. A
    running or suspended record may be finalized exactly once.

    Attributes:
        stage: Stage name.
        attempt: 1-based attempt number.
        status: Attempt status.
        raw_output_ref: Artifact holding the tool's raw output.
        findings: Findings from the gate evaluator.
        error: Infrastructure-level failure, if any.
        exit_code: Tool exit code when the tool ran to completion.
        duration_seconds: Tool wall-clock time.
        correlation_id: "{run_id}:{stage}:{attempt}" used in logs.
        started_at: When the attempt started (UTC).
        ended_at: When the attempt was finalized (UTC).
    """

    stage: StageName
    attempt: int = Field(default=1, ge=1)
    status: StageStatus = StageStatus.PENDING
    raw_output_ref: Optional[ArtifactRef] = None
    findings: List[Finding] = Field(default_factory=list)
    error: Optional[ExecutionErrorRecord] = None
    exit_code: Optional[int] = None
    duration_seconds: Optional[float] = None
    correlation_id: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        """True once the record can no longer change."""
        return self.status in FINAL_STAGE_STATUSES

    @property
    def retry_count(self) -> int:
        """Number of earlier attempts of the same stage."""
        return self.attempt - 1

    @property
    def blocking_findings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.BLOCKING]


class RunError(BaseModel):
    """Structured reason a run failed or was aborted.

    Attributes:
        kind: Error category.
        stage: Stage where the error occurred, if any.
        message: Human-readable description.
    """

    kind: ErrorKind
    stage: Optional[StageName] = None
    message: str = ""


class ApprovalState(BaseModel):
    """Persisted approval suspension.

    Attributes:
        requested_at: When the run entered awaiting_approval.
        deadline: When the run is aborted without a decision, if bounded.
        decision: The external decision, once received.
        actor: Who decided.
        decided_at: When the decision was recorded.
    """

    requested_at: datetime = Field(default_factory=_utc_now)
    deadline: Optional[datetime] = None
    decision: Optional[ApprovalDecision] = None
    actor: Optional[str] = None
    decided_at: Optional[datetime] = None


class StatusTransition(BaseModel):
    """Record of one run status transition.

    Attributes:
        from_status: Status before the transition.
        to_status: Status after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata about the transition.
    """

    from_status: RunStatus
    to_status: RunStatus
    timestamp: datetime = Field(default_factory=_utc_now)
    details: Dict[str, Any] = Field(default_factory=dict)


class TriggerEvent(BaseModel):
    """Trigger ingress payload creating a run.

    Attributes:
        source_revision: Revision of the infrastructure definition.
        target_state_id: Shared state the run may mutate.
        metadata: Free-form context (author, change request, ...).
    """

    source_revision: str = Field(..., min_length=1)
    target_state_id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PipelineRun(BaseModel):
    """One execution of the pipeline for one source revision.

    Exactly one run may hold the lock for a given target state identifier
    at any instant, and a run enters applying only while holding it. Runs
    are retained after completion as audit records; the engine never
    deletes them.

    Attributes:
        run_id: Unique run identifier.
        target_state_id: Shared infrastructure state this run may mutate.
        source_revision: Source revision reference.
        metadata: Trigger metadata.
        status: Current run status.
        current_stage: Stage being executed or last executed.
        stage_results: Ordered, append-only attempt records.
        artifacts: Artifact produced by each stage.
        lock_token: Fencing token while the lock is held.
        approval: Approval suspension state.
        cancel_requested: An operator asked for cancellation.
        cancel_requested_by: Who asked for cancellation.
        error: Why the run failed or was aborted.
        history: Ordered list of all status transitions.
        created_at: When the run was created (UTC).
        updated_at: When the run was last updated (UTC).
        completed_at: When the run reached a terminal status (UTC).
        version: Optimistic locking version.
    """

    run_id: str = Field(..., min_length=1)
    target_state_id: str = Field(..., min_length=1)
    source_revision: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.CREATED
    current_stage: Optional[StageName] = None
    stage_results: List[StageResult] = Field(default_factory=list)
    artifacts: Dict[str, ArtifactRef] = Field(default_factory=dict)
    lock_token: Optional[int] = None
    approval: Optional[ApprovalState] = None
    cancel_requested: bool = False
    cancel_requested_by: Optional[str] = None
    error: Optional[RunError] = None
    history: List[StatusTransition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    def results_for(self, stage: StageName) -> List[StageResult]:
        """All attempt records of a stage, oldest first."""
        return [r for r in self.stage_results if r.stage == stage]

    def latest_result(self, stage: StageName) -> Optional[StageResult]:
        """Most recent attempt record of a stage."""
        results = self.results_for(stage)
        return results[-1] if results else None

    def artifact_for(self, stage: StageName) -> Optional[ArtifactRef]:
        return self.artifacts.get(stage.value)


# Valid run status transitions
#
# - Every non-terminal status before applying may fail or be aborted
# - planning may skip awaiting_approval when approval is not required
# - applying cannot be aborted; cancellation is honored after it finishes
# - succeeded, failed and aborted are terminal
VALID_TRANSITIONS: Dict[RunStatus, List[RunStatus]] = {
    RunStatus.CREATED: [
        RunStatus.VALIDATING,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    ],
    RunStatus.VALIDATING: [
        RunStatus.LINTING,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    ],
    RunStatus.LINTING: [
        RunStatus.SCANNING_SECURITY,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    ],
    RunStatus.SCANNING_SECURITY: [
        RunStatus.PLANNING,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    ],
    RunStatus.PLANNING: [
        RunStatus.AWAITING_APPROVAL,
        RunStatus.APPLYING,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    ],
    RunStatus.AWAITING_APPROVAL: [
        RunStatus.APPLYING,
        RunStatus.FAILED,
        RunStatus.ABORTED,
    ],
    RunStatus.APPLYING: [
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
    ],
    RunStatus.SUCCEEDED: [],
    RunStatus.FAILED: [],
    RunStatus.ABORTED: [],
}


def is_valid_transition(from_status: RunStatus, to_status: RunStatus) -> bool:
    """Check if a run status transition is valid.

    Example:
        >>> is_valid_transition(RunStatus.CREATED, RunStatus.VALIDATING)
        True
        >>> is_valid_transition(RunStatus.APPLYING, RunStatus.ABORTED)
        False
    """
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def is_terminal_status(status: RunStatus) -> bool:
    """Check if a status is terminal (has no outgoing transitions)."""
    return len(VALID_TRANSITIONS.get(status, [])) == 0
