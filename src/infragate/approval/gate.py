"""Human approval suspension point between plan and apply.

Waiting for approval holds no worker: the request is persisted on the run
and the engine's drive loop returns. A later decision re-enters the engine
through PipelineEngine.submit_approval(), and overdue requests are aborted
by the periodic expire_approvals() sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from infragate.locking.manager import utc_now
from infragate.state.machine import RunStateMachine
from infragate.state.models import (
    ApprovalDecision,
    ApprovalState,
    PipelineRun,
    RunStatus,
)


logger = logging.getLogger(__name__)

APPROVAL_REQUIRED_METADATA_KEY = "approval_required"


class ApprovalError(Exception):
    """Raised when an approval decision cannot be accepted.

    Attributes:
        run_id: The run the decision was submitted for.
        message: Human-readable error message.
    """

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        self.message = message
        super().__init__(f"Run {run_id}: {message}")


class ApprovalExpiredError(ApprovalError):
    """Raised when a decision arrives after the approval deadline."""

    def __init__(self, run_id: str, deadline: datetime):
        self.deadline = deadline
        super().__init__(run_id, f"approval expired at {deadline.isoformat()}")


class ApprovalGate:
    """Persists approval requests and validates decisions.

    Attributes:
        machine: State machine used to persist approval state.
        required: Whether runs need approval unless their trigger metadata
            overrides it.
        timeout_seconds: Approval deadline, or None to wait indefinitely.
    """

    def __init__(
        self,
        machine: RunStateMachine,
        required: bool = True,
        timeout_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.machine = machine
        self.required = required
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    def is_required(self, run: PipelineRun) -> bool:
        """Whether the run must wait for approval before apply.

        A boolean "approval_required" entry in the trigger metadata takes
        precedence over the configured default.
        """
        override = run.metadata.get(APPROVAL_REQUIRED_METADATA_KEY)
        if isinstance(override, bool):
            return override
        return self.required

    async def request(self, run: PipelineRun) -> PipelineRun:
        """Persist an approval request with its optional deadline."""
        now = self.clock()
        deadline = None
        if self.timeout_seconds is not None:
            deadline = now + timedelta(seconds=self.timeout_seconds)

        logger.info(
            "Approval requested",
            extra={
                "run_id": run.run_id,
                "deadline": deadline.isoformat() if deadline else None,
            },
        )
        return await self.machine.set_approval(
            run.run_id,
            ApprovalState(requested_at=now, deadline=deadline),
        )

    async def decide(
        self,
        run: PipelineRun,
        decision: ApprovalDecision,
        actor: str,
    ) -> PipelineRun:
        """Validate and record an external decision.

        Raises:
            ApprovalError: If the run is not awaiting approval, or a decision
                was already recorded.
            ApprovalExpiredError: If the deadline has passed.
        """
        if run.status != RunStatus.AWAITING_APPROVAL or run.approval is None:
            raise ApprovalError(
                run.run_id,
                f"not awaiting approval (status {run.status.value})",
            )
        if run.approval.decision is not None:
            raise ApprovalError(
                run.run_id,
                f"already decided: {run.approval.decision.value}",
            )
        if not actor:
            raise ApprovalError(run.run_id, "actor is required")
        if self.is_expired(run):
            raise ApprovalExpiredError(run.run_id, run.approval.deadline)

        logger.info(
            "Approval decision recorded",
            extra={
                "run_id": run.run_id,
                "decision": decision.value,
                "actor": actor,
            },
        )
        return await self.machine.set_approval(
            run.run_id,
            run.approval.model_copy(
                update={
                    "decision": decision,
                    "actor": actor,
                    "decided_at": self.clock(),
                }
            ),
        )

    def is_expired(
        self,
        run: PipelineRun,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether an undecided request has passed its deadline."""
        approval = run.approval
        if approval is None or approval.decision is not None:
            return False
        if approval.deadline is None:
            return False
        return (now or self.clock()) >= approval.deadline
