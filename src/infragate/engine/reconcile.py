"""Apply reconciliation.

When an apply attempt ends without a trustworthy outcome (tool crash,
timeout, or an engine restart while applying), blindly retrying could
repeat an already applied mutation. A reconciler asks the external state
itself whether the change is in place.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional, Protocol, runtime_checkable

from infragate.executor.adapters import StageAdapter
from infragate.executor.models import StageContext, StageExecutionError
from infragate.pipeline_config import PipelineDefinition
from infragate.state.models import PipelineRun, StageName


logger = logging.getLogger(__name__)


class ReconcileResult(str, Enum):
    """What reconciliation could prove about an apply.

    Attributes:
        APPLIED: The external state matches the planned change.
        NOT_APPLIED: The planned change is still pending.
        UNKNOWN: Reconciliation could not decide.
    """

    APPLIED = "applied"
    NOT_APPLIED = "not_applied"
    UNKNOWN = "unknown"


@runtime_checkable
class Reconciler(Protocol):
    """Decides whether a run's apply took effect."""

    async def reconcile(
        self,
        run: PipelineRun,
        plan_artifact: Optional[bytes],
    ) -> ReconcileResult:
        ...


class PlanReconciler:
    """Reconciler that re-runs the planner in detailed exit code mode.

    The adapter is expected to behave like `terraform plan
    -detailed-exitcode`: exit 0 means no changes are pending (the apply
    took effect), exit 2 means changes are still pending (it did not).
    Any other exit code, a crash or a timeout is UNKNOWN.

    Attributes:
        adapter: Adapter running the detailed exit code plan.
        timeout_seconds: Wall-clock bound for the check.
    """

    def __init__(self, adapter: StageAdapter, timeout_seconds: float = 900):
        self.adapter = adapter
        self.timeout_seconds = timeout_seconds

    async def reconcile(
        self,
        run: PipelineRun,
        plan_artifact: Optional[bytes],
    ) -> ReconcileResult:
        context = StageContext(
            run_id=run.run_id,
            stage=StageName.APPLY,
            attempt=max(1, len(run.results_for(StageName.APPLY))),
            source_revision=run.source_revision,
            target_state_id=run.target_state_id,
        )
        inputs: Dict[str, bytes] = {}
        if plan_artifact is not None:
            inputs[StageName.PLAN.value] = plan_artifact

        try:
            outcome = await asyncio.wait_for(
                self.adapter.run(inputs, context),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, StageExecutionError) as e:
            logger.error(
                "Reconciliation check failed",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            return ReconcileResult.UNKNOWN

        if outcome.exit_code == 0:
            result = ReconcileResult.APPLIED
        elif outcome.exit_code == 2:
            result = ReconcileResult.NOT_APPLIED
        else:
            result = ReconcileResult.UNKNOWN

        logger.info(
            "Reconciliation finished",
            extra={
                "run_id": run.run_id,
                "exit_code": outcome.exit_code,
                "result": result.value,
            },
        )
        return result


def build_reconciler(
    definition: PipelineDefinition,
    default_timeout: float,
) -> Optional[PlanReconciler]:
    """Create the reconciler described by a pipeline definition, if any."""
    if definition.reconcile is None:
        return None
    return PlanReconciler(
        definition.reconcile.build_adapter(),
        timeout_seconds=definition.reconcile.timeout_seconds or default_timeout,
    )
