"""Pipeline engine driving runs through the fixed stage sequence.

    created → validating → linting → scanning_security → planning
    → [awaiting_approval] → applying → succeeded | failed | aborted

The engine delegates all work to injected collaborators and persists every
step through the RunStateMachine, so a run can be re-entered after a
suspension (approval) or a restart:

- Each check stage is executed by the StageExecutor and judged by the
  GateEvaluator; a failed gating stage fails the run and skips the rest
- Execution errors (timeouts, crashes) are retried with backoff; gate
  failures never are
- Approval persists a request and returns; no task waits for the decision
- Apply runs only while holding the target's lease, with fencing checked
  before and after the mutating tool, and the lease released afterwards
- An apply without a trustworthy outcome is settled by a Reconciler rather
  than blindly retried

Source:
- src/infragate/state/machine.py (RunStateMachine)
- src/infragate/executor/executor.py (StageExecutor)
- src/infragate/gates/evaluator.py (GateEvaluator)
- src/infragate/locking/manager.py (LockManager)
- src/infragate/approval/gate.py (ApprovalGate)
- src/infragate/events/emitter.py (EventEmitter)
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from infragate.approval.gate import ApprovalExpiredError, ApprovalGate
from infragate.artifacts.store import (
    ArtifactIntegrityError,
    ArtifactNotFoundError,
    ArtifactStoreClient,
)
from infragate.config import ConfigurationError, LockWaitMode, PipelineSettings
from infragate.engine.reconcile import Reconciler, ReconcileResult
from infragate.engine.retry import RetryPolicy
from infragate.events.emitter import EventEmitter, NullEventEmitter
from infragate.events.models import EventType, PipelineEvent
from infragate.executor.executor import StageExecutor, classify_outcome
from infragate.executor.models import StageContext, StageExecutionError
from infragate.gates.evaluator import GateEvaluator
from infragate.gates.models import Finding, PolicyRuleset, Severity, Verdict
from infragate.locking.keeper import LeaseKeeper
from infragate.locking.manager import (
    AlreadyLockedError,
    LockError,
    LockFencedError,
    LockManager,
    utc_now,
)
from infragate.pipeline_config import PipelineDefinition
from infragate.state.machine import RunStateMachine
from infragate.state.models import (
    PIPELINE_STAGES,
    STAGE_BY_NAME,
    ApprovalDecision,
    ErrorKind,
    ExecutionErrorRecord,
    PipelineRun,
    RunError,
    RunStatus,
    StageDefinition,
    StageName,
    StageResult,
    StageStatus,
    TriggerEvent,
)


logger = logging.getLogger(__name__)

APPROVAL_REJECTED_RULE_ID = "approval.rejected"
APPROVAL_TIMEOUT_RULE_ID = "approval.timeout"
RECONCILED_RULE_ID = "reconcile.applied"

OPEN_STAGE_STATUSES = (StageStatus.PENDING, StageStatus.RUNNING, StageStatus.SUSPENDED)


class _CancelRequested(Exception):
    """Raised at a safe boundary when the run has a pending cancellation."""


class PipelineEngine:
    """Drives pipeline runs from trigger to a terminal status.

    Attributes:
        machine: Run persistence and transition validation.
        executor: Runs stage adapters.
        locks: Lease manager for the Apply lock.
        artifacts: Write-once artifact store.
        approvals: Approval suspension point.
        settings: Engine configuration.
        evaluator: Gate evaluator.
        ruleset: Policy ruleset.
        definition: Pipeline definition (advisory flags, stage timeouts).
        reconciler: Decides whether an interrupted apply took effect.
        emitter: Event sink.
        retry_policy: Backoff for execution errors.

    Example:
        >>> engine = PipelineEngine(machine, executor, locks, artifacts, approvals)
        >>> run_id = await engine.trigger(TriggerEvent(
        ...     source_revision="a1b2c3", target_state_id="prod/network"
        ... ))
        >>> run = await engine.advance(run_id)
        >>> run.status
        <RunStatus.AWAITING_APPROVAL: 'awaiting_approval'>
    """

    def __init__(
        self,
        machine: RunStateMachine,
        executor: StageExecutor,
        locks: LockManager,
        artifacts: ArtifactStoreClient,
        approvals: ApprovalGate,
        settings: Optional[PipelineSettings] = None,
        evaluator: Optional[GateEvaluator] = None,
        ruleset: Optional[PolicyRuleset] = None,
        definition: Optional[PipelineDefinition] = None,
        reconciler: Optional[Reconciler] = None,
        emitter: Optional[EventEmitter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.machine = machine
        self.executor = executor
        self.locks = locks
        self.artifacts = artifacts
        self.approvals = approvals
        self.settings = settings or PipelineSettings()
        self.evaluator = evaluator or GateEvaluator()
        self.ruleset = ruleset or PolicyRuleset()
        self.definition = definition or PipelineDefinition()
        self.reconciler = reconciler
        self.emitter = emitter or NullEventEmitter()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._sleep = sleep

        self._active: Dict[str, asyncio.Task] = {}
        self._cancelling: Set[str] = set()
        self._mutating: Set[str] = set()

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------
    async def trigger(self, event: TriggerEvent) -> str:
        """Create a run for a trigger event.

        The run is persisted in the created status; call advance() or
        start() to drive it.

        Returns:
            The new run identifier.
        """
        run = await self.machine.create(event)
        await self._emit(
            run,
            EventType.STAGE_TRANSITION,
            status=run.status.value,
            details={"to_status": run.status.value},
        )
        return run.run_id

    async def get_run(self, run_id: str) -> PipelineRun:
        """Get a run.

        Raises:
            RunNotFoundError: If the run doesn't exist.
        """
        return await self.machine.require(run_id)

    def start(self, run_id: str) -> "asyncio.Task[PipelineRun]":
        """Drive a run in a background task, reusing an active one."""
        task = self._active.get(run_id)
        if task is None or task.done():
            task = asyncio.create_task(self._drive(run_id))
            self._active[run_id] = task
            task.add_done_callback(
                lambda finished: self._on_drive_done(run_id, finished)
            )
        return task

    def is_active(self, run_id: str) -> bool:
        task = self._active.get(run_id)
        return task is not None and not task.done()

    async def advance(self, run_id: str) -> PipelineRun:
        """Drive a run until it is terminal or suspended for approval.

        Returns:
            The run as persisted when driving stopped.
        """
        task = self.start(run_id)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Cancelled through cancel(); the run was aborted
                return await self.machine.require(run_id)
            raise

    async def submit_approval(
        self,
        run_id: str,
        decision: ApprovalDecision,
        actor: str,
    ) -> PipelineRun:
        """Record an external approval decision.

        A rejection aborts the run. An approval finalizes the approval
        stage; the caller resumes the run with advance() or start().

        Raises:
            RunNotFoundError: If the run doesn't exist.
            ApprovalError: If the run is not awaiting a decision.
            ApprovalExpiredError: If the deadline passed; the run is aborted.
        """
        decision = ApprovalDecision(decision)
        run = await self.machine.require(run_id)

        if run.status == RunStatus.AWAITING_APPROVAL and self.approvals.is_expired(run):
            await self._expire_approval(run)
            raise ApprovalExpiredError(run_id, run.approval.deadline)

        run = await self.approvals.decide(run, decision, actor)
        await self._emit(
            run,
            EventType.APPROVAL,
            stage=StageName.APPROVAL,
            status=run.status.value,
            details={"action": decision.value, "actor": actor},
        )

        if decision == ApprovalDecision.REJECT:
            return await self._abort(
                run,
                ErrorKind.APPROVAL_REJECTED,
                f"Rejected by {actor}",
                stage=StageName.APPROVAL,
                finding=Finding(
                    rule_id=APPROVAL_REJECTED_RULE_ID,
                    severity=Severity.BLOCKING,
                    resource=run.target_state_id,
                    message=f"Change rejected by {actor}",
                ),
            )

        pending = run.latest_result(StageName.APPROVAL)
        if pending is not None and not pending.is_final:
            run = await self._finalize(
                run,
                pending.model_copy(
                    update={"status": StageStatus.PASSED, "ended_at": utc_now()}
                ),
            )
        return run

    async def cancel(self, run_id: str, actor: str) -> PipelineRun:
        """Cancel a run.

        Before apply the run is aborted and any lock it holds released.
        While applying, the request is recorded and the in-flight mutation
        completes; its outcome stands.

        Raises:
            RunNotFoundError: If the run doesn't exist.
        """
        run = await self.machine.require(run_id)
        if run.is_terminal:
            return run

        run = await self.machine.request_cancel(run_id, actor)

        if run.status == RunStatus.APPLYING or run_id in self._mutating:
            logger.warning(
                "Cancellation deferred until apply completes",
                extra={"run_id": run_id, "actor": actor},
            )
            return run

        task = self._active.get(run_id)
        if task is not None and not task.done():
            self._cancelling.add(run_id)
            task.cancel()
            await asyncio.wait([task])
            return await self.machine.require(run_id)

        return await self._abort_cancelled(run)

    async def expire_approvals(self) -> List[str]:
        """Abort runs whose approval deadline has passed.

        Returns:
            Identifiers of the aborted runs.
        """
        expired = []
        for run in await self.machine.list_by_status(RunStatus.AWAITING_APPROVAL):
            if self.approvals.is_expired(run):
                await self._expire_approval(run)
                expired.append(run.run_id)
        return expired

    async def reconcile(self) -> List[str]:
        """Settle runs left in applying by a crashed engine.

        A run whose lease is still live and held by itself may be applying
        on another replica and is left alone. For the others the reconciler
        decides: applied → succeeded, otherwise failed. Nothing is reported
        succeeded without proof the mutation happened.

        Returns:
            Identifiers of the settled runs.
        """
        settled = []
        for run in await self.machine.list_by_status(RunStatus.APPLYING):
            if self.is_active(run.run_id):
                continue
            if await self._lease_is_live(run):
                logger.info(
                    "Reconciliation deferred: lease still live",
                    extra={"run_id": run.run_id},
                )
                continue
            await self._reconcile_interrupted(run)
            settled.append(run.run_id)

        logger.info(
            "Reconciliation pass complete",
            extra={"settled_runs": settled},
        )
        return settled

    async def drain(self, timeout_seconds: float) -> List[str]:
        """Wait for runs in the middle of apply to finish.

        Called on shutdown so an apply is not cut off between mutating
        the target state and recording the outcome. Runs in other stages
        are left to be resumed.

        Args:
            timeout_seconds: Longest time to wait.

        Returns:
            Identifiers of runs still applying when the wait ended.
        """
        pending = {
            run_id: task
            for run_id, task in self._active.items()
            if run_id in self._mutating and not task.done()
        }
        if not pending:
            return []

        logger.info(
            "Waiting for in-flight applies",
            extra={"run_ids": sorted(pending), "timeout_seconds": timeout_seconds},
        )
        await asyncio.wait(list(pending.values()), timeout=timeout_seconds)

        unfinished = sorted(
            run_id for run_id, task in pending.items() if not task.done()
        )
        if unfinished:
            logger.warning(
                "Shutting down with applies still running",
                extra={"run_ids": unfinished},
            )
        return unfinished

    # -------------------------------------------------------------------------
    # Drive loop
    # -------------------------------------------------------------------------
    def _on_drive_done(self, run_id: str, task: "asyncio.Task[PipelineRun]") -> None:
        if self._active.get(run_id) is task:
            del self._active[run_id]
        self._cancelling.discard(run_id)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Run drive failed",
                extra={"run_id": run_id, "error": str(task.exception())},
            )

    async def _drive(self, run_id: str) -> PipelineRun:
        run = await self.machine.require(run_id)
        try:
            return await self._drive_stages(run)
        except _CancelRequested:
            run = await self.machine.require(run_id)
            return await self._abort_cancelled(run)
        except asyncio.CancelledError:
            if run_id not in self._cancelling:
                raise
            run = await self.machine.require(run_id)
            await self._abort_cancelled(run)
            raise

    async def _drive_stages(self, run: PipelineRun) -> PipelineRun:
        if run.is_terminal:
            return run
        if run.status == RunStatus.APPLYING:
            if await self._lease_is_live(run):
                return run
            return await self._reconcile_interrupted(run)

        for definition in PIPELINE_STAGES:
            latest = run.latest_result(definition.name)
            if latest is not None and latest.is_final:
                if latest.status in (StageStatus.PASSED, StageStatus.SKIPPED):
                    continue
                if not self._is_gating(definition):
                    continue
                return run

            self._raise_if_cancel_requested(run)

            if definition.name == StageName.APPROVAL:
                run = await self._approval_step(run)
                latest = run.latest_result(StageName.APPROVAL)
                if run.is_terminal or latest is None or not latest.is_final:
                    return run
                continue

            if definition.mutating:
                return await self._apply(run)

            run = await self._run_gate_stage(run, definition)
            if run.is_terminal:
                return run
        return run

    def _raise_if_cancel_requested(self, run: PipelineRun) -> None:
        if run.cancel_requested and run.status != RunStatus.APPLYING:
            raise _CancelRequested()

    def _is_gating(self, definition: StageDefinition) -> bool:
        if definition.mutating:
            return True
        if not definition.gating:
            return False
        if self.definition.is_advisory(definition.name):
            return False
        rules = self.ruleset.stages.get(definition.name.value)
        return not (rules is not None and rules.advisory)

    def _timeout_for(self, stage: StageName) -> float:
        return self.definition.timeout_for(
            stage, float(self.settings.stage_timeout_seconds)
        )

    async def _load_inputs(
        self,
        run: PipelineRun,
        definition: StageDefinition,
    ) -> Dict[str, bytes]:
        """Fetch the verified artifacts a stage declares as inputs.

        Callers check _missing_inputs first.

        Returns:
            Payloads keyed by producing stage name.

        Raises:
            ArtifactNotFoundError: If a recorded input is not stored.
            ArtifactIntegrityError: If a stored input fails verification.
        """
        inputs: Dict[str, bytes] = {}
        for producer in definition.inputs:
            inputs[producer.value] = await self.artifacts.get(
                run.artifacts[producer.value]
            )
        return inputs

    @staticmethod
    def _missing_inputs(run: PipelineRun, definition: StageDefinition) -> List[str]:
        return [
            producer.value
            for producer in definition.inputs
            if run.artifact_for(producer) is None
        ]

    # -------------------------------------------------------------------------
    # Check stages
    # -------------------------------------------------------------------------
    async def _run_gate_stage(
        self,
        run: PipelineRun,
        definition: StageDefinition,
    ) -> PipelineRun:
        stage = definition.name
        if run.status != definition.run_status:
            run = await self._transition(run, definition.run_status)

        missing = self._missing_inputs(run, definition)
        if missing:
            return await self._fail(
                run,
                ErrorKind.EXECUTION_ERROR,
                stage,
                f"No {', '.join(missing)} artifact recorded for {stage.value}",
            )

        run, attempt = await self._close_interrupted(run, stage)
        timeout = self._timeout_for(stage)

        while True:
            try:
                inputs = await self._load_inputs(run, definition)
            except (ArtifactNotFoundError, ArtifactIntegrityError) as e:
                return await self._fail(
                    run, ErrorKind.EXECUTION_ERROR, stage, str(e)
                )
            run, result = await self._attempt(
                run, definition, attempt, inputs, timeout
            )
            if result.error is None:
                break

            kind = result.error.kind
            if not self.retry_policy.should_retry(kind, attempt):
                return await self._fail(
                    run, kind, stage, result.error.message, emit_error=False
                )

            delay = self.retry_policy.delay_for(attempt)
            logger.warning(
                "Retrying stage after execution error",
                extra={
                    "run_id": run.run_id,
                    "stage": stage.value,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error_kind": kind.value,
                },
            )
            await self._sleep(delay)
            run = await self.machine.require(run.run_id)
            self._raise_if_cancel_requested(run)
            attempt += 1

        if result.status == StageStatus.FAILED:
            if self._is_gating(definition):
                return await self._fail(
                    run,
                    ErrorKind.GATE_FAILURE,
                    stage,
                    _describe_failure(result),
                    findings=result.findings,
                )
            logger.info(
                "Advisory stage failed; continuing",
                extra={"run_id": run.run_id, "stage": stage.value},
            )
        return run

    async def _close_interrupted(
        self,
        run: PipelineRun,
        stage: StageName,
    ) -> Tuple[PipelineRun, int]:
        """Finalize an attempt left open by a crash; return the next attempt."""
        latest = run.latest_result(stage)
        if latest is None:
            return run, 1
        if latest.status in OPEN_STAGE_STATUSES:
            run = await self._finalize(
                run,
                latest.model_copy(
                    update={
                        "status": StageStatus.FAILED,
                        "error": ExecutionErrorRecord(
                            kind=ErrorKind.EXECUTION_ERROR,
                            message="Attempt interrupted before completion",
                        ),
                        "ended_at": utc_now(),
                    }
                ),
            )
        return run, latest.attempt + 1

    async def _attempt(
        self,
        run: PipelineRun,
        definition: StageDefinition,
        attempt: int,
        input_artifacts: Dict[str, bytes],
        timeout: float,
        fencing_token: Optional[int] = None,
    ) -> Tuple[PipelineRun, StageResult]:
        """Run one attempt of a stage and persist its result."""
        stage = definition.name
        context = StageContext(
            run_id=run.run_id,
            stage=stage,
            attempt=attempt,
            source_revision=run.source_revision,
            target_state_id=run.target_state_id,
            fencing_token=fencing_token,
        )
        opened = StageResult(
            stage=stage,
            attempt=attempt,
            status=StageStatus.RUNNING,
            correlation_id=context.correlation_id,
            started_at=utc_now(),
        )
        run = await self.machine.record_stage_result(run.run_id, opened)

        try:
            outcome = await self.executor.run(stage, input_artifacts, timeout, context)
        except StageExecutionError as e:
            return await self._finalize_error(run, opened, e.kind, e.message)
        except ConfigurationError as e:
            return await self._finalize_error(
                run, opened, ErrorKind.CONFIGURATION_ERROR, str(e)
            )

        raw_ref = await self.artifacts.put(
            run.run_id, f"{stage.value}.output", outcome.raw_output
        )
        try:
            if definition.mutating:
                verdict = Verdict(passed=True)
            else:
                verdict = self.evaluator.evaluate(
                    stage.value, outcome.raw_output, self.ruleset
                )
        except ConfigurationError as e:
            return await self._finalize_error(
                run, opened, ErrorKind.CONFIGURATION_ERROR, str(e)
            )

        status, findings = classify_outcome(outcome.exit_code, verdict)

        if status == StageStatus.PASSED and definition.produces_artifact:
            payload = (
                outcome.artifact if outcome.artifact is not None else outcome.raw_output
            )
            ref = await self.artifacts.put(run.run_id, stage.value, payload)
            run = await self.machine.set_artifact(run.run_id, stage, ref)

        result = opened.model_copy(
            update={
                "status": status,
                "raw_output_ref": raw_ref,
                "findings": findings,
                "exit_code": outcome.exit_code,
                "duration_seconds": outcome.duration_seconds,
                "ended_at": utc_now(),
            }
        )
        run = await self._finalize(run, result)
        return run, result

    async def _finalize_error(
        self,
        run: PipelineRun,
        opened: StageResult,
        kind: ErrorKind,
        message: str,
    ) -> Tuple[PipelineRun, StageResult]:
        result = opened.model_copy(
            update={
                "status": StageStatus.FAILED,
                "error": ExecutionErrorRecord(kind=kind, message=message),
                "ended_at": utc_now(),
            }
        )
        run = await self._finalize(run, result)
        await self._emit(
            run,
            EventType.TIMEOUT if kind == ErrorKind.TIMEOUT else EventType.ERROR,
            stage=result.stage,
            status=result.status.value,
            details={
                "error_kind": kind.value,
                "error_message": message,
                "attempt": result.attempt,
                "correlation_id": result.correlation_id,
            },
        )
        return run, result

    async def _finalize(self, run: PipelineRun, result: StageResult) -> PipelineRun:
        run = await self.machine.record_stage_result(run.run_id, result)
        await self._emit(
            run,
            EventType.STAGE_RESULT,
            stage=result.stage,
            status=result.status.value,
            findings=result.findings,
            details={
                "attempt": result.attempt,
                "correlation_id": result.correlation_id,
                "exit_code": result.exit_code,
            },
        )
        return run

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------
    async def _approval_step(self, run: PipelineRun) -> PipelineRun:
        latest = run.latest_result(StageName.APPROVAL)

        if latest is None:
            now = utc_now()
            correlation_id = f"{run.run_id}:{StageName.APPROVAL.value}:1"
            if not self.approvals.is_required(run):
                return await self._finalize(
                    run,
                    StageResult(
                        stage=StageName.APPROVAL,
                        status=StageStatus.SKIPPED,
                        correlation_id=correlation_id,
                        started_at=now,
                        ended_at=now,
                    ),
                )

            run = await self.approvals.request(run)
            run = await self._finalize(
                run,
                StageResult(
                    stage=StageName.APPROVAL,
                    status=StageStatus.SUSPENDED,
                    correlation_id=correlation_id,
                    started_at=now,
                ),
            )
            deadline = run.approval.deadline if run.approval else None
            run = await self._transition(
                run,
                RunStatus.AWAITING_APPROVAL,
                details={"deadline": deadline.isoformat() if deadline else None},
            )
            await self._emit(
                run,
                EventType.APPROVAL,
                stage=StageName.APPROVAL,
                status=run.status.value,
                details={
                    "action": "requested",
                    "deadline": deadline.isoformat() if deadline else None,
                },
            )
            return run

        approval = run.approval
        if approval is not None and approval.decision == ApprovalDecision.APPROVE:
            return await self._finalize(
                run,
                latest.model_copy(
                    update={"status": StageStatus.PASSED, "ended_at": utc_now()}
                ),
            )
        if self.approvals.is_expired(run):
            return await self._expire_approval(run)
        return run

    async def _expire_approval(self, run: PipelineRun) -> PipelineRun:
        await self._emit(
            run,
            EventType.APPROVAL,
            stage=StageName.APPROVAL,
            status=run.status.value,
            details={"action": "expired"},
        )
        return await self._abort(
            run,
            ErrorKind.APPROVAL_TIMEOUT,
            "No approval decision before the deadline",
            stage=StageName.APPROVAL,
            finding=Finding(
                rule_id=APPROVAL_TIMEOUT_RULE_ID,
                severity=Severity.BLOCKING,
                resource=run.target_state_id,
                message="Approval deadline passed without a decision",
            ),
        )

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------
    async def _apply(self, run: PipelineRun) -> PipelineRun:
        definition = STAGE_BY_NAME[StageName.APPLY]
        missing = self._missing_inputs(run, definition)
        if missing:
            return await self._fail(
                run,
                ErrorKind.EXECUTION_ERROR,
                StageName.APPLY,
                f"No {', '.join(missing)} artifact recorded for apply",
            )

        try:
            token = await self._acquire_lock(run)
        except AlreadyLockedError as e:
            return await self._fail(
                run, ErrorKind.ALREADY_LOCKED, StageName.APPLY, str(e)
            )

        self._mutating.add(run.run_id)
        try:
            run = await self.machine.set_lock_token(run.run_id, token)
            run = await self._transition(
                run, RunStatus.APPLYING, details={"fencing_token": token}
            )
            run = await self._apply_with_lock(run, definition, token)
        finally:
            await self._release_lock(run.target_state_id, run.run_id, token)
            self._mutating.discard(run.run_id)

        run = await self.machine.set_lock_token(run.run_id, None)
        if run.cancel_requested:
            logger.info(
                "Cancellation requested during apply; apply outcome stands",
                extra={"run_id": run.run_id, "status": run.status.value},
            )
        return run

    async def _acquire_lock(self, run: PipelineRun) -> int:
        """Acquire the target's lease, queueing when configured to.

        Raises:
            AlreadyLockedError: In fail-fast mode, or when the wait timed out.
            _CancelRequested: If the run was cancelled while queued.
        """
        waited = 0.0
        queued = False
        poll = self.settings.lock_poll_interval_seconds
        while True:
            try:
                return await self.locks.acquire(
                    run.target_state_id,
                    run.run_id,
                    self.settings.lease_seconds,
                )
            except AlreadyLockedError as e:
                if self.settings.lock_wait_mode == LockWaitMode.FAIL_FAST:
                    raise
                if waited >= self.settings.lock_wait_timeout_seconds:
                    raise
                if not queued:
                    queued = True
                    logger.info(
                        "Queued for lock",
                        extra={
                            "run_id": run.run_id,
                            "resource_id": run.target_state_id,
                            "holder": e.holder,
                        },
                    )

            await self._sleep(poll)
            waited += poll
            run = await self.machine.require(run.run_id)
            self._raise_if_cancel_requested(run)

    async def _apply_with_lock(
        self,
        run: PipelineRun,
        definition: StageDefinition,
        token: int,
    ) -> PipelineRun:
        resource_id = run.target_state_id
        run, attempt = await self._close_interrupted(run, StageName.APPLY)
        timeout = self._timeout_for(StageName.APPLY)

        while True:
            try:
                inputs = await self._load_inputs(run, definition)
            except (ArtifactNotFoundError, ArtifactIntegrityError) as e:
                return await self._fail(
                    run, ErrorKind.EXECUTION_ERROR, StageName.APPLY, str(e)
                )

            async with LeaseKeeper(
                self.locks,
                resource_id,
                token,
                self.settings.lease_seconds,
                self.settings.lease_renew_interval_seconds,
            ) as keeper:
                try:
                    await self.locks.validate_fencing(resource_id, token)
                except LockFencedError as e:
                    return await self._fail_fenced(run, attempt, str(e))

                run, result = await self._attempt(
                    run,
                    definition,
                    attempt,
                    inputs,
                    timeout,
                    fencing_token=token,
                )

            try:
                keeper.raise_if_lost()
                await self.locks.validate_fencing(resource_id, token)
            except LockError as e:
                return await self._fail(
                    run,
                    ErrorKind.LOCK_FENCED,
                    StageName.APPLY,
                    f"Lock lost during apply; outcome unverified: {e}",
                )

            if result.error is None:
                if result.status == StageStatus.PASSED:
                    return await self._transition(
                        run, RunStatus.SUCCEEDED, details={"fencing_token": token}
                    )
                return await self._fail(
                    run,
                    ErrorKind.GATE_FAILURE,
                    StageName.APPLY,
                    _describe_failure(result),
                    findings=result.findings,
                )

            kind = result.error.kind
            if kind == ErrorKind.CONFIGURATION_ERROR:
                return await self._fail(
                    run, kind, StageName.APPLY, result.error.message, emit_error=False
                )

            reconciled = await self._reconcile_apply(
                run, inputs.get(StageName.PLAN.value)
            )
            if reconciled == ReconcileResult.APPLIED:
                run = await self._record_reconciled(run, attempt + 1)
                return await self._transition(
                    run,
                    RunStatus.SUCCEEDED,
                    details={"fencing_token": token, "reconciled": True},
                )
            if reconciled == ReconcileResult.UNKNOWN:
                return await self._fail(
                    run,
                    ErrorKind.RECONCILIATION_FAILED,
                    StageName.APPLY,
                    f"{result.error.message}; could not determine whether "
                    "the change was applied",
                )
            if not self.retry_policy.should_retry(kind, attempt):
                return await self._fail(
                    run,
                    kind,
                    StageName.APPLY,
                    f"{result.error.message}; no changes were applied",
                    emit_error=False,
                )

            delay = self.retry_policy.delay_for(attempt)
            logger.warning(
                "Retrying apply: reconciliation found no changes applied",
                extra={
                    "run_id": run.run_id,
                    "attempt": attempt,
                    "delay_seconds": delay,
                },
            )
            await self._sleep(delay)
            attempt += 1

    async def _fail_fenced(
        self,
        run: PipelineRun,
        attempt: int,
        message: str,
    ) -> PipelineRun:
        now = utc_now()
        run = await self._finalize(
            run,
            StageResult(
                stage=StageName.APPLY,
                attempt=attempt,
                status=StageStatus.FAILED,
                error=ExecutionErrorRecord(kind=ErrorKind.LOCK_FENCED, message=message),
                correlation_id=f"{run.run_id}:{StageName.APPLY.value}:{attempt}",
                started_at=now,
                ended_at=now,
            ),
        )
        return await self._fail(run, ErrorKind.LOCK_FENCED, StageName.APPLY, message)

    async def _release_lock(self, resource_id: str, run_id: str, token: int) -> None:
        try:
            await self.locks.release(resource_id, token)
        except LockFencedError as e:
            logger.error(
                "Lock was reclaimed before release",
                extra={
                    "run_id": run_id,
                    "resource_id": resource_id,
                    "fencing_token": token,
                    "current_token": e.current_token,
                },
            )

    async def _release_if_held(self, run: PipelineRun) -> None:
        lock = await self.locks.inspect(run.target_state_id)
        if lock is not None and lock.holder == run.run_id:
            await self._release_lock(run.target_state_id, run.run_id, lock.fencing_token)

    async def _lease_is_live(self, run: PipelineRun) -> bool:
        lock = await self.locks.inspect(run.target_state_id)
        return (
            lock is not None
            and lock.holder == run.run_id
            and not self.locks.is_expired(lock)
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------
    async def _reconcile_apply(
        self,
        run: PipelineRun,
        plan: Optional[bytes],
    ) -> ReconcileResult:
        if self.reconciler is None:
            logger.warning(
                "No reconciler configured; apply outcome unknown",
                extra={"run_id": run.run_id},
            )
            return ReconcileResult.UNKNOWN
        try:
            return await self.reconciler.reconcile(run, plan)
        except Exception as e:
            logger.error(
                "Reconciler failed",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            return ReconcileResult.UNKNOWN

    async def _record_reconciled(self, run: PipelineRun, attempt: int) -> PipelineRun:
        now = utc_now()
        return await self._finalize(
            run,
            StageResult(
                stage=StageName.APPLY,
                attempt=attempt,
                status=StageStatus.PASSED,
                findings=[
                    Finding(
                        rule_id=RECONCILED_RULE_ID,
                        severity=Severity.INFO,
                        resource=run.target_state_id,
                        message="Reconciliation found the planned change applied",
                    )
                ],
                correlation_id=f"{run.run_id}:{StageName.APPLY.value}:{attempt}",
                started_at=now,
                ended_at=now,
            ),
        )

    async def _reconcile_interrupted(self, run: PipelineRun) -> PipelineRun:
        logger.warning(
            "Reconciling interrupted apply",
            extra={"run_id": run.run_id, "lock_token": run.lock_token},
        )
        run, next_attempt = await self._close_interrupted(run, StageName.APPLY)

        plan = None
        plan_ref = run.artifact_for(StageName.PLAN)
        if plan_ref is not None:
            try:
                plan = await self.artifacts.get(plan_ref)
            except (ArtifactNotFoundError, ArtifactIntegrityError) as e:
                logger.error(
                    "Plan artifact unavailable for reconciliation",
                    extra={"run_id": run.run_id, "error": str(e)},
                )

        reconciled = await self._reconcile_apply(run, plan)
        if reconciled == ReconcileResult.APPLIED:
            run = await self._record_reconciled(run, next_attempt)
            run = await self._transition(
                run, RunStatus.SUCCEEDED, details={"reconciled": True}
            )
        elif reconciled == ReconcileResult.NOT_APPLIED:
            run = await self._fail(
                run,
                ErrorKind.EXECUTION_ERROR,
                StageName.APPLY,
                "Apply interrupted; reconciliation found no changes applied",
            )
        else:
            run = await self._fail(
                run,
                ErrorKind.RECONCILIATION_FAILED,
                StageName.APPLY,
                "Apply interrupted; could not determine whether the change "
                "was applied",
            )

        if run.lock_token is not None:
            lock = await self.locks.inspect(run.target_state_id)
            if lock is not None and lock.fencing_token == run.lock_token:
                await self._release_lock(
                    run.target_state_id, run.run_id, run.lock_token
                )
            run = await self.machine.set_lock_token(run.run_id, None)
        return run

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------
    async def _skip_remaining(self, run: PipelineRun) -> PipelineRun:
        """Mark every stage without a final result as skipped."""
        now = utc_now()
        for definition in PIPELINE_STAGES:
            latest = run.latest_result(definition.name)
            if latest is not None and latest.is_final:
                continue
            attempt = latest.attempt if latest is not None else 1
            run = await self._finalize(
                run,
                StageResult(
                    stage=definition.name,
                    attempt=attempt,
                    status=StageStatus.SKIPPED,
                    correlation_id=f"{run.run_id}:{definition.name.value}:{attempt}",
                    started_at=latest.started_at if latest is not None else None,
                    ended_at=now,
                ),
            )
        return run

    async def _fail(
        self,
        run: PipelineRun,
        kind: ErrorKind,
        stage: Optional[StageName],
        message: str,
        findings: Optional[List[Finding]] = None,
        emit_error: bool = True,
    ) -> PipelineRun:
        run = await self.machine.require(run.run_id)
        run = await self._skip_remaining(run)
        error = RunError(kind=kind, stage=stage, message=message)
        if emit_error:
            await self._emit(
                run,
                EventType.ERROR,
                stage=stage,
                status=RunStatus.FAILED.value,
                findings=findings,
                details={"error_kind": kind.value, "error_message": message},
            )
        return await self._transition(run, RunStatus.FAILED, error=error)

    async def _abort(
        self,
        run: PipelineRun,
        kind: ErrorKind,
        message: str,
        stage: Optional[StageName] = None,
        finding: Optional[Finding] = None,
    ) -> PipelineRun:
        run = await self.machine.require(run.run_id)
        now = utc_now()
        for definition in PIPELINE_STAGES:
            latest = run.latest_result(definition.name)
            if latest is None or latest.is_final:
                continue
            if finding is not None and definition.name == StageName.APPROVAL:
                update = {"status": StageStatus.FAILED, "findings": [finding]}
            else:
                update = {
                    "status": StageStatus.FAILED,
                    "error": ExecutionErrorRecord(kind=kind, message=message),
                }
            update["ended_at"] = now
            run = await self._finalize(run, latest.model_copy(update=update))

        run = await self._skip_remaining(run)
        await self._release_if_held(run)
        error = RunError(
            kind=kind,
            stage=stage or run.current_stage,
            message=message,
        )
        return await self._transition(run, RunStatus.ABORTED, error=error)

    async def _abort_cancelled(self, run: PipelineRun) -> PipelineRun:
        if run.is_terminal or run.status == RunStatus.APPLYING:
            return run
        actor = run.cancel_requested_by or "unknown"
        return await self._abort(run, ErrorKind.CANCELLED, f"Cancelled by {actor}")

    async def _transition(
        self,
        run: PipelineRun,
        to_status: RunStatus,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[RunError] = None,
    ) -> PipelineRun:
        from_status = run.status
        run = await self.machine.transition(run.run_id, to_status, details, error)
        await self._emit(
            run,
            EventType.STAGE_TRANSITION,
            stage=run.current_stage,
            status=to_status.value,
            details={
                "from_status": from_status.value,
                "to_status": to_status.value,
                **(details or {}),
            },
        )
        if run.is_terminal:
            completion: Dict[str, Any] = {
                "duration_seconds": (run.completed_at - run.created_at).total_seconds()
            }
            if error is not None:
                completion["error_kind"] = error.kind.value
                completion["error_message"] = error.message
            await self._emit(
                run,
                EventType.COMPLETION,
                stage=error.stage if error is not None else run.current_stage,
                status=to_status.value,
                details=completion,
            )
        return run

    async def _emit(
        self,
        run: PipelineRun,
        event_type: EventType,
        stage: Optional[StageName] = None,
        status: Optional[str] = None,
        findings: Optional[List[Finding]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = PipelineEvent(
            event_type=event_type,
            run_id=run.run_id,
            target_state_id=run.target_state_id,
            stage=stage.value if stage is not None else None,
            status=status,
            findings=list(findings or []),
            details=details or {},
        )
        try:
            await self.emitter.emit(event)
        except Exception as e:
            logger.error(
                "Failed to emit pipeline event",
                extra={
                    "run_id": run.run_id,
                    "event_type": event_type.value,
                    "error": str(e),
                },
            )


def _describe_failure(result: StageResult) -> str:
    blocking = result.blocking_findings
    if not blocking:
        return f"{result.stage.value} failed"
    parts = [
        f"{f.rule_id} ({f.resource})" if f.resource else f.rule_id
        for f in blocking
    ]
    return f"{result.stage.value} failed: {', '.join(parts)}"
