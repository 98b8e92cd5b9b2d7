"""End-to-end pipeline scenarios against the in-memory engine.

Each test drives a complete run through PipelineEngine with scripted stage
adapters and checks the persisted run: final status, per-stage attempt
records, lock state and emitted events.
"""

import asyncio
import json

import pytest
from fakes import (
    PLAN_BYTES,
    TARGET,
    ScriptedReconciler,
    YieldingRunRepository,
    outcome,
)

from infragate.approval.gate import ApprovalExpiredError
from infragate.engine.reconcile import ReconcileResult
from infragate.events.models import EventType
from infragate.executor.models import StageExecutionError
from infragate.gates.ruleset import parse_ruleset
from infragate.state.models import (
    ApprovalDecision,
    ErrorKind,
    RunStatus,
    StageName,
    StageResult,
    StageStatus,
    TriggerEvent,
)


def run_async(coro):
    return asyncio.run(coro)


def _event(**metadata) -> TriggerEvent:
    return TriggerEvent(
        source_revision="a1b2c3d",
        target_state_id=TARGET,
        metadata=metadata,
    )


def _statuses(run):
    return [t.to_status for t in run.history]


UNENCRYPTED_BUCKET_PLAN = json.dumps(
    {
        "resource_changes": [
            {
                "address": "aws_s3_bucket.logs",
                "type": "aws_s3_bucket",
                "change": {"actions": ["create"], "after": {"bucket": "logs"}},
            }
        ]
    }
)

ENCRYPTION_RULESET = parse_ruleset(
    {
        "stages": {
            "plan": {
                "parser": "terraform_plan",
                "resource_rules": [
                    {
                        "id": "s3.encryption",
                        "resource_type": "aws_s3_bucket",
                        "attribute": "server_side_encryption_configuration",
                    }
                ],
            }
        }
    }
)


class TestGateFailure:
    """A Blocking finding halts the run before anything is mutated."""

    def test_unencrypted_bucket_fails_run_and_skips_apply(self, make_harness):
        harness = make_harness(
            steps={
                StageName.PLAN: [outcome(stdout=UNENCRYPTED_BUCKET_PLAN)],
            },
            ruleset=ENCRYPTION_RULESET,
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.GATE_FAILURE
        assert run.error.stage == StageName.PLAN

        plan = run.latest_result(StageName.PLAN)
        assert plan.status == StageStatus.FAILED
        assert [(f.rule_id, f.resource) for f in plan.blocking_findings] == [
            ("s3.encryption", "aws_s3_bucket.logs")
        ]
        for stage in (StageName.APPROVAL, StageName.APPLY):
            assert run.latest_result(stage).status == StageStatus.SKIPPED

        assert harness.adapters[StageName.APPLY].calls == []
        assert run.artifact_for(StageName.PLAN) is None
        assert lock is None

    def test_gate_failure_is_not_retried(self, make_harness):
        ruleset = parse_ruleset({"stages": {"lint": {"parser": "json"}}})
        findings = json.dumps([{"rule_id": "naming", "severity": "error"}])
        harness = make_harness(
            steps={StageName.LINT: [outcome(stdout=findings)]},
            ruleset=ruleset,
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert len(run.results_for(StageName.LINT)) == 1
        assert len(harness.adapters[StageName.LINT].calls) == 1
        assert harness.sleeps == []

    def test_nonzero_exit_without_findings_fails_stage(self, make_harness):
        harness = make_harness(steps={StageName.VALIDATE: [outcome(exit_code=1)]})

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        validate = run.latest_result(StageName.VALIDATE)
        assert run.status == RunStatus.FAILED
        assert validate.status == StageStatus.FAILED
        assert validate.blocking_findings[0].rule_id == "tool.nonzero_exit"

    def test_advisory_stage_failure_does_not_halt(self, make_harness):
        ruleset = parse_ruleset(
            {"stages": {"lint": {"parser": "json", "advisory": True}}}
        )
        findings = json.dumps({"findings": [{"rule_id": "naming"}]})
        harness = make_harness(
            steps={StageName.LINT: [outcome(stdout=findings)]},
            ruleset=ruleset,
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.latest_result(StageName.LINT).status == StageStatus.FAILED
        assert run.status == RunStatus.SUCCEEDED


class TestSuccessfulRun:
    """A clean run applies under the lock and releases it."""

    def test_clean_run_succeeds_with_fencing_token(self, make_harness):
        harness = make_harness()

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert run.completed_at is not None
        assert run.lock_token is None
        assert lock is None
        assert _statuses(run) == [
            RunStatus.VALIDATING,
            RunStatus.LINTING,
            RunStatus.SCANNING_SECURITY,
            RunStatus.PLANNING,
            RunStatus.APPLYING,
            RunStatus.SUCCEEDED,
        ]
        assert run.latest_result(StageName.APPROVAL).status == StageStatus.SKIPPED

        (inputs, context), = harness.adapters[StageName.APPLY].calls
        assert inputs == {"plan": PLAN_BYTES}
        assert context.fencing_token == 1
        assert context.correlation_id == f"{run.run_id}:apply:1"

    def test_plan_artifact_is_recorded(self, make_harness):
        harness = make_harness()

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.artifacts.get(run.artifact_for(StageName.PLAN))

        run, payload = run_async(scenario())

        assert payload == PLAN_BYTES
        assert run.latest_result(StageName.PLAN).raw_output_ref is not None

    def test_completion_event_emitted_once(self, make_harness):
        harness = make_harness()

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run_async(scenario())

        completions = harness.emitter.of_type(EventType.COMPLETION)
        assert len(completions) == 1
        assert completions[0].status == RunStatus.SUCCEEDED.value
        assert "duration_seconds" in completions[0].details

    def test_apply_without_recorded_plan_fails_before_locking(self, make_harness):
        harness = make_harness()
        machine = harness.machine

        async def scenario():
            run = await machine.create(_event())
            for status, stage in (
                (RunStatus.VALIDATING, StageName.VALIDATE),
                (RunStatus.LINTING, StageName.LINT),
                (RunStatus.SCANNING_SECURITY, StageName.SECURITY_SCAN),
                (RunStatus.PLANNING, StageName.PLAN),
            ):
                await machine.transition(run.run_id, status)
                await machine.record_stage_result(
                    run.run_id,
                    StageResult(stage=stage, status=StageStatus.PASSED),
                )
            run = await harness.engine.advance(run.run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.EXECUTION_ERROR
        assert run.error.stage == StageName.APPLY
        assert "No plan artifact" in run.error.message
        assert harness.adapters[StageName.APPLY].calls == []
        assert lock is None

    def test_sequential_runs_get_increasing_tokens(self, make_harness):
        harness = make_harness()

        async def scenario():
            first = await harness.engine.advance(
                await harness.engine.trigger(_event())
            )
            second = await harness.engine.advance(
                await harness.engine.trigger(_event())
            )
            return first, second

        first, second = run_async(scenario())

        tokens = [
            context.fencing_token
            for _, context in harness.adapters[StageName.APPLY].calls
        ]
        assert first.status == second.status == RunStatus.SUCCEEDED
        assert tokens == [1, 2]


class TestLocking:
    """Exclusive apply access per target state."""

    def test_already_locked_fails_fast(self, make_harness):
        harness = make_harness()

        async def scenario():
            await harness.locks.acquire(TARGET, "other-run", 600)
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.ALREADY_LOCKED
        assert run.latest_result(StageName.APPLY).status == StageStatus.SKIPPED
        assert harness.adapters[StageName.APPLY].calls == []
        assert lock.holder == "other-run"

    def test_queued_run_proceeds_after_release(self, make_harness):
        harness = make_harness(lock_wait_mode="queue", lock_poll_interval_seconds=1)

        async def scenario():
            token = await harness.locks.acquire(TARGET, "other-run", 600)

            async def release_on_first_poll(delay):
                if len(harness.sleeps) == 1:
                    await harness.locks.release(TARGET, token)

            harness.on_sleep = release_on_first_poll
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert harness.sleeps == [1.0]
        assert harness.adapters[StageName.APPLY].calls[0][1].fencing_token == 2

    def test_queued_run_gives_up_after_wait_timeout(self, make_harness):
        harness = make_harness(
            lock_wait_mode="queue",
            lock_poll_interval_seconds=1,
            lock_wait_timeout_seconds=3,
        )

        async def scenario():
            await harness.locks.acquire(TARGET, "other-run", 600)
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.ALREADY_LOCKED
        assert harness.sleeps == [1.0, 1.0, 1.0]

    def test_reclaimed_lease_fences_apply_before_mutation(self, make_harness):
        harness = make_harness()

        async def reclaim_when_applying(event):
            if (
                event.event_type == EventType.STAGE_TRANSITION
                and event.status == RunStatus.APPLYING.value
            ):
                harness.clock.advance(601)
                await harness.locks.acquire(TARGET, "other-run", 600)

        harness.emitter.on_event = reclaim_when_applying

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.LOCK_FENCED
        apply = run.latest_result(StageName.APPLY)
        assert apply.status == StageStatus.FAILED
        assert apply.error.kind == ErrorKind.LOCK_FENCED
        assert harness.adapters[StageName.APPLY].calls == []
        assert lock.holder == "other-run"
        assert lock.fencing_token == 2

    def test_lease_lost_during_apply_is_never_success(self, make_harness):
        harness = make_harness()

        async def apply_while_lease_expires(inputs, context):
            harness.clock.advance(601)
            await harness.locks.acquire(TARGET, "other-run", 600)
            return outcome()

        harness.adapters[StageName.APPLY].steps = [apply_while_lease_expires]

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.LOCK_FENCED
        assert "unverified" in run.error.message


class TestRetries:
    """Execution errors are retried with backoff; results are append-only."""

    def test_execution_error_retried_then_passes(self, make_harness):
        harness = make_harness(
            steps={
                StageName.VALIDATE: [
                    StageExecutionError(ErrorKind.EXECUTION_ERROR, "crashed"),
                    outcome(),
                ]
            }
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        attempts = run.results_for(StageName.VALIDATE)
        assert [(r.attempt, r.status) for r in attempts] == [
            (1, StageStatus.FAILED),
            (2, StageStatus.PASSED),
        ]
        assert attempts[0].error.kind == ErrorKind.EXECUTION_ERROR
        assert attempts[1].retry_count == 1
        assert harness.sleeps == [2.0]
        assert run.status == RunStatus.SUCCEEDED

    def test_retries_exhausted_fails_run(self, make_harness):
        harness = make_harness(
            steps={
                StageName.VALIDATE: [
                    StageExecutionError(ErrorKind.TIMEOUT, "timed out"),
                ]
            }
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.TIMEOUT
        assert len(run.results_for(StageName.VALIDATE)) == 3
        assert harness.sleeps == [2.0, 4.0]
        assert len(harness.emitter.of_type(EventType.TIMEOUT)) == 3

    def test_apply_crash_with_no_changes_is_retried(self, make_harness):
        reconciler = ScriptedReconciler(ReconcileResult.NOT_APPLIED)
        harness = make_harness(
            steps={
                StageName.APPLY: [
                    StageExecutionError(ErrorKind.EXECUTION_ERROR, "killed"),
                    outcome(),
                ]
            },
            reconciler=reconciler,
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert len(reconciler.calls) == 1
        assert reconciler.calls[0][1] == PLAN_BYTES
        assert len(harness.adapters[StageName.APPLY].calls) == 2

    def test_apply_crash_after_mutation_is_not_repeated(self, make_harness):
        reconciler = ScriptedReconciler(ReconcileResult.APPLIED)
        harness = make_harness(
            steps={
                StageName.APPLY: [
                    StageExecutionError(ErrorKind.EXECUTION_ERROR, "killed"),
                ]
            },
            reconciler=reconciler,
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert len(harness.adapters[StageName.APPLY].calls) == 1
        reconciled = run.latest_result(StageName.APPLY)
        assert reconciled.status == StageStatus.PASSED
        assert reconciled.findings[0].rule_id == "reconcile.applied"

    def test_apply_crash_without_reconciler_is_unresolved(self, make_harness):
        harness = make_harness(
            steps={
                StageName.APPLY: [
                    StageExecutionError(ErrorKind.EXECUTION_ERROR, "killed"),
                ]
            }
        )

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.FAILED
        assert run.error.kind == ErrorKind.RECONCILIATION_FAILED
        assert len(harness.adapters[StageName.APPLY].calls) == 1
        assert lock is None


class TestApproval:
    """Suspension between plan and apply."""

    def test_run_suspends_without_holding_lock(self, make_harness):
        harness = make_harness(approval_required=True)

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            run = await harness.engine.advance(run_id)
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.AWAITING_APPROVAL
        assert run.latest_result(StageName.APPROVAL).status == StageStatus.SUSPENDED
        assert run.approval is not None
        assert lock is None
        assert harness.adapters[StageName.APPLY].calls == []

    def test_approve_resumes_to_success(self, make_harness):
        harness = make_harness(approval_required=True)

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            await harness.engine.advance(run_id)
            decided = await harness.engine.submit_approval(
                run_id, ApprovalDecision.APPROVE, "alice"
            )
            return decided, await harness.engine.advance(run_id)

        decided, run = run_async(scenario())

        assert decided.latest_result(StageName.APPROVAL).status == StageStatus.PASSED
        assert run.status == RunStatus.SUCCEEDED
        assert run.approval.actor == "alice"
        assert RunStatus.AWAITING_APPROVAL in _statuses(run)
        actions = [
            e.details["action"] for e in harness.emitter.of_type(EventType.APPROVAL)
        ]
        assert actions == ["requested", "approve"]

    def test_reject_aborts_run(self, make_harness):
        harness = make_harness(approval_required=True)

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            await harness.engine.advance(run_id)
            return await harness.engine.submit_approval(
                run_id, ApprovalDecision.REJECT, "bob"
            )

        run = run_async(scenario())

        assert run.status == RunStatus.ABORTED
        assert run.error.kind == ErrorKind.APPROVAL_REJECTED
        approval = run.latest_result(StageName.APPROVAL)
        assert approval.status == StageStatus.FAILED
        assert approval.findings[0].rule_id == "approval.rejected"
        assert run.latest_result(StageName.APPLY).status == StageStatus.SKIPPED
        assert harness.adapters[StageName.APPLY].calls == []

    def test_expired_approval_aborts_run(self, make_harness):
        harness = make_harness(approval_required=True, approval_timeout_seconds=60)

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            await harness.engine.advance(run_id)
            harness.clock.advance(61)
            expired = await harness.engine.expire_approvals()
            return run_id, expired, await harness.engine.get_run(run_id)

        run_id, expired, run = run_async(scenario())

        assert expired == [run_id]
        assert run.status == RunStatus.ABORTED
        assert run.error.kind == ErrorKind.APPROVAL_TIMEOUT
        assert run.latest_result(StageName.APPROVAL).findings[0].rule_id == (
            "approval.timeout"
        )

    def test_late_decision_is_refused(self, make_harness):
        harness = make_harness(approval_required=True, approval_timeout_seconds=60)

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            await harness.engine.advance(run_id)
            harness.clock.advance(61)
            with pytest.raises(ApprovalExpiredError):
                await harness.engine.submit_approval(
                    run_id, ApprovalDecision.APPROVE, "alice"
                )
            return await harness.engine.get_run(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.ABORTED
        assert harness.adapters[StageName.APPLY].calls == []

    def test_metadata_overrides_approval_requirement(self, make_harness):
        harness = make_harness(approval_required=True)

        async def scenario():
            run_id = await harness.engine.trigger(_event(approval_required=False))
            return await harness.engine.advance(run_id)

        run = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert RunStatus.AWAITING_APPROVAL not in _statuses(run)


class TestCancellation:
    """Cancellation aborts before apply and never interrupts apply."""

    def test_cancel_suspended_run(self, make_harness):
        harness = make_harness(approval_required=True)

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            await harness.engine.advance(run_id)
            return await harness.engine.cancel(run_id, "carol")

        run = run_async(scenario())

        assert run.status == RunStatus.ABORTED
        assert run.error.kind == ErrorKind.CANCELLED
        assert run.cancel_requested_by == "carol"
        assert run.latest_result(StageName.APPLY).status == StageStatus.SKIPPED

    def test_cancel_running_stage(self, make_harness):
        harness = make_harness()
        started = []

        async def hang(inputs, context):
            started.append(context)
            await asyncio.Event().wait()

        harness.adapters[StageName.VALIDATE].steps = [hang]

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            task = harness.engine.start(run_id)
            while not started:
                await asyncio.sleep(0)
            run = await harness.engine.cancel(run_id, "carol")
            return run, task

        run, task = run_async(scenario())

        assert task.cancelled()
        assert run.status == RunStatus.ABORTED
        assert run.error.kind == ErrorKind.CANCELLED
        validate = run.latest_result(StageName.VALIDATE)
        assert validate.status == StageStatus.FAILED
        assert validate.error.kind == ErrorKind.CANCELLED
        assert harness.adapters[StageName.LINT].calls == []

    def test_cancel_during_apply_lets_apply_finish(self, make_harness):
        harness = make_harness()
        run_ids = []

        async def apply_and_get_cancelled(inputs, context):
            cancelled = await harness.engine.cancel(run_ids[0], "carol")
            assert cancelled.status == RunStatus.APPLYING
            return outcome()

        harness.adapters[StageName.APPLY].steps = [apply_and_get_cancelled]

        async def scenario():
            run_ids.append(await harness.engine.trigger(_event()))
            run = await harness.engine.advance(run_ids[0])
            return run, await harness.locks.inspect(TARGET)

        run, lock = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert run.cancel_requested
        assert lock is None

    def test_cancel_racing_apply_writes_does_not_strand_run(self, make_harness):
        repository = YieldingRunRepository()
        harness = make_harness(repository=repository)
        run_ids = []
        cancels = []

        async def apply_while_cancel_lands(inputs, context):
            cancels.append(
                asyncio.ensure_future(harness.engine.cancel(run_ids[0], "carol"))
            )
            await asyncio.sleep(0)
            return outcome()

        harness.adapters[StageName.APPLY].steps = [apply_while_cancel_lands]

        async def scenario():
            run_ids.append(await harness.engine.trigger(_event()))
            run = await harness.engine.advance(run_ids[0])
            cancelled = await cancels[0]
            return (
                run,
                cancelled,
                await harness.machine.require(run_ids[0]),
                await harness.locks.inspect(TARGET),
            )

        run, cancelled, stored, lock = run_async(scenario())

        assert run.status == RunStatus.SUCCEEDED
        assert stored.status == RunStatus.SUCCEEDED
        assert stored.cancel_requested_by == "carol"
        assert cancelled.cancel_requested
        assert repository.conflicts >= 1
        assert lock is None

    def test_cancel_terminal_run_is_noop(self, make_harness):
        harness = make_harness()

        async def scenario():
            run_id = await harness.engine.trigger(_event())
            done = await harness.engine.advance(run_id)
            return done, await harness.engine.cancel(run_id, "carol")

        done, after = run_async(scenario())

        assert after.status == RunStatus.SUCCEEDED
        assert after.version == done.version
        assert not after.cancel_requested


class TestShutdownDrain:
    """Shutdown waits for applies in flight and nothing else."""

    def _blocking_step(self, entered, release):
        async def step(inputs, context):
            entered.set()
            await release.wait()
            return outcome()

        return step

    def test_drain_waits_for_in_flight_apply(self, make_harness):
        harness = make_harness()

        async def scenario():
            entered, release = asyncio.Event(), asyncio.Event()
            harness.adapters[StageName.APPLY].steps = [
                self._blocking_step(entered, release)
            ]
            run_id = await harness.engine.trigger(_event())
            harness.engine.start(run_id)
            await entered.wait()
            draining = asyncio.ensure_future(harness.engine.drain(5))
            await asyncio.sleep(0)
            release.set()
            unfinished = await draining
            return unfinished, await harness.machine.require(run_id)

        unfinished, run = run_async(scenario())

        assert unfinished == []
        assert run.status == RunStatus.SUCCEEDED

    def test_drain_reports_apply_still_running_after_grace(self, make_harness):
        harness = make_harness()

        async def scenario():
            entered, release = asyncio.Event(), asyncio.Event()
            harness.adapters[StageName.APPLY].steps = [
                self._blocking_step(entered, release)
            ]
            run_id = await harness.engine.trigger(_event())
            task = harness.engine.start(run_id)
            await entered.wait()
            unfinished = await harness.engine.drain(0.01)
            release.set()
            await task
            return run_id, unfinished

        run_id, unfinished = run_async(scenario())

        assert unfinished == [run_id]

    def test_drain_ignores_runs_before_apply(self, make_harness):
        harness = make_harness()

        async def scenario():
            entered, release = asyncio.Event(), asyncio.Event()
            harness.adapters[StageName.LINT].steps = [
                self._blocking_step(entered, release)
            ]
            run_id = await harness.engine.trigger(_event())
            task = harness.engine.start(run_id)
            await entered.wait()
            unfinished = await harness.engine.drain(5)
            still_running = not task.done()
            release.set()
            await task
            return unfinished, still_running

        unfinished, still_running = run_async(scenario())

        assert unfinished == []
        assert still_running

    def test_drain_with_nothing_running(self, make_harness):
        harness = make_harness()

        assert run_async(harness.engine.drain(5)) == []
