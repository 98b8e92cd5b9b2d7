"""Pipeline run state machine implementation.

This module implements the RunStateMachine class that manages run
progression through pipeline states with transition validation, timestamp
recording, append-only stage results and optimistic locking.

The state machine depends on a RunRepository interface for persistence,
implemented by PostgresRunRepository (repository.py) and
InMemoryRunRepository (memory.py).
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from infragate.artifacts.models import ArtifactRef
from infragate.state.models import (
    STAGE_FOR_STATUS,
    ApprovalState,
    PipelineRun,
    RunError,
    RunStatus,
    StageName,
    StageResult,
    StatusTransition,
    TriggerEvent,
    is_terminal_status,
    is_valid_transition,
)


logger = logging.getLogger(__name__)

# Bound on re-read and retry cycles when concurrent writers keep winning
MAX_COMMIT_ATTEMPTS = 5


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        from_status: The current status.
        to_status: The attempted target status.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_status: RunStatus,
        to_status: RunStatus,
        message: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or (
            f"Invalid transition from {from_status.value} to {to_status.value}"
        )
        super().__init__(self.message)


class RunNotFoundError(Exception):
    """Raised when a pipeline run is not found.

    Attributes:
        run_id: The run ID that was not found.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Pipeline run not found: {run_id}")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        run_id: The run ID with the conflict.
        expected_version: The version that was expected.
    """

    def __init__(self, run_id: str, expected_version: int):
        self.run_id = run_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for run {run_id}: expected {expected_version}"
        )


class FinalizedResultError(Exception):
    """Raised when a finalized stage result would be rewritten.

    Attributes:
        run_id: The run owning the result.
        stage: The stage of the result.
        attempt: The attempt number of the result.
    """

    def __init__(self, run_id: str, stage: StageName, attempt: int):
        self.run_id = run_id
        self.stage = stage
        self.attempt = attempt
        super().__init__(
            f"Stage result {stage.value}#{attempt} of run {run_id} is final"
        )


@runtime_checkable
class RunRepository(Protocol):
    """Protocol defining the interface for pipeline run persistence.

    The repository is responsible for:
    - Persisting runs and their stage results
    - Retrieving runs by ID or status
    - Implementing optimistic locking via the version field
    """

    async def save(self, run: PipelineRun) -> None:
        """Persist a newly created run."""
        ...

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        """Get a run by ID, or None if it doesn't exist."""
        ...

    async def list_by_status(self, status: RunStatus) -> List[PipelineRun]:
        """List all runs currently in a given status."""
        ...

    async def update_with_version(self, run: PipelineRun) -> bool:
        """Update a run if its stored version is run.version - 1.

        Returns:
            True if update succeeded, False if version conflict.
        """
        ...


class RunStateMachine:
    """State machine for managing pipeline run progression.

    The state machine enforces the following invariants:
    - Only transitions defined in VALID_TRANSITIONS are allowed
    - Every transition is recorded with a timestamp in history
    - Terminal transitions record completed_at and are irreversible
    - Finalized stage results are never rewritten
    - Each update increments the version for optimistic locking
    - A commit that loses a version race is recomputed from the re-read run

    Attributes:
        repository: The run repository for persistence.

    Example:
        >>> machine = RunStateMachine(InMemoryRunRepository())
        >>> run = await machine.create(TriggerEvent(
        ...     source_revision="a1b2c3", target_state_id="prod/network"
        ... ))
        >>> run = await machine.transition(run.run_id, RunStatus.VALIDATING)
    """

    def __init__(self, repository: RunRepository):
        self.repository = repository

    async def create(
        self,
        event: TriggerEvent,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """Create a new run in the CREATED state and persist it.

        Args:
            event: Trigger ingress payload.
            run_id: Explicit run identifier; a UUID is generated if omitted.

        Returns:
            The newly created run.
        """
        now = datetime.now(timezone.utc)
        run = PipelineRun(
            run_id=run_id or uuid.uuid4().hex,
            target_state_id=event.target_state_id,
            source_revision=event.source_revision,
            metadata=dict(event.metadata),
            status=RunStatus.CREATED,
            created_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating pipeline run",
            extra={
                "run_id": run.run_id,
                "target_state_id": run.target_state_id,
                "source_revision": run.source_revision,
            },
        )

        await self.repository.save(run)
        return run

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        return await self.repository.get(run_id)

    async def require(self, run_id: str) -> PipelineRun:
        """Get a run or raise RunNotFoundError."""
        run = await self.repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_by_status(self, status: RunStatus) -> List[PipelineRun]:
        return await self.repository.list_by_status(status)

    async def transition(
        self,
        run_id: str,
        to_status: RunStatus,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[RunError] = None,
    ) -> PipelineRun:
        """Transition a run to a new status.

        Args:
            run_id: The run identifier.
            to_status: The target status.
            details: Optional metadata recorded on the transition.
            error: Failure detail, recorded for failed or aborted runs.

        Returns:
            The updated run.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            InvalidTransitionError: If the transition is not valid.
            VersionConflictError: If concurrent updates kept winning.
        """
        details = details or {}

        def mutate(run: PipelineRun) -> Dict[str, Any]:
            from_status = run.status
            if not is_valid_transition(from_status, to_status):
                logger.warning(
                    "Invalid run transition attempted",
                    extra={
                        "run_id": run_id,
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                    },
                )
                raise InvalidTransitionError(from_status, to_status)

            now = datetime.now(timezone.utc)
            record = StatusTransition(
                from_status=from_status,
                to_status=to_status,
                timestamp=now,
                details=details,
            )
            update: Dict[str, Any] = {
                "status": to_status,
                "history": run.history + [record],
                "updated_at": now,
            }
            stage = STAGE_FOR_STATUS.get(to_status)
            if stage is not None:
                update["current_stage"] = stage.name
            if is_terminal_status(to_status):
                update["completed_at"] = now
            if error is not None:
                update["error"] = error

            logger.info(
                "Transitioning pipeline run",
                extra={
                    "run_id": run_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "version": run.version + 1,
                },
            )
            return update

        return await self.update(run_id, mutate)

    async def record_stage_result(
        self,
        run_id: str,
        result: StageResult,
    ) -> PipelineRun:
        """Append a stage attempt record, or finalize the open one.

        A record with the same stage and attempt as the last record of that
        stage replaces it only while the stored record is still open
        (running or suspended).

        Raises:
            FinalizedResultError: If the matching record is already final.
        """

        def mutate(run: PipelineRun) -> Dict[str, Any]:
            results = list(run.stage_results)
            for index in range(len(results) - 1, -1, -1):
                existing = results[index]
                if existing.stage != result.stage:
                    continue
                if existing.attempt == result.attempt:
                    if existing.is_final:
                        raise FinalizedResultError(
                            run_id, result.stage, result.attempt
                        )
                    results[index] = result
                    break
                results.append(result)
                break
            else:
                results.append(result)
            return {"stage_results": results}

        return await self.update(run_id, mutate)

    async def set_artifact(
        self,
        run_id: str,
        stage: StageName,
        ref: ArtifactRef,
    ) -> PipelineRun:
        def mutate(run: PipelineRun) -> Dict[str, Any]:
            artifacts = dict(run.artifacts)
            artifacts[stage.value] = ref
            return {"artifacts": artifacts}

        return await self.update(run_id, mutate)

    async def set_lock_token(
        self,
        run_id: str,
        token: Optional[int],
    ) -> PipelineRun:
        return await self.update(run_id, lambda run: {"lock_token": token})

    async def set_approval(
        self,
        run_id: str,
        approval: ApprovalState,
    ) -> PipelineRun:
        return await self.update(run_id, lambda run: {"approval": approval})

    async def request_cancel(self, run_id: str, actor: str) -> PipelineRun:
        """Persist a cancellation request, honored at the next safe boundary."""

        def mutate(run: PipelineRun) -> Optional[Dict[str, Any]]:
            if run.cancel_requested:
                return None
            logger.info(
                "Cancellation requested",
                extra={"run_id": run_id, "actor": actor, "status": run.status.value},
            )
            return {"cancel_requested": True, "cancel_requested_by": actor}

        return await self.update(run_id, mutate)

    async def update(
        self,
        run_id: str,
        mutate: Callable[[PipelineRun], Optional[Dict[str, Any]]],
    ) -> PipelineRun:
        """Apply a field update computed from the current run.

        The run is re-read and the update recomputed when another writer
        committed first, so every check inside mutate sees the latest
        stored state. A mutate returning None leaves the run unchanged.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            VersionConflictError: If every attempt lost to a concurrent
                writer.
        """
        for attempt in range(1, MAX_COMMIT_ATTEMPTS + 1):
            run = await self.require(run_id)
            update = mutate(run)
            if update is None:
                return run
            updated = await self._commit(run, update)
            if updated is not None:
                return updated
            logger.info(
                "Concurrent run update detected; retrying",
                extra={
                    "run_id": run_id,
                    "version": run.version,
                    "attempt": attempt,
                },
            )
        raise VersionConflictError(run_id, run.version)

    async def _commit(
        self,
        run: PipelineRun,
        update: Dict[str, Any],
    ) -> Optional[PipelineRun]:
        fields = dict(update)
        fields.setdefault("updated_at", datetime.now(timezone.utc))
        fields["version"] = run.version + 1
        updated = run.model_copy(update=fields)

        if not await self.repository.update_with_version(updated):
            return None
        return updated
