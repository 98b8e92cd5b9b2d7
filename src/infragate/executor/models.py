"""Stage execution models."""

from dataclasses import dataclass
from typing import Optional

from infragate.state.models import ErrorKind, StageName


@dataclass
class ExecutionOutcome:
    """Result of one stage tool invocation that ran to completion.

    Attributes:
        exit_code: Process exit code.
        stdout: Captured standard output, evaluated by the gate.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
        artifact: Output payload handed to later stages, if any.
    """

    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    artifact: Optional[bytes] = None

    @property
    def raw_output(self) -> bytes:
        return self.stdout.encode("utf-8")


@dataclass(frozen=True)
class StageContext:
    """Per-invocation context passed to a stage adapter.

    Attributes:
        run_id: Run being executed.
        stage: Stage being executed.
        attempt: 1-based attempt number.
        source_revision: Source revision under test.
        target_state_id: Shared state the run targets.
        fencing_token: Lock token, only set for the mutating stage.
    """

    run_id: str
    stage: StageName
    attempt: int
    source_revision: str
    target_state_id: str
    fencing_token: Optional[int] = None

    @property
    def correlation_id(self) -> str:
        return f"{self.run_id}:{self.stage.value}:{self.attempt}"


class StageExecutionError(Exception):
    """Infrastructure-level failure of a stage attempt.

    Distinct from a tool-reported failure: the tool timed out, crashed, or
    could not be started. Retried by the engine's retry policy.

    Attributes:
        kind: ErrorKind.TIMEOUT or ErrorKind.EXECUTION_ERROR.
        message: Human-readable error message.
        stderr: Output captured before the failure, if any.
    """

    def __init__(self, kind: ErrorKind, message: str, stderr: str = ""):
        self.kind = kind
        self.message = message
        self.stderr = stderr
        super().__init__(message)
