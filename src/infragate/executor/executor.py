"""Stage executor.

Runs one stage's adapter with a bounded wall-clock timeout and maps
failures onto the error taxonomy:

- Timeout: the adapter is cancelled (killing its process) and
  StageExecutionError(TIMEOUT) is raised
- Adapter crash: StageExecutionError(EXECUTION_ERROR)
- Completed tool: the ExecutionOutcome is returned and later classified by
  classify_outcome() against the gate verdict

Every invocation is logged with the correlation id
"{run_id}:{stage}:{attempt}".
"""

import asyncio
import logging
import time
from typing import Dict, List, Mapping, Tuple

from infragate.config import ConfigurationError
from infragate.executor.adapters import StageAdapter
from infragate.executor.models import (
    ExecutionOutcome,
    StageContext,
    StageExecutionError,
)
from infragate.gates.models import Finding, Severity, Verdict
from infragate.state.models import ErrorKind, StageName, StageStatus


logger = logging.getLogger(__name__)

NONZERO_EXIT_RULE_ID = "tool.nonzero_exit"


def classify_outcome(
    exit_code: int,
    verdict: Verdict,
) -> Tuple[StageStatus, List[Finding]]:
    """Decide a stage attempt's status from exit code and verdict.

    Exit code 0 with no Blocking finding passes; a non-zero exit or a
    Blocking finding fails. A non-zero exit without any Blocking finding
    gets a synthesized Blocking finding so every Failed result carries at
    least one.

    Returns:
        Tuple of (status, findings in deterministic order).
    """
    findings = list(verdict.findings)
    blocking = verdict.blocking

    if exit_code != 0 and not blocking:
        findings.append(
            Finding(
                rule_id=NONZERO_EXIT_RULE_ID,
                severity=Severity.BLOCKING,
                message=f"Tool exited with code {exit_code}",
            )
        )
        findings.sort(key=Finding.sort_key)

    if exit_code != 0 or blocking:
        return StageStatus.FAILED, findings
    return StageStatus.PASSED, findings


class StageExecutor:
    """Runs stage adapters with timeouts and error classification.

    Attributes:
        adapters: Adapter per stage.
    """

    def __init__(self, adapters: Mapping[StageName, StageAdapter]):
        self.adapters: Dict[StageName, StageAdapter] = dict(adapters)

    async def run(
        self,
        stage: StageName,
        input_artifacts: Dict[str, bytes],
        timeout: float,
        context: StageContext,
    ) -> ExecutionOutcome:
        """Execute a stage's tool.

        Args:
            stage: Stage to run.
            input_artifacts: Payloads of earlier stages, keyed by stage name.
            timeout: Wall-clock bound in seconds.
            context: Invocation context.

        Returns:
            The tool's outcome when it ran to completion.

        Raises:
            ConfigurationError: If no adapter is configured for the stage.
            StageExecutionError: On timeout or crash.
        """
        adapter = self.adapters.get(stage)
        if adapter is None:
            raise ConfigurationError(
                f"No adapter configured for stage '{stage.value}'",
                source="pipeline",
            )

        log_extra = {
            "correlation_id": context.correlation_id,
            "run_id": context.run_id,
            "stage": stage.value,
            "attempt": context.attempt,
        }
        logger.info(
            "Executing stage",
            extra={**log_extra, "timeout_seconds": timeout},
        )

        start_time = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                adapter.run(input_artifacts, context),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Stage timed out after %ss",
                timeout,
                extra=log_extra,
            )
            raise StageExecutionError(
                ErrorKind.TIMEOUT,
                f"Stage {stage.value} timed out after {timeout}s",
            ) from None
        except StageExecutionError as e:
            logger.error(
                "Stage execution failed: %s",
                e.message,
                extra={**log_extra, "error_kind": e.kind.value},
            )
            raise
        except ConfigurationError:
            raise
        except Exception as e:
            logger.exception(
                "Stage adapter crashed",
                extra=log_extra,
            )
            raise StageExecutionError(
                ErrorKind.EXECUTION_ERROR,
                f"Adapter for {stage.value} crashed: {e}",
            ) from e

        logger.info(
            "Stage execution finished",
            extra={
                **log_extra,
                "exit_code": outcome.exit_code,
                "duration_seconds": round(time.monotonic() - start_time, 3),
            },
        )
        return outcome
