"""Stage tool adapters.

An adapter invokes the external tool behind one stage. The core ships a
subprocess adapter configured from the pipeline definition; anything that
implements StageAdapter can be plugged in instead.

The subprocess adapter:
- Writes input artifacts to a scratch directory
- Substitutes placeholders in the configured command
- Captures stdout and stderr in chunks, echoing lines to the debug log
- Kills the process whenever collection ends abnormally (timeouts are
  enforced by the executor through cancellation)
- Reads the optional output file back as the stage artifact
"""

import asyncio
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from infragate.config import ConfigurationError
from infragate.executor.models import (
    ExecutionOutcome,
    StageContext,
    StageExecutionError,
)
from infragate.state.models import ErrorKind

logger = logging.getLogger(__name__)

FENCING_TOKEN_ENV = "INFRAGATE_FENCING_TOKEN"

# Single lines (`terraform show -json`) can exceed the StreamReader line limit
READ_CHUNK_BYTES = 65536

# Only {name} tokens naming a known placeholder are substituted; any other
# braces (JSON, jq filters, ${VAR}) pass through untouched
PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")
INPUT_PLACEHOLDER_PREFIX = "input_"


@runtime_checkable
class StageAdapter(Protocol):
    """Protocol for stage tool adapters."""

    async def run(
        self,
        input_artifacts: Dict[str, bytes],
        context: StageContext,
    ) -> ExecutionOutcome:
        """Run the tool and return its outcome.

        Raises:
            StageExecutionError: If the tool crashed or could not start.
        """
        ...


class SubprocessAdapter:
    """Runs a stage tool as an async subprocess.

    Command arguments may reference these placeholders:
        {scratch_dir}: Scratch directory holding input artifacts
        {input_<stage>}: Path of the artifact produced by <stage>
        {output_file}: Path the tool should write its artifact to
        {run_id}, {stage}, {attempt}, {source_revision}, {target_state_id}

    Other brace expressions such as `${HOME}` or inline JSON are passed to
    the tool verbatim.

    The same values are exported as INFRAGATE_* environment variables, with
    the fencing token in INFRAGATE_FENCING_TOKEN for the mutating stage.

    Attributes:
        command: Command template (executable first).
        env: Extra environment variables.
        working_dir: Working directory for the process.
        output_file: Artifact file name, relative to the scratch directory.

    Example:
        >>> adapter = SubprocessAdapter(
        ...     ["terraform", "plan", "-out={output_file}"],
        ...     working_dir="/src/network",
        ...     output_file="plan.tfplan",
        ... )
    """

    def __init__(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        working_dir: Optional[str] = None,
        output_file: Optional[str] = None,
    ):
        if not command:
            raise ConfigurationError("Adapter command must not be empty")
        self.command = list(command)
        self.env = dict(env or {})
        self.working_dir = working_dir
        self.output_file = output_file

    async def run(
        self,
        input_artifacts: Dict[str, bytes],
        context: StageContext,
    ) -> ExecutionOutcome:
        """Execute the configured command for one stage attempt.

        Raises:
            ConfigurationError: If the command references an input
                artifact that was not provided.
            StageExecutionError: If the process cannot be started or was
                terminated by a signal.
        """
        start_time = time.monotonic()

        with tempfile.TemporaryDirectory(prefix="infragate-") as scratch:
            values = self._placeholders(Path(scratch), input_artifacts, context)
            argv = self._render(values)
            env = self._environment(values, context)

            try:
                process = await self._start_process(argv, env, context)
            except OSError as exc:
                raise StageExecutionError(
                    ErrorKind.EXECUTION_ERROR,
                    f"Failed to start {self.command[0]}: {exc}",
                ) from exc

            try:
                stdout, stderr = await self._collect_output(process, context)
            except BaseException:
                # The tool must never outlive the attempt that launched it
                self._kill(process, context)
                await process.wait()
                raise

            exit_code = process.returncode if process.returncode is not None else -1
            duration = time.monotonic() - start_time

            if exit_code < 0:
                raise StageExecutionError(
                    ErrorKind.EXECUTION_ERROR,
                    f"{self.command[0]} terminated by signal {-exit_code}",
                    stderr=stderr,
                )

            artifact = None
            if self.output_file:
                output_path = Path(values["output_file"])
                if output_path.exists():
                    artifact = output_path.read_bytes()

        self._log_result(exit_code, duration, context)
        return ExecutionOutcome(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
            artifact=artifact,
        )

    def _placeholders(
        self,
        scratch: Path,
        input_artifacts: Dict[str, bytes],
        context: StageContext,
    ) -> Dict[str, str]:
        values = {
            "scratch_dir": str(scratch),
            "output_file": str(scratch / (self.output_file or "output")),
            "run_id": context.run_id,
            "stage": context.stage.value,
            "attempt": str(context.attempt),
            "source_revision": context.source_revision,
            "target_state_id": context.target_state_id,
        }
        for name, data in input_artifacts.items():
            path = scratch / f"{name}.artifact"
            path.write_bytes(data)
            values[f"input_{name}"] = str(path)
        return values

    def _render(self, values: Dict[str, str]) -> List[str]:
        def substitute(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name in values:
                return values[name]
            if name.startswith(INPUT_PLACEHOLDER_PREFIX):
                raise ConfigurationError(
                    f"Command {self.command!r} references {match.group(0)} "
                    "but no such input artifact was provided"
                )
            return match.group(0)

        return [PLACEHOLDER_PATTERN.sub(substitute, arg) for arg in self.command]

    def _environment(
        self,
        values: Dict[str, str],
        context: StageContext,
    ) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        for key, value in values.items():
            env[f"INFRAGATE_{key.upper()}"] = value
        if context.fencing_token is not None:
            env[FENCING_TOKEN_ENV] = str(context.fencing_token)
        return env

    async def _start_process(
        self,
        argv: List[str],
        env: Dict[str, str],
        context: StageContext,
    ) -> asyncio.subprocess.Process:
        logger.info(
            "Starting stage tool",
            extra={
                "correlation_id": context.correlation_id,
                "command": argv[0],
                "working_dir": self.working_dir,
            },
        )
        return await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=self.working_dir,
        )

    async def _collect_output(
        self,
        process: asyncio.subprocess.Process,
        context: StageContext,
    ) -> Tuple[str, str]:
        """Stream stdout and stderr concurrently and wait for exit.

        Output is captured in full regardless of line length; complete
        lines are echoed to the debug log as they arrive.
        """
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []

        def log_line(stream_name: str, raw_line: bytes) -> None:
            logger.debug(
                "%s %s: %s",
                context.correlation_id,
                stream_name,
                raw_line.decode("utf-8", errors="replace"),
            )

        async def stream(reader, sink: List[bytes], stream_name: str) -> None:
            if reader is None:
                return
            pending = b""
            while True:
                chunk = await reader.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                sink.append(chunk)
                *lines, pending = (pending + chunk).split(b"\n")
                for raw_line in lines:
                    log_line(stream_name, raw_line)
            if pending:
                log_line(stream_name, pending)

        await asyncio.gather(
            stream(process.stdout, stdout_chunks, "stdout"),
            stream(process.stderr, stderr_chunks, "stderr"),
        )
        await process.wait()
        return _decode(stdout_chunks), _decode(stderr_chunks)

    def _kill(
        self,
        process: asyncio.subprocess.Process,
        context: StageContext,
    ) -> None:
        if process.returncode is not None:
            return
        logger.warning(
            "Killing stage tool",
            extra={"correlation_id": context.correlation_id},
        )
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _log_result(
        self,
        exit_code: int,
        duration: float,
        context: StageContext,
    ) -> None:
        if exit_code == 0:
            logger.info(
                "Stage tool completed successfully in %.1fs",
                duration,
                extra={"correlation_id": context.correlation_id},
            )
        else:
            logger.warning(
                "Stage tool exited with code %d in %.1fs",
                exit_code,
                duration,
                extra={"correlation_id": context.correlation_id},
            )


def _decode(chunks: List[bytes]) -> str:
    """Join captured output, dropping the final line terminator."""
    text = b"".join(chunks).decode("utf-8", errors="replace")
    return text[:-1] if text.endswith("\n") else text
