"""FastAPI application entry point for infragate.

This module provides the HTTP surface of the deployment pipeline: trigger
ingress, run inspection, approval decisions and cancellation, plus the
liveness, readiness and Prometheus metrics endpoints.

On startup the application wires the engine from PipelineSettings, settles
runs left in applying by a previous process, and starts the periodic
approval-expiry sweep.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from infragate.approval.gate import ApprovalError, ApprovalExpiredError, ApprovalGate
from infragate.artifacts.store import (
    ArtifactStoreClient,
    FileSystemArtifactBackend,
    InMemoryArtifactBackend,
)
from infragate.config import PipelineSettings, get_settings
from infragate.engine.engine import PipelineEngine
from infragate.engine.reconcile import build_reconciler
from infragate.events.emitter import create_event_emitter
from infragate.events.metrics import generate_metrics_output
from infragate.executor.executor import StageExecutor
from infragate.gates.models import PolicyRuleset
from infragate.gates.ruleset import load_ruleset
from infragate.locking.manager import LockManager
from infragate.locking.store import InMemoryLockStore, PostgresLockStore
from infragate.pipeline_config import PipelineDefinition, load_pipeline_definition
from infragate.state.machine import RunNotFoundError, RunStateMachine
from infragate.state.memory import InMemoryRunRepository
from infragate.state.models import ApprovalDecision, PipelineRun, TriggerEvent
from infragate.state.repository import PostgresRunRepository, create_pool

logger = logging.getLogger(__name__)


class ApprovalRequest(BaseModel):
    """Body of an approval decision."""

    decision: ApprovalDecision
    actor: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    """Body of a cancellation request."""

    actor: str = Field(..., min_length=1)


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: PipelineSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Pipeline configuration:")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Artifact Dir: {settings.artifact_dir or '<in-memory>'}")
    logger.info(f"  Pipeline Definition: {settings.pipeline_definition_path}")
    logger.info(f"  Ruleset: {settings.ruleset_path}")
    logger.info(f"  Stage Timeout Seconds: {settings.stage_timeout_seconds}")
    logger.info(f"  Lease Seconds: {settings.lease_seconds}")
    logger.info(f"  Lock Wait Mode: {settings.lock_wait_mode.value}")
    logger.info(f"  Max Attempts: {settings.max_attempts}")
    logger.info(f"  Approval Required: {settings.approval_required}")
    logger.info(f"  Approval Timeout Seconds: {settings.approval_timeout_seconds}")
    logger.info(f"  Shutdown Grace Seconds: {settings.shutdown_grace_seconds}")
    logger.info(f"  Event Sinks: {settings.event_sinks}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


async def build_engine(settings: PipelineSettings) -> PipelineEngine:
    """Wire all pipeline dependencies into a PipelineEngine.

    PostgreSQL backs runs and locks when a database URL is configured;
    otherwise both live in memory (single-process development only).

    Raises:
        ConfigurationError: If the definition or ruleset file is invalid.
        DatabaseError: If the database is unreachable.
    """
    if settings.database_url:
        pool = await create_pool(settings.database_url)
        repository: Any = PostgresRunRepository(pool)
        lock_store: Any = PostgresLockStore(pool)
    else:
        logger.warning("No database configured; using in-memory state")
        repository = InMemoryRunRepository()
        lock_store = InMemoryLockStore()

    if settings.artifact_dir:
        backend: Any = FileSystemArtifactBackend(Path(settings.artifact_dir))
    else:
        backend = InMemoryArtifactBackend()

    if settings.pipeline_definition_path:
        definition = load_pipeline_definition(settings.pipeline_definition_path)
    else:
        logger.warning("No pipeline definition configured; stages have no adapters")
        definition = PipelineDefinition()

    ruleset = (
        load_ruleset(settings.ruleset_path)
        if settings.ruleset_path
        else PolicyRuleset()
    )

    machine = RunStateMachine(repository)
    approval_required = (
        definition.approval_required
        if definition.approval_required is not None
        else settings.approval_required
    )

    return PipelineEngine(
        machine=machine,
        executor=StageExecutor(definition.build_adapters()),
        locks=LockManager(lock_store),
        artifacts=ArtifactStoreClient(backend),
        approvals=ApprovalGate(
            machine,
            required=approval_required,
            timeout_seconds=settings.approval_timeout_seconds,
        ),
        settings=settings,
        ruleset=ruleset,
        definition=definition,
        reconciler=build_reconciler(
            definition, float(settings.stage_timeout_seconds)
        ),
        emitter=create_event_emitter(settings.sink_names()),
    )


async def _approval_sweep(engine: PipelineEngine, interval_seconds: float) -> None:
    """Periodically abort runs whose approval deadline passed."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            expired = await engine.expire_approvals()
            if expired:
                logger.info("Expired approvals", extra={"run_ids": expired})
        except Exception as e:
            logger.error("Approval sweep failed", extra={"error": str(e)})


def create_app(engine: Optional[PipelineEngine] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        engine: Pre-built engine; when omitted it is wired from settings
            during startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown.

        Handles:
        - Configuration loading and engine wiring
        - Reconciliation of runs interrupted while applying
        - The approval-expiry sweep task
        - Waiting for in-flight applies before exit
        """
        logger.info("infragate starting up...")
        sweeper: Optional[asyncio.Task] = None

        if engine is not None:
            app.state.engine = engine
        else:
            settings = get_settings()
            _log_configuration(settings)
            app.state.engine = await build_engine(settings)
            await app.state.engine.reconcile()
            sweeper = asyncio.create_task(
                _approval_sweep(
                    app.state.engine, settings.approval_sweep_interval_seconds
                )
            )

        logger.info("infragate started successfully")

        yield

        logger.info("infragate shutting down...")
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await app.state.engine.drain(
            app.state.engine.settings.shutdown_grace_seconds
        )
        await app.state.engine.emitter.close()
        logger.info("infragate shutdown complete")

    app = FastAPI(
        title="infragate",
        description="Gated deployment pipeline for shared infrastructure state",
        version="0.1.0",
        lifespan=lifespan,
    )

    def _engine(request: Request) -> PipelineEngine:
        return request.app.state.engine

    def _run_body(run: PipelineRun) -> Dict[str, Any]:
        return run.model_dump(mode="json")

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness probe endpoint.

        Raises:
            HTTPException: 503 if the database is unavailable.
        """
        repository = _engine(request).machine.repository
        database_status = "not_configured"
        if hasattr(repository, "health_check"):
            healthy = await repository.health_check()
            database_status = "healthy" if healthy else "unhealthy"

        if database_status == "unhealthy":
            raise HTTPException(
                status_code=503,
                detail={"status": "not_ready", "database": database_status},
            )
        return {"status": "ready", "dependencies": {"database": database_status}}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint."""
        return generate_metrics_output().decode("utf-8")

    @app.post("/runs", status_code=202)
    async def trigger_run(event: TriggerEvent, request: Request):
        """Create a run and start driving it in the background."""
        engine = _engine(request)
        run_id = await engine.trigger(event)
        engine.start(run_id)
        return {"status": "accepted", "run_id": run_id}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str, request: Request):
        try:
            run = await _engine(request).get_run(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return _run_body(run)

    @app.post("/runs/{run_id}/approval")
    async def submit_approval(run_id: str, body: ApprovalRequest, request: Request):
        """Record an approval decision; an approved run resumes toward apply."""
        engine = _engine(request)
        try:
            run = await engine.submit_approval(run_id, body.decision, body.actor)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except ApprovalExpiredError as e:
            raise HTTPException(status_code=410, detail=str(e)) from e
        except ApprovalError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

        if body.decision == ApprovalDecision.APPROVE and not run.is_terminal:
            engine.start(run_id)
        return _run_body(run)

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str, body: CancelRequest, request: Request):
        try:
            run = await _engine(request).cancel(run_id, body.actor)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return _run_body(run)

    @app.post("/runs/{run_id}/resume", status_code=202)
    async def resume_run(run_id: str, request: Request):
        """Re-enter the drive loop for a run that is not being driven."""
        engine = _engine(request)
        try:
            run = await engine.get_run(run_id)
        except RunNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        if run.is_terminal:
            raise HTTPException(
                status_code=409,
                detail=f"Run {run_id} is {run.status.value}",
            )
        engine.start(run_id)
        return {"status": "accepted", "run_id": run_id}

    return app


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app()


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    serve_settings = get_settings()
    uvicorn.run(
        "infragate.main:app",
        host=serve_settings.host,
        port=serve_settings.port,
    )


if __name__ == "__main__":
    run()
