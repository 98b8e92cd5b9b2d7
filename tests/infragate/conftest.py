"""Shared fixtures for infragate tests.

Provides an in-memory engine harness with scripted stage adapters, a
controllable clock, a recording event emitter and a scripted reconciler,
so pipeline scenarios run without subprocesses, databases or real time.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest
from fakes import (
    PLAN_BYTES,
    FakeClock,
    RecordingEmitter,
    ScriptedAdapter,
    outcome,
)

from infragate.approval.gate import ApprovalGate
from infragate.artifacts.store import ArtifactStoreClient, InMemoryArtifactBackend
from infragate.config import PipelineSettings
from infragate.engine.engine import PipelineEngine
from infragate.executor.executor import StageExecutor
from infragate.gates.models import PolicyRuleset
from infragate.locking.manager import LockManager
from infragate.locking.store import InMemoryLockStore
from infragate.pipeline_config import PipelineDefinition
from infragate.state.machine import RunStateMachine
from infragate.state.memory import InMemoryRunRepository
from infragate.state.models import StageName


@dataclass
class Harness:
    engine: PipelineEngine
    machine: RunStateMachine
    repository: InMemoryRunRepository
    locks: LockManager
    artifacts: ArtifactStoreClient
    adapters: Dict[StageName, ScriptedAdapter]
    emitter: RecordingEmitter
    clock: FakeClock
    sleeps: List[float] = field(default_factory=list)
    on_sleep: Optional[Callable[[float], Any]] = None

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        if self.on_sleep is not None:
            result = self.on_sleep(delay)
            if asyncio.iscoroutine(result):
                await result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_harness(clock):
    """Factory building a fully in-memory engine.

    Args (of the returned factory):
        steps: Scripted steps per stage; unspecified stages exit 0 and the
            plan stage emits PLAN_BYTES as its artifact.
        approval_required: Default approval requirement.
        approval_timeout_seconds: Approval deadline.
        ruleset: Policy ruleset.
        definition: Pipeline definition.
        reconciler: Apply reconciler.
        repository: Run repository; in-memory when omitted.
        **settings: PipelineSettings overrides.
    """

    def factory(
        steps: Optional[Dict[StageName, List[Any]]] = None,
        approval_required: bool = False,
        approval_timeout_seconds: Optional[int] = None,
        ruleset: Optional[PolicyRuleset] = None,
        definition: Optional[PipelineDefinition] = None,
        reconciler: Any = None,
        repository: Optional[InMemoryRunRepository] = None,
        **settings: Any,
    ) -> Harness:
        steps = steps or {}
        adapters = {
            StageName.VALIDATE: ScriptedAdapter(*steps.get(StageName.VALIDATE, [])),
            StageName.LINT: ScriptedAdapter(*steps.get(StageName.LINT, [])),
            StageName.SECURITY_SCAN: ScriptedAdapter(
                *steps.get(StageName.SECURITY_SCAN, [])
            ),
            StageName.PLAN: ScriptedAdapter(
                *steps.get(StageName.PLAN, [outcome(artifact=PLAN_BYTES)])
            ),
            StageName.APPLY: ScriptedAdapter(*steps.get(StageName.APPLY, [])),
        }

        repository = repository or InMemoryRunRepository()
        machine = RunStateMachine(repository)
        locks = LockManager(InMemoryLockStore(), clock=clock)
        artifacts = ArtifactStoreClient(InMemoryArtifactBackend())
        emitter = RecordingEmitter()
        harness = Harness(
            engine=None,  # type: ignore[arg-type]
            machine=machine,
            repository=repository,
            locks=locks,
            artifacts=artifacts,
            adapters=adapters,
            emitter=emitter,
            clock=clock,
        )
        harness.engine = PipelineEngine(
            machine=machine,
            executor=StageExecutor(adapters),
            locks=locks,
            artifacts=artifacts,
            approvals=ApprovalGate(
                machine,
                required=approval_required,
                timeout_seconds=approval_timeout_seconds,
                clock=clock,
            ),
            settings=PipelineSettings(**settings),
            ruleset=ruleset,
            definition=definition,
            reconciler=reconciler,
            emitter=emitter,
            sleep=harness.sleep,
        )
        return harness

    return factory
