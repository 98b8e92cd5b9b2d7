"""In-memory run repository for local development and tests."""

from typing import Dict, List, Optional

from infragate.state.models import PipelineRun, RunStatus


class InMemoryRunRepository:
    """Run repository satisfying the RunRepository protocol in memory.

    Stored runs are deep-copied on the way in and out so callers can never
    alter persisted state without going through update_with_version.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, PipelineRun] = {}

    async def save(self, run: PipelineRun) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def list_by_status(self, status: RunStatus) -> List[PipelineRun]:
        return [
            run.model_copy(deep=True)
            for run in sorted(self._runs.values(), key=lambda r: r.created_at)
            if run.status == status
        ]

    async def update_with_version(self, run: PipelineRun) -> bool:
        existing = self._runs.get(run.run_id)
        if existing is None:
            return False
        if existing.version != run.version - 1:
            return False
        self._runs[run.run_id] = run.model_copy(deep=True)
        return True

    def clear(self) -> None:
        """Clear all runs from the repository."""
        self._runs.clear()
