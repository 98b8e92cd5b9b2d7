"""Stage execution: adapters, timeouts and outcome classification."""

from infragate.executor.adapters import (
    FENCING_TOKEN_ENV,
    StageAdapter,
    SubprocessAdapter,
)
from infragate.executor.executor import (
    NONZERO_EXIT_RULE_ID,
    StageExecutor,
    classify_outcome,
)
from infragate.executor.models import (
    ExecutionOutcome,
    StageContext,
    StageExecutionError,
)

__all__ = [
    "ExecutionOutcome",
    "StageContext",
    "StageExecutionError",
    "StageAdapter",
    "SubprocessAdapter",
    "FENCING_TOKEN_ENV",
    "StageExecutor",
    "classify_outcome",
    "NONZERO_EXIT_RULE_ID",
]
