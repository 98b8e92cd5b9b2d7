"""Pipeline engine: drive loop, retry policy and apply reconciliation."""

from infragate.engine.engine import PipelineEngine
from infragate.engine.reconcile import (
    PlanReconciler,
    Reconciler,
    ReconcileResult,
    build_reconciler,
)
from infragate.engine.retry import RETRYABLE_KINDS, RetryPolicy

__all__ = [
    "PipelineEngine",
    "PlanReconciler",
    "Reconciler",
    "ReconcileResult",
    "RetryPolicy",
    "RETRYABLE_KINDS",
    "build_reconciler",
]
