"""Approval suspension between plan and apply."""

from infragate.approval.gate import (
    APPROVAL_REQUIRED_METADATA_KEY,
    ApprovalError,
    ApprovalExpiredError,
    ApprovalGate,
)

__all__ = [
    "ApprovalGate",
    "ApprovalError",
    "ApprovalExpiredError",
    "APPROVAL_REQUIRED_METADATA_KEY",
]
