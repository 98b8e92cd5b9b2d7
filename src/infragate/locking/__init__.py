"""Lease-based distributed locking with fencing tokens.

The lock over a target state identifier serializes Apply across runs and
engine replicas. Fencing tokens prevent a stale holder from mutating state
after its lease was reclaimed.
"""

from infragate.locking.keeper import LeaseKeeper
from infragate.locking.manager import (
    AlreadyLockedError,
    LockError,
    LockExpiredError,
    LockFencedError,
    LockManager,
    utc_now,
)
from infragate.locking.models import Lock
from infragate.locking.store import InMemoryLockStore, LockStore, PostgresLockStore

__all__ = [
    "Lock",
    "LockStore",
    "InMemoryLockStore",
    "PostgresLockStore",
    "LockManager",
    "LockError",
    "AlreadyLockedError",
    "LockFencedError",
    "LockExpiredError",
    "LeaseKeeper",
    "utc_now",
]
