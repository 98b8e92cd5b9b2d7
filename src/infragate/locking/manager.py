"""Lease-based distributed lock with fencing tokens.

The LockManager serializes mutating operations against a shared target
state identifier. It is the only hard mutual-exclusion resource in the
pipeline: application-level mutexes are never relied on because engine
replicas may run as independent processes.

Semantics:
- acquire: fails with AlreadyLockedError while another run holds an
  unexpired lease; idempotent for the current holder; reclaiming an expired
  lease strictly increments the fencing token.
- renew: extends a held lease; a lapsed lease is lock loss, not a warning.
- release: clears the holder but keeps the record so the fencing counter
  never resets.
- validate_fencing: proves the caller still holds the newest lease; Apply
  calls it before and after the mutating action.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from infragate.locking.models import Lock
from infragate.locking.store import LockStore


logger = logging.getLogger(__name__)

# Compare-and-set retries before a contended write is reported as locked
MAX_CAS_ATTEMPTS = 5


def utc_now() -> datetime:
    """Default clock for lease arithmetic."""
    return datetime.now(timezone.utc)


class LockError(Exception):
    """Base class for lock failures.

    Attributes:
        resource_id: The target state identifier involved.
    """

    def __init__(self, resource_id: str, message: str):
        self.resource_id = resource_id
        super().__init__(message)


class AlreadyLockedError(LockError):
    """Raised when an unexpired lease is held by a different run.

    Attributes:
        holder: Run identifier currently holding the lease.
        expires_at: When the current lease lapses.
    """

    def __init__(
        self,
        resource_id: str,
        holder: Optional[str],
        expires_at: Optional[datetime],
    ):
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(
            resource_id,
            f"{resource_id} is locked by {holder} until "
            f"{expires_at.isoformat() if expires_at else 'unknown'}",
        )


class LockFencedError(LockError):
    """Raised when a presented token is no longer the newest lease.

    Attributes:
        token: The token the caller presented.
        current_token: The token held by the registry, if any.
    """

    def __init__(
        self,
        resource_id: str,
        token: int,
        current_token: Optional[int],
        message: Optional[str] = None,
    ):
        self.token = token
        self.current_token = current_token
        super().__init__(
            resource_id,
            message
            or (
                f"Fencing token {token} for {resource_id} is stale "
                f"(current: {current_token})"
            ),
        )


class LockExpiredError(LockFencedError):
    """Raised when the caller's lease lapsed before it was renewed."""

    def __init__(self, resource_id: str, token: int, expires_at: datetime):
        self.expires_at = expires_at
        super().__init__(
            resource_id,
            token,
            token,
            message=(
                f"Lease {token} for {resource_id} expired at "
                f"{expires_at.isoformat()}"
            ),
        )


class LockManager:
    """Acquires, renews and releases leases over target state identifiers.

    Attributes:
        store: Persistence for lock records.
        clock: Callable returning the current UTC time.

    Example:
        >>> manager = LockManager(InMemoryLockStore())
        >>> token = await manager.acquire("prod/network", "run-1", 600)
        >>> await manager.validate_fencing("prod/network", token)
        >>> await manager.release("prod/network", token)
    """

    def __init__(
        self,
        store: LockStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.clock = clock

    async def acquire(
        self,
        resource_id: str,
        run_id: str,
        lease_seconds: float,
    ) -> int:
        """Acquire the lease for a run.

        Args:
            resource_id: Target state identifier to lock.
            run_id: Run requesting the lease.
            lease_seconds: Lease duration.

        Returns:
            The fencing token of the held lease.

        Raises:
            AlreadyLockedError: If another run holds an unexpired lease.
        """
        lease = timedelta(seconds=lease_seconds)

        for _ in range(MAX_CAS_ATTEMPTS):
            now = self.clock()
            current = await self.store.get(resource_id)

            if current is not None and current.is_active(now):
                if current.holder != run_id:
                    raise AlreadyLockedError(
                        resource_id, current.holder, current.expires_at
                    )
                # Idempotent re-acquire by the holder keeps the token
                updated = current.model_copy(
                    update={
                        "expires_at": max(current.expires_at, now + lease),
                        "revision": current.revision + 1,
                    }
                )
            else:
                updated = Lock(
                    resource_id=resource_id,
                    holder=run_id,
                    acquired_at=now,
                    expires_at=now + lease,
                    fencing_token=(
                        current.fencing_token + 1 if current is not None else 1
                    ),
                    revision=current.revision + 1 if current is not None else 1,
                )

            expected = current.revision if current is not None else None
            if await self.store.compare_and_set(resource_id, expected, updated):
                logger.info(
                    "Acquired lock",
                    extra={
                        "resource_id": resource_id,
                        "run_id": run_id,
                        "fencing_token": updated.fencing_token,
                        "expires_at": updated.expires_at.isoformat(),
                        "reclaimed": current is not None
                        and current.is_held
                        and current.holder != run_id,
                    },
                )
                return updated.fencing_token

        latest = await self.store.get(resource_id)
        raise AlreadyLockedError(
            resource_id,
            latest.holder if latest else None,
            latest.expires_at if latest else None,
        )

    async def renew(
        self,
        resource_id: str,
        token: int,
        lease_seconds: float,
    ) -> Lock:
        """Extend a held lease.

        Raises:
            LockFencedError: If the token is not the current holder's.
            LockExpiredError: If the lease already lapsed.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            now = self.clock()
            current = self._require_current(
                resource_id, token, await self.store.get(resource_id), now
            )
            updated = current.model_copy(
                update={
                    "expires_at": now + timedelta(seconds=lease_seconds),
                    "revision": current.revision + 1,
                }
            )
            if await self.store.compare_and_set(
                resource_id, current.revision, updated
            ):
                logger.debug(
                    "Renewed lock",
                    extra={
                        "resource_id": resource_id,
                        "fencing_token": token,
                        "expires_at": updated.expires_at.isoformat(),
                    },
                )
                return updated

        current = await self.store.get(resource_id)
        raise LockFencedError(
            resource_id, token, current.fencing_token if current else None
        )

    async def release(self, resource_id: str, token: int) -> None:
        """Release a lease.

        Releasing an already released lease with the same token is a no-op.
        An expired lease that nobody reclaimed is still released by its
        holder.

        Raises:
            LockFencedError: If another holder owns the lease now.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            current = await self.store.get(resource_id)
            if current is None or current.fencing_token != token:
                raise LockFencedError(
                    resource_id,
                    token,
                    current.fencing_token if current else None,
                )
            if not current.is_held:
                return

            now = self.clock()
            updated = current.model_copy(
                update={
                    "holder": None,
                    "expires_at": min(current.expires_at, now),
                    "revision": current.revision + 1,
                }
            )
            if await self.store.compare_and_set(
                resource_id, current.revision, updated
            ):
                logger.info(
                    "Released lock",
                    extra={
                        "resource_id": resource_id,
                        "run_id": current.holder,
                        "fencing_token": token,
                    },
                )
                return

        current = await self.store.get(resource_id)
        raise LockFencedError(
            resource_id, token, current.fencing_token if current else None
        )

    async def inspect(self, resource_id: str) -> Optional[Lock]:
        """Return the held lease for a resource, or None when unheld.

        A lease that expired without being released is still returned;
        callers check Lock.is_expired against the manager's clock.
        """
        current = await self.store.get(resource_id)
        if current is None or not current.is_held:
            return None
        return current

    async def validate_fencing(self, resource_id: str, token: int) -> Lock:
        """Prove that token is the newest, unexpired lease.

        Raises:
            LockFencedError: If the lease was reclaimed or released.
            LockExpiredError: If the lease lapsed.
        """
        return self._require_current(
            resource_id, token, await self.store.get(resource_id), self.clock()
        )

    def is_expired(self, lock: Lock) -> bool:
        """Evaluate a lease's expiry against the manager's clock."""
        return lock.is_expired(self.clock())

    @staticmethod
    def _require_current(
        resource_id: str,
        token: int,
        current: Optional[Lock],
        now: datetime,
    ) -> Lock:
        if current is None or not current.is_held or current.fencing_token != token:
            raise LockFencedError(
                resource_id,
                token,
                current.fencing_token if current else None,
            )
        if current.is_expired(now):
            raise LockExpiredError(resource_id, token, current.expires_at)
        return current
