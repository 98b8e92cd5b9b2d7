"""Lock record storage.

Lock stores persist Lock records and offer a single atomic primitive,
compare-and-set on the record revision. All lease semantics (expiry,
fencing, idempotent re-acquire) live in the LockManager so that every store
behaves identically. This mirrors the optimistic locking used for pipeline
runs: a write only lands when the caller saw the latest revision.

Implementations:
- InMemoryLockStore: Single-process store for local use and tests
- PostgresLockStore: Shared store for multiple engine replicas (asyncpg)
"""

import logging
from typing import Dict, Optional, Protocol, runtime_checkable

import asyncpg

from infragate.locking.models import Lock
from infragate.state.repository import DatabaseError


logger = logging.getLogger(__name__)


@runtime_checkable
class LockStore(Protocol):
    """Storage contract for lock records."""

    async def get(self, resource_id: str) -> Optional[Lock]:
        """Return the lock record for a resource, or None if never locked."""
        ...

    async def compare_and_set(
        self,
        resource_id: str,
        expected_revision: Optional[int],
        lock: Lock,
    ) -> bool:
        """Write a lock record if the stored revision matches.

        Args:
            resource_id: Resource the record belongs to.
            expected_revision: Revision the caller read, or None if the
                caller saw no record at all.
            lock: The record to store (its revision must be bumped).

        Returns:
            True if the write landed, False on a concurrent modification.
        """
        ...


class InMemoryLockStore:
    """Dictionary-backed lock store.

    Each method body runs without awaiting, so on a single event loop the
    compare and the set are atomic.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, Lock] = {}

    async def get(self, resource_id: str) -> Optional[Lock]:
        return self._locks.get(resource_id)

    async def compare_and_set(
        self,
        resource_id: str,
        expected_revision: Optional[int],
        lock: Lock,
    ) -> bool:
        current = self._locks.get(resource_id)
        current_revision = current.revision if current is not None else None
        if current_revision != expected_revision:
            return False
        self._locks[resource_id] = lock
        return True


class PostgresLockStore:
    """PostgreSQL lock store shared by engine replicas.

    Expects the pipeline_locks table from migrations/001_infragate.sql.
    Lease expiry is evaluated by the LockManager against its own clock, so
    replicas should run with synchronized clocks; the fencing token guards
    against the residual skew.

    Attributes:
        pool: An asyncpg connection pool owned by the caller.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, resource_id: str) -> Optional[Lock]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        resource_id,
                        holder,
                        acquired_at,
                        expires_at,
                        fencing_token,
                        revision
                    FROM pipeline_locks
                    WHERE resource_id = $1
                    """,
                    resource_id,
                )
        except Exception as e:
            logger.error(
                "Failed to read lock record",
                extra={"resource_id": resource_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to read lock record: {e}",
                original_error=e,
            ) from e

        if row is None:
            return None

        return Lock(
            resource_id=row["resource_id"],
            holder=row["holder"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
            fencing_token=row["fencing_token"],
            revision=row["revision"],
        )

    async def compare_and_set(
        self,
        resource_id: str,
        expected_revision: Optional[int],
        lock: Lock,
    ) -> bool:
        try:
            async with self.pool.acquire() as conn:
                if expected_revision is None:
                    result = await conn.execute(
                        """
                        INSERT INTO pipeline_locks (
                            resource_id,
                            holder,
                            acquired_at,
                            expires_at,
                            fencing_token,
                            revision
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        ON CONFLICT (resource_id) DO NOTHING
                        """,
                        resource_id,
                        lock.holder,
                        lock.acquired_at,
                        lock.expires_at,
                        lock.fencing_token,
                        lock.revision,
                    )
                else:
                    result = await conn.execute(
                        """
                        UPDATE pipeline_locks
                        SET
                            holder = $2,
                            acquired_at = $3,
                            expires_at = $4,
                            fencing_token = $5,
                            revision = $6
                        WHERE resource_id = $1 AND revision = $7
                        """,
                        resource_id,
                        lock.holder,
                        lock.acquired_at,
                        lock.expires_at,
                        lock.fencing_token,
                        lock.revision,
                        expected_revision,
                    )
        except Exception as e:
            logger.error(
                "Failed to write lock record",
                extra={"resource_id": resource_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to write lock record: {e}",
                original_error=e,
            ) from e

        # asyncpg returns a status tag such as "UPDATE 1" or "INSERT 0 1"
        rows_affected = int(result.split()[-1])
        return rows_affected == 1
