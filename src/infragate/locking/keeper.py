"""Background lease renewal for long-running mutating stages."""

import asyncio
import logging
from typing import Any, Optional

from infragate.locking.manager import LockError, LockManager


logger = logging.getLogger(__name__)


class LeaseKeeper:
    """Renews a held lease on an interval while a mutating stage runs.

    A failed renewal is recorded as lock loss and renewal stops; the caller
    checks raise_if_lost() at its next fencing checkpoint. The keeper never
    cancels the guarded work itself, since interrupting an in-flight apply
    would leave the infrastructure partially mutated.

    Example:
        >>> async with LeaseKeeper(manager, "prod/network", token, 600, 60) as keeper:
        ...     await run_apply()
        ...     keeper.raise_if_lost()
    """

    def __init__(
        self,
        manager: LockManager,
        resource_id: str,
        token: int,
        lease_seconds: float,
        interval_seconds: float,
    ):
        self.manager = manager
        self.resource_id = resource_id
        self.token = token
        self.lease_seconds = lease_seconds
        self.interval_seconds = interval_seconds
        self.renewals = 0
        self._lost: Optional[LockError] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def lost(self) -> Optional[LockError]:
        """The error that ended renewal, if the lease was lost."""
        return self._lost

    def raise_if_lost(self) -> None:
        """Re-raise the renewal failure, if any."""
        if self._lost is not None:
            raise self._lost

    async def __aenter__(self) -> "LeaseKeeper":
        self._task = asyncio.create_task(self._renew_loop())
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _renew_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.manager.renew(
                    self.resource_id, self.token, self.lease_seconds
                )
                self.renewals += 1
            except LockError as exc:
                self._lost = exc
                logger.error(
                    "Lost lock lease during mutating stage",
                    extra={
                        "resource_id": self.resource_id,
                        "fencing_token": self.token,
                        "error": str(exc),
                    },
                )
                return
