"""Lock lease model.

A Lock is a lease over a target state identifier. The record survives
release (holder cleared) so that the fencing token of a resource only ever
grows. The revision field is bumped on every write and is the
compare-and-set key used by lock stores.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Lock(BaseModel):
    """Lease record for one target state identifier.

    Attributes:
        resource_id: Target state identifier the lease covers.
        holder: Run identifier holding the lease, None once released.
        acquired_at: When the current holder acquired the lease (UTC).
        expires_at: When the lease lapses unless renewed (UTC).
        fencing_token: Monotonically increasing per resource.
        revision: Write counter used for compare-and-set.
    """

    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(..., min_length=1)
    holder: Optional[str] = None
    acquired_at: datetime
    expires_at: datetime
    fencing_token: int = Field(..., ge=1)
    revision: int = Field(default=1, ge=1)

    @property
    def is_held(self) -> bool:
        """True while a holder is recorded, whether or not it has expired."""
        return self.holder is not None

    def is_expired(self, now: datetime) -> bool:
        """True once the lease has lapsed."""
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        """True when held and not yet expired."""
        return self.is_held and not self.is_expired(now)
