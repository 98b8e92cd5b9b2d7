"""Tests for lease-based locking with fencing tokens."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakes import FakeClock
from hypothesis import given, settings, strategies as st

from infragate.locking.keeper import LeaseKeeper
from infragate.locking.manager import (
    AlreadyLockedError,
    LockExpiredError,
    LockFencedError,
    LockManager,
)
from infragate.locking.models import Lock
from infragate.locking.store import InMemoryLockStore, PostgresLockStore
from infragate.state.repository import DatabaseError


RESOURCE = "prod/network"


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def manager(clock):
    return LockManager(InMemoryLockStore(), clock=clock)


class TestAcquire:
    def test_first_acquire_issues_token_one(self, manager):
        token = run_async(manager.acquire(RESOURCE, "run-1", 600))

        assert token == 1

    def test_other_holder_is_rejected(self, manager, clock):
        async def scenario():
            await manager.acquire(RESOURCE, "run-1", 600)
            await manager.acquire(RESOURCE, "run-2", 600)

        with pytest.raises(AlreadyLockedError) as exc_info:
            run_async(scenario())

        assert exc_info.value.holder == "run-1"
        assert exc_info.value.resource_id == RESOURCE

    def test_reacquire_by_holder_keeps_token(self, manager, clock):
        async def scenario():
            first = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(100)
            second = await manager.acquire(RESOURCE, "run-1", 600)
            return first, second, await manager.inspect(RESOURCE)

        first, second, lock = run_async(scenario())

        assert first == second == 1
        assert (lock.expires_at - clock()).total_seconds() == 600

    def test_expired_lease_is_reclaimed_with_higher_token(self, manager, clock):
        async def scenario():
            await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(601)
            return await manager.acquire(RESOURCE, "run-2", 600)

        assert run_async(scenario()) == 2

    def test_token_survives_release(self, manager):
        async def scenario():
            first = await manager.acquire(RESOURCE, "run-1", 600)
            await manager.release(RESOURCE, first)
            return await manager.acquire(RESOURCE, "run-2", 600)

        assert run_async(scenario()) == 2

    def test_resources_are_independent(self, manager):
        async def scenario():
            a = await manager.acquire("prod/network", "run-1", 600)
            b = await manager.acquire("prod/dns", "run-2", 600)
            return a, b

        assert run_async(scenario()) == (1, 1)

    def test_concurrent_acquires_have_one_winner(self, manager):
        async def attempt(run_id):
            try:
                return await manager.acquire(RESOURCE, run_id, 600)
            except AlreadyLockedError:
                return None

        async def scenario():
            return await asyncio.gather(*(attempt(f"run-{i}") for i in range(5)))

        tokens = run_async(scenario())

        assert [t for t in tokens if t is not None] == [1]


class TestRenewAndRelease:
    def test_renew_extends_lease(self, manager, clock):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(500)
            return await manager.renew(RESOURCE, token, 600)

        lock = run_async(scenario())

        assert (lock.expires_at - clock()).total_seconds() == 600

    def test_renew_after_expiry_is_lock_loss(self, manager, clock):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(601)
            await manager.renew(RESOURCE, token, 600)

        with pytest.raises(LockExpiredError):
            run_async(scenario())

    def test_renew_with_stale_token_is_fenced(self, manager, clock):
        async def scenario():
            stale = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(601)
            await manager.acquire(RESOURCE, "run-2", 600)
            await manager.renew(RESOURCE, stale, 600)

        with pytest.raises(LockFencedError) as exc_info:
            run_async(scenario())

        assert exc_info.value.token == 1
        assert exc_info.value.current_token == 2

    def test_release_is_idempotent(self, manager):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            await manager.release(RESOURCE, token)
            await manager.release(RESOURCE, token)
            return await manager.inspect(RESOURCE)

        assert run_async(scenario()) is None

    def test_release_by_previous_holder_is_fenced(self, manager, clock):
        async def scenario():
            stale = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(601)
            await manager.acquire(RESOURCE, "run-2", 600)
            try:
                await manager.release(RESOURCE, stale)
            except LockFencedError:
                pass
            return await manager.inspect(RESOURCE)

        lock = run_async(scenario())

        assert lock.holder == "run-2"

    def test_expired_unreclaimed_lease_can_be_released(self, manager, clock):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(700)
            await manager.release(RESOURCE, token)
            return await manager.inspect(RESOURCE)

        assert run_async(scenario()) is None


class TestValidateFencing:
    def test_current_token_validates(self, manager):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            return await manager.validate_fencing(RESOURCE, token)

        lock = run_async(scenario())

        assert lock.holder == "run-1"

    def test_released_token_is_fenced(self, manager):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            await manager.release(RESOURCE, token)
            await manager.validate_fencing(RESOURCE, token)

        with pytest.raises(LockFencedError):
            run_async(scenario())

    def test_expired_token_is_fenced(self, manager, clock):
        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            clock.advance(600)
            await manager.validate_fencing(RESOURCE, token)

        with pytest.raises(LockExpiredError):
            run_async(scenario())

    def test_unknown_resource_is_fenced(self, manager):
        with pytest.raises(LockFencedError):
            run_async(manager.validate_fencing(RESOURCE, 1))


class TestLeaseKeeper:
    def test_renews_while_work_runs(self, clock):
        manager = LockManager(InMemoryLockStore(), clock=clock)

        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            async with LeaseKeeper(manager, RESOURCE, token, 600, 0.01) as keeper:
                await asyncio.sleep(0.05)
            return keeper

        keeper = run_async(scenario())

        assert keeper.renewals >= 1
        assert keeper.lost is None
        keeper.raise_if_lost()

    def test_records_loss_without_interrupting_work(self, clock):
        manager = LockManager(InMemoryLockStore(), clock=clock)
        finished = []

        async def scenario():
            token = await manager.acquire(RESOURCE, "run-1", 600)
            async with LeaseKeeper(manager, RESOURCE, token, 600, 0.01) as keeper:
                clock.advance(601)
                await manager.acquire(RESOURCE, "run-2", 600)
                await asyncio.sleep(0.05)
                finished.append(True)
            return keeper

        keeper = run_async(scenario())

        assert finished == [True]
        assert isinstance(keeper.lost, LockFencedError)
        with pytest.raises(LockFencedError):
            keeper.raise_if_lost()


class TestPostgresLockStore:
    @pytest.fixture
    def conn(self):
        return AsyncMock()

    @pytest.fixture
    def store(self, conn):
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        pool.acquire.return_value.__aexit__.return_value = False
        return PostgresLockStore(pool)

    def _lock(self, revision=1):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return Lock(
            resource_id=RESOURCE,
            holder="run-1",
            acquired_at=now,
            expires_at=now,
            fencing_token=1,
            revision=revision,
        )

    def test_get_missing_returns_none(self, store, conn):
        conn.fetchrow.return_value = None

        assert run_async(store.get(RESOURCE)) is None

    def test_get_maps_row(self, store, conn):
        lock = self._lock()
        conn.fetchrow.return_value = lock.model_dump()

        assert run_async(store.get(RESOURCE)) == lock

    def test_insert_when_no_record_expected(self, store, conn):
        conn.execute.return_value = "INSERT 0 1"

        assert run_async(store.compare_and_set(RESOURCE, None, self._lock()))
        assert "INSERT INTO pipeline_locks" in conn.execute.call_args[0][0]

    def test_update_conflict_returns_false(self, store, conn):
        conn.execute.return_value = "UPDATE 0"

        assert not run_async(
            store.compare_and_set(RESOURCE, 1, self._lock(revision=2))
        )
        assert conn.execute.call_args[0][-1] == 1

    def test_driver_errors_become_database_errors(self, store, conn):
        conn.fetchrow.side_effect = OSError("connection refused")

        with pytest.raises(DatabaseError):
            run_async(store.get(RESOURCE))


# =============================================================================
# Property tests
# =============================================================================


@settings(max_examples=50, deadline=None)
@given(
    operations=st.lists(
        st.tuples(
            st.sampled_from(["acquire", "release", "expire"]),
            st.sampled_from(["run-a", "run-b", "run-c"]),
        ),
        max_size=20,
    )
)
def test_fencing_tokens_strictly_increase_across_holders(operations):
    """Every change of holder is accompanied by a strictly larger token."""
    clock = FakeClock()
    manager = LockManager(InMemoryLockStore(), clock=clock)

    async def scenario():
        issued = []
        held = {}
        for op, run_id in operations:
            if op == "acquire":
                try:
                    token = await manager.acquire(RESOURCE, run_id, 60)
                except AlreadyLockedError:
                    continue
                if run_id not in held or held[run_id] != token:
                    issued.append(token)
                held = {run_id: token}
            elif op == "release" and run_id in held:
                try:
                    await manager.release(RESOURCE, held.pop(run_id))
                except LockFencedError:
                    pass
            elif op == "expire":
                clock.advance(61)
        return issued

    issued = run_async(scenario())

    assert issued == sorted(set(issued))
