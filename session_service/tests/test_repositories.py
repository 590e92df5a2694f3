"""
Tests for the Redis repositories on an in-memory Redis.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisClientConnectionError

from core.exceptions import InsufficientBalance, RedisConnectionError
from core.value_objects import LedgerOperation
from domain.machine import Machine, MachineStatus
from domain.session import BalancePayment, Session, SessionState
from infrastructure.redis_repository import (
    BalanceLedgerRepository,
    MachineRepository,
    PendingPayment,
    PendingPaymentRepository,
    RedisStateRepository,
    SessionRepository,
    SubscriptionRepository,
    TimerRepository,
)


NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


class TestRedisStateRepository:
    """Tests for the base repository."""

    @pytest.mark.asyncio
    async def test_connection_error_is_translated(self):
        """Test that client connection errors surface as RedisConnectionError."""
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisClientConnectionError("refused"))
        with pytest.raises(RedisConnectionError):
            await RedisStateRepository(redis).get("balance:u1")

    @pytest.mark.asyncio
    async def test_get_int_default(self, redis):
        assert await RedisStateRepository(redis).get_int("missing", default=7) == 7


class TestMachineRepository:
    """Tests for the machine registry and owner token."""

    @pytest.fixture
    async def machines(self, redis):
        repo = MachineRepository(redis)
        await repo.save(Machine(id="M1", price_per_minute=100, status=MachineStatus.ONLINE))
        return repo

    @pytest.mark.asyncio
    async def test_save_and_get(self, machines):
        machine = await machines.get("M1")
        assert machine.price_per_minute == 100
        assert machine.owner_session_id is None
        assert await machines.list_ids() == {"M1"}

    @pytest.mark.asyncio
    async def test_get_unknown(self, machines):
        assert await machines.get("M404") is None

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, machines):
        """Test that only one session can hold the owner token."""
        assert await machines.claim("M1", "s1")
        assert not await machines.claim("M1", "s2")
        assert (await machines.get("M1")).owner_session_id == "s1"

    @pytest.mark.asyncio
    async def test_concurrent_claims(self, machines):
        """Test that racing claims produce a single owner."""
        results = await asyncio.gather(*(machines.claim("M1", f"s{i}") for i in range(10)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_release_requires_owner(self, machines):
        """Test that a stale session cannot release someone else's claim."""
        await machines.claim("M1", "s1")
        assert not await machines.release("M1", "s2")
        assert await machines.get_owner("M1") == "s1"
        assert await machines.release("M1", "s1")
        assert await machines.get_owner("M1") is None
        assert not await machines.release("M1", "s1")

    @pytest.mark.asyncio
    async def test_heartbeat_brings_machine_online(self, machines):
        await machines.set_status("M1", MachineStatus.OFFLINE)
        assert await machines.record_heartbeat("M1", NOW)
        machine = await machines.get("M1")
        assert machine.status is MachineStatus.ONLINE
        assert machine.last_heartbeat == NOW

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_maintenance(self, machines):
        await machines.set_status("M1", MachineStatus.MAINTENANCE)
        await machines.record_heartbeat("M1", NOW)
        assert (await machines.get("M1")).status is MachineStatus.MAINTENANCE

    @pytest.mark.asyncio
    async def test_heartbeat_unknown_machine(self, machines):
        assert not await machines.record_heartbeat("M404", NOW)

    @pytest.mark.asyncio
    async def test_operating_minutes(self, machines):
        await machines.add_operating_minutes("M1", 10)
        assert await machines.add_operating_minutes("M1", 5) == 15


class TestBalanceLedgerRepository:
    """Tests for idempotent balance operations."""

    @pytest.fixture
    async def ledger(self, redis):
        repo = BalanceLedgerRepository(redis)
        await repo.add_credit("u1", 1500)
        return repo

    @pytest.mark.asyncio
    async def test_debit_once_per_session(self, ledger):
        """Test that a repeated debit for the same session is a no-op."""
        assert await ledger.debit("u1", 1000, "s1", NOW)
        assert not await ledger.debit("u1", 1000, "s1", NOW)
        assert await ledger.get_balance("u1") == 500

    @pytest.mark.asyncio
    async def test_debit_insufficient(self, ledger):
        with pytest.raises(InsufficientBalance) as exc_info:
            await ledger.debit("u1", 2000, "s1", NOW)
        assert exc_info.value.details == {"required": 2000, "available": 1500}
        assert await ledger.get_balance("u1") == 1500

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, ledger):
        """Test that racing sessions cannot push the balance below zero."""
        results = await asyncio.gather(
            ledger.debit("u1", 1000, "s1", NOW),
            ledger.debit("u1", 1000, "s2", NOW),
            return_exceptions=True,
        )
        assert results.count(True) == 1
        assert sum(isinstance(r, InsufficientBalance) for r in results) == 1
        assert await ledger.get_balance("u1") == 500

    @pytest.mark.asyncio
    async def test_refund_once(self, ledger):
        await ledger.debit("u1", 1000, "s1", NOW)
        assert await ledger.refund("u1", "s1", NOW) == 1000
        assert await ledger.refund("u1", "s1", NOW) == 0
        assert await ledger.get_balance("u1") == 1500

    @pytest.mark.asyncio
    async def test_refund_without_debit(self, ledger):
        assert await ledger.refund("u1", "s9", NOW) == 0
        assert await ledger.get_balance("u1") == 1500

    @pytest.mark.asyncio
    async def test_credit_session_once(self, ledger):
        assert await ledger.credit_session("u1", 700, "s1", NOW) == 700
        assert await ledger.credit_session("u1", 700, "s1", NOW) == 0
        assert await ledger.credit_session("u1", 0, "s2", NOW) == 0
        assert await ledger.get_balance("u1") == 2200

    @pytest.mark.asyncio
    async def test_history(self, ledger):
        await ledger.debit("u1", 1000, "s1", NOW)
        await ledger.refund("u1", "s1", NOW)
        kinds = [record.kind for record in await ledger.history("u1")]
        assert kinds == [LedgerOperation.DEBIT, LedgerOperation.REFUND]
        assert (await ledger.get_operation("s1", LedgerOperation.DEBIT)).amount == 1000

    @pytest.mark.asyncio
    async def test_invalid_top_up(self, ledger):
        with pytest.raises(ValueError):
            await ledger.add_credit("u1", 0)


class TestSessionRepository:
    """Tests for session storage."""

    @pytest.mark.asyncio
    async def test_open_set_follows_state(self, redis):
        repo = SessionRepository(redis)
        session = Session("s1", "M1", "u1", 10, 1000, BalancePayment(1000), NOW)
        await repo.create(session)
        assert await repo.open_ids() == {"s1"}
        assert await repo.user_session_ids("u1") == ["s1"]
        assert await repo.machine_session_ids("M1") == ["s1"]

        session.state = SessionState.COMPLETED
        await repo.save(session)
        assert await repo.open_ids() == set()
        assert (await repo.get("s1")).state is SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_get_unknown(self, redis):
        assert await SessionRepository(redis).get("nope") is None


class TestPendingPaymentRepository:
    """Tests for pending payment storage."""

    @pytest.mark.asyncio
    async def test_save_and_discard(self, redis):
        repo = PendingPaymentRepository(redis)
        payment = PendingPayment("ref-1", "s1", 700, NOW, NOW + timedelta(minutes=15), "ext-1")
        await repo.save(payment)
        assert await repo.get("ref-1") == payment
        assert await repo.references() == {"ref-1"}

        assert await repo.discard("ref-1")
        assert not await repo.discard("ref-1")
        assert await repo.get("ref-1") is None


class TestSubscriptionRepository:
    """Tests for subscription storage."""

    @pytest.mark.asyncio
    async def test_daily_use(self, redis):
        repo = SubscriptionRepository(redis)
        await repo.activate("u1", NOW + timedelta(days=30))
        day = date(2025, 3, 10)

        assert await repo.mark_used("u1", day)
        assert not await repo.mark_used("u1", day)
        assert await repo.mark_used("u1", day + timedelta(days=1))

        subscription = await repo.get("u1")
        assert subscription.last_use_date == day + timedelta(days=1)
        assert subscription.is_active(NOW)

    @pytest.mark.asyncio
    async def test_missing(self, redis):
        assert await SubscriptionRepository(redis).get("u1") is None


class TestTimerRepository:
    """Tests for timer storage."""

    @pytest.mark.asyncio
    async def test_due_and_remove(self, redis):
        repo = TimerRepository(redis)
        await repo.schedule("expiry:s1", NOW)
        await repo.schedule("ack:s2", NOW + timedelta(seconds=10))

        assert await repo.due(NOW) == ["expiry:s1"]
        assert await repo.due_at("ack:s2") == NOW + timedelta(seconds=10)
        assert await repo.remove("expiry:s1")
        assert not await repo.remove("expiry:s1")
