"""
Redis Repository implementations.

Provides type-safe, domain-specific access to Redis state storage.
Each repository encapsulates Redis keys and operations for its domain.
Check-and-set updates use WATCH/MULTI transactions so that concurrent
writers never both succeed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisClientConnectionError
from redis.exceptions import TimeoutError as RedisClientTimeoutError
from redis.exceptions import WatchError

from core.exceptions import InsufficientBalance, RedisConnectionError
from core.value_objects import BalanceDebit, LedgerOperation
from domain.billing import Subscription
from domain.machine import Machine, MachineStatus
from domain.session import Session
from loggers import logger


F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def translate_redis_errors(func: F) -> F:
    """Re-raise Redis client connectivity errors as RedisConnectionError."""

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except (RedisClientConnectionError, RedisClientTimeoutError) as e:
            raise RedisConnectionError(f"Redis connection error: {e}") from e

    return wrapper  # type: ignore


def _to_ts(value: datetime) -> float:
    return value.timestamp()


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


# =============================================================================
# Base Repository
# =============================================================================


class RedisStateRepository:
    """
    Base repository for Redis state operations.

    Provides common Redis operations with error handling.
    """

    def __init__(self, redis: Redis) -> None:
        """
        Initialize the repository.

        Args:
            redis: Redis client instance (``decode_responses=True``).
        """
        self._redis = redis

    @translate_redis_errors
    async def get(self, key: str) -> Optional[str]:
        """Get a string value by key."""
        return await self._redis.get(key)

    @translate_redis_errors
    async def set(self, key: str, value: Any) -> None:
        """Set a key-value pair."""
        await self._redis.set(key, value)

    async def get_int(self, key: str, default: int = 0) -> int:
        """Get an integer value by key."""
        value = await self.get(key)
        return int(value) if value else default

    @translate_redis_errors
    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        """Get a JSON document by key."""
        raw = await self._redis.get(key)
        return json.loads(raw) if raw else None

    @translate_redis_errors
    async def set_json(self, key: str, value: dict[str, Any]) -> None:
        """Store a JSON document."""
        await self._redis.set(key, json.dumps(value))

    @translate_redis_errors
    async def get_set_members(self, key: str) -> set[str]:
        """Get all members of a set."""
        return await self._redis.smembers(key)


# =============================================================================
# Machine Registry
# =============================================================================


class MachineRepository(RedisStateRepository):
    """
    Repository for machine registry state.

    Keys:
    - machines: Set of registered machine ids
    - machine:{id}: Machine hash
    - machine:{id}:owner: Owner token (id of the session holding the machine)
    """

    KEY_INDEX = "machines"

    @staticmethod
    def _key(machine_id: str) -> str:
        return f"machine:{machine_id}"

    @staticmethod
    def _owner_key(machine_id: str) -> str:
        return f"machine:{machine_id}:owner"

    @translate_redis_errors
    async def save(self, machine: Machine) -> None:
        """Create or replace a machine record."""
        await self._redis.hset(self._key(machine.id), mapping=machine.to_mapping())
        await self._redis.sadd(self.KEY_INDEX, machine.id)

    @translate_redis_errors
    async def get(self, machine_id: str) -> Optional[Machine]:  # type: ignore[override]
        """Get a machine with its current owner token, or None."""
        data = await self._redis.hgetall(self._key(machine_id))
        if not data:
            return None
        owner = await self._redis.get(self._owner_key(machine_id))
        return Machine.from_mapping(data, owner_session_id=owner)

    async def list_ids(self) -> set[str]:
        return await self.get_set_members(self.KEY_INDEX)

    @translate_redis_errors
    async def get_owner(self, machine_id: str) -> Optional[str]:
        return await self._redis.get(self._owner_key(machine_id))

    @translate_redis_errors
    async def claim(self, machine_id: str, session_id: str) -> bool:
        """
        Atomically take the machine for a session.

        Returns:
            True if the token was free and now belongs to ``session_id``.
        """
        claimed = await self._redis.set(self._owner_key(machine_id), session_id, nx=True)
        return bool(claimed)

    @translate_redis_errors
    async def release(self, machine_id: str, session_id: str) -> bool:
        """
        Release the machine only if ``session_id`` still holds it.

        Returns:
            True if the token was held by ``session_id`` and is now cleared.
        """
        key = self._owner_key(machine_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.get(key) != session_id:
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    @translate_redis_errors
    async def set_status(self, machine_id: str, status: MachineStatus) -> None:
        await self._redis.hset(self._key(machine_id), "status", status.value)

    @translate_redis_errors
    async def record_heartbeat(self, machine_id: str, seen_at: datetime) -> bool:
        """
        Store a heartbeat and bring an offline machine back online.

        Machines in maintenance stay in maintenance.

        Returns:
            False if the machine is not registered.
        """
        key = self._key(machine_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    status = await pipe.hget(key, "status")
                    if status is None:
                        return False
                    pipe.multi()
                    pipe.hset(key, "last_heartbeat", _to_ts(seen_at))
                    if status != MachineStatus.MAINTENANCE.value:
                        pipe.hset(key, "status", MachineStatus.ONLINE.value)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    @translate_redis_errors
    async def add_operating_minutes(self, machine_id: str, minutes: int) -> int:
        return await self._redis.hincrby(self._key(machine_id), "operating_minutes", minutes)


# =============================================================================
# Balance Ledger
# =============================================================================


class BalanceLedgerRepository(RedisStateRepository):
    """
    Repository for user balances.

    Session-bound operations are idempotent per (session id, operation kind):
    the first application stores a record under ``ledger:{sid}:{kind}`` in
    the same transaction as the balance change, later calls find it and do
    nothing.

    Keys:
    - balance:{user}: Balance in cents
    - ledger:{session}:{kind}: Applied operation record (JSON)
    - ledger:history:{user}: List of applied operations (JSON)
    """

    @staticmethod
    def _balance_key(user_id: str) -> str:
        return f"balance:{user_id}"

    @staticmethod
    def _op_key(session_id: str, kind: LedgerOperation) -> str:
        return f"ledger:{session_id}:{kind.value}"

    @staticmethod
    def _history_key(user_id: str) -> str:
        return f"ledger:history:{user_id}"

    async def get_balance(self, user_id: str) -> int:
        return await self.get_int(self._balance_key(user_id))

    @translate_redis_errors
    async def add_credit(self, user_id: str, amount: int) -> int:
        """Top up a balance outside any session. Returns the new balance."""
        if amount <= 0:
            raise ValueError(f"Invalid credit amount: {amount}")
        return await self._redis.incrby(self._balance_key(user_id), amount)

    @translate_redis_errors
    async def get_operation(
        self,
        session_id: str,
        kind: LedgerOperation,
    ) -> Optional[BalanceDebit]:
        raw = await self._redis.get(self._op_key(session_id, kind))
        return BalanceDebit.from_dict(json.loads(raw)) if raw else None

    @translate_redis_errors
    async def debit(
        self,
        user_id: str,
        amount: int,
        session_id: str,
        now: datetime,
    ) -> bool:
        """
        Debit a session's balance portion exactly once.

        Returns:
            True if applied now, False if it had already been applied.

        Raises:
            InsufficientBalance: If the balance does not cover ``amount``.
        """
        balance_key = self._balance_key(user_id)
        op_key = self._op_key(session_id, LedgerOperation.DEBIT)
        record = BalanceDebit(user_id, amount, session_id, LedgerOperation.DEBIT, now)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(balance_key, op_key)
                    if await pipe.exists(op_key):
                        return False
                    balance = int(await pipe.get(balance_key) or 0)
                    if balance < amount:
                        raise InsufficientBalance(
                            f"Insufficient balance. Required: {amount}, Available: {balance}",
                            required=amount,
                            available=balance,
                        )
                    pipe.multi()
                    pipe.decrby(balance_key, amount)
                    pipe.set(op_key, json.dumps(record.to_dict()))
                    pipe.rpush(self._history_key(user_id), json.dumps(record.to_dict()))
                    await pipe.execute()
                    logger.info(f"Debited {amount} from {user_id} for session {session_id}")
                    return True
                except WatchError:
                    continue

    @translate_redis_errors
    async def refund(self, user_id: str, session_id: str, now: datetime) -> int:
        """
        Return a session's debit exactly once.

        Returns:
            Amount refunded now; 0 if nothing was debited or already refunded.
        """
        debit_key = self._op_key(session_id, LedgerOperation.DEBIT)
        refund_key = self._op_key(session_id, LedgerOperation.REFUND)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(debit_key, refund_key)
                    raw_debit = await pipe.get(debit_key)
                    if raw_debit is None or await pipe.exists(refund_key):
                        return 0
                    amount = int(json.loads(raw_debit)["amount"])
                    record = BalanceDebit(
                        user_id, amount, session_id, LedgerOperation.REFUND, now
                    )
                    pipe.multi()
                    pipe.incrby(self._balance_key(user_id), amount)
                    pipe.set(refund_key, json.dumps(record.to_dict()))
                    pipe.rpush(self._history_key(user_id), json.dumps(record.to_dict()))
                    await pipe.execute()
                    logger.info(f"Refunded {amount} to {user_id} for session {session_id}")
                    return amount
                except WatchError:
                    continue

    @translate_redis_errors
    async def credit_session(
        self,
        user_id: str,
        amount: int,
        session_id: str,
        now: datetime,
    ) -> int:
        """
        Credit an externally paid amount back to the balance, once per session.

        Returns:
            Amount credited now; 0 if already credited or ``amount`` is 0.
        """
        if amount <= 0:
            return 0
        op_key = self._op_key(session_id, LedgerOperation.CREDIT)
        record = BalanceDebit(user_id, amount, session_id, LedgerOperation.CREDIT, now)

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(op_key)
                    if await pipe.exists(op_key):
                        return 0
                    pipe.multi()
                    pipe.incrby(self._balance_key(user_id), amount)
                    pipe.set(op_key, json.dumps(record.to_dict()))
                    pipe.rpush(self._history_key(user_id), json.dumps(record.to_dict()))
                    await pipe.execute()
                    logger.info(f"Credited {amount} to {user_id} for session {session_id}")
                    return amount
                except WatchError:
                    continue

    @translate_redis_errors
    async def history(self, user_id: str) -> list[BalanceDebit]:
        raw_items = await self._redis.lrange(self._history_key(user_id), 0, -1)
        return [BalanceDebit.from_dict(json.loads(raw)) for raw in raw_items]


# =============================================================================
# Session Repository
# =============================================================================


class SessionRepository(RedisStateRepository):
    """
    Repository for session records.

    Keys:
    - session:{id}: Session document (JSON)
    - sessions:open: Set of non-terminal session ids
    - sessions:user:{user}: List of the user's session ids, oldest first
    - sessions:machine:{machine}: List of the machine's session ids, oldest first
    """

    KEY_OPEN = "sessions:open"

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"sessions:user:{user_id}"

    @staticmethod
    def _machine_key(machine_id: str) -> str:
        return f"sessions:machine:{machine_id}"

    @translate_redis_errors
    async def create(self, session: Session) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(session.id), json.dumps(session.to_dict()))
            pipe.sadd(self.KEY_OPEN, session.id)
            pipe.rpush(self._user_key(session.user_id), session.id)
            pipe.rpush(self._machine_key(session.machine_id), session.id)
            await pipe.execute()

    @translate_redis_errors
    async def save(self, session: Session) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(session.id), json.dumps(session.to_dict()))
            if session.is_terminal:
                pipe.srem(self.KEY_OPEN, session.id)
            else:
                pipe.sadd(self.KEY_OPEN, session.id)
            await pipe.execute()

    async def get(self, session_id: str) -> Optional[Session]:  # type: ignore[override]
        data = await self.get_json(self._key(session_id))
        return Session.from_dict(data) if data else None

    async def open_ids(self) -> set[str]:
        return await self.get_set_members(self.KEY_OPEN)

    @translate_redis_errors
    async def user_session_ids(self, user_id: str) -> list[str]:
        return await self._redis.lrange(self._user_key(user_id), 0, -1)

    @translate_redis_errors
    async def machine_session_ids(self, machine_id: str) -> list[str]:
        return await self._redis.lrange(self._machine_key(machine_id), 0, -1)


# =============================================================================
# Pending Payment Repository
# =============================================================================


@dataclass
class PendingPayment:
    """An async payment awaiting external confirmation."""

    reference: str
    session_id: str
    amount: int
    created_at: datetime
    expires_at: datetime
    external_id: Optional[str] = None
    qr_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "session_id": self.session_id,
            "amount": self.amount,
            "created_at": _to_ts(self.created_at),
            "expires_at": _to_ts(self.expires_at),
            "external_id": self.external_id,
            "qr_code": self.qr_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingPayment":
        return cls(
            reference=data["reference"],
            session_id=data["session_id"],
            amount=int(data["amount"]),
            created_at=_from_ts(data["created_at"]),
            expires_at=_from_ts(data["expires_at"]),
            external_id=data.get("external_id"),
            qr_code=data.get("qr_code"),
        )


class PendingPaymentRepository(RedisStateRepository):
    """
    Repository for pending async payments.

    Keys:
    - payment:pending:{reference}: PendingPayment document (JSON)
    - payments:pending: Set of pending references
    """

    KEY_INDEX = "payments:pending"

    @staticmethod
    def _key(reference: str) -> str:
        return f"payment:pending:{reference}"

    @translate_redis_errors
    async def save(self, payment: PendingPayment) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(payment.reference), json.dumps(payment.to_dict()))
            pipe.sadd(self.KEY_INDEX, payment.reference)
            await pipe.execute()

    async def get(self, reference: str) -> Optional[PendingPayment]:  # type: ignore[override]
        data = await self.get_json(self._key(reference))
        return PendingPayment.from_dict(data) if data else None

    @translate_redis_errors
    async def discard(self, reference: str) -> bool:
        """Drop a pending payment. Returns False if it was already gone."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(reference))
            pipe.srem(self.KEY_INDEX, reference)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def references(self) -> set[str]:
        return await self.get_set_members(self.KEY_INDEX)


# =============================================================================
# Subscription Repository
# =============================================================================


class SubscriptionRepository(RedisStateRepository):
    """
    Repository for flat-rate subscriptions.

    Keys:
    - subscription:{user}: Hash with expires_at and last_use_date
    """

    @staticmethod
    def _key(user_id: str) -> str:
        return f"subscription:{user_id}"

    @translate_redis_errors
    async def get(self, user_id: str) -> Optional[Subscription]:  # type: ignore[override]
        data = await self._redis.hgetall(self._key(user_id))
        if not data:
            return None
        last_use = data.get("last_use_date")
        return Subscription(
            user_id=user_id,
            expires_at=_from_ts(data["expires_at"]) if data.get("expires_at") else None,
            last_use_date=date.fromisoformat(last_use) if last_use else None,
        )

    @translate_redis_errors
    async def activate(self, user_id: str, expires_at: datetime) -> None:
        await self._redis.hset(self._key(user_id), "expires_at", _to_ts(expires_at))

    @translate_redis_errors
    async def mark_used(self, user_id: str, day: date) -> bool:
        """
        Record today's subscription use.

        Returns:
            False if the subscription was already used on ``day``.
        """
        key = self._key(user_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.hget(key, "last_use_date") == day.isoformat():
                        return False
                    pipe.multi()
                    pipe.hset(key, "last_use_date", day.isoformat())
                    await pipe.execute()
                    return True
                except WatchError:
                    continue


# =============================================================================
# Timer Repository
# =============================================================================


class TimerRepository(RedisStateRepository):
    """
    Durable timers in a sorted set.

    Keys:
    - timers: Sorted set, member ``{kind}:{session_id}``, score = due epoch
    """

    KEY_TIMERS = "timers"

    @translate_redis_errors
    async def schedule(self, member: str, due: datetime) -> None:
        await self._redis.zadd(self.KEY_TIMERS, {member: _to_ts(due)})

    @translate_redis_errors
    async def remove(self, member: str) -> bool:
        """
        Remove a timer.

        Returns:
            True only for the caller that actually removed it.
        """
        return bool(await self._redis.zrem(self.KEY_TIMERS, member))

    @translate_redis_errors
    async def due(self, now: datetime) -> list[str]:
        return await self._redis.zrangebyscore(self.KEY_TIMERS, "-inf", _to_ts(now))

    @translate_redis_errors
    async def due_at(self, member: str) -> Optional[datetime]:
        score = await self._redis.zscore(self.KEY_TIMERS, member)
        return _from_ts(score) if score is not None else None
