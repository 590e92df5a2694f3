"""
Pytest configuration for session service tests.

Adds the session_service directory to sys.path so tests import modules
the same way the service does, and provides an in-memory Redis, a
controllable clock and recording fakes for the device channel and the
payment gateway.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from unittest.mock import AsyncMock

import fakeredis
import pytest


# Add the session_service directory to sys.path for proper imports
session_service_path = Path(__file__).parent.parent
if str(session_service_path) not in sys.path:
    sys.path.insert(0, str(session_service_path))

from core.exceptions import PaymentGatewayError  # noqa: E402
from core.value_objects import GatewayPaymentStatus, PaymentRequest  # noqa: E402
from domain.machine import Machine, MachineStatus  # noqa: E402
from infrastructure.settings import (  # noqa: E402
    DeviceSettings,
    ServiceSettings,
    SessionSettings,
    Settings,
)


START = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingChannel:
    """Device channel that records published messages and can be made to fail."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []
        self.failures = 0
        self.always_fail = False

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self.always_fail:
            raise ConnectionError("broker unreachable")
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker unreachable")
        self.messages.append((topic, payload))

    def commands(self, command_type: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            payload for _, payload in self.messages
            if command_type is None or payload["type"] == command_type
        ]


class StubGateway:
    """Payment gateway returning canned payment requests and statuses."""

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.statuses: dict[str, GatewayPaymentStatus] = {}
        self.fail_create = False
        self.fail_status = False

    async def create_payment(self, amount: int, reference: str, description: str) -> PaymentRequest:
        if self.fail_create:
            raise PaymentGatewayError("gateway unreachable")
        external_id = f"ext-{len(self.created) + 1}"
        self.created.append({"amount": amount, "reference": reference, "external_id": external_id})
        return PaymentRequest(
            reference=reference,
            external_id=external_id,
            amount=amount,
            qr_code=f"00020126pix-{reference}",
        )

    async def get_status(self, external_id: str) -> GatewayPaymentStatus:
        if self.fail_status:
            raise PaymentGatewayError("gateway timeout")
        return self.statuses.get(external_id, GatewayPaymentStatus.PENDING)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def redis():
    """Fresh in-memory Redis per test."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def settings():
    return Settings(
        services=ServiceSettings(loki_url=None, forward_to_websocket=False),
        session=SessionSettings(timezone="UTC"),
        device=DeviceSettings(),
    )


@pytest.fixture
def facade(redis, settings, gateway, channel, clock):
    """Fully wired service on the in-memory Redis."""
    from application.api_facade import SessionServiceFacade

    return SessionServiceFacade(
        redis,
        settings,
        gateway=gateway,
        device_channel=channel,
        clock=clock,
        device_sleep=AsyncMock(),
    )


@pytest.fixture
def engine(facade):
    return facade.engine


@pytest.fixture
async def machine(facade, clock):
    """Online machine M1 at 100 cents per minute, open around the clock."""
    machine = Machine(
        id="M1",
        price_per_minute=100,
        code="ASP001",
        location="Posto Central",
        status=MachineStatus.ONLINE,
        last_heartbeat=clock.now(),
    )
    await facade.machines.save(machine)
    return machine
