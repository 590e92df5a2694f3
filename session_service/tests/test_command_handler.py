"""
Tests for command routing, the admin commands and the Redis command listener.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from application.command_handler import CommandHandler, CommandResponse
from core.exceptions import RedisConnectionError
from main import listen_to_redis


@pytest.fixture
def handler(facade):
    return CommandHandler(facade)


def command(name: str, **data) -> dict:
    return {"command": name, "command_id": "cmd-1", "data": data}


class TestCommandResponse:
    """Tests for CommandResponse."""

    def test_defaults(self):
        assert CommandResponse().to_dict() == {
            "command_id": None,
            "success": False,
            "message": None,
            "data": None,
        }


class TestRouting:
    """Tests for CommandHandler.execute."""

    @pytest.mark.asyncio
    async def test_unknown_command(self, handler):
        response = await handler.execute(command("reboot_machine"))
        assert response["command_id"] == "cmd-1"
        assert not response["success"]
        assert "Unknown command" in response["message"]

    @pytest.mark.asyncio
    async def test_missing_arguments(self, handler):
        response = await handler.execute(command("create_session", machine_id="M1"))
        assert not response["success"]
        assert "user_id" in response["message"]

    def test_available_commands(self, handler):
        names = {cmd["name"] for cmd in handler.get_available_commands()}
        assert {"create_session", "stop_session", "payment_webhook", "add_credit"} <= names

    @pytest.mark.asyncio
    async def test_create_balance_session(self, facade, handler, machine):
        await facade.ledger.add_credit("u1", 5000)

        response = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="balance",
        ))

        assert response["success"]
        assert response["data"]["state"] == "active"
        assert response["data"]["cost"] == 1000

    @pytest.mark.asyncio
    async def test_create_async_session_returns_qr(self, handler, machine):
        response = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=5,
            payment_method="async",
        ))

        data = response["data"]
        assert data["state"] == "awaiting_payment"
        assert data["qr_code"] == f"00020126pix-{data['payment_reference']}"

    @pytest.mark.asyncio
    async def test_service_error_is_reported(self, handler, machine):
        response = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="balance",
        ))

        assert not response["success"]
        assert response["data"]["error"] == "InsufficientBalance"
        assert response["data"]["details"] == {"required": 1000, "available": 0}

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, handler, machine):
        response = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="cash",
        ))
        assert not response["success"]
        assert response["message"].startswith("Error: Unknown payment method")

    @pytest.mark.asyncio
    async def test_stop_requires_owner(self, facade, handler, machine):
        await facade.ledger.add_credit("u1", 5000)
        created = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="balance",
        ))
        session_id = created["data"]["session_id"]

        denied = await handler.execute(command("stop_session", session_id=session_id, user_id="u2"))
        assert denied["data"]["error"] == "NotSessionOwner"

        stopped = await handler.execute(command("stop_session", session_id=session_id, user_id="u1"))
        assert stopped["data"]["state"] == "terminated"

    @pytest.mark.asyncio
    async def test_cancel_with_optional_user(self, handler, machine):
        created = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="async",
        ))
        session_id = created["data"]["session_id"]

        response = await handler.execute(command("cancel_session", session_id=session_id))

        assert response["success"]
        assert response["data"]["reason"] == "Cancelled"

    @pytest.mark.asyncio
    async def test_get_session_and_history(self, facade, handler, machine):
        await facade.ledger.add_credit("u1", 5000)
        created = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="balance",
        ))
        session_id = created["data"]["session_id"]

        status = await handler.execute(command("get_session", session_id=session_id))
        assert status["data"]["remaining_seconds"] == 600

        history = await handler.execute(command("get_user_sessions", user_id="u1"))
        assert [s["id"] for s in history["data"]] == [session_id]

    @pytest.mark.asyncio
    async def test_machine_queries(self, facade, handler, machine):
        await facade.ledger.add_credit("u1", 5000)
        created = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="balance",
        ))
        session_id = created["data"]["session_id"]

        current = await handler.execute(command("get_active_session", machine_id="M1"))
        assert current["data"]["id"] == session_id

        running = await handler.execute(command("get_active_sessions"))
        assert [s["id"] for s in running["data"]] == [session_id]

        history = await handler.execute(command("get_machine_sessions", machine_id="M1"))
        assert [s["id"] for s in history["data"]] == [session_id]

        idle = await handler.execute(command("get_active_session", machine_id="M2"))
        assert not idle["success"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, handler):
        response = await handler.execute(command("get_session", session_id="missing"))
        assert response["data"]["error"] == "SessionNotFound"

    @pytest.mark.asyncio
    async def test_payment_webhook(self, facade, handler, machine, channel):
        created = await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="async",
        ))

        response = await handler.execute(command(
            "payment_webhook",
            reference=created["data"]["payment_reference"],
            status="confirmed",
            amount=1000,
        ))
        await facade.engine.drain()

        assert response["success"]
        assert response["data"]["state"] == "active"
        assert len(channel.commands("activate")) == 1


class TestAdminCommands:
    """Tests for machine, credit and subscription administration."""

    @pytest.mark.asyncio
    async def test_register_machine(self, facade, handler):
        response = await handler.execute(command(
            "register_machine",
            machine_id="M7",
            price_per_minute=150,
            location="Loja Norte",
            operating_start="08:00",
            operating_end="20:00",
        ))

        assert response["success"]
        assert response["data"]["status"] == "online"
        machine = await facade.machines.get("M7")
        assert machine.price_per_minute == 150
        assert machine.operating_end == "20:00"

    @pytest.mark.asyncio
    async def test_set_machine_status(self, facade, handler, machine):
        response = await handler.execute(command(
            "set_machine_status", machine_id="M1", status="maintenance",
        ))
        assert response["success"]
        assert (await facade.machines.get("M1")).status.value == "maintenance"

    @pytest.mark.asyncio
    async def test_add_credit(self, handler):
        response = await handler.execute(command("add_credit", user_id="u1", amount=2500))
        assert response["success"]
        assert response["data"] == {"user_id": "u1", "balance": 2500}

    @pytest.mark.asyncio
    async def test_activate_subscription(self, facade, handler, clock):
        response = await handler.execute(command("activate_subscription", user_id="u1", days=30))
        assert response["success"]
        subscription = await facade.subscriptions.get("u1")
        assert subscription.is_active(clock.now())

    @pytest.mark.asyncio
    async def test_redis_outage(self, facade, handler):
        facade.ledger.add_credit = AsyncMock(side_effect=RedisConnectionError("Connection refused"))

        response = await handler.execute(command("add_credit", user_id="u1", amount=2500))

        assert not response["success"]
        assert "Redis connection error" in response["message"]

    @pytest.mark.asyncio
    async def test_emergency_stop(self, facade, handler, machine, channel):
        await facade.ledger.add_credit("u1", 5000)
        await handler.execute(command(
            "create_session",
            machine_id="M1",
            user_id="u1",
            duration_minutes=10,
            payment_method="balance",
        ))
        await facade.engine.drain()

        response = await handler.execute(command("emergency_stop", machine_id="M1"))

        assert response["success"]
        assert response["data"]["session"]["reason"] == "EmergencyStop"
        assert response["data"]["session"]["refunded_amount"] == 1000
        assert len(channel.commands("deactivate")) == 1

    @pytest.mark.asyncio
    async def test_emergency_stop_unknown_machine(self, handler):
        response = await handler.execute(command("emergency_stop", machine_id="M404"))
        assert not response["success"]
        assert response["data"]["error"] == "MachineUnavailable"

    @pytest.mark.asyncio
    async def test_request_machine_status(self, handler, machine, channel):
        response = await handler.execute(command("request_machine_status", machine_id="M1"))

        assert response["success"]
        assert response["data"] == {"machine_id": "M1", "delivered": True}
        assert channel.messages[-1][0] == "machines/M1/commands"
        assert channel.commands("status")[0]["type"] == "status"


class TestListener:
    """Tests for the Redis command listener."""

    @pytest.mark.asyncio
    async def test_executes_and_publishes(self):
        messages = [
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": "ping"},
            {"type": "message", "data": "not json"},
            {"type": "message", "data": json.dumps(["get_session"])},
            {"type": "message", "data": json.dumps(command("get_session", session_id="s1"))},
        ]

        async def listen():
            for message in messages:
                yield message

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.listen = listen
        redis = MagicMock()
        redis.pubsub.return_value = pubsub
        redis.publish = AsyncMock()
        handler = MagicMock()
        handler.execute = AsyncMock(return_value={"command_id": "cmd-1", "success": True})

        await listen_to_redis(redis, handler)

        handler.execute.assert_awaited_once()
        channel, payload = redis.publish.await_args.args
        assert channel == "session_engine_commands_response"
        assert json.loads(payload)["command_id"] == "cmd-1"
