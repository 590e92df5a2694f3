"""
Unit tests for core value objects, exceptions and settings.
"""

from datetime import datetime, timezone

import pytest

from core.exceptions import (
    DeviceUnresponsive,
    InsufficientBalance,
    InvalidTransition,
    MachineError,
    MachineUnavailable,
    PaymentError,
    SessionNotFound,
    SessionServiceError,
)
from core.value_objects import (
    BalanceDebit,
    GatewayPaymentStatus,
    LedgerOperation,
    Money,
    SessionUpdate,
)
from infrastructure.settings import DeviceSettings, Settings, get_settings


# =============================================================================
# Value Objects Tests
# =============================================================================


class TestMoney:
    """Tests for Money value object."""

    def test_money_reais(self):
        """Test the decimal amount handed to the gateway."""
        assert Money(1235).reais == 12.35
        assert Money(0).reais == 0

    def test_money_negative_raises(self):
        """Test that negative cents raise an error."""
        with pytest.raises(ValueError):
            Money(-1)


class TestGatewayPaymentStatus:
    """Tests for provider status mapping."""

    @pytest.mark.parametrize("provider_status, expected", [
        ("approved", GatewayPaymentStatus.APPROVED),
        ("rejected", GatewayPaymentStatus.REJECTED),
        ("cancelled", GatewayPaymentStatus.REJECTED),
        ("in_process", GatewayPaymentStatus.PENDING),
        (None, GatewayPaymentStatus.PENDING),
    ])
    def test_from_provider(self, provider_status, expected):
        """Test that only approved confirms and rejected/cancelled fail."""
        assert GatewayPaymentStatus.from_provider(provider_status) is expected


class TestBalanceDebit:
    """Tests for BalanceDebit serialization."""

    def test_from_dict_restores_record(self):
        """Test that a stored record reads back with its kind and timestamp."""
        created = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)
        record = BalanceDebit("u1", 1000, "s1", LedgerOperation.REFUND, created)
        restored = BalanceDebit.from_dict(record.to_dict())
        assert restored == record


class TestSessionUpdate:
    """Tests for the real-time payload."""

    def test_channels(self):
        """Test that an update goes to the session, user and machine channels."""
        update = SessionUpdate("s1", "M1", "u1", "active", 600, 0.0)
        assert update.channels == ("session:s1", "user:u1", "machine:M1")

    def test_to_dict_omits_empty_reason(self):
        """Test that reason is only present on failures."""
        update = SessionUpdate("s1", "M1", "u1", "active", 600, 0.0)
        assert "reason" not in update.to_dict()

        failed = SessionUpdate("s1", "M1", "u1", "failed", 0, 10.0, reason="PaymentExpired")
        assert failed.to_dict()["reason"] == "PaymentExpired"

    def test_to_dict_event(self):
        """Test that a notice is only present when set."""
        update = SessionUpdate("s1", "M1", "u1", "active", 60, 90.0)
        assert "event" not in update.to_dict()

        ending = SessionUpdate("s1", "M1", "u1", "active", 60, 90.0, event="session_ending")
        assert ending.to_dict()["event"] == "session_ending"


# =============================================================================
# Exception Tests
# =============================================================================


class TestExceptions:
    """Tests for custom exceptions."""

    def test_base_error_code_defaults_to_class_name(self):
        """Test that the error code is the taxonomy name."""
        error = MachineUnavailable("Machine is offline", machine_id="M1")
        assert error.code == "MachineUnavailable"
        assert error.to_dict() == {
            "error": "MachineUnavailable",
            "message": "Machine is offline",
            "details": {"machine_id": "M1"},
        }

    def test_hierarchy(self):
        """Test that errors group under their families."""
        assert isinstance(DeviceUnresponsive("x"), MachineError)
        assert isinstance(InsufficientBalance("x"), PaymentError)
        assert isinstance(SessionNotFound("s1"), SessionServiceError)

    def test_insufficient_balance_details(self):
        """Test that required and available amounts are reported."""
        error = InsufficientBalance("Not enough", required=1000, available=300)
        assert error.details == {"required": 1000, "available": 300}

    def test_invalid_transition_details(self):
        """Test that states are reported."""
        error = InvalidTransition("no", current_state="completed", target_state="active")
        assert error.details == {"current_state": "completed", "target_state": "active"}


# =============================================================================
# Settings Tests
# =============================================================================


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_defaults(self):
        """Test default settings values."""
        settings = Settings()
        assert settings.session.min_duration_minutes == 1
        assert settings.session.max_duration_minutes == 30
        assert settings.session.payment_timeout_seconds == 900
        assert settings.session.device_ack_grace_seconds == 10
        assert settings.device.offline_threshold_seconds == 90

    def test_settings_command_channel(self):
        """Test command channel setting."""
        settings = get_settings()
        assert settings.commands.command_channel == "session_engine_commands"
        assert settings.commands.response_channel == "session_engine_commands_response"

    def test_device_topics(self):
        """Test machine topic names."""
        device = DeviceSettings()
        assert device.command_topic("M1") == "machines/M1/commands"
        assert device.events_pattern == "machines/*/events"
