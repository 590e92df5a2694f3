"""
Application settings.

Provides typed, immutable configuration sections with defaults taken from
``configs`` (and therefore from the environment).
"""

from dataclasses import dataclass, field
from typing import Final, Optional

from configs import (
    DEVICE_ACK_GRACE_SECONDS,
    ENDING_WARNING_SECONDS,
    LOKI_URL,
    MAX_DURATION_MINUTES,
    MIN_DURATION_MINUTES,
    OFFLINE_REFUND_THRESHOLD,
    OFFLINE_THRESHOLD_SECONDS,
    PAYMENT_GATEWAY_TOKEN,
    PAYMENT_GATEWAY_URL,
    PAYMENT_TIMEOUT_SECONDS,
    REDIS_HOST,
    REDIS_PORT,
    WS_URL,
)


# =============================================================================
# Configuration Classes
# =============================================================================


@dataclass(frozen=True)
class RedisSettings:
    """Redis connection settings."""

    host: str = REDIS_HOST
    port: int = REDIS_PORT
    db: int = 0
    decode_responses: bool = True


@dataclass(frozen=True)
class ServiceSettings:
    """External service URLs."""

    loki_url: Optional[str] = LOKI_URL
    websocket_url: str = WS_URL
    forward_to_websocket: bool = True


@dataclass(frozen=True)
class SessionSettings:
    """Session lifecycle limits and timers."""

    min_duration_minutes: int = MIN_DURATION_MINUTES
    max_duration_minutes: int = MAX_DURATION_MINUTES
    payment_timeout_seconds: int = PAYMENT_TIMEOUT_SECONDS
    device_ack_grace_seconds: int = DEVICE_ACK_GRACE_SECONDS
    # Refund on lost connection only while elapsed / duration is below this
    offline_refund_threshold: float = OFFLINE_REFUND_THRESHOLD
    # "Ending soon" broadcast this long before the paid time runs out
    ending_warning_seconds: int = ENDING_WARNING_SECONDS
    scheduler_tick_seconds: float = 1.0
    # Delay before a timer whose handler raised fires again
    timer_retry_seconds: float = 5.0
    timezone: str = "America/Sao_Paulo"


@dataclass(frozen=True)
class DeviceSettings:
    """Device command channel settings."""

    topic_prefix: str = "machines"
    publish_attempts: int = 5
    initial_backoff_seconds: float = 1.0
    backoff_factor: float = 1.5
    max_backoff_seconds: float = 8.0
    offline_threshold_seconds: int = OFFLINE_THRESHOLD_SECONDS
    offline_check_interval_seconds: float = 30.0

    def command_topic(self, machine_id: str) -> str:
        """Get the outbound command topic for a machine."""
        return f"{self.topic_prefix}/{machine_id}/commands"

    @property
    def events_pattern(self) -> str:
        """Get the pattern matching every machine's inbound topic."""
        return f"{self.topic_prefix}/*/events"


@dataclass(frozen=True)
class GatewaySettings:
    """Instant-payment gateway settings."""

    base_url: str = PAYMENT_GATEWAY_URL
    access_token: str = PAYMENT_GATEWAY_TOKEN
    timeout_seconds: float = 10.0
    poll_interval_seconds: float = 15.0


@dataclass(frozen=True)
class CommandSettings:
    """Command channel settings."""

    command_channel: str = "session_engine_commands"

    @property
    def response_channel(self) -> str:
        """Get response channel name."""
        return f"{self.command_channel}_response"


# =============================================================================
# Main Settings
# =============================================================================


@dataclass
class Settings:
    """
    Main application settings.

    Aggregates all configuration sections.
    """

    redis: RedisSettings = field(default_factory=RedisSettings)
    services: ServiceSettings = field(default_factory=ServiceSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    device: DeviceSettings = field(default_factory=DeviceSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    commands: CommandSettings = field(default_factory=CommandSettings)


# =============================================================================
# Settings Singleton
# =============================================================================


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# =============================================================================
# Development Seed Data
# =============================================================================


DEFAULT_MACHINES: Final[list[dict]] = [
    {
        "machine_id": "M1",
        "code": "ASP001",
        "location": "Posto Central",
        "price_per_minute": 100,
        "operating_start": "00:00",
        "operating_end": "23:59",
    },
]
