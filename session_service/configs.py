"""
Configuration module for the session service.

This module provides centralized constants for external services and
process-level paths. Each value can be overridden through the environment
so the same build runs on a kiosk, a staging box or a test runner.
"""

import os
from typing import Final, Optional


# =============================================================================
# Redis Configuration
# =============================================================================

REDIS_HOST: Final[str] = os.environ.get("REDIS_HOST", "localhost")
REDIS_PORT: Final[int] = int(os.environ.get("REDIS_PORT", "6379"))


# =============================================================================
# External Services Configuration
# =============================================================================

# Loki is optional; remote logging is disabled when the URL is empty.
LOKI_URL: Final[Optional[str]] = os.environ.get("LOKI_URL") or None
WS_URL: Final[str] = os.environ.get("WS_URL", "ws://localhost:8005/ws")

PAYMENT_GATEWAY_URL: Final[str] = os.environ.get(
    "PAYMENT_GATEWAY_URL", "https://api.mercadopago.com/v1"
)
PAYMENT_GATEWAY_TOKEN: Final[str] = os.environ.get("PAYMENT_GATEWAY_TOKEN", "")


# =============================================================================
# Logging
# =============================================================================

LOG_FILE: Final[str] = os.environ.get("SESSION_LOG_FILE", "logs/session_service.log")
LOG_LEVEL: Final[str] = os.environ.get("SESSION_LOG_LEVEL", "DEBUG").upper()


# =============================================================================
# Session Defaults
# =============================================================================

MIN_DURATION_MINUTES: Final[int] = 1
MAX_DURATION_MINUTES: Final[int] = 30
PAYMENT_TIMEOUT_SECONDS: Final[int] = 15 * 60
DEVICE_ACK_GRACE_SECONDS: Final[int] = 10
ENDING_WARNING_SECONDS: Final[int] = 60
# 3x the 30 second heartbeat interval of the machine controllers
OFFLINE_THRESHOLD_SECONDS: Final[int] = 90
OFFLINE_REFUND_THRESHOLD: Final[float] = 0.5
