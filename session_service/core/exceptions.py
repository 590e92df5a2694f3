"""
Custom exceptions for the session service.

Provides a hierarchy of typed exceptions for better error handling
and more informative error messages. The ``code`` of each error is the
reason code surfaced to clients.
"""

from typing import Any, Optional


class SessionServiceError(Exception):
    """Base exception for all session service errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Optional error code for programmatic handling.
            details: Optional additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Session Errors
# =============================================================================


class SessionNotFound(SessionServiceError):
    """No session with the given id."""

    def __init__(self, session_id: str, **kwargs: Any) -> None:
        super().__init__(f"Session not found: {session_id}", **kwargs)
        self.details["session_id"] = session_id


class InvalidTransition(SessionServiceError):
    """Attempted transition from a terminal or wrong state."""

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        target_state: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        if current_state:
            self.details["current_state"] = current_state
        if target_state:
            self.details["target_state"] = target_state


class InvalidDuration(SessionServiceError):
    """Requested duration outside the allowed bounds."""

    pass


class NotSessionOwner(SessionServiceError):
    """Caller is not the user who owns the session."""

    pass


# =============================================================================
# Machine / Device Errors
# =============================================================================


class MachineError(SessionServiceError):
    """Base exception for machine-related errors."""

    def __init__(
        self,
        message: str,
        machine_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.machine_id = machine_id
        if machine_id:
            self.details["machine_id"] = machine_id


class MachineUnavailable(MachineError):
    """Machine missing, offline, out of hours, in maintenance or in use."""

    pass


class DeviceUnresponsive(MachineError):
    """Device did not accept a command or never acknowledged activation."""

    pass


class DeviceLostConnection(MachineError):
    """Device stopped sending heartbeats while a session was running."""

    pass


# =============================================================================
# Payment Errors
# =============================================================================


class PaymentError(SessionServiceError):
    """Base exception for payment-related errors."""

    pass


class InsufficientBalance(PaymentError):
    """User balance does not cover the requested amount."""

    def __init__(
        self,
        message: str,
        required: int = 0,
        available: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.details["required"] = required
        self.details["available"] = available


class PaymentFailed(PaymentError):
    """Gateway rejected or cancelled the payment."""

    pass


class PaymentExpired(PaymentError):
    """Payment was not confirmed within the payment window."""

    pass


class SubscriptionUnavailable(PaymentError):
    """No active subscription, or today's subscription use is spent."""

    pass


class MalformedWebhook(PaymentError):
    """Inbound payment notification could not be validated."""

    pass


class PaymentGatewayError(PaymentError):
    """Payment gateway request failed or timed out."""

    pass


# =============================================================================
# Repository Errors
# =============================================================================


class RepositoryError(SessionServiceError):
    """Base exception for repository errors."""

    pass


class RedisConnectionError(RepositoryError):
    """Error connecting to Redis."""

    pass
