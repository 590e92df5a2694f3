"""
Command Handler - Routes Redis commands to API methods.

Provides command routing with argument validation and error handling.
Service errors become failed responses carrying their error code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from core.exceptions import SessionServiceError
from loggers import logger


# Type alias for command handlers
CommandHandlerFunc = Callable[..., Awaitable[dict[str, Any]]]


@dataclass
class CommandResponse:
    """
    Standardized response for command execution.

    Attributes:
        command_id: The ID of the executed command.
        success: Whether the command succeeded.
        message: Human-readable message.
        data: Optional response data.
    """

    command_id: Optional[Any] = None
    success: bool = False
    message: Optional[str] = None
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "command_id": self.command_id,
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }


@dataclass
class CommandDefinition:
    """
    Definition of a command.

    Attributes:
        name: Command name.
        handler: Handler function.
        required_args: Arguments that must be present.
        optional_args: Arguments passed through when present.
        description: Human-readable description.
    """

    name: str
    handler: CommandHandlerFunc
    required_args: list[str]
    optional_args: list[str] = field(default_factory=list)
    description: str = ""


class CommandHandler:
    """
    Routes commands to their handlers on the API facade.
    """

    def __init__(self, api: Any) -> None:
        """
        Initialize the command handler.

        Args:
            api: The SessionServiceFacade instance.
        """
        self._api = api
        self._commands: dict[str, CommandDefinition] = {}
        self._register_default_commands()

    def _register_default_commands(self) -> None:
        # Sessions
        self.register(
            "create_session",
            self._api.create_session,
            ["machine_id", "user_id", "duration_minutes", "payment_method"],
            description="Create a session and take payment for it",
        )
        self.register(
            "authorize_session",
            self._api.authorize_session,
            ["session_id"],
            description="Retry payment of a created session",
        )
        self.register(
            "stop_session",
            self._api.stop_session,
            ["session_id", "user_id"],
            description="Stop an active session early",
        )
        self.register(
            "cancel_session",
            self._api.cancel_session,
            ["session_id"],
            optional_args=["user_id"],
            description="Abandon a session that has not started",
        )
        self.register(
            "get_session",
            self._api.get_session,
            ["session_id"],
            description="Get session status and progress",
        )
        self.register(
            "get_user_sessions",
            self._api.get_user_sessions,
            ["user_id"],
            description="Get a user's session history",
        )
        self.register(
            "get_machine_sessions",
            self._api.get_machine_sessions,
            ["machine_id"],
            description="Get a machine's session history",
        )
        self.register(
            "get_active_session",
            self._api.get_active_session,
            ["machine_id"],
            description="Get the session currently holding a machine",
        )
        self.register(
            "get_active_sessions",
            self._api.get_active_sessions,
            [],
            description="List sessions running right now",
        )

        # Payments
        self.register(
            "payment_webhook",
            self._api.payment_webhook,
            ["reference", "status", "amount"],
            description="Apply a payment gateway notification",
        )
        self.register(
            "poll_payment",
            self._api.poll_payment,
            ["reference"],
            description="Query the gateway for a pending payment",
        )

        # Administration
        self.register(
            "register_machine",
            self._api.register_machine,
            ["machine_id", "price_per_minute"],
            optional_args=[
                "code",
                "location",
                "operating_start",
                "operating_end",
                "maintenance_interval_minutes",
            ],
            description="Register or replace a machine",
        )
        self.register(
            "set_machine_status",
            self._api.set_machine_status,
            ["machine_id", "status"],
            description="Put a machine online, offline or in maintenance",
        )
        self.register(
            "add_credit",
            self._api.add_credit,
            ["user_id", "amount"],
            description="Top up a user's balance",
        )
        self.register(
            "activate_subscription",
            self._api.activate_subscription,
            ["user_id", "days"],
            description="Activate a flat-rate subscription for a number of days",
        )
        self.register(
            "emergency_stop",
            self._api.emergency_stop,
            ["machine_id"],
            description="Deactivate a machine and fail its session with a refund",
        )
        self.register(
            "request_machine_status",
            self._api.request_machine_status,
            ["machine_id"],
            description="Ask a machine controller to report its state",
        )


    def register(
        self,
        command_name: str,
        handler: CommandHandlerFunc,
        required_args: list[str],
        optional_args: Optional[list[str]] = None,
        description: str = "",
    ) -> None:
        """
        Register a command handler.

        Args:
            command_name: The name of the command.
            handler: The async handler function.
            required_args: Arguments that must be present.
            optional_args: Arguments passed through when present.
            description: Human-readable description.
        """
        self._commands[command_name] = CommandDefinition(
            name=command_name,
            handler=handler,
            required_args=required_args,
            optional_args=optional_args or [],
            description=description,
        )

    def get_available_commands(self) -> list[dict[str, Any]]:
        return [
            {
                "name": cmd.name,
                "required_args": cmd.required_args,
                "optional_args": cmd.optional_args,
                "description": cmd.description,
            }
            for cmd in self._commands.values()
        ]

    async def execute(self, command_data: dict[str, Any]) -> dict[str, Any]:
        """
        Execute a command based on command data.

        Args:
            command_data: Dictionary containing 'command', 'command_id', and 'data'.

        Returns:
            Response dictionary with execution result.
        """
        command = command_data.get("command")
        command_id = command_data.get("command_id")
        data = command_data.get("data", {}) or {}

        response = CommandResponse(command_id=command_id)

        if command not in self._commands:
            logger.warning(f"Unknown command: {command}")
            response.message = f"Unknown command: {command}"
            return response.to_dict()

        definition = self._commands[command]

        kwargs = {arg: data.get(arg) for arg in definition.required_args}
        missing = [arg for arg, value in kwargs.items() if value is None]
        if missing:
            response.message = f"Missing required arguments: {missing}"
            return response.to_dict()
        kwargs.update(
            {arg: data[arg] for arg in definition.optional_args if data.get(arg) is not None}
        )

        try:
            result = await definition.handler(**kwargs)
            if isinstance(result, dict):
                response.success = result.get("success", False)
                response.message = result.get("message")
                response.data = result.get("data")
            else:
                response.success = True
                response.data = result

        except SessionServiceError as e:
            logger.warning(f"Command '{command}' rejected: {e.code}: {e.message}")
            response.message = e.message
            response.data = e.to_dict()

        except Exception as e:
            logger.error(f"Error executing command '{command}': {e}")
            response.message = f"Error: {e}"

        return response.to_dict()
