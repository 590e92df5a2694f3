"""
Machine model - Availability and pricing rules for a rentable machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional


class MachineStatus(str, Enum):
    """Operational status reported by the registry."""

    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


@dataclass
class Machine:
    """
    A machine as held by the registry.

    ``owner_session_id`` is the owner token: the non-terminal session that
    currently holds the machine, or None when it is free.
    """

    id: str
    price_per_minute: int
    code: str = ""
    location: str = ""
    operating_start: str = "00:00"
    operating_end: str = "23:59"
    status: MachineStatus = MachineStatus.OFFLINE
    maintenance_interval_minutes: int = 0  # 0 disables the maintenance limit
    operating_minutes: int = 0
    maintenance_override: bool = False
    last_heartbeat: Optional[datetime] = None
    owner_session_id: Optional[str] = None

    @property
    def is_online(self) -> bool:
        return self.status is MachineStatus.ONLINE

    @property
    def requires_maintenance(self) -> bool:
        """Operating time exceeded the maintenance interval."""
        return (
            self.maintenance_interval_minutes > 0
            and self.operating_minutes >= self.maintenance_interval_minutes
        )

    def is_within_operating_hours(self, local_time: time) -> bool:
        """Check the operating window; a window ending before it starts wraps midnight."""
        start = _parse_hhmm(self.operating_start)
        end = _parse_hhmm(self.operating_end)
        current = local_time.replace(second=0, microsecond=0, tzinfo=None)
        if start <= end:
            return start <= current <= end
        return current >= start or current <= end

    def unavailability_reason(self, local_now: datetime) -> Optional[str]:
        """
        Explain why a new session cannot start on this machine.

        Args:
            local_now: Current time in the machine's local timezone.

        Returns:
            A human-readable reason, or None if the machine is available.
        """
        if self.status is MachineStatus.MAINTENANCE:
            return "Machine is in maintenance mode"
        if self.status is MachineStatus.OFFLINE:
            return "Machine is offline"
        if self.owner_session_id:
            return "Machine is currently in use"
        if not self.is_within_operating_hours(local_now.time()):
            return f"Machine operates from {self.operating_start} to {self.operating_end}"
        if self.requires_maintenance and not self.maintenance_override:
            return "Machine requires maintenance"
        return None

    def cost_for(self, duration_minutes: int) -> int:
        """Per-minute cost of a session, in cents."""
        return self.price_per_minute * duration_minutes

    def to_mapping(self) -> dict[str, Any]:
        """Flatten to a Redis hash mapping (owner token is stored separately)."""
        mapping: dict[str, Any] = {
            "id": self.id,
            "code": self.code,
            "location": self.location,
            "price_per_minute": self.price_per_minute,
            "operating_start": self.operating_start,
            "operating_end": self.operating_end,
            "status": self.status.value,
            "maintenance_interval_minutes": self.maintenance_interval_minutes,
            "operating_minutes": self.operating_minutes,
            "maintenance_override": int(self.maintenance_override),
        }
        if self.last_heartbeat is not None:
            mapping["last_heartbeat"] = self.last_heartbeat.timestamp()
        return mapping

    @classmethod
    def from_mapping(
        cls,
        data: dict[str, Any],
        owner_session_id: Optional[str] = None,
    ) -> "Machine":
        heartbeat = data.get("last_heartbeat")
        return cls(
            id=data["id"],
            code=data.get("code", ""),
            location=data.get("location", ""),
            price_per_minute=int(data.get("price_per_minute", 0)),
            operating_start=data.get("operating_start", "00:00"),
            operating_end=data.get("operating_end", "23:59"),
            status=MachineStatus(data.get("status", MachineStatus.OFFLINE.value)),
            maintenance_interval_minutes=int(data.get("maintenance_interval_minutes", 0)),
            operating_minutes=int(data.get("operating_minutes", 0)),
            maintenance_override=bool(int(data.get("maintenance_override", 0))),
            last_heartbeat=(
                datetime.fromtimestamp(float(heartbeat), tz=timezone.utc)
                if heartbeat else None
            ),
            owner_session_id=owner_session_id,
        )
