"""Device record model."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeviceStatus(str, Enum):
    """Last known liveness of a device."""
    ON = "on"
    OFF = "off"
    UNKNOWN = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Render a timestamp the way the registry stores it (RFC 3339, UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class Device(BaseModel):
    """The remote row representing this machine.

    `owner` and `shutdown_request` map to the `user_id` and
    `shutdown_requested` columns. `shutdown_request` is kept raw; it is
    parsed by `parse_shutdown_request` only when the watcher looks at it.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    owner: str = Field(alias="user_id")
    name: str
    status: Optional[str] = DeviceStatus.UNKNOWN.value
    last_seen: Optional[datetime] = None
    first_online_at: Optional[datetime] = None
    shutdown_request: Any = Field(default=None, alias="shutdown_requested")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value):
        return None if value is None else str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _null_status_is_unknown(cls, value):
        return DeviceStatus.UNKNOWN.value if value is None else value

    @field_validator("last_seen", "first_online_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def __repr__(self):
        return f"<Device {self.name} ({self.status})>"
