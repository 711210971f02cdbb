"""Shutdown request state machine.

An operator writes `{"status": "pending"}` (optionally with `expires_at`)
into the device's `shutdown_requested` column. The agent only moves the
request forward:

    pending -> expired
    pending -> shutting_down -> done | failed
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from agent.core.errors import MalformedPayloadError


class ShutdownState(str, Enum):
    PENDING = "pending"
    EXPIRED = "expired"
    SHUTTING_DOWN = "shutting_down"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: Dict[ShutdownState, FrozenSet[ShutdownState]] = {
    ShutdownState.PENDING: frozenset({ShutdownState.EXPIRED, ShutdownState.SHUTTING_DOWN}),
    ShutdownState.SHUTTING_DOWN: frozenset({ShutdownState.DONE, ShutdownState.FAILED}),
    ShutdownState.EXPIRED: frozenset(),
    ShutdownState.DONE: frozenset(),
    ShutdownState.FAILED: frozenset(),
}


class ShutdownRequest(BaseModel):
    """A parsed shutdown request."""

    model_config = ConfigDict(extra="ignore")

    status: ShutdownState
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


def can_transition(current: ShutdownState, target: ShutdownState) -> bool:
    return target in TRANSITIONS[current]


def transition_payload(current: ShutdownState, target: ShutdownState, **extra: Any) -> Dict[str, Any]:
    """Build the `shutdown_requested` value for a forward transition.

    Raises ValueError for anything that is not a listed transition.
    """
    if not can_transition(current, target):
        raise ValueError(f"Illegal shutdown request transition: {current.value} -> {target.value}")
    payload: Dict[str, Any] = {"status": target.value}
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload


def parse_shutdown_request(raw: Any) -> Optional[ShutdownRequest]:
    """Interpret the raw `shutdown_requested` value.

    Returns a request only when it is pending and well-formed, None when
    there is nothing to act on, and raises MalformedPayloadError otherwise.
    """
    if raw is None or raw == "":
        return None

    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedPayloadError(f"shutdown request is not valid JSON: {e}") from e

    if data is None:
        return None
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"shutdown request must be an object, got {type(data).__name__}")

    # Anything but pending (including statuses we don't know) is not ours to act on
    if data.get("status") != ShutdownState.PENDING.value:
        return None

    try:
        return ShutdownRequest.model_validate(data)
    except ValidationError as e:
        raise MalformedPayloadError(f"invalid pending shutdown request: {e.errors()[0]['msg']}") from e
