# Registry record models
from agent.models.device import Device, DeviceStatus
from agent.models.shutdown_request import (
    ShutdownRequest,
    ShutdownState,
    parse_shutdown_request,
    transition_payload,
)

__all__ = [
    "Device",
    "DeviceStatus",
    "ShutdownRequest",
    "ShutdownState",
    "parse_shutdown_request",
    "transition_payload",
]
