"""Shutdown executor - drives a pending request to a terminal state."""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from agent.core.errors import CommandExecutionError, FatalRegistryError, RegistryError
from agent.models.device import Device, DeviceStatus, isoformat, utcnow
from agent.models.shutdown_request import ShutdownRequest, ShutdownState, transition_payload
from agent.services.power import PowerOff
from agent.services.registry_client import RegistryClient

logger = logging.getLogger(__name__)


class ShutdownOutcome(str, Enum):
    """What one execution attempt ended with."""
    EXPIRED = "expired"
    TOO_SOON = "too_soon"
    UNSUPPORTED = "unsupported"
    COMMIT_FAILED = "commit_failed"
    DONE = "done"
    FAILED = "failed"


class ShutdownExecutor:
    """Applies the expiry and uptime guards, commits, powers off, records the outcome."""

    def __init__(
        self,
        registry: RegistryClient,
        owner: str,
        name: str,
        power_off: Optional[PowerOff],
        min_uptime: float = 60.0,
        grace: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        online_since: Optional[datetime] = None,
        outcome_retries: int = 5,
        outcome_retry_delay: float = 5.0,
    ):
        self.registry = registry
        self.owner = owner
        self.name = name
        self.power_off = power_off
        self.min_uptime = timedelta(seconds=min_uptime)
        self.grace = grace
        self.clock = clock
        self.online_since = online_since
        self.outcome_retries = outcome_retries
        self.outcome_retry_delay = outcome_retry_delay

    async def _patch(self, fields: Dict[str, Any]) -> bool:
        try:
            await self.registry.patch_device(self.owner, self.name, fields)
            return True
        except RegistryError as e:
            logger.error(f"Failed to update device {self.name!r}: {e}")
            return False

    async def _patch_until_recorded(self, fields: Dict[str, Any]) -> bool:
        """Retry an outcome write a bounded number of times. A FatalRegistryError stops at once."""
        for attempt in range(1, self.outcome_retries + 1):
            try:
                await self.registry.patch_device(self.owner, self.name, fields)
                return True
            except FatalRegistryError as e:
                logger.error(f"Outcome for {self.name!r} rejected by the registry: {e}")
                return False
            except RegistryError as e:
                if attempt == self.outcome_retries:
                    logger.error(
                        f"Could not record outcome for {self.name!r} after {attempt} attempts, "
                        f"request left in shutting_down: {e}"
                    )
                    return False
                logger.warning(f"Outcome write attempt {attempt}/{self.outcome_retries} failed: {e}")
                await asyncio.sleep(self.outcome_retry_delay)
        return False

    def _online_epoch(self, device: Device) -> Optional[datetime]:
        epoch = device.first_online_at
        if self.online_since is not None and (epoch is None or epoch < self.online_since):
            return self.online_since
        return epoch

    async def execute(self, device: Device, request: ShutdownRequest) -> ShutdownOutcome:
        """Handle one pending request seen on `device`."""
        now = self.clock()

        if request.is_expired(now):
            logger.info(f"Shutdown request for {self.name!r} expired at {isoformat(request.expires_at)}")
            await self._patch({
                "shutdown_requested": transition_payload(ShutdownState.PENDING, ShutdownState.EXPIRED),
            })
            return ShutdownOutcome.EXPIRED

        epoch = self._online_epoch(device)
        if epoch is not None and now - epoch < self.min_uptime:
            logger.info(f"Device {self.name!r} too recently started, skipping shutdown")
            return ShutdownOutcome.TOO_SOON

        if self.power_off is None:
            logger.warning(f"No power-off command for this OS, leaving request for {self.name!r} pending")
            return ShutdownOutcome.UNSUPPORTED

        logger.info("Shutting down...")
        committed = await self._patch({
            "shutdown_requested": transition_payload(ShutdownState.PENDING, ShutdownState.SHUTTING_DOWN),
            "status": DeviceStatus.OFF.value,
            "last_seen": isoformat(now),
        })
        if not committed:
            return ShutdownOutcome.COMMIT_FAILED

        await asyncio.sleep(self.grace)

        try:
            output = await self.power_off.power_off()
        except CommandExecutionError as e:
            logger.error(f"Shutdown command failed: {e}")
            await self._patch_until_recorded({
                "shutdown_requested": transition_payload(
                    ShutdownState.SHUTTING_DOWN, ShutdownState.FAILED, error=str(e),
                ),
            })
            return ShutdownOutcome.FAILED

        if output:
            logger.debug(f"Shutdown command output: {output}")

        # The machine may go down before this write lands
        await self._patch({
            "shutdown_requested": transition_payload(ShutdownState.SHUTTING_DOWN, ShutdownState.DONE),
            "status": DeviceStatus.OFF.value,
        })
        logger.info("Shutdown command executed successfully")
        return ShutdownOutcome.DONE
