"""Status reporter - periodic liveness updates."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from agent.core.errors import FatalRegistryError, NotFoundError, RegistryError, TransientNetworkError
from agent.models.device import DeviceStatus, isoformat, utcnow
from agent.services.identity import DeviceIdentityResolver
from agent.services.registry_client import RegistryClient

logger = logging.getLogger(__name__)


class StatusReporter:
    """Marks the device `on` and refreshes `last_seen` every tick.

    `first_online_at` is written once per session, on the first successful
    tick, with the session start time. Later ticks leave it alone so the
    uptime guard has a stable epoch.
    """

    def __init__(
        self,
        registry: RegistryClient,
        resolver: DeviceIdentityResolver,
        owner: str,
        name: str,
        interval: float = 180.0,
        clock: Callable[[], datetime] = utcnow,
        online_since: Optional[datetime] = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.owner = owner
        self.name = name
        self.interval = interval
        self.clock = clock
        self.online_since = online_since or clock()
        self._epoch_written = False

    async def report_at_startup(self, retries: int = 3, retry_delay: float = 5.0):
        """Write the online epoch before the watcher may act on the row.

        A stale `first_online_at` from before a reboot would let the uptime
        guard pass at once, so the session does not start its background
        tasks until this write lands.
        """
        for attempt in range(1, retries + 1):
            if await self.tick():
                return
            if attempt < retries:
                await asyncio.sleep(retry_delay)
        raise TransientNetworkError(f"could not mark {self.name!r} online after {retries} attempts")

    async def run(self):
        """Report forever. Only a FatalRegistryError ends the loop."""
        logger.info(f"Reporting status for {self.name!r} every {self.interval:g}s")
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    def _fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "status": DeviceStatus.ON.value,
            "last_seen": isoformat(self.clock()),
        }
        if not self._epoch_written:
            fields["first_online_at"] = isoformat(self.online_since)
        return fields

    async def tick(self) -> bool:
        """Send one status update. Returns True if it was written."""
        fields = self._fields()
        try:
            await self.registry.patch_device(self.owner, self.name, fields)
        except FatalRegistryError:
            logger.error(f"Status update for {self.name!r} rejected, giving up")
            raise
        except NotFoundError:
            return await self._heal_and_retry(fields)
        except RegistryError as e:
            logger.warning(f"Status update failed, retrying next tick: {e}")
            return False

        self._epoch_written = True
        return True

    async def _heal_and_retry(self, fields: Dict[str, Any]) -> bool:
        logger.warning(f"Device row for {self.name!r} is gone, recreating it")
        try:
            await self.resolver.ensure_device(self.owner, self.name)
            await self.registry.patch_device(self.owner, self.name, fields)
        except FatalRegistryError:
            raise
        except RegistryError as e:
            logger.warning(f"Could not restore device row, retrying next tick: {e}")
            return False

        self._epoch_written = True
        return True
