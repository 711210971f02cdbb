"""Device identity resolver - makes sure this machine's row exists."""

import asyncio
import logging
from datetime import datetime
from typing import Callable

from agent.core.errors import ConflictError, FatalRegistryError, RegistryError
from agent.models.device import utcnow
from agent.services.registry_client import RegistryClient

logger = logging.getLogger(__name__)


class DeviceIdentityResolver:
    """Idempotently creates the (owner, name) device row.

    Safe to call from several places at once: a create that loses the race
    gets a ConflictError, which means the row is there.
    """

    def __init__(self, registry: RegistryClient, clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.clock = clock

    async def ensure_device(self, owner: str, name: str) -> bool:
        """Look the device up and create it if absent.

        Returns True if this call created the row. Registry errors other
        than a create conflict propagate to the caller.
        """
        devices = await self.registry.find_device(owner, name)
        if devices:
            return False

        try:
            await self.registry.create_device(owner, name, self.clock())
        except ConflictError:
            logger.info(f"Device {name!r} was created concurrently, using existing row")
            return False

        logger.info(f"Created device row for {name!r}")
        return True

    async def ensure_device_at_startup(
        self,
        owner: str,
        name: str,
        retries: int = 3,
        retry_delay: float = 5.0,
    ) -> bool:
        """Establish the row before the background tasks start.

        Retries transient failures a few times, then re-raises the last
        error so the session fails and the outer loop backs off. A
        FatalRegistryError is raised straight away.
        """
        for attempt in range(1, retries + 1):
            try:
                return await self.ensure_device(owner, name)
            except FatalRegistryError:
                raise
            except RegistryError as e:
                if attempt == retries:
                    logger.error(f"Could not establish device row for {name!r} after {retries} attempts: {e}")
                    raise
                logger.warning(f"Device registration attempt {attempt}/{retries} failed: {e}")
                await asyncio.sleep(retry_delay)
        return False
