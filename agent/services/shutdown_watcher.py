"""Shutdown watcher - polls the device row for pending shutdown requests.

Polling only. Fetch failures, a missing row and malformed payloads are all
absorbed here; the loop itself never ends on its own.
"""

import asyncio
import logging

from agent.core.errors import MalformedPayloadError, RegistryError
from agent.models.shutdown_request import parse_shutdown_request
from agent.services.identity import DeviceIdentityResolver
from agent.services.registry_client import RegistryClient
from agent.services.shutdown_executor import ShutdownExecutor, ShutdownOutcome

logger = logging.getLogger(__name__)


class ShutdownWatcher:
    """Polls for shutdown requests and hands pending ones to the executor."""

    def __init__(
        self,
        registry: RegistryClient,
        resolver: DeviceIdentityResolver,
        executor: ShutdownExecutor,
        owner: str,
        name: str,
        poll_interval: float = 10.0,
    ):
        self.registry = registry
        self.resolver = resolver
        self.executor = executor
        self.owner = owner
        self.name = name
        self.poll_interval = poll_interval

    async def run(self):
        """Poll forever."""
        logger.info(f"Watching {self.name!r} for shutdown requests every {self.poll_interval:g}s")
        while True:
            await self.tick()
            await asyncio.sleep(self.poll_interval)

    async def tick(self):
        """One poll. Returns the executor outcome if a pending request was handled."""
        try:
            devices = await self.registry.find_device(self.owner, self.name)
        except RegistryError as e:
            logger.warning(f"Fetch devices error: {e}")
            return None

        if not devices:
            logger.info(f"No row found for device {self.name!r}, creating one")
            try:
                created = await self.resolver.ensure_device(self.owner, self.name)
            except RegistryError as e:
                logger.error(f"Recreating device row failed: {e}")
            else:
                if created:
                    logger.info(f"Created device row for {self.name!r}")
            return None

        device = devices[0]
        try:
            request = parse_shutdown_request(device.shutdown_request)
        except MalformedPayloadError as e:
            logger.warning(f"Failed to parse shutdown request: {e}")
            return None

        if request is None:
            return None

        logger.info(f"Pending shutdown request for {self.name!r}")
        outcome: ShutdownOutcome = await self.executor.execute(device, request)
        logger.info(f"Shutdown request handled: {outcome.value}")
        return outcome
