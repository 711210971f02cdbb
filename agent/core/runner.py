"""Agent runner - session startup, background tasks, in-process restarts.

A session is: sign in, make sure the device row exists, then run the
status reporter and the shutdown watcher side by side until one of them
fails. The first failure wins; the other task is cancelled and the error
is re-raised to `run_forever`, which waits and starts a new session.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from agent.config import Settings
from agent.core.errors import AuthError, ConfigError
from agent.models.device import utcnow
from agent.services.auth_client import AuthClient, Session
from agent.services.identity import DeviceIdentityResolver
from agent.services.power import PowerOff, select_power_off
from agent.services.registry_client import RegistryClient
from agent.services.shutdown_executor import ShutdownExecutor
from agent.services.shutdown_watcher import ShutdownWatcher
from agent.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)


async def wait_first_failure(*coros: Awaitable) -> None:
    """Run coroutines as tasks until the first one finishes, then cancel the rest.

    The finished task's exception is re-raised. A task that returns
    normally is treated as a failure too, since the loops never end.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    finished = next(iter(done))
    exc = finished.exception()
    if exc is not None:
        raise exc
    raise RuntimeError(f"background task {finished.get_name()} exited unexpectedly")


class AgentRunner:
    """Wires the components for one session from explicit settings."""

    def __init__(
        self,
        settings: Settings,
        device_name: Optional[str] = None,
        power_off: Optional[PowerOff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.device_name = device_name or settings.resolved_device_name()
        self.power_off = power_off if power_off is not None else select_power_off(
            command=settings.power_off_command,
        )
        self._transport = transport

    async def sign_in(self) -> Session:
        auth = AuthClient(
            self.settings.supabase_url,
            self.settings.supabase_key,
            timeout=self.settings.request_timeout,
            transport=self._transport,
        )
        return await auth.sign_in(self.settings.user_email, self.settings.user_password)

    async def run_session(self) -> None:
        """Run one session. Only returns by raising."""
        online_since = utcnow()
        session = await self.sign_in()
        owner = session.user_id
        name = self.device_name

        async with RegistryClient(
            self.settings.supabase_url,
            self.settings.supabase_key,
            session,
            timeout=self.settings.request_timeout,
            transport=self._transport,
        ) as registry:
            resolver = DeviceIdentityResolver(registry)
            await resolver.ensure_device_at_startup(
                owner,
                name,
                retries=self.settings.startup_retries,
                retry_delay=self.settings.startup_retry_delay,
            )
            logger.info(f"Device {name!r} registered for user {owner}")

            reporter = StatusReporter(
                registry,
                resolver,
                owner,
                name,
                interval=self.settings.status_interval,
                online_since=online_since,
            )
            await reporter.report_at_startup(
                retries=self.settings.startup_retries,
                retry_delay=self.settings.startup_retry_delay,
            )

            executor = ShutdownExecutor(
                registry,
                owner,
                name,
                self.power_off,
                min_uptime=self.settings.min_uptime,
                grace=self.settings.shutdown_grace,
                online_since=online_since,
                outcome_retries=self.settings.outcome_retries,
                outcome_retry_delay=self.settings.outcome_retry_delay,
            )
            watcher = ShutdownWatcher(
                registry,
                resolver,
                executor,
                owner,
                name,
                poll_interval=self.settings.poll_interval,
            )

            await wait_first_failure(reporter.run(), watcher.run())


async def run_forever(
    settings: Settings,
    device_name: Optional[str] = None,
    runner_factory: Callable[..., AgentRunner] = AgentRunner,
) -> None:
    """Restart sessions in-process until a config or auth error."""
    runner = runner_factory(settings, device_name=device_name)
    logger.info(f"Starting shutdown agent for device {runner.device_name!r}")
    if runner.power_off is None:
        logger.warning("This OS has no power-off command; requests will be left pending")

    while True:
        try:
            await runner.run_session()
        except (ConfigError, AuthError):
            raise
        except Exception as e:
            logger.error(f"Application error: {e}", exc_info=True)

        logger.info(f"Waiting {settings.restart_delay:g} seconds before retrying...")
        await asyncio.sleep(settings.restart_delay)
