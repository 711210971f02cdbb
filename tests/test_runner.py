"""Tests for session wiring, task fan-in and the restart loop."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from agent.config import Settings
from agent.core.errors import AuthError, ConfigError, FatalRegistryError, TransientNetworkError
from agent.core.runner import AgentRunner, run_forever, wait_first_failure
from tests.conftest import API_KEY, BASE_URL, EMAIL, PASSWORD, FakePowerOff

NAME = "laptop-7"


def make_settings(**overrides) -> Settings:
    values = dict(
        supabase_url=BASE_URL,
        supabase_key=API_KEY,
        user_email=EMAIL,
        user_password=PASSWORD,
        device_name=NAME,
        status_interval=3600,
        poll_interval=0.01,
        min_uptime=0,
        shutdown_grace=0,
        restart_delay=30,
        startup_retry_delay=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def forever():
    await asyncio.sleep(3600)


class TestWaitFirstFailure:
    @pytest.mark.asyncio
    async def test_first_error_wins_and_cancels_the_rest(self):
        cancelled = asyncio.Event()

        async def sleeper():
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def failing():
            await asyncio.sleep(0)
            raise FatalRegistryError("rejected", status_code=401)

        with pytest.raises(FatalRegistryError):
            await wait_first_failure(sleeper(), failing())
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_normal_return_is_a_failure(self):
        async def quits():
            return None

        with pytest.raises(RuntimeError):
            await wait_first_failure(forever(), quits())


class TestRunForever:
    @pytest.mark.asyncio
    async def test_restarts_after_errors_until_auth_error(self):
        runner = AsyncMock()
        runner.device_name = NAME
        runner.power_off = FakePowerOff()
        runner.run_session.side_effect = [
            TransientNetworkError("auth service down"),
            FatalRegistryError("JWT expired", status_code=401),
            AuthError("credentials rejected"),
        ]

        with patch("agent.core.runner.asyncio.sleep", new=AsyncMock()) as sleep_mock:
            with pytest.raises(AuthError):
                await run_forever(make_settings(restart_delay=30), runner_factory=lambda *a, **kw: runner)

        assert runner.run_session.await_count == 3
        assert sleep_mock.await_count == 2
        sleep_mock.assert_awaited_with(30)

    @pytest.mark.asyncio
    async def test_config_error_is_fatal(self):
        runner = AsyncMock()
        runner.device_name = NAME
        runner.power_off = None
        runner.run_session.side_effect = ConfigError("missing")

        with pytest.raises(ConfigError):
            await run_forever(make_settings(), runner_factory=lambda *a, **kw: runner)


class TestAgentRunner:
    def test_device_name_defaults_to_setting(self):
        runner = AgentRunner(make_settings(), power_off=FakePowerOff())
        assert runner.device_name == NAME

        runner = AgentRunner(make_settings(), device_name="override", power_off=FakePowerOff())
        assert runner.device_name == "override"

    def test_power_off_command_override(self):
        runner = AgentRunner(make_settings(power_off_command=["shutdown", "-p", "now"]))
        assert runner.power_off.argv == ("shutdown", "-p", "now")

    @pytest.mark.asyncio
    async def test_session_registers_reports_and_executes(self, fake_registry):
        fake_registry.add_device(NAME, shutdown_requested={"status": "pending"})
        power_off = FakePowerOff()
        runner = AgentRunner(make_settings(), power_off=power_off, transport=fake_registry.transport)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(runner.run_session(), timeout=0.5)

        assert power_off.calls == 1
        row = fake_registry.device(NAME)
        assert row["shutdown_requested"] == {"status": "done"}

    @pytest.mark.asyncio
    async def test_stale_epoch_is_replaced_before_watching(self, fake_registry):
        day_ago = datetime.now(timezone.utc) - timedelta(days=1)
        fake_registry.add_device(
            NAME,
            first_online_at=day_ago.isoformat(),
            shutdown_requested={"status": "pending"},
        )
        fake_registry.fail_next("PATCH", 503)
        power_off = FakePowerOff()
        runner = AgentRunner(make_settings(min_uptime=60), power_off=power_off, transport=fake_registry.transport)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(runner.run_session(), timeout=0.5)

        assert power_off.calls == 0
        row = fake_registry.device(NAME)
        assert row["shutdown_requested"] == {"status": "pending"}
        assert datetime.fromisoformat(row["first_online_at"]) > day_ago
        assert "first_online_at" in fake_registry.patches()[0]

    @pytest.mark.asyncio
    async def test_unwritable_epoch_fails_the_session(self, fake_registry):
        fake_registry.add_device(NAME, shutdown_requested={"status": "pending"})
        for _ in range(3):
            fake_registry.fail_next("PATCH", 503)
        power_off = FakePowerOff()
        runner = AgentRunner(make_settings(), power_off=power_off, transport=fake_registry.transport)

        with pytest.raises(TransientNetworkError):
            await asyncio.wait_for(runner.run_session(), timeout=2)
        assert power_off.calls == 0

    @pytest.mark.asyncio
    async def test_session_creates_missing_device(self, fake_registry):
        runner = AgentRunner(make_settings(), power_off=FakePowerOff(), transport=fake_registry.transport)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(runner.run_session(), timeout=0.2)

        assert fake_registry.device(NAME)["status"] == "on"

    @pytest.mark.asyncio
    async def test_rejected_status_update_ends_session(self, fake_registry):
        fake_registry.add_device(NAME)
        fake_registry.fail_next("PATCH", 401)
        runner = AgentRunner(make_settings(), power_off=FakePowerOff(), transport=fake_registry.transport)

        with pytest.raises(FatalRegistryError):
            await asyncio.wait_for(runner.run_session(), timeout=2)

    @pytest.mark.asyncio
    async def test_bad_credentials(self, fake_registry):
        runner = AgentRunner(
            make_settings(user_password="wrong"),
            power_off=FakePowerOff(),
            transport=fake_registry.transport,
        )

        with pytest.raises(AuthError):
            await runner.run_session()
        assert fake_registry.calls("GET") == []
