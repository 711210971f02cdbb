"""Shared fixtures: an in-memory registry behind httpx.MockTransport."""

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from agent.services.auth_client import Session
from agent.services.registry_client import RegistryClient

BASE_URL = "https://registry.test"
API_KEY = "anon-key"
OWNER = "user-123"
TOKEN = "token-abc"
EMAIL = "ops@example.com"
PASSWORD = "hunter2"

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def _eq(params: httpx.QueryParams, key: str) -> Optional[str]:
    value = params.get(key)
    if value is None:
        return None
    assert value.startswith("eq."), f"unexpected filter {key}={value}"
    return value[3:]


class FakeRegistry:
    """Just enough of the auth and PostgREST endpoints for the agent.

    Enforces uniqueness on (user_id, name), honours `Prefer:
    return=representation` on PATCH, and lets tests queue failures per
    HTTP method.
    """

    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.failures: Dict[str, List[Any]] = {}
        self.users = {EMAIL: (PASSWORD, OWNER)}

    # Test helpers

    def fail_next(self, method: str, failure: Any = 503):
        """Queue a status code or an exception for the next `method` call.

        `None` lets that call through, so later failures can be lined up.
        """
        self.failures.setdefault(method.upper(), []).append(failure)

    def add_device(self, name: str, owner: str = OWNER, **columns) -> Dict[str, Any]:
        row = {
            "id": str(uuid.uuid4()),
            "user_id": owner,
            "name": name,
            "status": "unknown",
            "last_seen": None,
            "first_online_at": None,
            "shutdown_requested": None,
        }
        row.update(columns)
        self.rows.append(row)
        return row

    def device(self, name: str, owner: str = OWNER) -> Optional[Dict[str, Any]]:
        matches = [r for r in self.rows if r["user_id"] == owner and r["name"] == name]
        assert len(matches) <= 1
        return matches[0] if matches else None

    def delete_device(self, name: str, owner: str = OWNER):
        self.rows = [r for r in self.rows if not (r["user_id"] == owner and r["name"] == name)]

    def calls(self, method: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper()]

    def patches(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.calls("PATCH")]

    # Transport

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        queued = self.failures.get(request.method)
        if queued:
            failure = queued.pop(0)
            if isinstance(failure, Exception):
                raise failure
            if failure is not None:
                return httpx.Response(failure, json={"message": "injected failure"})

        if request.url.path == "/auth/v1/token":
            return self._token(request)

        if request.url.path != "/rest/v1/devices":
            return httpx.Response(404, json={"message": "no such route"})

        if request.headers.get("apikey") != API_KEY:
            return httpx.Response(401, json={"message": "missing apikey"})
        if request.headers.get("authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"message": "JWT expired"})

        if request.method == "GET":
            return httpx.Response(200, json=self._match(request.url.params))
        if request.method == "POST":
            return self._insert(json.loads(request.content))
        if request.method == "PATCH":
            return self._update(request)
        return httpx.Response(405)

    def _token(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        expected = self.users.get(body.get("email"))
        if expected is None or expected[0] != body.get("password"):
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={"access_token": TOKEN, "token_type": "bearer", "user": {"id": expected[1]}},
        )

    def _match(self, params: httpx.QueryParams) -> List[Dict[str, Any]]:
        owner = _eq(params, "user_id")
        name = _eq(params, "name")
        return [
            dict(r) for r in self.rows
            if (owner is None or r["user_id"] == owner) and (name is None or r["name"] == name)
        ]

    def _insert(self, body: Dict[str, Any]) -> httpx.Response:
        if self.device(body["name"], body["user_id"]) is not None:
            return httpx.Response(
                409,
                json={"code": "23505", "message": "duplicate key value violates unique constraint"},
            )
        self.add_device(**{k: v for k, v in body.items() if k != "user_id"}, owner=body["user_id"])
        return httpx.Response(201)

    def _update(self, request: httpx.Request) -> httpx.Response:
        matched = [
            r for r in self.rows
            if r["user_id"] == _eq(request.url.params, "user_id")
            and r["name"] == _eq(request.url.params, "name")
        ]
        fields = json.loads(request.content)
        for row in matched:
            row.update(fields)
        if "return=representation" in request.headers.get("prefer", ""):
            return httpx.Response(200, json=[dict(r) for r in matched])
        return httpx.Response(204)


class FakePowerOff:
    """Records power-off calls instead of running anything."""

    platform = "test"

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls = 0

    async def power_off(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ""


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    return Session(access_token=TOKEN, user_id=OWNER)


@pytest_asyncio.fixture
async def registry(fake_registry, session):
    client = RegistryClient(BASE_URL, API_KEY, session, transport=fake_registry.transport)
    yield client
    await client.close()
