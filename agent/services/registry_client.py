"""Registry client for the `devices` table.

Thin request/response wrapper. Every call is authenticated with the
session's bearer token, bounded by a timeout, and turns the response into
either a value or one of the RegistryError subclasses.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from agent.core.errors import (
    ConflictError,
    FatalRegistryError,
    NotFoundError,
    RegistryError,
    TransientNetworkError,
)
from agent.models.device import Device, DeviceStatus, isoformat
from agent.services.auth_client import Session

logger = logging.getLogger(__name__)

DEVICES_PATH = "/rest/v1/devices"
TRANSIENT_STATUSES = {408, 429}


def classify_response(response: httpx.Response, action: str) -> None:
    """Raise the RegistryError matching a non-2xx response."""
    status = response.status_code
    if 200 <= status < 300:
        return

    body = response.text
    message = f"{action} failed with status {status}: {body[:200]}"
    if status == 404:
        raise NotFoundError(message, status_code=status, body=body)
    if status == 409:
        raise ConflictError(message, status_code=status, body=body)
    if status in TRANSIENT_STATUSES or status >= 500:
        raise TransientNetworkError(message, status_code=status, body=body)
    raise FatalRegistryError(message, status_code=status, body=body)


class RegistryClient:
    """Create/read/update operations on this owner's device rows."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Session,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {session.access_token}",
            },
        )

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self):
        await self.client.aclose()

    @staticmethod
    def _filters(owner: str, name: str) -> Dict[str, str]:
        return {"user_id": f"eq.{owner}", "name": f"eq.{name}"}

    async def _request(self, action: str, method: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, DEVICES_PATH, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{action} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{action} transport error: {e}") from e
        classify_response(response, action)
        return response

    @staticmethod
    def _decode_rows(response: httpx.Response, action: str) -> List[Device]:
        try:
            rows = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"{action} returned invalid JSON: {e}") from e
        if not isinstance(rows, list):
            raise RegistryError(f"{action} returned {type(rows).__name__}, expected a list")
        try:
            return [Device.model_validate(row) for row in rows]
        except ValidationError as e:
            raise RegistryError(f"{action} returned an unexpected row: {e}") from e

    async def find_device(self, owner: str, name: str) -> List[Device]:
        """Return the device row for (owner, name) as a list of at most one."""
        params = self._filters(owner, name)
        params["select"] = "*"
        response = await self._request("find device", "GET", params=params)
        devices = self._decode_rows(response, "find device")
        if len(devices) > 1:
            logger.warning(f"Found {len(devices)} rows for device {name!r}, using the first")
        return devices[:1]

    async def create_device(self, owner: str, name: str, now: datetime) -> None:
        """Insert the device row. Raises ConflictError if it already exists."""
        stamp = isoformat(now)
        await self._request(
            "create device",
            "POST",
            json={
                "user_id": owner,
                "name": name,
                "status": DeviceStatus.UNKNOWN.value,
                "first_online_at": stamp,
                "last_seen": stamp,
            },
            headers={"Prefer": "return=minimal"},
        )
        logger.debug(f"Created device row for {name!r}")

    async def patch_device(self, owner: str, name: str, fields: Dict[str, Any]) -> Device:
        """Update some columns of the device row and return the updated row.

        Raises NotFoundError when no row matched.
        """
        response = await self._request(
            "patch device",
            "PATCH",
            params=self._filters(owner, name),
            json=fields,
            headers={"Prefer": "return=representation"},
        )
        devices = self._decode_rows(response, "patch device")
        if not devices:
            raise NotFoundError(f"patch device matched no row for {name!r}", status_code=response.status_code)
        logger.debug(f"PATCH succeeded for {name!r}: {fields}")
        return devices[0]
