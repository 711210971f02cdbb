"""Session acquisition against the registry's auth endpoint."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from agent.core.errors import AuthError, TransientNetworkError

logger = logging.getLogger(__name__)

AUTH_REJECTED_STATUSES = {400, 401, 403, 422}


@dataclass(frozen=True)
class Session:
    """Bearer credential and owner id for one agent session."""
    access_token: str
    user_id: str
    token_type: str = "bearer"

    def __repr__(self):
        return f"<Session user={self.user_id}>"


class AuthClient:
    """Signs in with the password grant and returns a Session."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def sign_in(self, email: str, password: str) -> Session:
        """Exchange operator credentials for a bearer token."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    "/auth/v1/token",
                    params={"grant_type": "password"},
                    json={"email": email, "password": password},
                    headers={"apikey": self.api_key},
                )
            except httpx.HTTPError as e:
                raise TransientNetworkError(f"sign-in request failed: {e}") from e

        if response.status_code in AUTH_REJECTED_STATUSES:
            raise AuthError(f"credentials rejected ({response.status_code}): {response.text[:200]}")
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"auth service error {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        if response.status_code != 200:
            raise AuthError(f"unexpected auth response {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
            token = data["access_token"]
            user_id = data["user"]["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"malformed auth response: {e}") from e

        if not token or not user_id:
            raise AuthError("auth response is missing the token or user id")

        logger.info(f"Authenticated as user {user_id}")
        return Session(
            access_token=token,
            user_id=str(user_id),
            token_type=data.get("token_type") or "bearer",
        )
