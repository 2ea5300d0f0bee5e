"""Bearer token cache for the Fiskaly API."""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, AsyncGenerator, Callable, Optional

import httpx

if TYPE_CHECKING:
    from chalk_pos.services.tse.fiskaly_client import FiskalyClient


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    """Holds one access token and the instant it stops being reused.

    The expiry is computed locally at store time (``lifetime`` after the
    token was obtained) rather than read from the token, so a refresh
    happens before the server-side expiry.
    """

    def __init__(self, lifetime: timedelta, clock: Callable[[], datetime] = utcnow):
        self._lifetime = lifetime
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def expires_at(self) -> Optional[datetime]:
        return self._expires_at

    def is_valid(self) -> bool:
        return (
            self._token is not None
            and self._expires_at is not None
            and self._clock() < self._expires_at
        )

    def store(self, token: str) -> str:
        self._token = token
        self._expires_at = self._clock() + self._lifetime
        return token

    def clear(self) -> None:
        self._token = None
        self._expires_at = None


class FiskalyTokenAuth(httpx.Auth):
    """Attach a fresh bearer token to every outgoing request.

    Installed as the default ``auth`` of the client's ``httpx.AsyncClient``.
    The ``/auth`` request itself is sent with ``auth=None`` and never passes
    through here. A 401 drops the cached token and the request is sent once
    more with a new one.
    """

    def __init__(self, client: "FiskalyClient"):
        self._client = client

    def sync_auth_flow(self, request: httpx.Request):
        raise RuntimeError("FiskalyTokenAuth is only usable with httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._client.get_token()
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request

        # A rejected admin PIN is not a token problem
        if response.status_code != 401 or request.url.path.endswith("/admin/auth"):
            return
        self._client.invalidate_token(token)
        token = await self._client.get_token()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request
