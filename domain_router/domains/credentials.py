"""
Credential stores for the hosting platform API.

The connector asks a store for a credential before each request and tells
it to invalidate the credential when the platform rejects it. How a fresh
credential is obtained is the store's business.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

logger = logging.getLogger("domain_router.domains.credentials")

PLATFORM_SCOPE = "platform"


class CredentialError(Exception):
    """A credential could not be obtained."""


@dataclass
class HostingCredential:
    """Bearer credential for the hosting API."""

    token: str
    expires_at: Optional[float] = None  # monotonic seconds

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return time.monotonic() >= self.expires_at

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class CredentialStore:
    """Interface for hosting credential providers."""

    async def get_hosting_credential(self, scope: str = PLATFORM_SCOPE) -> HostingCredential:
        raise NotImplementedError

    async def invalidate(self, scope: str = PLATFORM_SCOPE) -> None:
        """Drop any cached credential for ``scope``."""

    async def close(self) -> None:
        """Release resources held by the store."""


class StaticCredentialStore(CredentialStore):
    """Serves a fixed API token, e.g. from settings."""

    def __init__(self, token: str):
        self._credential = HostingCredential(token=token)

    async def get_hosting_credential(self, scope: str = PLATFORM_SCOPE) -> HostingCredential:
        if not self._credential.token:
            raise CredentialError("Hosting API token is not configured")
        return self._credential


class ClientCredentialsStore(CredentialStore):
    """
    OAuth2 client-credentials store with token caching.

    Tokens are cached per scope until shortly before ``expires_in`` and
    refreshed on demand after ``invalidate``.
    """

    EXPIRY_MARGIN = 60  # seconds

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: Dict[str, HostingCredential] = {}
        self._lock = asyncio.Lock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def get_hosting_credential(self, scope: str = PLATFORM_SCOPE) -> HostingCredential:
        cached = self._cache.get(scope)
        if cached and not cached.is_expired:
            return cached

        async with self._lock:
            cached = self._cache.get(scope)
            if cached and not cached.is_expired:
                return cached
            credential = await self._fetch(scope)
            self._cache[scope] = credential
            return credential

    async def _fetch(self, scope: str) -> HostingCredential:
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if scope != PLATFORM_SCOPE:
            data["scope"] = scope

        try:
            response = await self._get_client().post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise CredentialError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise CredentialError(f"Token request failed: HTTP {response.status_code}")

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise CredentialError("Token response did not include an access_token")

        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in:
            expires_at = time.monotonic() + max(0, int(expires_in) - self.EXPIRY_MARGIN)

        logger.info(f"Obtained hosting credential for scope {scope}")
        return HostingCredential(token=token, expires_at=expires_at)

    async def invalidate(self, scope: str = PLATFORM_SCOPE) -> None:
        self._cache.pop(scope, None)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
