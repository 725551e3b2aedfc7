"""
Hosting platform connector.

Creates, inspects and removes hostname bindings on the external hosting
platform, which provisions the edge routing and the TLS certificate for a
custom domain. All operations are idempotent. The connector never backs
off or sleeps; retry scheduling belongs to the reconciler.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from .credentials import CredentialError, CredentialStore, PLATFORM_SCOPE
from .models import CertificateStatus

logger = logging.getLogger("domain_router.domains.hosting")

_CERT_STATUS = {
    "CERT_ACTIVE": CertificateStatus.ISSUED,
    "CERT_FAILED": CertificateStatus.FAILED,
    "CERT_ERROR": CertificateStatus.FAILED,
}


class HostingPlatformError(Exception):
    """Base class for hosting platform failures."""


class PlatformTransientError(HostingPlatformError):
    """Temporary failure; the same call may succeed later."""


class PlatformQuotaExceeded(HostingPlatformError):
    """The hosting account has no capacity for another binding."""


class PlatformRejected(HostingPlatformError):
    """The platform refused the request permanently."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class BindingNotFound(PlatformRejected):
    """The binding no longer exists on the platform."""


@dataclass
class BindingStatus:
    """Snapshot of a binding on the hosting platform."""

    active: bool
    certificate_status: CertificateStatus
    raw_status: str = ""


class HostingConnector:
    """Client for the hosting platform's custom domain API."""

    def __init__(
        self,
        base_url: str,
        site_id: str,
        credentials: CredentialStore,
        timeout: float = 10.0,
        max_auth_retries: int = 2,
        scope: str = PLATFORM_SCOPE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.site_id = site_id
        self.credentials = credentials
        self.timeout = timeout
        self.max_auth_retries = max_auth_retries
        self.scope = scope
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _domains_url(self, binding_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/sites/{self.site_id}/domains"
        if binding_id:
            url = f"{url}/{quote(binding_id, safe='')}"
        return url

    async def _request(self, method: str, url: str, json: Optional[dict] = None) -> httpx.Response:
        """
        Send an authenticated request.

        A 401 drops the cached credential and retries with a fresh one, up to
        ``max_auth_retries`` times, then surfaces as PlatformTransientError.
        Network failures, timeouts, throttling and 5xx are transient.
        """
        client = self._get_client()
        for attempt in range(self.max_auth_retries + 1):
            try:
                credential = await self.credentials.get_hosting_credential(self.scope)
            except CredentialError as e:
                raise PlatformTransientError(f"Hosting credential unavailable: {e}") from e

            try:
                response = await client.request(method, url, json=json, headers=credential.headers)
            except httpx.TimeoutException as e:
                raise PlatformTransientError(f"Hosting API timed out: {method} {url}") from e
            except httpx.HTTPError as e:
                raise PlatformTransientError(f"Hosting API unreachable: {e}") from e

            if response.status_code == 401:
                logger.info(
                    f"Hosting credential rejected, refreshing "
                    f"(attempt {attempt + 1}/{self.max_auth_retries + 1})"
                )
                await self.credentials.invalidate(self.scope)
                continue

            if response.status_code == 429 or response.status_code >= 500:
                raise PlatformTransientError(
                    f"Hosting API {method} {url} failed: HTTP {response.status_code}"
                )
            return response

        raise PlatformTransientError("Hosting credential refresh exhausted")

    @staticmethod
    def _error_reason(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return error.get("message") or error.get("status") or f"HTTP {response.status_code}"
        if isinstance(error, str):
            return error
        return f"HTTP {response.status_code}"

    def _raise_for_rejection(self, response: httpx.Response) -> None:
        reason = self._error_reason(response)
        lowered = reason.lower()
        if "quota" in lowered or "resource_exhausted" in lowered or "limit" in lowered:
            raise PlatformQuotaExceeded(reason)
        raise PlatformRejected(reason)

    @staticmethod
    def _binding_id(payload: dict, hostname: str) -> str:
        return payload.get("domainName") or payload.get("name") or hostname

    async def create_binding(self, hostname: str) -> str:
        """
        Bind ``hostname`` to the platform and return the binding id.

        Creating a binding that already exists returns the existing one.
        """
        response = await self._request(
            "POST", self._domains_url(), json={"domainName": hostname}
        )

        if response.status_code in (200, 201):
            binding_id = self._binding_id(response.json(), hostname)
            logger.info(f"Created hosting binding {binding_id} for {hostname}")
            return binding_id

        if response.status_code == 409:
            logger.info(f"Hosting binding for {hostname} already exists, reusing it")
            existing = await self._request("GET", self._domains_url(hostname))
            if existing.status_code == 200:
                return self._binding_id(existing.json(), hostname)
            if existing.status_code == 404:
                raise PlatformTransientError(
                    f"Hosting binding for {hostname} reported as existing but not found"
                )
            self._raise_for_rejection(existing)

        self._raise_for_rejection(response)

    async def get_binding_status(self, binding_id: str) -> BindingStatus:
        """Fetch the binding's serving and certificate status."""
        response = await self._request("GET", self._domains_url(binding_id))

        if response.status_code == 404:
            raise BindingNotFound(f"Hosting binding {binding_id} not found")
        if response.status_code != 200:
            self._raise_for_rejection(response)

        payload = response.json()
        raw_status = payload.get("status", "")
        cert = (payload.get("provisioning") or {}).get("certStatus", "")
        return BindingStatus(
            active=raw_status == "DOMAIN_ACTIVE",
            certificate_status=_CERT_STATUS.get(cert, CertificateStatus.PENDING),
            raw_status=raw_status,
        )

    async def delete_binding(self, binding_id: str) -> None:
        """Delete a binding. Deleting a missing binding succeeds."""
        response = await self._request("DELETE", self._domains_url(binding_id))
        if response.status_code in (200, 202, 204, 404):
            logger.info(f"Deleted hosting binding {binding_id}")
            return
        self._raise_for_rejection(response)

    async def close(self) -> None:
        """Close HTTP client for clean shutdown."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
