"""
Routing resolver: maps an inbound Host header to the tenant site to serve.

Lookups go through a small, size-bounded read-through cache. Reads never
take a lock; writes are serialised and carry the hostname's generation so
a lookup that started before an invalidation can never re-insert what was
invalidated.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..domains.hostnames import normalize_host, platform_slug
from ..domains.models import CustomDomain, DomainStatus
from ..domains.registry import DomainRegistry, DomainTransition
from .sites import SiteRegistry

logger = logging.getLogger("domain_router.routing.resolver")


class UnknownHost(Exception):
    """No tenant site is served at this hostname."""

    code = "UnknownHost"

    def __init__(self, host: str):
        super().__init__(f"Unknown host: {host}")
        self.host = host


@dataclass(frozen=True)
class RouteTarget:
    tenant_id: str
    site_id: str

    def to_api_response(self) -> dict:
        return {"tenantId": self.tenant_id, "siteId": self.site_id}


@dataclass(frozen=True)
class _CacheEntry:
    target: Optional[RouteTarget]  # None caches a miss
    expires_at: float


class RoutingResolver:
    """Resolves hostnames to RouteTargets, failing closed on anything unknown."""

    def __init__(
        self,
        registry: DomainRegistry,
        sites: SiteRegistry,
        platform_domain: str = "platform.tld",
        ttl: float = 60.0,
        negative_ttl: float = 10.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.sites = sites
        self.platform_domain = platform_domain.lower().rstrip(".")
        self.ttl = ttl
        self.negative_ttl = negative_ttl
        self.max_entries = max_entries
        self.clock = clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._write_lock = threading.Lock()

    # ── Cache ────────────────────────────────────────────────────────

    def _generation(self, hostname: str) -> tuple:
        return (self._epoch, self._generations.get(hostname, 0))

    def _store(self, hostname: str, target: Optional[RouteTarget], generation: tuple) -> None:
        ttl = self.ttl if target else self.negative_ttl
        if ttl <= 0:
            return
        with self._write_lock:
            if self._generation(hostname) != generation:
                # Invalidated while the lookup was running
                return
            now = self.clock()
            self._cache.pop(hostname, None)
            if len(self._cache) >= self.max_entries:
                self._evict(now)
            self._cache[hostname] = _CacheEntry(target, now + ttl)

    def _evict(self, now: float) -> None:
        # Caller holds the write lock. Expired entries go first, then the
        # oldest insertions until there is room for one more.
        for key in [k for k, e in self._cache.items() if e.expires_at <= now]:
            del self._cache[key]
        while self._cache and len(self._cache) >= self.max_entries:
            del self._cache[next(iter(self._cache))]

    def invalidate(self, hostname: Optional[str] = None) -> None:
        """Drop the cached entry for ``hostname``, or everything."""
        with self._write_lock:
            if hostname is None:
                self._epoch += 1
                self._generations.clear()
                self._cache.clear()
                return
            hostname = normalize_host(hostname)
            self._generations[hostname] = self._generations.get(hostname, 0) + 1
            self._cache.pop(hostname, None)

    def cached(self, host: str) -> Optional[RouteTarget]:
        """Unexpired positive cache entry for ``host``, if any."""
        entry = self._cache.get(normalize_host(host))
        if entry and entry.target and entry.expires_at > self.clock():
            return entry.target
        return None

    # ── Resolution ───────────────────────────────────────────────────

    async def resolve(self, host: str) -> RouteTarget:
        """
        Resolve a Host header value.

        An ACTIVE custom domain wins, then ``<slug>.<platform_domain>``.
        Raises UnknownHost for everything else, including custom domains
        that are not ACTIVE yet and active domains whose site is gone.
        """
        hostname = normalize_host(host)
        if not hostname:
            raise UnknownHost(host or "")

        entry = self._cache.get(hostname)
        if entry and entry.expires_at > self.clock():
            if entry.target is None:
                raise UnknownHost(hostname)
            return entry.target

        generation = self._generation(hostname)
        target = await self._lookup(hostname)
        self._store(hostname, target, generation)

        if target is None:
            raise UnknownHost(hostname)
        return target

    async def _lookup(self, hostname: str) -> Optional[RouteTarget]:
        domain = await self.registry.get_by_hostname(hostname)
        if domain is not None:
            if not domain.is_active:
                return None
            return await self._custom_target(domain)

        slug = platform_slug(hostname, self.platform_domain)
        if slug:
            site = await self.sites.find_site_by_slug(slug)
            if site:
                return RouteTarget(tenant_id=site.tenant_id, site_id=site.site_id)
        return None

    async def _custom_target(self, domain: CustomDomain) -> Optional[RouteTarget]:
        if domain.site_id:
            site = await self.sites.get_published_site(domain.tenant_id, domain.site_id)
        else:
            site = await self.sites.get_primary_site(domain.tenant_id)

        if site is None or site.tenant_id != domain.tenant_id:
            logger.warning(
                f"Active domain {domain.hostname} has no published site for "
                f"tenant {domain.tenant_id}, refusing to route"
            )
            return None
        return RouteTarget(tenant_id=domain.tenant_id, site_id=site.site_id)

    async def on_transition(self, event: DomainTransition) -> None:
        """Registry listener: keep the cache in step with domain status."""
        hostname = event.domain.hostname
        self.invalidate(hostname)
        if event.current == DomainStatus.ACTIVE:
            generation = self._generation(hostname)
            target = await self._custom_target(event.domain)
            if target:
                self._store(hostname, target, generation)
                logger.debug(f"Routing cache warmed for {hostname}")
