"""
Domain registry: durable store of custom domain records and their lifecycle.
"""

import asyncio
import dataclasses
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

import redis.asyncio as redis
from redis.exceptions import WatchError

from .errors import (
    DomainAlreadyClaimed,
    DomainLimitExceeded,
    DomainNotFound,
    DomainRemoved,
    InvalidTransition,
    StaleDomainState,
)
from .models import BOUND_STATUSES, CustomDomain, DomainStatus, can_transition, utcnow

logger = logging.getLogger("domain_router.domains.registry")

_MUTABLE_FIELDS = {
    "site_id",
    "hosting_binding_id",
    "certificate_status",
    "last_checked_at",
    "failure_reason",
    "retry_count",
    "next_retry_at",
    "verification_started_at",
    "health_failures",
    "last_check_result",
}


@dataclass(frozen=True)
class DomainTransition:
    """Emitted after every committed status change."""

    domain: CustomDomain
    previous: DomainStatus
    current: DomainStatus
    previous_binding_id: Optional[str] = None


TransitionListener = Callable[[DomainTransition], Awaitable[None]]
ExpectedStatus = Union[None, DomainStatus, Iterable[DomainStatus]]


def _expected_set(expected: ExpectedStatus) -> Optional[Set[DomainStatus]]:
    if expected is None:
        return None
    if isinstance(expected, DomainStatus):
        return {expected}
    return set(expected)


class DomainRegistry:
    """
    Registry of CustomDomain records keyed by id.

    Uses Redis for persistence with in-memory fallback, mirroring the
    other stores in this service. Status changes go through ``transition``
    which enforces the state machine with a compare-and-set on the stored
    status and then notifies transition listeners.
    """

    def __init__(
        self,
        redis_url: Optional[str] = "redis://localhost:6379",
        key_prefix: str = "domain_router:",
        max_domains_per_tenant: int = 5,
        reclaim_grace_period: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.max_domains_per_tenant = max_domains_per_tenant
        self.reclaim_grace_period = reclaim_grace_period
        self.clock = clock
        self._redis: Optional[redis.Redis] = None
        self._use_redis = bool(redis_url)
        # In-memory fallback
        self._memory_store: Dict[str, dict] = {}
        self._hostname_index: Dict[str, str] = {}
        self._tenant_index: Dict[str, Set[str]] = {}
        self._released: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[TransitionListener] = []

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis connection."""
        if not self._use_redis:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
                logger.info("Domain registry connected to Redis")
            except Exception as e:
                logger.warning(
                    f"Redis unavailable for domain registry, using in-memory: {e}"
                )
                self._redis = None
                self._use_redis = False
                return None

        return self._redis

    def _domain_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}domain:{domain_id}"

    def _hostname_key(self, hostname: str) -> str:
        return f"{self.key_prefix}hostname:{hostname}"

    def _released_key(self, hostname: str) -> str:
        return f"{self.key_prefix}released:{hostname}"

    def _tenant_key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}tenant:{tenant_id}"

    def _status_key(self, status: DomainStatus) -> str:
        return f"{self.key_prefix}status:{status.value}"

    # ── Listeners ────────────────────────────────────────────────────

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a coroutine called after every status transition."""
        self._listeners.append(listener)

    async def _notify(self, event: DomainTransition) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    f"Transition listener failed for {event.domain.hostname} "
                    f"({event.previous.value} -> {event.current.value})"
                )

    # ── Writes ───────────────────────────────────────────────────────

    async def create(self, domain: CustomDomain) -> CustomDomain:
        """
        Persist a new domain record and claim its hostname.

        Raises DomainAlreadyClaimed if the hostname is held by another
        record or was released less than the grace period ago, and
        DomainLimitExceeded if the tenant is at its domain limit.
        """
        hostname = domain.hostname
        data = domain.to_dict()
        r = await self._get_redis()
        if r:
            existing = await self.list_by_tenant(domain.tenant_id)
            if len(existing) >= self.max_domains_per_tenant:
                raise self._limit_exceeded()
            released_at = await r.get(self._released_key(hostname))
            if released_at and self._in_grace_period(datetime.fromisoformat(released_at)):
                raise DomainAlreadyClaimed(
                    f"Domain {hostname} was recently released and cannot be claimed yet"
                )
            claimed = await r.set(self._hostname_key(hostname), domain.id, nx=True)
            if not claimed:
                raise DomainAlreadyClaimed(f"Domain {hostname} is already registered")
            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(self._released_key(hostname))
                pipe.set(self._domain_key(domain.id), json.dumps(data))
                pipe.sadd(self._tenant_key(domain.tenant_id), domain.id)
                pipe.sadd(self._status_key(domain.status), domain.id)
                await pipe.execute()
        else:
            async with self._lock:
                live = [
                    domain_id
                    for domain_id in self._tenant_index.get(domain.tenant_id, set())
                    if self._memory_store[domain_id]["status"] != DomainStatus.REMOVED.value
                ]
                if len(live) >= self.max_domains_per_tenant:
                    raise self._limit_exceeded()
                released_at = self._released.get(hostname)
                if released_at and self._in_grace_period(released_at):
                    raise DomainAlreadyClaimed(
                        f"Domain {hostname} was recently released and cannot be claimed yet"
                    )
                if hostname in self._hostname_index:
                    raise DomainAlreadyClaimed(f"Domain {hostname} is already registered")
                self._released.pop(hostname, None)
                self._hostname_index[hostname] = domain.id
                self._memory_store[domain.id] = data
                self._tenant_index.setdefault(domain.tenant_id, set()).add(domain.id)

        logger.info(f"Registered domain: {hostname} -> tenant {domain.tenant_id}")
        return domain

    def _in_grace_period(self, released_at: datetime) -> bool:
        return self.clock() - released_at < self.reclaim_grace_period

    def _limit_exceeded(self) -> DomainLimitExceeded:
        return DomainLimitExceeded(
            f"Maximum of {self.max_domains_per_tenant} domains per tenant reached"
        )

    async def transition(
        self,
        domain_id: str,
        expected: ExpectedStatus,
        new_status: DomainStatus,
        **changes,
    ) -> CustomDomain:
        """
        Move a domain to ``new_status`` if it is currently in ``expected``.

        ``changes`` are applied to the record in the same write. Raises
        StaleDomainState when the stored status is not the expected one and
        InvalidTransition when the state machine forbids the move.
        """
        event = await self._transition(domain_id, expected, new_status, changes)
        return event.domain

    async def _transition(
        self,
        domain_id: str,
        expected: ExpectedStatus,
        new_status: DomainStatus,
        changes: dict,
    ) -> DomainTransition:

        def mutate(domain: CustomDomain) -> CustomDomain:
            self._check_expected(domain, expected)
            if not can_transition(domain.status, new_status):
                raise InvalidTransition(
                    f"Cannot move {domain.hostname} from "
                    f"{domain.status.value} to {new_status.value}",
                    domain.id,
                )
            updated = self._apply(domain, changes)
            updated.status = new_status
            if new_status == DomainStatus.REMOVED:
                updated.hosting_binding_id = None
            self._check_binding(updated)
            return updated

        previous, current = await self._modify(domain_id, mutate)

        if current.status == DomainStatus.REMOVED:
            await self._release_hostname(current)

        logger.info(
            f"Domain {current.hostname}: {previous.status.value} -> {current.status.value}"
        )
        event = DomainTransition(
            current, previous.status, current.status, previous.hosting_binding_id
        )
        await self._notify(event)
        return event

    async def update_fields(
        self,
        domain_id: str,
        expected: ExpectedStatus,
        **changes,
    ) -> CustomDomain:
        """Update bookkeeping fields without changing status."""

        def mutate(domain: CustomDomain) -> CustomDomain:
            self._check_expected(domain, expected)
            updated = self._apply(domain, changes)
            self._check_binding(updated)
            return updated

        _, current = await self._modify(domain_id, mutate)
        return current

    async def mark_removed(
        self, domain_id: str, reason: Optional[str] = None
    ) -> DomainTransition:
        """
        Transition any non-removed domain to REMOVED.

        Returns the transition so callers can see the binding the record
        held at the moment of removal.
        """
        domain = await self.get(domain_id)
        if not domain:
            raise DomainNotFound(f"Domain {domain_id} not found", domain_id)
        if domain.is_removed:
            raise DomainRemoved(f"Domain {domain.hostname} is already removed", domain_id)
        changes = {"next_retry_at": None}
        if reason:
            changes["failure_reason"] = reason
        non_removed = [s for s in DomainStatus if s != DomainStatus.REMOVED]
        return await self._transition(domain_id, non_removed, DomainStatus.REMOVED, changes)

    def _check_expected(self, domain: CustomDomain, expected: ExpectedStatus) -> None:
        allowed = _expected_set(expected)
        if allowed is not None and domain.status not in allowed:
            if domain.is_removed:
                raise DomainRemoved(f"Domain {domain.hostname} was removed", domain.id)
            raise StaleDomainState(
                f"Domain {domain.hostname} is {domain.status.value}, "
                f"expected one of {sorted(s.value for s in allowed)}",
                domain.id,
                current=domain,
            )

    def _apply(self, domain: CustomDomain, changes: dict) -> CustomDomain:
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Immutable or unknown fields: {sorted(unknown)}")
        return dataclasses.replace(domain, updated_at=self.clock(), **changes)

    @staticmethod
    def _check_binding(domain: CustomDomain) -> None:
        bound = domain.status in BOUND_STATUSES
        if bound != (domain.hosting_binding_id is not None):
            raise InvalidTransition(
                f"Domain {domain.hostname} in {domain.status.value} "
                f"{'requires' if bound else 'must not have'} a hosting binding",
                domain.id,
            )

    async def _modify(self, domain_id: str, mutate) -> tuple:
        r = await self._get_redis()
        if r:
            key = self._domain_key(domain_id)
            async with r.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if not raw:
                            raise DomainNotFound(f"Domain {domain_id} not found", domain_id)
                        before = CustomDomain.from_dict(json.loads(raw))
                        after = mutate(before)
                        pipe.multi()
                        pipe.set(key, json.dumps(after.to_dict()))
                        if after.status != before.status:
                            pipe.srem(self._status_key(before.status), domain_id)
                            pipe.sadd(self._status_key(after.status), domain_id)
                        await pipe.execute()
                        return before, after
                    except WatchError:
                        logger.debug(f"Concurrent write on domain {domain_id}, retrying")
                        continue

        async with self._lock:
            data = self._memory_store.get(domain_id)
            if not data:
                raise DomainNotFound(f"Domain {domain_id} not found", domain_id)
            before = CustomDomain.from_dict(data)
            after = mutate(CustomDomain.from_dict(data))
            self._memory_store[domain_id] = after.to_dict()
            return before, after

    async def _release_hostname(self, domain: CustomDomain) -> None:
        grace = int(self.reclaim_grace_period.total_seconds())
        r = await self._get_redis()
        if r:
            key = self._hostname_key(domain.hostname)
            if await r.get(key) == domain.id:
                await r.delete(key)
            if grace > 0:
                await r.set(
                    self._released_key(domain.hostname), self.clock().isoformat(), ex=grace
                )
        else:
            async with self._lock:
                if self._hostname_index.get(domain.hostname) == domain.id:
                    del self._hostname_index[domain.hostname]
                if grace > 0:
                    self._released[domain.hostname] = self.clock()

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, domain_id: str) -> Optional[CustomDomain]:
        """Get domain record by id."""
        r = await self._get_redis()

        if r:
            data = await r.get(self._domain_key(domain_id))
            if not data:
                return None
            info = json.loads(data) if isinstance(data, str) else data
        else:
            info = self._memory_store.get(domain_id)
            if not info:
                return None

        return CustomDomain.from_dict(info)

    async def get_by_hostname(self, hostname: str) -> Optional[CustomDomain]:
        """Get the live (non-removed) record claiming a hostname."""
        hostname = hostname.lower()
        r = await self._get_redis()
        if r:
            domain_id = await r.get(self._hostname_key(hostname))
        else:
            domain_id = self._hostname_index.get(hostname)
        if not domain_id:
            return None
        return await self.get(domain_id)

    async def list_by_tenant(
        self, tenant_id: str, include_removed: bool = False
    ) -> List[CustomDomain]:
        """List domains owned by a tenant, oldest first."""
        r = await self._get_redis()
        if r:
            ids = await r.smembers(self._tenant_key(tenant_id))
        else:
            ids = set(self._tenant_index.get(tenant_id, set()))

        domains: List[CustomDomain] = []
        for domain_id in ids:
            entry = await self.get(domain_id)
            if entry and (include_removed or not entry.is_removed):
                domains.append(entry)
        domains.sort(key=lambda d: d.created_at)
        return domains

    async def list_by_status(self, statuses: Iterable[DomainStatus]) -> List[CustomDomain]:
        """List domains currently in any of ``statuses``."""
        wanted = set(statuses)
        r = await self._get_redis()
        domains: List[CustomDomain] = []

        if r:
            for status in wanted:
                for domain_id in await r.smembers(self._status_key(status)):
                    entry = await self.get(domain_id)
                    if entry and entry.status in wanted:
                        domains.append(entry)
        else:
            for data in list(self._memory_store.values()):
                if DomainStatus(data["status"]) in wanted:
                    domains.append(CustomDomain.from_dict(data))

        return domains

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Domain registry Redis connection closed")
