"""
Reconciliation loop for custom domains.

A periodic pass picks the domains that need attention and advances each
one by a single step: verify DNS, create or poll the hosting binding, or
health-check an active binding. Steps for the same domain never overlap;
steps for different domains run concurrently up to ``max_workers``.

DNS_FAILED and CONNECT_FAILED are never scheduled. They stay put until
the tenant fixes their records and asks for verification again, which
``DomainService.verify_domain`` does by moving the domain back to
PENDING_DNS with a fresh retry budget.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from .backoff import BackoffPolicy
from .errors import DomainRemoved, StaleDomainState
from .hosting import (
    BindingNotFound,
    HostingConnector,
    HostingPlatformError,
    PlatformQuotaExceeded,
    PlatformRejected,
    PlatformTransientError,
)
from .models import CustomDomain, DomainStatus, utcnow
from .registry import DomainRegistry
from .verification import DNS_ERROR, DNSCheckResult, DomainVerifier

logger = logging.getLogger("domain_router.domains.reconciler")

SCHEDULED_STATUSES = frozenset({
    DomainStatus.PENDING_DNS,
    DomainStatus.DNS_VERIFIED,
    DomainStatus.CONNECTING,
    DomainStatus.ACTIVE,
    DomainStatus.RECONNECTING,
})

_RETRYABLE = (PlatformTransientError, PlatformQuotaExceeded)


class Reconciler:
    """Drives custom domains through verification, connection and health checks."""

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: DomainVerifier,
        connector: HostingConnector,
        backoff: BackoffPolicy = BackoffPolicy(),
        interval: float = 30.0,
        max_workers: int = 8,
        external_call_timeout: float = 15.0,
        dns_max_attempts: int = 500,
        dns_verification_expiry: timedelta = timedelta(days=7),
        connect_max_attempts: int = 50,
        reconnect_max_attempts: int = 5,
        health_check_interval: timedelta = timedelta(minutes=5),
        health_failure_threshold: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.verifier = verifier
        self.connector = connector
        self.backoff = backoff
        self.interval = interval
        self.max_workers = max_workers
        self.external_call_timeout = external_call_timeout
        self.dns_max_attempts = dns_max_attempts
        self.dns_verification_expiry = dns_verification_expiry
        self.connect_max_attempts = connect_max_attempts
        self.reconnect_max_attempts = reconnect_max_attempts
        self.health_check_interval = health_check_interval
        self.health_failure_threshold = max(1, health_failure_threshold)
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max_workers)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    # ── Scheduling ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic reconciliation loop."""
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run_loop())
            logger.info(
                f"Reconciler started (interval={self.interval}s, workers={self.max_workers})"
            )

    async def stop(self) -> None:
        """Stop the loop and cancel outstanding steps."""
        tasks = list(self._background) + list(self._inflight.values())
        if self._loop_task:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Reconciler stopped")

    async def _run_loop(self) -> None:
        while True:
            try:
                processed = await self.run_pass()
                if processed:
                    logger.debug(f"Reconciliation pass processed {processed} domains")
            except Exception:
                logger.exception("Reconciliation pass failed")
            await asyncio.sleep(self.interval)

    def is_due(self, domain: CustomDomain, now: datetime) -> bool:
        """Whether the scheduler should run a step for ``domain`` now."""
        if domain.status not in SCHEDULED_STATUSES:
            return False
        if domain.status == DomainStatus.ACTIVE:
            if domain.last_checked_at is None:
                return True
            return now - domain.last_checked_at >= self.health_check_interval
        return domain.next_retry_at is None or domain.next_retry_at <= now

    async def run_pass(self) -> int:
        """Run one step for every due domain. Returns the number processed."""
        now = self.clock()
        candidates = await self.registry.list_by_status(SCHEDULED_STATUSES)
        due = [
            d for d in candidates
            if self.is_due(d, now) and d.id not in self._inflight
        ]
        if not due:
            return 0
        await asyncio.gather(*(self.reconcile(d.id) for d in due))
        return len(due)

    def trigger(self, domain_id: str) -> None:
        """Schedule an immediate out-of-band step without waiting for it."""
        task = asyncio.create_task(self.reconcile(domain_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for triggered out-of-band steps to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def reconcile(self, domain_id: str) -> Optional[CustomDomain]:
        """
        Run one step for a domain, joining a step already in flight.

        Returns the domain as stored after the step.
        """
        task = self._inflight.get(domain_id)
        if task is None:
            task = asyncio.create_task(self._guarded_step(domain_id))
            self._inflight[domain_id] = task

            def _done(finished: asyncio.Task) -> None:
                if self._inflight.get(domain_id) is finished:
                    del self._inflight[domain_id]

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _guarded_step(self, domain_id: str) -> Optional[CustomDomain]:
        async with self._semaphore:
            try:
                return await self._step(domain_id)
            except DomainRemoved:
                logger.info(f"Domain {domain_id} was removed mid-reconciliation, step abandoned")
            except StaleDomainState as e:
                logger.info(f"Domain {domain_id} changed during reconciliation: {e}")
            except Exception as e:
                logger.exception(f"Reconciliation step failed for domain {domain_id}")
                await self._defer_after_error(domain_id, e)
        return await self.registry.get(domain_id)

    async def _defer_after_error(self, domain_id: str, error: Exception) -> None:
        """
        Back off a domain whose step raised something unexpected.

        The failure counts as a transient one: the retry counter and
        ``next_retry_at`` advance as for any other retry, and active
        domains wait a full health-check interval.
        """
        try:
            domain = await self.registry.get(domain_id)
            if domain is None or domain.status not in SCHEDULED_STATUSES:
                return
            now = self.clock()
            changes = {
                "last_checked_at": now,
                "failure_reason": f"Unexpected error: {error}",
            }
            if domain.status != DomainStatus.ACTIVE:
                retry_count = domain.retry_count + 1
                changes["retry_count"] = retry_count
                changes["next_retry_at"] = self.backoff.next_attempt(retry_count, now)
            await self.registry.update_fields(domain_id, domain.status, **changes)
        except (DomainRemoved, StaleDomainState):
            # Moved on since the failed step, nothing to defer
            return
        except Exception:
            logger.exception(f"Could not record failure for domain {domain_id}")

    async def _step(self, domain_id: str) -> Optional[CustomDomain]:
        domain = await self.registry.get(domain_id)
        if domain is None or domain.is_removed:
            return domain

        handlers = {
            DomainStatus.PENDING_DNS: self._verify_dns,
            DomainStatus.DNS_VERIFIED: self._connect,
            DomainStatus.CONNECTING: self._poll_binding,
            DomainStatus.ACTIVE: self._health_check,
            DomainStatus.RECONNECTING: self._reconnect,
        }
        handler = handlers.get(domain.status)
        if handler is None:
            # DNS_FAILED / CONNECT_FAILED: terminal until verify_domain re-arms them
            return domain
        return await handler(domain)

    # ── External calls ───────────────────────────────────────────────

    async def _check_dns(self, domain: CustomDomain) -> DNSCheckResult:
        try:
            return await asyncio.wait_for(
                self.verifier.verify(domain), timeout=self.external_call_timeout
            )
        except asyncio.TimeoutError:
            return DNSCheckResult(
                ok=False,
                mismatch_reason=DNS_ERROR,
                message=f"DNS verification for {domain.hostname} timed out",
                transient=True,
            )

    async def _hosting(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.external_call_timeout)
        except asyncio.TimeoutError as e:
            raise PlatformTransientError("Hosting platform call timed out") from e

    async def release_binding(self, binding_id: str, hostname: str) -> None:
        """Best-effort delete; failures leave a residual binding in the logs."""
        try:
            await self._hosting(self.connector.delete_binding(binding_id))
        except HostingPlatformError as e:
            logger.warning(
                f"Residual hosting binding {binding_id} for {hostname} "
                f"needs cleanup: {e}"
            )

    async def _adopt_binding(self, binding_id: str, hostname: str, write):
        """
        Persist a binding created in this step.

        If the domain was removed while the binding was being created the
        binding is released again before the removal propagates.
        """
        try:
            return await write
        except (DomainRemoved, StaleDomainState):
            await self.release_binding(binding_id, hostname)
            raise

    # ── Steps ────────────────────────────────────────────────────────

    async def _verify_dns(self, domain: CustomDomain) -> CustomDomain:
        result = await self._check_dns(domain)
        now = self.clock()
        check = result.to_dict()

        if result.ok:
            logger.info(f"DNS verified for {domain.hostname}")
            verified = await self.registry.transition(
                domain.id,
                DomainStatus.PENDING_DNS,
                DomainStatus.DNS_VERIFIED,
                retry_count=0,
                next_retry_at=None,
                failure_reason=None,
                last_checked_at=now,
                last_check_result=check,
            )
            # Bind straight away rather than waiting for the next pass
            return await self._connect(verified)

        retry_count = domain.retry_count + 1
        started = domain.verification_started_at or domain.created_at
        if retry_count >= self.dns_max_attempts or now - started >= self.dns_verification_expiry:
            logger.warning(
                f"DNS verification for {domain.hostname} gave up after {retry_count} attempts"
            )
            return await self.registry.transition(
                domain.id,
                DomainStatus.PENDING_DNS,
                DomainStatus.DNS_FAILED,
                retry_count=retry_count,
                next_retry_at=None,
                failure_reason=(
                    f"DNS verification did not succeed; fix your DNS records "
                    f"and verify again. Last result: {result.message}"
                ),
                last_checked_at=now,
                last_check_result=check,
            )

        return await self.registry.update_fields(
            domain.id,
            DomainStatus.PENDING_DNS,
            retry_count=retry_count,
            next_retry_at=self.backoff.next_attempt(retry_count, now),
            failure_reason=result.message,
            last_checked_at=now,
            last_check_result=check,
        )

    async def _connect(self, domain: CustomDomain) -> CustomDomain:
        """DNS_VERIFIED: create the hosting binding."""
        try:
            binding_id = await self._hosting(self.connector.create_binding(domain.hostname))
        except PlatformRejected as e:
            return await self._fail_connect(
                domain, f"Hosting platform rejected {domain.hostname}: {e.reason}"
            )
        except _RETRYABLE as e:
            return await self._retry_or_fail(domain, str(e), self.connect_max_attempts)

        now = self.clock()
        return await self._adopt_binding(
            binding_id,
            domain.hostname,
            self.registry.transition(
                domain.id,
                DomainStatus.DNS_VERIFIED,
                DomainStatus.CONNECTING,
                hosting_binding_id=binding_id,
                next_retry_at=None,
                failure_reason=None,
                last_checked_at=now,
            ),
        )

    async def _poll_binding(self, domain: CustomDomain) -> CustomDomain:
        """CONNECTING: wait for the platform to activate the binding."""
        try:
            status = await self._hosting(
                self.connector.get_binding_status(domain.hosting_binding_id)
            )
        except BindingNotFound:
            return await self._recreate_binding(domain, self.connect_max_attempts)
        except PlatformRejected as e:
            return await self._fail_connect(
                domain, f"Hosting platform rejected {domain.hostname}: {e.reason}"
            )
        except _RETRYABLE as e:
            return await self._retry_or_fail(domain, str(e), self.connect_max_attempts)

        if status.active:
            return await self._activate(domain, status.certificate_status)

        return await self._retry_or_fail(
            domain,
            f"Waiting for the hosting platform to activate {domain.hostname} "
            f"({status.raw_status or 'pending'})",
            self.connect_max_attempts,
            certificate_status=status.certificate_status,
        )

    async def _health_check(self, domain: CustomDomain) -> CustomDomain:
        """ACTIVE: confirm the binding still serves traffic."""
        now = self.clock()
        try:
            status = await self._hosting(
                self.connector.get_binding_status(domain.hosting_binding_id)
            )
        except PlatformRejected as e:
            return await self._demote(domain, f"Hosting binding lost: {e.reason}")
        except _RETRYABLE as e:
            failures = domain.health_failures + 1
            if failures >= self.health_failure_threshold:
                return await self._demote(domain, f"Health check failed: {e}")
            return await self.registry.update_fields(
                domain.id,
                DomainStatus.ACTIVE,
                health_failures=failures,
                last_checked_at=now,
                failure_reason=f"Health check failed: {e}",
            )

        if not status.active:
            return await self._demote(
                domain, f"Hosting binding is no longer active ({status.raw_status})"
            )

        return await self.registry.update_fields(
            domain.id,
            DomainStatus.ACTIVE,
            last_checked_at=now,
            certificate_status=status.certificate_status,
            health_failures=0,
            failure_reason=None,
        )

    async def _reconnect(self, domain: CustomDomain) -> CustomDomain:
        """RECONNECTING: restore the binding or give up after a bound."""
        try:
            status = await self._hosting(
                self.connector.get_binding_status(domain.hosting_binding_id)
            )
        except BindingNotFound:
            return await self._recreate_binding(domain, self.reconnect_max_attempts)
        except PlatformRejected as e:
            return await self._fail_connect(
                domain, f"Hosting platform rejected {domain.hostname}: {e.reason}"
            )
        except _RETRYABLE as e:
            return await self._retry_or_fail(domain, str(e), self.reconnect_max_attempts)

        if status.active:
            return await self._activate(domain, status.certificate_status)

        return await self._retry_or_fail(
            domain,
            f"Hosting binding for {domain.hostname} is not active ({status.raw_status})",
            self.reconnect_max_attempts,
            certificate_status=status.certificate_status,
        )

    # ── Step outcomes ────────────────────────────────────────────────

    async def _activate(self, domain: CustomDomain, certificate_status) -> CustomDomain:
        now = self.clock()
        logger.info(f"Domain {domain.hostname} is active")
        return await self.registry.transition(
            domain.id,
            domain.status,
            DomainStatus.ACTIVE,
            certificate_status=certificate_status,
            next_retry_at=None,
            failure_reason=None,
            health_failures=0,
            last_checked_at=now,
        )

    async def _demote(self, domain: CustomDomain, reason: str) -> CustomDomain:
        now = self.clock()
        logger.warning(f"Domain {domain.hostname} unhealthy, reconnecting: {reason}")
        return await self.registry.transition(
            domain.id,
            DomainStatus.ACTIVE,
            DomainStatus.RECONNECTING,
            retry_count=0,
            health_failures=0,
            next_retry_at=self.backoff.next_attempt(1, now),
            failure_reason=reason,
            last_checked_at=now,
        )

    async def _retry_or_fail(
        self, domain: CustomDomain, message: str, ceiling: int, **changes
    ) -> CustomDomain:
        """Record a failed attempt and back off, or fail once ``ceiling`` is reached."""
        now = self.clock()
        retry_count = domain.retry_count + 1
        if retry_count >= ceiling:
            return await self._fail_connect(
                domain,
                f"Could not connect {domain.hostname} after {retry_count} attempts: {message}",
                retry_count=retry_count,
            )

        logger.info(
            f"Domain {domain.hostname} attempt {retry_count} did not complete: {message}"
        )
        return await self.registry.update_fields(
            domain.id,
            domain.status,
            retry_count=retry_count,
            next_retry_at=self.backoff.next_attempt(retry_count, now),
            failure_reason=message,
            last_checked_at=now,
            **changes,
        )

    async def _recreate_binding(self, domain: CustomDomain, ceiling: int) -> CustomDomain:
        """The platform lost the binding: create a new one and poll it later."""
        logger.warning(f"Hosting binding for {domain.hostname} missing, recreating")
        try:
            binding_id = await self._hosting(self.connector.create_binding(domain.hostname))
        except PlatformRejected as e:
            return await self._fail_connect(
                domain, f"Hosting platform rejected {domain.hostname}: {e.reason}"
            )
        except _RETRYABLE as e:
            return await self._retry_or_fail(domain, str(e), ceiling)

        now = self.clock()
        retry_count = domain.retry_count + 1
        return await self._adopt_binding(
            binding_id,
            domain.hostname,
            self.registry.update_fields(
                domain.id,
                domain.status,
                hosting_binding_id=binding_id,
                retry_count=retry_count,
                next_retry_at=self.backoff.next_attempt(retry_count, now),
                failure_reason="Hosting binding was recreated",
                last_checked_at=now,
            ),
        )

    async def _fail_connect(self, domain: CustomDomain, reason: str, **changes) -> CustomDomain:
        now = self.clock()
        logger.warning(f"Domain {domain.hostname} failed to connect: {reason}")
        failed = await self.registry.transition(
            domain.id,
            domain.status,
            DomainStatus.CONNECT_FAILED,
            hosting_binding_id=None,
            next_retry_at=None,
            failure_reason=reason,
            last_checked_at=now,
            **changes,
        )
        if domain.hosting_binding_id:
            await self.release_binding(domain.hosting_binding_id, domain.hostname)
        return failed
