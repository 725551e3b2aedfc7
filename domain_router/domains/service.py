"""
Domain administration operations.

Everything the dashboard can do to a custom domain goes through here:
claim a hostname, inspect it, ask for re-verification and release it.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .errors import DomainNotFound, DomainRemoved, InvalidHostname, StaleDomainState
from .hostnames import clean_hostname, is_platform_hostname
from .models import TERMINAL_UNTIL_REVERIFY, CustomDomain, DomainStatus, utcnow
from .reconciler import Reconciler
from .registry import DomainRegistry
from .verification import DomainVerifier

logger = logging.getLogger("domain_router.domains.service")


class DomainService:
    """Tenant-facing custom domain management."""

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: DomainVerifier,
        reconciler: Reconciler,
        platform_domain: str = "platform.tld",
        verification_prefix: str = "_platform-verify",
        edge_target: str = "edge.platform.tld",
        edge_ips: Sequence[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.verifier = verifier
        self.reconciler = reconciler
        self.platform_domain = platform_domain.lower().rstrip(".")
        self.verification_prefix = verification_prefix
        self.edge_target = edge_target
        self.edge_ips = tuple(edge_ips)
        self.clock = clock

    async def register_domain(
        self, tenant_id: str, hostname: str, site_id: Optional[str] = None
    ) -> CustomDomain:
        """
        Claim a hostname for a tenant.

        The record starts in PENDING_DNS and a reconciliation step is
        scheduled right away so a tenant with DNS already in place does not
        wait for the next pass.
        """
        hostname = clean_hostname(hostname)
        if is_platform_hostname(hostname, self.platform_domain):
            raise InvalidHostname(
                f"{hostname} is a platform hostname and cannot be added as a custom domain"
            )

        domain = CustomDomain.create(
            tenant_id=tenant_id,
            hostname=hostname,
            site_id=site_id,
            verification_prefix=self.verification_prefix,
            edge_target=self.edge_target,
            edge_ips=self.edge_ips,
            now=self.clock(),
        )
        await self.registry.create(domain)
        self.reconciler.trigger(domain.id)
        return domain

    async def get_status(self, domain_id: str) -> CustomDomain:
        domain = await self.registry.get(domain_id)
        if not domain:
            raise DomainNotFound(f"Domain {domain_id} not found", domain_id)
        return domain

    async def _get_live(self, domain_id: str) -> CustomDomain:
        domain = await self.get_status(domain_id)
        if domain.is_removed:
            raise DomainRemoved(f"Domain {domain.hostname} has been removed", domain_id)
        return domain

    async def list_domains(
        self, tenant_id: str, include_removed: bool = False
    ) -> List[CustomDomain]:
        return await self.registry.list_by_tenant(tenant_id, include_removed=include_removed)

    async def verify_domain(self, domain_id: str) -> CustomDomain:
        """
        Run a reconciliation step for the domain now.

        A domain parked in DNS_FAILED or CONNECT_FAILED is first moved back
        to PENDING_DNS with fresh retry bookkeeping. Its token and DNS
        records are kept so the tenant's existing records stay valid.
        """
        domain = await self._get_live(domain_id)

        if domain.status in TERMINAL_UNTIL_REVERIFY:
            try:
                await self.registry.transition(
                    domain_id,
                    domain.status,
                    DomainStatus.PENDING_DNS,
                    retry_count=0,
                    next_retry_at=None,
                    failure_reason=None,
                    health_failures=0,
                    verification_started_at=self.clock(),
                )
            except StaleDomainState as e:
                # Another verify got there first
                logger.debug(f"Re-verify of {domain.hostname} raced: {e}")

        result = await self.reconciler.reconcile(domain_id)
        if result is None:
            raise DomainNotFound(f"Domain {domain_id} not found", domain_id)
        return result

    async def remove_domain(self, domain_id: str) -> CustomDomain:
        """
        Release a domain.

        The hosting binding is deleted best-effort; a failure is logged as
        a residual binding and the domain still ends REMOVED.
        """
        domain = await self._get_live(domain_id)

        if domain.hosting_binding_id:
            await self.reconciler.release_binding(domain.hosting_binding_id, domain.hostname)

        event = await self.registry.mark_removed(domain_id)

        # A reconciliation step may have bound the domain after we read it
        late_binding = event.previous_binding_id
        if late_binding and late_binding != domain.hosting_binding_id:
            await self.reconciler.release_binding(late_binding, domain.hostname)

        logger.info(f"Removed domain {domain.hostname} (tenant {domain.tenant_id})")
        return event.domain

    async def get_instructions(self, domain_id: str) -> List[dict]:
        domain = await self._get_live(domain_id)
        return self.verifier.get_verification_instructions(domain)
