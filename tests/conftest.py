"""
Pytest configuration for Domain Router tests.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import dns.resolver
import pytest

# Add package directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables
os.environ["DOMAIN_ROUTER_DEBUG"] = "true"
os.environ["DOMAIN_ROUTER_REDIS_URL"] = ""
os.environ["DOMAIN_ROUTER_HOSTING_API_TOKEN"] = "test-token"


class FrozenClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeResolver:
    """
    Stand-in for dns.asyncresolver.Resolver.

    ``records`` maps (name, rdtype) to a list of rdata-like objects or an
    exception to raise. Unknown names raise NXDOMAIN.
    """

    def __init__(self):
        self.records = {}
        self.calls = []
        self.gate = None

    def set(self, name, rdtype, answer):
        self.records[(name.lower(), rdtype)] = answer

    def set_txt(self, name, *values):
        self.set(name, "TXT", [SimpleNamespace(strings=(v.encode(),)) for v in values])

    def set_cname(self, name, target):
        self.set(name, "CNAME", [SimpleNamespace(target=f"{target}.")])

    def set_a(self, name, *addresses):
        self.set(name, "A", [SimpleNamespace(address=a) for a in addresses])

    def publish(self, domain):
        """Publish exactly the records a domain asks for."""
        ownership = domain.dns_records.ownership
        target = domain.dns_records.target
        self.set_txt(ownership.name, domain.verification_token)
        if target.record_type == "CNAME":
            self.set_cname(target.name, target.values[0])
        else:
            self.set_a(target.name, *target.values)

    def lookups(self, rdtype):
        return [name for name, kind in self.calls if kind == rdtype]

    async def resolve(self, name, rdtype):
        self.calls.append((name, rdtype))
        if self.gate is not None:
            await self.gate.wait()
        answer = self.records.get((name.lower(), rdtype))
        if answer is None:
            raise dns.resolver.NXDOMAIN()
        if isinstance(answer, BaseException) or (
            isinstance(answer, type) and issubclass(answer, BaseException)
        ):
            raise answer
        return answer


async def wait_for_calls(mock_or_list, count=1):
    """Yield to the loop until something has been called ``count`` times."""
    for _ in range(1000):
        seen = mock_or_list.await_count if hasattr(mock_or_list, "await_count") else len(mock_or_list)
        if seen >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("expected call never happened")


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def dns_resolver():
    return FakeResolver()


@pytest.fixture
def verifier(dns_resolver):
    """DomainVerifier backed by the fake resolver."""
    from domain_router.domains.verification import DomainVerifier

    verifier = DomainVerifier(timeout=1.0, attempts=2)
    verifier._get_resolver = MagicMock(return_value=dns_resolver)
    return verifier


@pytest.fixture
def connector():
    """Hosting connector double: binds everything and reports it active."""
    from domain_router.domains.hosting import BindingStatus, HostingConnector
    from domain_router.domains.models import CertificateStatus

    fake = MagicMock(spec=HostingConnector)
    fake.create_binding = AsyncMock(
        side_effect=lambda hostname: f"sites/platform-sites/domains/{hostname}"
    )
    fake.get_binding_status = AsyncMock(
        return_value=BindingStatus(
            active=True,
            certificate_status=CertificateStatus.ISSUED,
            raw_status="DOMAIN_ACTIVE",
        )
    )
    fake.delete_binding = AsyncMock(return_value=None)
    fake.close = AsyncMock(return_value=None)
    return fake


@pytest.fixture
def registry(clock):
    """In-memory domain registry."""
    from domain_router.domains.registry import DomainRegistry

    return DomainRegistry(redis_url=None, clock=clock)


@pytest.fixture
def reconciler(registry, verifier, connector, clock):
    from domain_router.domains.reconciler import Reconciler

    return Reconciler(
        registry=registry,
        verifier=verifier,
        connector=connector,
        max_workers=4,
        external_call_timeout=2.0,
        clock=clock,
    )


@pytest.fixture
def sites():
    from domain_router.routing.sites import InMemorySiteRegistry, PublishedSite

    registry = InMemorySiteRegistry()
    registry.publish(PublishedSite(
        tenant_id="t1",
        site_id="site-1",
        slug="acme",
        name="Acme Shop",
        published_at=datetime(2025, 12, 1, tzinfo=timezone.utc),
    ))
    registry.publish(PublishedSite(
        tenant_id="t2",
        site_id="site-9",
        slug="globex",
        name="Globex",
        published_at=datetime(2025, 12, 1, tzinfo=timezone.utc),
    ))
    return registry


@pytest.fixture
def resolver(registry, sites):
    """Routing resolver subscribed to registry transitions."""
    from domain_router.routing.resolver import RoutingResolver

    resolver = RoutingResolver(registry=registry, sites=sites, platform_domain="platform.tld")
    registry.add_listener(resolver.on_transition)
    return resolver


@pytest.fixture
def service(registry, verifier, reconciler, clock):
    from domain_router.domains.service import DomainService

    return DomainService(
        registry=registry,
        verifier=verifier,
        reconciler=reconciler,
        platform_domain="platform.tld",
        edge_target="edge.platform.tld",
        edge_ips=["198.51.100.10"],
        clock=clock,
    )


@pytest.fixture
def place(registry):
    """Store a domain and walk it along the happy path up to ``status``."""
    from domain_router.domains.models import DomainStatus

    steps = [
        (DomainStatus.DNS_VERIFIED, {}),
        (DomainStatus.CONNECTING, {"hosting_binding_id": "b-1"}),
        (DomainStatus.ACTIVE, {}),
        (DomainStatus.RECONNECTING, {}),
    ]

    async def walk(domain, status, binding_id="b-1"):
        await registry.create(domain)
        current = DomainStatus.PENDING_DNS
        for target, changes in steps:
            if current == status:
                break
            if "hosting_binding_id" in changes:
                changes = {"hosting_binding_id": binding_id}
            domain = await registry.transition(domain.id, current, target, **changes)
            current = target
        return domain

    return walk


@pytest.fixture
def new_domain(clock):
    """Factory for unsaved PENDING_DNS domains."""
    from domain_router.domains.models import CustomDomain

    def make(hostname="shop.example.com", tenant_id="t1", **kwargs):
        return CustomDomain.create(
            tenant_id=tenant_id,
            hostname=hostname,
            edge_ips=["198.51.100.10"],
            now=clock(),
            **kwargs,
        )

    return make
