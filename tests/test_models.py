"""
Tests for the custom domain model and hostname helpers.
"""

from datetime import timedelta

import pytest

from domain_router.domains.backoff import BackoffPolicy
from domain_router.domains.errors import InvalidHostname
from domain_router.domains.hostnames import (
    clean_hostname,
    is_apex,
    is_platform_hostname,
    normalize_host,
    platform_slug,
    relative_host,
    root_domain,
)
from domain_router.domains.models import (
    BOUND_STATUSES,
    CertificateStatus,
    CustomDomain,
    DNSRecords,
    DomainStatus,
    can_transition,
)


# ── Hostnames ────────────────────────────────────────────────────────


class TestHostnames:
    @pytest.mark.parametrize("raw,expected", [
        ("shop.example.com", "shop.example.com"),
        ("  Shop.Example.COM ", "shop.example.com"),
        ("https://shop.example.com/products?id=1", "shop.example.com"),
        ("shop.example.com.", "shop.example.com"),
        ("shop.example.com:8443", "shop.example.com"),
        ("shop.xn--p1ai", "shop.xn--p1ai"),
        ("shop.example.xn--fiqs8s", "shop.example.xn--fiqs8s"),
        ("M\u00fcnchen.de", "xn--mnchen-3ya.de"),
    ])
    def test_clean_hostname(self, raw, expected):
        assert clean_hostname(raw) == expected

    @pytest.mark.parametrize("raw", [
        "",
        "localhost",
        "-bad.example.com",
        "shop_1.example.com",
        "exa mple.com",
        "a" * 64 + ".example.com",
        "192.168.1.10",
        "example.123",
        "example.c",
        "shop.xn--p1ai-",
    ])
    def test_clean_hostname_rejects(self, raw):
        with pytest.raises(InvalidHostname):
            clean_hostname(raw)

    def test_normalize_host(self):
        assert normalize_host("Shop.Example.com:443") == "shop.example.com"
        assert normalize_host("shop.example.com.") == "shop.example.com"
        assert normalize_host(None) == ""

    def test_is_apex(self):
        assert is_apex("example.com")
        assert not is_apex("www.example.com")

    def test_unicode_hostname_rejected_when_not_encodable(self):
        with pytest.raises(InvalidHostname):
            clean_hostname("\u0301shop.example.com")

    def test_relative_host(self):
        assert root_domain("shop.example.com") == "example.com"
        assert relative_host("example.com", "example.com") == "@"
        assert relative_host("_platform-verify.shop.example.com", "example.com") == (
            "_platform-verify.shop"
        )

    def test_platform_hostnames(self):
        assert is_platform_hostname("acme.platform.tld", "platform.tld")
        assert is_platform_hostname("platform.tld", "platform.tld")
        assert not is_platform_hostname("notplatform.tld", "platform.tld")

    def test_platform_slug(self):
        assert platform_slug("acme.platform.tld", "platform.tld") == "acme"
        assert platform_slug("a.b.platform.tld", "platform.tld") is None
        assert platform_slug("platform.tld", "platform.tld") is None
        assert platform_slug("shop.example.com", "platform.tld") is None


# ── DNS records ──────────────────────────────────────────────────────


class TestDNSRecords:
    def test_subdomain_uses_cname(self):
        records = DNSRecords.build(
            "shop.example.com", "tok", edge_target="Edge.Platform.TLD.", edge_ips=["198.51.100.10"]
        )
        assert records.ownership.record_type == "TXT"
        assert records.ownership.name == "_platform-verify.shop.example.com"
        assert records.ownership.values == ("tok",)
        assert records.target.record_type == "CNAME"
        assert records.target.values == ("edge.platform.tld",)

    def test_apex_uses_a_records(self):
        records = DNSRecords.build(
            "example.com", "tok", edge_ips=["198.51.100.10", "198.51.100.11"]
        )
        assert records.target.record_type == "A"
        assert records.target.name == "example.com"
        assert records.target.values == ("198.51.100.10", "198.51.100.11")

    def test_apex_without_edge_ips_falls_back_to_cname(self):
        records = DNSRecords.build("example.com", "tok")
        assert records.target.record_type == "CNAME"

    def test_custom_prefix(self):
        records = DNSRecords.build("shop.example.com", "tok", verification_prefix="_acme-check")
        assert records.ownership.name == "_acme-check.shop.example.com"


# ── CustomDomain ─────────────────────────────────────────────────────


class TestCustomDomain:
    def test_create_defaults(self, new_domain, clock):
        domain = new_domain()
        assert domain.status == DomainStatus.PENDING_DNS
        assert domain.hosting_binding_id is None
        assert domain.certificate_status == CertificateStatus.PENDING
        assert domain.retry_count == 0
        assert len(domain.verification_token) >= 32
        assert domain.verification_started_at == clock()
        assert domain.dns_records.ownership.values == (domain.verification_token,)

    def test_tokens_are_unique(self, new_domain):
        assert new_domain().verification_token != new_domain().verification_token

    def test_serialization_keeps_token_and_records(self, new_domain, clock):
        domain = new_domain(site_id="site-1")
        domain.last_checked_at = clock() + timedelta(minutes=1)
        domain.last_check_result = {"ok": False, "mismatch_reason": "txt_missing"}

        restored = CustomDomain.from_dict(domain.to_dict())

        assert restored == domain
        assert restored.dns_records == domain.dns_records
        assert restored.verification_token == domain.verification_token

    def test_api_response_hides_secrets(self, new_domain):
        domain = new_domain()
        domain.hosting_binding_id = "sites/x/domains/shop.example.com"
        resp = domain.to_api_response()

        assert resp["domainId"] == domain.id
        assert resp["status"] == "PENDING_DNS"
        assert domain.verification_token not in str(resp)
        assert "hostingBindingId" not in resp
        assert "failureReason" not in resp

    def test_api_response_includes_failure_reason(self, new_domain):
        domain = new_domain()
        domain.failure_reason = "No TXT records found"
        assert domain.to_api_response()["failureReason"] == "No TXT records found"


class TestStateMachine:
    def test_happy_path(self):
        assert can_transition(DomainStatus.PENDING_DNS, DomainStatus.DNS_VERIFIED)
        assert can_transition(DomainStatus.DNS_VERIFIED, DomainStatus.CONNECTING)
        assert can_transition(DomainStatus.CONNECTING, DomainStatus.ACTIVE)

    def test_reverify_from_failures(self):
        assert can_transition(DomainStatus.DNS_FAILED, DomainStatus.PENDING_DNS)
        assert can_transition(DomainStatus.CONNECT_FAILED, DomainStatus.PENDING_DNS)

    def test_removed_is_terminal(self):
        for status in DomainStatus:
            assert not can_transition(DomainStatus.REMOVED, status)

    def test_every_live_status_can_be_removed(self):
        for status in DomainStatus:
            if status != DomainStatus.REMOVED:
                assert can_transition(status, DomainStatus.REMOVED)

    def test_no_shortcuts(self):
        assert not can_transition(DomainStatus.PENDING_DNS, DomainStatus.ACTIVE)
        assert not can_transition(DomainStatus.ACTIVE, DomainStatus.PENDING_DNS)
        assert not can_transition(DomainStatus.DNS_FAILED, DomainStatus.DNS_VERIFIED)

    def test_bound_statuses(self):
        assert BOUND_STATUSES == {
            DomainStatus.CONNECTING, DomainStatus.ACTIVE, DomainStatus.RECONNECTING,
        }


class TestBackoffPolicy:
    def test_doubles_from_base(self):
        policy = BackoffPolicy()
        assert policy.delay(1) == timedelta(minutes=1)
        assert policy.delay(2) == timedelta(minutes=2)
        assert policy.delay(3) == timedelta(minutes=4)

    def test_capped(self):
        policy = BackoffPolicy()
        assert policy.delay(7) == timedelta(hours=1)
        assert policy.delay(10_000) == timedelta(hours=1)

    def test_no_delay_before_first_failure(self):
        assert BackoffPolicy().delay(0) == timedelta(0)
