"""
Tests for DNS verification.
"""

import dns.exception
import dns.resolver
import pytest

from domain_router.domains.verification import (
    DNS_ERROR,
    TARGET_MISMATCH,
    TARGET_MISSING,
    TXT_MISMATCH,
    TXT_MISSING,
    DomainVerifier,
)


TXT_NAME = "_platform-verify.shop.example.com"


class TestVerifyOwnership:
    @pytest.mark.asyncio
    async def test_matching_records_verify(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)

        result = await verifier.verify(domain)

        assert result.ok
        assert result.txt_ok and result.target_ok
        assert result.mismatch_reason is None
        assert result.observed_target == ["edge.platform.tld"]
        assert not result.transient

    @pytest.mark.asyncio
    async def test_token_found_among_other_txt_values(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)
        dns_resolver.set_txt(TXT_NAME, "google-site-verification=abc", domain.verification_token)

        result = await verifier.verify(domain)
        assert result.ok

    @pytest.mark.asyncio
    async def test_split_txt_strings_are_joined(self, verifier, dns_resolver, new_domain):
        from types import SimpleNamespace

        domain = new_domain()
        dns_resolver.publish(domain)
        token = domain.verification_token
        dns_resolver.set(TXT_NAME, "TXT", [
            SimpleNamespace(strings=(token[:10].encode(), token[10:].encode()))
        ])

        result = await verifier.verify(domain)
        assert result.ok

    @pytest.mark.asyncio
    async def test_wrong_token_is_a_mismatch(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)
        dns_resolver.set_txt(TXT_NAME, "some-other-token")

        result = await verifier.verify(domain)

        assert not result.ok
        assert result.mismatch_reason == TXT_MISMATCH
        assert result.observed_txt == ["some-other-token"]
        assert "none match the verification token" in result.message
        assert not result.transient

    @pytest.mark.asyncio
    async def test_missing_txt(self, verifier, dns_resolver, new_domain):
        domain = new_domain()

        result = await verifier.verify(domain)

        assert not result.ok
        assert result.mismatch_reason == TXT_MISSING
        assert TXT_NAME in result.message

    @pytest.mark.asyncio
    async def test_no_answer_is_missing(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)
        dns_resolver.set(TXT_NAME, "TXT", dns.resolver.NoAnswer())

        result = await verifier.verify(domain)
        assert result.mismatch_reason == TXT_MISSING

    @pytest.mark.asyncio
    async def test_timeout_is_retried_then_transient(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)
        dns_resolver.set(TXT_NAME, "TXT", dns.exception.Timeout())

        result = await verifier.verify(domain)

        assert not result.ok
        assert result.mismatch_reason == DNS_ERROR
        assert result.transient
        # Two attempts configured in the fixture
        assert dns_resolver.lookups("TXT") == [TXT_NAME, TXT_NAME]

    @pytest.mark.asyncio
    async def test_servfail_is_transient_error(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)
        dns_resolver.set("shop.example.com", "CNAME", dns.resolver.NoNameservers())

        result = await verifier.verify(domain)

        assert result.txt_ok
        assert not result.ok
        assert result.mismatch_reason == DNS_ERROR
        assert result.transient


class TestVerifyTarget:
    @pytest.mark.asyncio
    async def test_cname_elsewhere_is_mismatch(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.publish(domain)
        dns_resolver.set_cname("shop.example.com", "shops.myshopify.com")

        result = await verifier.verify(domain)

        assert result.txt_ok
        assert result.mismatch_reason == TARGET_MISMATCH
        assert result.observed_target == ["shops.myshopify.com"]
        assert "expected edge.platform.tld" in result.message

    @pytest.mark.asyncio
    async def test_missing_target_is_distinct_from_mismatch(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.set_txt(TXT_NAME, domain.verification_token)

        result = await verifier.verify(domain)

        assert result.txt_ok
        assert result.mismatch_reason == TARGET_MISSING

    @pytest.mark.asyncio
    async def test_flattened_cname_matches_edge_addresses(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.set_txt(TXT_NAME, domain.verification_token)
        dns_resolver.set_a("edge.platform.tld", "198.51.100.10")
        dns_resolver.set_a("shop.example.com", "198.51.100.10")

        result = await verifier.verify(domain)
        assert result.ok

    @pytest.mark.asyncio
    async def test_flattened_cname_to_other_addresses(self, verifier, dns_resolver, new_domain):
        domain = new_domain()
        dns_resolver.set_txt(TXT_NAME, domain.verification_token)
        dns_resolver.set_a("edge.platform.tld", "198.51.100.10")
        dns_resolver.set_a("shop.example.com", "203.0.113.5")

        result = await verifier.verify(domain)
        assert result.mismatch_reason == TARGET_MISMATCH
        assert result.observed_target == ["203.0.113.5"]

    @pytest.mark.asyncio
    async def test_apex_a_records(self, verifier, dns_resolver, new_domain):
        domain = new_domain("example.com")
        assert domain.dns_records.target.record_type == "A"
        dns_resolver.publish(domain)

        result = await verifier.verify(domain)
        assert result.ok

    @pytest.mark.asyncio
    async def test_apex_wrong_ip(self, verifier, dns_resolver, new_domain):
        domain = new_domain("example.com")
        dns_resolver.set_txt("_platform-verify.example.com", domain.verification_token)
        dns_resolver.set_a("example.com", "203.0.113.5")

        result = await verifier.verify(domain)
        assert result.mismatch_reason == TARGET_MISMATCH


class TestInstructions:
    def test_instructions_for_subdomain(self, new_domain):
        domain = new_domain()
        instructions = DomainVerifier().get_verification_instructions(domain)

        assert instructions[0]["recordType"] == "TXT"
        assert instructions[0]["name"] == TXT_NAME
        assert instructions[0]["value"] == domain.verification_token
        assert instructions[1]["recordType"] == "CNAME"
        assert instructions[1]["name"] == "shop.example.com"
        assert instructions[1]["value"] == "edge.platform.tld"
        assert all(i["description"] for i in instructions)

    def test_instructions_use_hosts_relative_to_root(self, new_domain):
        instructions = DomainVerifier().get_verification_instructions(new_domain())

        assert [i["host"] for i in instructions] == ["_platform-verify.shop", "shop"]

    def test_instructions_for_apex(self, new_domain):
        domain = new_domain("example.com")
        instructions = DomainVerifier().get_verification_instructions(domain)

        assert [i["recordType"] for i in instructions] == ["TXT", "A", "CNAME"]
        assert instructions[1]["value"] == "198.51.100.10"
        assert [i["host"] for i in instructions] == ["_platform-verify", "@", "www"]

        www = instructions[2]
        assert www["name"] == "www.example.com"
        assert www["value"] == "example.com"
