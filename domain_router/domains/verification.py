"""
DNS verification for custom domains.

Ownership is proven by a TXT record at ``<prefix>.<hostname>`` carrying the
domain's verification token. Traffic is routed by a CNAME to the edge
target (subdomains) or A records to the edge IPs (apex domains). Both
checks must pass before a hostname is bound on the hosting platform.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

import dns.asyncresolver
import dns.exception
import dns.resolver

from .hostnames import is_apex, relative_host, root_domain
from .models import CustomDomain

logger = logging.getLogger("domain_router.domains.verification")

# Mismatch reasons reported to the dashboard
TXT_MISSING = "txt_missing"
TXT_MISMATCH = "txt_mismatch"
TARGET_MISSING = "target_missing"
TARGET_MISMATCH = "target_mismatch"
DNS_ERROR = "dns_error"

_ABSENT = (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer)
_TRANSIENT = (dns.exception.Timeout, dns.resolver.NoNameservers)


class _Lookup:
    """Outcome of a single resolver query."""

    __slots__ = ("records", "absent", "error")

    def __init__(self, records=None, absent: bool = False, error: Optional[str] = None):
        self.records = records or []
        self.absent = absent
        self.error = error


@dataclass
class DNSCheckResult:
    """Result of checking a domain's ownership and target records."""

    ok: bool
    txt_ok: bool = False
    target_ok: bool = False
    observed_txt: List[str] = field(default_factory=list)
    observed_target: List[str] = field(default_factory=list)
    mismatch_reason: Optional[str] = None
    message: str = ""
    transient: bool = False

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "txt_ok": self.txt_ok,
            "target_ok": self.target_ok,
            "observed_txt": list(self.observed_txt),
            "observed_target": list(self.observed_target),
            "mismatch_reason": self.mismatch_reason,
            "message": self.message,
            "transient": self.transient,
        }


class DomainVerifier:
    """Verifies domain ownership and routing via DNS records."""

    def __init__(
        self,
        timeout: float = 5.0,
        attempts: int = 2,
        nameservers: Optional[List[str]] = None,
    ):
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.nameservers = nameservers

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver()
        if self.nameservers:
            resolver.nameservers = self.nameservers
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout
        return resolver

    async def _query(self, resolver, name: str, rdtype: str) -> _Lookup:
        """
        Resolve one name, retrying only resolver timeouts.

        NXDOMAIN and NoAnswer are reported as absent; every other resolver
        failure is reported as an error. Nothing is raised.
        """
        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                answers = await resolver.resolve(name, rdtype)
                return _Lookup(records=list(answers))
            except _ABSENT:
                return _Lookup(absent=True)
            except _TRANSIENT as e:
                last_error = type(e).__name__
                logger.debug(
                    f"{rdtype} lookup for {name} failed ({last_error}), "
                    f"attempt {attempt}/{self.attempts}"
                )
            except dns.exception.DNSException as e:
                return _Lookup(error=type(e).__name__)
        return _Lookup(error=last_error)

    @staticmethod
    def _txt_values(records) -> List[str]:
        values = []
        for rdata in records:
            # TXT records may be split into multiple strings
            values.append("".join(
                s.decode() if isinstance(s, bytes) else s
                for s in rdata.strings
            ))
        return values

    async def _resolve_addresses(self, resolver, name: str) -> Tuple[Set[str], Optional[str]]:
        lookup = await self._query(resolver, name, "A")
        return {str(r.address) for r in lookup.records}, lookup.error

    async def check_ownership(
        self, resolver, domain: CustomDomain
    ) -> Tuple[bool, List[str], Optional[str], Optional[str]]:
        """
        Check the ownership TXT record.

        Returns (ok, observed values, mismatch reason, resolver error).
        """
        record = domain.dns_records.ownership
        expected = domain.verification_token
        lookup = await self._query(resolver, record.name, "TXT")
        if lookup.error:
            return False, [], DNS_ERROR, lookup.error

        found = self._txt_values(lookup.records)
        if expected in found:
            return True, found, None, None
        if not found:
            return False, found, TXT_MISSING, None
        return False, found, TXT_MISMATCH, None

    async def check_target(
        self, resolver, domain: CustomDomain
    ) -> Tuple[bool, List[str], Optional[str], Optional[str]]:
        """
        Check the routing record (CNAME or A).

        A CNAME pointing elsewhere is a mismatch. A hostname without a
        CNAME may still be valid when its A records match the edge, which
        covers providers that flatten CNAMEs.
        """
        record = domain.dns_records.target
        hostname = domain.hostname

        if record.record_type == "CNAME":
            expected_target = record.values[0]
            lookup = await self._query(resolver, hostname, "CNAME")
            if lookup.error:
                return False, [], DNS_ERROR, lookup.error
            targets = [str(r.target).lower().rstrip(".") for r in lookup.records]
            if expected_target in targets:
                return True, targets, None, None
            if targets:
                return False, targets, TARGET_MISMATCH, None
            expected_ips, error = await self._resolve_addresses(resolver, expected_target)
            if error:
                return False, [], DNS_ERROR, error
        else:
            expected_ips = set(record.values)

        observed, error = await self._resolve_addresses(resolver, hostname)
        if error:
            return False, [], DNS_ERROR, error
        if not observed:
            return False, [], TARGET_MISSING, None
        if expected_ips and observed & expected_ips:
            return True, sorted(observed), None, None
        return False, sorted(observed), TARGET_MISMATCH, None

    async def verify(self, domain: CustomDomain) -> DNSCheckResult:
        """
        Run ownership and target checks for a domain.

        Resolver errors are never fatal here: they produce a result with
        ``transient=True`` and the reconciler decides when to try again.
        """
        resolver = self._get_resolver()
        hostname = domain.hostname

        txt_ok, observed_txt, txt_reason, txt_error = await self.check_ownership(
            resolver, domain
        )
        target_ok, observed_target, target_reason, target_error = await self.check_target(
            resolver, domain
        )

        result = DNSCheckResult(
            ok=txt_ok and target_ok,
            txt_ok=txt_ok,
            target_ok=target_ok,
            observed_txt=observed_txt,
            observed_target=observed_target,
            transient=bool(txt_error or target_error),
        )

        ownership = domain.dns_records.ownership
        target = domain.dns_records.target
        if result.ok:
            result.message = f"DNS verified for {hostname}"
        elif txt_reason:
            result.mismatch_reason = txt_reason
            if txt_reason == TXT_MISSING:
                result.message = f"No TXT records found at {ownership.name}"
            elif txt_reason == TXT_MISMATCH:
                result.message = (
                    f"TXT records found at {ownership.name} but none match "
                    f"the verification token"
                )
            else:
                result.message = f"TXT lookup for {ownership.name} failed: {txt_error}"
        else:
            result.mismatch_reason = target_reason
            expected = ", ".join(target.values)
            if target_reason == TARGET_MISSING:
                result.message = (
                    f"No {target.record_type} record found for {hostname}, "
                    f"expected {expected}"
                )
            elif target_reason == TARGET_MISMATCH:
                result.message = (
                    f"{hostname} points to {', '.join(observed_target)}, "
                    f"expected {expected}"
                )
            else:
                result.message = f"Target lookup for {hostname} failed: {target_error}"

        logger.debug(f"DNS check for {hostname}: {result.message}")
        return result

    def get_verification_instructions(self, domain: CustomDomain) -> List[dict]:
        """
        Return human-actionable DNS instructions for a domain.

        ``name`` is the fully qualified record name; ``host`` is the same
        name relative to the registrable root, which is what most DNS
        provider dashboards ask for (``@`` for the root itself). Apex
        domains also get an optional ``www`` CNAME back to the apex.
        """
        ownership = domain.dns_records.ownership
        target = domain.dns_records.target
        root = root_domain(domain.hostname)
        instructions = [
            {
                "recordType": "TXT",
                "name": ownership.name,
                "host": relative_host(ownership.name, root),
                "value": ownership.values[0],
                "description": (
                    f"Add a TXT record at {ownership.name} to prove ownership of "
                    f"{domain.hostname}"
                ),
            }
        ]
        for value in target.values:
            instructions.append({
                "recordType": target.record_type,
                "name": target.name,
                "host": relative_host(target.name, root),
                "value": value,
                "description": (
                    f"Add a {target.record_type} record for {target.name} "
                    f"pointing to {value}"
                ),
            })
        if is_apex(domain.hostname):
            www = f"www.{domain.hostname}"
            instructions.append({
                "recordType": "CNAME",
                "name": www,
                "host": "www",
                "value": domain.hostname,
                "description": f"Optional: redirect {www} to {domain.hostname}",
            })
        return instructions
