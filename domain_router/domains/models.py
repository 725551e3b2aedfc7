"""
Custom domain data model for Domain Router.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from .hostnames import is_apex


class DomainStatus(str, Enum):
    """Lifecycle states of a custom domain."""

    PENDING_DNS = "PENDING_DNS"
    DNS_VERIFIED = "DNS_VERIFIED"
    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    DNS_FAILED = "DNS_FAILED"
    CONNECT_FAILED = "CONNECT_FAILED"
    RECONNECTING = "RECONNECTING"
    REMOVED = "REMOVED"


class CertificateStatus(str, Enum):
    """Mirror of the hosting platform's certificate issuance state."""

    PENDING = "PENDING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"


TRANSITIONS: Dict[DomainStatus, FrozenSet[DomainStatus]] = {
    DomainStatus.PENDING_DNS: frozenset({
        DomainStatus.DNS_VERIFIED, DomainStatus.DNS_FAILED, DomainStatus.REMOVED,
    }),
    DomainStatus.DNS_VERIFIED: frozenset({
        DomainStatus.CONNECTING, DomainStatus.CONNECT_FAILED, DomainStatus.REMOVED,
    }),
    DomainStatus.CONNECTING: frozenset({
        DomainStatus.ACTIVE, DomainStatus.CONNECT_FAILED, DomainStatus.REMOVED,
    }),
    DomainStatus.ACTIVE: frozenset({
        DomainStatus.RECONNECTING, DomainStatus.REMOVED,
    }),
    DomainStatus.RECONNECTING: frozenset({
        DomainStatus.ACTIVE, DomainStatus.CONNECT_FAILED, DomainStatus.REMOVED,
    }),
    DomainStatus.DNS_FAILED: frozenset({
        DomainStatus.PENDING_DNS, DomainStatus.REMOVED,
    }),
    DomainStatus.CONNECT_FAILED: frozenset({
        DomainStatus.PENDING_DNS, DomainStatus.REMOVED,
    }),
    DomainStatus.REMOVED: frozenset(),
}

# Statuses in which a hosting binding must exist
BOUND_STATUSES = frozenset({
    DomainStatus.CONNECTING, DomainStatus.ACTIVE, DomainStatus.RECONNECTING,
})

# Statuses that wait for the tenant to call verify again
TERMINAL_UNTIL_REVERIFY = frozenset({
    DomainStatus.DNS_FAILED, DomainStatus.CONNECT_FAILED,
})


def can_transition(current: DomainStatus, new: DomainStatus) -> bool:
    return new in TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class DNSRecord:
    """A single DNS record the tenant must publish."""

    record_type: str
    name: str
    values: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "record_type": self.record_type,
            "name": self.name,
            "values": list(self.values),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DNSRecord":
        return cls(
            record_type=data["record_type"],
            name=data["name"],
            values=tuple(data.get("values", ())),
        )


@dataclass(frozen=True)
class DNSRecords:
    """Expected ownership and target records for a hostname."""

    ownership: DNSRecord
    target: DNSRecord

    @classmethod
    def build(
        cls,
        hostname: str,
        verification_token: str,
        verification_prefix: str = "_platform-verify",
        edge_target: str = "edge.platform.tld",
        edge_ips: Sequence[str] = (),
    ) -> "DNSRecords":
        """
        Compute the records for a hostname.

        Apex hostnames cannot carry a CNAME, so they are pointed with A
        records at the edge IPs. Everything else gets a CNAME to the edge.
        """
        ownership = DNSRecord(
            record_type="TXT",
            name=f"{verification_prefix}.{hostname}",
            values=(verification_token,),
        )
        if is_apex(hostname) and edge_ips:
            target = DNSRecord(record_type="A", name=hostname, values=tuple(edge_ips))
        else:
            target = DNSRecord(
                record_type="CNAME",
                name=hostname,
                values=(edge_target.lower().rstrip("."),),
            )
        return cls(ownership=ownership, target=target)

    def to_dict(self) -> dict:
        return {
            "ownership": self.ownership.to_dict(),
            "target": self.target.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DNSRecords":
        return cls(
            ownership=DNSRecord.from_dict(data["ownership"]),
            target=DNSRecord.from_dict(data["target"]),
        )

    def to_api_response(self) -> List[dict]:
        return [
            {
                "recordType": record.record_type,
                "name": record.name,
                "values": list(record.values),
            }
            for record in (self.ownership, self.target)
        ]


@dataclass
class CustomDomain:
    """A hostname claimed by a tenant and its provisioning state."""

    tenant_id: str
    hostname: str
    dns_records: DNSRecords
    verification_token: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    site_id: Optional[str] = None
    status: DomainStatus = DomainStatus.PENDING_DNS
    hosting_binding_id: Optional[str] = None
    certificate_status: CertificateStatus = CertificateStatus.PENDING
    last_checked_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    verification_started_at: Optional[datetime] = None
    health_failures: int = 0
    last_check_result: Optional[dict] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        tenant_id: str,
        hostname: str,
        site_id: Optional[str] = None,
        verification_prefix: str = "_platform-verify",
        edge_target: str = "edge.platform.tld",
        edge_ips: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> "CustomDomain":
        """Build a new PENDING_DNS record with a fresh token and records."""
        now = now or utcnow()
        token = secrets.token_urlsafe(32)
        records = DNSRecords.build(
            hostname,
            token,
            verification_prefix=verification_prefix,
            edge_target=edge_target,
            edge_ips=edge_ips,
        )
        return cls(
            tenant_id=tenant_id,
            hostname=hostname,
            site_id=site_id,
            dns_records=records,
            verification_token=token,
            verification_started_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status == DomainStatus.ACTIVE

    @property
    def is_removed(self) -> bool:
        return self.status == DomainStatus.REMOVED

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "hostname": self.hostname,
            "site_id": self.site_id,
            "status": self.status.value,
            "verification_token": self.verification_token,
            "dns_records": self.dns_records.to_dict(),
            "hosting_binding_id": self.hosting_binding_id,
            "certificate_status": self.certificate_status.value,
            "last_checked_at": _iso(self.last_checked_at),
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "next_retry_at": _iso(self.next_retry_at),
            "verification_started_at": _iso(self.verification_started_at),
            "health_failures": self.health_failures,
            "last_check_result": self.last_check_result,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CustomDomain":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            hostname=data["hostname"],
            site_id=data.get("site_id"),
            status=DomainStatus(data.get("status", DomainStatus.PENDING_DNS.value)),
            verification_token=data["verification_token"],
            dns_records=DNSRecords.from_dict(data["dns_records"]),
            hosting_binding_id=data.get("hosting_binding_id"),
            certificate_status=CertificateStatus(
                data.get("certificate_status", CertificateStatus.PENDING.value)
            ),
            last_checked_at=_parse(data.get("last_checked_at")),
            failure_reason=data.get("failure_reason"),
            retry_count=data.get("retry_count", 0),
            next_retry_at=_parse(data.get("next_retry_at")),
            verification_started_at=_parse(data.get("verification_started_at")),
            health_failures=data.get("health_failures", 0),
            last_check_result=data.get("last_check_result"),
            created_at=_parse(data.get("created_at")) or utcnow(),
            updated_at=_parse(data.get("updated_at")) or utcnow(),
        )

    def to_api_response(self) -> dict:
        """API view: no verification token and no hosting binding id."""
        resp = {
            "domainId": self.id,
            "tenantId": self.tenant_id,
            "hostname": self.hostname,
            "siteId": self.site_id,
            "status": self.status.value,
            "certificateStatus": self.certificate_status.value,
            "retryCount": self.retry_count,
            "lastCheckedAt": _iso(self.last_checked_at),
            "nextRetryAt": _iso(self.next_retry_at),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.failure_reason:
            resp["failureReason"] = self.failure_reason
        return resp
