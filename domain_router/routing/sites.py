"""
Tenant site registry.

Read-only view of the sites tenants have published. The routing resolver
only needs to know whether a site exists, which tenant owns it, and which
site a platform slug points to.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("domain_router.routing.sites")


@dataclass
class SiteSection:
    """A renderable block of a published site."""

    id: str
    type: str
    order: int = 0
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "order": self.order, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict) -> "SiteSection":
        return cls(
            id=data["id"],
            type=data["type"],
            order=data.get("order", 0),
            data=data.get("data") or {},
        )


@dataclass
class PublishedSite:
    """A tenant's published site."""

    tenant_id: str
    site_id: str
    slug: str
    name: str = ""
    sections: List[SiteSection] = field(default_factory=list)
    hostnames: List[str] = field(default_factory=list)
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "site_id": self.site_id,
            "slug": self.slug,
            "name": self.name,
            "sections": [s.to_dict() for s in self.sections],
            "hostnames": list(self.hostnames),
            "published_at": self.published_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PublishedSite":
        published_at = data.get("published_at")
        return cls(
            tenant_id=data["tenant_id"],
            site_id=data["site_id"],
            slug=data["slug"].lower(),
            name=data.get("name", ""),
            sections=sorted(
                (SiteSection.from_dict(s) for s in data.get("sections", [])),
                key=lambda s: s.order,
            ),
            hostnames=[h.lower() for h in data.get("hostnames", [])],
            published_at=(
                datetime.fromisoformat(published_at)
                if published_at
                else datetime.now(timezone.utc)
            ),
        )


class SiteRegistry:
    """Interface to the tenant site store."""

    async def get_published_site(self, tenant_id: str, site_id: str) -> Optional[PublishedSite]:
        raise NotImplementedError

    async def get_primary_site(self, tenant_id: str) -> Optional[PublishedSite]:
        """The tenant's most recently published site."""
        raise NotImplementedError

    async def find_site_by_slug(self, slug: str) -> Optional[PublishedSite]:
        """The most recently published site under ``slug``."""
        raise NotImplementedError


class InMemorySiteRegistry(SiteRegistry):
    """Site registry kept in process, optionally seeded from a JSON file."""

    def __init__(self):
        self._sites: Dict[Tuple[str, str], PublishedSite] = {}

    def publish(self, site: PublishedSite) -> PublishedSite:
        self._sites[(site.tenant_id, site.site_id)] = site
        logger.debug(f"Published site {site.site_id} for tenant {site.tenant_id}")
        return site

    def unpublish(self, tenant_id: str, site_id: str) -> bool:
        return self._sites.pop((tenant_id, site_id), None) is not None

    def load_file(self, path: str) -> int:
        """Load a JSON list of published sites. Returns the number loaded."""
        with open(Path(path), "r", encoding="utf-8") as f:
            entries = json.load(f)
        for entry in entries:
            self.publish(PublishedSite.from_dict(entry))
        logger.info(f"Loaded {len(entries)} published sites from {path}")
        return len(entries)

    async def get_published_site(self, tenant_id: str, site_id: str) -> Optional[PublishedSite]:
        return self._sites.get((tenant_id, site_id))

    async def get_primary_site(self, tenant_id: str) -> Optional[PublishedSite]:
        sites = [s for (t, _), s in self._sites.items() if t == tenant_id]
        if not sites:
            return None
        return max(sites, key=lambda s: s.published_at)

    async def find_site_by_slug(self, slug: str) -> Optional[PublishedSite]:
        slug = slug.lower()
        matches = [s for s in self._sites.values() if s.slug == slug]
        if not matches:
            return None
        return max(matches, key=lambda s: s.published_at)
