"""Multi-tenant request routing for Domain Router."""

from .resolver import RouteTarget, RoutingResolver, UnknownHost
from .sites import InMemorySiteRegistry, PublishedSite, SiteRegistry, SiteSection

__all__ = [
    "InMemorySiteRegistry",
    "PublishedSite",
    "RouteTarget",
    "RoutingResolver",
    "SiteRegistry",
    "SiteSection",
    "UnknownHost",
]
