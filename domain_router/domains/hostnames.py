"""
Hostname normalisation and validation helpers.
"""

import re
from typing import Optional

import idna

from .errors import InvalidHostname

_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"

# Valid domain pattern: allows subdomains of any depth. The TLD is an LDH
# label of at least two characters with at least one letter, so punycode
# TLDs like ``xn--p1ai`` pass while ``192.168.1.10`` does not.
_DOMAIN_RE = re.compile(
    rf"^(?:{_LABEL}\.)+"
    rf"(?=[a-z0-9-]{{2,63}}$)(?=[a-z0-9-]*[a-z]){_LABEL}$"
)

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")

MAX_HOSTNAME_LENGTH = 253


def normalize_host(host: Optional[str]) -> str:
    """
    Normalise a Host header value.

    Lower-cases, strips an optional port and the trailing root dot.
    Does not validate.
    """
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, never a tenant hostname
        return host
    host = host.split(":", 1)[0]
    return host.rstrip(".")


def clean_hostname(raw: str) -> str:
    """
    Sanitise user input into a bare hostname.

    Accepts pasted URLs such as ``https://Shop.Example.com/`` and returns
    ``shop.example.com``. Raises InvalidHostname if the result is not a
    syntactically legal DNS name.
    """
    if raw is None:
        raise InvalidHostname("Hostname is required")

    host = raw.strip().lower()
    host = _SCHEME_RE.sub("", host)
    host = host.split("/", 1)[0]
    host = normalize_host(host)

    if host and not host.isascii():
        # Unicode names are stored in their punycode form
        try:
            host = idna.encode(host, uts46=True).decode("ascii")
        except (idna.IDNAError, UnicodeError):
            raise InvalidHostname(f"Invalid hostname: {raw!r}")

    if not host or len(host) > MAX_HOSTNAME_LENGTH:
        raise InvalidHostname(f"Invalid hostname: {raw!r}")
    if not _DOMAIN_RE.match(host):
        raise InvalidHostname(f"Invalid hostname: {raw!r}")
    return host


def is_apex(hostname: str) -> bool:
    """
    True for a registrable root such as ``example.com``.

    Uses the two-label heuristic; ``www.`` counts as the apex's alias and
    is still pointed with a CNAME.
    """
    return len(hostname.split(".")) <= 2


def root_domain(hostname: str) -> str:
    """Registrable root of hostname, using the same two-label heuristic."""
    return ".".join(hostname.split(".")[-2:])


def relative_host(name: str, root: str) -> str:
    """
    Record name as most DNS providers want it typed: relative to the zone.

    ``@`` stands for the zone apex itself.
    """
    if name == root:
        return "@"
    suffix = f".{root}"
    if name.endswith(suffix):
        return name[: -len(suffix)]
    return name


def is_platform_hostname(hostname: str, platform_domain: str) -> bool:
    """True if hostname is the platform domain or one of its subdomains."""
    platform_domain = platform_domain.lower().rstrip(".")
    return hostname == platform_domain or hostname.endswith(f".{platform_domain}")


def platform_slug(hostname: str, platform_domain: str) -> Optional[str]:
    """
    Extract ``<slug>`` from ``<slug>.<platform_domain>``.

    Returns None for anything else, including deeper subdomains.
    """
    platform_domain = platform_domain.lower().rstrip(".")
    suffix = f".{platform_domain}"
    if not hostname.endswith(suffix):
        return None
    slug = hostname[: -len(suffix)]
    if not slug or "." in slug:
        return None
    return slug
