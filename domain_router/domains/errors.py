"""
Errors raised by the custom domain subsystem.

Each error carries a stable ``code`` that the HTTP layer reports back to
the dashboard.
"""

from typing import Optional


class DomainError(Exception):
    """Base class for domain administration errors."""

    code = "DomainError"
    status_code = 400

    def __init__(self, message: str, domain_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.domain_id = domain_id


class InvalidHostname(DomainError):
    code = "InvalidHostname"
    status_code = 400


class DomainAlreadyClaimed(DomainError):
    code = "DomainAlreadyClaimed"
    status_code = 409


class DomainLimitExceeded(DomainError):
    code = "DomainLimitExceeded"
    status_code = 422


class DomainNotFound(DomainError):
    code = "NotFound"
    status_code = 404


class DomainRemoved(DomainError):
    """Operation attempted on a domain that has already been removed."""

    code = "DomainRemoved"
    status_code = 410


class InvalidTransition(DomainError):
    """Status change not permitted by the domain state machine."""

    code = "InvalidTransition"
    status_code = 409


class StaleDomainState(DomainError):
    """The stored status no longer matches what the caller read."""

    code = "StaleDomainState"
    status_code = 409

    def __init__(self, message: str, domain_id: Optional[str] = None, current=None):
        super().__init__(message, domain_id)
        self.current = current
