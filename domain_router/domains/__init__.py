"""Custom domain provisioning for Domain Router."""

from .models import CustomDomain, DomainStatus
from .registry import DomainRegistry
from .verification import DomainVerifier
from .hosting import HostingConnector
from .reconciler import Reconciler
from .service import DomainService

__all__ = [
    "CustomDomain",
    "DomainRegistry",
    "DomainService",
    "DomainStatus",
    "DomainVerifier",
    "HostingConnector",
    "Reconciler",
]
