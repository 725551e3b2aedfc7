"""Domain Router: custom domain provisioning and multi-tenant request routing."""

__version__ = "0.1.0"
