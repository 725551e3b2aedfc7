"""
Configuration management for Domain Router.
"""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8000

    # Platform naming
    platform_domain: str = "platform.tld"
    edge_target: str = "edge.platform.tld"
    edge_ips: List[str] = ["198.51.100.10"]
    verification_prefix: str = "_platform-verify"

    # Redis (empty string keeps everything in memory)
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "domain_router:"

    # Tenant sites seed file (JSON list of published sites)
    sites_file: Optional[str] = None

    # DNS verification
    dns_timeout: float = 5.0  # seconds per lookup
    dns_attempts: int = 2  # attempts on resolver timeout
    dns_max_attempts: int = 500
    dns_verification_expiry: int = 168  # hours

    # Hosting platform
    hosting_api_url: str = "https://hosting.platform.tld/v1"
    hosting_site_id: str = "platform-sites"
    hosting_api_token: str = ""
    hosting_token_url: str = ""
    hosting_client_id: str = ""
    hosting_client_secret: str = ""
    hosting_timeout: float = 10.0
    hosting_auth_retries: int = 2

    # Reconciliation
    reconcile_interval: float = 30.0  # seconds
    max_workers: int = 8
    external_call_timeout: float = 15.0
    backoff_base: int = 60  # seconds
    backoff_max: int = 3600
    connect_max_attempts: int = 50
    reconnect_max_attempts: int = 5
    health_check_interval: int = 300  # seconds
    health_failure_threshold: int = 1

    # Domains
    max_domains_per_tenant: int = 5
    reclaim_grace_period: int = 24  # hours

    # Routing cache
    routing_cache_ttl: float = 60.0
    routing_negative_ttl: float = 10.0
    routing_cache_max_entries: int = 10000

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    model_config = {
        "env_prefix": "DOMAIN_ROUTER_",
        "env_file": ".env",
        "extra": "ignore"
    }

    def validate_required(self) -> bool:
        """Validate that the hosting platform is reachable with some credential."""
        if not self.hosting_api_token and not (
            self.hosting_token_url and self.hosting_client_id
        ):
            raise ValueError(
                "DOMAIN_ROUTER_HOSTING_API_TOKEN or "
                "DOMAIN_ROUTER_HOSTING_TOKEN_URL + DOMAIN_ROUTER_HOSTING_CLIENT_ID "
                "is required to manage hosting bindings"
            )
        if self.backoff_base <= 0 or self.backoff_max < self.backoff_base:
            raise ValueError("backoff_base must be positive and <= backoff_max")
        return True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    # In production, validate required fields
    if not settings.debug:
        try:
            settings.validate_required()
        except ValueError as e:
            logging.warning(f"Configuration warning: {e}")
    return settings
