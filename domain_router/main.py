"""
Domain Router application.

Wires the domain registry, DNS verifier, hosting connector, reconciler and
routing resolver together and exposes them over FastAPI.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .api.domains import router as domains_router
from .api.routes import router as routes_router
from .config import Settings, get_settings
from .domains.backoff import BackoffPolicy
from .domains.credentials import ClientCredentialsStore, CredentialStore, StaticCredentialStore
from .domains.hosting import HostingConnector
from .domains.reconciler import Reconciler
from .domains.registry import DomainRegistry
from .domains.service import DomainService
from .domains.verification import DomainVerifier
from .routing.resolver import RoutingResolver
from .routing.sites import InMemorySiteRegistry, SiteRegistry

logger = logging.getLogger("domain_router")


def build_credentials(settings: Settings) -> CredentialStore:
    """OAuth2 client credentials when configured, else the static token."""
    if settings.hosting_token_url and settings.hosting_client_id:
        return ClientCredentialsStore(
            token_url=settings.hosting_token_url,
            client_id=settings.hosting_client_id,
            client_secret=settings.hosting_client_secret,
            timeout=settings.hosting_timeout,
        )
    return StaticCredentialStore(settings.hosting_api_token)


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[DomainRegistry] = None,
    verifier: Optional[DomainVerifier] = None,
    connector: Optional[HostingConnector] = None,
    site_registry: Optional[SiteRegistry] = None,
    run_reconciler: bool = True,
) -> FastAPI:
    """
    Build the application.

    Collaborators can be injected for tests; anything not given is built
    from settings. ``run_reconciler=False`` keeps the periodic loop off
    while still allowing out-of-band reconciliation from the API.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    credentials: Optional[CredentialStore] = None
    if registry is None:
        registry = DomainRegistry(
            redis_url=settings.redis_url or None,
            key_prefix=settings.key_prefix,
            max_domains_per_tenant=settings.max_domains_per_tenant,
            reclaim_grace_period=timedelta(hours=settings.reclaim_grace_period),
        )
    if verifier is None:
        verifier = DomainVerifier(timeout=settings.dns_timeout, attempts=settings.dns_attempts)
    if connector is None:
        credentials = build_credentials(settings)
        connector = HostingConnector(
            base_url=settings.hosting_api_url,
            site_id=settings.hosting_site_id,
            credentials=credentials,
            timeout=settings.hosting_timeout,
            max_auth_retries=settings.hosting_auth_retries,
        )
    if site_registry is None:
        site_registry = InMemorySiteRegistry()
        if settings.sites_file:
            site_registry.load_file(settings.sites_file)

    reconciler = Reconciler(
        registry=registry,
        verifier=verifier,
        connector=connector,
        backoff=BackoffPolicy(
            base=timedelta(seconds=settings.backoff_base),
            maximum=timedelta(seconds=settings.backoff_max),
        ),
        interval=settings.reconcile_interval,
        max_workers=settings.max_workers,
        external_call_timeout=settings.external_call_timeout,
        dns_max_attempts=settings.dns_max_attempts,
        dns_verification_expiry=timedelta(hours=settings.dns_verification_expiry),
        connect_max_attempts=settings.connect_max_attempts,
        reconnect_max_attempts=settings.reconnect_max_attempts,
        health_check_interval=timedelta(seconds=settings.health_check_interval),
        health_failure_threshold=settings.health_failure_threshold,
    )

    resolver = RoutingResolver(
        registry=registry,
        sites=site_registry,
        platform_domain=settings.platform_domain,
        ttl=settings.routing_cache_ttl,
        negative_ttl=settings.routing_negative_ttl,
        max_entries=settings.routing_cache_max_entries,
    )
    registry.add_listener(resolver.on_transition)

    service = DomainService(
        registry=registry,
        verifier=verifier,
        reconciler=reconciler,
        platform_domain=settings.platform_domain,
        verification_prefix=settings.verification_prefix,
        edge_target=settings.edge_target,
        edge_ips=settings.edge_ips,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Domain Router starting...")
        if run_reconciler:
            await reconciler.start()
        yield
        logger.info("Domain Router shutting down...")
        await reconciler.stop()
        await connector.close()
        if credentials is not None:
            await credentials.close()
        await registry.close()

    app = FastAPI(
        title="Domain Router",
        description="Custom domain provisioning and multi-tenant request routing",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.domain_registry = registry
    app.state.domain_verifier = verifier
    app.state.hosting_connector = connector
    app.state.site_registry = site_registry
    app.state.reconciler = reconciler
    app.state.routing_resolver = resolver
    app.state.domain_service = service

    app.include_router(domains_router)
    app.include_router(routes_router)

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    uvicorn.run(
        "domain_router.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
