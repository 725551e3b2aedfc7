"""
Routing and health endpoints.

The edge calls ``/route`` with the visitor's Host header to learn which
tenant site to render.
"""

import logging

from fastapi import APIRouter, HTTPException, Request

from ..routing.resolver import RoutingResolver, UnknownHost

router = APIRouter()
logger = logging.getLogger("domain_router.api")


@router.get("/route")
async def route_request(request: Request):
    """Resolve the request's host to ``{tenantId, siteId}``."""
    resolver: RoutingResolver = request.app.state.routing_resolver

    # Set by the edge proxy when it forwards the original request
    host = request.headers.get("X-Forwarded-Host") or request.headers.get("Host", "")
    host = host.split(",", 1)[0].strip()

    try:
        target = await resolver.resolve(host)
    except UnknownHost as e:
        logger.debug(f"No route for {host!r}")
        raise HTTPException(
            status_code=404,
            detail={"error": e.code, "message": str(e)},
        )
    return target.to_api_response()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok"}
