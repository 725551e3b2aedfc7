"""
REST API for custom domain management.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from ..domains.errors import DomainError
from ..domains.service import DomainService

logger = logging.getLogger("domain_router.api.domains")

router = APIRouter(prefix="/domains", tags=["domains"])


def _service(request: Request) -> DomainService:
    return request.app.state.domain_service


def _http_error(exc: DomainError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": exc.code, "message": exc.message},
    )


# ── Request models ───────────────────────────────────────────────────

class DomainRegisterRequest(BaseModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    hostname: str
    site_id: Optional[str] = Field(default=None, alias="siteId")

    model_config = {"populate_by_name": True}


# ── Routes ───────────────────────────────────────────────────────────

@router.post("", status_code=201)
async def register_domain(body: DomainRegisterRequest, request: Request):
    """Claim a hostname and return the DNS records the tenant must publish."""
    service = _service(request)
    try:
        domain = await service.register_domain(body.tenant_id, body.hostname, body.site_id)
    except DomainError as e:
        logger.info(f"Rejected domain {body.hostname!r} for tenant {body.tenant_id}: {e}")
        raise _http_error(e)

    return {
        **domain.to_api_response(),
        "dnsRecords": domain.dns_records.to_api_response(),
        "instructions": service.verifier.get_verification_instructions(domain),
    }


@router.get("")
async def list_domains(
    request: Request,
    tenant_id: str = Query(..., alias="tenantId", min_length=1),
    include_removed: bool = Query(False, alias="includeRemoved"),
):
    """List a tenant's custom domains."""
    domains = await _service(request).list_domains(tenant_id, include_removed=include_removed)
    return {
        "count": len(domains),
        "domains": [d.to_api_response() for d in domains],
    }


@router.get("/{domain_id}")
async def get_domain(domain_id: str, request: Request):
    try:
        domain = await _service(request).get_status(domain_id)
    except DomainError as e:
        raise _http_error(e)
    return domain.to_api_response()


@router.get("/{domain_id}/instructions")
async def get_instructions(domain_id: str, request: Request):
    """DNS records to publish, as human-readable instructions."""
    try:
        instructions = await _service(request).get_instructions(domain_id)
    except DomainError as e:
        raise _http_error(e)
    return {"domainId": domain_id, "instructions": instructions}


@router.post("/{domain_id}/verify")
async def verify_domain(domain_id: str, request: Request):
    """Run verification now instead of waiting for the next pass."""
    try:
        domain = await _service(request).verify_domain(domain_id)
    except DomainError as e:
        raise _http_error(e)

    resp = {"domainId": domain.id, "status": domain.status.value}
    if domain.failure_reason:
        resp["failureReason"] = domain.failure_reason
    if domain.last_check_result:
        resp["lastCheck"] = domain.last_check_result
    return resp


@router.delete("/{domain_id}", status_code=204)
async def delete_domain(domain_id: str, request: Request):
    """Release a custom domain."""
    try:
        await _service(request).remove_domain(domain_id)
    except DomainError as e:
        raise _http_error(e)
    return Response(status_code=204)
