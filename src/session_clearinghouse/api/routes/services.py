"""Service listing REST API routes.

Routes:
    POST   /api/v1/services              — List a new service
    GET    /api/v1/services              — List AVAILABLE services (filterable)
    GET    /api/v1/services/{id}         — Get service details
    GET    /api/v1/services/{id}/events  — Get audit trail
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from session_clearinghouse.api.deps import get_orchestrator
from session_clearinghouse.domain.models import ServiceFilter
from session_clearinghouse.logging_config import get_logger
from session_clearinghouse.orchestration.workflow import WorkflowOrchestrator
from session_clearinghouse.schemas.marketplace import (
    CreateServiceRequest,
    EventResponse,
    ServiceResponse,
)

router = APIRouter(prefix="/api/v1/services", tags=["Services"])
logger = get_logger(__name__)


@router.post(
    "",
    response_model=ServiceResponse,
    status_code=201,
    summary="List a new service",
)
async def create_service(
    request: CreateServiceRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> ServiceResponse:
    """Create a service listing in AVAILABLE state."""
    service = await workflow.create_service(
        provider_identity=request.provider_identity,
        title=request.title,
        price=request.price,
        window_start=request.window_start,
        window_end=request.window_end,
        description=request.description,
        service_type=request.service_type,
    )
    return ServiceResponse.model_validate(service)


@router.get(
    "",
    response_model=list[ServiceResponse],
    summary="List available services",
)
async def list_services(
    service_type: str | None = Query(default=None),
    provider: str | None = Query(default=None),
    min_price: Decimal | None = Query(default=None, ge=0),
    max_price: Decimal | None = Query(default=None, ge=0),
    starts_after: datetime | None = Query(default=None),
    ends_before: datetime | None = Query(default=None),
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[ServiceResponse]:
    """Only AVAILABLE services are returned, oldest first."""
    criteria = ServiceFilter(
        service_type=service_type,
        provider_identity=provider,
        min_price=min_price,
        max_price=max_price,
        starts_after=starts_after,
        ends_before=ends_before,
    )
    services = await workflow.list_services(criteria)
    return [ServiceResponse.model_validate(s) for s in services]


@router.get(
    "/{service_id}",
    response_model=ServiceResponse,
    summary="Get service details",
)
async def get_service(
    service_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> ServiceResponse:
    service = await workflow.registry.get_service(service_id)
    return ServiceResponse.model_validate(service)


@router.get(
    "/{service_id}/events",
    response_model=list[EventResponse],
    summary="Get service audit trail",
)
async def get_service_events(
    service_id: str,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[EventResponse]:
    await workflow.registry.get_service(service_id)
    events = await workflow.audit_trail(service_id)
    return [EventResponse.model_validate(e) for e in events]
