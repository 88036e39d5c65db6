"""Health check endpoint.

Verifies the ledger store answers, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from session_clearinghouse.api.deps import get_app_settings, get_orchestrator
from session_clearinghouse.config import Settings
from session_clearinghouse.domain.exceptions import LedgerError
from session_clearinghouse.logging_config import get_logger
from session_clearinghouse.orchestration.workflow import WorkflowOrchestrator
from session_clearinghouse.schemas.marketplace import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(
    workflow: WorkflowOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """Check that the ledger store answers a read."""
    try:
        await workflow.registry.list_services()
        ledger_status = "healthy"
    except LedgerError as exc:
        ledger_status = f"unhealthy: {exc.message}"
        logger.error("health.ledger_check_failed", error=exc.message)

    return HealthResponse(
        status="ok" if ledger_status == "healthy" else "degraded",
        version="0.1.0",
        ledger=f"{settings.ledger_backend}: {ledger_status}",
        payment_rail=settings.payment_rail,
        quality_oracle=settings.quality_oracle,
    )
