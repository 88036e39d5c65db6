"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the workflow
orchestrator and configuration. The orchestrator is built once in the app
lifespan and kept on app.state; tests override get_orchestrator to run the
API over an in-memory ledger.
"""

from __future__ import annotations

from fastapi import Request

from session_clearinghouse.config import Settings, get_settings
from session_clearinghouse.orchestration.workflow import WorkflowOrchestrator


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    """Provide the application's WorkflowOrchestrator."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("Orchestrator not initialized. Is the app lifespan running?")
    return orchestrator


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
