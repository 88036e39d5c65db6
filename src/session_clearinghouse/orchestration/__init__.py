"""Orchestration layer — the end-to-end session workflow."""

from session_clearinghouse.orchestration.workflow import (
    WorkflowOrchestrator,
    WorkflowState,
    build_orchestrator,
)

__all__ = ["WorkflowOrchestrator", "WorkflowState", "build_orchestrator"]
