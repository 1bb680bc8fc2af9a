"""
Orchestration module for daily workflow runs.

This module coordinates the full workflow:
1. Invoke the Preparation Stage to build the run's manifest
2. Fan out one isolated Processing Stage attempt per work item
3. Aggregate outcomes into SUCCEEDED / PARTIAL_FAILURE / FAILED
"""

from dataproc.src.orchestrate.workflow_orchestrator import (
    OrchestratorError,
    RunInProgressError,
    WorkflowOrchestrator,
)

__all__ = ["OrchestratorError", "RunInProgressError", "WorkflowOrchestrator"]
