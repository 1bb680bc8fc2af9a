"""
Daily Data Processing Pipeline

A scheduled two-stage batch workflow: a daily trigger starts a run, the
Preparation Stage lists new artifacts in the incoming bucket, and each
artifact is processed by an isolated task with bounded concurrency.

Core modules:
    - models: Data classes (WorkflowRun, Manifest, WorkDescriptor, ExecutionOutcome)
    - interfaces: Abstract collaborators (ArtifactStore, ExecutionSubstrate, FunctionInvoker)
    - orchestrate: WorkflowOrchestrator state machine
    - trigger: Daily schedule and overlap policy
"""

from dataproc.src.models import (
    ExecutionOutcome,
    Manifest,
    OutcomeStatus,
    RunStage,
    WorkDescriptor,
    WorkflowRun,
)
from dataproc.src.interfaces import ArtifactStore, ExecutionSubstrate, FunctionInvoker

__all__ = [
    "ExecutionOutcome",
    "Manifest",
    "OutcomeStatus",
    "RunStage",
    "WorkDescriptor",
    "WorkflowRun",
    "ArtifactStore",
    "ExecutionSubstrate",
    "FunctionInvoker",
]
