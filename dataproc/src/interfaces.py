"""
Abstract interfaces for the daily data processing pipeline.

These interfaces enable:
    - ArtifactStore: Swappable object storage (S3, local directory)
    - ExecutionSubstrate: Swappable isolated execution (ECS Fargate, local threads)
    - FunctionInvoker: Swappable function invocation (Lambda, in-process)

Design Philosophy:
    - The orchestrator depends only on these contracts
    - Collaborators raise TransientError for conditions worth retrying and
      FatalError for everything that will not get better on its own
    - Identity and permissions are granted outside this code
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from dataproc.src.models import ArtifactRef, ExecutionOutcome, WorkDescriptor, utcnow


# =============================================================================
# Error taxonomy
# =============================================================================


class PipelineError(Exception):
    """Base exception for collaborator errors."""

    pass


class TransientError(PipelineError):
    """Retryable: environment unavailable, throttling, timeouts."""

    pass


class FatalError(PipelineError):
    """Non-retryable: bad input, missing resources, permission problems."""

    pass


class ItemTimeoutError(TransientError):
    """Raised when one processing attempt exceeds its per-item timeout."""

    pass


# AWS error codes that indicate a temporary condition
TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "SlowDown",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServerException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "RequestTimeout",
    "RequestTimeoutException",
    "ResourceConflictException",
    "EC2ThrottledException",
}


def classify_client_error(error: ClientError, context: str = "") -> PipelineError:
    """
    Map a botocore ClientError onto the pipeline error taxonomy.

    Args:
        error: The ClientError raised by boto3
        context: Short description of the failed call (for the message)

    Returns:
        TransientError or FatalError wrapping the original message
    """
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    prefix = f"{context}: " if context else ""

    if code in TRANSIENT_ERROR_CODES or (status and status >= 500):
        return TransientError(f"{prefix}{code or status}: {error}")
    return FatalError(f"{prefix}{code or status}: {error}")


# =============================================================================
# Static deployment configuration passed to collaborators
# =============================================================================


@dataclass(frozen=True)
class StorageLocation:
    """
    Where the pipeline reads input and writes results.

    Attributes:
        bucket: Incoming bucket name (root directory for local storage)
        prefix: Prefix scanned for new artifacts
        processed_prefix: Prefix consumed artifacts are moved to
        results_prefix: Prefix result objects are written to
    """

    bucket: str
    prefix: str = "incoming/"
    processed_prefix: str = "processed/"
    results_prefix: str = "results/"


@dataclass(frozen=True)
class ResourceLimits:
    """Per-task resource ceiling (Fargate units: 1024 cpu = 1 vCPU)."""

    cpu: int = 256
    memory_mib: int = 512


@dataclass(frozen=True)
class ExecutionHandle:
    """
    Reference to one launched processing attempt.

    Attributes:
        item_id: Descriptor being processed
        task_id: Substrate-specific task identifier (ECS task ARN, future id)
        launched_at: Launch time
        attempt: Attempt number (1-based)
    """

    item_id: str
    task_id: str
    launched_at: datetime
    attempt: int = 1


# =============================================================================
# Interfaces
# =============================================================================


class ArtifactStore(ABC):
    """
    Abstract interface for the object store holding incoming artifacts.

    The Preparation Stage only calls list_new_artifacts (read-only). The
    remaining methods are used by the Processing Stage.

    Implementations:
        - S3ArtifactStore: For cloud deployment
        - LocalArtifactStore: For local runs and tests
    """

    @abstractmethod
    def list_new_artifacts(self, location: StorageLocation) -> List[ArtifactRef]:
        """
        List artifacts waiting under location.prefix.

        Must not modify storage.

        Returns:
            ArtifactRefs sorted by key
        """
        pass

    @abstractmethod
    def read_artifact(self, artifact: ArtifactRef) -> bytes:
        """Read the full content of an artifact."""
        pass

    @abstractmethod
    def write_result(self, location: StorageLocation, key: str, data: Dict[str, Any]) -> None:
        """Write a JSON result object under location.results_prefix."""
        pass

    @abstractmethod
    def result_exists(self, location: StorageLocation, key: str) -> bool:
        """Check whether a result object already exists."""
        pass

    @abstractmethod
    def archive_artifact(self, artifact: ArtifactRef, location: StorageLocation) -> None:
        """
        Move a consumed artifact under location.processed_prefix.

        Must be safe to call again after a partial earlier attempt.
        """
        pass


class ExecutionSubstrate(ABC):
    """
    Abstract interface for isolated, resource-bounded task execution.

    Implementations:
        - EcsTaskSubstrate: One Fargate task per attempt
        - LocalSubstrate: One worker thread per attempt
    """

    @abstractmethod
    async def launch(
        self,
        descriptor: WorkDescriptor,
        limits: ResourceLimits,
        attempt: int = 1,
        run_id: Optional[str] = None,
    ) -> ExecutionHandle:
        """
        Start one processing attempt.

        run_id identifies the owning run and is passed to the task for
        log correlation.

        Raises:
            TransientError: Capacity or throttling problems
            FatalError: The task can never be started (bad definition, etc.)
        """
        pass

    @abstractmethod
    async def wait(self, handle: ExecutionHandle) -> ExecutionOutcome:
        """Suspend until the attempt finishes and return its outcome."""
        pass

    async def stop(self, handle: ExecutionHandle, reason: str) -> None:
        """
        Best-effort cancellation of an attempt.

        Default implementation is a no-op. Override if the substrate can
        stop running work.
        """
        pass


class FunctionInvoker(ABC):
    """
    Abstract interface for invoking the preparation function.

    Implementations:
        - LambdaFunctionInvoker: AWS Lambda RequestResponse invocation
        - LocalFunctionInvoker: Calls the handler in-process
    """

    @abstractmethod
    def invoke(self, entrypoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke a function and return its decoded JSON result.

        Raises:
            TransientError: Throttling, service errors, function timeout
            FatalError: The function raised or returned an invalid payload
        """
        pass


def make_handle(item_id: str, task_id: str, attempt: int = 1) -> ExecutionHandle:
    """Convenience constructor stamping the launch time."""
    return ExecutionHandle(
        item_id=item_id, task_id=task_id, launched_at=utcnow(), attempt=attempt
    )


__all__ = [
    "ArtifactStore",
    "ExecutionHandle",
    "ExecutionSubstrate",
    "FatalError",
    "FunctionInvoker",
    "ItemTimeoutError",
    "PipelineError",
    "ResourceLimits",
    "StorageLocation",
    "TransientError",
    "classify_client_error",
    "make_handle",
]
