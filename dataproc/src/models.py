"""
Data models for the daily data processing pipeline.

These dataclasses define the contract between the trigger, the two stages
and the orchestrator.

Design Philosophy:
    - One WorkflowRun per accepted trigger firing
    - Manifest is produced once per run and is read-only afterwards
    - Exactly one recorded ExecutionOutcome per WorkDescriptor
    - Terminal runs are immutable
"""

import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Errors
# =============================================================================


class InvalidTransitionError(Exception):
    """Raised when a run is moved along an edge the state machine forbids."""

    pass


class RunFinalizedError(Exception):
    """Raised when a terminal run is mutated."""

    pass


class DuplicateOutcomeError(Exception):
    """Raised when a second outcome is recorded for the same item."""

    pass


# =============================================================================
# Status constants
# =============================================================================


class OutcomeStatus:
    """Per-item result of processing one WorkDescriptor."""

    SUCCESS = "SUCCESS"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    TERMINAL_FAILURE = "TERMINAL_FAILURE"

    ALL = (SUCCESS, RETRYABLE_FAILURE, TERMINAL_FAILURE)


class RunStage:
    """States of the orchestrator state machine."""

    PENDING = "PENDING"
    PREPARING = "PREPARING"
    FANNING_OUT = "FANNING_OUT"
    AGGREGATING = "AGGREGATING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"


TERMINAL_STAGES = frozenset(
    {RunStage.SUCCEEDED, RunStage.FAILED, RunStage.PARTIAL_FAILURE}
)

ALLOWED_TRANSITIONS = {
    RunStage.PENDING: {RunStage.PREPARING},
    RunStage.PREPARING: {RunStage.FANNING_OUT, RunStage.SUCCEEDED, RunStage.FAILED},
    RunStage.FANNING_OUT: {RunStage.AGGREGATING},
    RunStage.AGGREGATING: {
        RunStage.SUCCEEDED,
        RunStage.FAILED,
        RunStage.PARTIAL_FAILURE,
    },
}


class RunStatus:
    """Coarse run status exposed to operators."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIAL = "partial"


STAGE_TO_STATUS = {
    RunStage.PENDING: RunStatus.PENDING,
    RunStage.PREPARING: RunStatus.RUNNING,
    RunStage.FANNING_OUT: RunStatus.RUNNING,
    RunStage.AGGREGATING: RunStatus.RUNNING,
    RunStage.SUCCEEDED: RunStatus.SUCCEEDED,
    RunStage.FAILED: RunStatus.FAILED,
    RunStage.PARTIAL_FAILURE: RunStatus.PARTIAL,
}


# =============================================================================
# Run identifiers
# =============================================================================


def scheduled_run_id(scheduled_for: datetime) -> str:
    """
    Deterministic run id for a calendar firing.

    Two deliveries of the same firing map to the same id, which is what lets
    the trigger detect redelivery.
    """
    return f"run-{scheduled_for.astimezone(timezone.utc):%Y%m%dT%H%MZ}"


def manual_run_id() -> str:
    """Unique run id for an ad-hoc (non-scheduled) run."""
    return f"manual-{utcnow():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


_ITEM_ID_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def make_item_id(key: str) -> str:
    """
    Build a stable item id from an object key.

    Format: {sanitized basename}-{first 10 hex chars of sha256(key)}
    """
    basename = key.rstrip("/").rsplit("/", 1)[-1] or "item"
    safe = _ITEM_ID_UNSAFE.sub("_", basename)[:60]
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:10]
    return f"{safe}-{digest}"


# =============================================================================
# Storage and work items
# =============================================================================


@dataclass(frozen=True)
class ArtifactRef:
    """
    One object found by the storage scan.

    Attributes:
        bucket: Bucket (or root directory for local storage)
        key: Object key
        size: Size in bytes
        last_modified: Last modification time, if known
        etag: Storage entity tag, if known
    """

    bucket: str
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def version(self) -> Optional[str]:
        """
        Content version of the object.

        The entity tag when the store reports one, otherwise size plus
        modification time. None when neither is known.
        """
        if self.etag:
            return self.etag
        if self.last_modified is not None:
            stamp = f"{self.size}:{self.last_modified.isoformat()}"
            return hashlib.sha256(stamp.encode("utf-8")).hexdigest()[:32]
        return None


@dataclass(frozen=True)
class WorkDescriptor:
    """
    One unit of work for the Processing Stage.

    Attributes:
        item_id: Stable identifier (see make_item_id)
        bucket: Bucket holding the input artifact
        key: Key of the input artifact
        params: Extra parameters passed through to the processing task
        version: Content version of the artifact when it was listed, so a
            later upload under the same key is processed again
    """

    item_id: str
    bucket: str
    key: str
    params: Dict[str, Any] = field(default_factory=dict)
    version: Optional[str] = None

    @classmethod
    def from_artifact(
        cls, artifact: ArtifactRef, params: Optional[Dict[str, Any]] = None
    ) -> "WorkDescriptor":
        return cls(
            item_id=make_item_id(artifact.key),
            bucket=artifact.bucket,
            key=artifact.key,
            params=dict(params or {}),
            version=artifact.version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "bucket": self.bucket,
            "key": self.key,
            "params": dict(self.params),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkDescriptor":
        return cls(
            item_id=data["item_id"],
            bucket=data["bucket"],
            key=data["key"],
            params=dict(data.get("params") or {}),
            version=data.get("version"),
        )


@dataclass(frozen=True)
class Manifest:
    """
    Work descriptors produced by the Preparation Stage for one run.

    Items are stored as a tuple of frozen descriptors so the manifest cannot
    be changed once handed to the orchestrator.

    Attributes:
        run_id: Run this manifest belongs to
        items: Work descriptors, in preparation order
        created_at: When the manifest was produced
        manifest_key: Storage key of the JSONL audit copy, if written
    """

    run_id: str
    items: Tuple[WorkDescriptor, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    manifest_key: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))
        seen = set()
        for item in self.items:
            if item.item_id in seen:
                raise ValueError(f"Duplicate item_id in manifest: {item.item_id}")
            seen.add(item.item_id)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def item_ids(self) -> List[str]:
        return [item.item_id for item in self.items]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "created_at": _isoformat(self.created_at),
            "manifest_s3_key": self.manifest_key,
            "n_items": len(self.items),
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        if "run_id" not in data:
            raise ValueError("Manifest payload is missing run_id")
        return cls(
            run_id=data["run_id"],
            items=tuple(WorkDescriptor.from_dict(i) for i in data.get("items") or []),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            manifest_key=data.get("manifest_s3_key"),
        )

    def to_jsonl(self) -> str:
        """One JSON object per line, one line per descriptor."""
        return "\n".join(
            json.dumps({"run_id": self.run_id, **item.to_dict()}) for item in self.items
        )

    @classmethod
    def from_jsonl(cls, run_id: str, content: str) -> "Manifest":
        items = []
        for line in content.splitlines():
            if not line.strip():
                continue
            record = json.loads(line)
            items.append(WorkDescriptor.from_dict(record))
        return cls(run_id=run_id, items=tuple(items))


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Result of processing one WorkDescriptor.

    Attributes:
        item_id: Descriptor this outcome belongs to
        status: One of OutcomeStatus
        attempts: Number of attempts made (1 = first try)
        diagnostic: Optional human-readable failure reason or result summary
        started_at: Start of the first attempt
        finished_at: End of the last attempt
    """

    item_id: str
    status: str
    attempts: int = 1
    diagnostic: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if self.status not in OutcomeStatus.ALL:
            raise ValueError(f"Unknown outcome status: {self.status}")

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.status == OutcomeStatus.RETRYABLE_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "status": self.status,
            "attempts": self.attempts,
            "diagnostic": self.diagnostic,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionOutcome":
        return cls(
            item_id=data["item_id"],
            status=data["status"],
            attempts=data.get("attempts", 1),
            diagnostic=data.get("diagnostic"),
            started_at=_parse_datetime(data.get("started_at")),
            finished_at=_parse_datetime(data.get("finished_at")),
        )


# =============================================================================
# Aggregation
# =============================================================================


def aggregate_stage(outcomes: Iterable[ExecutionOutcome], n_items: int) -> str:
    """
    Reduce per-item outcomes to a terminal run stage.

    Rules:
        - n_items == 0: SUCCEEDED
        - every item succeeded: SUCCEEDED
        - at least one success and one failure: PARTIAL_FAILURE
        - no successes: FAILED

    Raises:
        ValueError: If fewer outcomes than items are supplied
    """
    outcomes = list(outcomes)
    if len(outcomes) < n_items:
        raise ValueError(
            f"Cannot aggregate: {n_items - len(outcomes)} items have no outcome"
        )
    if n_items == 0:
        return RunStage.SUCCEEDED

    succeeded = sum(1 for o in outcomes if o.succeeded)
    if succeeded == len(outcomes):
        return RunStage.SUCCEEDED
    if succeeded > 0:
        return RunStage.PARTIAL_FAILURE
    return RunStage.FAILED


# =============================================================================
# Workflow run
# =============================================================================


@dataclass
class WorkflowRun:
    """
    One execution of the orchestrator.

    Mutated only by the orchestrator, through transition() and
    record_outcome(). Once terminal, every mutation raises RunFinalizedError.

    Attributes:
        run_id: Unique per trigger firing
        started_at: When the run was created
        stage: Current RunStage
        manifest: Manifest, once the Preparation Stage returned
        outcomes: item_id -> ExecutionOutcome
        error: Run-level error (fatal preparation failure)
        finished_at: Set on reaching a terminal stage
        scheduled_for: Calendar slot for scheduled runs (None for manual runs)
        cancel_requested: True once cancel() was called
    """

    run_id: str
    started_at: datetime = field(default_factory=utcnow)
    stage: str = RunStage.PENDING
    manifest: Optional[Manifest] = None
    outcomes: Dict[str, ExecutionOutcome] = field(default_factory=dict)
    error: Optional[str] = None
    finished_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    cancel_requested: bool = False

    @property
    def status(self) -> str:
        return STAGE_TO_STATUS[self.stage]

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def n_items(self) -> int:
        return len(self.manifest) if self.manifest else 0

    @property
    def succeeded_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if not o.succeeded)

    @property
    def pending_item_ids(self) -> List[str]:
        if not self.manifest:
            return []
        return [i for i in self.manifest.item_ids if i not in self.outcomes]

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise RunFinalizedError(
                f"Run {self.run_id} is terminal ({self.stage}) and cannot change"
            )

    def transition(self, stage: str) -> None:
        """Move to a new stage, enforcing the allowed transition table."""
        self._ensure_mutable()
        if stage not in ALLOWED_TRANSITIONS.get(self.stage, set()):
            raise InvalidTransitionError(
                f"Run {self.run_id}: {self.stage} -> {stage} is not allowed"
            )
        self.stage = stage
        if stage in TERMINAL_STAGES:
            self.finished_at = utcnow()

    def attach_manifest(self, manifest: Manifest) -> None:
        self._ensure_mutable()
        if self.manifest is not None:
            raise ValueError(f"Run {self.run_id} already has a manifest")
        self.manifest = manifest

    def record_outcome(self, outcome: ExecutionOutcome) -> None:
        """
        Record the final outcome for one item.

        Raises:
            RunFinalizedError: If the run is terminal
            ValueError: If the item is not in the manifest, or the outcome
                is a retryable failure (not a final result)
            DuplicateOutcomeError: If the item already has an outcome
        """
        self._ensure_mutable()
        if self.manifest is None or outcome.item_id not in self.manifest.item_ids:
            raise ValueError(
                f"Run {self.run_id}: item {outcome.item_id} is not in the manifest"
            )
        if outcome.retryable:
            raise ValueError(
                f"Run {self.run_id}: retryable outcome for {outcome.item_id} "
                f"cannot be recorded as final"
            )
        if outcome.item_id in self.outcomes:
            raise DuplicateOutcomeError(
                f"Run {self.run_id}: item {outcome.item_id} already has an outcome"
            )
        self.outcomes[outcome.item_id] = outcome

    def summary(self) -> Dict[str, Any]:
        """Compact view used for logging and notifications."""
        return {
            "run_id": self.run_id,
            "stage": self.stage,
            "status": self.status,
            "n_items": self.n_items,
            "succeeded": self.succeeded_count,
            "failed": self.failed_count,
            "error": self.error,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "scheduled_for": _isoformat(self.scheduled_for),
            "cancelled": self.cancel_requested,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data["manifest_key"] = self.manifest.manifest_key if self.manifest else None
        order = self.manifest.item_ids if self.manifest else []
        data["outcomes"] = [
            self.outcomes[item_id].to_dict() for item_id in order if item_id in self.outcomes
        ]
        return data
