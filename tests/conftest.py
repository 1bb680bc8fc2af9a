"""
Pytest configuration and shared fixtures for the daily pipeline tests.

Provides scripted collaborators (invoker, substrate), fast configs and an
in-memory run store so orchestrator tests run in milliseconds.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from dataproc.src.interfaces import (
    ExecutionSubstrate,
    FunctionInvoker,
    StorageLocation,
    make_handle,
)
from dataproc.src.models import (
    ExecutionOutcome,
    Manifest,
    OutcomeStatus,
    WorkDescriptor,
    utcnow,
)


# =============================================================================
# Test Helpers
# =============================================================================

SCRIPTED_STATUSES = {
    "success": OutcomeStatus.SUCCESS,
    "retry": OutcomeStatus.RETRYABLE_FAILURE,
    "fail": OutcomeStatus.TERMINAL_FAILURE,
}


class ScriptedInvoker(FunctionInvoker):
    """
    Preparation function double.

    Returns a manifest with one descriptor per item id. Errors queued in
    `errors` are raised (in order) before any manifest is returned.
    """

    def __init__(self, item_ids: Optional[List[str]] = None, errors: Optional[List[Exception]] = None):
        self.item_ids = list(item_ids or [])
        self.errors = list(errors or [])
        self.calls: List[Dict[str, Any]] = []

    def invoke(self, entrypoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append({"entrypoint": entrypoint, "payload": payload})
        if self.errors:
            raise self.errors.pop(0)

        items = tuple(
            WorkDescriptor(item_id=item_id, bucket="test-bucket", key=f"incoming/{item_id}")
            for item_id in self.item_ids
        )
        return Manifest(run_id=payload["run_id"], items=items).to_dict()


class ScriptedSubstrate(ExecutionSubstrate):
    """
    Execution substrate double.

    script maps item_id -> list of per-attempt behaviours:
        "success" / "retry" / "fail"  -> outcome status returned by wait()
        "hang"                        -> wait() never finishes (timeout)
        Exception instance            -> raised by launch()
    Items without a script (or with an exhausted script) use `default`.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, default: str = "success", delay: float = 0.01):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.launches: List[tuple] = []
        self.run_ids: List[Optional[str]] = []
        self.stopped: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._behaviours: Dict[str, str] = {}
        self._counter = 0

    def launches_for(self, item_id: str) -> int:
        return sum(1 for launched_id, _ in self.launches if launched_id == item_id)

    async def launch(self, descriptor, limits, attempt=1, run_id=None):
        steps = self.script.get(descriptor.item_id)
        behaviour = steps.pop(0) if steps else self.default
        self.launches.append((descriptor.item_id, attempt))
        self.run_ids.append(run_id)
        if isinstance(behaviour, Exception):
            raise behaviour

        self._counter += 1
        handle = make_handle(descriptor.item_id, f"fake-task-{self._counter}", attempt)
        self._behaviours[handle.task_id] = behaviour
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return handle

    async def wait(self, handle):
        behaviour = self._behaviours[handle.task_id]
        try:
            await asyncio.sleep(3600 if behaviour == "hang" else self.delay)
        finally:
            self.in_flight -= 1

        status = SCRIPTED_STATUSES[behaviour]
        return ExecutionOutcome(
            item_id=handle.item_id,
            status=status,
            diagnostic=None if status == OutcomeStatus.SUCCESS else f"scripted {behaviour}",
            finished_at=utcnow(),
        )

    async def stop(self, handle, reason):
        self.stopped.append((handle.task_id, reason))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fast_config():
    """PipelineConfig with zero backoff and a short item timeout."""
    from dataproc.src.config import PipelineConfig

    return PipelineConfig.from_dict({
        "preparation": {"max_attempts": 3, "backoff_base": 0},
        "processing": {
            "max_concurrency": 2,
            "max_attempts": 3,
            "item_timeout": 0.5,
            "backoff_base": 0,
        },
        "execution": {"backend": "local"},
    })


@pytest.fixture
def make_invoker():
    """Factory for ScriptedInvoker."""
    return ScriptedInvoker


@pytest.fixture
def make_substrate():
    """Factory for ScriptedSubstrate."""
    return ScriptedSubstrate


@pytest.fixture
def db_session():
    """Fresh in-memory SQLite session with all tables."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import Session
    from sqlalchemy.pool import StaticPool
    from dataproc.src.database.models import Base

    # One shared connection so worker-thread writes see the same database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    session = Session(engine, expire_on_commit=False)
    yield session

    session.rollback()
    session.close()
    engine.dispose()


@pytest.fixture
def repository(db_session):
    """RunRepository over the in-memory session."""
    from dataproc.src.database.repository import RunRepository
    return RunRepository(db_session)


@pytest.fixture
def sample_descriptors() -> List[WorkDescriptor]:
    """Three descriptors A, B, C."""
    return [
        WorkDescriptor(item_id=item_id, bucket="test-bucket", key=f"incoming/{item_id}.csv")
        for item_id in ("A", "B", "C")
    ]


@pytest.fixture
def local_root(tmp_path):
    """Directory tree laid out like the incoming bucket."""
    incoming = tmp_path / "bucket" / "incoming"
    incoming.mkdir(parents=True)
    (incoming / "a.csv").write_text("id,value\n1,10\n2,20\n")
    (incoming / "b.csv").write_text("id,value\n3,30\n")
    nested = incoming / "2024" / "03"
    nested.mkdir(parents=True)
    (nested / "c.txt").write_text("no trailing newline")
    return tmp_path


@pytest.fixture
def local_location(local_root) -> StorageLocation:
    return StorageLocation(bucket=str(local_root / "bucket"))


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment overrides that would leak into load_config."""
    for name in (
        "CONFIG_PATH", "INPUT_BUCKET", "input_bucket", "SCHEDULE_EXPRESSION",
        "OVERLAP_POLICY", "PREPARE_FUNCTION_NAME", "MAX_CONCURRENCY",
        "ITEM_MAX_ATTEMPTS", "ITEM_TIMEOUT", "EXECUTION_BACKEND", "ECS_CLUSTER",
        "TASK_DEFINITION", "DATABASE_URL", "SNS_TOPIC_ARN", "AWS_REGION",
        "AWS_DEFAULT_REGION",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
