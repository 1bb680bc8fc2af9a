"""
End-to-end tests for one daily run on the local backend.

Wires the real collaborators together: LocalArtifactStore over a temporary
directory tree, the in-process preparation handler, LocalSubstrate worker
threads and a SQLite run store.
"""

import time

import pytest

from dataproc.src.connectors.local_store import LocalArtifactStore
from dataproc.src.execution.lambda_invoker import LocalFunctionInvoker, make_local_prepare_handler
from dataproc.src.execution.local_substrate import LocalSubstrate
from dataproc.src.interfaces import FatalError, TransientError
from dataproc.src.models import OutcomeStatus, RunStage, make_item_id
from dataproc.src.orchestrate.workflow_orchestrator import WorkflowOrchestrator
from dataproc.src.stages.processing import ProcessingStage, result_key_for
from dataproc.src.trigger.schedule import DailySchedule, ScheduleTrigger

pytestmark = pytest.mark.asyncio(loop_scope="function")


@pytest.fixture
def store():
    return LocalArtifactStore()


@pytest.fixture
def build(store, local_location, fast_config, repository):
    """Factory: orchestrator over the local tree with an optional processor wrapper."""
    substrates = []

    def _build(processor=None, notifier=None):
        stage = ProcessingStage(store, local_location)
        invoker = LocalFunctionInvoker({
            fast_config.preparation.function_name: make_local_prepare_handler(store, local_location),
        })
        substrate = LocalSubstrate(processor or stage.process, max_workers=2)
        substrates.append(substrate)
        return WorkflowOrchestrator(
            invoker=invoker,
            substrate=substrate,
            config=fast_config,
            repository=repository,
            notifier=notifier,
        )

    yield _build

    for substrate in substrates:
        substrate.shutdown()


class TestDailyRun:
    """One run from preparation to aggregation against real files."""

    async def test_all_items_succeed(self, build, local_root, local_location, repository):
        notifications = []
        orchestrator = build(notifier=notifications.append)

        run = await orchestrator.start()

        assert run.stage == RunStage.SUCCEEDED
        assert run.n_items == 3
        assert all(o.status == OutcomeStatus.SUCCESS for o in run.outcomes.values())

        bucket = local_root / "bucket"
        assert (bucket / "processed" / "a.csv").exists()
        assert (bucket / "processed" / "2024" / "03" / "c.txt").exists()
        assert not (bucket / "incoming" / "b.csv").exists()

        descriptor = next(d for d in run.manifest.items if d.key == "incoming/a.csv")
        result = LocalArtifactStore().read_result(local_location, result_key_for(descriptor))
        assert result["lines"] == 3

        stored = repository.get_run(run.run_id)
        assert stored["stage"] == RunStage.SUCCEEDED
        assert len(stored["outcomes"]) == 3
        assert notifications[0]["stage"] == RunStage.SUCCEEDED

    async def test_next_run_has_empty_manifest(self, build):
        first = await build().start()
        second = await build().start()

        assert first.n_items == 3
        assert second.stage == RunStage.SUCCEEDED
        assert second.n_items == 0
        assert second.outcomes == {}

    async def test_one_bad_item_is_partial_failure(self, build, store, local_location, local_root):
        stage = ProcessingStage(store, local_location)
        bad_id = make_item_id("incoming/b.csv")

        def processor(descriptor):
            if descriptor.item_id == bad_id:
                raise FatalError("schema mismatch")
            return stage.process(descriptor)

        run = await build(processor).start()

        assert run.stage == RunStage.PARTIAL_FAILURE
        assert run.outcomes[bad_id].status == OutcomeStatus.TERMINAL_FAILURE
        assert run.outcomes[bad_id].attempts == 1
        assert "schema mismatch" in run.outcomes[bad_id].diagnostic
        assert (local_root / "bucket" / "incoming" / "b.csv").exists()

    async def test_transient_item_failure_recovers(self, build, store, local_location):
        stage = ProcessingStage(store, local_location)
        flaky_id = make_item_id("incoming/a.csv")
        failures = {flaky_id: 1}

        def processor(descriptor):
            if failures.get(descriptor.item_id):
                failures[descriptor.item_id] -= 1
                raise TransientError("storage busy")
            return stage.process(descriptor)

        run = await build(processor).start()

        assert run.stage == RunStage.SUCCEEDED
        assert run.outcomes[flaky_id].attempts == 2

    async def test_every_item_failing_fails_the_run(self, build):
        def processor(descriptor):
            raise FatalError("unreadable")

        run = await build(processor).start()

        assert run.stage == RunStage.FAILED
        assert run.failed_count == 3

    async def test_missing_input_directory_is_empty_run(self, build, local_root):
        import shutil

        shutil.rmtree(local_root / "bucket" / "incoming")

        run = await build().start()

        assert run.stage == RunStage.SUCCEEDED
        assert run.n_items == 0


class TestScheduledRun:
    """A scheduled firing through the trigger, redelivered once."""

    async def test_scheduled_firing_runs_once(self, build, repository):
        from datetime import datetime, timezone

        orchestrator = build()
        trigger = ScheduleTrigger(orchestrator, DailySchedule.parse("cron(0 22 * * ? *)"))
        fired_at = datetime(2024, 3, 1, 22, 0, 2, tzinfo=timezone.utc)

        run = await trigger.fire(fired_at)
        again = await trigger.fire(fired_at)

        assert run.run_id == "run-20240301T2200Z"
        assert run.stage == RunStage.SUCCEEDED
        assert again is None
        assert [r["run_id"] for r in repository.list_runs()] == ["run-20240301T2200Z"]


class SlowFirstReadStore(LocalArtifactStore):
    """Delays reads of one key: the first read outlives the item timeout."""

    def __init__(self, slow_key, delays):
        super().__init__()
        self.slow_key = slow_key
        self.delays = list(delays)

    def read_artifact(self, artifact):
        if artifact.key == self.slow_key and self.delays:
            time.sleep(self.delays.pop(0))
        return super().read_artifact(artifact)


class TestTimedOutAttempt:
    """An abandoned attempt that finishes after its retry started."""

    async def test_late_first_attempt_does_not_fail_the_item(
        self, local_root, local_location, fast_config, repository
    ):
        store = SlowFirstReadStore("incoming/a.csv", [0.7, 0.3])
        stage = ProcessingStage(store, local_location)
        substrate = LocalSubstrate(stage.process, max_workers=3)
        orchestrator = WorkflowOrchestrator(
            invoker=LocalFunctionInvoker({
                fast_config.preparation.function_name: make_local_prepare_handler(store, local_location),
            }),
            substrate=substrate,
            config=fast_config,
            repository=repository,
        )

        try:
            run = await orchestrator.start()
        finally:
            substrate.shutdown()

        item_id = make_item_id("incoming/a.csv")
        assert run.stage == RunStage.SUCCEEDED
        assert run.outcomes[item_id].attempts == 2
        assert (local_root / "bucket" / "processed" / "a.csv").exists()
        assert substrate._futures == {}


class TestReupload:
    """A key reused on a later day is processed again."""

    async def test_same_key_new_content(self, build, store, local_root, local_location):
        first = await build().start()
        (local_root / "bucket" / "incoming" / "a.csv").write_text("id,value\n7,70\n8,80\n9,90\n")

        second = await build().start()

        item_id = make_item_id("incoming/a.csv")
        assert second.n_items == 1
        assert second.outcomes[item_id].status == OutcomeStatus.SUCCESS
        assert second.outcomes[item_id].diagnostic == "24 bytes, 4 lines"
        descriptor = second.manifest.items[0]
        assert store.read_result(local_location, result_key_for(descriptor))["lines"] == 4
        assert first.manifest.items[1].version != descriptor.version
