"""
Unit tests for LocalSubstrate.
"""

import threading

import pytest

from dataproc.src.execution.local_substrate import LocalSubstrate
from dataproc.src.interfaces import FatalError, ResourceLimits, TransientError
from dataproc.src.models import ExecutionOutcome, OutcomeStatus, WorkDescriptor

pytestmark = pytest.mark.asyncio(loop_scope="function")


def descriptor(item_id="A"):
    return WorkDescriptor(item_id=item_id, bucket="b", key=f"incoming/{item_id}")


def substrate_for(processor, max_workers=2):
    return LocalSubstrate(processor, max_workers=max_workers)


class TestLocalSubstrate:
    """Tests for launch/wait/stop on worker threads."""

    async def test_returns_processor_outcome(self):
        substrate = substrate_for(
            lambda d: ExecutionOutcome(item_id=d.item_id, status=OutcomeStatus.SUCCESS)
        )
        try:
            handle = await substrate.launch(descriptor("A"), ResourceLimits(), attempt=2)
            outcome = await substrate.wait(handle)
        finally:
            substrate.shutdown()

        assert handle.item_id == "A"
        assert handle.attempt == 2
        assert outcome.status == OutcomeStatus.SUCCESS

    @pytest.mark.parametrize("error,expected", [
        (TransientError("storage busy"), OutcomeStatus.RETRYABLE_FAILURE),
        (FatalError("bad input"), OutcomeStatus.TERMINAL_FAILURE),
        (RuntimeError("boom"), OutcomeStatus.TERMINAL_FAILURE),
    ])
    async def test_processor_errors_become_outcomes(self, error, expected):
        def processor(d):
            raise error

        substrate = substrate_for(processor)
        try:
            outcome = await substrate.wait(await substrate.launch(descriptor(), ResourceLimits()))
        finally:
            substrate.shutdown()

        assert outcome.status == expected
        assert str(error) in outcome.diagnostic

    async def test_each_attempt_gets_own_task_id(self):
        substrate = substrate_for(
            lambda d: ExecutionOutcome(item_id=d.item_id, status=OutcomeStatus.SUCCESS)
        )
        try:
            first = await substrate.launch(descriptor("A"), ResourceLimits())
            second = await substrate.launch(descriptor("A"), ResourceLimits(), attempt=2)
            await substrate.wait(first)
            await substrate.wait(second)
        finally:
            substrate.shutdown()

        assert first.task_id != second.task_id

    async def test_stop_drops_queued_attempt(self):
        release = threading.Event()

        def processor(d):
            release.wait(5)
            return ExecutionOutcome(item_id=d.item_id, status=OutcomeStatus.SUCCESS)

        substrate = substrate_for(processor, max_workers=1)
        try:
            running = await substrate.launch(descriptor("A"), ResourceLimits())
            queued = await substrate.launch(descriptor("B"), ResourceLimits())

            await substrate.stop(queued, "timed out")
            release.set()

            assert (await substrate.wait(running)).succeeded
            assert queued.task_id not in substrate._futures
        finally:
            release.set()
            substrate.shutdown()

    async def test_stop_forgets_running_attempt(self):
        """A running attempt cannot be interrupted but is no longer tracked."""
        started = threading.Event()
        release = threading.Event()

        def processor(d):
            started.set()
            release.wait(5)
            return ExecutionOutcome(item_id=d.item_id, status=OutcomeStatus.SUCCESS)

        substrate = substrate_for(processor, max_workers=1)
        try:
            running = await substrate.launch(descriptor("A"), ResourceLimits())
            assert started.wait(5)

            await substrate.stop(running, "timed out")

            assert running.task_id not in substrate._futures
        finally:
            release.set()
            substrate.shutdown()
