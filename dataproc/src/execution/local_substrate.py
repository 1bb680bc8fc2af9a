"""
Local execution substrate - processing attempts in worker threads.

Used for local runs and tests. Isolation is weaker than ECS (threads share a
process) but each attempt only sees its own WorkDescriptor and returns a
fresh ExecutionOutcome, so no mutable state crosses items.
"""

import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from dataproc.src.interfaces import (
    ExecutionHandle,
    ExecutionSubstrate,
    PipelineError,
    ResourceLimits,
    TransientError,
    make_handle,
)
from dataproc.src.models import ExecutionOutcome, OutcomeStatus, WorkDescriptor, utcnow

logger = logging.getLogger(__name__)

Processor = Callable[[WorkDescriptor], ExecutionOutcome]


class LocalSubstrate(ExecutionSubstrate):
    """
    Run a processor callable for each attempt on a thread pool.

    Args:
        processor: Callable taking a WorkDescriptor and returning an
            ExecutionOutcome (typically ProcessingStage(...).process)
        max_workers: Thread pool size
    """

    def __init__(self, processor: Processor, max_workers: int = 4):
        self.processor = processor
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dataproc-worker"
        )
        self._futures: Dict[str, Future] = {}
        self._counter = 0

    def _run(self, descriptor: WorkDescriptor) -> ExecutionOutcome:
        try:
            return self.processor(descriptor)
        except TransientError as e:
            status, diagnostic = OutcomeStatus.RETRYABLE_FAILURE, str(e)
        except PipelineError as e:
            status, diagnostic = OutcomeStatus.TERMINAL_FAILURE, str(e)
        except Exception as e:
            logger.exception(f"Processor crashed on {descriptor.item_id}")
            status, diagnostic = OutcomeStatus.TERMINAL_FAILURE, f"{type(e).__name__}: {e}"

        return ExecutionOutcome(
            item_id=descriptor.item_id,
            status=status,
            diagnostic=diagnostic,
            finished_at=utcnow(),
        )

    async def launch(
        self,
        descriptor: WorkDescriptor,
        limits: ResourceLimits,
        attempt: int = 1,
        run_id: Optional[str] = None,
    ) -> ExecutionHandle:
        self._counter += 1
        task_id = f"local-{self._counter:06d}"
        self._futures[task_id] = self._executor.submit(self._run, descriptor)
        logger.debug(
            f"Submitted {descriptor.item_id} as {task_id} (attempt {attempt})"
            + (f" for run {run_id}" if run_id else "")
        )
        return make_handle(descriptor.item_id, task_id, attempt)

    async def wait(self, handle: ExecutionHandle) -> ExecutionOutcome:
        future = self._futures[handle.task_id]
        try:
            return await asyncio.wrap_future(future)
        finally:
            if future.done():
                self._futures.pop(handle.task_id, None)

    async def stop(self, handle: ExecutionHandle, reason: str) -> None:
        # Running threads cannot be interrupted; queued ones can be dropped.
        # Either way the attempt is abandoned and no longer tracked.
        future = self._futures.pop(handle.task_id, None)
        if future is None:
            return
        if future.cancel():
            logger.info(f"Cancelled queued attempt {handle.task_id}: {reason}")
        else:
            logger.info(f"Abandoned running attempt {handle.task_id}: {reason}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
