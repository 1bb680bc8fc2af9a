"""
Workflow Orchestrator - Coordinate preparation, fan-out and aggregation for one run.

This module drives a WorkflowRun through its state machine:
1. PENDING -> PREPARING: invoke the Preparation Stage function (bounded retry
   on transient errors, any other error fails the run)
2. PREPARING -> FANNING_OUT: dispatch one Processing Stage attempt per
   WorkDescriptor through the execution substrate, at most max_concurrency
   in flight at a time (empty manifest goes straight to SUCCEEDED)
3. FANNING_OUT -> AGGREGATING: once every descriptor has been dispatched
4. AGGREGATING -> SUCCEEDED / PARTIAL_FAILURE / FAILED once every descriptor
   has exactly one recorded outcome

Item failures never escalate: a descriptor that keeps failing is retried
with exponential backoff, then recorded as TERMINAL_FAILURE while its
siblings carry on.

Usage:
    orchestrator = WorkflowOrchestrator(
        invoker=LambdaFunctionInvoker(region="us-east-1"),
        substrate=EcsTaskSubstrate(cluster="DataProcessorCluster",
                                   task_definition="FargateTaskDefinition"),
        config=load_config(),
    )
    run = await orchestrator.start()
    print(run.stage)  # SUCCEEDED / PARTIAL_FAILURE / FAILED
"""

import asyncio
import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dataproc.src.config import PipelineConfig
from dataproc.src.interfaces import (
    ExecutionHandle,
    ExecutionSubstrate,
    FatalError,
    FunctionInvoker,
    ItemTimeoutError,
    PipelineError,
    ResourceLimits,
    TransientError,
)
from dataproc.src.models import (
    ExecutionOutcome,
    Manifest,
    OutcomeStatus,
    RunStage,
    WorkDescriptor,
    WorkflowRun,
    aggregate_stage,
    manual_run_id,
    utcnow,
)

logger = logging.getLogger(__name__)

CANCELLED_DIAGNOSTIC = "cancelled before dispatch"


class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""
    pass


class RunInProgressError(OrchestratorError):
    """Raised when a run is started while another run is still active."""
    pass


class WorkflowOrchestrator:
    """
    Drive WorkflowRuns from trigger to terminal state.

    One run is active at a time. All mutation of a WorkflowRun happens on the
    event loop, and outcome recording is serialized through an asyncio.Lock.

    Attributes:
        invoker: Calls the Preparation Stage function
        substrate: Runs isolated Processing Stage attempts
        config: Pipeline configuration
        repository: Optional RunRepository mirroring run state
        notifier: Optional callable receiving run.summary() once terminal
        max_in_flight: Highest number of simultaneously in-flight attempts seen
    """

    def __init__(
        self,
        invoker: FunctionInvoker,
        substrate: ExecutionSubstrate,
        config: Optional[PipelineConfig] = None,
        repository=None,
        notifier: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            invoker: FunctionInvoker for the Preparation Stage
            substrate: ExecutionSubstrate for the Processing Stage
            config: PipelineConfig (defaults if omitted)
            repository: Optional RunRepository (state is persisted after
                every transition and every recorded outcome)
            notifier: Optional completion callback (e.g. SnsNotifier)
        """
        self.invoker = invoker
        self.substrate = substrate
        self.config = config or PipelineConfig()
        self.repository = repository
        self.notifier = notifier

        self.limits = ResourceLimits(
            cpu=self.config.execution.cpu,
            memory_mib=self.config.execution.memory_mib,
        )

        self._runs: Dict[str, WorkflowRun] = {}
        self._active: Optional[WorkflowRun] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._lock = asyncio.Lock()
        # Orders run store writes; _store_lock keeps the session single-threaded
        self._persist_lock = asyncio.Lock()
        self._store_lock = threading.Lock()
        self._dispatched = 0
        self._in_flight = 0
        self.max_in_flight = 0

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def active_run(self) -> Optional[WorkflowRun]:
        """Run currently executing in this process, if any."""
        return self._active

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def run_exists(self, run_id: str) -> bool:
        """True if run_id was ever started here or is in the run store."""
        if run_id in self._runs:
            return True
        if self.repository is None:
            return False
        with self._store_lock:
            return self.repository.run_exists(run_id)

    def stored_active_run(self) -> Optional[Dict[str, Any]]:
        """
        Non-terminal run recorded in the run store by another process.

        Returns None when this process owns the active run.
        """
        if self.repository is None:
            return None
        with self._store_lock:
            stored = self.repository.get_active_run()
        if stored and self._active and stored["run_id"] == self._active.run_id:
            return None
        return stored

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        """
        Read-only view of a run (memory first, then the run store).

        Returns:
            Run dict with outcomes, or None if unknown
        """
        run = self._runs.get(run_id)
        if run is not None:
            return run.to_dict()
        if self.repository is not None:
            with self._store_lock:
                return self.repository.get_run(run_id)
        return None

    def history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent runs first."""
        if self.repository is not None:
            with self._store_lock:
                return self.repository.list_runs(limit)
        runs = sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)
        return [run.summary() for run in runs[:limit]]

    async def wait_idle(self) -> None:
        """Block until no run is active in this process."""
        await self._idle.wait()

    # =========================================================================
    # Control
    # =========================================================================

    def cancel(self, run_id: Optional[str] = None) -> bool:
        """
        Request cancellation of a run (the active run by default).

        No new Processing Stage attempts are dispatched afterwards. Attempts
        already in flight run to completion; descriptors never dispatched
        are recorded as TERMINAL_FAILURE so the run still aggregates.

        Returns:
            True if a non-terminal run was marked for cancellation
        """
        run = self._active if run_id is None else self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False

        run.cancel_requested = True
        logger.warning(f"Cancellation requested for run {run.run_id} ({run.stage})")
        return True

    async def start(
        self,
        run_id: Optional[str] = None,
        scheduled_for=None,
    ) -> WorkflowRun:
        """
        Create a run and drive it to a terminal state.

        Args:
            run_id: Run identifier (a manual id is generated if omitted)
            scheduled_for: Calendar slot, for scheduled runs

        Returns:
            The terminal WorkflowRun

        Raises:
            RunInProgressError: If another run is active
            OrchestratorError: If run_id was already used
        """
        if self._active is not None:
            raise RunInProgressError(
                f"Run {self._active.run_id} is still {self._active.stage}"
            )

        run_id = run_id or manual_run_id()
        if self.run_exists(run_id):
            raise OrchestratorError(f"Run {run_id} already exists")

        run = WorkflowRun(run_id=run_id, scheduled_for=scheduled_for)
        self._runs[run_id] = run
        self._active = run
        self._idle.clear()
        self._dispatched = 0
        self._in_flight = 0
        self.max_in_flight = 0

        logger.info(f"Starting run {run_id}")
        try:
            await self._persist(run)
            await self._execute(run)
        finally:
            self._active = None
            self._idle.set()

        self._log_summary(run)
        self._notify(run)
        return run

    # =========================================================================
    # State machine
    # =========================================================================

    async def _execute(self, run: WorkflowRun) -> None:
        run.transition(RunStage.PREPARING)
        await self._persist(run)

        try:
            manifest = await self._prepare(run.run_id)
        except Exception as e:
            run.error = f"Preparation failed: {e}"
            logger.error(f"Run {run.run_id}: {run.error}")
            run.transition(RunStage.FAILED)
            await self._persist(run)
            return

        run.attach_manifest(manifest)
        logger.info(f"Run {run.run_id}: manifest has {len(manifest)} items")

        if manifest.is_empty:
            run.transition(RunStage.SUCCEEDED)
            await self._persist(run)
            return

        run.transition(RunStage.FANNING_OUT)
        await self._persist(run)

        await self._fan_out(run)

        if run.stage == RunStage.FANNING_OUT:
            run.transition(RunStage.AGGREGATING)

        final_stage = aggregate_stage(run.outcomes.values(), len(manifest))
        run.transition(final_stage)
        await self._persist(run)

    async def _prepare(self, run_id: str) -> Manifest:
        """
        Invoke the Preparation Stage with bounded retry.

        Raises:
            TransientError: If every attempt failed transiently
            FatalError: On a non-transient failure or a malformed manifest
        """
        function_name = self.config.preparation.function_name
        max_attempts = self.config.preparation.max_attempts
        backoff_base = self.config.preparation.backoff_base

        event = {"run_id": run_id}
        if self.config.storage.input_bucket:
            event["bucket"] = self.config.storage.input_bucket
            event["prefix"] = self.config.storage.input_prefix

        for attempt in range(1, max_attempts + 1):
            try:
                payload = await asyncio.to_thread(
                    self.invoker.invoke, function_name, event
                )
                break
            except TransientError as e:
                if attempt == max_attempts:
                    raise
                wait_time = backoff_base * 2 ** (attempt - 1)
                logger.warning(
                    f"Preparation error (attempt {attempt}/{max_attempts}), "
                    f"retrying in {wait_time}s: {e}"
                )
                await asyncio.sleep(wait_time)

        try:
            manifest = Manifest.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise FatalError(f"Invalid manifest from {function_name}: {e}")

        if manifest.run_id != run_id:
            raise FatalError(
                f"Manifest belongs to run {manifest.run_id}, expected {run_id}"
            )
        return manifest

    async def _fan_out(self, run: WorkflowRun) -> None:
        semaphore = asyncio.Semaphore(self.config.processing.max_concurrency)
        tasks = [
            asyncio.create_task(self._run_item(run, descriptor, semaphore))
            for descriptor in run.manifest.items
        ]
        await asyncio.gather(*tasks)

    async def _mark_dispatched(self, run: WorkflowRun) -> None:
        self._dispatched += 1
        if self._dispatched == len(run.manifest) and run.stage == RunStage.FANNING_OUT:
            run.transition(RunStage.AGGREGATING)
            await self._persist(run)

    async def _run_item(
        self,
        run: WorkflowRun,
        descriptor: WorkDescriptor,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if run.cancel_requested:
                outcome = ExecutionOutcome(
                    item_id=descriptor.item_id,
                    status=OutcomeStatus.TERMINAL_FAILURE,
                    attempts=0,
                    diagnostic=CANCELLED_DIAGNOSTIC,
                    finished_at=utcnow(),
                )
                await self._mark_dispatched(run)
            else:
                await self._mark_dispatched(run)
                self._in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self._in_flight)
                try:
                    outcome = await self._process_item(run, descriptor)
                except Exception as e:
                    logger.exception(f"Unexpected error processing {descriptor.item_id}")
                    outcome = ExecutionOutcome(
                        item_id=descriptor.item_id,
                        status=OutcomeStatus.TERMINAL_FAILURE,
                        diagnostic=f"{type(e).__name__}: {e}",
                        finished_at=utcnow(),
                    )
                finally:
                    self._in_flight -= 1

        await self._record(run, outcome)

    async def _process_item(
        self, run: WorkflowRun, descriptor: WorkDescriptor
    ) -> ExecutionOutcome:
        """
        Run attempts for one descriptor until a final outcome.

        Returns:
            SUCCESS or TERMINAL_FAILURE outcome (never RETRYABLE_FAILURE)
        """
        max_attempts = self.config.processing.max_attempts
        backoff_base = self.config.processing.backoff_base
        started_at = utcnow()
        diagnostic = None

        for attempt in range(1, max_attempts + 1):
            try:
                outcome = await self._attempt(run.run_id, descriptor, attempt)
            except TransientError as e:
                diagnostic = str(e)
            except PipelineError as e:
                return ExecutionOutcome(
                    item_id=descriptor.item_id,
                    status=OutcomeStatus.TERMINAL_FAILURE,
                    attempts=attempt,
                    diagnostic=str(e),
                    started_at=started_at,
                    finished_at=utcnow(),
                )
            else:
                if not outcome.retryable:
                    return replace(
                        outcome,
                        item_id=descriptor.item_id,
                        attempts=attempt,
                        started_at=started_at,
                        finished_at=outcome.finished_at or utcnow(),
                    )
                diagnostic = outcome.diagnostic or "retryable failure"

            if attempt == max_attempts:
                break
            if run.cancel_requested:
                diagnostic = f"cancelled after attempt {attempt}: {diagnostic}"
                break

            wait_time = backoff_base * 2 ** (attempt - 1)
            logger.warning(
                f"Item {descriptor.item_id} failed (attempt {attempt}/{max_attempts}), "
                f"retrying in {wait_time}s: {diagnostic}"
            )
            await asyncio.sleep(wait_time)

        logger.warning(f"Item {descriptor.item_id} failed after {attempt} attempts: {diagnostic}")
        return ExecutionOutcome(
            item_id=descriptor.item_id,
            status=OutcomeStatus.TERMINAL_FAILURE,
            attempts=attempt,
            diagnostic=diagnostic,
            started_at=started_at,
            finished_at=utcnow(),
        )

    async def _attempt(
        self, run_id: str, descriptor: WorkDescriptor, attempt: int
    ) -> ExecutionOutcome:
        """
        Launch one attempt and wait for it, bounded by the item timeout.

        Raises:
            TransientError: Launch failed transiently or the attempt timed out
            FatalError: Launch failed permanently
        """
        timeout = self.config.processing.item_timeout
        handle = await self.substrate.launch(
            descriptor, self.limits, attempt=attempt, run_id=run_id
        )

        try:
            return await asyncio.wait_for(self.substrate.wait(handle), timeout=timeout)
        except asyncio.TimeoutError:
            await self._stop(handle, f"timed out after {timeout}s")
            raise ItemTimeoutError(
                f"Attempt {attempt} for {descriptor.item_id} timed out after {timeout}s"
            )

    async def _stop(self, handle: ExecutionHandle, reason: str) -> None:
        try:
            await self.substrate.stop(handle, reason)
        except Exception as e:
            logger.warning(f"Could not stop {handle.task_id}: {e}")

    async def _record(self, run: WorkflowRun, outcome: ExecutionOutcome) -> None:
        async with self._lock:
            run.record_outcome(outcome)
            await self._persist(run)

        logger.info(
            f"Run {run.run_id}: {outcome.item_id} -> {outcome.status} "
            f"({len(run.outcomes)}/{len(run.manifest)} recorded)"
        )

    # =========================================================================
    # Side effects
    # =========================================================================

    async def _persist(self, run: WorkflowRun) -> None:
        """
        Mirror run state to the run store; memory stays authoritative.

        The write runs in a worker thread on a snapshot taken here, so a slow
        database never stalls in-flight waits. Writes land in call order.
        """
        if self.repository is None:
            return
        snapshot = replace(run, outcomes=dict(run.outcomes))
        async with self._persist_lock:
            await asyncio.to_thread(self._save_snapshot, snapshot)

    def _save_snapshot(self, run: WorkflowRun) -> None:
        with self._store_lock:
            try:
                self.repository.save_run(run)
                self.repository.session.commit()
            except SQLAlchemyError as e:
                self.repository.session.rollback()
                logger.error(f"Failed to persist run {run.run_id}: {e}")

    def _notify(self, run: WorkflowRun) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(run.summary())
        except Exception as e:
            logger.warning(f"Completion notification for {run.run_id} failed: {e}")

    def _log_summary(self, run: WorkflowRun) -> None:
        message = (
            f"Run {run.run_id} finished {run.stage}: "
            f"{run.succeeded_count}/{run.n_items} succeeded, "
            f"{run.failed_count} failed, max in flight {self.max_in_flight}"
        )
        if run.stage == RunStage.SUCCEEDED:
            logger.info(message)
        elif run.stage == RunStage.PARTIAL_FAILURE:
            logger.warning(message)
        else:
            logger.error(message + (f" ({run.error})" if run.error else ""))
