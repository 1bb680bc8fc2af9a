"""
ECS Fargate execution substrate.

Each processing attempt is one Fargate task running the data-processor
container with the WorkDescriptor passed through environment overrides.

Usage:
    substrate = EcsTaskSubstrate(
        cluster="DataProcessorCluster",
        task_definition="FargateTaskDefinition",
        container_name="data-processor",
        subnets=["subnet-123"],
    )
    handle = await substrate.launch(descriptor, ResourceLimits(cpu=256, memory_mib=512))
    outcome = await substrate.wait(handle)

Container exit code contract (see dataproc/containers/processor/entrypoint.py):
    0  -> SUCCESS
    75 -> RETRYABLE_FAILURE (EX_TEMPFAIL)
    *  -> TERMINAL_FAILURE
    no exit code (task never started, spot interruption) -> RETRYABLE_FAILURE
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dataproc.src.interfaces import (
    ExecutionHandle,
    ExecutionSubstrate,
    FatalError,
    ResourceLimits,
    TransientError,
    classify_client_error,
    make_handle,
)
from dataproc.src.models import ExecutionOutcome, OutcomeStatus, WorkDescriptor, utcnow

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_TEMPFAIL = 75

# run_task failure reasons that indicate temporary lack of capacity
TRANSIENT_LAUNCH_REASONS = (
    "RESOURCE:",
    "AGENT",
    "Capacity is unavailable",
    "Timeout",
    "ThrottlingException",
)


def build_environment(
    descriptor: WorkDescriptor, attempt: int, run_id: Optional[str] = None
) -> List[Dict[str, str]]:
    """Container environment overrides for one attempt."""
    environment = [
        {"name": "ITEM_ID", "value": descriptor.item_id},
        {"name": "INPUT_BUCKET", "value": descriptor.bucket},
        {"name": "INPUT_KEY", "value": descriptor.key},
        {"name": "ITEM_PARAMS", "value": json.dumps(descriptor.params)},
        {"name": "ATTEMPT", "value": str(attempt)},
    ]
    if descriptor.version:
        environment.append({"name": "ITEM_VERSION", "value": descriptor.version})
    if run_id:
        environment.append({"name": "RUN_ID", "value": run_id})
    return environment


def outcome_from_task(task: Dict[str, Any], container_name: str, item_id: str) -> ExecutionOutcome:
    """
    Map a STOPPED ECS task description to an ExecutionOutcome.

    Args:
        task: One entry of describe_tasks()["tasks"]
        container_name: Name of the processing container
        item_id: Descriptor id
    """
    container = next(
        (c for c in task.get("containers", []) if c.get("name") == container_name),
        {},
    )
    exit_code = container.get("exitCode")
    reason = container.get("reason") or task.get("stoppedReason") or task.get("stopCode", "")

    if exit_code == EXIT_SUCCESS:
        status = OutcomeStatus.SUCCESS
        diagnostic = None
    elif exit_code == EXIT_TEMPFAIL:
        status = OutcomeStatus.RETRYABLE_FAILURE
        diagnostic = f"exit code {exit_code}: {reason}".rstrip(": ")
    elif exit_code is None:
        # Never ran to completion: image pull, ENI, spot reclaim
        status = OutcomeStatus.RETRYABLE_FAILURE
        diagnostic = f"task stopped without exit code: {reason}"
    else:
        status = OutcomeStatus.TERMINAL_FAILURE
        diagnostic = f"exit code {exit_code}: {reason}".rstrip(": ")

    return ExecutionOutcome(
        item_id=item_id,
        status=status,
        diagnostic=diagnostic,
        started_at=task.get("startedAt") or task.get("createdAt"),
        finished_at=task.get("stoppedAt") or utcnow(),
    )


class EcsTaskSubstrate(ExecutionSubstrate):
    """
    Run processing attempts as ECS Fargate tasks.

    Attributes:
        cluster: ECS cluster name or ARN
        task_definition: Task definition family[:revision] or ARN
        container_name: Name of the processing container in the definition
        subnets: Subnets for awsvpc networking
        security_groups: Security groups for awsvpc networking
        poll_interval: Seconds between describe_tasks calls
    """

    def __init__(
        self,
        cluster: str,
        task_definition: str,
        container_name: str = "data-processor",
        subnets: Optional[List[str]] = None,
        security_groups: Optional[List[str]] = None,
        assign_public_ip: bool = False,
        poll_interval: float = 15,
        extra_environment: Optional[Dict[str, str]] = None,
        region: str = "us-east-1",
        ecs_client=None,
    ):
        """
        Initialize the substrate.

        Args:
            cluster: ECS cluster name or ARN
            task_definition: Task definition to run
            container_name: Container receiving the overrides
            subnets: awsvpc subnets (required by Fargate in practice)
            security_groups: awsvpc security groups
            assign_public_ip: Assign a public IP to the task ENI
            poll_interval: Seconds between status checks
            extra_environment: Static env vars added to every task
            region: AWS region
            ecs_client: Optional ECS client (for testing)
        """
        self.cluster = cluster
        self.task_definition = task_definition
        self.container_name = container_name
        self.subnets = list(subnets or [])
        self.security_groups = list(security_groups or [])
        self.assign_public_ip = assign_public_ip
        self.poll_interval = poll_interval
        self.extra_environment = dict(extra_environment or {})
        self._ecs_client = ecs_client or boto3.client("ecs", region_name=region)

        logger.info(
            f"Initialized EcsTaskSubstrate: cluster={cluster}, "
            f"task_definition={task_definition}"
        )

    def _run_task_kwargs(
        self,
        descriptor: WorkDescriptor,
        limits: ResourceLimits,
        attempt: int,
        run_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        environment = build_environment(descriptor, attempt, run_id) + [
            {"name": k, "value": v} for k, v in sorted(self.extra_environment.items())
        ]
        kwargs: Dict[str, Any] = {
            "cluster": self.cluster,
            "taskDefinition": self.task_definition,
            "launchType": "FARGATE",
            "count": 1,
            "startedBy": "dataproc",
            "overrides": {
                "cpu": str(limits.cpu),
                "memory": str(limits.memory_mib),
                "containerOverrides": [
                    {
                        "name": self.container_name,
                        "environment": environment,
                        "memory": limits.memory_mib,
                    }
                ],
            },
        }
        if self.subnets:
            kwargs["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": self.subnets,
                    "securityGroups": self.security_groups,
                    "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
                }
            }
        return kwargs

    def _launch_sync(
        self,
        descriptor: WorkDescriptor,
        limits: ResourceLimits,
        attempt: int,
        run_id: Optional[str],
    ) -> ExecutionHandle:
        try:
            response = self._ecs_client.run_task(
                **self._run_task_kwargs(descriptor, limits, attempt, run_id)
            )
        except ClientError as e:
            raise classify_client_error(e, f"run_task for {descriptor.item_id}")
        except BotoCoreError as e:
            raise TransientError(f"run_task for {descriptor.item_id}: {e}")

        tasks = response.get("tasks", [])
        if not tasks:
            failures = response.get("failures", [])
            reasons = "; ".join(
                f"{f.get('reason', '')} {f.get('detail', '')}".strip() for f in failures
            ) or "no task returned"
            if any(
                marker in f.get("reason", "")
                for f in failures
                for marker in TRANSIENT_LAUNCH_REASONS
            ):
                raise TransientError(f"run_task for {descriptor.item_id}: {reasons}")
            raise FatalError(f"run_task for {descriptor.item_id}: {reasons}")

        task_arn = tasks[0]["taskArn"]
        logger.info(
            f"Launched task for {descriptor.item_id} (attempt {attempt}): {task_arn}"
        )
        return make_handle(descriptor.item_id, task_arn, attempt)

    async def launch(
        self,
        descriptor: WorkDescriptor,
        limits: ResourceLimits,
        attempt: int = 1,
        run_id: Optional[str] = None,
    ) -> ExecutionHandle:
        return await asyncio.to_thread(
            self._launch_sync, descriptor, limits, attempt, run_id
        )

    def _describe(self, task_arn: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._ecs_client.describe_tasks(cluster=self.cluster, tasks=[task_arn])
        except ClientError as e:
            raise classify_client_error(e, f"describe_tasks {task_arn}")
        except BotoCoreError as e:
            raise TransientError(f"describe_tasks {task_arn}: {e}")

        tasks = response.get("tasks", [])
        return tasks[0] if tasks else None

    async def wait(self, handle: ExecutionHandle) -> ExecutionOutcome:
        """
        Poll until the task is STOPPED.

        Throttled describe calls are retried on the next poll. A task that
        ECS no longer knows about is reported as a retryable failure.
        """
        while True:
            try:
                task = await asyncio.to_thread(self._describe, handle.task_id)
            except TransientError as e:
                logger.warning(f"Status check for {handle.item_id} failed, will retry: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if task is None:
                return ExecutionOutcome(
                    item_id=handle.item_id,
                    status=OutcomeStatus.RETRYABLE_FAILURE,
                    attempts=handle.attempt,
                    diagnostic=f"task {handle.task_id} not found",
                    started_at=handle.launched_at,
                    finished_at=utcnow(),
                )

            if task.get("lastStatus") == "STOPPED":
                outcome = outcome_from_task(task, self.container_name, handle.item_id)
                logger.info(
                    f"Task for {handle.item_id} stopped: {outcome.status}"
                    + (f" ({outcome.diagnostic})" if outcome.diagnostic else "")
                )
                return outcome

            await asyncio.sleep(self.poll_interval)

    async def stop(self, handle: ExecutionHandle, reason: str) -> None:
        def _stop():
            try:
                self._ecs_client.stop_task(
                    cluster=self.cluster, task=handle.task_id, reason=reason[:255]
                )
                logger.info(f"Stopped task {handle.task_id}: {reason}")
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Could not stop task {handle.task_id}: {e}")

        await asyncio.to_thread(_stop)
