"""
Notify Completion - Send an SNS notification when a run reaches a terminal state.

Called by the orchestrator (through SnsNotifier) or deployed as a Lambda
at the end of a run with the run summary.

Input:
    {
        "run_id": "run-20231201T2200Z",
        "stage": "PARTIAL_FAILURE",
        "n_items": 3,
        "succeeded": 2,
        "failed": 1,
        "error": null
    }

Output:
    {
        "notified": true,
        "message_id": "xxx-yyy-zzz"
    }
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3

from dataproc.src.models import RunStage

logger = logging.getLogger()
logger.setLevel(logging.INFO)

STATUS_LABELS = {
    RunStage.SUCCEEDED: "SUCCESS",
    RunStage.PARTIAL_FAILURE: "PARTIAL",
    RunStage.FAILED: "FAILED",
}


def status_label(summary: Dict[str, Any]) -> str:
    """Operator-facing status label for a run summary."""
    stage = summary.get("stage")
    if stage in STATUS_LABELS:
        return STATUS_LABELS[stage]

    # Summaries without a stage: derive from counts
    succeeded = summary.get("succeeded", 0)
    failed = summary.get("failed", 0)
    return "SUCCESS" if failed == 0 else "PARTIAL" if succeeded > 0 else "FAILED"


def format_notification_message(summary: Dict[str, Any]) -> str:
    """Format the SNS notification message."""
    run_id = summary.get("run_id", "Unknown")
    succeeded = summary.get("succeeded", 0)
    failed = summary.get("failed", 0)
    n_items = summary.get("n_items", succeeded + failed)
    error = summary.get("error")

    message = f"""
Daily Data Processing - Run Complete

Run: {run_id}
Status: {status_label(summary)}

Results:
  - Succeeded: {succeeded}/{n_items} items
  - Failed: {failed}/{n_items} items
"""
    if error:
        message += f"\nRun error: {error}\n"

    message += f"""
Timestamp: {datetime.now(timezone.utc).isoformat()}

---
This is an automated notification from the data processing pipeline.
"""
    return message.strip()


def format_notification_subject(summary: Dict[str, Any]) -> str:
    """Format the SNS notification subject line."""
    run_id = summary.get("run_id", "Unknown")
    label = status_label(summary)

    if label == "SUCCESS":
        return f"[DataProc] Run {run_id} completed successfully"
    if label == "PARTIAL":
        return f"[DataProc] Run {run_id} completed with {summary.get('failed', 0)} failures"
    return f"[DataProc] Run {run_id} failed"


def publish(sns_client, topic_arn: str, summary: Dict[str, Any]) -> Optional[str]:
    """Publish one notification and return the SNS message id."""
    response = sns_client.publish(
        TopicArn=topic_arn,
        Message=format_notification_message(summary),
        Subject=format_notification_subject(summary)[:100],  # SNS subject limit
    )
    return response.get("MessageId")


class SnsNotifier:
    """
    Callable notifier the orchestrator invokes with a terminal run summary.

    Notification errors are logged and swallowed: a failed notification
    must not change the outcome of a run that already finished.
    """

    def __init__(self, topic_arn: str, region: str = "us-east-1", sns_client=None):
        self.topic_arn = topic_arn
        self._sns_client = sns_client or boto3.client("sns", region_name=region)

    def __call__(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        try:
            message_id = publish(self._sns_client, self.topic_arn, summary)
            logger.info(f"Notification sent for {summary.get('run_id')}: {message_id}")
            return {"notified": True, "message_id": message_id}
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")
            return {"notified": False, "error": str(e)}


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler for completion notification.

    Args:
        event: Run summary
        context: Lambda context (unused)

    Returns:
        Dict with notification status
    """
    logger.info(f"Notify completion event: {json.dumps(event, default=str)}")

    topic_arn = os.environ.get("SNS_TOPIC_ARN")

    if not topic_arn:
        logger.warning("SNS_TOPIC_ARN not set, skipping notification")
        return {
            "notified": False,
            "reason": "SNS_TOPIC_ARN environment variable not set",
        }

    result = SnsNotifier(topic_arn)(event)
    result["run_id"] = event.get("run_id")
    return result
