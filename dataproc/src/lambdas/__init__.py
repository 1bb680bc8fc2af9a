"""
Lambda functions for the daily workflow.

Functions:
- prepare_data: Preparation Stage - list new artifacts, return the manifest
- notify_completion: Send SNS notification when a run is terminal
"""

from dataproc.src.lambdas.prepare_data import handler as prepare_data_handler
from dataproc.src.lambdas.notify_completion import handler as notify_completion_handler

__all__ = [
    "prepare_data_handler",
    "notify_completion_handler",
]
