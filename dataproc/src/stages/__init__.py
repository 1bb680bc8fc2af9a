"""
The two stages of the daily workflow.

- PreparationStage: scan incoming artifacts, build the Manifest
- ProcessingStage: process one WorkDescriptor inside an isolated task
"""

from dataproc.src.stages.preparation import PreparationStage
from dataproc.src.stages.processing import ProcessingStage

__all__ = ["PreparationStage", "ProcessingStage"]
