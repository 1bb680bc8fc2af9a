"""
Preparation Stage - scan the incoming location and build the run manifest.

Runs once per WorkflowRun. Read-only with respect to the scanned artifacts:
moving or deleting them is the Processing Stage's job.
"""

import logging
from typing import Any, Dict, Optional

from dataproc.src.interfaces import ArtifactStore, StorageLocation
from dataproc.src.models import Manifest, WorkDescriptor, utcnow

logger = logging.getLogger(__name__)


class PreparationStage:
    """
    Build a Manifest with one WorkDescriptor per new artifact.

    Attributes:
        store: ArtifactStore to scan
        location: Incoming bucket/prefix
        params: Extra parameters copied into every WorkDescriptor
    """

    def __init__(
        self,
        store: ArtifactStore,
        location: StorageLocation,
        params: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self.location = location
        self.params = dict(params or {})

    def prepare(self, run_id: str) -> Manifest:
        """
        Produce the manifest for one run.

        Args:
            run_id: Run the manifest belongs to

        Returns:
            Manifest sorted by artifact key (may be empty)

        Raises:
            TransientError / FatalError: Propagated from the store
        """
        artifacts = self.store.list_new_artifacts(self.location)
        descriptors = [
            WorkDescriptor.from_artifact(artifact, self.params)
            for artifact in sorted(artifacts, key=lambda a: a.key)
        ]

        manifest = Manifest(run_id=run_id, items=tuple(descriptors), created_at=utcnow())

        if manifest.is_empty:
            logger.info(f"Run {run_id}: no new artifacts, manifest is empty")
        else:
            logger.info(f"Run {run_id}: prepared manifest with {len(manifest)} items")

        return manifest
