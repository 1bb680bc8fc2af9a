"""
Processing Stage - consume one artifact and record its result.

This is the code that runs inside each isolated task (the data-processor
container on ECS, or a worker thread with the local substrate).

Steps for one WorkDescriptor:
1. If a result document already exists, a previous attempt got past the
   write: only (re)archive the artifact and report success
2. Read the artifact
3. Write results/<item_id>-<version>.json (size, line count, sha256)
4. Move the artifact from incoming/ to processed/

Re-running any prefix of these steps with the same descriptor is safe. A
timed-out attempt may still be running when its retry starts; if the
artifact disappears under the retry, the result written by the earlier
attempt counts as success.

The result name includes the artifact version, so the same key uploaded
again with new content gets a new result.
"""

import hashlib
import logging
from typing import Any, Dict

from dataproc.src.interfaces import (
    ArtifactStore,
    FatalError,
    PipelineError,
    StorageLocation,
    TransientError,
)
from dataproc.src.models import (
    ArtifactRef,
    ExecutionOutcome,
    OutcomeStatus,
    WorkDescriptor,
    utcnow,
)

logger = logging.getLogger(__name__)


def result_key_for(descriptor: WorkDescriptor) -> str:
    """Result document name for a descriptor, keyed on the artifact version."""
    if descriptor.version:
        return f"{descriptor.item_id}-{descriptor.version[:10]}.json"
    return f"{descriptor.item_id}.json"


def summarize_content(content: bytes) -> Dict[str, Any]:
    """Compute the per-artifact result fields."""
    return {
        "bytes": len(content),
        "lines": content.count(b"\n") + (1 if content and not content.endswith(b"\n") else 0),
        "sha256": hashlib.sha256(content).hexdigest(),
    }


class ProcessingStage:
    """
    Process one WorkDescriptor against an ArtifactStore.

    Attributes:
        store: ArtifactStore holding the artifact
        location: Prefixes for results and processed artifacts
    """

    def __init__(self, store: ArtifactStore, location: StorageLocation):
        self.store = store
        self.location = location

    def _run(self, descriptor: WorkDescriptor) -> str:
        artifact = ArtifactRef(bucket=descriptor.bucket, key=descriptor.key)
        result_key = result_key_for(descriptor)

        if self.store.result_exists(self.location, result_key):
            logger.info(
                f"Item {descriptor.item_id}: result already present, "
                f"finishing archive only"
            )
            self.store.archive_artifact(artifact, self.location)
            return "result already present"

        try:
            content = self.store.read_artifact(artifact)
        except FatalError:
            if self.store.result_exists(self.location, result_key):
                return self._completed_elsewhere(descriptor, artifact)
            raise
        result = {
            "item_id": descriptor.item_id,
            "source": artifact.uri,
            "params": descriptor.params,
            "processed_at": utcnow().isoformat(),
            **summarize_content(content),
        }
        self.store.write_result(self.location, result_key, result)
        try:
            self.store.archive_artifact(artifact, self.location)
        except FatalError:
            # Another attempt archived it between our read and now
            if not self.store.result_exists(self.location, result_key):
                raise
            logger.info(f"Item {descriptor.item_id}: artifact already archived")

        return f"{result['bytes']} bytes, {result['lines']} lines"

    def _completed_elsewhere(self, descriptor: WorkDescriptor, artifact: ArtifactRef) -> str:
        logger.info(
            f"Item {descriptor.item_id}: artifact gone but result present, "
            f"an earlier attempt completed it"
        )
        self.store.archive_artifact(artifact, self.location)
        return "completed by an earlier attempt"

    def process(self, descriptor: WorkDescriptor) -> ExecutionOutcome:
        """
        Process one descriptor.

        Never raises for storage problems: they are reported as
        RETRYABLE_FAILURE (TransientError) or TERMINAL_FAILURE (anything else).

        Returns:
            ExecutionOutcome for this single attempt
        """
        started_at = utcnow()
        try:
            diagnostic = self._run(descriptor)
            status = OutcomeStatus.SUCCESS
            logger.info(f"Item {descriptor.item_id} processed: {diagnostic}")
        except TransientError as e:
            status = OutcomeStatus.RETRYABLE_FAILURE
            diagnostic = str(e)
            logger.warning(f"Item {descriptor.item_id} transient failure: {e}")
        except PipelineError as e:
            status = OutcomeStatus.TERMINAL_FAILURE
            diagnostic = str(e)
            logger.error(f"Item {descriptor.item_id} failed: {e}")

        return ExecutionOutcome(
            item_id=descriptor.item_id,
            status=status,
            diagnostic=diagnostic,
            started_at=started_at,
            finished_at=utcnow(),
        )
