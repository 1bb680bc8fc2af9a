"""
LocalArtifactStore - Directory-backed storage for local runs and tests.

StorageLocation.bucket is interpreted as a root directory; prefixes are
subdirectories below it. Mirrors the S3 layout so the same stages run
unchanged against both stores.
"""

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from dataproc.src.interfaces import ArtifactStore, FatalError, StorageLocation
from dataproc.src.models import ArtifactRef

logger = logging.getLogger(__name__)


class LocalArtifactStore(ArtifactStore):
    """
    Local filesystem implementation of ArtifactStore.

    Args:
        root: Optional base directory that relative bucket paths resolve
            against (default: current working directory)
    """

    def __init__(self, root: str = "."):
        self.root = Path(root)

    def _bucket_dir(self, bucket: str) -> Path:
        path = Path(bucket)
        return path if path.is_absolute() else self.root / path

    def list_new_artifacts(self, location: StorageLocation) -> List[ArtifactRef]:
        base = self._bucket_dir(location.bucket)
        incoming = base / location.prefix
        if not incoming.exists():
            logger.info(f"Incoming directory {incoming} does not exist, nothing to do")
            return []

        artifacts = []
        for path in sorted(incoming.rglob("*")):
            if not path.is_file():
                continue
            stat = path.stat()
            artifacts.append(
                ArtifactRef(
                    bucket=location.bucket,
                    key=path.relative_to(base).as_posix(),
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    etag=hashlib.md5(path.read_bytes()).hexdigest(),
                )
            )

        logger.info(f"Found {len(artifacts)} new artifacts under {incoming}")
        return artifacts

    def read_artifact(self, artifact: ArtifactRef) -> bytes:
        path = self._bucket_dir(artifact.bucket) / artifact.key
        if not path.exists():
            raise FatalError(f"Artifact not found: {path}")
        return path.read_bytes()

    def write_result(self, location: StorageLocation, key: str, data: Dict[str, Any]) -> None:
        path = self._bucket_dir(location.bucket) / location.results_prefix / key
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a temp file then rename so readers never see a partial result
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, default=str, indent=2))
        os.replace(tmp_path, path)
        logger.info(f"Wrote result {path}")

    def result_exists(self, location: StorageLocation, key: str) -> bool:
        return (self._bucket_dir(location.bucket) / location.results_prefix / key).exists()

    def read_result(self, location: StorageLocation, key: str) -> Dict[str, Any]:
        path = self._bucket_dir(location.bucket) / location.results_prefix / key
        return json.loads(path.read_text())

    def archive_artifact(self, artifact: ArtifactRef, location: StorageLocation) -> None:
        base = self._bucket_dir(artifact.bucket)
        source = base / artifact.key
        relative = artifact.key[len(location.prefix):] if artifact.key.startswith(
            location.prefix
        ) else artifact.key
        dest = base / location.processed_prefix / relative

        if not source.exists():
            if dest.exists():
                logger.info(f"{source} already archived to {dest}")
                return
            raise FatalError(f"Cannot archive missing artifact: {source}")

        dest.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source, dest)
        logger.info(f"Archived {source} -> {dest}")
