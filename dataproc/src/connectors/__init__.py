"""
Artifact stores for the daily data processing pipeline.

Available stores:
    - LocalArtifactStore: For local runs and tests (directory tree)
    - S3ArtifactStore: For cloud deployment (incoming bucket)
"""

from dataproc.src.connectors.local_store import LocalArtifactStore
from dataproc.src.connectors.s3_store import S3ArtifactStore

__all__ = ["LocalArtifactStore", "S3ArtifactStore"]
