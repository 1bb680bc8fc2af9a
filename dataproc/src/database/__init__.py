"""
Run store (SQLAlchemy).

Exports:
    - Models: Base, RunRecord, OutcomeRecord
    - Repository: RunRepository, open_repository
"""

from dataproc.src.database.models import Base, OutcomeRecord, RunRecord
from dataproc.src.database.repository import RunRepository, open_repository

__all__ = [
    "Base",
    "OutcomeRecord",
    "RunRecord",
    "RunRepository",
    "open_repository",
]
