"""
Importer-specific SQLAlchemy models: runs and row-level errors.
"""

from .schema import ImportRowError, ImportRun, ImportRunStatus

__all__ = [
    "ImportRowError",
    "ImportRun",
    "ImportRunStatus",
]
