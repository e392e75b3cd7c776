"""Importer pipeline for processor payment exports."""

from __future__ import annotations

from .association import (
    Ambiguous,
    Association,
    AssociationResolver,
    Found,
    NotFound,
    ProjectIntent,
    SQLAlchemyAssociationRepository,
    resolve_sponsorship_project,
    run_strategies,
)
from .batch import (
    BatchOrchestrator,
    BatchSummary,
    ImportAbortedError,
    ImporterError,
    RowError,
    execute_import_run,
    persist_batch_summary,
)
from .donors import DonorResolver, identity_key_for, normalize_email, normalize_phone
from .duplicates import DuplicateGuard
from .factory import DonationFactory, allocate_amount, reactivate
from .status import StatusClassification, classify_status

__all__ = [
    "Ambiguous",
    "Association",
    "AssociationResolver",
    "BatchOrchestrator",
    "BatchSummary",
    "DonationFactory",
    "DonorResolver",
    "DuplicateGuard",
    "Found",
    "ImportAbortedError",
    "ImporterError",
    "NotFound",
    "ProjectIntent",
    "RowError",
    "SQLAlchemyAssociationRepository",
    "StatusClassification",
    "allocate_amount",
    "classify_status",
    "execute_import_run",
    "identity_key_for",
    "normalize_email",
    "normalize_phone",
    "persist_batch_summary",
    "reactivate",
    "resolve_sponsorship_project",
    "run_strategies",
]
