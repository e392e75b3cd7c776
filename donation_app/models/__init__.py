# donation_app/models/__init__.py
"""
Database models package
"""

from .base import ArchivableMixin, BaseModel, db
from .child import Child
from .donation import Donation, DonationStatus, PaymentMethod
from .donor import ANONYMOUS_DONOR_NAME, Donor
from .importer import ImportRowError, ImportRun, ImportRunStatus
from .project import Project, ProjectType
from .sponsorship import Sponsorship
from .stripe_invoice import StripeInvoice

__all__ = [
    "db",
    "BaseModel",
    "ArchivableMixin",
    "ANONYMOUS_DONOR_NAME",
    "Child",
    "Donation",
    "DonationStatus",
    "Donor",
    "PaymentMethod",
    "Project",
    "ProjectType",
    "Sponsorship",
    "StripeInvoice",
    # Importer models
    "ImportRowError",
    "ImportRun",
    "ImportRunStatus",
]
