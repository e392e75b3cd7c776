# donation_app/models/project.py

from __future__ import annotations

import enum

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import ArchivableMixin, BaseModel, db


class ProjectType(str, enum.Enum):
    """Donation-tracking buckets."""

    GENERAL = "general"
    CAMPAIGN = "campaign"
    SPONSORSHIP = "sponsorship"


class Project(ArchivableMixin, BaseModel):
    """A bucket donations are recorded against (general fund, campaign, per-child sponsorship)."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    project_type: Mapped[ProjectType] = mapped_column(
        Enum(ProjectType, name="project_type_enum"),
        nullable=False,
        default=ProjectType.GENERAL,
        index=True,
    )
    system: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)

    donations = relationship("Donation", back_populates="project")
    sponsorships = relationship("Sponsorship", back_populates="project")

    __table_args__ = (Index("idx_projects_type_title", "project_type", "title"),)

    def __repr__(self):
        return f"<Project {self.title} ({self.project_type.value})>"

    @property
    def is_sponsorship(self) -> bool:
        return self.project_type == ProjectType.SPONSORSHIP

    def archive(self, **kwargs) -> None:
        if self.system:
            raise ValueError("Cannot archive system projects")
        super().archive(**kwargs)
