"""Candidate model populated from Vtiger CRM contacts."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from crmsync.database import Base


class Candidate(Base):
    """
    Local copy of a Vtiger contact.

    Created on the first successful fetch of its external id and updated on
    every later one. The sync engine never deletes candidates.
    """

    __tablename__ = "candidates"

    id: Mapped[int] = mapped_column(primary_key=True)
    # Vtiger record id, e.g. '12x3456'
    external_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    # Identity
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    phone: Mapped[str | None] = mapped_column(String(50))

    # Profile
    job_title: Mapped[str | None] = mapped_column(String(255))
    title_description: Mapped[str | None] = mapped_column(Text)
    profile_summary: Mapped[str | None] = mapped_column(Text)
    company: Mapped[str | None] = mapped_column(String(255))
    company_location: Mapped[str | None] = mapped_column(String(255))
    industry: Mapped[str | None] = mapped_column(String(255))
    location: Mapped[str | None] = mapped_column(String(255))
    linkedin_url: Mapped[str | None] = mapped_column(String(500))

    # Pipeline status is owned by the recruiters; set on create only
    status: Mapped[str] = mapped_column(String(50), server_default="not_contacted", nullable=False)
    source: Mapped[str | None] = mapped_column(String(50))

    # Sync tracking
    remote_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Candidate {self.external_id}: {self.first_name} {self.last_name or ''}>"
