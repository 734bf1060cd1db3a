"""Pydantic schema for contacts fetched from Vtiger."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ContactRecord(BaseModel):
    """A Vtiger contact mapped onto candidate fields."""

    model_config = ConfigDict(from_attributes=True)

    external_id: str

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None

    job_title: str | None = None
    title_description: str | None = None
    profile_summary: str | None = None
    company: str | None = None
    company_location: str | None = None
    industry: str | None = None
    location: str | None = None
    linkedin_url: str | None = None

    remote_modified_at: datetime | None = None

    def candidate_fields(self) -> dict:
        """Column values to write onto a Candidate row (external_id excluded)."""
        return self.model_dump(exclude={"external_id"})
