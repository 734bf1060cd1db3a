"""Map raw Vtiger contact payloads onto candidate fields."""

import logging
import re
from datetime import UTC, datetime
from typing import Any

from crmsync.schemas.contact import ContactRecord

logger = logging.getLogger(__name__)

# Candidate field -> Vtiger field names in priority order (first non-empty wins).
# The cf_* entries are the instance's custom fields.
FIELD_MAPPINGS: dict[str, list[str]] = {
    "first_name": ["firstname", "first_name", "fname"],
    "last_name": ["lastname", "last_name", "lname", "surname"],
    "email": ["email", "email1", "primary_email", "secondaryemail"],
    "phone": ["phone", "mobile", "homephone", "otherphone"],
    "job_title": ["title", "jobtitle", "job_title", "position"],
    "title_description": ["cf_title_description", "cf_885"],
    "profile_summary": ["cf_profile_summary", "cf_883", "description"],
    "company": ["cf_company", "accountname", "cf_867"],
    "company_location": ["cf_company_location", "cf_887"],
    "industry": ["cf_branche", "industry", "cf_863"],
    "location": ["cf_location", "mailingcity", "cf_857"],
    "linkedin_url": ["cf_linkedin_url", "linkedin", "cf_919"],
}

_PHONE_JUNK = re.compile(r"[^\d+]")


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_field(contact: dict[str, Any], candidates: list[str]) -> str | None:
    """Return the first non-empty value among the given Vtiger field names."""
    for name in candidates:
        value = _clean(contact.get(name))
        if value is not None:
            return value
    return None


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = _PHONE_JUNK.sub("", value)
    return digits or None


def normalize_url(value: str | None) -> str | None:
    if not value:
        return None
    if not value.lower().startswith(("http://", "https://")):
        value = f"https://{value}"
    return value


def _parse_modified(value: str | None) -> datetime | None:
    """Parse Vtiger's 'YYYY-MM-DD HH:MM:SS' timestamps (server time, treated as UTC)."""
    if not value:
        return None
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


def map_contact(contact: dict[str, Any]) -> ContactRecord:
    """
    Build a ContactRecord from a raw Vtiger contact.

    Vtiger is authoritative: empty remote values map to None and overwrite
    local data on update.

    Raises:
        ValueError: if the payload carries no record id.
    """
    external_id = _clean(contact.get("id"))
    if external_id is None:
        raise ValueError("Vtiger contact has no id")

    fields = {name: extract_field(contact, names) for name, names in FIELD_MAPPINGS.items()}
    fields["phone"] = normalize_phone(fields["phone"])
    fields["linkedin_url"] = normalize_url(fields["linkedin_url"])

    return ContactRecord(
        external_id=external_id,
        remote_modified_at=_parse_modified(contact.get("modifiedtime")),
        **fields,
    )
