"""Tests for Vtiger contact field mapping."""

from datetime import UTC, datetime

import pytest

from crmsync.services.field_mapping import (
    extract_field,
    map_contact,
    normalize_phone,
    normalize_url,
)


class TestExtractField:
    """Tests for extract_field."""

    def test_first_non_empty_wins(self):
        """Blank and whitespace values fall through to the next name."""
        contact = {"email": "", "email1": "   ", "primary_email": "ada@example.com"}
        assert extract_field(contact, ["email", "email1", "primary_email"]) == "ada@example.com"

    def test_missing(self):
        assert extract_field({}, ["firstname"]) is None

    def test_non_string_values(self):
        """Numbers are stringified."""
        assert extract_field({"cf_883": 42}, ["cf_883"]) == "42"


class TestNormalizers:
    """Tests for phone and url normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+41 (44) 123-45-67", "+41441234567"),
            ("044 123 45 67", "0441234567"),
            ("n/a", None),
            (None, None),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_normalize_url_adds_scheme(self):
        assert normalize_url("linkedin.com/in/ada") == "https://linkedin.com/in/ada"

    def test_normalize_url_keeps_scheme(self):
        assert normalize_url("HTTP://example.com") == "HTTP://example.com"


class TestMapContact:
    """Tests for map_contact."""

    def test_full_contact(self):
        """Standard and custom fields land on the right candidate columns."""
        record = map_contact(
            {
                "id": "12x501",
                "firstname": "Grace",
                "lastname": "Hopper",
                "email": "grace@example.com",
                "phone": "",
                "mobile": "+1 555 0100",
                "title": "Rear Admiral",
                "cf_company": "US Navy",
                "cf_branche": "Defense",
                "mailingcity": "Arlington",
                "cf_linkedin_url": "www.linkedin.com/in/grace",
                "modifiedtime": "2024-03-01 08:30:00",
            }
        )

        assert record.external_id == "12x501"
        assert record.first_name == "Grace"
        assert record.last_name == "Hopper"
        assert record.phone == "+15550100"
        assert record.job_title == "Rear Admiral"
        assert record.company == "US Navy"
        assert record.industry == "Defense"
        assert record.location == "Arlington"
        assert record.linkedin_url == "https://www.linkedin.com/in/grace"
        assert record.remote_modified_at == datetime(2024, 3, 1, 8, 30, tzinfo=UTC)

    def test_empty_remote_values_are_none(self):
        """Vtiger is authoritative: blanks map to None."""
        record = map_contact({"id": "12x1", "firstname": "A", "email": " "})
        assert record.email is None
        assert record.company is None

    def test_unparseable_modified_time(self):
        record = map_contact({"id": "12x1", "modifiedtime": "yesterday"})
        assert record.remote_modified_at is None

    def test_missing_id(self):
        """A payload without an id cannot be mapped."""
        with pytest.raises(ValueError):
            map_contact({"firstname": "Nobody"})

    def test_candidate_fields_exclude_id(self):
        record = map_contact({"id": "12x1", "firstname": "A"})
        fields = record.candidate_fields()
        assert "external_id" not in fields
        assert fields["first_name"] == "A"
