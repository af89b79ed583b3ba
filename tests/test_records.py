#!/usr/bin/env python3
"""
Tests for cell parsing, value coercion and row transformation.
"""

from datetime import datetime

from crm_migrate.confidence import FieldMapping
from crm_migrate.mapper import TableMapping
from crm_migrate.parsers import digits, is_blank, parse_boolean, parse_datetime, parse_number
from crm_migrate.records import (
    Contact,
    Organization,
    coerce_value,
    normalize_phone,
    record_from_dict,
    split_full_name,
    transform_row,
)
from crm_migrate.reference_cache import ReferenceCache


def manual_table_mapping(sheet, table, pairs):
    return TableMapping(
        source_sheet=sheet,
        target_table=table,
        field_mappings=tuple(FieldMapping.manual_mapping(s, t) for s, t in pairs),
        confidence=10.0,
    )


def test_parsers():
    """Lenient parsing of numbers, booleans and dates."""
    assert is_blank(None) and is_blank("  ") and is_blank(float("nan"))
    assert not is_blank(0)
    assert parse_number("$1,250.50") == 1250.5
    assert parse_number("45%") == 45.0
    assert parse_number("n/a") is None
    assert parse_number(True) is None
    assert parse_boolean("Yes") is True
    assert parse_boolean("n") is False
    assert parse_boolean("maybe") is None
    assert parse_datetime("2024-03-01") == datetime(2024, 3, 1)
    assert parse_datetime("soon") is None
    assert digits("(312) 555-0101") == "3125550101"
    assert digits(60601.0) == "60601"


def test_coerce_enums():
    """Enum values are upper-cased with separators turned into underscores."""
    assert coerce_value("segment", "enum", "Fine Dining") == "FINE_DINING"
    assert coerce_value("stage", "enum", "closed-won") == "CLOSED_WON"
    assert coerce_value("priority", "enum", "A - Top accounts") == "A"
    assert coerce_value("priority", "enum", "b") == "B"


def test_coerce_numbers_and_dates():
    """Numbers, integers, booleans and dates are converted when possible."""
    assert coerce_value("value", "number", "$1,200") == 1200.0
    assert coerce_value("employee_count", "integer", "12") == 12
    assert isinstance(coerce_value("employee_count", "integer", 12.0), int)
    assert coerce_value("is_primary", "boolean", "yes") is True
    assert coerce_value("expected_close_date", "date", "2025-03-01") == datetime(2025, 3, 1)
    # Unconvertible values pass through for validation to report
    assert coerce_value("value", "number", "lots") == "lots"
    assert coerce_value("date", "date", "someday") == "someday"
    assert coerce_value("notes", "string", "   ") is None


def test_coerce_contact_fields():
    """Emails are lower-cased, zips padded and states upper-cased."""
    assert coerce_value("email", "email", " Chef@Bistro.COM ") == "chef@bistro.com"
    assert coerce_value("zip_code", "string", 601) == "00601"
    assert coerce_value("zip_code", "string", "60601-1234") == "60601-1234"
    assert coerce_value("state", "string", "il") == "IL"


def test_normalize_phone():
    """US numbers become +1XXXXXXXXXX; anything else is kept as text."""
    assert normalize_phone("(312) 555-0101") == "+13125550101"
    assert normalize_phone("1-312-555-0101") == "+13125550101"
    assert normalize_phone(3125550101.0) == "+13125550101"
    assert normalize_phone("555-01") == "555-01"
    assert normalize_phone(None) is None


def test_split_full_name():
    """Full names split on the first space or on a comma."""
    assert split_full_name("Ana Lopez") == ("Ana", "Lopez")
    assert split_full_name("Mary Ann Smith") == ("Mary", "Ann Smith")
    assert split_full_name("Lopez, Ana") == ("Lopez", "Ana")
    assert split_full_name("Cher") == ("Cher", None)
    assert split_full_name(None) == (None, None)


def test_record_from_dict_ignores_unknown_keys():
    """Unknown keys are dropped when building a record."""
    record = record_from_dict("organizations", {"id": "o1", "name": "Bistro", "color": "red"})
    assert isinstance(record, Organization)
    assert record.name == "Bistro"


def test_transform_contact_row():
    """Contact rows resolve organization names and split full names."""
    cache = ReferenceCache()
    cache.register("organizations", {"id": "org-1", "name": "Blue Bistro"})
    mapping = manual_table_mapping(
        "Contacts", "contacts",
        [("Name", "full_name"), ("Company", "organization_id"), ("Mail", "email"), ("Tel", "phone")],
    )

    record = transform_row(
        "contacts",
        {"Name": "Ana Lopez", "Company": "blue bistro", "Mail": "ANA@BISTRO.COM", "Tel": "312 555 0101"},
        mapping,
        cache,
    )

    assert isinstance(record, Contact)
    assert record.first_name == "Ana"
    assert record.last_name == "Lopez"
    assert record.organization_id == "org-1"
    assert record.email == "ana@bistro.com"
    assert record.phone == "+13125550101"
    assert record.is_primary is False
    assert len(record.id) == 32


def test_unknown_reference_is_kept():
    """Unresolvable references keep their text so validation can report them."""
    mapping = manual_table_mapping(
        "Contacts", "contacts",
        [("First", "first_name"), ("Last", "last_name"), ("Company", "organization_id")],
    )
    record = transform_row(
        "contacts", {"First": "Ben", "Last": "Carter", "Company": "Ghost Diner"}, mapping, ReferenceCache()
    )
    assert record.organization_id == "Ghost Diner"


def test_transform_assigns_fresh_ids():
    """Every transformed row gets its own id."""
    mapping = manual_table_mapping("Orgs", "organizations", [("Name", "name")])
    first = transform_row("organizations", {"Name": "Blue Bistro"}, mapping)
    second = transform_row("organizations", {"Name": "Blue Bistro"}, mapping)
    assert first.id != second.id
