#!/usr/bin/env python3
"""
Tests for four-layer record validation and quality scoring.
"""

from datetime import datetime

import pytest

from crm_migrate.records import Contact, Interaction, Opportunity, Organization
from crm_migrate.reference_cache import ReferenceCache
from crm_migrate.rules import ValidationRules
from crm_migrate.validation import (
    ErrorType,
    Severity,
    ValidationEngine,
    ValidationOptions,
    ValidationService,
    generate_report,
)

AS_OF = datetime(2024, 6, 1, 9, 0)


@pytest.fixture
def cache():
    cache = ReferenceCache()
    cache.register("organizations", {"id": "org-1", "name": "Blue Bistro", "email": "info@bluebistro.com"})
    cache.register("contacts", {"id": "c-1", "first_name": "Ana", "last_name": "Lopez",
                                "organization_id": "org-1", "is_primary": True})
    cache.register("organizations", {"id": "org-2", "name": "Harbor Grill"})
    return cache


@pytest.fixture
def engine(cache):
    return ValidationEngine(cache=cache, as_of=AS_OF)


def full_organization(**changes):
    data = dict(
        id="org-9", name="Corner Cafe", priority="B", segment="COFFEE_SHOP",
        address="7 Main Ave", city="Evanston", state="IL", zip_code="60201",
        phone="+13125550103", email="team@cornercafe.com",
        estimated_revenue=90000.0, employee_count=8,
    )
    data.update(changes)
    return Organization(**data)


def test_contact_with_unknown_organization(engine):
    """A missing organization is exactly one critical reference error."""
    contact = Contact(id="c-9", first_name="Ben", last_name="Carter",
                      email="ben@grill.com", position="Chef", organization_id="ghost-org")
    result = engine.validate_row("contacts", contact, row=7)

    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.error_type == ErrorType.REFERENCE
    assert error.severity == Severity.CRITICAL
    assert error.field == "organization_id"
    assert error.row == 7
    assert result.has_critical
    assert not result.is_valid


def test_stage_probability_band(engine):
    """Probabilities outside the stage's band are business rule errors."""
    unusual = Opportunity(id="o-1", name="Spring menu", organization_id="org-1",
                          stage="PROPOSAL", probability=10, value=500)
    result = engine.validate_row("opportunities", unusual)

    assert [e.error_type for e in result.errors] == [ErrorType.BUSINESS_RULE]
    assert "unusual for stage" in result.errors[0].message

    usual = Opportunity(id="o-2", name="Spring menu", organization_id="org-1",
                        stage="PROPOSAL", probability=55, value=500)
    assert engine.validate_row("opportunities", usual).errors == []


def test_complete_organization_is_clean(engine):
    """A fully populated organization has no findings and full quality."""
    result = engine.validate_row("organizations", full_organization())

    assert result.errors == []
    assert result.warnings == []
    assert result.quality_score == 100


def test_format_and_range_errors(engine):
    """Formats, enums and ranges are checked per field."""
    record = full_organization(
        email="not-an-email", zip_code="6060", state="Illinois",
        segment="SPACESHIP", employee_count=-5, website="not a url",
    )
    result = engine.validate_row("organizations", record)

    by_field = {e.field: e for e in result.errors}
    assert by_field["email"].error_type == ErrorType.FORMAT
    assert by_field["zip_code"].error_type == ErrorType.FORMAT
    assert by_field["state"].error_type == ErrorType.FORMAT
    assert by_field["segment"].error_type == ErrorType.FORMAT
    assert by_field["employee_count"].error_type == ErrorType.RANGE
    assert by_field["website"].error_type == ErrorType.FORMAT
    assert all(e.severity == Severity.ERROR for e in result.errors)


def test_required_and_missing_id(engine):
    """Missing required fields and ids are reported; a missing id is critical."""
    result = engine.validate_row("contacts", Contact(id=None, organization_id="org-1"))

    fields = {(e.field, e.error_type) for e in result.errors}
    assert ("id", ErrorType.REQUIRED) in fields
    assert ("first_name", ErrorType.REQUIRED) in fields
    assert ("last_name", ErrorType.REQUIRED) in fields
    assert result.has_critical


def test_invalid_organization_name(engine):
    """Placeholder names such as test or temp are rejected."""
    result = engine.validate_row("organizations", full_organization(name="Test Kitchen"))
    assert any("Invalid organization name" in e.message for e in result.errors)


def test_high_priority_requirements(engine):
    """Priority A needs a contact method and an estimated revenue."""
    record = full_organization(priority="A", phone=None, email=None, estimated_revenue=None)
    result = engine.validate_row("organizations", record)

    rules = [e for e in result.errors if e.error_type == ErrorType.BUSINESS_RULE]
    assert {e.field for e in rules} == {"phone", "estimated_revenue"}


def test_inactive_organization_needs_notes(engine):
    """Inactive organizations must explain their status."""
    result = engine.validate_row("organizations", full_organization(status="INACTIVE"))
    assert any(e.field == "notes" for e in result.errors)

    explained = full_organization(status="INACTIVE", notes="Closed for renovation")
    assert engine.validate_row("organizations", explained).errors == []


def test_future_last_contact_date(engine):
    """Last contact dates cannot be in the future."""
    result = engine.validate_row(
        "organizations", full_organization(last_contact_date=datetime(2024, 7, 1))
    )
    assert [e.error_type for e in result.errors] == [ErrorType.RANGE]


def test_closed_and_high_value_opportunities(engine):
    """Closed deals need a reason and large deals need a contact."""
    closed = Opportunity(id="o-3", name="Lost deal", organization_id="org-1",
                         stage="CLOSED_LOST", probability=0, value=500)
    assert [e.field for e in engine.validate_row("opportunities", closed).errors] == ["reason"]

    large = Opportunity(id="o-4", name="Big deal", organization_id="org-1",
                        stage="NEGOTIATION", probability=70, value=25000)
    assert [e.field for e in engine.validate_row("opportunities", large).errors] == ["contact_id"]

    with_contact = Opportunity(id="o-5", name="Big deal", organization_id="org-1", contact_id="c-1",
                               stage="NEGOTIATION", probability=70, value=25000)
    assert engine.validate_row("opportunities", with_contact).errors == []


def test_contact_from_other_organization(engine):
    """A contact must belong to the record's organization."""
    deal = Opportunity(id="o-6", name="Mixed deal", organization_id="org-2", contact_id="c-1",
                       stage="PROSPECT", probability=10, value=100)
    result = engine.validate_row("opportunities", deal)
    assert [e.message for e in result.errors] == ["Contact does not belong to the specified organization"]


def interaction(kind, moment, **changes):
    data = dict(id="i-1", type=kind, subject="Menu tasting", description="Tried the new menu",
                date=moment, outcome="POSITIVE", organization_id="org-1")
    data.update(changes)
    return Interaction(**data)


def test_service_hours(engine):
    """In-person visits are not booked during service; windows are half-open."""
    during = engine.validate_row("interactions", interaction("VISIT", datetime(2024, 5, 20, 12, 30)))
    assert [e.error_type for e in during.errors] == [ErrorType.BUSINESS_RULE]

    window_end = engine.validate_row("interactions", interaction("VISIT", datetime(2024, 5, 20, 14, 0)))
    assert window_end.errors == []

    email = engine.validate_row("interactions", interaction("EMAIL", datetime(2024, 5, 20, 12, 30)))
    assert email.errors == []

    date_only = engine.validate_row("interactions", interaction("VISIT", datetime(2024, 5, 20)))
    assert date_only.errors == []


def test_interaction_date_bounds(engine):
    """Interactions cannot be in the future or older than five years."""
    future = engine.validate_row("interactions", interaction("CALL", datetime(2024, 6, 2)))
    assert [e.error_type for e in future.errors] == [ErrorType.RANGE]

    ancient = engine.validate_row("interactions", interaction("CALL", datetime(2019, 5, 31)))
    assert [e.error_type for e in ancient.errors] == [ErrorType.RANGE]


def test_follow_up_needs_next_action(engine):
    """Follow-up outcomes must name the next action."""
    record = interaction("CALL", datetime(2024, 5, 20), outcome="FOLLOW_UP_NEEDED")
    result = engine.validate_row("interactions", record)
    assert [e.field for e in result.errors] == ["next_action"]


def test_duplicate_detection(engine):
    """Names and emails of other organizations are duplicates; the same id is not."""
    other = full_organization(id="org-9", name="blue bistro", email="info@bluebistro.com")
    errors = engine.validate_row("organizations", other).errors
    assert {e.field for e in errors if e.error_type == ErrorType.DUPLICATE} == {"name", "email"}

    same = full_organization(id="org-1", name="Blue Bistro", email="info@bluebistro.com")
    assert engine.validate_row("organizations", same).errors == []


def test_second_primary_contact(engine):
    """An organization can only have one primary contact."""
    contact = Contact(id="c-2", first_name="Ben", last_name="Carter", email="ben@bistro.com",
                      position="Chef", is_primary=True, organization_id="org-1")
    result = engine.validate_row("contacts", contact)
    assert [e.error_type for e in result.errors] == [ErrorType.DUPLICATE]


def test_disabled_layers(cache):
    """Reference and duplicate layers can be switched off."""
    engine = ValidationEngine(cache=cache, as_of=AS_OF, validate_references=False, check_duplicates=False)
    contact = Contact(id="c-3", first_name="Ben", last_name="Carter", email="ben@x.com",
                      position="Chef", is_primary=True, organization_id="ghost-org")
    assert engine.validate_row("contacts", contact).errors == []


def test_quality_score_penalties(engine):
    """Missing optional data lowers the quality score and warns when low."""
    sparse = Organization(id="org-8", name="Night Owl Bar")
    result = engine.validate_row("organizations", sparse)

    # priority 10, segment 10, contact method 15, address 10, revenue 5, employees 5
    assert result.quality_score == 45
    assert any(w.field == "_record" for w in result.warnings)
    assert {"segment", "address"} <= {w.field for w in result.warnings}

    stale = full_organization(last_contact_date=datetime(2023, 1, 1))
    assert engine.quality_score("organizations", stale) == 80


def test_validation_is_deterministic(engine):
    """The same record validated twice yields identical findings."""
    record = full_organization(email="broken", priority="A", estimated_revenue=None)
    first = engine.validate_row("organizations", record)
    second = engine.validate_row("organizations", record)
    assert first == second


def test_custom_rules():
    """Rule data can be replaced without touching the validator."""
    rules = ValidationRules(stage_probability={"PROPOSAL": (0, 20)})
    engine = ValidationEngine(rules=rules, cache=ReferenceCache(), as_of=AS_OF, validate_references=False)
    deal = Opportunity(id="o-7", name="Deal", organization_id="org-1",
                       stage="PROPOSAL", probability=10, value=100)
    assert engine.validate_row("opportunities", deal).errors == []


def test_validate_records_batch(engine):
    """Batches aggregate counts and the mean quality score."""
    records = [
        full_organization(id="org-10", name="Alpha Diner", email="a@alpha.com"),
        full_organization(id="org-11", name="Beta Diner", email="not-an-email"),
        Organization(id="org-12", name="Gamma Diner"),
    ]
    result = ValidationService(engine).validate_records("organizations", records, row_numbers=[2, 3, 4])

    assert result.processed_count == 3
    assert result.invalid_count == 1
    assert result.error_count == 1
    assert result.errors[0].row == 3
    assert result.is_valid is False
    assert result.data_quality_score == round((100 + 100 + 45) / 3)


def test_stop_on_error(engine):
    """stop_on_error ends the batch at the first invalid record."""
    records = [
        full_organization(id="org-10", name="Alpha Diner", email="broken"),
        full_organization(id="org-11", name="Beta Diner", email="b@beta.com"),
    ]
    result = ValidationService(engine).validate_records(
        "organizations", records, ValidationOptions(stop_on_error=True)
    )
    assert result.processed_count == 1


def test_parallel_matches_sequential(engine):
    """Worker threads produce the same ordered findings as a single thread."""
    records = [
        full_organization(id=f"org-{i}", name=f"Diner {i}", email=f"d{i}@x.com" if i % 2 else "bad")
        for i in range(10, 20)
    ]
    service = ValidationService(engine)
    sequential = service.validate_records("organizations", records)
    parallel = service.validate_records("organizations", records, ValidationOptions(max_workers=4))

    assert parallel.errors == sequential.errors
    assert parallel.data_quality_score == sequential.data_quality_score


def test_generate_report(engine):
    """The markdown report summarises every table."""
    result = ValidationService(engine).validate_records(
        "organizations", [full_organization(email="broken")]
    )
    report = generate_report({"organizations": result})

    assert report.startswith("# Data Validation Report")
    assert "## organizations (invalid)" in report
    assert "Invalid email format" in report
