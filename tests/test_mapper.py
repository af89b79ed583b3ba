#!/usr/bin/env python3
"""
Tests for workbook field mapping and mapping overrides.
"""

import pytest
import yaml

from conftest import organization_rows

from crm_migrate.analyzer import SheetAnalysis, WorkbookAnalysis, WorkbookAnalyzer
from crm_migrate.mapper import FieldMapper, load_mapping_overrides, summarize
from crm_migrate.schema import ValidationError, validate_mapping_overrides


def make_sheet(name, headers, rows):
    """Build a SheetAnalysis directly from header and row lists."""
    dict_rows = tuple(dict(zip(headers, row)) for row in rows)
    return SheetAnalysis(
        name=name,
        headers=tuple(headers),
        header_row_index=0,
        row_count=len(dict_rows),
        column_data_types={},
        sample_rows=dict_rows,
        rows=dict_rows,
        row_numbers=tuple(range(2, len(dict_rows) + 2)),
    )


def weak_organizations():
    return make_sheet(
        "Organizations",
        ["Company Name", "PRIORITY-FOCUS (A-D)", "Employees"],
        [["Blue Bistro", "A", "many"], ["Harbor Grill", "B", "few"]],
    )


def test_map_workbook(crm_workbook):
    """Every sheet of the sample workbook maps onto its table."""
    analysis = WorkbookAnalyzer().analyze(crm_workbook)
    result = FieldMapper().map_workbook(analysis)

    tables = {t.source_sheet: t.target_table for t in result.table_mappings}
    assert tables == {
        "Organizations": "organizations",
        "Contacts": "contacts",
        "Opportunities": "opportunities",
        "Interactions": "interactions",
    }
    assert result.unmapped_sheets == []
    assert result.requires_human_review is False
    assert result.summary["low"] == 0

    organizations = result.mappings_for("organizations")[0].source_to_target()
    assert organizations["Company Name"] == "name"
    assert organizations["PRIORITY-FOCUS (A-D)"] == "priority"
    assert organizations["Zip"] == "zip_code"
    assert organizations["Employees"] == "employee_count"

    contacts = result.mappings_for("contacts")[0].source_to_target()
    assert contacts["Company"] == "organization_id"
    assert contacts["Job Title"] == "position"
    assert result.average_confidence >= 6


def test_one_header_per_field():
    """Greedy assignment never maps two headers onto the same field."""
    sheet = make_sheet(
        "Contacts",
        ["First Name", "Given Name", "Last Name", "Company"],
        [["Ana", "Ana", "Lopez", "Blue Bistro"]],
    )
    mapping = FieldMapper().map_sheet(sheet, "contacts")

    targets = [m.target_field for m in mapping.field_mappings]
    assert len(targets) == len(set(targets))
    assert mapping.get("first_name").source_field == "First Name"
    assert mapping.source_to_target().get("Given Name") != "first_name"


def test_unrelated_header_names_stay_unmapped():
    """A header unlike every field name is not mapped on its values alone."""
    rows = organization_rows()
    headers = rows[0] + ["Sales Volume"]
    sheet = make_sheet("Organizations", headers, [row + [12345] for row in rows[1:]])

    mapping = FieldMapper().map_sheet(sheet, "organizations")
    assert "Sales Volume" in mapping.unmapped_source_fields
    assert mapping.source_to_target()["Company Name"] == "name"

    # Without the name floor any field scoring at least 3.0 would take it
    loose = FieldMapper(min_semantic_score=0.0).map_sheet(sheet, "organizations")
    taken = [m for m in loose.field_mappings if m.source_field == "Sales Volume"]
    assert len(taken) == 1
    assert taken[0].confidence >= 3.0


def test_identify_table_from_headers():
    """Sheets with neutral names are recognised from their headers."""
    sheet = make_sheet("Data", ["First Name", "Last Name", "Job Title"], [["Ana", "Lopez", "Owner"]])
    assert FieldMapper().identify_table(sheet) == "contacts"

    unknown = make_sheet("Misc", ["Foo", "Bar", "Baz"], [[1, 2, 3]])
    assert FieldMapper().identify_table(unknown) is None


def test_unmapped_sheet():
    """Sheets that match no table are listed as unmapped."""
    analysis = WorkbookAnalysis(
        path="misc.xlsx",
        sheets=(make_sheet("Misc", ["Foo", "Bar", "Baz"], [[1, 2, 3]]),),
    )
    result = FieldMapper().map_workbook(analysis)
    assert result.unmapped_sheets == ["Misc"]
    assert result.table_mappings == []


def test_low_confidence_requires_review():
    """A low-confidence mapping marks the result for human review."""
    analysis = WorkbookAnalysis(path="weak.xlsx", sheets=(weak_organizations(),))
    result = FieldMapper().map_workbook(analysis)

    assert result.requires_human_review is True
    assert result.summary["low"] == 1
    sheet, mapping = result.low_confidence_mappings()[0]
    assert sheet == "Organizations"
    assert mapping.target_field == "employee_count"


def test_summarize_review_rule():
    """Review is required once any mapping is low."""
    analysis = WorkbookAnalysis(path="weak.xlsx", sheets=(weak_organizations(),))
    result = FieldMapper().map_workbook(analysis)

    summary, review = summarize(result.table_mappings)
    assert summary["total"] == summary["high"] + summary["medium"] + summary["low"]
    assert review is True
    assert summarize([]) == ({"total": 0, "high": 0, "medium": 0, "low": 0}, False)


def test_accept_manual_mapping():
    """Accepting a manual mapping replaces the weak one and clears review."""
    mapper = FieldMapper()
    analysis = WorkbookAnalysis(path="weak.xlsx", sheets=(weak_organizations(),))
    result = mapper.map_workbook(analysis)

    updated = mapper.accept_in_result(result, "Organizations", "Employees", "employee_count")
    mapping = updated.mappings_for("organizations")[0].get("employee_count")

    assert mapping.confidence == 10.0
    assert mapping.manual is True
    assert updated.requires_human_review is False
    # The original result is left untouched
    assert result.requires_human_review is True

    with pytest.raises(ValueError):
        mapper.accept_manual_mapping(updated.table_mappings[0], "Employees", "not_a_field")


def test_overrides_applied(tmp_path):
    """Overrides force sheet tables, manual mappings and skipped columns."""
    overrides_path = tmp_path / "overrides.yaml"
    overrides_path.write_text(
        yaml.safe_dump(
            {
                "sheet_tables": {"Sheet1": "organizations"},
                "manual_mappings": [
                    {"sheet": "Sheet1", "source_field": "Employees", "target_field": "employee_count"}
                ],
                "skip_fields": [{"source_field": "PRIORITY-FOCUS (A-D)"}],
            }
        ),
        encoding="utf-8",
    )
    overrides = load_mapping_overrides(overrides_path)

    sheet = weak_organizations()
    sheet = make_sheet("Sheet1", list(sheet.headers), [list(r.values()) for r in sheet.rows])
    result = FieldMapper().map_workbook(WorkbookAnalysis(path="x.xlsx", sheets=(sheet,)), overrides)

    mapping = result.table_mappings[0]
    assert mapping.target_table == "organizations"
    assert mapping.get("employee_count").manual is True
    assert mapping.get("priority") is None
    assert "PRIORITY-FOCUS (A-D)" not in mapping.unmapped_source_fields
    assert result.requires_human_review is False


def test_invalid_overrides(tmp_path):
    """Overrides pointing at unknown tables are rejected."""
    with pytest.raises(ValidationError):
        validate_mapping_overrides({"sheet_tables": {"Sheet1": "customers"}})

    broken = tmp_path / "broken.yaml"
    broken.write_text("sheet_tables: [unclosed", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_mapping_overrides(broken)


def test_mapping_suggestions():
    """Unmapped headers get ranked suggestions."""
    mapper = FieldMapper()
    sheet = make_sheet(
        "Contacts",
        ["First Name", "Last Name", "Company", "Favourite Colour"],
        [["Ana", "Lopez", "Blue Bistro", "green"]],
    )
    mapping = mapper.map_sheet(sheet, "contacts")
    suggestions = mapper.get_mapping_suggestions(mapping, sheet, limit=2)

    assert "Favourite Colour" in suggestions
    ranked = suggestions["Favourite Colour"]
    assert len(ranked) == 2
    assert ranked[0].confidence >= ranked[1].confidence
