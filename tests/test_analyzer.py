#!/usr/bin/env python3
"""
Tests for workbook analysis.
"""

from datetime import datetime
from types import SimpleNamespace

import openpyxl
import pytest
from openpyxl.worksheet.datavalidation import DataValidation

from crm_migrate import analyzer
from crm_migrate.analyzer import (
    WorkbookAnalyzer,
    clean_value,
    detect_value_type,
    generate_analysis_report,
)
from crm_migrate.exceptions import WorkbookReadError


def test_detect_value_type():
    """Single values are tagged with an inferred type."""
    assert detect_value_type(None) == "empty"
    assert detect_value_type(True) == "boolean"
    assert detect_value_type(12.5) == "number"
    assert detect_value_type(datetime(2024, 1, 1)) == "date"
    assert detect_value_type("yes") == "boolean"
    assert detect_value_type("chef@bistro.com") == "email"
    assert detect_value_type("https://bistro.com") == "url"
    assert detect_value_type("2024-03-01") == "date"
    assert detect_value_type("$1,200") == "number"
    assert detect_value_type("(312) 555-0101") == "phone"
    assert detect_value_type("Blue Bistro") == "string"


def test_clean_value():
    """Empty cells become None and strings are stripped."""
    assert clean_value("  Bistro ") == "Bistro"
    assert clean_value("   ") is None
    assert clean_value(float("nan")) is None
    assert clean_value(3) == 3


def test_header_row_found_below_title_rows(tmp_path):
    """Title rows with fewer than three cells are skipped when finding headers."""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Contacts"
    sheet.append(["Customer export"])
    sheet.append(["Generated by the sales team"])
    sheet.append(["First Name", "Last Name", "Email", "Contact ID"])
    sheet.append(["Ana", "Lopez", "ana@bistro.com", "C-001"])
    sheet.append(["Ben", "Carter", "ben@grill.com", "C-002"])
    path = tmp_path / "contacts.xlsx"
    workbook.save(path)

    analysis = WorkbookAnalyzer().analyze(path)
    contacts = analysis.get_sheet("Contacts")

    assert contacts.header_row_index == 2
    assert contacts.headers == ("First Name", "Last Name", "Email", "Contact ID")
    assert contacts.row_count == 2
    assert contacts.row_numbers == (4, 5)
    assert contacts.rows[0]["Email"] == "ana@bistro.com"
    assert contacts.column_data_types["Email"] == frozenset({"email"})
    assert contacts.candidate_foreign_keys == {"Contact ID": "contacts"}
    assert analysis.total_rows == 2


def test_structure_inspection(tmp_path):
    """Formulas, merged ranges and dropdown validations are reported."""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Deals"
    sheet.append(["Deal", "Company", "Value", "Double"])
    sheet.append(["Spring menu", "Blue Bistro", 100, "=C2*2"])
    sheet.append(["Supply", "Harbor Grill", 200, "=C3*2"])
    sheet.merge_cells("A5:B5")
    validation = DataValidation(type="list", formula1='"Blue Bistro,Harbor Grill"')
    validation.add("B2:B10")
    sheet.add_data_validation(validation)
    path = tmp_path / "deals.xlsx"
    workbook.save(path)

    analysis = WorkbookAnalyzer().analyze(path)
    deals = analysis.get_sheet("Deals")

    assert len(deals.formulas) == 2
    assert deals.formulas[0][0] == "D2"
    assert deals.merged_ranges == ("A5:B5",)
    assert deals.data_validations[0]["type"] == "list"
    assert deals.data_validations[0]["columns"] == [2]
    assert deals.candidate_foreign_keys == {"Company": "organizations"}
    assert any("formulas" in issue for issue in analysis.potential_issues)
    assert any("merged cells" in issue for issue in analysis.potential_issues)


def test_sheet_without_header(tmp_path):
    """A sheet with no row of three filled cells has no headers and no rows."""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Notes"
    sheet.append(["just a note"])
    sheet.append(["another", "line"])
    path = tmp_path / "notes.xlsx"
    workbook.save(path)

    analysis = WorkbookAnalyzer().analyze(path)
    notes = analysis.get_sheet("Notes")

    assert notes.header_row_index is None
    assert notes.headers == ()
    assert notes.row_count == 0
    assert 'Worksheet "Notes" has no recognizable header row' in analysis.potential_issues


def test_unreadable_workbook(tmp_path):
    """Files that are not workbooks raise WorkbookReadError."""
    bogus = tmp_path / "bogus.xlsx"
    bogus.write_text("this is not a workbook", encoding="utf-8")

    with pytest.raises(WorkbookReadError):
        WorkbookAnalyzer().analyze(bogus)
    with pytest.raises(WorkbookReadError):
        WorkbookAnalyzer().analyze(tmp_path / "missing.xlsx")


class TrackingWorkbook:
    """Wraps an openpyxl workbook and remembers whether it was closed."""

    def __init__(self, workbook):
        self.workbook = workbook
        self.closed = False

    @property
    def sheetnames(self):
        return self.workbook.sheetnames

    def __getitem__(self, name):
        return self.workbook[name]

    def close(self):
        self.closed = True
        self.workbook.close()


def test_workbook_closed_when_a_sheet_fails(crm_workbook, monkeypatch):
    """The openpyxl workbook is closed even when analysing a sheet raises."""
    opened = []
    load_workbook = openpyxl.load_workbook

    def tracking_load(*args, **kwargs):
        opened.append(TrackingWorkbook(load_workbook(*args, **kwargs)))
        return opened[-1]

    def broken_sheet(self, name, frame, worksheet):
        raise RuntimeError(f"cannot analyse {name}")

    monkeypatch.setattr(analyzer, "openpyxl", SimpleNamespace(load_workbook=tracking_load))
    monkeypatch.setattr(WorkbookAnalyzer, "_analyze_sheet", broken_sheet)

    with pytest.raises(RuntimeError):
        WorkbookAnalyzer().analyze(crm_workbook)
    assert len(opened) == 1
    assert opened[0].closed is True


def test_analysis_report(crm_workbook):
    """The markdown report lists every sheet with its columns."""
    analysis = WorkbookAnalyzer().analyze(crm_workbook)
    report = generate_analysis_report(analysis)

    assert report.startswith("# Workbook Analysis")
    for name in ("Organizations", "Contacts", "Opportunities", "Interactions"):
        assert f"## {name}" in report
    assert "| PRIORITY-FOCUS (A-D) |" in report
    assert analysis.total_rows == 15
