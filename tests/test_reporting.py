#!/usr/bin/env python3
"""
Tests for migration report building and rendering.
"""

import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path

import numpy as np
import pandas as pd

from conftest import organization_rows, write_workbook

from crm_migrate.orchestrator import MigrationOrchestrator
from crm_migrate.reporting import build_report, ensure_json_serializable, render_markdown, write_report


class Color(Enum):
    RED = "red"


def test_ensure_json_serializable():
    """Numpy, pandas, dates, paths, enums and sets become plain JSON values."""
    data = {
        "int": np.int64(5),
        "float": np.float64(2.5),
        "array": np.array([1, 2]),
        "timestamp": pd.Timestamp("2024-05-01 10:00"),
        "missing": pd.NaT,
        "day": date(2024, 5, 1),
        "moment": datetime(2024, 5, 1, 9, 30),
        "path": Path("output") / "reports",
        "color": Color.RED,
        "tags": {"b", "a"},
        1: (1, 2),
    }
    converted = ensure_json_serializable(data)

    assert converted == {
        "int": 5,
        "float": 2.5,
        "array": [1, 2],
        "timestamp": "2024-05-01T10:00:00",
        "missing": None,
        "day": "2024-05-01",
        "moment": "2024-05-01T09:30:00",
        "path": "output/reports",
        "color": "red",
        "tags": ["a", "b"],
        "1": [1, 2],
    }
    json.dumps(converted)


def test_report_of_clean_run(crm_workbook, store, config):
    """A clean run reports every phase and its totals."""
    orchestrator = MigrationOrchestrator(store, config)
    result = orchestrator.run(crm_workbook)
    report = build_report(result, orchestrator.quality_monitor)

    assert report["outcome"] == "completed"
    assert report["totals"]["saved"] == 15
    assert report["phases"]["mapping"]["mapped_sheets"] == 4
    assert report["phases"]["loading"]["contacts"]["saved"] == 4
    assert report["confidence_summary"]["requires_human_review"] is False
    assert report["top_errors"] == []
    assert report["rollback"]["recommendation"] is None
    assert set(report["quality"]["trends"]) == {"organizations", "contacts", "opportunities", "interactions"}
    json.dumps(report)

    markdown = render_markdown(report)
    assert markdown.startswith(f"# Migration Report: {result.migration_id}")
    assert "- Outcome: **completed**" in markdown
    assert "| organizations | 5 | 5 | 5 | 0 | 0 | 100% |" in markdown
    assert "## Rollback" not in markdown


def test_report_lists_errors(tmp_path, store, config):
    """Skipped rows show up as grouped top errors with their first row."""
    organizations = organization_rows() + [
        ["Lakeside Deli", "C", "Other", "312-555-0106", "not-an-email",
         "5 Shore Dr", "Chicago", "IL", "60604", 40000, 4],
        ["Pier Diner", "C", "Other", "312-555-0107", "broken-too",
         "6 Shore Dr", "Chicago", "IL", "60604", 40000, 4],
    ]
    workbook = write_workbook(tmp_path / "typos.xlsx", {"Organizations": organizations})
    # Keep the broken rows out of the pre-load sample
    config.sample_size = 5
    result = MigrationOrchestrator(store, config).run(workbook)
    report = build_report(result)

    top = report["top_errors"][0]
    assert top["field"] == "email"
    assert top["count"] == 2
    assert top["first_row"] == 7
    assert top["severity"] == "ERROR"
    assert report["rollback"]["executed"] is None

    markdown = render_markdown(report)
    assert "## Top Errors" in markdown
    assert "Invalid email format" in markdown
    assert "- Executed: no" in markdown


def test_write_report(tmp_path, crm_workbook, store, config):
    """Reports are written as JSON and markdown side by side."""
    result = MigrationOrchestrator(store, config).run(crm_workbook)
    json_path, md_path = write_report(build_report(result), tmp_path / "reports", "run")

    assert json_path.name == "run.json"
    assert md_path.name == "run.md"
    assert json.loads(json_path.read_text(encoding="utf-8"))["migration_id"] == result.migration_id
    assert md_path.read_text(encoding="utf-8").startswith("# Migration Report")
