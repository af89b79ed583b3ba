#!/usr/bin/env python3
"""
Tests for the crm-migrate command line.

Commands run in a subprocess inside tmp_path; stdout is not a TTY there, so
events arrive as JSONL lines mixed with log lines.
"""

import json
import subprocess
import sys

from conftest import organization_rows, write_workbook


def run_command(cmd_args, cwd):
    """Run crm-migrate as a module and return the completed process."""
    return subprocess.run(
        [sys.executable, "-m", "crm_migrate", *cmd_args],
        capture_output=True,
        text=True,
        cwd=cwd,
    )


def events_of(result):
    """Parse the JSONL event lines of a command's stdout."""
    return [json.loads(line) for line in result.stdout.splitlines() if line.startswith("{")]


def event_named(result, name):
    return next(e for e in events_of(result) if e.get("event") == name)


def test_cli_help(tmp_path):
    """The help lists every subcommand."""
    result = run_command(["--help"], tmp_path)
    assert result.returncode == 0
    for command in ("analyze", "map", "migrate", "rollback"):
        assert command in result.stdout


def test_version(tmp_path):
    """--version prints the package version."""
    result = run_command(["--version"], tmp_path)
    assert result.returncode == 0
    assert "crm-migrate 1.0.0" in result.stdout


def test_missing_command(tmp_path):
    """Running without a command shows help and exits with code 1."""
    result = run_command([], tmp_path)
    assert result.returncode == 1
    assert "usage" in result.stdout.lower()


def test_missing_workbook(tmp_path):
    """A missing workbook is reported as a JSON error event."""
    result = run_command(["analyze", "nowhere.xlsx"], tmp_path)
    assert result.returncode == 1
    assert events_of(result)[0]["error"] == "missing_input"


def test_analyze(tmp_path, crm_workbook):
    """analyze writes a markdown report and a log file."""
    result = run_command(["analyze", str(crm_workbook)], tmp_path)

    assert result.returncode == 0
    event = event_named(result, "analysis:complete")
    assert event["total_rows"] == 15
    assert (tmp_path / "output" / "crm_analysis.md").exists()
    assert list((tmp_path / "output" / "logs").glob("analyze_*.jsonl"))


def test_map(tmp_path, crm_workbook):
    """map writes the mapping proposal as JSON."""
    result = run_command(["map", str(crm_workbook), "--no-log-file"], tmp_path)

    assert result.returncode == 0
    event = event_named(result, "mapping:complete")
    assert event["requires_human_review"] is False
    mapping = json.loads((tmp_path / "output" / "crm_mapping.json").read_text(encoding="utf-8"))
    assert len(mapping["table_mappings"]) == 4
    assert not (tmp_path / "output" / "logs").exists()


def test_map_requires_review(tmp_path):
    """map exits with code 2 when a mapping needs human review."""
    workbook = write_workbook(
        tmp_path / "weak.xlsx",
        {
            "Organizations": [
                ["Company Name", "PRIORITY-FOCUS (A-D)", "Employees"],
                ["Blue Bistro", "A", "many"],
                ["Harbor Grill", "B", "few"],
            ]
        },
    )
    result = run_command(["map", str(workbook)], tmp_path)
    assert result.returncode == 2


def test_migrate_dry_run(tmp_path, crm_workbook):
    """A dry run writes a report but no records."""
    result = run_command(["migrate", str(crm_workbook), "--dry-run"], tmp_path)

    assert result.returncode == 0
    complete = event_named(result, "migration:complete")
    assert complete["outcome"] == "completed"
    assert complete["saved"] == 15
    assert not (tmp_path / "crm-store.json").exists()

    reports = list((tmp_path / "output" / "reports").glob("*.md"))
    assert len(reports) == 1
    assert "**completed**" in reports[0].read_text(encoding="utf-8")


def test_migrate_then_rollback(tmp_path, crm_workbook):
    """A completed migration can be rolled back from its saved state."""
    result = run_command(["migrate", str(crm_workbook)], tmp_path)
    assert result.returncode == 0

    migration_id = event_named(result, "migration:start")["migration_id"]
    store_path = tmp_path / "crm-store.json"
    stored = json.loads(store_path.read_text(encoding="utf-8"))
    assert len(stored["organizations"]) == 5

    plan = run_command(["rollback", migration_id, "--plan-only"], tmp_path)
    assert plan.returncode == 0
    assert event_named(plan, "rollback:plan")["type"] == "partial"

    rollback = run_command(["rollback", migration_id, "--strategy", "full"], tmp_path)
    assert rollback.returncode == 0
    assert event_named(rollback, "rollback:complete")["success"] is True

    stored = json.loads(store_path.read_text(encoding="utf-8"))
    assert all(records == [] for records in stored.values())
    assert (tmp_path / "output" / "reports" / f"{migration_id}_rollback.md").exists()


def test_rollback_unknown_migration(tmp_path):
    """Rolling back a migration without saved state fails."""
    result = run_command(["rollback", "migration-missing"], tmp_path)
    assert result.returncode == 1
    assert events_of(result)[0]["error"] == "missing_state"


def test_migrate_rolls_back_on_critical_errors(tmp_path):
    """A critical reference error exits with code 1 after rolling back."""
    contacts = [
        ["First Name", "Last Name", "Email", "Phone", "Job Title", "Company"],
        ["Ana", "Lopez", "ana@bluebistro.com", "312-555-0201", "Owner", "Blue Bistro"],
        ["Ben", "Carter", "ben@harborgrill.com", "312-555-0202", "Chef", "Harbor Grill"],
        ["Cleo", "Wright", "cleo@cornercafe.com", "312-555-0203", "Manager", "Corner Cafe"],
        ["Dev", "Patel", "dev@nightowlbar.com", "312-555-0204", "Buyer", "Night Owl Bar"],
        ["Gil", "Moss", "gil@ghost.com", "312-555-0205", "Owner", "Ghost Diner"],
    ]
    workbook = write_workbook(
        tmp_path / "ghost.xlsx",
        {"Organizations": organization_rows(), "Contacts": contacts},
    )
    result = run_command(["migrate", str(workbook)], tmp_path)

    assert result.returncode == 1
    assert event_named(result, "migration:complete")["outcome"] == "rolled_back"
    stored = json.loads((tmp_path / "crm-store.json").read_text(encoding="utf-8"))
    assert stored["organizations"] == []
