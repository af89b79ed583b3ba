#!/usr/bin/env python3
"""
Shared fixtures for crm-migrate tests.

Workbooks are written with openpyxl into pytest's tmp_path so every test
gets its own files, state directory and record store.
"""

from datetime import datetime, timedelta
from pathlib import Path

import openpyxl
import pytest

from crm_migrate.config_loader import Config
from crm_migrate.store import InMemoryRecordStore


def write_workbook(path: Path, sheets: dict) -> Path:
    """Write ``{sheet_name: [header_row, *data_rows]}`` as an .xlsx file."""
    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets.items():
        worksheet = workbook.create_sheet(name)
        for row in rows:
            worksheet.append(list(row))
    workbook.save(path)
    return path


def _today() -> datetime:
    now = datetime.now()
    return datetime(now.year, now.month, now.day)


def organization_rows():
    return [
        ["Company Name", "PRIORITY-FOCUS (A-D)", "Segment", "Phone", "Email",
         "Address", "City", "State", "Zip", "Estimated Revenue", "Employees"],
        ["Blue Bistro", "A", "Fine Dining", "312-555-0101", "info@bluebistro.com",
         "12 Lake St", "Chicago", "IL", "60601", 250000, 25],
        ["Harbor Grill", "B", "Casual Dining", "312-555-0102", "hello@harborgrill.com",
         "40 Pier Rd", "Chicago", "IL", "60602", 180000, 18],
        ["Corner Cafe", "C", "Coffee Shop", "312-555-0103", "team@cornercafe.com",
         "7 Main Ave", "Evanston", "IL", "60201", 90000, 8],
        ["Night Owl Bar", "B", "Bar", "312-555-0104", "owl@nightowlbar.com",
         "99 Late Ln", "Chicago", "IL", "60603", 120000, 12],
        ["Sunrise Bakery", "D", "Bakery", "312-555-0105", "bread@sunrisebakery.com",
         "3 Oven Way", "Oak Park", "IL", "60301", 60000, 6],
    ]


def contact_rows():
    return [
        ["First Name", "Last Name", "Email", "Phone", "Job Title", "Company"],
        ["Ana", "Lopez", "ana@bluebistro.com", "312-555-0201", "Owner", "Blue Bistro"],
        ["Ben", "Carter", "ben@harborgrill.com", "312-555-0202", "Chef", "Harbor Grill"],
        ["Cleo", "Wright", "cleo@cornercafe.com", "312-555-0203", "Manager", "Corner Cafe"],
        ["Dev", "Patel", "dev@nightowlbar.com", "312-555-0204", "Buyer", "Night Owl Bar"],
    ]


def opportunity_rows():
    close = _today() + timedelta(days=60)
    return [
        ["Deal Name", "Company", "Value", "Stage", "Probability", "Expected Close Date"],
        ["Bistro Spring Menu", "Blue Bistro", 5000, "Proposal", 55, close],
        ["Grill Supply Deal", "Harbor Grill", 3000, "Qualified", 30, close],
        ["Cafe Beans Contract", "Corner Cafe", 1500, "Prospect", 10, close],
    ]


def interaction_rows():
    day = _today() - timedelta(days=10)
    return [
        ["Type", "Subject", "Description", "Date", "Outcome", "Company"],
        ["Call", "Intro call", "Discussed seasonal menu", day, "Positive", "Blue Bistro"],
        ["Email", "Price list", "Sent the updated price list", day, "Neutral", "Harbor Grill"],
        ["Call", "Check in", "Asked about delivery times", day, "Positive", "Corner Cafe"],
    ]


@pytest.fixture
def crm_workbook(tmp_path):
    """A clean four-sheet workbook that migrates without errors."""
    return write_workbook(
        tmp_path / "crm.xlsx",
        {
            "Organizations": organization_rows(),
            "Contacts": contact_rows(),
            "Opportunities": opportunity_rows(),
            "Interactions": interaction_rows(),
        },
    )


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def config(tmp_path):
    """Default options with state and output kept inside tmp_path."""
    cfg = Config(config_path=tmp_path / "missing-config.yaml")
    cfg.state_dir = str(tmp_path / "state")
    cfg.output_dir = str(tmp_path / "output")
    return cfg
