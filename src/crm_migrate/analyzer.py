#!/usr/bin/env python3
"""
Workbook analysis for crm-migrate.

Parses an .xlsx workbook into an immutable structural description: header
rows, data rows, inferred per-column value types, formulas, merged ranges,
dropdown validations and columns that look like foreign keys. Cell values
are read with pandas, workbook structure with openpyxl. Nothing here knows
about the target schema.
"""

import math
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import numpy as np
import openpyxl
import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from .exceptions import WorkbookReadError
from .fuzzy import FieldNormalizer
from .logging_config import get_logger

logger = get_logger(__name__)

MIN_HEADER_CELLS = 3

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[\d\s\-\(\)\+\.]+$")
URL_RE = re.compile(r"^(https?://|www\.)[^\s]+$", re.IGNORECASE)
DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4})")
NUMBER_RE = re.compile(r"^-?\$?[\d,]*\.?\d+%?$")
BOOLEAN_VALUES = {"true", "false", "yes", "no"}

# Words in a header that point at another entity
ENTITY_KEYWORDS = {
    "organization": "organizations",
    "company": "organizations",
    "account": "organizations",
    "contact": "contacts",
    "opportunity": "opportunities",
    "deal": "opportunities",
}


@dataclass(frozen=True)
class SheetAnalysis:
    """Structural description of one worksheet."""

    name: str
    headers: Tuple[str, ...]
    header_row_index: Optional[int]
    row_count: int
    column_data_types: Dict[str, FrozenSet[str]]
    sample_rows: Tuple[Dict[str, Any], ...]
    rows: Tuple[Dict[str, Any], ...] = field(repr=False)
    row_numbers: Tuple[int, ...] = field(repr=False)
    formulas: Tuple[Tuple[str, str], ...] = ()
    merged_ranges: Tuple[str, ...] = ()
    data_validations: Tuple[Dict[str, Any], ...] = ()
    candidate_foreign_keys: Dict[str, str] = field(default_factory=dict)

    def column_samples(self, header: str, limit: int = 20) -> List[Any]:
        """Return up to ``limit`` non-empty values of a column."""
        samples = []
        for row in self.rows:
            value = row.get(header)
            if value is not None:
                samples.append(value)
                if len(samples) >= limit:
                    break
        return samples


@dataclass(frozen=True)
class WorkbookAnalysis:
    """Immutable snapshot of a workbook, produced once per migration run."""

    path: str
    sheets: Tuple[SheetAnalysis, ...]
    potential_issues: Tuple[str, ...] = ()

    def get_sheet(self, name: str) -> Optional[SheetAnalysis]:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        return None

    @property
    def total_rows(self) -> int:
        return sum(sheet.row_count for sheet in self.sheets)


def clean_value(value: Any) -> Any:
    """Convert a raw pandas cell into a plain Python value (None when empty)."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def detect_value_type(value: Any) -> str:
    """Tag a single cell value with an inferred type."""
    if value is None:
        return "empty"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"

    text = str(value).strip()
    if not text:
        return "empty"
    if text.lower() in BOOLEAN_VALUES:
        return "boolean"
    if EMAIL_RE.match(text):
        return "email"
    if URL_RE.match(text):
        return "url"
    if DATE_RE.match(text):
        return "date"
    if NUMBER_RE.match(text):
        return "number"
    if PHONE_RE.match(text) and sum(ch.isdigit() for ch in text) >= 10:
        return "phone"
    return "string"


def find_header_row(frame: pd.DataFrame, scan_rows: int = 10) -> Optional[int]:
    """Find the first of the first ``scan_rows`` rows with >= 3 non-empty cells."""
    for idx in range(min(scan_rows, len(frame))):
        values = [clean_value(v) for v in frame.iloc[idx].tolist()]
        if sum(v is not None for v in values) >= MIN_HEADER_CELLS:
            return idx
    return None


def _build_headers(raw: List[Any]) -> List[str]:
    """Turn a raw header row into unique, non-empty column names."""
    headers = []
    seen: Dict[str, int] = {}
    for i, value in enumerate(raw):
        cleaned = clean_value(value)
        name = str(cleaned).strip() if cleaned is not None else f"Column{i + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name} ({seen[name]})"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def _referenced_entity(header: str) -> Optional[str]:
    """Return the table an entity word in ``header`` points at, if any."""
    normalized = FieldNormalizer.normalize_field_name(header)
    for keyword, table in ENTITY_KEYWORDS.items():
        if keyword in normalized:
            return table
    return None


class WorkbookAnalyzer:
    """Parses a workbook into a WorkbookAnalysis."""

    def __init__(self, header_scan_rows: int = 10, sample_size: int = 20):
        self.header_scan_rows = header_scan_rows
        self.sample_size = sample_size

    def analyze(self, path) -> WorkbookAnalysis:
        """
        Analyze a workbook file.

        Args:
            path: Path to an .xlsx workbook

        Returns:
            WorkbookAnalysis snapshot

        Raises:
            WorkbookReadError: If the file is missing or not a readable workbook
        """
        path = Path(path)
        logger.info(f"Analyzing workbook {path.name}")
        try:
            frames = pd.read_excel(
                path, sheet_name=None, header=None, engine="openpyxl"
            )
            workbook = openpyxl.load_workbook(path)
        except (OSError, ValueError, KeyError, zipfile.BadZipFile, InvalidFileException) as e:
            raise WorkbookReadError(f"Cannot read workbook {path}: {e}") from e

        sheets = []
        issues = []
        try:
            for sheet_name, frame in frames.items():
                worksheet = workbook[sheet_name] if sheet_name in workbook.sheetnames else None
                sheet = self._analyze_sheet(sheet_name, frame, worksheet)
                sheets.append(sheet)

                if sheet.header_row_index is None:
                    issues.append(f'Worksheet "{sheet_name}" has no recognizable header row')
                if sheet.merged_ranges:
                    issues.append(
                        f'Worksheet "{sheet_name}" contains {len(sheet.merged_ranges)} merged cells'
                    )
                if sheet.formulas:
                    issues.append(
                        f'Worksheet "{sheet_name}" contains {len(sheet.formulas)} formulas'
                    )
        finally:
            workbook.close()

        logger.debug(f"Analyzed {len(sheets)} sheets with {len(issues)} potential issues")
        return WorkbookAnalysis(path=str(path), sheets=tuple(sheets), potential_issues=tuple(issues))

    def _analyze_sheet(self, name: str, frame: pd.DataFrame, worksheet) -> SheetAnalysis:
        formulas, merged, validations = self._inspect_structure(worksheet)

        header_idx = find_header_row(frame, self.header_scan_rows)
        if header_idx is None:
            return SheetAnalysis(
                name=name,
                headers=(),
                header_row_index=None,
                row_count=0,
                column_data_types={},
                sample_rows=(),
                rows=(),
                row_numbers=(),
                formulas=formulas,
                merged_ranges=merged,
                data_validations=validations,
            )

        headers = _build_headers(frame.iloc[header_idx].tolist())
        rows = []
        row_numbers = []
        for idx in range(header_idx + 1, len(frame)):
            values = [clean_value(v) for v in frame.iloc[idx].tolist()]
            if all(v is None for v in values):
                continue
            rows.append(dict(zip(headers, values)))
            # Spreadsheet rows are 1-based
            row_numbers.append(idx + 1)

        column_types = {}
        for header in headers:
            tags = {detect_value_type(row.get(header)) for row in rows}
            tags.discard("empty")
            column_types[header] = frozenset(tags)

        return SheetAnalysis(
            name=name,
            headers=tuple(headers),
            header_row_index=header_idx,
            row_count=len(rows),
            column_data_types=column_types,
            sample_rows=tuple(rows[: self.sample_size]),
            rows=tuple(rows),
            row_numbers=tuple(row_numbers),
            formulas=formulas,
            merged_ranges=merged,
            data_validations=validations,
            candidate_foreign_keys=self._candidate_foreign_keys(headers, validations),
        )

    @staticmethod
    def _inspect_structure(worksheet):
        """Collect formulas, merged ranges and dropdown validations of a sheet."""
        if worksheet is None:
            return (), (), ()

        formulas = []
        for row in worksheet.iter_rows():
            for cell in row:
                if cell.data_type == "f":
                    formulas.append((cell.coordinate, str(cell.value)))

        merged = tuple(str(rng) for rng in worksheet.merged_cells.ranges)

        validations = []
        for dv in worksheet.data_validations.dataValidation:
            columns = sorted(
                {col for rng in dv.sqref.ranges for col in range(rng.min_col, rng.max_col + 1)}
            )
            validations.append(
                {
                    "address": str(dv.sqref),
                    "type": dv.type,
                    "formula": dv.formula1,
                    "columns": columns,
                }
            )
        return tuple(formulas), merged, tuple(validations)

    @staticmethod
    def _candidate_foreign_keys(
        headers: List[str], validations: Tuple[Dict[str, Any], ...]
    ) -> Dict[str, str]:
        """Find columns that probably reference another entity."""
        list_columns = {
            col for dv in validations if dv["type"] == "list" for col in dv["columns"]
        }

        candidates = {}
        for i, header in enumerate(headers):
            tokens = FieldNormalizer.tokenize(header)
            entity = _referenced_entity(header)
            if len(tokens) > 1 and tokens[-1] == "id":
                candidates[header] = entity or " ".join(tokens[:-1])
            elif entity and ("dropdown" in tokens or (i + 1) in list_columns):
                candidates[header] = entity
        return candidates


def generate_analysis_report(analysis: WorkbookAnalysis) -> str:
    """Render a markdown overview of a workbook analysis."""
    lines = [
        "# Workbook Analysis",
        "",
        f"- File: {Path(analysis.path).name}",
        f"- Sheets: {len(analysis.sheets)}",
        f"- Data rows: {analysis.total_rows}",
        "",
    ]

    for sheet in analysis.sheets:
        lines.append(f"## {sheet.name}")
        lines.append("")
        if sheet.header_row_index is None:
            lines.append("No header row found.")
            lines.append("")
            continue

        lines.append(f"- Header row: {sheet.header_row_index + 1}")
        lines.append(f"- Rows: {sheet.row_count}")
        lines.append("")
        lines.append("| Column | Types | Sample |")
        lines.append("|---|---|---|")
        for header in sheet.headers:
            types = ", ".join(sorted(sheet.column_data_types.get(header, ()))) or "empty"
            samples = sheet.column_samples(header, limit=1)
            sample = str(samples[0]) if samples else ""
            lines.append(f"| {header} | {types} | {sample} |")
        lines.append("")

        if sheet.candidate_foreign_keys:
            lines.append("### Possible relationships")
            for column, entity in sheet.candidate_foreign_keys.items():
                lines.append(f"- {column} -> {entity}")
            lines.append("")

        if sheet.formulas:
            lines.append("### Formulas")
            for cell, formula in sheet.formulas[:5]:
                lines.append(f"- Cell {cell}: {formula}")
            if len(sheet.formulas) > 5:
                lines.append(f"- ... and {len(sheet.formulas) - 5} more formulas")
            lines.append("")

        if sheet.merged_ranges:
            lines.append("### Merged cells")
            lines.append(f"- Ranges: {', '.join(sheet.merged_ranges[:5])}")
            lines.append("")

    if analysis.potential_issues:
        lines.append("## Potential issues")
        lines.extend(f"- {issue}" for issue in analysis.potential_issues)
        lines.append("")

    return "\n".join(lines)

