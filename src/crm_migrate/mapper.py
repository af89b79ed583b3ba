#!/usr/bin/env python3
"""
Field mapping for crm-migrate.

Turns a WorkbookAnalysis into per-sheet TableMappings:
- identifies the target table of each sheet (sheet name, then headers)
- scores every header against every field of that table
- assigns fields greedily by descending confidence, one header per field
- applies pre-supplied overrides (sheet tables, forced and skipped fields)
- summarises confidence bands and decides whether a human must review
"""

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import yaml

from .analyzer import SheetAnalysis, WorkbookAnalysis
from .confidence import ConfidenceEngine, ConfidenceScore, FieldMapping
from .fuzzy import FieldNormalizer
from .logging_config import get_logger
from .schema import MappingOverridesSchema, ValidationError, validate_mapping_overrides
from .synonym import SynonymMatcher
from .target_schema import (
    CONTACTS,
    INTERACTIONS,
    OPPORTUNITIES,
    ORGANIZATIONS,
    get_fields,
)

logger = get_logger(__name__)

MIN_CONFIDENCE = 3.0
# Header names this far from every target are left unmapped, whatever their values
MIN_SEMANTIC_SCORE = 0.4
HIGH_CONFIDENCE = 8.0
MEDIUM_CONFIDENCE = 5.0
SAMPLE_LIMIT = 20

# Checked in order; the first hit wins
SHEET_NAME_KEYWORDS = (
    (INTERACTIONS, ("interaction", "activit")),
    (OPPORTUNITIES, ("opportunit", "deal", "pipeline")),
    (CONTACTS, ("contact",)),
    (ORGANIZATIONS, ("organization", "organisation", "compan", "account")),
)

HEADER_KEYWORDS = {
    ORGANIZATIONS: ("priority", "segment", "revenue", "employee", "website"),
    CONTACTS: ("firstname", "lastname", "fullname", "position", "jobtitle"),
    OPPORTUNITIES: ("stage", "probability", "closedate", "dealvalue"),
    INTERACTIONS: ("outcome", "subject", "duration", "nextaction", "interactiontype"),
}

_BLANK_HEADER = re.compile(r"^Column\d+$")


@dataclass(frozen=True)
class TableMapping:
    """Mapping of one sheet onto one target table."""

    source_sheet: str
    target_table: str
    field_mappings: Tuple[FieldMapping, ...]
    confidence: float
    unmapped_source_fields: Tuple[str, ...] = ()
    unmapped_target_fields: Tuple[str, ...] = ()

    def get(self, target_field: str) -> Optional[FieldMapping]:
        for mapping in self.field_mappings:
            if mapping.target_field == target_field:
                return mapping
        return None

    def source_to_target(self) -> Dict[str, str]:
        return {m.source_field: m.target_field for m in self.field_mappings}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_sheet": self.source_sheet,
            "target_table": self.target_table,
            "confidence": self.confidence,
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "unmapped_source_fields": list(self.unmapped_source_fields),
            "unmapped_target_fields": list(self.unmapped_target_fields),
        }


@dataclass
class MappingResult:
    """Workbook-level mapping outcome."""

    table_mappings: List[TableMapping] = field(default_factory=list)
    unmapped_sheets: List[str] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)
    requires_human_review: bool = False
    sheet_scores: Dict[str, ConfidenceScore] = field(default_factory=dict)

    @property
    def average_confidence(self) -> float:
        if not self.table_mappings:
            return 0.0
        return round(
            sum(t.confidence for t in self.table_mappings) / len(self.table_mappings), 1
        )

    def low_confidence_mappings(self) -> List[Tuple[str, FieldMapping]]:
        return [
            (t.source_sheet, m)
            for t in self.table_mappings
            for m in t.field_mappings
            if m.confidence < MEDIUM_CONFIDENCE
        ]

    def mappings_for(self, table: str) -> List[TableMapping]:
        return [t for t in self.table_mappings if t.target_table == table]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_mappings": [t.to_dict() for t in self.table_mappings],
            "unmapped_sheets": list(self.unmapped_sheets),
            "summary": dict(self.summary),
            "requires_human_review": self.requires_human_review,
            "average_confidence": self.average_confidence,
        }


def summarize(table_mappings: Sequence[TableMapping]) -> Tuple[Dict[str, int], bool]:
    """Count confidence bands and decide whether human review is needed."""
    confidences = [m.confidence for t in table_mappings for m in t.field_mappings]
    high = sum(1 for c in confidences if c >= HIGH_CONFIDENCE)
    medium = sum(1 for c in confidences if MEDIUM_CONFIDENCE <= c < HIGH_CONFIDENCE)
    low = sum(1 for c in confidences if c < MEDIUM_CONFIDENCE)
    summary = {"total": len(confidences), "high": high, "medium": medium, "low": low}
    requires_review = low > 0 or low > 0.2 * high
    return summary, requires_review


def load_mapping_overrides(path) -> MappingOverridesSchema:
    """Load and validate a mapping overrides YAML file.

    Raises:
        ValidationError: If the file cannot be read or fails validation
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read mapping overrides {path}: {e}") from e
    return validate_mapping_overrides(data)


class FieldMapper:
    """Infers TableMappings for the sheets of a workbook."""

    def __init__(
        self,
        engine: Optional[ConfidenceEngine] = None,
        min_confidence: float = MIN_CONFIDENCE,
        min_semantic_score: float = MIN_SEMANTIC_SCORE,
        sample_limit: int = SAMPLE_LIMIT,
    ):
        self.engine = engine or ConfidenceEngine()
        self.min_confidence = min_confidence
        self.min_semantic_score = min_semantic_score
        self.sample_limit = sample_limit

    def identify_table(self, sheet: SheetAnalysis) -> Optional[str]:
        """Guess the target table of a sheet from its name, then its headers."""
        sheet_name = sheet.name.lower()
        for table, keywords in SHEET_NAME_KEYWORDS:
            if any(keyword in sheet_name for keyword in keywords):
                return table

        normalized_headers = [FieldNormalizer.normalize_field_name(h) for h in sheet.headers]
        hits = {
            table: sum(
                1 for header in normalized_headers for keyword in keywords if keyword in header
            )
            for table, keywords in HEADER_KEYWORDS.items()
        }
        best = max(hits.values()) if hits else 0
        winners = [table for table, count in hits.items() if count == best]
        if best == 0 or len(winners) > 1:
            return None
        return winners[0]

    def map_workbook(
        self,
        analysis: WorkbookAnalysis,
        overrides: Optional[MappingOverridesSchema] = None,
    ) -> MappingResult:
        """
        Map every sheet of a workbook.

        Args:
            analysis: Workbook structure
            overrides: Optional validated overrides

        Returns:
            MappingResult with one TableMapping per recognised sheet
        """
        mapper = self
        if overrides is not None and overrides.synonyms:
            mapper = FieldMapper(
                engine=ConfidenceEngine(SynonymMatcher(overrides.synonyms)),
                min_confidence=self.min_confidence,
                min_semantic_score=self.min_semantic_score,
                sample_limit=self.sample_limit,
            )

        sheet_tables = dict(overrides.sheet_tables or {}) if overrides else {}
        result = MappingResult()

        for sheet in analysis.sheets:
            table = sheet_tables.get(sheet.name) or mapper.identify_table(sheet)
            if table is None or not sheet.headers:
                logger.info(f"Sheet '{sheet.name}' does not match any target table; skipping")
                result.unmapped_sheets.append(sheet.name)
                continue

            skip, forced = self._overrides_for(sheet.name, overrides)
            table_mapping = mapper.map_sheet(sheet, table, skip_fields=skip, forced=forced)
            result.table_mappings.append(table_mapping)
            result.sheet_scores[sheet.name] = ConfidenceEngine.sheet_confidence(
                table_mapping.field_mappings
            )
            logger.info(
                f"Mapped sheet '{sheet.name}' -> {table}: "
                f"{len(table_mapping.field_mappings)} fields, confidence {table_mapping.confidence}"
            )

        result.summary, result.requires_human_review = summarize(result.table_mappings)
        if result.requires_human_review:
            logger.warning(
                f"{result.summary['low']} low-confidence mappings found; human review required"
            )
        return result

    @staticmethod
    def _overrides_for(
        sheet_name: str, overrides: Optional[MappingOverridesSchema]
    ) -> Tuple[Set[str], Dict[str, str]]:
        if overrides is None:
            return set(), {}
        skip = {
            rule.source_field
            for rule in overrides.skip_fields or []
            if rule.sheet in (None, sheet_name)
        }
        forced = {
            rule.source_field: rule.target_field
            for rule in overrides.manual_mappings or []
            if rule.sheet == sheet_name
        }
        return skip, forced

    def map_sheet(
        self,
        sheet: SheetAnalysis,
        table: str,
        skip_fields: Optional[Set[str]] = None,
        forced: Optional[Dict[str, str]] = None,
    ) -> TableMapping:
        """Map the headers of one sheet onto the fields of ``table``."""
        skip_fields = skip_fields or set()
        forced = forced or {}
        targets = get_fields(table)
        target_names = [t.name for t in targets]

        sources = [
            h for h in sheet.headers if not _BLANK_HEADER.match(h) and h not in skip_fields
        ]

        chosen: List[FieldMapping] = []
        used_sources: Set[str] = set()
        used_targets: Set[str] = set()

        for source, target in forced.items():
            if target not in target_names:
                logger.warning(f"Override maps '{source}' to unknown field {table}.{target}")
                continue
            chosen.append(FieldMapping.manual_mapping(source, target))
            used_sources.add(source)
            used_targets.add(target)

        candidates = []
        for i, source in enumerate(sources):
            if source in used_sources:
                continue
            samples = sheet.column_samples(source, self.sample_limit)
            for j, target in enumerate(targets):
                if target.name in used_targets:
                    continue
                mapping = self.engine.score(source, target.name, samples, target.type, table)
                if (
                    mapping.confidence >= self.min_confidence
                    and mapping.semantic_score >= self.min_semantic_score
                ):
                    candidates.append((-mapping.confidence, i, j, mapping))

        # Highest confidence first; header then field order only breaks exact ties
        for _, _, _, mapping in sorted(candidates, key=lambda c: c[:3]):
            if mapping.source_field in used_sources or mapping.target_field in used_targets:
                continue
            chosen.append(mapping)
            used_sources.add(mapping.source_field)
            used_targets.add(mapping.target_field)

        return self._build_table_mapping(sheet.name, table, chosen, sources)

    @staticmethod
    def _build_table_mapping(
        sheet_name: str, table: str, mappings: Sequence[FieldMapping], sources: Sequence[str]
    ) -> TableMapping:
        by_target: Dict[str, FieldMapping] = {}
        for mapping in mappings:
            current = by_target.get(mapping.target_field)
            if current is None or mapping.confidence > current.confidence:
                by_target[mapping.target_field] = mapping

        target_order = [t.name for t in get_fields(table)]
        ordered = tuple(
            by_target[name] for name in target_order if name in by_target
        )
        mapped_sources = {m.source_field for m in ordered}
        confidence = (
            round(sum(m.confidence for m in ordered) / len(ordered), 1) if ordered else 0.0
        )
        return TableMapping(
            source_sheet=sheet_name,
            target_table=table,
            field_mappings=ordered,
            confidence=confidence,
            unmapped_source_fields=tuple(s for s in sources if s not in mapped_sources),
            unmapped_target_fields=tuple(n for n in target_order if n not in by_target),
        )

    def accept_manual_mapping(
        self, table_mapping: TableMapping, source_field: str, target_field: str
    ) -> TableMapping:
        """Force ``source_field -> target_field`` with confidence 10 ("manual").

        Any mapping already holding that source or target is dropped. Returns a
        new TableMapping; the given one is left untouched.
        """
        if target_field not in [t.name for t in get_fields(table_mapping.target_table)]:
            raise ValueError(
                f"Unknown field '{target_field}' for table {table_mapping.target_table}"
            )

        kept = [
            m
            for m in table_mapping.field_mappings
            if m.source_field != source_field and m.target_field != target_field
        ]
        kept.append(FieldMapping.manual_mapping(source_field, target_field))

        sources = list(
            dict.fromkeys(
                [m.source_field for m in table_mapping.field_mappings]
                + list(table_mapping.unmapped_source_fields)
                + [source_field]
            )
        )
        logger.info(
            f"Manual mapping accepted: {table_mapping.source_sheet}.{source_field} -> {target_field}"
        )
        return self._build_table_mapping(
            table_mapping.source_sheet, table_mapping.target_table, kept, sources
        )

    def accept_in_result(
        self, result: MappingResult, sheet_name: str, source_field: str, target_field: str
    ) -> MappingResult:
        """Apply accept_manual_mapping inside a MappingResult and re-summarise."""
        updated = []
        found = False
        for table_mapping in result.table_mappings:
            if table_mapping.source_sheet == sheet_name:
                table_mapping = self.accept_manual_mapping(table_mapping, source_field, target_field)
                found = True
            updated.append(table_mapping)
        if not found:
            raise ValueError(f"Sheet '{sheet_name}' has no table mapping")

        summary, requires_review = summarize(updated)
        return replace(
            result,
            table_mappings=updated,
            summary=summary,
            requires_human_review=requires_review,
            sheet_scores={
                t.source_sheet: ConfidenceEngine.sheet_confidence(t.field_mappings) for t in updated
            },
        )

    def get_mapping_suggestions(
        self, table_mapping: TableMapping, sheet: SheetAnalysis, limit: int = 3
    ) -> Dict[str, List[FieldMapping]]:
        """Top candidates for each unmapped source field, best first."""
        suggestions = {}
        for source in table_mapping.unmapped_source_fields:
            samples = sheet.column_samples(source, self.sample_limit)
            scored = [
                self.engine.score(source, t.name, samples, t.type, table_mapping.target_table)
                for t in get_fields(table_mapping.target_table)
            ]
            scored.sort(key=lambda m: m.confidence, reverse=True)
            suggestions[source] = scored[:limit]
        return suggestions
