#!/usr/bin/env python3
"""
Confidence scoring for field mappings in crm-migrate.

Scores how likely a spreadsheet column corresponds to a target field by
combining four independent signals, each in [0, 1]:
- Semantic: name equality, synonym groups, Levenshtein ratio
- Data type: share of samples the target type accepts
- Pattern: share of samples matching the format implied by the target name
- Business rule: share of samples passing a field-specific domain check

confidence = 10 * (0.3 * semantic + 0.3 * data_type + 0.2 * pattern + 0.2 * business_rule)

Everything here is pure; no I/O.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .fuzzy import FieldNormalizer, FuzzyMatcher
from .parsers import is_blank, parse_boolean, parse_number
from .synonym import SynonymMatcher

SEMANTIC_WEIGHT = 0.3
DATA_TYPE_WEIGHT = 0.3
PATTERN_WEIGHT = 0.2
BUSINESS_RULE_WEIGHT = 0.2

MATCH_THRESHOLD = 0.7
NEUTRAL_SCORE = 0.5
NO_PATTERN_SCORE = 0.7
NO_RULE_SCORE = 0.8
SYNONYM_SCORE = 0.9

PATTERNS = {
    "email": re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),
    "phone": re.compile(r"^[\d\s\-\(\)\+\.]+$"),
    "zip": re.compile(r"^\d{5}(-?\d{4})?$"),
    "date": re.compile(r"^(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4})"),
    "url": re.compile(r"^(https?://)?[\w.-]+\.[a-z]{2,}(/\S*)?$", re.IGNORECASE),
    "identifier": re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{2,}$"),
}

# Target name token -> pattern
PATTERN_KEYWORDS = {
    "email": "email",
    "phone": "phone",
    "tel": "phone",
    "mobile": "phone",
    "zip": "zip",
    "postal": "zip",
    "date": "date",
    "url": "url",
    "website": "url",
    "id": "identifier",
}


@dataclass(frozen=True)
class FieldMapping:
    """A scored source column -> target field pairing."""

    source_field: str
    target_field: str
    confidence: float
    reasons: Tuple[str, ...] = ()
    data_type_match: bool = False
    semantic_match: bool = False
    pattern_match: bool = False
    business_rule_match: bool = False
    semantic_score: float = 0.0
    data_type_score: float = 0.0
    pattern_score: float = 0.0
    business_rule_score: float = 0.0
    manual: bool = False

    @classmethod
    def manual_mapping(cls, source_field: str, target_field: str) -> "FieldMapping":
        """A user-confirmed mapping that bypasses scoring."""
        return cls(
            source_field=source_field,
            target_field=target_field,
            confidence=10.0,
            reasons=("manual",),
            data_type_match=True,
            semantic_match=True,
            pattern_match=True,
            business_rule_match=True,
            semantic_score=1.0,
            data_type_score=1.0,
            pattern_score=1.0,
            business_rule_score=1.0,
            manual=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reasons"] = list(self.reasons)
        return data


@dataclass
class ConfidenceScore:
    """Aggregate confidence of all mappings of one sheet."""

    overall: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


def _is_numeric(value: Any) -> bool:
    return parse_number(value) is not None


def _is_integer(value: Any) -> bool:
    number = parse_number(value)
    return number is not None and float(number).is_integer()


def _is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    return bool(PATTERNS["date"].match(str(value).strip()))


def _is_phone(value: Any) -> bool:
    text = str(int(value)) if isinstance(value, float) and value.is_integer() else str(value)
    text = text.strip()
    return bool(PATTERNS["phone"].match(text)) and sum(c.isdigit() for c in text) >= 10


def _is_email(value: Any) -> bool:
    return bool(PATTERNS["email"].match(str(value).strip()))


TYPE_RECOGNIZERS: Dict[str, Callable[[Any], bool]] = {
    "number": _is_numeric,
    "integer": _is_integer,
    "boolean": lambda v: parse_boolean(v) is not None,
    "date": _is_date,
    "email": _is_email,
    "phone": _is_phone,
}


def _in_range(low: float, high: float, inclusive_high: bool = True) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        number = parse_number(value)
        if number is None:
            return False
        return low <= number <= high if inclusive_high else low <= number < high

    return check


# Normalized target name fragment -> validator
BUSINESS_RULES: Tuple[Tuple[str, Callable[[Any], bool]], ...] = (
    ("priority", lambda v: str(v).strip().upper() in {"A", "B", "C", "D"}),
    ("probability", _in_range(0, 100)),
    ("employee", _in_range(0, 1_000_000, inclusive_high=False)),
    ("revenue", _in_range(0, float("inf"))),
    ("duration", _in_range(0, 480)),
)


def _pattern_for(target_field: str) -> Optional[str]:
    for token in FieldNormalizer.tokenize(target_field):
        if token in PATTERN_KEYWORDS:
            return PATTERN_KEYWORDS[token]
    return None


def _matches_pattern(pattern: str, value: Any) -> bool:
    if pattern == "date":
        return _is_date(value)
    if pattern == "phone":
        return _is_phone(value)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return bool(PATTERNS[pattern].match(str(value).strip()))


def _rule_for(target_field: str) -> Optional[Callable[[Any], bool]]:
    normalized = FieldNormalizer.normalize_field_name(target_field)
    if normalized == "value":
        return _in_range(0, float("inf"))
    for fragment, rule in BUSINESS_RULES:
        if fragment in normalized:
            return rule
    return None


def _fraction(values: Sequence[Any], check: Callable[[Any], bool]) -> float:
    if not values:
        return NEUTRAL_SCORE
    return sum(1 for v in values if check(v)) / len(values)


class ConfidenceEngine:
    """Pure scoring of source column -> target field candidates."""

    def __init__(self, synonyms: Optional[SynonymMatcher] = None):
        self.synonyms = synonyms or SynonymMatcher()

    def semantic_score(self, source_field: str, target_field: str, table: Optional[str] = None) -> float:
        source_norm = FieldNormalizer.normalize_field_name(source_field)
        target_norm = FieldNormalizer.normalize_field_name(target_field)
        if source_norm and source_norm == target_norm:
            return 1.0
        if self.synonyms.is_synonym_match(source_field, target_field, table):
            return SYNONYM_SCORE
        return FuzzyMatcher.levenshtein_similarity(source_norm, target_norm)

    @staticmethod
    def data_type_score(values: Sequence[Any], target_type: str) -> float:
        recognizer = TYPE_RECOGNIZERS.get(target_type)
        if recognizer is None:
            # Free text accepts anything
            return 1.0 if values else NEUTRAL_SCORE
        return _fraction(values, recognizer)

    @staticmethod
    def pattern_score(values: Sequence[Any], target_field: str) -> float:
        if not values:
            return NEUTRAL_SCORE
        pattern = _pattern_for(target_field)
        if pattern is None:
            return NO_PATTERN_SCORE
        return _fraction(values, lambda v: _matches_pattern(pattern, v))

    @staticmethod
    def business_rule_score(values: Sequence[Any], target_field: str) -> float:
        if not values:
            return NEUTRAL_SCORE
        rule = _rule_for(target_field)
        if rule is None:
            return NO_RULE_SCORE
        return _fraction(values, rule)

    def score(
        self,
        source_field: str,
        target_field: str,
        sample_values: Sequence[Any],
        target_type: str = "string",
        table: Optional[str] = None,
    ) -> FieldMapping:
        """
        Score a candidate mapping.

        Args:
            source_field: Spreadsheet header
            target_field: Target field name
            sample_values: Values of the source column (blanks are ignored)
            target_type: Target field type (string, enum, number, integer, date,
                boolean, email, phone)
            table: Target table, used for table-specific synonym groups

        Returns:
            FieldMapping with confidence in [0, 10] and descriptive reasons
        """
        values = [v for v in sample_values if not is_blank(v)]

        semantic = self.semantic_score(source_field, target_field, table)
        data_type = self.data_type_score(values, target_type)
        pattern = self.pattern_score(values, target_field)
        business = self.business_rule_score(values, target_field)

        raw = (
            SEMANTIC_WEIGHT * semantic
            + DATA_TYPE_WEIGHT * data_type
            + PATTERN_WEIGHT * pattern
            + BUSINESS_RULE_WEIGHT * business
        )
        confidence = min(10.0, max(0.0, round(raw * 10, 1)))

        return FieldMapping(
            source_field=source_field,
            target_field=target_field,
            confidence=confidence,
            reasons=tuple(self._reasons(semantic, data_type, pattern, business)),
            data_type_match=data_type >= MATCH_THRESHOLD,
            semantic_match=semantic >= MATCH_THRESHOLD,
            pattern_match=pattern >= MATCH_THRESHOLD,
            business_rule_match=business >= MATCH_THRESHOLD,
            semantic_score=semantic,
            data_type_score=data_type,
            pattern_score=pattern,
            business_rule_score=business,
        )

    @staticmethod
    def _reasons(semantic: float, data_type: float, pattern: float, business: float) -> List[str]:
        reasons = []

        if semantic >= 0.9:
            reasons.append("Field names are very similar")
        elif semantic >= 0.7:
            reasons.append("Field names are somewhat similar")
        elif semantic < 0.5:
            reasons.append("Field names are quite different")

        if data_type >= 0.9:
            reasons.append("Data types match perfectly")
        elif data_type >= 0.7:
            reasons.append("Data types are mostly compatible")
        elif data_type < 0.5:
            reasons.append("Data type mismatch detected")

        if pattern >= 0.9:
            reasons.append("Data patterns match expected format")
        elif pattern < 0.5:
            reasons.append("Data patterns don't match expected format")

        if business >= 0.9:
            reasons.append("Values satisfy business rules")
        elif business < 0.5:
            reasons.append("Values violate business rules")

        return reasons

    @staticmethod
    def sheet_confidence(mappings: Sequence[FieldMapping]) -> ConfidenceScore:
        """Aggregate the mappings of one sheet into flags and recommendations."""
        if not mappings:
            return ConfidenceScore(
                overall=0.0,
                flags=["No field mappings found"],
                recommendations=["Map fields manually or check the sheet's header row"],
            )

        count = len(mappings)
        overall = round(sum(m.confidence for m in mappings) / count, 1)
        breakdown = {
            "semantic": round(sum(m.semantic_score for m in mappings) / count, 3),
            "data_type": round(sum(m.data_type_score for m in mappings) / count, 3),
            "pattern": round(sum(m.pattern_score for m in mappings) / count, 3),
            "business_rule": round(sum(m.business_rule_score for m in mappings) / count, 3),
        }

        flags = []
        recommendations = []
        low = [m for m in mappings if m.confidence < 5]
        if low:
            flags.append(f"{len(low)} fields have low confidence")
            recommendations.append("Review low-confidence mappings before migrating")
        if any(not m.data_type_match for m in mappings):
            flags.append("Data type mismatches detected")
            recommendations.append("Add transformation rules for mismatched columns")
        if overall < 7:
            flags.append("Overall confidence is low")
            recommendations.append("Manual review recommended")

        return ConfidenceScore(
            overall=overall, breakdown=breakdown, flags=flags, recommendations=recommendations
        )
