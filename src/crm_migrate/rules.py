#!/usr/bin/env python3
"""
Validation rule data for crm-migrate.

Regexes, numeric ranges, enumerations, stage probability bands, service
windows and quality penalties used by the validation engine. The defaults
describe a food-service CRM; any of them can be replaced from a YAML file
(``load_rules``) without touching the validator code.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError

from .schema import ValidationError


class NumericRange(BaseModel):
    """Inclusive numeric bounds; a missing bound is open."""

    min: Optional[float] = None
    max: Optional[float] = None

    def contains(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True

    def describe(self) -> str:
        if self.max is None:
            return f">= {self.min:g}"
        if self.min is None:
            return f"<= {self.max:g}"
        return f"between {self.min:g} and {self.max:g}"


class ValidationRules(BaseModel):
    """All externally configurable validation data."""

    # Formats
    email_pattern: str = r"^[\w.%+\-']+@[\w.\-]+\.[A-Za-z]{2,}$"
    phone_pattern: str = r"^[\d\s\-\(\)\+\.]+$"
    min_phone_digits: int = 10
    zip_pattern: str = r"^\d{5}(-?\d{4})?$"
    state_pattern: str = r"^[A-Z]{2}$"
    url_pattern: str = r"^(https?://)?[\w.-]+\.[a-z]{2,}(/\S*)?$"
    invalid_organization_name_pattern: str = r"^(test|temp|tmp|delete)"

    # Field lengths
    min_lengths: Dict[str, int] = {
        "organizations.name": 2,
        "organizations.city": 2,
        "interactions.subject": 3,
    }
    max_lengths: Dict[str, int] = {
        "organizations.name": 200,
        "organizations.address": 255,
        "organizations.city": 100,
        "contacts.first_name": 50,
        "contacts.last_name": 50,
        "email": 254,
        "notes": 5000,
        "opportunities.name": 200,
        "interactions.subject": 200,
    }

    # Numeric ranges keyed by field name
    ranges: Dict[str, NumericRange] = {
        "probability": NumericRange(min=0, max=100),
        "estimated_revenue": NumericRange(min=0, max=1_000_000_000),
        "employee_count": NumericRange(min=0, max=100_000),
        "duration": NumericRange(min=0, max=480),
        "value": NumericRange(min=0),
    }

    # Enumerations keyed by "table.field"
    enums: Dict[str, List[str]] = {
        "organizations.priority": ["A", "B", "C", "D"],
        "organizations.segment": [
            "FINE_DINING", "FAST_FOOD", "CASUAL_DINING", "QUICK_SERVICE",
            "CAFETERIA", "FOOD_TRUCK", "CATERING", "BAKERY", "BAR",
            "COFFEE_SHOP", "BREWERY", "DISTILLERY", "GROCERY", "CONVENIENCE",
            "INSTITUTIONAL", "HEALTHCARE", "EDUCATION", "CORPORATE", "OTHER",
        ],
        "organizations.type": ["PROSPECT", "CUSTOMER", "INACTIVE"],
        "organizations.status": ["ACTIVE", "INACTIVE", "LEAD"],
        "opportunities.stage": [
            "PROSPECT", "QUALIFIED", "PROPOSAL", "NEGOTIATION", "CLOSED_WON", "CLOSED_LOST",
        ],
        "interactions.type": [
            "CALL", "EMAIL", "MEETING", "VISIT", "DEMO", "TASTING", "DELIVERY", "OTHER",
        ],
        "interactions.outcome": ["POSITIVE", "NEUTRAL", "NEGATIVE", "FOLLOW_UP_NEEDED"],
    }

    # Temporal bounds
    interaction_max_age_years: int = 5
    close_date_max_future_years: int = 2

    # Business rules
    high_priority_values: List[str] = ["A"]
    inactive_status: str = "INACTIVE"
    stage_probability: Dict[str, Tuple[float, float]] = {
        "PROSPECT": (0, 25),
        "QUALIFIED": (20, 50),
        "PROPOSAL": (40, 75),
        "NEGOTIATION": (60, 90),
        "CLOSED_WON": (100, 100),
        "CLOSED_LOST": (0, 0),
    }
    closed_stages: List[str] = ["CLOSED_WON", "CLOSED_LOST"]
    high_value_threshold: float = 10_000
    in_person_types: List[str] = ["VISIT", "DEMO", "TASTING"]
    time_exempt_types: List[str] = ["EMAIL"]
    # Half-open [start, end) hours when restaurants are serving
    service_windows: List[Tuple[int, int]] = [(11, 14), (17, 22)]
    follow_up_outcome: str = "FOLLOW_UP_NEEDED"
    detail_outcome_types: List[str] = ["MEETING", "VISIT"]

    # Data quality
    low_quality_threshold: int = 70
    stale_contact_days: Tuple[int, int] = (180, 365)
    quality_penalties: Dict[str, Dict[str, int]] = {
        "organizations": {
            "name": 20,
            "priority": 10,
            "segment": 10,
            "contact_method": 15,
            "address": 10,
            "estimated_revenue": 5,
            "employee_count": 5,
            "stale_contact": 10,
            "very_stale_contact": 20,
        },
        "contacts": {
            "name": 20,
            "contact_method": 20,
            "position": 10,
        },
        "interactions": {
            "subject": 15,
            "description": 10,
            "outcome": 10,
            "follow_up": 15,
        },
        "opportunities": {
            "value": 15,
            "expected_close_date": 10,
            "contact": 10,
            "low_proposal_probability": 10,
        },
    }

    @field_validator(
        "email_pattern",
        "phone_pattern",
        "zip_pattern",
        "state_pattern",
        "url_pattern",
        "invalid_organization_name_pattern",
    )
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        """Validate that a pattern compiles."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression {v!r}: {e}") from e
        return v

    @field_validator("service_windows")
    @classmethod
    def validate_service_windows(cls, v: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
        """Validate that every window is a proper hour range."""
        for start, end in v:
            if not 0 <= start < end <= 24:
                raise ValueError(f"service window ({start}, {end}) is not a valid hour range")
        return v

    _compiled: Dict[str, Any] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._compiled = {
            "email": re.compile(self.email_pattern, re.IGNORECASE),
            "phone": re.compile(self.phone_pattern),
            "zip": re.compile(self.zip_pattern),
            "state": re.compile(self.state_pattern),
            "url": re.compile(self.url_pattern, re.IGNORECASE),
            "invalid_org_name": re.compile(self.invalid_organization_name_pattern, re.IGNORECASE),
        }

    @property
    def compiled(self) -> Dict[str, Any]:
        return self._compiled

    def enum_for(self, table: str, field_name: str) -> Optional[List[str]]:
        return self.enums.get(f"{table}.{field_name}")

    def length_limits(self, table: str, field_name: str) -> Tuple[Optional[int], Optional[int]]:
        key = f"{table}.{field_name}"
        minimum = self.min_lengths.get(key)
        maximum = self.max_lengths.get(key, self.max_lengths.get(field_name))
        return minimum, maximum

    def penalty(self, table: str, key: str) -> int:
        return self.quality_penalties.get(table, {}).get(key, 0)


DEFAULT_RULES = ValidationRules()


def validate_rules(data: Dict[str, Any]) -> ValidationRules:
    """
    Validate rule data loaded from YAML.

    Raises:
        ValidationError: If validation fails
    """
    try:
        return ValidationRules(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid validation rules: {e}") from e


def load_rules(path=None) -> ValidationRules:
    """Load rule data from a YAML file; defaults are used for missing keys."""
    if path is None:
        return DEFAULT_RULES
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read validation rules {path}: {e}") from e
    return validate_rules(data)
