#!/usr/bin/env python3
"""
Target records and row transformation for crm-migrate.

Each target table has its own record class, so validation and persistence
work on concrete field sets instead of loose dictionaries. transform_row
turns one spreadsheet row into the record of its sheet's table, applying the
confirmed TableMapping, type coercion and reference resolution.
"""

import re
import uuid
from dataclasses import asdict, dataclass, fields
from datetime import date, datetime
from typing import Any, ClassVar, Dict, Optional, Union

from .parsers import digits, is_blank, parse_boolean, parse_datetime, parse_number
from .reference_cache import ReferenceCache
from .target_schema import (
    CONTACTS,
    INTERACTIONS,
    OPPORTUNITIES,
    ORGANIZATIONS,
    get_fields,
)


@dataclass
class Organization:
    TABLE: ClassVar[str] = ORGANIZATIONS

    id: Optional[str] = None
    name: Optional[str] = None
    priority: Optional[str] = None
    segment: Optional[str] = None
    type: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    notes: Optional[str] = None
    estimated_revenue: Optional[float] = None
    employee_count: Optional[int] = None
    primary_contact: Optional[str] = None
    last_contact_date: Optional[datetime] = None
    next_follow_up_date: Optional[datetime] = None
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Contact:
    TABLE: ClassVar[str] = CONTACTS

    id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    position: Optional[str] = None
    is_primary: bool = False
    notes: Optional[str] = None
    organization_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Opportunity:
    TABLE: ClassVar[str] = OPPORTUNITIES

    id: Optional[str] = None
    name: Optional[str] = None
    organization_id: Optional[str] = None
    contact_id: Optional[str] = None
    value: Optional[float] = None
    stage: Optional[str] = None
    probability: Optional[float] = None
    expected_close_date: Optional[datetime] = None
    notes: Optional[str] = None
    reason: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Interaction:
    TABLE: ClassVar[str] = INTERACTIONS

    id: Optional[str] = None
    type: Optional[str] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    date: Optional[datetime] = None
    duration: Optional[int] = None
    outcome: Optional[str] = None
    next_action: Optional[str] = None
    organization_id: Optional[str] = None
    contact_id: Optional[str] = None
    opportunity_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Record = Union[Organization, Contact, Opportunity, Interaction]

ENTITY_TYPES = {
    ORGANIZATIONS: Organization,
    CONTACTS: Contact,
    OPPORTUNITIES: Opportunity,
    INTERACTIONS: Interaction,
}

_PRIORITY_PREFIX = re.compile(r"^([A-D])\b")
_ENUM_SEPARATORS = re.compile(r"[\s\-/]+")


def record_from_dict(table: str, data: Dict[str, Any]) -> Record:
    """Build a record of ``table`` from a dict, ignoring unknown keys."""
    cls = ENTITY_TYPES[table]
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def _as_text(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def _as_enum(name: str, value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    text = text.upper()
    if name == "priority":
        match = _PRIORITY_PREFIX.match(text)
        if match:
            return match.group(1)
    return _ENUM_SEPARATORS.sub("_", text)


def normalize_phone(value: Any) -> Optional[str]:
    """Normalise a US phone number to +1XXXXXXXXXX; other values stay as text."""
    text = _as_text(value)
    if text is None:
        return None
    only_digits = digits(value)
    if len(only_digits) == 10:
        return f"+1{only_digits}"
    if len(only_digits) == 11 and only_digits.startswith("1"):
        return f"+{only_digits}"
    return text


def _as_zip(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value)).zfill(5)
    return _as_text(value)


def coerce_value(name: str, field_type: str, value: Any) -> Any:
    """Coerce a raw cell to the target field's type.

    Values that cannot be coerced are returned unchanged so validation can
    report them as format errors.
    """
    if is_blank(value):
        return None

    if field_type in ("number", "integer"):
        number = parse_number(value)
        if number is None:
            return value
        if field_type == "integer" and number.is_integer():
            return int(number)
        return number
    if field_type == "date":
        parsed = parse_datetime(value)
        return parsed if parsed is not None else value
    if field_type == "boolean":
        parsed = parse_boolean(value)
        return parsed if parsed is not None else value
    if field_type == "email":
        return _as_text(value).lower()
    if field_type == "phone":
        return normalize_phone(value)
    if field_type == "enum":
        return _as_enum(name, value)
    if name == "zip_code":
        return _as_zip(value)
    if name == "state":
        return _as_text(value).upper()
    return _as_text(value)


def split_full_name(full_name: Optional[str]):
    """Split "First Last" or "First, Last" into its two parts."""
    if not full_name:
        return None, None
    if "," in full_name:
        first, _, last = full_name.partition(",")
    else:
        first, _, last = full_name.strip().partition(" ")
    return first.strip() or None, last.strip() or None


def _resolve(cache: Optional[ReferenceCache], field_name: str, value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None or cache is None:
        return text
    if field_name == "organization_id":
        resolved = cache.resolve_organization(text)
    elif field_name == "contact_id":
        resolved = cache.resolve_contact(text)
    else:
        resolved = cache.resolve_opportunity(text)
    return resolved or text


def transform_row(
    table: str,
    row: Dict[str, Any],
    table_mapping,
    cache: Optional[ReferenceCache] = None,
) -> Record:
    """
    Transform one spreadsheet row into a target record.

    Args:
        table: Target table name
        row: Header -> value dict as produced by the workbook analyzer
        table_mapping: Confirmed TableMapping for the row's sheet
        cache: Reference cache used to resolve names into ids

    Returns:
        Record of the table's entity type with a fresh id
    """
    raw = {
        target: row.get(source)
        for source, target in table_mapping.source_to_target().items()
    }

    values: Dict[str, Any] = {}
    for target in get_fields(table):
        if target.name not in raw:
            continue
        value = raw[target.name]
        if target.references:
            values[target.name] = _resolve(cache, target.name, value)
        else:
            values[target.name] = coerce_value(target.name, target.type, value)

    if table == CONTACTS:
        full_name = values.pop("full_name", None)
        if full_name and not (values.get("first_name") and values.get("last_name")):
            first, last = split_full_name(full_name)
            values["first_name"] = values.get("first_name") or first
            values["last_name"] = values.get("last_name") or last
        if values.get("is_primary") is None:
            values.pop("is_primary", None)
    if table == OPPORTUNITIES and values.get("is_active") is None:
        values.pop("is_active", None)

    record = record_from_dict(table, values)
    if not record.id:
        record.id = uuid.uuid4().hex
    return record
