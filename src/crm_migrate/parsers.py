#!/usr/bin/env python3
"""
Cell value parsers for crm-migrate.

Contains the lenient conversions shared by confidence scoring, row
transformation and validation:
- Numbers written with currency symbols, thousands separators or percents
- Yes/no style booleans
- Dates given as spreadsheet dates or as text
"""

import math
import re
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

TRUE_VALUES = {"true", "yes", "y", "1", "x"}
FALSE_VALUES = {"false", "no", "n", "0"}

_NUMBER_NOISE = re.compile(r"[\s$,%]")


def is_blank(value: Any) -> bool:
    """Return True for None, NaN and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def parse_number(value: Any) -> Optional[float]:
    """Parse a numeric cell; returns None when the value is not a number."""
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _NUMBER_NOISE.sub("", str(value))
    try:
        number = float(text)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def parse_boolean(value: Any) -> Optional[bool]:
    """Parse a yes/no style cell; returns None when it is not a boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a date cell into a naive datetime; returns None when unparseable."""
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str) or not re.search(r"\d", value):
        return None

    parsed = pd.to_datetime(value.strip(), errors="coerce")
    if pd.isna(parsed):
        return None
    parsed = parsed.to_pydatetime()
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    return parsed


def digits(value: Any) -> str:
    """Return only the digits of a value (phone numbers, zip codes)."""
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return re.sub(r"\D", "", str(value))
