#!/usr/bin/env python3
"""
Target CRM schema for crm-migrate.

Lists the four target tables in referential load order together with the
fields each one accepts and the type every field is scored and coerced as.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

ORGANIZATIONS = "organizations"
CONTACTS = "contacts"
OPPORTUNITIES = "opportunities"
INTERACTIONS = "interactions"

# Referential order: later tables reference ids created by earlier ones
LOAD_ORDER = (ORGANIZATIONS, CONTACTS, OPPORTUNITIES, INTERACTIONS)


@dataclass(frozen=True)
class TargetField:
    """A single column of a target table."""

    name: str
    type: str = "string"
    required: bool = False
    references: Optional[str] = None


TARGET_SCHEMA: Dict[str, Tuple[TargetField, ...]] = {
    ORGANIZATIONS: (
        TargetField("name", required=True),
        TargetField("priority", "enum"),
        TargetField("segment", "enum"),
        TargetField("type", "enum"),
        TargetField("address"),
        TargetField("city"),
        TargetField("state"),
        TargetField("zip_code"),
        TargetField("phone", "phone"),
        TargetField("email", "email"),
        TargetField("website"),
        TargetField("notes"),
        TargetField("estimated_revenue", "number"),
        TargetField("employee_count", "integer"),
        TargetField("primary_contact"),
        TargetField("last_contact_date", "date"),
        TargetField("next_follow_up_date", "date"),
        TargetField("status", "enum"),
    ),
    CONTACTS: (
        TargetField("full_name"),
        TargetField("first_name", required=True),
        TargetField("last_name", required=True),
        TargetField("email", "email"),
        TargetField("phone", "phone"),
        TargetField("position"),
        TargetField("is_primary", "boolean"),
        TargetField("notes"),
        TargetField("organization_id", required=True, references=ORGANIZATIONS),
    ),
    OPPORTUNITIES: (
        TargetField("name", required=True),
        TargetField("organization_id", required=True, references=ORGANIZATIONS),
        TargetField("contact_id", references=CONTACTS),
        TargetField("value", "number"),
        TargetField("stage", "enum"),
        TargetField("probability", "number"),
        TargetField("expected_close_date", "date"),
        TargetField("notes"),
        TargetField("reason"),
        TargetField("is_active", "boolean"),
    ),
    INTERACTIONS: (
        TargetField("type", "enum", required=True),
        TargetField("subject", required=True),
        TargetField("description"),
        TargetField("date", "date", required=True),
        TargetField("duration", "integer"),
        TargetField("outcome", "enum"),
        TargetField("next_action"),
        TargetField("organization_id", required=True, references=ORGANIZATIONS),
        TargetField("contact_id", references=CONTACTS),
        TargetField("opportunity_id", references=OPPORTUNITIES),
    ),
}


def get_fields(table: str) -> Tuple[TargetField, ...]:
    """Return the fields of a target table; unknown tables raise KeyError."""
    return TARGET_SCHEMA[table]

