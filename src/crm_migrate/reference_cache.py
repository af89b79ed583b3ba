#!/usr/bin/env python3
"""
Run-scoped reference caches for crm-migrate.

Holds the identifiers, names and emails that referential and duplicate
checks look up. A cache is loaded once from the record store at the start of
a run and owned by that run's orchestrator; validation only reads it.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from .logging_config import get_logger
from .target_schema import CONTACTS, OPPORTUNITIES, ORGANIZATIONS

logger = get_logger(__name__)


def _get(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _key(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


@dataclass
class ReferenceCache:
    """Existing ids, names and emails of the target store."""

    organization_ids: Set[str] = field(default_factory=set)
    organization_names: Dict[str, str] = field(default_factory=dict)
    organization_emails: Dict[str, str] = field(default_factory=dict)
    contact_ids: Set[str] = field(default_factory=set)
    contact_organizations: Dict[str, str] = field(default_factory=dict)
    contact_names: Dict[str, str] = field(default_factory=dict)
    contact_emails: Dict[str, str] = field(default_factory=dict)
    opportunity_ids: Set[str] = field(default_factory=set)
    opportunity_names: Dict[str, str] = field(default_factory=dict)
    primary_contact_organizations: Set[str] = field(default_factory=set)

    @classmethod
    def load(cls, store) -> "ReferenceCache":
        """Preload a cache from a RecordStore."""
        cache = cls()
        for table in (ORGANIZATIONS, CONTACTS, OPPORTUNITIES):
            for record in store.find_many(table):
                cache.register(table, record)
        logger.debug(
            f"Reference cache loaded: {len(cache.organization_ids)} organizations, "
            f"{len(cache.contact_ids)} contacts, {len(cache.opportunity_ids)} opportunities"
        )
        return cache

    def copy(self) -> "ReferenceCache":
        return copy.deepcopy(self)

    def register(self, table: str, record: Any) -> None:
        """Add a record (entity or dict) that now exists or will exist."""
        record_id = _get(record, "id")
        if record_id is None:
            return
        record_id = str(record_id)

        if table == ORGANIZATIONS:
            self.organization_ids.add(record_id)
            name = _key(_get(record, "name"))
            if name:
                self.organization_names.setdefault(name, record_id)
            email = _key(_get(record, "email"))
            if email:
                self.organization_emails.setdefault(email, record_id)

        elif table == CONTACTS:
            self.contact_ids.add(record_id)
            organization_id = _get(record, "organization_id")
            if organization_id is not None:
                self.contact_organizations[record_id] = str(organization_id)
                if _get(record, "is_primary"):
                    self.primary_contact_organizations.add(str(organization_id))
            full_name = _key(
                " ".join(
                    str(part)
                    for part in (_get(record, "first_name"), _get(record, "last_name"))
                    if part
                )
            )
            if full_name:
                self.contact_names.setdefault(full_name, record_id)
            email = _key(_get(record, "email"))
            if email:
                self.contact_emails.setdefault(email, record_id)

        elif table == OPPORTUNITIES:
            self.opportunity_ids.add(record_id)
            name = _key(_get(record, "name"))
            if name:
                self.opportunity_names.setdefault(name, record_id)

    def resolve_organization(self, value: Any) -> Optional[str]:
        """Return the organization id an id or name refers to."""
        if value is None:
            return None
        if str(value) in self.organization_ids:
            return str(value)
        return self.organization_names.get(_key(value))

    def resolve_contact(self, value: Any) -> Optional[str]:
        """Return the contact id an id, full name or email refers to."""
        if value is None:
            return None
        if str(value) in self.contact_ids:
            return str(value)
        key = _key(value)
        return self.contact_names.get(key) or self.contact_emails.get(key)

    def resolve_opportunity(self, value: Any) -> Optional[str]:
        """Return the opportunity id an id or name refers to."""
        if value is None:
            return None
        if str(value) in self.opportunity_ids:
            return str(value)
        return self.opportunity_names.get(_key(value))
