#!/usr/bin/env python3
"""
Synonym matching logic and dictionaries for crm-migrate.

Contains the curated CRM vocabulary used by semantic scoring:
- Organization / account terms
- Contact and person terms
- Pipeline and activity terms
- Table-specific groups for ambiguous fields such as ``name``
- Synonym lookup and matching
"""

from typing import Dict, List, Optional

from .fuzzy import FieldNormalizer

# Synonym terms shorter than this are too ambiguous for substring matching
MIN_TERM_LENGTH = 3


class SynonymMatcher:
    """Handles synonym matching between spreadsheet headers and target fields.

    Groups are keyed by the normalized target field name with any trailing
    ``id`` removed, so ``organization_id`` looks up the ``organization`` group.
    """

    SYNONYMS = {
        # Organization / account terms
        "organization": ["company", "account", "business", "org", "firm",
                         "enterprise", "client", "customer"],
        "priority": ["importance", "urgency", "rank", "focus", "tier"],
        "segment": ["sector", "industry", "market", "division", "vertical"],
        "type": ["category", "kind", "classification"],
        "status": ["condition"],
        "estimatedrevenue": ["revenue", "sales", "annualrevenue", "turnover"],
        "employeecount": ["employees", "staff", "headcount", "employee"],
        "website": ["url", "web", "site", "homepage"],
        "primarycontact": ["maincontact", "keycontact", "contactname", "contactperson"],
        "lastcontactdate": ["lastcontact", "lastcontacted", "lastvisit"],
        "nextfollowupdate": ["followup", "nextfollowup", "followupdate"],
        # Address terms
        "address": ["street", "streetaddress", "addr", "location"],
        "city": ["town", "municipality", "locality"],
        "state": ["province", "region"],
        "zipcode": ["zip", "postalcode", "postcode", "postal"],
        # Contact / person terms
        "contact": ["person", "individual", "contactname", "attendee"],
        "firstname": ["fname", "givenname", "forename"],
        "lastname": ["lname", "surname", "familyname"],
        "fullname": ["contactname", "personname"],
        "email": ["emailaddress", "mail"],
        "phone": ["telephone", "tel", "mobile", "cell", "phonenumber"],
        "position": ["title", "role", "jobtitle"],
        "isprimary": ["primary", "main"],
        # Pipeline and activity terms
        "opportunity": ["deal", "pipeline"],
        "stage": ["phase", "pipelinestage"],
        "value": ["amount", "price", "dealsize", "volume", "worth"],
        "probability": ["likelihood", "chance", "percent", "winprobability"],
        "expectedclosedate": ["closedate", "closing", "expectedclose"],
        "reason": ["lossreason", "winreason", "closereason"],
        "isactive": ["active"],
        "date": ["datetime", "timestamp", "when", "interactiondate", "activitydate"],
        "subject": ["topic", "regarding", "summary"],
        "description": ["details", "detail"],
        "outcome": ["result", "resolution"],
        "duration": ["minutes", "length", "mins"],
        "nextaction": ["nextstep", "followupaction", "action"],
        "notes": ["comments", "remarks", "memo", "note"],
    }

    # Groups whose meaning depends on the target table
    TABLE_SYNONYMS = {
        "organizations": {
            "name": ["organization", "company", "account", "business",
                     "restaurant", "venue"],
        },
        "opportunities": {
            "name": ["opportunity", "deal", "title"],
            "stage": ["phase", "pipelinestage", "status"],
        },
    }

    def __init__(self, extra_synonyms: Optional[Dict[str, List[str]]] = None):
        """Create a matcher, optionally extending the built-in table."""
        self.extra: Dict[str, List[str]] = {}
        for key, values in (extra_synonyms or {}).items():
            group_key = FieldNormalizer.normalize_field_name(key)
            self.extra.setdefault(group_key, []).extend(values)

    @staticmethod
    def group_key(target_field: str) -> str:
        """Return the synonym group key for a target field name."""
        normalized = FieldNormalizer.normalize_field_name(target_field)
        tokens = FieldNormalizer.tokenize(target_field)
        if len(tokens) > 1 and tokens[-1] == "id":
            return normalized[: -len("id")]
        return normalized

    def find_synonyms(self, target_field: str, table: Optional[str] = None) -> List[str]:
        """Find the normalized synonym terms for a target field (key included)."""
        key = self.group_key(target_field)
        values = self.TABLE_SYNONYMS.get(table or "", {}).get(key)
        if values is None:
            values = self.SYNONYMS.get(key)
        values = list(values or []) + self.extra.get(key, [])
        if not values and key not in self.SYNONYMS:
            return []
        terms = [key] + [FieldNormalizer.normalize_field_name(v) for v in values]
        return list(dict.fromkeys(terms))

    def is_synonym_match(
        self, source_field: str, target_field: str, table: Optional[str] = None
    ) -> bool:
        """Check if a source header names the target through its synonym group.

        The header matches when it contains the group key or any synonym of
        at least three characters.
        """
        source_norm = FieldNormalizer.normalize_field_name(source_field)
        if not source_norm:
            return False

        for term in self.find_synonyms(target_field, table):
            if len(term) >= MIN_TERM_LENGTH and term in source_norm:
                return True
        return False
