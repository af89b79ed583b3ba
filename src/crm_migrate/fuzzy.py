#!/usr/bin/env python3
"""
Fuzzy matching algorithms and field normalization for crm-migrate.

Contains the string logic behind semantic field scoring:
- Field name normalization
- Field name tokenization
- Levenshtein distance and similarity ratio
"""

import re
import unicodedata
from typing import List


class FieldNormalizer:
    """Normalizes spreadsheet headers and target field names for matching."""

    @staticmethod
    def normalize_field_name(name: str) -> str:
        """
        Normalize a field name for comparison:
        - Remove accents and special characters
        - Convert to lowercase
        - Remove spaces, underscores, hyphens and brackets
        """
        if not name:
            return ""

        # Remove accents and convert to ASCII
        normalized = unicodedata.normalize("NFD", str(name))
        ascii_text = normalized.encode("ascii", "ignore").decode("ascii")

        return re.sub(r"[^a-z0-9]", "", ascii_text.lower())

    @staticmethod
    def tokenize(name: str) -> List[str]:
        """
        Split a field name into lowercase word tokens.

        Handles snake_case, camelCase and free-text headers alike, so
        ``organization_id``, ``organizationId`` and ``Organization ID`` all
        yield ``["organization", "id"]``.
        """
        if not name:
            return []
        spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(name))
        return [t for t in re.split(r"[^a-zA-Z0-9]+", spaced.lower()) if t]


class FuzzyMatcher:
    """Implements fuzzy string matching algorithms."""

    @staticmethod
    def levenshtein_distance(s1: str, s2: str) -> int:
        """Calculate Levenshtein distance between two strings."""
        if len(s1) < len(s2):
            return FuzzyMatcher.levenshtein_distance(s2, s1)

        if len(s2) == 0:
            return len(s1)

        previous_row = list(range(len(s2) + 1))
        for i, c1 in enumerate(s1):
            current_row = [i + 1]
            for j, c2 in enumerate(s2):
                insertions = previous_row[j + 1] + 1
                deletions = current_row[j] + 1
                substitutions = previous_row[j] + (c1 != c2)
                current_row.append(min(insertions, deletions, substitutions))
            previous_row = current_row

        return previous_row[-1]

    @staticmethod
    def levenshtein_similarity(s1: str, s2: str) -> float:
        """Calculate Levenshtein similarity ratio (max_len - distance) / max_len."""
        if not s1 and not s2:
            return 1.0
        if not s1 or not s2:
            return 0.0

        max_len = max(len(s1), len(s2))
        distance = FuzzyMatcher.levenshtein_distance(s1, s2)
        return (max_len - distance) / max_len
