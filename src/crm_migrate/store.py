#!/usr/bin/env python3
"""
Record store port for crm-migrate.

The migration engine only talks to storage through RecordStore, a small
CRUD-shaped interface with equality filtering. Two implementations ship:
an in-memory store for tests and dry runs, and a JSON file store used by
the command line.
"""

import copy
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import StoreError
from .logging_config import get_logger
from .target_schema import LOAD_ORDER

logger = get_logger(__name__)

Filter = Optional[Dict[str, Any]]


def _as_dict(record: Any) -> Dict[str, Any]:
    if isinstance(record, dict):
        return dict(record)
    if is_dataclass(record):
        return asdict(record)
    raise StoreError(f"Unsupported record type: {type(record).__name__}")


def _matches(record: Dict[str, Any], where: Filter) -> bool:
    if not where:
        return True
    for key, expected in where.items():
        actual = record.get(key)
        if isinstance(expected, str) and isinstance(actual, str):
            if actual.lower() != expected.lower():
                return False
        elif actual != expected:
            return False
    return True


class RecordStore(ABC):
    """Abstract CRUD port of the target CRM."""

    @abstractmethod
    def create_many(self, table: str, records: Iterable[Any], skip_duplicates: bool = False) -> List[str]:
        """Insert records and return the ids actually created."""

    @abstractmethod
    def find_many(self, table: str, filter: Filter = None) -> List[Dict[str, Any]]:
        """Return copies of all records matching ``filter``."""

    def find_first(self, table: str, filter: Filter = None) -> Optional[Dict[str, Any]]:
        matches = self.find_many(table, filter)
        return matches[0] if matches else None

    def count(self, table: str, filter: Filter = None) -> int:
        return len(self.find_many(table, filter))

    @abstractmethod
    def update(self, table: str, id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``changes`` to one record and return the updated copy."""

    @abstractmethod
    def delete(self, table: str, id: str) -> bool:
        """Delete one record; returns False when it did not exist."""

    @abstractmethod
    def delete_many(self, table: str, filter: Filter = None) -> int:
        """Delete all records matching ``filter`` and return how many went."""


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store; tables are created on first use."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {t: {} for t in LOAD_ORDER}
        for table, records in (tables or {}).items():
            self._insert(table, records, skip_duplicates=False)

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _insert(self, table: str, records: Iterable[Any], skip_duplicates: bool) -> List[str]:
        rows = self._table(table)
        created = []
        for record in records:
            data = _as_dict(record)
            record_id = data.get("id")
            if record_id is None:
                raise StoreError(f"Cannot store a {table} record without an id")
            record_id = str(record_id)
            if record_id in rows:
                if skip_duplicates:
                    logger.debug(f"Skipping duplicate {table} record {record_id}")
                    continue
                raise StoreError(f"Duplicate id {record_id} in {table}")
            rows[record_id] = copy.deepcopy(data)
            created.append(record_id)
        return created

    def create_many(self, table: str, records: Iterable[Any], skip_duplicates: bool = False) -> List[str]:
        with self._lock:
            return self._insert(table, records, skip_duplicates)

    def find_many(self, table: str, filter: Filter = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._table(table).values()
                if _matches(record, filter)
            ]

    def count(self, table: str, filter: Filter = None) -> int:
        with self._lock:
            if not filter:
                return len(self._table(table))
            return sum(1 for record in self._table(table).values() if _matches(record, filter))

    def update(self, table: str, id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._table(table)
            if str(id) not in rows:
                raise StoreError(f"{table} record {id} not found")
            rows[str(id)].update(changes)
            return copy.deepcopy(rows[str(id)])

    def delete(self, table: str, id: str) -> bool:
        with self._lock:
            return self._table(table).pop(str(id), None) is not None

    def delete_many(self, table: str, filter: Filter = None) -> int:
        with self._lock:
            rows = self._table(table)
            doomed = [key for key, record in rows.items() if _matches(record, filter)]
            for key in doomed:
                del rows[key]
            return len(doomed)

    def tables(self) -> List[str]:
        with self._lock:
            return list(self._tables)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonRecordStore(InMemoryRecordStore):
    """In-memory store persisted to one JSON file after every write.

    Dates are stored as ISO strings and come back as strings when reloaded.
    """

    def __init__(self, path):
        self.path = Path(path)
        super().__init__()
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise StoreError(f"Cannot read record store {self.path}: {e}") from e
            for table, records in data.items():
                self._insert(table, records, skip_duplicates=False)
            logger.debug(f"Loaded record store {self.path}")

    def _save(self) -> None:
        payload = {table: list(rows.values()) for table, rows in self._tables.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False, default=_json_default)
            tmp_path.replace(self.path)
        except (OSError, TypeError) as e:
            raise StoreError(f"Cannot write record store {self.path}: {e}") from e

    def create_many(self, table: str, records: Iterable[Any], skip_duplicates: bool = False) -> List[str]:
        with self._lock:
            created = self._insert(table, records, skip_duplicates)
            if created:
                self._save()
            return created

    def update(self, table: str, id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            updated = super().update(table, id, changes)
            self._save()
            return updated

    def delete(self, table: str, id: str) -> bool:
        with self._lock:
            deleted = super().delete(table, id)
            if deleted:
                self._save()
            return deleted

    def delete_many(self, table: str, filter: Filter = None) -> int:
        with self._lock:
            deleted = super().delete_many(table, filter)
            if deleted:
                self._save()
            return deleted
