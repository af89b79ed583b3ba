#!/usr/bin/env python3
"""
Tests for the in-memory and JSON record stores.
"""

import json
from datetime import datetime

import pytest

from crm_migrate.exceptions import StoreError
from crm_migrate.records import Organization
from crm_migrate.store import InMemoryRecordStore, JsonRecordStore


def seed(store):
    store.create_many(
        "organizations",
        [
            {"id": "org-1", "name": "Blue Bistro", "priority": "A"},
            {"id": "org-2", "name": "Harbor Grill", "priority": "B"},
            Organization(id="org-3", name="Corner Cafe", priority="A"),
        ],
    )


def test_create_and_find():
    """Records are stored as dictionaries and filtered by equality."""
    store = InMemoryRecordStore()
    seed(store)

    assert store.count("organizations") == 3
    assert {r["id"] for r in store.find_many("organizations", {"priority": "A"})} == {"org-1", "org-3"}
    # String filters ignore case
    assert store.find_first("organizations", {"name": "blue bistro"})["id"] == "org-1"
    assert store.find_first("organizations", {"name": "Nowhere"}) is None
    assert store.count("organizations", {"priority": "B"}) == 1
    assert store.find_many("contacts") == []


def test_find_returns_copies():
    """Mutating a returned record does not change the store."""
    store = InMemoryRecordStore()
    seed(store)

    record = store.find_first("organizations", {"id": "org-1"})
    record["name"] = "Changed"
    assert store.find_first("organizations", {"id": "org-1"})["name"] == "Blue Bistro"


def test_duplicate_ids():
    """Duplicate ids are rejected unless skipped explicitly."""
    store = InMemoryRecordStore()
    seed(store)

    with pytest.raises(StoreError):
        store.create_many("organizations", [{"id": "org-1", "name": "Again"}])

    created = store.create_many(
        "organizations",
        [{"id": "org-1", "name": "Again"}, {"id": "org-4", "name": "Night Owl Bar"}],
        skip_duplicates=True,
    )
    assert created == ["org-4"]


def test_records_need_ids():
    """Records without an id or of unknown type cannot be stored."""
    store = InMemoryRecordStore()
    with pytest.raises(StoreError):
        store.create_many("organizations", [{"name": "No id"}])
    with pytest.raises(StoreError):
        store.create_many("organizations", ["just a string"])


def test_update_and_delete():
    """Updates merge changes; deletes report whether anything went."""
    store = InMemoryRecordStore()
    seed(store)

    updated = store.update("organizations", "org-2", {"priority": "C"})
    assert updated["priority"] == "C"
    assert updated["name"] == "Harbor Grill"

    with pytest.raises(StoreError):
        store.update("organizations", "missing", {"priority": "C"})

    assert store.delete("organizations", "org-2") is True
    assert store.delete("organizations", "org-2") is False
    assert store.delete_many("organizations", {"priority": "A"}) == 2
    assert store.count("organizations") == 0


def test_initial_tables():
    """A store can be built with initial records."""
    store = InMemoryRecordStore({"contacts": [{"id": "c-1", "first_name": "Ana"}]})
    assert store.count("contacts") == 1
    assert "organizations" in store.tables()


def test_json_store_persists(tmp_path):
    """Every write is saved and a new store reloads the file."""
    path = tmp_path / "data" / "crm.json"
    store = JsonRecordStore(path)
    store.create_many(
        "interactions",
        [{"id": "i-1", "type": "CALL", "date": datetime(2024, 5, 20, 10, 0)}],
    )
    seed(store)
    store.delete("organizations", "org-3")

    assert path.exists()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["interactions"][0]["date"] == "2024-05-20T10:00:00"

    reloaded = JsonRecordStore(path)
    assert reloaded.count("organizations") == 2
    assert reloaded.find_first("interactions")["date"] == "2024-05-20T10:00:00"


def test_json_store_rejects_corrupt_file(tmp_path):
    """An unreadable store file raises StoreError."""
    path = tmp_path / "crm.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        JsonRecordStore(path)
