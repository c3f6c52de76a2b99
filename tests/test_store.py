"""
Tests for the MongoDB access layer (store.py).
"""

from datetime import date, datetime
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import store
from analytics import TrackedHabit, current_streak, longest_streak
from schemas import Frequency
from tests.conftest import FIXED_NOW


def test_document_id_accepts_either_key():
    oid = ObjectId()
    assert store.document_id({"_id": oid}) == str(oid)
    assert store.document_id({"id": "abc"}) == "abc"
    with pytest.raises(KeyError):
        store.document_id({"name": "no id"})


def test_tracked_habit_from_document():
    doc = {"_id": ObjectId(), "name": "Run", "frequency": "custom", "custom_days": ["Mon", "Thu"]}
    habit = store.tracked_habit(doc)
    assert isinstance(habit, TrackedHabit)
    assert habit.frequency == Frequency.CUSTOM
    assert habit.scheduled_on(date(2025, 1, 16))  # Thursday
    assert not habit.scheduled_on(date(2025, 1, 15))


def test_toggle_roundtrip(mongo_db):
    day = date(2025, 1, 15)
    assert store.toggle_completion(mongo_db, "u1", "h1", day, FIXED_NOW) is True
    assert store.toggle_completion(mongo_db, "u1", "h1", day, FIXED_NOW) is False
    assert store.toggle_completion(mongo_db, "u1", "h1", day, FIXED_NOW) is True
    assert mongo_db["completion"].count_documents({"habit_id": "h1"}) == 1


def test_toggle_treats_racing_insert_as_existing():
    db = MagicMock()
    db["completion"].delete_one.return_value.deleted_count = 0
    db["completion"].insert_one.side_effect = DuplicateKeyError("duplicate key")
    assert store.toggle_completion(db, "u1", "h1", date(2025, 1, 15), FIXED_NOW) is True


def test_track_login_is_unique_per_day(mongo_db):
    assert store.track_login(mongo_db, "u1", date(2025, 1, 15)) is True
    assert store.track_login(mongo_db, "u1", date(2025, 1, 15)) is False
    assert store.track_login(mongo_db, "u2", date(2025, 1, 15)) is True
    assert store.count_login_days(mongo_db, "u1") == 1
    assert store.list_login_days(mongo_db, "u1") == [date(2025, 1, 15)]


def test_build_snapshot_groups_completions_by_habit(mongo_db):
    read = store.create_habit(mongo_db, "u1", {"name": "Read"}, FIXED_NOW)
    walk = store.create_habit(mongo_db, "u1", {"name": "Walk", "frequency": Frequency.WEEKDAYS}, FIXED_NOW)
    store.create_habit(mongo_db, "u2", {"name": "Not mine"}, FIXED_NOW)
    read_id, walk_id = str(read["_id"]), str(walk["_id"])
    for day in (date(2025, 1, 13), date(2025, 1, 14)):
        store.toggle_completion(mongo_db, "u1", read_id, day, FIXED_NOW)
    store.toggle_completion(mongo_db, "u1", walk_id, date(2025, 1, 15), FIXED_NOW)

    snapshot = store.build_snapshot(mongo_db, "u1")
    assert {h.name for h in snapshot.habits} == {"Read", "Walk"}
    assert snapshot.days_for(read_id) == frozenset({date(2025, 1, 13), date(2025, 1, 14)})
    assert current_streak(snapshot, date(2025, 1, 15)) == 3
    assert longest_streak(snapshot) == 3


def test_create_habit_stores_plain_values(mongo_db):
    doc = store.create_habit(mongo_db, "u1", {"name": "Read", "frequency": Frequency.WEEKENDS}, FIXED_NOW)
    stored = mongo_db["habit"].find_one({"_id": doc["_id"]})
    assert stored["frequency"] == "weekends"
    assert stored["icon"] == "target.svg"
    assert isinstance(stored["created_at"], datetime)


def test_writes_are_stamped_with_the_given_clock(mongo_db):
    doc = store.create_habit(mongo_db, "u1", {"name": "Read"}, FIXED_NOW)
    store.toggle_completion(mongo_db, "u1", str(doc["_id"]), date(2025, 1, 15), FIXED_NOW)

    habit = mongo_db["habit"].find_one({"_id": doc["_id"]})
    completion = mongo_db["completion"].find_one({"habit_id": str(doc["_id"])})
    # mongomock may hand datetimes back naive, as a real MongoDB does
    assert habit["created_at"].replace(tzinfo=None) == FIXED_NOW.replace(tzinfo=None)
    assert completion["created_at"].replace(tzinfo=None) == FIXED_NOW.replace(tzinfo=None)
