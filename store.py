"""
MongoDB access for habits, completions and daily logins.

Route handlers go through these functions instead of touching collections
directly. Completion and login days are stored as ``YYYY-MM-DD`` strings of
the UTC day; the unique indexes from ``database.ensure_indexes`` guarantee at
most one document per (user, habit, day) and per (user, day).
"""
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from analytics import Snapshot, TrackedHabit, normalize
from schemas import Completion, Frequency, Habit, Login

logger = logging.getLogger(__name__)


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def document_id(doc: dict) -> str:
    """Canonical string id of a document, whichever key carries it."""
    raw = doc.get("_id", doc.get("id"))
    if raw is None:
        raise KeyError("document has neither '_id' nor 'id'")
    return str(raw)


# Habits

def list_habits(db, user_id: str) -> List[dict]:
    return list(db["habit"].find({"user_id": user_id}))


def find_habit(db, user_id: str, habit_id: str) -> Optional[dict]:
    oid = to_object_id(habit_id)
    if oid is None:
        return None
    return db["habit"].find_one({"_id": oid, "user_id": user_id})


def create_habit(db, user_id: str, fields: dict, now: datetime) -> dict:
    habit = Habit(user_id=user_id, created_at=now, **fields)
    doc = habit.model_dump()
    res = db["habit"].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def update_habit(db, user_id: str, habit_id: str, updates: dict) -> Optional[dict]:
    habit = find_habit(db, user_id, habit_id)
    if habit is None:
        return None
    if updates:
        # Re-validate the merged document so enum values and tags stay canonical.
        merged = Habit(**{k: v for k, v in {**habit, **updates}.items() if k != "_id"})
        changes = {k: v for k, v in merged.model_dump().items() if k in updates}
        db["habit"].update_one({"_id": habit["_id"]}, {"$set": changes})
    return db["habit"].find_one({"_id": habit["_id"]})


def delete_habit(db, user_id: str, habit_id: str) -> bool:
    oid = to_object_id(habit_id)
    if oid is None:
        return False
    res = db["habit"].delete_one({"_id": oid, "user_id": user_id})
    if res.deleted_count == 0:
        return False
    removed = db["completion"].delete_many({"habit_id": habit_id, "user_id": user_id})
    logger.info("Deleted habit %s and %d completion(s)", habit_id, removed.deleted_count)
    return True


def tracked_habit(doc: dict) -> TrackedHabit:
    return TrackedHabit(
        id=document_id(doc),
        name=doc.get("name", ""),
        description=doc.get("description"),
        frequency=Frequency(doc.get("frequency", Frequency.DAILY)),
        custom_days=frozenset(doc.get("custom_days", [])),
    )


# Completions

def list_completions(db, user_id: str, habit_id: str) -> List[date]:
    """Completion days of one habit, newest first."""
    cursor = db["completion"].find({"user_id": user_id, "habit_id": habit_id}).sort("date", DESCENDING)
    return [normalize(c["date"]) for c in cursor]


def list_completions_between(db, user_id: str, start: date, end: date) -> List[dict]:
    cursor = db["completion"].find({
        "user_id": user_id,
        "date": {"$gte": start.isoformat(), "$lte": end.isoformat()},
    })
    return [{"habit_id": c["habit_id"], "date": c["date"]} for c in cursor]


def toggle_completion(db, user_id: str, habit_id: str, day: date, now: datetime) -> bool:
    """Flip the completion of ``habit_id`` on ``day``; return the new state.

    Not safe to retry blindly: every call flips the state again.
    """
    key = {"user_id": user_id, "habit_id": habit_id, "date": day.isoformat()}
    res = db["completion"].delete_one(key)
    if res.deleted_count:
        logger.info("Completion removed for habit %s on %s", habit_id, key["date"])
        return False
    completion = Completion(created_at=now, **key)
    try:
        db["completion"].insert_one(completion.model_dump())
    except DuplicateKeyError:
        # A concurrent toggle inserted the same day first.
        logger.warning("Completion for habit %s on %s already exists", habit_id, key["date"])
    else:
        logger.info("Completion recorded for habit %s on %s", habit_id, key["date"])
    return True


def build_snapshot(db, user_id: str, habits: Optional[List[dict]] = None) -> Snapshot:
    """Load a user's habits and completion days into an analytics snapshot."""
    if habits is None:
        habits = list_habits(db, user_id)
    days: Dict[str, List[str]] = defaultdict(list)
    for c in db["completion"].find({"user_id": user_id}, {"habit_id": 1, "date": 1}):
        days[c["habit_id"]].append(c["date"])
    return Snapshot.build((tracked_habit(h) for h in habits), days)


# Logins

def track_login(db, user_id: str, day: date) -> bool:
    """Record a login for ``day``; return False if one already existed."""
    login = Login(user_id=user_id, date=day.isoformat())
    try:
        db["login"].insert_one(login.model_dump())
    except DuplicateKeyError:
        return False
    logger.info("Tracked login for user %s on %s", user_id, login.date)
    return True


def count_login_days(db, user_id: str) -> int:
    return db["login"].count_documents({"user_id": user_id})


def list_login_days(db, user_id: str) -> List[date]:
    return [normalize(doc["date"]) for doc in db["login"].find({"user_id": user_id})]


# Users

def delete_user_data(db, user_id: str) -> None:
    """Remove a user together with everything they own."""
    habits = db["habit"].delete_many({"user_id": user_id}).deleted_count
    completions = db["completion"].delete_many({"user_id": user_id}).deleted_count
    logins = db["login"].delete_many({"user_id": user_id}).deleted_count
    db["user"].delete_one({"_id": ObjectId(user_id)})
    logger.info(
        "Deleted user %s with %d habit(s), %d completion(s), %d login(s)",
        user_id, habits, completions, logins,
    )
