import logging

from pymongo import ASCENDING, MongoClient

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger(__name__)

client = MongoClient(DATABASE_URL)
db = client[DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the active database handle."""
    return db


def ensure_indexes(database) -> None:
    """Create the unique indexes the toggle and login tracking rely on."""
    database["user"].create_index("email", unique=True)
    database["habit"].create_index([("user_id", ASCENDING)])
    database["completion"].create_index(
        [("user_id", ASCENDING), ("habit_id", ASCENDING), ("date", ASCENDING)],
        unique=True,
    )
    database["login"].create_index(
        [("user_id", ASCENDING), ("date", ASCENDING)],
        unique=True,
    )
    logger.info("Indexes ensured on database %s", getattr(database, "name", "?"))
