import os

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "habit_tracker")

# Auth/JWT
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", "30"))
MIN_PASSWORD_LENGTH = 6
MAX_PROFILE_PICTURE_BYTES = 5 * 1024 * 1024

# Analytics
WEEKLY_RATE_POLICY = os.getenv("WEEKLY_RATE_POLICY", "all_days")
if WEEKLY_RATE_POLICY not in ("all_days", "scheduled_days"):
    raise RuntimeError(
        f"WEEKLY_RATE_POLICY must be 'all_days' or 'scheduled_days', got {WEEKLY_RATE_POLICY!r}"
    )

# Server
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
PORT = int(os.getenv("PORT", 8000))
