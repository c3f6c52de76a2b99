"""
Database Schemas for the habit tracker

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name (e.g., Habit -> "habit").
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator

WEEKDAY_TAGS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    CUSTOM = "custom"


def check_weekday_tags(days: Optional[List[str]]) -> Optional[List[str]]:
    if days is None:
        return days
    unknown = [d for d in days if d not in WEEKDAY_TAGS]
    if unknown:
        raise ValueError(f"Unknown weekday tag(s): {', '.join(unknown)}")
    # Deduplicate, keep Monday-first order
    return [d for d in WEEKDAY_TAGS if d in days]


class User(BaseModel):
    email: EmailStr = Field(..., description="User email, stored lowercased")
    password_hash: str = Field(..., description="BCrypt password hash")
    name: str = Field(..., min_length=1, description="Display name")
    profile_picture: str = Field("", description="Base64 data URI or empty")
    created_at: datetime
    updated_at: datetime


class Habit(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str = Field(..., description="Owner user id (stringified ObjectId)")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    frequency: Frequency = Frequency.DAILY
    custom_days: List[str] = Field(default_factory=list, description="Weekday tags, e.g. ['Mon', 'Wed']")
    icon: str = Field("target.svg")
    created_at: datetime

    @field_validator("custom_days")
    @classmethod
    def validate_custom_days(cls, v):
        return check_weekday_tags(v)


class Completion(BaseModel):
    user_id: str = Field(..., description="Owner user id")
    habit_id: str = Field(..., description="Habit id (stringified ObjectId)")
    date: str = Field(..., pattern=DATE_PATTERN, description="UTC day, YYYY-MM-DD")
    created_at: datetime


class Login(BaseModel):
    user_id: str = Field(..., description="Owner user id")
    date: str = Field(..., pattern=DATE_PATTERN, description="UTC day, YYYY-MM-DD")
