import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Query, Request, status, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError, PyMongoError

import store
from analytics import (
    AnalyticsError,
    SlotPolicy,
    current_streak,
    habit_streak,
    longest_run,
    longest_streak,
    normalize,
    reached_milestones,
    streak_from_days,
    todays_checkins,
    weekly_completion_counts,
    weekly_success_rate,
    weekly_totals_since,
)
from config import (
    ACCESS_TOKEN_EXPIRE_DAYS,
    ALGORITHM,
    APP_VERSION,
    LOG_LEVEL,
    MAX_PROFILE_PICTURE_BYTES,
    MIN_PASSWORD_LENGTH,
    PORT,
    SECRET_KEY,
    WEEKLY_RATE_POLICY,
)
from database import db, ensure_indexes, get_db
from schemas import DATE_PATTERN, Frequency, User, check_weekday_tags

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(db)
    yield


# App setup
app = FastAPI(title="Habit Tracker API", version=APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Request/response models
class TokenOut(BaseModel):
    token: str

class UserOut(BaseModel):
    id: str
    email: EmailStr
    name: str
    profile_picture: str = ""
    created_at: Optional[datetime] = None

class CredentialsIn(BaseModel):
    email: EmailStr
    password: str

class RegisterIn(CredentialsIn):
    name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)

class ProfileUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

class ProfilePictureIn(BaseModel):
    profile_picture: str

class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)

class HabitIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    frequency: Frequency = Frequency.DAILY
    custom_days: List[str] = Field(default_factory=list)
    icon: str = Field("target.svg")

    @field_validator("custom_days")
    @classmethod
    def validate_custom_days(cls, v):
        return check_weekday_tags(v)

class HabitUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    frequency: Optional[Frequency] = None
    custom_days: Optional[List[str]] = None
    icon: Optional[str] = None

    @field_validator("custom_days")
    @classmethod
    def validate_custom_days(cls, v):
        return check_weekday_tags(v)

class HabitOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    frequency: Frequency
    custom_days: List[str]
    icon: str

class CompletionToggle(BaseModel):
    habit_id: str
    date: Optional[str] = Field(None, pattern=DATE_PATTERN)  # defaults to today (UTC)

class CompletionOut(BaseModel):
    habit_id: str
    date: str

class ToggleOut(BaseModel):
    status: str
    completed: bool
    date: str

class HabitStreakOut(BaseModel):
    habit_id: str
    streak: int

class LoginTrackOut(BaseModel):
    already_logged: bool
    date: str

class LoginCountOut(BaseModel):
    total_login_days: int

class LoginStatsOut(LoginCountOut):
    current_streak: int
    longest_streak: int

class ProgressOut(BaseModel):
    date: str
    total_login_days: int
    current_streak: int
    longest_streak: int
    success_rate: int
    prior_week_rate: int
    week_comparison: int
    best_day: str
    milestones: List[int]
    policy: SlotPolicy

class DashboardOut(BaseModel):
    date: str
    total_habits: int
    completed_today: int
    current_streak: int
    longest_streak: int
    total_login_days: int
    week_counts: List[int]

class HistoryOut(BaseModel):
    labels: List[str]
    totals: List[int]


# Utilities
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def get_now() -> datetime:
    """Clock dependency; overridden in tests to pin "today"."""
    return datetime.now(timezone.utc)


def get_slot_policy() -> SlotPolicy:
    return SlotPolicy(WEEKLY_RATE_POLICY)


def resolve_day(value: Optional[str], now: datetime) -> date:
    return normalize(now) if value is None else normalize(value)


def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        logger.warning("Rejected invalid or expired token")
        raise HTTPException(status_code=401, detail="Invalid token")
    oid = store.to_object_id(user_id)
    user = db["user"].find_one({"_id": oid}) if oid is not None else None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def user_out(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "name": user.get("name", ""),
        "profile_picture": user.get("profile_picture", ""),
        "created_at": user.get("created_at"),
    }


def habit_out(h: dict) -> dict:
    return {
        "id": str(h["_id"]),
        "name": h["name"],
        "description": h.get("description"),
        "frequency": h.get("frequency", Frequency.DAILY),
        "custom_days": h.get("custom_days", []),
        "icon": h.get("icon", "target.svg"),
    }


def require_habit(db, user_id: str, habit_id: str) -> dict:
    h = store.find_habit(db, user_id, habit_id)
    if not h:
        raise HTTPException(status_code=404, detail="Habit not found")
    return h


@app.get("/")
def read_root():
    return {"message": "Habit Tracker API is running"}

@app.get("/api/version")
def version():
    return {"version": APP_VERSION}


# Auth endpoints
@app.post("/api/auth/register", response_model=TokenOut)
def register(body: RegisterIn, db=Depends(get_db), now: datetime = Depends(get_now)):
    email = body.email.lower()
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Please provide a valid name")
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_doc = User(
        email=email,
        password_hash=get_password_hash(body.password),
        name=name,
        created_at=now,
        updated_at=now,
    ).model_dump()
    try:
        res = db["user"].insert_one(user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user %s", res.inserted_id)
    token = create_access_token({"sub": str(res.inserted_id), "email": email})
    return {"token": token}

@app.post("/api/auth/login", response_model=TokenOut)
def login(body: CredentialsIn, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email.lower()})
    if not user or not verify_password(body.password, user.get("password_hash", "")):
        logger.warning("Failed login attempt")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(user["_id"]), "email": user["email"]})
    return {"token": token}

@app.get("/api/auth/profile", response_model=UserOut)
def get_profile(user=Depends(get_current_user)):
    return user_out(user)

@app.put("/api/auth/profile", response_model=UserOut)
def update_profile(
    body: ProfileUpdate,
    user=Depends(get_current_user),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
):
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Please provide a valid name")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"name": name, "updated_at": now}},
    )
    return user_out(db["user"].find_one({"_id": user["_id"]}))

@app.put("/api/auth/profile-picture", response_model=UserOut)
def update_profile_picture(
    body: ProfilePictureIn,
    user=Depends(get_current_user),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
):
    picture = body.profile_picture
    if not picture.startswith("data:image/"):
        raise HTTPException(status_code=400, detail="Invalid image format")
    if len(picture) * 3 / 4 > MAX_PROFILE_PICTURE_BYTES:
        raise HTTPException(status_code=400, detail="Image size must be less than 5MB")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"profile_picture": picture, "updated_at": now}},
    )
    return user_out(db["user"].find_one({"_id": user["_id"]}))

@app.put("/api/auth/change-password")
def change_password(
    body: PasswordChange,
    user=Depends(get_current_user),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
):
    if not verify_password(body.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(body.new_password), "updated_at": now}},
    )
    logger.info("Password changed for user %s", user["_id"])
    return {"message": "Password updated successfully"}

@app.delete("/api/auth/account")
def delete_account(user=Depends(get_current_user), db=Depends(get_db)):
    store.delete_user_data(db, str(user["_id"]))
    return {"message": "Account deleted successfully"}

@app.post("/api/auth/logout")
def logout(user=Depends(get_current_user)):
    # Tokens are stateless; the client drops its copy.
    logger.info("User %s logged out", user["_id"])
    return {"message": "Logged out successfully"}


# Habits CRUD
@app.get("/api/habits", response_model=List[HabitOut])
def get_habits(user=Depends(get_current_user), db=Depends(get_db)):
    return [habit_out(h) for h in store.list_habits(db, str(user["_id"]))]

@app.post("/api/habits", response_model=HabitOut, status_code=status.HTTP_201_CREATED)
def create_habit(
    body: HabitIn,
    user=Depends(get_current_user),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
):
    doc = store.create_habit(db, str(user["_id"]), body.model_dump(), now)
    return habit_out(doc)

@app.put("/api/habits/{habit_id}", response_model=HabitOut)
def update_habit(habit_id: str, body: HabitUpdate, user=Depends(get_current_user), db=Depends(get_db)):
    # Explicit nulls only clear the description; other fields keep their value.
    updates = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k == "description"
    }
    h = store.update_habit(db, str(user["_id"]), habit_id, updates)
    if not h:
        raise HTTPException(status_code=404, detail="Habit not found")
    return habit_out(h)

@app.delete("/api/habits/{habit_id}")
def delete_habit(habit_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    if not store.delete_habit(db, str(user["_id"]), habit_id):
        raise HTTPException(status_code=404, detail="Habit not found")
    return {"ok": True}


# Completions
@app.get("/api/completions", response_model=List[CompletionOut])
def get_completions(start: str, end: str, user=Depends(get_current_user), db=Depends(get_db)):
    start_day, end_day = normalize(start), normalize(end)
    if start_day > end_day:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return store.list_completions_between(db, str(user["_id"]), start_day, end_day)

@app.post("/api/completions", response_model=ToggleOut)
def toggle_completion(
    body: CompletionToggle,
    user=Depends(get_current_user),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
):
    user_id = str(user["_id"])
    require_habit(db, user_id, body.habit_id)
    day = resolve_day(body.date, now)
    completed = store.toggle_completion(db, user_id, body.habit_id, day, now)
    return {"status": "added" if completed else "removed", "completed": completed, "date": day.isoformat()}

@app.get("/api/completions/{habit_id}", response_model=List[CompletionOut])
def get_habit_completions(habit_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    require_habit(db, user_id, habit_id)
    days = store.list_completions(db, user_id, habit_id)
    return [{"habit_id": habit_id, "date": d.isoformat()} for d in days]

@app.get("/api/completions/{habit_id}/streak", response_model=HabitStreakOut)
def get_habit_streak(habit_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    user_id = str(user["_id"])
    require_habit(db, user_id, habit_id)
    return {"habit_id": habit_id, "streak": habit_streak(store.list_completions(db, user_id, habit_id))}


# Login tracking
@app.post("/api/logins/track", response_model=LoginTrackOut)
def track_login(user=Depends(get_current_user), db=Depends(get_db), now: datetime = Depends(get_now)):
    today = normalize(now)
    created = store.track_login(db, str(user["_id"]), today)
    return {"already_logged": not created, "date": today.isoformat()}

@app.get("/api/logins/count", response_model=LoginCountOut)
def login_count(user=Depends(get_current_user), db=Depends(get_db)):
    return {"total_login_days": store.count_login_days(db, str(user["_id"]))}

@app.get("/api/logins/stats", response_model=LoginStatsOut)
def login_stats(user=Depends(get_current_user), db=Depends(get_db), now: datetime = Depends(get_now)):
    days = store.list_login_days(db, str(user["_id"]))
    return {
        "total_login_days": len(days),
        "current_streak": streak_from_days(days, normalize(now)),
        "longest_streak": longest_run(days),
    }


# Stats
@app.get("/api/stats/progress", response_model=ProgressOut)
def progress_stats(
    reference_date: Optional[str] = Query(None, alias="date", description="Reference day, YYYY-MM-DD; defaults to today"),
    policy: Optional[SlotPolicy] = Query(None),
    user=Depends(get_current_user),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
    default_policy: SlotPolicy = Depends(get_slot_policy),
):
    user_id = str(user["_id"])
    day = resolve_day(reference_date, now)
    policy = policy or default_policy
    snapshot = store.build_snapshot(db, user_id)
    weekly = weekly_success_rate(snapshot, day, policy)
    streak = current_streak(snapshot, day)
    return {
        "date": day.isoformat(),
        "total_login_days": store.count_login_days(db, user_id),
        "current_streak": streak,
        "longest_streak": longest_streak(snapshot),
        "success_rate": weekly.rate,
        "prior_week_rate": weekly.prior_week_rate,
        "week_comparison": weekly.delta,
        "best_day": weekly.best_weekday,
        "milestones": reached_milestones(streak),
        "policy": policy,
    }

@app.get("/api/stats/dashboard", response_model=DashboardOut)
def dashboard_stats(user=Depends(get_current_user), db=Depends(get_db), now: datetime = Depends(get_now)):
    user_id = str(user["_id"])
    today = normalize(now)
    snapshot = store.build_snapshot(db, user_id)
    done, total = todays_checkins(snapshot, today)
    return {
        "date": today.isoformat(),
        "total_habits": total,
        "completed_today": done,
        "current_streak": current_streak(snapshot, today),
        "longest_streak": longest_streak(snapshot),
        "total_login_days": store.count_login_days(db, user_id),
        "week_counts": weekly_completion_counts(snapshot, today),
    }

@app.get("/api/stats/history", response_model=HistoryOut)
def history_stats(user=Depends(get_current_user), db=Depends(get_db), now: datetime = Depends(get_now)):
    snapshot = store.build_snapshot(db, str(user["_id"]))
    registered_on = normalize(user.get("created_at") or now)
    totals = weekly_totals_since(snapshot, registered_on, normalize(now))
    return {"labels": [f"W{i + 1}" for i in range(len(totals))], "totals": totals}


# Health/test
@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_name": getattr(db, "name", None),
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "Connected"
    except PyMongoError as e:
        logger.error("Database check failed: %s", e)
        response["database"] = f"Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
