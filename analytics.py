"""
Habit analytics: streaks and weekly success over a snapshot of completions.

Everything here is pure. Callers fetch habits and completion days from
storage, build a ``Snapshot`` and pass the reference day in explicitly; no
function reads the clock or touches the database.

All day arithmetic happens on ``datetime.date`` values in UTC. Raw values
coming from clients or storage go through ``normalize`` once, at the snapshot
boundary; past that point anything that is not a plain ``date`` is rejected.
"""

import math
import types
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from schemas import Frequency, WEEKDAY_TAGS

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
STREAK_MILESTONES = (7, 30, 100)

_ONE_DAY = timedelta(days=1)


class AnalyticsError(ValueError):
    """Base class for malformed analytics input."""


class InvalidDateError(AnalyticsError):
    """A value could not be read as, or is not, a normalized calendar day."""


class SlotPolicy(str, Enum):
    """Which (habit, day) slots count as possible in the weekly success rate.

    ALL_DAYS counts every habit against all seven days regardless of its
    frequency. SCHEDULED_DAYS only counts the days a habit is scheduled for,
    so a weekend habit has two possible slots per week instead of seven.
    """

    ALL_DAYS = "all_days"
    SCHEDULED_DAYS = "scheduled_days"


def normalize(raw: Union[date, datetime, str, int, float]) -> date:
    """Truncate a raw date value to its UTC calendar day.

    Accepts ``date``, ``datetime`` (naive values are read as UTC), ISO-8601
    strings with or without a time part, and epoch timestamps in
    milliseconds. Raises ``InvalidDateError`` for anything else.
    """
    if isinstance(raw, bool):
        raise InvalidDateError(f"Unsupported date value: {raw!r}")
    if isinstance(raw, datetime):
        if raw.tzinfo is not None:
            raw = raw.astimezone(timezone.utc)
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and not math.isfinite(raw):
            raise InvalidDateError(f"Unsupported timestamp: {raw!r}")
        try:
            return datetime.fromtimestamp(raw / 1000, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidDateError(f"Timestamp out of range: {raw!r}") from exc
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise InvalidDateError("Empty date string")
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            if text[-1] in "Zz":
                text = text[:-1] + "+00:00"
            return normalize(datetime.fromisoformat(text))
        except ValueError as exc:
            raise InvalidDateError(f"Invalid date string: {raw!r}") from exc
    raise InvalidDateError(f"Unsupported date value: {raw!r}")


def require_day(value) -> date:
    """Return ``value`` if it is already a normalized day, raise otherwise."""
    if isinstance(value, datetime) or not isinstance(value, date):
        raise InvalidDateError(f"Expected a normalized calendar day, got {value!r}")
    return value


def day_gap(later: date, earlier: date) -> int:
    """Whole days from ``earlier`` to ``later`` (negative if reversed)."""
    return (require_day(later) - require_day(earlier)).days


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    day = require_day(day)
    return day - timedelta(days=day.weekday())


@dataclass(frozen=True)
class TrackedHabit:
    id: str
    name: str = ""
    description: Optional[str] = None
    frequency: Frequency = Frequency.DAILY
    custom_days: FrozenSet[str] = frozenset()

    def scheduled_on(self, day: date) -> bool:
        weekday = day.weekday()
        if self.frequency == Frequency.WEEKDAYS:
            return weekday < 5
        if self.frequency == Frequency.WEEKENDS:
            return weekday >= 5
        if self.frequency == Frequency.CUSTOM:
            return WEEKDAY_TAGS[weekday] in self.custom_days
        return True


@dataclass(frozen=True)
class Snapshot:
    """A user's habits and the days each one was completed.

    Construct through ``Snapshot.build`` when the dates are raw; direct
    construction expects already-normalized ``date`` values and rejects
    anything else.
    """

    habits: Tuple[TrackedHabit, ...] = ()
    completions: Mapping[str, FrozenSet[date]] = field(default_factory=dict)

    def __post_init__(self):
        # Own a read-only copy of the caller's mapping.
        owned = {habit_id: frozenset(days) for habit_id, days in self.completions.items()}
        for days in owned.values():
            for day in days:
                require_day(day)
        object.__setattr__(self, "completions", types.MappingProxyType(owned))

    @classmethod
    def build(cls, habits: Iterable[TrackedHabit], completions: Mapping[str, Iterable]) -> "Snapshot":
        habits = tuple(habits)
        normalized: Dict[str, FrozenSet[date]] = {}
        for habit in habits:
            normalized[habit.id] = frozenset(normalize(raw) for raw in completions.get(habit.id, ()))
        return cls(habits=habits, completions=normalized)

    def days_for(self, habit_id: str) -> FrozenSet[date]:
        return self.completions.get(habit_id, frozenset())

    def active_days(self) -> FrozenSet[date]:
        """Days on which at least one tracked habit was completed."""
        active = set()
        for habit in self.habits:
            active.update(self.days_for(habit.id))
        return frozenset(active)


@dataclass(frozen=True)
class WeeklySuccess:
    rate: int
    prior_week_rate: int
    delta: int
    best_weekday: str


def current_streak(snapshot: Snapshot, today: date) -> int:
    """Consecutive active days ending at ``today``; 0 if today is inactive."""
    day = require_day(today)
    active = snapshot.active_days()
    streak = 0
    while day in active:
        streak += 1
        if day == date.min:
            break
        day -= _ONE_DAY
    return streak


def longest_streak(snapshot: Snapshot) -> int:
    """Longest run of consecutive active days over the whole history."""
    return longest_run(snapshot.active_days())


def streak_from_days(days: Iterable[date], today: date) -> int:
    """``current_streak`` for a bare collection of days, e.g. login days."""
    return current_streak(Snapshot((TrackedHabit("days"),), {"days": frozenset(days)}), today)


def habit_streak(days: Iterable[date]) -> int:
    """Consecutive days ending at the most recent of ``days``.

    Unlike ``current_streak`` the run is anchored at the latest completion,
    not at today, so a habit last done a week ago still reports its run.
    """
    ordered = sorted({require_day(day) for day in days}, reverse=True)
    if not ordered:
        return 0
    streak = 1
    for newer, older in zip(ordered, ordered[1:]):
        if day_gap(newer, older) != 1:
            break
        streak += 1
    return streak


def longest_run(days: Iterable[date]) -> int:
    """Longest run of consecutive days in ``days``; order does not matter."""
    ordered = sorted(set(days))
    if not ordered:
        return 0
    longest = run = 1
    for previous, current in zip(ordered, ordered[1:]):
        if day_gap(current, previous) == 1:
            run += 1
            longest = max(longest, run)
        else:
            run = 1
    return longest


def _percent(completed: int, possible: int) -> int:
    # Half-up rounding of 100 * completed / possible, in integers.
    if possible == 0:
        return 0
    return (200 * completed + possible) // (2 * possible)


def _week_tally(snapshot: Snapshot, monday: Optional[date], policy: SlotPolicy) -> Tuple[List[int], List[int]]:
    # Days outside the representable calendar (or a missing week) have no slots.
    completed = [0] * 7
    possible = [0] * 7
    if monday is None:
        return completed, possible
    for offset in range(7):
        if day_gap(date.max, monday) < offset:
            break
        day = monday + timedelta(days=offset)
        for habit in snapshot.habits:
            if policy == SlotPolicy.SCHEDULED_DAYS and not habit.scheduled_on(day):
                continue
            possible[offset] += 1
            if day in snapshot.days_for(habit.id):
                completed[offset] += 1
    return completed, possible


def weekly_success_rate(
    snapshot: Snapshot,
    reference_date: date,
    policy: Union[SlotPolicy, str] = SlotPolicy.ALL_DAYS,
) -> WeeklySuccess:
    """Completion rate of the Monday-start week containing ``reference_date``.

    Also reports the prior week's rate, the difference between the two and
    the weekday with the highest completion ratio. Ties keep the earlier
    weekday; a week with no completions reports Monday. In the first week of
    the calendar the prior week does not exist and its rate is 0.
    """
    policy = SlotPolicy(policy)
    monday = week_start(reference_date)

    completed, possible = _week_tally(snapshot, monday, policy)
    prior_monday = monday - timedelta(days=7) if day_gap(monday, date.min) >= 7 else None
    prior_completed, prior_possible = _week_tally(snapshot, prior_monday, policy)

    rate = _percent(sum(completed), sum(possible))
    prior_rate = _percent(sum(prior_completed), sum(prior_possible))

    best_index = 0
    best_ratio = 0.0
    for index in range(7):
        ratio = completed[index] / possible[index] if possible[index] else 0.0
        if ratio > best_ratio:
            best_ratio = ratio
            best_index = index

    return WeeklySuccess(
        rate=rate,
        prior_week_rate=prior_rate,
        delta=rate - prior_rate,
        best_weekday=WEEKDAY_NAMES[best_index],
    )


def weekly_completion_counts(snapshot: Snapshot, reference_date: date) -> List[int]:
    """Habits completed on each day, Monday to Sunday, of the reference week."""
    completed, _ = _week_tally(snapshot, week_start(reference_date), SlotPolicy.ALL_DAYS)
    return completed


def todays_checkins(snapshot: Snapshot, today: date) -> Tuple[int, int]:
    """(habits completed today, habits tracked)."""
    today = require_day(today)
    done = sum(1 for habit in snapshot.habits if today in snapshot.days_for(habit.id))
    return done, len(snapshot.habits)


def weekly_totals_since(snapshot: Snapshot, registered_on: date, today: date) -> List[int]:
    """Completion counts per 7-day window, counted from the registration day.

    The window containing ``today`` is the last bucket. Completions before
    registration or after today are ignored.
    """
    span = day_gap(today, registered_on)
    if span < 0:
        return []
    totals = [0] * (span // 7 + 1)
    for habit in snapshot.habits:
        for day in snapshot.days_for(habit.id):
            offset = day_gap(day, registered_on)
            if 0 <= offset <= span:
                totals[offset // 7] += 1
    return totals


def reached_milestones(streak: int) -> List[int]:
    return [milestone for milestone in STREAK_MILESTONES if streak >= milestone]
