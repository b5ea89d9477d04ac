from __future__ import annotations
from calendar import monthrange
import datetime
import math
from typing import Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from db import SetRepository, format_timestamp, parse_timestamp, utc_now

GRANULARITIES = ("day", "week", "month")
DEFAULT_LOOKBACK_DAYS = {"day": 30, "week": 12 * 7}
MAX_INTENSITY = 4
MAX_LOOKBACK_DAYS = 36500


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def intensity(day_reps: int, max_day_reps: int) -> int:
    """Scale ``day_reps`` to the 0-4 heatmap range.

    ``max_day_reps`` is floored at 1. Integer arithmetic keeps exact
    multiples from rounding up.
    """
    max_day_reps = max(max_day_reps, 1)
    return -(-day_reps * MAX_INTENSITY // max_day_reps)


def period_key(day: datetime.date, granularity: str) -> str:
    """Return the trend bucket for ``day``.

    Keys sort lexicographically in chronological order: ``YYYY-MM-DD``,
    ``YYYY-Www`` (ISO year and week) or ``YYYY-MM``.
    """
    if granularity == "day":
        return day.isoformat()
    if granularity == "week":
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if granularity == "month":
        return f"{day.year}-{day.month:02d}"
    raise ValueError("granularity must be one of: day, week, month")


def _year_earlier(day: datetime.date) -> datetime.date:
    try:
        return day.replace(year=day.year - 1)
    except ValueError:
        # Feb 29
        return day.replace(year=day.year - 1, day=28)


def _breakdown(rows: Iterable[tuple]) -> tuple[list[dict], list[dict]]:
    """Return ``(exercises, routines)`` summaries for ``rows``."""
    exercises: Dict[str, dict] = {}
    routines: Dict[int, dict] = {}
    for _sid, _eid, reps, _note, _ts, routine_id, routine_name, name, group in rows:
        item = exercises.setdefault(
            name, {"name": name, "muscleGroup": group, "sets": 0, "reps": 0}
        )
        item["sets"] += 1
        item["reps"] += int(reps)

        routine = routines.setdefault(
            routine_id,
            {
                "id": routine_id,
                "name": routine_name,
                "exercises": {},
                "totalSets": 0,
                "totalReps": 0,
            },
        )
        entry = routine["exercises"].setdefault(
            name, {"name": name, "muscleGroup": group, "sets": 0, "reps": 0}
        )
        entry["sets"] += 1
        entry["reps"] += int(reps)
        routine["totalSets"] += 1
        routine["totalReps"] += int(reps)
    routine_list = [
        {**r, "exercises": list(r["exercises"].values())} for r in routines.values()
    ]
    return list(exercises.values()), routine_list


class StatisticsService:
    """Aggregate logged sets into daily, calendar and trend statistics.

    Sets are bucketed by the local calendar date of their timestamp in
    ``timezone``. ``clock`` returns the current aware datetime and exists
    so callers can pin "today".
    """

    def __init__(
        self,
        set_repo: SetRepository,
        timezone: str = "UTC",
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.sets = set_repo
        self.tz = ZoneInfo(timezone)
        self.clock = clock or utc_now

    def today(self) -> datetime.date:
        return self.clock().astimezone(self.tz).date()

    def _midnight(self, day: datetime.date) -> str:
        start = datetime.datetime.combine(day, datetime.time(), tzinfo=self.tz)
        return format_timestamp(start)

    def _local_date(self, ts: str) -> datetime.date:
        return parse_timestamp(ts).astimezone(self.tz).date()

    def general(
        self, user_id: int, target_date: Optional[datetime.date] = None
    ) -> dict:
        """Summarize one day and compare it with the day before and the past week."""
        day = target_date or self.today()
        try:
            start = self._midnight(day)
            end = self._midnight(day + datetime.timedelta(days=1))
            yesterday = self._midnight(day - datetime.timedelta(days=1))
            week_ago = self._midnight(day - datetime.timedelta(days=7))
        except OverflowError:
            raise ValueError("date out of range")
        rows = self.sets.fetch_history(user_id, start, end)

        exercises, routines = _breakdown(rows)
        total_reps = sum(int(r[2]) for r in rows)

        y_sets, y_reps = self.sets.totals(user_id, yesterday, start)
        w_sets, w_reps = self.sets.totals(user_id, week_ago, start)
        return {
            "date": day.isoformat(),
            "today": {
                "totalSets": len(rows),
                "totalReps": total_reps,
                "exercises": exercises,
                "routines": routines,
            },
            "comparison": {
                "yesterday": {"totalSets": y_sets, "totalReps": y_reps},
                "weeklyAverage": {
                    "totalSets": round_half_up(w_sets / 7, 1),
                    "totalReps": round_half_up(w_reps / 7, 1),
                },
            },
        }

    def calendar(
        self,
        user_id: int,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> dict:
        """Return one entry per day of the month with a 0-4 intensity level."""
        today = self.today()
        year = year or today.year
        month = month or today.month
        if not 1 <= month <= 12:
            raise ValueError("month must be between 1 and 12")
        if not datetime.MINYEAR < year < datetime.MAXYEAR:
            raise ValueError("year out of range")

        first = datetime.date(year, month, 1)
        days_in_month = monthrange(year, month)[1]
        after = first + datetime.timedelta(days=days_in_month)
        rows = self.sets.fetch_history(
            user_id, self._midnight(first), self._midnight(after)
        )

        by_day: Dict[int, list] = {}
        for row in rows:
            by_day.setdefault(self._local_date(row[4]).day, []).append(row)

        day_reps = {d: sum(int(r[2]) for r in items) for d, items in by_day.items()}
        max_day_reps = max(day_reps.values(), default=0)

        days: List[dict] = []
        for day_num in range(1, days_in_month + 1):
            date = datetime.date(year, month, day_num)
            items = by_day.get(day_num, [])
            reps = day_reps.get(day_num, 0)
            _exercises, routines = _breakdown(items)
            days.append(
                {
                    "date": date.isoformat(),
                    "day": day_num,
                    "dayOfWeek": (date.weekday() + 1) % 7,
                    "sets": len(items),
                    "reps": reps,
                    "intensity": intensity(reps, max_day_reps) if items else 0,
                    "routines": routines,
                }
            )

        total_reps = sum(day_reps.values())
        active_days = len(by_day)
        return {
            "year": year,
            "month": month,
            "days": days,
            "summary": {
                "totalSets": len(rows),
                "totalReps": total_reps,
                "activeDays": active_days,
                "averageRepsPerDay": (
                    int(round_half_up(total_reps / active_days)) if active_days else 0
                ),
            },
        }

    def trends(
        self,
        user_id: int,
        granularity: str = "day",
        days: Optional[int] = None,
        exercise_ids: Optional[List[int]] = None,
        routine_id: Optional[int] = None,
    ) -> dict:
        """Return rep totals per period plus a per-exercise breakdown.

        Periods without sets are omitted.
        """
        if granularity not in GRANULARITIES:
            raise ValueError("granularity must be one of: day, week, month")
        if days is not None and not 0 < days <= MAX_LOOKBACK_DAYS:
            raise ValueError(f"days must be between 1 and {MAX_LOOKBACK_DAYS}")

        today = self.today()
        try:
            if days is not None:
                start_day = today - datetime.timedelta(days=days)
            elif granularity == "month":
                start_day = _year_earlier(today)
            else:
                start_day = today - datetime.timedelta(
                    days=DEFAULT_LOOKBACK_DAYS[granularity]
                )
            since = self._midnight(start_day)
        except OverflowError:
            raise ValueError("days reaches before the earliest supported date")

        rows = self.sets.fetch_history(
            user_id,
            since,
            exercise_ids=exercise_ids or None,
            routine_id=routine_id,
        )

        totals: Dict[str, int] = {}
        by_exercise: Dict[int, Dict[str, int]] = {}
        names: Dict[int, str] = {}
        for _sid, exercise_id, reps, _note, ts, _rid, _rname, name, _group in rows:
            key = period_key(self._local_date(ts), granularity)
            totals[key] = totals.get(key, 0) + int(reps)
            periods = by_exercise.setdefault(exercise_id, {})
            periods[key] = periods.get(key, 0) + int(reps)
            names[exercise_id] = name

        timeline = sorted(totals)
        return {
            "granularity": granularity,
            "startDate": start_day.isoformat(),
            "endDate": today.isoformat(),
            "timeline": [{"period": p, "totalReps": totals[p]} for p in timeline],
            "exercises": [
                {
                    "id": eid,
                    "name": names[eid],
                    "data": [
                        {"period": p, "reps": by_exercise[eid].get(p, 0)}
                        for p in timeline
                    ],
                }
                for eid in names
            ],
        }
