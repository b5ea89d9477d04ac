import datetime
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import ExerciseRepository, RoutineRepository, SetRepository, UserRepository
from stats_service import StatisticsService, intensity, period_key, round_half_up

UTC = datetime.timezone.utc


def at(day: str, hour: int = 12) -> datetime.datetime:
    return datetime.datetime.combine(
        datetime.date.fromisoformat(day), datetime.time(hour), tzinfo=UTC
    )


class Env:
    def __init__(self, db_path: str) -> None:
        self.users = UserRepository(db_path)
        self.routines = RoutineRepository(db_path)
        self.exercises = ExerciseRepository(db_path)
        self.sets = SetRepository(db_path)
        self.uid = self.users.create("a@example.com", "A", "dev", "a")
        self.push = self.routines.create(self.uid, "Push")
        self.legs = self.routines.create(self.uid, "Legs")
        self.dips = self.exercises.add(self.uid, self.push, custom_name="Dips")
        self.squats = self.exercises.add(self.uid, self.legs, custom_name="Squats")

    def service(self, now: str = "2024-03-15", timezone: str = "UTC"):
        moment = at(now)
        return StatisticsService(self.sets, timezone, clock=lambda: moment)

    def log(self, exercise_id: int, reps: int, when: datetime.datetime) -> int:
        return self.sets.add(self.uid, exercise_id, reps, logged_at=when)


@pytest.fixture
def env(tmp_path):
    return Env(str(tmp_path / "stats.db"))


def test_intensity_scale():
    assert intensity(10, 15) == 3
    assert intensity(15, 15) == 4
    assert intensity(1, 100) == 1
    assert intensity(0, 0) == 0
    assert intensity(30, 40) == 3


def test_period_keys():
    assert period_key(datetime.date(2024, 3, 5), "day") == "2024-03-05"
    assert period_key(datetime.date(2024, 3, 5), "month") == "2024-03"
    assert period_key(datetime.date(2024, 12, 30), "week") == "2025-W01"
    assert period_key(datetime.date(2021, 1, 3), "week") == "2020-W53"
    with pytest.raises(ValueError):
        period_key(datetime.date(2024, 1, 1), "year")


def test_round_half_up():
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(4 / 7, 1) == 0.6
    assert round_half_up(2.25, 1) == 2.3


def test_calendar_intensity_example(env):
    env.log(env.dips, 10, at("2024-03-03"))
    env.log(env.squats, 15, at("2024-03-05"))
    data = env.service().calendar(env.uid, 2024, 3)

    assert (data["year"], data["month"]) == (2024, 3)
    assert len(data["days"]) == 31
    by_day = {d["day"]: d for d in data["days"]}
    assert by_day[3]["intensity"] == 3
    assert by_day[5]["intensity"] == 4
    assert by_day[4]["intensity"] == 0
    assert by_day[1]["dayOfWeek"] == 5
    assert by_day[3]["dayOfWeek"] == 0
    assert by_day[5]["routines"][0]["name"] == "Legs"
    assert data["summary"] == {
        "totalSets": 2,
        "totalReps": 25,
        "activeDays": 2,
        "averageRepsPerDay": 13,
    }


def test_calendar_empty_month(env):
    data = env.service().calendar(env.uid, 2024, 2)
    assert len(data["days"]) == 29
    assert all(d["sets"] == 0 and d["intensity"] == 0 for d in data["days"])
    assert data["summary"]["averageRepsPerDay"] == 0
    assert data["summary"]["activeDays"] == 0


def test_calendar_defaults_and_validation(env):
    data = env.service("2023-11-20").calendar(env.uid)
    assert (data["year"], data["month"]) == (2023, 11)
    assert len(data["days"]) == 30
    with pytest.raises(ValueError):
        env.service().calendar(env.uid, 2024, 13)


def test_general_totals_and_comparison(env):
    env.log(env.dips, 10, at("2024-03-10", 8))
    env.log(env.squats, 5, at("2024-03-10", 18))
    env.log(env.dips, 7, at("2024-03-09"))
    env.log(env.dips, 14, at("2024-03-04"))
    env.log(env.squats, 7, at("2024-03-03", 0))
    env.log(env.squats, 100, at("2024-03-02"))

    data = env.service().general(env.uid, datetime.date(2024, 3, 10))
    today = data["today"]
    assert data["date"] == "2024-03-10"
    assert today["totalSets"] == 2
    assert today["totalReps"] == 15
    assert sum(e["reps"] for e in today["exercises"]) == today["totalReps"]
    assert sum(r["totalSets"] for r in today["routines"]) == today["totalSets"]
    assert data["comparison"]["yesterday"] == {"totalSets": 1, "totalReps": 7}
    assert data["comparison"]["weeklyAverage"] == {"totalSets": 0.4, "totalReps": 4.0}


def test_general_defaults_to_today(env):
    env.log(env.dips, 9, at("2024-03-15", 6))
    data = env.service().general(env.uid)
    assert data["date"] == "2024-03-15"
    assert data["today"]["exercises"] == [
        {"name": "Dips", "muscleGroup": "Custom", "sets": 1, "reps": 9}
    ]


def test_timezone_bucketing(env):
    # 03:00 UTC on the 10th is the evening of the 9th in New York
    env.log(env.dips, 12, at("2024-03-10", 3))
    service = env.service(timezone="America/New_York")
    assert service.general(env.uid, datetime.date(2024, 3, 9))["today"]["totalReps"] == 12
    assert service.general(env.uid, datetime.date(2024, 3, 10))["today"]["totalReps"] == 0
    days = service.calendar(env.uid, 2024, 3)["days"]
    assert days[8]["reps"] == 12
    timeline = service.trends(env.uid)["timeline"]
    assert timeline == [{"period": "2024-03-09", "totalReps": 12}]


def test_trends_daily(env):
    env.log(env.dips, 10, at("2024-03-01"))
    env.log(env.squats, 20, at("2024-03-01"))
    env.log(env.dips, 5, at("2024-03-12"))
    env.log(env.dips, 99, at("2024-02-01"))

    data = env.service().trends(env.uid)
    assert data["startDate"] == "2024-02-14"
    assert data["endDate"] == "2024-03-15"
    periods = [p["period"] for p in data["timeline"]]
    assert periods == sorted(periods) == ["2024-03-01", "2024-03-12"]
    for point in data["timeline"]:
        summed = sum(
            d["reps"]
            for ex in data["exercises"]
            for d in ex["data"]
            if d["period"] == point["period"]
        )
        assert summed == point["totalReps"]
    squats = next(ex for ex in data["exercises"] if ex["name"] == "Squats")
    assert squats["data"] == [
        {"period": "2024-03-01", "reps": 20},
        {"period": "2024-03-12", "reps": 0},
    ]

    wide = env.service().trends(env.uid, days=60)
    assert wide["timeline"][0] == {"period": "2024-02-01", "totalReps": 99}


def test_trends_weekly_iso_keys(env):
    env.log(env.dips, 4, at("2024-12-29"))
    env.log(env.dips, 6, at("2024-12-30"))
    env.log(env.squats, 8, at("2025-01-05"))
    data = env.service("2025-01-10").trends(env.uid, "week")
    assert data["timeline"] == [
        {"period": "2024-W52", "totalReps": 4},
        {"period": "2025-W01", "totalReps": 14},
    ]


def test_trends_monthly_and_filters(env):
    env.log(env.dips, 3, at("2023-03-10"))
    env.log(env.dips, 4, at("2023-06-10"))
    env.log(env.squats, 6, at("2024-01-10"))
    service = env.service()

    data = service.trends(env.uid, "month")
    assert data["startDate"] == "2023-03-15"
    assert [p["period"] for p in data["timeline"]] == ["2023-06", "2024-01"]

    only_dips = service.trends(env.uid, "month", exercise_ids=[env.dips])
    assert [ex["name"] for ex in only_dips["exercises"]] == ["Dips"]
    legs = service.trends(env.uid, "month", routine_id=env.legs)
    assert legs["timeline"] == [{"period": "2024-01", "totalReps": 6}]


def test_trends_validation(env):
    service = env.service()
    with pytest.raises(ValueError):
        service.trends(env.uid, "year")
    with pytest.raises(ValueError):
        service.trends(env.uid, days=0)
    with pytest.raises(ValueError):
        service.trends(env.uid, days=1000000)
    assert service.trends(env.uid, days=36500)["startDate"] == "1924-04-09"
    with pytest.raises(ValueError):
        env.service(now="0050-01-01").trends(env.uid, days=36500)


def test_general_rejects_dates_at_calendar_limits(env):
    service = env.service()
    with pytest.raises(ValueError):
        service.general(env.uid, datetime.date(1, 1, 1))
    with pytest.raises(ValueError):
        service.general(env.uid, datetime.date(9999, 12, 31))


def test_stats_are_scoped_to_user(env):
    env.log(env.dips, 10, at("2024-03-10"))
    other = env.users.create("b@example.com", "B", "dev", "b")
    service = env.service()
    assert service.general(other, datetime.date(2024, 3, 10))["today"]["totalSets"] == 0
    assert service.trends(other)["timeline"] == []
