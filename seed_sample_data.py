import datetime
import random
from typing import Optional

from db import utc_now
from logging_utils import get_logger
from rest_api import RepTrackAPI

logger = get_logger(__name__)

DEV_PROVIDER = "dev"
DEV_PROVIDER_ID = "dev-user-1"

SAMPLE_ROUTINES = {
    "Morning Workout": ["Push-ups", "Squats", "Plank"],
    "Evening Stretch": ["Pull-ups", "Lunges"],
}
CUSTOM_EXERCISES = {"Evening Stretch": ["Stretching"]}


def _at(api: RepTrackAPI, day: datetime.date, hour: int, minute: int = 0):
    moment = datetime.datetime.combine(
        day, datetime.time(hour, minute), tzinfo=api.tz
    )
    return min(moment, utc_now())


def seed(
    db_path: Optional[str] = None,
    yaml_path: str = "settings.yaml",
    days: int = 14,
    rng: Optional[random.Random] = None,
) -> int:
    """Create the development user with two routines and recent sets.

    Returns the user id. A user that already owns routines is left alone.
    """
    rng = rng or random.Random()
    api = RepTrackAPI(db_path=db_path, yaml_path=yaml_path)
    email = api.settings.dev_user_email
    user = api.users.find_or_create_oauth_user(
        DEV_PROVIDER, DEV_PROVIDER_ID, email, "Test User"
    )
    uid = user["id"]
    if api.routines.fetch_all_routines(uid):
        print("Database already contains routines for", email)
        return uid

    exercise_ids: dict[str, list[int]] = {}
    for order, (routine, names) in enumerate(SAMPLE_ROUTINES.items()):
        rid = api.routines.create(uid, routine, order)
        ids = []
        for name in names:
            pid = api.catalog.find_by_name(name)
            if pid is None:
                logger.warning("Catalog exercise %s missing; skipping", name)
                continue
            ids.append(api.exercises.add(uid, rid, predefined_exercise_id=pid))
        for name in CUSTOM_EXERCISES.get(routine, []):
            ids.append(api.exercises.add(uid, rid, custom_name=name))
        exercise_ids[routine] = ids

    today = api.statistics.today()
    count = 0
    for days_ago in range(days):
        if days_ago and rng.random() < 0.3:
            continue
        day = today - datetime.timedelta(days=days_ago)
        for eid in exercise_ids["Morning Workout"]:
            for i in range(rng.randint(1, 3)):
                api.sets.add(uid, eid, rng.randint(10, 29), logged_at=_at(api, day, 8, i * 2))
                count += 1
        if rng.random() > 0.5:
            for eid in exercise_ids["Evening Stretch"]:
                api.sets.add(uid, eid, rng.randint(5, 19), logged_at=_at(api, day, 18))
                count += 1
    logger.info("Seeded %s sets for user %s", count, uid)
    print("Seed data inserted")
    return uid


if __name__ == "__main__":
    seed()
