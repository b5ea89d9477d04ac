import sqlite3
import aiosqlite
import csv
import os
import sys
import io
import datetime
import json
from contextlib import contextmanager, asynccontextmanager
from typing import List, Tuple, Optional, Iterable

from logging_utils import get_logger

logger = get_logger(__name__)


class NotFoundError(LookupError):
    """Raised when a row is missing or owned by another user."""


def format_timestamp(value: datetime.datetime) -> str:
    """Return ``value`` as the UTC ISO string stored in the database.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    value = value.astimezone(datetime.timezone.utc).replace(microsecond=0)
    return value.isoformat(timespec="seconds")


def parse_timestamp(ts: str) -> datetime.datetime:
    """Return a stored timestamp as timezone-aware datetime in UTC."""
    dt = datetime.datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


CLOCK_SKEW = datetime.timedelta(minutes=1)


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


MAX_REPS = 2**63 - 1
CATALOG_FILE = "predefined_exercises.csv"


def catalog_path() -> Optional[str]:
    """Locate the catalog CSV beside this module or under ``sys.prefix``.

    Non-editable installs place data files under the prefix, not next to
    the module.
    """
    for base in (os.path.dirname(os.path.abspath(__file__)), sys.prefix):
        path = os.path.join(base, CATALOG_FILE)
        if os.path.exists(path):
            return path
    return None


def validate_reps(reps) -> int:
    if isinstance(reps, bool) or not isinstance(reps, int) or reps < 0:
        raise ValueError("reps must be a non-negative number")
    if reps > MAX_REPS:
        raise ValueError("reps is too large")
    return reps


def validate_logged_at(logged_at: Optional[datetime.datetime]) -> str:
    if logged_at is None:
        return format_timestamp(utc_now())
    try:
        stamp = format_timestamp(logged_at)
    except OverflowError:
        raise ValueError("loggedAt is out of range")
    if stamp > format_timestamp(utc_now() + CLOCK_SKEW):
        raise ValueError("loggedAt cannot be in the future")
    return stamp


def clean_text(value: Optional[str]) -> Optional[str]:
    """Strip ``value`` and map blank strings to ``None``."""
    if value is None:
        return None
    value = value.strip()
    return value or None


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "users": (
            """CREATE TABLE users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    avatar_url TEXT,
                    provider TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user',
                    created_at TEXT NOT NULL,
                    UNIQUE (provider, provider_id)
                );""",
            [
                "id",
                "email",
                "name",
                "avatar_url",
                "provider",
                "provider_id",
                "role",
                "created_at",
            ],
        ),
        "muscle_groups": (
            """CREATE TABLE muscle_groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE
                );""",
            ["id", "name"],
        ),
        "predefined_exercises": (
            """CREATE TABLE predefined_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    muscle_group_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    UNIQUE (muscle_group_id, name),
                    FOREIGN KEY(muscle_group_id) REFERENCES muscle_groups(id) ON DELETE CASCADE
                );""",
            ["id", "muscle_group_id", "name"],
        ),
        "routines": (
            """CREATE TABLE routines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    display_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                );""",
            ["id", "user_id", "name", "display_order", "created_at"],
        ),
        "exercises": (
            """CREATE TABLE exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    routine_id INTEGER NOT NULL,
                    predefined_exercise_id INTEGER,
                    custom_name TEXT,
                    display_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(routine_id) REFERENCES routines(id) ON DELETE CASCADE,
                    FOREIGN KEY(predefined_exercise_id) REFERENCES predefined_exercises(id)
                );""",
            [
                "id",
                "routine_id",
                "predefined_exercise_id",
                "custom_name",
                "display_order",
                "created_at",
            ],
        ),
        "sets": (
            """CREATE TABLE sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    exercise_id INTEGER NOT NULL,
                    user_id INTEGER NOT NULL,
                    reps INTEGER NOT NULL CHECK (reps >= 0),
                    note TEXT,
                    logged_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE CASCADE,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "exercise_id",
                "user_id",
                "reps",
                "note",
                "logged_at",
                "created_at",
            ],
        ),
    }

    _INDEXES = [
        "CREATE INDEX IF NOT EXISTS idx_sets_user_logged ON sets(user_id, logged_at);",
        "CREATE INDEX IF NOT EXISTS idx_sets_exercise ON sets(exercise_id);",
        "CREATE INDEX IF NOT EXISTS idx_exercises_routine ON exercises(routine_id);",
        "CREATE INDEX IF NOT EXISTS idx_routines_user ON routines(user_id);",
    ]

    def __init__(self, db_path: str = "reptrack.db") -> None:
        self._db_path = db_path
        self._ensure_schema()
        self._import_catalog_data()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        connection.execute("PRAGMA foreign_keys=on;")
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            cursor.execute("PRAGMA legacy_alter_table=on;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            for sql in self._INDEXES:
                conn.execute(sql)
            conn.commit()
            cursor.execute("PRAGMA legacy_alter_table=off;")
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        logger.info("Migrating table %s", table)
        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col == "display_order":
                        return "0"
                    if col == "role":
                        return "'user'"
                    if col == "created_at":
                        return "strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")

    def _import_catalog_data(self) -> None:
        csv_path = catalog_path()
        if csv_path is None:
            logger.warning("No %s found; exercise catalog not imported", CATALOG_FILE)
            return
        with open(csv_path, newline="", encoding="utf-8") as csvfile:
            reader = csv.DictReader(csvfile)
            records = [
                (row["Muscle Group"].strip(), row["Exercise Name"].strip())
                for row in reader
                if row.get("Muscle Group") and row.get("Exercise Name")
            ]
        with self._connection() as conn:
            for muscle_group, name in records:
                conn.execute(
                    "INSERT OR IGNORE INTO muscle_groups (name) VALUES (?);",
                    (muscle_group,),
                )
                conn.execute(
                    "INSERT OR IGNORE INTO predefined_exercises (muscle_group_id, name) "
                    "SELECT id, ? FROM muscle_groups WHERE name = ?;",
                    (name, muscle_group),
                )

    def vacuum(self) -> None:
        """Run SQLite VACUUM to reduce database size."""
        with self._connection() as conn:
            conn.execute("VACUUM;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()

    def _next_order(self, table: str, parent_col: str, parent_id: int) -> int:
        rows = self.fetch_all(
            f"SELECT COALESCE(MAX(display_order), -1) + 1 FROM {table} WHERE {parent_col} = ?;",
            (parent_id,),
        )
        return int(rows[0][0]) if rows else 0


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        await conn.execute("PRAGMA foreign_keys=on;")
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return list(rows)


class UserRepository(BaseRepository):
    """Repository for user accounts."""

    _COLUMNS = "id, email, name, avatar_url, provider, provider_id, role, created_at"

    @staticmethod
    def _to_dict(row: Tuple) -> dict:
        uid, email, name, avatar_url, provider, provider_id, role, created_at = row
        return {
            "id": uid,
            "email": email,
            "name": name,
            "avatar_url": avatar_url,
            "provider": provider,
            "provider_id": provider_id,
            "role": role,
            "created_at": created_at,
        }

    def _fetch_one(self, where: str, params: Tuple) -> Optional[dict]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM users WHERE {where};", params
        )
        return self._to_dict(rows[0]) if rows else None

    def create(
        self,
        email: str,
        name: str | None,
        provider: str,
        provider_id: str,
        avatar_url: str | None = None,
        role: str = "user",
    ) -> int:
        if not email:
            raise ValueError("email is required")
        if self.fetch_by_email(email) is not None:
            raise ValueError("a user with this email already exists")
        uid = self.execute(
            "INSERT INTO users (email, name, avatar_url, provider, provider_id, role, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?);",
            (
                email,
                name,
                avatar_url,
                provider,
                provider_id,
                role,
                format_timestamp(utc_now()),
            ),
        )
        logger.info("Created user %s via %s", uid, provider)
        return uid

    def fetch(self, user_id: int) -> Optional[dict]:
        return self._fetch_one("id = ?", (user_id,))

    def fetch_by_email(self, email: str) -> Optional[dict]:
        return self._fetch_one("email = ?", (email,))

    def fetch_by_provider(self, provider: str, provider_id: str) -> Optional[dict]:
        return self._fetch_one(
            "provider = ? AND provider_id = ?", (provider, provider_id)
        )

    def link_provider(
        self,
        user_id: int,
        provider: str,
        provider_id: str,
        avatar_url: str | None = None,
    ) -> None:
        self.execute(
            "UPDATE users SET provider = ?, provider_id = ?, avatar_url = ? WHERE id = ?;",
            (provider, provider_id, avatar_url, user_id),
        )

    def update_profile(
        self, user_id: int, name: str | None, avatar_url: str | None
    ) -> None:
        self.execute(
            "UPDATE users SET name = ?, avatar_url = ? WHERE id = ?;",
            (name, avatar_url, user_id),
        )

    def find_or_create_oauth_user(
        self,
        provider: str,
        provider_id: str,
        email: str,
        name: str | None = None,
        avatar_url: str | None = None,
    ) -> dict:
        """Resolve a provider identity to a local user.

        A known identity gets its profile refreshed; an unknown identity
        whose email matches an existing account is linked to it; anything
        else becomes a new user.
        """
        user = self.fetch_by_provider(provider, provider_id)
        if user is not None:
            self.update_profile(user["id"], name, avatar_url)
            return self.fetch(user["id"])
        user = self.fetch_by_email(email)
        if user is not None:
            self.link_provider(user["id"], provider, provider_id, avatar_url)
            logger.info("Linked %s identity to user %s", provider, user["id"])
            return self.fetch(user["id"])
        uid = self.create(email, name, provider, provider_id, avatar_url)
        return self.fetch(uid)


class MuscleGroupRepository(BaseRepository):
    """Repository for muscle groups of the predefined catalog."""

    def ensure(self, name: str) -> int:
        self.execute("INSERT OR IGNORE INTO muscle_groups (name) VALUES (?);", (name,))
        rows = self.fetch_all("SELECT id FROM muscle_groups WHERE name = ?;", (name,))
        return int(rows[0][0])

    def fetch_all_groups(self) -> List[Tuple[int, str]]:
        return self.fetch_all("SELECT id, name FROM muscle_groups ORDER BY name;")


class PredefinedExerciseRepository(BaseRepository):
    """Repository for the seeded exercise catalog."""

    def __init__(self, db_path: str = "reptrack.db") -> None:
        super().__init__(db_path)
        self.muscle_groups = MuscleGroupRepository(db_path)

    def ensure(self, muscle_group: str, name: str) -> int:
        group_id = self.muscle_groups.ensure(muscle_group)
        self.execute(
            "INSERT OR IGNORE INTO predefined_exercises (muscle_group_id, name) VALUES (?, ?);",
            (group_id, name),
        )
        rows = self.fetch_all(
            "SELECT id FROM predefined_exercises WHERE muscle_group_id = ? AND name = ?;",
            (group_id, name),
        )
        return int(rows[0][0])

    def exists(self, exercise_id: int) -> bool:
        rows = self.fetch_all(
            "SELECT 1 FROM predefined_exercises WHERE id = ?;", (exercise_id,)
        )
        return bool(rows)

    def find_by_name(self, name: str) -> Optional[int]:
        rows = self.fetch_all(
            "SELECT id FROM predefined_exercises WHERE name = ? ORDER BY id LIMIT 1;",
            (name,),
        )
        return int(rows[0][0]) if rows else None

    def fetch_catalog(self) -> List[Tuple[int, str, Optional[int], Optional[str]]]:
        """Return ``(group_id, group, exercise_id, exercise)`` rows by name."""
        return self.fetch_all(
            "SELECT mg.id, mg.name, p.id, p.name FROM muscle_groups mg "
            "LEFT JOIN predefined_exercises p ON p.muscle_group_id = mg.id "
            "ORDER BY mg.name, p.name;"
        )


class RoutineRepository(BaseRepository):
    """Repository for user-owned routines."""

    def _name_taken(
        self, user_id: int, name: str, exclude_id: Optional[int] = None
    ) -> bool:
        rows = self.fetch_all(
            "SELECT id FROM routines WHERE user_id = ? AND name = ?;",
            (user_id, name),
        )
        return any(rid != exclude_id for (rid,) in rows)

    def create(
        self, user_id: int, name: str, display_order: Optional[int] = None
    ) -> int:
        name = clean_text(name)
        if not name:
            raise ValueError("Name is required")
        if self._name_taken(user_id, name):
            raise ValueError("A routine with this name already exists")
        if display_order is None:
            display_order = self._next_order("routines", "user_id", user_id)
        rid = self.execute(
            "INSERT INTO routines (user_id, name, display_order, created_at) VALUES (?, ?, ?, ?);",
            (user_id, name, display_order, format_timestamp(utc_now())),
        )
        logger.info("User %s created routine %s", user_id, rid)
        return rid

    def fetch_all_routines(self, user_id: int) -> List[Tuple[int, str, int, str]]:
        return self.fetch_all(
            "SELECT id, name, display_order, created_at FROM routines "
            "WHERE user_id = ? ORDER BY display_order, id;",
            (user_id,),
        )

    def fetch_detail(self, user_id: int, routine_id: int) -> Tuple[int, str, int, str]:
        rows = self.fetch_all(
            "SELECT id, name, display_order, created_at FROM routines WHERE id = ? AND user_id = ?;",
            (routine_id, user_id),
        )
        if not rows:
            raise NotFoundError("Routine not found")
        return rows[0]

    def update(
        self,
        user_id: int,
        routine_id: int,
        name: Optional[str] = None,
        display_order: Optional[int] = None,
    ) -> None:
        self.fetch_detail(user_id, routine_id)
        if name is None and display_order is None:
            raise ValueError("No fields to update")
        if name is not None:
            name = clean_text(name)
            if not name:
                raise ValueError("Name is required")
            if self._name_taken(user_id, name, exclude_id=routine_id):
                raise ValueError("A routine with this name already exists")
            self.execute(
                "UPDATE routines SET name = ? WHERE id = ?;", (name, routine_id)
            )
        if display_order is not None:
            self.execute(
                "UPDATE routines SET display_order = ? WHERE id = ?;",
                (display_order, routine_id),
            )

    def delete(self, user_id: int, routine_id: int) -> None:
        self.fetch_detail(user_id, routine_id)
        self.execute("DELETE FROM routines WHERE id = ?;", (routine_id,))
        logger.info("User %s deleted routine %s", user_id, routine_id)


_EXERCISE_SELECT = (
    "SELECT e.id, e.routine_id, r.name, e.predefined_exercise_id, e.custom_name, "
    "e.display_order, p.name, mg.name "
    "FROM exercises e JOIN routines r ON e.routine_id = r.id "
    "LEFT JOIN predefined_exercises p ON e.predefined_exercise_id = p.id "
    "LEFT JOIN muscle_groups mg ON p.muscle_group_id = mg.id "
    "WHERE r.user_id = ?"
)


class ExerciseRepository(BaseRepository):
    """Repository for exercises inside routines.

    Rows are ``(id, routine_id, routine_name, predefined_exercise_id,
    custom_name, display_order, predefined_name, muscle_group)``.
    """

    UPDATABLE = {"predefined_exercise_id", "custom_name", "display_order", "routine_id"}

    def __init__(self, db_path: str = "reptrack.db") -> None:
        super().__init__(db_path)
        self.routines = RoutineRepository(db_path)
        self.catalog = PredefinedExerciseRepository(db_path)

    def _check_unique(
        self,
        routine_id: int,
        predefined_exercise_id: Optional[int],
        custom_name: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> None:
        if predefined_exercise_id is not None:
            rows = self.fetch_all(
                "SELECT id FROM exercises WHERE routine_id = ? AND predefined_exercise_id = ?;",
                (routine_id, predefined_exercise_id),
            )
            if any(eid != exclude_id for (eid,) in rows):
                raise ValueError("This exercise already exists in the routine")
        if custom_name is not None:
            rows = self.fetch_all(
                "SELECT id FROM exercises WHERE routine_id = ? AND custom_name = ?;",
                (routine_id, custom_name),
            )
            if any(eid != exclude_id for (eid,) in rows):
                raise ValueError(
                    "An exercise with this name already exists in the routine"
                )

    def _check_identity(
        self, predefined_exercise_id: Optional[int], custom_name: Optional[str]
    ) -> None:
        if predefined_exercise_id is None and custom_name is None:
            raise ValueError("Either predefinedExerciseId or customName is required")
        if predefined_exercise_id is not None and custom_name is not None:
            raise ValueError("Provide either predefinedExerciseId or customName, not both")
        if predefined_exercise_id is not None and not self.catalog.exists(
            predefined_exercise_id
        ):
            raise ValueError("Invalid predefinedExerciseId")

    def add(
        self,
        user_id: int,
        routine_id: int,
        predefined_exercise_id: Optional[int] = None,
        custom_name: Optional[str] = None,
        display_order: Optional[int] = None,
    ) -> int:
        self.routines.fetch_detail(user_id, routine_id)
        custom_name = clean_text(custom_name)
        self._check_identity(predefined_exercise_id, custom_name)
        self._check_unique(routine_id, predefined_exercise_id, custom_name)
        if display_order is None:
            display_order = self._next_order("exercises", "routine_id", routine_id)
        eid = self.execute(
            "INSERT INTO exercises (routine_id, predefined_exercise_id, custom_name, display_order, created_at) "
            "VALUES (?, ?, ?, ?, ?);",
            (
                routine_id,
                predefined_exercise_id,
                custom_name,
                display_order,
                format_timestamp(utc_now()),
            ),
        )
        logger.info("User %s added exercise %s to routine %s", user_id, eid, routine_id)
        return eid

    def fetch_all_exercises(
        self, user_id: int, routine_id: Optional[int] = None
    ) -> List[Tuple]:
        query = _EXERCISE_SELECT
        params: list[int] = [user_id]
        if routine_id is not None:
            query += " AND e.routine_id = ?"
            params.append(routine_id)
        query += " ORDER BY e.routine_id, e.display_order, e.id;"
        return self.fetch_all(query, tuple(params))

    def fetch_detail(self, user_id: int, exercise_id: int) -> Tuple:
        rows = self.fetch_all(
            _EXERCISE_SELECT + " AND e.id = ?;", (user_id, exercise_id)
        )
        if not rows:
            raise NotFoundError("Exercise not found")
        return rows[0]

    def update(self, user_id: int, exercise_id: int, changes: dict) -> None:
        """Apply ``changes`` (a subset of :attr:`UPDATABLE`) to an exercise."""
        (
            _eid,
            routine_id,
            _rname,
            predefined_id,
            custom_name,
            display_order,
            _pname,
            _group,
        ) = self.fetch_detail(user_id, exercise_id)
        changes = {k: v for k, v in changes.items() if k in self.UPDATABLE}
        if not changes:
            raise ValueError("No fields to update")
        if "routine_id" in changes:
            try:
                self.routines.fetch_detail(user_id, changes["routine_id"])
            except NotFoundError:
                raise NotFoundError("Target routine not found")
            routine_id = changes["routine_id"]
        if "predefined_exercise_id" in changes:
            predefined_id = changes["predefined_exercise_id"] or None
            if predefined_id is not None and "custom_name" not in changes:
                custom_name = None
        if "custom_name" in changes:
            custom_name = clean_text(changes["custom_name"])
            if custom_name is not None and "predefined_exercise_id" not in changes:
                predefined_id = None
        if "display_order" in changes and changes["display_order"] is not None:
            display_order = changes["display_order"]
        self._check_identity(predefined_id, custom_name)
        self._check_unique(routine_id, predefined_id, custom_name, exclude_id=exercise_id)
        self.execute(
            "UPDATE exercises SET routine_id = ?, predefined_exercise_id = ?, custom_name = ?, "
            "display_order = ? WHERE id = ?;",
            (routine_id, predefined_id, custom_name, display_order, exercise_id),
        )

    def delete(self, user_id: int, exercise_id: int) -> None:
        self.fetch_detail(user_id, exercise_id)
        self.execute("DELETE FROM exercises WHERE id = ?;", (exercise_id,))
        logger.info("User %s deleted exercise %s", user_id, exercise_id)


_SET_SELECT = (
    "SELECT s.id, s.exercise_id, s.reps, s.note, s.logged_at, e.routine_id, r.name, "
    "COALESCE(p.name, e.custom_name), COALESCE(mg.name, 'Custom') "
    "FROM sets s JOIN exercises e ON s.exercise_id = e.id "
    "JOIN routines r ON e.routine_id = r.id "
    "LEFT JOIN predefined_exercises p ON e.predefined_exercise_id = p.id "
    "LEFT JOIN muscle_groups mg ON p.muscle_group_id = mg.id "
    "WHERE s.user_id = ? AND r.user_id = ?"
)

_OWNED_EXERCISE = (
    "SELECT e.id FROM exercises e JOIN routines r ON e.routine_id = r.id "
    "WHERE e.id = ? AND r.user_id = ?;"
)


def _history_query(
    user_id: int,
    start: Optional[str] = None,
    end: Optional[str] = None,
    exercise_ids: Optional[Iterable[int]] = None,
    routine_id: Optional[int] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> Tuple[str, Tuple]:
    query = _SET_SELECT
    params: list = [user_id, user_id]
    if start is not None:
        query += " AND s.logged_at >= ?"
        params.append(start)
    if end is not None:
        query += " AND s.logged_at < ?"
        params.append(end)
    if exercise_ids is not None:
        ids = list(exercise_ids)
        if ids:
            query += f" AND s.exercise_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
    if routine_id is not None:
        query += " AND e.routine_id = ?"
        params.append(routine_id)
    order = "DESC" if descending else "ASC"
    query += f" ORDER BY s.logged_at {order}, s.id {order}"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return query + ";", tuple(params)


class SetRepository(BaseRepository):
    """Repository for sets table operations.

    Rows are ``(id, exercise_id, reps, note, logged_at, routine_id,
    routine_name, exercise_name, muscle_group)``.
    """

    def add(
        self,
        user_id: int,
        exercise_id: int,
        reps: int,
        note: Optional[str] = None,
        logged_at: Optional[datetime.datetime] = None,
    ) -> int:
        reps = validate_reps(reps)
        stamp = validate_logged_at(logged_at)
        if not self.fetch_all(_OWNED_EXERCISE, (exercise_id, user_id)):
            raise NotFoundError("Exercise not found")
        return self.execute(
            "INSERT INTO sets (exercise_id, user_id, reps, note, logged_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?);",
            (
                exercise_id,
                user_id,
                reps,
                clean_text(note),
                stamp,
                format_timestamp(utc_now()),
            ),
        )

    def fetch_history(
        self,
        user_id: int,
        start: Optional[str] = None,
        end: Optional[str] = None,
        exercise_ids: Optional[Iterable[int]] = None,
        routine_id: Optional[int] = None,
        descending: bool = False,
    ) -> List[Tuple]:
        """Return sets in ``[start, end)`` ordered by ``logged_at``."""
        query, params = _history_query(
            user_id, start, end, exercise_ids, routine_id, descending
        )
        return self.fetch_all(query, params)

    def totals(
        self, user_id: int, start: str, end: str
    ) -> Tuple[int, int]:
        """Return ``(set_count, rep_sum)`` for sets in ``[start, end)``."""
        rows = self.fetch_all(
            "SELECT COUNT(*), COALESCE(SUM(reps), 0) FROM sets "
            "WHERE user_id = ? AND logged_at >= ? AND logged_at < ?;",
            (user_id, start, end),
        )
        count, reps = rows[0]
        return int(count), int(reps)

    def export_csv(self, user_id: int) -> str:
        rows = self.fetch_history(user_id)
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["Logged At", "Routine", "Exercise", "Muscle Group", "Reps", "Note"])
        for _sid, _eid, reps, note, logged_at, _rid, routine, exercise, group in rows:
            writer.writerow([logged_at, routine, exercise, group, reps, note or ""])
        return output.getvalue()

    def export_json(self, user_id: int) -> str:
        """Return all sets of a user as a JSON string."""
        rows = self.fetch_history(user_id)
        data = [
            {
                "loggedAt": logged_at,
                "routine": routine,
                "exercise": exercise,
                "muscleGroup": group,
                "reps": int(reps),
                "note": note,
            }
            for _sid, _eid, reps, note, logged_at, _rid, routine, exercise, group in rows
        ]
        return json.dumps(data)


class AsyncSetRepository(AsyncBaseRepository):
    """Asynchronous repository for sets, used by the set endpoints."""

    UPDATABLE = {"reps", "note", "logged_at"}

    async def add(
        self,
        user_id: int,
        exercise_id: int,
        reps: int,
        note: Optional[str] = None,
        logged_at: Optional[datetime.datetime] = None,
    ) -> int:
        reps = validate_reps(reps)
        stamp = validate_logged_at(logged_at)
        if not await self.fetch_all(_OWNED_EXERCISE, (exercise_id, user_id)):
            raise NotFoundError("Exercise not found")
        return await self.execute(
            "INSERT INTO sets (exercise_id, user_id, reps, note, logged_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?);",
            (
                exercise_id,
                user_id,
                reps,
                clean_text(note),
                stamp,
                format_timestamp(utc_now()),
            ),
        )

    async def fetch_detail(self, user_id: int, set_id: int) -> Tuple:
        rows = await self.fetch_all(
            _SET_SELECT + " AND s.id = ?;", (user_id, user_id, set_id)
        )
        if not rows:
            raise NotFoundError("Set not found")
        return rows[0]

    async def fetch_history(
        self,
        user_id: int,
        start: Optional[str] = None,
        end: Optional[str] = None,
        exercise_ids: Optional[Iterable[int]] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Tuple]:
        query, params = _history_query(
            user_id, start, end, exercise_ids, descending=descending, limit=limit
        )
        return await self.fetch_all(query, params)

    async def fetch_last(self, user_id: int, exercise_id: int) -> Optional[Tuple]:
        if not await self.fetch_all(_OWNED_EXERCISE, (exercise_id, user_id)):
            raise NotFoundError("Exercise not found")
        rows = await self.fetch_history(user_id, exercise_ids=[exercise_id], limit=1)
        return rows[0] if rows else None

    async def update(self, user_id: int, set_id: int, changes: dict) -> None:
        await self.fetch_detail(user_id, set_id)
        changes = {k: v for k, v in changes.items() if k in self.UPDATABLE}
        if not changes:
            raise ValueError("No fields to update")
        assignments: list[str] = []
        params: list = []
        if "reps" in changes:
            assignments.append("reps = ?")
            params.append(validate_reps(changes["reps"]))
        if "note" in changes:
            assignments.append("note = ?")
            params.append(clean_text(changes["note"]))
        if "logged_at" in changes:
            if changes["logged_at"] is None:
                raise ValueError("loggedAt cannot be null")
            assignments.append("logged_at = ?")
            params.append(validate_logged_at(changes["logged_at"]))
        params.append(set_id)
        await self.execute(
            f"UPDATE sets SET {', '.join(assignments)} WHERE id = ?;", tuple(params)
        )

    async def delete(self, user_id: int, set_id: int) -> None:
        await self.fetch_detail(user_id, set_id)
        await self.execute("DELETE FROM sets WHERE id = ?;", (set_id,))
