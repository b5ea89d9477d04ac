import datetime
import secrets
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

import requests
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, StrictInt

from auth import (
    STATE_COOKIE_NAME,
    Authenticator,
    GoogleOAuthClient,
    OAuthError,
    RequestContext,
    TokenService,
    clear_auth_cookie,
    set_auth_cookie,
)
from config import APP_VERSION, load_settings
from db import (
    AsyncSetRepository,
    ExerciseRepository,
    NotFoundError,
    PredefinedExerciseRepository,
    RoutineRepository,
    SetRepository,
    UserRepository,
    format_timestamp,
)
from logging_utils import get_logger
from settings_schema import SettingsSchema
from stats_service import StatisticsService

logger = get_logger(__name__)


class RoutineIn(BaseModel):
    name: Optional[str] = None
    displayOrder: Optional[int] = None


class ExerciseIn(BaseModel):
    routineId: Optional[int] = None
    predefinedExerciseId: Optional[int] = None
    customName: Optional[str] = None
    displayOrder: Optional[int] = None


class SetIn(BaseModel):
    exerciseId: Optional[int] = None
    reps: Optional[StrictInt] = None
    note: Optional[str] = None
    loggedAt: Optional[datetime.datetime] = None


EXERCISE_FIELDS = {
    "routineId": "routine_id",
    "predefinedExerciseId": "predefined_exercise_id",
    "customName": "custom_name",
    "displayOrder": "display_order",
}
SET_FIELDS = {"reps": "reps", "note": "note", "loggedAt": "logged_at"}


def _user_json(user: dict) -> dict:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "avatarUrl": user["avatar_url"],
        "role": user["role"],
    }


def _exercise_json(row: tuple) -> dict:
    (
        eid,
        routine_id,
        routine_name,
        predefined_id,
        custom_name,
        display_order,
        predefined_name,
        muscle_group,
    ) = row
    return {
        "id": eid,
        "routineId": routine_id,
        "routineName": routine_name,
        "predefinedExerciseId": predefined_id,
        "customName": custom_name,
        "name": predefined_name or custom_name,
        "muscleGroup": muscle_group or "Custom",
        "displayOrder": display_order,
    }


def _routine_json(row: tuple, exercises: List[tuple]) -> dict:
    rid, name, display_order, created_at = row
    return {
        "id": rid,
        "name": name,
        "displayOrder": display_order,
        "createdAt": created_at,
        "exercises": [_exercise_json(e) for e in exercises],
    }


def _set_json(row: tuple) -> dict:
    sid, eid, reps, note, logged_at, routine_id, routine_name, name, group = row
    return {
        "id": sid,
        "exerciseId": eid,
        "reps": reps,
        "note": note,
        "loggedAt": logged_at,
        "exercise": {
            "id": eid,
            "name": name,
            "muscleGroup": group,
            "routineId": routine_id,
            "routineName": routine_name,
        },
    }


class RepTrackAPI:
    """Provides REST endpoints for routines, set logging and statistics."""

    def __init__(
        self,
        db_path: str | None = None,
        yaml_path: str = "settings.yaml",
        *,
        settings: SettingsSchema | None = None,
        clock: Callable[[], datetime.datetime] | None = None,
        oauth_session: requests.Session | None = None,
    ) -> None:
        self.settings = settings or load_settings(yaml_path)
        self.db_path = db_path or self.settings.db_path
        self.tz = ZoneInfo(self.settings.timezone)
        self.users = UserRepository(self.db_path)
        self.catalog = PredefinedExerciseRepository(self.db_path)
        self.routines = RoutineRepository(self.db_path)
        self.exercises = ExerciseRepository(self.db_path)
        self.sets = SetRepository(self.db_path)
        self.async_sets = AsyncSetRepository(self.db_path)
        self.tokens = TokenService(
            self.settings.jwt_secret, self.settings.token_ttl_days
        )
        self.authenticator = Authenticator(
            self.users,
            self.tokens,
            allow_dev_bypass=not self.settings.is_production,
            dev_user_email=self.settings.dev_user_email,
        )
        self.oauth = GoogleOAuthClient(
            self.settings.google_client_id,
            self.settings.google_client_secret,
            f"{self.settings.app_url.rstrip('/')}/api/auth/callback",
            session=oauth_session,
        )
        self.statistics = StatisticsService(
            self.sets, self.settings.timezone, clock=clock
        )
        self.app = FastAPI(
            title="RepTrack API",
            description="REST API for routine tracking, set logging and statistics",
            version=APP_VERSION,
        )
        self.app.add_exception_handler(
            RequestValidationError, self._validation_error
        )
        self.app.add_exception_handler(OverflowError, self._out_of_range)
        self._setup_routes()

    @staticmethod
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            err = errors[0]
            field = ".".join(str(p) for p in err.get("loc", [])[1:])
            message = f"{field}: {err.get('msg')}" if field else err.get("msg")
        else:
            message = "invalid request"
        return JSONResponse(status_code=400, content={"detail": message})

    @staticmethod
    async def _out_of_range(request: Request, exc: OverflowError):
        # ids or numbers too large for an SQLite INTEGER
        logger.warning("Out-of-range value on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "value out of range"})

    def _localize(self, value: datetime.datetime) -> datetime.datetime:
        """Treat naive client timestamps as local wall-clock time."""
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value

    def _day_bounds(self, day: datetime.date) -> tuple[str, str]:
        start = datetime.datetime.combine(day, datetime.time(), tzinfo=self.tz)
        end = datetime.datetime.combine(
            day + datetime.timedelta(days=1), datetime.time(), tzinfo=self.tz
        )
        return format_timestamp(start), format_timestamp(end)

    def _parse_bound(self, value: str, name: str, upper: bool) -> str:
        """Parse a ``from``/``to`` filter; dates cover the whole local day."""
        try:
            if len(value) == 10:
                start, end = self._day_bounds(datetime.date.fromisoformat(value))
                return end if upper else start
            moment = self._localize(datetime.datetime.fromisoformat(value))
            if upper:
                moment += datetime.timedelta(seconds=1)
            return format_timestamp(moment)
        except (ValueError, OverflowError):
            raise HTTPException(
                status_code=400, detail=f"{name} must be an ISO date or datetime"
            )

    @staticmethod
    def _parse_ids(value: Optional[str], name: str) -> Optional[List[int]]:
        if not value:
            return None
        try:
            ids = [int(part) for part in value.split(",") if part.strip()]
        except ValueError:
            raise HTTPException(
                status_code=400, detail=f"{name} must be a comma-separated list of ids"
            )
        return ids or None

    def _setup_routes(self) -> None:
        current = Depends(self.authenticator)
        auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])
        routines_router = APIRouter(prefix="/api/routines", tags=["Routines"])
        exercises_router = APIRouter(prefix="/api/exercises", tags=["Exercises"])
        sets_router = APIRouter(prefix="/api/sets", tags=["Sets"])
        stats_router = APIRouter(prefix="/api/stats", tags=["Stats"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        def health():
            """Return API and database connection status."""
            try:
                self.users.fetch_all("SELECT 1;")
                return {"status": "ok", "version": APP_VERSION}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @auth_router.get("/google")
        def google_login():
            if not self.settings.google_client_id:
                raise HTTPException(
                    status_code=500, detail="Google OAuth is not configured"
                )
            state = secrets.token_urlsafe(24)
            response = RedirectResponse(
                url=self.oauth.authorization_url(state), status_code=302
            )
            response.set_cookie(
                STATE_COOKIE_NAME, state, httponly=True, samesite="lax", max_age=600
            )
            return response

        @auth_router.get("/callback")
        def google_callback(
            request: Request,
            code: str | None = None,
            state: str | None = None,
            error: str | None = None,
        ):
            if error:
                return RedirectResponse(url=f"/?error={error}", status_code=302)
            if not code:
                return RedirectResponse(url="/?error=no_code", status_code=302)
            expected = request.cookies.get(STATE_COOKIE_NAME)
            if not expected or state != expected:
                logger.warning("OAuth callback with mismatched state")
                return RedirectResponse(url="/?error=invalid_state", status_code=302)
            try:
                profile = self.oauth.authenticate(code)
            except (OAuthError, requests.RequestException) as e:
                logger.error("OAuth callback error: %s", e)
                return RedirectResponse(url="/?error=auth_failed", status_code=302)
            user = self.users.find_or_create_oauth_user(
                "google",
                str(profile["id"]),
                profile["email"],
                profile.get("name"),
                profile.get("picture"),
            )
            response = RedirectResponse(url="/workout", status_code=302)
            set_auth_cookie(
                response,
                self.tokens.issue(user),
                self.tokens.max_age,
                secure=self.settings.is_production,
            )
            response.delete_cookie(STATE_COOKIE_NAME)
            return response

        @auth_router.post("/logout")
        def logout(response: Response):
            clear_auth_cookie(response)
            return {"success": True}

        @auth_router.post("/dev")
        def dev_login(response: Response):
            if self.settings.is_production:
                raise HTTPException(
                    status_code=403, detail="Not available in production"
                )
            user = self.users.fetch_by_email(self.settings.dev_user_email)
            if user is None:
                raise HTTPException(
                    status_code=404,
                    detail="Test user not found. Run the seed command",
                )
            set_auth_cookie(response, self.tokens.issue(user), self.tokens.max_age)
            return {
                "success": True,
                "user": {"id": user["id"], "email": user["email"], "name": user["name"]},
            }

        @self.app.get("/api/user/me", tags=["Auth"])
        def me(ctx: RequestContext = current):
            return _user_json(ctx.user)

        @routines_router.get("")
        def list_routines(ctx: RequestContext = current):
            grouped: dict[int, list] = {}
            for row in self.exercises.fetch_all_exercises(ctx.user_id):
                grouped.setdefault(row[1], []).append(row)
            return [
                _routine_json(r, grouped.get(r[0], []))
                for r in self.routines.fetch_all_routines(ctx.user_id)
            ]

        @routines_router.post("", status_code=201)
        def create_routine(body: RoutineIn, ctx: RequestContext = current):
            if not body.name or not body.name.strip():
                raise HTTPException(status_code=400, detail="Name is required")
            try:
                rid = self.routines.create(ctx.user_id, body.name, body.displayOrder)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return _routine_json(self.routines.fetch_detail(ctx.user_id, rid), [])

        def routine_payload(user_id: int, routine_id: int) -> dict:
            row = self.routines.fetch_detail(user_id, routine_id)
            exercises = self.exercises.fetch_all_exercises(user_id, routine_id)
            return _routine_json(row, exercises)

        @routines_router.get("/{routine_id}")
        def get_routine(routine_id: int, ctx: RequestContext = current):
            try:
                return routine_payload(ctx.user_id, routine_id)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @routines_router.put("/{routine_id}")
        def update_routine(
            routine_id: int, body: RoutineIn, ctx: RequestContext = current
        ):
            try:
                self.routines.update(
                    ctx.user_id, routine_id, body.name, body.displayOrder
                )
                return routine_payload(ctx.user_id, routine_id)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @routines_router.delete("/{routine_id}")
        def delete_routine(routine_id: int, ctx: RequestContext = current):
            try:
                self.routines.delete(ctx.user_id, routine_id)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"success": True}

        @exercises_router.get("/predefined")
        def predefined_exercises():
            groups: dict[int, dict] = {}
            for gid, group, eid, name in self.catalog.fetch_catalog():
                entry = groups.setdefault(
                    gid, {"id": gid, "name": group, "predefinedExercises": []}
                )
                if eid is not None:
                    entry["predefinedExercises"].append({"id": eid, "name": name})
            return list(groups.values())

        @exercises_router.get("")
        def list_exercises(
            routineId: int | None = None, ctx: RequestContext = current
        ):
            rows = self.exercises.fetch_all_exercises(ctx.user_id, routineId)
            return [_exercise_json(r) for r in rows]

        @exercises_router.post("", status_code=201)
        def create_exercise(body: ExerciseIn, ctx: RequestContext = current):
            if body.routineId is None:
                raise HTTPException(status_code=400, detail="routineId is required")
            try:
                eid = self.exercises.add(
                    ctx.user_id,
                    body.routineId,
                    body.predefinedExerciseId,
                    body.customName,
                    body.displayOrder,
                )
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return _exercise_json(self.exercises.fetch_detail(ctx.user_id, eid))

        @exercises_router.get("/{exercise_id}")
        def get_exercise(exercise_id: int, ctx: RequestContext = current):
            try:
                return _exercise_json(
                    self.exercises.fetch_detail(ctx.user_id, exercise_id)
                )
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @exercises_router.put("/{exercise_id}")
        def update_exercise(
            exercise_id: int, body: ExerciseIn, ctx: RequestContext = current
        ):
            changes = {
                EXERCISE_FIELDS[f]: getattr(body, f)
                for f in body.model_fields_set
                if f in EXERCISE_FIELDS
            }
            try:
                self.exercises.update(ctx.user_id, exercise_id, changes)
                return _exercise_json(
                    self.exercises.fetch_detail(ctx.user_id, exercise_id)
                )
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @exercises_router.delete("/{exercise_id}")
        def delete_exercise(exercise_id: int, ctx: RequestContext = current):
            try:
                self.exercises.delete(ctx.user_id, exercise_id)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"success": True}

        @sets_router.get("")
        async def list_sets(
            request: Request,
            exerciseId: int | None = None,
            date: str | None = None,
            ctx: RequestContext = current,
        ):
            start = end = None
            if date:
                try:
                    start, end = self._day_bounds(datetime.date.fromisoformat(date))
                except (ValueError, OverflowError):
                    raise HTTPException(
                        status_code=400, detail="date must be in YYYY-MM-DD format"
                    )
            else:
                lower = request.query_params.get("from")
                upper = request.query_params.get("to")
                if lower:
                    start = self._parse_bound(lower, "from", upper=False)
                if upper:
                    end = self._parse_bound(upper, "to", upper=True)
            rows = await self.async_sets.fetch_history(
                ctx.user_id,
                start,
                end,
                exercise_ids=[exerciseId] if exerciseId is not None else None,
            )
            return [_set_json(r) for r in rows]

        @sets_router.post("", status_code=201)
        async def create_set(body: SetIn, ctx: RequestContext = current):
            if body.exerciseId is None:
                raise HTTPException(status_code=400, detail="exerciseId is required")
            if body.reps is None:
                raise HTTPException(
                    status_code=400, detail="reps must be a non-negative number"
                )
            logged_at = self._localize(body.loggedAt) if body.loggedAt else None
            try:
                sid = await self.async_sets.add(
                    ctx.user_id, body.exerciseId, body.reps, body.note, logged_at
                )
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            logger.info("User %s logged set %s", ctx.user_id, sid)
            return _set_json(await self.async_sets.fetch_detail(ctx.user_id, sid))

        @sets_router.get("/last")
        async def last_set(
            exerciseId: int | None = None, ctx: RequestContext = current
        ):
            if exerciseId is None:
                raise HTTPException(status_code=400, detail="exerciseId is required")
            try:
                row = await self.async_sets.fetch_last(ctx.user_id, exerciseId)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            if row is None:
                return {"reps": None, "note": None, "loggedAt": None}
            return {"reps": row[2], "note": row[3], "loggedAt": row[4]}

        @sets_router.get("/{set_id}")
        async def get_set(set_id: int, ctx: RequestContext = current):
            try:
                return _set_json(await self.async_sets.fetch_detail(ctx.user_id, set_id))
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @sets_router.put("/{set_id}")
        async def update_set(set_id: int, body: SetIn, ctx: RequestContext = current):
            changes = {
                SET_FIELDS[f]: getattr(body, f)
                for f in body.model_fields_set
                if f in SET_FIELDS
            }
            if changes.get("logged_at") is not None:
                changes["logged_at"] = self._localize(changes["logged_at"])
            try:
                await self.async_sets.update(ctx.user_id, set_id, changes)
                return _set_json(await self.async_sets.fetch_detail(ctx.user_id, set_id))
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @sets_router.delete("/{set_id}")
        async def delete_set(set_id: int, ctx: RequestContext = current):
            try:
                await self.async_sets.delete(ctx.user_id, set_id)
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"success": True}

        def general_stats(user_id: int, date: Optional[str]) -> dict:
            target = None
            if date:
                try:
                    target = datetime.date.fromisoformat(date)
                except ValueError:
                    raise HTTPException(
                        status_code=400, detail="date must be in YYYY-MM-DD format"
                    )
            try:
                return self.statistics.general(user_id, target)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        def calendar_stats(
            user_id: int, year: Optional[int], month: Optional[int]
        ) -> dict:
            try:
                return self.statistics.calendar(user_id, year, month)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        def trend_stats(
            user_id: int,
            granularity: str,
            days: Optional[int],
            exercise_ids: Optional[str],
            routine_id: Optional[int],
        ) -> dict:
            ids = self._parse_ids(exercise_ids, "exerciseIds")
            try:
                return self.statistics.trends(
                    user_id, granularity, days, ids, routine_id
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @stats_router.get(
            "",
            summary="Statistics",
            description="General, calendar or trend statistics selected by type.",
        )
        def stats(
            type: str = "general",
            date: str | None = None,
            year: int | None = None,
            month: int | None = None,
            granularity: str = "day",
            days: int | None = None,
            exerciseIds: str | None = None,
            routineId: int | None = None,
            ctx: RequestContext = current,
        ):
            if type == "general":
                return general_stats(ctx.user_id, date)
            if type == "calendar":
                return calendar_stats(ctx.user_id, year, month)
            if type == "trends":
                return trend_stats(
                    ctx.user_id, granularity, days, exerciseIds, routineId
                )
            raise HTTPException(
                status_code=400,
                detail="Invalid type. Use: general, calendar, or trends",
            )

        @stats_router.get("/general")
        def stats_general(date: str | None = None, ctx: RequestContext = current):
            return general_stats(ctx.user_id, date)

        @stats_router.get("/calendar")
        def stats_calendar(
            year: int | None = None,
            month: int | None = None,
            ctx: RequestContext = current,
        ):
            return calendar_stats(ctx.user_id, year, month)

        @stats_router.get("/trends")
        def stats_trends(
            granularity: str = "day",
            days: int | None = None,
            exerciseIds: str | None = None,
            routineId: int | None = None,
            ctx: RequestContext = current,
        ):
            return trend_stats(ctx.user_id, granularity, days, exerciseIds, routineId)

        self.app.include_router(auth_router)
        self.app.include_router(routines_router)
        self.app.include_router(exercises_router)
        self.app.include_router(sets_router)
        self.app.include_router(stats_router)


def create_app() -> FastAPI:
    """Application factory for ``uvicorn rest_api:create_app --factory``."""
    return RepTrackAPI().app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="127.0.0.1", port=8000)
