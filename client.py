import requests
from typing import Iterable, Optional


class RepTrackClient:
    """Simple REST client for the RepTrack API.

    ``session`` may be any object with the ``requests.Session`` interface,
    such as FastAPI's ``TestClient``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        session: Optional[requests.Session] = None,
        dev_token: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        if dev_token:
            self.session.headers["x-dev-token"] = dev_token

    def _request(self, method: str, path: str, **kwargs):
        resp = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = resp.text
            raise requests.HTTPError(f"{resp.status_code}: {detail}", response=resp)
        return resp.json()

    def dev_login(self) -> dict:
        return self._request("POST", "/api/auth/dev")

    def me(self) -> dict:
        return self._request("GET", "/api/user/me")

    def predefined_exercises(self) -> list:
        return self._request("GET", "/api/exercises/predefined")

    def list_routines(self) -> list:
        return self._request("GET", "/api/routines")

    def create_routine(self, name: str, display_order: Optional[int] = None) -> dict:
        body = {"name": name}
        if display_order is not None:
            body["displayOrder"] = display_order
        return self._request("POST", "/api/routines", json=body)

    def rename_routine(self, routine_id: int, name: str) -> dict:
        return self._request("PUT", f"/api/routines/{routine_id}", json={"name": name})

    def delete_routine(self, routine_id: int) -> dict:
        return self._request("DELETE", f"/api/routines/{routine_id}")

    def add_exercise(
        self,
        routine_id: int,
        predefined_exercise_id: Optional[int] = None,
        custom_name: Optional[str] = None,
    ) -> dict:
        body = {"routineId": routine_id}
        if predefined_exercise_id is not None:
            body["predefinedExerciseId"] = predefined_exercise_id
        if custom_name is not None:
            body["customName"] = custom_name
        return self._request("POST", "/api/exercises", json=body)

    def list_exercises(self, routine_id: Optional[int] = None) -> list:
        params = {"routineId": routine_id} if routine_id is not None else None
        return self._request("GET", "/api/exercises", params=params)

    def log_set(
        self,
        exercise_id: int,
        reps: int,
        note: Optional[str] = None,
        logged_at: Optional[str] = None,
    ) -> dict:
        body = {"exerciseId": exercise_id, "reps": reps}
        if note is not None:
            body["note"] = note
        if logged_at is not None:
            body["loggedAt"] = logged_at
        return self._request("POST", "/api/sets", json=body)

    def list_sets(self, **params) -> list:
        return self._request("GET", "/api/sets", params=params)

    def last_set(self, exercise_id: int) -> dict:
        return self._request("GET", "/api/sets/last", params={"exerciseId": exercise_id})

    def delete_set(self, set_id: int) -> dict:
        return self._request("DELETE", f"/api/sets/{set_id}")

    def stats(self, kind: str = "general", **params) -> dict:
        return self._request("GET", "/api/stats", params={"type": kind, **params})

    def trends(
        self,
        granularity: str = "day",
        exercise_ids: Optional[Iterable[int]] = None,
        **params,
    ) -> dict:
        if exercise_ids:
            params["exerciseIds"] = ",".join(str(i) for i in exercise_ids)
        return self.stats("trends", granularity=granularity, **params)
