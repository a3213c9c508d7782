"""HTTP-Client für die SiteClock API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional
from urllib.parse import urljoin

import requests

from .models import ClockResult, ClockStatus, SessionRecord


class ApiError(RuntimeError):
    """Fehler beim Zugriff auf die API."""

    def __init__(self, message: str, *, response: Optional[requests.Response] = None) -> None:
        super().__init__(message)
        self.response = response

    @property
    def code(self) -> Optional[str]:
        """Fehlercode der API, z. B. ``already_clocked_in``."""
        if self.response is None:
            return None
        try:
            body = self.response.json()
        except ValueError:
            return None
        return body.get("error") if isinstance(body, dict) else None


class ApiClient:
    """Kapselt HTTP-Aufrufe zur SiteClock API."""

    def __init__(self, base_url: str, timeout: int = 15) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Hilfsfunktionen
    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _request(self, method: str, path: str, **kwargs):
        url = urljoin(self.base_url, path.lstrip("/"))
        kwargs.setdefault("timeout", self.timeout)
        headers = kwargs.setdefault("headers", {})
        headers.update(self._headers())
        try:
            response = requests.request(method, url, **kwargs)
        except requests.RequestException as exc:  # pragma: no cover - Netzwerkfehler
            raise ApiError(str(exc)) from exc

        if response.status_code >= 400:
            raise ApiError(f"API Fehler {response.status_code}: {response.text}", response=response)

        if response.headers.get("Content-Type", "").startswith("application/json"):
            return response.json()
        return response.content

    @staticmethod
    def _point(latitude: Optional[float], longitude: Optional[float]) -> dict[str, float]:
        if latitude is None or longitude is None:
            return {}
        return {"latitude": latitude, "longitude": longitude}

    # ------------------------------------------------------------------
    # Stempeln
    # ------------------------------------------------------------------
    def clock_in(
        self,
        user_id: str,
        work_location_id: str,
        *,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        project_id: Optional[str] = None,
        notes: str = "",
    ) -> SessionRecord:
        payload: dict[str, Any] = {
            "user_id": user_id,
            "work_location_id": work_location_id,
            "notes": notes,
            **self._point(latitude, longitude),
        }
        if project_id:
            payload["project_id"] = project_id
        return self._parse_session(self._request("POST", "/clock-in", json=payload))

    def clock_out(
        self,
        user_id: str,
        *,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        notes: str = "",
    ) -> SessionRecord:
        payload = {"user_id": user_id, "notes": notes, **self._point(latitude, longitude)}
        return self._parse_session(self._request("POST", "/clock-out", json=payload))

    def get_status(self, user_id: str) -> ClockStatus:
        data = self._request("GET", f"/status/{user_id}") or {}
        return self._parse_status(data, user_id)

    # ------------------------------------------------------------------
    # Standort
    # ------------------------------------------------------------------
    def send_location(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        timestamp: Optional[datetime] = None,
    ) -> ClockResult:
        payload: dict[str, Any] = {"user_id": user_id, "latitude": latitude, "longitude": longitude}
        if timestamp is not None:
            payload["timestamp"] = timestamp.isoformat()
        return self._parse_result(self._request("POST", "/location", json=payload), user_id)

    def refresh_location(self, user_id: str, timeout: Optional[float] = None) -> ClockResult:
        params = {"timeout": timeout} if timeout else None
        request_timeout = max(self.timeout, (timeout or 0) + 5)
        data = self._request("POST", f"/location/{user_id}/refresh", params=params, timeout=request_timeout)
        return self._parse_result(data, user_id)

    # ------------------------------------------------------------------
    # Sprachbefehle
    # ------------------------------------------------------------------
    def send_command(self, user_id: str, text: str) -> ClockResult:
        data = self._request("POST", "/commands", json={"user_id": user_id, "text": text})
        return self._parse_result(data, user_id)

    # ------------------------------------------------------------------
    # Protokoll
    # ------------------------------------------------------------------
    def list_sessions(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> list[SessionRecord]:
        params = {}
        if from_date:
            params["from_date"] = from_date.isoformat()
        if to_date:
            params["to_date"] = to_date.isoformat()
        data = self._request("GET", f"/sessions/{user_id}", params=params or None) or []
        return [self._parse_session(item) for item in data]

    def get_hours(self, user_id: str, from_date: date, to_date: date) -> float:
        params = {"from_date": from_date.isoformat(), "to_date": to_date.isoformat()}
        data = self._request("GET", f"/hours/{user_id}", params=params) or {}
        return float(data.get("total_hours", 0.0))

    # ------------------------------------------------------------------
    # Hilfsfunktionen
    # ------------------------------------------------------------------
    def _parse_result(self, data: dict, user_id: str) -> ClockResult:
        session = data.get("session")
        return ClockResult(
            status=self._parse_status(data.get("status") or {}, user_id),
            event=data.get("event"),
            command=data.get("command"),
            session=self._parse_session(session) if session else None,
        )

    def _parse_status(self, data: dict, user_id: str) -> ClockStatus:
        return ClockStatus(
            user_id=data.get("user_id", user_id),
            is_clocked_in=bool(data.get("is_clocked_in")),
            work_location_id=data.get("current_work_location_id"),
            work_location_name=data.get("current_work_location_name"),
            project_id=data.get("current_project_id"),
            clocked_in_at=self._parse_datetime(data.get("last_clock_in_time")),
            session_id=data.get("current_session_id"),
            duration_ms=data.get("current_session_duration_ms"),
        )

    def _parse_session(self, item: dict) -> SessionRecord:
        clock_in = item.get("clock_in_entry") or {}
        clock_out = item.get("clock_out_entry") or {}
        return SessionRecord(
            session_id=str(item.get("id")),
            work_location_id=item.get("work_location_id", ""),
            work_location_name=item.get("work_location_name", ""),
            clocked_in_at=self._parse_datetime(clock_in.get("timestamp")),
            clocked_out_at=self._parse_datetime(clock_out.get("timestamp")),
            duration_ms=item.get("duration_ms"),
            project_id=item.get("project_id"),
            notes=item.get("notes", ""),
            automatic=bool(clock_in.get("is_automatic", False)),
        )

    @staticmethod
    def _parse_datetime(value: Optional[str]):
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:  # pragma: no cover - ungültiges Format
            return None


__all__ = ["ApiClient", "ApiError"]
