import json
import logging
from collections.abc import Mapping
from datetime import datetime
from http.client import HTTPException
from typing import Any
from urllib import error, parse, request

from app.services.calendar_availability import CalendarAvailabilityProvider, CalendarUnavailableError
from app.services.scheduling_models import BusyInterval
from app.services.timezone_utils import TimezoneConversionError, ensure_utc, parse_utc_instant

logger = logging.getLogger(__name__)


class GoogleCalendarError(CalendarUnavailableError):
    pass


class GoogleCalendarAvailabilityProvider(CalendarAvailabilityProvider):
    def __init__(
        self,
        *,
        access_token: str,
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        calendar_ids_by_expert: Mapping[str, str] | None = None,
        timeout_seconds: float = 10.0,
        api_base_url: str = "https://www.googleapis.com/calendar/v3",
        oauth_token_url: str = "https://oauth2.googleapis.com/token",
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.calendar_ids_by_expert = dict(calendar_ids_by_expert or {})
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_token_url = oauth_token_url

    def get_busy_intervals(
        self,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[BusyInterval]:
        calendar_id = self._resolve_calendar_id(expert_id)
        payload = {
            "timeMin": _format_instant(range_start),
            "timeMax": _format_instant(range_end),
            "items": [{"id": calendar_id}],
        }
        response_payload = self._request_json("POST", "/freeBusy", payload=payload)
        return self._extract_busy_intervals(response_payload, calendar_id)

    def _resolve_calendar_id(self, expert_id: str) -> str:
        calendar_id = self.calendar_ids_by_expert.get(expert_id, "").strip()
        if not calendar_id:
            raise GoogleCalendarError(f"No Google calendar is configured for expert {expert_id}.")
        return calendar_id

    def _extract_busy_intervals(
        self,
        payload: dict[str, Any],
        calendar_id: str,
    ) -> list[BusyInterval]:
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            raise GoogleCalendarError("Google Calendar freeBusy response missing calendars.")
        calendar_payload = calendars.get(calendar_id)
        if not isinstance(calendar_payload, dict):
            raise GoogleCalendarError(f"Google Calendar freeBusy response missing calendar {calendar_id}.")

        calendar_errors = calendar_payload.get("errors")
        if isinstance(calendar_errors, list) and calendar_errors:
            reasons = ", ".join(
                str(raw_error.get("reason", "unknown"))
                for raw_error in calendar_errors
                if isinstance(raw_error, dict)
            )
            raise GoogleCalendarError(f"Google Calendar freeBusy error: {reasons or 'unknown'}")

        intervals: list[BusyInterval] = []
        for raw_busy in calendar_payload.get("busy") or []:
            if not isinstance(raw_busy, dict):
                continue
            try:
                start = parse_utc_instant(str(raw_busy.get("start", "")))
                end = parse_utc_instant(str(raw_busy.get("end", "")))
            except TimezoneConversionError as exc:
                raise GoogleCalendarError("Google Calendar returned an invalid busy interval.") from exc
            if end <= start:
                continue
            intervals.append(BusyInterval(start=start, end=end))
        return intervals

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        allow_refresh: bool = True,
    ) -> dict[str, Any]:
        if not self.access_token and self._can_refresh_access_token():
            self._refresh_access_token()

        req = request.Request(
            f"{self.api_base_url}{path}",
            data=json.dumps(payload).encode("utf-8") if payload is not None else None,
            method=method,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            return self._send(req, "Google Calendar API")
        except _UnauthorizedError as exc:
            if allow_refresh and self._can_refresh_access_token():
                self._refresh_access_token()
                return self._request_json(method, path, payload, allow_refresh=False)
            raise GoogleCalendarError(f"Google Calendar API HTTP 401: {exc.body}") from exc

    def _can_refresh_access_token(self) -> bool:
        return bool(
            self.refresh_token.strip()
            and self.client_id.strip()
            and self.client_secret.strip()
        )

    def _refresh_access_token(self) -> None:
        if not self._can_refresh_access_token():
            raise GoogleCalendarError("Google Calendar refresh token flow is not configured.")

        req = request.Request(
            self.oauth_token_url,
            data=parse.urlencode(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
            ).encode("utf-8"),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            payload = self._send(req, "Google OAuth refresh")
        except _UnauthorizedError as exc:
            raise GoogleCalendarError(f"Google OAuth refresh HTTP 401: {exc.body}") from exc

        new_access_token = payload.get("access_token")
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise GoogleCalendarError("Google OAuth refresh did not include access_token.")
        self.access_token = new_access_token.strip()
        rotated_refresh_token = payload.get("refresh_token")
        if isinstance(rotated_refresh_token, str) and rotated_refresh_token.strip():
            self.refresh_token = rotated_refresh_token.strip()
        logger.info("Refreshed Google Calendar access token")

    def _send(self, req: request.Request, label: str) -> dict[str, Any]:
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleCalendarError(f"{label} request timed out.") from exc
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore") or "empty response body"
            if exc.code == 401:
                raise _UnauthorizedError(body) from exc
            raise GoogleCalendarError(f"{label} HTTP {exc.code}: {body}") from exc
        except error.URLError as exc:
            raise GoogleCalendarError(f"{label} connection error: {exc.reason}") from exc
        except HTTPException as exc:
            raise GoogleCalendarError(f"{label} response was interrupted: {exc!r}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GoogleCalendarError(f"{label} returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise GoogleCalendarError(f"{label} response is not a JSON object.")
        return parsed_body


class _UnauthorizedError(Exception):
    def __init__(self, body: str) -> None:
        super().__init__(body)
        self.body = body


def _format_instant(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
