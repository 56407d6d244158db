"""
Calendar provider contract and the Google Calendar v3 adapter.

Every gateway method either returns its value or raises one of the
GatewayError subclasses below; the sync layer turns those into typed
outcomes and decides whether to retry.
"""

import logging
import urllib.parse
from datetime import datetime
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Protocol

import requests

from assignment_calendar_sync.events import render_google_event
from assignment_calendar_sync.models import MANAGED_MARKER
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import ErrorKind
from assignment_calendar_sync.models import EventSpec
from assignment_calendar_sync.models import ManagedEvent

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/calendar/v3"

_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class GatewayError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", cause: BaseException | None = None):
        super().__init__(message or self.__class__.__name__)
        self.cause = cause


class RateLimited(GatewayError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, retry_after: float | None = None, message: str = ""):
        super().__init__(message or "Rate limit exceeded")
        self.retry_after = retry_after


class Unauthorized(GatewayError):
    kind = ErrorKind.AUTHORIZATION_EXPIRED


class NotFound(GatewayError):
    kind = ErrorKind.PERMANENT_REJECTION


class Transient(GatewayError):
    kind = ErrorKind.TRANSIENT_NETWORK


class Permanent(GatewayError):
    kind = ErrorKind.PERMANENT_REJECTION


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CalendarGateway(Protocol):
    def ensure_calendar(
        self,
        token: str,
        display_name: str,
        calendar_id: str | None = None,
        description: str | None = None,
    ) -> str: ...

    def create_event(self, token: str, calendar_id: str, spec: EventSpec) -> str: ...

    def update_event(self, token: str, calendar_id: str, event_id: str, spec: EventSpec) -> None: ...

    def delete_event(self, token: str, calendar_id: str, event_id: str) -> None: ...

    def list_managed_events(
        self, token: str, calendar_id: str, student_id: int, role: AccountRole
    ) -> list[ManagedEvent]: ...


# ---------------------------------------------------------------------------
# Google Calendar adapter
# ---------------------------------------------------------------------------


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _error_reason(response: requests.Response) -> tuple[str, str]:
    """(reason, message) from a Google API error body, best-effort."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return "", response.text[:200]
    if not isinstance(error, dict):
        return str(error), ""
    reasons = [e.get("reason", "") for e in error.get("errors", []) if isinstance(e, dict)]
    return (reasons[0] if reasons else ""), error.get("message", "")


def classify_response(response: requests.Response) -> GatewayError:
    """Map a non-success HTTP response to the matching GatewayError."""
    code = response.status_code
    reason, message = _error_reason(response)
    detail = f"HTTP {code}" + (f" {reason}" if reason else "") + (f": {message}" if message else "")

    if code == 429 or (code == 403 and reason in _RATE_LIMIT_REASONS):
        return RateLimited(parse_retry_after(response.headers.get("Retry-After")), detail)
    if code == 401:
        return Unauthorized(detail)
    if code in (404, 410):
        return NotFound(detail)
    if code >= 500:
        return Transient(detail)
    return Permanent(detail)


class GoogleCalendarGateway:
    """CalendarGateway over the Google Calendar REST API using requests."""

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = 8.0,
        time_zone: str = "UTC",
        base_url: str = API_BASE,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.time_zone = time_zone
        self.base_url = base_url.rstrip("/")

    def _request(
        self,
        method: str,
        path: str,
        token: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise Transient(f"{method} {path}: {e.__class__.__name__}", cause=e) from e
        except requests.RequestException as e:
            raise Permanent(f"{method} {path}: {e}", cause=e) from e

        if response.status_code >= 400:
            error = classify_response(response)
            logger.debug(f"{method} {path} failed: {error}")
            raise error
        return response

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        return f"/calendars/{urllib.parse.quote(calendar_id, safe='')}"

    def ensure_calendar(
        self,
        token: str,
        display_name: str,
        calendar_id: str | None = None,
        description: str | None = None,
    ) -> str:
        """Return calendar_id if it still exists, otherwise create a new calendar."""
        if calendar_id:
            try:
                self._request("GET", self._calendar_path(calendar_id), token)
                return calendar_id
            except NotFound:
                logger.warning(f"Calendar {calendar_id} no longer exists; creating a new one")

        body = {"summary": display_name, "timeZone": self.time_zone}
        if description:
            body["description"] = description
        created = self._request("POST", "/calendars", token, json=body).json()
        logger.info(f"Created calendar {display_name!r} ({created['id']})")
        return created["id"]

    def create_event(self, token: str, calendar_id: str, spec: EventSpec) -> str:
        body = render_google_event(spec, self.time_zone)
        response = self._request(
            "POST", f"{self._calendar_path(calendar_id)}/events", token, json=body
        )
        return response.json()["id"]

    def update_event(self, token: str, calendar_id: str, event_id: str, spec: EventSpec) -> None:
        body = render_google_event(spec, self.time_zone)
        path = f"{self._calendar_path(calendar_id)}/events/{urllib.parse.quote(event_id, safe='')}"
        self._request("PUT", path, token, json=body)

    def delete_event(self, token: str, calendar_id: str, event_id: str) -> None:
        path = f"{self._calendar_path(calendar_id)}/events/{urllib.parse.quote(event_id, safe='')}"
        try:
            self._request("DELETE", path, token)
        except NotFound:
            logger.debug(f"Event {event_id} already gone from {calendar_id}")

    def list_managed_events(
        self, token: str, calendar_id: str, student_id: int, role: AccountRole
    ) -> list[ManagedEvent]:
        """All non-deleted events we created for (student, role) in the calendar."""
        params = {
            "privateExtendedProperty": [
                f"managed_by={MANAGED_MARKER}",
                f"student_id={student_id}",
                f"role={role.value}",
            ],
            "showDeleted": "false",
            "maxResults": 250,
        }
        events: list[ManagedEvent] = []
        path = f"{self._calendar_path(calendar_id)}/events"
        while True:
            payload = self._request("GET", path, token, params=params).json()
            for item in payload.get("items", []):
                private = item.get("extendedProperties", {}).get("private", {})
                events.append(ManagedEvent(event_id=item["id"], properties=dict(private)))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return events
            params["pageToken"] = page_token
