from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Iterator, TypeVar

import requests

from eventsync.errors import ConfigurationError, PlatformApiError, PlatformPayloadError
from eventsync.models import PlatformConfig, PlatformEvent, PlatformPerson, serialize_datetime

logger = logging.getLogger(__name__)

T = TypeVar("T")

API_KEY_HEADER = "x-luma-api-key"
PEOPLE_ENDPOINT = "/v1/calendar/list-people"
EVENTS_ENDPOINT = "/v1/calendar/list-events"
EVENT_ENDPOINT = "/v1/event/get"


class RateLimiter:
    """Fixed-window request budget shared by every call made through one client."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._count = 0
        self._window_start: float | None = None

    @property
    def request_count(self) -> int:
        return self._count

    def acquire(self) -> float:
        # The wait happens inside the lock so concurrent callers queue behind it.
        with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.window_seconds:
                self._count = 0
                self._window_start = now

            waited = 0.0
            if self._count >= self.max_requests:
                waited = max(0.0, self.window_seconds - (now - self._window_start))
                if waited > 0:
                    logger.info(
                        "Request budget exhausted, waiting for the next window",
                        extra={"wait_seconds": round(waited, 3)},
                    )
                    self._sleep(waited)
                self._count = 0
                self._window_start = self._clock()

            self._count += 1
            return waited


@dataclass
class PlatformPage(Generic[T]):
    entries: list[T] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


def _api_error(response: requests.Response) -> PlatformApiError:
    code = "UNKNOWN_ERROR"
    message = f"HTTP {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            code = str(error.get("code") or code)
            message = str(error.get("message") or message)
        elif isinstance(error, str) and error.strip():
            message = error.strip()
        elif isinstance(payload.get("message"), str):
            message = payload["message"]
    return PlatformApiError(code, message, response.status_code)


def _entry_payload(entry: Any, key: str) -> Any:
    if isinstance(entry, dict) and isinstance(entry.get(key), dict):
        return entry[key]
    return entry


class EventPlatformClient:
    def __init__(self, config: PlatformConfig, rate_limiter: RateLimiter | None = None) -> None:
        self.config = config
        self.rate_limiter = rate_limiter or RateLimiter(
            config.rate_limit_requests,
            config.rate_limit_window_seconds,
        )

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key)

    def _endpoint(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _request(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.is_configured():
            raise ConfigurationError("Event platform base_url/api_key are not configured.")
        self.rate_limiter.acquire()
        response = requests.get(
            self._endpoint(path),
            headers={
                API_KEY_HEADER: self.config.api_key,
                "Content-Type": "application/json",
            },
            params={key: value for key, value in params.items() if value is not None},
            timeout=self.config.timeout_seconds,
        )
        if not response.ok:
            raise _api_error(response)
        payload = response.json()
        if not isinstance(payload, dict):
            raise PlatformPayloadError(f"{path} returned a non-object body")
        return payload

    def _parse_page(
        self,
        payload: dict[str, Any],
        key: str,
        parse: Callable[[dict[str, Any]], T],
    ) -> PlatformPage[T]:
        entries: list[T] = []
        for raw_entry in payload.get("entries") or []:
            try:
                entries.append(parse(_entry_payload(raw_entry, key)))
            except PlatformPayloadError as exc:
                logger.warning(f"Skipping malformed {key} entry: {exc}")
        next_cursor = payload.get("next_cursor")
        return PlatformPage(
            entries=entries,
            has_more=bool(payload.get("has_more", False)),
            next_cursor=str(next_cursor) if next_cursor else None,
        )

    def _iter_pages(self, fetch_page: Callable[[str | None], PlatformPage[T]], label: str) -> Iterator[list[T]]:
        # The next page is requested only once the caller resumes the generator.
        cursor: str | None = None
        pages = 0
        while True:
            page = fetch_page(cursor)
            pages += 1
            logger.debug(f"Fetched {label} page {pages} ({len(page.entries)} entries)")
            yield page.entries
            if not page.has_more:
                break
            if not page.next_cursor:
                logger.warning(f"{label} listing reported more pages without a cursor; stopping")
                break
            cursor = page.next_cursor

    def list_calendar_people(self, calendar_api_id: str, cursor: str | None = None) -> PlatformPage[PlatformPerson]:
        payload = self._request(
            PEOPLE_ENDPOINT,
            {
                "calendar_api_id": calendar_api_id,
                "pagination_cursor": cursor,
                "pagination_limit": self.config.page_size,
            },
        )
        return self._parse_page(payload, "person", PlatformPerson.from_dict)

    def list_calendar_events(
        self,
        calendar_api_id: str,
        cursor: str | None = None,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> PlatformPage[PlatformEvent]:
        payload = self._request(
            EVENTS_ENDPOINT,
            {
                "calendar_api_id": calendar_api_id,
                "pagination_cursor": cursor,
                "pagination_limit": self.config.page_size,
                "after": serialize_datetime(after),
                "before": serialize_datetime(before),
            },
        )
        return self._parse_page(payload, "event", PlatformEvent.from_dict)

    def iter_calendar_people(self, calendar_api_id: str) -> Iterator[list[PlatformPerson]]:
        return self._iter_pages(
            lambda cursor: self.list_calendar_people(calendar_api_id, cursor=cursor),
            "people",
        )

    def iter_public_calendar_events(
        self,
        calendar_api_id: str,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> Iterator[list[PlatformEvent]]:
        return self._iter_pages(
            lambda cursor: self.list_calendar_events(calendar_api_id, cursor=cursor, after=after, before=before),
            "events",
        )

    def get_all_calendar_people(self, calendar_api_id: str) -> list[PlatformPerson]:
        return [person for page in self.iter_calendar_people(calendar_api_id) for person in page]

    def get_all_public_calendar_events(
        self,
        calendar_api_id: str,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> list[PlatformEvent]:
        pages = self.iter_public_calendar_events(calendar_api_id, after=after, before=before)
        return [event for page in pages for event in page]

    def get_event(self, event_api_id: str) -> PlatformEvent:
        payload = self._request(EVENT_ENDPOINT, {"event_api_id": event_api_id})
        return PlatformEvent.from_dict(_entry_payload(payload, "event"))
