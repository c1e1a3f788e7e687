from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from eventsync.errors import PlatformPayloadError


SOURCE_TYPE_LUMA = "luma"

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_SOURCES = {TRIGGER_MANUAL, TRIGGER_SCHEDULED}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if not isinstance(value, str):
        raise TypeError(f"expected an ISO-8601 string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _optional_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise TypeError(f"expected text, got {type(value).__name__}")
    return value


def _count(value: Any) -> int:
    if not value:
        return 0
    return int(value)


@dataclass
class PlatformConfig:
    base_url: str = "https://public-api.luma.com"
    api_key: str = ""
    timeout_seconds: int = 30
    rate_limit_requests: int = 300
    rate_limit_window_seconds: float = 60.0
    page_size: int = 50

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlatformConfig":
        data = data or {}
        window = float(data.get("rate_limit_window_seconds", 60.0))
        return cls(
            base_url=str(data.get("base_url", "https://public-api.luma.com")).strip().rstrip("/")
            or "https://public-api.luma.com",
            api_key=str(data.get("api_key", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            rate_limit_requests=max(1, int(data.get("rate_limit_requests", 300))),
            rate_limit_window_seconds=window if window > 0 else 60.0,
            page_size=min(100, max(1, int(data.get("page_size", 50)))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 86400
    calendar_pacing_ms: int = 500
    run_on_startup: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 86400))),
            calendar_pacing_ms=max(0, int(data.get("calendar_pacing_ms", 500))),
            run_on_startup=bool(data.get("run_on_startup", False)),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(
            level=str(data.get("level", "INFO")).strip().upper() or "INFO",
            json=bool(data.get("json", True)),
        )


@dataclass
class AppConfig:
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            platform=PlatformConfig.from_dict(data.get("platform")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class PlatformPerson:
    api_id: str
    email: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None
    event_approved_count: int = 0
    event_checked_in_count: int = 0
    revenue_usd_cents: int = 0
    tags: list[Any] | None = None
    membership_tier_id: str | None = None
    membership_status: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlatformPerson":
        if not isinstance(data, dict):
            raise PlatformPayloadError("person entry must be an object")
        api_id = _optional_str(data.get("api_id"))
        if api_id is None:
            raise PlatformPayloadError("person entry is missing api_id")
        tags = data.get("tags")
        try:
            approved = _count(data.get("event_approved_count"))
            checked_in = _count(data.get("event_checked_in_count"))
            revenue_usd_cents = _count(data.get("revenue_usd_cents"))
        except (TypeError, ValueError) as exc:
            raise PlatformPayloadError(f"person {api_id} has an invalid counter: {exc}") from exc
        return cls(
            api_id=api_id,
            email=_optional_str(data.get("email")),
            name=_optional_str(data.get("name")),
            first_name=_optional_str(data.get("first_name")),
            last_name=_optional_str(data.get("last_name")),
            avatar_url=_optional_str(data.get("avatar_url")),
            event_approved_count=approved,
            event_checked_in_count=checked_in,
            revenue_usd_cents=revenue_usd_cents,
            tags=list(tags) if isinstance(tags, list) and tags else None,
            membership_tier_id=_optional_str(data.get("membership_tier_id")),
            membership_status=_optional_str(data.get("membership_status")),
        )


@dataclass
class PlatformEvent:
    api_id: str
    name: str = ""
    description: str | None = None
    slug: str | None = None
    url: str | None = None
    cover_url: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    meeting_url: str | None = None
    address: str | None = None
    city: str | None = None
    region: str | None = None
    country: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    guest_limit: int | None = None
    registration_count: int = 0
    hosts: list[Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PlatformEvent":
        if not isinstance(data, dict):
            raise PlatformPayloadError("event entry must be an object")
        api_id = _optional_str(data.get("api_id"))
        if api_id is None:
            raise PlatformPayloadError("event entry is missing api_id")
        geo = data.get("geo_address_json")
        if not isinstance(geo, dict):
            geo = {}
        hosts = data.get("hosts")
        try:
            description = _optional_text(data.get("description"))
            start_at = parse_iso_datetime(data.get("start_at"))
            end_at = parse_iso_datetime(data.get("end_at"))
            latitude = _optional_float(data.get("geo_latitude"))
            longitude = _optional_float(data.get("geo_longitude"))
            guest_limit = _optional_int(data.get("guest_limit"))
            registration_count = _count(data.get("registration_count"))
        except (TypeError, ValueError) as exc:
            raise PlatformPayloadError(f"event {api_id} has an invalid field: {exc}") from exc
        return cls(
            api_id=api_id,
            name=str(data.get("name") or "").strip(),
            description=description,
            slug=_optional_str(data.get("slug")),
            url=_optional_str(data.get("url")),
            cover_url=_optional_str(data.get("cover_url")),
            start_at=start_at,
            end_at=end_at,
            timezone=_optional_str(data.get("timezone")),
            meeting_url=_optional_str(data.get("meeting_url")),
            address=_optional_str(geo.get("full_address")) or _optional_str(geo.get("address")),
            city=_optional_str(geo.get("city")),
            region=_optional_str(geo.get("region")),
            country=_optional_str(geo.get("country")),
            latitude=latitude,
            longitude=longitude,
            guest_limit=guest_limit,
            registration_count=registration_count,
            hosts=list(hosts) if isinstance(hosts, list) and hosts else None,
            raw=dict(data),
        )


@dataclass
class ExternalCalendar:
    id: str
    external_id: str
    slug: str
    name: str
    source_type: str = SOURCE_TYPE_LUMA
    is_active: bool = True
    sync_frequency: str = "daily"
    last_sync_at: datetime | None = None
    last_sync_status: str | None = None
    total_people: int = 0
    total_events: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("last_sync_at", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class ExternalPerson:
    id: str
    external_id: str
    calendar_id: str
    source_type: str = SOURCE_TYPE_LUMA
    email: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None
    event_approved_count: int = 0
    event_checked_in_count: int = 0
    revenue_usd_cents: int = 0
    tags: list[Any] | None = None
    membership_tier_id: str | None = None
    membership_status: str | None = None
    last_seen_at: datetime | None = None
    user_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("last_seen_at", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class ExternalEvent:
    id: str
    external_id: str
    calendar_id: str
    name: str
    source_type: str = SOURCE_TYPE_LUMA
    description: str | None = None
    slug: str | None = None
    url: str | None = None
    cover_url: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    timezone: str | None = None
    is_virtual: bool = False
    address: str | None = None
    city: str | None = None
    region: str | None = None
    country: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    meeting_url: str | None = None
    guest_limit: int | None = None
    registration_count: int = 0
    hosts: list[Any] | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)
    content_hash: str = ""
    last_seen_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("starts_at", "ends_at", "last_seen_at", "created_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class ExternalSyncRun:
    id: str
    calendar_id: str
    status: str
    started_at: datetime
    triggered_by: str = TRIGGER_MANUAL
    sync_type: str = "full"
    completed_at: datetime | None = None
    duration_ms: int | None = None
    people_found: int = 0
    people_created: int = 0
    people_updated: int = 0
    events_found: int = 0
    events_created: int = 0
    events_updated: int = 0
    error_message: str | None = None
    error_details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = serialize_datetime(self.started_at)
        payload["completed_at"] = serialize_datetime(self.completed_at)
        return payload


@dataclass
class ReconcileCounts:
    found: int = 0
    created: int = 0
    updated: int = 0


@dataclass
class SyncStats:
    people_found: int = 0
    people_created: int = 0
    people_updated: int = 0
    events_found: int = 0
    events_created: int = 0
    events_updated: int = 0
    users_linked: int = 0

    def add(self, other: "SyncStats") -> None:
        self.people_found += other.people_found
        self.people_created += other.people_created
        self.people_updated += other.people_updated
        self.events_found += other.events_found
        self.events_created += other.events_created
        self.events_updated += other.events_updated
        self.users_linked += other.users_linked

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncResult:
    success: bool
    sync_run_id: str
    stats: SyncStats
    duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "sync_run_id": self.sync_run_id,
            "stats": self.stats.to_dict(),
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class CalendarSyncOutcome:
    calendar_slug: str
    result: SyncResult

    def to_dict(self) -> dict[str, Any]:
        return {"calendar_slug": self.calendar_slug, "result": self.result.to_dict()}


@dataclass
class FleetSyncResult:
    results: list[CalendarSyncOutcome] = field(default_factory=list)
    total_stats: SyncStats = field(default_factory=SyncStats)
    linker_error: str | None = None

    @property
    def all_succeeded(self) -> bool:
        return all(item.result.success for item in self.results) and self.linker_error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [item.to_dict() for item in self.results],
            "total_stats": self.total_stats.to_dict(),
            "linker_error": self.linker_error,
        }
