from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from eventsync.models import (
    RUN_STATUS_RUNNING,
    SOURCE_TYPE_LUMA,
    ExternalCalendar,
    ExternalEvent,
    ExternalPerson,
    ExternalSyncRun,
    ReconcileCounts,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


PERSON_MUTABLE_COLUMNS = (
    "source_type",
    "email",
    "name",
    "first_name",
    "last_name",
    "avatar_url",
    "event_approved_count",
    "event_checked_in_count",
    "revenue_usd_cents",
    "tags_json",
    "membership_tier_id",
    "membership_status",
    "last_seen_at",
)

EVENT_MUTABLE_COLUMNS = (
    "calendar_id",
    "name",
    "description",
    "slug",
    "url",
    "cover_url",
    "starts_at",
    "ends_at",
    "timezone",
    "is_virtual",
    "address",
    "city",
    "region",
    "country",
    "latitude",
    "longitude",
    "meeting_url",
    "guest_limit",
    "registration_count",
    "hosts_json",
    "raw_data_json",
    "content_hash",
    "last_seen_at",
)


def new_id() -> str:
    return str(uuid.uuid4())


def _now_text() -> str:
    return serialize_datetime(utc_now()) or ""


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: str | None) -> Any:
    if not value:
        return None
    return json.loads(value)


def _calendar_from_row(row: sqlite3.Row) -> ExternalCalendar:
    return ExternalCalendar(
        id=row["id"],
        source_type=row["source_type"],
        external_id=row["external_id"],
        slug=row["slug"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        sync_frequency=row["sync_frequency"],
        last_sync_at=parse_iso_datetime(row["last_sync_at"]),
        last_sync_status=row["last_sync_status"],
        total_people=int(row["total_people"]),
        total_events=int(row["total_events"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _person_from_row(row: sqlite3.Row) -> ExternalPerson:
    return ExternalPerson(
        id=row["id"],
        source_type=row["source_type"],
        external_id=row["external_id"],
        calendar_id=row["calendar_id"],
        email=row["email"],
        name=row["name"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        avatar_url=row["avatar_url"],
        event_approved_count=int(row["event_approved_count"]),
        event_checked_in_count=int(row["event_checked_in_count"]),
        revenue_usd_cents=int(row["revenue_usd_cents"]),
        tags=_load_json(row["tags_json"]),
        membership_tier_id=row["membership_tier_id"],
        membership_status=row["membership_status"],
        last_seen_at=parse_iso_datetime(row["last_seen_at"]),
        user_id=row["user_id"],
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _person_params(person: ExternalPerson) -> dict[str, Any]:
    return {
        "id": person.id,
        "external_id": person.external_id,
        "calendar_id": person.calendar_id,
        "source_type": person.source_type,
        "email": person.email,
        "name": person.name,
        "first_name": person.first_name,
        "last_name": person.last_name,
        "avatar_url": person.avatar_url,
        "event_approved_count": person.event_approved_count,
        "event_checked_in_count": person.event_checked_in_count,
        "revenue_usd_cents": person.revenue_usd_cents,
        "tags_json": _dump_json(person.tags),
        "membership_tier_id": person.membership_tier_id,
        "membership_status": person.membership_status,
        "last_seen_at": serialize_datetime(person.last_seen_at),
        "user_id": person.user_id,
    }


def _event_from_row(row: sqlite3.Row) -> ExternalEvent:
    return ExternalEvent(
        id=row["id"],
        source_type=row["source_type"],
        external_id=row["external_id"],
        calendar_id=row["calendar_id"],
        name=row["name"],
        description=row["description"],
        slug=row["slug"],
        url=row["url"],
        cover_url=row["cover_url"],
        starts_at=parse_iso_datetime(row["starts_at"]),
        ends_at=parse_iso_datetime(row["ends_at"]),
        timezone=row["timezone"],
        is_virtual=bool(row["is_virtual"]),
        address=row["address"],
        city=row["city"],
        region=row["region"],
        country=row["country"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        meeting_url=row["meeting_url"],
        guest_limit=row["guest_limit"],
        registration_count=int(row["registration_count"]),
        hosts=_load_json(row["hosts_json"]),
        raw_data=_load_json(row["raw_data_json"]) or {},
        content_hash=row["content_hash"],
        last_seen_at=parse_iso_datetime(row["last_seen_at"]),
        created_at=parse_iso_datetime(row["created_at"]),
        updated_at=parse_iso_datetime(row["updated_at"]),
    )


def _event_params(event: ExternalEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "source_type": event.source_type,
        "external_id": event.external_id,
        "calendar_id": event.calendar_id,
        "name": event.name,
        "description": event.description,
        "slug": event.slug,
        "url": event.url,
        "cover_url": event.cover_url,
        "starts_at": serialize_datetime(event.starts_at),
        "ends_at": serialize_datetime(event.ends_at),
        "timezone": event.timezone,
        "is_virtual": 1 if event.is_virtual else 0,
        "address": event.address,
        "city": event.city,
        "region": event.region,
        "country": event.country,
        "latitude": event.latitude,
        "longitude": event.longitude,
        "meeting_url": event.meeting_url,
        "guest_limit": event.guest_limit,
        "registration_count": event.registration_count,
        "hosts_json": _dump_json(event.hosts),
        "raw_data_json": _dump_json(event.raw_data),
        "content_hash": event.content_hash,
        "last_seen_at": serialize_datetime(event.last_seen_at),
    }


def _sync_run_from_row(row: sqlite3.Row) -> ExternalSyncRun:
    return ExternalSyncRun(
        id=row["id"],
        calendar_id=row["calendar_id"],
        sync_type=row["sync_type"],
        status=row["status"],
        started_at=parse_iso_datetime(row["started_at"]),
        completed_at=parse_iso_datetime(row["completed_at"]),
        duration_ms=row["duration_ms"],
        people_found=int(row["people_found"]),
        people_created=int(row["people_created"]),
        people_updated=int(row["people_updated"]),
        events_found=int(row["events_found"]),
        events_created=int(row["events_created"]),
        events_updated=int(row["events_updated"]),
        error_message=row["error_message"],
        error_details=_load_json(row["error_details_json"]),
        triggered_by=row["triggered_by"],
    )


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS external_calendars (
            id TEXT PRIMARY KEY,
            source_type TEXT NOT NULL,
            external_id TEXT NOT NULL,
            slug TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            sync_frequency TEXT NOT NULL DEFAULT 'daily',
            last_sync_at TEXT,
            last_sync_status TEXT,
            total_people INTEGER NOT NULL DEFAULT 0,
            total_events INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (source_type, external_id)
        );

        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS external_people (
            id TEXT PRIMARY KEY,
            source_type TEXT NOT NULL,
            external_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL REFERENCES external_calendars(id),
            email TEXT,
            name TEXT,
            first_name TEXT,
            last_name TEXT,
            avatar_url TEXT,
            event_approved_count INTEGER NOT NULL DEFAULT 0,
            event_checked_in_count INTEGER NOT NULL DEFAULT 0,
            revenue_usd_cents INTEGER NOT NULL DEFAULT 0,
            tags_json TEXT,
            membership_tier_id TEXT,
            membership_status TEXT,
            last_seen_at TEXT,
            user_id TEXT REFERENCES users(id),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (calendar_id, external_id)
        );

        CREATE INDEX IF NOT EXISTS idx_external_people_user_id ON external_people(user_id);

        CREATE TABLE IF NOT EXISTS external_events (
            id TEXT PRIMARY KEY,
            source_type TEXT NOT NULL,
            external_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL REFERENCES external_calendars(id),
            name TEXT NOT NULL,
            description TEXT,
            slug TEXT,
            url TEXT,
            cover_url TEXT,
            starts_at TEXT,
            ends_at TEXT,
            timezone TEXT,
            is_virtual INTEGER NOT NULL DEFAULT 0,
            address TEXT,
            city TEXT,
            region TEXT,
            country TEXT,
            latitude REAL,
            longitude REAL,
            meeting_url TEXT,
            guest_limit INTEGER,
            registration_count INTEGER NOT NULL DEFAULT 0,
            hosts_json TEXT,
            raw_data_json TEXT,
            content_hash TEXT NOT NULL,
            last_seen_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (source_type, external_id)
        );

        CREATE TABLE IF NOT EXISTS external_sync_runs (
            id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL REFERENCES external_calendars(id),
            sync_type TEXT NOT NULL,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            duration_ms INTEGER,
            people_found INTEGER NOT NULL DEFAULT 0,
            people_created INTEGER NOT NULL DEFAULT 0,
            people_updated INTEGER NOT NULL DEFAULT 0,
            events_found INTEGER NOT NULL DEFAULT 0,
            events_created INTEGER NOT NULL DEFAULT 0,
            events_updated INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            error_details_json TEXT,
            triggered_by TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_external_sync_runs_calendar
            ON external_sync_runs(calendar_id, started_at);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Calendars

    def create_calendar(
        self,
        *,
        external_id: str,
        slug: str,
        name: str,
        is_active: bool = True,
        sync_frequency: str = "daily",
        source_type: str = SOURCE_TYPE_LUMA,
    ) -> ExternalCalendar:
        calendar_id = new_id()
        now = _now_text()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO external_calendars(
                        id, source_type, external_id, slug, name, is_active, sync_frequency, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (calendar_id, source_type, external_id, slug, name, 1 if is_active else 0, sync_frequency, now, now),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM external_calendars WHERE id = ?", (calendar_id,)).fetchone()
        return _calendar_from_row(row)

    def get_calendar(self, calendar_id: str) -> ExternalCalendar | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM external_calendars WHERE id = ?",
                    (calendar_id,),
                ).fetchone()
        return _calendar_from_row(row) if row else None

    def list_calendars(self, *, active_only: bool = False) -> list[ExternalCalendar]:
        with self._lock:
            with self._connect() as conn:
                if active_only:
                    rows = conn.execute(
                        "SELECT * FROM external_calendars WHERE is_active = 1 ORDER BY created_at, rowid"
                    ).fetchall()
                else:
                    rows = conn.execute("SELECT * FROM external_calendars ORDER BY created_at, rowid").fetchall()
        return [_calendar_from_row(row) for row in rows]

    def set_calendar_active(self, calendar_id: str, is_active: bool) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE external_calendars SET is_active = ?, updated_at = ? WHERE id = ?",
                    (1 if is_active else 0, _now_text(), calendar_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def update_calendar_totals(
        self,
        calendar_id: str,
        *,
        total_people: int | None = None,
        total_events: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE external_calendars
                    SET total_people = COALESCE(?, total_people),
                        total_events = COALESCE(?, total_events),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (total_people, total_events, _now_text(), calendar_id),
                )
                conn.commit()

    def record_calendar_sync(self, calendar_id: str, *, status: str, synced_at: datetime) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE external_calendars
                    SET last_sync_at = ?, last_sync_status = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (serialize_datetime(synced_at), status, _now_text(), calendar_id),
                )
                conn.commit()

    # People

    def find_person(self, calendar_id: str, external_id: str) -> ExternalPerson | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM external_people WHERE calendar_id = ? AND external_id = ?",
                    (calendar_id, external_id),
                ).fetchone()
        return _person_from_row(row) if row else None

    def insert_person(self, person: ExternalPerson) -> None:
        params = _person_params(person)
        params["created_at"] = params["updated_at"] = _now_text()
        columns = ", ".join(params)
        placeholders = ", ".join(f":{key}" for key in params)
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"INSERT INTO external_people({columns}) VALUES ({placeholders})", params)
                conn.commit()

    def update_person(self, person: ExternalPerson) -> None:
        # user_id is owned by the identity linker and never written here.
        params = _person_params(person)
        assignments = ", ".join(f"{column} = :{column}" for column in PERSON_MUTABLE_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE external_people SET {assignments}, updated_at = :updated_at WHERE id = :id",
                    {**params, "updated_at": _now_text()},
                )
                conn.commit()

    def list_people(self, calendar_id: str | None = None) -> list[ExternalPerson]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute("SELECT * FROM external_people ORDER BY created_at, rowid").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM external_people WHERE calendar_id = ? ORDER BY created_at, rowid",
                        (calendar_id,),
                    ).fetchall()
        return [_person_from_row(row) for row in rows]

    def unlinked_people(self) -> list[ExternalPerson]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM external_people WHERE user_id IS NULL ORDER BY created_at, rowid"
                ).fetchall()
        return [_person_from_row(row) for row in rows]

    def link_person(self, person_id: str, user_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE external_people
                    SET user_id = ?, updated_at = ?
                    WHERE id = ? AND user_id IS NULL
                    """,
                    (user_id, _now_text(), person_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    # Events

    def find_event(self, source_type: str, external_id: str) -> ExternalEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM external_events WHERE source_type = ? AND external_id = ?",
                    (source_type, external_id),
                ).fetchone()
        return _event_from_row(row) if row else None

    def insert_event(self, event: ExternalEvent) -> None:
        params = _event_params(event)
        params["created_at"] = params["updated_at"] = _now_text()
        columns = ", ".join(params)
        placeholders = ", ".join(f":{key}" for key in params)
        with self._lock:
            with self._connect() as conn:
                conn.execute(f"INSERT INTO external_events({columns}) VALUES ({placeholders})", params)
                conn.commit()

    def update_event(self, event: ExternalEvent) -> None:
        params = _event_params(event)
        assignments = ", ".join(f"{column} = :{column}" for column in EVENT_MUTABLE_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE external_events SET {assignments}, updated_at = :updated_at WHERE id = :id",
                    {**params, "updated_at": _now_text()},
                )
                conn.commit()

    def list_events(self, calendar_id: str | None = None) -> list[ExternalEvent]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute("SELECT * FROM external_events ORDER BY created_at, rowid").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM external_events WHERE calendar_id = ? ORDER BY created_at, rowid",
                        (calendar_id,),
                    ).fetchall()
        return [_event_from_row(row) for row in rows]

    # Sync runs

    def start_sync_run(self, *, calendar_id: str, triggered_by: str, sync_type: str = "full") -> ExternalSyncRun:
        run = ExternalSyncRun(
            id=new_id(),
            calendar_id=calendar_id,
            sync_type=sync_type,
            status=RUN_STATUS_RUNNING,
            started_at=utc_now(),
            triggered_by=triggered_by,
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO external_sync_runs(id, calendar_id, sync_type, status, started_at, triggered_by)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run.id, run.calendar_id, run.sync_type, run.status, serialize_datetime(run.started_at), run.triggered_by),
                )
                conn.commit()
        return run

    def finish_sync_run(
        self,
        *,
        run_id: str,
        status: str,
        duration_ms: int,
        people: ReconcileCounts | None = None,
        events: ReconcileCounts | None = None,
        error_message: str | None = None,
        error_details: dict[str, Any] | None = None,
    ) -> bool:
        people = people or ReconcileCounts()
        events = events or ReconcileCounts()
        with self._lock:
            with self._connect() as conn:
                # Only a running row may move to a terminal state.
                cursor = conn.execute(
                    """
                    UPDATE external_sync_runs
                    SET status = ?, completed_at = ?, duration_ms = ?,
                        people_found = ?, people_created = ?, people_updated = ?,
                        events_found = ?, events_created = ?, events_updated = ?,
                        error_message = ?, error_details_json = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        str(status),
                        _now_text(),
                        int(duration_ms),
                        people.found,
                        people.created,
                        people.updated,
                        events.found,
                        events.created,
                        events.updated,
                        error_message,
                        _dump_json(error_details),
                        run_id,
                        RUN_STATUS_RUNNING,
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    def get_sync_run(self, run_id: str) -> ExternalSyncRun | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM external_sync_runs WHERE id = ?", (run_id,)).fetchone()
        return _sync_run_from_row(row) if row else None

    def recent_sync_runs(self, limit: int = 20, calendar_id: str | None = None) -> list[ExternalSyncRun]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        """
                        SELECT * FROM external_sync_runs
                        ORDER BY started_at DESC, rowid DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT * FROM external_sync_runs
                        WHERE calendar_id = ?
                        ORDER BY started_at DESC, rowid DESC
                        LIMIT ?
                        """,
                        (calendar_id, max(1, limit)),
                    ).fetchall()
        return [_sync_run_from_row(row) for row in rows]

    # User directory

    def add_user(self, email: str) -> str:
        user_id = new_id()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO users(id, email, created_at) VALUES (?, ?, ?)",
                    (user_id, email, _now_text()),
                )
                conn.commit()
        return user_id

    def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, email, created_at FROM users WHERE email = ?",
                    (email,),
                ).fetchone()
        return dict(row) if row else None
