from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any

from eventsync.errors import CalendarNotFoundError
from eventsync.models import (
    SOURCE_TYPE_LUMA,
    ExternalCalendar,
    ExternalEvent,
    ExternalPerson,
    PlatformEvent,
    PlatformPerson,
    ReconcileCounts,
    serialize_datetime,
    utc_now,
)
from eventsync.platform_client import EventPlatformClient
from eventsync.state_store import StateStore, new_id

logger = logging.getLogger(__name__)

HASH_DESCRIPTION_LIMIT = 500


def event_content_hash(
    *,
    name: str,
    description: str | None,
    start_at: datetime | None,
    end_at: datetime | None,
    venue: str | None,
) -> str:
    payload = {
        "name": name or "",
        "description": (description or "")[:HASH_DESCRIPTION_LIMIT],
        "start_at": serialize_datetime(start_at),
        "end_at": serialize_datetime(end_at),
        "venue": venue or "",
    }
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _platform_event_hash(event: PlatformEvent) -> str:
    return event_content_hash(
        name=event.name,
        description=event.description,
        start_at=event.start_at,
        end_at=event.end_at,
        venue=event.address,
    )


def _require_calendar(store: StateStore, calendar_id: str) -> ExternalCalendar:
    calendar = store.get_calendar(calendar_id)
    if calendar is None:
        raise CalendarNotFoundError(calendar_id)
    return calendar


def _person_row(source: PlatformPerson, *, row_id: str, calendar: ExternalCalendar, seen_at: datetime) -> ExternalPerson:
    return ExternalPerson(
        id=row_id,
        source_type=calendar.source_type,
        external_id=source.api_id,
        calendar_id=calendar.id,
        email=source.email,
        name=source.name,
        first_name=source.first_name,
        last_name=source.last_name,
        avatar_url=source.avatar_url,
        event_approved_count=source.event_approved_count,
        event_checked_in_count=source.event_checked_in_count,
        revenue_usd_cents=source.revenue_usd_cents,
        tags=source.tags,
        membership_tier_id=source.membership_tier_id,
        membership_status=source.membership_status,
        last_seen_at=seen_at,
    )


def _event_row(source: PlatformEvent, *, row_id: str, calendar: ExternalCalendar, seen_at: datetime) -> ExternalEvent:
    return ExternalEvent(
        id=row_id,
        source_type=calendar.source_type,
        external_id=source.api_id,
        calendar_id=calendar.id,
        name=source.name,
        description=source.description,
        slug=source.slug,
        url=source.url,
        cover_url=source.cover_url,
        starts_at=source.start_at,
        ends_at=source.end_at,
        timezone=source.timezone,
        is_virtual=bool(source.meeting_url),
        address=source.address,
        city=source.city,
        region=source.region,
        country=source.country,
        latitude=source.latitude,
        longitude=source.longitude,
        meeting_url=source.meeting_url,
        guest_limit=source.guest_limit,
        registration_count=source.registration_count,
        hosts=source.hosts,
        raw_data=source.raw,
        content_hash=_platform_event_hash(source),
        last_seen_at=seen_at,
    )


def reconcile_people(store: StateStore, client: EventPlatformClient, calendar_id: str) -> ReconcileCounts:
    calendar = _require_calendar(store, calendar_id)

    counts = ReconcileCounts()
    # Each page is persisted before the next one is requested.
    for page in client.iter_calendar_people(calendar.external_id):
        counts.found += len(page)
        for source in page:
            seen_at = utc_now()
            existing = store.find_person(calendar.id, source.api_id)
            if existing is None:
                store.insert_person(_person_row(source, row_id=new_id(), calendar=calendar, seen_at=seen_at))
                counts.created += 1
            else:
                store.update_person(_person_row(source, row_id=existing.id, calendar=calendar, seen_at=seen_at))
                counts.updated += 1

    store.update_calendar_totals(calendar.id, total_people=counts.found)
    logger.info(
        f"Reconciled people for {calendar.slug}",
        extra={
            "calendar_id": calendar.id,
            "people_found": counts.found,
            "people_created": counts.created,
            "people_updated": counts.updated,
        },
    )
    return counts


def reconcile_events(store: StateStore, client: EventPlatformClient, calendar_id: str) -> ReconcileCounts:
    calendar = _require_calendar(store, calendar_id)
    source_type = calendar.source_type or SOURCE_TYPE_LUMA

    counts = ReconcileCounts()
    for page in client.iter_public_calendar_events(calendar.external_id):
        counts.found += len(page)
        for source in page:
            seen_at = utc_now()
            # Events are keyed globally; a second calendar listing the same event updates the shared row.
            existing = store.find_event(source_type, source.api_id)
            if existing is None:
                store.insert_event(_event_row(source, row_id=new_id(), calendar=calendar, seen_at=seen_at))
                counts.created += 1
            else:
                store.update_event(_event_row(source, row_id=existing.id, calendar=calendar, seen_at=seen_at))
                counts.updated += 1

    store.update_calendar_totals(calendar.id, total_events=counts.found)
    logger.info(
        f"Reconciled events for {calendar.slug}",
        extra={
            "calendar_id": calendar.id,
            "events_found": counts.found,
            "events_created": counts.created,
            "events_updated": counts.updated,
        },
    )
    return counts


def link_unlinked_people(store: StateStore) -> int:
    linked = 0
    user_cache: dict[str, Any] = {}
    for person in store.unlinked_people():
        if not person.email:
            continue
        if person.email not in user_cache:
            user_cache[person.email] = store.find_user_by_email(person.email)
        user = user_cache[person.email]
        if user is None:
            continue
        if store.link_person(person.id, user["id"]):
            linked += 1
    logger.info(f"Linked {linked} external people to local users", extra={"users_linked": linked})
    return linked
