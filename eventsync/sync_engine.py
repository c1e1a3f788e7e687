from __future__ import annotations

import logging
import time
import traceback
from typing import Callable

from eventsync.errors import ConfigurationError
from eventsync.models import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    TRIGGER_MANUAL,
    TRIGGER_SOURCES,
    AppConfig,
    CalendarSyncOutcome,
    ExternalCalendar,
    FleetSyncResult,
    ReconcileCounts,
    SyncResult,
    SyncStats,
    utc_now,
)
from eventsync.platform_client import EventPlatformClient
from eventsync.reconciler import link_unlinked_people, reconcile_events, reconcile_people
from eventsync.state_store import StateStore

logger = logging.getLogger(__name__)


def _stats_from_counts(people: ReconcileCounts, events: ReconcileCounts) -> SyncStats:
    return SyncStats(
        people_found=people.found,
        people_created=people.created,
        people_updated=people.updated,
        events_found=events.found,
        events_created=events.created,
        events_updated=events.updated,
    )


class SyncEngine:
    def __init__(
        self,
        state_store: StateStore,
        client: EventPlatformClient,
        *,
        calendar_pacing_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state_store = state_store
        self.client = client
        self.calendar_pacing_seconds = max(0.0, float(calendar_pacing_seconds))
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, config: AppConfig, state_store: StateStore) -> "SyncEngine":
        if not config.platform.api_key:
            raise ConfigurationError("platform.api_key is required to sync calendars.")
        return cls(
            state_store,
            EventPlatformClient(config.platform),
            calendar_pacing_seconds=config.sync.calendar_pacing_ms / 1000.0,
        )

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def sync_calendar(self, calendar_id: str, triggered_by: str = TRIGGER_MANUAL) -> SyncResult:
        if triggered_by not in TRIGGER_SOURCES:
            raise ValueError(f"triggered_by must be one of {sorted(TRIGGER_SOURCES)}")
        started = self._clock()

        calendar = self.state_store.get_calendar(calendar_id)
        if calendar is None:
            logger.warning(f"Calendar not found: {calendar_id}", extra={"calendar_id": calendar_id})
            return SyncResult(
                success=False,
                sync_run_id="",
                stats=SyncStats(),
                duration_ms=self._elapsed_ms(started),
                error=f"Calendar not found: {calendar_id}",
            )

        run = self.state_store.start_sync_run(calendar_id=calendar.id, triggered_by=triggered_by)
        logger.info(
            f"Sync started for {calendar.slug}",
            extra={"calendar_id": calendar.id, "sync_run_id": run.id, "triggered_by": triggered_by},
        )

        try:
            people = reconcile_people(self.state_store, self.client, calendar.id)
            events = reconcile_events(self.state_store, self.client, calendar.id)
            duration_ms = self._elapsed_ms(started)
            self.state_store.finish_sync_run(
                run_id=run.id,
                status=RUN_STATUS_COMPLETED,
                duration_ms=duration_ms,
                people=people,
                events=events,
            )
            self.state_store.record_calendar_sync(calendar.id, status=RUN_STATUS_COMPLETED, synced_at=utc_now())
        except Exception as exc:
            return self._fail_run(calendar, run.id, started, exc)

        stats = _stats_from_counts(people, events)
        logger.info(
            f"Sync completed for {calendar.slug}",
            extra={"calendar_id": calendar.id, "sync_run_id": run.id, "duration_ms": duration_ms, **stats.to_dict()},
        )
        return SyncResult(success=True, sync_run_id=run.id, stats=stats, duration_ms=duration_ms)

    def _fail_run(self, calendar: ExternalCalendar, run_id: str, started: float, exc: Exception) -> SyncResult:
        duration_ms = self._elapsed_ms(started)
        error_message = str(exc) or type(exc).__name__
        logger.error(
            f"Sync failed for {calendar.slug}: {error_message}",
            exc_info=exc,
            extra={
                "calendar_id": calendar.id,
                "sync_run_id": run_id,
                "duration_ms": duration_ms,
                "error_type": type(exc).__name__,
            },
        )
        # A no-op when the completed update already landed; terminal rows are never revisited.
        self.state_store.finish_sync_run(
            run_id=run_id,
            status=RUN_STATUS_FAILED,
            duration_ms=duration_ms,
            error_message=error_message,
            error_details={
                "error": error_message,
                "type": type(exc).__name__,
                "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            },
        )
        self.state_store.record_calendar_sync(calendar.id, status=RUN_STATUS_FAILED, synced_at=utc_now())
        return SyncResult(
            success=False,
            sync_run_id=run_id,
            stats=SyncStats(),
            duration_ms=duration_ms,
            error=error_message,
        )

    def link_external_people_to_users(self) -> int:
        return link_unlinked_people(self.state_store)

    def sync_all_calendars(self, triggered_by: str = TRIGGER_MANUAL) -> FleetSyncResult:
        calendars = self.state_store.list_calendars(active_only=True)
        fleet = FleetSyncResult()
        logger.info(f"Fleet sync started for {len(calendars)} active calendars", extra={"triggered_by": triggered_by})

        for index, calendar in enumerate(calendars):
            if index > 0 and self.calendar_pacing_seconds > 0:
                self._sleep(self.calendar_pacing_seconds)
            try:
                result = self.sync_calendar(calendar.id, triggered_by=triggered_by)
            except Exception as exc:
                # Run bookkeeping itself failed; the calendar counts as failed and the pass goes on.
                logger.exception(
                    f"Sync bookkeeping failed for {calendar.slug}",
                    extra={"calendar_id": calendar.id, "error_type": type(exc).__name__},
                )
                result = SyncResult(
                    success=False,
                    sync_run_id="",
                    stats=SyncStats(),
                    duration_ms=0,
                    error=str(exc) or type(exc).__name__,
                )
            fleet.results.append(CalendarSyncOutcome(calendar_slug=calendar.slug, result=result))
            if result.success:
                fleet.total_stats.add(result.stats)

        try:
            fleet.total_stats.users_linked = self.link_external_people_to_users()
        except Exception as exc:
            fleet.linker_error = str(exc) or type(exc).__name__
            logger.exception(
                f"Identity linking failed: {fleet.linker_error}",
                extra={"error_type": type(exc).__name__},
            )

        succeeded = sum(1 for item in fleet.results if item.result.success)
        logger.info(
            f"Fleet sync finished: {succeeded}/{len(fleet.results)} calendars succeeded",
            extra={"triggered_by": triggered_by, **fleet.total_stats.to_dict()},
        )
        return fleet
