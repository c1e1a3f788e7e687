import sqlite3
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from eventsync.models import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
    ExternalEvent,
    ExternalPerson,
    ReconcileCounts,
)
from eventsync.state_store import StateStore, new_id


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "nested" / "state.db"))
        self.calendar = self.store.create_calendar(external_id="cal-ext-1", slug="lima", name="Lima Builders")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _person(self, external_id: str = "usr-1", email: str | None = "ana@example.com") -> ExternalPerson:
        return ExternalPerson(
            id=new_id(),
            external_id=external_id,
            calendar_id=self.calendar.id,
            email=email,
            tags=["builder"],
            last_seen_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )

    def test_calendar_defaults(self) -> None:
        self.assertTrue(self.calendar.is_active)
        self.assertEqual(self.calendar.total_people, 0)
        self.assertIsNone(self.calendar.last_sync_at)
        self.assertIsNotNone(self.calendar.created_at)
        self.assertEqual(self.calendar, self.store.get_calendar(self.calendar.id))

    def test_calendar_slug_and_external_id_are_unique(self) -> None:
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.create_calendar(external_id="cal-ext-2", slug="lima", name="Other")
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.create_calendar(external_id="cal-ext-1", slug="other", name="Other")

    def test_list_calendars_active_only(self) -> None:
        other = self.store.create_calendar(external_id="cal-ext-2", slug="cusco", name="Cusco")
        self.assertTrue(self.store.set_calendar_active(other.id, False))
        self.assertEqual([c.slug for c in self.store.list_calendars(active_only=True)], ["lima"])
        self.assertEqual(len(self.store.list_calendars()), 2)
        self.assertFalse(self.store.set_calendar_active("missing", False))

    def test_totals_update_independently(self) -> None:
        self.store.update_calendar_totals(self.calendar.id, total_people=12)
        self.store.update_calendar_totals(self.calendar.id, total_events=3)
        calendar = self.store.get_calendar(self.calendar.id)
        self.assertEqual(calendar.total_people, 12)
        self.assertEqual(calendar.total_events, 3)

    def test_record_calendar_sync(self) -> None:
        synced_at = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)
        self.store.record_calendar_sync(self.calendar.id, status=RUN_STATUS_FAILED, synced_at=synced_at)
        calendar = self.store.get_calendar(self.calendar.id)
        self.assertEqual(calendar.last_sync_status, RUN_STATUS_FAILED)
        self.assertEqual(calendar.last_sync_at, synced_at)

    def test_person_round_trip_and_uniqueness(self) -> None:
        person = self._person()
        self.store.insert_person(person)
        loaded = self.store.find_person(self.calendar.id, "usr-1")
        self.assertEqual(loaded.id, person.id)
        self.assertEqual(loaded.tags, ["builder"])
        self.assertIsNone(loaded.user_id)
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.insert_person(self._person())

    def test_update_person_keeps_user_id(self) -> None:
        person = self._person()
        self.store.insert_person(person)
        user_id = self.store.add_user("ana@example.com")
        self.assertTrue(self.store.link_person(person.id, user_id))

        person.name = "Ana"
        person.user_id = None
        self.store.update_person(person)

        loaded = self.store.find_person(self.calendar.id, "usr-1")
        self.assertEqual(loaded.name, "Ana")
        self.assertEqual(loaded.user_id, user_id)

    def test_link_person_only_when_unlinked(self) -> None:
        person = self._person()
        self.store.insert_person(person)
        first = self.store.add_user("ana@example.com")
        second = self.store.add_user("other@example.com")
        self.assertTrue(self.store.link_person(person.id, first))
        self.assertFalse(self.store.link_person(person.id, second))
        self.assertEqual(self.store.find_person(self.calendar.id, "usr-1").user_id, first)
        self.assertEqual(self.store.unlinked_people(), [])

    def test_event_round_trip(self) -> None:
        event = ExternalEvent(
            id=new_id(),
            external_id="evt-1",
            calendar_id=self.calendar.id,
            name="Hack Lima",
            starts_at=datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc),
            hosts=[{"name": "Ana"}],
            raw_data={"api_id": "evt-1"},
            content_hash="abc",
            is_virtual=True,
        )
        self.store.insert_event(event)
        loaded = self.store.find_event("luma", "evt-1")
        self.assertEqual(loaded.starts_at, event.starts_at)
        self.assertIsNone(loaded.ends_at)
        self.assertTrue(loaded.is_virtual)
        self.assertEqual(loaded.hosts, [{"name": "Ana"}])
        self.assertEqual(loaded.raw_data, {"api_id": "evt-1"})
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.insert_event(ExternalEvent(id=new_id(), external_id="evt-1", calendar_id=self.calendar.id, name="Dup"))

    def test_user_email_is_unique(self) -> None:
        self.store.add_user("ana@example.com")
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.add_user("ana@example.com")
        self.assertIsNone(self.store.find_user_by_email("nobody@example.com"))

    def test_sync_run_finishes_once(self) -> None:
        run = self.store.start_sync_run(calendar_id=self.calendar.id, triggered_by="manual")
        self.assertEqual(self.store.get_sync_run(run.id).status, RUN_STATUS_RUNNING)

        finished = self.store.finish_sync_run(
            run_id=run.id,
            status=RUN_STATUS_COMPLETED,
            duration_ms=40,
            people=ReconcileCounts(found=3, created=2, updated=1),
            events=ReconcileCounts(found=1, created=1),
        )
        self.assertTrue(finished)
        again = self.store.finish_sync_run(run_id=run.id, status=RUN_STATUS_FAILED, duration_ms=1, error_message="late")
        self.assertFalse(again)

        loaded = self.store.get_sync_run(run.id)
        self.assertEqual(loaded.status, RUN_STATUS_COMPLETED)
        self.assertEqual(loaded.people_found, 3)
        self.assertEqual(loaded.people_created, 2)
        self.assertEqual(loaded.events_created, 1)
        self.assertIsNone(loaded.error_message)
        self.assertIsNotNone(loaded.completed_at)

    def test_failed_run_keeps_error_details(self) -> None:
        run = self.store.start_sync_run(calendar_id=self.calendar.id, triggered_by="scheduled")
        self.store.finish_sync_run(
            run_id=run.id,
            status=RUN_STATUS_FAILED,
            duration_ms=5,
            error_message="boom",
            error_details={"error": "boom", "type": "RuntimeError"},
        )
        loaded = self.store.get_sync_run(run.id)
        self.assertEqual(loaded.triggered_by, "scheduled")
        self.assertEqual(loaded.error_details["type"], "RuntimeError")

    def test_recent_sync_runs_newest_first(self) -> None:
        other = self.store.create_calendar(external_id="cal-ext-2", slug="cusco", name="Cusco")
        first = self.store.start_sync_run(calendar_id=self.calendar.id, triggered_by="manual")
        second = self.store.start_sync_run(calendar_id=other.id, triggered_by="manual")
        third = self.store.start_sync_run(calendar_id=self.calendar.id, triggered_by="manual")

        self.assertEqual([run.id for run in self.store.recent_sync_runs()], [third.id, second.id, first.id])
        self.assertEqual(
            [run.id for run in self.store.recent_sync_runs(calendar_id=self.calendar.id)],
            [third.id, first.id],
        )
        self.assertEqual(len(self.store.recent_sync_runs(limit=1)), 1)


if __name__ == "__main__":
    unittest.main()
