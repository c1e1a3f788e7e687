import threading
import time
import unittest
from unittest import mock

import requests
import responses

from eventsync.errors import ConfigurationError, PlatformApiError
from eventsync.models import PlatformConfig
from eventsync.platform_client import EventPlatformClient, RateLimiter

BASE_URL = "https://api.example.com"
PEOPLE_URL = f"{BASE_URL}/v1/calendar/list-people"
EVENTS_URL = f"{BASE_URL}/v1/calendar/list-events"
EVENT_URL = f"{BASE_URL}/v1/event/get"


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _person_page(start: int, count: int, has_more: bool, next_cursor: str | None) -> dict:
    return {
        "entries": [
            {"person": {"api_id": f"usr-{index}", "email": f"user{index}@example.com"}}
            for index in range(start, start + count)
        ],
        "has_more": has_more,
        "next_cursor": next_cursor,
    }


def _client(**overrides: object) -> EventPlatformClient:
    data = {"base_url": BASE_URL, "api_key": "secret", "timeout_seconds": 7}
    data.update(overrides)
    return EventPlatformClient(PlatformConfig.from_dict(data))


class RateLimiterTests(unittest.TestCase):
    def test_requests_within_budget_do_not_wait(self) -> None:
        clock = _FakeClock()
        limiter = RateLimiter(5, 1.0, clock=clock, sleep=clock.sleep)
        for _ in range(5):
            self.assertEqual(limiter.acquire(), 0.0)
        self.assertEqual(clock.sleeps, [])
        self.assertEqual(limiter.request_count, 5)

    def test_exhausted_budget_waits_for_window_reset(self) -> None:
        clock = _FakeClock()
        limiter = RateLimiter(5, 1.0, clock=clock, sleep=clock.sleep)
        issued_at: list[float] = []
        for _ in range(6):
            limiter.acquire()
            issued_at.append(clock.now)
            clock.now += 0.01

        self.assertEqual(len(clock.sleeps), 1)
        self.assertGreaterEqual(issued_at[-1] - issued_at[0], 1.0)
        for start in issued_at:
            in_window = [stamp for stamp in issued_at if start <= stamp < start + 1.0]
            self.assertLessEqual(len(in_window), 5)

    def test_window_elapsing_resets_counter(self) -> None:
        clock = _FakeClock()
        limiter = RateLimiter(2, 1.0, clock=clock, sleep=clock.sleep)
        limiter.acquire()
        limiter.acquire()
        clock.now += 1.5
        self.assertEqual(limiter.acquire(), 0.0)
        self.assertEqual(clock.sleeps, [])
        self.assertEqual(limiter.request_count, 1)

    def test_real_clock_suspends_sixth_request(self) -> None:
        limiter = RateLimiter(5, 0.3)
        started = time.monotonic()
        for _ in range(6):
            limiter.acquire()
        self.assertGreaterEqual(time.monotonic() - started, 0.3)

    def test_concurrent_callers_share_budget(self) -> None:
        clock = _FakeClock()
        lock = threading.Lock()

        def sleep(seconds: float) -> None:
            with lock:
                clock.sleep(seconds)

        limiter = RateLimiter(3, 10.0, clock=clock, sleep=sleep)
        threads = [threading.Thread(target=limiter.acquire) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(clock.sleeps), 1)
        self.assertEqual(limiter.request_count, 3)

    def test_rejects_invalid_budget(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(0, 1.0)
        with self.assertRaises(ValueError):
            RateLimiter(1, 0)


class EventPlatformClientTests(unittest.TestCase):
    @responses.activate
    def test_get_all_calendar_people_follows_cursor_until_exhausted(self) -> None:
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(0, 50, True, "c1"), status=200)
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(50, 50, True, "c2"), status=200)
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(100, 17, False, None), status=200)

        people = _client().get_all_calendar_people("cal-ext-1")

        self.assertEqual(len(people), 117)
        self.assertEqual(len(responses.calls), 3)
        self.assertEqual(people[0].api_id, "usr-0")
        self.assertEqual(people[-1].api_id, "usr-116")
        self.assertNotIn("pagination_cursor", responses.calls[0].request.url)
        self.assertIn("pagination_cursor=c1", responses.calls[1].request.url)
        self.assertIn("pagination_cursor=c2", responses.calls[2].request.url)
        self.assertIn("calendar_api_id=cal-ext-1", responses.calls[0].request.url)
        self.assertEqual(responses.calls[0].request.headers["x-luma-api-key"], "secret")

    @responses.activate
    def test_get_all_public_calendar_events_parses_entries(self) -> None:
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={
                "entries": [
                    {"event": {"api_id": "evt-1", "name": "Hack Lima", "start_at": "2026-03-01T15:00:00Z"}},
                    {"api_id": "evt-2", "name": "Top-level entry"},
                ],
                "has_more": False,
            },
            status=200,
        )

        events = _client().get_all_public_calendar_events("cal-ext-1")

        self.assertEqual([event.api_id for event in events], ["evt-1", "evt-2"])
        self.assertEqual(events[0].name, "Hack Lima")

    @responses.activate
    def test_malformed_entries_are_skipped(self) -> None:
        responses.add(
            responses.GET,
            PEOPLE_URL,
            json={"entries": [{"person": {"email": "no-id@example.com"}}, {"person": {"api_id": "usr-1"}}], "has_more": False},
            status=200,
        )
        people = _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual([person.api_id for person in people], ["usr-1"])

    @responses.activate
    def test_bad_counter_person_is_skipped_with_rest_of_page(self) -> None:
        responses.add(
            responses.GET,
            PEOPLE_URL,
            json={
                "entries": [
                    {"person": {"api_id": "usr-1", "email": "ana@example.com", "revenue_usd_cents": 1250}},
                    {"person": {"api_id": "usr-2", "revenue_usd_cents": "12.50"}},
                    {"person": {"api_id": "usr-3", "event_approved_count": "n/a"}},
                ],
                "has_more": False,
            },
            status=200,
        )
        people = _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual([person.api_id for person in people], ["usr-1"])
        self.assertEqual(people[0].revenue_usd_cents, 1250)

    @responses.activate
    def test_event_with_numeric_timestamp_is_skipped(self) -> None:
        responses.add(
            responses.GET,
            EVENTS_URL,
            json={
                "entries": [
                    {"event": {"api_id": "evt-1", "start_at": 1700000000}},
                    {"event": {"api_id": "evt-2", "description": 42}},
                    {"event": {"api_id": "evt-3", "start_at": "2026-03-01T15:00:00Z"}},
                ],
                "has_more": False,
            },
            status=200,
        )
        events = _client().get_all_public_calendar_events("cal-ext-1")
        self.assertEqual([event.api_id for event in events], ["evt-3"])

    @responses.activate
    def test_iter_calendar_people_fetches_lazily(self) -> None:
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(0, 2, True, "c1"), status=200)
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(2, 1, False, None), status=200)

        pages = _client().iter_calendar_people("cal-ext-1")
        first = next(pages)
        self.assertEqual(len(first), 2)
        self.assertEqual(len(responses.calls), 1)
        self.assertEqual([len(page) for page in pages], [1])
        self.assertEqual(len(responses.calls), 2)

    @responses.activate
    def test_has_more_without_cursor_stops(self) -> None:
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(0, 2, True, None), status=200)
        people = _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual(len(people), 2)
        self.assertEqual(len(responses.calls), 1)

    @responses.activate
    def test_error_response_raises_typed_error(self) -> None:
        responses.add(
            responses.GET,
            PEOPLE_URL,
            json={"error": {"code": "RATE_LIMITED", "message": "Too many requests"}},
            status=429,
        )
        with self.assertRaises(PlatformApiError) as ctx:
            _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual(ctx.exception.code, "RATE_LIMITED")
        self.assertEqual(ctx.exception.message, "Too many requests")
        self.assertEqual(ctx.exception.status, 429)
        self.assertEqual(len(responses.calls), 1)

    @responses.activate
    def test_error_response_without_json_body(self) -> None:
        responses.add(responses.GET, EVENTS_URL, body="upstream down", status=502)
        with self.assertRaises(PlatformApiError) as ctx:
            _client().get_all_public_calendar_events("cal-ext-1")
        self.assertEqual(ctx.exception.code, "UNKNOWN_ERROR")
        self.assertEqual(ctx.exception.message, "HTTP 502")

    @responses.activate
    def test_page_failure_mid_listing_propagates(self) -> None:
        responses.add(responses.GET, PEOPLE_URL, json=_person_page(0, 50, True, "c1"), status=200)
        responses.add(responses.GET, PEOPLE_URL, json={"error": {"code": "SERVER", "message": "boom"}}, status=500)
        with self.assertRaises(PlatformApiError):
            _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual(len(responses.calls), 2)

    @responses.activate
    def test_timeout_propagates_without_retry(self) -> None:
        responses.add(responses.GET, PEOPLE_URL, body=requests.exceptions.Timeout("timed out"))
        with self.assertRaises(requests.exceptions.Timeout):
            _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual(len(responses.calls), 1)

    def test_every_request_carries_timeout(self) -> None:
        response = mock.Mock(ok=True)
        response.json.return_value = {"entries": [], "has_more": False}
        with mock.patch("eventsync.platform_client.requests.get", return_value=response) as get:
            _client().get_all_calendar_people("cal-ext-1")
        self.assertEqual(get.call_args.kwargs["timeout"], 7)

    def test_each_page_consumes_rate_limit_budget(self) -> None:
        limiter = mock.Mock()
        client = EventPlatformClient(PlatformConfig.from_dict({"base_url": BASE_URL, "api_key": "k"}), rate_limiter=limiter)
        pages = [
            _person_page(0, 1, True, "c1"),
            _person_page(1, 1, False, None),
        ]
        responses_iter = iter(pages)

        def fake_get(*_args: object, **_kwargs: object) -> mock.Mock:
            response = mock.Mock(ok=True)
            response.json.return_value = next(responses_iter)
            return response

        with mock.patch("eventsync.platform_client.requests.get", side_effect=fake_get):
            client.get_all_calendar_people("cal-ext-1")
        self.assertEqual(limiter.acquire.call_count, 2)

    @responses.activate
    def test_get_event(self) -> None:
        responses.add(responses.GET, EVENT_URL, json={"event": {"api_id": "evt-9", "name": "Demo Day"}}, status=200)
        event = _client().get_event("evt-9")
        self.assertEqual(event.name, "Demo Day")
        self.assertIn("event_api_id=evt-9", responses.calls[0].request.url)

    def test_unconfigured_client_raises_before_network(self) -> None:
        client = EventPlatformClient(PlatformConfig.from_dict({"base_url": BASE_URL, "api_key": ""}))
        with mock.patch("eventsync.platform_client.requests.get") as get:
            with self.assertRaises(ConfigurationError):
                client.get_all_calendar_people("cal-ext-1")
        get.assert_not_called()


if __name__ == "__main__":
    unittest.main()
