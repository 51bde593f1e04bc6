import asyncio

import httpx

from backend.services.device_client import TimeWindow, fetch_event_page
from backend.services.paginator import (
    PaginationLimits,
    backoff_delay,
    collect_pages,
    poll_device_events,
)
from fakes import FakeTerminal, punch

WINDOW = TimeWindow("2026-01-02T00:00:00-05:00", "2026-01-02T23:59:59-05:00")
FAST = PaginationLimits(page_size=2, page_delay=0, retry_backoff=0)


def _events(n: int) -> list[dict]:
    return [punch(f"E{i}", f"2026-01-02T08:{i:02d}:00", 75) for i in range(n)]


class CountingFactory:
    def __init__(self, terminal: FakeTerminal):
        self.terminal = terminal
        self.created = 0

    def __call__(self) -> httpx.AsyncClient:
        self.created += 1
        return self.terminal.session()


def _poll(terminal: FakeTerminal, limits: PaginationLimits = FAST):
    factory = CountingFactory(terminal)
    result = asyncio.run(poll_device_events("10.0.0.1", WINDOW, limits, factory))
    return result, factory


def test_collects_every_page_until_total():
    terminal = FakeTerminal(events=_events(5))
    result, factory = _poll(terminal)

    assert len(result.events) == 5
    assert result.pages == 3
    assert result.reported_total == 5
    assert result.status == "ok"
    assert [s["searchResultPosition"] for s in terminal.searches] == [0, 2, 4]
    assert all(e["device"] == "10.0.0.1" for e in result.events)
    assert result.kinds["checkIn"] == 5
    assert factory.created == 1


def test_stops_on_empty_page_without_total():
    terminal = FakeTerminal(events=_events(4), report_total=False)
    result, _ = _poll(terminal)

    assert len(result.events) == 4
    assert result.reported_total is None
    # third request returns no items and ends the run
    assert [s["searchResultPosition"] for s in terminal.searches] == [0, 2, 4]


def test_max_pages_bounds_the_run():
    terminal = FakeTerminal(events=_events(10), report_total=False)
    limits = PaginationLimits(page_size=2, max_pages=3, page_delay=0, retry_backoff=0)
    result, _ = _poll(terminal, limits)

    assert result.pages == 3
    assert len(result.events) == 6
    assert len(terminal.searches) == 3


def test_no_data_status_on_first_page_flags_device():
    terminal = FakeTerminal(script=[404])
    result, _ = _poll(terminal)
    assert result.events == []
    assert result.status == "error"
    assert result.error == "empty response"


def test_zero_events_is_empty_not_error():
    terminal = FakeTerminal(events=[])
    result, _ = _poll(terminal)
    assert result.status == "empty"
    assert result.error is None


def test_single_expired_session_is_renewed_for_free():
    terminal = FakeTerminal(events=_events(3), script=[401])
    result, factory = _poll(terminal)

    assert len(result.events) == 3
    assert result.status == "ok"
    assert factory.created == 2


def test_repeated_401_aborts_device():
    terminal = FakeTerminal(script=[401] * 10)
    limits = PaginationLimits(page_size=2, page_delay=0, retry_backoff=0, max_consecutive_errors=3)
    result, factory = _poll(terminal, limits)

    assert result.aborted is True
    assert result.status == "aborted"
    assert result.events == []
    assert "auth_expired" in result.error
    # one free renewal, then three counted failures
    assert len(terminal.script) == 10 - 4
    assert factory.created == 5


def test_transient_errors_are_retried_at_same_offset():
    terminal = FakeTerminal(events=_events(3), script=[500, 503])
    result, _ = _poll(terminal)

    assert len(result.events) == 3
    assert result.status == "ok"
    assert [s["searchResultPosition"] for s in terminal.searches] == [0, 2]


def test_abort_keeps_partial_items():
    terminal = FakeTerminal(events=_events(6), script=[None, 500, 500, 500])
    result, _ = _poll(terminal)

    assert result.aborted is True
    assert len(result.events) == 2
    assert result.reported_total == 6


def test_collect_pages_closes_every_session():
    closed = []

    class TrackingClient(httpx.AsyncClient):
        async def aclose(self):
            closed.append(self)
            await super().aclose()

    terminal = FakeTerminal(events=_events(1), script=[401])

    def new_session():
        return TrackingClient(transport=httpx.MockTransport(terminal.handler))

    async def fetch(session, offset):
        return await fetch_event_page(session, "10.0.0.1", WINDOW, offset, 2, timeout=5.0)

    outcome = asyncio.run(collect_pages(fetch, new_session, FAST))
    assert len(outcome.items) == 1
    assert len(closed) == 2


def test_backoff_doubles_and_caps():
    limits = PaginationLimits(retry_backoff=1.0, retry_backoff_max=5.0)
    assert [backoff_delay(limits, n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]
    assert backoff_delay(PaginationLimits(retry_backoff=0), 3) == 0.0
