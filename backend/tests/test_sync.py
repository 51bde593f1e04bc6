import asyncio
from datetime import datetime, timezone

import httpx
import pytest

import backend.config as config
import database.db as db
from backend.services.device_client import Credentials
from backend.services.paginator import PaginationLimits
from backend.services.sync import (
    SyncRequestError,
    SyncScheduler,
    SyncSettings,
    load_sync_settings,
    new_summary,
    resolve_window,
    run_sync,
)
from fakes import FakeTerminal, punch, session_factory_for

A, B, C = "10.0.0.1", "10.0.0.2", "10.0.0.3"


def _settings(*devices: str, **overrides) -> SyncSettings:
    values = {
        "devices": devices or (A, B),
        "credentials": Credentials("admin", "secret"),
        "limits": PaginationLimits(page_size=2, page_delay=0, retry_backoff=0),
        "timezone": "America/Bogota",
        "deadline_seconds": 10.0,
    }
    values.update(overrides)
    return SyncSettings(**values)


def _run(settings: SyncSettings, terminals: dict, **kwargs):
    return asyncio.run(
        run_sync(settings, session_factory=session_factory_for(terminals), **kwargs)
    )


# -----------------------------
# Window
# -----------------------------
def test_window_for_single_day_uses_deployment_offset():
    window = resolve_window(_settings(), target_date="2026-01-02")
    assert window.start == "2026-01-02T00:00:00-05:00"
    assert window.end == "2026-01-02T23:59:59-05:00"
    assert (window.start_date, window.end_date) == ("2026-01-02", "2026-01-02")


def test_window_defaults_to_today_in_deployment_zone():
    # 03:00 UTC is still the previous day in Bogota
    now = datetime(2026, 1, 3, 3, 0, tzinfo=timezone.utc)
    window = resolve_window(_settings(), now=now)
    assert window.start_date == "2026-01-02"


def test_window_range_and_single_ended_range():
    window = resolve_window(_settings(), start_date="2026-01-01", end_date="2026-01-31")
    assert window.start.startswith("2026-01-01T00:00:00")
    assert window.end.startswith("2026-01-31T23:59:59")

    window = resolve_window(_settings(), start_date="2026-01-05")
    assert (window.start_date, window.end_date) == ("2026-01-05", "2026-01-05")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"target_date": "02/01/2026"},
        {"start_date": "2026-01-10", "end_date": "2026-01-09"},
        {"start_date": "2026-01-01", "end_date": "2026-02-01"},
    ],
)
def test_window_rejects_bad_requests(kwargs):
    with pytest.raises(SyncRequestError):
        resolve_window(_settings(), **kwargs)


# -----------------------------
# Sync cycle
# -----------------------------
def _floor_terminals() -> dict:
    return {
        A: FakeTerminal(events=[
            punch("E1", "2026-01-02T08:00:00-05:00", 75),
            punch("E1", "2026-01-02T17:00:00-05:00", 76),
            punch("E2", "2026-01-02T08:00:00-05:00", 75, name="Luis Mora"),
            {"attendanceStatus": "UNKNOWN_STATUS", "major": 9, "minor": 1, "employeeNoString": "E1",
             "time": "2026-01-02T09:00:00-05:00"},
        ]),
        B: FakeTerminal(events=[punch("E2", "2026-01-02T07:55:00-05:00", 75, name="Luis Mora")]),
        C: FakeTerminal(script=[401] * 10),
    }


def test_sync_merges_devices_and_isolates_failures(temp_db):
    terminals = _floor_terminals()
    summary = _run(_settings(A, B, C), terminals, target_date="2026-01-02")

    assert summary["success"] is True
    assert summary["error"] is None
    assert summary["window"] == {"start": "2026-01-02T00:00:00-05:00", "end": "2026-01-02T23:59:59-05:00"}
    assert summary["devices"][A]["status"] == "ok"
    assert summary["devices"][B]["status"] == "ok"
    assert summary["devices"][C]["status"] == "aborted"
    assert summary["events_total"] == 5
    assert summary["kinds"]["checkIn"] == 3
    assert summary["kinds"]["checkOut"] == 1
    assert summary["dropped"]["unknown"] == 1
    assert summary["records"] == 2
    assert (summary["inserted"], summary["updated"], summary["errors"]) == (2, 0, 0)
    assert summary["finished_at"] is not None

    assert terminals[A].searches[0]["startTime"] == "2026-01-02T00:00:00-05:00"

    e1 = db.get_attendance_record("E1", "2026-01-02")
    assert (e1["check_in"], e1["check_out"], e1["device"]) == ("08:00:00", "17:00:00", A)
    e2 = db.get_attendance_record("E2", "2026-01-02")
    assert (e2["check_in"], e2["device"], e2["name"]) == ("07:55:00", "multiple", "Luis Mora")


def test_repeating_a_sync_changes_nothing(temp_db):
    _run(_settings(A, B), _floor_terminals(), target_date="2026-01-02")
    before = db.get_attendance_records("2026-01-02", "2026-01-02")

    summary = _run(_settings(A, B), _floor_terminals(), target_date="2026-01-02")
    after = db.get_attendance_records("2026-01-02", "2026-01-02")

    assert (summary["inserted"], summary["updated"]) == (0, 2)
    strip = lambda rows: [{k: v for k, v in r.items() if k != "updated_at"} for r in rows]  # noqa: E731
    assert strip(before) == strip(after)


def test_break_punches_from_a_later_sync_fill_the_record(temp_db):
    _run(_settings(A), _floor_terminals(), target_date="2026-01-02")
    lunch = {A: FakeTerminal(events=[
        punch("E1", "2026-01-02T12:00:00-05:00", 77),
        punch("E1", "2026-01-02T13:00:00-05:00", 78),
    ])}
    _run(_settings(A), lunch, target_date="2026-01-02")

    e1 = db.get_attendance_record("E1", "2026-01-02")
    assert (e1["check_in"], e1["check_out"], e1["break_out"], e1["break_in"]) == (
        "08:00:00",
        "17:00:00",
        "12:00:00",
        "13:00:00",
    )


def test_device_subset(temp_db):
    terminals = _floor_terminals()
    summary = _run(_settings(A, B), terminals, target_date="2026-01-02", devices=[B])
    assert list(summary["devices"]) == [B]
    assert terminals[A].searches == []


def test_unknown_device_is_a_request_error(temp_db):
    with pytest.raises(SyncRequestError):
        _run(_settings(A), {}, devices=["10.9.9.9"])


def test_missing_configuration_is_a_failed_run(temp_db):
    summary = _run(SyncSettings(devices=(), credentials=Credentials("a", "b")), {}, target_date="2026-01-02")
    assert summary["success"] is False
    assert summary["error"] == "no devices configured"

    summary = _run(_settings(A, credentials=None), {}, target_date="2026-01-02")
    assert summary["success"] is False
    assert summary["error"] == "device credentials are not configured"


def test_all_devices_failing_fails_the_run(temp_db):
    terminals = {A: FakeTerminal(script=[500] * 5), B: FakeTerminal(script=[401] * 5)}
    summary = _run(_settings(A, B), terminals, target_date="2026-01-02")
    assert summary["success"] is False
    assert summary["error"] == "all devices failed"
    assert summary["records"] == 0


def test_deadline_cancels_slow_devices(temp_db):
    async def stall(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    terminals = {
        A: FakeTerminal(events=[punch("E1", "2026-01-02T08:00:00-05:00", 75)]),
        B: FakeTerminal(script=[stall]),
    }
    summary = _run(_settings(A, B, deadline_seconds=0.3), terminals, target_date="2026-01-02")

    assert summary["devices"][B]["status"] == "timeout"
    assert summary["devices"][A]["status"] == "ok"
    assert summary["success"] is True
    assert db.get_attendance_record("E1", "2026-01-02")["check_in"] == "08:00:00"


def test_settings_snapshot_reads_config_at_call_time(monkeypatch):
    monkeypatch.setattr(config, "DEVICES", [A, B])
    monkeypatch.setattr(config, "DEVICE_USERNAME", "admin")
    monkeypatch.setattr(config, "DEVICE_PASSWORD", "secret")
    monkeypatch.setattr(config, "PAGE_SIZE", 500)
    monkeypatch.setattr(config, "MINOR_CODE_KINDS", {"90": "checkIn"})

    settings = load_sync_settings()
    assert settings.devices == (A, B)
    assert settings.credentials == Credentials("admin", "secret")
    assert settings.limits.page_size == config.VENDOR_MAX_PAGE_SIZE
    assert settings.rules.minor_codes == {(config.EVENT_MAJOR, 90): "checkIn"}

    monkeypatch.setattr(config, "DEVICE_PASSWORD", "")
    assert load_sync_settings().credentials is None


# -----------------------------
# Scheduler
# -----------------------------
def _done_summary():
    summary = new_summary()
    summary["success"] = True
    summary["finished_at"] = "2026-01-02T10:00:00"
    return summary


def test_overlapping_runs_are_skipped():
    async def go():
        gate = asyncio.Event()
        calls = []

        async def runner(settings, **kwargs):
            calls.append(kwargs)
            await gate.wait()
            return _done_summary()

        scheduler = SyncScheduler(settings_loader=SyncSettings, runner=runner)
        first = asyncio.create_task(scheduler.run_once(target_date="2026-01-02"))
        await asyncio.sleep(0)
        assert scheduler.in_progress is True

        second = await scheduler.run_once()
        gate.set()
        return await first, second, calls, scheduler

    first, second, calls, scheduler = asyncio.run(go())
    assert second["skipped"] is True
    assert first["success"] is True
    assert calls == [{"target_date": "2026-01-02"}]
    assert scheduler.in_progress is False
    assert scheduler.last_run == "2026-01-02T10:00:00"
    assert scheduler.last_result is first


def test_request_error_releases_the_guard():
    async def runner(settings, **kwargs):
        raise SyncRequestError("bad date")

    async def go():
        scheduler = SyncScheduler(settings_loader=SyncSettings, runner=runner)
        with pytest.raises(SyncRequestError):
            await scheduler.run_once(target_date="nope")
        return scheduler

    scheduler = asyncio.run(go())
    assert scheduler.in_progress is False
    assert scheduler.last_result is None


def test_crashing_runner_becomes_failed_summary():
    async def runner(settings, **kwargs):
        raise RuntimeError("boom")

    scheduler = SyncScheduler(settings_loader=SyncSettings, runner=runner)
    result = asyncio.run(scheduler.run_once())
    assert result["success"] is False
    assert "boom" in result["error"]
    assert scheduler.in_progress is False


def test_periodic_loop_start_and_stop():
    async def go():
        calls = []

        async def runner(settings, **kwargs):
            calls.append(1)
            return _done_summary()

        scheduler = SyncScheduler(settings_loader=SyncSettings, runner=runner)
        assert scheduler.start(60) is True
        assert scheduler.start(60) is False
        await asyncio.sleep(0.05)
        status = scheduler.status()
        stopped = await scheduler.stop()
        again = await scheduler.stop()
        return calls, status, stopped, again, scheduler

    calls, status, stopped, again, scheduler = asyncio.run(go())
    assert calls == [1]
    assert status["running"] is True
    assert status["interval_seconds"] == 60
    assert status["next_run"] is not None
    assert (stopped, again) == (True, False)
    assert scheduler.is_running() is False
    assert scheduler.next_run is None


def test_stopping_mid_run_cancels_device_polls(temp_db):
    async def stall(request):
        await asyncio.sleep(3)
        return httpx.Response(200)

    async def go():
        terminals = {A: FakeTerminal(script=[stall]), B: FakeTerminal(script=[stall])}
        settings = _settings(A, B)

        async def runner(settings, **kwargs):
            return await run_sync(settings, session_factory=session_factory_for(terminals), **kwargs)

        scheduler = SyncScheduler(settings_loader=lambda: settings, runner=runner)
        scheduler.start(60)
        await asyncio.sleep(0.2)
        in_flight = scheduler.in_progress
        await scheduler.stop()
        left = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        return in_flight, left, scheduler

    in_flight, left, scheduler = asyncio.run(go())
    assert in_flight is True
    assert left == []
    assert scheduler.in_progress is False
    assert scheduler.last_result is None
