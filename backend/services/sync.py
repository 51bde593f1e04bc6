import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable, Iterable, TypedDict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

import backend.config as config
from backend.services.aggregator import (
    AggregationResult,
    aggregate_events,
    build_clock_corrections,
    extract_employee_id,
)
from backend.services.classifier import ALL_KINDS, DEFAULT_RULES, ClassifierRules, build_rules
from backend.services.device_client import Credentials, TimeWindow, open_device_session
from backend.services.paginator import DevicePollResult, PaginationLimits, poll_device_events
from backend.services.reconciler import WriteStats, save_drafts
from database.db import get_departments, get_known_names

logger = logging.getLogger(__name__)

DeviceSessionFactory = Callable[[str], httpx.AsyncClient]

FAILED_STATUSES = {"aborted", "error", "timeout"}


class SyncRequestError(ValueError):
    """Bad caller input: malformed or inverted dates, oversize range, unknown device."""


# -----------------------------
# Settings snapshot
# -----------------------------
@dataclass(frozen=True)
class SyncSettings:
    devices: tuple[str, ...] = ()
    credentials: Credentials | None = None
    scheme: str = "https"
    verify_tls: bool = False
    limits: PaginationLimits = field(default_factory=PaginationLimits)
    deadline_seconds: float = 300.0
    max_concurrent_devices: int = 4
    max_range_days: int = 31
    timezone: str = "America/Bogota"
    event_major: int = 5
    event_minor: int = 75
    rules: ClassifierRules = field(default_factory=lambda: DEFAULT_RULES)
    clock_shifts: dict[str, str] = field(default_factory=dict)
    department_names: dict[str, str] = field(default_factory=dict)


def load_sync_settings() -> SyncSettings:
    """Snapshot ``backend.config`` as it is right now."""
    credentials = None
    if config.DEVICE_USERNAME and config.DEVICE_PASSWORD:
        credentials = Credentials(config.DEVICE_USERNAME, config.DEVICE_PASSWORD)

    return SyncSettings(
        devices=tuple(config.DEVICES),
        credentials=credentials,
        scheme=config.DEVICE_SCHEME,
        verify_tls=config.DEVICE_VERIFY_TLS,
        limits=PaginationLimits(
            page_size=min(config.PAGE_SIZE, config.VENDOR_MAX_PAGE_SIZE),
            max_pages=config.MAX_PAGES,
            page_delay=config.PAGE_DELAY_SECONDS,
            retry_backoff=config.RETRY_BACKOFF_SECONDS,
            retry_backoff_max=config.RETRY_BACKOFF_MAX_SECONDS,
            max_consecutive_errors=config.MAX_CONSECUTIVE_ERRORS,
            request_timeout=config.REQUEST_TIMEOUT_SECONDS,
        ),
        deadline_seconds=config.SYNC_DEADLINE_SECONDS,
        max_concurrent_devices=config.MAX_CONCURRENT_DEVICES,
        max_range_days=config.MAX_RANGE_DAYS,
        timezone=config.TIMEZONE,
        event_major=config.EVENT_MAJOR,
        event_minor=config.EVENT_MINOR,
        rules=build_rules(
            config.EVENT_MAJOR,
            config.MINOR_CODE_KINDS,
            config.ENTRY_READERS,
            config.EXIT_READERS,
        ),
        clock_shifts=dict(config.DEVICE_CLOCK_SHIFTS),
        department_names=dict(config.DEPARTMENT_NAMES),
    )


def deployment_zone(settings: SyncSettings) -> tzinfo:
    try:
        return ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, falling back to UTC", settings.timezone)
        return timezone.utc


# -----------------------------
# Time window
# -----------------------------
@dataclass(frozen=True)
class SyncWindow:
    start: str
    end: str
    start_date: str
    end_date: str

    def as_time_window(self) -> TimeWindow:
        return TimeWindow(start=self.start, end=self.end)


def _parse_day(value: str, field_name: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except (AttributeError, ValueError):
        raise SyncRequestError(f"{field_name} must be YYYY-MM-DD, got {value!r}")


def resolve_window(
    settings: SyncSettings,
    target_date: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    now: datetime | None = None,
) -> SyncWindow:
    """
    Turn request dates into a vendor time window in the deployment zone.

    An explicit range wins over ``target_date``; with neither, today is used.
    A range given with only one end covers that single day.
    """
    tz = deployment_zone(settings)

    if start_date or end_date:
        first = _parse_day(start_date or end_date, "start_date")
        last = _parse_day(end_date or start_date, "end_date")
    elif target_date:
        first = last = _parse_day(target_date, "date")
    else:
        current = now.astimezone(tz) if now else datetime.now(tz)
        first = last = current.date()

    if last < first:
        raise SyncRequestError("end_date is before start_date")
    span = (last - first).days + 1
    if span > settings.max_range_days:
        raise SyncRequestError(f"range covers {span} days, limit is {settings.max_range_days}")

    return SyncWindow(
        start=datetime.combine(first, datetime.min.time(), tzinfo=tz).isoformat(),
        end=datetime.combine(last, datetime.max.time().replace(microsecond=0), tzinfo=tz).isoformat(),
        start_date=first.isoformat(),
        end_date=last.isoformat(),
    )


# -----------------------------
# Run summary
# -----------------------------
class DeviceReport(TypedDict):
    status: str  # ok | empty | aborted | error | timeout
    events: int
    pages: int
    reported_total: int | None
    kinds: dict[str, int]
    error: str | None


class SyncRunSummary(TypedDict):
    success: bool
    skipped: bool
    error: str | None
    window: dict[str, str] | None
    devices: dict[str, DeviceReport]
    events_total: int
    kinds: dict[str, int]
    dropped: dict[str, int]
    records: int
    inserted: int
    updated: int
    errors: int
    skipped_empty: int
    anomalies: int
    started_at: str
    finished_at: str | None
    elapsed_seconds: float


def new_summary() -> SyncRunSummary:
    return SyncRunSummary(
        success=False,
        skipped=False,
        error=None,
        window=None,
        devices={},
        events_total=0,
        kinds={kind: 0 for kind in ALL_KINDS},
        dropped={"unknown": 0, "no_employee": 0, "bad_timestamp": 0},
        records=0,
        inserted=0,
        updated=0,
        errors=0,
        skipped_empty=0,
        anomalies=0,
        started_at=datetime.now().isoformat(timespec="seconds"),
        finished_at=None,
        elapsed_seconds=0.0,
    )


def skipped_summary() -> SyncRunSummary:
    summary = new_summary()
    summary["skipped"] = True
    summary["error"] = "sync already in progress"
    summary["finished_at"] = summary["started_at"]
    return summary


def failed_summary(message: str) -> SyncRunSummary:
    summary = new_summary()
    return _finish(summary, time.monotonic(), error=message)


def _finish(summary: SyncRunSummary, started: float, *, error: str | None = None) -> SyncRunSummary:
    if error is not None:
        summary["success"] = False
        summary["error"] = error
    summary["finished_at"] = datetime.now().isoformat(timespec="seconds")
    summary["elapsed_seconds"] = round(time.monotonic() - started, 3)
    return summary


def _device_report(result: DevicePollResult) -> DeviceReport:
    return DeviceReport(
        status=result.status,
        events=len(result.events),
        pages=result.pages,
        reported_total=result.reported_total,
        kinds=dict(result.kinds),
        error=result.error,
    )


def _failed_report(status: str, error: str) -> DeviceReport:
    return DeviceReport(
        status=status,
        events=0,
        pages=0,
        reported_total=None,
        kinds={},
        error=error,
    )


# -----------------------------
# Sync cycle
# -----------------------------
async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    tasks = [t for t in tasks if not t.done()]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def wait_with_deadline(tasks: Iterable[asyncio.Task], deadline: float) -> set[asyncio.Task]:
    """
    Wait for every task until the deadline and return the ones cut off.

    Late tasks are cancelled and awaited. If the caller is cancelled while
    waiting, all tasks are cancelled before the cancellation propagates.
    """
    tasks = list(tasks)
    try:
        _, pending = await asyncio.wait(tasks, timeout=deadline)
    except asyncio.CancelledError:
        await cancel_tasks(tasks)
        raise
    await cancel_tasks(pending)
    return pending


def select_devices(settings: SyncSettings, devices: list[str] | None) -> list[str]:
    if not devices:
        return list(settings.devices)
    requested = list(dict.fromkeys(d.strip() for d in devices if d and d.strip()))
    unknown = [d for d in requested if d not in settings.devices]
    if unknown:
        raise SyncRequestError(f"unknown device(s): {', '.join(unknown)}")
    return requested


def default_session_factory(settings: SyncSettings) -> DeviceSessionFactory:
    credentials = settings.credentials

    def factory(host: str) -> httpx.AsyncClient:
        return open_device_session(
            credentials,
            verify_tls=settings.verify_tls,
            timeout=settings.limits.request_timeout,
        )

    return factory


def _reconcile(events: list[dict[str, Any]], settings: SyncSettings) -> tuple[AggregationResult, WriteStats]:
    employee_ids = {e for e in (extract_employee_id(ev) for ev in events) if e}
    aggregation = aggregate_events(
        events,
        rules=settings.rules,
        known_names=get_known_names(employee_ids),
        departments=get_departments(employee_ids),
        corrections=build_clock_corrections(settings.clock_shifts),
    )
    return aggregation, save_drafts(aggregation.drafts)


async def run_sync(
    settings: SyncSettings | None = None,
    *,
    target_date: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    devices: list[str] | None = None,
    session_factory: DeviceSessionFactory | None = None,
    now: datetime | None = None,
) -> SyncRunSummary:
    """
    One full cycle: poll devices concurrently, aggregate, reconcile into storage.

    Raises ``SyncRequestError`` for bad input. Everything else, including
    missing configuration and device failures, is reported in the summary.
    """
    settings = settings or load_sync_settings()
    started = time.monotonic()
    summary = new_summary()

    window = resolve_window(settings, target_date, start_date, end_date, now)
    hosts = select_devices(settings, devices)
    summary["window"] = {"start": window.start, "end": window.end}

    if not hosts:
        logger.error("Sync aborted: no devices configured")
        return _finish(summary, started, error="no devices configured")
    if settings.credentials is None:
        logger.error("Sync aborted: device credentials are not configured")
        return _finish(summary, started, error="device credentials are not configured")

    new_session = session_factory or default_session_factory(settings)

    logger.info(
        "Sync started: %s device(s), %s -> %s",
        len(hosts),
        window.start,
        window.end,
    )

    semaphore = asyncio.Semaphore(settings.max_concurrent_devices)
    time_window = window.as_time_window()

    async def poll(host: str) -> DevicePollResult:
        async with semaphore:
            return await poll_device_events(
                host,
                time_window,
                settings.limits,
                lambda: new_session(host),
                scheme=settings.scheme,
                major=settings.event_major,
                minor=settings.event_minor,
                rules=settings.rules,
            )

    tasks = {asyncio.create_task(poll(host)): host for host in hosts}
    pending = await wait_with_deadline(tasks, settings.deadline_seconds)

    events: list[dict[str, Any]] = []
    for task, host in tasks.items():
        if task in pending:
            logger.error("%s: cancelled at the %ss sync deadline", host, settings.deadline_seconds)
            summary["devices"][host] = _failed_report("timeout", "sync deadline exceeded")
            continue
        exc = task.exception()
        if exc is not None:
            logger.error("%s: poll failed: %r", host, exc)
            summary["devices"][host] = _failed_report("error", str(exc) or type(exc).__name__)
            continue
        result = task.result()
        summary["devices"][host] = _device_report(result)
        events.extend(result.events)
        for kind, count in result.kinds.items():
            summary["kinds"][kind] = summary["kinds"].get(kind, 0) + count

    summary["events_total"] = len(events)

    try:
        aggregation, stats = await asyncio.to_thread(_reconcile, events, settings)
    except sqlite3.Error as e:
        logger.error("Sync failed while reading or writing storage: %s", e)
        return _finish(summary, started, error=f"storage error: {e}")

    summary["dropped"] = dict(aggregation.dropped)
    summary["records"] = len(aggregation.drafts)
    summary["anomalies"] = aggregation.anomalies
    summary["inserted"] = stats.inserted
    summary["updated"] = stats.updated
    summary["errors"] = stats.errors
    summary["skipped_empty"] = stats.skipped_empty

    failed = [h for h, report in summary["devices"].items() if report["status"] in FAILED_STATUSES]
    summary["success"] = len(failed) < len(hosts)
    if not summary["success"]:
        summary["error"] = "all devices failed"

    _finish(summary, started)
    logger.info(
        "Sync finished in %ss: %s events, %s records (%s new, %s updated, %s errors), %s/%s devices failed",
        summary["elapsed_seconds"],
        summary["events_total"],
        summary["records"],
        summary["inserted"],
        summary["updated"],
        summary["errors"],
        len(failed),
        len(hosts),
    )
    return summary


# -----------------------------
# Scheduler
# -----------------------------
SyncRunner = Callable[..., Awaitable[SyncRunSummary]]


class SyncScheduler:
    """
    Single-flight sync runner with an optional periodic loop.

    Lives on the event loop that calls it; ``app.state`` owns one instance.
    """

    def __init__(
        self,
        settings_loader: Callable[[], SyncSettings] = load_sync_settings,
        runner: SyncRunner = run_sync,
    ):
        self._settings_loader = settings_loader
        self._runner = runner
        self._task: asyncio.Task | None = None
        self.in_progress = False
        self.interval_seconds: int | None = None
        self.last_run: str | None = None
        self.next_run: str | None = None
        self.last_result: SyncRunSummary | None = None

    async def run_once(self, **kwargs: Any) -> SyncRunSummary:
        if self.in_progress:
            logger.info("Sync requested while another is running; skipped")
            return skipped_summary()

        self.in_progress = True
        try:
            result = await self._runner(self._settings_loader(), **kwargs)
        except SyncRequestError:
            raise
        except Exception as e:
            logger.exception("Sync run crashed")
            result = failed_summary(f"sync failed: {e}")
        finally:
            self.in_progress = False

        self.last_run = result["finished_at"] or datetime.now().isoformat(timespec="seconds")
        self.last_result = result
        return result

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_seconds: int) -> bool:
        """Start the periodic loop; False if it is already running."""
        if self.is_running():
            return False
        self.interval_seconds = max(1, int(interval_seconds))
        self._task = asyncio.create_task(self._loop(self.interval_seconds))
        logger.info("Auto-sync started, every %ss", self.interval_seconds)
        return True

    async def stop(self) -> bool:
        if not self.is_running():
            self._task = None
            return False
        task = self._task
        self._task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.interval_seconds = None
        self.next_run = None
        logger.info("Auto-sync stopped")
        return True

    async def _loop(self, interval_seconds: int) -> None:
        while True:
            try:
                await self.run_once()
            except SyncRequestError as e:
                logger.error("Auto-sync rejected its own request: %s", e)
            self.next_run = (datetime.now() + timedelta(seconds=interval_seconds)).isoformat(timespec="seconds")
            await asyncio.sleep(interval_seconds)

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running(),
            "in_progress": self.in_progress,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run,
            "next_run": self.next_run,
            "last_result": self.last_result,
        }
