import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

import httpx

from backend.services.classifier import DEFAULT_RULES, ClassifierRules, count_kinds
from backend.services.device_client import (
    FetchFailure,
    Page,
    TimeWindow,
    fetch_event_page,
)

logger = logging.getLogger(__name__)

PageFetcher = Callable[[httpx.AsyncClient, int], Awaitable[Page | FetchFailure]]
SessionFactory = Callable[[], httpx.AsyncClient]
PollStatus = Literal["ok", "empty", "aborted", "error"]


@dataclass(frozen=True)
class PaginationLimits:
    page_size: int = 50
    max_pages: int = 50
    page_delay: float = 0.2
    retry_backoff: float = 1.0
    retry_backoff_max: float = 10.0
    max_consecutive_errors: int = 3
    request_timeout: float = 30.0


@dataclass
class PaginationOutcome:
    items: list[dict[str, Any]] = field(default_factory=list)
    reported_total: int | None = None
    pages: int = 0
    requests: int = 0
    aborted: bool = False
    error: str | None = None


@dataclass
class DevicePollResult:
    device: str
    events: list[dict[str, Any]] = field(default_factory=list)
    reported_total: int | None = None
    pages: int = 0
    kinds: dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    error: str | None = None

    @property
    def status(self) -> PollStatus:
        if self.aborted:
            return "aborted"
        if self.error:
            return "error"
        if not self.events:
            return "empty"
        return "ok"


def backoff_delay(limits: PaginationLimits, consecutive_errors: int) -> float:
    if limits.retry_backoff <= 0:
        return 0.0
    delay = limits.retry_backoff * (2 ** max(0, consecutive_errors - 1))
    return min(delay, limits.retry_backoff_max)


async def collect_pages(
    fetch_page: PageFetcher,
    new_session: SessionFactory,
    limits: PaginationLimits,
    *,
    label: str = "device",
) -> PaginationOutcome:
    """
    Drive ``fetch_page`` across result pages until done or aborted.

    - a page with items advances the offset by the item count
    - an empty page, the reported total, or ``max_pages`` ends the run
    - the first 401 after a success renews the session and retries for free;
      further consecutive 401s renew and count as errors
    - other failures count and back off; ``max_consecutive_errors`` aborts
    """
    outcome = PaginationOutcome()
    offset = 0
    consecutive_errors = 0
    auth_renewed = False
    decoded_any = False

    session = new_session()
    try:
        while outcome.pages < limits.max_pages:
            outcome.requests += 1
            result = await fetch_page(session, offset)

            if isinstance(result, FetchFailure):
                if result.kind == "empty":
                    if not decoded_any and not outcome.items:
                        outcome.error = "empty response"
                    break

                if result.kind == "auth_expired":
                    await session.aclose()
                    session = new_session()
                    if not auth_renewed:
                        auth_renewed = True
                        logger.debug("%s: session renewed at offset %s", label, offset)
                        continue

                consecutive_errors += 1
                outcome.error = result.describe()
                logger.warning(
                    "%s: %s at offset %s (%s/%s)",
                    label,
                    outcome.error,
                    offset,
                    consecutive_errors,
                    limits.max_consecutive_errors,
                )
                if consecutive_errors >= limits.max_consecutive_errors:
                    outcome.aborted = True
                    logger.error(
                        "%s: aborting after %s consecutive errors, keeping %s items",
                        label,
                        consecutive_errors,
                        len(outcome.items),
                    )
                    break
                delay = backoff_delay(limits, consecutive_errors)
                if delay:
                    await asyncio.sleep(delay)
                continue

            decoded_any = True
            consecutive_errors = 0
            auth_renewed = False
            outcome.error = None
            if result.total is not None:
                outcome.reported_total = result.total

            if not result.items:
                break

            outcome.pages += 1
            outcome.items.extend(result.items)
            offset += len(result.items)
            logger.debug(
                "%s: page %s brought %s items (%s/%s)",
                label,
                outcome.pages,
                len(result.items),
                len(outcome.items),
                outcome.reported_total,
            )

            if outcome.reported_total is not None and len(outcome.items) >= outcome.reported_total:
                break
            if outcome.pages >= limits.max_pages:
                logger.warning("%s: stopped at max pages (%s)", label, limits.max_pages)
                break
            if limits.page_delay:
                await asyncio.sleep(limits.page_delay)
    finally:
        await session.aclose()

    return outcome


async def poll_device_events(
    host: str,
    window: TimeWindow,
    limits: PaginationLimits,
    new_session: SessionFactory,
    *,
    scheme: str = "https",
    major: int = 5,
    minor: int = 75,
    rules: ClassifierRules = DEFAULT_RULES,
) -> DevicePollResult:
    async def fetch(session: httpx.AsyncClient, offset: int) -> Page | FetchFailure:
        return await fetch_event_page(
            session,
            host,
            window,
            offset,
            limits.page_size,
            timeout=limits.request_timeout,
            scheme=scheme,
            major=major,
            minor=minor,
        )

    outcome = await collect_pages(fetch, new_session, limits, label=host)

    events = [{**event, "device": host} for event in outcome.items]
    result = DevicePollResult(
        device=host,
        events=events,
        reported_total=outcome.reported_total,
        pages=outcome.pages,
        kinds=count_kinds(events, rules),
        aborted=outcome.aborted,
        error=outcome.error,
    )
    logger.info(
        "%s: %s events in %s pages (status=%s)",
        host,
        len(events),
        result.pages,
        result.status,
    )
    return result
