"""
Single-request access to a Hikvision access-control terminal (ISAPI).

Every call returns either a decoded ``Page`` or a ``FetchFailure``; nothing here
retries. Retry and re-authentication policy lives in ``backend.services.paginator``.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

logger = logging.getLogger(__name__)

ACS_EVENT_PATH = "/ISAPI/AccessControl/AcsEvent?format=json"
USER_SEARCH_PATH = "/ISAPI/AccessControl/UserInfo/Search?format=json"

FailureKind = Literal["auth_expired", "http_error", "timeout", "malformed", "empty"]

# The terminal answers these for a window it holds no records for.
NO_DATA_STATUSES = {400, 404}


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


@dataclass(frozen=True)
class TimeWindow:
    start: str  # vendor timestamp, e.g. 2026-01-02T00:00:00-05:00
    end: str


@dataclass
class Page:
    items: list[dict[str, Any]] = field(default_factory=list)
    total: int | None = None


@dataclass(frozen=True)
class FetchFailure:
    kind: FailureKind
    status: int | None = None
    message: str = ""

    def describe(self) -> str:
        if self.status is not None:
            return f"{self.kind} (HTTP {self.status})"
        if self.message:
            return f"{self.kind}: {self.message}"
        return self.kind


def open_device_session(
    credentials: Credentials,
    *,
    verify_tls: bool = False,
    timeout: float = 30.0,
) -> httpx.AsyncClient:
    """Create a fresh digest-authenticated session. The caller owns and closes it."""
    return httpx.AsyncClient(
        auth=httpx.DigestAuth(credentials.username, credentials.password),
        verify=verify_tls,
        timeout=timeout,
        headers={"Accept": "application/json"},
    )


def device_url(host: str, path: str, scheme: str = "https") -> str:
    return f"{scheme}://{host}{path}"


def new_search_id(host: str) -> str:
    # Unique per search; terminals cache results by searchID.
    return f"{host}-{uuid.uuid4().hex}"


def build_event_search(
    host: str,
    window: TimeWindow,
    offset: int,
    page_size: int,
    *,
    major: int,
    minor: int,
) -> dict[str, Any]:
    return {
        "AcsEventCond": {
            "searchID": new_search_id(host),
            "searchResultPosition": offset,
            "maxResults": page_size,
            "major": major,
            "minor": minor,
            "startTime": window.start,
            "endTime": window.end,
        }
    }


def build_user_search(host: str, offset: int, page_size: int) -> dict[str, Any]:
    return {
        "UserInfoSearchCond": {
            "searchID": new_search_id(host),
            "searchResultPosition": offset,
            "maxResults": page_size,
        }
    }


async def fetch_event_page(
    session: httpx.AsyncClient,
    host: str,
    window: TimeWindow,
    offset: int,
    page_size: int,
    *,
    timeout: float,
    scheme: str = "https",
    major: int = 5,
    minor: int = 75,
) -> Page | FetchFailure:
    body = build_event_search(host, window, offset, page_size, major=major, minor=minor)
    return await _post_search(
        session,
        device_url(host, ACS_EVENT_PATH, scheme),
        body,
        timeout=timeout,
        container="AcsEvent",
        list_key="InfoList",
    )


async def fetch_user_page(
    session: httpx.AsyncClient,
    host: str,
    offset: int,
    page_size: int,
    *,
    timeout: float,
    scheme: str = "https",
) -> Page | FetchFailure:
    body = build_user_search(host, offset, page_size)
    return await _post_search(
        session,
        device_url(host, USER_SEARCH_PATH, scheme),
        body,
        timeout=timeout,
        container="UserInfoSearch",
        list_key="UserInfo",
    )


async def _post_search(
    session: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    *,
    timeout: float,
    container: str,
    list_key: str,
) -> Page | FetchFailure:
    try:
        res = await session.post(url, json=body, timeout=timeout)
    except httpx.TimeoutException as e:
        return FetchFailure("timeout", message=str(e) or type(e).__name__)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return FetchFailure("http_error", message=str(e) or type(e).__name__)

    if res.status_code == 401:
        return FetchFailure("auth_expired", status=401)
    if res.status_code in NO_DATA_STATUSES:
        return FetchFailure("empty", status=res.status_code)
    if res.status_code < 200 or res.status_code >= 300:
        logger.debug("%s answered HTTP %s: %s", url, res.status_code, res.text[:100])
        return FetchFailure("http_error", status=res.status_code)

    text = res.text
    if not text or not text.strip():
        return FetchFailure("empty")

    return decode_search_page(text, container=container, list_key=list_key)


def decode_search_page(text: str, *, container: str, list_key: str) -> Page | FetchFailure:
    try:
        payload = json.loads(text)
    except ValueError as e:
        return FetchFailure("malformed", message=f"invalid JSON: {e}")

    if not isinstance(payload, dict) or not isinstance(payload.get(container), dict):
        return FetchFailure("malformed", message=f"missing {container}")

    section = payload[container]
    items = section.get(list_key) or []
    if not isinstance(items, list):
        return FetchFailure("malformed", message=f"{list_key} is not a list")

    total = section.get("totalMatches")
    try:
        total = int(total) if total is not None else None
    except (TypeError, ValueError):
        total = None

    return Page(items=[item for item in items if isinstance(item, dict)], total=total)
