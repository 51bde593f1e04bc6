import asyncio
import logging
import sqlite3
from typing import Any

import httpx

from backend.services.device_client import FetchFailure, Page, fetch_user_page
from backend.services.paginator import collect_pages
from backend.services.sync import (
    DeviceSessionFactory,
    SyncSettings,
    default_session_factory,
    load_sync_settings,
    select_devices,
    wait_with_deadline,
)
from database.db import upsert_device_users

logger = logging.getLogger(__name__)

UNASSIGNED_DEPARTMENT = "Unassigned"


def device_user_from_info(info: dict[str, Any], department_names: dict[str, str]) -> dict[str, Any] | None:
    """Map one ``UserInfo`` entry to a ``device_users`` row, or None without an employeeNo."""
    employee_no = str(info.get("employeeNo") or "").strip()
    if not employee_no:
        return None

    group = info.get("groupId") or info.get("deptID")
    group = str(group).strip() if group not in (None, "") else ""
    if group and group in department_names:
        department = department_names[group]
    elif group:
        department = f"Group {group}"
    else:
        department = UNASSIGNED_DEPARTMENT

    valid = info.get("Valid") if isinstance(info.get("Valid"), dict) else {}
    enabled = valid.get("enable", info.get("enable", True))

    return {
        "employee_no": employee_no,
        "name": (str(info.get("name") or "").strip() or None),
        "department": department,
        "user_type": (str(info.get("userType") or "").strip() or None),
        "status": "active" if enabled else "inactive",
    }


async def sync_device_users(
    settings: SyncSettings | None = None,
    *,
    devices: list[str] | None = None,
    session_factory: DeviceSessionFactory | None = None,
) -> dict[str, Any]:
    """
    Pull the user directory from each terminal into ``device_users``.

    A user enrolled on several terminals is written once; the first terminal
    listed wins for conflicting fields.

    Terminals still answering at the sync deadline are cancelled and reported
    as failed; the others are stored regardless.
    """
    settings = settings or load_sync_settings()
    hosts = select_devices(settings, devices)
    result: dict[str, Any] = {
        "success": False,
        "error": None,
        "devices": {},
        "users": 0,
        "created": 0,
        "updated": 0,
        "unchanged": 0,
    }
    if not hosts:
        result["error"] = "no devices configured"
        return result
    if settings.credentials is None:
        result["error"] = "device credentials are not configured"
        return result

    new_session = session_factory or default_session_factory(settings)
    limits = settings.limits
    semaphore = asyncio.Semaphore(settings.max_concurrent_devices)

    async def pull(host: str):
        async def fetch(session: httpx.AsyncClient, offset: int) -> Page | FetchFailure:
            return await fetch_user_page(
                session,
                host,
                offset,
                limits.page_size,
                timeout=limits.request_timeout,
                scheme=settings.scheme,
            )

        async with semaphore:
            return await collect_pages(fetch, lambda: new_session(host), limits, label=f"{host} users")

    tasks = {asyncio.create_task(pull(host)): host for host in hosts}
    pending = await wait_with_deadline(tasks, settings.deadline_seconds)

    users: dict[str, dict[str, Any]] = {}
    for task, host in tasks.items():
        if task in pending:
            logger.error("%s: user directory cut off at the %ss deadline", host, settings.deadline_seconds)
            result["devices"][host] = {"users": 0, "aborted": True, "error": "sync deadline exceeded"}
            continue
        exc = task.exception()
        if exc is not None:
            logger.error("%s: user directory pull failed: %r", host, exc)
            result["devices"][host] = {"users": 0, "aborted": True, "error": str(exc) or type(exc).__name__}
            continue
        outcome = task.result()
        result["devices"][host] = {
            "users": len(outcome.items),
            "aborted": outcome.aborted,
            "error": outcome.error,
        }
        for info in outcome.items:
            user = device_user_from_info(info, settings.department_names)
            if user is not None:
                users.setdefault(user["employee_no"], user)

    try:
        counts = await asyncio.to_thread(upsert_device_users, list(users.values()))
    except sqlite3.Error as e:
        logger.error("Failed to store device users: %s", e)
        result["error"] = f"storage error: {e}"
        return result

    result.update(counts)
    result["users"] = len(users)
    result["success"] = any(not d["aborted"] and not d["error"] for d in result["devices"].values())
    if not result["success"]:
        result["error"] = "all devices failed"
    logger.info(
        "User directory synced: %s users (%s created, %s updated, %s unchanged)",
        result["users"],
        result["created"],
        result["updated"],
        result["unchanged"],
    )
    return result
