from datetime import datetime

from fastapi import APIRouter, HTTPException

from backend.config import BREAK_MAX_MINUTES, BREAK_MIN_MINUTES, MAX_RANGE_DAYS
from backend.services.day_status import evaluate_day
from database.db import get_attendance_records, get_daily_summary, get_device_users

router = APIRouter()


def _check_date(value: str | None, name: str) -> str | None:
    if value is None:
        return None
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD.")
    return value


def _with_status(record: dict) -> dict:
    return {
        **record,
        "day": evaluate_day(
            record,
            min_break_minutes=BREAK_MIN_MINUTES,
            max_break_minutes=BREAK_MAX_MINUTES,
        ),
    }


@router.get("/attendance")
def attendance(
    date: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    employee_id: str | None = None,
):
    date = _check_date(date, "date")
    start_date = _check_date(start_date, "start_date")
    end_date = _check_date(end_date, "end_date")

    if date:
        start_date = end_date = date
    if start_date and end_date:
        if end_date < start_date:
            raise HTTPException(status_code=400, detail="end_date is before start_date.")
        span = (datetime.strptime(end_date, "%Y-%m-%d") - datetime.strptime(start_date, "%Y-%m-%d")).days + 1
        if span > MAX_RANGE_DAYS:
            raise HTTPException(status_code=400, detail=f"Range is limited to {MAX_RANGE_DAYS} days.")

    rows = get_attendance_records(start_date, end_date, (employee_id or "").strip() or None)
    return [_with_status(r) for r in rows]


@router.get("/attendance/summary")
def summary(date: str):
    date = _check_date(date, "date")
    totals = get_daily_summary(date)

    statuses = {"complete": 0, "partial": 0, "pending_checkout": 0, "incomplete": 0, "anomaly": 0}
    with_issues = 0
    for record in get_attendance_records(date, date):
        day = evaluate_day(record, min_break_minutes=BREAK_MIN_MINUTES, max_break_minutes=BREAK_MAX_MINUTES)
        statuses[day["status"]] += 1
        if day["has_issue"]:
            with_issues += 1

    return {
        "date": date,
        **totals,
        "complete": statuses["complete"],
        "with_issues": with_issues,
        "statuses": statuses,
    }


@router.get("/attendance/users")
def device_users():
    return get_device_users()
