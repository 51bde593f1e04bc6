from datetime import date as date_cls, datetime
from typing import Any, Literal

DayStatus = Literal["complete", "partial", "pending_checkout", "incomplete", "anomaly"]
BreakStatus = Literal["none", "short", "normal", "long", "incomplete", "invalid"]

PUNCH_FIELDS = ("check_in", "break_out", "break_in", "check_out")


def _minutes(clock: str) -> int:
    parsed = datetime.strptime(clock[:8], "%H:%M:%S")
    return parsed.hour * 60 + parsed.minute


def evaluate_break(
    break_out: str | None,
    break_in: str | None,
    *,
    min_minutes: int = 30,
    max_minutes: int = 120,
) -> dict[str, Any]:
    if not break_out and not break_in:
        return {"status": "none", "minutes": None}
    if not break_out or not break_in:
        return {"status": "incomplete", "minutes": None}

    try:
        minutes = _minutes(break_in) - _minutes(break_out)
    except ValueError:
        return {"status": "invalid", "minutes": None}

    if minutes < 0:
        status: BreakStatus = "invalid"
    elif minutes < min_minutes:
        status = "short"
    elif minutes > max_minutes:
        status = "long"
    else:
        status = "normal"
    return {"status": status, "minutes": minutes}


def evaluate_day(
    record: dict[str, Any],
    *,
    today: str | None = None,
    min_break_minutes: int = 30,
    max_break_minutes: int = 120,
) -> dict[str, Any]:
    """
    Derive a presentation status for one stored attendance row.

    complete: all four punches; partial: in and out but a break punch missing;
    pending_checkout: today's row still open; incomplete: in or out missing
    on a closed day; anomaly: the row was flagged during aggregation.
    """
    today = today or date_cls.today().isoformat()
    missing = [f for f in PUNCH_FIELDS if not record.get(f)]
    has_in = bool(record.get("check_in"))
    has_out = bool(record.get("check_out"))

    status: DayStatus
    if record.get("anomaly"):
        status = "anomaly"
    elif not missing:
        status = "complete"
    elif has_in and has_out:
        status = "partial"
    elif has_in and record.get("date") == today:
        status = "pending_checkout"
    else:
        status = "incomplete"

    break_info = evaluate_break(
        record.get("break_out"),
        record.get("break_in"),
        min_minutes=min_break_minutes,
        max_minutes=max_break_minutes,
    )
    return {
        "status": status,
        "missing": missing,
        "break": break_info,
        "has_issue": status != "complete" or break_info["status"] in {"short", "long", "invalid"},
    }
