import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, TypedDict

from backend.services.classifier import (
    BREAK_IN,
    BREAK_OUT,
    CHECK_IN,
    CHECK_OUT,
    DEFAULT_RULES,
    UNKNOWN,
    ClassifierRules,
    classify_event,
)

logger = logging.getLogger(__name__)

MULTIPLE_DEVICES = "multiple"
UNKNOWN_NAME = "Unknown"
ANOMALY_SAME_CHECK_IN_OUT = "same_check_in_out"

TimestampCorrection = Callable[[str], str]


class AttendanceDraft(TypedDict):
    employee_id: str
    name: str
    date: str
    check_in: str | None
    check_out: str | None
    break_out: str | None
    break_in: str | None
    device: str | None
    department: str | None
    photo_url: str | None
    anomaly: str | None


@dataclass
class AggregationResult:
    drafts: list[AttendanceDraft] = field(default_factory=list)
    dropped: dict[str, int] = field(
        default_factory=lambda: {"unknown": 0, "no_employee": 0, "bad_timestamp": 0}
    )
    anomalies: int = 0


# -----------------------------
# Employee id extraction
# -----------------------------
def _from_employee_no_string(event: dict[str, Any]) -> str | None:
    return _clean(event.get("employeeNoString"))


def _from_card_no(event: dict[str, Any]) -> str | None:
    return _clean(event.get("cardNo"))


def _from_employee_no(event: dict[str, Any]) -> str | None:
    value = event.get("employeeNo")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return _clean(value)


# Tried in order; the first non-empty value wins.
EMPLOYEE_ID_EXTRACTORS: tuple[Callable[[dict[str, Any]], str | None], ...] = (
    _from_employee_no_string,
    _from_card_no,
    _from_employee_no,
)


def extract_employee_id(event: dict[str, Any]) -> str | None:
    for extractor in EMPLOYEE_ID_EXTRACTORS:
        value = extractor(event)
        if value:
            return value
    return None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.upper() == "N/A":
        return None
    return text


# -----------------------------
# Timestamps
# -----------------------------
def split_timestamp(value: Any) -> tuple[str, str] | None:
    """
    ``2025-12-04T07:40:07-05:00`` -> ``("2025-12-04", "07:40:07")``.

    The wall-clock part is kept as reported; no zone conversion happens here.
    """
    if not isinstance(value, str) or "T" not in value:
        return None
    date_part, _, time_part = value.strip().partition("T")
    clock = time_part[:8]
    try:
        datetime.strptime(date_part, "%Y-%m-%d")
        datetime.strptime(clock, "%H:%M:%S")
    except ValueError:
        return None
    return date_part, clock


def clock_shift(hours: float) -> TimestampCorrection:
    """Correction for a terminal whose clock runs a fixed number of hours off."""
    delta = timedelta(hours=hours)

    def correct(value: str) -> str:
        try:
            stamp = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            return value
        return (stamp + delta).isoformat(timespec="seconds")

    return correct


def build_clock_corrections(shifts: dict[str, str]) -> dict[str, TimestampCorrection]:
    corrections: dict[str, TimestampCorrection] = {}
    for host, raw_hours in shifts.items():
        try:
            hours = float(raw_hours)
        except (TypeError, ValueError):
            logger.warning("Ignoring clock shift %r for %s", raw_hours, host)
            continue
        if hours:
            corrections[host] = clock_shift(hours)
    return corrections


# -----------------------------
# Aggregation
# -----------------------------
@dataclass
class _Group:
    employee_id: str
    date: str
    name: str | None = None
    photo_url: str | None = None
    devices: set[str] = field(default_factory=set)
    times: dict[str, list[str]] = field(
        default_factory=lambda: {CHECK_IN: [], CHECK_OUT: [], BREAK_OUT: [], BREAK_IN: []}
    )


def aggregate_events(
    events: Iterable[dict[str, Any]],
    *,
    rules: ClassifierRules = DEFAULT_RULES,
    known_names: dict[str, str] | None = None,
    departments: dict[str, str] | None = None,
    corrections: dict[str, TimestampCorrection] | None = None,
) -> AggregationResult:
    """Reduce raw device events to one draft per (employee_id, date)."""
    known_names = known_names or {}
    departments = departments or {}
    corrections = corrections or {}
    result = AggregationResult()
    groups: dict[tuple[str, str], _Group] = {}

    for event in events:
        kind = classify_event(event, rules)
        if kind == UNKNOWN:
            result.dropped["unknown"] += 1
            continue

        employee_id = extract_employee_id(event)
        if not employee_id:
            result.dropped["no_employee"] += 1
            continue

        device = _clean(event.get("device"))
        raw_time = event.get("time")
        if device in corrections and isinstance(raw_time, str):
            raw_time = corrections[device](raw_time)
        parts = split_timestamp(raw_time)
        if parts is None:
            result.dropped["bad_timestamp"] += 1
            continue
        date, clock = parts

        group = groups.get((employee_id, date))
        if group is None:
            group = _Group(employee_id=employee_id, date=date)
            groups[(employee_id, date)] = group

        group.times[kind].append(clock)
        if device:
            group.devices.add(device)
        if not group.name:
            group.name = _clean(event.get("name"))
        if not group.photo_url:
            group.photo_url = _clean(event.get("pictureURL"))

    for group in groups.values():
        draft = _reduce_group(group, known_names, departments)
        if draft is None:
            continue
        if draft["anomaly"]:
            result.anomalies += 1
        result.drafts.append(draft)

    return result


def _reduce_group(
    group: _Group,
    known_names: dict[str, str],
    departments: dict[str, str],
) -> AttendanceDraft | None:
    for bucket in group.times.values():
        bucket.sort()

    check_in = group.times[CHECK_IN][0] if group.times[CHECK_IN] else None
    check_out = group.times[CHECK_OUT][-1] if group.times[CHECK_OUT] else None
    break_out = group.times[BREAK_OUT][0] if group.times[BREAK_OUT] else None
    break_in = group.times[BREAK_IN][-1] if group.times[BREAK_IN] else None

    anomaly = None
    if check_in is not None and check_in == check_out:
        # one punch read both ways; keep the check-in, distrust the check-out
        check_out = None
        anomaly = ANOMALY_SAME_CHECK_IN_OUT
        logger.warning(
            "%s %s: check-in equals check-out (%s), check-out dropped",
            group.employee_id,
            group.date,
            check_in,
        )

    if check_in is None and check_out is None and break_out is None and break_in is None:
        return None

    if len(group.devices) == 1:
        device = next(iter(group.devices))
    elif group.devices:
        device = MULTIPLE_DEVICES
    else:
        device = None

    return AttendanceDraft(
        employee_id=group.employee_id,
        name=group.name or known_names.get(group.employee_id) or UNKNOWN_NAME,
        date=group.date,
        check_in=check_in,
        check_out=check_out,
        break_out=break_out,
        break_in=break_in,
        device=device,
        department=departments.get(group.employee_id),
        photo_url=group.photo_url,
        anomaly=anomaly,
    )


def has_times(draft: AttendanceDraft) -> bool:
    return any(draft.get(key) for key in ("check_in", "check_out", "break_out", "break_in"))
