from dataclasses import dataclass, field
from typing import Any, Literal

EventKind = Literal["checkIn", "checkOut", "breakOut", "breakIn", "unknown"]

CHECK_IN: EventKind = "checkIn"
CHECK_OUT: EventKind = "checkOut"
BREAK_OUT: EventKind = "breakOut"
BREAK_IN: EventKind = "breakIn"
UNKNOWN: EventKind = "unknown"

ATTENDANCE_KINDS: tuple[EventKind, ...] = (CHECK_IN, CHECK_OUT, BREAK_OUT, BREAK_IN)
ALL_KINDS: tuple[EventKind, ...] = ATTENDANCE_KINDS + (UNKNOWN,)

# Order matters: "salida almuerzo" must be tested before "salida".
STATUS_KEYWORDS: tuple[tuple[str, EventKind], ...] = (
    ("checkin", CHECK_IN),
    ("checkout", CHECK_OUT),
    ("breakout", BREAK_OUT),
    ("breakin", BREAK_IN),
)
LABEL_KEYWORDS: tuple[tuple[str, EventKind], ...] = STATUS_KEYWORDS + (
    ("salida almuerzo", BREAK_OUT),
    ("salida a almuerzo", BREAK_OUT),
    ("entrada almuerzo", BREAK_IN),
    ("entrada de almuerzo", BREAK_IN),
    ("salida", CHECK_OUT),
    ("entrada", CHECK_IN),
)


@dataclass(frozen=True)
class ClassifierRules:
    minor_codes: dict[tuple[int, int], EventKind] = field(default_factory=dict)
    entry_readers: frozenset[str] = frozenset()
    exit_readers: frozenset[str] = frozenset()
    label_keywords: tuple[tuple[str, EventKind], ...] = LABEL_KEYWORDS


DEFAULT_RULES = ClassifierRules(
    minor_codes={
        (5, 75): CHECK_IN,
        (5, 76): CHECK_OUT,
        (5, 77): BREAK_OUT,
        (5, 78): BREAK_IN,
    },
    entry_readers=frozenset({"1"}),
    exit_readers=frozenset({"2"}),
)


def build_rules(
    major: int,
    minor_kinds: dict[str, str],
    entry_readers: list[str],
    exit_readers: list[str],
) -> ClassifierRules:
    """Build rules from the ``minor=kind`` config table, skipping bad entries."""
    minor_codes: dict[tuple[int, int], EventKind] = {}
    for raw_minor, raw_kind in minor_kinds.items():
        kind = _normalize_kind(raw_kind)
        minor = _as_int(raw_minor)
        if kind is None or minor is None:
            continue
        minor_codes[(major, minor)] = kind
    return ClassifierRules(
        minor_codes=minor_codes,
        entry_readers=frozenset(r.strip() for r in entry_readers if r.strip()),
        exit_readers=frozenset(r.strip() for r in exit_readers if r.strip()),
    )


def classify_event(event: dict[str, Any], rules: ClassifierRules = DEFAULT_RULES) -> EventKind:
    """Map one raw device event to an attendance kind. Never raises."""
    status = _text(event.get("attendanceStatus")).lower()
    if status:
        for keyword, kind in STATUS_KEYWORDS:
            if keyword in status:
                return kind

    label = _text(event.get("label")).lower()
    if label:
        for keyword, kind in rules.label_keywords:
            if keyword in label:
                return kind

    major = _as_int(event.get("major"))
    minor = _as_int(event.get("minor"))
    if major is not None and minor is not None:
        kind = rules.minor_codes.get((major, minor))
        if kind is not None:
            return kind

    reader = _text(event.get("cardReaderNo"))
    if reader:
        if reader in rules.entry_readers:
            return CHECK_IN
        if reader in rules.exit_readers:
            return CHECK_OUT

    return UNKNOWN


def count_kinds(events: list[dict[str, Any]], rules: ClassifierRules = DEFAULT_RULES) -> dict[str, int]:
    counts = {kind: 0 for kind in ALL_KINDS}
    for event in events:
        counts[classify_event(event, rules)] += 1
    return counts


def _normalize_kind(value: str) -> EventKind | None:
    lowered = (value or "").strip().lower()
    for kind in ATTENDANCE_KINDS:
        if kind.lower() == lowered:
            return kind
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    try:
        return str(value).strip()
    except Exception:
        return ""


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None
