import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]

load_dotenv(dotenv_path=BASE_DIR / ".env", override=False)


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, float(value.strip()))
    except ValueError:
        return fallback


def _parse_mapping(value: str | None, fallback: dict[str, str]) -> dict[str, str]:
    """Parse ``key=value,key=value`` pairs; malformed pairs are ignored."""
    if not value:
        return dict(fallback)
    parsed: dict[str, str] = {}
    for item in value.split(","):
        key, sep, raw = item.partition("=")
        if not sep or not key.strip() or not raw.strip():
            continue
        parsed[key.strip()] = raw.strip()
    return parsed or dict(fallback)


DB_PATH = Path(os.getenv("PUNCHSYNC_DB_PATH", BASE_DIR / "database" / "punchsync.db"))
LOG_LEVEL = (os.getenv("PUNCHSYNC_LOG_LEVEL") or "INFO").strip().upper() or "INFO"

# -----------------------------
# Devices
# -----------------------------
DEVICES = _parse_csv(os.getenv("PUNCHSYNC_DEVICES"), [])
DEVICE_USERNAME = (os.getenv("PUNCHSYNC_DEVICE_USERNAME") or "").strip()
DEVICE_PASSWORD = os.getenv("PUNCHSYNC_DEVICE_PASSWORD") or ""
DEVICE_SCHEME = (os.getenv("PUNCHSYNC_DEVICE_SCHEME") or "https").strip().lower() or "https"
DEVICE_VERIFY_TLS = _parse_bool(os.getenv("PUNCHSYNC_DEVICE_VERIFY_TLS"), False)

# Per-device clock correction in hours, e.g. "172.31.0.164=-13"
DEVICE_CLOCK_SHIFTS = _parse_mapping(os.getenv("PUNCHSYNC_DEVICE_CLOCK_SHIFTS"), {})

# -----------------------------
# Pagination / retries
# -----------------------------
VENDOR_MAX_PAGE_SIZE = 100
PAGE_SIZE = min(
    VENDOR_MAX_PAGE_SIZE,
    _parse_int(os.getenv("PUNCHSYNC_PAGE_SIZE"), 50, minimum=1),
)
MAX_PAGES = _parse_int(os.getenv("PUNCHSYNC_MAX_PAGES"), 50, minimum=1)
PAGE_DELAY_SECONDS = _parse_float(os.getenv("PUNCHSYNC_PAGE_DELAY_SECONDS"), 0.2)
RETRY_BACKOFF_SECONDS = _parse_float(os.getenv("PUNCHSYNC_RETRY_BACKOFF_SECONDS"), 1.0)
RETRY_BACKOFF_MAX_SECONDS = _parse_float(os.getenv("PUNCHSYNC_RETRY_BACKOFF_MAX_SECONDS"), 10.0)
MAX_CONSECUTIVE_ERRORS = _parse_int(os.getenv("PUNCHSYNC_MAX_CONSECUTIVE_ERRORS"), 3, minimum=1)
REQUEST_TIMEOUT_SECONDS = _parse_float(os.getenv("PUNCHSYNC_REQUEST_TIMEOUT_SECONDS"), 30.0, minimum=1.0)

# -----------------------------
# Sync cycle
# -----------------------------
SYNC_DEADLINE_SECONDS = _parse_float(os.getenv("PUNCHSYNC_SYNC_DEADLINE_SECONDS"), 300.0, minimum=1.0)
MAX_CONCURRENT_DEVICES = _parse_int(os.getenv("PUNCHSYNC_MAX_CONCURRENT_DEVICES"), 4, minimum=1)
MAX_RANGE_DAYS = _parse_int(os.getenv("PUNCHSYNC_MAX_RANGE_DAYS"), 31, minimum=1)
TIMEZONE = (os.getenv("PUNCHSYNC_TIMEZONE") or "America/Bogota").strip() or "America/Bogota"
AUTO_SYNC_ENABLED = _parse_bool(os.getenv("PUNCHSYNC_AUTO_SYNC_ENABLED"), False)
AUTO_SYNC_INTERVAL_SECONDS = _parse_int(os.getenv("PUNCHSYNC_AUTO_SYNC_INTERVAL_SECONDS"), 300, minimum=5)

# -----------------------------
# Event search + classification
# -----------------------------
EVENT_MAJOR = _parse_int(os.getenv("PUNCHSYNC_EVENT_MAJOR"), 5)
EVENT_MINOR = _parse_int(os.getenv("PUNCHSYNC_EVENT_MINOR"), 75)

# Minor codes under EVENT_MAJOR. Installation dependent, override per site.
MINOR_CODE_KINDS = _parse_mapping(
    os.getenv("PUNCHSYNC_MINOR_CODE_KINDS"),
    {"75": "checkIn", "76": "checkOut", "77": "breakOut", "78": "breakIn"},
)
ENTRY_READERS = _parse_csv(os.getenv("PUNCHSYNC_ENTRY_READERS"), ["1"])
EXIT_READERS = _parse_csv(os.getenv("PUNCHSYNC_EXIT_READERS"), ["2"])

# Device user group id -> department label, e.g. "1=Sales,2=Support"
DEPARTMENT_NAMES = _parse_mapping(os.getenv("PUNCHSYNC_DEPARTMENT_NAMES"), {})

# -----------------------------
# Day status
# -----------------------------
BREAK_MIN_MINUTES = _parse_int(os.getenv("PUNCHSYNC_BREAK_MIN_MINUTES"), 30)
BREAK_MAX_MINUTES = _parse_int(os.getenv("PUNCHSYNC_BREAK_MAX_MINUTES"), 120)
