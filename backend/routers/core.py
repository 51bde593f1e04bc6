from fastapi import APIRouter

from backend.config import (
    AUTO_SYNC_ENABLED,
    AUTO_SYNC_INTERVAL_SECONDS,
    DB_PATH,
    DEVICE_SCHEME,
    DEVICE_VERIFY_TLS,
    DEVICES,
    EVENT_MAJOR,
    EVENT_MINOR,
    MAX_CONCURRENT_DEVICES,
    MAX_CONSECUTIVE_ERRORS,
    MAX_PAGES,
    MAX_RANGE_DAYS,
    MINOR_CODE_KINDS,
    PAGE_DELAY_SECONDS,
    PAGE_SIZE,
    REQUEST_TIMEOUT_SECONDS,
    SYNC_DEADLINE_SECONDS,
    TIMEZONE,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/sync")
def sync_config():
    # credentials are never echoed back
    return {
        "devices": list(DEVICES),
        "device_scheme": DEVICE_SCHEME,
        "device_verify_tls": DEVICE_VERIFY_TLS,
        "page_size": PAGE_SIZE,
        "max_pages": MAX_PAGES,
        "page_delay_seconds": PAGE_DELAY_SECONDS,
        "max_consecutive_errors": MAX_CONSECUTIVE_ERRORS,
        "request_timeout_seconds": REQUEST_TIMEOUT_SECONDS,
        "sync_deadline_seconds": SYNC_DEADLINE_SECONDS,
        "max_concurrent_devices": MAX_CONCURRENT_DEVICES,
        "max_range_days": MAX_RANGE_DAYS,
        "timezone": TIMEZONE,
        "event_major": EVENT_MAJOR,
        "event_minor": EVENT_MINOR,
        "minor_code_kinds": dict(MINOR_CODE_KINDS),
        "auto_sync_enabled": AUTO_SYNC_ENABLED,
        "auto_sync_interval_seconds": AUTO_SYNC_INTERVAL_SECONDS,
        "db_path": str(DB_PATH),
    }
