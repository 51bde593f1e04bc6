from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from backend.config import AUTO_SYNC_INTERVAL_SECONDS
from backend.services.sync import SyncRequestError, SyncScheduler
from backend.services.users import sync_device_users

router = APIRouter(prefix="/sync")


class SyncRunRequest(BaseModel):
    date: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    devices: list[str] | None = None


class AutoSyncStartRequest(BaseModel):
    interval_seconds: int | None = None


class UserSyncRequest(BaseModel):
    devices: list[str] | None = None


def _scheduler(request: Request) -> SyncScheduler:
    return request.app.state.sync_scheduler


@router.post("/run")
async def run_sync_now(request: Request, payload: SyncRunRequest | None = None):
    payload = payload or SyncRunRequest()
    try:
        return await _scheduler(request).run_once(
            target_date=payload.date,
            start_date=payload.start_date,
            end_date=payload.end_date,
            devices=payload.devices,
        )
    except SyncRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/status")
def sync_status(request: Request):
    return _scheduler(request).status()


@router.post("/auto/start")
async def auto_sync_start(request: Request, payload: AutoSyncStartRequest | None = None):
    interval = (payload.interval_seconds if payload else None) or AUTO_SYNC_INTERVAL_SECONDS
    if interval < 5:
        raise HTTPException(status_code=400, detail="interval_seconds must be at least 5.")
    scheduler = _scheduler(request)
    started = scheduler.start(interval)
    return {
        "ok": started,
        "message": "Auto-sync started" if started else "Auto-sync already running",
        "interval_seconds": scheduler.interval_seconds,
    }


@router.post("/auto/stop")
async def auto_sync_stop(request: Request):
    stopped = await _scheduler(request).stop()
    return {"ok": stopped, "message": "Auto-sync stopped" if stopped else "Auto-sync was not running"}


@router.post("/users")
async def sync_users(payload: UserSyncRequest | None = None):
    try:
        return await sync_device_users(devices=payload.devices if payload else None)
    except SyncRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
