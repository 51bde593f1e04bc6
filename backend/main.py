import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import AUTO_SYNC_ENABLED, AUTO_SYNC_INTERVAL_SECONDS, LOG_LEVEL
from backend.routers import attendance, core, sync
from backend.services.sync import SyncScheduler
from database.db import create_tables

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
# digest auth answers every first request with a 401 challenge
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(title="Punchsync API")


# -----------------------------
# CORS (dashboard dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Startup / shutdown
# -----------------------------
@app.on_event("startup")
async def _startup():
    create_tables()
    app.state.sync_scheduler = SyncScheduler()
    if AUTO_SYNC_ENABLED:
        app.state.sync_scheduler.start(AUTO_SYNC_INTERVAL_SECONDS)
    logger.info("Punchsync API ready (auto-sync %s)", "on" if AUTO_SYNC_ENABLED else "off")


@app.on_event("shutdown")
async def _shutdown():
    scheduler: SyncScheduler | None = getattr(app.state, "sync_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()


app.include_router(core.router)
app.include_router(sync.router)
app.include_router(attendance.router)
