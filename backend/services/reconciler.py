import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Iterable

from backend.services.aggregator import AttendanceDraft, has_times
from database.db import connect_db, upsert_attendance_record

logger = logging.getLogger(__name__)


@dataclass
class WriteStats:
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    skipped_empty: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def save_drafts(drafts: Iterable[AttendanceDraft]) -> WriteStats:
    """
    Write every draft with the conditional upsert.

    One failing record never stops the batch; each record commits on its own
    so a later failure cannot roll back earlier rows.
    """
    stats = WriteStats()
    conn = connect_db()
    try:
        for draft in drafts:
            if not has_times(draft):
                stats.skipped_empty += 1
                continue
            try:
                outcome = upsert_attendance_record(draft, conn=conn)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                stats.errors += 1
                logger.error(
                    "Failed to store %s on %s: %s",
                    draft.get("employee_id"),
                    draft.get("date"),
                    e,
                )
                continue

            if outcome == "inserted":
                stats.inserted += 1
            else:
                stats.updated += 1
    finally:
        conn.close()

    logger.info(
        "Stored attendance: %s inserted, %s updated, %s errors, %s skipped",
        stats.inserted,
        stats.updated,
        stats.errors,
        stats.skipped_empty,
    )
    return stats
