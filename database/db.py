import sqlite3
from typing import Any, Iterable, Literal

from backend.config import DB_PATH

UpsertOutcome = Literal["inserted", "updated"]

TIME_FIELDS = ("check_in", "check_out", "break_out", "break_in")

RECORD_COLUMNS = (
    "id",
    "employee_id",
    "name",
    "date",
    "check_in",
    "check_out",
    "break_out",
    "break_in",
    "device",
    "department",
    "photo_url",
    "anomaly",
    "created_at",
    "updated_at",
)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=10)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    # One row per employee per day.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        employee_id TEXT NOT NULL,
        name TEXT NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD
        check_in TEXT,                   -- HH:MM:SS
        check_out TEXT,                  -- HH:MM:SS
        break_out TEXT,                  -- HH:MM:SS
        break_in TEXT,                   -- HH:MM:SS
        device TEXT,                     -- host or 'multiple'
        department TEXT,
        photo_url TEXT,
        anomaly TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(employee_id, date)
    )
    """)

    cursor.execute("""
    CREATE INDEX IF NOT EXISTS idx_attendance_records_date
    ON attendance_records(date)
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS device_users (
        employee_no TEXT PRIMARY KEY,
        name TEXT,
        department TEXT,
        user_type TEXT,
        status TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    conn.commit()
    conn.close()


# -----------------------------
# Attendance records
# -----------------------------
UPSERT_ATTENDANCE_SQL = """
INSERT INTO attendance_records (
    employee_id, name, date,
    check_in, check_out, break_out, break_in,
    device, department, photo_url, anomaly
)
VALUES (
    :employee_id, :name, :date,
    :check_in, :check_out, :break_out, :break_in,
    :device, :department, :photo_url, :anomaly
)
ON CONFLICT(employee_id, date) DO UPDATE SET
    check_in = COALESCE(excluded.check_in, attendance_records.check_in),
    check_out = COALESCE(excluded.check_out, attendance_records.check_out),
    break_out = COALESCE(excluded.break_out, attendance_records.break_out),
    break_in = COALESCE(excluded.break_in, attendance_records.break_in),
    name = CASE
        WHEN excluded.name IS NULL OR excluded.name = 'Unknown' THEN attendance_records.name
        ELSE excluded.name
    END,
    department = COALESCE(excluded.department, attendance_records.department),
    photo_url = COALESCE(excluded.photo_url, attendance_records.photo_url),
    device = CASE
        WHEN attendance_records.device = 'multiple' THEN 'multiple'
        WHEN excluded.device = 'multiple' THEN 'multiple'
        WHEN attendance_records.device IS NOT NULL
         AND excluded.device IS NOT NULL
         AND attendance_records.device != excluded.device THEN 'multiple'
        ELSE COALESCE(excluded.device, attendance_records.device)
    END,
    anomaly = CASE
        WHEN excluded.check_in IS NULL AND excluded.check_out IS NULL
            THEN attendance_records.anomaly
        WHEN COALESCE(excluded.check_out, attendance_records.check_out) IS NOT NULL
         AND COALESCE(excluded.check_out, attendance_records.check_out)
             != COALESCE(excluded.check_in, attendance_records.check_in)
            THEN NULL
        ELSE excluded.anomaly
    END,
    updated_at = CURRENT_TIMESTAMP
"""


def upsert_attendance_record(draft: dict[str, Any], *, conn: sqlite3.Connection | None = None) -> UpsertOutcome:
    """
    Insert or merge one (employee_id, date) row in a single conditional write.

    Existing values survive unless the draft brings a non-null replacement;
    the device collapses to 'multiple' once two different terminals are seen.
    """
    if not any(draft.get(key) for key in TIME_FIELDS):
        raise ValueError(f"refusing to store {draft.get('employee_id')} {draft.get('date')}: no punch times")

    params = {
        "employee_id": draft["employee_id"],
        "name": draft.get("name"),
        "date": draft["date"],
        "check_in": draft.get("check_in"),
        "check_out": draft.get("check_out"),
        "break_out": draft.get("break_out"),
        "break_in": draft.get("break_in"),
        "device": draft.get("device"),
        "department": draft.get("department"),
        "photo_url": draft.get("photo_url"),
        "anomaly": draft.get("anomaly"),
    }

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT 1
            FROM attendance_records
            WHERE employee_id = ? AND date = ?
            """,
            (params["employee_id"], params["date"]),
        )
        existed = cur.fetchone() is not None
        cur.execute(UPSERT_ATTENDANCE_SQL, params)
        if owns_conn:
            active_conn.commit()
        return "updated" if existed else "inserted"
    except sqlite3.Error:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()


def _record_from_row(row) -> dict[str, Any]:
    return dict(zip(RECORD_COLUMNS, row))


def get_attendance_record(employee_id: str, date: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {", ".join(RECORD_COLUMNS)}
        FROM attendance_records
        WHERE employee_id = ? AND date = ?
        """,
        (employee_id, date),
    )
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def get_attendance_records(
    start_date: str | None = None,
    end_date: str | None = None,
    employee_id: str | None = None,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if start_date:
        clauses.append("date >= ?")
        params.append(start_date)
    if end_date:
        clauses.append("date <= ?")
        params.append(end_date)
    if employee_id:
        clauses.append("employee_id = ?")
        params.append(employee_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {", ".join(RECORD_COLUMNS)}
        FROM attendance_records
        {where}
        ORDER BY date DESC, name COLLATE NOCASE, employee_id
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows]


def count_attendance_records() -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT COUNT(*) FROM attendance_records")
    total = int(cur.fetchone()[0])
    conn.close()
    return total


def get_daily_summary(date: str) -> dict[str, int]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            COUNT(*),
            SUM(CASE WHEN check_in IS NOT NULL AND check_out IS NOT NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN check_in IS NOT NULL AND check_out IS NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN check_in IS NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN device = 'multiple' THEN 1 ELSE 0 END),
            SUM(CASE WHEN anomaly IS NOT NULL THEN 1 ELSE 0 END)
        FROM attendance_records
        WHERE date = ?
        """,
        (date,),
    )
    row = cur.fetchone()
    conn.close()
    total, closed, open_, missing_in, multi, anomalies = row
    return {
        "total": int(total or 0),
        "checked_out": int(closed or 0),
        "pending_checkout": int(open_ or 0),
        "missing_check_in": int(missing_in or 0),
        "multiple_devices": int(multi or 0),
        "anomalies": int(anomalies or 0),
    }


def get_known_names(employee_ids: Iterable[str]) -> dict[str, str]:
    """Names from the device directory first, then from past attendance rows."""
    ids = sorted({e for e in employee_ids if e})
    if not ids:
        return {}
    placeholders = ",".join("?" for _ in ids)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT employee_id, name
        FROM attendance_records
        WHERE employee_id IN ({placeholders})
          AND name IS NOT NULL AND name != '' AND name != 'Unknown'
        ORDER BY date
        """,
        ids,
    )
    names = {str(r[0]): str(r[1]) for r in cur.fetchall()}
    cur.execute(
        f"""
        SELECT employee_no, name
        FROM device_users
        WHERE employee_no IN ({placeholders})
          AND name IS NOT NULL AND name != ''
        """,
        ids,
    )
    names.update({str(r[0]): str(r[1]) for r in cur.fetchall()})
    conn.close()
    return names


def get_departments(employee_ids: Iterable[str]) -> dict[str, str]:
    ids = sorted({e for e in employee_ids if e})
    if not ids:
        return {}
    placeholders = ",".join("?" for _ in ids)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT employee_no, department
        FROM device_users
        WHERE employee_no IN ({placeholders})
          AND department IS NOT NULL AND department != ''
        """,
        ids,
    )
    rows = cur.fetchall()
    conn.close()
    return {str(r[0]): str(r[1]) for r in rows}


# -----------------------------
# Device user directory
# -----------------------------
USER_FIELDS = ("name", "department", "user_type", "status")


def upsert_device_users(users: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Insert new users, update changed ones; returns created/updated/unchanged counts."""
    counts = {"created": 0, "updated": 0, "unchanged": 0}
    conn = connect_db()
    cur = conn.cursor()
    try:
        for user in users:
            employee_no = user["employee_no"]
            cur.execute(
                """
                SELECT name, department, user_type, status
                FROM device_users
                WHERE employee_no = ?
                """,
                (employee_no,),
            )
            row = cur.fetchone()
            values = tuple(user.get(f) for f in USER_FIELDS)
            if row is None:
                cur.execute(
                    """
                    INSERT INTO device_users (employee_no, name, department, user_type, status)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (employee_no, *values),
                )
                counts["created"] += 1
            elif tuple(row) != values:
                cur.execute(
                    """
                    UPDATE device_users
                    SET name = ?, department = ?, user_type = ?, status = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE employee_no = ?
                    """,
                    (*values, employee_no),
                )
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1
        conn.commit()
    finally:
        conn.close()
    return counts


def get_device_users() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT employee_no, name, department, user_type, status, updated_at
        FROM device_users
        ORDER BY name COLLATE NOCASE, employee_no
    """)
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "employee_no": r[0],
            "name": r[1],
            "department": r[2],
            "user_type": r[3],
            "status": r[4],
            "updated_at": r[5],
        }
        for r in rows
    ]
