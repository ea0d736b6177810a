import hashlib
import hmac
import logging
import secrets
import sqlite3
import time
from datetime import datetime
from typing import Any, Literal, TypedDict

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    DEFAULT_EVENT_NAME,
    SESSION_TTL_HOURS,
)

logger = logging.getLogger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
SESSION_TOKEN_BYTES = 32

STUDENT_COLUMNS = (
    "id",
    "student_id",
    "full_name",
    "email",
    "section",
    "year_level",
    "major",
    "course",
    "qr_code",
    "created_at",
)
ATTENDANCE_COLUMNS = (
    "id",
    "student_id",
    "student_name",
    "student_email",
    "section",
    "year_level",
    "major",
    "course",
    "event_name",
    "login_date",
    "login_time",
    "timestamp",
)

RecordOutcome = Literal["recorded", "not_registered", "duplicate_today"]


class AttendanceRecordResult(TypedDict):
    recorded: bool
    outcome: RecordOutcome
    message: str
    student_id: str
    entry: dict[str, Any] | None


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def conflicting_field(exc: sqlite3.IntegrityError) -> str | None:
    """
    Map a UNIQUE violation to the column that caused it, e.g.
    "UNIQUE constraint failed: students.email" -> "email".
    """
    message = str(exc)
    if "UNIQUE constraint failed" not in message:
        return None
    columns = message.split(":", 1)[1].strip().split(",")
    first = columns[0].strip()
    return first.split(".", 1)[1] if "." in first else first


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_accounts
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_accounts (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )
    logger.info("Seeded default admin account %r", username)


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        section TEXT NOT NULL,
        year_level TEXT NOT NULL,
        major TEXT NOT NULL,
        course TEXT NOT NULL,
        qr_code TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # One entry per student per calendar day; the constraint is the duplicate check.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL,
        student_name TEXT NOT NULL,
        student_email TEXT NOT NULL,
        section TEXT NOT NULL,
        year_level TEXT NOT NULL,
        major TEXT NOT NULL,
        course TEXT NOT NULL,
        event_name TEXT NOT NULL,
        login_date TEXT NOT NULL,        -- YYYY-MM-DD
        login_time TEXT NOT NULL,        -- HH:MM:SS
        timestamp TEXT NOT NULL,         -- ISO-8601
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(student_id, login_date)
    )
    """)

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        last_login TIMESTAMP
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        admin_id INTEGER NOT NULL,
        session_token TEXT NOT NULL UNIQUE,
        expires_at INTEGER NOT NULL,     -- unix seconds
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (admin_id) REFERENCES admin_accounts(id) ON DELETE CASCADE
    )
    """
    )

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_attendance_login_date ON attendance_records(login_date)"
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Students (roster)
# -----------------------------
def _student_row(row) -> dict[str, Any]:
    return dict(zip(STUDENT_COLUMNS, row))


def add_student(
    *,
    student_id: str,
    full_name: str,
    email: str,
    section: str,
    year_level: str,
    major: str,
    course: str,
    qr_code: str,
) -> dict[str, Any]:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            INSERT INTO students (student_id, full_name, email, section, year_level, major, course, qr_code)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (student_id, full_name, email, section, year_level, major, course, qr_code))
        conn.commit()
        cur.execute(
            f"SELECT {', '.join(STUDENT_COLUMNS)} FROM students WHERE id = ?",
            (cur.lastrowid,),
        )
        return _student_row(cur.fetchone())
    finally:
        conn.close()


def get_student(student_id: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"SELECT {', '.join(STUDENT_COLUMNS)} FROM students WHERE student_id = ?",
        (student_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _student_row(row) if row else None


def get_all_students() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {', '.join(STUDENT_COLUMNS)}
        FROM students
        ORDER BY created_at DESC, id DESC
    """)
    rows = cur.fetchall()
    conn.close()
    return [_student_row(r) for r in rows]


def delete_student(student_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM students WHERE student_id = ?", (student_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Attendance
# -----------------------------
def _attendance_row(row) -> dict[str, Any]:
    return dict(zip(ATTENDANCE_COLUMNS, row))


def record_attendance(
    student_id: str,
    *,
    event_name: str | None = None,
    now: datetime | None = None,
) -> AttendanceRecordResult:
    """
    Log one attendance entry for a scanned student.

    The roster lookup and the insert are a single INSERT ... SELECT, so an
    unregistered student inserts nothing, and the UNIQUE(student_id,
    login_date) constraint turns a same-day repeat into a conflict instead of
    a second row. Neither case raises.
    """
    clean_id = (student_id or "").strip()
    stamp = now or datetime.now()
    login_date = stamp.strftime("%Y-%m-%d")
    login_time = stamp.strftime("%H:%M:%S")
    event = (event_name or "").strip() or DEFAULT_EVENT_NAME

    conn = connect_db()
    cur = conn.cursor()
    try:
        try:
            cur.execute(
                """
                INSERT INTO attendance_records (
                    student_id, student_name, student_email, section, year_level,
                    major, course, event_name, login_date, login_time, timestamp
                )
                SELECT student_id, full_name, email, section, year_level,
                       major, course, ?, ?, ?, ?
                FROM students
                WHERE student_id = ?
                """,
                (event, login_date, login_time, stamp.isoformat(timespec="seconds"), clean_id),
            )
        except sqlite3.IntegrityError:
            conn.rollback()
            cur.execute("SELECT full_name FROM students WHERE student_id = ?", (clean_id,))
            row = cur.fetchone()
            name = row[0] if row else clean_id
            logger.info("Duplicate scan ignored for %s on %s", clean_id, login_date)
            return {
                "recorded": False,
                "outcome": "duplicate_today",
                "message": f"{name} ({clean_id}) has already logged attendance today.",
                "student_id": clean_id,
                "entry": None,
            }

        if cur.rowcount == 0:
            logger.info("Scan for unregistered student %r", clean_id)
            return {
                "recorded": False,
                "outcome": "not_registered",
                "message": (
                    f"Student {clean_id} not found in database. "
                    "Please ensure the student is registered."
                ),
                "student_id": clean_id,
                "entry": None,
            }

        entry_id = cur.lastrowid
        conn.commit()
        cur.execute(
            f"SELECT {', '.join(ATTENDANCE_COLUMNS)} FROM attendance_records WHERE id = ?",
            (entry_id,),
        )
        entry = _attendance_row(cur.fetchone())
    finally:
        conn.close()

    logger.info("Attendance recorded for %s (%s)", entry["student_id"], entry["event_name"])
    return {
        "recorded": True,
        "outcome": "recorded",
        "message": (
            f"Attendance recorded successfully for {entry['student_name']} "
            f"({entry['student_id']}) at {login_time}."
        ),
        "student_id": clean_id,
        "entry": entry,
    }


def get_attendance_by_student(student_id: str) -> list[dict[str, Any]]:
    return get_attendance_records(student_id=student_id)


def get_attendance_records(
    date: str | None = None,
    *,
    start: str | None = None,
    end: str | None = None,
    student_id: str | None = None,
) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if date:
        where.append("login_date = ?")
        params.append(date)
    if start:
        where.append("login_date >= ?")
        params.append(start)
    if end:
        where.append("login_date <= ?")
        params.append(end)
    if student_id:
        where.append("student_id = ?")
        params.append(student_id)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {', '.join(ATTENDANCE_COLUMNS)}
        FROM attendance_records
        WHERE {" AND ".join(where)}
        ORDER BY timestamp DESC, id DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_attendance_row(r) for r in rows]


def group_attendance_by_student(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Collapse entries into one row per student with every login, oldest first.
    Student details come from the first (most recent) entry seen.
    """
    grouped: dict[str, dict[str, Any]] = {}
    for r in records:
        key = r["student_id"]
        if key not in grouped:
            grouped[key] = {
                "student_id": r["student_id"],
                "student_name": r["student_name"],
                "email": r["student_email"],
                "section": r["section"],
                "year_level": r["year_level"],
                "major": r["major"],
                "course": r["course"],
                "event_name": r["event_name"],
                "login_timestamps": [],
            }
        grouped[key]["login_timestamps"].append(
            {"date": r["login_date"], "time": r["login_time"], "timestamp": r["timestamp"]}
        )

    for g in grouped.values():
        g["login_timestamps"].sort(key=lambda e: e["timestamp"])
    return list(grouped.values())


def delete_attendance_record(entry_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance_records WHERE id = ?", (entry_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Admin accounts
# -----------------------------
def create_admin_user(username: str, password: str) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO admin_accounts (username, password_hash)
            VALUES (?, ?)
            """,
            (clean_username, _hash_password(clean_password)),
        )
        admin_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()
    return admin_id


def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM admin_accounts
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()

    if not row:
        conn.close()
        return None

    admin_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        conn.close()
        return None

    cur.execute(
        "UPDATE admin_accounts SET last_login = CURRENT_TIMESTAMP WHERE id = ?",
        (admin_id,),
    )
    conn.commit()
    conn.close()
    return {"id": admin_id, "username": saved_username}


def get_admin_accounts() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, username, created_at, last_login
        FROM admin_accounts
        ORDER BY created_at DESC, id DESC
    """)
    rows = cur.fetchall()
    conn.close()
    return [
        {"id": r[0], "username": r[1], "created_at": r[2], "last_login": r[3]}
        for r in rows
    ]


def delete_admin_user(admin_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM admin_accounts WHERE id = ?", (admin_id,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def change_admin_password(admin_id: int, current_password: str, new_password: str) -> bool:
    """Returns False when the current password does not match."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT password_hash FROM admin_accounts WHERE id = ?", (admin_id,))
    row = cur.fetchone()
    if not row or not _verify_password(current_password.strip(), row[0]):
        conn.close()
        return False

    cur.execute(
        "UPDATE admin_accounts SET password_hash = ? WHERE id = ?",
        (_hash_password(new_password.strip()), admin_id),
    )
    conn.commit()
    conn.close()
    return True


# -----------------------------
# Admin sessions
# -----------------------------
def create_admin_session(admin_id: int, *, now: float | None = None) -> dict[str, Any]:
    issued = int(now if now is not None else time.time())
    expires_at = issued + SESSION_TTL_HOURS * 3600
    token = secrets.token_urlsafe(SESSION_TOKEN_BYTES)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO admin_sessions (admin_id, session_token, expires_at)
        VALUES (?, ?, ?)
        """,
        (admin_id, token, expires_at),
    )
    conn.commit()
    conn.close()
    return {"token": token, "admin_id": admin_id, "expires_at": expires_at}


def validate_admin_session(token: str, *, now: float | None = None) -> dict[str, Any] | None:
    """
    Return the session joined with its admin, or None if the token is
    unknown or expired (expires_at <= now).
    """
    if not token:
        return None
    current = now if now is not None else time.time()

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT s.session_token, s.admin_id, s.expires_at, a.username
        FROM admin_sessions s
        JOIN admin_accounts a ON a.id = s.admin_id
        WHERE s.session_token = ?
        """,
        (token,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    session_token, admin_id, expires_at, username = row
    if int(expires_at) <= current:
        return None
    return {
        "token": session_token,
        "admin_id": int(admin_id),
        "username": username,
        "expires_at": int(expires_at),
    }


def delete_admin_session(token: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM admin_sessions WHERE session_token = ?", (token,))
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


def purge_expired_sessions(*, now: float | None = None) -> int:
    current = int(now if now is not None else time.time())
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM admin_sessions WHERE expires_at <= ?", (current,))
    removed = cur.rowcount
    conn.commit()
    conn.close()
    return removed


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_tables()
    print(f"[setup] Database ready at {DB_PATH}")
