"""
PlannerBot: SQLite storage.

The roster, the availability ledger, planned sessions and reminder jobs all
live in one SQLite file so that a ledger write and the evaluation it
triggers, or a session cancellation and the deletion of its reminders, can
share a single transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

from src.data.models import (
    Availability,
    AvailabilityResponse,
    Participant,
    PlannedSession,
    ReminderJob,
    ReminderPayload,
)

logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def _parse_instant(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromisoformat(raw).astimezone(timezone.utc)


def _utc_now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


class Database:
    """Owns the SQLite file, the schema and request-scoped transactions."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        self._local = threading.local()

        # An in-memory database lives only as long as its connection, so it
        # gets one shared connection guarded by a lock.
        self._memory_conn: sqlite3.Connection | None = None
        self._memory_lock = threading.RLock()
        if db_path == ":memory:":
            self._memory_conn = self._connect(check_same_thread=False)
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self, check_same_thread: bool = True) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path, isolation_level=None, check_same_thread=check_same_thread,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Open a transaction, or join the one already open on this thread.

        Writers use BEGIN IMMEDIATE so the write lock is taken before any
        read, serializing competing read-evaluate-write sequences.
        """
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return

        if self._memory_conn is not None:
            with self._memory_lock:
                yield from self._run(self._memory_conn, immediate, close=False)
            return

        yield from self._run(self._connect(), immediate, close=True)

    def _run(
        self, conn: sqlite3.Connection, immediate: bool, close: bool,
    ) -> Iterator[sqlite3.Connection]:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        self._local.conn = conn
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.conn = None
            if close:
                conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Deferred transaction for lookups (joins an open one if present)."""
        with self.transaction(immediate=False) as conn:
            yield conn

    def _init_db(self) -> None:
        """Create all tables if they don't exist."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS participants (
                    handle        TEXT    PRIMARY KEY,
                    display_name  TEXT    NOT NULL,
                    active        INTEGER NOT NULL DEFAULT 1,
                    created_at    TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS responses (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    handle         TEXT    NOT NULL REFERENCES participants(handle),
                    day            TEXT    NOT NULL,
                    status         TEXT    NOT NULL,
                    earliest_time  TEXT,
                    updated_at     TEXT    NOT NULL,
                    UNIQUE (handle, day)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    starts_at   TEXT    NOT NULL,
                    day         TEXT    NOT NULL UNIQUE,
                    created_at  TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminder_jobs (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    function        TEXT    NOT NULL,
                    fire_at         TEXT    NOT NULL,
                    chat_id         INTEGER NOT NULL,
                    thread_id       INTEGER,
                    offset_minutes  INTEGER NOT NULL,
                    session_id      INTEGER NOT NULL,
                    session_day     TEXT    NOT NULL,
                    status          TEXT    NOT NULL DEFAULT 'pending',
                    created_at      TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_session ON reminder_jobs(session_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_day ON reminder_jobs(session_day)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_due ON reminder_jobs(status, fire_at)"
            )
        logger.debug("Planner tables initialized at %s", self._db_path)


class RosterDB:
    """Participants and their active flag."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_participant(row: sqlite3.Row) -> Participant:
        return Participant(
            handle=row["handle"],
            display_name=row["display_name"],
            active=bool(row["active"]),
        )

    def ensure(self, handle: str, display_name: str | None = None) -> Participant:
        """Return the participant, creating it (active) on first sight."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO participants (handle, display_name, active, created_at)
                VALUES (?, ?, 1, ?)
                """,
                (handle, display_name or handle, _utc_now_iso()),
            )
            if cursor.rowcount:
                logger.info("Participant added: %s", handle)
            row = conn.execute(
                "SELECT * FROM participants WHERE handle = ?", (handle,)
            ).fetchone()
        return self._row_to_participant(row)

    def get(self, handle: str) -> Participant | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM participants WHERE handle = ?", (handle,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_participant(row)

    def set_active(
        self, handle: str, active: bool, display_name: str | None = None,
    ) -> Participant:
        """Pause or unpause a participant, creating it if needed."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO participants (handle, display_name, active, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(handle) DO UPDATE SET active = excluded.active
                """,
                (handle, display_name or handle, int(active), _utc_now_iso()),
            )
            row = conn.execute(
                "SELECT * FROM participants WHERE handle = ?", (handle,)
            ).fetchone()
        logger.info("Participant %s set %s", handle, "active" if active else "inactive")
        return self._row_to_participant(row)

    def list_active(self) -> list[Participant]:
        return self.list_all(active_only=True)

    def list_all(self, active_only: bool = False) -> list[Participant]:
        query = "SELECT * FROM participants"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY created_at, handle"
        with self._db.read() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_participant(r) for r in rows]


class AvailabilityDB:
    """The availability ledger: one response per (participant, local date)."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._roster = RosterDB(db)

    @staticmethod
    def _row_to_response(row: sqlite3.Row) -> AvailabilityResponse:
        return AvailabilityResponse(
            handle=row["handle"],
            day=date.fromisoformat(row["day"]),
            status=Availability(row["status"]),
            earliest_time=_parse_instant(row["earliest_time"]),
            display_name=row["display_name"],
            active=bool(row["active"]),
        )

    def upsert(
        self,
        handle: str,
        day: date,
        status: Availability,
        earliest_time: datetime | None = None,
        display_name: str | None = None,
    ) -> AvailabilityResponse:
        """Insert or replace the response for (handle, day)."""
        with self._db.transaction() as conn:
            self._roster.ensure(handle, display_name)
            conn.execute(
                """
                INSERT INTO responses (handle, day, status, earliest_time, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(handle, day) DO UPDATE SET
                    status = excluded.status,
                    earliest_time = excluded.earliest_time,
                    updated_at = excluded.updated_at
                """,
                (
                    handle,
                    day.isoformat(),
                    status.value,
                    _iso(earliest_time) if earliest_time is not None else None,
                    _utc_now_iso(),
                ),
            )
            response = self.get(handle, day)
        logger.info("Response recorded: %s %s %s", handle, day.isoformat(), status.value)
        return response

    def get(self, handle: str, day: date) -> AvailabilityResponse | None:
        with self._db.read() as conn:
            row = conn.execute(
                """
                SELECT r.*, p.display_name, p.active
                FROM responses r JOIN participants p ON p.handle = r.handle
                WHERE r.handle = ? AND r.day = ?
                """,
                (handle, day.isoformat()),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_response(row)

    def for_date(self, day: date, active_only: bool = True) -> list[AvailabilityResponse]:
        return self.range_for(day, day, active_only=active_only)

    def range_for(
        self, start: date, end: date, active_only: bool = True,
    ) -> list[AvailabilityResponse]:
        """Responses with start <= day <= end, joined with their participant."""
        query = """
            SELECT r.*, p.display_name, p.active
            FROM responses r JOIN participants p ON p.handle = r.handle
            WHERE r.day >= ? AND r.day <= ?
        """
        if active_only:
            query += " AND p.active = 1"
        query += " ORDER BY r.day, p.created_at, r.handle"
        with self._db.read() as conn:
            rows = conn.execute(query, (start.isoformat(), end.isoformat())).fetchall()
        return [self._row_to_response(r) for r in rows]

    def mark_unanswered(
        self,
        handle: str,
        days: Iterable[date],
        status: Availability = Availability.NO,
    ) -> list[date]:
        """Record `status` on every day the participant hasn't answered yet.

        Existing responses are left untouched. Returns the days written.
        """
        written: list[date] = []
        with self._db.transaction() as conn:
            if self._roster.get(handle) is None:
                return written
            for day in days:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO responses (handle, day, status, earliest_time, updated_at)
                    VALUES (?, ?, ?, NULL, ?)
                    """,
                    (handle, day.isoformat(), status.value, _utc_now_iso()),
                )
                if cursor.rowcount:
                    written.append(day)
        if written:
            logger.info("Marked %d unanswered day(s) as %s for %s", len(written), status.value, handle)
        return written


class PromotionOutcome(Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass
class PromotionResult:
    outcome: PromotionOutcome
    session: PlannedSession | None = None

    @property
    def created(self) -> bool:
        return self.outcome is PromotionOutcome.CREATED


class SessionDB:
    """Planned sessions, at most one per local calendar date."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> PlannedSession:
        return PlannedSession(
            id=row["id"],
            starts_at=_parse_instant(row["starts_at"]),
            day=date.fromisoformat(row["day"]),
        )

    def promote(self, starts_at: datetime, day: date, today: date) -> PromotionResult:
        """Persist a session for `day` unless one is already planned for it.

        Sessions on dates before `today` are purged first, unconditionally.
        """
        with self._db.transaction() as conn:
            self.delete_past(today)
            existing = self.for_date(day)
            if existing is not None:
                logger.info("Session already planned for %s (#%d)", day.isoformat(), existing.id)
                return PromotionResult(PromotionOutcome.ALREADY_EXISTS, existing)
            try:
                cursor = conn.execute(
                    "INSERT INTO sessions (starts_at, day, created_at) VALUES (?, ?, ?)",
                    (_iso(starts_at), day.isoformat(), _utc_now_iso()),
                )
            except sqlite3.IntegrityError:
                logger.info("Concurrent promotion for %s lost the race", day.isoformat())
                return PromotionResult(PromotionOutcome.ALREADY_EXISTS, self.for_date(day))
            session = PlannedSession(
                id=int(cursor.lastrowid),
                starts_at=starts_at.astimezone(timezone.utc),
                day=day,
            )
        logger.info("Session #%d planned at %s", session.id, _iso(session.starts_at))
        return PromotionResult(PromotionOutcome.CREATED, session)

    def delete_past(self, today: date) -> int:
        """Purge sessions dated before `today` together with their reminder jobs."""
        with self._db.transaction() as conn:
            purged = conn.execute(
                "DELETE FROM sessions WHERE day < ?", (today.isoformat(),)
            ).rowcount
            jobs = conn.execute(
                "DELETE FROM reminder_jobs WHERE session_day < ?", (today.isoformat(),)
            ).rowcount
        if purged or jobs:
            logger.info("Purged %d past session(s) and %d reminder job(s)", purged, jobs)
        return purged

    def get(self, session_id: int) -> PlannedSession | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def for_date(self, day: date) -> PlannedSession | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE day = ?", (day.isoformat(),)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def upcoming(self, now: datetime) -> list[PlannedSession]:
        """Sessions starting at or after `now`, soonest first."""
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE starts_at >= ? ORDER BY starts_at",
                (_iso(now),),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def cancel(self, session_id: int) -> int:
        """Delete a session row. Reminder jobs are NOT touched here."""
        with self._db.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM sessions WHERE id = ?", (session_id,)
            ).rowcount
        if deleted:
            logger.info("Session #%d cancelled", session_id)
        return deleted


class ReminderJobDB:
    """Durable timed-job backend for reminders (implements JobBackendPort).

    `session_id` and `session_day` are indexed columns, so cancellation
    targets are found without reading payloads back.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> ReminderJob:
        return ReminderJob(
            id=row["id"],
            fire_at=_parse_instant(row["fire_at"]),
            function=row["function"],
            status=row["status"],
            payload=ReminderPayload(
                chat_id=row["chat_id"],
                thread_id=row["thread_id"],
                offset_minutes=row["offset_minutes"],
                session_id=row["session_id"],
                session_day=date.fromisoformat(row["session_day"]),
            ),
        )

    def enqueue(self, fire_at: datetime, function: str, payload: ReminderPayload) -> int:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reminder_jobs
                    (function, fire_at, chat_id, thread_id, offset_minutes,
                     session_id, session_day, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                """,
                (
                    function, _iso(fire_at), payload.chat_id, payload.thread_id,
                    payload.offset_minutes, payload.session_id,
                    payload.session_day.isoformat(), _utc_now_iso(),
                ),
            )
            job_id = int(cursor.lastrowid)
        return job_id

    def cancel_batch(self, job_ids: Iterable[int]) -> int:
        """Delete jobs by id. Unknown ids are ignored."""
        ids = list(job_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._db.transaction() as conn:
            deleted = conn.execute(
                f"DELETE FROM reminder_jobs WHERE id IN ({placeholders})", ids
            ).rowcount
        return deleted

    def ids_for_session(self, session_id: int) -> list[int]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT id FROM reminder_jobs WHERE session_id = ? ORDER BY fire_at",
                (session_id,),
            ).fetchall()
        return [row["id"] for row in rows]

    def ids_for_date(self, day: date) -> list[int]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT id FROM reminder_jobs WHERE session_day = ? ORDER BY fire_at",
                (day.isoformat(),),
            ).fetchall()
        return [row["id"] for row in rows]

    def get(self, job_id: int) -> ReminderJob | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM reminder_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_job(row)

    def for_session(self, session_id: int) -> list[ReminderJob]:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM reminder_jobs WHERE session_id = ? ORDER BY fire_at",
                (session_id,),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def due(self, now: datetime) -> list[ReminderJob]:
        """Pending jobs whose fire time has arrived, oldest first."""
        with self._db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminder_jobs
                WHERE status = 'pending' AND fire_at <= ?
                ORDER BY fire_at ASC
                """,
                (_iso(now),),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def mark(self, job_id: int, status: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE reminder_jobs SET status = ? WHERE id = ?", (status, job_id)
            )
