"""
SQLite persistence for findings, scan jobs, schedules, rollups and runtime
status.

Timestamps are stored as fixed-width UTC ISO-8601 strings so that string
comparison orders them correctly.
"""
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .config import MIN_SCHEDULE_INTERVAL_MINUTES
from .models import (
    Finding,
    JobMode,
    JobStatus,
    ScanJob,
    ScanSchedule,
    isoformat,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS leaks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        provider TEXT NOT NULL,
        redacted_key TEXT NOT NULL,
        key_hash TEXT NOT NULL UNIQUE,
        repo_owner TEXT NOT NULL,
        repo_name TEXT NOT NULL,
        actor_login TEXT,
        file_path TEXT NOT NULL,
        commit_sha TEXT NOT NULL,
        source_url TEXT NOT NULL,
        detected_at TEXT NOT NULL,
        added_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_leaks_detected_at ON leaks(detected_at)",
    "CREATE INDEX IF NOT EXISTS idx_leaks_provider ON leaks(provider)",
    """
    CREATE TABLE IF NOT EXISTS scan_jobs (
        id TEXT PRIMARY KEY,
        mode TEXT NOT NULL,
        query TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        error TEXT,
        note TEXT,
        inserted INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_scan_jobs_status ON scan_jobs(status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS scan_schedules (
        id TEXT PRIMARY KEY,
        interval_minutes INTEGER NOT NULL CHECK (interval_minutes >= 60),
        query TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        next_run_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_daily (
        date TEXT PRIMARY KEY,
        leaks_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leaderboard_devs (
        actor_login TEXT PRIMARY KEY,
        leak_count INTEGER NOT NULL DEFAULT 0,
        last_seen_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS worker_runtime_status (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]


def _job_from_row(row: sqlite3.Row) -> ScanJob:
    return ScanJob(
        id=row["id"],
        mode=JobMode(row["mode"]),
        query=row["query"],
        status=JobStatus(row["status"]),
        created_at=parse_timestamp(row["created_at"]),
        started_at=parse_timestamp(row["started_at"]),
        finished_at=parse_timestamp(row["finished_at"]),
        error=row["error"],
        note=row["note"],
        inserted=row["inserted"],
    )


def _schedule_from_row(row: sqlite3.Row) -> ScanSchedule:
    return ScanSchedule(
        id=row["id"],
        interval_minutes=row["interval_minutes"],
        query=row["query"],
        enabled=bool(row["enabled"]),
        next_run_at=parse_timestamp(row["next_run_at"]),
    )


class LeakDatabase:
    """
    Thin wrapper around one sqlite3 connection.

    Every public write commits before returning. The only uniqueness the
    pipeline depends on is leaks.key_hash.
    """

    def __init__(self, path: str = "leakradar.db"):
        self.path = path
        self.conn = sqlite3.connect(path, timeout=15)
        self.conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")
        self.init_schema()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def init_schema(self) -> None:
        with self.conn:
            for statement in SCHEMA:
                self.conn.execute(statement)

    def close(self) -> None:
        self.conn.close()

    # ---------------------------------------------------------------
    # Findings
    # ---------------------------------------------------------------

    def insert_finding(self, finding: Finding) -> bool:
        """Insert a finding; False when its fingerprint is already stored."""
        try:
            with self.conn:
                cursor = self.conn.execute(
                    """
                    INSERT INTO leaks (
                        provider, redacted_key, key_hash, repo_owner, repo_name,
                        actor_login, file_path, commit_sha, source_url,
                        detected_at, added_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key_hash) DO NOTHING
                    """,
                    (
                        finding.provider,
                        finding.redacted_secret,
                        finding.secret_fingerprint,
                        finding.repo_owner,
                        finding.repo_name,
                        finding.actor_login,
                        finding.file_path,
                        finding.commit_or_ref,
                        finding.source_url,
                        isoformat(finding.detected_at),
                        isoformat(finding.added_at),
                    ),
                )
        except sqlite3.IntegrityError:
            return False
        return cursor.rowcount == 1

    def get_finding(self, fingerprint: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM leaks WHERE key_hash = ?", (fingerprint,)
        ).fetchone()
        return dict(row) if row else None

    def count_findings(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM leaks").fetchone()[0]

    def bump_daily_activity(self, detected_at: datetime) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO activity_daily (date, leaks_count) VALUES (?, 1)
                ON CONFLICT(date) DO UPDATE SET leaks_count = leaks_count + 1
                """,
                (isoformat(detected_at)[:10],),
            )

    def bump_actor(self, actor_login: str, seen_at: datetime) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO leaderboard_devs (actor_login, leak_count, last_seen_at)
                VALUES (?, 1, ?)
                ON CONFLICT(actor_login) DO UPDATE SET
                    leak_count = leak_count + 1,
                    last_seen_at = excluded.last_seen_at
                """,
                (actor_login, isoformat(seen_at)),
            )

    def daily_activity(self) -> Dict[str, int]:
        rows = self.conn.execute("SELECT date, leaks_count FROM activity_daily ORDER BY date")
        return {row["date"]: row["leaks_count"] for row in rows}

    def leaderboard(self) -> Dict[str, int]:
        rows = self.conn.execute(
            "SELECT actor_login, leak_count FROM leaderboard_devs ORDER BY leak_count DESC"
        )
        return {row["actor_login"]: row["leak_count"] for row in rows}

    def purge_findings_older_than(self, cutoff: datetime) -> int:
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM leaks WHERE detected_at < ?", (isoformat(cutoff),)
            )
        return cursor.rowcount

    def rebuild_aggregates(self) -> None:
        """Recompute both rollups from the leaks table."""
        with self.conn:
            self.conn.execute("DELETE FROM activity_daily")
            self.conn.execute(
                """
                INSERT INTO activity_daily (date, leaks_count)
                SELECT substr(detected_at, 1, 10), COUNT(*)
                FROM leaks
                GROUP BY substr(detected_at, 1, 10)
                """
            )
            self.conn.execute("DELETE FROM leaderboard_devs")
            self.conn.execute(
                """
                INSERT INTO leaderboard_devs (actor_login, leak_count, last_seen_at)
                SELECT actor_login, COUNT(*), MAX(detected_at)
                FROM leaks
                WHERE actor_login IS NOT NULL
                GROUP BY actor_login
                """
            )

    # ---------------------------------------------------------------
    # Scan jobs
    # ---------------------------------------------------------------

    def create_job(
        self,
        mode: JobMode = JobMode.MANUAL,
        query: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScanJob:
        job = ScanJob(
            id=str(uuid.uuid4()),
            mode=JobMode(mode),
            query=query,
            status=JobStatus.PENDING,
            created_at=now or utcnow(),
        )
        with self.conn:
            self._insert_job(job)
        return job

    def _insert_job(self, job: ScanJob) -> None:
        self.conn.execute(
            "INSERT INTO scan_jobs (id, mode, query, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (job.id, job.mode.value, job.query, job.status.value, isoformat(job.created_at)),
        )

    def get_job(self, job_id: str) -> Optional[ScanJob]:
        row = self.conn.execute("SELECT * FROM scan_jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_from_row(row) if row else None

    def fetch_pending_jobs(self, limit: int) -> List[ScanJob]:
        """Oldest pending jobs first."""
        rows = self.conn.execute(
            """
            SELECT * FROM scan_jobs
            WHERE status = 'pending'
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_job_from_row(row) for row in rows]

    def mark_job_processing(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """pending -> processing. False if the job was not pending."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE scan_jobs SET status = 'processing', started_at = ? "
                "WHERE id = ? AND status = 'pending'",
                (isoformat(now or utcnow()), job_id),
            )
        return cursor.rowcount == 1

    def mark_job_finished(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        note: Optional[str] = None,
        inserted: int = 0,
        now: Optional[datetime] = None,
    ) -> bool:
        """processing -> done|error. False if the job was not processing."""
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal job status")
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE scan_jobs
                SET status = ?, finished_at = ?, error = ?, note = ?, inserted = ?
                WHERE id = ? AND status = 'processing'
                """,
                (status.value, isoformat(now or utcnow()), error, note, inserted, job_id),
            )
        return cursor.rowcount == 1

    # ---------------------------------------------------------------
    # Schedules
    # ---------------------------------------------------------------

    def create_schedule(
        self,
        interval_minutes: int,
        query: Optional[str] = None,
        enabled: bool = True,
        next_run_at: Optional[datetime] = None,
    ) -> ScanSchedule:
        if interval_minutes < MIN_SCHEDULE_INTERVAL_MINUTES:
            raise ValueError(
                f"Schedule interval must be at least {MIN_SCHEDULE_INTERVAL_MINUTES} minutes, "
                f"got {interval_minutes}"
            )
        now = utcnow()
        schedule = ScanSchedule(
            id=str(uuid.uuid4()),
            interval_minutes=interval_minutes,
            query=query,
            enabled=enabled,
            next_run_at=next_run_at or now + timedelta(minutes=interval_minutes),
        )
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO scan_schedules (id, interval_minutes, query, enabled, next_run_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule.id,
                    schedule.interval_minutes,
                    schedule.query,
                    int(schedule.enabled),
                    isoformat(schedule.next_run_at),
                    isoformat(now),
                ),
            )
        return schedule

    def get_schedule(self, schedule_id: str) -> Optional[ScanSchedule]:
        row = self.conn.execute(
            "SELECT * FROM scan_schedules WHERE id = ?", (schedule_id,)
        ).fetchone()
        return _schedule_from_row(row) if row else None

    def set_schedule_enabled(self, schedule_id: str, enabled: bool) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE scan_schedules SET enabled = ?, updated_at = ? WHERE id = ?",
                (int(enabled), isoformat(utcnow()), schedule_id),
            )
        return cursor.rowcount == 1

    def enqueue_due_schedules(self, now: Optional[datetime] = None) -> List[ScanJob]:
        """
        Spawn a scheduled job for every enabled schedule that is due.

        The schedule's next run moves to now + interval, so a worker that
        was down for several intervals runs a due schedule once.
        """
        now = now or utcnow()
        rows = self.conn.execute(
            """
            SELECT * FROM scan_schedules
            WHERE enabled = 1 AND next_run_at <= ?
            ORDER BY next_run_at ASC
            """,
            (isoformat(now),),
        ).fetchall()

        jobs = []
        with self.conn:
            for row in rows:
                schedule = _schedule_from_row(row)
                job = ScanJob(
                    id=str(uuid.uuid4()),
                    mode=JobMode.SCHEDULED,
                    query=schedule.query,
                    status=JobStatus.PENDING,
                    created_at=now,
                )
                self._insert_job(job)
                self.conn.execute(
                    "UPDATE scan_schedules SET next_run_at = ?, updated_at = ? WHERE id = ?",
                    (
                        isoformat(now + timedelta(minutes=schedule.interval_minutes)),
                        isoformat(now),
                        schedule.id,
                    ),
                )
                jobs.append(job)
        return jobs

    # ---------------------------------------------------------------
    # Runtime status
    # ---------------------------------------------------------------

    def upsert_runtime_status(self, key: str, value: Dict[str, Any]) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO worker_runtime_status (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), isoformat(utcnow())),
            )

    def get_runtime_status(self, key: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT value FROM worker_runtime_status WHERE key = ?", (key,)
        ).fetchone()
        return json.loads(row["value"]) if row else None
