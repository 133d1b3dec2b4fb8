from __future__ import annotations

import sqlite3
import uuid
from pathlib import Path
from typing import Protocol

from .models import JobOutcome, JobRecord
from .utils import utc_now_iso


class JobRecordSink(Protocol):
    def emit(self, record: JobRecord) -> None: ...


class MemoryRecordSink:
    """Keeps records in a list; used by tests and dry runs."""

    def __init__(self) -> None:
        self.records: list[JobRecord] = []

    def emit(self, record: JobRecord) -> None:
        self.records.append(record)

    def by_outcome(self, outcome: JobOutcome) -> list[JobRecord]:
        return [record for record in self.records if record.outcome is outcome]


def _row_to_record(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        filename=row["filename"],
        worker_index=row["worker_index"],
        worker_pid=row["worker_pid"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        outcome=JobOutcome(row["outcome"]),
        error=row["error"],
    )


class Store:
    """Append-only SQLite persistence for runs and their job records."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.run_id: str | None = None

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                archive TEXT NOT NULL,
                pool_size INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                status TEXT NOT NULL,
                error TEXT
            );

            CREATE TABLE IF NOT EXISTS job_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL REFERENCES runs(run_id),
                filename TEXT NOT NULL,
                worker_index INTEGER,
                worker_pid INTEGER,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                outcome TEXT NOT NULL,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_job_records_run_outcome
                ON job_records(run_id, outcome);
            """
        )
        self.conn.commit()

    def begin_run(self, archive: str, pool_size: int) -> str:
        run_id = uuid.uuid4().hex
        self.conn.execute(
            """
            INSERT INTO runs(run_id, archive, pool_size, started_at, finished_at, status, error)
            VALUES (?, ?, ?, ?, NULL, ?, NULL)
            """,
            (run_id, archive, pool_size, utc_now_iso(), "running"),
        )
        self.conn.commit()
        self.run_id = run_id
        return run_id

    def finish_run(self, run_id: str, *, status: str, error: str | None = None) -> None:
        self.conn.execute(
            "UPDATE runs SET finished_at = ?, status = ?, error = ? WHERE run_id = ?",
            (utc_now_iso(), status, error, run_id),
        )
        self.conn.commit()

    def emit(self, record: JobRecord) -> None:
        if self.run_id is None:
            raise RuntimeError("begin_run must be called before records are emitted")
        self.conn.execute(
            """
            INSERT INTO job_records(
                run_id, filename, worker_index, worker_pid, started_at, finished_at, outcome, error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.run_id,
                record.filename,
                record.worker_index,
                record.worker_pid,
                record.started_at,
                record.finished_at,
                record.outcome.value,
                record.error,
            ),
        )
        self.conn.commit()

    def latest_run(self) -> sqlite3.Row | None:
        return self.conn.execute("SELECT * FROM runs ORDER BY started_at DESC LIMIT 1").fetchone()

    def summary_counts(self, run_id: str) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT outcome, COUNT(*) AS count FROM job_records WHERE run_id = ? GROUP BY outcome",
            (run_id,),
        ).fetchall()
        output = {outcome.value: 0 for outcome in JobOutcome}
        for row in rows:
            output[str(row["outcome"])] = int(row["count"])
        return output

    def list_records(self, run_id: str, outcome: JobOutcome | None = None) -> list[JobRecord]:
        if outcome is None:
            rows = self.conn.execute(
                "SELECT * FROM job_records WHERE run_id = ? ORDER BY id",
                (run_id,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM job_records WHERE run_id = ? AND outcome = ? ORDER BY id",
                (run_id, outcome.value),
            ).fetchall()
        return [_row_to_record(row) for row in rows]
