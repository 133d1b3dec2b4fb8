from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .utils import utc_now_iso


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    TERMINATED = "terminated"


class JobOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class JobRecord:
    filename: str
    worker_index: int | None
    worker_pid: int | None
    started_at: str
    finished_at: str
    outcome: JobOutcome
    error: str | None = None


@dataclass(slots=True)
class Job:
    """A file in flight on exactly one worker."""

    filename: str
    worker_index: int | None
    worker_pid: int | None
    started_at: str
    finished_at: str | None = None
    outcome: JobOutcome | None = None
    error: str | None = None

    def finish(self, outcome: JobOutcome, error: str | None = None) -> JobRecord:
        self.finished_at = utc_now_iso()
        self.outcome = outcome
        self.error = error
        return JobRecord(
            filename=self.filename,
            worker_index=self.worker_index,
            worker_pid=self.worker_pid,
            started_at=self.started_at,
            finished_at=self.finished_at,
            outcome=outcome,
            error=error,
        )


@dataclass(slots=True)
class RunSummary:
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    workers: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed
