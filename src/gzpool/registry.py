from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from .channel import ChannelPair, ResultReader
from .models import Job, WorkerStatus


@dataclass(slots=True)
class WorkerUnit:
    index: int
    pid: int
    channel: ChannelPair
    status: WorkerStatus = WorkerStatus.IDLE
    job: Job | None = None
    reader: ResultReader | None = None
    jobs_processed: int = 0
    consecutive_errors: int = 0
    sentinel_sent: bool = False
    retired: bool = False
    exit_code: int | None = None

    @property
    def assignable(self) -> bool:
        return (
            self.status in (WorkerStatus.IDLE, WorkerStatus.ERROR)
            and self.job is None
            and not self.retired
            and not self.sentinel_sent
        )

    @property
    def live(self) -> bool:
        return self.status is not WorkerStatus.TERMINATED


class WorkerRegistry:
    """Status table for the pool; only the dispatch loop mutates it."""

    def __init__(self) -> None:
        self._workers: list[WorkerUnit] = []
        self._by_fd: dict[int, WorkerUnit] = {}

    def __len__(self) -> int:
        return len(self._workers)

    def add(self, worker: WorkerUnit) -> None:
        if worker.index != len(self._workers):
            raise ValueError(f"worker index {worker.index} out of order, expected {len(self._workers)}")
        self._workers.append(worker)
        if worker.channel.result_read is not None:
            self._by_fd[worker.channel.result_read] = worker

    def get(self, index: int) -> WorkerUnit:
        return self._workers[index]

    def status(self, index: int) -> WorkerStatus:
        return self._workers[index].status

    def set_status(self, index: int, status: WorkerStatus) -> None:
        self._workers[index].status = status

    def find_idle(self) -> int | None:
        for worker in self._workers:
            if worker.assignable:
                return worker.index
        return None

    def by_fd(self, fd: int) -> WorkerUnit | None:
        return self._by_fd.get(fd)

    def forget_fd(self, fd: int) -> None:
        self._by_fd.pop(fd, None)

    def all(self) -> Iterator[WorkerUnit]:
        return iter(list(self._workers))

    def live(self) -> list[WorkerUnit]:
        return [worker for worker in self._workers if worker.live]

    def busy(self) -> list[WorkerUnit]:
        return [worker for worker in self._workers if worker.status is WorkerStatus.BUSY]

    def has_capacity(self) -> bool:
        """True while some live worker can still take, or is finishing, a job."""
        return any(
            worker.live and not worker.retired and not worker.sentinel_sent for worker in self._workers
        )
