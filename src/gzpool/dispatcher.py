from __future__ import annotations

import logging
import os
import selectors
import signal
from collections.abc import Iterable

from .app_logging import flush_handlers, log_with_fields
from .channel import (
    RESULT_SUCCESS,
    ChannelPair,
    FramingError,
    ResultReader,
    Role,
    encode_job,
    encode_shutdown,
    write_all,
)
from .config import PoolConfig
from .models import Job, JobOutcome, JobRecord, RunSummary, WorkerStatus
from .registry import WorkerRegistry, WorkerUnit
from .store import JobRecordSink
from .transform import TransformRunner
from .utils import utc_now_iso
from .worker import run_worker_process


class PoolError(RuntimeError):
    pass


class PoolStartupError(PoolError):
    pass


class DispatchTimeoutError(PoolError):
    pass


class PoolExhaustedError(PoolError):
    pass


class Dispatcher:
    """Fans file names out to a fixed pool of forked workers over per-worker pipes."""

    def __init__(
        self,
        pool_config: PoolConfig,
        runner: TransformRunner,
        sink: JobRecordSink,
        logger: logging.Logger,
    ) -> None:
        self.pool_config = pool_config
        self.runner = runner
        self.sink = sink
        self.logger = logger
        self.registry = WorkerRegistry()
        self.selector: selectors.BaseSelector | None = None
        self.summary = RunSummary()
        self.started = False
        self.closed = False

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.started and not self.closed:
            self.abort()

    def run(self, files: Iterable[str]) -> RunSummary:
        self.start()
        try:
            self.dispatch_all(files)
            self.shutdown()
        except BaseException as exc:
            log_with_fields(self.logger, logging.ERROR, "run_aborted", error=repr(exc))
            self.abort()
            raise
        return self.summary

    def start(self) -> None:
        if self.started:
            raise RuntimeError("dispatcher already started")
        size = self.pool_config.size
        channels: list[ChannelPair] = []
        try:
            for _ in range(size):
                channels.append(ChannelPair.create())
        except OSError as exc:
            for channel in channels:
                channel.close()
            raise PoolStartupError(f"failed to create channel pair: {exc}") from exc

        self.started = True
        flush_handlers(self.logger)
        for index, channel in enumerate(channels):
            try:
                pid = os.fork()
            except OSError as exc:
                log_with_fields(self.logger, logging.ERROR, "worker_fork_failed", worker=index, error=str(exc))
                self.abort()
                for pending in channels:
                    pending.close()
                raise PoolStartupError(f"failed to start worker {index}: {exc}") from exc
            if pid == 0:
                run_worker_process(index, channel, channels, self.runner, self.logger)
            channel.split(Role.DISPATCHER)
            self.registry.add(WorkerUnit(index=index, pid=pid, channel=channel))

        self.selector = selectors.DefaultSelector()
        for worker in self.registry.all():
            fd = worker.channel.result_read
            if fd is None:
                raise RuntimeError(f"result stream of worker {worker.index} is not open")
            os.set_blocking(fd, False)
            worker.reader = ResultReader(fd)
            self.selector.register(fd, selectors.EVENT_READ)

        self.summary.workers = size
        log_with_fields(
            self.logger,
            logging.INFO,
            "pool_started",
            size=size,
            pids=[worker.pid for worker in self.registry.all()],
            readiness_timeout_seconds=self.pool_config.readiness_timeout_seconds,
        )

    def dispatch_all(self, files: Iterable[str]) -> None:
        for name in files:
            try:
                frame = encode_job(name)
            except FramingError as exc:
                self._reject(name, str(exc))
                continue
            self.assign(name, frame)

    def assign(self, name: str, frame: bytes) -> WorkerUnit:
        """Hand one file to the lowest-numbered idle worker, waiting for results while none is idle."""
        while True:
            index = self.registry.find_idle()
            if index is None:
                if not self.registry.has_capacity():
                    raise PoolExhaustedError(f"no live workers left to process {name!r}")
                self.await_results()
                continue

            worker = self.registry.get(index)
            if worker.job is not None:
                raise RuntimeError(f"worker {index} already has {worker.job.filename!r} in flight")
            job_write = worker.channel.job_write
            try:
                if job_write is None:
                    raise BrokenPipeError(f"job stream of worker {index} is closed")
                write_all(job_write, frame)
            except BrokenPipeError:
                self._mark_terminated(worker, "job stream closed before assignment")
                continue

            worker.job = Job(filename=name, worker_index=index, worker_pid=worker.pid, started_at=utc_now_iso())
            self.registry.set_status(index, WorkerStatus.BUSY)
            self.summary.dispatched += 1
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_assigned",
                filename=name,
                worker=index,
                pid=worker.pid,
            )
            return worker

    def await_results(self) -> int:
        """Block until at least one worker reports; every ready worker is drained, not just the first."""
        if self.selector is None:
            raise RuntimeError("dispatcher is not started")
        timeout = self.pool_config.readiness_timeout_seconds
        events = self.selector.select(timeout=timeout)
        if not events:
            busy = self.registry.busy()
            log_with_fields(
                self.logger,
                logging.ERROR,
                "readiness_timeout",
                timeout_seconds=timeout,
                busy_workers=[worker.index for worker in busy],
                in_flight=[worker.job.filename for worker in busy if worker.job is not None],
            )
            raise DispatchTimeoutError(f"no worker reported within {timeout} seconds ({len(busy)} busy)")

        for key, _mask in events:
            worker = self.registry.by_fd(key.fd)
            if worker is not None:
                self._collect(worker)
        return len(events)

    def shutdown(self) -> None:
        """Send the sentinel to every live worker, wait out in-flight jobs, then reap everything."""
        for worker in self.registry.live():
            self._send_sentinel(worker)
        log_with_fields(
            self.logger,
            logging.INFO,
            "pool_draining",
            busy_workers=[worker.index for worker in self.registry.busy()],
        )
        while self.registry.busy():
            self.await_results()
        self._reap_all(terminate=False)
        log_with_fields(
            self.logger,
            logging.INFO,
            "pool_stopped",
            dispatched=self.summary.dispatched,
            succeeded=self.summary.succeeded,
            failed=self.summary.failed,
        )

    def abort(self) -> None:
        """Terminate and reap every worker still running. Safe to call more than once."""
        if self.closed:
            return
        self._reap_all(terminate=True)

    def _collect(self, worker: WorkerUnit) -> None:
        if worker.reader is None:
            raise RuntimeError(f"worker {worker.index} has no result reader")
        try:
            tokens = worker.reader.read_available()
        except FramingError as exc:
            self._mark_terminated(worker, f"corrupt result stream: {exc}")
            return
        for token in tokens:
            self._finish_job(worker, token)
        if worker.reader.eof:
            self._mark_terminated(worker, "worker exited mid-job")

    def _finish_job(self, worker: WorkerUnit, token: str) -> None:
        job = worker.job
        if job is None:
            log_with_fields(self.logger, logging.WARNING, "unexpected_result", worker=worker.index, token=token)
            return

        ok = token == RESULT_SUCCESS
        if ok:
            record = job.finish(JobOutcome.SUCCESS)
            worker.consecutive_errors = 0
            self.summary.succeeded += 1
            self.registry.set_status(worker.index, WorkerStatus.IDLE)
        else:
            record = job.finish(JobOutcome.ERROR, "transform reported failure")
            worker.consecutive_errors += 1
            self.summary.failed += 1
            self.registry.set_status(worker.index, WorkerStatus.ERROR)
        worker.job = None
        worker.jobs_processed += 1
        self._emit(record)

        cap = self.pool_config.max_consecutive_errors
        if not ok and cap and worker.consecutive_errors >= cap:
            worker.retired = True
            log_with_fields(
                self.logger,
                logging.WARNING,
                "worker_retired",
                worker=worker.index,
                consecutive_errors=worker.consecutive_errors,
            )
            self._send_sentinel(worker)

    def _reject(self, name: str, reason: str) -> None:
        now = utc_now_iso()
        self.summary.failed += 1
        self._emit(
            JobRecord(
                filename=name,
                worker_index=None,
                worker_pid=None,
                started_at=now,
                finished_at=now,
                outcome=JobOutcome.ERROR,
                error=reason,
            )
        )

    def _emit(self, record: JobRecord) -> None:
        self.sink.emit(record)
        log_with_fields(
            self.logger,
            logging.INFO if record.outcome is JobOutcome.SUCCESS else logging.WARNING,
            "job_finished",
            filename=record.filename,
            worker=record.worker_index,
            pid=record.worker_pid,
            started_at=record.started_at,
            finished_at=record.finished_at,
            outcome=record.outcome.value,
            error=record.error,
        )

    def _send_sentinel(self, worker: WorkerUnit) -> None:
        if worker.sentinel_sent:
            return
        worker.sentinel_sent = True
        job_write = worker.channel.job_write
        if job_write is None:
            return
        try:
            write_all(job_write, encode_shutdown())
        except BrokenPipeError:
            # The worker is gone; its result stream reports end of stream.
            log_with_fields(self.logger, logging.WARNING, "sentinel_undelivered", worker=worker.index)
        worker.channel.close_job_stream()

    def _unregister(self, worker: WorkerUnit) -> None:
        fd = worker.channel.result_read
        if fd is None:
            return
        if self.selector is not None and fd in self.selector.get_map():
            self.selector.unregister(fd)
        self.registry.forget_fd(fd)

    def _mark_terminated(self, worker: WorkerUnit, reason: str) -> None:
        self._unregister(worker)
        if worker.job is not None:
            record = worker.job.finish(JobOutcome.ERROR, reason)
            worker.job = None
            worker.jobs_processed += 1
            self.summary.failed += 1
            self._emit(record)
            log_with_fields(self.logger, logging.WARNING, "worker_lost", worker=worker.index, reason=reason)
        worker.channel.close()
        self.registry.set_status(worker.index, WorkerStatus.TERMINATED)

    def _reap_all(self, *, terminate: bool) -> None:
        for worker in self.registry.all():
            if terminate and worker.exit_code is None:
                try:
                    os.kill(worker.pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
            self._reap(worker, reason="run aborted" if terminate else "worker exited mid-job")
        if self.selector is not None:
            self.selector.close()
            self.selector = None
        self.closed = True

    def _reap(self, worker: WorkerUnit, reason: str) -> None:
        if worker.exit_code is None:
            try:
                _, status = os.waitpid(worker.pid, 0)
                worker.exit_code = os.waitstatus_to_exitcode(status)
            except ChildProcessError:
                worker.exit_code = -1
            log_with_fields(
                self.logger,
                logging.INFO,
                "worker_reaped",
                worker=worker.index,
                pid=worker.pid,
                exit_code=worker.exit_code,
                jobs_processed=worker.jobs_processed,
            )
        self._mark_terminated(worker, reason)
