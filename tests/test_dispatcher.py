from __future__ import annotations

import errno
import gzip
import logging
import os
import signal
import time
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from gzpool.channel import ChannelPair, encode_job
from gzpool.config import PoolConfig, TransformConfig
from gzpool.dispatcher import DispatchTimeoutError, Dispatcher, PoolExhaustedError, PoolStartupError
from gzpool.models import JobOutcome, WorkerStatus
from gzpool.registry import WorkerUnit
from gzpool.store import MemoryRecordSink
from gzpool.transform import TransformRunner

KILL_PARENT = "sh -c 'kill -KILL $PPID'"


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_gzpool")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def open_fds() -> set[str]:
    return set(os.listdir("/proc/self/fd"))


def pipe_inodes(pid: int) -> list[int]:
    fd_dir = Path("/proc") / str(pid) / "fd"
    inodes = []
    for entry in fd_dir.iterdir():
        target = os.readlink(entry)
        if target.startswith("pipe:["):
            inodes.append(int(target[len("pipe:[") : -1]))
    return inodes


def process_running(pid: int) -> bool:
    try:
        stat = (Path("/proc") / str(pid) / "stat").read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    # Orphaned zombies may linger when nothing reaps them; they are not running.
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


class DispatcherTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        self.root = Path(self._temp_dir.name)
        self.source = self.root / "source"
        self.output = self.root / "output"
        self.source.mkdir()
        self.output.mkdir()
        self.sink = MemoryRecordSink()

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def write_files(self, *names: str) -> list[str]:
        for name in names:
            (self.source / name).write_text(f"contents of {name}\n" * 50, encoding="utf-8")
        return list(names)

    def make_dispatcher(
        self,
        command: str,
        *,
        size: int,
        timeout: float = 10.0,
        max_consecutive_errors: int = 0,
    ) -> Dispatcher:
        runner = TransformRunner(TransformConfig(command_template=command), self.source, self.output)
        pool = PoolConfig(
            size=size,
            readiness_timeout_seconds=timeout,
            max_consecutive_errors=max_consecutive_errors,
        )
        return Dispatcher(pool, runner, self.sink, quiet_logger())


class DispatchScenarioTest(DispatcherTestCase):
    def test_five_files_on_four_workers(self) -> None:
        files = self.write_files("a.txt", "b.txt", "c.txt", "d.txt", "e.txt")
        dispatcher = self.make_dispatcher("gzip -c {source}", size=4)

        summary = dispatcher.run(files)

        self.assertEqual(summary.dispatched, 5)
        self.assertEqual(summary.succeeded, 5)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(len(self.sink.records), 5)
        assigned = {record.filename: record.worker_index for record in self.sink.records}
        self.assertEqual([assigned[name] for name in files[:4]], [0, 1, 2, 3])
        self.assertIn(assigned["e.txt"], {0, 1, 2, 3})
        for record in self.sink.records:
            self.assertIs(record.outcome, JobOutcome.SUCCESS)
            self.assertIsNotNone(record.worker_pid)
            self.assertLessEqual(record.started_at, record.finished_at)

        for name in files:
            compressed = (self.output / f"{name}.gz").read_bytes()
            self.assertEqual(gzip.decompress(compressed), (self.source / name).read_bytes())

        self.assertTrue(dispatcher.closed)
        for worker in dispatcher.registry.all():
            self.assertIs(worker.status, WorkerStatus.TERMINATED)
            self.assertEqual(worker.exit_code, 0)
            self.assertEqual(worker.channel.open_fds(), [])
        self.assertEqual(sum(worker.jobs_processed for worker in dispatcher.registry.all()), 5)

    def test_single_failing_job_is_not_fatal(self) -> None:
        files = self.write_files("broken.txt")
        dispatcher = self.make_dispatcher("false", size=1)

        summary = dispatcher.run(files)

        self.assertEqual(summary.dispatched, 1)
        self.assertEqual(summary.failed, 1)
        self.assertEqual(len(self.sink.records), 1)
        record = self.sink.records[0]
        self.assertIs(record.outcome, JobOutcome.ERROR)
        self.assertEqual(record.worker_index, 0)
        self.assertFalse((self.output / "broken.txt.gz").exists())
        worker = dispatcher.registry.get(0)
        self.assertIs(worker.status, WorkerStatus.TERMINATED)
        self.assertEqual(worker.exit_code, 0)

    def test_erroring_worker_stays_eligible(self) -> None:
        files = self.write_files("one.txt", "two.txt")
        dispatcher = self.make_dispatcher("false", size=1)
        dispatcher.start()
        try:
            dispatcher.assign("one.txt", encode_job("one.txt"))
            self.assertIsNone(dispatcher.registry.find_idle())
            while dispatcher.registry.busy():
                dispatcher.await_results()
            self.assertIs(dispatcher.registry.status(0), WorkerStatus.ERROR)
            self.assertEqual(dispatcher.registry.find_idle(), 0)

            dispatcher.dispatch_all(files[1:])
            dispatcher.shutdown()
        finally:
            dispatcher.abort()

        self.assertEqual([record.filename for record in self.sink.records], files)
        self.assertEqual({record.worker_index for record in self.sink.records}, {0})

    def test_idle_selection_prefers_lowest_index(self) -> None:
        dispatcher = self.make_dispatcher("sleep 1", size=3)
        self.write_files("x.txt", "y.txt")
        dispatcher.start()
        try:
            self.assertEqual(dispatcher.registry.find_idle(), 0)
            first = dispatcher.assign("x.txt", encode_job("x.txt"))
            self.assertEqual(first.index, 0)
            self.assertEqual(dispatcher.registry.find_idle(), 1)
            second = dispatcher.assign("y.txt", encode_job("y.txt"))
            self.assertEqual(second.index, 1)
            self.assertEqual([worker.index for worker in dispatcher.registry.busy()], [0, 1])
            dispatcher.shutdown()
        finally:
            dispatcher.abort()

        self.assertEqual(len(self.sink.records), 2)


class DispatchFailureTest(DispatcherTestCase):
    def test_readiness_timeout_is_fatal(self) -> None:
        files = self.write_files("slow.txt", "never.txt")
        dispatcher = self.make_dispatcher("sleep 5", size=1, timeout=0.3)

        with self.assertRaises(DispatchTimeoutError):
            dispatcher.run(files)

        self.assertEqual(dispatcher.summary.dispatched, 1)
        self.assertTrue(dispatcher.closed)
        worker = dispatcher.registry.get(0)
        self.assertIs(worker.status, WorkerStatus.TERMINATED)
        self.assertEqual(worker.exit_code, -signal.SIGTERM)
        self.assertEqual([record.filename for record in self.sink.records], ["slow.txt"])
        self.assertEqual(self.sink.records[0].error, "run aborted")

    def test_abort_stops_running_transform(self) -> None:
        files = self.write_files("slow.txt", "never.txt")
        dispatcher = self.make_dispatcher("sh -c 'echo $$ > {output}.pid; exec sleep 5'", size=1, timeout=1.0)

        with self.assertRaises(DispatchTimeoutError):
            dispatcher.run(files)

        transform_pid = int((self.output / "slow.txt.gz.pid").read_text(encoding="utf-8"))
        deadline = time.monotonic() + 3.0
        while process_running(transform_pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        self.assertFalse(process_running(transform_pid))
        self.assertEqual(dispatcher.registry.get(0).exit_code, -signal.SIGTERM)

    def test_worker_exit_mid_job_fails_the_job(self) -> None:
        files = self.write_files("doomed.txt")
        dispatcher = self.make_dispatcher(KILL_PARENT, size=2)

        summary = dispatcher.run(files)

        self.assertEqual(summary.failed, 1)
        self.assertEqual(len(self.sink.records), 1)
        record = self.sink.records[0]
        self.assertIs(record.outcome, JobOutcome.ERROR)
        self.assertEqual(record.error, "worker exited mid-job")
        self.assertEqual(dispatcher.registry.get(0).exit_code, -signal.SIGKILL)
        self.assertEqual(dispatcher.registry.get(1).exit_code, 0)

    def test_losing_every_worker_exhausts_the_pool(self) -> None:
        files = self.write_files("first.txt", "second.txt")
        dispatcher = self.make_dispatcher(KILL_PARENT, size=1)

        with self.assertRaises(PoolExhaustedError):
            dispatcher.run(files)

        self.assertEqual([record.filename for record in self.sink.records], ["first.txt"])
        self.assertTrue(dispatcher.closed)

    def test_consecutive_error_cap_retires_workers(self) -> None:
        files = self.write_files("a.txt", "b.txt", "c.txt")
        dispatcher = self.make_dispatcher("false", size=2, max_consecutive_errors=1)

        with self.assertRaises(PoolExhaustedError):
            dispatcher.run(files)

        self.assertEqual(sorted(record.filename for record in self.sink.records), ["a.txt", "b.txt"])
        self.assertTrue(all(worker.retired for worker in dispatcher.registry.all()))
        self.assertTrue(all(worker.exit_code is not None for worker in dispatcher.registry.all()))

    def test_unframeable_name_is_recorded_without_dispatch(self) -> None:
        files = self.write_files("ok.txt")
        dispatcher = self.make_dispatcher("gzip -c {source}", size=1)

        summary = dispatcher.run(["x" * 300, *files])

        self.assertEqual(summary.dispatched, 1)
        self.assertEqual(summary.total, 2)
        rejected = [record for record in self.sink.records if record.worker_index is None]
        self.assertEqual(len(rejected), 1)
        self.assertIs(rejected[0].outcome, JobOutcome.ERROR)

    def test_collect_without_reader_is_an_error(self) -> None:
        dispatcher = self.make_dispatcher("true", size=1)
        # Descriptor numbers are lookup keys only; the worker is never started.
        worker = WorkerUnit(index=0, pid=50000, channel=ChannelPair(1000, 1001, 1002, 1003))
        dispatcher.registry.add(worker)

        with self.assertRaises(RuntimeError):
            dispatcher._collect(worker)

    def test_start_twice_is_rejected(self) -> None:
        dispatcher = self.make_dispatcher("true", size=1)
        dispatcher.start()
        try:
            with self.assertRaises(RuntimeError):
                dispatcher.start()
        finally:
            dispatcher.abort()
        self.assertEqual(dispatcher.registry.get(0).exit_code, -signal.SIGTERM)


class PoolStartupTest(DispatcherTestCase):
    def test_fork_failure_stops_started_workers(self) -> None:
        real_fork = os.fork
        forks: list[int] = []

        def fork_once() -> int:
            if forks:
                raise OSError(errno.EAGAIN, "Resource temporarily unavailable")
            forks.append(1)
            return real_fork()

        dispatcher = self.make_dispatcher("true", size=3)
        fds_before = open_fds()
        with mock.patch("gzpool.dispatcher.os.fork", side_effect=fork_once):
            with self.assertRaises(PoolStartupError):
                dispatcher.start()

        self.assertEqual(open_fds(), fds_before)
        self.assertTrue(dispatcher.closed)
        self.assertEqual(len(dispatcher.registry), 1)
        worker = dispatcher.registry.get(0)
        self.assertIs(worker.status, WorkerStatus.TERMINATED)
        self.assertEqual(worker.exit_code, -signal.SIGTERM)

    def test_channel_failure_starts_nothing(self) -> None:
        real_create = ChannelPair.create
        created: list[ChannelPair] = []

        def create_once() -> ChannelPair:
            if created:
                raise OSError(errno.EMFILE, "Too many open files")
            created.append(real_create())
            return created[-1]

        dispatcher = self.make_dispatcher("true", size=2)
        fds_before = open_fds()
        with mock.patch.object(ChannelPair, "create", side_effect=create_once):
            with self.assertRaises(PoolStartupError):
                dispatcher.start()

        self.assertEqual(open_fds(), fds_before)
        self.assertFalse(dispatcher.started)
        self.assertEqual(len(dispatcher.registry), 0)
        self.assertEqual(created[0].open_fds(), [])

    def test_workers_hold_only_their_own_channel(self) -> None:
        files = self.write_files("a.txt", "b.txt", "c.txt")
        dispatcher = self.make_dispatcher("true", size=3)
        dispatcher.start()
        try:
            # Once each worker has answered a job it is past its start-up cleanup.
            for name in files:
                dispatcher.assign(name, encode_job(name))
            while dispatcher.registry.busy():
                dispatcher.await_results()

            own = {}
            for worker in dispatcher.registry.all():
                channel = worker.channel
                own[worker.index] = sorted(
                    [os.fstat(channel.job_write).st_ino, os.fstat(channel.result_read).st_ino]
                )
            every_channel = {inode for pair in own.values() for inode in pair}

            for worker in dispatcher.registry.all():
                held = sorted(inode for inode in pipe_inodes(worker.pid) if inode in every_channel)
                self.assertEqual(held, own[worker.index], f"worker {worker.index}")

            dispatcher.shutdown()
        finally:
            dispatcher.abort()
        self.assertEqual([worker.exit_code for worker in dispatcher.registry.all()], [0, 0, 0])


if __name__ == "__main__":
    unittest.main()
