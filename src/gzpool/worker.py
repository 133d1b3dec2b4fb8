from __future__ import annotations

import logging
import os
import signal
from collections.abc import Iterable

from .app_logging import flush_handlers, log_with_fields
from .channel import SHUTDOWN, ChannelPair, Role, encode_result, read_job, write_all
from .transform import TransformRunner
from .utils import utc_now_iso


def init_worker(runner: TransformRunner) -> None:
    """Interrupts belong to the dispatcher, which terminates workers itself.

    On SIGTERM the running transform command is stopped before the worker dies, so an
    aborted run leaves no transform behind.
    """
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    def on_terminate(signum: int, _frame) -> None:
        runner.terminate_active()
        signal.signal(signum, signal.SIG_DFL)
        os.kill(os.getpid(), signum)

    signal.signal(signal.SIGTERM, on_terminate)


def worker_loop(index: int, channel: ChannelPair, runner: TransformRunner, logger: logging.Logger) -> int:
    """Serve jobs from the job stream until the sentinel or end of stream.

    Returns the number of jobs processed. Expects ``channel`` to be split for the worker role.
    """
    if channel.job_read is None or channel.result_write is None:
        raise RuntimeError("worker channel is not split for the worker role")

    pid = os.getpid()
    processed = 0
    while True:
        message = read_job(channel.job_read)
        if message is None:
            log_with_fields(logger, logging.INFO, "worker_job_stream_closed", worker=index, pid=pid)
            break
        if message is SHUTDOWN:
            log_with_fields(logger, logging.INFO, "worker_shutdown", worker=index, pid=pid, processed=processed)
            break

        name = str(message)
        started_at = utc_now_iso()
        result = runner.run(name)
        finished_at = utc_now_iso()
        processed += 1

        log_with_fields(
            logger,
            logging.INFO if result.ok else logging.WARNING,
            "worker_job_finished",
            worker=index,
            pid=pid,
            filename=name,
            started_at=started_at,
            finished_at=finished_at,
            status="Success" if result.ok else "Error",
            output=str(result.output),
            error=result.error,
        )
        write_all(channel.result_write, encode_result(result.ok))

    channel.close()
    return processed


def run_worker_process(
    index: int,
    channel: ChannelPair,
    inherited: Iterable[ChannelPair],
    runner: TransformRunner,
    logger: logging.Logger,
) -> None:
    """Entry point of a forked child; never returns.

    ``inherited`` holds the other workers' channel pairs copied by fork; they are closed
    before the loop starts so no worker keeps another worker's pipes open.
    """
    exit_code = 1
    try:
        init_worker(runner)
        for other in inherited:
            if other is not channel:
                other.close()
        channel.split(Role.WORKER)
        worker_loop(index, channel, runner, logger)
        exit_code = 0
    except BrokenPipeError:
        log_with_fields(logger, logging.WARNING, "worker_result_stream_closed", worker=index, pid=os.getpid())
    except BaseException as exc:  # the child must reach os._exit whatever happens
        log_with_fields(logger, logging.ERROR, "worker_crashed", worker=index, pid=os.getpid(), error=repr(exc))
    finally:
        flush_handlers(logger)
        os._exit(exit_code)
