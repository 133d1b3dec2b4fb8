from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

import yaml

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .dispatcher import Dispatcher, PoolError
from .models import JobOutcome
from .store import Store
from .transform import TransformError, TransformRunner
from .utils import ArchiveError, extract_archive, iter_candidate_files

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gzpool", description="Compress an archive's files on a worker process pool")
    parser.add_argument("--config", help="Path to gzpool YAML config (defaults apply when omitted)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Expand an archive and compress every file in it")
    run_parser.add_argument("archive", help="Path to the source archive, e.g. source.tar.gz")
    run_parser.add_argument("--workers", type=int, help="Override pool.size")

    subparsers.add_parser("status", help="Show the outcome of the latest run")
    return parser


def cmd_run(config: AppConfig, archive: Path) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)

    try:
        members = extract_archive(archive, config.paths.work_dir)
    except ArchiveError as exc:
        log_with_fields(logger, logging.ERROR, "archive_failed", archive=str(archive), error=str(exc))
        return EXIT_FAILURE
    log_with_fields(
        logger,
        logging.INFO,
        "archive_expanded",
        archive=str(archive),
        work_dir=str(config.paths.work_dir),
        members=len(members),
    )

    try:
        runner = TransformRunner(config.transform, config.paths.work_dir, config.paths.output_dir)
    except TransformError as exc:
        log_with_fields(logger, logging.ERROR, "transform_invalid", error=str(exc))
        return EXIT_FAILURE

    store = Store(config.paths.db)
    try:
        store.init_schema()
        run_id = store.begin_run(str(archive), config.pool.size)
        dispatcher = Dispatcher(config.pool, runner, store, logger)
        try:
            summary = dispatcher.run(iter_candidate_files(config.paths.work_dir))
        except PoolError as exc:
            store.finish_run(run_id, status="failed", error=str(exc))
            log_with_fields(logger, logging.ERROR, "run_failed", run_id=run_id, error=str(exc))
            return EXIT_FAILURE
        except KeyboardInterrupt:
            store.finish_run(run_id, status="interrupted", error="keyboard interrupt")
            log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
            return EXIT_INTERRUPTED

        store.finish_run(run_id, status="done")
        log_with_fields(
            logger,
            logging.INFO,
            "run_completed",
            run_id=run_id,
            dispatched=summary.dispatched,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return EXIT_OK
    finally:
        store.close()


def cmd_status(config: AppConfig) -> int:
    if not config.paths.db.exists():
        print("(no runs recorded yet)")
        return EXIT_OK
    store = Store(config.paths.db)
    try:
        store.init_schema()
        run = store.latest_run()
        if run is None:
            print("(no runs recorded yet)")
            return EXIT_OK

        print(f"Run {run['run_id']}: status={run['status']} archive={run['archive']} workers={run['pool_size']}")
        print(f"  started  {run['started_at']}")
        print(f"  finished {run['finished_at'] or '-'}")
        if run["error"]:
            print(f"  error    {run['error']}")

        counts = store.summary_counts(run["run_id"])
        print("\nJobs:")
        for outcome in JobOutcome:
            print(f"  {outcome.value:8} {counts.get(outcome.value, 0)}")

        failed = store.list_records(run["run_id"], JobOutcome.ERROR)
        if failed:
            print("\nFailed files:")
        for record in failed:
            worker = "-" if record.worker_index is None else str(record.worker_index)
            print(f"  {record.filename} worker={worker} error={record.error}")
        return EXIT_OK
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"invalid config: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    if args.command == "run":
        if args.workers is not None:
            if args.workers < 1:
                parser.error("--workers must be >= 1")
            config.pool = replace(config.pool, size=args.workers)
        return cmd_run(config, Path(args.archive))
    if args.command == "status":
        return cmd_status(config)
    parser.error(f"Unknown command: {args.command}")
    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
