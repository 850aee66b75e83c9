from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Optional, Sequence

from pg_transfer.connections import CredentialCipher, PostgresConnectionResolver
from pg_transfer.engine import TransferExecutor
from pg_transfer.foreign_keys import ForeignKeyGuard, PostgresForeignKeyDialect
from pg_transfer.repository import PostgresJobRepository
from pg_transfer.retry import RetryPolicy
from pg_transfer.scheduler import TransferScheduler
from pg_transfer.settings import WorkerSettings, load_settings

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_scheduler(settings: WorkerSettings) -> TransferScheduler:
    if not settings.catalog_dsn:
        raise ValueError("CATALOG_DSN is required")
    cipher = CredentialCipher(settings.encryption_key)
    resolver = PostgresConnectionResolver(settings.catalog_dsn, cipher)
    executor = TransferExecutor(
        resolver=resolver,
        settings=settings,
        guard=ForeignKeyGuard(PostgresForeignKeyDialect()),
        retry=RetryPolicy(),
    )
    repository = PostgresJobRepository(settings.catalog_dsn)
    return TransferScheduler(repository, executor, settings=settings)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run scheduled database-to-database imports.")
    parser.add_argument("--settings", help="JSON settings file (overrides WORKER_SETTINGS_PATH)")
    parser.add_argument("--once", action="store_true", help="run a single poll cycle and exit")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    try:
        scheduler = build_scheduler(settings)
    except ValueError as e:
        log.error("Cannot start worker: %s", e)
        return 2

    if args.once:
        report = scheduler.run_cycle()
        return 1 if report.failed or report.errors else 0

    stop = threading.Event()

    def _stop(signum, _frame):
        log.info("Received signal %s; stopping after the current step", signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    scheduler.run_forever(stop)
    return 0


if __name__ == "__main__":
    sys.exit(main())
