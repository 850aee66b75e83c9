from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack
from typing import Callable, ContextManager, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extensions
import psycopg2.extras as extras

from pg_transfer.columns import ColumnPlan, build_insert_sql, build_source_query, plan_for_job, qualified_table
from pg_transfer.connections import ConnectionEndpoint, ConnectionResolver, open_connection
from pg_transfer.errors import TransferCancelled
from pg_transfer.foreign_keys import ForeignKeyGuard, Suspension
from pg_transfer.ImportJob import DESTINATION, SOURCE, ImportJob, TransferOutcome
from pg_transfer.retry import RetryPolicy
from pg_transfer.settings import WorkerSettings

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

Connector = Callable[..., ContextManager]

# ============================== Helpers (module-level; stateless) ===============================

def build_pre_command(job: ImportJob) -> str:
    """Before-script (semicolon terminated) followed by the clearing statement, if any."""
    parts: List[str] = []
    before = (job.before_query or "").strip()
    if before:
        parts.append(before if before.endswith(";") else before + ";")
    if job.is_truncate:
        parts.append(f"TRUNCATE TABLE {qualified_table(job.to_table)};")
    elif job.is_delete:
        parts.append(f"DELETE FROM {qualified_table(job.to_table)};")
    cmd = " ".join(parts)
    if LOG.isEnabledFor(logging.DEBUG) and cmd:
        LOG.debug("Pre-load command: %s", cmd)
    return cmd


def _execute(conn, command: str) -> None:
    with conn.cursor() as c:
        c.execute(command)


def _connection_usable(conn) -> bool:
    if conn is None or conn.closed:
        return False
    try:
        if conn.get_transaction_status() == psycopg2.extensions.TRANSACTION_STATUS_INERROR:
            conn.rollback()
        with conn.cursor() as c:
            c.execute("SELECT 1")
            c.fetchone()
        return True
    except psycopg2.Error:
        LOG.warning("Management connection failed its health check", exc_info=True)
        return False


class ManagementConnection:
    """
    Autocommit destination connection for DDL and scripts. A command that finds it
    closed (the server dropped it) reopens it first, so retried commands can recover.
    """

    def __init__(self, connect: Connector, endpoint: ConnectionEndpoint, stack: ExitStack,
                 command_timeout: Optional[int] = None, logger: logging.Logger | None = None):
        self.connect = connect
        self.endpoint = endpoint
        self.stack = stack
        self.command_timeout = command_timeout
        self.log = logger or LOG
        self.conn = self._open()

    def _open(self):
        return self.stack.enter_context(
            self.connect(self.endpoint, autocommit=True, command_timeout=self.command_timeout)
        )

    def reopen(self):
        self.log.warning("Reopening management connection to %s", self.endpoint.database)
        self.conn = self._open()
        return self.conn

    def execute(self, command: str) -> None:
        if self.conn.closed:
            self.reopen()
        _execute(self.conn, command)

    def usable(self):
        if not _connection_usable(self.conn):
            self.reopen()
        return self.conn


class RowCursor:
    """
    Lazy, forward-only view over a server-side (named) cursor.
    Rows are pulled from the server batch_size at a time and never buffered as a whole.
    """

    def __init__(self, conn, query: str, batch_size: int, name: str = "pg_transfer_stream"):
        self.conn = conn
        self.query = query
        self.batch_size = batch_size
        self.name = name
        self._cur = None

    def __enter__(self) -> "RowCursor":
        self._cur = self.conn.cursor(name=self.name)
        self._cur.itersize = self.batch_size
        self._cur.execute(self.query)
        return self

    def __exit__(self, *exc) -> None:
        try:
            if self._cur is not None and not self._cur.closed:
                self._cur.close()
        finally:
            self._cur = None

    @property
    def columns(self) -> List[str]:
        return [d[0] for d in (self._cur.description or [])]

    def batches(self) -> Iterator[List[Tuple]]:
        while True:
            page = self._cur.fetchmany(self.batch_size)
            if not page:
                return
            yield [tuple(row) for row in page]


# ============================== Engine (single class) ===============================

class TransferExecutor:
    def __init__(
        self,
        resolver: ConnectionResolver,
        settings: WorkerSettings | None = None,
        guard: ForeignKeyGuard | None = None,
        retry: RetryPolicy | None = None,
        connect: Connector = open_connection,
        logger: logging.Logger | None = None,
    ):
        self.resolver = resolver
        self.settings = settings or WorkerSettings()
        self.guard = guard or ForeignKeyGuard(logger=logger)
        self.retry = retry or RetryPolicy(logger=logger)
        self.connect = connect
        self.log = logger or logging.getLogger(__name__)
        self.log.debug("TransferExecutor initialized with logger=%r", self.log.name)

    # ------------------------ One transfer ------------------------

    def execute(self, job: ImportJob, cancel_event: Optional[threading.Event] = None) -> TransferOutcome:
        """
        Run one import end-to-end:
        • resolve columns + source query (definition errors stop here, no DB I/O),
        • suspend FKs when clearing or a before-script is requested,
        • before-script + TRUNCATE/DELETE, stream+batch copy, after-script,
        • always resume suspended FKs and close all three connections.
        """
        outcome = TransferOutcome(import_id=job.import_id)
        t0 = time.perf_counter()
        self.log.info("Transfer start: import_id=%s name=%r to_table=%s", job.import_id, job.name, job.to_table)
        retry = self.retry.bind(cancel_event)

        try:
            plan = plan_for_job(job)
            source_sql = build_source_query(job, plan)
            insert_sql = build_insert_sql(job.to_table, plan)

            src_ep = self.resolver.resolve(job.import_id, SOURCE)
            dst_ep = self.resolver.resolve(job.import_id, DESTINATION)

            with ExitStack() as stack:
                timeout = self.settings.command_timeout_seconds
                src = stack.enter_context(self.connect(src_ep, command_timeout=timeout))
                dst = stack.enter_context(self.connect(dst_ep, command_timeout=timeout))
                mgmt = ManagementConnection(self.connect, dst_ep, stack, command_timeout=timeout, logger=self.log)

                suspension: Optional[Suspension] = None
                try:
                    # ---- 1) suspend FKs ----
                    if self.settings.disable_foreign_keys and (job.clears_destination or job.before_query.strip()):
                        suspension = self.guard.suspend(mgmt.conn, job.to_table)
                        if suspension is None:
                            outcome.note("foreign key suspension failed; continuing without it")

                    # ---- 2) before-script / clear ----
                    pre_command = build_pre_command(job)
                    if pre_command:
                        if job.is_truncate:
                            self.log.info("Truncating table: %s", job.to_table)
                        elif job.is_delete:
                            self.log.info("Deleting all rows from table: %s", job.to_table)
                        retry.run(mgmt.execute, pre_command, description=f"pre-load command for import {job.import_id}")
                        outcome.note("pre-load command executed")

                    # ---- 3+4) stream and bulk load ----
                    self._copy_rows(job, src, dst, source_sql, insert_sql, plan, outcome, cancel_event)

                    # ---- 5) after-script ----
                    if job.after_query.strip():
                        self.log.info("Executing after-script for import_id=%s", job.import_id)
                        retry.run(mgmt.execute, job.after_query, description=f"after-script for import {job.import_id}")
                        outcome.note("after-script executed")

                    outcome.success = True
                finally:
                    # ---- 6) resume FKs ----
                    if suspension is not None:
                        outcome.foreign_keys_restored = self._restore_foreign_keys(mgmt, suspension)
                        if not outcome.foreign_keys_restored:
                            outcome.note(f"FOREIGN KEYS NOT RESTORED on {job.to_table}")
        except Exception as e:
            outcome.success = False
            outcome.error = e
            outcome.note(f"failed: {e}")
            self.log.error("Error executing import job: name=%r import_id=%s", job.name, job.import_id, exc_info=True)

        outcome.duration = round(time.perf_counter() - t0, 3)
        if outcome.success:
            self.log.info(
                "Transfer completed: import_id=%s name=%r rows=%d batches=%d elapsed=%.3fs",
                job.import_id, job.name, outcome.rows_transferred, outcome.batches, outcome.duration,
            )
        else:
            self.log.warning(
                "Transfer failed: import_id=%s name=%r rows_committed=%d elapsed=%.3fs",
                job.import_id, job.name, outcome.rows_transferred, outcome.duration,
            )
        return outcome

    # ------------------------ Streaming copy ------------------------

    def _copy_rows(
        self,
        job: ImportJob,
        src,
        dst,
        source_sql: str,
        insert_sql: str,
        plan: ColumnPlan,
        outcome: TransferOutcome,
        cancel_event: Optional[threading.Event],
    ) -> None:
        batch_size = self.settings.batch_size
        self.log.info("Streaming source rows for import_id=%s (batch_size=%d)", job.import_id, batch_size)
        self.log.debug("Column map: %s", [str(m) for m in plan.mappings])

        try:
            with RowCursor(src, source_sql, batch_size, name=f"pg_transfer_{job.import_id}") as rows, dst.cursor() as d:
                for page in rows.batches():
                    if cancel_event is not None and cancel_event.is_set():
                        raise TransferCancelled(f"Import {job.import_id} cancelled after {outcome.batches} batch(es)")
                    self._write_batch(d, dst, insert_sql, page, batch_size)
                    outcome.rows_transferred += len(page)
                    outcome.batches += 1
                    self.log.info(
                        "Batch committed: import_id=%s batches=%d rows_transferred=%d",
                        job.import_id, outcome.batches, outcome.rows_transferred,
                    )
            src.commit()
        except Exception:
            for conn in (src, dst):
                try:
                    if not conn.closed:
                        conn.rollback()
                except psycopg2.Error:
                    self.log.debug("Rollback after failed copy also failed", exc_info=True)
            raise

        if outcome.batches == 0:
            self.log.warning("Source query returned no rows for import_id=%s", job.import_id)
        self.log.info("Transferred %d rows to %s", outcome.rows_transferred, job.to_table)

    def _write_batch(self, cursor, conn, insert_sql: str, page: Sequence[Tuple], batch_size: int) -> None:
        t_batch = time.perf_counter()
        extras.execute_values(cursor, insert_sql, page, page_size=batch_size)
        conn.commit()
        self.log.debug("Wrote %d rows in %.3fs", len(page), time.perf_counter() - t_batch)

    # ------------------------ Cleanup helpers ------------------------

    def _restore_foreign_keys(self, mgmt: ManagementConnection, suspension: Suspension) -> bool:
        try:
            conn = mgmt.usable()
        except Exception:
            self.guard.report_not_restored(suspension, "could not reconnect", exc_info=True)
            return False
        return self.guard.resume(conn, suspension)
