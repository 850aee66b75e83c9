from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pg_transfer.connections import ConnectionEndpoint, ConnectionResolver
from pg_transfer.errors import ConnectionResolutionError
from pg_transfer.foreign_keys import ForeignKey, ForeignKeyDialect
from pg_transfer.ImportJob import ImportJob, LegacyScheduleEntry, TransferOutcome
from pg_transfer.repository import JobRepository

UTC = timezone.utc


class FakeCursor:
    def __init__(self, conn: "FakeConnection", name: Optional[str] = None):
        self.conn = conn
        self.name = name
        self.itersize = 2000
        self.closed = False
        self.description = None
        self._rows: List[tuple] = []
        self._pos = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def execute(self, sql, params=None):
        self.conn.executed.append(sql)
        for needle, errors in self.conn.fail_on.items():
            if needle in sql and errors:
                if self.conn.close_on_failure:
                    # the server dropped the session; psycopg2 marks the connection closed
                    self.conn.closed = 2
                raise errors.pop(0)
        if self.name is not None:
            self.conn.server_side_cursors.append(self.name)
            self._rows = self.conn.rows
            self.description = [(c, None) for c in self.conn.columns]
        elif sql.strip() == "SELECT 1":
            self._rows = [(1,)]

    def fetchmany(self, size):
        self.conn.fetch_sizes.append(size)
        chunk = self._rows[self._pos:self._pos + size]
        self._pos += len(chunk)
        return chunk

    def fetchone(self):
        chunk = self.fetchmany(1)
        return chunk[0] if chunk else None

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, label: str, rows=(), columns=(), autocommit: bool = False):
        self.label = label
        self.rows = list(rows)
        self.columns = list(columns)
        self.autocommit = autocommit
        self.closed = 0
        self.commits = 0
        self.rollbacks = 0
        self.executed: List[str] = []
        self.fetch_sizes: List[int] = []
        self.server_side_cursors: List[str] = []
        self.fail_on: Dict[str, List[Exception]] = {}
        self.healthy = True
        self.close_on_failure = False

    def cursor(self, name=None, cursor_factory=None):
        if (not self.healthy or self.closed) and name is None:
            import psycopg2
            raise psycopg2.InterfaceError("connection already closed")
        return FakeCursor(self, name)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def get_transaction_status(self):
        return 0

    def close(self):
        self.closed = 1


class FakeConnector:
    """Stands in for open_connection: one source connection, fresh destination connections."""

    def __init__(self, rows=(), columns=("a", "b")):
        self.source = FakeConnection("source", rows=rows, columns=columns)
        self.destinations: List[FakeConnection] = []
        self.opened: List[tuple] = []
        self.fail_next_destination = False
        self.on_open = None          # called with each new destination connection

    @property
    def writer(self) -> FakeConnection:
        return self.destinations[0]

    @property
    def management(self) -> FakeConnection:
        return self.destinations[1]

    @contextmanager
    def __call__(self, endpoint: ConnectionEndpoint, autocommit: bool = False, command_timeout=None):
        self.opened.append((endpoint.database, autocommit))
        if endpoint.database == "src":
            conn = self.source
        else:
            if self.fail_next_destination:
                import psycopg2
                raise psycopg2.OperationalError("could not connect to server")
            conn = FakeConnection(f"destination-{len(self.destinations)}", autocommit=autocommit)
            self.destinations.append(conn)
            if self.on_open is not None:
                self.on_open(conn)
        conn.closed = 0
        try:
            yield conn
        finally:
            conn.closed = 1


class FakeResolver(ConnectionResolver):
    def __init__(self, missing: bool = False):
        self.missing = missing
        self.calls: List[tuple] = []

    def resolve(self, job_id: int, side: str) -> ConnectionEndpoint:
        self.calls.append((job_id, side))
        if self.missing:
            raise ConnectionResolutionError(f"Import data not found for ID: {job_id}")
        return ConnectionEndpoint(server="db.internal", database="src" if side == "source" else "dst",
                                  user="loader", password="secret")


class FakeDialect(ForeignKeyDialect):
    """In-memory catalog of FK constraints, counting validations on re-enable."""

    def __init__(self, constraints=None, fail_disable: bool = False, fail_enable: bool = False):
        self.catalog: Dict[str, ForeignKey] = {fk.name: fk for fk in (constraints or [])}
        self.enabled = set(self.catalog)
        self.validations: Dict[str, int] = {name: 0 for name in self.catalog}
        self.fail_disable = fail_disable
        self.fail_enable = fail_enable
        self.disable_calls = 0
        self.enable_calls = 0

    def discover(self, conn, table):
        return [self.catalog[name] for name in sorted(self.enabled)]

    def disable(self, conn, constraints):
        self.disable_calls += 1
        if self.fail_disable:
            raise RuntimeError("permission denied for table")
        for fk in constraints:
            self.enabled.discard(fk.name)

    def enable(self, conn, constraints):
        self.enable_calls += 1
        if self.fail_enable:
            raise RuntimeError("insert or update violates foreign key constraint")
        for fk in constraints:
            if fk.name not in self.enabled:
                self.enabled.add(fk.name)
                self.validations[fk.name] += 1


def make_fk(name: str, table: str = "orders_archive") -> ForeignKey:
    return ForeignKey(schema="public", table=table, name=name,
                      definition="FOREIGN KEY (customer_id) REFERENCES public.customers(id)")


def make_job(import_id: int = 1, **overrides) -> ImportJob:
    values = dict(
        import_id=import_id,
        name=f"job-{import_id}",
        from_connection_id=10,
        to_connection_id=20,
        from_table="Orders",
        to_table="OrdersArchive",
        from_column_list="a, b",
        to_column_list="x, y",
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )
    values.update(overrides)
    return ImportJob(**values)


class FakeRepository(JobRepository):
    def __init__(self, jobs=(), legacy=()):
        self.jobs: Dict[int, ImportJob] = {j.import_id: j for j in jobs}
        self.legacy: List[LegacyScheduleEntry] = list(legacy)
        self.last_runs: Dict[int, datetime] = {}
        self.next_runs: Dict[int, datetime] = {}
        self.legacy_runs: Dict[int, tuple] = {}
        self.ensured = False

    def ensure_run_columns(self):
        self.ensured = True
        return True

    def get_due_legacy_entries(self, now):
        return [e for e in self.legacy if e.is_active and e.next_update <= now]

    def get_cron_tagged_jobs(self):
        return [j for j in self.jobs.values() if j.has_cron]

    def get_full_job(self, import_id):
        return self.jobs.get(import_id)

    def record_last_run(self, import_id, when):
        self.last_runs[import_id] = when

    def record_next_run(self, import_id, when):
        self.next_runs[import_id] = when

    def record_legacy_run(self, entry_id, last_update, next_update):
        self.legacy_runs[entry_id] = (last_update, next_update)


class FakeExecutor:
    def __init__(self, fail_ids=(), raise_ids=()):
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.executed: List[int] = []

    def execute(self, job, cancel_event=None):
        self.executed.append(job.import_id)
        if job.import_id in self.raise_ids:
            raise RuntimeError(f"boom in {job.import_id}")
        return TransferOutcome(import_id=job.import_id, success=job.import_id not in self.fail_ids)
