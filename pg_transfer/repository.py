from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

import pendulum
import psycopg2
import psycopg2.extras

from pg_transfer.connections import open_connection
from pg_transfer.ImportJob import DataSource, ImportJob, LegacyScheduleEntry

LOG = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Catalog timestamps are stored as UTC; naive values are tagged, aware ones converted."""
    if value is None:
        return None
    if value.tzinfo is None:
        return pendulum.instance(value, tz="UTC")
    return pendulum.instance(value).in_timezone("UTC")


class JobRepository(ABC):
    """Storage for job definitions and the run fields the scheduler maintains."""

    def ensure_run_columns(self) -> bool:
        return True

    @abstractmethod
    def get_due_legacy_entries(self, now: datetime) -> List[LegacyScheduleEntry]:
        ...

    @abstractmethod
    def get_cron_tagged_jobs(self) -> List[ImportJob]:
        ...

    @abstractmethod
    def get_full_job(self, import_id: int) -> Optional[ImportJob]:
        ...

    @abstractmethod
    def record_last_run(self, import_id: int, when: datetime) -> None:
        ...

    @abstractmethod
    def record_next_run(self, import_id: int, when: datetime) -> None:
        ...

    @abstractmethod
    def record_legacy_run(self, entry_id: int, last_update: datetime, next_update: datetime) -> None:
        ...


# ============================== PostgreSQL catalog ===============================

_JOB_COLUMNS = """
    i.id, i.name, i.from_connection_id, i.to_connection_id, i.from_table_name, i.to_table_name,
    i.query, i.source_column_list, i.destination_column_list, i.mapped_column_list,
    i.before_query, i.after_query, i.is_truncate, i.is_delete_and_insert, i.cron_job,
    i.from_database, i.to_database, i.created_date, i.last_run_datetime, i.next_run_datetime,
    i.is_active
"""

_DATA_SOURCE_SQL = """
    SELECT data_source_id, datasource_name, server_name, user_name, password,
           authentication_type, default_database_name, is_active
    FROM data_source
    WHERE data_source_id = %s
"""


def _job_from_row(row, source: DataSource | None = None, destination: DataSource | None = None) -> ImportJob:
    return ImportJob(
        import_id=row["id"],
        name=row["name"] or f"import-{row['id']}",
        from_connection_id=row["from_connection_id"],
        to_connection_id=row["to_connection_id"],
        from_table=row["from_table_name"] or "",
        to_table=row["to_table_name"] or "",
        query=row["query"] or "",
        from_column_list=row["source_column_list"] or "",
        to_column_list=row["destination_column_list"] or "",
        mapped_column_list=row["mapped_column_list"] or "",
        before_query=row["before_query"] or "",
        after_query=row["after_query"] or "",
        is_truncate=bool(row["is_truncate"]),
        is_delete=bool(row["is_delete_and_insert"]),
        cron_job=row["cron_job"] or "",
        from_database=row["from_database"] or "",
        to_database=row["to_database"] or "",
        created_at=as_utc(row["created_date"]),
        last_run_at=as_utc(row["last_run_datetime"]),
        next_run_at=as_utc(row["next_run_datetime"]),
        is_active=bool(row["is_active"]),
        source=source,
        destination=destination,
    )


def _data_source_from_row(row) -> DataSource:
    return DataSource(
        data_source_id=row["data_source_id"],
        name=row["datasource_name"] or "",
        server_name=row["server_name"] or "",
        user_name=row["user_name"] or "",
        password=row["password"] or "",
        authentication_type=row["authentication_type"] or "",
        default_database=row["default_database_name"] or "",
        is_active=bool(row["is_active"]),
    )


class PostgresJobRepository(JobRepository):
    """Job catalog kept in the import_data / scheduler / data_source tables."""

    def __init__(self, catalog_dsn: str, logger: logging.Logger | None = None):
        self.catalog_dsn = catalog_dsn
        self.log = logger or LOG

    def _connect(self):
        return open_connection(dsn=self.catalog_dsn, application_name="pg_transfer_catalog")

    def ensure_run_columns(self) -> bool:
        """Older catalogs predate the run-tracking columns; add them when missing."""
        try:
            with self._connect() as conn, conn.cursor() as c:
                c.execute("ALTER TABLE import_data ADD COLUMN IF NOT EXISTS last_run_datetime TIMESTAMP NULL")
                c.execute("ALTER TABLE import_data ADD COLUMN IF NOT EXISTS next_run_datetime TIMESTAMP NULL")
                conn.commit()
        except psycopg2.Error:
            self.log.warning("Could not ensure run-tracking columns on import_data", exc_info=True)
            return False
        return True

    def get_due_legacy_entries(self, now: datetime) -> List[LegacyScheduleEntry]:
        with self._connect() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as c:
            c.execute(
                """
                SELECT id, cron, last_update_datetime, next_update_datetime, import_id, created_date, is_active
                FROM scheduler
                WHERE next_update_datetime <= %s AND is_active
                ORDER BY next_update_datetime, id
                """,
                (pendulum.instance(now).in_timezone("UTC").naive(),),
            )
            rows = c.fetchall()
        entries = [
            LegacyScheduleEntry(
                id=r["id"],
                import_id=r["import_id"],
                cron=r["cron"],
                last_update=as_utc(r["last_update_datetime"]),
                next_update=as_utc(r["next_update_datetime"]),
                created_at=as_utc(r["created_date"]),
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]
        self.log.debug("Found %d due legacy schedule entries", len(entries))
        return entries

    def get_cron_tagged_jobs(self) -> List[ImportJob]:
        with self._connect() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as c:
            c.execute(
                f"SELECT {_JOB_COLUMNS} FROM import_data i "
                "WHERE i.cron_job IS NOT NULL AND btrim(i.cron_job) <> '' ORDER BY i.id"
            )
            rows = c.fetchall()
        return [_job_from_row(r) for r in rows]

    def get_full_job(self, import_id: int) -> Optional[ImportJob]:
        with self._connect() as conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as c:
            c.execute(f"SELECT {_JOB_COLUMNS} FROM import_data i WHERE i.id = %s", (import_id,))
            row = c.fetchone()
            if row is None:
                return None
            c.execute(_DATA_SOURCE_SQL, (row["from_connection_id"],))
            src_row = c.fetchone()
            c.execute(_DATA_SOURCE_SQL, (row["to_connection_id"],))
            dst_row = c.fetchone()
        return _job_from_row(
            row,
            source=_data_source_from_row(src_row) if src_row else None,
            destination=_data_source_from_row(dst_row) if dst_row else None,
        )

    def _update(self, sql: str, params: tuple) -> None:
        with self._connect() as conn, conn.cursor() as c:
            c.execute(sql, params)
            conn.commit()

    def record_last_run(self, import_id: int, when: datetime) -> None:
        self._update(
            "UPDATE import_data SET last_run_datetime = %s WHERE id = %s",
            (pendulum.instance(when).in_timezone("UTC").naive(), import_id),
        )

    def record_next_run(self, import_id: int, when: datetime) -> None:
        self._update(
            "UPDATE import_data SET next_run_datetime = %s WHERE id = %s",
            (pendulum.instance(when).in_timezone("UTC").naive(), import_id),
        )

    def record_legacy_run(self, entry_id: int, last_update: datetime, next_update: datetime) -> None:
        self._update(
            "UPDATE scheduler SET last_update_datetime = %s, next_update_datetime = %s WHERE id = %s",
            (
                pendulum.instance(last_update).in_timezone("UTC").naive(),
                pendulum.instance(next_update).in_timezone("UTC").naive(),
                entry_id,
            ),
        )
