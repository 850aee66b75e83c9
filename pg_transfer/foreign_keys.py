from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from pg_transfer.columns import qualified_table, quote_ident, quote_literal

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForeignKey:
    schema: str
    table: str              # child table that owns the constraint
    name: str
    definition: str         # e.g. FOREIGN KEY (customer_id) REFERENCES public.customers(id)

    @property
    def owner(self) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(self.table)}"


@dataclass(frozen=True)
class Suspension:
    table: str
    constraints: List[ForeignKey]


class ForeignKeyDialect(ABC):
    """Engine-specific discovery and toggling of FK constraints around one table."""

    @abstractmethod
    def discover(self, conn, table: str) -> List[ForeignKey]:
        ...

    @abstractmethod
    def disable(self, conn, constraints: Sequence[ForeignKey]) -> None:
        ...

    @abstractmethod
    def enable(self, conn, constraints: Sequence[ForeignKey]) -> None:
        ...

    def restore_statements(self, constraints: Sequence[ForeignKey]) -> List[str]:
        """Plain DDL an operator can run by hand to put the constraints back."""
        return [
            f"ALTER TABLE {fk.owner} ADD CONSTRAINT {quote_ident(fk.name)} {fk.definition};"
            for fk in constraints
        ]


# ============================== PostgreSQL ===============================

_DISCOVER_SQL = """
    SELECT n.nspname, c.relname, con.conname, pg_get_constraintdef(con.oid)
    FROM pg_constraint con
    JOIN pg_class c ON c.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE con.contype = 'f'
      AND (con.conrelid = %s::regclass OR con.confrelid = %s::regclass)
    ORDER BY n.nspname, c.relname, con.conname
"""


class PostgresForeignKeyDialect(ForeignKeyDialect):
    """
    PostgreSQL cannot switch a foreign key off in place (TRUNCATE refuses referenced
    tables regardless of triggers), so suspension drops the constraints and keeps
    their definitions; resuming re-adds them, which validates every existing row.
    """

    def discover(self, conn, table: str) -> List[ForeignKey]:
        fq = qualified_table(table)
        with conn.cursor() as c:
            c.execute(_DISCOVER_SQL, (fq, fq))
            rows = c.fetchall()
        fks = [ForeignKey(schema=r[0], table=r[1], name=r[2], definition=r[3]) for r in rows]
        LOG.info("Discovered %d foreign key(s) touching %s: %s", len(fks), fq, [fk.name for fk in fks])
        return fks

    def disable_sql(self, constraints: Sequence[ForeignKey]) -> str:
        return "\n".join(
            f"ALTER TABLE {fk.owner} DROP CONSTRAINT IF EXISTS {quote_ident(fk.name)};"
            for fk in constraints
        )

    def enable_sql(self, constraints: Sequence[ForeignKey]) -> str:
        checks = []
        for fk in constraints:
            checks.append(
                "  IF NOT EXISTS (SELECT 1 FROM pg_constraint "
                f"WHERE conname = {quote_literal(fk.name)} "
                f"AND conrelid = {quote_literal(fk.owner)}::regclass) THEN\n"
                f"    ALTER TABLE {fk.owner} ADD CONSTRAINT {quote_ident(fk.name)} {fk.definition};\n"
                "  END IF;"
            )
        return "DO $fk$\nBEGIN\n" + "\n".join(checks) + "\nEND\n$fk$;"

    def disable(self, conn, constraints: Sequence[ForeignKey]) -> None:
        if not constraints:
            return
        sql = self.disable_sql(constraints)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("FK disable SQL: %s", sql)
        with conn.cursor() as c:
            c.execute(sql)

    def enable(self, conn, constraints: Sequence[ForeignKey]) -> None:
        if not constraints:
            return
        sql = self.enable_sql(constraints)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("FK enable SQL: %s", sql)
        with conn.cursor() as c:
            c.execute(sql)


# ============================== Guard ===============================

class ForeignKeyGuard:
    def __init__(self, dialect: ForeignKeyDialect | None = None, logger: logging.Logger | None = None):
        self.dialect = dialect or PostgresForeignKeyDialect()
        self.log = logger or LOG

    def suspend(self, conn, table: str) -> Optional[Suspension]:
        """Returns None when suspension failed; the transfer then proceeds at its own risk."""
        t0 = time.perf_counter()
        try:
            constraints = self.dialect.discover(conn, table)
            if constraints:
                # definitions only live in memory until resume; keep a copy in the log
                self.log.warning(
                    "Dropping %d foreign key(s) around %s; to restore them by hand run:\n%s",
                    len(constraints), table, "\n".join(self.dialect.restore_statements(constraints)),
                )
            self.dialect.disable(conn, constraints)
        except Exception:
            self.log.error("Error disabling foreign key constraints for table %s", table, exc_info=True)
            return None
        self.log.info(
            "Foreign key constraints disabled for table %s (%d constraint(s), %.3fs)",
            table, len(constraints), time.perf_counter() - t0,
        )
        return Suspension(table=table, constraints=list(constraints))

    def resume(self, conn, suspension: Suspension) -> bool:
        t0 = time.perf_counter()
        names = [fk.name for fk in suspension.constraints]
        try:
            self.dialect.enable(conn, suspension.constraints)
        except Exception:
            self.report_not_restored(suspension, "re-adding them failed", exc_info=True)
            return False
        self.log.info(
            "Foreign key constraints enabled for table %s (%d constraint(s), %.3fs)",
            suspension.table, len(names), time.perf_counter() - t0,
        )
        return True

    def report_not_restored(self, suspension: Suspension, reason: str, exc_info: bool = False) -> None:
        self.log.critical(
            "FOREIGN KEYS NOT RESTORED on %s (%s); referential integrity is NOT enforced. Restore with:\n%s",
            suspension.table, reason, "\n".join(self.dialect.restore_statements(suspension.constraints)),
            exc_info=exc_info,
        )
