from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from pg_transfer.errors import ColumnMappingError, TransferDefinitionError
from pg_transfer.ImportJob import ColumnSpec, ImportJob

LOG = logging.getLogger(__name__)

# ============================== Quoting helpers ===============================

def quote_ident(ident: str) -> str:
    q = '"' + ident.replace('"', '""') + '"'
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Quoted identifier: raw=%r quoted=%r", ident, q)
    return q

def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"

def qualified_table(name: str) -> str:
    """
    Quote a possibly schema-qualified table name ("public.orders" -> "public"."orders").
    Names that already carry double quotes are trusted as written.
    """
    name = name.strip()
    if '"' in name:
        return name
    fq = ".".join(quote_ident(part.strip()) for part in name.split("."))
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("FQ table: %s", fq)
    return fq

# ============================== Column plan ===============================

@dataclass(frozen=True)
class ColumnMapping:
    ordinal: int
    dest_column: str
    source_column: Optional[str] = None

    def __str__(self) -> str:
        src = self.source_column or f"#{self.ordinal}"
        return f"{src} -> {self.dest_column}"


@dataclass(frozen=True)
class ColumnPlan:
    projection: str
    mappings: List[ColumnMapping]

    @property
    def dest_columns(self) -> List[str]:
        return [m.dest_column for m in self.mappings]


def resolve_columns(specs: Sequence[ColumnSpec]) -> ColumnPlan:
    """
    Turn ordered ColumnSpec records into a source projection and a bulk-load column map.
    • A constant becomes a quoted literal aliased to its destination column.
    • A source column is identifier-quoted and aliased to its destination column.
    • The ordinal advances once per emitted term, whichever branch produced it.
    """
    if not specs:
        raise ColumnMappingError("No valid columns found after parsing source or destination lists")

    terms: List[str] = []
    mappings: List[ColumnMapping] = []
    for spec in specs:
        if not spec.dest_column:
            raise ColumnMappingError("Destination column name cannot be empty")
        ordinal = len(terms)
        if spec.is_constant:
            terms.append(f"{quote_literal(spec.constant_value)} AS {quote_ident(spec.dest_column)}")
            mappings.append(ColumnMapping(ordinal, spec.dest_column))
        elif spec.source_column:
            terms.append(f"{quote_ident(spec.source_column)} AS {quote_ident(spec.dest_column)}")
            mappings.append(ColumnMapping(ordinal, spec.dest_column, spec.source_column))
        else:
            raise ColumnMappingError(f"Column {spec.dest_column!r} has neither a source column nor a constant")

    plan = ColumnPlan(projection=", ".join(terms), mappings=mappings)
    LOG.debug("Resolved %d column mappings: %s", len(mappings), [str(m) for m in mappings])
    return plan


def build_source_query(job: ImportJob, plan: ColumnPlan) -> str:
    if job.query and job.query.strip():
        body = job.query.strip().rstrip(";")
        sql = f"SELECT {plan.projection} FROM ({body}) AS query_result"
    elif job.from_table and job.from_table.strip():
        sql = f"SELECT {plan.projection} FROM {qualified_table(job.from_table)}"
    else:
        raise TransferDefinitionError(f"Import {job.import_id} has neither a source table nor a source query")
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated source query: %s", sql)
    return sql


def build_insert_sql(table: str, plan: ColumnPlan) -> str:
    col_list = ", ".join(quote_ident(c) for c in plan.dest_columns)
    sql = f"INSERT INTO {qualified_table(table)} ({col_list}) VALUES %s"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated INSERT SQL: %s", sql)
    return sql


def plan_for_job(job: ImportJob) -> ColumnPlan:
    if not job.to_table or not job.to_table.strip():
        raise TransferDefinitionError(f"Import {job.import_id} has no destination table")
    if not job.from_column_list or not job.to_column_list:
        raise ColumnMappingError("Source or destination column lists cannot be empty")
    return resolve_columns(job.column_specs())
