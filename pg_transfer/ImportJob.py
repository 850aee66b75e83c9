from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

# ============================== Config model ===============================

IGNORE_SENTINEL = "<-Ignore->"

SOURCE = "source"
DESTINATION = "destination"


def _split_list(raw: str | None, keep_empty: bool = False) -> List[str]:
    if not raw:
        return []
    items = [c.strip() for c in raw.split(",")]
    return items if keep_empty else [c for c in items if c]


@dataclass(frozen=True)
class ColumnSpec:
    dest_column: str
    source_column: Optional[str] = None
    constant_value: Optional[str] = None

    @property
    def is_constant(self) -> bool:
        return bool(self.constant_value)


@dataclass(frozen=True)
class DataSource:
    data_source_id: int
    name: str
    server_name: str
    user_name: str = ""
    password: str = ""                  # encrypted at rest
    authentication_type: str = "password"
    default_database: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class ImportJob:
    import_id: int
    name: str
    from_connection_id: int
    to_connection_id: int
    to_table: str
    created_at: datetime
    from_table: str = ""
    query: str = ""                     # ad-hoc source query, wins over from_table
    from_column_list: str = ""          # comma-separated string
    to_column_list: str = ""            # comma-separated string
    mapped_column_list: str = ""        # comma-separated constants, positional
    before_query: str = ""
    after_query: str = ""
    is_truncate: bool = False
    is_delete: bool = False
    cron_job: str = ""
    from_database: str = ""
    to_database: str = ""
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    is_active: bool = True
    source: Optional[DataSource] = field(default=None, compare=False)
    destination: Optional[DataSource] = field(default=None, compare=False)

    @property
    def clears_destination(self) -> bool:
        return self.is_truncate or self.is_delete

    @property
    def has_cron(self) -> bool:
        return bool(self.cron_job and self.cron_job.strip())

    def column_specs(self) -> List[ColumnSpec]:
        """
        Fold the three stored lists into one ordered list of ColumnSpec records.
        - Source entries equal to the ignore sentinel are dropped before alignment.
        - Constants stay positional: an empty slot means "read the source column".
        - Pairs beyond the shorter of the source/destination lists are dropped.
        """
        sources = [c for c in _split_list(self.from_column_list) if c != IGNORE_SENTINEL]
        dests = _split_list(self.to_column_list)
        constants = _split_list(self.mapped_column_list, keep_empty=True)

        specs: List[ColumnSpec] = []
        for i in range(min(len(sources), len(dests))):
            constant = constants[i] if i < len(constants) and constants[i] else None
            specs.append(ColumnSpec(
                dest_column=dests[i],
                source_column=None if constant else sources[i],
                constant_value=constant,
            ))
        return specs


@dataclass(frozen=True)
class LegacyScheduleEntry:
    id: int
    import_id: int
    last_update: datetime
    next_update: datetime
    created_at: datetime
    cron: Optional[str] = None          # hint only; next_update is interval based
    is_active: bool = True


@dataclass
class TransferOutcome:
    import_id: int
    success: bool = False
    rows_transferred: int = 0
    batches: int = 0
    duration: float = 0.0
    foreign_keys_restored: bool = True
    messages: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    def note(self, message: str) -> None:
        self.messages.append(message)
