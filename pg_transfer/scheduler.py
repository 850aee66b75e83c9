from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set, Tuple

import pendulum
from croniter import croniter

from pg_transfer.alerts import format_failure, send_alert
from pg_transfer.engine import TransferExecutor
from pg_transfer.ImportJob import ImportJob, LegacyScheduleEntry, TransferOutcome
from pg_transfer.repository import JobRepository, as_utc
from pg_transfer.settings import WorkerSettings

LOG = logging.getLogger(__name__)

# ============================== Cron math ===============================

def _stdlib_utc(value: datetime) -> datetime:
    d = as_utc(value)
    return datetime(d.year, d.month, d.day, d.hour, d.minute, d.second, d.microsecond, tzinfo=timezone.utc)


class CronSchedule:
    """A parsed five-field cron expression evaluated in UTC."""

    def __init__(self, expression: str):
        self.expression = expression.strip()
        # croniter raises CroniterError (a ValueError) or KeyError on malformed fields
        croniter(self.expression, datetime(2000, 1, 1, tzinfo=timezone.utc))

    def next_occurrence(self, after: datetime) -> datetime:
        nxt = croniter(self.expression, _stdlib_utc(after)).get_next(datetime)
        return as_utc(nxt)

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


def parse_cron(expression: str) -> CronSchedule:
    if not expression or not expression.strip():
        raise ValueError("Empty cron expression")
    try:
        return CronSchedule(expression)
    except (ValueError, KeyError) as e:
        raise ValueError(f"Invalid cron expression {expression!r}: {e}") from e


def legacy_next_update(entry: LegacyScheduleEntry, now: datetime) -> datetime:
    """Coarse fixed interval: one hour when the entry carries a cron hint, otherwise one day."""
    now = pendulum.instance(now)
    if entry.cron and entry.cron.strip():
        return now.add(hours=1)
    return now.add(days=1)


@dataclass(frozen=True)
class DueCronJob:
    job: ImportJob
    schedule: CronSchedule
    due_at: datetime


@dataclass
class CronPlan:
    due: List[DueCronJob] = field(default_factory=list)
    invalid: List[Tuple[ImportJob, str]] = field(default_factory=list)
    waiting: int = 0


def plan_cron_runs(now: datetime, jobs: List[ImportJob]) -> CronPlan:
    """
    Pure due-job selection: a job fires when the next occurrence after its last run
    (or creation, when it never ran) is at or before now.
    """
    plan = CronPlan()
    for job in jobs:
        if not job.has_cron:
            continue
        try:
            schedule = parse_cron(job.cron_job)
        except ValueError as e:
            plan.invalid.append((job, str(e)))
            continue
        anchor = job.last_run_at or job.created_at
        if anchor is None:
            plan.invalid.append((job, "no last run or creation time to evaluate the cron expression from"))
            continue
        try:
            due_at = schedule.next_occurrence(anchor)
        except ValueError as e:
            # e.g. "0 0 30 2 *" parses but never fires (CroniterBadDateError)
            plan.invalid.append((job, f"Cron expression {job.cron_job!r} has no next occurrence: {e}"))
            continue
        if due_at <= now:
            plan.due.append(DueCronJob(job=job, schedule=schedule, due_at=due_at))
        else:
            plan.waiting += 1
    return plan


# ============================== Loop ===============================

@dataclass
class CycleReport:
    started_at: datetime
    legacy_run: int = 0
    cron_run: int = 0
    failed: int = 0
    invalid_cron: int = 0
    errors: int = 0

    @property
    def total_run(self) -> int:
        return self.legacy_run + self.cron_run


class TransferScheduler:
    def __init__(
        self,
        repository: JobRepository,
        executor: TransferExecutor,
        settings: WorkerSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        alert: Callable[[str, str], bool] = send_alert,
        logger: logging.Logger | None = None,
    ):
        self.repository = repository
        self.executor = executor
        self.settings = settings or WorkerSettings()
        self.clock = clock or (lambda: pendulum.now("UTC"))
        self.alert = alert
        self.log = logger or LOG

    # ------------------------ Forever ------------------------

    def run_forever(self, stop_event: threading.Event) -> None:
        self.log.info(
            "Scheduler starting at %s (poll_interval=%ss, batch_size=%d, max_concurrent_jobs=%d, sequential)",
            self.clock(), self.settings.poll_interval_seconds, self.settings.batch_size,
            self.settings.max_concurrent_jobs,
        )
        self.repository.ensure_run_columns()

        while not stop_event.is_set():
            try:
                self.run_cycle(cancel_event=stop_event)
            except Exception:
                self.log.error("Error processing scheduled jobs", exc_info=True)
            stop_event.wait(self.settings.poll_interval_seconds)
        self.log.info("Scheduler stopped")

    # ------------------------ One cycle ------------------------

    def run_cycle(self, now: datetime | None = None, cancel_event: threading.Event | None = None) -> CycleReport:
        now = as_utc(now or self.clock())
        t0 = time.perf_counter()
        report = CycleReport(started_at=now)

        legacy_ids = self._legacy_pass(now, report, cancel_event)
        if cancel_event is None or not cancel_event.is_set():
            self._cron_pass(now, report, cancel_event, legacy_ids)

        if report.total_run or report.invalid_cron or report.errors:
            self.log.info(
                "Cycle done: legacy=%d cron=%d failed=%d invalid_cron=%d errors=%d (%.3fs)",
                report.legacy_run, report.cron_run, report.failed, report.invalid_cron,
                report.errors, time.perf_counter() - t0,
            )
        return report

    def _legacy_pass(self, now: datetime, report: CycleReport, cancel_event) -> Set[int]:
        ran: Set[int] = set()
        self.log.debug("Checking for legacy scheduled jobs at %s", now)
        try:
            entries = self.repository.get_due_legacy_entries(now)
        except Exception:
            report.errors += 1
            self.log.error("Could not load due legacy schedule entries", exc_info=True)
            return ran

        for entry in entries:
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                self.log.info("Processing legacy scheduled job %s for import_id=%s", entry.id, entry.import_id)
                job = self.repository.get_full_job(entry.import_id)
                if job is None:
                    self.log.warning("Import data not found for import_id=%s (scheduler entry %s)",
                                     entry.import_id, entry.id)
                    continue

                try:
                    outcome = self._run(job, cancel_event)
                finally:
                    # recorded regardless of success so a failing job is not retried every poll
                    self.repository.record_legacy_run(entry.id, now, legacy_next_update(entry, now))
                    if job.has_cron:
                        self.repository.record_last_run(job.import_id, now)

                ran.add(job.import_id)
                report.legacy_run += 1
                if outcome.success:
                    self.log.info("Successfully executed scheduled job %s for import_id=%s", entry.id, entry.import_id)
                else:
                    report.failed += 1
                    self.log.warning("Failed to execute scheduled job %s for import_id=%s", entry.id, entry.import_id)
            except Exception:
                report.errors += 1
                self.log.error("Error processing scheduled job %s for import_id=%s",
                               entry.id, entry.import_id, exc_info=True)
        return ran

    def _cron_pass(self, now: datetime, report: CycleReport, cancel_event, legacy_ids: Set[int]) -> None:
        self.log.debug("Checking for due cron jobs at %s", now)
        try:
            jobs = self.repository.get_cron_tagged_jobs()
        except Exception:
            report.errors += 1
            self.log.error("Could not load cron-tagged jobs", exc_info=True)
            return

        try:
            plan = plan_cron_runs(now, jobs)
        except Exception:
            report.errors += 1
            self.log.error("Could not evaluate cron schedules", exc_info=True)
            return
        for job, reason in plan.invalid:
            report.invalid_cron += 1
            self.log.error("Skipping import_id=%s: %s", job.import_id, reason)

        for due in plan.due:
            if cancel_event is not None and cancel_event.is_set():
                break
            job_id = due.job.import_id
            try:
                if job_id in legacy_ids:
                    self.log.warning(
                        "import_id=%s is scheduled both by a legacy entry and by its own cron; running it again",
                        job_id,
                    )
                full_job = self.repository.get_full_job(job_id)
                if full_job is None:
                    self.log.warning("Import data not found for cron job with import_id=%s", job_id)
                    continue

                self.log.info("Processing cron job for import_id=%s with expression %r (due %s)",
                              job_id, due.schedule.expression, due.due_at)
                try:
                    outcome = self._run(full_job, cancel_event)
                finally:
                    self.repository.record_last_run(job_id, now)
                    next_run = self._next_run(due.schedule, job_id, now)
                    if next_run is not None:
                        self.repository.record_next_run(job_id, next_run)

                report.cron_run += 1
                if outcome.success:
                    self.log.info("Successfully executed cron job for import_id=%s. Next run at: %s", job_id, next_run)
                else:
                    report.failed += 1
                    self.log.warning("Failed to execute cron job for import_id=%s. Next run at: %s", job_id, next_run)
            except Exception:
                report.errors += 1
                self.log.error("Error processing cron job for import_id=%s", job_id, exc_info=True)

    def _next_run(self, schedule: CronSchedule, job_id: int, now: datetime) -> Optional[datetime]:
        try:
            return schedule.next_occurrence(now)
        except ValueError:
            self.log.error("Could not compute next run for import_id=%s from %r", job_id, schedule.expression,
                           exc_info=True)
            return None

    # ------------------------ Execution ------------------------

    def _run(self, job: ImportJob, cancel_event) -> TransferOutcome:
        outcome = self.executor.execute(job, cancel_event=cancel_event)
        if not outcome.success or not outcome.foreign_keys_restored:
            self.alert(format_failure(job, outcome), self.settings.alert_webhook_url)
        return outcome
