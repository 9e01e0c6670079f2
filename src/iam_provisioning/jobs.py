"""iam_provisioning.jobs

Provisioning job lifecycle, counters, and history.

State machine:

    PENDING --execute--> RUNNING --exhausted--> COMPLETED
       |                    |
       +------cancel--------+--job-fatal error--> FAILED

Terminal states are never left.  Row-level rejections only bump
failed_count; they never fail the job.  Counters are flushed to the
repository every ``progress_flush_every`` rows and frozen at the terminal
transition.

Repositories:
  InMemoryJobRepository   -- process-local history
  PostgresJobRepository   -- provisioning_job + provisioning_job_rejection
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

from iam_provisioning.config import ProvisioningSettings
from iam_provisioning.db import Database
from iam_provisioning.executor import Executor, Outcome, RowOutcome
from iam_provisioning.parser import Source, parse
from iam_provisioning.shared import (
    JOB_FATAL_KINDS,
    ErrorKind,
    JobCancelledError,
    JobFatalError,
    JobNotFoundError,
    JobStateError,
    utcnow,
)
from iam_provisioning.store import IdentityStore
from iam_provisioning.validator import BatchValidator, Rejected

log = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SourceType(str, enum.Enum):
    CSV = "CSV"


# ---------------------------------------------------------------------------
# Job entity
# ---------------------------------------------------------------------------

@dataclass
class ProvisioningJob:
    id: str
    job_name: str
    created_at: datetime
    source_location: str | None = None
    triggered_by: str | None = None
    source_type: SourceType = SourceType.CSV
    dry_run: bool = False
    status: JobStatus = JobStatus.PENDING
    total_processed: int = 0
    created_count: int = 0
    updated_count: int = 0
    noop_count: int = 0
    failed_count: int = 0
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def _require(self, *allowed: JobStatus) -> None:
        if self.status not in allowed:
            raise JobStateError(
                f"job {self.id} is {self.status.value}; expected "
                f"{' or '.join(s.value for s in allowed)}"
            )

    def start(self, dry_run: bool, now: datetime) -> None:
        self._require(JobStatus.PENDING)
        self.dry_run = dry_run
        self.status = JobStatus.RUNNING
        self.started_at = now

    def complete(self, now: datetime) -> None:
        self._require(JobStatus.RUNNING)
        self.status = JobStatus.COMPLETED
        self.completed_at = now

    def fail(self, kind: ErrorKind, message: str, now: datetime) -> None:
        self._require(JobStatus.PENDING, JobStatus.RUNNING)
        if kind not in JOB_FATAL_KINDS:
            raise JobStateError(f"{kind} is a row-level error kind, not a job failure")
        self.status = JobStatus.FAILED
        self.error_kind = kind
        self.error_message = message
        self.completed_at = now

    def record(self, outcome: RowOutcome) -> None:
        self._require(JobStatus.RUNNING)
        self.total_processed += 1
        if outcome.classification is Outcome.CREATED:
            self.created_count += 1
        elif outcome.classification is Outcome.UPDATED:
            self.updated_count += 1
        elif outcome.classification is Outcome.NOOP:
            self.noop_count += 1
        else:
            self.failed_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "source_type": self.source_type.value,
            "source_location": self.source_location,
            "triggered_by": self.triggered_by,
            "dry_run": self.dry_run,
            "status": self.status.value,
            "total_processed": self.total_processed,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "noop_count": self.noop_count,
            "failed_count": self.failed_count,
            "error_kind": str(self.error_kind) if self.error_kind else None,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class JobReport:
    job: ProvisioningJob
    rejections: list[RowOutcome] = field(default_factory=list)
    outcomes: list[RowOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.job.to_dict(),
            "rejections": [o.to_dict() for o in self.rejections[:500]],
        }


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class JobRepository(Protocol):
    def add(self, job: ProvisioningJob) -> None: ...

    def save(self, job: ProvisioningJob) -> None: ...

    def get(self, job_id: str) -> ProvisioningJob: ...

    def list_jobs(self) -> list[ProvisioningJob]: ...

    def add_rejection(self, job_id: str, outcome: RowOutcome) -> None: ...

    def list_rejections(self, job_id: str) -> list[RowOutcome]: ...


class InMemoryJobRepository:
    """Stores snapshots, so callers never share a live job object."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._jobs: dict[str, tuple[int, ProvisioningJob]] = {}
        self._rejections: dict[str, list[RowOutcome]] = {}

    def add(self, job: ProvisioningJob) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise JobStateError(f"job {job.id} already exists")
            self._jobs[job.id] = (next(self._seq), replace(job))
            self._rejections[job.id] = []

    def save(self, job: ProvisioningJob) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise JobNotFoundError(f"Job not found with id: {job.id}")
            seq, _ = self._jobs[job.id]
            self._jobs[job.id] = (seq, replace(job))

    def get(self, job_id: str) -> ProvisioningJob:
        with self._lock:
            try:
                return replace(self._jobs[job_id][1])
            except KeyError:
                raise JobNotFoundError(f"Job not found with id: {job_id}") from None

    def list_jobs(self) -> list[ProvisioningJob]:
        with self._lock:
            ordered = sorted(
                self._jobs.values(),
                key=lambda item: (item[1].created_at, item[0]),
                reverse=True,
            )
            return [replace(job) for _, job in ordered]

    def add_rejection(self, job_id: str, outcome: RowOutcome) -> None:
        with self._lock:
            self._rejections.setdefault(job_id, []).append(outcome)

    def list_rejections(self, job_id: str) -> list[RowOutcome]:
        with self._lock:
            if job_id not in self._jobs:
                raise JobNotFoundError(f"Job not found with id: {job_id}")
            return sorted(self._rejections[job_id], key=lambda o: o.row_number)


_JOB_COLUMNS = (
    "id, job_name, source_type, source_location, triggered_by, dry_run, status, "
    "total_processed, created_count, updated_count, noop_count, failed_count, "
    "error_kind, error_message, created_at, started_at, completed_at"
)


def _row_to_job(row: tuple) -> ProvisioningJob:
    return ProvisioningJob(
        id=row[0],
        job_name=row[1],
        source_type=SourceType(row[2]),
        source_location=row[3],
        triggered_by=row[4],
        dry_run=bool(row[5]),
        status=JobStatus(row[6]),
        total_processed=row[7],
        created_count=row[8],
        updated_count=row[9],
        noop_count=row[10],
        failed_count=row[11],
        error_kind=ErrorKind(row[12]) if row[12] else None,
        error_message=row[13],
        created_at=row[14],
        started_at=row[15],
        completed_at=row[16],
    )


def _job_params(job: ProvisioningJob) -> tuple:
    return (
        job.job_name, job.source_type.value, job.source_location, job.triggered_by,
        job.dry_run, job.status.value, job.total_processed, job.created_count,
        job.updated_count, job.noop_count, job.failed_count,
        job.error_kind.value if job.error_kind else None, job.error_message,
        job.created_at, job.started_at, job.completed_at,
    )


class PostgresJobRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, job: ProvisioningJob) -> None:
        self._db.execute(
            f"""
            INSERT INTO provisioning_job ({_JOB_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (job.id, *_job_params(job)),
        )

    def save(self, job: ProvisioningJob) -> None:
        cur = self._db.execute(
            """
            UPDATE provisioning_job SET
              job_name = %s, source_type = %s, source_location = %s,
              triggered_by = %s, dry_run = %s, status = %s,
              total_processed = %s, created_count = %s, updated_count = %s,
              noop_count = %s, failed_count = %s, error_kind = %s,
              error_message = %s, created_at = %s, started_at = %s,
              completed_at = %s
            WHERE id = %s
            """,
            (*_job_params(job), job.id),
        )
        if cur.rowcount == 0:
            raise JobNotFoundError(f"Job not found with id: {job.id}")

    def get(self, job_id: str) -> ProvisioningJob:
        row = self._db.execute(
            f"SELECT {_JOB_COLUMNS} FROM provisioning_job WHERE id = %s",
            (job_id,),
        ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job not found with id: {job_id}")
        return _row_to_job(row)

    def list_jobs(self) -> list[ProvisioningJob]:
        rows = self._db.execute(
            f"SELECT {_JOB_COLUMNS} FROM provisioning_job ORDER BY created_at DESC, id DESC"
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def add_rejection(self, job_id: str, outcome: RowOutcome) -> None:
        self._db.execute(
            """
            INSERT INTO provisioning_job_rejection (job_id, row_number, error_kind, reason)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (job_id, row_number) DO NOTHING
            """,
            (job_id, outcome.row_number, str(outcome.error_kind), outcome.reason),
        )

    def list_rejections(self, job_id: str) -> list[RowOutcome]:
        self.get(job_id)
        rows = self._db.execute(
            """
            SELECT row_number, error_kind, reason
            FROM provisioning_job_rejection
            WHERE job_id = %s
            ORDER BY row_number ASC
            """,
            (job_id,),
        ).fetchall()
        return [RowOutcome.rejected(r[0], ErrorKind(r[1]), r[2]) for r in rows]


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class JobTracker:
    """Owns job state. The only entry point for external callers."""

    def __init__(
        self,
        repository: JobRepository,
        store: IdentityStore,
        settings: ProvisioningSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 4,
    ) -> None:
        self._repo = repository
        self._store = store
        self._settings = settings or ProvisioningSettings()
        self._clock = clock
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}

    # -- queries ------------------------------------------------------------

    def get_job(self, job_id: str) -> ProvisioningJob:
        return self._repo.get(job_id)

    def list_jobs(self) -> list[ProvisioningJob]:
        return self._repo.list_jobs()

    def list_rejections(self, job_id: str) -> list[RowOutcome]:
        return self._repo.list_rejections(job_id)

    # -- commands -----------------------------------------------------------

    def create_job(
        self,
        job_name: str,
        source_location: str | None = None,
        triggered_by: str | None = None,
    ) -> ProvisioningJob:
        job = ProvisioningJob(
            id=str(uuid.uuid4()),
            job_name=job_name,
            source_location=source_location,
            triggered_by=triggered_by,
            created_at=self._clock(),
        )
        self._repo.add(job)
        log.info("Provisioning job %s created: name=%r triggered_by=%r",
                 job.id, job_name, triggered_by)
        return replace(job)

    def cancel_job(self, job_id: str) -> ProvisioningJob:
        """Request cooperative cancellation.

        A PENDING job fails immediately; a RUNNING job stops before its next
        row.  Terminal jobs, and RUNNING jobs this tracker is not executing,
        raise JobStateError.
        """
        with self._lock:
            job = self._repo.get(job_id)
            if job.status is JobStatus.PENDING:
                job.fail(ErrorKind.CANCELLED, "cancelled before execution", self._clock())
                self._repo.save(job)
                log.info("Provisioning job %s cancelled before execution", job_id)
                return job
            if job.status.is_terminal:
                raise JobStateError(f"job {job_id} is already {job.status.value}")
            event = self._cancel_events.get(job_id)
            if event is None:
                raise JobStateError(f"job {job_id} is not running in this tracker")
            event.set()
            log.info("Provisioning job %s cancellation requested", job_id)
            return job

    def execute_job(
        self,
        job_id: str,
        source: Source,
        dry_run: bool,
        collect_outcomes: bool = False,
    ) -> JobReport:
        """Run the job synchronously and return its final report."""
        with self._lock:
            job = self._repo.get(job_id)
            job.start(dry_run, self._clock())
            self._repo.save(job)
            cancel = self._cancel_events[job_id] = threading.Event()

        log.info("Provisioning job %s started (dry_run=%s)", job_id, dry_run)
        report = JobReport(job=job)
        try:
            self._run_pipeline(job, source, cancel, report, collect_outcomes)
        except JobFatalError as exc:
            log.warning("Provisioning job %s failed: %s: %s", job_id, exc.kind, exc)
            self._finish(job, exc.kind, str(exc))
        except Exception as exc:
            log.exception("Provisioning job %s failed", job_id)
            self._finish(job, ErrorKind.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}")
        else:
            self._finish(job)
        finally:
            with self._lock:
                self._cancel_events.pop(job_id, None)

        report.job = replace(job)
        return report

    def submit(self, job_id: str, source: Source, dry_run: bool) -> Future[JobReport]:
        """Run execute_job on the tracker's worker pool; poll with get_job."""
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="provisioning-job"
                )
            pool = self._pool
        return pool.submit(self.execute_job, job_id, source, dry_run)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    # -- pipeline -----------------------------------------------------------

    def _run_pipeline(
        self,
        job: ProvisioningJob,
        source: Source,
        cancel: threading.Event,
        report: JobReport,
        collect_outcomes: bool,
    ) -> None:
        settings = self._settings
        records = parse(source, max_rows=settings.max_rows)
        validate = BatchValidator()
        executor = Executor(self._store, job.dry_run, settings.retry_policy())

        for item in records:
            if cancel.is_set():
                raise JobCancelledError(
                    f"cancelled after {job.total_processed} rows"
                )
            result = validate(item)
            if isinstance(result, Rejected):
                outcome = RowOutcome.from_rejected(result)
            else:
                outcome = executor.process(result)

            job.record(outcome)
            if outcome.classification is Outcome.REJECTED:
                log.debug("job %s row %d rejected: %s", job.id, outcome.row_number, outcome.reason)
                report.rejections.append(outcome)
                self._repo.add_rejection(job.id, outcome)
            if collect_outcomes:
                report.outcomes.append(outcome)
            if job.total_processed % settings.progress_flush_every == 0:
                self._repo.save(job)

    def _finish(
        self,
        job: ProvisioningJob,
        kind: ErrorKind | None = None,
        message: str | None = None,
    ) -> None:
        now = self._clock()
        if kind is None:
            job.complete(now)
        else:
            job.fail(kind, message or str(kind), now)
        self._repo.save(job)
        log.info(
            "Provisioning job %s %s: processed=%d created=%d updated=%d noop=%d failed=%d",
            job.id, job.status.value, job.total_processed, job.created_count,
            job.updated_count, job.noop_count, job.failed_count,
        )
