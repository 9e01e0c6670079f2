"""iam_provisioning.shared

Shared pieces used across the provisioning pipeline stages.
Includes the exception hierarchy, ErrorKind, RejectWriter, and
report-writing support.
"""

from __future__ import annotations

import csv
import enum
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

class ErrorKind(str, enum.Enum):
    """Machine-readable reason codes for rejected rows and failed jobs."""

    # Row-level
    MISSING_REQUIRED_FIELD = "MissingRequiredField"
    INVALID_EMAIL = "InvalidEmail"
    FIELD_TOO_LONG = "FieldTooLong"
    INVALID_ACTIVE_VALUE = "InvalidActiveValue"
    DUPLICATE_IN_BATCH = "DuplicateInBatch"
    MALFORMED_ROW = "MalformedRow"
    EMAIL_CONFLICT = "EmailConflict"
    STORE_WRITE_FAILED = "StoreWriteFailed"
    STORE_LOOKUP_FAILED = "StoreLookupFailed"
    # Job-fatal
    ROW_LIMIT_EXCEEDED = "RowLimitExceeded"
    UNREADABLE_FILE = "UnreadableFile"
    MISSING_COLUMNS = "MissingColumns"
    EMPTY_FILE = "EmptyFile"
    CANCELLED = "Cancelled"
    STORE_UNAVAILABLE = "StoreUnavailable"
    INTERNAL_ERROR = "InternalError"

    def __str__(self) -> str:
        return self.value


JOB_FATAL_KINDS = frozenset({
    ErrorKind.ROW_LIMIT_EXCEEDED,
    ErrorKind.UNREADABLE_FILE,
    ErrorKind.MISSING_COLUMNS,
    ErrorKind.EMPTY_FILE,
    ErrorKind.CANCELLED,
    ErrorKind.STORE_UNAVAILABLE,
    ErrorKind.INTERNAL_ERROR,
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ProvisioningError(Exception):
    """Base class for provisioning engine errors."""


class JobFatalError(ProvisioningError):
    """Raised when the whole job must stop and be marked FAILED."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class RowLimitExceededError(JobFatalError):
    kind = ErrorKind.ROW_LIMIT_EXCEEDED


class UnreadableFileError(JobFatalError):
    kind = ErrorKind.UNREADABLE_FILE


class MissingColumnsError(JobFatalError):
    kind = ErrorKind.MISSING_COLUMNS


class EmptyFileError(JobFatalError):
    kind = ErrorKind.EMPTY_FILE


class JobCancelledError(JobFatalError):
    kind = ErrorKind.CANCELLED


class StoreBudgetExhaustedError(JobFatalError):
    """Raised when consecutive transient store failures exceed the retry budget."""

    kind = ErrorKind.STORE_UNAVAILABLE


class JobNotFoundError(ProvisioningError, LookupError):
    """Raised when a job id is unknown to the repository."""


class JobStateError(ProvisioningError):
    """Raised on an illegal job status transition."""


class StoreError(ProvisioningError):
    """Base class for identity store failures."""


class StoreConflictError(StoreError):
    """The store rejected a write because of a constraint violation. Not retried."""


class StoreUnavailableError(StoreError):
    """Transient store failure (timeout, connection loss). Retried."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str], row_number: int, reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = ["_row_number"] + list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {"_row_number": row_number, **row, "_reject_reason": reason}
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    job: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "job": job,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
