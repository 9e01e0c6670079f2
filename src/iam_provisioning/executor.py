"""iam_provisioning.executor

Apply (real mode) or simulate (dry-run) one classified row at a time.

Both modes run the same email-ownership pre-check so that a dry run and a
real run over the same starting store classify every row identically.  In
dry-run the executor keeps an overlay of the email claims and releases its
simulated writes would have made, since the store itself is never touched.

Store failures:
  StoreConflictError                   -> REJECTED StoreWriteFailed, no retry
  StoreUnavailableError / TimeoutError -> retried with exponential backoff,
                                          then REJECTED StoreWriteFailed
                                          (StoreLookupFailed for reads)
  too many consecutive rows lost to transient failures
                                       -> StoreBudgetExhaustedError
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from iam_provisioning.reconciler import Action, Classification, reconcile
from iam_provisioning.shared import (
    ErrorKind,
    StoreBudgetExhaustedError,
    StoreConflictError,
    StoreUnavailableError,
)
from iam_provisioning.store import IdentityRecord, IdentityStore
from iam_provisioning.validator import Rejected, ValidRecord

log = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (StoreUnavailableError, TimeoutError)


class Outcome(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    NOOP = "NOOP"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class RowOutcome:
    row_number: int
    classification: Outcome
    error_kind: ErrorKind | None = None
    reason: str | None = None
    diff_fields: dict[str, Any] | None = None
    raw: dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def rejected(
        cls,
        row_number: int,
        kind: ErrorKind,
        reason: str | None = None,
        raw: dict[str, str] | None = None,
    ) -> RowOutcome:
        return cls(
            row_number, Outcome.REJECTED, error_kind=kind,
            reason=reason or str(kind), raw=raw or {},
        )

    @classmethod
    def from_rejected(cls, rejected: Rejected) -> RowOutcome:
        return cls.rejected(
            rejected.row_number, rejected.error_kind, rejected.reason, rejected.raw
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "rowNumber": self.row_number,
            "classification": self.classification.value,
        }
        if self.classification is Outcome.REJECTED:
            d["errorKind"] = str(self.error_kind)
            d["reason"] = self.reason
        if self.classification is Outcome.UPDATED:
            d["diffFields"] = dict(self.diff_fields or {})
        return d


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff for transient store failures.

    max_consecutive_failures counts rows in a row that exhausted their
    retries; reaching it stops the job.
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    max_consecutive_failures: int = 25
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)


class _RetriesExhausted(Exception):
    def __init__(self, last: Exception) -> None:
        super().__init__(str(last))
        self.last = last


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class Executor:
    """Per-job executor. Not shared between jobs."""

    def __init__(
        self,
        store: IdentityStore,
        dry_run: bool,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self.dry_run = dry_run
        self._policy = policy or RetryPolicy()
        self._failed_streak = 0
        # dry-run overlay: email -> loginName claimed, emails freed by updates
        self._claimed: dict[str, str] = {}
        self._released: set[str] = set()

    # -- store access -------------------------------------------------------

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        policy = self._policy
        last: Exception | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return fn(*args)
            except TRANSIENT_ERRORS as exc:
                last = exc
                log.warning(
                    "transient store failure in %s (attempt %d/%d): %s",
                    getattr(fn, "__name__", fn), attempt, policy.max_attempts, exc,
                )
                if attempt < policy.max_attempts:
                    policy.sleep(policy.delay(attempt))
        assert last is not None
        raise _RetriesExhausted(last)

    def _exhausted(
        self,
        record: ValidRecord,
        kind: ErrorKind,
        exc: _RetriesExhausted,
    ) -> RowOutcome:
        self._failed_streak += 1
        if self._failed_streak >= self._policy.max_consecutive_failures:
            raise StoreBudgetExhaustedError(
                f"{self._failed_streak} consecutive rows failed on store calls; "
                f"last: {exc.last}"
            ) from exc.last
        return RowOutcome.rejected(record.row_number, kind, f"{kind}: {exc.last}", record.raw)

    def _done(self, outcome: RowOutcome) -> RowOutcome:
        self._failed_streak = 0
        return outcome

    def lookup(self, login_name: str) -> IdentityRecord | None:
        return self._call(self._store.find_by_login_name, login_name)

    def _email_owner(self, email: str) -> str | None:
        if self.dry_run:
            if email in self._claimed:
                return self._claimed[email]
            if email in self._released:
                return None
        found = self._call(self._store.find_by_email, email)
        return found.login_name if found is not None else None

    # -- classification -----------------------------------------------------

    def _email_conflict(self, classification: Classification) -> bool:
        if classification.action is Action.UPDATE and "email" not in classification.diff_fields:
            return False
        record = classification.record
        owner = self._email_owner(record.email)
        return owner is not None and owner != record.login_name

    def _simulate(self, classification: Classification) -> None:
        record = classification.record
        if classification.action is Action.UPDATE and classification.existing is not None:
            old = classification.existing.email
            if self._claimed.get(old) == record.login_name:
                del self._claimed[old]
            self._released.add(old)
        self._claimed[record.email] = record.login_name
        self._released.discard(record.email)

    def _write(self, classification: Classification) -> None:
        record = classification.record
        if classification.action is Action.CREATE:
            self._call(
                self._store.create_user,
                IdentityRecord(
                    login_name=record.login_name,
                    email=record.email,
                    first_name=record.first_name,
                    last_name=record.last_name,
                    active=record.active,
                ),
            )
        else:
            self._call(
                self._store.update_user, record.login_name, dict(classification.diff_fields)
            )

    def execute(self, classification: Classification) -> RowOutcome:
        record = classification.record
        row = record.row_number
        if classification.action is Action.NOOP:
            return self._done(RowOutcome(row, Outcome.NOOP, raw=record.raw))

        try:
            if self._email_conflict(classification):
                return self._done(
                    RowOutcome.rejected(row, ErrorKind.EMAIL_CONFLICT, raw=record.raw)
                )
        except _RetriesExhausted as exc:
            return self._exhausted(record, ErrorKind.STORE_LOOKUP_FAILED, exc)

        if self.dry_run:
            self._simulate(classification)
        else:
            try:
                self._write(classification)
            except StoreConflictError as exc:
                log.info("row %d: store rejected write: %s", row, exc)
                return self._done(RowOutcome.rejected(
                    row, ErrorKind.STORE_WRITE_FAILED,
                    f"{ErrorKind.STORE_WRITE_FAILED}: {exc}", record.raw,
                ))
            except _RetriesExhausted as exc:
                return self._exhausted(record, ErrorKind.STORE_WRITE_FAILED, exc)

        if classification.action is Action.CREATE:
            return self._done(RowOutcome(row, Outcome.CREATED, raw=record.raw))
        return self._done(RowOutcome(
            row, Outcome.UPDATED,
            diff_fields=dict(classification.diff_fields), raw=record.raw,
        ))

    def process(self, record: ValidRecord) -> RowOutcome:
        """Reconcile one valid row against the store, then execute it."""
        try:
            classification = reconcile(record, self.lookup)
        except _RetriesExhausted as exc:
            return self._exhausted(record, ErrorKind.STORE_LOOKUP_FAILED, exc)
        return self.execute(classification)
