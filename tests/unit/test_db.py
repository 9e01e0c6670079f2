"""Unit tests for iam_provisioning.db error mapping, using a stand-in connection."""

from __future__ import annotations

import psycopg
import pytest

from iam_provisioning.config import ProvisioningSettings
from iam_provisioning.db import Database
from iam_provisioning.jobs import InMemoryJobRepository, JobStatus, JobTracker
from iam_provisioning.shared import ErrorKind, StoreConflictError, StoreUnavailableError
from iam_provisioning.store import IdentityRecord, PostgresIdentityStore

HEADER = "loginName,email,firstName,lastName,active"


class _Cursor:
    rowcount = 1

    def fetchone(self):
        return None


class _FakeConnection:
    """Answers every SELECT with no row; INSERTs for ``reject_login`` raise ``exc``."""

    closed = False
    broken = False

    def __init__(self, exc: Exception, reject_login: str | None = None) -> None:
        self.exc = exc
        self.reject_login = reject_login
        self.inserted: list[str] = []

    def execute(self, query, params=()):
        if "INSERT INTO identity_user" in str(query):
            if self.reject_login is None or params[0] == self.reject_login:
                raise self.exc
            self.inserted.append(params[0])
        return _Cursor()

    def close(self):
        self.closed = True


def _user(login_name: str = "john.doe") -> IdentityRecord:
    return IdentityRecord(login_name, f"{login_name}@example.com", "John", "Doe", True)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestErrorMapping:
    def test_string_truncation_is_conflict(self):
        exc = psycopg.errors.StringDataRightTruncation("value too long for type character varying(100)")
        store = PostgresIdentityStore(Database("dsn", conn=_FakeConnection(exc)))
        with pytest.raises(StoreConflictError, match="value too long"):
            store.create_user(_user())

    def test_unique_violation_is_conflict(self):
        exc = psycopg.errors.UniqueViolation("duplicate key value violates unique constraint")
        store = PostgresIdentityStore(Database("dsn", conn=_FakeConnection(exc)))
        with pytest.raises(StoreConflictError):
            store.create_user(_user())

    def test_query_canceled_is_unavailable(self):
        exc = psycopg.errors.QueryCanceled("canceling statement due to statement timeout")
        store = PostgresIdentityStore(Database("dsn", conn=_FakeConnection(exc)))
        with pytest.raises(StoreUnavailableError):
            store.create_user(_user())


# ---------------------------------------------------------------------------
# Through a job
# ---------------------------------------------------------------------------

class TestDataErrorInJob:
    def test_row_rejected_and_next_row_processed(self):
        conn = _FakeConnection(
            psycopg.errors.StringDataRightTruncation("value too long"), reject_login="a"
        )
        tracker = JobTracker(
            InMemoryJobRepository(),
            PostgresIdentityStore(Database("dsn", conn=conn)),
            ProvisioningSettings(retry_backoff_seconds=0),
        )
        job = tracker.create_job("data-error")
        data = "\n".join([HEADER, "a,a@example.com,A,Aa,true", "b,b@example.com,B,Bb,true"])
        report = tracker.execute_job(job.id, data.encode(), dry_run=False)

        assert report.job.status is JobStatus.COMPLETED
        assert report.job.created_count == 1
        assert report.job.failed_count == 1
        (rejection,) = report.rejections
        assert rejection.row_number == 1
        assert rejection.error_kind is ErrorKind.STORE_WRITE_FAILED
        assert conn.inserted == ["b"]
