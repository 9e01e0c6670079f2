"""iam_provisioning.store

Identity store contract consumed by the reconciler and executor, plus two
adapters:

  InMemoryIdentityStore  -- dict-backed, used by tests and dry tooling
  PostgresIdentityStore  -- psycopg-backed, one autocommit statement per write

Errors raised by adapters:
  StoreConflictError     -- unique/constraint violation, missing target row
  StoreUnavailableError  -- timeout or connection failure (transient)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any, Protocol

from psycopg import sql

from iam_provisioning.db import Database
from iam_provisioning.shared import StoreConflictError

# CSV column -> identity_user column
FIELD_COLUMNS: dict[str, str] = {
    "email": "email",
    "firstName": "first_name",
    "lastName": "last_name",
    "active": "active",
}

# identity_user VARCHAR limits, keyed by CSV column
FIELD_MAX_LENGTHS: dict[str, int] = {
    "loginName": 100,
    "email": 255,
    "firstName": 100,
    "lastName": 100,
}

_SELECT_USER = """
    SELECT login_name, email, first_name, last_name, active
    FROM identity_user
"""


@dataclass(frozen=True)
class IdentityRecord:
    login_name: str
    email: str
    first_name: str
    last_name: str
    active: bool = True

    def fields(self) -> dict[str, object]:
        return {
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "active": self.active,
        }


class IdentityStore(Protocol):
    def find_by_login_name(self, login_name: str) -> IdentityRecord | None: ...

    def find_by_email(self, email: str) -> IdentityRecord | None: ...

    def create_user(self, record: IdentityRecord) -> None: ...

    def update_user(self, login_name: str, diff_fields: dict[str, Any]) -> None: ...


def _apply_diff(record: IdentityRecord, diff_fields: dict[str, Any]) -> IdentityRecord:
    unknown = set(diff_fields) - set(FIELD_COLUMNS)
    if unknown:
        raise ValueError(f"unknown identity fields: {sorted(unknown)}")
    return replace(record, **{FIELD_COLUMNS[k]: v for k, v in diff_fields.items()})


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------

class InMemoryIdentityStore:
    """Thread-safe dict store enforcing unique loginName and email."""

    def __init__(self, records: list[IdentityRecord] | None = None) -> None:
        self._lock = threading.Lock()
        self._by_login: dict[str, IdentityRecord] = {}
        for record in records or []:
            self.create_user(record)

    def __len__(self) -> int:
        return len(self._by_login)

    def all(self) -> list[IdentityRecord]:
        with self._lock:
            return sorted(self._by_login.values(), key=lambda r: r.login_name)

    def find_by_login_name(self, login_name: str) -> IdentityRecord | None:
        with self._lock:
            return self._by_login.get(login_name)

    def find_by_email(self, email: str) -> IdentityRecord | None:
        with self._lock:
            return self._email_owner(email)

    def _email_owner(self, email: str) -> IdentityRecord | None:
        for record in self._by_login.values():
            if record.email == email:
                return record
        return None

    def create_user(self, record: IdentityRecord) -> None:
        with self._lock:
            if record.login_name in self._by_login:
                raise StoreConflictError(f"loginName already exists: {record.login_name!r}")
            if self._email_owner(record.email) is not None:
                raise StoreConflictError(f"email already in use: {record.email!r}")
            self._by_login[record.login_name] = record

    def update_user(self, login_name: str, diff_fields: dict[str, Any]) -> None:
        with self._lock:
            current = self._by_login.get(login_name)
            if current is None:
                raise StoreConflictError(f"no such user: {login_name!r}")
            updated = _apply_diff(current, diff_fields)
            owner = self._email_owner(updated.email)
            if owner is not None and owner.login_name != login_name:
                raise StoreConflictError(f"email already in use: {updated.email!r}")
            self._by_login[login_name] = updated


# ---------------------------------------------------------------------------
# PostgreSQL adapter
# ---------------------------------------------------------------------------

def _row_to_record(row: tuple | None) -> IdentityRecord | None:
    if row is None:
        return None
    return IdentityRecord(
        login_name=row[0], email=row[1], first_name=row[2],
        last_name=row[3], active=bool(row[4]),
    )


class PostgresIdentityStore:
    """identity_user table adapter.

    Statements run on an autocommit connection, so each write is committed on
    its own.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def find_by_login_name(self, login_name: str) -> IdentityRecord | None:
        row = self._db.execute(_SELECT_USER + " WHERE login_name = %s", (login_name,)).fetchone()
        return _row_to_record(row)

    def find_by_email(self, email: str) -> IdentityRecord | None:
        row = self._db.execute(_SELECT_USER + " WHERE email = %s", (email,)).fetchone()
        return _row_to_record(row)

    def create_user(self, record: IdentityRecord) -> None:
        self._db.execute(
            """
            INSERT INTO identity_user (login_name, email, first_name, last_name, active)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (record.login_name, record.email, record.first_name,
             record.last_name, record.active),
        )

    def update_user(self, login_name: str, diff_fields: dict[str, Any]) -> None:
        unknown = set(diff_fields) - set(FIELD_COLUMNS)
        if unknown:
            raise ValueError(f"unknown identity fields: {sorted(unknown)}")
        if not diff_fields:
            return
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(FIELD_COLUMNS[k]), sql.Placeholder())
            for k in diff_fields
        )
        query = sql.SQL(
            "UPDATE identity_user SET {}, updated_at = now() WHERE login_name = {}"
        ).format(assignments, sql.Placeholder())
        cur = self._db.execute(query, (*diff_fields.values(), login_name))
        if cur.rowcount == 0:
            raise StoreConflictError(f"no such user: {login_name!r}")
