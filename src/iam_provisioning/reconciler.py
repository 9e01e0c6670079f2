"""iam_provisioning.reconciler

Classify a validated row against the identity store by loginName:

  not found                      -> CREATE
  found, comparable fields equal -> NOOP
  found, any field differs       -> UPDATE with only the changed fields

Comparable fields: email, firstName, lastName, active. Comparison is exact
equality on trimmed values; email case is significant.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from iam_provisioning.store import IdentityRecord
from iam_provisioning.validator import ValidRecord

Lookup = Callable[[str], "IdentityRecord | None"]


class Action(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    NOOP = "NOOP"


@dataclass(frozen=True)
class Classification:
    action: Action
    record: ValidRecord
    diff_fields: dict[str, Any] = field(default_factory=dict)
    existing: IdentityRecord | None = None

    @property
    def row_number(self) -> int:
        return self.record.row_number


def diff_records(existing: IdentityRecord, incoming: ValidRecord) -> dict[str, Any]:
    """Return {column: new_value} for every comparable field that changed."""
    current = existing.fields()
    return {
        column: value
        for column, value in incoming.fields().items()
        if current[column] != value
    }


def reconcile(record: ValidRecord, lookup: Lookup) -> Classification:
    existing = lookup(record.login_name)
    if existing is None:
        return Classification(Action.CREATE, record)
    diff = diff_records(existing, record)
    if not diff:
        return Classification(Action.NOOP, record, existing=existing)
    return Classification(Action.UPDATE, record, diff_fields=diff, existing=existing)
