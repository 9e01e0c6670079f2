"""iam_provisioning.validator

Per-row field validation and in-batch duplicate detection.

Rules, applied in order (first failure wins):
  1. loginName, email, firstName, lastName non-empty after trim
       -> MissingRequiredField:<column>
  2. values fit the identity_user column widths
       -> FieldTooLong:<column>
  3. email has local@domain.tld shape            -> InvalidEmail
  4. active, when the column exists, is true/false -> InvalidActiveValue
  5. loginName not already seen in this file       -> DuplicateInBatch

Validation never touches the identity store.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from iam_provisioning.normalize import is_valid_email, parse_bool, trim
from iam_provisioning.parser import CandidateRecord, ParseError
from iam_provisioning.shared import ErrorKind
from iam_provisioning.store import FIELD_MAX_LENGTHS


@dataclass(frozen=True)
class ValidRecord:
    row_number: int
    login_name: str
    email: str
    first_name: str
    last_name: str
    active: bool
    raw: dict[str, str] = field(default_factory=dict, compare=False, repr=False)

    def fields(self) -> dict[str, object]:
        """Comparable fields keyed by CSV column name."""
        return {
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "active": self.active,
        }


@dataclass(frozen=True)
class Rejected:
    row_number: int
    error_kind: ErrorKind
    reason: str
    raw: dict[str, str] = field(default_factory=dict, compare=False, repr=False)


def _check_fields(record: CandidateRecord) -> ValidRecord | Rejected:
    values = {
        "loginName": trim(record.login_name),
        "email": trim(record.email),
        "firstName": trim(record.first_name),
        "lastName": trim(record.last_name),
    }
    for column, value in values.items():
        if value is None:
            return Rejected(
                record.row_number,
                ErrorKind.MISSING_REQUIRED_FIELD,
                f"{ErrorKind.MISSING_REQUIRED_FIELD}:{column}",
                record.raw,
            )

    for column, value in values.items():
        if len(value) > FIELD_MAX_LENGTHS[column]:  # type: ignore[arg-type]
            return Rejected(
                record.row_number,
                ErrorKind.FIELD_TOO_LONG,
                f"{ErrorKind.FIELD_TOO_LONG}:{column}",
                record.raw,
            )

    if not is_valid_email(values["email"]):
        return Rejected(
            record.row_number, ErrorKind.INVALID_EMAIL,
            str(ErrorKind.INVALID_EMAIL), record.raw,
        )

    if record.active is None:
        active = True
    else:
        parsed = parse_bool(record.active)
        if parsed is None:
            return Rejected(
                record.row_number, ErrorKind.INVALID_ACTIVE_VALUE,
                str(ErrorKind.INVALID_ACTIVE_VALUE), record.raw,
            )
        active = parsed

    return ValidRecord(
        row_number=record.row_number,
        login_name=values["loginName"],  # type: ignore[arg-type]  # checked above
        email=values["email"],  # type: ignore[arg-type]
        first_name=values["firstName"],  # type: ignore[arg-type]
        last_name=values["lastName"],  # type: ignore[arg-type]
        active=active,
        raw=record.raw,
    )


def validate(
    record: CandidateRecord | ParseError,
    seen: set[str],
) -> ValidRecord | Rejected:
    """Validate one row against the loginNames already accepted in this file.

    Adds the loginName to ``seen`` only when the row is valid.
    """
    if isinstance(record, ParseError):
        return Rejected(record.row_number, record.error_kind, record.reason, record.raw)

    result = _check_fields(record)
    if isinstance(result, Rejected):
        return result

    if result.login_name in seen:
        return Rejected(
            record.row_number, ErrorKind.DUPLICATE_IN_BATCH,
            str(ErrorKind.DUPLICATE_IN_BATCH), record.raw,
        )
    seen.add(result.login_name)
    return result


class BatchValidator:
    """Holds the seen-loginName set for one job's stream."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def __call__(self, record: CandidateRecord | ParseError) -> ValidRecord | Rejected:
        return validate(record, self._seen)

    def __len__(self) -> int:
        return len(self._seen)
