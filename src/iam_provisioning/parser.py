"""iam_provisioning.parser

Record parser: raw CSV bytes -> lazy stream of CandidateRecord | ParseError.

CSV contract:
  loginName,email,firstName,lastName[,active]

  - header row first; column order is free; known column names match
    case-insensitively; unknown columns are ignored; for a repeated column
    the first occurrence wins
  - at most MAX_ROWS data rows (row 0 is the header, data rows are 1-based)
  - UTF-8, a leading BOM is tolerated
  - a quoted field still open at end of file makes the file unreadable

The file is pre-scanned once (header + row count) before the first record is
yielded, so header and row-limit failures surface before any row is processed.
The second pass is a single-use generator; the file is never loaded as a list
of records.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Union

from iam_provisioning.normalize import normalize_header
from iam_provisioning.shared import (
    EmptyFileError,
    ErrorKind,
    MissingColumnsError,
    RowLimitExceededError,
    UnreadableFileError,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_COLUMNS = ("loginName", "email", "firstName", "lastName")
OPTIONAL_COLUMNS = ("active",)
MAX_ROWS = 5000

EXAMPLE_CSV = (
    "loginName,email,firstName,lastName,active\n"
    "john.doe,john@example.com,John,Doe,true"
)

Source = Union[bytes, bytearray, memoryview, BinaryIO]


class _StrictDialect(csv.excel):
    """Excel dialect that raises on stray or unterminated quotes."""

    strict = True


# csv.Error text for a quoted field still open at end of input
_UNTERMINATED_QUOTE = "unexpected end of data"

_CANONICAL_COLUMNS = {c.casefold(): c for c in REQUIRED_COLUMNS + OPTIONAL_COLUMNS}


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CandidateRecord:
    row_number: int
    login_name: str
    email: str
    first_name: str
    last_name: str
    # None when the active column is absent from the header
    active: str | None
    raw: dict[str, str] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ParseError:
    """A row that could not be split into fields. Row-level, never job-fatal."""

    row_number: int
    reason: str
    raw: dict[str, str] = field(default_factory=dict, compare=False, repr=False)
    error_kind: ErrorKind = ErrorKind.MALFORMED_ROW


@dataclass(frozen=True)
class CsvHeader:
    columns: tuple[str, ...]
    index: dict[str, int]
    data_rows: int

    @property
    def has_active(self) -> bool:
        return "active" in self.index


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def _as_binary(source: Source) -> BinaryIO:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(source))
    if source.seekable():
        return source
    return io.BytesIO(source.read())


def _text_rows(buf: BinaryIO) -> Iterator[list[str] | csv.Error]:
    """Yield csv rows, or the csv.Error raised for a malformed row.

    UnicodeDecodeError propagates: a file that is not UTF-8 cannot be
    parsed any further.
    """
    text = io.TextIOWrapper(buf, encoding="utf-8-sig", errors="strict", newline="")
    try:
        reader = csv.reader(text, dialect=_StrictDialect)
        while True:
            try:
                row = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                yield exc
                continue
            if not row:
                continue
            yield row
    finally:
        text.detach()


# ---------------------------------------------------------------------------
# Pre-scan
# ---------------------------------------------------------------------------

def _canonical_name(cell: str) -> str:
    """Known columns match case-insensitively; others keep their spelling."""
    name = normalize_header(cell)
    return _CANONICAL_COLUMNS.get(name.casefold(), name)


def scan_header(source: Source, max_rows: int = MAX_ROWS) -> CsvHeader:
    """Validate the header and count data rows without building any records."""
    buf = _as_binary(source)
    start = buf.tell()
    header: list[str] | None = None
    count = 0
    try:
        for row in _text_rows(buf):
            if header is None:
                if isinstance(row, csv.Error):
                    raise UnreadableFileError(f"malformed header row: {row}")
                header = [_canonical_name(c) for c in row]
                continue
            count += 1
            if isinstance(row, csv.Error) and _UNTERMINATED_QUOTE in str(row):
                raise UnreadableFileError(
                    f"unterminated quoted field in data row {count}; "
                    f"the rest of the file cannot be parsed"
                )
            if count > max_rows:
                raise RowLimitExceededError(
                    f"file has more than {max_rows} data rows"
                )
    except UnicodeDecodeError as exc:
        raise UnreadableFileError(f"file is not valid UTF-8: {exc}") from exc
    finally:
        buf.seek(start)

    if header is None:
        raise EmptyFileError("file has no header row")

    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise MissingColumnsError(f"missing required columns: {missing}")

    index: dict[str, int] = {}
    for i, name in enumerate(header):
        index.setdefault(name, i)
    return CsvHeader(columns=tuple(header), index=index, data_rows=count)


# ---------------------------------------------------------------------------
# Streaming parse
# ---------------------------------------------------------------------------

def _raw_dict(header: CsvHeader, row: list[str]) -> dict[str, str]:
    # same first-occurrence rule as header.index
    return {
        name: row[i] if i < len(row) else ""
        for name, i in header.index.items()
        if name
    }


def _iter_records(
    buf: BinaryIO,
    header: CsvHeader,
) -> Iterator[CandidateRecord | ParseError]:
    width = len(header.columns)
    idx = header.index
    row_number = -1
    try:
        for row in _text_rows(buf):
            row_number += 1
            if row_number == 0:
                continue
            if isinstance(row, csv.Error):
                yield ParseError(row_number, f"malformed CSV: {row}")
                continue
            raw = _raw_dict(header, row)
            if len(row) != width:
                yield ParseError(
                    row_number,
                    f"column count mismatch: expected {width}, got {len(row)}",
                    raw,
                )
                continue
            yield CandidateRecord(
                row_number=row_number,
                login_name=row[idx["loginName"]],
                email=row[idx["email"]],
                first_name=row[idx["firstName"]],
                last_name=row[idx["lastName"]],
                active=row[idx["active"]] if header.has_active else None,
                raw=raw,
            )
    except UnicodeDecodeError as exc:
        raise UnreadableFileError(f"file is not valid UTF-8: {exc}") from exc


def parse(
    source: Source,
    max_rows: int = MAX_ROWS,
) -> Iterator[CandidateRecord | ParseError]:
    """Validate the header and row count, then return a single-pass record stream.

    Raises (before any record is produced):
        EmptyFileError, MissingColumnsError, RowLimitExceededError,
        UnreadableFileError
    """
    buf = _as_binary(source)
    header = scan_header(buf, max_rows=max_rows)
    return _iter_records(buf, header)


def template_info(max_rows: int = MAX_ROWS) -> dict[str, Any]:
    return {
        "columns": list(REQUIRED_COLUMNS + OPTIONAL_COLUMNS),
        "requiredFields": list(REQUIRED_COLUMNS),
        "example": EXAMPLE_CSV,
        "maxRows": max_rows,
    }
