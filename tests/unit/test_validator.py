"""Unit tests for iam_provisioning.validator."""

from __future__ import annotations

from iam_provisioning.parser import CandidateRecord, ParseError
from iam_provisioning.shared import ErrorKind
from iam_provisioning.validator import BatchValidator, Rejected, ValidRecord, validate


def _make_row(row_number: int = 1, **overrides) -> CandidateRecord:
    values = {
        "login_name": "john.doe",
        "email": "john@example.com",
        "first_name": "John",
        "last_name": "Doe",
        "active": "true",
    }
    values.update(overrides)
    return CandidateRecord(row_number=row_number, **values)


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

class TestFieldRules:
    def test_valid_row(self):
        result = validate(_make_row(), set())
        assert result == ValidRecord(1, "john.doe", "john@example.com", "John", "Doe", True)

    def test_values_are_trimmed(self):
        result = validate(
            _make_row(login_name="  john.doe ", email=" john@example.com", first_name="John  "),
            set(),
        )
        assert isinstance(result, ValidRecord)
        assert result.login_name == "john.doe"
        assert result.email == "john@example.com"
        assert result.first_name == "John"

    def test_email_case_preserved(self):
        result = validate(_make_row(email="John@Example.COM"), set())
        assert result.email == "John@Example.COM"

    def test_missing_login_name(self):
        result = validate(_make_row(login_name="   "), set())
        assert isinstance(result, Rejected)
        assert result.error_kind is ErrorKind.MISSING_REQUIRED_FIELD
        assert result.reason == "MissingRequiredField:loginName"

    def test_first_missing_field_in_column_order(self):
        result = validate(_make_row(email="", last_name=""), set())
        assert result.reason == "MissingRequiredField:email"

    def test_missing_last_name(self):
        result = validate(_make_row(last_name=""), set())
        assert result.reason == "MissingRequiredField:lastName"

    def test_invalid_email(self):
        result = validate(_make_row(email="not-an-email"), set())
        assert result.error_kind is ErrorKind.INVALID_EMAIL
        assert result.reason == "InvalidEmail"

    def test_missing_field_wins_over_invalid_email(self):
        result = validate(_make_row(email="bad", first_name=""), set())
        assert result.error_kind is ErrorKind.MISSING_REQUIRED_FIELD

    def test_login_name_too_long(self):
        seen: set[str] = set()
        result = validate(_make_row(login_name="x" * 150), seen)
        assert isinstance(result, Rejected)
        assert result.error_kind is ErrorKind.FIELD_TOO_LONG
        assert result.reason == "FieldTooLong:loginName"
        assert seen == set()

    def test_email_too_long(self):
        result = validate(_make_row(email="a" * 250 + "@example.com"), set())
        assert result.reason == "FieldTooLong:email"

    def test_length_measured_after_trim(self):
        result = validate(_make_row(first_name="  " + "F" * 100 + "  "), set())
        assert isinstance(result, ValidRecord)
        assert len(result.first_name) == 100

    def test_too_long_wins_over_invalid_email(self):
        result = validate(_make_row(email="bad", last_name="L" * 101), set())
        assert result.reason == "FieldTooLong:lastName"

    def test_active_false(self):
        assert validate(_make_row(active="FALSE"), set()).active is False

    def test_active_column_absent_defaults_true(self):
        assert validate(_make_row(active=None), set()).active is True

    def test_active_blank_rejected(self):
        result = validate(_make_row(active=""), set())
        assert result.error_kind is ErrorKind.INVALID_ACTIVE_VALUE

    def test_active_yes_rejected(self):
        result = validate(_make_row(active="yes"), set())
        assert result.error_kind is ErrorKind.INVALID_ACTIVE_VALUE
        assert result.reason == "InvalidActiveValue"

    def test_parse_error_passes_through(self):
        error = ParseError(4, "column count mismatch: expected 5, got 3")
        result = validate(error, set())
        assert result == Rejected(4, ErrorKind.MALFORMED_ROW, error.reason)


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------

class TestDuplicates:
    def test_second_occurrence_rejected(self):
        seen: set[str] = set()
        first = validate(_make_row(1), seen)
        second = validate(_make_row(2, email="other@example.com"), seen)
        assert isinstance(first, ValidRecord)
        assert isinstance(second, Rejected)
        assert second.error_kind is ErrorKind.DUPLICATE_IN_BATCH
        assert second.row_number == 2

    def test_duplicate_detected_after_trim(self):
        seen: set[str] = set()
        validate(_make_row(1), seen)
        result = validate(_make_row(2, login_name=" john.doe "), seen)
        assert result.error_kind is ErrorKind.DUPLICATE_IN_BATCH

    def test_login_name_case_sensitive(self):
        seen: set[str] = set()
        validate(_make_row(1), seen)
        assert isinstance(validate(_make_row(2, login_name="John.Doe"), seen), ValidRecord)

    def test_invalid_row_does_not_claim_login_name(self):
        seen: set[str] = set()
        validate(_make_row(1, email="bad"), seen)
        assert seen == set()
        assert isinstance(validate(_make_row(2), seen), ValidRecord)

    def test_batch_validator_tracks_seen(self):
        validator = BatchValidator()
        assert isinstance(validator(_make_row(1)), ValidRecord)
        assert isinstance(validator(_make_row(2, login_name="jane")), ValidRecord)
        assert validator(_make_row(3)).error_kind is ErrorKind.DUPLICATE_IN_BATCH
        assert len(validator) == 2

    def test_fields_keyed_by_column(self):
        record = validate(_make_row(), set())
        assert record.fields() == {
            "email": "john@example.com",
            "firstName": "John",
            "lastName": "Doe",
            "active": True,
        }
