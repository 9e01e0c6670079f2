"""Unit tests for iam_provisioning.normalize."""

import pytest

from iam_provisioning.normalize import (
    is_valid_email,
    normalize_header,
    parse_bool,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None

    def test_keeps_case(self):
        assert trim(" John@Example.COM ") == "John@Example.COM"


# ---------------------------------------------------------------------------
# parse_bool
# ---------------------------------------------------------------------------

class TestParseBool:
    @pytest.mark.parametrize("value", ["true", "TRUE", "True", "  true "])
    def test_true(self, value):
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "FALSE", "False", " false"])
    def test_false(self, value):
        assert parse_bool(value) is False

    @pytest.mark.parametrize("value", ["yes", "1", "y", "no", "0", "maybe"])
    def test_other_tokens_are_ambiguous(self, value):
        assert parse_bool(value) is None

    def test_empty(self):
        assert parse_bool("") is None

    def test_none(self):
        assert parse_bool(None) is None


# ---------------------------------------------------------------------------
# is_valid_email
# ---------------------------------------------------------------------------

class TestIsValidEmail:
    def test_valid(self):
        assert is_valid_email("john@example.com") is True

    def test_valid_subdomain(self):
        assert is_valid_email("john.doe@mail.example.co.uk") is True

    def test_surrounding_whitespace_ignored(self):
        assert is_valid_email("  john@example.com ") is True

    def test_missing_at(self):
        assert is_valid_email("johnexample.com") is False

    def test_at_at_start(self):
        assert is_valid_email("@example.com") is False

    def test_no_dot_in_domain(self):
        assert is_valid_email("john@example") is False

    def test_two_ats(self):
        assert is_valid_email("john@doe@example.com") is False

    def test_inner_whitespace(self):
        assert is_valid_email("john doe@example.com") is False

    def test_none(self):
        assert is_valid_email(None) is False


# ---------------------------------------------------------------------------
# normalize_header
# ---------------------------------------------------------------------------

class TestNormalizeHeader:
    def test_strips(self):
        assert normalize_header(" loginName ") == "loginName"

    def test_drops_bom(self):
        assert normalize_header("\ufeffloginName") == "loginName"

    def test_none(self):
        assert normalize_header(None) == ""
