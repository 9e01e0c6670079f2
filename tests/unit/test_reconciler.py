"""Unit tests for iam_provisioning.reconciler."""

from __future__ import annotations

from iam_provisioning.reconciler import Action, diff_records, reconcile
from iam_provisioning.store import IdentityRecord, InMemoryIdentityStore
from iam_provisioning.validator import ValidRecord


def _valid(login_name="john.doe", email="john@example.com", first_name="John",
           last_name="Doe", active=True, row_number=1) -> ValidRecord:
    return ValidRecord(row_number, login_name, email, first_name, last_name, active)


def _existing(**overrides) -> IdentityRecord:
    values = dict(login_name="john.doe", email="john@example.com",
                  first_name="John", last_name="Doe", active=True)
    values.update(overrides)
    return IdentityRecord(**values)


class TestDiffRecords:
    def test_identical(self):
        assert diff_records(_existing(), _valid()) == {}

    def test_only_changed_fields(self):
        diff = diff_records(_existing(), _valid(last_name="Smith", active=False))
        assert diff == {"lastName": "Smith", "active": False}

    def test_email_case_is_a_change(self):
        assert diff_records(_existing(), _valid(email="John@example.com")) == {
            "email": "John@example.com"
        }


class TestReconcile:
    def test_create_when_not_found(self):
        store = InMemoryIdentityStore()
        result = reconcile(_valid(), store.find_by_login_name)
        assert result.action is Action.CREATE
        assert result.diff_fields == {}
        assert result.existing is None

    def test_noop_when_equal(self):
        store = InMemoryIdentityStore([_existing()])
        result = reconcile(_valid(), store.find_by_login_name)
        assert result.action is Action.NOOP
        assert result.existing == _existing()

    def test_update_with_diff(self):
        store = InMemoryIdentityStore([_existing()])
        result = reconcile(_valid(first_name="Johnny", row_number=7), store.find_by_login_name)
        assert result.action is Action.UPDATE
        assert result.diff_fields == {"firstName": "Johnny"}
        assert result.row_number == 7

    def test_lookup_by_login_name_only(self):
        store = InMemoryIdentityStore([_existing(login_name="someone.else")])
        result = reconcile(_valid(), store.find_by_login_name)
        assert result.action is Action.CREATE

    def test_uses_given_lookup(self):
        calls = []

        def lookup(login_name):
            calls.append(login_name)
            return None

        reconcile(_valid(login_name="jane"), lookup)
        assert calls == ["jane"]
