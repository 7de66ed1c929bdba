"""Tests for app/identity/service.py: the transactional resolve contract.

Covers:
- validation before any store access
- create / attach / merge end to end, including idempotence
- full rollback when the unit of work fails midway
- retry on conflicting concurrent modification
- concurrent identical requests never split one identity
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError

from app.audit.audit_log import get_events_by_type
from app.audit.events import EVENT_PRIMARY_DEMOTED
from app.db.models import AuditEvent, Contact
from app.db.session import Database
from app.identity import resolver as resolver_module
from app.identity.exceptions import (
    ConcurrentModification,
    ConstraintViolation,
    InvalidRequest,
    StoreUnavailable,
)
from app.identity.locks import KeyedLock
from app.identity.resolver import ClusterResolver
from app.identity.service import IdentityService, validate_fragment


# ===========================================================================
# Validation
# ===========================================================================

class TestValidateFragment:
    def test_empty_strings_are_absent(self):
        assert validate_fragment("", "111") == (None, "111")

    def test_values_are_not_rewritten(self):
        assert validate_fragment(" A@X.com ", None) == (" A@X.com ", None)

    @pytest.mark.parametrize("email, phone", [(None, None), ("", ""), ("", None)])
    def test_missing_fragments_rejected(self, email, phone):
        with pytest.raises(InvalidRequest):
            validate_fragment(email, phone)

    @pytest.mark.parametrize("email, phone", [(123, None), (None, 5551234), (["a@x.com"], None)])
    def test_non_strings_rejected(self, email, phone):
        with pytest.raises(InvalidRequest, match="must be a string"):
            validate_fragment(email, phone)


class TestInvalidRequests:
    def test_both_absent_writes_nothing(self, service, count_contacts, monkeypatch):
        def no_transaction():
            raise AssertionError("store must not be touched")

        monkeypatch.setattr(service.database, "transaction", no_transaction)

        with pytest.raises(InvalidRequest):
            service.resolve(None, None)

        monkeypatch.undo()
        assert count_contacts() == 0


# ===========================================================================
# Resolution scenarios
# ===========================================================================

class TestResolve:
    def test_novel_email_creates_single_primary(self, service, fetch_contacts):
        view = service.resolve("new@x.com", None)

        rows = fetch_contacts()
        assert len(rows) == 1
        assert rows[0]["link_precedence"] == "primary"
        assert view.primary_contact_id == rows[0]["id"]
        assert view.emails == ["new@x.com"]
        assert view.phone_numbers == []
        assert view.secondary_contact_ids == []

    def test_new_phone_for_known_email_attaches_secondary(self, service, seed_contact, fetch_contacts):
        primary = seed_contact("a@x.com", "111")

        view = service.resolve("a@x.com", "222")

        rows = fetch_contacts()
        assert len(rows) == 2
        secondary = rows[1]
        assert secondary["linked_id"] == primary
        assert view.primary_contact_id == primary
        assert view.phone_numbers == ["111", "222"]
        assert view.secondary_contact_ids == [secondary["id"]]

    def test_cross_cluster_request_merges(self, service, seed_contact, fetch_contacts):
        p1 = seed_contact("a@x.com", "111", minutes=0)
        p2 = seed_contact("b@y.com", "222", minutes=10)
        s2 = seed_contact("b@y.com", "333", linked_id=p2, minutes=11)

        view = service.resolve("a@x.com", "222")

        assert view.primary_contact_id == p1
        assert view.emails == ["a@x.com", "b@y.com"]
        assert view.phone_numbers == ["111", "222", "333"]
        assert view.secondary_contact_ids == [p2, s2]

        rows = {r["id"]: r for r in fetch_contacts()}
        assert rows[p2]["link_precedence"] == "secondary"
        assert rows[s2]["linked_id"] == p1
        assert len(rows) == 3

    def test_merge_keeps_older_primary_when_it_matched_by_phone(self, service, seed_contact):
        p1 = seed_contact("a@x.com", "111", minutes=0)
        p2 = seed_contact("b@y.com", "222", minutes=10)

        view = service.resolve("b@y.com", "111")

        assert view.primary_contact_id == p1
        assert view.secondary_contact_ids == [p2]
        assert view.emails == ["a@x.com", "b@y.com"]

    def test_three_way_merge(self, service, seed_contact, fetch_contacts):
        p1 = seed_contact("a@x.com", "111", minutes=0)
        p2 = seed_contact("b@x.com", "222", minutes=1)
        p3 = seed_contact("c@x.com", "333", minutes=2)
        seed_contact("c@x.com", "222", linked_id=p3, minutes=3)

        view = service.resolve("a@x.com", "222")

        rows = fetch_contacts()
        assert [r["id"] for r in rows if r["link_precedence"] == "primary"] == [p1]
        assert view.primary_contact_id == p1
        assert set(view.secondary_contact_ids) == {r["id"] for r in rows} - {p1}
        assert view.emails == ["a@x.com", "b@x.com", "c@x.com"]

    def test_repeat_request_is_idempotent(self, service, seed_contact, count_contacts):
        seed_contact("a@x.com", "111")

        first = service.resolve("a@x.com", "222")
        count_after_first = count_contacts()
        second = service.resolve("a@x.com", "222")

        assert count_contacts() == count_after_first
        assert second == first

    def test_repeat_of_first_contact_is_idempotent(self, service, count_contacts):
        first = service.resolve("z@x.com", "999")
        second = service.resolve("z@x.com", "999")

        assert count_contacts() == 1
        assert second == first

    def test_views_contain_each_value_once(self, service, seed_contact):
        p1 = seed_contact("a@x.com", "111", minutes=0)
        seed_contact("a@x.com", "222", linked_id=p1, minutes=1)
        seed_contact("b@x.com", "111", linked_id=p1, minutes=2)

        view = service.resolve("b@x.com", "222")

        assert len(view.emails) == len(set(view.emails))
        assert len(view.phone_numbers) == len(set(view.phone_numbers))
        assert view.primary_contact_id not in view.secondary_contact_ids

    def test_locks_are_released_after_each_request(self, service):
        service.resolve("a@x.com", "111")
        assert len(service.locks) == 0


# ===========================================================================
# Failure semantics
# ===========================================================================

class TestFailures:
    def test_failure_after_demotion_rolls_everything_back(
        self, service, database, seed_contact, fetch_contacts, monkeypatch,
    ):
        p1 = seed_contact("a@x.com", "111", minutes=0)
        p2 = seed_contact("b@y.com", "222", minutes=10)
        s2 = seed_contact("c@y.com", "222", linked_id=p2, minutes=11)
        before = fetch_contacts()

        original = resolver_module.record_event

        def failing_record_event(db_session, event_type, *args, **kwargs):
            if event_type == EVENT_PRIMARY_DEMOTED:
                raise OperationalError("INSERT INTO audit_events", {}, Exception("disk I/O error"))
            return original(db_session, event_type, *args, **kwargs)

        monkeypatch.setattr(resolver_module, "record_event", failing_record_event)

        with pytest.raises(StoreUnavailable) as excinfo:
            service.resolve("a@x.com", "222")

        assert isinstance(excinfo.value.__cause__, OperationalError)
        assert fetch_contacts() == before
        rows = {r["id"]: r for r in fetch_contacts()}
        assert rows[p2]["link_precedence"] == "primary"
        assert rows[s2]["linked_id"] == p2
        assert rows[p1]["link_precedence"] == "primary"
        with database.transaction() as session:
            assert session.execute(select(AuditEvent)).scalars().all() == []

    def test_constraint_violation_is_not_retried(self, service, monkeypatch):
        calls = []

        def broken_resolve(self, email, phone_number):
            calls.append(1)
            raise ConstraintViolation("no contact point")

        monkeypatch.setattr(ClusterResolver, "resolve", broken_resolve)

        with pytest.raises(ConstraintViolation):
            service.resolve("a@x.com", None)
        assert len(calls) == 1

    def test_conflict_is_retried(self, service, fetch_contacts, monkeypatch):
        original = ClusterResolver.resolve
        calls = []

        def flaky_resolve(self, email, phone_number):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentModification("cluster changed")
            return original(self, email, phone_number)

        monkeypatch.setattr(ClusterResolver, "resolve", flaky_resolve)

        view = service.resolve("a@x.com", None)

        assert len(calls) == 2
        assert [r["id"] for r in fetch_contacts()] == [view.primary_contact_id]

    def test_retries_are_bounded(self, service, count_contacts, monkeypatch):
        calls = []

        def always_conflicting(self, email, phone_number):
            calls.append(1)
            raise ConcurrentModification("cluster changed")

        monkeypatch.setattr(ClusterResolver, "resolve", always_conflicting)

        with pytest.raises(StoreUnavailable):
            service.resolve("a@x.com", None)
        assert len(calls) == service.max_conflict_retries + 1
        assert count_contacts() == 0
        assert len(service.locks) == 0


# ===========================================================================
# Concurrency
# ===========================================================================

@pytest.fixture()
def file_database(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'identity.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    db = Database(engine)
    db.create_schema()
    yield db
    db.dispose()


class TestConcurrency:
    N = 12

    def _run_parallel(self, service, fragments):
        barrier = threading.Barrier(len(fragments))

        def call(fragment):
            barrier.wait(timeout=5)
            return service.resolve(*fragment)

        with ThreadPoolExecutor(max_workers=len(fragments)) as pool:
            return list(pool.map(call, fragments))

    def test_identical_first_contacts_create_one_primary(self, file_database):
        service = IdentityService(file_database, KeyedLock(timeout_seconds=10.0))

        views = self._run_parallel(service, [("fresh@x.com", None)] * self.N)

        with file_database.transaction() as session:
            contacts = session.execute(select(Contact)).scalars().all()
            assert len(contacts) == 1
            assert contacts[0].is_primary
            primary_id = contacts[0].id
        assert {v.primary_contact_id for v in views} == {primary_id}
        assert all(v.emails == ["fresh@x.com"] for v in views)

    def test_same_email_with_different_phones_share_one_primary(self, file_database):
        service = IdentityService(file_database, KeyedLock(timeout_seconds=10.0))
        fragments = [("shared@x.com", f"555{i:04d}") for i in range(self.N)]

        views = self._run_parallel(service, fragments)

        with file_database.transaction() as session:
            contacts = session.execute(select(Contact)).scalars().all()
            primaries = [c for c in contacts if c.is_primary]
            assert len(primaries) == 1
            primary_id = primaries[0].id
            assert len(contacts) == self.N
            assert all(c.linked_id == primary_id for c in contacts if not c.is_primary)
            assert get_events_by_type(session, EVENT_PRIMARY_DEMOTED) == []
        assert {v.primary_contact_id for v in views} == {primary_id}
