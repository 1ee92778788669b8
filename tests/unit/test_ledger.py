"""Attempt ledger tests — idempotency index, terminal guard, ordering."""

import pytest

from relay.core.errors import AttemptFinalizedError
from relay.events import EventKind, EventNotifier
from relay.ledger import AttemptLedger
from relay.models.message import AttemptStatus
from tests.fakes import FakeClock, make_message


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> EventNotifier:
    return EventNotifier()


@pytest.fixture
def ledger(notifier, clock) -> AttemptLedger:
    return AttemptLedger(notifier, dedup_window_seconds=300, clock=clock)


class TestCreate:
    def test_create_inserts_pending_attempt(self, ledger, clock):
        attempt = ledger.create(make_message(), max_attempts=3)
        assert attempt.status == AttemptStatus.PENDING
        assert attempt.attempt_count == 0
        assert attempt.max_attempts == 3
        assert attempt.created_at == clock.now
        assert attempt.id.startswith("att_")
        assert attempt.id in ledger
        assert len(ledger) == 1

    def test_create_publishes_created(self, ledger, notifier):
        seen = []
        notifier.subscribe(EventKind.CREATED, seen.append)
        attempt = ledger.create(make_message(), max_attempts=3)
        assert [a.id for a in seen] == [attempt.id]

    def test_ids_are_unique(self, ledger):
        ids = {ledger.create(make_message(recipient=f"u{i}@example.com"), 3).id for i in range(50)}
        assert len(ids) == 50


class TestFindDuplicate:
    def test_matches_identical_message_inside_window(self, ledger, clock):
        original = ledger.create(make_message(), 3)
        clock.advance(299)
        assert ledger.find_duplicate(make_message()).id == original.id

    def test_no_match_after_window(self, ledger, clock):
        ledger.create(make_message(), 3)
        clock.advance(300)
        assert ledger.find_duplicate(make_message()) is None

    @pytest.mark.parametrize(
        "changed",
        [
            {"recipient": "other@example.com"},
            {"subject": "Other"},
            {"body": "Other"},
        ],
    )
    def test_any_field_difference_is_not_a_duplicate(self, ledger, changed):
        ledger.create(make_message(), 3)
        assert ledger.find_duplicate(make_message(**changed)) is None

    def test_sender_is_ignored(self, ledger):
        from relay.models.message import Message

        original = ledger.create(make_message(), 3)
        candidate = Message(recipient="test@example.com", subject="Test Subject", body="Test Body", sender="x@y.z")
        assert ledger.find_duplicate(candidate).id == original.id

    def test_failed_attempt_is_not_a_duplicate(self, ledger):
        attempt = ledger.create(make_message(), 3)
        ledger.update(attempt.id, status=AttemptStatus.FAILED)
        assert ledger.find_duplicate(make_message()) is None

    def test_rate_limited_attempt_is_still_a_duplicate(self, ledger):
        attempt = ledger.create(make_message(), 3)
        ledger.update(attempt.id, status=AttemptStatus.RATE_LIMITED)
        assert ledger.find_duplicate(make_message()).id == attempt.id

    def test_sent_attempt_is_still_a_duplicate(self, ledger):
        attempt = ledger.create(make_message(), 3)
        ledger.update(attempt.id, status=AttemptStatus.SENT)
        assert ledger.find_duplicate(make_message()).id == attempt.id


class TestUpdate:
    def test_update_sets_fields_and_timestamp(self, ledger, clock):
        attempt = ledger.create(make_message(), 3)
        clock.advance(5)
        updated = ledger.update(attempt.id, status=AttemptStatus.QUEUED)
        assert updated.status == AttemptStatus.QUEUED
        assert updated.updated_at == clock.now
        assert updated.created_at == attempt.created_at

    def test_update_publishes_updated(self, ledger, notifier):
        seen = []
        notifier.subscribe(EventKind.UPDATED, seen.append)
        attempt = ledger.create(make_message(), 3)
        ledger.update(attempt.id, status=AttemptStatus.QUEUED)
        ledger.update(attempt.id, attempt_count=1)
        assert [(a.status, a.attempt_count) for a in seen] == [
            (AttemptStatus.QUEUED, 0),
            (AttemptStatus.QUEUED, 1),
        ]

    @pytest.mark.parametrize("terminal", [AttemptStatus.SENT, AttemptStatus.FAILED, AttemptStatus.RATE_LIMITED])
    def test_terminal_attempts_are_immutable(self, ledger, terminal):
        attempt = ledger.create(make_message(), 3)
        ledger.update(attempt.id, status=terminal)
        with pytest.raises(AttemptFinalizedError):
            ledger.update(attempt.id, last_error="late")

    def test_rejects_immutable_fields(self, ledger):
        attempt = ledger.create(make_message(), 3)
        with pytest.raises(ValueError, match="created_at"):
            ledger.update(attempt.id, created_at=None)

    def test_unknown_id_raises_key_error(self, ledger):
        with pytest.raises(KeyError):
            ledger.update("att_missing", status=AttemptStatus.QUEUED)


class TestQueries:
    def test_get_returns_snapshot(self, ledger):
        attempt = ledger.create(make_message(), 3)
        copy = ledger.get(attempt.id)
        copy.status = AttemptStatus.SENT
        assert ledger.get(attempt.id).status == AttemptStatus.PENDING

    def test_get_unknown_returns_none(self, ledger):
        assert ledger.get("att_missing") is None

    def test_list_all_most_recent_first(self, ledger, clock):
        first = ledger.create(make_message(recipient="a@example.com"), 3)
        clock.advance(1)
        second = ledger.create(make_message(recipient="b@example.com"), 3)
        third = ledger.create(make_message(recipient="c@example.com"), 3)  # same timestamp as second
        assert [a.id for a in ledger.list_all()] == [third.id, second.id, first.id]
