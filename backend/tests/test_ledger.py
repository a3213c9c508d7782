from __future__ import annotations

import datetime as dt
import threading

import pytest
from sqlalchemy.exc import OperationalError

from siteclock.errors import AlreadyClockedInError, InvalidDurationError, NotClockedInError, PersistenceError
from siteclock.ledger import CLOCKED_OUT, SessionLedger
from siteclock.models import EntryKind, TimeClockEntry, TimeClockSession
from siteclock.schemas import TimeClockSessionResponse
from siteclock.utils import day_bounds

UTC = dt.timezone.utc


def _at(hour: int, minute: int = 0, day: int = 1) -> dt.datetime:
    return dt.datetime(2024, 1, day, hour, minute, tzinfo=UTC)


def test_open_and_close_round_trip(ledger: SessionLedger, make_entry):
    opened = ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))
    assert opened.is_open
    assert ledger.status_for("u1").is_clocked_in
    assert ledger.status_for("u1").current_session_id == opened.id

    closed = ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(10, 30), notes="done"))
    assert closed.id == opened.id
    assert not closed.is_open
    assert closed.duration_ms == int(2.5 * 3_600_000)
    assert closed.notes == "done"
    assert ledger.status_for("u1") == CLOCKED_OUT

    stored = ledger.sessions_for("u1")
    assert len(stored) == 1
    assert stored[0].clock_in_entry.kind == EntryKind.CLOCK_IN
    assert stored[0].clock_out_entry.kind == EntryKind.CLOCK_OUT
    assert [e.kind for e in ledger.entries_for("u1")] == [EntryKind.CLOCK_IN, EntryKind.CLOCK_OUT]


def test_opened_session_is_usable_after_the_transaction(ledger: SessionLedger, make_entry):
    opened = ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8), notes="early"))

    assert opened.clock_out_entry is None
    response = TimeClockSessionResponse.model_validate(opened)
    body = response.model_dump(mode="json")
    assert body["is_open"] is True
    assert body["clock_out_entry"] is None
    assert body["clock_in_entry"]["notes"] == "early"


def test_second_open_is_rejected(ledger: SessionLedger, make_entry):
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))
    with pytest.raises(AlreadyClockedInError):
        ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(9)))
    assert ledger.count_open_sessions("u1") == 1
    assert len(ledger.entries_for("u1")) == 1


def test_close_without_open_session_writes_nothing(ledger: SessionLedger, make_entry):
    with pytest.raises(NotClockedInError):
        ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(17)))
    assert ledger.entries_for("u1") == []


def test_clock_out_before_clock_in_leaves_session_open(ledger: SessionLedger, make_entry):
    opened = ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(12)))
    with pytest.raises(InvalidDurationError):
        ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(11)))

    still_open = ledger.find_open_session("u1")
    assert still_open is not None
    assert still_open.id == opened.id
    assert len(ledger.entries_for("u1")) == 1
    assert ledger.status_for("u1").is_clocked_in


def test_zero_length_session_is_allowed(ledger: SessionLedger, make_entry):
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(12)))
    closed = ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(12)))
    assert closed.duration_ms == 0


def test_entry_kind_and_owner_are_checked(ledger: SessionLedger, make_entry):
    with pytest.raises(ValueError):
        ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(8)))
    with pytest.raises(ValueError):
        ledger.open_session("u1", make_entry("someone-else", EntryKind.CLOCK_IN, _at(8)))


def test_total_hours_ignores_open_sessions(ledger: SessionLedger, make_entry, sample_day):
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))
    ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(10)))
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(11)))
    ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(14, 30)))
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(15)))

    start, end = day_bounds(sample_day)
    assert ledger.total_hours("u1", start, end) == pytest.approx(5.5)
    assert len(ledger.sessions_in_range("u1", start, end)) == 3


def test_sessions_in_range_is_inclusive(ledger: SessionLedger, make_entry):
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))
    ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(9)))
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8, day=2)))
    ledger.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(9, day=2)))

    assert len(ledger.sessions_in_range("u1", _at(8), _at(8))) == 1
    assert len(ledger.sessions_in_range("u1", _at(8), _at(8, day=2))) == 2
    assert ledger.sessions_in_range("u1", _at(8, 1), _at(7, day=2)) == []


def test_users_are_isolated(ledger: SessionLedger, make_entry):
    ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))
    ledger.open_session("u2", make_entry("u2", EntryKind.CLOCK_IN, _at(8)))
    assert ledger.count_open_sessions("u1") == 1
    assert ledger.count_open_sessions("u2") == 1
    assert ledger.status_for("u3") == CLOCKED_OUT


def test_status_is_rebuilt_from_store(session_factory, ledger: SessionLedger, make_entry):
    opened = ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))

    fresh = SessionLedger(session_factory)
    status = fresh.status_for("u1")
    assert status.is_clocked_in
    assert status.current_session_id == opened.id
    assert status.current_work_location_name == "Main Office"
    assert status.last_clock_in_time == _at(8)
    assert status.elapsed_ms(_at(9)) == 3_600_000


def test_entries_are_immutable(session, ledger: SessionLedger, make_entry):
    opened = ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))

    entry = session.get(TimeClockEntry, opened.clock_in_entry_id)
    entry.notes = "rewritten"
    with pytest.raises(ValueError):
        session.commit()
    session.rollback()

    entry = session.get(TimeClockEntry, opened.clock_in_entry_id)
    session.delete(session.get(TimeClockSession, opened.id))
    session.delete(entry)
    with pytest.raises(ValueError):
        session.commit()
    session.rollback()

    assert len(ledger.entries_for("u1")) == 1


def test_store_failure_leaves_status_untouched(session_factory, make_entry):
    failures = {"remaining": 1}

    def flaky_factory():
        db = session_factory()
        if failures["remaining"]:
            failures["remaining"] -= 1

            def fail_commit():
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

            db.commit = fail_commit
        return db

    ledger = SessionLedger(flaky_factory)
    with pytest.raises(PersistenceError):
        ledger.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))

    assert ledger.status_for("u1") == CLOCKED_OUT
    assert ledger.count_open_sessions("u1") == 0


def test_concurrent_opens_yield_exactly_one_session(ledger: SessionLedger, make_entry):
    barrier = threading.Barrier(2)
    outcomes: list = []

    def attempt(hour: int) -> None:
        entry = make_entry("u1", EntryKind.CLOCK_IN, _at(hour))
        barrier.wait()
        try:
            outcomes.append(ledger.open_session("u1", entry))
        except AlreadyClockedInError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt, args=(hour,)) for hour in (8, 9)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sum(isinstance(o, TimeClockSession) for o in outcomes) == 1
    assert sum(isinstance(o, AlreadyClockedInError) for o in outcomes) == 1
    assert ledger.count_open_sessions("u1") == 1


def test_store_rejects_second_open_session_across_ledgers(session_factory, make_entry):
    # Two ledgers share no locks, so only the unique index stands between them.
    ledgers = [SessionLedger(session_factory), SessionLedger(session_factory)]
    barrier = threading.Barrier(2)
    outcomes: list = []

    def attempt(index: int) -> None:
        entry = make_entry("u1", EntryKind.CLOCK_IN, _at(8 + index))
        barrier.wait()
        try:
            outcomes.append(ledgers[index].open_session("u1", entry))
        except AlreadyClockedInError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=attempt, args=(index,)) for index in (0, 1)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(outcomes) == 2
    assert sum(isinstance(o, TimeClockSession) for o in outcomes) == 1
    assert ledgers[0].count_open_sessions("u1") == 1


def test_rejected_operations_resync_status_with_store(session_factory, make_entry):
    first = SessionLedger(session_factory)
    second = SessionLedger(session_factory)
    assert first.status_for("u1") == CLOCKED_OUT

    opened = second.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))
    with pytest.raises(AlreadyClockedInError):
        first.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(9)))
    assert first.status_for("u1").current_session_id == opened.id

    second.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(10)))
    with pytest.raises(NotClockedInError):
        first.close_session("u1", make_entry("u1", EntryKind.CLOCK_OUT, _at(11)))
    assert first.status_for("u1") == CLOCKED_OUT


def test_refresh_status_reads_the_store(session_factory, make_entry):
    first = SessionLedger(session_factory)
    second = SessionLedger(session_factory)
    assert first.status_for("u1") == CLOCKED_OUT

    second.open_session("u1", make_entry("u1", EntryKind.CLOCK_IN, _at(8)))

    assert first.status_for("u1") == CLOCKED_OUT
    assert first.refresh_status("u1").is_clocked_in
    assert first.status_for("u1").is_clocked_in
