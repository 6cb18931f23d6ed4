"""Mini-README: Tests for stopping timers and converting them into time entries.

Focuses on the exactly-once guarantee: a timer produces at most one entry no
matter how many stop attempts race, a failed insert leaves the timer running,
and degenerate durations stop the timer without billing anything.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from agency_billing.database import Base
from agency_billing.errors import NotFoundError
from agency_billing.models import Task, TaskTimer, TimeEntry, User, Workspace
from agency_billing.rates import RateSource
from agency_billing.timers import (
    convert_to_extra,
    finalize_timer,
    get_active_timer,
    open_timer,
    start_timer,
    stop_timer,
    update_active_timer,
)

STARTED = datetime(2026, 5, 4, 9, 0, 0)


def _entry_count(db) -> int:
    return db.scalar(select(func.count(TimeEntry.id)))


def _start(db, seed, user, task, resolver, now=STARTED):
    return start_timer(db, workspace_id=seed.workspace.id, user_id=user.id, task_id=task.id, now=now, resolver=resolver)


def test_stop_creates_a_billed_entry_from_the_duration(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    task = seed.task(project)
    timer = _start(db, seed, user, task, resolver)

    result = stop_timer(db, user_id=user.id, now=STARTED + timedelta(minutes=90), resolver=resolver)

    assert result.timer_id == timer.id
    assert result.duration_seconds == 5400
    assert result.hours == Decimal("1.500")
    assert result.amount == Decimal("90.00")
    assert result.rate_source is RateSource.PROJECT
    assert result.already_stopped is False
    entry = db.get(TimeEntry, result.time_entry_id)
    assert entry.timer_id == timer.id
    assert entry.entry_date == STARTED.date()
    assert entry.start_time == time(9, 0)
    assert entry.end_time == time(10, 30)
    assert open_timer(db, user.id) is None
    db.refresh(task)
    assert task.actual_hours == Decimal("1.5")


def test_duration_is_floored_to_whole_seconds(db, seed, resolver) -> None:
    user = seed.user()
    task = seed.task()
    _start(db, seed, user, task, resolver)

    result = stop_timer(db, user_id=user.id, now=STARTED + timedelta(seconds=59, microseconds=900000), resolver=resolver)

    assert result.duration_seconds == 59
    assert result.hours == Decimal("0.016")


def test_second_finalize_of_same_timer_reports_first_outcome(db, seed, resolver) -> None:
    user = seed.user()
    task = seed.task(hourly_rate_cents=5000)
    timer = _start(db, seed, user, task, resolver)
    first = stop_timer(db, user_id=user.id, now=STARTED + timedelta(hours=2), resolver=resolver)

    again = finalize_timer(db, timer, now=STARTED + timedelta(hours=3), resolver=resolver)

    assert again.already_stopped is True
    assert again.time_entry_id == first.time_entry_id
    assert again.duration_seconds == first.duration_seconds
    assert again.amount == first.amount
    assert _entry_count(db) == 1


def test_stop_without_open_timer_raises_not_found(db, seed, resolver) -> None:
    user = seed.user()

    with pytest.raises(NotFoundError) as excinfo:
        stop_timer(db, user_id=user.id, resolver=resolver)

    assert excinfo.value.kind == "timer"


def test_zero_duration_stops_without_an_entry(db, seed, resolver) -> None:
    user = seed.user()
    task = seed.task()
    _start(db, seed, user, task, resolver)

    result = stop_timer(db, user_id=user.id, now=STARTED + timedelta(seconds=1), resolver=resolver)

    assert result.hours == 0
    assert result.time_entry_id is None
    assert _entry_count(db) == 0
    assert open_timer(db, user.id) is None


def test_starting_a_new_timer_finalizes_the_running_one(db, seed, resolver) -> None:
    user = seed.user()
    first_task = seed.task(title="Wireframes")
    second_task = seed.task(title="Copy")
    first = _start(db, seed, user, first_task, resolver)

    second = _start(db, seed, user, second_task, resolver, now=STARTED + timedelta(minutes=30))

    db.refresh(first)
    assert first.stopped_at == STARTED + timedelta(minutes=30)
    assert open_timer(db, user.id).id == second.id
    entry = db.scalar(select(TimeEntry))
    assert entry.task_id == first_task.id
    assert entry.hours == Decimal("0.5")


def test_active_timer_reports_elapsed_seconds(db, seed, resolver) -> None:
    user = seed.user()
    task = seed.task()
    _start(db, seed, user, task, resolver)

    active = get_active_timer(db, user.id, now=STARTED + timedelta(minutes=5, seconds=3))

    assert active.elapsed_seconds == 303
    assert get_active_timer(seed.db, seed.user().id) is None


def test_extra_flag_records_non_billable_time(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    task = seed.task(project)
    _start(db, seed, user, task, resolver)
    update_active_timer(db, user_id=user.id, is_extra=True, description="Bug fix outside scope")

    result = stop_timer(db, user_id=user.id, now=STARTED + timedelta(hours=1), resolver=resolver)

    entry = db.get(TimeEntry, result.time_entry_id)
    assert result.is_extra is True
    assert result.amount == 0
    assert entry.is_billable is False
    assert entry.hourly_rate == Decimal("60")
    assert entry.description == "Bug fix outside scope"


def test_convert_to_extra_without_project_uses_zero_rate(db, seed, resolver) -> None:
    user = seed.user(default_hourly_rate="40")
    task = seed.task()
    _start(db, seed, user, task, resolver)

    result = convert_to_extra(db, user_id=user.id, now=STARTED + timedelta(minutes=45))

    entry = db.get(TimeEntry, result.time_entry_id)
    assert result.rate_source is RateSource.FALLBACK
    assert entry.is_billable is False
    assert entry.amount == 0
    assert entry.hours == Decimal("0.75")


def test_update_without_open_timer_raises_not_found(db, seed) -> None:
    user = seed.user()

    with pytest.raises(NotFoundError):
        update_active_timer(db, user_id=user.id, description="nothing running")


def test_failed_entry_insert_leaves_timer_running(db, seed, resolver, monkeypatch) -> None:
    user = seed.user()
    task = seed.task(hourly_rate_cents=5000)
    timer = _start(db, seed, user, task, resolver)

    def broken_commit():
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(SQLAlchemyError):
        stop_timer(db, user_id=user.id, now=STARTED + timedelta(hours=1), resolver=resolver)
    monkeypatch.undo()

    assert open_timer(db, user.id).id == timer.id
    assert _entry_count(db) == 0

    retry = stop_timer(db, user_id=user.id, now=STARTED + timedelta(hours=1), resolver=resolver)
    assert retry.time_entry_id is not None
    assert _entry_count(db) == 1


def test_concurrent_stops_create_exactly_one_entry(resolver, tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    make_session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with make_session() as setup:
        workspace = Workspace(name="Race Co")
        setup.add(workspace)
        setup.flush()
        user = User(workspace_id=workspace.id, email="racer@example.com", display_name="Racer")
        task = Task(workspace_id=workspace.id, title="Landing page", hourly_rate_cents=5000)
        setup.add_all([user, task])
        setup.commit()
        start_timer(setup, workspace_id=workspace.id, user_id=user.id, task_id=task.id, now=STARTED, resolver=resolver)
        user_id = user.id

    with make_session() as first_db, make_session() as second_db:
        # Both requests load the running timer before either writes.
        first_timer = open_timer(first_db, user_id)
        second_timer = open_timer(second_db, user_id)
        assert first_timer is not None and second_timer is not None

        winner = finalize_timer(first_db, first_timer, now=STARTED + timedelta(hours=2), resolver=resolver)
        loser = finalize_timer(second_db, second_timer, now=STARTED + timedelta(hours=2, minutes=5), resolver=resolver)

        assert winner.already_stopped is False
        assert loser.already_stopped is True
        assert loser.time_entry_id == winner.time_entry_id
        assert loser.duration_seconds == winner.duration_seconds == 7200
        assert second_db.scalar(select(func.count(TimeEntry.id)).where(TimeEntry.timer_id == winner.timer_id)) == 1
        stopped = second_db.get(TaskTimer, winner.timer_id)
        assert stopped.stopped_at == STARTED + timedelta(hours=2)

    engine.dispose()
