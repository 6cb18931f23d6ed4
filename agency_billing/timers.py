"""Timer finalization.

A timer is RUNNING while `stopped_at` is null and STOPPED once it is set;
stopping is terminal. Stopping converts the tracked duration into exactly one
time entry, billed through the same calculator as manual entries.

The RUNNING -> STOPPED transition is a conditional write
(`UPDATE ... WHERE stopped_at IS NULL`) issued as the last step before the
entry insert and committed together with it. Of two concurrent stops only one
can win the transition; the loser creates nothing and reports the duration the
winner recorded. If the entry insert fails the transition rolls back with it
and the timer stays RUNNING, so the stop is safe to retry.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agency_billing.billing import compute_amount, load_task, recompute_actual_hours
from agency_billing.errors import NotFoundError
from agency_billing.models import Project, Task, TaskTimer, TimeEntry, utcnow
from agency_billing.money import ZERO, cents_to_amount, hours_from_seconds, to_decimal
from agency_billing.rates import RateContext, RateResolver, RateSource, ResolvedRate, default_resolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerStopResult:
    timer_id: int
    duration_seconds: int
    hours: Decimal
    amount: Decimal
    rate_source: RateSource | None = None
    time_entry_id: int | None = None
    is_extra: bool = False
    already_stopped: bool = False


@dataclass(frozen=True)
class ActiveTimer:
    timer: TaskTimer
    elapsed_seconds: int


def elapsed_seconds(started_at: datetime, until: datetime) -> int:
    return math.floor((until - started_at).total_seconds())


def open_timer(db: Session, user_id: int) -> TaskTimer | None:
    return db.scalar(
        select(TaskTimer)
        .where(TaskTimer.user_id == user_id, TaskTimer.stopped_at.is_(None))
        .order_by(TaskTimer.started_at.desc())
        .limit(1)
    )


def get_active_timer(db: Session, user_id: int, now: datetime | None = None) -> ActiveTimer | None:
    timer = open_timer(db, user_id)
    if timer is None:
        return None
    return ActiveTimer(timer=timer, elapsed_seconds=max(elapsed_seconds(timer.started_at, now or utcnow()), 0))


def start_timer(
    db: Session,
    *,
    workspace_id: int,
    user_id: int,
    task_id: int,
    now: datetime | None = None,
    resolver: RateResolver = default_resolver,
) -> TaskTimer:
    """Start a timer on a task, finalizing the user's previous open timer first."""
    task = load_task(db, workspace_id, task_id)
    now = now or utcnow()
    if open_timer(db, user_id) is not None:
        stop_timer(db, user_id=user_id, now=now, resolver=resolver)

    timer = TaskTimer(workspace_id=workspace_id, user_id=user_id, task_id=task.id, started_at=now)
    db.add(timer)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(timer)
    logger.info("Timer %s started: user=%s task=%s", timer.id, user_id, task.id)
    return timer


def update_active_timer(
    db: Session,
    *,
    user_id: int,
    is_extra: bool | None = None,
    description: str | None = None,
) -> TaskTimer:
    timer = open_timer(db, user_id)
    if timer is None:
        raise NotFoundError("timer")
    if is_extra is not None:
        timer.is_extra = is_extra
    if description is not None:
        timer.description = description
    db.commit()
    db.refresh(timer)
    return timer


def stop_timer(
    db: Session,
    *,
    user_id: int,
    now: datetime | None = None,
    resolver: RateResolver = default_resolver,
) -> TimerStopResult:
    """Stop the user's open timer and bill the tracked time."""
    timer = open_timer(db, user_id)
    if timer is None:
        raise NotFoundError("timer")
    return finalize_timer(db, timer, now=now, extra=timer.is_extra, resolver=resolver)


def convert_to_extra(db: Session, *, user_id: int, now: datetime | None = None) -> TimerStopResult:
    """Stop the user's open timer and record the time as non-billable extra time."""
    timer = open_timer(db, user_id)
    if timer is None:
        raise NotFoundError("timer")
    return finalize_timer(db, timer, now=now, extra=True)


def finalize_timer(
    db: Session,
    timer: TaskTimer,
    *,
    now: datetime | None = None,
    extra: bool = False,
    resolver: RateResolver = default_resolver,
) -> TimerStopResult:
    """Move a loaded timer to STOPPED and persist its time entry exactly once."""
    now = now or utcnow()
    timer_id = timer.id
    started_at = timer.started_at
    duration = elapsed_seconds(started_at, now)
    hours = hours_from_seconds(duration) if duration > 0 else ZERO

    if hours <= 0:
        # Nothing billable was tracked; only the transition is recorded.
        if not _claim_stop(db, timer_id, now):
            db.rollback()
            return _already_stopped(db, timer_id)
        db.commit()
        logger.info("Timer %s stopped with no billable duration (%ss)", timer_id, duration)
        return TimerStopResult(timer_id=timer_id, duration_seconds=max(duration, 0), hours=ZERO, amount=ZERO, is_extra=extra)

    task = db.get(Task, timer.task_id)
    if task is None:
        raise NotFoundError("task", timer.task_id)

    if extra:
        rate = _extra_time_rate(db, task)
        amount = ZERO
    else:
        rate = resolver.resolve(db, timer.user_id, RateContext.for_task(task))
        amount = compute_amount(task, to_decimal(task.actual_hours), hours, rate.hourly_rate).amount

    entry = TimeEntry(
        workspace_id=timer.workspace_id,
        task_id=task.id,
        project_id=task.project_id,
        user_id=timer.user_id,
        timer_id=timer_id,
        entry_date=started_at.date(),
        start_time=started_at.time(),
        end_time=now.time(),
        hours=hours,
        hourly_rate=rate.hourly_rate,
        amount=amount,
        is_billable=not extra,
        description=timer.description or "",
    )

    # Last check before the write: only the request that flips stopped_at creates the entry.
    if not _claim_stop(db, timer_id, now):
        db.rollback()
        logger.info("Timer %s was already stopped by a concurrent request; no entry created", timer_id)
        return _already_stopped(db, timer_id)

    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Failed to persist time entry for timer %s; timer left running", timer_id, exc_info=True)
        raise
    logger.info(
        "Timer %s finalized: duration=%ss hours=%s rate=%s (%s) amount=%s extra=%s entry=%s",
        timer_id,
        duration,
        hours,
        rate.hourly_rate,
        rate.source.value,
        amount,
        extra,
        entry.id,
    )

    recompute_actual_hours(db, task.id)
    return TimerStopResult(
        timer_id=timer_id,
        duration_seconds=duration,
        hours=hours,
        amount=amount,
        rate_source=rate.source,
        time_entry_id=entry.id,
        is_extra=extra,
    )


def _claim_stop(db: Session, timer_id: int, now: datetime) -> bool:
    """Conditionally transition RUNNING -> STOPPED; False if already stopped."""
    result = db.execute(
        update(TaskTimer)
        .where(TaskTimer.id == timer_id, TaskTimer.stopped_at.is_(None))
        .values(stopped_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _already_stopped(db: Session, timer_id: int) -> TimerStopResult:
    """Report the outcome a concurrent stop already recorded."""
    timer = db.get(TaskTimer, timer_id)
    if timer is None or timer.stopped_at is None:
        raise NotFoundError("timer", timer_id)
    duration = max(elapsed_seconds(timer.started_at, timer.stopped_at), 0)
    entry = db.scalar(select(TimeEntry).where(TimeEntry.timer_id == timer_id).limit(1))
    if entry is None:
        return TimerStopResult(
            timer_id=timer_id,
            duration_seconds=duration,
            hours=hours_from_seconds(duration) if duration > 0 else ZERO,
            amount=ZERO,
            already_stopped=True,
        )
    return TimerStopResult(
        timer_id=timer_id,
        duration_seconds=duration,
        hours=to_decimal(entry.hours),
        amount=to_decimal(entry.amount),
        rate_source=RateSource.STORED,
        time_entry_id=entry.id,
        is_extra=not entry.is_billable,
        already_stopped=True,
    )


def _extra_time_rate(db: Session, task: Task) -> ResolvedRate:
    """Rate snapshot for extra time: the project's default rate, if any."""
    if task.project_id is not None:
        cents = db.scalar(select(Project.hourly_rate_cents).where(Project.id == task.project_id))
        if cents:
            return ResolvedRate(hourly_rate=cents_to_amount(cents), source=RateSource.PROJECT)
    return ResolvedRate(hourly_rate=ZERO, source=RateSource.FALLBACK)
