"""Time entry billing.

Computes the monetary amount of a time record at write time and persists it.
The amount is `overage_hours x hourly_rate`: hours the task's ceiling still
absorbs are free, everything beyond it is billed. Non-billable entries still
consume the ceiling but always carry a zero amount. Amounts are derived from
scratch on every create and on edits that touch hours, rate or billability,
never patched incrementally.

Ceiling hours come from the task: `budget_cents / 100 / rate` when a budget and
a positive rate exist, else `estimated_hours`, else zero.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agency_billing.budget import Allocation, allocate, replay
from agency_billing.errors import NotFoundError, ValidationError
from agency_billing.models import Task, TimeEntry, utcnow
from agency_billing.money import ZERO, cents_to_amount, quantize_amount, quantize_hours, to_decimal
from agency_billing.rates import RateContext, RateResolver, RateSource, ResolvedRate, default_resolver

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {"hours", "entry_date", "description", "hourly_rate", "is_billable", "start_time", "end_time"}
)


@dataclass(frozen=True)
class BillingQuote:
    amount: Decimal
    allocation: Allocation
    ceiling_hours: Decimal


@dataclass
class TimeEntryOutcome:
    entry: TimeEntry
    rate: ResolvedRate
    quote: BillingQuote | None


def ceiling_hours_for(task: Task, hourly_rate: Decimal) -> Decimal:
    """Hours the task's budget or estimate absorbs before overage starts."""
    if task.budget_cents and task.budget_cents > 0 and hourly_rate > 0:
        return cents_to_amount(task.budget_cents) / hourly_rate
    estimated = to_decimal(task.estimated_hours)
    if estimated > 0:
        return estimated
    return ZERO


def compute_amount(task: Task, prior_hours: Decimal, hours: Decimal, rate: Decimal) -> BillingQuote:
    """Bill `hours` at `rate` after `prior_hours` already counted against the ceiling.

    For a new entry `prior_hours` is the task's actual hours before the entry;
    for an edit it is the sum of the task's other entries, so the edited entry
    is re-evaluated against the ceiling from scratch.
    """
    if hours <= 0:
        raise ValidationError("Hours must be greater than zero")
    ceiling = ceiling_hours_for(task, rate)
    allocation = allocate(ceiling, prior_hours, hours)
    return BillingQuote(
        amount=quantize_amount(allocation.overage_hours * rate),
        allocation=allocation,
        ceiling_hours=ceiling,
    )


def billed_amount(quote: BillingQuote, is_billable: bool) -> Decimal:
    """Amount stored on an entry; non-billable entries always carry zero."""
    return quote.amount if is_billable else quantize_amount(ZERO)


def load_task(db: Session, workspace_id: int, task_id: int) -> Task:
    task = db.scalar(select(Task).where(Task.id == task_id, Task.workspace_id == workspace_id))
    if task is None:
        raise NotFoundError("task", task_id)
    return task


def _validated_hours(hours: Decimal | float | int | None) -> Decimal:
    if hours is None:
        raise ValidationError("Hours are required")
    value = quantize_hours(to_decimal(hours))
    if value <= 0:
        raise ValidationError("Hours must be greater than zero")
    return value


def _explicit_rate(hourly_rate: Decimal | float | int) -> ResolvedRate:
    rate = to_decimal(hourly_rate)
    if rate < 0:
        raise ValidationError("Hourly rate cannot be negative")
    return ResolvedRate(hourly_rate=rate, source=RateSource.MANUAL)


def recompute_actual_hours(db: Session, task_id: int) -> Decimal | None:
    """Resum a task's actual hours from its entries.

    Best-effort: the entry that triggered this is already committed, so a
    failure is logged and swallowed and None is returned.
    """
    try:
        total = db.scalar(select(func.coalesce(func.sum(TimeEntry.hours), 0)).where(TimeEntry.task_id == task_id))
        task = db.get(Task, task_id)
        if task is None:
            return None
        actual_hours = quantize_hours(to_decimal(total))
        task.actual_hours = actual_hours
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Failed to recompute actual hours for task=%s", task_id, exc_info=True)
        return None
    return actual_hours


def log_time_entry(
    db: Session,
    *,
    workspace_id: int,
    user_id: int,
    task_id: int,
    hours: Decimal | float | int,
    entry_date: date,
    description: str = "",
    hourly_rate: Decimal | float | int | None = None,
    is_billable: bool = True,
    start_time: time | None = None,
    end_time: time | None = None,
    resolver: RateResolver = default_resolver,
) -> TimeEntryOutcome:
    """Create a billed time entry on a task and resum the task's hours."""
    hours = _validated_hours(hours)
    task = load_task(db, workspace_id, task_id)

    if hourly_rate is None:
        rate = resolver.resolve(db, user_id, RateContext.for_task(task))
    else:
        rate = _explicit_rate(hourly_rate)

    quote = compute_amount(task, to_decimal(task.actual_hours), hours, rate.hourly_rate)
    entry = TimeEntry(
        workspace_id=workspace_id,
        task_id=task.id,
        project_id=task.project_id,
        user_id=user_id,
        entry_date=entry_date,
        start_time=start_time,
        end_time=end_time,
        hours=hours,
        hourly_rate=rate.hourly_rate,
        amount=billed_amount(quote, is_billable),
        is_billable=is_billable,
        description=description or "",
    )
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(entry)
    logger.info(
        "Time entry %s created: task=%s hours=%s rate=%s (%s) within_budget=%s overage=%s amount=%s",
        entry.id,
        task.id,
        hours,
        rate.hourly_rate,
        rate.source.value,
        quote.allocation.within_budget_hours,
        quote.allocation.overage_hours,
        entry.amount,
    )

    recompute_actual_hours(db, task.id)
    return TimeEntryOutcome(entry=entry, rate=rate, quote=quote)


def edit_time_entry(
    db: Session,
    *,
    workspace_id: int,
    entry_id: int,
    changes: Mapping[str, object],
    resolver: RateResolver = default_resolver,
) -> TimeEntryOutcome:
    """Apply a partial update to an entry.

    When hours, rate or billability change the amount is re-derived against
    the ceiling using the task's other entries as prior consumption. An omitted rate keeps
    the entry's stored snapshot; an explicit None re-resolves it.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

    entry = db.scalar(select(TimeEntry).where(TimeEntry.id == entry_id, TimeEntry.workspace_id == workspace_id))
    if entry is None:
        raise NotFoundError("time_entry", entry_id)

    if "hours" in changes:
        entry.hours = _validated_hours(changes["hours"])
    for field in ("entry_date", "start_time", "end_time", "is_billable"):
        if field in changes and changes[field] is not None:
            setattr(entry, field, changes[field])
    if "description" in changes:
        entry.description = changes["description"] or ""

    rate = ResolvedRate(hourly_rate=to_decimal(entry.hourly_rate), source=RateSource.STORED)
    if "hourly_rate" in changes:
        if changes["hourly_rate"] is None:
            rate = resolver.resolve(db, entry.user_id, RateContext.for_task(entry.task))
        else:
            rate = _explicit_rate(changes["hourly_rate"])
        entry.hourly_rate = rate.hourly_rate

    quote = None
    if changes.keys() & {"hours", "hourly_rate", "is_billable"}:
        other_hours = db.scalar(
            select(func.coalesce(func.sum(TimeEntry.hours), 0)).where(
                TimeEntry.task_id == entry.task_id,
                TimeEntry.id != entry.id,
            )
        )
        quote = compute_amount(entry.task, to_decimal(other_hours), to_decimal(entry.hours), rate.hourly_rate)
        entry.amount = billed_amount(quote, entry.is_billable)

    entry.updated_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(entry)
    if quote is not None:
        logger.info("Time entry %s re-billed: hours=%s rate=%s amount=%s", entry.id, entry.hours, rate.hourly_rate, entry.amount)

    recompute_actual_hours(db, entry.task_id)
    return TimeEntryOutcome(entry=entry, rate=rate, quote=quote)


def delete_time_entry(db: Session, *, workspace_id: int, entry_id: int) -> int:
    """Delete an entry and resum its task; returns the task id."""
    entry = db.scalar(select(TimeEntry).where(TimeEntry.id == entry_id, TimeEntry.workspace_id == workspace_id))
    if entry is None:
        raise NotFoundError("time_entry", entry_id)
    task_id = entry.task_id
    db.delete(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("Time entry %s deleted from task=%s", entry_id, task_id)
    recompute_actual_hours(db, task_id)
    return task_id


def recalculate_task_entries(
    db: Session,
    *,
    workspace_id: int,
    task_id: int,
    resolver: RateResolver = default_resolver,
) -> int:
    """Re-derive every stored amount of a task in chronological order.

    Needed after a task's budget or estimate changes. The ceiling is computed
    with the first entry's stored rate (resolved afresh if it has none); each
    billable entry is billed at its own stored rate and non-billable ones stay
    at zero. Returns how many amounts changed.
    """
    task = load_task(db, workspace_id, task_id)
    entries = db.scalars(
        select(TimeEntry)
        .where(TimeEntry.task_id == task.id)
        .order_by(TimeEntry.entry_date.asc(), TimeEntry.created_at.asc(), TimeEntry.id.asc())
    ).all()
    if not entries:
        return 0

    base_rate = to_decimal(entries[0].hourly_rate)
    if base_rate <= 0:
        base_rate = resolver.resolve(db, entries[0].user_id, RateContext.for_task(task)).hourly_rate

    allocations = replay(ceiling_hours_for(task, base_rate), [to_decimal(entry.hours) for entry in entries])
    changed = 0
    for entry, allocation in zip(entries, allocations):
        entry_rate = to_decimal(entry.hourly_rate)
        if entry_rate <= 0:
            entry_rate = base_rate
        amount = quantize_amount(ZERO)
        if entry.is_billable:
            amount = quantize_amount(allocation.overage_hours * entry_rate)
        if amount != to_decimal(entry.amount):
            logger.info("Recalculating time entry %s: old=%s new=%s", entry.id, entry.amount, amount)
            entry.amount = amount
            changed += 1

    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    recompute_actual_hours(db, task.id)
    return changed
