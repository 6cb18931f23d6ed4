"""Finance aggregation.

Builds the profitability snapshot shown on project and task reports from the
stored time entries and cost items. Read-only: entry amounts are taken as
billed at write time and nothing is recomputed or written back. Snapshots are
disposable and rebuilt on every request.

Profitability treats labor as revenue-bearing:
`profit = (labor_cost + budget_amount) - external_cost`.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from agency_billing.errors import NotFoundError
from agency_billing.models import CostItem, Project, Task, TimeEntry
from agency_billing.money import ZERO, cents_to_amount, quantize_amount, quantize_hours, to_decimal

HUNDRED = Decimal(100)


@dataclass
class DailyFinance:
    day: date
    hours: Decimal = ZERO
    labor_cost: Decimal = ZERO
    external_cost: Decimal = ZERO

    @property
    def total_revenue(self) -> Decimal:
        return self.labor_cost + self.external_cost


@dataclass
class FinanceSnapshot:
    scope: str
    scope_id: int
    name: str
    billable_hours: Decimal = ZERO
    total_hours: Decimal = ZERO
    labor_cost: Decimal = ZERO
    external_cost: Decimal = ZERO
    total_cost: Decimal = ZERO
    budget_amount: Decimal = ZERO
    profit: Decimal = ZERO
    profit_pct: Decimal = ZERO
    daily_data: list[DailyFinance] = field(default_factory=list)


def task_budget_amount(task: Task, entries: Iterable[TimeEntry], *, use_task_rate: bool = True) -> Decimal:
    """A task's budget in currency units.

    Uses `budget_cents` when set; otherwise prices the tracked hours at each
    entry's stored rate. With `use_task_rate` the task's own rate overrides the
    stored rates; project reports pass False and price entries as billed.
    """
    if task.budget_cents and task.budget_cents > 0:
        return cents_to_amount(task.budget_cents)
    task_rate = None
    if use_task_rate and task.hourly_rate_cents:
        task_rate = cents_to_amount(task.hourly_rate_cents)
    total = ZERO
    for entry in entries:
        rate = task_rate if task_rate is not None else to_decimal(entry.hourly_rate)
        total += to_decimal(entry.hours) * rate
    return total


def aggregate_project(db: Session, project_id: int, workspace_id: int | None = None) -> FinanceSnapshot:
    query = select(Project).where(Project.id == project_id)
    if workspace_id is not None:
        query = query.where(Project.workspace_id == workspace_id)
    project = db.scalar(query)
    if project is None:
        raise NotFoundError("project", project_id)

    # All tasks count, not only done ones (DESIGN.md, open question decisions, "Finance").
    tasks = db.scalars(select(Task).where(Task.project_id == project.id).order_by(Task.id)).all()
    task_ids = [task.id for task in tasks]
    entries = _entries_for(db, task_ids)
    cost_items = db.scalars(select(CostItem).where(CostItem.project_id == project.id)).all()

    entries_by_task: dict[int, list[TimeEntry]] = defaultdict(list)
    for entry in entries:
        entries_by_task[entry.task_id].append(entry)
    budget_amount = sum(
        (task_budget_amount(task, entries_by_task[task.id], use_task_rate=False) for task in tasks),
        ZERO,
    )

    return _build_snapshot("project", project.id, project.name, entries, cost_items, budget_amount)


def aggregate_task(db: Session, task_id: int, workspace_id: int | None = None) -> FinanceSnapshot:
    query = select(Task).where(Task.id == task_id)
    if workspace_id is not None:
        query = query.where(Task.workspace_id == workspace_id)
    task = db.scalar(query)
    if task is None:
        raise NotFoundError("task", task_id)

    entries = _entries_for(db, [task.id])
    # Cost items hang off projects; a standalone task has none.
    cost_items: Sequence[CostItem] = []
    if task.project_id is not None:
        cost_items = db.scalars(select(CostItem).where(CostItem.task_id == task.id)).all()

    return _build_snapshot("task", task.id, task.title, entries, cost_items, task_budget_amount(task, entries))


def _entries_for(db: Session, task_ids: Sequence[int]) -> Sequence[TimeEntry]:
    if not task_ids:
        return []
    return db.scalars(
        select(TimeEntry).where(TimeEntry.task_id.in_(task_ids)).order_by(TimeEntry.entry_date, TimeEntry.id)
    ).all()


def _build_snapshot(
    scope: str,
    scope_id: int,
    name: str,
    entries: Sequence[TimeEntry],
    cost_items: Sequence[CostItem],
    budget_amount: Decimal,
) -> FinanceSnapshot:
    billable_hours = ZERO
    total_hours = ZERO
    labor_cost = ZERO
    external_cost = ZERO
    daily: dict[date, DailyFinance] = {}

    for entry in entries:
        hours = to_decimal(entry.hours)
        day = daily.setdefault(entry.entry_date, DailyFinance(day=entry.entry_date))
        total_hours += hours
        day.hours += hours
        if entry.is_billable:
            amount = to_decimal(entry.amount)
            billable_hours += hours
            labor_cost += amount
            day.labor_cost += amount

    for item in cost_items:
        day = daily.setdefault(item.cost_date, DailyFinance(day=item.cost_date))
        if item.is_billable:
            amount = to_decimal(item.amount)
            external_cost += amount
            day.external_cost += amount

    total_cost = external_cost
    revenue = labor_cost + budget_amount
    profit = revenue - total_cost
    profit_pct = profit / revenue * HUNDRED if revenue != 0 else ZERO

    daily_data = [
        DailyFinance(
            day=row.day,
            hours=quantize_hours(row.hours),
            labor_cost=quantize_amount(row.labor_cost),
            external_cost=quantize_amount(row.external_cost),
        )
        for row in sorted(daily.values(), key=lambda row: row.day)
    ]
    return FinanceSnapshot(
        scope=scope,
        scope_id=scope_id,
        name=name,
        billable_hours=quantize_hours(billable_hours),
        total_hours=quantize_hours(total_hours),
        labor_cost=quantize_amount(labor_cost),
        external_cost=quantize_amount(external_cost),
        total_cost=quantize_amount(total_cost),
        budget_amount=quantize_amount(budget_amount),
        profit=quantize_amount(profit),
        profit_pct=quantize_amount(profit_pct),
        daily_data=daily_data,
    )
