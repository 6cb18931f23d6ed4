"""Invoicing workflow.

Done tasks are ready to invoice. Marking them invoiced moves them to the
INVOICED status and stamps `invoiced_at`; restoring moves them back to DONE
and clears the stamp. Both transitions are conditional updates on the current
status, so a task that is no longer in the expected state is left untouched.

Boards group tasks by project; tasks without a project are listed on their
own. Each line carries the task's billed labor (sum of its entry amounts),
its billable cost items, and its fixed budget; the total is their sum.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agency_billing.errors import NotFoundError, ValidationError
from agency_billing.models import CostItem, Project, Task, TaskStatus, TimeEntry, utcnow
from agency_billing.money import ZERO, cents_to_amount, quantize_amount, to_decimal

logger = logging.getLogger(__name__)


class InvoiceTarget(str, Enum):
    PROJECT = "project"
    TASK = "task"


@dataclass
class InvoiceLine:
    task_id: int
    title: str
    project_id: int | None
    labor_cost: Decimal = ZERO
    external_cost: Decimal = ZERO
    fixed_budget: Decimal = ZERO
    invoiced_at: datetime | None = None

    @property
    def total(self) -> Decimal:
        return self.labor_cost + self.external_cost + self.fixed_budget


@dataclass
class InvoiceGroup:
    project_id: int
    name: str
    lines: list[InvoiceLine] = field(default_factory=list)

    @property
    def labor_cost(self) -> Decimal:
        return sum((line.labor_cost for line in self.lines), ZERO)

    @property
    def external_cost(self) -> Decimal:
        return sum((line.external_cost for line in self.lines), ZERO)

    @property
    def fixed_budget(self) -> Decimal:
        return sum((line.fixed_budget for line in self.lines), ZERO)

    @property
    def total(self) -> Decimal:
        return self.labor_cost + self.external_cost + self.fixed_budget

    @property
    def task_count(self) -> int:
        return len(self.lines)

    @property
    def invoiced_at(self) -> datetime | None:
        stamps = [line.invoiced_at for line in self.lines if line.invoiced_at is not None]
        return max(stamps) if stamps else None


@dataclass
class InvoiceBoard:
    projects: list[InvoiceGroup] = field(default_factory=list)
    tasks: list[InvoiceLine] = field(default_factory=list)


def ready_to_invoice(db: Session, workspace_id: int) -> InvoiceBoard:
    """Done tasks, grouped by project, with what each would bill."""
    return _board(db, workspace_id, TaskStatus.DONE)


def invoiced_archive(db: Session, workspace_id: int) -> InvoiceBoard:
    """Invoiced tasks, grouped the same way as the ready board."""
    return _board(db, workspace_id, TaskStatus.INVOICED)


def mark_invoiced(
    db: Session,
    *,
    workspace_id: int,
    target: InvoiceTarget,
    target_id: int,
    now: datetime | None = None,
) -> int:
    """Move a project's done tasks, or one done task, to INVOICED; returns the count moved."""
    return _transition(
        db,
        workspace_id=workspace_id,
        target=target,
        target_id=target_id,
        from_status=TaskStatus.DONE,
        to_status=TaskStatus.INVOICED,
        invoiced_at=now or utcnow(),
    )


def restore_invoiced(db: Session, *, workspace_id: int, target: InvoiceTarget, target_id: int) -> int:
    """Move a project's invoiced tasks, or one invoiced task, back to DONE; returns the count moved."""
    return _transition(
        db,
        workspace_id=workspace_id,
        target=target,
        target_id=target_id,
        from_status=TaskStatus.INVOICED,
        to_status=TaskStatus.DONE,
        invoiced_at=None,
    )


def _transition(
    db: Session,
    *,
    workspace_id: int,
    target: InvoiceTarget,
    target_id: int,
    from_status: TaskStatus,
    to_status: TaskStatus,
    invoiced_at: datetime | None,
) -> int:
    statement = update(Task).where(Task.workspace_id == workspace_id, Task.status == from_status.value)
    if target is InvoiceTarget.PROJECT:
        project = db.scalar(select(Project).where(Project.id == target_id, Project.workspace_id == workspace_id))
        if project is None:
            raise NotFoundError("project", target_id)
        statement = statement.where(Task.project_id == project.id)
        empty_reason = f"Project has no {from_status.value} tasks"
    else:
        task = db.scalar(select(Task).where(Task.id == target_id, Task.workspace_id == workspace_id))
        if task is None:
            raise NotFoundError("task", target_id)
        statement = statement.where(Task.id == task.id)
        empty_reason = f"Task is not {from_status.value}"

    try:
        result = db.execute(
            statement.values(status=to_status.value, invoiced_at=invoiced_at).execution_options(
                synchronize_session=False
            )
        )
        moved = result.rowcount
        if moved == 0:
            db.rollback()
            raise ValidationError(empty_reason)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    # Loaded Task rows are stale after the bulk update.
    db.expire_all()
    logger.info(
        "Moved %s task(s) from %s to %s: %s=%s workspace=%s",
        moved,
        from_status.value,
        to_status.value,
        target.value,
        target_id,
        workspace_id,
    )
    return moved


def _board(db: Session, workspace_id: int, status: TaskStatus) -> InvoiceBoard:
    tasks = db.scalars(
        select(Task)
        .where(Task.workspace_id == workspace_id, Task.status == status.value)
        .order_by(Task.project_id, Task.id)
    ).all()
    lines = _lines_for(db, tasks)

    board = InvoiceBoard()
    groups: dict[int, InvoiceGroup] = {}
    project_ids = {task.project_id for task in tasks if task.project_id is not None}
    names = {}
    if project_ids:
        names = dict(db.execute(select(Project.id, Project.name).where(Project.id.in_(project_ids))).all())
    for task, line in zip(tasks, lines):
        if task.project_id is None:
            board.tasks.append(line)
            continue
        group = groups.get(task.project_id)
        if group is None:
            group = InvoiceGroup(project_id=task.project_id, name=names.get(task.project_id, ""))
            groups[task.project_id] = group
            board.projects.append(group)
        group.lines.append(line)
    return board


def _lines_for(db: Session, tasks: Sequence[Task]) -> list[InvoiceLine]:
    if not tasks:
        return []
    task_ids = [task.id for task in tasks]
    labor = _sums_by_task(db, TimeEntry.task_id, TimeEntry.amount, TimeEntry.task_id.in_(task_ids))
    external = _sums_by_task(
        db,
        CostItem.task_id,
        CostItem.amount,
        CostItem.task_id.in_(task_ids),
        CostItem.is_billable.is_(True),
    )
    return [
        InvoiceLine(
            task_id=task.id,
            title=task.title,
            project_id=task.project_id,
            labor_cost=quantize_amount(labor.get(task.id, ZERO)),
            external_cost=quantize_amount(external.get(task.id, ZERO)),
            fixed_budget=quantize_amount(cents_to_amount(task.budget_cents) or ZERO),
            invoiced_at=task.invoiced_at,
        )
        for task in tasks
    ]


def _sums_by_task(db: Session, task_column, amount_column, *criteria) -> dict[int, Decimal]:
    rows = db.execute(select(task_column, func.sum(amount_column)).where(*criteria).group_by(task_column)).all()
    return {task_id: to_decimal(total) for task_id, total in rows}
