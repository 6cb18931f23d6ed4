"""Opportunistic workspace housekeeping.

Runs after report views as a background task. It is best-effort: failures
are logged and never reach the request that triggered them.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agency_billing.database import SessionLocal
from agency_billing.models import Task, TaskStatus

logger = logging.getLogger(__name__)


def roll_overdue_tasks(db: Session, workspace_id: int, today: date | None = None) -> int:
    """Move open tasks whose due date has passed to today; returns the count moved.

    Done and invoiced tasks keep their due date.
    """
    today = today or date.today()
    try:
        result = db.execute(
            update(Task)
            .where(
                Task.workspace_id == workspace_id,
                Task.due_date.is_not(None),
                Task.due_date < today,
                Task.status.not_in((TaskStatus.DONE.value, TaskStatus.INVOICED.value)),
            )
            .values(due_date=today)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Overdue task roll-forward failed for workspace=%s", workspace_id, exc_info=True)
        return 0
    if result.rowcount:
        logger.info("Moved %s overdue task(s) to %s in workspace=%s", result.rowcount, today, workspace_id)
    return result.rowcount


def run_housekeeping(workspace_id: int) -> None:
    """Background-task entrypoint; owns its own session."""
    with SessionLocal() as db:
        roll_overdue_tasks(db, workspace_id)
