#!/usr/bin/env python3
"""Mini-README: CLI utility to re-bill a task's time entries after a budget change.

Stored entry amounts are frozen at write time. When a task's budget or
estimate is edited, run this to replay its entries against the new ceiling in
chronological order.
"""

from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy import select
from sqlalchemy.orm import Session

from agency_billing.billing import recalculate_task_entries
from agency_billing.config import settings
from agency_billing.database import engine
from agency_billing.errors import NotFoundError
from agency_billing.models import Task


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Recalculate stored time entry amounts for one task, or every task in a workspace."
    )
    parser.add_argument("--workspace", dest="workspace_id", type=int, required=True, help="Workspace id.")
    parser.add_argument(
        "--task",
        dest="task_ids",
        type=int,
        action="append",
        default=None,
        help="Task id to recalculate. Repeatable. Defaults to every task in the workspace.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=settings.log_level)

    with Session(engine) as db:
        task_ids = args.task_ids or list(
            db.scalars(select(Task.id).where(Task.workspace_id == args.workspace_id).order_by(Task.id))
        )
        if not task_ids:
            print(f"[recalculate] No tasks found in workspace {args.workspace_id}.")
            return 0

        total_changed = 0
        for task_id in task_ids:
            try:
                changed = recalculate_task_entries(db, workspace_id=args.workspace_id, task_id=task_id)
            except NotFoundError as exc:
                print(f"[recalculate] ERROR: {exc}")
                return 2
            total_changed += changed
            print(f"[recalculate] Task {task_id}: {changed} entr{'y' if changed == 1 else 'ies'} updated.")

    print(f"[recalculate] Done: {total_changed} amount(s) changed across {len(task_ids)} task(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
