"""Application entrypoint.

This file wires the JSON API for time entries, timers, rate lookups, finance
reports and the invoicing workflow. It maps billing errors onto HTTP responses
and runs startup actions for the Agency Billing service.
"""

import logging
from datetime import date

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from agency_billing import billing, finance, invoicing, timers
from agency_billing.config import settings
from agency_billing.database import get_db, run_migrations
from agency_billing.dependencies import get_current_user
from agency_billing.errors import NotFoundError, ValidationError
from agency_billing.housekeeping import run_housekeeping
from agency_billing.models import CostItem, Project, Task, TimeEntry, User
from agency_billing.rates import RateContext, default_resolver
from agency_billing.schemas import (
    AllocationRead,
    CostItemCreate,
    CostItemRead,
    FinanceSnapshotRead,
    InvoiceAction,
    InvoiceActionRead,
    InvoiceBoardRead,
    RateRead,
    RecalculateRead,
    TimeEntryCreate,
    TimeEntryRead,
    TimeEntryResult,
    TimeEntryUpdate,
    TimerRead,
    TimerStart,
    TimerStopRead,
    TimerUpdate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)


@app.on_event("startup")
def startup() -> None:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_migrations()
    logger.info("%s started (environment=%s)", settings.app_name, settings.environment)


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.reason})


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc), "kind": exc.kind})


def _entry_result(db: Session, outcome: billing.TimeEntryOutcome, with_snapshot: bool = False) -> TimeEntryResult:
    allocation = None
    if outcome.quote is not None:
        allocation = AllocationRead(
            ceiling_hours=outcome.quote.ceiling_hours,
            within_budget_hours=outcome.quote.allocation.within_budget_hours,
            overage_hours=outcome.quote.allocation.overage_hours,
        )
    snapshot = None
    project_id = outcome.entry.project_id
    if with_snapshot and project_id is not None:
        snapshot = FinanceSnapshotRead.from_snapshot(finance.aggregate_project(db, project_id))
    return TimeEntryResult(
        time_entry=TimeEntryRead.model_validate(outcome.entry),
        rate_source=outcome.rate.source,
        rate=RateRead.model_validate(outcome.rate),
        allocation=allocation,
        finance_snapshot=snapshot,
    )


@app.post("/tasks/{task_id}/time-entries", response_model=TimeEntryResult, status_code=status.HTTP_201_CREATED)
def create_time_entry(
    task_id: int,
    payload: TimeEntryCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    outcome = billing.log_time_entry(
        db,
        workspace_id=current_user.workspace_id,
        user_id=current_user.id,
        task_id=task_id,
        **payload.model_dump(),
    )
    return _entry_result(db, outcome, with_snapshot=True)


@app.get("/tasks/{task_id}/time-entries", response_model=list[TimeEntryRead])
def list_time_entries(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    task = billing.load_task(db, current_user.workspace_id, task_id)
    return db.scalars(
        select(TimeEntry)
        .where(TimeEntry.task_id == task.id)
        .order_by(TimeEntry.entry_date.desc(), TimeEntry.id.desc())
    ).all()


@app.patch("/time-entries/{entry_id}", response_model=TimeEntryResult)
def update_time_entry(
    entry_id: int,
    payload: TimeEntryUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    outcome = billing.edit_time_entry(
        db,
        workspace_id=current_user.workspace_id,
        entry_id=entry_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return _entry_result(db, outcome)


@app.delete("/time-entries/{entry_id}")
def remove_time_entry(entry_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    task_id = billing.delete_time_entry(db, workspace_id=current_user.workspace_id, entry_id=entry_id)
    return {"ok": True, "task_id": task_id}


@app.post("/tasks/{task_id}/recalculate-time-entries", response_model=RecalculateRead)
def recalculate_time_entries(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    changed = billing.recalculate_task_entries(db, workspace_id=current_user.workspace_id, task_id=task_id)
    return RecalculateRead(recalculated=changed)


@app.get("/rates/resolve", response_model=RateRead)
def resolve_rate(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    task = billing.load_task(db, current_user.workspace_id, task_id)
    return RateRead.model_validate(default_resolver.resolve(db, current_user.id, RateContext.for_task(task)))


@app.post("/timers/start", response_model=TimerRead, status_code=status.HTTP_201_CREATED)
def start_timer(payload: TimerStart, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    timer = timers.start_timer(
        db,
        workspace_id=current_user.workspace_id,
        user_id=current_user.id,
        task_id=payload.task_id,
    )
    return TimerRead.model_validate(timer)


@app.get("/timers/active", response_model=TimerRead | None)
def active_timer(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    active = timers.get_active_timer(db, current_user.id)
    if active is None:
        return None
    read = TimerRead.model_validate(active.timer)
    read.elapsed_seconds = active.elapsed_seconds
    return read


@app.patch("/timers/active", response_model=TimerRead)
def update_active_timer(payload: TimerUpdate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    timer = timers.update_active_timer(db, user_id=current_user.id, **payload.model_dump(exclude_unset=True))
    return TimerRead.model_validate(timer)


@app.post("/timers/stop", response_model=TimerStopRead)
def stop_timer(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return TimerStopRead.model_validate(timers.stop_timer(db, user_id=current_user.id))


@app.post("/timers/convert-to-extra", response_model=TimerStopRead)
def convert_timer_to_extra(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return TimerStopRead.model_validate(timers.convert_to_extra(db, user_id=current_user.id))


@app.post("/cost-items", response_model=CostItemRead, status_code=status.HTTP_201_CREATED)
def create_cost_item(payload: CostItemCreate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    project = db.scalar(
        select(Project).where(Project.id == payload.project_id, Project.workspace_id == current_user.workspace_id)
    )
    if project is None:
        raise NotFoundError("project", payload.project_id)
    if payload.task_id is not None:
        task = db.get(Task, payload.task_id)
        if task is None or task.project_id != project.id:
            raise ValidationError("Cost item task must belong to the same project")
    item = CostItem(workspace_id=current_user.workspace_id, **payload.model_dump())
    db.add(item)
    db.commit()
    db.refresh(item)
    logger.info("Cost item %s recorded on project=%s amount=%s", item.id, project.id, item.amount)
    return CostItemRead.model_validate(item)


@app.get("/projects/{project_id}/finance", response_model=FinanceSnapshotRead)
def project_finance(
    project_id: int,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    snapshot = finance.aggregate_project(db, project_id, workspace_id=current_user.workspace_id)
    if settings.housekeeping_enabled:
        background_tasks.add_task(run_housekeeping, current_user.workspace_id)
    return FinanceSnapshotRead.from_snapshot(snapshot)


@app.get("/tasks/{task_id}/finance", response_model=FinanceSnapshotRead)
def task_finance(
    task_id: int,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    snapshot = finance.aggregate_task(db, task_id, workspace_id=current_user.workspace_id)
    if settings.housekeeping_enabled:
        background_tasks.add_task(run_housekeeping, current_user.workspace_id)
    return FinanceSnapshotRead.from_snapshot(snapshot)


@app.get("/invoices/ready", response_model=InvoiceBoardRead)
def invoices_ready(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return InvoiceBoardRead.from_board(invoicing.ready_to_invoice(db, current_user.workspace_id))


@app.get("/invoices/archived", response_model=InvoiceBoardRead)
def invoices_archived(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return InvoiceBoardRead.from_board(invoicing.invoiced_archive(db, current_user.workspace_id))


@app.post("/invoices/mark-invoiced", response_model=InvoiceActionRead)
def mark_invoiced(payload: InvoiceAction, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    moved = invoicing.mark_invoiced(
        db, workspace_id=current_user.workspace_id, target=payload.type, target_id=payload.id
    )
    return InvoiceActionRead(type=payload.type, id=payload.id, tasks_moved=moved)


@app.post("/invoices/restore", response_model=InvoiceActionRead)
def restore_invoiced(payload: InvoiceAction, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    moved = invoicing.restore_invoiced(
        db, workspace_id=current_user.workspace_id, target=payload.type, target_id=payload.id
    )
    return InvoiceActionRead(type=payload.type, id=payload.id, tasks_moved=moved)


@app.get("/health")
def healthcheck():
    return {"status": "ok", "date": date.today().isoformat()}


def serve() -> None:
    """Console entrypoint: run the API with the configured host and port."""
    uvicorn.run("agency_billing.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
