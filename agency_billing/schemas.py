"""Pydantic schemas.

Validates incoming payloads and shapes JSON responses. Money and hours are
decimals internally and serialize as JSON numbers in currency units; the
finance report uses the camelCase keys the UI consumes.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from agency_billing.finance import FinanceSnapshot
from agency_billing.invoicing import InvoiceBoard, InvoiceGroup, InvoiceLine, InvoiceTarget
from agency_billing.rates import RateSource

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
Hours = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class TimeEntryCreate(BaseModel):
    hours: Decimal = Field(gt=0, le=24)
    entry_date: date
    description: str = ""
    hourly_rate: Decimal | None = Field(default=None, ge=0)
    is_billable: bool = True
    start_time: time | None = None
    end_time: time | None = None


class TimeEntryUpdate(BaseModel):
    hours: Decimal | None = Field(default=None, gt=0, le=24)
    entry_date: date | None = None
    description: str | None = None
    hourly_rate: Decimal | None = Field(default=None, ge=0)
    is_billable: bool | None = None
    start_time: time | None = None
    end_time: time | None = None


class CostItemCreate(BaseModel):
    project_id: int
    task_id: int | None = None
    name: str = Field(min_length=1, max_length=200)
    category: str = ""
    description: str = ""
    amount: Decimal = Field(ge=0)
    is_billable: bool = True
    cost_date: date


class TimerStart(BaseModel):
    task_id: int


class TimerUpdate(BaseModel):
    is_extra: bool | None = None
    description: str | None = None


class TimeEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    task_id: int
    project_id: int | None
    user_id: int
    timer_id: int | None
    entry_date: date
    start_time: time | None
    end_time: time | None
    hours: Hours
    hourly_rate: Money
    amount: Money
    is_billable: bool
    description: str
    created_at: datetime
    updated_at: datetime | None


class RateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hourly_rate: Money
    source: RateSource
    rate_id: int | None = None
    rate_name: str | None = None


class AllocationRead(BaseModel):
    ceiling_hours: Hours
    within_budget_hours: Hours
    overage_hours: Hours


class DailyFinanceRead(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    day: date = Field(alias="date")
    hours: Hours
    labor_cost: Money
    external_cost: Money
    total_revenue: Money


class FinanceSnapshotRead(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    scope: str
    scope_id: int
    name: str
    billable_hours: Hours
    total_hours: Hours
    labor_cost: Money
    external_cost: Money
    total_cost: Money
    budget_amount: Money
    profit: Money
    profit_pct: Money
    daily_data: list[DailyFinanceRead]

    @classmethod
    def from_snapshot(cls, snapshot: FinanceSnapshot) -> "FinanceSnapshotRead":
        return cls(
            scope=snapshot.scope,
            scope_id=snapshot.scope_id,
            name=snapshot.name,
            billable_hours=snapshot.billable_hours,
            total_hours=snapshot.total_hours,
            labor_cost=snapshot.labor_cost,
            external_cost=snapshot.external_cost,
            total_cost=snapshot.total_cost,
            budget_amount=snapshot.budget_amount,
            profit=snapshot.profit,
            profit_pct=snapshot.profit_pct,
            daily_data=[
                DailyFinanceRead(
                    day=row.day,
                    hours=row.hours,
                    labor_cost=row.labor_cost,
                    external_cost=row.external_cost,
                    total_revenue=row.total_revenue,
                )
                for row in snapshot.daily_data
            ],
        )


class TimeEntryResult(BaseModel):
    time_entry: TimeEntryRead
    rate_source: RateSource
    rate: RateRead
    allocation: AllocationRead | None = None
    finance_snapshot: FinanceSnapshotRead | None = None


class CostItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    task_id: int | None
    name: str
    category: str
    amount: Money
    is_billable: bool
    cost_date: date


class TimerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    task_id: int
    started_at: datetime
    stopped_at: datetime | None
    is_extra: bool
    description: str
    elapsed_seconds: int | None = None


class TimerStopRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timer_id: int
    duration_seconds: int
    hours: Hours
    amount: Money
    rate_source: RateSource | None
    time_entry_id: int | None
    is_extra: bool
    already_stopped: bool


class RecalculateRead(BaseModel):
    recalculated: int


class InvoiceAction(BaseModel):
    type: InvoiceTarget
    id: int


class InvoiceActionRead(BaseModel):
    type: InvoiceTarget
    id: int
    tasks_moved: int


class InvoiceLineRead(BaseModel):
    task_id: int
    title: str
    project_id: int | None
    labor_cost: Money
    external_cost: Money
    fixed_budget: Money
    total: Money
    invoiced_at: datetime | None = None

    @classmethod
    def from_line(cls, line: InvoiceLine) -> "InvoiceLineRead":
        return cls(
            task_id=line.task_id,
            title=line.title,
            project_id=line.project_id,
            labor_cost=line.labor_cost,
            external_cost=line.external_cost,
            fixed_budget=line.fixed_budget,
            total=line.total,
            invoiced_at=line.invoiced_at,
        )


class InvoiceGroupRead(BaseModel):
    project_id: int
    name: str
    labor_cost: Money
    external_cost: Money
    fixed_budget: Money
    total: Money
    task_count: int
    invoiced_at: datetime | None = None
    tasks: list[InvoiceLineRead]

    @classmethod
    def from_group(cls, group: InvoiceGroup) -> "InvoiceGroupRead":
        return cls(
            project_id=group.project_id,
            name=group.name,
            labor_cost=group.labor_cost,
            external_cost=group.external_cost,
            fixed_budget=group.fixed_budget,
            total=group.total,
            task_count=group.task_count,
            invoiced_at=group.invoiced_at,
            tasks=[InvoiceLineRead.from_line(line) for line in group.lines],
        )


class InvoiceBoardRead(BaseModel):
    projects: list[InvoiceGroupRead]
    tasks: list[InvoiceLineRead]

    @classmethod
    def from_board(cls, board: InvoiceBoard) -> "InvoiceBoardRead":
        return cls(
            projects=[InvoiceGroupRead.from_group(group) for group in board.projects],
            tasks=[InvoiceLineRead.from_line(line) for line in board.tasks],
        )
