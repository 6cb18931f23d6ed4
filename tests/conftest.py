"""Mini-README: Shared fixtures for billing tests.

Every test gets a fresh in-memory SQLite database with the full schema and a
`seed` helper that creates a workspace plus whatever users, projects, tasks
and rate rows the scenario needs.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agency_billing.database import Base
from agency_billing.models import (
    CostItem,
    Project,
    ProjectMember,
    RateRule,
    Task,
    TimeEntry,
    User,
    UserSettings,
    Workspace,
)
from agency_billing.rates import RateResolver

TODAY = date(2026, 5, 4)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def resolver() -> RateResolver:
    """Resolver pinned to a fixed date so rate validity windows are deterministic."""
    return RateResolver(today=lambda: TODAY)


class Seed:
    """Small factory for test rows; every row lands in one workspace."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.workspace = self._save(Workspace(name="Acme Studio"))
        self._counter = 0

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, default_hourly_rate: str | None = None, workspace: Workspace | None = None) -> User:
        self._counter += 1
        user = self._save(
            User(
                workspace_id=(workspace or self.workspace).id,
                email=f"user{self._counter}@example.com",
                display_name=f"User {self._counter}",
            )
        )
        if default_hourly_rate is not None:
            self._save(UserSettings(user_id=user.id, default_hourly_rate=Decimal(default_hourly_rate)))
        return user

    def project(self, hourly_rate_cents: int | None = None, name: str = "Website relaunch") -> Project:
        return self._save(Project(workspace_id=self.workspace.id, name=name, hourly_rate_cents=hourly_rate_cents))

    def member(self, project: Project, user: User, hourly_rate: str | None) -> ProjectMember:
        return self._save(
            ProjectMember(
                project_id=project.id,
                user_id=user.id,
                hourly_rate=Decimal(hourly_rate) if hourly_rate is not None else None,
            )
        )

    def task(
        self,
        project: Project | None = None,
        *,
        title: str = "Design review",
        budget_cents: int | None = None,
        estimated_hours: str | None = None,
        hourly_rate_cents: int | None = None,
        due_date: date | None = None,
        status: str = "todo",
        workspace: Workspace | None = None,
    ) -> Task:
        return self._save(
            Task(
                workspace_id=(workspace or self.workspace).id,
                project_id=project.id if project else None,
                title=title,
                budget_cents=budget_cents,
                estimated_hours=Decimal(estimated_hours) if estimated_hours is not None else None,
                hourly_rate_cents=hourly_rate_cents,
                due_date=due_date,
                status=status,
            )
        )

    def rate_rule(
        self,
        hourly_rate: str,
        *,
        user: User | None = None,
        project: Project | None = None,
        valid_from: date = date(2026, 1, 1),
        valid_to: date | None = None,
        is_default: bool = False,
        name: str = "Standard",
    ) -> RateRule:
        return self._save(
            RateRule(
                name=name,
                hourly_rate=Decimal(hourly_rate),
                user_id=user.id if user else None,
                project_id=project.id if project else None,
                valid_from=valid_from,
                valid_to=valid_to,
                is_default=is_default,
            )
        )

    def entry(
        self,
        task: Task,
        user: User,
        *,
        hours: str,
        amount: str,
        hourly_rate: str = "0",
        entry_date: date = TODAY,
        is_billable: bool = True,
    ) -> TimeEntry:
        return self._save(
            TimeEntry(
                workspace_id=self.workspace.id,
                task_id=task.id,
                project_id=task.project_id,
                user_id=user.id,
                entry_date=entry_date,
                hours=Decimal(hours),
                hourly_rate=Decimal(hourly_rate),
                amount=Decimal(amount),
                is_billable=is_billable,
            )
        )

    def cost_item(
        self,
        project: Project,
        amount: str,
        *,
        task: Task | None = None,
        cost_date: date = TODAY,
        is_billable: bool = True,
        name: str = "Stock photos",
    ) -> CostItem:
        return self._save(
            CostItem(
                workspace_id=self.workspace.id,
                project_id=project.id,
                task_id=task.id if task else None,
                name=name,
                amount=Decimal(amount),
                is_billable=is_billable,
                cost_date=cost_date,
            )
        )


@pytest.fixture()
def seed(db) -> Seed:
    return Seed(db)
