"""Hourly rate resolution.

A rate is resolved by walking an ordered chain of strategies; the first one
that produces a rate wins and its source is reported with the rate:

1. project member override for (user, project)      -> project_member
2. project default rate (`hourly_rate_cents`)         -> project
3. rate rules valid today for the user or project     -> rates_table
4. task override, only for tasks without a project    -> task
5. user's account default, only without a project     -> user_settings
6. nothing found                                      -> fallback (rate 0)

Resolution never raises. Each lookup runs inside a SAVEPOINT; a failing one is
rolled back to it, logged and treated as "no rate from this step", so the
caller's transaction stays usable and billing is never blocked on an
unresolved rate.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agency_billing.models import Project, ProjectMember, RateRule, Task, UserSettings
from agency_billing.money import ZERO, cents_to_amount, to_decimal

logger = logging.getLogger(__name__)


class RateSource(str, Enum):
    PROJECT_MEMBER = "project_member"
    PROJECT = "project"
    RATES_TABLE = "rates_table"
    TASK = "task"
    USER_SETTINGS = "user_settings"
    FALLBACK = "fallback"
    # Not produced by the chain: explicit caller rate, or an entry's existing snapshot.
    MANUAL = "manual"
    STORED = "stored"


@dataclass(frozen=True)
class ResolvedRate:
    hourly_rate: Decimal
    source: RateSource
    rate_id: int | None = None
    rate_name: str | None = None


@dataclass(frozen=True)
class RateContext:
    """The unit of work a rate is resolved for.

    `has_project` is None when unknown; it is then derived from `project_id`,
    or from the task when only `task_id` is given.
    """

    project_id: int | None = None
    task_id: int | None = None
    has_project: bool | None = None

    @classmethod
    def for_task(cls, task: Task) -> RateContext:
        return cls(project_id=task.project_id, task_id=task.id, has_project=task.project_id is not None)

    @property
    def in_project(self) -> bool:
        if self.has_project is not None:
            return self.has_project
        return self.project_id is not None


class RateStrategy:
    """One step of the resolution chain."""

    source: RateSource

    def try_resolve(self, db: Session, user_id: int, context: RateContext, today: date) -> ResolvedRate | None:
        raise NotImplementedError


class ProjectMemberRate(RateStrategy):
    source = RateSource.PROJECT_MEMBER

    def try_resolve(self, db, user_id, context, today):
        if not context.in_project or context.project_id is None:
            return None
        rate = db.scalar(
            select(ProjectMember.hourly_rate).where(
                ProjectMember.project_id == context.project_id,
                ProjectMember.user_id == user_id,
            )
        )
        if rate is None:
            return None
        return ResolvedRate(hourly_rate=to_decimal(rate), source=self.source)


class ProjectDefaultRate(RateStrategy):
    source = RateSource.PROJECT

    def try_resolve(self, db, user_id, context, today):
        if not context.in_project or context.project_id is None:
            return None
        cents = db.scalar(select(Project.hourly_rate_cents).where(Project.id == context.project_id))
        if cents is None:
            return None
        return ResolvedRate(hourly_rate=cents_to_amount(cents), source=self.source)


class RateTableRate(RateStrategy):
    """Rules scoped to the user or the project and valid on `today`.

    Candidates are ordered by `is_default` then `valid_from`, both descending;
    the first rule that names the acting user wins over project-only rules.
    """

    source = RateSource.RATES_TABLE

    def try_resolve(self, db, user_id, context, today):
        scopes = [RateRule.user_id == user_id]
        if context.in_project and context.project_id is not None:
            scopes.append(RateRule.project_id == context.project_id)
        candidates = db.scalars(
            select(RateRule)
            .where(
                or_(*scopes),
                RateRule.valid_from <= today,
                or_(RateRule.valid_to.is_(None), RateRule.valid_to >= today),
            )
            .order_by(RateRule.is_default.desc(), RateRule.valid_from.desc(), RateRule.id.desc())
        ).all()
        if not candidates:
            return None
        rule = next((candidate for candidate in candidates if candidate.user_id == user_id), candidates[0])
        return ResolvedRate(
            hourly_rate=to_decimal(rule.hourly_rate),
            source=self.source,
            rate_id=rule.id,
            rate_name=rule.name,
        )


class TaskOverrideRate(RateStrategy):
    source = RateSource.TASK

    def try_resolve(self, db, user_id, context, today):
        if context.in_project or context.task_id is None:
            return None
        cents = db.scalar(select(Task.hourly_rate_cents).where(Task.id == context.task_id))
        # A zero override means "not set" for standalone tasks.
        if not cents or cents <= 0:
            return None
        return ResolvedRate(hourly_rate=cents_to_amount(cents), source=self.source)


class UserSettingsRate(RateStrategy):
    source = RateSource.USER_SETTINGS

    def try_resolve(self, db, user_id, context, today):
        if context.in_project:
            return None
        rate = db.scalar(select(UserSettings.default_hourly_rate).where(UserSettings.user_id == user_id))
        if rate is None:
            return None
        return ResolvedRate(hourly_rate=to_decimal(rate), source=self.source)


DEFAULT_CHAIN: tuple[RateStrategy, ...] = (
    ProjectMemberRate(),
    ProjectDefaultRate(),
    RateTableRate(),
    TaskOverrideRate(),
    UserSettingsRate(),
)

FALLBACK_RATE = ResolvedRate(hourly_rate=ZERO, source=RateSource.FALLBACK)


class RateResolver:
    def __init__(
        self,
        strategies: Sequence[RateStrategy] = DEFAULT_CHAIN,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.strategies = tuple(strategies)
        self.today = today

    def resolve(self, db: Session, user_id: int, context: RateContext) -> ResolvedRate:
        """Return the applicable hourly rate and the step that produced it."""
        context = self._complete_context(db, context)
        today = self.today()
        for strategy in self.strategies:
            try:
                with db.begin_nested():
                    resolved = strategy.try_resolve(db, user_id, context, today)
            except SQLAlchemyError:
                logger.warning(
                    "Rate lookup %s failed for user=%s context=%s; trying next source.",
                    strategy.source.value,
                    user_id,
                    context,
                    exc_info=True,
                )
                continue
            if resolved is not None:
                logger.debug(
                    "Resolved rate %s from %s for user=%s context=%s",
                    resolved.hourly_rate,
                    resolved.source.value,
                    user_id,
                    context,
                )
                return resolved
        logger.debug("No rate source matched for user=%s context=%s; using fallback.", user_id, context)
        return FALLBACK_RATE

    @staticmethod
    def _complete_context(db: Session, context: RateContext) -> RateContext:
        """Fill in the project of a task-only context."""
        if context.task_id is None or context.project_id is not None or context.has_project is False:
            return context
        try:
            with db.begin_nested():
                project_id = db.scalar(select(Task.project_id).where(Task.id == context.task_id))
        except SQLAlchemyError:
            logger.warning("Could not load project for task=%s; resolving without it.", context.task_id, exc_info=True)
            return context
        return replace(context, project_id=project_id, has_project=project_id is not None)


default_resolver = RateResolver()


def resolve_hourly_rate(db: Session, user_id: int, context: RateContext) -> ResolvedRate:
    return default_resolver.resolve(db, user_id, context)
