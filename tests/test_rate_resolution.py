"""Mini-README: Tests for the hourly rate resolution chain.

Each test sets up exactly the rate sources needed to prove which step of the
chain wins and that the winning step is reported alongside the rate.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from agency_billing.models import RateRule
from agency_billing.rates import (
    ProjectDefaultRate,
    RateContext,
    RateResolver,
    RateSource,
    RateStrategy,
)


def test_project_member_rate_wins_over_project_default(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    seed.member(project, user, "85.00")
    task = seed.task(project)

    rate = resolver.resolve(db, user.id, RateContext.for_task(task))

    assert rate.hourly_rate == Decimal("85.00")
    assert rate.source is RateSource.PROJECT_MEMBER


def test_member_without_override_falls_through_to_project_default(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    seed.member(project, user, None)

    rate = resolver.resolve(db, user.id, RateContext(project_id=project.id))

    assert rate.hourly_rate == Decimal("60")
    assert rate.source is RateSource.PROJECT


def test_rates_table_used_when_project_has_no_rate(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project()
    rule = seed.rate_rule("72.50", user=user, name="Senior")

    rate = resolver.resolve(db, user.id, RateContext(project_id=project.id))

    assert rate.hourly_rate == Decimal("72.50")
    assert rate.source is RateSource.RATES_TABLE
    assert rate.rate_id == rule.id
    assert rate.rate_name == "Senior"


def test_expired_and_future_rules_are_ignored(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project()
    seed.rate_rule("40", user=user, valid_from=date(2025, 1, 1), valid_to=date(2025, 12, 31))
    seed.rate_rule("45", user=user, valid_from=date(2026, 6, 1))

    rate = resolver.resolve(db, user.id, RateContext(project_id=project.id))

    assert rate.source is RateSource.FALLBACK
    assert rate.hourly_rate == 0


def test_rule_naming_the_user_beats_project_only_rule(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project()
    seed.rate_rule("50", project=project, is_default=True, name="Project default")
    seed.rate_rule("90", user=user, name="Personal")

    rate = resolver.resolve(db, user.id, RateContext(project_id=project.id))

    assert rate.hourly_rate == Decimal("90")
    assert rate.rate_name == "Personal"


def test_default_rule_preferred_among_user_rules(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project()
    seed.rate_rule("55", user=user, valid_from=date(2026, 3, 1), name="Newer")
    seed.rate_rule("65", user=user, valid_from=date(2026, 1, 1), is_default=True, name="Default")

    rate = resolver.resolve(db, user.id, RateContext(project_id=project.id))

    assert rate.rate_name == "Default"


def test_standalone_task_uses_task_override(db, seed, resolver) -> None:
    user = seed.user(default_hourly_rate="30")
    task = seed.task(hourly_rate_cents=5000)

    rate = resolver.resolve(db, user.id, RateContext.for_task(task))

    assert rate.hourly_rate == Decimal("50")
    assert rate.source is RateSource.TASK


def test_zero_task_override_counts_as_unset(db, seed, resolver) -> None:
    user = seed.user(default_hourly_rate="30")
    task = seed.task(hourly_rate_cents=0)

    rate = resolver.resolve(db, user.id, RateContext.for_task(task))

    assert rate.hourly_rate == Decimal("30")
    assert rate.source is RateSource.USER_SETTINGS


def test_user_settings_not_consulted_for_project_tasks(db, seed, resolver) -> None:
    user = seed.user(default_hourly_rate="30")
    project = seed.project()
    task = seed.task(project)

    rate = resolver.resolve(db, user.id, RateContext.for_task(task))

    assert rate.source is RateSource.FALLBACK
    assert rate.hourly_rate == 0


def test_nothing_resolvable_returns_zero_fallback(db, seed, resolver) -> None:
    user = seed.user()
    task = seed.task()

    rate = resolver.resolve(db, user.id, RateContext.for_task(task))

    assert rate.source is RateSource.FALLBACK
    assert rate.hourly_rate == 0


def test_task_only_context_looks_up_the_project(db, seed, resolver) -> None:
    user = seed.user()
    project = seed.project(hourly_rate_cents=4500)
    task = seed.task(project)

    rate = resolver.resolve(db, user.id, RateContext(task_id=task.id))

    assert rate.source is RateSource.PROJECT
    assert rate.hourly_rate == Decimal("45")


def test_failing_lookup_degrades_to_next_step(db, seed, caplog) -> None:
    class BrokenLookup(RateStrategy):
        source = RateSource.PROJECT_MEMBER

        def try_resolve(self, db, user_id, context, today):
            raise SQLAlchemyError("connection reset")

    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    resolver = RateResolver(strategies=(BrokenLookup(), ProjectDefaultRate()), today=lambda: date(2026, 5, 4))

    with caplog.at_level("WARNING", logger="agency_billing.rates"):
        rate = resolver.resolve(db, user.id, RateContext(project_id=project.id))

    assert rate.source is RateSource.PROJECT
    assert "trying next source" in caplog.text


def test_failing_last_lookup_still_returns_fallback(db, seed) -> None:
    class BrokenLookup(RateStrategy):
        source = RateSource.USER_SETTINGS

        def try_resolve(self, db, user_id, context, today):
            raise SQLAlchemyError("table locked")

    user = seed.user()
    resolver = RateResolver(strategies=(BrokenLookup(),))

    rate = resolver.resolve(db, user.id, RateContext(has_project=False))

    assert rate.source is RateSource.FALLBACK
    assert rate.hourly_rate == 0


def test_failed_lookup_is_rolled_back_to_its_savepoint(db, seed, resolver) -> None:
    class HalfWrittenLookup(RateStrategy):
        source = RateSource.PROJECT_MEMBER

        def try_resolve(self, db, user_id, context, today):
            db.add(RateRule(name="Scratch", hourly_rate=Decimal("1"), valid_from=today))
            db.flush()
            raise SQLAlchemyError("deadlock detected")

    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    chain = RateResolver(strategies=(HalfWrittenLookup(), ProjectDefaultRate()), today=lambda: date(2026, 5, 4))

    rate = chain.resolve(db, user.id, RateContext(project_id=project.id))
    project.name = "Website relaunch v2"
    db.commit()

    assert rate.source is RateSource.PROJECT
    assert db.scalar(select(func.count(RateRule.id))) == 0
    db.refresh(project)
    assert project.name == "Website relaunch v2"


def test_failing_project_lookup_keeps_the_session_usable(db, seed, resolver, monkeypatch) -> None:
    user = seed.user()
    project = seed.project(hourly_rate_cents=6000)
    task = seed.task(project)
    real_scalar = db.scalar
    calls = {"count": 0}

    def flaky_scalar(statement, *args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise SQLAlchemyError("server closed the connection")
        return real_scalar(statement, *args, **kwargs)

    monkeypatch.setattr(db, "scalar", flaky_scalar)
    rate = resolver.resolve(db, user.id, RateContext(task_id=task.id))
    monkeypatch.undo()

    assert rate.source is RateSource.FALLBACK
    assert db.scalar(select(func.count(RateRule.id))) == 0
