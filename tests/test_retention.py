"""Tests for retention sweeps, pending purges and the daily runner."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from kitagov.config import Environment, Settings
from kitagov.core.errors import ForbiddenError
from kitagov.lifecycle import (
    EntityType,
    RetentionJobRunner,
    RetentionScheduler,
    SoftDeleteCascadeEngine,
    next_run_at,
)
from kitagov.models import ActivityLog, Child, Group, Institution, PersonalTask, User, UserRole
from kitagov.testing.clock import FrozenClock


@pytest.fixture
def scheduler(db_session, clock, settings, audit):
    return RetentionScheduler(db_session, clock=clock, settings=settings, audit=audit)


@pytest.fixture
def cascade(db_session, clock, settings, audit):
    return SoftDeleteCascadeEngine(db_session, clock=clock, settings=settings, audit=audit)


async def _count(db_session, model) -> int:
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


class TestRunCleanup:
    """One sweep purges everything past its window, and only that."""

    @pytest.mark.asyncio
    async def test_nothing_to_purge_is_a_normal_outcome(self, scheduler, audit, parent):
        result = await scheduler.run_cleanup()

        assert result.total == 0
        assert await audit.list_entries(action="GDPR_CLEANUP_COMPLETED") == []

    @pytest.mark.asyncio
    async def test_purges_only_expired_rows(
        self, scheduler, cascade, db_session, make_user, make_group, institution, clock
    ):
        old_user = await make_user(UserRole.PARENT, institution)
        old_group = await make_group(institution, "Alt")
        await cascade.soft_delete(EntityType.USER, old_user.id, None)
        await cascade.soft_delete(EntityType.GROUP, old_group.id, None)

        clock.advance(days=20)
        fresh_user = await make_user(UserRole.PARENT, institution)
        await cascade.soft_delete(EntityType.USER, fresh_user.id, None)

        clock.advance(days=11)
        result = await scheduler.run_cleanup()

        assert result.purged_counts["USER"] == 1
        assert result.purged_counts["GROUP"] == 1
        assert result.total == 2
        assert await db_session.get(User, fresh_user.id) is not None

    @pytest.mark.asyncio
    async def test_second_run_purges_nothing(
        self, scheduler, cascade, db_session, educator, clock
    ):
        db_session.add(PersonalTask(user_id=educator.id, title="Alt"))
        await db_session.flush()
        await cascade.soft_delete(EntityType.USER, educator.id, None)
        clock.advance(days=31)

        first = await scheduler.run_cleanup()
        second = await scheduler.run_cleanup()

        assert first.purged_counts["USER"] == 1
        assert first.purged_counts["PERSONAL_TASK"] == 1
        assert second.total == 0
        assert await _count(db_session, PersonalTask) == 0

    @pytest.mark.asyncio
    async def test_completion_is_audited_with_count(
        self, scheduler, cascade, audit, parent, clock
    ):
        await cascade.soft_delete(EntityType.USER, parent.id, None)
        clock.advance(days=31)

        await scheduler.run_cleanup()

        entries = await audit.list_entries(action="GDPR_CLEANUP_COMPLETED")
        assert len(entries) == 1
        assert entries[0].entity == "System"
        assert entries[0].entity_id == "cleanup"
        assert entries[0].details["message"] == "Permanently deleted 1 expired records"

    @pytest.mark.asyncio
    async def test_audit_trail_is_never_purged(self, scheduler, cascade, db_session, parent, clock):
        await cascade.soft_delete(EntityType.USER, parent.id, None)
        clock.advance(days=5000)

        await scheduler.run_cleanup()

        actions = (await db_session.execute(select(ActivityLog.action))).scalars().all()
        assert "GDPR_DELETE_USER" in actions
        assert "GDPR_USER_PURGED" in actions

    @pytest.mark.asyncio
    async def test_institution_is_purged_after_its_members(
        self, scheduler, cascade, db_session, make_group, make_child, institution, admin,
        super_admin, clock,
    ):
        group = await make_group(institution)
        await make_child(institution, group=group)
        await cascade.soft_delete(
            EntityType.INSTITUTION, institution.id, super_admin.id, confirm_cascade=True
        )

        clock.advance(days=400)
        first = await scheduler.run_cleanup()
        assert first.purged_counts["INSTITUTION"] == 0  # child still within 3 years
        assert first.purged_counts["USER"] == 1
        assert first.purged_counts["GROUP"] == 1

        clock.advance(days=800)
        second = await scheduler.run_cleanup()
        assert second.purged_counts["CHILD"] == 1
        assert second.purged_counts["INSTITUTION"] == 1
        assert await _count(db_session, Institution) == 0
        assert await _count(db_session, Group) == 0
        assert await _count(db_session, Child) == 0

    @pytest.mark.asyncio
    async def test_run_cleanup_as_requires_super_admin(
        self, scheduler, admin, super_admin, principal_for
    ):
        with pytest.raises(ForbiddenError):
            await scheduler.run_cleanup_as(principal_for(admin))

        result = await scheduler.run_cleanup_as(principal_for(super_admin))
        assert result.total == 0


class TestPendingPurges:
    @pytest.mark.asyncio
    async def test_lists_due_dates_soonest_first(
        self, scheduler, cascade, make_child, institution, parent, clock
    ):
        child = await make_child(institution)
        await cascade.soft_delete(EntityType.CHILD, child.id, None)
        await cascade.soft_delete(EntityType.USER, parent.id, None)
        clock.advance(days=10)

        pending = await scheduler.list_pending_purges()

        assert [p.entity_type for p in pending] == [EntityType.USER, EntityType.CHILD]
        assert pending[0].days_until_purge == 20
        assert pending[1].days_until_purge == 1085
        assert pending[0].to_dict()["institution_id"] == str(institution.id)

    @pytest.mark.asyncio
    async def test_overdue_rows_report_non_positive_days(
        self, scheduler, cascade, parent, clock
    ):
        await cascade.soft_delete(EntityType.USER, parent.id, None)
        clock.advance(days=45)

        pending = await scheduler.list_pending_purges()

        assert pending[0].days_until_purge == -15


class TestNextRunAt:
    """Daily sweep at 02:00 Europe/Berlin."""

    def test_winter_time(self):
        now = datetime(2026, 1, 15, 9, 0, tzinfo=UTC)  # 10:00 CET
        assert next_run_at(now, hour=2, timezone="Europe/Berlin") == datetime(
            2026, 1, 16, 1, 0, tzinfo=UTC
        )

    def test_summer_time(self):
        now = datetime(2026, 7, 1, 10, 0, tzinfo=UTC)  # 12:00 CEST
        assert next_run_at(now, hour=2, timezone="Europe/Berlin") == datetime(
            2026, 7, 2, 0, 0, tzinfo=UTC
        )

    def test_later_the_same_night(self):
        now = datetime(2026, 1, 15, 0, 30, tzinfo=UTC)  # 01:30 CET
        assert next_run_at(now, hour=2, timezone="Europe/Berlin") == datetime(
            2026, 1, 15, 1, 0, tzinfo=UTC
        )

    def test_exactly_at_run_time_moves_to_next_day(self):
        now = datetime(2026, 1, 15, 1, 0, tzinfo=UTC)  # 02:00 CET
        assert next_run_at(now, hour=2, timezone="Europe/Berlin") == datetime(
            2026, 1, 16, 1, 0, tzinfo=UTC
        )

    def test_scheduler_uses_settings(self, scheduler, clock):
        assert scheduler.next_run_at() == datetime(2026, 1, 16, 1, 0, tzinfo=UTC)


class TestRetentionJobRunner:
    """Background runner; each run owns its session scope."""

    @pytest.fixture
    def runner_settings(self) -> Settings:
        return Settings(
            environment=Environment.TEST,
            database_url="sqlite+aiosqlite:///:memory:",
            retention_scheduler_enabled=True,
        )

    @pytest.mark.asyncio
    async def test_run_once_commits_the_purge(self, session_factory, settings):
        clock = FrozenClock()
        async with session_factory() as db:
            user = User(email="weg@kita.dev", name="Weg", role=UserRole.PARENT)
            db.add(user)
            await db.flush()
            await SoftDeleteCascadeEngine(db, clock=clock, settings=settings).soft_delete(
                EntityType.USER, user.id, None
            )
            await db.commit()
            user_id = user.id

        clock.advance(days=31)
        runner = RetentionJobRunner(session_factory, clock=clock, settings=settings)
        result = await runner.run_once()

        assert result.purged_counts["USER"] == 1
        assert runner.last_result is result
        async with session_factory() as db:
            assert await db.get(User, user_id) is None

    @pytest.mark.asyncio
    async def test_loop_survives_a_failed_run(self, session_factory, runner_settings):
        runner = RetentionJobRunner(session_factory, settings=runner_settings)
        runner._sleep_until_next_run = AsyncMock()
        runner.run_once = AsyncMock(
            side_effect=[RuntimeError("database unavailable"), asyncio.CancelledError()]
        )

        await runner._run_forever()

        assert runner.run_once.await_count == 2

    @pytest.mark.asyncio
    async def test_sleeps_until_next_local_run(self, session_factory, runner_settings):
        runner = RetentionJobRunner(
            session_factory, clock=FrozenClock(), settings=runner_settings
        )
        with patch("kitagov.lifecycle.scheduler.asyncio.sleep", new=AsyncMock()) as sleep:
            await runner._sleep_until_next_run()

        sleep.assert_awaited_once_with(16 * 3600)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, runner_settings):
        runner = RetentionJobRunner(session_factory, settings=runner_settings)
        started = asyncio.Event()

        async def _wait_forever():
            started.set()
            await asyncio.Event().wait()

        runner._sleep_until_next_run = _wait_forever
        runner.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        assert runner._task is not None and not runner._task.done()

        await runner.stop()
        assert runner._task is None

    @pytest.mark.asyncio
    async def test_disabled_scheduler_does_not_start(self, session_factory, settings):
        runner = RetentionJobRunner(session_factory, settings=settings)
        runner.start()
        assert runner._task is None
