"""Tests for the schedule service."""

from datetime import datetime, timedelta

import pytest

from api.schemas.schedule import ScheduleCreate
from conftest import FakeFetcher, FakeProcessor
from core.constants import ExecutionStatus, ScheduleType
from core.exceptions import NotFoundError, ScheduleConflictError, ScheduleValidationError
from core.utils import utcnow_naive
from services.execution_runner import ExecutionRunner
from services.execution_tracker import ExecutionTracker
from services.schedule_service import ScheduleService

NOW = datetime(2024, 1, 1, 10, 0, 0)


def recurring(**overrides) -> dict:
    values = dict(
        user_id="user-1",
        email_account_id="account-1",
        name="Every morning",
        schedule_type="RECURRING",
        cron_expression="0 6 * * *",
        timezone="UTC",
        email_type_priorities={"INVOICE": "HIGH"},
    )
    values.update(overrides)
    return values


@pytest.mark.integration
class TestScheduleCrud:

    async def test_create_recurring(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(), now=NOW)

        assert schedule.id is not None
        assert schedule.schedule_type == ScheduleType.RECURRING.value
        assert schedule.next_execution_at == datetime(2024, 1, 2, 6, 0)
        assert schedule.created_at == NOW
        assert schedule.email_type_priorities == {"INVOICE": "HIGH"}
        assert schedule.total_executions == 0

    async def test_create_date_range_is_due_now(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(
            recurring(
                schedule_type="DATE_RANGE",
                cron_expression=None,
                date_range_from=NOW - timedelta(days=7),
                date_range_to=NOW,
            ),
            now=NOW,
        )
        assert schedule.next_execution_at == NOW

    async def test_create_specific_dates_stores_iso_strings(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(
            recurring(
                schedule_type="SPECIFIC_DATES",
                cron_expression=None,
                specific_dates=["2024-03-01T09:00:00Z", "2024-02-01T09:00:00+01:00"],
            ),
            now=NOW,
        )

        assert schedule.specific_dates == ["2024-02-01T08:00:00Z", "2024-03-01T09:00:00Z"]
        assert schedule.next_execution_at == datetime(2024, 2, 1, 8, 0)
        assert schedule.parsed_specific_dates[1] == datetime(2024, 3, 1, 9, 0)

    async def test_create_invalid_raises(self, db_session):
        svc = ScheduleService(db_session)
        with pytest.raises(ScheduleValidationError) as exc_info:
            await svc.create_schedule(recurring(cron_expression="whenever"), now=NOW)
        assert exc_info.value.status_code == 422
        assert exc_info.value.errors

        schedules = await svc.list_user_schedules("user-1")
        assert list(schedules) == []

    async def test_create_conflict_raises(self, db_session):
        svc = ScheduleService(db_session)
        await svc.create_schedule(recurring(name="First"), now=NOW)

        with pytest.raises(ScheduleConflictError) as exc_info:
            await svc.create_schedule(recurring(name="Second"), now=NOW)

        assert exc_info.value.status_code == 409
        assert exc_info.value.conflicts[0].conflicting_schedules == ["First"]

    async def test_get_missing_raises(self, db_session):
        with pytest.raises(NotFoundError):
            await ScheduleService(db_session).get_schedule("nope")

    async def test_update_timing_recomputes_next_run(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(), now=NOW)

        updated = await svc.update_schedule(
            schedule.id, {"cron_expression": "30 11 * * *"}, now=NOW
        )

        assert updated.cron_expression == "30 11 * * *"
        assert updated.next_execution_at == datetime(2024, 1, 1, 11, 30)

    async def test_update_name_keeps_next_run(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(), now=NOW)
        before = schedule.next_execution_at

        updated = await svc.update_schedule(
            schedule.id, {"name": "Renamed"}, now=NOW + timedelta(days=3)
        )

        assert updated.name == "Renamed"
        assert updated.next_execution_at == before

    async def test_update_invalid_keeps_record(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(), now=NOW)

        with pytest.raises(ScheduleValidationError):
            await svc.update_schedule(schedule.id, {"timezone": "Not/AZone"}, now=NOW)

        assert (await svc.get_schedule(schedule.id)).timezone == "UTC"

    async def test_update_explicit_nulls_leave_required_columns(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(description="Morning run"), now=NOW)

        updated = await svc.update_schedule(
            schedule.id,
            {"name": None, "timezone": None, "batch_size": None, "description": None},
            now=NOW,
        )

        assert updated.name == schedule.name
        assert updated.timezone == "UTC"
        assert updated.batch_size == 5
        assert updated.description is None

    async def test_update_conflict_with_other_schedule(self, db_session):
        svc = ScheduleService(db_session)
        await svc.create_schedule(recurring(name="Six"), now=NOW)
        other = await svc.create_schedule(
            recurring(name="Seven", cron_expression="0 7 * * *"), now=NOW
        )

        with pytest.raises(ScheduleConflictError):
            await svc.update_schedule(other.id, {"cron_expression": "0 6 * * *"}, now=NOW)

    async def test_update_missing_raises(self, db_session):
        with pytest.raises(NotFoundError):
            await ScheduleService(db_session).update_schedule("nope", {"name": "x"})

    async def test_delete_removes_executions(self, db_session, session_factory):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(), now=NOW)
        await db_session.commit()
        tracker = ExecutionTracker(session_factory)
        execution = await tracker.create_execution(schedule.id)

        await svc.delete_schedule(schedule.id)
        await db_session.commit()

        assert not await svc.exists(schedule.id)
        assert await tracker.get_execution(execution.id) is None

    async def test_list_by_user_and_account(self, db_session):
        svc = ScheduleService(db_session)
        await svc.create_schedule(recurring(name="A"), now=NOW)
        await svc.create_schedule(
            recurring(name="B", email_account_id="account-2"), now=NOW
        )
        await svc.create_schedule(recurring(name="C", user_id="user-2"), now=NOW)

        assert {s.name for s in await svc.list_user_schedules("user-1")} == {"A", "B"}
        assert {s.name for s in await svc.list_account_schedules("account-1")} == {"A", "C"}


@pytest.mark.integration
class TestDefaultSchedule:

    async def test_creates_disabled_initial_schedule(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_default_schedule_for_account("user-1", "account-1", now=NOW)

        assert schedule.name == "Initial"
        assert schedule.is_default is True
        assert schedule.is_enabled is False
        assert schedule.schedule_type == ScheduleType.DATE_RANGE.value
        assert schedule.date_range_from == NOW - timedelta(days=30)
        assert schedule.date_range_to == NOW
        assert schedule.email_type_priorities == {
            "APPOINTMENT": "HIGH",
            "INVOICE": "HIGH",
            "WORK": "MEDIUM",
        }

    async def test_is_idempotent(self, db_session):
        svc = ScheduleService(db_session)
        first = await svc.create_default_schedule_for_account("user-1", "account-1", now=NOW)
        second = await svc.create_default_schedule_for_account("user-1", "account-1", now=NOW)

        assert first.id == second.id
        assert len(await svc.list_account_schedules("account-1")) == 1


@pytest.mark.integration
class TestExecution:

    async def test_execute_now(self, db_session, session_factory):
        processor = FakeProcessor()
        runner = ExecutionRunner(session_factory, FakeFetcher(), processor)
        svc = ScheduleService(db_session, runner=runner)
        schedule = await svc.create_schedule(recurring())
        await db_session.commit()

        execution = await svc.execute_now(schedule.id)

        assert execution.status == ExecutionStatus.COMPLETED.value
        assert len(processor.calls) == 1
        refreshed = await svc.get_schedule(schedule.id)
        assert refreshed.successful_executions == 1

    async def test_execute_now_without_runner(self, db_session):
        from core.exceptions import ScheduleEngineError

        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring())
        with pytest.raises(ScheduleEngineError):
            await svc.execute_now(schedule.id)

    async def test_status_without_executions(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(), now=NOW)

        status = await svc.get_execution_status(schedule.id)

        assert status.id == schedule.id
        assert status.status == ExecutionStatus.CANCELLED.value
        assert status.progress.completion_percentage == 0
        assert status.timing.started_at == NOW

    async def test_status_of_latest_execution(self, db_session, session_factory):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring())
        await db_session.commit()
        tracker = ExecutionTracker(session_factory)
        execution = await tracker.create_execution(schedule.id)
        await tracker.update_progress(
            execution.id, {"total_emails_count": 8, "processed_emails_count": 2}
        )

        status = await svc.get_execution_status(schedule.id)

        assert status.id == execution.id
        assert status.status == ExecutionStatus.RUNNING.value
        assert status.progress.total_emails == 8
        assert status.progress.completion_percentage == 25
        assert status.error is None

    async def test_status_of_failed_execution(self, db_session, session_factory):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring())
        await db_session.commit()
        tracker = ExecutionTracker(session_factory)
        execution = await tracker.create_execution(schedule.id)
        await tracker.fail_execution(execution.id, TimeoutError("fetch timed out"))

        status = await svc.get_execution_status(schedule.id)

        assert status.status == ExecutionStatus.FAILED.value
        assert status.error.message == "fetch timed out"
        assert status.error.details["type"] == "TimeoutError"


@pytest.mark.integration
class TestValidationAndConflicts:

    async def test_validate_does_not_persist(self, db_session):
        svc = ScheduleService(db_session)
        result = await svc.validate(recurring(), now=NOW)

        assert result.valid
        assert list(await svc.list_user_schedules("user-1")) == []

    async def test_validate_reports_errors(self, db_session):
        result = await ScheduleService(db_session).validate(
            ScheduleCreate(**recurring(batch_size=0)), now=NOW
        )
        assert not result.valid

    async def test_check_conflicts(self, db_session):
        svc = ScheduleService(db_session)
        await svc.create_schedule(recurring(name="Cron one"), now=NOW)
        await svc.create_schedule(
            recurring(
                name="Dates one",
                schedule_type="SPECIFIC_DATES",
                cron_expression=None,
                specific_dates=[datetime(2024, 2, 1, 9, 0)],
            ),
            now=NOW,
        )

        conflicts = await svc.check_conflicts(
            cron_expression="0 6 * * *",
            specific_dates=[datetime(2024, 2, 1, 9, 0)],
            now=NOW,
        )

        assert [c.conflict_type for c in conflicts] == [
            ScheduleType.RECURRING,
            ScheduleType.SPECIFIC_DATES,
        ]


@pytest.mark.integration
class TestCalendarAndBulk:

    async def test_calendar(self, db_session, make_schedule):
        await make_schedule(name="Daily", cron_expression="0 6 * * *")
        await make_schedule(name="Broken", cron_expression="not a cron")
        await make_schedule(name="Off", is_enabled=False)

        entries = await ScheduleService(db_session).get_calendar(count=3, now=NOW)

        by_name = {e.schedule_name: e for e in entries}
        assert set(by_name) == {"Daily", "Broken"}
        assert by_name["Daily"].next_executions == [
            datetime(2024, 1, 2, 6, 0),
            datetime(2024, 1, 3, 6, 0),
            datetime(2024, 1, 4, 6, 0),
        ]
        assert by_name["Daily"].error is None
        assert by_name["Broken"].next_executions == []
        assert by_name["Broken"].error

    async def test_calendar_default_count(self, db_session, make_schedule):
        await make_schedule()
        entries = await ScheduleService(db_session).get_calendar(now=NOW)
        assert len(entries[0].next_executions) == 10

    async def test_bulk_enable_recomputes_next_run(self, db_session):
        svc = ScheduleService(db_session)
        schedule = await svc.create_schedule(recurring(is_enabled=False), now=NOW)

        result = await svc.bulk_set_enabled([schedule.id, "missing"], True, now=NOW)

        assert result.enabled is True
        assert result.updated == [schedule.id]
        assert result.not_found == ["missing"]
        refreshed = await svc.get_schedule(schedule.id)
        assert refreshed.is_enabled is True
        assert refreshed.next_execution_at == datetime(2024, 1, 2, 6, 0)

    async def test_bulk_disable(self, db_session):
        svc = ScheduleService(db_session)
        a = await svc.create_schedule(recurring(name="A"), now=NOW)
        b = await svc.create_schedule(recurring(name="B", cron_expression="0 7 * * *"), now=NOW)

        result = await svc.bulk_set_enabled([a.id, b.id], False, now=NOW)

        assert sorted(result.updated) == sorted([a.id, b.id])
        assert all(not s.is_enabled for s in await svc.list_user_schedules("user-1"))


@pytest.mark.integration
class TestAnalytics:

    async def test_empty(self, db_session):
        analytics = await ScheduleService(db_session).get_analytics("nobody")
        assert analytics.total_schedules == 0
        assert analytics.recent_executions == []

    async def test_aggregates(self, db_session, session_factory, make_schedule):
        schedule = await make_schedule(name="Inbox")
        await make_schedule(name="Paused", is_enabled=False)
        tracker = ExecutionTracker(session_factory)

        for processed in (4, 6):
            execution = await tracker.create_execution(schedule.id)
            await tracker.complete_execution(
                execution.id, {"processed": processed, "processing_duration_ms": 100}
            )
        failed = await tracker.create_execution(schedule.id)
        await tracker.fail_execution(failed.id, RuntimeError("boom"))

        analytics = await ScheduleService(db_session).get_analytics(
            "user-1", now=utcnow_naive()
        )

        assert analytics.total_schedules == 2
        assert analytics.active_schedules == 1
        assert analytics.total_executions == 3
        assert analytics.successful_executions == 2
        assert analytics.failed_executions == 1
        assert analytics.emails_processed_today == 10
        assert analytics.emails_processed_this_month == 10
        assert len(analytics.recent_executions) == 3
        assert analytics.recent_executions[0].id == failed.id
        assert analytics.recent_executions[0].schedule_name == "Inbox"
