"""
Tests for the scheduler and queue adapter.
Tests entry registration, precedence, removal, the worker and the Redis backend.
"""

import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from orbit.models import RunResult, Schedule
from orbit.scheduler import (
    RecurringJob, RedisJobQueue, ScheduleWorker, job_name, make_agent_job_handler,
)


class TestAgentScheduler:
    """Test schedule -> recurring entry mapping."""

    @pytest.mark.asyncio
    async def test_interval_entry(self, scheduler, queue):
        job = await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 5})

        assert job.name == "agent-a1"
        assert job.data == {"agentId": "a1", "ownerId": "user-1"}
        assert job.repeat == {"every": 300000}
        assert await queue.get_repeatable_jobs() == [job]

    @pytest.mark.asyncio
    async def test_interval_wins_over_cron(self, scheduler):
        job = await scheduler.schedule("a1", "user-1", Schedule(enabled=True, interval_minutes=10, cron="0 9 * * *"))
        assert job.repeat == {"every": 600000}

    @pytest.mark.asyncio
    async def test_cron_entry(self, scheduler):
        job = await scheduler.schedule("a1", "user-1", {"enabled": True, "cron": "0 9 * * 1"})
        assert job.repeat == {"cron": "0 9 * * 1"}

    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.schedule("a1", "user-1", {"enabled": True, "cron": "every tuesday"})

    @pytest.mark.asyncio
    async def test_disabled_is_noop(self, scheduler, queue):
        assert await scheduler.schedule("a1", "user-1", {"enabled": False, "intervalMinutes": 5}) is None
        assert await scheduler.schedule("a1", "user-1", {"enabled": True}) is None
        assert await queue.get_repeatable_jobs() == []

    @pytest.mark.asyncio
    async def test_unschedule_removes_every_entry(self, scheduler, queue):
        """Two entries for one agent are both removed."""
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 5})
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 60})
        await scheduler.schedule("a12", "user-1", {"enabled": True, "intervalMinutes": 5})

        assert await scheduler.unschedule("a1") == 2
        remaining = await queue.get_repeatable_jobs()
        assert [job.name for job in remaining] == ["agent-a12"]

    @pytest.mark.asyncio
    async def test_reschedule_keeps_one_entry(self, scheduler):
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 5})
        await scheduler.reschedule("a1", "user-1", {"enabled": True, "cron": "*/15 * * * *"})

        jobs = await scheduler.list_for("a1")
        assert [job.repeat for job in jobs] == [{"cron": "*/15 * * * *"}]

    @pytest.mark.asyncio
    async def test_reschedule_to_disabled_clears(self, scheduler):
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 5})
        await scheduler.reschedule("a1", "user-1", {"enabled": False})
        assert await scheduler.list_for("a1") == []


class TestRecurringJob:
    """Test next-run computation."""

    base = datetime(2024, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_every(self):
        job = RecurringJob(job_name("a1"), {}, {"every": 60000})
        assert job.next_run_after(self.base) == self.base + timedelta(minutes=1)
        assert job.key == "agent-a1::60000"

    def test_cron(self):
        job = RecurringJob(job_name("a1"), {}, {"cron": "0 9 * * *"})
        assert job.next_run_after(self.base) == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestScheduleWorker:
    """Test the polling worker."""

    @pytest.mark.asyncio
    async def test_first_sighting_only_arms(self, scheduler, queue):
        handler = AsyncMock(return_value=True)
        worker = ScheduleWorker(queue, handler)
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 1})
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert await worker.tick(now) == []
        assert await worker.tick(now + timedelta(seconds=30)) == []
        ran = await worker.tick(now + timedelta(minutes=1))

        assert [(job.name, ok) for job, ok in ran] == [("agent-a1", True)]
        handler.assert_awaited_once()
        assert worker.completed == 1

    @pytest.mark.asyncio
    async def test_handler_failure_counted(self, scheduler, queue):
        handler = AsyncMock(side_effect=RuntimeError("db down"))
        worker = ScheduleWorker(queue, handler)
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 1})
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        await worker.tick(now)
        ran = await worker.tick(now + timedelta(minutes=2))

        assert ran[0][1] is False
        assert worker.failed == 1

    @pytest.mark.asyncio
    async def test_removed_entries_forgotten(self, scheduler, queue):
        worker = ScheduleWorker(queue, AsyncMock(return_value=True))
        await scheduler.schedule("a1", "user-1", {"enabled": True, "intervalMinutes": 1})
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await worker.tick(now)

        await scheduler.unschedule("a1")
        assert await worker.tick(now + timedelta(minutes=5)) == []
        assert worker._next_runs == {}

    @pytest.mark.asyncio
    async def test_agent_job_handler(self):
        supervisor = AsyncMock()
        supervisor.run.return_value = RunResult(error="nope")
        handle = make_agent_job_handler(supervisor)

        ok = await handle(RecurringJob("agent-a1", {"agentId": "a1", "ownerId": "user-1"}, {"every": 1000}))

        assert ok is False
        supervisor.run.assert_awaited_once_with("a1", "user-1")


class TestRedisJobQueue:
    """Test the Redis backend against a mocked client."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        client = AsyncMock()
        queue = RedisJobQueue(client=client)
        job = RecurringJob("agent-a1", {"agentId": "a1", "ownerId": "u"}, {"every": 60000})

        await queue.add_repeatable(job)
        client.hset.assert_awaited_once_with("orbit:repeatables", job.key, json.dumps(job.to_dict()))

        client.hgetall.return_value = {job.key: json.dumps(job.to_dict())}
        assert await queue.get_repeatable_jobs() == [job]

        client.hdel.return_value = 1
        assert await queue.remove_repeatable_by_key(job.key) is True
        client.hdel.assert_awaited_once_with("orbit:repeatables", job.key)

        await queue.close()
        client.aclose.assert_awaited_once()
