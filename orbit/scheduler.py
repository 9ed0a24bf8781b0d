"""
Scheduler / Queue adapter.
Turns agent schedules into recurring queue entries and drains them with a worker loop.

Recurring entry wire form:
    {"name": "agent-<agentId>", "data": {"agentId", "ownerId"},
     "repeat": {"every": ms} | {"cron": expr}}
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from croniter import croniter

from .models import Schedule, utcnow


def job_name(agent_id: str) -> str:
    return f"agent-{agent_id}"


@dataclass
class RecurringJob:
    name: str
    data: Dict
    repeat: Dict
    key: str = ""

    def __post_init__(self):
        if not self.key:
            pattern = self.repeat.get("every", self.repeat.get("cron"))
            self.key = f"{self.name}::{pattern}"

    def next_run_after(self, base: datetime) -> datetime:
        if "every" in self.repeat:
            return base + timedelta(milliseconds=int(self.repeat["every"]))
        return croniter(self.repeat["cron"], base).get_next(datetime)

    def to_dict(self) -> Dict:
        return {"name": self.name, "data": dict(self.data), "repeat": dict(self.repeat), "key": self.key}

    @classmethod
    def from_dict(cls, data: Dict) -> "RecurringJob":
        return cls(name=data["name"], data=data["data"], repeat=data["repeat"], key=data.get("key", ""))


# ============================================================================
# QUEUE BACKENDS
# ============================================================================

class JobQueue(ABC):
    """Durable recurring-job queue seam."""

    @abstractmethod
    async def add_repeatable(self, job: RecurringJob) -> RecurringJob:
        pass

    @abstractmethod
    async def get_repeatable_jobs(self) -> List[RecurringJob]:
        pass

    @abstractmethod
    async def remove_repeatable_by_key(self, key: str) -> bool:
        pass

    async def close(self):
        pass


class InMemoryJobQueue(JobQueue):
    """Process-local queue. Adding an identical repeat twice keeps one entry."""

    def __init__(self):
        self._jobs: Dict[str, RecurringJob] = {}

    async def add_repeatable(self, job: RecurringJob) -> RecurringJob:
        self._jobs[job.key] = job
        return job

    async def get_repeatable_jobs(self) -> List[RecurringJob]:
        return list(self._jobs.values())

    async def remove_repeatable_by_key(self, key: str) -> bool:
        return self._jobs.pop(key, None) is not None


class RedisJobQueue(JobQueue):
    """
    Redis-backed queue. Repeatable entries live in one hash keyed by job key.

    Example:
        queue = RedisJobQueue("redis://127.0.0.1:6379")
    """

    def __init__(self, url: str = "redis://127.0.0.1:6379", client=None, namespace: str = "orbit"):
        self.url = url
        self.hash_key = f"{namespace}:repeatables"
        self.logger = logging.getLogger("RedisJobQueue")
        if client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError:
                raise ImportError("pip install redis")
            client = aioredis.from_url(url, decode_responses=True)
            self.logger.info(f"[OK] Redis queue at {url}")
        self.client = client

    async def add_repeatable(self, job: RecurringJob) -> RecurringJob:
        await self.client.hset(self.hash_key, job.key, json.dumps(job.to_dict()))
        return job

    async def get_repeatable_jobs(self) -> List[RecurringJob]:
        raw = await self.client.hgetall(self.hash_key)
        return [RecurringJob.from_dict(json.loads(value)) for value in raw.values()]

    async def remove_repeatable_by_key(self, key: str) -> bool:
        return bool(await self.client.hdel(self.hash_key, key))

    async def close(self):
        await self.client.aclose()


# ============================================================================
# SCHEDULER
# ============================================================================

class AgentScheduler:
    """Registers and removes the recurring entries of agents."""

    def __init__(self, queue: JobQueue):
        self.queue = queue
        self.logger = logging.getLogger("Scheduler")

    async def schedule(self, agent_id: str, owner_id: str,
                       schedule: Union[Schedule, Dict, None]) -> Optional[RecurringJob]:
        """Add a recurring entry. Interval wins over cron. Disabled schedules are ignored."""
        if not isinstance(schedule, Schedule):
            schedule = Schedule.from_dict(schedule)
        if not schedule.enabled:
            return None

        governing = schedule.governing()
        if governing is None:
            self.logger.warning(f"Schedule for agent {agent_id} has neither interval nor cron")
            return None

        kind, value = governing
        if kind == "cron" and not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value}")

        job = RecurringJob(
            name=job_name(agent_id),
            data={"agentId": agent_id, "ownerId": owner_id},
            repeat={kind: value},
        )
        await self.queue.add_repeatable(job)
        self.logger.info(f"Scheduled agent {agent_id}: {kind}={value}")
        return job

    async def list_for(self, agent_id: str) -> List[RecurringJob]:
        name = job_name(agent_id)
        return [
            job for job in await self.queue.get_repeatable_jobs()
            if job.name == name or job.key.split("::")[0] == name
        ]

    async def unschedule(self, agent_id: str) -> int:
        """Remove every recurring entry of the agent, not just the first."""
        removed = 0
        for job in await self.list_for(agent_id):
            if await self.queue.remove_repeatable_by_key(job.key):
                removed += 1
        if removed:
            self.logger.info(f"Removed {removed} recurring entries for agent {agent_id}")
        return removed

    async def reschedule(self, agent_id: str, owner_id: str,
                         schedule: Union[Schedule, Dict, None]) -> Optional[RecurringJob]:
        await self.unschedule(agent_id)
        return await self.schedule(agent_id, owner_id, schedule)


# ============================================================================
# WORKER
# ============================================================================

JobHandler = Callable[[RecurringJob], Awaitable[bool]]


def make_agent_job_handler(supervisor) -> JobHandler:
    """Queue handler that runs the agent named by the job data."""
    async def handle(job: RecurringJob) -> bool:
        result = await supervisor.run(job.data["agentId"], job.data["ownerId"])
        return result.success
    return handle


class ScheduleWorker:
    """
    Polls the queue and runs due entries.
    Each entry's first sighting only arms its next-run time.
    """

    def __init__(self, queue: JobQueue, handler: JobHandler, poll_interval: float = 1.0):
        self.queue = queue
        self.handler = handler
        self.poll_interval = poll_interval
        self.logger = logging.getLogger("ScheduleWorker")
        self._next_runs: Dict[str, datetime] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.completed = 0
        self.failed = 0

    async def _run_job(self, job: RecurringJob) -> bool:
        try:
            ok = bool(await self.handler(job))
        except Exception as e:
            self.logger.error(f"Job {job.key} failed: {e}")
            ok = False
        if ok:
            self.completed += 1
        else:
            self.failed += 1
        return ok

    async def tick(self, now: Optional[datetime] = None) -> List[Tuple[RecurringJob, bool]]:
        now = now or utcnow()
        jobs = await self.queue.get_repeatable_jobs()

        live = {job.key for job in jobs}
        for key in list(self._next_runs):
            if key not in live:
                del self._next_runs[key]

        due = []
        for job in jobs:
            next_run = self._next_runs.get(job.key)
            if next_run is None:
                self._next_runs[job.key] = job.next_run_after(now)
            elif next_run <= now:
                due.append(job)
                self._next_runs[job.key] = job.next_run_after(now)

        if not due:
            return []
        results = await asyncio.gather(*(self._run_job(job) for job in due))
        return list(zip(due, results))

    async def run_forever(self):
        self._running = True
        self.logger.info("[OK] Schedule worker started")
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                self.logger.error(f"Worker tick failed: {e}")
            await asyncio.sleep(self.poll_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self):
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.logger.info("Schedule worker stopped")
