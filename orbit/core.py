"""
Orbit - Core
Facade wiring the store, tool registry, decision loop, supervisor, triggers,
delegation router and scheduler together with process-scoped lifecycle.
"""

import os
import asyncio
import logging
from typing import Dict, Optional, Any, Callable, List
from datetime import datetime
from .monitoring import get_metrics

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class EventBus:
    """Simple asynchronous event bus for lifecycle monitoring."""
    def __init__(self):
        self._subscribers = {}
        self._relays = []
        self._pending = set()
        self.logger = logging.getLogger("EventBus")

    def add_relay(self, url: str):
        if url not in self._relays:
            self._relays.append(url)
            self.logger.info(f"Added event relay to: {url}")

    def subscribe(self, event_name: str, callback: Callable):
        if event_name not in self._subscribers:
            self._subscribers[event_name] = []
        if callback not in self._subscribers[event_name]:
            self._subscribers[event_name].append(callback)
        self.logger.debug(f"Subscribed to {event_name}")

    def unsubscribe(self, event_name: str, callback: Callable):
        """Remove a subscription."""
        if callback in self._subscribers.get(event_name, []):
            self._subscribers[event_name].remove(callback)
            self.logger.debug(f"Unsubscribed from {event_name}")

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def emit(self, event_name: str, data: Any):
        self.logger.debug(f"Emitting {event_name}")
        # Catch-all "*" subscribers see every event
        callbacks = self._subscribers.get(event_name, []) + self._subscribers.get("*", [])

        for cb in callbacks:
            try:
                if asyncio.iscoroutinefunction(cb):
                    self._spawn(cb(event_name, data))
                else:
                    cb(event_name, data)
            except Exception as e:
                self.logger.error(f"Error in event callback for {event_name}: {e}")

        for relay_url in self._relays:
            try:
                self._spawn(self._relay_event(relay_url, event_name, data))
            except RuntimeError as e:
                self.logger.debug(f"No running loop for relay {relay_url}: {e}")

    async def _relay_event(self, url: str, event: str, data: Any):
        import httpx
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    url,
                    json={"event": event, "data": data, "timestamp": datetime.now().isoformat()},
                    timeout=2.0,
                )
                if resp.status_code != 200:
                    self.logger.debug(f"Relay {url} returned {resp.status_code}")
        except (httpx.HTTPError, TypeError) as e:
            self.logger.debug(f"Failed to relay event {event} to {url}: {e}")


class Orbit:
    """
    Autonomous agent platform core.

    Components (lazy):
    - orbit.llm          # Reasoning model provider
    - orbit.tools        # Tool registry
    - orbit.store        # Agent/trigger/user store
    - orbit.queue        # Recurring job queue
    - orbit.scheduler    # Agent schedules -> recurring entries
    - orbit.dispatcher   # Tool dispatch
    - orbit.loop         # Decision loop
    - orbit.supervisor   # Resilient agent runs
    - orbit.triggers     # Event -> agents
    - orbit.router       # Parallel delegation
    - orbit.manager      # Agent management
    - orbit.worker       # Schedule worker
    """

    def __init__(self, config: Optional[Dict] = None, llm=None, store=None, queue=None):
        # Always load environment defaults first
        self.config = self._load_config()
        if config:
            self.config.update(config)
        self.logger = logging.getLogger("Orbit")

        self._llm = llm
        self._store = store
        self._queue = queue
        self._tools = None
        self._scheduler = None
        self._dispatcher = None
        self._loop = None
        self._supervisor = None
        self._triggers = None
        self._router = None
        self._manager = None
        self._worker = None

        self.metrics = get_metrics()
        self.event_bus = EventBus()

        self.logger.info("[OK] Orbit initialized (lazy-loading enabled)")

    def _load_config(self) -> Dict:
        from dotenv import load_dotenv
        load_dotenv(override=True)
        return {
            'llm_provider': os.getenv('LLM_PROVIDER'),
            'llm_model': os.getenv('LLM_MODEL'),
            'llm_timeout': float(os.getenv('LLM_TIMEOUT', 600.0)),
            'agent_max_retries': int(os.getenv('AGENT_MAX_RETRIES', 3)),
            'agent_timeout_ms': int(os.getenv('AGENT_TIMEOUT_MS', 30000)),
            'retry_base_delay': float(os.getenv('RETRY_BASE_DELAY', 1.0)),
            'directed_max_loops': int(os.getenv('DIRECTED_MAX_LOOPS', 3)),
            'unattended_max_loops': int(os.getenv('UNATTENDED_MAX_LOOPS', 8)),
            'max_delegation_depth': int(os.getenv('MAX_DELEGATION_DEPTH', 5)),
            'history_max_messages': int(os.getenv('HISTORY_MAX_MESSAGES', 10)),
            'tool_result_max_chars': int(os.getenv('TOOL_RESULT_MAX_CHARS', 2000)),
            'queue_backend': os.getenv('QUEUE_BACKEND', 'memory'),
            'redis_url': os.getenv('REDIS_URL', 'redis://127.0.0.1:6379'),
            'scheduler_poll_interval': float(os.getenv('SCHEDULER_POLL_INTERVAL', 1.0)),
            'store_path': os.getenv('STORE_PATH'),
            'webhook_secret': os.getenv('WEBHOOK_SECRET'),
            'caller': os.getenv('ORBIT_CALLER', 'orbit'),
            'metrics_port': int(os.getenv('METRICS_PORT', 0)) or None,
        }

    @property
    def llm(self):
        if self._llm is None:
            from .llm_providers import LLMFactory
            provider = self.config.get('llm_provider')
            timeout = self.config.get('llm_timeout', 600.0)
            if provider:
                kwargs = {'timeout': timeout} if provider == 'ollama' else {}
                self._llm = LLMFactory.create(provider, self.config.get('llm_model'), **kwargs)
            else:
                self._llm = LLMFactory.auto_detect(timeout=timeout)
            self.logger.info(f"  [OK] LLM: {self._llm.name}")
        return self._llm

    @property
    def tools(self):
        if self._tools is None:
            from .tool_registry import ToolRegistry
            self._tools = ToolRegistry(self.config, self.logger)
        return self._tools

    @property
    def store(self):
        if self._store is None:
            from .store import InMemoryAgentStore, JSONAgentStore
            path = self.config.get('store_path')
            self._store = JSONAgentStore(path) if path else InMemoryAgentStore()
            self.logger.info(f"  [OK] Store ({type(self._store).__name__})")
        return self._store

    @property
    def queue(self):
        if self._queue is None:
            from .scheduler import InMemoryJobQueue, RedisJobQueue
            backend = self.config.get('queue_backend', 'memory')
            if backend == 'redis':
                self._queue = RedisJobQueue(self.config.get('redis_url'))
            elif backend == 'memory':
                self._queue = InMemoryJobQueue()
            else:
                raise ValueError(f"Unknown queue backend: {backend}")
            self.logger.info(f"  [OK] Queue (Backend: {backend})")
        return self._queue

    @property
    def scheduler(self):
        if self._scheduler is None:
            from .scheduler import AgentScheduler
            self._scheduler = AgentScheduler(self.queue)
        return self._scheduler

    @property
    def dispatcher(self):
        if self._dispatcher is None:
            from .dispatch import ToolDispatcher
            self._dispatcher = ToolDispatcher(
                self.tools,
                caller=self.config.get('caller', 'orbit'),
                event_bus=self.event_bus,
            )
        return self._dispatcher

    @property
    def loop(self):
        if self._loop is None:
            from .agent import DecisionLoop
            self._loop = DecisionLoop(self.llm, self.dispatcher, config=self.config, event_bus=self.event_bus)
        return self._loop

    @property
    def supervisor(self):
        if self._supervisor is None:
            from .supervisor import AgentSupervisor, RetryPolicy
            self._supervisor = AgentSupervisor(
                store=self.store,
                loop=self.loop,
                dispatcher=self.dispatcher,
                tools=self.tools,
                scheduler=self.scheduler,
                event_bus=self.event_bus,
                retry_policy=RetryPolicy(
                    max_retries=self.config.get('agent_max_retries', 3),
                    base_delay=self.config.get('retry_base_delay', 1.0),
                ),
                metrics=self.metrics,
                max_delegation_depth=self.config.get('max_delegation_depth', 5),
            )
            # Agent-to-agent decisions run back through the supervisor
            self.dispatcher.agent_runner = self._supervisor
        return self._supervisor

    @property
    def triggers(self):
        if self._triggers is None:
            from .triggers import TriggerEngine
            self._triggers = TriggerEngine(
                self.store, self.supervisor, event_bus=self.event_bus,
                webhook_secret=self.config.get('webhook_secret'),
            )
        return self._triggers

    @property
    def router(self):
        if self._router is None:
            from .routing import DelegationRouter
            self._router = DelegationRouter(
                self.store, self.supervisor, event_bus=self.event_bus,
                default_timeout_ms=self.config.get('agent_timeout_ms', 30000),
                metrics=self.metrics,
            )
        return self._router

    @property
    def manager(self):
        if self._manager is None:
            from .management import AgentManager
            self._manager = AgentManager(self.store, self.scheduler, caller=self.config.get('caller', 'orbit'))
        return self._manager

    @property
    def worker(self):
        if self._worker is None:
            from .scheduler import ScheduleWorker, make_agent_job_handler
            self._worker = ScheduleWorker(
                self.queue,
                make_agent_job_handler(self.supervisor),
                poll_interval=self.config.get('scheduler_poll_interval', 1.0),
            )
        return self._worker

    # ==========================================================================
    # GENERAL-PURPOSE METHODS
    # ==========================================================================

    def create_tool(self, name: str, func: Callable, description: str = None,
                    parameters: List[str] = None, collects_data: Optional[bool] = None) -> Any:
        """Create and register a tool."""
        from .tool import Tool

        tool = Tool(
            name=name,
            func=func,
            description=description or func.__doc__ or "No description",
            parameters=parameters,
            collects_data=collects_data,
        )
        self.tools.register(name, tool)
        return tool

    def tool(self, name: str = None, description: str = None, parameters: List[str] = None,
             collects_data: Optional[bool] = None):
        """
        Decorator registering a function as a tool.

        Example:
            @orbit.tool(parameters=["org"])
            async def list_repos(args, ctx):
                ...
        """
        def decorator(func: Callable):
            self.create_tool(name or func.__name__, func, description, parameters, collects_data)
            return func
        return decorator

    async def run_agent(self, agent_id: str, user_id: str, input: Optional[str] = None):
        return await self.supervisor.run(agent_id, user_id, input=input)

    async def delegate(self, request) -> Dict:
        report = await self.router.delegate(request)
        return report.to_dict()

    async def startup(self, start_worker: bool = True):
        """Create process-scoped resources and start the schedule worker."""
        _ = self.supervisor
        if start_worker:
            self.worker.start()
        if self.config.get('metrics_port'):
            self.metrics.start_server(self.config['metrics_port'])
        self.logger.info("[OK] Orbit started")

    async def shutdown(self):
        """Stop the worker and close the queue connection."""
        if self._worker is not None:
            await self._worker.stop()
        if self._queue is not None:
            await self._queue.close()
        self.logger.info("Orbit stopped")

    async def _queue_reachable(self) -> bool:
        await self.queue.get_repeatable_jobs()
        return True

    async def health(self) -> Dict:
        """Check the queue and the schedule worker."""
        from .monitoring import HealthCheck
        checks = HealthCheck()
        checks.register("queue", self._queue_reachable)
        checks.register("worker", lambda: self._worker is None or self._worker._running)
        return await checks.run_checks()

    def get_metrics(self) -> Dict:
        return {
            "requests": self.metrics.get_metrics(),
            "summary": self.metrics.get_summary(),
            "tools": [t.get_metrics() for t in self.tools.get_all().values()],
        }
