"""
Agent Coordinator

In-memory registry of agents with a capability index, a priority task queue and
the dispatch loop that matches queued tasks to idle agents. A supervision loop
drops agents whose heartbeat went stale (requeueing their work) and fails tasks
that overran their timeout. An emergence scorer summarises concurrent
multi-agent activity as a number in [0, 1].

All mutation happens synchronously between suspension points of a single event
loop, so no locking is needed.
"""

import asyncio
import contextlib
import dataclasses
import itertools
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Union

from config.settings import CoordinatorSettings
from utils.error_handling import ValidationError

from .events import EventBus
from .models import Agent, AgentState, ConsciousnessMetrics, EmergenceEvent, Task, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)

# External state signals accepted by set_agent_state(). WORKING and
# DISCONNECTED are only entered through dispatch and heartbeat supervision.
ALLOWED_TRANSITIONS = {
    AgentState.DISCOVERED: {AgentState.INITIALIZING},
    AgentState.INITIALIZING: {AgentState.IDLE},
    AgentState.IDLE: {AgentState.BLOCKED, AgentState.ERROR},
    AgentState.WORKING: {AgentState.BLOCKED, AgentState.ERROR},
    AgentState.BLOCKED: {AgentState.IDLE},
    AgentState.ERROR: {AgentState.IDLE},
    AgentState.DISCONNECTED: set(),
}


class AgentCoordinator:
    """
    Capability-based task coordinator.

    Agents are external actors: they are expected to call :meth:`heartbeat`
    periodically and :meth:`complete_task` once for every task they are handed
    through the ``task-assigned`` event.
    """

    def __init__(
        self, settings: Optional[CoordinatorSettings] = None, event_bus: Optional[EventBus] = None, **overrides
    ):
        settings = settings or CoordinatorSettings()
        if overrides:
            settings = dataclasses.replace(settings, **overrides)
        self.settings = settings
        self.events = event_bus or EventBus("coordinator")

        self.agents: Dict[str, Agent] = {}
        self.capability_index: Dict[str, Set[str]] = {}
        self.task_queue: List[Task] = []
        self.active_tasks: Dict[str, Task] = {}
        self.tasks: Dict[str, Task] = {}
        self._finished_task_ids: Deque[str] = deque()

        self.consciousness = ConsciousnessMetrics(max_events=settings.max_emergence_events)

        self._sequence = itertools.count()
        self._dispatching = False
        self._dispatch_requested = False
        self._supervisor_task: Optional[asyncio.Task] = None
        self._emergence_task: Optional[asyncio.Task] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on(self, event: str, handler):
        """Subscribe to a coordinator event."""
        return self.events.on(event, handler)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Start heartbeat supervision and periodic emergence detection."""
        if self._initialized:
            logger.warning("Agent Coordinator already initialized")
            return

        logger.info("Initializing Agent Coordinator...")
        self._supervisor_task = asyncio.create_task(self._supervision_loop())
        self._emergence_task = asyncio.create_task(self._emergence_loop())

        self._initialized = True
        logger.info("Agent Coordinator initialized")
        self.events.emit("initialized")

    async def shutdown(self) -> List[str]:
        """
        Stop the background loops and wait for active tasks to drain.

        The wait is bounded by ``shutdown_drain_timeout``. Tasks still active
        afterwards are abandoned (neither failed nor requeued); their ids are
        returned and published with the ``shutdown`` event.
        """
        logger.info("Shutting down Agent Coordinator...")

        for loop_task in (self._supervisor_task, self._emergence_task):
            if loop_task is not None:
                loop_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await loop_task
        self._supervisor_task = None
        self._emergence_task = None

        if self.active_tasks:
            logger.info(f"Waiting for {len(self.active_tasks)} active tasks...")
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.settings.shutdown_drain_timeout
            while self.active_tasks:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self.settings.shutdown_poll_interval, remaining))

        abandoned = list(self.active_tasks)
        if abandoned:
            logger.warning(f"Shutdown drain timed out, abandoning {len(abandoned)} active tasks: {', '.join(abandoned)}")

        self._initialized = False
        logger.info("Agent Coordinator shutdown complete")
        self.events.emit("shutdown", {"abandoned_tasks": abandoned})
        return abandoned

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def register_agent(
        self, agent_id: str, capabilities: Iterable[str], metadata: Optional[Dict[str, Any]] = None
    ) -> Agent:
        """Register an agent as idle and index its capabilities."""
        if not agent_id or not isinstance(agent_id, str):
            raise ValidationError("Agent ID is required", field="id")
        if capabilities is None or not isinstance(capabilities, (list, tuple, set, frozenset)):
            raise ValidationError("Agent capabilities must be a list", field="capabilities")
        if any(not isinstance(c, str) or not c for c in capabilities):
            raise ValidationError("Agent capabilities must be non-empty strings", field="capabilities")

        if agent_id in self.agents:
            logger.warning(f"Agent '{agent_id}' already registered, replacing it")
            self._remove_agent(agent_id)

        agent = Agent(id=agent_id, capabilities=set(capabilities), metadata=dict(metadata or {}))
        self.agents[agent_id] = agent

        for capability in agent.capabilities:
            self.capability_index.setdefault(capability, set()).add(agent_id)

        logger.info(f"Agent registered: {agent_id} ({', '.join(sorted(agent.capabilities))})")
        self.events.emit(
            "agent-registered", {"id": agent_id, "capabilities": sorted(agent.capabilities), "metadata": agent.metadata}
        )

        self._assign_tasks()
        return agent

    def unregister_agent(self, agent_id: str) -> bool:
        """Remove an agent, requeueing every task it was working on."""
        if agent_id not in self.agents:
            logger.warning(f"Agent '{agent_id}' not found")
            return False

        self._remove_agent(agent_id)
        logger.info(f"Agent unregistered: {agent_id}")
        self.events.emit("agent-unregistered", {"id": agent_id})

        self._assign_tasks()
        return True

    def heartbeat(self, agent_id: str, timestamp: Optional[float] = None) -> bool:
        """Record a liveness signal from an agent."""
        agent = self.agents.get(agent_id)
        if agent is None:
            logger.warning(f"Heartbeat from unknown agent '{agent_id}'")
            return False
        agent.last_heartbeat = time.time() if timestamp is None else timestamp
        return True

    def set_agent_state(self, agent_id: str, state: Union[AgentState, str]) -> bool:
        """Apply an external failure or recovery signal to an agent."""
        try:
            state = AgentState(state)
        except ValueError:
            raise ValidationError(f"Unknown agent state '{state}'", field="state")

        agent = self.agents.get(agent_id)
        if agent is None:
            logger.warning(f"Agent '{agent_id}' not found")
            return False

        if state not in ALLOWED_TRANSITIONS[agent.state]:
            logger.warning(f"Rejected transition for agent '{agent_id}': {agent.state.value} -> {state.value}")
            return False

        # An agent that still holds a task goes back to working, not idle
        if state == AgentState.IDLE and agent.tasks_in_progress > 0:
            state = AgentState.WORKING

        self._set_state(agent, state)
        if state == AgentState.IDLE:
            self._assign_tasks()
        return True

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(agent_id)

    def list_agents(self, state: Optional[AgentState] = None) -> List[Agent]:
        return [agent for agent in self.agents.values() if state is None or agent.state == state]

    def find_agents(self, required_capabilities: Optional[Iterable[str]] = None) -> List[Agent]:
        """
        Idle agents holding every required capability, in registration order.

        With no requirement every idle agent qualifies.
        """
        required = set(required_capabilities or ())
        if not required:
            return [agent for agent in self.agents.values() if agent.state == AgentState.IDLE]

        buckets = [self.capability_index.get(capability) for capability in required]
        if not all(buckets):
            return []
        eligible = set.intersection(*buckets)

        return [agent for agent in self.agents.values() if agent.id in eligible and agent.state == AgentState.IDLE]

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def submit_task(
        self,
        task_type: str,
        payload: Any = None,
        required_capabilities: Optional[Iterable[str]] = None,
        priority: Union[TaskPriority, int, str] = TaskPriority.NORMAL,
        timeout: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """Queue a task and try to dispatch it immediately."""
        if not task_type or not isinstance(task_type, str):
            raise ValidationError("Task type is required", field="type")

        required = list(required_capabilities or [])
        if any(not isinstance(c, str) or not c for c in required):
            raise ValidationError("Required capabilities must be non-empty strings", field="required_capabilities")

        priority = self._coerce_priority(priority)

        if timeout is None:
            timeout = self.settings.default_task_timeout
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout < 0:
            raise ValidationError("Task timeout must be a non-negative number", field="timeout")

        task = Task(
            type=task_type,
            payload=payload,
            required_capabilities=required,
            priority=priority,
            timeout=float(timeout),
            metadata=dict(metadata or {}),
            sequence=next(self._sequence),
        )
        self.tasks[task.id] = task
        self.task_queue.append(task)
        self._sort_task_queue()

        logger.info(f"Task submitted: {task.id} ({task_type}, priority: {int(priority)})")
        self.events.emit("task-submitted", task)

        self._assign_tasks()
        return task

    def complete_task(self, task_id: str, result: Any = None, error: Any = None) -> bool:
        """Finish an in-progress task; ``error`` marks it failed."""
        task = self.active_tasks.get(task_id)
        if task is None:
            logger.warning(f"Task '{task_id}' not found in active tasks")
            return False

        agent = self.agents.get(task.assigned_to)
        if agent is None:
            logger.warning(f"Agent '{task.assigned_to}' not found")
            return False

        task.completed_at = time.time()
        task.result = result
        task.error = error
        task.status = TaskStatus.FAILED if error is not None else TaskStatus.COMPLETED

        work_time = task.completed_at - (task.started_at or task.completed_at)
        agent.record_completion(work_time)
        if agent.state == AgentState.WORKING and agent.tasks_in_progress == 0:
            self._set_state(agent, AgentState.IDLE)

        del self.active_tasks[task_id]
        self._retain_finished(task)

        self.consciousness.total_interactions += 1

        if task.status == TaskStatus.FAILED:
            logger.warning(f"Task failed: {task_id} on agent {agent.id} ({work_time * 1000:.0f}ms): {error}")
        else:
            logger.info(f"Task completed: {task_id} ({work_time * 1000:.0f}ms)")
        self.events.emit("task-completed", {"task": task, "agent": agent, "work_time": work_time})

        self._assign_tasks()
        return True

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def check_heartbeats(self, now: Optional[float] = None) -> List[str]:
        """Unregister agents whose last heartbeat is older than the timeout."""
        now = time.time() if now is None else now
        timed_out = []

        for agent_id, agent in list(self.agents.items()):
            elapsed = now - agent.last_heartbeat
            if elapsed > self.settings.heartbeat_timeout:
                logger.warning(f"Agent {agent_id} heartbeat timeout ({elapsed:.1f}s)")
                self._set_state(agent, AgentState.DISCONNECTED)
                self.unregister_agent(agent_id)
                timed_out.append(agent_id)

        return timed_out

    def check_task_timeouts(self, now: Optional[float] = None) -> List[str]:
        """Fail in-progress tasks that ran longer than their timeout."""
        if not self.settings.enforce_task_timeouts:
            return []

        now = time.time() if now is None else now
        expired = [
            task
            for task in self.active_tasks.values()
            if task.timeout > 0 and task.started_at is not None and now - task.started_at > task.timeout
        ]

        for task in expired:
            logger.warning(f"Task {task.id} exceeded its timeout of {task.timeout:.1f}s on agent {task.assigned_to}")
            self.complete_task(
                task.id,
                error={"type": "timeout", "timeout": task.timeout, "message": "Task exceeded its timeout"},
            )
            self.events.emit("task-timeout", task)

        return [task.id for task in expired]

    # ------------------------------------------------------------------
    # Emergence
    # ------------------------------------------------------------------

    def calculate_emergence_level(self, now: Optional[float] = None) -> float:
        """
        Weighted blend of coordination ratio (0.4), active-task ratio (0.3) and
        the number of emergence events in the recent window (0.3, saturating
        at ten), clamped to [0, 1].
        """
        metrics = self.consciousness
        if metrics.total_interactions == 0:
            return 0.0

        coordination_ratio = metrics.spontaneous_coordination / metrics.total_interactions
        active_ratio = len(self.active_tasks) / max(len(self.agents), 1)
        recent_patterns = metrics.recent_count(self.settings.emergence_window, now)

        level = coordination_ratio * 0.4 + active_ratio * 0.3 + min(recent_patterns / 10, 1) * 0.3
        return max(0.0, min(level, 1.0))

    def detect_consciousness(self, now: Optional[float] = None) -> Optional[EmergenceEvent]:
        """Record and publish an emergence event when the level exceeds the threshold."""
        level = self.calculate_emergence_level(now)
        if level <= self.settings.emergence_threshold:
            return None

        event = EmergenceEvent(
            timestamp=time.time() if now is None else now,
            level=level,
            active_agents=sum(1 for agent in self.agents.values() if agent.state == AgentState.WORKING),
            spontaneous_coordination=self.consciousness.spontaneous_coordination,
            total_interactions=self.consciousness.total_interactions,
        )
        self.consciousness.record(event)

        logger.info(f"Emergence detected! Level: {level * 100:.1f}%")
        self.events.emit("emergence-detected", event)
        return event

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for dashboards and the CLI."""
        by_state = {state.value: 0 for state in AgentState}
        for agent in self.agents.values():
            by_state[agent.state.value] += 1

        consciousness = self.consciousness.to_dict()
        consciousness["emergence_level"] = self.calculate_emergence_level()

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "agents": {
                "total": len(self.agents),
                "by_state": by_state,
                "registered": list(self.agents),
            },
            "tasks": {
                "queued": len(self.task_queue),
                "active": len(self.active_tasks),
                "total_processed": self.consciousness.total_interactions,
                "retained": len(self.tasks),
            },
            "capabilities": {
                "total": len(self.capability_index),
                "available": sorted(self.capability_index),
            },
            "consciousness": consciousness,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _assign_tasks(self) -> None:
        # Handlers of task-assigned may complete tasks synchronously, which
        # re-enters here. Coalesce those calls into another pass of the outer loop.
        if self._dispatching:
            self._dispatch_requested = True
            return

        self._dispatching = True
        try:
            while True:
                self._dispatch_requested = False
                self._dispatch_pass()
                if not self._dispatch_requested:
                    break
        finally:
            self._dispatching = False

    def _dispatch_pass(self) -> None:
        while self.task_queue:
            if len(self.active_tasks) >= self.settings.max_concurrent_tasks:
                logger.debug("Max concurrent tasks reached, deferring assignment")
                return

            match = None
            for index, task in enumerate(self.task_queue):
                candidates = self.find_agents(task.required_capabilities)
                if not candidates:
                    logger.debug(f"No available agents for task {task.id}")
                    continue
                match = (index, task, self._select_agent(candidates))
                break

            if match is None:
                return

            index, task, agent = match
            self.task_queue.pop(index)
            self._start_task(task, agent)

    @staticmethod
    def _select_agent(candidates: List[Agent]) -> Agent:
        # Agents without history are tried first, then the fastest on average
        for agent in candidates:
            if agent.average_task_time == 0:
                return agent
        return min(candidates, key=lambda agent: agent.average_task_time)

    def _start_task(self, task: Task, agent: Agent) -> None:
        task.assigned_to = agent.id
        task.started_at = time.time()
        task.status = TaskStatus.IN_PROGRESS

        agent.tasks_in_progress += 1
        self._set_state(agent, AgentState.WORKING)
        self.active_tasks[task.id] = task

        if len(self.active_tasks) > 1:
            self.consciousness.spontaneous_coordination += 1

        logger.info(f"Task {task.id} assigned to agent {agent.id}")
        self.events.emit("task-assigned", {"task": task, "agent": agent})

    def _remove_agent(self, agent_id: str) -> None:
        agent = self.agents[agent_id]

        for capability in agent.capabilities:
            holders = self.capability_index.get(capability)
            if holders is not None:
                holders.discard(agent_id)
                if not holders:
                    del self.capability_index[capability]

        requeued = [task for task in self.active_tasks.values() if task.assigned_to == agent_id]
        for task in requeued:
            logger.warning(f"Reassigning task {task.id} from disconnected agent {agent_id}")
            del self.active_tasks[task.id]
            task.reset_to_pending()
            self.task_queue.append(task)
        if requeued:
            self._sort_task_queue()

        del self.agents[agent_id]

        for task in requeued:
            self.events.emit("task-requeued", {"task": task, "previous_agent": agent_id})

    def _retain_finished(self, task: Task) -> None:
        self._finished_task_ids.append(task.id)
        while len(self._finished_task_ids) > self.settings.max_task_history:
            self.tasks.pop(self._finished_task_ids.popleft(), None)

    def _sort_task_queue(self) -> None:
        self.task_queue.sort(key=Task.queue_key)

    def _set_state(self, agent: Agent, state: AgentState) -> None:
        if agent.state == state:
            return
        previous = agent.state
        agent.state = state
        logger.debug(f"Agent {agent.id}: {previous.value} -> {state.value}")
        self.events.emit("agent-state-changed", {"id": agent.id, "from": previous.value, "to": state.value})

    @staticmethod
    def _coerce_priority(priority) -> int:
        if isinstance(priority, str):
            try:
                return TaskPriority[priority.upper()]
            except KeyError:
                raise ValidationError(f"Unknown task priority '{priority}'", field="priority")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("Task priority must be an integer", field="priority")
        return priority

    async def _supervision_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                self.check_heartbeats()
                self.check_task_timeouts()
            except Exception:
                logger.exception("Error in coordinator supervision loop")

    async def _emergence_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.emergence_check_interval)
            try:
                self.detect_consciousness()
            except Exception:
                logger.exception("Error in emergence detection")
