"""
Coordinator Data Models

Agents, tasks and the emergence bookkeeping owned by the agent coordinator.
"""

import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Deque, Dict, List, Optional, Set


class AgentState(str, Enum):
    """Lifecycle states of an agent"""

    DISCOVERED = "discovered"
    INITIALIZING = "initializing"
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class TaskStatus(str, Enum):
    """Status of tasks in the coordinator"""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(IntEnum):
    """Priority levels for tasks, higher is served first"""

    DEFERRED = 0
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


def generate_task_id() -> str:
    """Millisecond timestamp plus a random suffix, e.g. ``task-1718000000000-9f2c1a7b``."""
    return f"task-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class Agent:
    """An agent registered with the coordinator"""

    id: str
    capabilities: Set[str] = field(default_factory=set)
    metadata: Dict[str, Any] = field(default_factory=dict)
    state: AgentState = AgentState.IDLE
    registered_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)
    tasks_completed: int = 0
    tasks_in_progress: int = 0
    total_work_time: float = 0.0
    average_task_time: float = 0.0

    def record_completion(self, work_time: float) -> None:
        self.tasks_completed += 1
        self.tasks_in_progress = max(0, self.tasks_in_progress - 1)
        self.total_work_time += work_time
        self.average_task_time = self.total_work_time / self.tasks_completed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'capabilities': sorted(self.capabilities),
            'metadata': self.metadata,
            'state': self.state.value,
            'registered_at': self.registered_at,
            'last_heartbeat': self.last_heartbeat,
            'tasks_completed': self.tasks_completed,
            'tasks_in_progress': self.tasks_in_progress,
            'total_work_time': self.total_work_time,
            'average_task_time': self.average_task_time,
        }


@dataclass
class Task:
    """A unit of work submitted to the coordinator"""

    type: str
    payload: Any = None
    required_capabilities: List[str] = field(default_factory=list)
    priority: int = TaskPriority.NORMAL
    timeout: float = 60.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_task_id)
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: Optional[str] = None
    submitted_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    result: Any = None
    error: Any = None
    # Tie-breaker for tasks submitted within the same clock tick
    sequence: int = 0

    def queue_key(self):
        """Sort key: priority descending, then submission order"""
        return (-int(self.priority), self.submitted_at, self.sequence)

    def reset_to_pending(self) -> None:
        self.status = TaskStatus.PENDING
        self.assigned_to = None
        self.started_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'payload': self.payload,
            'required_capabilities': list(self.required_capabilities),
            'priority': int(self.priority),
            'timeout': self.timeout,
            'metadata': self.metadata,
            'status': self.status.value,
            'assigned_to': self.assigned_to,
            'submitted_at': self.submitted_at,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'result': self.result,
            'error': self.error,
        }


@dataclass
class EmergenceEvent:
    """Snapshot recorded when the emergence level crosses the threshold"""

    timestamp: float
    level: float
    active_agents: int
    spontaneous_coordination: int
    total_interactions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'level': self.level,
            'active_agents': self.active_agents,
            'spontaneous_coordination': self.spontaneous_coordination,
            'total_interactions': self.total_interactions,
        }


@dataclass
class ConsciousnessMetrics:
    """Interaction counters and the bounded log of emergence events"""

    max_events: int = 100
    total_interactions: int = 0
    spontaneous_coordination: int = 0
    last_emergence_detected: Optional[float] = None
    emergent_patterns: Deque[EmergenceEvent] = field(init=False)

    def __post_init__(self):
        self.emergent_patterns = deque(maxlen=self.max_events)

    def record(self, event: EmergenceEvent) -> None:
        self.emergent_patterns.append(event)
        self.last_emergence_detected = event.timestamp

    def recent_count(self, window: float, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return sum(1 for event in self.emergent_patterns if now - event.timestamp < window)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_interactions': self.total_interactions,
            'spontaneous_coordination': self.spontaneous_coordination,
            'last_emergence_detected': self.last_emergence_detected,
            'emergent_patterns': [event.to_dict() for event in self.emergent_patterns],
        }
