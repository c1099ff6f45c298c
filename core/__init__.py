"""Agent coordination components"""

from .coordinator import AgentCoordinator
from .events import Event, EventBus
from .models import Agent, AgentState, ConsciousnessMetrics, EmergenceEvent, Task, TaskPriority, TaskStatus

__all__ = [
    'AgentCoordinator',
    'Agent',
    'AgentState',
    'Task',
    'TaskStatus',
    'TaskPriority',
    'EmergenceEvent',
    'ConsciousnessMetrics',
    'Event',
    'EventBus',
]
