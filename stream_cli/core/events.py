"""
Client-side events produced by AgentClient and consumed by the emitter.

task_completed() is the single authority deciding whether a state transition
finishes a task.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from stream_backend.engine.messages import AgentMessage

from .agent_state import COMPLETION_ASKS, AgentStateInfo


def task_completed(previous: Optional[AgentStateInfo], current: AgentStateInfo) -> bool:
    """
    True when `current` is parked on a completion ask.

    `previous` is not consulted. Recoverable asks (mistake_limit_reached,
    api_req_failed) pause the task; they do not complete it.
    """
    return current.current_ask in COMPLETION_ASKS


@dataclass
class MessageEvent:
    message: AgentMessage


@dataclass
class TaskCompletedEvent:
    success: bool
    state_info: AgentStateInfo
    message: Optional[AgentMessage] = None
    # Optional usage summary supplied by the engine, same keys as the wire `cost`
    cost: Optional[Dict[str, Any]] = None


@dataclass
class QueueEvent:
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ErrorEvent:
    error: BaseException


ClientEvent = Union[MessageEvent, TaskCompletedEvent, QueueEvent, ErrorEvent]
