"""
Agent State Detection

Projects an ordered message history onto a small set of semantic states.
The projection is pure: running it on the whole history or re-running it after
every new message gives the same answer.

Ordering is arrival order only. Revisions sharing a `ts` collapse onto the
position where that identifier first appeared, and only the latest revision
counts.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from stream_backend.engine.messages import AgentMessage, AskMessage, AskType


class AgentLoopState(str, Enum):
    RUNNING = "running"
    IDLE = "idle"


class RequiredAction(str, Enum):
    NONE = "none"
    START_TASK = "start_task"
    APPROVE = "approve"
    ANSWER = "answer"
    RETRY = "retry"
    RESUME = "resume"
    CONTINUE = "continue"


COMPLETION_ASKS = frozenset({AskType.COMPLETION_RESULT, AskType.RESUME_COMPLETED_TASK})

# ask subtype -> (required action, description)
_IDLE_ASKS: Dict[AskType, tuple] = {
    AskType.COMPLETION_RESULT: (
        RequiredAction.START_TASK,
        "Task completed successfully. You can provide feedback or start a new task.",
    ),
    AskType.RESUME_COMPLETED_TASK: (
        RequiredAction.START_TASK,
        "Previously completed task loaded. You can start a new task.",
    ),
    AskType.FOLLOWUP: (RequiredAction.ANSWER, "The agent asked a follow-up question."),
    AskType.TOOL: (RequiredAction.APPROVE, "The agent wants to use a tool."),
    AskType.COMMAND: (RequiredAction.APPROVE, "The agent wants to run a command."),
    AskType.BROWSER_ACTION_LAUNCH: (RequiredAction.APPROVE, "The agent wants to launch a browser."),
    AskType.USE_MCP_SERVER: (RequiredAction.APPROVE, "The agent wants to use an MCP server."),
    AskType.COMMAND_OUTPUT: (RequiredAction.CONTINUE, "A command is still producing output."),
    AskType.MISTAKE_LIMIT_REACHED: (
        RequiredAction.RETRY,
        "The agent hit its consecutive mistake limit and needs guidance.",
    ),
    AskType.API_REQ_FAILED: (RequiredAction.RETRY, "The API request failed. Retry or start a new task."),
    AskType.RESUME_TASK: (RequiredAction.RESUME, "An interrupted task can be resumed."),
}


@dataclass(frozen=True)
class AgentStateInfo:
    state: AgentLoopState
    is_waiting_for_input: bool
    is_running: bool
    is_streaming: bool
    current_ask: Optional[AskType]
    required_action: RequiredAction
    last_message_ts: Optional[int]
    last_message: Optional[AgentMessage]
    description: str


def collapse_revisions(messages: Iterable[AgentMessage]) -> List[AgentMessage]:
    """Latest revision of every identifier, in first-arrival order."""
    latest: Dict[int, AgentMessage] = {}
    for message in messages:
        # dict keeps the insertion position of the first revision
        latest[message.ts] = message
    return list(latest.values())


def detect_agent_state(messages: Iterable[AgentMessage], engine_idle: bool = False) -> AgentStateInfo:
    """
    Classify the current agent state.

    Args:
        messages: Every message observed so far, in arrival order
        engine_idle: The engine reported it is idle (only consulted when a
            `say` is the latest message)
    """
    history = collapse_revisions(messages)

    if not history:
        return AgentStateInfo(
            state=AgentLoopState.IDLE,
            is_waiting_for_input=False,
            is_running=False,
            is_streaming=False,
            current_ask=None,
            required_action=RequiredAction.START_TASK,
            last_message_ts=None,
            last_message=None,
            description="Ready",
        )

    last = history[-1]

    if last.partial:
        return AgentStateInfo(
            state=AgentLoopState.RUNNING,
            is_waiting_for_input=False,
            is_running=True,
            is_streaming=True,
            current_ask=None,
            required_action=RequiredAction.NONE,
            last_message_ts=last.ts,
            last_message=last,
            description="The agent is streaming a response.",
        )

    if isinstance(last, AskMessage):
        action, description = _IDLE_ASKS.get(
            last.ask, (RequiredAction.ANSWER, "The agent is waiting for input.")
        )
        return AgentStateInfo(
            state=AgentLoopState.IDLE,
            is_waiting_for_input=True,
            is_running=False,
            is_streaming=False,
            current_ask=last.ask,
            required_action=action,
            last_message_ts=last.ts,
            last_message=last,
            description=description,
        )

    if engine_idle:
        return AgentStateInfo(
            state=AgentLoopState.IDLE,
            is_waiting_for_input=False,
            is_running=False,
            is_streaming=False,
            current_ask=None,
            required_action=RequiredAction.NONE,
            last_message_ts=last.ts,
            last_message=last,
            description="The agent is idle.",
        )

    return AgentStateInfo(
        state=AgentLoopState.RUNNING,
        is_waiting_for_input=False,
        is_running=True,
        is_streaming=False,
        current_ask=None,
        required_action=RequiredAction.NONE,
        last_message_ts=last.ts,
        last_message=last,
        description="The agent is working.",
    )
