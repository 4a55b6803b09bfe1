"""
Agent Message Types

The engine reports its progress as a stream of loosely shaped records
({"ts", "type", "say" | "ask", "text", "partial"}). They are parsed into a
closed tagged union so every consumer handles a known set of cases:

    SayMessage(say=SayType.X)  - narrative output
    AskMessage(ask=AskType.X)  - a question or decision point

Revisions of one logical message share `ts`; the last revision has
partial=False.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class SayType(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    COMPLETION_RESULT = "completion_result"
    USER_FEEDBACK = "user_feedback"
    ERROR = "error"
    API_REQ_STARTED = "api_req_started"
    API_REQ_FINISHED = "api_req_finished"
    COMMAND_OUTPUT = "command_output"
    MCP_SERVER_RESPONSE = "mcp_server_response"
    CHECKPOINT_SAVED = "checkpoint_saved"
    UNKNOWN = "unknown"


class AskType(str, Enum):
    FOLLOWUP = "followup"
    COMMAND = "command"
    COMMAND_OUTPUT = "command_output"
    COMPLETION_RESULT = "completion_result"
    TOOL = "tool"
    API_REQ_FAILED = "api_req_failed"
    RESUME_TASK = "resume_task"
    RESUME_COMPLETED_TASK = "resume_completed_task"
    MISTAKE_LIMIT_REACHED = "mistake_limit_reached"
    BROWSER_ACTION_LAUNCH = "browser_action_launch"
    USE_MCP_SERVER = "use_mcp_server"
    UNKNOWN = "unknown"


def _coerce(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        return enum_cls.UNKNOWN


@dataclass(frozen=True)
class SayMessage:
    ts: int
    say: SayType
    text: str = ""
    partial: bool = False
    # Raw subtype as sent by the engine, kept when say is UNKNOWN
    raw_subtype: Optional[str] = None

    @property
    def type(self) -> str:
        return "say"

    @property
    def subtype(self) -> str:
        return self.raw_subtype or self.say.value


@dataclass(frozen=True)
class AskMessage:
    ts: int
    ask: AskType
    text: str = ""
    partial: bool = False
    raw_subtype: Optional[str] = None

    @property
    def type(self) -> str:
        return "ask"

    @property
    def subtype(self) -> str:
        return self.raw_subtype or self.ask.value


AgentMessage = Union[SayMessage, AskMessage]


def say(ts: int, kind: Union[SayType, str], text: str = "", partial: bool = False) -> SayMessage:
    """Shorthand constructor used by engines and tests."""
    subtype = _coerce(SayType, kind)
    return SayMessage(ts=ts, say=subtype, text=text, partial=partial,
                      raw_subtype=str(getattr(kind, "value", kind)) if subtype is SayType.UNKNOWN else None)


def ask(ts: int, kind: Union[AskType, str], text: str = "", partial: bool = False) -> AskMessage:
    subtype = _coerce(AskType, kind)
    return AskMessage(ts=ts, ask=subtype, text=text, partial=partial,
                      raw_subtype=str(getattr(kind, "value", kind)) if subtype is AskType.UNKNOWN else None)


def message_from_dict(data: Dict[str, Any]) -> AgentMessage:
    """
    Build an AgentMessage from the engine's dict form.

    Raises ValueError when `ts` is missing or `type` is neither say nor ask.
    """
    ts = data.get("ts")
    if not isinstance(ts, (int, float)):
        raise ValueError(f"message has no numeric ts: {data!r}")

    text = data.get("text") or ""
    partial = bool(data.get("partial", False))
    kind = data.get("type")

    if kind == "say":
        return say(int(ts), str(data.get("say", "")), text=text, partial=partial)
    if kind == "ask":
        return ask(int(ts), str(data.get("ask", "")), text=text, partial=partial)
    raise ValueError(f"unknown message type {kind!r}")


def message_to_dict(message: AgentMessage) -> Dict[str, Any]:
    d: Dict[str, Any] = {"ts": message.ts, "type": message.type, message.type: message.subtype}
    if message.text:
        d["text"] = message.text
    if message.partial:
        d["partial"] = True
    return d
