"""
Stream Protocol: output event schema, stdin command schema, serialization helpers.

Transport: newline-delimited JSON over stdio.
- CLI stdout → harness: event stream (one compact JSON object per line)
- harness stdin → CLI: control commands (one JSON object per line)

Event content fields may contain newlines (e.g. code snippets); they are
JSON-escaped, so bare \\n as line delimiter is safe.
"""

import json
import sys
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

SCHEMA_VERSION = 1
PROTOCOL = "agent-stream-ndjson"

OUTPUT_FORMATS = ("text", "json", "stream-json")

EVENT_TYPES = (
    "system",
    "control",
    "queue",
    "assistant",
    "user",
    "tool_use",
    "tool_result",
    "thinking",
    "error",
    "result",
)

COMMAND_NAMES = ("start", "message", "cancel", "ping", "shutdown")

CONTROL_SUBTYPES = ("ack", "done", "error")


def is_valid_output_format(value: str) -> bool:
    return value in OUTPUT_FORMATS


# ---------------------------------------------------------------------------
# harness → CLI: Commands
# ---------------------------------------------------------------------------

class _CommandBase(BaseModel):
    # Unknown fields are ignored for forward compatibility
    model_config = ConfigDict(extra="ignore")

    requestId: str = Field(..., min_length=1)


class StartCommand(_CommandBase):
    command: Literal["start"]
    prompt: str
    configuration: Optional[Dict[str, Any]] = None


class MessageCommand(_CommandBase):
    command: Literal["message"]
    prompt: str


class CancelCommand(_CommandBase):
    command: Literal["cancel"]


class PingCommand(_CommandBase):
    command: Literal["ping"]


class ShutdownCommand(_CommandBase):
    command: Literal["shutdown"]


InputCommand = Annotated[
    Union[StartCommand, MessageCommand, CancelCommand, PingCommand, ShutdownCommand],
    Field(discriminator="command"),
]

_input_command_adapter = TypeAdapter(InputCommand)


def parse_control_message(line: str) -> Any:
    """Parse a single JSON line from stdin. Raises json.JSONDecodeError."""
    return json.loads(line.strip())


def validate_command(data: Any) -> Union[StartCommand, MessageCommand, CancelCommand, PingCommand, ShutdownCommand]:
    """Validate a decoded command object. Raises pydantic.ValidationError."""
    return _input_command_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# CLI → harness: Events
# ---------------------------------------------------------------------------

class ToolUse(BaseModel):
    name: str
    input: Optional[Dict[str, Any]] = None


class ToolResult(BaseModel):
    name: str
    output: Optional[str] = None
    error: Optional[str] = None


class Cost(BaseModel):
    """Usage summary. Accepts the engine's field names (cost, tokensIn, tokensOut)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    totalCost: Optional[float] = Field(None, validation_alias="cost")
    inputTokens: Optional[int] = Field(None, validation_alias="tokensIn")
    outputTokens: Optional[int] = Field(None, validation_alias="tokensOut")
    cacheWrites: Optional[int] = None
    cacheReads: Optional[int] = None

    def add(self, other: "Cost") -> "Cost":
        def plus(a, b):
            if a is None:
                return b
            if b is None:
                return a
            return a + b

        return Cost(
            totalCost=plus(self.totalCost, other.totalCost),
            inputTokens=plus(self.inputTokens, other.inputTokens),
            outputTokens=plus(self.outputTokens, other.outputTokens),
            cacheWrites=plus(self.cacheWrites, other.cacheWrites),
            cacheReads=plus(self.cacheReads, other.cacheReads),
        )

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class QueueItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    text: Optional[str] = None
    imageCount: Optional[int] = None
    timestamp: Optional[int] = None


class StreamEvent(BaseModel):
    """Any output line. Every field is optional and unknown fields pass through."""
    model_config = ConfigDict(extra="allow")

    type: Optional[Literal[EVENT_TYPES]] = None  # type: ignore[valid-type]
    subtype: Optional[str] = None
    requestId: Optional[str] = None
    command: Optional[Literal[COMMAND_NAMES]] = None  # type: ignore[valid-type]
    taskId: Optional[str] = None
    code: Optional[str] = None
    content: Optional[str] = None
    success: Optional[bool] = None
    id: Optional[int] = None
    done: Optional[bool] = None
    queueDepth: Optional[int] = None
    queue: Optional[List[QueueItem]] = None
    schemaVersion: Optional[int] = None
    protocol: Optional[str] = None
    capabilities: Optional[List[str]] = None
    tool_use: Optional[ToolUse] = None
    tool_result: Optional[ToolResult] = None
    cost: Optional[Cost] = None


class ControlEvent(StreamEvent):
    type: Literal["control"]
    subtype: Literal[CONTROL_SUBTYPES]  # type: ignore[valid-type]
    requestId: str = Field(..., min_length=1)


class FinalOutput(BaseModel):
    """The single object written in `json` output mode."""
    type: Literal["result"] = "result"
    success: bool
    content: Optional[str] = None
    cost: Optional[Cost] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)


def emit_event(event: dict, file=None) -> None:
    """Write a compact JSON event line to stdout (or given file) and flush it."""
    out = file or sys.stdout
    out.write(json.dumps(event, ensure_ascii=False, separators=(",", ":")) + "\n")
    out.flush()


# ---------------------------------------------------------------------------
# Helper: build specific events
# ---------------------------------------------------------------------------

def make_control_event(
    subtype: str,
    request_id: Optional[str] = None,
    command: Optional[str] = None,
    success: Optional[bool] = None,
    code: Optional[str] = None,
    content: Optional[str] = None,
) -> dict:
    """Build a control event dict. Absent values are omitted, not null."""
    event: Dict[str, Any] = {"type": "control", "subtype": subtype}
    if request_id:
        event["requestId"] = request_id
    if command:
        event["command"] = command
    if success is not None:
        event["success"] = success
    if code:
        event["code"] = code
    if content:
        event["content"] = content
    return event


def make_system_init(capabilities: List[str]) -> dict:
    return {
        "type": "system",
        "subtype": "init",
        "schemaVersion": SCHEMA_VERSION,
        "protocol": PROTOCOL,
        "capabilities": list(capabilities),
    }
