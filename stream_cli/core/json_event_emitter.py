"""
JSON Event Emitter

Turns agent messages and task completions into protocol events.

Modes:
- "stream-json": one compact JSON line per event, flushed immediately
- "json": events are collected and written once, as a single object, by flush()

Streaming rules:
- Every revision of a message shares its `ts`, which becomes the event `id`.
- Partial revisions emit only the text added since the previous revision
  (`content` is a delta). An unchanged partial revision emits nothing.
- The final revision emits a terminal event with `done: true`, the complete
  structured payload and no `content`. Text not yet sent is flushed as one
  last delta just before it.
- `say:completion_result` text is held back and used by the next `result`
  event when the completion message itself has no text.
"""

import asyncio
import json
import sys
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from stream_backend.engine.messages import AgentMessage, AskMessage, AskType, SayMessage, SayType
from stream_backend.utils.json_utils import parse_json_object
from stream_backend.utils.logger import Logger

from .events import ClientEvent, ErrorEvent, MessageEvent, QueueEvent, TaskCompletedEvent
from .tap.protocol import Cost, FinalOutput, QueueItem, emit_event, make_control_event, make_system_init

COMMAND_TOOL_NAME = "execute_command"
MCP_TOOL_NAME = "use_mcp_server"

# Bound on remembered finished ids (duplicate final revisions are dropped)
_FINISHED_LIMIT = 1024


@dataclass
class DeltaCacheEntry:
    """Per-message streaming state, evicted after the final revision."""
    text: str = ""
    parsed: Optional[Dict[str, Any]] = None
    tool_name: Optional[str] = None


def compute_delta(previous: str, current: str) -> str:
    """
    Text added between two revisions.

    Appends yield the new suffix. For snapshots edited before their tail
    (a JSON object growing inside its closing `"}`), the inserted middle
    segment is returned.
    """
    if current.startswith(previous):
        return current[len(previous):]

    limit = min(len(previous), len(current))
    prefix = 0
    while prefix < limit and previous[prefix] == current[prefix]:
        prefix += 1

    suffix = 0
    while (
        suffix < limit - prefix
        and previous[len(previous) - 1 - suffix] == current[len(current) - 1 - suffix]
    ):
        suffix += 1

    return current[prefix:len(current) - suffix]


class JsonEventEmitter:
    """
    Writes protocol events for one CLI process.

    Args:
        mode: "json" or "stream-json"
        stdout: Output sink (defaults to sys.stdout)
        request_id_provider: Returns the requestId currently being serviced,
            stamped onto every non-control event
    """

    def __init__(
        self,
        mode: str = "stream-json",
        stdout=None,
        request_id_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        if mode not in ("json", "stream-json"):
            raise ValueError(f"Unsupported JSON output mode: {mode}")

        self.mode = mode
        self._out = stdout or sys.stdout
        self._request_id_provider = request_id_provider

        self._cache: Dict[int, DeltaCacheEntry] = {}
        self._finished: "OrderedDict[int, str]" = OrderedDict()
        self._pending_completion_text: Optional[str] = None
        self._usage: Dict[int, Cost] = {}

        self._events: List[dict] = []
        self._last_result: Optional[dict] = None
        self._consumer: Optional[asyncio.Task] = None

    # -- client wiring ------------------------------------------------------

    def attach_to_client(self, client) -> None:
        """Become the single consumer of the client's event channel."""
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume(client.events), name="json-event-emitter")

    def detach(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None

    async def _consume(self, queue: "asyncio.Queue[ClientEvent]") -> None:
        while True:
            event = await queue.get()
            try:
                self.handle(event)
            except Exception as e:
                Logger.error(f"[JsonEventEmitter] Failed to handle {type(event).__name__}: {e}")
            finally:
                queue.task_done()

    def handle(self, event: ClientEvent) -> None:
        if isinstance(event, MessageEvent):
            self.handle_message(event.message)
        elif isinstance(event, TaskCompletedEvent):
            self.handle_task_completed(event)
        elif isinstance(event, QueueEvent):
            self.handle_queue(event.items)
        elif isinstance(event, ErrorEvent):
            self.handle_error(event.error)

    # -- output -------------------------------------------------------------

    def emit(self, event: dict) -> None:
        if event.get("type") != "control" and "requestId" not in event and self._request_id_provider:
            request_id = self._request_id_provider()
            if request_id:
                event["requestId"] = request_id

        if self.mode == "json":
            self._events.append(event)
        else:
            emit_event(event, file=self._out)

    def emit_system_init(self, capabilities: List[str]) -> None:
        if self.mode == "stream-json":
            self.emit(make_system_init(capabilities))

    def emit_control(
        self,
        subtype: str,
        request_id: Optional[str] = None,
        command: Optional[str] = None,
        success: Optional[bool] = None,
        code: Optional[str] = None,
        content: Optional[str] = None,
    ) -> None:
        self.emit(make_control_event(subtype, request_id, command, success, code, content))

    def emit_runtime_error(self, error: BaseException, source: Optional[str] = None) -> None:
        content = f"{source}: {error}" if source else str(error)
        self.emit({"type": "error", "id": int(time.time() * 1000), "content": content})

    def flush(self) -> None:
        """Write the single final object in json mode. No-op in stream-json mode."""
        if self.mode != "json":
            return

        result = self._last_result or {}
        final = FinalOutput(
            success=bool(result.get("success", False)),
            content=result.get("content"),
            cost=Cost.model_validate(result["cost"]) if result.get("cost") else None,
            events=self._events,
        )
        self._out.write(json.dumps(final.model_dump(exclude_none=True), ensure_ascii=False) + "\n")
        self._out.flush()
        self._events = []

    # -- messages -----------------------------------------------------------

    def handle_message(self, message: AgentMessage) -> None:
        if isinstance(message, SayMessage):
            self._handle_say(message)
        else:
            self._handle_ask(message)

    def _handle_say(self, message: SayMessage) -> None:
        kind = message.say

        if kind is SayType.TEXT:
            self._stream(message, "assistant")
        elif kind is SayType.REASONING:
            self._stream(message, "thinking")
        elif kind is SayType.USER_FEEDBACK:
            self._stream(message, "user")
        elif kind is SayType.ERROR:
            self._stream(message, "error")
        elif kind is SayType.COMPLETION_RESULT:
            if message.text.strip():
                self._pending_completion_text = message.text
        elif kind is SayType.API_REQ_STARTED:
            self._record_usage(message)
        elif kind is SayType.COMMAND_OUTPUT:
            self._stream_tool_result(message, COMMAND_TOOL_NAME)
        elif kind is SayType.MCP_SERVER_RESPONSE:
            self._stream_tool_result(message, MCP_TOOL_NAME)
        else:
            Logger.debug(f"[JsonEventEmitter] say:{message.subtype} not emitted")

    def _handle_ask(self, message: AskMessage) -> None:
        kind = message.ask

        if kind is AskType.COMMAND:
            self._stream(
                message,
                "tool_use",
                subtype="command",
                delta_fields=lambda delta, entry: {
                    "tool_use": {"name": COMMAND_TOOL_NAME, "input": {"command": delta}}
                },
                final_fields=lambda text, entry: {
                    "tool_use": {"name": COMMAND_TOOL_NAME, "input": {"command": text}}
                },
            )
        elif kind is AskType.TOOL:
            self._stream(
                message,
                "tool_use",
                subtype="tool",
                delta_fields=self._tool_delta_fields,
                final_fields=self._tool_final_fields,
                on_revision=self._parse_tool_snapshot,
            )
        elif kind is AskType.COMMAND_OUTPUT:
            self._stream_tool_result(message, COMMAND_TOOL_NAME)
        elif kind is AskType.FOLLOWUP:
            self._stream(message, "assistant", subtype="followup")
        elif kind in (AskType.API_REQ_FAILED, AskType.MISTAKE_LIMIT_REACHED):
            self._stream(message, "error", subtype=kind.value)
        elif kind in (AskType.COMPLETION_RESULT, AskType.RESUME_COMPLETED_TASK):
            # Reported through handle_task_completed
            self._cache.pop(message.ts, None)
        else:
            Logger.debug(f"[JsonEventEmitter] ask:{message.subtype} not emitted")

    def _stream(
        self,
        message: AgentMessage,
        event_type: str,
        subtype: Optional[str] = None,
        delta_fields: Optional[Callable[[str, DeltaCacheEntry], dict]] = None,
        final_fields: Optional[Callable[[str, DeltaCacheEntry], dict]] = None,
        on_revision: Optional[Callable[[str, DeltaCacheEntry], None]] = None,
    ) -> None:
        text = message.text or ""

        if not message.partial and self._finished.get(message.ts) == text:
            return

        entry = self._cache.get(message.ts)
        if entry is None:
            entry = self._cache[message.ts] = DeltaCacheEntry()

        if message.partial and text == entry.text:
            return

        delta = compute_delta(entry.text, text)
        entry.text = text
        if on_revision:
            on_revision(text, entry)

        base: Dict[str, Any] = {"type": event_type, "id": message.ts}
        if subtype:
            base["subtype"] = subtype

        if delta:
            event = dict(base, content=delta)
            if delta_fields:
                event.update(delta_fields(delta, entry))
            self.emit(event)

        if message.partial:
            return

        terminal = dict(base)
        if final_fields:
            terminal.update(final_fields(text, entry))
        terminal["done"] = True
        self.emit(terminal)

        del self._cache[message.ts]
        self._finished[message.ts] = text
        while len(self._finished) > _FINISHED_LIMIT:
            self._finished.popitem(last=False)

    def _stream_tool_result(self, message: AgentMessage, tool_name: str) -> None:
        self._stream(
            message,
            "tool_result",
            delta_fields=lambda delta, entry: {"tool_result": {"name": tool_name, "output": delta}},
            final_fields=lambda text, entry: {"tool_result": {"name": tool_name, "output": text}},
        )

    # -- structured tool payloads -------------------------------------------

    @staticmethod
    def _parse_tool_snapshot(text: str, entry: DeltaCacheEntry) -> None:
        parsed = parse_json_object(text)
        if parsed is None:
            return
        entry.parsed = parsed
        if entry.tool_name is None and isinstance(parsed.get("tool"), str) and parsed["tool"]:
            entry.tool_name = parsed["tool"]

    @staticmethod
    def _tool_delta_fields(delta: str, entry: DeltaCacheEntry) -> dict:
        if entry.tool_name:
            return {"tool_use": {"name": entry.tool_name}}
        return {}

    @staticmethod
    def _tool_final_fields(text: str, entry: DeltaCacheEntry) -> dict:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = entry.parsed
        if not isinstance(payload, dict):
            payload = {"raw": text}

        name = payload.get("tool") if isinstance(payload.get("tool"), str) else None
        return {"tool_use": {"name": name or entry.tool_name or "unknown", "input": payload}}

    # -- usage --------------------------------------------------------------

    def _record_usage(self, message: SayMessage) -> None:
        if message.partial or not message.text:
            return
        try:
            data = json.loads(message.text)
            # Later revisions of the same request replace earlier figures
            self._usage[message.ts] = Cost.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            Logger.debug(f"[JsonEventEmitter] Unreadable usage payload at ts={message.ts}: {e}")

    def _total_usage(self) -> Cost:
        total = Cost()
        for cost in self._usage.values():
            total = total.add(cost)
        return total

    # -- completion / queue / errors ------------------------------------------

    def handle_task_completed(self, event: TaskCompletedEvent) -> None:
        """
        Emit the `result` event for a finished task.

        The completing message's own text wins; the held-back completion text
        is the fallback. Both the held-back text and usage are cleared on
        every call, used or not.
        """
        own_text = event.message.text if event.message is not None else ""
        content = own_text if own_text and own_text.strip() else self._pending_completion_text
        self._pending_completion_text = None

        if event.cost:
            cost = Cost.model_validate(event.cost)
        else:
            cost = self._total_usage()
        self._usage.clear()

        result: Dict[str, Any] = {"type": "result", "success": event.success}
        if event.message is not None:
            result["id"] = event.message.ts
        if content:
            result["content"] = content
        if not cost.is_empty():
            result["cost"] = cost.model_dump(exclude_none=True)

        self._last_result = result
        self.emit(result)

    def handle_queue(self, items: List[Dict[str, Any]]) -> None:
        queue = []
        for item in items:
            try:
                queue.append(QueueItem.model_validate(item).model_dump(exclude_none=True))
            except ValidationError:
                Logger.debug(f"[JsonEventEmitter] Dropping malformed queue item {item!r}")
        self.emit({"type": "queue", "subtype": "snapshot", "queueDepth": len(queue), "queue": queue})

    def handle_error(self, error: BaseException) -> None:
        self.emit({"type": "error", "subtype": "engine", "content": str(error) or type(error).__name__})
