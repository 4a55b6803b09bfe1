"""
Agent Client

Single consumer of the engine channel. For every engine event it:
1. Keeps the message arena (latest revision per ts, arrival order)
2. Re-classifies the agent state and checks for task completion
3. Forwards MessageEvent / TaskCompletedEvent / QueueEvent / ErrorEvent on
   its own channel, which has exactly one consumer (the output emitter)

Task history snapshots found in extension messages are retained for resume.
"""

import asyncio
from typing import Any, Dict, List, Optional

from stream_backend.engine.history import HistoryItem, extract_task_history
from stream_backend.engine.host import ExtensionHost, HostError, HostExtensionMessage, HostMessage
from stream_backend.engine.messages import AgentMessage
from stream_backend.utils.logger import Logger

from .agent_state import AgentStateInfo, detect_agent_state
from .events import (
    ClientEvent,
    ErrorEvent,
    MessageEvent,
    QueueEvent,
    TaskCompletedEvent,
    task_completed,
)


class AgentClient:

    def __init__(self, host: ExtensionHost):
        self.host = host
        self.events: "asyncio.Queue[ClientEvent]" = asyncio.Queue()
        self.task_history: List[HistoryItem] = []
        self.has_task_history = False

        self._messages: Dict[int, AgentMessage] = {}
        self._state: AgentStateInfo = detect_agent_state([])
        self._completed_ts: Optional[int] = None
        self.completed = asyncio.Event()
        self._queue_snapshot: Optional[List[Dict[str, Any]]] = None
        self._pump: Optional[asyncio.Task] = None

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._pump is None:
            self._pump = asyncio.create_task(self._run(), name="agent-client")

    async def stop(self) -> None:
        if self._pump is None:
            return
        self._pump.cancel()
        try:
            await self._pump
        except asyncio.CancelledError:
            pass
        self._pump = None

    @property
    def is_running(self) -> bool:
        return self._pump is not None

    async def drain(self) -> None:
        """
        Wait until every event the engine produced so far has been handled downstream.

        Returns at once after stop(): nothing consumes the channel any more.
        """
        if self._pump is None:
            return
        await self.host.channel.join()
        await self.events.join()

    # -- state --------------------------------------------------------------

    @property
    def state(self) -> AgentStateInfo:
        return self._state

    @property
    def messages(self) -> List[AgentMessage]:
        return list(self._messages.values())

    def reset(self) -> None:
        """Forget the previous task's messages (a new task starts with an empty history)."""
        self._messages.clear()
        self._state = detect_agent_state([])
        self._completed_ts = None
        self.completed.clear()

    # -- channel processing -------------------------------------------------

    async def _run(self) -> None:
        while True:
            item = await self.host.channel.get()
            try:
                self.process(item)
            except Exception as e:
                Logger.error(f"[AgentClient] Failed to process {type(item).__name__}: {e}")
                self.events.put_nowait(ErrorEvent(e))
            finally:
                self.host.channel.task_done()

    def process(self, item) -> None:
        if isinstance(item, HostMessage):
            self._on_message(item.message)
        elif isinstance(item, HostExtensionMessage):
            self._on_extension_message(item.payload)
        elif isinstance(item, HostError):
            self.events.put_nowait(ErrorEvent(item.error))
        else:
            Logger.warning(f"[AgentClient] Unknown channel item {item!r}")

    def _on_message(self, message: AgentMessage) -> None:
        self._messages[message.ts] = message
        previous = self._state
        self._state = detect_agent_state(self._messages.values())

        self.events.put_nowait(MessageEvent(message))

        if task_completed(previous, self._state) and self._state.last_message_ts != self._completed_ts:
            self._completed_ts = self._state.last_message_ts
            self.completed.set()
            Logger.debug(f"[AgentClient] Task completed at ts={self._completed_ts}")
            self.events.put_nowait(TaskCompletedEvent(
                success=True,
                state_info=self._state,
                message=self._state.last_message,
            ))

    def _on_extension_message(self, payload: Dict[str, Any]) -> None:
        history = extract_task_history(payload)
        if history is not None:
            self.task_history = history
            self.has_task_history = True

        state = payload.get("state") if payload.get("type") == "state" else None
        if isinstance(state, dict) and isinstance(state.get("messageQueue"), list):
            queue = [q for q in state["messageQueue"] if isinstance(q, dict)]
            if queue != self._queue_snapshot:
                self._queue_snapshot = queue
                self.events.put_nowait(QueueEvent(queue))
