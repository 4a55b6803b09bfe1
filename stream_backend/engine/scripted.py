"""
Scripted Engine

A deterministic stand-in for a real agent engine. It answers every prompt by
streaming an echo of it, so the whole protocol layer (partial revisions, cost
reports, completion text, queued follow-up messages, cancellation, resume) can
be exercised without a model provider.

Usage:
    agent-stream --print --output-format stream-json "hello"
    agent-stream --engine stream_backend.engine.scripted:ScriptedHost ...
"""

import asyncio
import itertools
import json
import time
import uuid
from typing import Any, Deque, Dict, List, Optional
from collections import deque

from stream_backend.engine.history import HistoryItem, history_snapshot_payload
from stream_backend.engine.host import ExtensionHost, TaskAbortedError
from stream_backend.engine.messages import AskType, SayType, ask, say
from stream_backend.utils.logger import Logger


class ScriptedHost(ExtensionHost):
    """
    Echo engine.

    Args:
        workspace: Workspace root reported in task history
        chunk_size: Characters added per partial revision
        delay: Seconds to sleep between revisions
        history: Pre-existing task history (for --continue / --session-id)
    """

    def __init__(
        self,
        workspace: Optional[str] = None,
        chunk_size: int = 8,
        delay: float = 0.0,
        history: Optional[List[HistoryItem]] = None,
        **options: Any,
    ):
        super().__init__(workspace=workspace, **options)
        self.chunk_size = max(1, chunk_size)
        self.delay = delay
        self.history: List[HistoryItem] = list(history or [])
        self._ts = itertools.count(int(time.time() * 1000))
        self._queue: Deque[Dict[str, Any]] = deque()
        self._cancel = asyncio.Event()
        self._active = False
        self._disposed = False

    # -- control surface ----------------------------------------------------

    async def activate(self) -> None:
        self._active = True
        self.publish_extension_message(history_snapshot_payload(self.history))

    async def run_task(self, prompt: str, configuration: Optional[Dict[str, Any]] = None) -> None:
        self._ensure_active()
        self._cancel.clear()

        item = HistoryItem(
            id=str(uuid.uuid4()),
            task=prompt,
            ts=int(time.time() * 1000),
            workspace=self.workspace,
            mode=(configuration or {}).get("mode"),
            status="active",
        )
        self.history.append(item)
        Logger.info(f"[ScriptedHost] run_task {item.id}")

        reply = f"Echo: {prompt}"
        await self._report_cost(prompt, reply)
        await self._stream(SayType.TEXT, reply)

        while self._queue:
            queued = self._queue.popleft()
            self._publish_queue_snapshot()
            text = queued.get("text", "")
            self.publish_message(say(next(self._ts), SayType.USER_FEEDBACK, text))
            await self._stream(SayType.TEXT, f"Echo: {text}")

        self.publish_message(say(next(self._ts), SayType.COMPLETION_RESULT, reply))
        self.publish_message(ask(next(self._ts), AskType.COMPLETION_RESULT, ""))

        item.status = "completed"
        self.publish_extension_message({
            "type": "taskHistoryUpdated",
            "taskHistory": [i.to_dict() for i in self.history],
        })

    async def resume_task(self, task_id: str) -> None:
        self._ensure_active()
        if not any(i.id == task_id for i in self.history):
            raise ValueError(f"Unknown task: {task_id}")
        Logger.info(f"[ScriptedHost] resume_task {task_id}")
        self.publish_message(ask(next(self._ts), AskType.RESUME_COMPLETED_TASK, ""))

    def send_to_extension(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "cancelTask":
            self._cancel.set()
        elif kind == "queueMessage":
            self._queue.append({
                "id": str(uuid.uuid4()),
                "text": message.get("text", ""),
                "timestamp": int(time.time() * 1000),
            })
            self._publish_queue_snapshot()
        else:
            Logger.debug(f"[ScriptedHost] ignoring extension message {kind!r}")

    async def dispose(self) -> None:
        self._disposed = True
        self._active = False

    # -- helpers ------------------------------------------------------------

    def _ensure_active(self) -> None:
        if not self._active:
            raise RuntimeError("Engine is not active")

    async def _pause(self) -> None:
        await asyncio.sleep(self.delay)
        if self._cancel.is_set():
            raise TaskAbortedError("Task cancelled")

    async def _stream(self, kind: SayType, text: str) -> None:
        ts = next(self._ts)
        for end in range(self.chunk_size, len(text), self.chunk_size):
            self.publish_message(say(ts, kind, text[:end], partial=True))
            await self._pause()
        self.publish_message(say(ts, kind, text))
        await self._pause()

    async def _report_cost(self, prompt: str, reply: str) -> None:
        usage = {
            "tokensIn": len(prompt.split()),
            "tokensOut": len(reply.split()),
            "cacheWrites": 0,
            "cacheReads": 0,
            "cost": 0.0,
        }
        self.publish_message(say(next(self._ts), SayType.API_REQ_STARTED, json.dumps(usage)))
        await self._pause()

    def _publish_queue_snapshot(self) -> None:
        self.publish_extension_message(
            history_snapshot_payload(self.history, {"messageQueue": list(self._queue)})
        )
