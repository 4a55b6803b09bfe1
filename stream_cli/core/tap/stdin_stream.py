"""
Stdin Command Loop: the control side of stream-json mode.

Reads one JSON command per line from stdin and drives the engine:

    IDLE --start--> RUNNING --(cancel | task finished)--> IDLE
    any  --shutdown--> TERMINATING

Every command is answered on stdout with `control` events correlated by
`requestId`: `ack` when accepted, exactly one `done` when finished, or a single
`error` when rejected. Bad input never stops the loop.
"""

import asyncio
import sys
import threading
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional

from pydantic import ValidationError

from stream_backend.engine.host import ExtensionHost
from stream_backend.utils.logger import Logger

from ..agent_state import COMPLETION_ASKS
from ..client import AgentClient
from .exceptions import ProtocolError
from .protocol import (
    COMMAND_NAMES,
    CancelCommand,
    MessageCommand,
    PingCommand,
    ShutdownCommand,
    StartCommand,
    parse_control_message,
    validate_command,
)

if TYPE_CHECKING:
    from ..json_event_emitter import JsonEventEmitter


class StreamState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATING = "terminating"


# ---------------------------------------------------------------------------
# Stdin reader thread
# ---------------------------------------------------------------------------

class StdinReader:
    """
    Background thread that reads stdin line-by-line and hands each line to the
    event loop. Iterate it with `async for`; iteration ends at EOF.

    The thread is a daemon so a blocked read never holds up process exit.
    """

    def __init__(self, stream=None):
        self._stream = stream or sys.stdin
        self._lines: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._reader_loop, args=(loop,), daemon=True, name="stdin-reader")
        self._thread.start()

    def _reader_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            for line in self._stream:
                loop.call_soon_threadsafe(self._lines.put_nowait, line)
        except (OSError, ValueError) as e:
            # stdin closed or broken pipe
            Logger.warning(f"[StdinReader] stdin read failed: {e}")
        finally:
            try:
                loop.call_soon_threadsafe(self._lines.put_nowait, None)
            except RuntimeError:
                # Event loop already closed
                pass

    def __aiter__(self) -> "StdinReader":
        return self

    async def __anext__(self) -> str:
        if self._thread is None:
            self.start()
        line = await self._lines.get()
        if line is None:
            raise StopAsyncIteration
        return line


# ---------------------------------------------------------------------------
# Command loop
# ---------------------------------------------------------------------------

class StdinCommandLoop:
    """
    Dispatches stdin commands in strict arrival order.

    Args:
        host: Engine the commands act on
        client: Client consuming the engine channel (drained before each `done`)
        emitter: stream-json emitter used for control events
        set_request_id: Called with the requestId whose task is being serviced
            (None when idle); output events are stamped with it
        lines: Async iterator of input lines (defaults to a StdinReader)
    """

    def __init__(
        self,
        host: ExtensionHost,
        client: AgentClient,
        emitter: "JsonEventEmitter",
        set_request_id: Optional[Callable[[Optional[str]], None]] = None,
        lines: Optional[AsyncIterator[str]] = None,
    ):
        self.host = host
        self.client = client
        self.emitter = emitter
        self._set_request_id = set_request_id
        self._lines = lines

        self.state = StreamState.IDLE
        self.current_request_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    # -- main loop ----------------------------------------------------------

    async def run(self) -> None:
        """Consume input until EOF or shutdown, then wait for the active task."""
        lines = self._lines if self._lines is not None else StdinReader()

        async for line in lines:
            await self.handle_line(line)
            if self.state is StreamState.TERMINATING:
                break

        if self._task is not None:
            Logger.info("[StdinCommandLoop] End of input, waiting for the active task")
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait for the active task (if any) to finish and report `done`."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def handle_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            command = self._parse(line)
            await self._dispatch(command)
        except ProtocolError as e:
            Logger.warning(f"[StdinCommandLoop] Rejected command ({e.code}): {e.message}")
            self.emitter.emit_control(
                "error", request_id=e.request_id, command=e.command, success=False, code=e.code, content=e.message
            )
        except Exception as e:
            Logger.error(f"[StdinCommandLoop] Command failed: {e}")
            self.emitter.emit_control(
                "error", request_id=self._best_effort_request_id(line), success=False, code="command_failed",
                content=str(e) or type(e).__name__,
            )

    @staticmethod
    def _best_effort_request_id(line: str) -> Optional[str]:
        try:
            data = parse_control_message(line)
        except ValueError:
            return None
        request_id = data.get("requestId") if isinstance(data, dict) else None
        return request_id if isinstance(request_id, str) and request_id else None

    def _parse(self, line: str):
        try:
            data = parse_control_message(line)
        except ValueError as e:
            raise ProtocolError("invalid_json", f"Invalid JSON: {e}")

        if not isinstance(data, dict):
            raise ProtocolError("invalid_command", "Command must be a JSON object")

        request_id = data.get("requestId")
        request_id = request_id if isinstance(request_id, str) and request_id else None
        name = data.get("command") if isinstance(data.get("command"), str) else None

        if self.state is StreamState.TERMINATING:
            raise ProtocolError("shutting_down", "CLI is shutting down", request_id, name)
        if request_id is None:
            raise ProtocolError("missing_request_id", "requestId is required", None, name)
        if name not in COMMAND_NAMES:
            raise ProtocolError("unknown_command", f"Unknown command: {data.get('command')!r}", request_id)

        try:
            return validate_command(data)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'][1:]) or name}: {err['msg']}" for err in e.errors()
            )
            raise ProtocolError("invalid_command", f"Invalid {name} command: {details}", request_id, name)

    async def _dispatch(self, command) -> None:
        if isinstance(command, StartCommand):
            self._start(command)
        elif isinstance(command, MessageCommand):
            self._message(command)
        elif isinstance(command, CancelCommand):
            await self._cancel(command)
        elif isinstance(command, PingCommand):
            self.emitter.emit_control("done", command.requestId, "ping", success=True, code="pong")
        elif isinstance(command, ShutdownCommand):
            await self._shutdown(command)

    # -- commands -----------------------------------------------------------

    def _start(self, command: StartCommand) -> None:
        if self.state is StreamState.RUNNING:
            raise ProtocolError(
                "task_already_running",
                f"A task is already running (requestId {self.current_request_id})",
                command.requestId,
                "start",
            )

        self.emitter.emit_control("ack", command.requestId, "start", success=True, code="accepted")
        self.client.reset()
        self.state = StreamState.RUNNING
        self._bind_request(command.requestId)
        self._task = asyncio.create_task(self._run_task(command), name=f"task-{command.requestId}")

    def _message(self, command: MessageCommand) -> None:
        if self.state is not StreamState.RUNNING:
            raise ProtocolError("no_active_task", "No active task to send a message to", command.requestId, "message")

        self.emitter.emit_control("ack", command.requestId, "message", success=True, code="accepted")
        try:
            self.host.send_to_extension({"type": "queueMessage", "text": command.prompt})
        except Exception as e:
            Logger.error(f"[StdinCommandLoop] Failed to queue message {command.requestId}: {e}")
            self.emitter.emit_control(
                "done", command.requestId, "message", success=False, code="message_failed",
                content=str(e) or type(e).__name__,
            )
            return
        self.emitter.emit_control("done", command.requestId, "message", success=True, code="queued")

    async def _cancel(self, command: CancelCommand) -> None:
        if self.state is not StreamState.RUNNING:
            raise ProtocolError("no_active_task", "No active task to cancel", command.requestId, "cancel")

        self.emitter.emit_control("ack", command.requestId, "cancel", success=True, code="accepted")
        await self._abort_task()
        self.emitter.emit_control("done", command.requestId, "cancel", success=True, code="cancelled")

    async def _shutdown(self, command: ShutdownCommand) -> None:
        self.emitter.emit_control("ack", command.requestId, "shutdown", success=True, code="accepted")
        self.state = StreamState.TERMINATING
        if self._task is not None:
            await self._abort_task()
        self.emitter.emit_control("done", command.requestId, "shutdown", success=True, code="shutdown")

    # -- task lifecycle -------------------------------------------------------

    async def _run_task(self, command: StartCommand) -> None:
        try:
            await self.host.run_task(command.prompt, command.configuration)
            await self.client.drain()
        except asyncio.CancelledError:
            await self._finish_task(command.requestId, False, "task_cancelled")
            return
        except Exception as e:
            Logger.error(f"[StdinCommandLoop] Task {command.requestId} failed: {e}")
            await self._finish_task(command.requestId, False, "task_failed", str(e) or type(e).__name__)
            return

        if self.client.state.current_ask in COMPLETION_ASKS:
            await self._finish_task(command.requestId, True, "task_completed")
        else:
            await self._finish_task(
                command.requestId, False, "task_failed", "Task ended without a completion result"
            )

    async def abort(self) -> None:
        """Cancel the active task (if any) and report its `done`."""
        await self._abort_task()

    async def _abort_task(self) -> None:
        task = self._task
        if task is None:
            return

        request_id = self.current_request_id
        try:
            self.host.send_to_extension({"type": "cancelTask"})
        except Exception as e:
            Logger.warning(f"[StdinCommandLoop] cancelTask failed: {e}")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        # Cancelled before it ever ran
        if self.current_request_id == request_id and request_id is not None:
            await self._finish_task(request_id, False, "task_cancelled")

    async def _finish_task(self, request_id: str, success: bool, code: str, content: Optional[str] = None) -> None:
        if self.current_request_id != request_id:
            return

        await self.client.drain()
        self.emitter.emit_control("done", request_id, "start", success=success, code=code, content=content)

        self._bind_request(None)
        self._task = None
        if self.state is StreamState.RUNNING:
            self.state = StreamState.IDLE

    def _bind_request(self, request_id: Optional[str]) -> None:
        self.current_request_id = request_id
        if self._set_request_id:
            self._set_request_id(request_id)

