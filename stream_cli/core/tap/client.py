"""
Stream Client: harness-side interface for driving the CLI in stdin stream mode.

Spawns `agent-stream --print --output-format stream-json --stdin-prompt-stream`
as a child process, reads its event stream from stdout, and sends commands via
stdin.

Usage:
    client = StreamClient(workspace="/path/to/project")
    client.start()

    request_id = client.start_task("Refactor this function")
    for event in client.iter_events():
        if event.get("type") == "control" and event.get("subtype") == "done":
            break

    client.shutdown()
    client.stop()
"""

import json
import os
import queue
import subprocess
import sys
import threading
import uuid
from typing import Any, Callable, Dict, Generator, List, Optional

from pydantic import ValidationError

from .protocol import ControlEvent, StreamEvent


class StreamClient:
    """
    Harness-side stream client. Manages the CLI subprocess lifecycle.
    """

    def __init__(
        self,
        workspace: Optional[str] = None,
        engine: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
        python_executable: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_event: Optional[Callable[[dict], None]] = None,
    ):
        self.workspace = workspace or os.getcwd()
        self.engine = engine
        self.extra_args = list(extra_args or [])
        self.python_executable = python_executable or sys.executable
        self.env = env
        self.on_event = on_event

        self._proc: Optional[subprocess.Popen] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._event_queue: "queue.Queue[Optional[dict]]" = queue.Queue()
        self._alive = False

    def start(self) -> None:
        """Spawn the CLI subprocess."""
        cmd = [
            self.python_executable, "-m", "stream_cli.cli",
            "--print",
            "--output-format", "stream-json",
            "--stdin-prompt-stream",
            "--workspace", self.workspace,
        ]
        if self.engine:
            cmd.extend(["--engine", self.engine])
        cmd.extend(self.extra_args)

        self._proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            cwd=self.workspace,
            env=self.env,
        )
        self._alive = True

        # Background thread to read CLI stdout
        self._reader_thread = threading.Thread(target=self._read_events, daemon=True)
        self._reader_thread.start()

    def _read_events(self) -> None:
        """Background thread: read CLI stdout, parse JSON events, enqueue."""
        try:
            for line in self._proc.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = StreamEvent.model_validate_json(line).model_dump(exclude_unset=True)
                except ValidationError:
                    # not a protocol line
                    continue
                self._event_queue.put(event)
                if self.on_event:
                    self.on_event(event)
        except (OSError, ValueError):
            pass
        finally:
            self._alive = False
            self._event_queue.put(None)  # Sentinel

    # -- Sending commands ---------------------------------------------------

    def send(self, command: Dict[str, Any]) -> None:
        """Write one JSON command line to CLI stdin."""
        if self._proc and self._proc.stdin and self._proc.poll() is None:
            try:
                self._proc.stdin.write(json.dumps(command, ensure_ascii=False) + "\n")
                self._proc.stdin.flush()
            except (BrokenPipeError, OSError):
                pass

    def _command(self, name: str, request_id: Optional[str] = None, **fields: Any) -> str:
        request_id = request_id or uuid.uuid4().hex[:12]
        command = {"command": name, "requestId": request_id}
        command.update({k: v for k, v in fields.items() if v is not None})
        self.send(command)
        return request_id

    def start_task(self, prompt: str, configuration: Optional[Dict[str, Any]] = None, request_id: Optional[str] = None) -> str:
        """Send `start`. Returns the requestId."""
        return self._command("start", request_id, prompt=prompt, configuration=configuration)

    def send_message(self, prompt: str, request_id: Optional[str] = None) -> str:
        """Send `message` into the running task. Returns the requestId."""
        return self._command("message", request_id, prompt=prompt)

    def cancel(self, request_id: Optional[str] = None) -> str:
        return self._command("cancel", request_id)

    def ping(self, request_id: Optional[str] = None) -> str:
        return self._command("ping", request_id)

    def shutdown(self, request_id: Optional[str] = None) -> str:
        return self._command("shutdown", request_id)

    # -- Event consumption --------------------------------------------------

    def iter_events(self, timeout: Optional[float] = None) -> Generator[dict, None, None]:
        """
        Iterate over events from the CLI. Blocks until an event is available.
        Ends when the CLI process exits.
        """
        while self._alive or not self._event_queue.empty():
            try:
                event = self._event_queue.get(timeout=timeout)
            except queue.Empty:
                continue
            if event is None:
                return
            yield event

    def next_event(self, timeout: float = 30.0) -> Optional[dict]:
        """Get the next event, or None on timeout."""
        try:
            return self._event_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def wait_for_done(self, request_id: str, timeout: float = 30.0) -> Optional[dict]:
        """
        Collect events until the `done` (or `error`) control event for
        `request_id`. Returns that event, or None on timeout / exit.
        """
        while True:
            event = self.next_event(timeout=timeout)
            if event is None:
                return None
            if event.get("type") != "control" or event.get("requestId") != request_id:
                continue
            if ControlEvent.model_validate(event).subtype in ("done", "error"):
                return event

    # -- Lifecycle ----------------------------------------------------------

    def stop(self, timeout: float = 5.0) -> Optional[int]:
        """Close stdin (EOF) and wait for the CLI to exit. Returns the exit code."""
        if self._proc is None:
            return None

        if self._proc.poll() is None:
            try:
                self._proc.stdin.close()
            except OSError:
                pass

            try:
                self._proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._proc.kill()
                self._proc.wait()

        self._alive = False
        return self._proc.returncode

    @property
    def is_alive(self) -> bool:
        return self._alive and self._proc is not None and self._proc.poll() is None
