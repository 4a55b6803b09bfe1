"""
Print-mode runner.

Wires engine -> AgentClient -> output (JsonEventEmitter or TextOutput) and
runs one of three flows:

1. stdin stream mode: commands read from stdin drive the engine
2. resume: continue a task from the engine's task history
3. prompt: run a single task

Process lifetime:
- SIGINT exits 130, SIGTERM exits 143
- an unhandled error exits 1 after an `error` event
- with signal_only_exit the process parks after the flow ends (or fails)
  until a signal arrives
"""

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from stream_backend.engine.history import resolve_resume_task_id
from stream_backend.engine.host import ExtensionHost, load_host
from stream_backend.infra.config import Config
from stream_backend.utils.logger import Logger

from ..client import AgentClient
from ..json_event_emitter import JsonEventEmitter
from ..text_output import TextOutput
from .protocol import COMMAND_NAMES
from .stdin_stream import StdinCommandLoop

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SIGINT = 130
EXIT_SIGTERM = 143


@dataclass
class RunOptions:
    prompt: Optional[str] = None
    session_id: Optional[str] = None
    continue_session: bool = False
    workspace: Optional[str] = None
    output_format: str = "text"
    stdin_prompt_stream: bool = False
    signal_only_exit: bool = False
    oneshot: bool = False
    engine: Optional[str] = None
    engine_options: Dict[str, Any] = field(default_factory=dict)
    keepalive_interval: Optional[float] = None

    @property
    def is_resume(self) -> bool:
        return bool(self.session_id) or self.continue_session

    @property
    def use_json_output(self) -> bool:
        return self.output_format in ("json", "stream-json")


class StreamRunner:
    """
    Owns one engine for the lifetime of the process.

    Args:
        options: Parsed run options
        host: Pre-built engine (otherwise loaded from options.engine)
        stdout / stderr: Output sinks
        lines: Async line iterator replacing stdin in stream mode
    """

    def __init__(
        self,
        options: RunOptions,
        host: Optional[ExtensionHost] = None,
        stdout=None,
        stderr=None,
        lines=None,
    ):
        self.options = options
        self.host = host
        self.client: Optional[AgentClient] = None
        self._lines = lines
        self._request_id: Optional[str] = None
        self._stdin_loop: Optional[StdinCommandLoop] = None

        self.output: Union[JsonEventEmitter, TextOutput]
        if options.use_json_output:
            self.output = JsonEventEmitter(
                mode=options.output_format,
                stdout=stdout,
                request_id_provider=lambda: self._request_id,
            )
        else:
            self.output = TextOutput(stdout=stdout, stderr=stderr)

        self._exit: Optional[asyncio.Future] = None
        self._main_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._host_disposed = False

    # -- entry --------------------------------------------------------------

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        self._exit = loop.create_future()
        self._install_handlers(loop)

        try:
            self._main_task = asyncio.create_task(self._main(), name="runner-main")
            return await self._exit
        finally:
            self._remove_handlers(loop)
            if self._main_task is not None and not self._main_task.done():
                self._main_task.cancel()
                await asyncio.gather(self._main_task, return_exceptions=True)
            if self._stdin_loop is not None and not self._host_disposed:
                await self._stdin_loop.abort()
            await self._dispose_host()

    async def _main(self) -> None:
        try:
            if self.host is None:
                self.host = load_host(
                    self.options.engine or Config.ENGINE,
                    workspace=self.options.workspace,
                    **self.options.engine_options,
                )

            self.client = AgentClient(self.host)
            self.client.start()
            self.output.attach_to_client(self.client)

            await self.host.activate()

            if self.options.stdin_prompt_stream:
                await self._run_stdin_stream()
            elif self.options.is_resume:
                await self._run_resume()
            else:
                await self._run_prompt()

            await self.client.drain()
            self._flush()
            await self._dispose_host()

            if self.options.signal_only_exit:
                await self._park("Task loop completed")
            self._request_exit(EXIT_OK)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            Logger.error(f"[StreamRunner] {type(e).__name__}: {e}")
            self.emit_runtime_error(e)
            if self.client is not None:
                await self.client.drain()
            self._flush()
            await self._dispose_host()

            if self.options.signal_only_exit:
                await self._park("Task loop failed")
            self._request_exit(EXIT_ERROR)

    # -- flows --------------------------------------------------------------

    async def _run_stdin_stream(self) -> None:
        if not isinstance(self.output, JsonEventEmitter) or self.output.mode != "stream-json":
            raise RuntimeError("--stdin-prompt-stream requires --output-format=stream-json to emit control events")

        self.output.emit_system_init(list(COMMAND_NAMES))
        self._stdin_loop = StdinCommandLoop(
            self.host,
            self.client,
            self.output,
            set_request_id=self._set_request_id,
            lines=self._lines,
        )
        await self._stdin_loop.run()

    async def _run_resume(self) -> None:
        # The task-history snapshot arrives on the channel during activate()
        await self.client.drain()
        task_id = resolve_resume_task_id(
            self.client.task_history,
            self.host.workspace,
            self.options.session_id,
        )
        Logger.info(f"[StreamRunner] Resuming task {task_id}")
        await self.host.resume_task(task_id)

    async def _run_prompt(self) -> None:
        if not self.options.prompt:
            raise ValueError("No prompt provided")

        if isinstance(self.output, JsonEventEmitter):
            self.output.emit_system_init([])

        run = asyncio.create_task(self.host.run_task(self.options.prompt), name="run-task")
        if not self.options.oneshot:
            await run
            return

        # Return as soon as the task completes, even if the engine keeps going
        completed = asyncio.create_task(self.client.completed.wait(), name="task-completed")
        done, pending = await asyncio.wait({run, completed}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if run in done:
            run.result()

    # -- output ---------------------------------------------------------------

    def _set_request_id(self, request_id: Optional[str]) -> None:
        self._request_id = request_id

    def emit_runtime_error(self, error: BaseException, source: Optional[str] = None) -> None:
        if isinstance(self.output, JsonEventEmitter):
            self.output.emit_runtime_error(error, source)
        else:
            self.output.print_error(error, source)

    def _flush(self) -> None:
        if isinstance(self.output, JsonEventEmitter):
            self.output.flush()

    def _notice(self, text: str) -> None:
        if isinstance(self.output, TextOutput):
            self.output.notice(text)

    # -- lifetime -------------------------------------------------------------

    def _request_exit(self, code: int) -> None:
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(code)

    async def _park(self, reason: str) -> None:
        self._notice(f"{reason} (--signal-only-exit active; waiting for SIGINT/SIGTERM).")
        interval = self.options.keepalive_interval or Config.KEEPALIVE_INTERVAL
        while True:
            await asyncio.sleep(interval)
            Logger.debug("[StreamRunner] keep-alive")

    def shutdown(self, reason: str, exit_code: int) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True

        Logger.info(f"[StreamRunner] Received {reason}, shutting down (exit {exit_code})")
        self._notice(f"Received {reason}, shutting down...")

        if self.host is not None and not self._host_disposed:
            try:
                self.host.send_to_extension({"type": "cancelTask"})
            except Exception as e:
                Logger.warning(f"[StreamRunner] cancelTask failed during shutdown: {e}")
        self._request_exit(exit_code)

    async def _dispose_host(self) -> None:
        if self._host_disposed:
            return
        self._host_disposed = True

        self.output.detach()
        if self.client is not None:
            await self.client.stop()
        if self.host is not None:
            try:
                await self.host.dispose()
            except Exception as e:
                Logger.error(f"[StreamRunner] Engine dispose failed: {e}")

    # -- handlers -------------------------------------------------------------

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig, code in ((signal.SIGINT, EXIT_SIGINT), (signal.SIGTERM, EXIT_SIGTERM)):
            try:
                loop.add_signal_handler(sig, self.shutdown, sig.name, code)
            except (NotImplementedError, RuntimeError):
                Logger.warning(f"[StreamRunner] Cannot install handler for {sig.name}")
        loop.set_exception_handler(self._on_loop_error)

    def _remove_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        loop.set_exception_handler(None)

    def _on_loop_error(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception") or RuntimeError(context.get("message", "Unhandled event loop error"))
        Logger.error(f"[StreamRunner] Unhandled loop error: {context.get('message')}: {error}")
        self.emit_runtime_error(error, "unhandledException")

        if self.options.signal_only_exit:
            return
        self.shutdown("unhandledException", EXIT_ERROR)


def run(options: RunOptions) -> int:
    """Run the CLI flow to completion and return the process exit code."""
    return asyncio.run(StreamRunner(options).run())
