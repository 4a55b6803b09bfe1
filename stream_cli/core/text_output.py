"""
Plain-text output for `--output-format text`.

Only finished messages are printed; partial revisions are skipped. Agent
output goes to stdout, diagnostics go to stderr.
"""

import asyncio
import sys
import traceback
from typing import Optional, Set

from rich.console import Console
from rich.markup import escape

from stream_backend.engine.messages import AgentMessage, AskMessage, AskType, SayMessage, SayType
from stream_backend.utils.logger import Logger

from .events import ClientEvent, ErrorEvent, MessageEvent, TaskCompletedEvent


class TextOutput:

    def __init__(self, stdout=None, stderr=None):
        self.console = Console(file=stdout or sys.stdout, highlight=False, soft_wrap=True)
        self.err_console = Console(file=stderr or sys.stderr, highlight=False, soft_wrap=True)
        self._printed: Set[int] = set()
        self._consumer: Optional[asyncio.Task] = None

    def attach_to_client(self, client) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume(client.events), name="text-output")

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
                Logger.error(f"[TextOutput] Failed to print {type(event).__name__}: {e}")
            finally:
                queue.task_done()

    def handle(self, event: ClientEvent) -> None:
        if isinstance(event, MessageEvent):
            self.print_message(event.message)
        elif isinstance(event, TaskCompletedEvent):
            self._printed.clear()
        elif isinstance(event, ErrorEvent):
            self.print_error(event.error)

    def print_message(self, message: AgentMessage) -> None:
        if message.partial or message.ts in self._printed or not message.text:
            return
        self._printed.add(message.ts)

        if isinstance(message, SayMessage):
            if message.say in (SayType.TEXT, SayType.COMPLETION_RESULT):
                self.console.print(escape(message.text))
            elif message.say is SayType.ERROR:
                self.err_console.print(f"[red]{escape(message.text)}[/red]")
            elif message.say is SayType.COMMAND_OUTPUT:
                self.console.print(f"[dim]{escape(message.text)}[/dim]")
        elif isinstance(message, AskMessage):
            if message.ask is AskType.COMMAND:
                self.console.print(f"[bold]$[/bold] {escape(message.text)}")
            elif message.ask is AskType.FOLLOWUP:
                self.console.print(f"[yellow]?[/yellow] {escape(message.text)}")
            elif message.ask in (AskType.API_REQ_FAILED, AskType.MISTAKE_LIMIT_REACHED):
                self.err_console.print(f"[red]{escape(message.text)}[/red]")

    def print_error(self, error: BaseException, source: Optional[str] = None) -> None:
        content = f"{source}: {error}" if source else str(error)
        self.err_console.print(f"[CLI] Error: {content}", markup=False)
        if error.__traceback__ is not None:
            self.err_console.print("".join(traceback.format_exception(type(error), error, error.__traceback__)), markup=False)

    def notice(self, text: str) -> None:
        self.err_console.print(f"[CLI] {text}", markup=False)
