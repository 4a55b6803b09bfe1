"""Tests for the print-mode runner flows."""

import asyncio
import json
from io import StringIO
from typing import Any, Dict, Optional

import pytest

from stream_backend.engine.history import HistoryItem
from stream_backend.engine.host import ExtensionHost
from stream_backend.engine.messages import SayType, say
from stream_backend.engine.scripted import ScriptedHost
from stream_cli.core.tap.protocol import COMMAND_NAMES
from stream_cli.core.tap.runner import EXIT_ERROR, EXIT_OK, RunOptions, StreamRunner


def _events(stdout: StringIO):
    return [json.loads(line) for line in stdout.getvalue().split("\n") if line]


async def _lines(*lines):
    for line in lines:
        yield line


async def _lines_then_block(*lines):
    for line in lines:
        yield line
    await asyncio.Event().wait()


class BlockingHost(ExtensionHost):
    """Engine whose task never ends and which reports one last message while disposing."""

    def __init__(self):
        super().__init__()
        self.sent = []
        self.disposed = False

    async def activate(self) -> None:
        pass

    async def run_task(self, prompt: str, configuration: Optional[Dict[str, Any]] = None) -> None:
        self.publish_message(say(1, SayType.TEXT, f"working on {prompt}"))
        await asyncio.Event().wait()

    async def resume_task(self, task_id: str) -> None:
        pass

    def send_to_extension(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)

    async def dispose(self) -> None:
        self.publish_message(say(2, SayType.ERROR, "engine disposed"))
        self.disposed = True


class TestPromptFlow:

    @pytest.mark.asyncio
    async def test_stream_json_prompt(self, tmp_path):
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(prompt="hi", output_format="stream-json", workspace=str(tmp_path)),
            host=ScriptedHost(workspace=str(tmp_path)),
            stdout=stdout,
        )

        code = await runner.run()

        events = _events(stdout)
        assert code == EXIT_OK
        assert events[0]["type"] == "system"
        assert [e["type"] for e in events[1:]] == ["assistant", "assistant", "result"]
        result = events[-1]
        assert result["success"] is True
        assert result["content"] == "Echo: hi"
        assert result["cost"]["inputTokens"] == 1
        assert result["cost"]["outputTokens"] == 2

    @pytest.mark.asyncio
    async def test_json_mode_writes_one_object(self, tmp_path):
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(prompt="hi", output_format="json", engine="stream_backend.engine.scripted:ScriptedHost",
                       workspace=str(tmp_path)),
            stdout=stdout,
        )

        code = await runner.run()

        output = _events(stdout)
        assert code == EXIT_OK
        assert len(output) == 1
        assert output[0]["type"] == "result"
        assert output[0]["success"] is True
        assert output[0]["content"] == "Echo: hi"

    @pytest.mark.asyncio
    async def test_oneshot_returns_on_completion(self, tmp_path):
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(prompt="hi", output_format="stream-json", oneshot=True),
            host=ScriptedHost(workspace=str(tmp_path)),
            stdout=stdout,
        )

        assert await runner.run() == EXIT_OK
        assert _events(stdout)[-1]["type"] == "result"

    @pytest.mark.asyncio
    async def test_text_mode_prints_plain_text(self, tmp_path):
        stdout, stderr = StringIO(), StringIO()
        runner = StreamRunner(
            RunOptions(prompt="hi", output_format="text"),
            host=ScriptedHost(workspace=str(tmp_path), chunk_size=2),
            stdout=stdout,
            stderr=stderr,
        )

        assert await runner.run() == EXIT_OK
        assert "Echo: hi" in stdout.getvalue()
        assert "{" not in stdout.getvalue()

    @pytest.mark.asyncio
    async def test_missing_prompt_is_an_error(self, tmp_path):
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(output_format="stream-json"),
            host=ScriptedHost(workspace=str(tmp_path)),
            stdout=stdout,
        )

        assert await runner.run() == EXIT_ERROR
        error = _events(stdout)[-1]
        assert error["type"] == "error"
        assert error["content"] == "No prompt provided"

    @pytest.mark.asyncio
    async def test_text_mode_errors_go_to_stderr(self, tmp_path):
        stdout, stderr = StringIO(), StringIO()
        runner = StreamRunner(
            RunOptions(engine="not-an-import-path", prompt="hi"),
            stdout=stdout,
            stderr=stderr,
        )

        assert await runner.run() == EXIT_ERROR
        assert stdout.getvalue() == ""
        assert "[CLI] Error: Engine must be given as 'module:attr'" in stderr.getvalue()


class TestResumeFlow:

    @pytest.mark.asyncio
    async def test_continue_resumes_most_recent_task(self, tmp_path):
        workspace = str(tmp_path)
        host = ScriptedHost(workspace=workspace, history=[
            HistoryItem(id="t1", task="old", ts=1, workspace=workspace),
            HistoryItem(id="t2", task="newer", ts=2, workspace=workspace),
        ])
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(continue_session=True, output_format="stream-json", workspace=workspace),
            host=host,
            stdout=stdout,
        )

        assert await runner.run() == EXIT_OK
        assert runner.client.state.current_ask.value == "resume_completed_task"
        assert _events(stdout)[-1]["type"] == "result"

    @pytest.mark.asyncio
    async def test_unknown_session_id(self, tmp_path):
        workspace = str(tmp_path)
        host = ScriptedHost(workspace=workspace, history=[HistoryItem(id="t1", task="old", ts=1, workspace=workspace)])
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(session_id="missing", output_format="stream-json", workspace=workspace),
            host=host,
            stdout=stdout,
        )

        assert await runner.run() == EXIT_ERROR
        assert _events(stdout)[-1]["content"] == "Session not found in task history: missing"

    @pytest.mark.asyncio
    async def test_nothing_to_continue(self, tmp_path):
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(continue_session=True, output_format="stream-json"),
            host=ScriptedHost(workspace=str(tmp_path)),
            stdout=stdout,
        )

        assert await runner.run() == EXIT_ERROR
        assert "No previous tasks found" in _events(stdout)[-1]["content"]


class TestStdinStreamFlow:

    @pytest.mark.asyncio
    async def test_commands_from_input(self, tmp_path):
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(output_format="stream-json", stdin_prompt_stream=True),
            host=ScriptedHost(workspace=str(tmp_path)),
            stdout=stdout,
            lines=_lines(
                '{"command":"ping","requestId":"p1"}\n',
                '{"command":"start","requestId":"s1","prompt":"go"}\n',
            ),
        )

        assert await runner.run() == EXIT_OK

        events = _events(stdout)
        assert events[0]["type"] == "system"
        assert events[0]["capabilities"] == list(COMMAND_NAMES)
        assert events[1]["code"] == "pong"
        result = [e for e in events if e["type"] == "result"][0]
        assert result["requestId"] == "s1"
        assert result["content"] == "Echo: go"
        assert events[-1]["subtype"] == "done"
        assert events[-1]["code"] == "task_completed"

    @pytest.mark.asyncio
    async def test_requires_stream_json(self, tmp_path):
        stderr = StringIO()
        runner = StreamRunner(
            RunOptions(output_format="text", stdin_prompt_stream=True),
            host=ScriptedHost(workspace=str(tmp_path)),
            stdout=StringIO(),
            stderr=stderr,
            lines=_lines(),
        )

        assert await runner.run() == EXIT_ERROR
        assert "--stdin-prompt-stream requires --output-format=stream-json" in stderr.getvalue()


class TestShutdown:

    @pytest.mark.asyncio
    async def test_signal_shutdown_exit_code(self, tmp_path):
        host = ScriptedHost(workspace=str(tmp_path), delay=60)
        runner = StreamRunner(
            RunOptions(prompt="hi", output_format="stream-json"),
            host=host,
            stdout=StringIO(),
        )
        asyncio.get_running_loop().call_later(0.05, runner.shutdown, "SIGTERM", 143)

        assert await runner.run() == 143
        assert host._disposed is True

    @pytest.mark.asyncio
    async def test_signal_during_stdin_task_cancels_it_and_exits(self):
        host = BlockingHost()
        stdout = StringIO()
        runner = StreamRunner(
            RunOptions(output_format="stream-json", stdin_prompt_stream=True),
            host=host,
            stdout=stdout,
            lines=_lines_then_block('{"command":"start","requestId":"s1","prompt":"go"}\n'),
        )
        asyncio.get_running_loop().call_later(0.05, runner.shutdown, "SIGINT", 130)

        assert await asyncio.wait_for(runner.run(), timeout=5) == 130

        events = _events(stdout)
        assert host.disposed is True
        assert {"type": "cancelTask"} in host.sent
        assert any(e["type"] == "assistant" and e["content"] == "working on go" for e in events)
        done = [e for e in events if e["type"] == "control" and e["subtype"] == "done"]
        assert [(d["requestId"], d["code"]) for d in done] == [("s1", "task_cancelled")]
