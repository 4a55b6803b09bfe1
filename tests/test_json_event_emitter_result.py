"""Tests for JsonEventEmitter result emission, queue events and json mode."""

import asyncio
import json
from io import StringIO

import pytest

from stream_backend.engine.messages import AskType, SayType, ask, say
from stream_cli.core.agent_state import detect_agent_state
from stream_cli.core.events import ErrorEvent, MessageEvent, QueueEvent, TaskCompletedEvent
from stream_cli.core.json_event_emitter import JsonEventEmitter


def _lines(stdout: StringIO):
    return [json.loads(line) for line in stdout.getvalue().split("\n") if line]


def _completed(ts: int, text: str = "", cost=None) -> TaskCompletedEvent:
    message = ask(ts, AskType.COMPLETION_RESULT, text)
    return TaskCompletedEvent(
        success=True,
        state_info=detect_agent_state([message]),
        message=message,
        cost=cost,
    )


class TestResultContent:

    def test_current_completion_text_beats_cached_text(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_message(say(100, SayType.COMPLETION_RESULT, "FIRST"))
        emitter.handle_task_completed(_completed(101))
        emitter.handle_task_completed(_completed(102, "SECOND"))

        results = [e for e in _lines(stdout) if e["type"] == "result"]

        assert len(results) == 2
        assert results[0]["content"] == "FIRST"
        assert results[1]["content"] == "SECOND"

    def test_cached_completion_text_is_cleared_after_each_result(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_message(say(200, SayType.COMPLETION_RESULT, "FIRST"))
        emitter.handle_task_completed(_completed(201))
        emitter.handle_task_completed(_completed(202))

        results = [e for e in _lines(stdout) if e["type"] == "result"]

        assert results[0]["content"] == "FIRST"
        assert "content" not in results[1]

    def test_own_text_clears_cached_text_too(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_message(say(1, SayType.COMPLETION_RESULT, "STALE"))
        emitter.handle_task_completed(_completed(2, "OWN"))
        emitter.handle_task_completed(_completed(3))

        results = [e for e in _lines(stdout) if e["type"] == "result"]

        assert results[0]["content"] == "OWN"
        assert "content" not in results[1]

    def test_result_fields(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_task_completed(_completed(5, "ok"))

        result = _lines(stdout)[0]

        assert result == {"type": "result", "success": True, "id": 5, "content": "ok"}


class TestResultCost:

    def test_usage_is_accumulated_per_request_and_reset(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_message(say(1, SayType.API_REQ_STARTED, json.dumps({"tokensIn": 10, "tokensOut": 2})))
        # A later revision of the same request replaces its figures
        emitter.handle_message(say(1, SayType.API_REQ_STARTED, json.dumps({"tokensIn": 10, "tokensOut": 4, "cost": 0.5})))
        emitter.handle_message(say(2, SayType.API_REQ_STARTED, json.dumps({"tokensIn": 5, "tokensOut": 1, "cost": 0.25})))
        emitter.handle_task_completed(_completed(3, "done"))
        emitter.handle_task_completed(_completed(4, "again"))

        results = [e for e in _lines(stdout) if e["type"] == "result"]

        assert results[0]["cost"] == {"totalCost": 0.75, "inputTokens": 15, "outputTokens": 5}
        assert "cost" not in results[1]

    def test_engine_supplied_cost_wins(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_message(say(1, SayType.API_REQ_STARTED, json.dumps({"tokensIn": 10})))
        emitter.handle_task_completed(_completed(2, "done", cost={"cost": 1.5}))

        assert _lines(stdout)[0]["cost"] == {"totalCost": 1.5}

    def test_unreadable_usage_is_ignored(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_message(say(1, SayType.API_REQ_STARTED, "not json"))
        emitter.handle_task_completed(_completed(2, "done"))

        assert "cost" not in _lines(stdout)[0]


class TestQueueAndErrors:

    def test_queue_snapshot(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.handle_queue([{"id": "q1", "text": "next", "extra": 1}, {"text": "no id"}])

        event = _lines(stdout)[0]

        assert event == {"type": "queue", "subtype": "snapshot", "queueDepth": 1, "queue": [{"id": "q1", "text": "next"}]}

    def test_runtime_error_event(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.emit_runtime_error(RuntimeError("bad"), "unhandledException")

        event = _lines(stdout)[0]

        assert event["type"] == "error"
        assert event["content"] == "unhandledException: bad"
        assert isinstance(event["id"], int)

    def test_unsupported_mode_is_rejected(self):
        with pytest.raises(ValueError):
            JsonEventEmitter(mode="text")


class TestJsonMode:

    def test_events_are_buffered_until_flush(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="json", stdout=stdout)

        emitter.emit_system_init(["ping"])
        emitter.handle_message(say(1, SayType.TEXT, "hi"))
        emitter.handle_message(say(2, SayType.COMPLETION_RESULT, "answer"))
        emitter.handle_message(say(3, SayType.API_REQ_STARTED, json.dumps({"cost": 0.2})))
        emitter.handle_task_completed(_completed(4))

        assert stdout.getvalue() == ""

        emitter.flush()
        output = _lines(stdout)

        assert len(output) == 1
        final = output[0]
        assert final["type"] == "result"
        assert final["success"] is True
        assert final["content"] == "answer"
        assert final["cost"] == {"totalCost": 0.2}
        assert [e["type"] for e in final["events"]] == ["assistant", "assistant", "result"]

    def test_flush_without_result_reports_failure(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="json", stdout=stdout)

        emitter.emit_runtime_error(RuntimeError("engine down"))
        emitter.flush()

        final = _lines(stdout)[0]

        assert final["success"] is False
        assert final["events"][0]["content"] == "engine down"

    def test_flush_is_noop_in_stream_json(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        emitter.flush()

        assert stdout.getvalue() == ""


class TestClientWiring:

    @pytest.mark.asyncio
    async def test_consumes_client_channel(self):
        stdout = StringIO()
        emitter = JsonEventEmitter(mode="stream-json", stdout=stdout)

        class _Client:
            events = asyncio.Queue()

        client = _Client()
        emitter.attach_to_client(client)
        client.events.put_nowait(MessageEvent(say(1, SayType.TEXT, "hi")))
        client.events.put_nowait(QueueEvent([]))
        client.events.put_nowait(ErrorEvent(RuntimeError("engine")))
        await client.events.join()
        emitter.detach()

        types = [e["type"] for e in _lines(stdout)]

        assert types == ["assistant", "assistant", "queue", "error"]
