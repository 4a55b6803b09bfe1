"""Tests for the agent-stream command line."""

import json

import pytest

from stream_backend.infra.config import Config
from stream_cli import cli


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point Config at a throwaway home and restore it afterwards."""
    monkeypatch.setenv("AGENT_STREAM_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("AGENT_STREAM_ENGINE", raising=False)
    monkeypatch.delenv("AGENT_STREAM_LOG_PATH", raising=False)
    for name in ("HOME_DIR", "LOG_DIR", "LOG_PATH", "DEBUG", "OUTPUT_FORMAT", "ONESHOT", "SIGNAL_ONLY_EXIT",
                 "KEEPALIVE_INTERVAL", "ENGINE", "_data", "_settings_path"):
        monkeypatch.setattr(Config, name, getattr(Config, name))


class TestFlagValidation:

    @pytest.mark.parametrize("argv,message", [
        (["--stdin-prompt-stream"], "--stdin-prompt-stream requires --print mode"),
        (["-p", "--stdin-prompt-stream"], "--stdin-prompt-stream requires --output-format=stream-json"),
        (["-p", "--signal-only-exit", "hi"], "--signal-only-exit requires --stdin-prompt-stream"),
        (["-p", "--output-format", "yaml", "hi"], "Invalid output format: yaml"),
        (["-p", "-c", "hi"], "cannot use a prompt with --session-id/--continue"),
        (["-p", "--session-id", "a", "-c"], "cannot use --session-id with --continue"),
        (["-p"], "no prompt provided"),
    ])
    def test_rejected_combinations(self, argv, message, capsys):
        assert cli.main(argv) == 1
        assert message in capsys.readouterr().err

    def test_missing_prompt_file(self, tmp_path, capsys):
        assert cli.main(["-p", "--prompt-file", str(tmp_path / "nope.txt")]) == 1
        assert "cannot read prompt file" in capsys.readouterr().err


class TestRun:

    def test_print_json(self, capsys):
        assert cli.main(["-p", "--output-format", "json", "hello"]) == 0

        output = json.loads(capsys.readouterr().out)

        assert output["success"] is True
        assert output["content"] == "Echo: hello"

    def test_prompt_file_and_settings(self, tmp_path, capsys):
        prompt_file = tmp_path / "prompt.txt"
        prompt_file.write_text("from file", encoding="utf-8")
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({"outputFormat": "stream-json"}), encoding="utf-8")

        assert cli.main(["-p", "--settings", str(settings), "--prompt-file", str(prompt_file)]) == 0

        events = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
        assert events[0]["type"] == "system"
        assert events[-1]["content"] == "Echo: from file"

    def test_debug_flag_enables_debug_log(self, capsys):
        assert cli.main(["-p", "-d", "--output-format", "json", "x"]) == 0
        assert Config.DEBUG is True

    def test_env_engine_override(self, monkeypatch, capsys):
        monkeypatch.setenv("AGENT_STREAM_ENGINE", "no_such_module_xyz:Host")

        assert cli.main(["-p", "--output-format", "stream-json", "hi"]) == 1
        assert "No module named" in capsys.readouterr().out
