import argparse
import os
import sys
from typing import List, Optional

from stream_backend.infra.config import Config
from stream_backend.utils.logger import Logger

from stream_cli.core.tap.protocol import OUTPUT_FORMATS, is_valid_output_format
from stream_cli.core.tap.runner import RunOptions, run

STDIN_STREAM_USAGE = "[CLI] Usage: agent-stream --print --output-format stream-json --stdin-prompt-stream [options]"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-stream", description="Agent Stream CLI")
    parser.add_argument("prompt", nargs="?", default=None, help="Task prompt")
    parser.add_argument("--prompt-file", type=str, default=None, help="Read the prompt from a file")
    parser.add_argument("--session-id", type=str, default=None, help="Resume the task with this id")
    parser.add_argument("-c", "--continue", dest="continue_session", action="store_true",
                        help="Resume the most recent task in the workspace")
    parser.add_argument("-w", "--workspace", type=str, default=None, help="Workspace root (default: cwd)")
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true", help="Non-interactive print mode")
    parser.add_argument("--output-format", type=str, default=None,
                        help=f"Output format: {', '.join(OUTPUT_FORMATS)} (default: settings or text)")
    parser.add_argument("--stdin-prompt-stream", action="store_true",
                        help="Read NDJSON commands from stdin (requires --print and stream-json)")
    parser.add_argument("--signal-only-exit", action="store_true",
                        help="Stay alive after the task loop ends until SIGINT/SIGTERM")
    parser.add_argument("--engine", type=str, default=None, help="Engine factory as module:attr")
    parser.add_argument("--oneshot", action="store_true", help="Exit as soon as the task completes")
    parser.add_argument("-d", "--debug", action="store_true", help="Write debug lines to the log file")
    parser.add_argument("--settings", type=str, default=None, help="Path to settings.json")
    return parser


def _fail(*lines: str) -> int:
    for line in lines:
        print(line, file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # 0. Initialize Config
    if args.settings:
        settings_path = os.path.abspath(args.settings)
        if not os.path.exists(settings_path):
            print(f"[CLI] Warning: Settings file not found at {settings_path}, using defaults.", file=sys.stderr)
        Config.initialize(settings_path)
    else:
        Config.initialize()

    if args.debug:
        Config.DEBUG = True

    output_format = args.output_format or Config.OUTPUT_FORMAT
    if not is_valid_output_format(output_format):
        return _fail(
            f'[CLI] Error: Invalid output format: {output_format}; must be one of: {", ".join(OUTPUT_FORMATS)}'
        )

    # 1. Prompt
    prompt = args.prompt
    if args.prompt_file:
        if prompt:
            return _fail("[CLI] Error: cannot use both a positional prompt and --prompt-file")
        try:
            with open(args.prompt_file, "r", encoding="utf-8") as f:
                prompt = f.read()
        except OSError as e:
            return _fail(f"[CLI] Error: cannot read prompt file: {e}")

    is_resume = bool(args.session_id) or args.continue_session
    signal_only_exit = args.signal_only_exit or Config.SIGNAL_ONLY_EXIT

    # 2. Flag combinations
    if args.session_id and args.continue_session:
        return _fail("[CLI] Error: cannot use --session-id with --continue")
    if is_resume and prompt:
        return _fail("[CLI] Error: cannot use a prompt with --session-id/--continue")

    if args.stdin_prompt_stream:
        if not args.print_mode:
            return _fail("[CLI] Error: --stdin-prompt-stream requires --print mode", STDIN_STREAM_USAGE)
        if output_format != "stream-json":
            return _fail("[CLI] Error: --stdin-prompt-stream requires --output-format=stream-json", STDIN_STREAM_USAGE)
        if sys.stdin.isatty():
            return _fail(
                "[CLI] Error: --stdin-prompt-stream requires piped stdin",
                "[CLI] Example: printf '{\"command\":\"start\",\"requestId\":\"1\",\"prompt\":\"1+1=?\"}\\n' "
                "| agent-stream --print --output-format stream-json --stdin-prompt-stream",
            )
        if prompt:
            return _fail(
                "[CLI] Error: cannot use positional prompt or --prompt-file with --stdin-prompt-stream",
                STDIN_STREAM_USAGE,
            )
        if is_resume:
            return _fail("[CLI] Error: cannot use --session-id/--continue with --stdin-prompt-stream", STDIN_STREAM_USAGE)
    elif signal_only_exit and args.signal_only_exit:
        return _fail("[CLI] Error: --signal-only-exit requires --stdin-prompt-stream", STDIN_STREAM_USAGE)

    if not prompt and not args.stdin_prompt_stream and not is_resume:
        return _fail(
            "[CLI] Error: no prompt provided",
            "[CLI] Usage: agent-stream --print [options] <prompt>",
            "[CLI] For stdin control mode: agent-stream --print --output-format stream-json --stdin-prompt-stream [options]",
        )

    if not args.print_mode and output_format == "text":
        print("[CLI] Interactive mode is not available, falling back to print mode", file=sys.stderr)

    options = RunOptions(
        prompt=prompt,
        session_id=args.session_id,
        continue_session=args.continue_session,
        workspace=os.path.abspath(args.workspace) if args.workspace else os.getcwd(),
        output_format=output_format,
        stdin_prompt_stream=args.stdin_prompt_stream,
        signal_only_exit=signal_only_exit and args.stdin_prompt_stream,
        oneshot=args.oneshot or Config.ONESHOT,
        engine=args.engine or Config.ENGINE,
        keepalive_interval=Config.KEEPALIVE_INTERVAL,
    )

    Logger.info(f"[CLI] Starting ({output_format}, engine={options.engine})")
    return run(options)


if __name__ == "__main__":
    sys.exit(main())
