"""
Logger Utility Module

Provides global logging functionality, outputting all logs to file instead of console.
stdout carries the NDJSON protocol and stderr carries user-facing diagnostics,
so neither may receive log lines.
"""

import datetime
import os
from stream_backend.infra.config import Config


class Logger:
    """
    Simple Logger Class

    Appends lines to Config.LOG_PATH.
    """

    @staticmethod
    def log(message: str) -> None:
        """
        Log a normal message

        Format: {timestamp} - {message}
        """
        try:
            with open(Config.LOG_PATH, 'a', encoding='utf-8') as f:
                f.write(f"{datetime.datetime.now()} - [{os.getpid()}] {message}\n")
        except Exception:
            # If logging fails, we can't do much but ignore
            pass

    @staticmethod
    def info(message: str) -> None:
        """Log info message (alias for log)"""
        Logger.log(message)

    @staticmethod
    def error(message: str) -> None:
        """
        Log error message

        Adds "ERROR: " prefix for easy filtering.

        Example:
            >>> Logger.error("Engine failed to activate")
            >>> Logger.error(f"Invalid command line: {e}")
        """
        Logger.log(f"ERROR: {message}")

    @staticmethod
    def warning(message: str) -> None:
        """Log warning message with a "WARNING: " prefix."""
        Logger.log(f"WARNING: {message}")

    @staticmethod
    def debug(message: str) -> None:
        """
        Log debug message

        Only written when Config.DEBUG is enabled (--debug or AGENT_STREAM_DEBUG).
        """
        if Config.DEBUG:
            Logger.log(f"DEBUG: {message}")
