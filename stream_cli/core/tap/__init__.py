"""
Stream protocol: stdio-based communication between a harness and the CLI.

CLI → harness (stdout): newline-delimited JSON event stream
harness → CLI (stdin): control commands (start, message, cancel, ping, shutdown)
"""

from .protocol import (
    StreamEvent,
    ControlEvent,
    emit_event,
    parse_control_message,
    validate_command,
)
from .exceptions import ProtocolError
from .client import StreamClient
