"""
Stream Protocol Exceptions
"""

from typing import Optional


class ProtocolError(Exception):
    """
    A stdin command that cannot be dispatched.

    Reported to the harness as a `control` / `error` event carrying `code`.
    """

    def __init__(self, code: str, message: str, request_id: Optional[str] = None, command: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.request_id = request_id
        self.command = command
