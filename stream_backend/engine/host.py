"""
Extension Host Interface

The agent engine ("extension host") is an external collaborator. This module
defines the small surface the streaming layer consumes:

    activate() / run_task() / resume_task() / dispose()   -- mutating, awaited
    send_to_extension(message)                             -- fire and forget
    channel                                                -- engine output

Instead of a listener bus, the host publishes everything it produces onto a
single asyncio.Queue. Exactly one consumer (AgentClient) reads it.
"""

import asyncio
import importlib
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from stream_backend.engine.messages import AgentMessage


class TaskAbortedError(Exception):
    """Raised by an engine when its current task was aborted through cancelTask."""
    pass


@dataclass
class HostMessage:
    """An agent message (any revision, partial or final)."""
    message: AgentMessage


@dataclass
class HostExtensionMessage:
    """A non-message payload from the engine (state snapshots, history updates)."""
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HostError:
    error: BaseException


HostEvent = Union[HostMessage, HostExtensionMessage, HostError]


class ExtensionHost(ABC):
    """
    Base class for engine adapters.

    Subclasses implement the control calls and use the publish_* helpers to
    feed the channel. Only the stdin loop and the runner call the mutating
    operations.
    """

    def __init__(self, workspace: Optional[str] = None, **options: Any):
        self.workspace = os.path.abspath(workspace or os.getcwd())
        self.options = options
        self.channel: "asyncio.Queue[HostEvent]" = asyncio.Queue()

    # -- channel helpers ----------------------------------------------------

    def publish_message(self, message: AgentMessage) -> None:
        self.channel.put_nowait(HostMessage(message))

    def publish_extension_message(self, payload: Dict[str, Any]) -> None:
        self.channel.put_nowait(HostExtensionMessage(payload))

    def publish_error(self, error: BaseException) -> None:
        self.channel.put_nowait(HostError(error))

    # -- control surface ----------------------------------------------------

    @abstractmethod
    async def activate(self) -> None:
        ...

    @abstractmethod
    async def run_task(self, prompt: str, configuration: Optional[Dict[str, Any]] = None) -> None:
        """Run a new task. Resolves once the engine reports the task finished."""

    @abstractmethod
    async def resume_task(self, task_id: str) -> None:
        ...

    @abstractmethod
    def send_to_extension(self, message: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def dispose(self) -> None:
        ...


def load_host(spec: str, **kwargs: Any) -> ExtensionHost:
    """
    Instantiate an engine from a "module:attr" import path.

    Example:
        >>> load_host("stream_backend.engine.scripted:ScriptedHost", workspace=".")
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Engine must be given as 'module:attr', got {spec!r}")

    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None:
        raise ValueError(f"Engine factory {attr!r} not found in {module_name}")

    host = factory(**kwargs)
    if not isinstance(host, ExtensionHost):
        raise TypeError(f"{spec} did not produce an ExtensionHost (got {type(host).__name__})")
    return host
