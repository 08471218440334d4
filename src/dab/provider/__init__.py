"""Bundled network diagnostics tool provider and its progress event hub."""

from .events import EventHub, create_event_app
from .commands import CommandRunner, execute_command, stream_command
from .server import create_provider_server, run_provider

__all__ = [
    "EventHub",
    "create_event_app",
    "CommandRunner",
    "execute_command",
    "stream_command",
    "create_provider_server",
    "run_provider",
]
