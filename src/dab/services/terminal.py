"""Interactive terminal front end built on click."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import click

from dab.models.approval import (
    ApprovalDecision,
    Accepted,
    Cancelled,
    Declined,
    default_approval_payload,
)
from dab.services.interfaces.human_interface import HumanInterface, RenderKind


WELCOME_TEXT = """
DAB - Diagnostic Agent Bridge
Type 'quit' or 'exit' to exit
Type '/prompts' to list available prompts
Type '/promptName' to use a prompt
Type '@resources' to list available resources
Type '@resourceName' to read a resource
"""


def _parse_nested_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return _parse_nested_json(json.loads(value))
        except ValueError:
            return value
    if isinstance(value, list):
        return [_parse_nested_json(item) for item in value]
    if isinstance(value, dict):
        return {key: _parse_nested_json(item) for key, item in value.items()}
    return value


def format_tool_output(result_text: str) -> str:
    """Pretty-print a tool result, expanding JSON embedded in text fields."""
    prefix = "Tool execution result: "
    body = result_text[len(prefix):] if result_text.startswith(prefix) else result_text
    try:
        parsed = json.loads(body)
    except ValueError:
        return result_text
    return json.dumps(_parse_nested_json(parsed), indent=2, ensure_ascii=False)


class TerminalInterface(HumanInterface):
    """Reads from stdin and writes to stdout through click.

    Blocking reads run in a worker thread so progress events keep rendering
    while a prompt is open.
    """

    def __init__(self, color: Optional[bool] = None):
        self.color = color
        self.logger = logging.getLogger(__name__)

    def _echo(self, message: str = "", **style) -> None:
        if style:
            click.secho(message, color=self.color, **style)
        else:
            click.echo(message, color=self.color)

    async def _prompt(self, text: str) -> str:
        try:
            return await asyncio.to_thread(
                click.prompt, text, default="", show_default=False, prompt_suffix=""
            )
        except click.Abort as e:
            raise EOFError("input closed") from e

    async def present_approval_prompt(self, prompt_text: str, parameter_schema: Dict[str, Any]) -> ApprovalDecision:
        """Ask y/N. Empty means cancel, y/yes accept, n/no decline, anything else cancel."""
        self._echo(f"\nApproval request: {prompt_text}", fg="yellow", bold=True)
        answer = (await self._prompt("Approve? (y/N): ")).strip().lower()

        if not answer:
            return Cancelled()
        if answer in ("y", "yes"):
            return Accepted(data=default_approval_payload(parameter_schema or {}))
        if answer in ("n", "no"):
            return Declined()
        return Cancelled()

    async def read_input(self, prompt_text: str = "You: ") -> Optional[str]:
        return await self._prompt(prompt_text)

    async def ask_argument(self, name: str, description: str, required: bool) -> Optional[str]:
        label = f"{name} ({description})" + (" [required]" if required else " [optional]")
        value = (await self._prompt(f"  {label}: ")).strip()
        return value or None

    async def confirm(self, question: str) -> bool:
        answer = (await self._prompt(f"{question} (y/N): ")).strip().lower()
        return answer in ("y", "yes")

    def render_event(self, kind: RenderKind, payload: Dict[str, Any]) -> None:
        if kind == RenderKind.WELCOME:
            self._echo(WELCOME_TEXT, fg="cyan")
        elif kind == RenderKind.ASSISTANT:
            self._echo(f"\nAssistant: {payload.get('text', '')}", fg="green")
        elif kind == RenderKind.FINAL:
            self._echo(f"\nFinal response: {payload.get('text', '')}", fg="green", bold=True)
        elif kind == RenderKind.TOOL_EXECUTION:
            self._echo(f"\nExecuting tool: {payload.get('tool')}", fg="blue")
            self._echo(f"With arguments: {json.dumps(payload.get('arguments', {}), indent=2)}")
        elif kind == RenderKind.TOOL_RESULT:
            self._echo(f"\nTool result:\n{format_tool_output(payload.get('text', ''))}")
        elif kind == RenderKind.STREAM_EVENT:
            self._render_stream_event(payload)
        elif kind == RenderKind.ERROR:
            self._echo(f"\nError: {payload.get('message', '')}\n", fg="red", err=True)
        elif kind == RenderKind.NOTICE:
            self._echo(f"\n{payload.get('message', '')}\n", fg="yellow")
        elif kind == RenderKind.LIST_HEADER:
            self._echo(f"\n{payload.get('title', '')}:", bold=True)
        elif kind == RenderKind.LIST_ITEM:
            self._render_list_item(payload)
        elif kind == RenderKind.RESOURCE:
            self._render_resource(payload)
        elif kind == RenderKind.EXIT:
            self._echo("\nExiting...")
        else:
            self._echo(str(payload.get("message", "")))

    def _render_list_item(self, payload: Dict[str, Any]) -> None:
        if payload.get("empty"):
            self._echo(f"  No {payload.get('name')} available")
            return
        self._echo(f"  {payload.get('prefix', '')}{payload.get('name')} - {payload.get('description') or 'No description'}")
        if payload.get("uri"):
            self._echo(f"    URI: {payload['uri']}")
        if payload.get("mime_type"):
            self._echo(f"    Type: {payload['mime_type']}")

    def _render_resource(self, payload: Dict[str, Any]) -> None:
        if "name" in payload:
            self._echo(f"\nReading resource: {payload['name']}", bold=True)
            if payload.get("description"):
                self._echo(f"   {payload['description']}")
            self._echo(f"   URI: {payload.get('uri')}")
            self._echo(f"   MIME type: {payload.get('mime_type') or 'text/plain'}\n")
        if "text" in payload:
            self._echo("-" * 80)
            self._echo(payload["text"])
            self._echo("-" * 80)
        if "blob_size" in payload:
            self._echo(f"[Binary content: {payload['blob_size']} bytes]")

    def _render_stream_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("kind")
        operation = (payload.get("operation") or "").capitalize()
        correlation_id = payload.get("correlation_id")

        if kind == "connected":
            self._echo(f"Live output connected ({correlation_id})", dim=True)
        elif kind == "start":
            self._echo(f"\n{operation} started: {payload.get('command', '')}", fg="blue")
        elif kind == "output":
            click.echo(payload.get("output", ""), nl=False, color=self.color)
        elif kind == "complete":
            self._echo(f"\n{operation} completed", fg="green")
        elif kind == "error":
            self._echo(f"\n{operation} error: {payload.get('error', '')}", fg="red")
        elif kind == "cancelled":
            self._echo(f"\n{operation} cancelled", fg="yellow")
        elif payload.get("type") == "connection_error":
            self._echo(f"Live output unavailable ({correlation_id}): {payload.get('error')}", fg="yellow")
