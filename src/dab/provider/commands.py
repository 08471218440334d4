"""Approval-gated execution of diagnostic commands.

Every command is approved by a human before it runs. A declined or
cancelled request never starts the process; a failed approval request is
reported as an error and never starts it either.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

import jc
from jc.exceptions import LibraryNotInstalled, ParseError
from pydantic import BaseModel

from dab.models.approval import APPROVAL_SCHEMA
from dab.models.errors import ApprovalTransportError, ExecutionError
from dab.models.stream import event_timestamp
from dab.models.tool import ToolResult
from dab.provider.events import EventHub
from dab.services.approval_gate import ApprovalGate

APPROVAL_DENIED_TEXT = "Request denied by user. Command execution was not approved."

# Exit codes treated as success; ping exits 2 when no reply arrived.
ACCEPTABLE_EXIT_CODES = {"ping": (0, 2)}

OutputCallback = Callable[[str], Awaitable[None]]


def approval_prompt(command_string: str) -> str:
    return f"Allow network-diagnostics to execute '{command_string}'?"


class CommandOutput(BaseModel):
    """Exit status and captured streams of a finished command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner:
    """Runs an OS command and structures its output with ``jc``."""

    def __init__(self, chunk_size: int = 4096):
        self.chunk_size = chunk_size
        self.logger = logging.getLogger(__name__)

    async def run(
        self,
        tool: str,
        args: Sequence[str],
        on_output: Optional[OutputCallback] = None
    ) -> CommandOutput:
        """Run ``tool`` with ``args``, forwarding raw stdout chunks as they arrive.

        Raises:
            ExecutionError: The process could not be started
        """
        self.logger.info(f"Running {tool} {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                tool, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ExecutionError(f"Failed to execute {tool} command: {e}") from e

        stdout_chunks: List[str] = []

        async def pump_stdout() -> None:
            while True:
                chunk = await process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                text = chunk.decode(errors="replace")
                stdout_chunks.append(text)
                if on_output is not None:
                    await on_output(text)

        _, stderr = await asyncio.gather(pump_stdout(), process.stderr.read())
        returncode = await process.wait()

        return CommandOutput(
            returncode=returncode,
            stdout="".join(stdout_chunks),
            stderr=stderr.decode(errors="replace")
        )

    async def structure(self, tool: str, raw: str) -> Optional[str]:
        """Parse raw output with the ``jc`` parser named after ``tool``.

        Returns pretty-printed JSON, or ``None`` when the output does not parse.
        """
        try:
            parsed = await asyncio.to_thread(jc.parse, tool, raw, quiet=True)
        except (ParseError, LibraryNotInstalled, ValueError) as e:
            self.logger.warning(f"jc could not parse {tool} output: {e}")
            return None
        return json.dumps(parsed, indent=2)

    def succeeded(self, tool: str, output: CommandOutput) -> bool:
        return output.returncode in ACCEPTABLE_EXIT_CODES.get(tool, (0,))

    async def to_result(self, tool: str, output: CommandOutput) -> ToolResult:
        if not self.succeeded(tool, output):
            message = output.stderr or f"{tool} command failed with exit code {output.returncode}"
            return ToolResult.from_text(f"Error: {message}", is_error=True)

        structured = await self.structure(tool, output.stdout)
        return ToolResult.from_text(structured if structured is not None else output.stdout)


async def execute_command(
    gate: ApprovalGate,
    runner: CommandRunner,
    tool: str,
    args: Sequence[str],
    command_string: str
) -> ToolResult:
    """Ask for approval, then run the command to completion."""
    try:
        decision = await gate.request_approval(approval_prompt(command_string), APPROVAL_SCHEMA)
    except ApprovalTransportError as e:
        return ToolResult.from_text(f"Failed to request user approval: {e}", is_error=True)

    if not decision.approved:
        return ToolResult.from_text(APPROVAL_DENIED_TEXT)

    try:
        output = await runner.run(tool, args)
    except ExecutionError as e:
        return ToolResult.from_text(str(e), is_error=True)
    return await runner.to_result(tool, output)


async def stream_command(
    gate: ApprovalGate,
    runner: CommandRunner,
    hub: EventHub,
    tool: str,
    args: Sequence[str],
    command_string: str,
    correlation_id: str,
    operation: str
) -> ToolResult:
    """Like ``execute_command`` but publishes progress on ``hub``.

    Emits one ``<operation>_start``, any number of ``<operation>_output`` and
    exactly one terminal event: ``_complete``, ``_error`` or ``_cancelled``.
    """

    def emit(kind: str, **fields) -> None:
        hub.publish(correlation_id, {"type": f"{operation}_{kind}", **fields, "timestamp": event_timestamp()})

    try:
        decision = await gate.request_approval(approval_prompt(command_string), APPROVAL_SCHEMA)
    except ApprovalTransportError as e:
        emit("error", error=str(e))
        return ToolResult.from_text(f"Failed to request user approval: {e}", is_error=True)

    if not decision.approved:
        emit("cancelled")
        return ToolResult.from_text(APPROVAL_DENIED_TEXT)

    emit("start", command=command_string)

    async def on_output(text: str) -> None:
        emit("output", output=text)

    try:
        output = await runner.run(tool, args, on_output=on_output)
    except ExecutionError as e:
        emit("error", error=str(e))
        return ToolResult.from_text(str(e), is_error=True)

    if runner.succeeded(tool, output):
        emit("complete")
    else:
        emit("error", error=output.stderr or f"{tool} command failed with exit code {output.returncode}")
    return await runner.to_result(tool, output)
