"""
Unit tests for approval-gated command execution in the bundled provider.

The command runner is replaced by a scripted subclass so no process is
started.
"""

import json
from typing import List, Optional
from unittest.mock import patch

import pytest
from jc.exceptions import ParseError

from dab.models.approval import Accepted, Cancelled, Declined
from dab.models.errors import ExecutionError
from dab.provider.commands import (
    APPROVAL_DENIED_TEXT,
    CommandOutput,
    CommandRunner,
    approval_prompt,
    execute_command,
    stream_command,
)
from dab.provider.events import EventHub
from dab.services.approval_gate import ApprovalGate

from fakes import FakeInterface


PING_OUTPUT = """PING 8.8.8.8 (8.8.8.8) 56(84) bytes of data.
64 bytes from 8.8.8.8: icmp_seq=1 ttl=117 time=10.2 ms

--- 8.8.8.8 ping statistics ---
1 packets transmitted, 1 received, 0% packet loss, time 0ms
rtt min/avg/max/mdev = 10.2/10.2/10.2/0.000 ms
"""


class ScriptedRunner(CommandRunner):
    """Returns canned output and records every run."""

    def __init__(self, output: Optional[CommandOutput] = None, chunks: Optional[List[str]] = None,
                 error: Optional[Exception] = None, structured: Optional[str] = None):
        super().__init__()
        self.output = output or CommandOutput(returncode=0, stdout="".join(chunks or []))
        self.chunks = chunks or []
        self.error = error
        self.structured = structured
        self.runs = []

    async def run(self, tool, args, on_output=None):
        self.runs.append((tool, list(args)))
        if self.error:
            raise self.error
        for chunk in self.chunks:
            if on_output is not None:
                await on_output(chunk)
        return self.output

    async def structure(self, tool, raw):
        return self.structured


def gate_with(*decisions) -> ApprovalGate:
    return ApprovalGate(FakeInterface(decisions=list(decisions)))


def drain(queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestExecuteCommand:
    """Test execute_command approval handling."""

    @pytest.mark.asyncio
    async def test_cancelled_never_runs(self):
        runner = ScriptedRunner()

        result = await execute_command(gate_with(Cancelled()), runner, "dig", ["example.com"], "dig example.com")

        assert result.text() == APPROVAL_DENIED_TEXT
        assert result.is_error is False
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_declined_never_runs(self):
        runner = ScriptedRunner()

        result = await execute_command(gate_with(Declined()), runner, "dig", ["example.com"], "dig example.com")

        assert result.text() == APPROVAL_DENIED_TEXT
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_accepted_without_approved_flag_never_runs(self):
        runner = ScriptedRunner()

        result = await execute_command(
            gate_with(Accepted(data={"approved": False})), runner, "dig", ["example.com"], "dig example.com"
        )

        assert result.text() == APPROVAL_DENIED_TEXT
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_transport_error_is_error_without_running(self):
        runner = ScriptedRunner()

        result = await execute_command(
            gate_with(ConnectionError("client gone")), runner, "dig", ["example.com"], "dig example.com"
        )

        assert result.is_error is True
        assert result.text().startswith("Failed to request user approval:")
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_approved_runs_and_structures(self):
        runner = ScriptedRunner(
            output=CommandOutput(returncode=0, stdout=";; ANSWER SECTION"),
            structured='[{"answer": []}]'
        )
        interface = FakeInterface(decisions=[Accepted(data={"approved": True})])

        result = await execute_command(ApprovalGate(interface), runner, "dig", ["example.com"], "dig example.com")

        assert runner.runs == [("dig", ["example.com"])]
        assert result.text() == '[{"answer": []}]'
        assert interface.prompts == [approval_prompt("dig example.com")]

    @pytest.mark.asyncio
    async def test_raw_output_when_structuring_fails(self):
        runner = ScriptedRunner(output=CommandOutput(returncode=0, stdout="raw text"), structured=None)

        result = await execute_command(gate_with(), runner, "dig", ["example.com"], "dig example.com")

        assert result.text() == "raw text"

    @pytest.mark.asyncio
    async def test_failed_exit_code(self):
        runner = ScriptedRunner(output=CommandOutput(returncode=9, stdout="", stderr="connection timed out"))

        result = await execute_command(gate_with(), runner, "dig", ["example.com"], "dig example.com")

        assert result.is_error is True
        assert result.text() == "Error: connection timed out"

    @pytest.mark.asyncio
    async def test_ping_exit_code_two_is_success(self):
        runner = ScriptedRunner(output=CommandOutput(returncode=2, stdout="0 packets received"), structured=None)

        result = await execute_command(gate_with(), runner, "ping", ["-c", "1", "10.0.0.1"], "ping -c 1 10.0.0.1")

        assert result.is_error is False
        assert result.text() == "0 packets received"

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        runner = ScriptedRunner(error=ExecutionError("Failed to execute dig command: not found"))

        result = await execute_command(gate_with(), runner, "dig", ["example.com"], "dig example.com")

        assert result.is_error is True
        assert "not found" in result.text()


class TestStreamCommand:
    """Test progress events emitted by stream_command."""

    @pytest.mark.asyncio
    async def test_event_order(self):
        hub = EventHub()
        queue = hub.register("session_1")
        runner = ScriptedRunner(chunks=["64 bytes 1\n", "64 bytes 2\n", "64 bytes 3\n"], structured='{"ok": true}')

        result = await stream_command(
            gate_with(), runner, hub, "ping", ["-c", "3", "8.8.8.8"], "ping -c 3 8.8.8.8",
            correlation_id="session_1", operation="ping"
        )

        types = [event["type"] for event in drain(queue)]
        assert types == ["connected", "ping_start", "ping_output", "ping_output", "ping_output", "ping_complete"]
        assert result.text() == '{"ok": true}'

    @pytest.mark.asyncio
    async def test_event_payloads(self):
        hub = EventHub()
        queue = hub.register("session_1")
        runner = ScriptedRunner(chunks=["hop 1\n"])

        await stream_command(
            gate_with(), runner, hub, "traceroute", ["example.com"], "traceroute example.com",
            correlation_id="session_1", operation="traceroute"
        )

        events = drain(queue)[1:]
        assert events[0]["command"] == "traceroute example.com"
        assert events[1]["output"] == "hop 1\n"
        assert all(event["timestamp"].endswith("Z") for event in events)

    @pytest.mark.asyncio
    async def test_denied_emits_cancelled_only(self):
        hub = EventHub()
        queue = hub.register("session_1")
        runner = ScriptedRunner()

        result = await stream_command(
            gate_with(Cancelled()), runner, hub, "ping", ["8.8.8.8"], "ping 8.8.8.8",
            correlation_id="session_1", operation="ping"
        )

        assert [event["type"] for event in drain(queue)] == ["connected", "ping_cancelled"]
        assert result.text() == APPROVAL_DENIED_TEXT
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_failure_emits_single_error(self):
        hub = EventHub()
        queue = hub.register("session_1")
        runner = ScriptedRunner(output=CommandOutput(returncode=1, stderr="unknown host"))

        result = await stream_command(
            gate_with(), runner, hub, "ping", ["nowhere"], "ping nowhere",
            correlation_id="session_1", operation="ping"
        )

        events = drain(queue)
        assert [event["type"] for event in events] == ["connected", "ping_start", "ping_error"]
        assert events[-1]["error"] == "unknown host"
        assert result.is_error is True

    @pytest.mark.asyncio
    async def test_transport_error_emits_error(self):
        hub = EventHub()
        queue = hub.register("session_1")
        runner = ScriptedRunner()

        await stream_command(
            gate_with(RuntimeError("elicitation failed")), runner, hub, "ping", ["8.8.8.8"], "ping 8.8.8.8",
            correlation_id="session_1", operation="ping"
        )

        assert [event["type"] for event in drain(queue)] == ["connected", "ping_error"]
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_no_subscriber_still_runs(self):
        runner = ScriptedRunner(chunks=["x"])

        result = await stream_command(
            gate_with(), runner, EventHub(), "ping", ["8.8.8.8"], "ping 8.8.8.8",
            correlation_id="session_none", operation="ping"
        )

        assert runner.runs == [("ping", ["8.8.8.8"])]
        assert result.is_error is False


class TestCommandRunner:
    """Test CommandRunner process handling."""

    @pytest.mark.asyncio
    async def test_spawn_failure_raises_execution_error(self):
        runner = CommandRunner()
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("no such file")):
            with pytest.raises(ExecutionError) as exc_info:
                await runner.run("traceroute", ["example.com"])
        assert "Failed to execute traceroute command" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_structure_parses_ping_output(self):
        structured = await CommandRunner().structure("ping", PING_OUTPUT)

        parsed = json.loads(structured)
        assert parsed["destination_ip"] == "8.8.8.8"
        assert parsed["packets_transmitted"] == 1

    @pytest.mark.asyncio
    async def test_structure_uses_named_parser(self):
        with patch("jc.parse", return_value=[{"answer": []}]) as parse:
            structured = await CommandRunner().structure("dig", "raw dig output")

        parse.assert_called_once_with("dig", "raw dig output", quiet=True)
        assert json.loads(structured) == [{"answer": []}]

    @pytest.mark.asyncio
    async def test_structure_returns_none_on_parse_error(self):
        with patch("jc.parse", side_effect=ParseError("unrecognized output")):
            assert await CommandRunner().structure("traceroute", "garbage") is None

    def test_exit_code_acceptance(self):
        runner = CommandRunner()
        assert runner.succeeded("ping", CommandOutput(returncode=2))
        assert not runner.succeeded("dig", CommandOutput(returncode=2))
        assert runner.succeeded("traceroute", CommandOutput(returncode=0))
