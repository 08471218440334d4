"""
Unit tests for ToolProviderHandle.

A fake MCP client session stands in for the provider process.
"""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import patch

import anyio
import pytest
from mcp import types

from dab.models.errors import NotInitialized, ProviderInitializationError
from dab.models.provider import ConnectionState, ProviderSpec
from dab.services.tool_provider import ToolProviderHandle

from fakes import FakeClientSession, make_handle, make_tool, session_factory_for, text_result


class TestInitialization:
    """Test handle lifecycle."""

    @pytest.mark.asyncio
    async def test_initialize_caches_prompts_and_resources(self):
        session = FakeClientSession(
            prompts=[types.Prompt(
                name="network/verifyTraceroute",
                description="Verify a route",
                arguments=[types.PromptArgument(name="destination", required=True)]
            )],
            resources=[types.Resource(name="ping manual", uri="man://ping", mimeType="text/plain")]
        )
        handle = make_handle("network", session)

        await handle.initialize()

        assert handle.state == ConnectionState.CONNECTED
        assert handle.find_workflow("network/verifyTraceroute").arguments[0].required is True
        assert handle.find_resource("man://ping").name == "ping manual"
        assert handle.find_resource("ping manual").uri == "man://ping"
        assert handle.find_workflow("missing") is None

    @pytest.mark.asyncio
    async def test_prompt_listing_failure_leaves_empty_cache(self):
        session = FakeClientSession()

        async def broken():
            raise RuntimeError("prompts not supported")

        session.list_prompts = broken
        handle = make_handle("network", session)

        await handle.initialize()

        assert handle.state == ConnectionState.CONNECTED
        assert handle.workflows == []

    @pytest.mark.asyncio
    async def test_initialize_failure_raises_and_closes(self):
        handle = make_handle("network", FakeClientSession(fail_initialize=OSError("spawn failed")))

        with pytest.raises(ProviderInitializationError) as exc_info:
            await handle.initialize()

        assert exc_info.value.provider_id == "network"
        assert handle.state == ConnectionState.CLOSED
        assert handle.session is None

    @pytest.mark.asyncio
    async def test_calls_before_initialize_raise(self):
        handle = make_handle("network", FakeClientSession())

        with pytest.raises(NotInitialized) as exc_info:
            await handle.list_tools()
        assert str(exc_info.value) == "Server network not initialized"

        with pytest.raises(NotInitialized):
            await handle.execute_tool("network-ping", {"host": "8.8.8.8"})

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self):
        exits = []

        @asynccontextmanager
        async def factory(spec, elicitation_callback):
            try:
                yield FakeClientSession()
            finally:
                exits.append(spec.id)

        handle = ToolProviderHandle(ProviderSpec(id="network", command="x"), session_factory=factory)
        await handle.initialize()

        await handle.cleanup()
        await handle.cleanup()

        assert exits == ["network"]
        assert handle.state == ConnectionState.CLOSED
        with pytest.raises(NotInitialized):
            await handle.list_tools()

    @pytest.mark.asyncio
    async def test_cleanup_before_initialize(self):
        handle = make_handle("network", FakeClientSession())
        await handle.cleanup()
        assert handle.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_elicitation_callback_passed_to_factory(self):
        received = []

        @asynccontextmanager
        async def factory(spec, elicitation_callback):
            received.append(elicitation_callback)
            yield FakeClientSession()

        async def callback(context, params):
            return None

        handle = ToolProviderHandle(
            ProviderSpec(id="network", command="x"),
            elicitation_callback=callback,
            session_factory=factory
        )
        await handle.initialize()

        assert received == [callback]


class TestListTools:
    """Test tool discovery."""

    @pytest.mark.asyncio
    async def test_descriptors(self):
        session = FakeClientSession(tools=[
            make_tool("network-ping", {"host": {"type": "string", "description": "Target host"}}, ["host"])
        ])
        handle = make_handle("network", session)
        await handle.initialize()

        tools = await handle.list_tools()

        assert len(tools) == 1
        assert tools[0].name == "network-ping"
        assert tools[0].provider_id == "network"
        assert tools[0].parameter_schema["required"] == ["host"]
        assert tools[0].supports_progress is False

    @pytest.mark.asyncio
    async def test_progress_capability(self):
        capabilities = SimpleNamespace(experimental={"progress": True})
        session = FakeClientSession(tools=[make_tool("network-ping")], capabilities=capabilities)
        handle = make_handle("network", session)
        await handle.initialize()

        tools = await handle.list_tools()

        assert handle.supports_progress is True
        assert tools[0].supports_progress is True

    @pytest.mark.asyncio
    async def test_listing_is_not_cached(self):
        session = FakeClientSession(tools=[make_tool("network-ping")])
        handle = make_handle("network", session)
        await handle.initialize()

        assert [tool.name for tool in await handle.list_tools()] == ["network-ping"]
        session.tools = [make_tool("network-ping"), make_tool("network-dnsLookup")]
        assert [tool.name for tool in await handle.list_tools()] == ["network-ping", "network-dnsLookup"]


class TestExecuteTool:
    """Test tool execution with retries."""

    @pytest.mark.asyncio
    async def test_result_normalized(self):
        session = FakeClientSession(call_results=[text_result("64 bytes from 8.8.8.8")])
        handle = make_handle("network", session)
        await handle.initialize()

        result = await handle.execute_tool("network-ping", {"host": "8.8.8.8"})

        assert result.is_error is False
        assert result.text() == "64 bytes from 8.8.8.8"
        assert session.calls == [("network-ping", {"host": "8.8.8.8"})]

    @pytest.mark.asyncio
    async def test_missing_content_is_empty_success(self):
        session = FakeClientSession(call_results=[SimpleNamespace(content=None, isError=False)])
        handle = make_handle("network", session)
        await handle.initialize()

        result = await handle.execute_tool("network-ping", {})

        assert result.content == []
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_error_result_is_not_retried(self):
        session = FakeClientSession(call_results=[text_result("Error: unknown host", is_error=True)])
        handle = make_handle("network", session)
        await handle.initialize()

        result = await handle.execute_tool("network-ping", {"host": "nowhere"}, max_retries=3, retry_delay=0)

        assert result.is_error is True
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        session = FakeClientSession(call_results=[ConnectionError("pipe broken"), text_result("ok")])
        handle = make_handle("network", session)
        await handle.initialize()

        result = await handle.execute_tool("network-ping", {}, max_retries=2, retry_delay=0)

        assert result.text() == "ok"
        assert len(session.calls) == 2

    @pytest.mark.asyncio
    async def test_retry_bound_and_last_error_raised(self):
        failures = [ConnectionError("first"), ConnectionError("second"), ConnectionError("third")]
        session = FakeClientSession(call_results=failures)
        handle = make_handle("network", session)
        await handle.initialize()

        with pytest.raises(ConnectionError) as exc_info:
            await handle.execute_tool("network-ping", {}, max_retries=3, retry_delay=0)

        assert str(exc_info.value) == "third"
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_get_prompt_stringifies_arguments(self):
        session = FakeClientSession()
        handle = make_handle("network", session)
        await handle.initialize()

        await handle.get_prompt("network/verifyTraceroute", {"destination": "example.com", "hops": 5})

        assert session.prompt_calls == [
            ("network/verifyTraceroute", {"destination": "example.com", "hops": "5"})
        ]


class TestTransportLoss:
    """Test that a dead provider transport closes the handle."""

    @pytest.mark.asyncio
    async def test_closed_stream_is_not_retried_and_closes_handle(self):
        session = FakeClientSession(call_results=[anyio.ClosedResourceError(), text_result("unused")])
        handle = make_handle("network", session)
        await handle.initialize()

        with pytest.raises(anyio.ClosedResourceError):
            await handle.execute_tool("network-ping", {"host": "8.8.8.8"}, max_retries=3, retry_delay=0)

        assert len(session.calls) == 1
        assert handle.state == ConnectionState.CLOSED
        with pytest.raises(NotInitialized):
            await handle.execute_tool("network-ping", {"host": "8.8.8.8"})

    @pytest.mark.asyncio
    async def test_broken_stream_during_listing_closes_handle(self):
        session = FakeClientSession()

        async def broken():
            raise anyio.BrokenResourceError()

        session.list_tools = broken
        handle = make_handle("network", session)
        await handle.initialize()

        with pytest.raises(anyio.BrokenResourceError):
            await handle.list_tools()

        assert handle.state == ConnectionState.CLOSED


class TestToolAudit:
    """Test audit and timing records of tool calls."""

    @pytest.mark.asyncio
    async def test_configured_correlation_argument_is_audited(self):
        session = FakeClientSession(call_results=[text_result("ok")])
        handle = ToolProviderHandle(
            ProviderSpec(id="network", command="x"),
            session_factory=session_factory_for(session),
            correlation_argument="streamId"
        )
        await handle.initialize()

        with patch.object(handle.audit_logger, "log_tool_event") as log_tool_event:
            await handle.execute_tool("network-ping", {"host": "8.8.8.8", "streamId": "session_1"})

        assert log_tool_event.call_args.kwargs["correlation_id"] == "session_1"

    @pytest.mark.asyncio
    async def test_error_result_timed_as_failure(self):
        session = FakeClientSession(call_results=[text_result("Error: unknown host", is_error=True)])
        handle = make_handle("network", session)
        await handle.initialize()
        recorded = []
        collector = SimpleNamespace(record_tool_call=recorded.append)

        with patch("dab.lib.metrics.try_get_metrics_collector", return_value=collector):
            await handle.execute_tool("network-ping", {"host": "nowhere"})

        assert recorded[0].success is False
        assert recorded[0].error_type == "tool_error"
