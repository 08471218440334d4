"""Handle for one tool provider process.

A ``ToolProviderHandle`` owns the stdio transport and MCP client session of
one provider. It moves through ``uninitialized -> connected -> closed``;
``closed`` is terminal.
"""

import asyncio
import logging
import os
import time
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from dab.lib.logging_config import get_audit_logger
from dab.lib.metrics import ToolCallTimer
from dab.lib.observability import get_tracer, record_failure
from dab.models.errors import NotInitialized, ProviderInitializationError
from dab.models.provider import (
    ConnectionState,
    ProviderSpec,
    ResourceDescriptor,
    WorkflowDescriptor,
)
from dab.models.tool import ToolDescriptor, ToolResult

SessionFactory = Callable[[ProviderSpec, Any], AsyncContextManager[ClientSession]]

# Raised by the session streams once the provider process is gone
TRANSPORT_CLOSED_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


@asynccontextmanager
async def stdio_session(spec: ProviderSpec, elicitation_callback=None):
    """Launch the provider process and yield an MCP client session over stdio."""
    env = None
    if spec.env:
        env = {**os.environ, **spec.env}

    params = StdioServerParameters(command=spec.command, args=spec.args, env=env)
    async with stdio_client(params) as (read, write):
        async with ClientSession(read, write, elicitation_callback=elicitation_callback) as session:
            yield session


class ToolProviderHandle:
    """Connection to one tool provider.

    Calls are issued one at a time per handle. ``execute_tool`` retries are
    not idempotency-safe: an attempt that failed after the remote side acted
    may be repeated.
    """

    def __init__(
        self,
        spec: ProviderSpec,
        elicitation_callback=None,
        session_factory: Optional[SessionFactory] = None,
        tool_call_timeout: Optional[float] = None,
        correlation_argument: str = "sessionId"
    ):
        self.spec = spec
        self.elicitation_callback = elicitation_callback
        self.session_factory = session_factory or stdio_session
        self.tool_call_timeout = tool_call_timeout
        self.correlation_argument = correlation_argument
        self.state = ConnectionState.UNINITIALIZED
        self.session: Optional[ClientSession] = None
        self.capabilities: Any = None
        self.workflows: List[WorkflowDescriptor] = []
        self.resources: List[ResourceDescriptor] = []
        self._exit_stack: Optional[AsyncExitStack] = None
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def supports_progress(self) -> bool:
        if self.capabilities is None:
            return False
        if getattr(self.capabilities, "progress", None) is True:
            return True
        experimental = getattr(self.capabilities, "experimental", None) or {}
        return experimental.get("progress") is True

    async def initialize(self) -> None:
        """Start the provider and negotiate capabilities.

        Prompts and resources are cached best-effort; failing to list either
        leaves that cache empty.

        Raises:
            ProviderInitializationError: The transport or handshake failed
        """
        if self.state == ConnectionState.CONNECTED:
            return
        if self.state == ConnectionState.CLOSED:
            raise ProviderInitializationError(self.id, RuntimeError("handle is closed"))

        self._exit_stack = AsyncExitStack()
        try:
            self.session = await self._exit_stack.enter_async_context(
                self.session_factory(self.spec, self.elicitation_callback)
            )
            init_result = await self.session.initialize()
            self.capabilities = getattr(init_result, "capabilities", None)
        except Exception as e:
            self.logger.error(f"Error initializing provider {self.id}: {e}")
            self.audit_logger.log_provider_event("initialize", self.id, "failure", {"error": str(e)})
            await self.cleanup()
            raise ProviderInitializationError(self.id, e) from e

        self.state = ConnectionState.CONNECTED

        try:
            prompts = await self.session.list_prompts()
            self.workflows = [WorkflowDescriptor.from_prompt(p) for p in (prompts.prompts or [])]
        except Exception as e:
            self.logger.warning(f"Could not fetch prompts from {self.id}: {e}")
            self.workflows = []

        try:
            resources = await self.session.list_resources()
            self.resources = [ResourceDescriptor.from_resource(r) for r in (resources.resources or [])]
        except Exception as e:
            self.logger.warning(f"Could not fetch resources from {self.id}: {e}")
            self.resources = []

        self.audit_logger.log_provider_event(
            "initialize", self.id, "success",
            {"prompts": len(self.workflows), "resources": len(self.resources)}
        )
        self.logger.info(
            f"Provider {self.id} initialized with {len(self.workflows)} prompt(s), "
            f"{len(self.resources)} resource(s)"
        )

    def _require_session(self) -> ClientSession:
        if self.state != ConnectionState.CONNECTED or self.session is None:
            raise NotInitialized(self.id)
        return self.session

    async def list_tools(self) -> List[ToolDescriptor]:
        """Query the provider's current tools. Never cached."""
        session = self._require_session()
        try:
            async with self._lock:
                response = await session.list_tools()
        except TRANSPORT_CLOSED_ERRORS as e:
            await self._close_after_transport_loss(e)
            raise

        supports_progress = self.supports_progress
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "No description",
                parameter_schema=tool.inputSchema or {},
                provider_id=self.id,
                supports_progress=supports_progress,
            )
            for tool in response.tools
        ]

    async def execute_tool(
        self,
        name: str,
        arguments: Dict[str, Any],
        max_retries: int = 2,
        retry_delay: float = 1.0
    ) -> ToolResult:
        """Invoke a tool, retrying failed attempts.

        Args:
            name: Tool name
            arguments: Tool arguments, passed through unchanged
            max_retries: Total number of attempts
            retry_delay: Seconds to wait between attempts

        Returns:
            Normalized result; a result without content is empty and non-error

        Raises:
            NotInitialized: The handle is not connected
            Exception: The last attempt's error, unchanged. A closed or
                broken transport is not retried and closes the handle.
        """
        session = self._require_session()
        attempts = max(1, max_retries)
        read_timeout = timedelta(seconds=self.tool_call_timeout) if self.tool_call_timeout else None
        started = time.time()
        correlation_id = arguments.get(self.correlation_argument) if isinstance(arguments, dict) else None

        def audit_failure(attempt: int, error: BaseException) -> None:
            self.audit_logger.log_tool_event(
                provider_id=self.id,
                tool_name=name,
                result="failure",
                attempts=attempt,
                execution_time_ms=int((time.time() - started) * 1000),
                correlation_id=correlation_id,
                metadata={"error": str(error)}
            )

        with get_tracer().start_as_current_span(
            "tool.execute",
            attributes={"tool.name": name, "tool.provider_id": self.id}
        ) as span, ToolCallTimer(self.id, name) as timer:
            for attempt in range(1, attempts + 1):
                timer.attempts = attempt
                try:
                    self.logger.info(f"Executing {name} on {self.id} (attempt {attempt}/{attempts})")
                    async with self._lock:
                        raw = await session.call_tool(
                            name, arguments=arguments, read_timeout_seconds=read_timeout
                        )
                    result = ToolResult.from_call_result(raw)
                    span.set_attribute("tool.attempts", attempt)
                    span.set_attribute("tool.is_error", result.is_error)
                    if result.is_error:
                        timer.success = False
                        timer.error_type = "tool_error"
                    self.audit_logger.log_tool_event(
                        provider_id=self.id,
                        tool_name=name,
                        result="error" if result.is_error else "success",
                        attempts=attempt,
                        execution_time_ms=int((time.time() - started) * 1000),
                        correlation_id=correlation_id
                    )
                    return result
                except TRANSPORT_CLOSED_ERRORS as e:
                    span.set_attribute("tool.attempts", attempt)
                    record_failure(span, e)
                    audit_failure(attempt, e)
                    await self._close_after_transport_loss(e)
                    raise
                except Exception as e:
                    self.logger.warning(f"Error executing {name} on {self.id}: {e}")
                    if attempt >= attempts:
                        span.set_attribute("tool.attempts", attempt)
                        record_failure(span, e)
                        audit_failure(attempt, e)
                        raise
                    self.logger.info(f"Retrying {name} in {retry_delay}s")
                    await asyncio.sleep(retry_delay)

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None):
        """Fetch a workflow's seed messages. Argument values are stringified."""
        session = self._require_session()
        string_args = {key: str(value) for key, value in arguments.items()} if arguments else None
        async with self._lock:
            return await session.get_prompt(name, arguments=string_args)

    async def read_resource(self, uri: str):
        session = self._require_session()
        async with self._lock:
            return await session.read_resource(uri)

    def find_workflow(self, name: str) -> Optional[WorkflowDescriptor]:
        for workflow in self.workflows:
            if workflow.name == name:
                return workflow
        return None

    def find_resource(self, identifier: str) -> Optional[ResourceDescriptor]:
        for resource in self.resources:
            if resource.matches(identifier):
                return resource
        return None

    async def _close_after_transport_loss(self, error: BaseException) -> None:
        self.logger.error(f"Lost connection to provider {self.id}: {error!r}")
        self.audit_logger.log_provider_event("transport_closed", self.id, "failure", {"error": repr(error)})
        await self.cleanup()

    async def cleanup(self) -> None:
        """Close the session and stop the provider. Safe to call repeatedly."""
        if self.state == ConnectionState.CLOSED:
            return

        exit_stack = self._exit_stack
        self._exit_stack = None
        self.session = None
        was_connected = self.state == ConnectionState.CONNECTED
        self.state = ConnectionState.CLOSED

        if exit_stack is not None:
            try:
                await exit_stack.aclose()
            except Exception as e:
                self.logger.warning(f"Error during cleanup of provider {self.id}: {e}")

        if was_connected:
            self.audit_logger.log_provider_event("cleanup", self.id, "success")
        self.logger.debug(f"Provider {self.id} closed")
