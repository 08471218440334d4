"""Chat session orchestration.

The session owns the conversation history and the provider handles. Each
user input is routed to a workflow, a resource or a chat turn; assistant
replies that are tool requests are dispatched to the provider whose live
catalog lists the tool.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from dab.lib.config import SessionConfig, StreamingConfig
from dab.lib.logging_config import get_audit_logger
from dab.lib.metrics import try_get_metrics_collector
from dab.lib.observability import get_tracer
from dab.models.approval import ApprovalDecision, ApprovalRequest
from dab.models.errors import ProviderInitializationError
from dab.models.message import ConversationSession, MessageRole, TurnState
from dab.models.provider import ResourceDescriptor, WorkflowDescriptor
from dab.models.tool import ToolCatalog, ToolResult
from dab.services.approval_gate import ApprovalGate
from dab.services.interfaces.human_interface import HumanInterface, RenderKind
from dab.services.interfaces.model_client import ModelClient
from dab.services.stream_broker import StreamBroker
from dab.services.tool_calls import Recognized, parse_tool_call
from dab.services.tool_provider import ToolProviderHandle

SYSTEM_PROMPT_TEMPLATE = """You are a helpful assistant with access to these tools:

{tools}
Choose the appropriate tool based on the user's question. If no tool is needed, reply directly.

IMPORTANT: When you need to use a tool, you must ONLY respond with the exact JSON object format below, nothing else:
{{
    "tool": "tool-name",
    "arguments": {{
        "argument-name": "value"
    }}
}}

After receiving a tool's response:
1. Transform the raw data into a natural, conversational response
2. Keep responses concise but informative
3. Focus on the most relevant information
4. Use appropriate context from the user's question
5. Avoid simply repeating the raw data

Please use only the tools that are explicitly defined above."""

QUIT_COMMANDS = ("quit", "exit")
TOOL_RESULT_PREFIX = "Tool execution result: "


def format_resource_message(resource: ResourceDescriptor, text: str) -> str:
    return (
        f"Resource: {resource.name}\n"
        f"URI: {resource.uri}\n"
        f"Description: {resource.description or 'No description'}\n\n"
        f"Content:\n{text}"
    )


class ChatSession:
    """Orchestrates one interactive conversation across tool providers."""

    def __init__(
        self,
        handles: List[ToolProviderHandle],
        model_client: ModelClient,
        interface: HumanInterface,
        gate: Optional[ApprovalGate] = None,
        broker: Optional[StreamBroker] = None,
        streaming: Optional[StreamingConfig] = None,
        config: Optional[SessionConfig] = None
    ):
        self.handles = handles
        self.model_client = model_client
        self.interface = interface
        self.gate = gate
        self.broker = broker
        self.streaming = streaming or StreamingConfig()
        self.config = config or SessionConfig()
        self.conversation = ConversationSession()
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()

        if self.gate is not None:
            self.gate.add_observer(self._on_approval)

    def _on_approval(self, request: ApprovalRequest, decision: Optional[ApprovalDecision]) -> None:
        if decision is None and self.conversation.turn_state == TurnState.EXECUTING:
            self.conversation.enter(TurnState.AWAITING_APPROVAL)
        elif decision is not None and self.conversation.turn_state == TurnState.AWAITING_APPROVAL:
            self.conversation.enter(TurnState.EXECUTING)

    @property
    def messages(self):
        return self.conversation.messages

    async def initialize_providers(self) -> None:
        """Initialize every handle in order.

        Raises:
            ProviderInitializationError: A provider failed; all handles have been cleaned up
        """
        for handle in self.handles:
            try:
                await handle.initialize()
            except ProviderInitializationError:
                await self._cleanup_handles()
                raise
            except Exception as e:
                await self._cleanup_handles()
                raise ProviderInitializationError(handle.id, e) from e

    async def catalog(self) -> ToolCatalog:
        """Build the tool catalog from the live provider listings."""
        descriptors = []
        for handle in self.handles:
            descriptors.extend(await handle.list_tools())
        return ToolCatalog.from_descriptors(descriptors)

    async def build_system_prompt(self, catalog: Optional[ToolCatalog] = None) -> str:
        catalog = catalog if catalog is not None else await self.catalog()
        return SYSTEM_PROMPT_TEMPLATE.format(tools=catalog.format_for_model())

    def _render(self, kind: RenderKind, **payload: Any) -> None:
        try:
            self.interface.render_event(kind, payload)
        except Exception as e:
            self.logger.warning(f"Failed to render {kind.value}: {e}")

    def _notice(self, message: str) -> None:
        self._render(RenderKind.NOTICE, message=message)

    async def _find_provider(self, tool_name: str) -> Optional[ToolProviderHandle]:
        for handle in self.handles:
            tools = await handle.list_tools()
            if any(tool.name == tool_name for tool in tools):
                return handle
        return None

    def _wants_stream(self, tool_name: str) -> bool:
        return self.broker is not None and self.streaming.enabled and tool_name in self.streaming.tools

    async def _finish_stream(self, correlation_id: str) -> None:
        stream = self.broker.get(correlation_id)
        if stream is None:
            return
        try:
            await asyncio.wait_for(stream.wait_closed(), timeout=self.streaming.connect_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Stream {correlation_id} did not finish, closing it")
        await self.broker.close_stream(correlation_id)

    async def dispatch_tool(self, name: str, arguments: Dict[str, Any]) -> Tuple[str, Optional[ToolResult]]:
        """Run one recognized tool request and return the text for the history."""
        self.conversation.enter(TurnState.TOOL_INVOCATION)
        handle = await self._find_provider(name)
        if handle is None:
            self.logger.warning(f"No server found with tool: {name}")
            return f"No server found with tool: {name}", None

        arguments = dict(arguments)
        correlation_id = None
        if self._wants_stream(name):
            correlation_id = self.broker.new_correlation_id()
            arguments[self.streaming.correlation_argument] = correlation_id
            await self.broker.open_stream(correlation_id)

        self._render(RenderKind.TOOL_EXECUTION, tool=name, arguments=arguments, provider=handle.id)
        self.conversation.enter(TurnState.EXECUTING)
        try:
            result = await handle.execute_tool(
                name,
                arguments,
                max_retries=self.config.tool_retries,
                retry_delay=self.config.retry_delay
            )
        except Exception as e:
            self.logger.error(f"Error executing tool {name}: {e}")
            return f"Error executing tool: {e}", None
        finally:
            if correlation_id is not None:
                await self._finish_stream(correlation_id)

        return f"{TOOL_RESULT_PREFIX}{result.to_json()}", result

    async def process_reply(self, reply: str) -> str:
        """Return ``reply`` unchanged, or the dispatch result when it is a tool request."""
        parsed = parse_tool_call(reply)
        if not isinstance(parsed, Recognized):
            return reply

        self.logger.info(f"Tool call detected: {parsed.name}")
        text, _ = await self.dispatch_tool(parsed.name, parsed.arguments)
        return text

    async def _complete(self, catalog: Optional[ToolCatalog]) -> str:
        self.conversation.enter(TurnState.DISPATCHING)
        return await self.model_client.complete(list(self.conversation.messages), catalog)

    async def _ensure_system_prompt(self) -> ToolCatalog:
        catalog = await self.catalog()
        if not self.conversation.messages:
            self.conversation.add_message(MessageRole.SYSTEM, await self.build_system_prompt(catalog))
        return catalog

    async def chat_turn(self, user_input: str) -> None:
        """One user message, one completion and at most one tool dispatch."""
        catalog = await self._ensure_system_prompt()
        self.conversation.add_message(MessageRole.USER, user_input)

        with get_tracer().start_as_current_span("session.chat_turn") as span:
            reply = await self._complete(catalog)
            self._render(RenderKind.ASSISTANT, text=reply)

            result = await self.process_reply(reply)
            if result != reply:
                span.set_attribute("session.tool_dispatched", True)
                self.conversation.enter(TurnState.RESULT_INTEGRATION)
                self.conversation.add_message(MessageRole.ASSISTANT, reply)
                self.conversation.add_message(MessageRole.SYSTEM, result)
                self._render(RenderKind.TOOL_RESULT, text=result)

                final = await self._complete(catalog)
                self._render(RenderKind.FINAL, text=final)
                self.conversation.add_message(MessageRole.ASSISTANT, final)
            else:
                self.conversation.add_message(MessageRole.ASSISTANT, reply)

        self.conversation.enter(TurnState.AWAITING_INPUT)

    def _find_workflow(self, name: str) -> Tuple[Optional[ToolProviderHandle], Optional[WorkflowDescriptor]]:
        for handle in self.handles:
            workflow = handle.find_workflow(name)
            if workflow is not None:
                return handle, workflow
        return None, None

    def _find_resource(self, identifier: str) -> Tuple[Optional[ToolProviderHandle], Optional[ResourceDescriptor]]:
        for handle in self.handles:
            resource = handle.find_resource(identifier)
            if resource is not None:
                return handle, resource
        return None, None

    def list_workflows(self) -> None:
        self._render(RenderKind.LIST_HEADER, title="Available prompts")
        workflows = [w for handle in self.handles for w in handle.workflows]
        if not workflows:
            self._render(RenderKind.LIST_ITEM, empty=True, name="prompts")
        for workflow in workflows:
            self._render(RenderKind.LIST_ITEM, prefix="/", name=workflow.name, description=workflow.description)

    def list_resources(self) -> None:
        self._render(RenderKind.LIST_HEADER, title="Available resources")
        resources = [r for handle in self.handles for r in handle.resources]
        if not resources:
            self._render(RenderKind.LIST_ITEM, empty=True, name="resources")
        for resource in resources:
            self._render(
                RenderKind.LIST_ITEM,
                prefix="@",
                name=resource.name,
                description=resource.description,
                uri=resource.uri,
                mime_type=resource.mime_type
            )

    async def _collect_arguments(self, workflow: WorkflowDescriptor) -> Optional[Dict[str, str]]:
        arguments: Dict[str, str] = {}
        for argument in workflow.arguments:
            value = await self.interface.ask_argument(
                argument.name, argument.description or "No description", argument.required
            )
            if value:
                arguments[argument.name] = value
            elif argument.required:
                self._notice(f"Required argument {argument.name} not provided")
                return None
        return arguments

    async def run_workflow(self, name: str) -> None:
        """Seed the history from a provider workflow and loop model and tools.

        The loop ends on the first reply that is not a tool request, or after
        ``max_workflow_iterations`` tool dispatches.
        """
        handle, workflow = self._find_workflow(name)
        if workflow is None:
            self._notice(f"Prompt not found: {name}")
            return

        arguments = await self._collect_arguments(workflow)
        if arguments is None:
            return

        prompt = await handle.get_prompt(workflow.name, arguments)
        catalog = await self._ensure_system_prompt()
        for message in getattr(prompt, "messages", None) or []:
            text = getattr(message.content, "text", None)
            if text is None or message.role not in ("user", "assistant"):
                continue
            self.conversation.add_message(MessageRole(message.role), text)

        limit = self.config.max_workflow_iterations
        iterations = 0
        with get_tracer().start_as_current_span(
            "session.workflow", attributes={"workflow.name": workflow.name}
        ) as span:
            while True:
                reply = await self._complete(catalog)
                self._render(RenderKind.ASSISTANT, text=reply)
                result = await self.process_reply(reply)
                self.conversation.add_message(MessageRole.ASSISTANT, reply)

                if result == reply:
                    break

                iterations += 1
                self.conversation.enter(TurnState.RESULT_INTEGRATION)
                self.conversation.add_message(MessageRole.SYSTEM, result)
                self._render(RenderKind.TOOL_RESULT, text=result)

                if iterations >= limit:
                    notice = f"Workflow {workflow.name} stopped after {limit} tool iterations."
                    self.logger.warning(notice)
                    self.conversation.add_message(MessageRole.SYSTEM, notice)
                    self._notice(notice)
                    break
                catalog = await self.catalog()

            span.set_attribute("workflow.iterations", iterations)

        collector = try_get_metrics_collector()
        if collector:
            collector.record_workflow_run(workflow.name, iterations)
        self.conversation.enter(TurnState.AWAITING_INPUT)

    async def handle_resource(self, identifier: str) -> None:
        """Show a resource and attach it to the conversation if the human agrees."""
        handle, resource = self._find_resource(identifier)
        if resource is None:
            self._notice(f"Resource not found: {identifier}")
            return

        self._render(
            RenderKind.RESOURCE,
            name=resource.name,
            description=resource.description,
            uri=resource.uri,
            mime_type=resource.mime_type
        )
        response = await handle.read_resource(resource.uri)

        texts = []
        for content in getattr(response, "contents", None) or []:
            text = getattr(content, "text", None)
            if text is not None:
                texts.append(text)
                self._render(RenderKind.RESOURCE, text=text)
            else:
                blob = getattr(content, "blob", None) or ""
                self._render(RenderKind.RESOURCE, blob_size=len(blob))

        if not texts:
            return
        if await self.interface.confirm("Add this resource to the conversation context?"):
            await self._ensure_system_prompt()
            self.conversation.add_message(
                MessageRole.SYSTEM, format_resource_message(resource, "\n".join(texts))
            )
            self._notice("Resource added to conversation context")

    async def handle_input(self, user_input: str) -> bool:
        """Route one line of input. Returns False when the session should end."""
        text = user_input.strip()
        if not text:
            return True
        if text.lower() in QUIT_COMMANDS:
            return False

        if text == "/prompts":
            self.list_workflows()
        elif text.startswith("/"):
            await self.run_workflow(text[1:])
        elif text == "@resources":
            self.list_resources()
        elif text.startswith("@"):
            await self.handle_resource(text[1:])
        else:
            await self.chat_turn(text)
        return True

    async def start(self) -> None:
        """Run the interactive loop until quit or end of input, then tear down."""
        try:
            await self.initialize_providers()
            await self._ensure_system_prompt()
            self._render(RenderKind.WELCOME)

            while True:
                self.conversation.enter(TurnState.AWAITING_INPUT)
                try:
                    user_input = await self.interface.read_input()
                except (EOFError, KeyboardInterrupt):
                    break
                if user_input is None:
                    break

                try:
                    if not await self.handle_input(user_input):
                        break
                except Exception as e:
                    self.logger.error(f"Error processing input: {e}", exc_info=True)
                    self._render(RenderKind.ERROR, message=str(e))
                    self.conversation.enter(TurnState.AWAITING_INPUT)

            self._render(RenderKind.EXIT)
        finally:
            await self.cleanup()

    async def _cleanup_handles(self) -> List[Tuple[str, Exception]]:
        errors = []
        for handle in self.handles:
            try:
                await handle.cleanup()
            except Exception as e:
                self.logger.warning(f"Error cleaning up provider {handle.id}: {e}")
                errors.append((handle.id, e))
        return errors

    async def cleanup(self) -> None:
        """Close streams, every provider, then the model client. Errors are logged, not raised."""
        errors = []
        if self.broker is not None:
            try:
                await self.broker.close_all()
            except Exception as e:
                self.logger.warning(f"Error closing streams: {e}")
                errors.append(("streams", e))

        errors.extend(await self._cleanup_handles())
        if self.model_client is not None:
            try:
                await self.model_client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing model client: {e}")
                errors.append(("model", e))
        if self.gate is not None:
            self.gate.remove_observer(self._on_approval)

        if errors:
            self.audit_logger.log_provider_event(
                "session_cleanup", "all", "partial",
                {"errors": json.dumps({name: str(e) for name, e in errors})}
            )
        self.logger.info(f"Session {self.conversation.session_id} closed")
