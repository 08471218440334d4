"""Chat completion against OpenAI-compatible endpoints.

Groq and Gemini both expose OpenAI-compatible chat completion APIs, so a
single ``openai.AsyncOpenAI`` client serves both. Rate-limited requests are
retried with the next credential of the provider's pool.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from dab.lib.config import LLMConfig
from dab.lib.metrics import try_get_metrics_collector
from dab.lib.observability import get_tracer, record_failure
from dab.models.errors import NoCredentialsConfigured
from dab.models.message import Message
from dab.models.tool import ToolCatalog
from dab.services.credential_rotator import CredentialRotator
from dab.services.interfaces.model_client import ModelClient

RATE_LIMIT_MARKERS = ("rate limit", "quota exceeded", "RESOURCE_EXHAUSTED", "429", "insufficient_quota")

ClientFactory = Callable[[str, str], AsyncOpenAI]


def is_rate_limit_error(error: BaseException) -> bool:
    """Whether ``error`` means the current credential is throttled or out of quota."""
    if isinstance(error, openai.RateLimitError):
        return True
    message = str(error)
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def _default_client_factory(api_key: str, base_url: str) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key, base_url=base_url)


class OpenAICompatibleClient(ModelClient):
    """Model client for the configured Groq or Gemini backend."""

    def __init__(
        self,
        config: LLMConfig,
        rotator: CredentialRotator,
        client_factory: Optional[ClientFactory] = None
    ):
        self.config = config
        self.rotator = rotator
        self.client_factory = client_factory or _default_client_factory
        self._clients: Dict[Tuple[str, str], AsyncOpenAI] = {}
        self.logger = logging.getLogger(__name__)

    @property
    def provider(self) -> str:
        return self.config.provider

    def _tool_definitions(self, tools: Optional[ToolCatalog]) -> Optional[List[Dict[str, Any]]]:
        if not tools or not self.config.native_tool_calls:
            return None
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameter_schema or {"type": "object", "properties": {}},
                },
            }
            for tool in tools.tools
        ]

    def _client_for(self, api_key: str, base_url: str) -> AsyncOpenAI:
        """One client, and so one connection pool, per credential and endpoint."""
        key = (api_key, base_url)
        client = self._clients.get(key)
        if client is None:
            client = self.client_factory(api_key, base_url)
            self._clients[key] = client
        return client

    async def _complete_once(self, api_key: str, messages: List[Message], tools: Optional[ToolCatalog]) -> str:
        settings = self.config.active()
        client = self._client_for(api_key, settings.base_url)

        request: Dict[str, Any] = {
            "model": settings.model,
            "messages": [message.to_chat_format() for message in messages],
            "temperature": self.config.temperature,
            "max_completion_tokens": self.config.max_completion_tokens,
            "timeout": self.config.request_timeout,
        }
        tool_definitions = self._tool_definitions(tools)
        if tool_definitions:
            request["tools"] = tool_definitions
            request["tool_choice"] = "auto"

        completion = await client.chat.completions.create(**request)
        if not completion.choices:
            return ""
        message = completion.choices[0].message

        # Native tool calls are re-encoded as the JSON tool request format
        if message.tool_calls:
            call = message.tool_calls[0]
            return json.dumps({
                "tool": call.function.name,
                "arguments": json.loads(call.function.arguments or "{}"),
            })

        return message.content or ""

    async def complete(self, messages: List[Message], tools: Optional[ToolCatalog] = None) -> str:
        """Return the assistant reply, rotating credentials on rate limits.

        Each credential is tried at most once per call. When every attempt
        fails the reply is an apology text rather than an exception.
        """
        provider = self.provider
        max_attempts = max(1, self.rotator.pool_size(provider))
        last_error: Optional[BaseException] = None
        collector = try_get_metrics_collector()

        with get_tracer().start_as_current_span(
            "model.complete",
            attributes={"model.provider": provider, "model.messages": len(messages)}
        ) as span:
            for attempt in range(1, max_attempts + 1):
                try:
                    api_key = self.rotator.next(provider)
                    reply = await self._complete_once(api_key, messages, tools)
                    span.set_attribute("model.attempts", attempt)
                    if collector:
                        collector.record_model_completion(provider, True)
                    return reply
                except NoCredentialsConfigured as e:
                    last_error = e
                    break
                except Exception as e:
                    last_error = e
                    if is_rate_limit_error(e) and attempt < max_attempts:
                        self.logger.warning(
                            f"API key rate limited, trying next key (attempt {attempt}/{max_attempts})"
                        )
                        if collector:
                            collector.record_credential_rotation(provider)
                        continue
                    break

            span.set_attribute("model.failed", True)
            if last_error is not None:
                record_failure(span, last_error)

        if collector:
            collector.record_model_completion(provider, False)
        error_message = (
            f"Error getting {provider} LLM response after trying {max_attempts} key(s): {last_error}"
        )
        self.logger.error(error_message)
        return f"I encountered an error: {error_message}. Please try again or rephrase your request."

    async def aclose(self) -> None:
        """Close every cached client and its connection pool."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                self.logger.warning(f"Error closing {self.provider} client: {e}")
