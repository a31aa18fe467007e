"""LLM client for OpenAI-compatible providers with function calling.

Provides a unified interface for the tutoring engine's model calls.
One call to :meth:`LLMClient.step` is one model invocation and returns a
typed step: either a final natural-language reply or a batch of tool calls.

Supported providers:
- lmstudio: Local LM Studio server (OpenAI-compatible API)
- openai: OpenAI API
- xai: xAI API (OpenAI-compatible endpoint)
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union

import structlog
from openai import APIConnectionError, OpenAI

from book_teacher.config.app_config import AppConfig, load_app_config

logger = structlog.get_logger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

Provider = Literal["lmstudio", "openai", "xai"]

# Patterns to strip from final replies (thinking tags, etc.)
SANITIZE_PATTERNS = [
    re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<analysis>.*?</analysis>", re.DOTALL | re.IGNORECASE),
    re.compile(r"<reasoning>.*?</reasoning>", re.DOTALL | re.IGNORECASE),
]


def strip_think(text: str) -> str:
    """Remove thinking/reasoning blocks some models emit before the answer."""
    result = text
    for pattern in SANITIZE_PATTERNS:
        result = pattern.sub("", result)
    return result.strip()


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class LLMConfig:
    """Configuration for LLM client."""

    provider: Provider = "openai"
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout: int = 120
    api_key: str | None = None

    @classmethod
    def from_app_config(
        cls, config: AppConfig | None = None, provider: str | None = None
    ) -> LLMConfig:
        """Build client configuration from the application config."""
        if config is None:
            config = load_app_config()

        provider = provider or config.tutor.default_provider
        provider_config = config.providers.get(provider)
        if provider_config is None:
            logger.warning("provider_not_configured", provider=provider)
            return cls()

        return cls(
            provider=provider,
            base_url=provider_config.base_url or cls.base_url,
            model=provider_config.default_model,
            api_key=provider_config.get_api_key(),
        )


@dataclass
class ToolCall:
    """A capability invocation requested by the model."""

    id: str
    name: str
    arguments: str  # raw JSON text, parsed by the capability registry

    def to_dict(self) -> dict[str, Any]:
        """Convert to the assistant-message tool_calls entry."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Message:
    """A chat message."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API call."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class LLMResponse:
    """Response from LLM."""

    content: str
    model: str
    provider: Provider
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def prompt_tokens(self) -> int:
        """Get prompt token count."""
        return self.usage.get("prompt_tokens", 0)

    @property
    def completion_tokens(self) -> int:
        """Get completion token count."""
        return self.usage.get("completion_tokens", 0)

    @property
    def total_tokens(self) -> int:
        """Get total token count."""
        return self.usage.get("total_tokens", 0)


@dataclass
class FinalReply:
    """Model step that ends the tool loop with a natural-language answer."""

    content: str


@dataclass
class ToolCallBatch:
    """Model step that asks for one or more capability calls."""

    calls: list[ToolCall]
    content: str = ""


ModelStep = Union[FinalReply, ToolCallBatch]


class LLMError(Exception):
    """Error during LLM interaction."""

    pass


class LLMConnectionError(LLMError):
    """Error connecting to LLM server (includes timeouts)."""

    pass


class LLMResponseError(LLMError):
    """Malformed or schema-violating LLM response."""

    pass


# =============================================================================
# LLM CLIENT
# =============================================================================


class LLMClient:
    """Unified client for LLM interactions.

    Supports LM Studio, OpenAI and xAI via the OpenAI-compatible API.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        model: str | None = None,
    ):
        """Initialize LLM client.

        Args:
            config: LLM configuration (built from app config if not provided)
            model: Override model from config
        """
        if config is None:
            config = LLMConfig.from_app_config()

        self.config = config

        if model is not None:
            self.config.model = model

        self._client = OpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key or "not-needed",
            timeout=self.config.timeout,
        )

        logger.info(
            "llm_client_initialized",
            provider=self.config.provider,
            model=self.config.model,
            base_url=self.config.base_url,
        )

    def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Send chat completion request.

        Args:
            messages: List of messages in conversation
            tools: Function schemas the model may call
            model: Override the configured model for this call
            temperature: Override default temperature
            max_tokens: Override default max tokens

        Returns:
            LLMResponse with content, tool calls and metadata

        Raises:
            LLMConnectionError: If cannot connect to server or it times out
            LLMResponseError: If response is invalid
            LLMError: For any other provider failure
        """
        if temperature is None:
            temperature = self.config.temperature
        if max_tokens is None:
            max_tokens = self.config.max_tokens

        request_kwargs: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            request_kwargs["tools"] = tools

        start_time = time.time()

        try:
            response = self._client.chat.completions.create(**request_kwargs)
        except APIConnectionError as e:
            raise LLMConnectionError(
                f"Could not reach {self.config.provider} at {self.config.base_url}: {e}"
            ) from e
        except Exception as e:
            error_msg = str(e)
            if "Connection" in error_msg or "connect" in error_msg.lower():
                raise LLMConnectionError(
                    f"Could not reach {self.config.provider} at {self.config.base_url}: {e}"
                ) from e
            raise LLMError(f"LLM call failed: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)

        if not response.choices:
            raise LLMResponseError("Empty response from LLM")

        message = response.choices[0].message
        content = message.content or ""

        tool_calls = []
        for raw in message.tool_calls or []:
            function = getattr(raw, "function", None)
            name = getattr(function, "name", None)
            if not name:
                raise LLMResponseError(f"Tool call without function name: {raw!r}")
            tool_calls.append(
                ToolCall(
                    id=raw.id or f"call_{len(tool_calls)}",
                    name=name,
                    arguments=function.arguments or "{}",
                )
            )

        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        logger.debug(
            "llm_response",
            provider=self.config.provider,
            model=response.model,
            tokens=usage.get("total_tokens", 0),
            tool_calls=len(tool_calls),
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=content,
            model=response.model,
            provider=self.config.provider,
            tool_calls=tool_calls,
            usage=usage,
            latency_ms=latency_ms,
        )

    def step(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelStep:
        """Run one model invocation and classify the result.

        Returns:
            ToolCallBatch if the model requested capabilities, else FinalReply

        Raises:
            LLMResponseError: If the model returned neither text nor tool calls
        """
        response = self.chat(messages, tools=tools, model=model)

        if response.tool_calls:
            return ToolCallBatch(calls=response.tool_calls, content=response.content)

        reply = strip_think(response.content)
        if not reply:
            raise LLMResponseError("LLM returned neither content nor tool calls")
        return FinalReply(content=reply)
