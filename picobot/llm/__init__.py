"""OpenAI-compatible chat completions provider (OpenRouter by default)."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from picobot.config import OPENROUTER_BASE_URL
from picobot.exceptions import LLMAPIError, LLMError
from picobot.logging import get_logger

log = get_logger(__name__)


OLLAMA_OPENAI_BASE_URL = "http://127.0.0.1:11434/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: str | dict[str, Any] = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the OpenAI assistant ``tool_calls`` shape."""
        arguments = self.arguments
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        """Parse either the OpenAI nested shape or a flat ``{id, name, arguments}``."""
        function = data.get("function")
        if isinstance(function, dict):
            return cls(
                id=str(data.get("id", "")),
                name=str(function.get("name", "")),
                arguments=function.get("arguments", "") or "",
            )
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=data.get("arguments", "") or "",
        )


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Run one chat completion.

        Raises:
            LLMAPIError: transport, HTTP or authentication failure
            LLMError: malformed response payload
        """

    async def close(self) -> None:
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Chat completions over plain HTTP for OpenRouter, OpenAI and Ollama's /v1."""

    def __init__(
        self,
        model: str,
        api_key: str = "",
        base_url: str = OPENROUTER_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        tool_choice: str = "auto",
    ):
        """Initialize provider.

        Args:
            model: Default model id (e.g. 'anthropic/claude-sonnet-4.5')
            api_key: Bearer token; may be empty for local endpoints
            base_url: API base URL ending in /v1 (or OpenRouter's /api/v1)
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            timeout: Request timeout in seconds
            tool_choice: Value sent as ``tool_choice`` when tools are present
        """
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.tool_choice = tool_choice

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Strip local bookkeeping keys the API does not accept."""
        result = []
        for msg in messages:
            role = msg.get("role")
            entry: dict[str, Any] = {"role": role, "content": msg.get("content") or ""}
            if role == "assistant" and msg.get("tool_calls"):
                entry["tool_calls"] = [
                    tc if isinstance(tc, dict) else tc.to_dict() for tc in msg["tool_calls"]
                ]
            if role == "tool":
                entry["tool_call_id"] = msg.get("tool_call_id", "")
            result.append(entry)
        return result

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        selected_model = model or self.model

        body: dict[str, Any] = {
            "model": selected_model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            body["tools"] = [tool.to_openai() for tool in tools]
            body["tool_choice"] = self.tool_choice

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            log.debug("Calling LLM", model=selected_model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise LLMAPIError(f"LLM HTTP error: {e}") from e

        if not response.is_success:
            raise LLMAPIError(
                f"LLM API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"LLM response decode error: {e}") from e

        return self._parse_response(data, selected_model)

    @staticmethod
    def _parse_response(data: dict[str, Any], model: str) -> LLMResponse:
        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LLMAPIError(f"LLM API error: {message}")

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise LLMError("No choices in LLM response")

        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall.from_dict(tc)
            for tc in message.get("tool_calls") or []
            if isinstance(tc, dict)
        ]
        usage = data.get("usage") or {}
        result = LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            model=str(data.get("model") or model),
            usage={
                "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
                "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            },
        )
        log.debug(
            "LLM response",
            finish_reason=result.finish_reason,
            tool_calls=len(result.tool_calls),
        )
        return result

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openrouter",
    model: str = "x-ai/grok-4.1-fast",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 60.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openrouter, openai, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL override
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: Request timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    defaults = {
        "openrouter": OPENROUTER_BASE_URL,
        "openai": OPENAI_BASE_URL,
        "ollama": OLLAMA_OPENAI_BASE_URL,
    }
    key = (provider or "").strip().lower()
    if key not in defaults:
        raise ValueError(
            f"Provider '{provider}' not supported. Use one of: {', '.join(defaults)}."
        )
    if key != "ollama" and not api_key:
        raise ValueError(f"Provider '{provider}' requires an API key")
    return OpenAICompatibleProvider(
        model=model,
        api_key=api_key or "",
        base_url=base_url or defaults[key],
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )


def create_provider_from_config(config: Any) -> LLMProvider:
    """Build the provider described by ``config.model``."""
    cfg = config.model
    return create_provider(
        provider=cfg.provider,
        model=cfg.model,
        api_key=cfg.api_key or None,
        base_url=cfg.base_url or None,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        timeout=cfg.timeout,
    )
