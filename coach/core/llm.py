"""
Coach Assistant - LLM Provider Gateway.

One `generate_completion()` contract over interchangeable completion
backends. Each backend is a Provider strategy; the one to use is picked per
call from the model name (gemini-*, claude-*, gpt-*/o1-*/o3-*, command-*),
so each user can prefer a different model.

Backend failures never propagate: the gateway substitutes a sentinel
assistant turn whose content is a JSON message saying the service failed,
and the conversation loop treats it like any other reply.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Turn contract
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A native tool call returned by a backend. `arguments` is raw JSON text."""

    id: str
    name: str
    arguments: str = "{}"


@dataclass
class Turn:
    """One entry of a conversation sent to or returned by a provider."""

    role: str                          # "system" | "user" | "assistant" | "function"
    content: str | None = None
    name: str | None = None            # function name, for function turns
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None    # links a function turn to a native tool call
    is_error: bool = False             # set on the sentinel turn


def error_turn(service_name: str) -> Turn:
    """The sentinel turn returned when a backend call fails."""
    content = json.dumps({
        "message": f"Sorry, I encountered an error communicating with the {service_name} service.",
    })
    return Turn(role="assistant", content=content, is_error=True)


def _is_reasoning_model(model: str) -> bool:
    return model.startswith(("o1-", "o3-"))


def _function_result_text(turn: Turn) -> str:
    return f"Function {turn.name} returned: {turn.content}"


def _system_text(turns: list[Turn]) -> str:
    return "\n\n".join(t.content or "" for t in turns if t.role == "system")


def _with_inline_declarations(
    turns: list[Turn], functions: list[dict[str, Any]] | None,
) -> list[Turn]:
    """Add the function declarations as a system turn for backends without native tools."""
    if not functions:
        return turns
    text = (
        "Available functions (JSON Schema). To call one, reply with "
        '{"function_call": {"name": "...", "arguments": {...}}}:\n'
        + json.dumps(functions, indent=2)
    )
    split = 0
    while split < len(turns) and turns[split].role == "system":
        split += 1
    return turns[:split] + [Turn(role="system", content=text)] + turns[split:]


# ---------------------------------------------------------------------------
# Provider strategies
# ---------------------------------------------------------------------------


class Provider:
    """Base class for one completion backend."""

    name = ""
    display_name = ""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def supports_json_mode(self, model: str) -> bool:
        return False

    async def complete(
        self,
        model: str,
        turns: list[Turn],
        temperature: float | None,
        json_mode: bool,
        functions: list[dict[str, Any]] | None,
        max_tokens: int,
    ) -> Turn:
        raise NotImplementedError


class OpenAIProvider(Provider):
    name = "openai"
    display_name = "OpenAI"

    def supports_json_mode(self, model: str) -> bool:
        return not _is_reasoning_model(model)

    @staticmethod
    def _to_messages(turns: list[Turn], fold_system: bool) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        pending_system = ""
        for turn in turns:
            if turn.role == "system":
                if fold_system:
                    # o1/o3 take no system role: prepend it to the first user message
                    pending_system += (turn.content or "") + "\n\n"
                else:
                    messages.append({"role": "system", "content": turn.content or ""})
            elif turn.role == "user":
                messages.append({"role": "user", "content": pending_system + (turn.content or "")})
                pending_system = ""
            elif turn.role == "assistant":
                message: dict[str, Any] = {"role": "assistant", "content": turn.content}
                if turn.tool_calls:
                    message["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments},
                        }
                        for call in turn.tool_calls
                    ]
                messages.append(message)
            elif turn.role == "function":
                if turn.tool_call_id:
                    messages.append({
                        "role": "tool",
                        "tool_call_id": turn.tool_call_id,
                        "content": turn.content or "",
                    })
                else:
                    messages.append({"role": "user", "content": _function_result_text(turn)})
        if pending_system:
            messages.append({"role": "user", "content": pending_system.strip()})
        return messages

    async def complete(self, model, turns, temperature, json_mode, functions, max_tokens):
        from openai import AsyncOpenAI

        reasoning = _is_reasoning_model(model)
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._to_messages(
                _with_inline_declarations(turns, functions) if reasoning else turns,
                fold_system=reasoning,
            ),
            "max_completion_tokens": max_tokens,
        }
        if temperature is not None and not reasoning:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if functions and not reasoning:
            kwargs["tools"] = [{"type": "function", "function": fn} for fn in functions]

        client = AsyncOpenAI(api_key=self.api_key)
        response = await client.chat.completions.create(**kwargs)
        message = response.choices[0].message
        tool_calls = [
            ToolCall(id=call.id, name=call.function.name, arguments=call.function.arguments or "{}")
            for call in (message.tool_calls or [])
        ]
        return Turn(role="assistant", content=message.content, tool_calls=tool_calls)


class AnthropicProvider(Provider):
    name = "anthropic"
    display_name = "Anthropic"

    @staticmethod
    def _to_messages(turns: list[Turn]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for turn in turns:
            if turn.role == "user":
                messages.append({"role": "user", "content": turn.content or ""})
            elif turn.role == "assistant":
                blocks: list[dict[str, Any]] = []
                if turn.content:
                    blocks.append({"type": "text", "text": turn.content})
                for call in turn.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": json.loads(call.arguments or "{}"),
                    })
                if not blocks:
                    blocks.append({"type": "text", "text": "(no content)"})
                messages.append({"role": "assistant", "content": blocks})
            elif turn.role == "function":
                if turn.tool_call_id:
                    messages.append({
                        "role": "user",
                        "content": [{
                            "type": "tool_result",
                            "tool_use_id": turn.tool_call_id,
                            "content": turn.content or "",
                        }],
                    })
                else:
                    messages.append({"role": "user", "content": _function_result_text(turn)})
        return messages

    async def complete(self, model, turns, temperature, json_mode, functions, max_tokens):
        import anthropic

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": self._to_messages(turns),
        }
        system = _system_text(turns)
        if system:
            kwargs["system"] = system
        if temperature is not None:
            kwargs["temperature"] = temperature
        if functions:
            kwargs["tools"] = [
                {
                    "name": fn["name"],
                    "description": fn["description"],
                    "input_schema": fn["parameters"],
                }
                for fn in functions
            ]

        client = anthropic.AsyncAnthropic(api_key=self.api_key)
        response = await client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if block.type == "text")
        tool_calls = [
            ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input))
            for block in response.content
            if block.type == "tool_use"
        ]
        return Turn(role="assistant", content=text or None, tool_calls=tool_calls)


class GeminiProvider(Provider):
    name = "gemini"
    display_name = "Google Gemini"

    def supports_json_mode(self, model: str) -> bool:
        return True

    @staticmethod
    def _to_contents(turns: list[Turn]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for turn in turns:
            if turn.role == "system":
                continue
            if turn.role == "assistant":
                contents.append({"role": "model", "parts": [turn.content or ""]})
            elif turn.role == "function":
                contents.append({"role": "user", "parts": [_function_result_text(turn)]})
            else:
                contents.append({"role": "user", "parts": [turn.content or ""]})
        return contents

    async def complete(self, model, turns, temperature, json_mode, functions, max_tokens):
        import google.generativeai as genai

        turns = _with_inline_declarations(turns, functions)
        genai.configure(api_key=self.api_key)
        gm = genai.GenerativeModel(
            model_name=model,
            system_instruction=_system_text(turns) or None,
        )
        config_kwargs: dict[str, Any] = {"max_output_tokens": max_tokens}
        if temperature is not None:
            config_kwargs["temperature"] = temperature
        if json_mode:
            config_kwargs["response_mime_type"] = "application/json"

        response = await gm.generate_content_async(
            self._to_contents(turns),
            generation_config=genai.types.GenerationConfig(**config_kwargs),
        )
        return Turn(role="assistant", content=response.text)


class CohereProvider(Provider):
    name = "cohere"
    display_name = "Cohere"

    def supports_json_mode(self, model: str) -> bool:
        return True

    @staticmethod
    def _to_messages(turns: list[Turn]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for turn in turns:
            if turn.role == "function":
                messages.append({"role": "user", "content": _function_result_text(turn)})
            else:
                messages.append({"role": turn.role, "content": turn.content or " "})
        return messages

    async def complete(self, model, turns, temperature, json_mode, functions, max_tokens):
        import cohere

        turns = _with_inline_declarations(turns, functions)
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": self._to_messages(turns),
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        client = cohere.AsyncClientV2(api_key=self.api_key)
        response = await client.chat(**kwargs)
        return Turn(role="assistant", content=response.message.content[0].text)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------

_PROVIDER_CLASSES: dict[str, type[Provider]] = {
    "gemini":    GeminiProvider,
    "anthropic": AnthropicProvider,
    "openai":    OpenAIProvider,
    "cohere":    CohereProvider,
}

_DEFAULT_MODELS: dict[str, str] = {
    "gemini":    "gemini-2.0-flash",
    "anthropic": "claude-haiku-4-5-20251001",
    "openai":    "gpt-4o",
    "cohere":    "command-a-03-2025",
}

_MODEL_PREFIXES: tuple[tuple[str, str], ...] = (
    ("gemini-", "gemini"),
    ("claude-", "anthropic"),
    ("gpt-", "openai"),
    ("o1-", "openai"),
    ("o3-", "openai"),
    ("command-", "cohere"),
)


def select_provider(
    model: str | None,
    default_provider: str = "openai",
    default_model: str = "",
) -> tuple[str, str]:
    """Map a model name to (provider_name, model).

    Unknown or empty model names fall back to the default provider with its
    configured (or built-in) default model.
    """
    if model:
        for prefix, provider_name in _MODEL_PREFIXES:
            if model.startswith(prefix):
                return provider_name, model

    if default_provider not in _PROVIDER_CLASSES:
        raise ValueError(
            f"Unknown LLM_PROVIDER={default_provider!r}. "
            f"Supported: {', '.join(_PROVIDER_CLASSES)}"
        )
    if model:
        logger.warning("Unknown model %r, falling back to %s", model, default_provider)
    return default_provider, default_model or _DEFAULT_MODELS[default_provider]


def _build_providers() -> dict[str, Provider]:
    from coach.config import settings

    keys = {
        "openai": settings.OPENAI_API_KEY,
        "anthropic": settings.ANTHROPIC_API_KEY,
        "gemini": settings.GEMINI_API_KEY,
        "cohere": settings.COHERE_API_KEY,
    }
    return {
        name: cls(keys[name] or settings.LLM_API_KEY)
        for name, cls in _PROVIDER_CLASSES.items()
    }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ProviderGateway:
    """Uniform completion contract over all providers."""

    def __init__(
        self,
        providers: dict[str, Provider] | None = None,
        default_provider: str | None = None,
        default_model: str | None = None,
        default_temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        from coach.config import settings

        self._providers = providers if providers is not None else _build_providers()
        self._default_provider = (default_provider or settings.LLM_PROVIDER).lower()
        self._default_model = default_model if default_model is not None else settings.LLM_MODEL
        self._default_temperature = (
            default_temperature if default_temperature is not None else settings.LLM_TEMPERATURE
        )
        self._max_tokens = max_tokens or settings.LLM_MAX_TOKENS

    async def generate_completion(
        self,
        model: str | None,
        turns: list[Turn],
        temperature: float | None = None,
        json_mode: bool = False,
        functions: list[dict[str, Any]] | None = None,
    ) -> Turn:
        """Return the assistant's next turn. Never raises on backend errors."""
        provider_name, effective_model = select_provider(
            model, self._default_provider, self._default_model,
        )
        provider = self._providers[provider_name]
        if temperature is None:
            temperature = self._default_temperature
        use_json = json_mode and provider.supports_json_mode(effective_model)

        logger.debug(
            "Completion via %s (%s), %d turns, json=%s",
            provider_name, effective_model, len(turns), use_json,
        )
        try:
            return await provider.complete(
                effective_model,
                turns,
                temperature=temperature,
                json_mode=use_json,
                functions=functions,
                max_tokens=self._max_tokens,
            )
        except Exception as exc:
            logger.error(
                "%s completion failed (model %s): %s",
                provider.display_name, effective_model, exc,
            )
            return error_turn(provider.display_name)


# Lazy singleton, populated on first call to get_gateway()
_gateway: ProviderGateway | None = None


def get_gateway() -> ProviderGateway:
    global _gateway

    if _gateway is None:
        _gateway = ProviderGateway()
        logger.info("LLM gateway ready, default provider: %s", _gateway._default_provider)
    return _gateway
