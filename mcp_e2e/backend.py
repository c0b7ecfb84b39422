"""Completion backend boundary.

The engine only ever sees ``AssistantTurn``. ``LiteLLMBackend`` sends the
history and tool list through ``litellm.acompletion`` (any provider litellm
routes to; by default a local Ollama through its OpenAI-compatible endpoint),
retries transient failures with jittered backoff, and hands the response to
``parse_completion_envelope``, which accepts both the OpenAI
``{"choices": [{"message": ...}]}`` shape and Ollama's raw ``{"message": ...}``
shape.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import litellm

from mcp_e2e.config import BackendSettings
from mcp_e2e.errors import BackendError, wrap_backend_error

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ToolCallRequest:
    """One tool call proposed by the AI."""

    id: str
    tool_name: str
    raw_arguments: dict[str, Any] = field(default_factory=dict)
    argument_error: str | None = None
    """Set when the AI sent arguments that are not a JSON object."""

    def to_message_entry(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.tool_name,
                "arguments": json.dumps(self.raw_arguments),
            },
        }


@dataclass
class AssistantTurn:
    """Normalized assistant reply: text, tool calls, token usage."""

    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str | None = None
    latency_s: float = 0.0

    def to_message(self) -> dict[str, Any]:
        """The assistant message to append to history."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_message_entry() for tc in self.tool_calls]
        return message


@runtime_checkable
class CompletionBackend(Protocol):
    async def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
    ) -> AssistantTurn: ...


# ---------------------------------------------------------------------------
# Envelope adapter
# ---------------------------------------------------------------------------


def extract_usage(usage: Any) -> dict[str, int]:
    """Token counts from OpenAI (prompt/completion) or Ollama (eval count) naming."""
    if not isinstance(usage, dict):
        return {}
    prompt = usage.get("prompt_tokens") or usage.get("prompt_eval_count") or 0
    completion = usage.get("completion_tokens") or usage.get("eval_count") or 0
    total = usage.get("total_tokens") or (int(prompt) + int(completion))
    return {
        "prompt_tokens": int(prompt),
        "completion_tokens": int(completion),
        "total_tokens": int(total),
    }


def _parse_arguments(raw: Any) -> tuple[dict[str, Any], str | None]:
    if raw is None or raw == "":
        return {}, None
    if isinstance(raw, dict):
        return raw, None
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            return {}, f"Invalid JSON arguments: {exc}"
        if isinstance(parsed, dict):
            return parsed, None
        return {}, f"Arguments must be a JSON object, got {type(parsed).__name__}"
    return {}, f"Arguments must be a JSON object, got {type(raw).__name__}"


def parse_completion_envelope(payload: Any, *, turn_index: int = 0) -> AssistantTurn:
    """Normalize a completion response dict into an ``AssistantTurn``.

    Raises:
        BackendError: the payload carries no assistant message.
    """
    if not isinstance(payload, dict):
        raise BackendError(f"Malformed completion response: {str(payload)[:200]}")

    message: Any = None
    finish_reason: str | None = None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message")
        finish_reason = first.get("finish_reason")
    elif "message" in payload:
        message = payload.get("message")
        finish_reason = payload.get("done_reason")

    if not isinstance(message, dict):
        raise BackendError(f"No assistant message in completion response: {str(payload)[:200]}")

    usage = extract_usage(payload.get("usage")) or extract_usage(payload)

    tool_calls: list[ToolCallRequest] = []
    for index, raw_call in enumerate(message.get("tool_calls") or []):
        if not isinstance(raw_call, dict):
            continue
        function = raw_call.get("function") or {}
        name = str(function.get("name") or "")
        arguments, error = _parse_arguments(function.get("arguments"))
        call_id = raw_call.get("id") or f"call_{turn_index}_{index}"
        tool_calls.append(
            ToolCallRequest(id=str(call_id), tool_name=name, raw_arguments=arguments, argument_error=error)
        )

    return AssistantTurn(
        content=str(message.get("content") or ""),
        tool_calls=tool_calls,
        usage=usage,
        finish_reason=finish_reason,
    )


def _response_to_dict(response: Any) -> Any:
    if isinstance(response, dict):
        return response
    for attr in ("model_dump", "dict", "to_dict"):
        method = getattr(response, attr, None)
        if callable(method):
            return method()
    return response


# ---------------------------------------------------------------------------
# litellm backend
# ---------------------------------------------------------------------------


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


class LiteLLMBackend:
    """``CompletionBackend`` over ``litellm.acompletion``."""

    def __init__(self, settings: BackendSettings | None = None) -> None:
        self.settings = settings or BackendSettings()
        self._turns = 0

    def _call_kwargs(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
    ) -> dict[str, Any]:
        s = self.settings
        kwargs: dict[str, Any] = {
            "model": s.model,
            "messages": messages,
            "temperature": s.temperature,
            "timeout": s.timeout_s,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if s.api_base:
            kwargs["api_base"] = s.api_base
        if s.api_key:
            kwargs["api_key"] = s.api_key
        return kwargs

    async def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]],
    ) -> AssistantTurn:
        """One completion. Transient failures retried; the rest raise BackendError."""
        self._turns += 1
        call_kwargs = self._call_kwargs(messages, tools)
        s = self.settings

        for attempt in range(s.num_retries + 1):
            t0 = time.monotonic()
            try:
                response = await litellm.acompletion(**call_kwargs)
                turn = parse_completion_envelope(_response_to_dict(response), turn_index=self._turns)
            except Exception as e:
                error = wrap_backend_error(e)
                if not error.retryable or attempt >= s.num_retries:
                    logger.error("Completion failed (%s): %s", s.model, error)
                    if error is e:
                        raise
                    raise error from e
                delay = exponential_backoff(attempt, s.base_delay, s.max_delay)
                logger.warning(
                    "Completion attempt %d/%d failed (retrying in %.1fs): %s",
                    attempt + 1, s.num_retries + 1, delay, e,
                )
                await asyncio.sleep(delay)
                continue
            turn.latency_s = round(time.monotonic() - t0, 3)
            if attempt > 0:
                logger.info("Completion succeeded after %d retries", attempt)
            return turn

        raise BackendError("Completion retries exhausted")  # unreachable
