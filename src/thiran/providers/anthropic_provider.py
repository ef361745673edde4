"""Anthropic Claude adapter (structured tool calling).

Streams the Messages API through the official ``anthropic`` async client and
maps its raw events onto canonical stream events. Tool arguments arrive as
``input_json_delta`` fragments; they are buffered per content block and the
finished call is emitted once on ``content_block_stop``.

Configuration via environment variables (or explicit constructor args):
  ANTHROPIC_API_KEY      – required
  ANTHROPIC_MODEL        – default: claude-sonnet-4-5-20250929
  ANTHROPIC_MAX_TOKENS   – default: 4096
  ANTHROPIC_TIMEOUT_SEC  – default: 120
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import anthropic

from thiran.domain.contracts import (
    ChatOptions,
    DoneEvent,
    ErrorEvent,
    Message,
    StreamEvent,
    TextEvent,
    ToolCall,
    ToolCallDeltaEvent,
    ToolCallEvent,
)
from thiran.domain.errors import ProviderError, ToolArgumentsError
from thiran.providers.base import DEFAULT_MAX_TOKENS, BaseProvider, _env_int

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
_DEFAULT_TIMEOUT_SEC = 120

KNOWN_MODELS = [
    "claude-opus-4-5-20251101",
    "claude-haiku-4-5",
    "claude-sonnet-4-5-20250929",
    "claude-opus-4-1",
    "claude-sonnet-4-20250514",
    "claude-opus-4-20250514",
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
]


class AnthropicProvider(BaseProvider):
    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_sec: Optional[int] = None,
        client: Any = None,
    ) -> None:
        self._api_key: str = api_key or os.environ.get("ANTHROPIC_API_KEY") or ""
        self.default_model = model or os.environ.get("ANTHROPIC_MODEL") or _DEFAULT_MODEL
        self._max_tokens: int = max_tokens or _env_int("ANTHROPIC_MAX_TOKENS", DEFAULT_MAX_TOKENS)
        self._timeout_sec: int = timeout_sec or _env_int("ANTHROPIC_TIMEOUT_SEC", _DEFAULT_TIMEOUT_SEC)
        self._sdk_client: Any = client

    async def list_models(self) -> List[str]:
        return list(KNOWN_MODELS)

    async def _stream(self, messages: List[Message], options: ChatOptions, model: str) -> AsyncIterator[StreamEvent]:
        if self._sdk_client is None and not self._api_key:
            yield ErrorEvent(ProviderError("ANTHROPIC_API_KEY not configured.", self.name))
            return

        kwargs: Dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens or self._max_tokens,
            "system": self.build_system_prompt(options.system_prompt),
            "messages": convert_messages(messages),
            "stream": True,
        }
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.tools:
            kwargs["tools"] = [
                {
                    "name": d["name"],
                    "description": d["description"],
                    "input_schema": d["parameters"],
                }
                for d in self.tool_descriptors(options.tools)
            ]

        client = self._get_sdk_client()
        try:
            stream = await client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise ProviderError(f"anthropic API error: {exc.status_code} {exc.message}", self.name, exc.status_code) from exc
        except anthropic.APIError as exc:
            raise ProviderError(f"anthropic API error: {exc}", self.name) from exc

        # index -> {"id", "name", "input"}
        pending: Dict[int, Dict[str, str]] = {}
        async for event in stream:
            etype = getattr(event, "type", "")
            if etype == "content_block_start":
                block = event.content_block
                if getattr(block, "type", "") == "tool_use":
                    pending[event.index] = {"id": block.id, "name": block.name, "input": ""}
            elif etype == "content_block_delta":
                delta = event.delta
                dtype = getattr(delta, "type", "")
                if dtype == "text_delta" and delta.text:
                    yield TextEvent(delta.text)
                elif dtype == "input_json_delta" and event.index in pending:
                    pending[event.index]["input"] += delta.partial_json or ""
                    if delta.partial_json:
                        yield ToolCallDeltaEvent(delta.partial_json)
            elif etype == "content_block_stop":
                buffered = pending.pop(event.index, None)
                if buffered is None:
                    continue
                raw = buffered["input"]
                try:
                    arguments = json.loads(raw or "{}")
                except ValueError:
                    yield ErrorEvent(ToolArgumentsError(raw, self.name))
                    return
                if not isinstance(arguments, dict):
                    yield ErrorEvent(ToolArgumentsError(raw, self.name))
                    return
                yield ToolCallEvent(ToolCall(id=buffered["id"], name=buffered["name"], arguments=arguments))
            elif etype == "message_stop":
                yield DoneEvent()
                return

    def _get_sdk_client(self) -> Any:
        if self._sdk_client is None:
            self._sdk_client = anthropic.AsyncAnthropic(
                api_key=self._api_key,
                timeout=float(self._timeout_sec),
                max_retries=0,
            )
        return self._sdk_client


def convert_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Map history onto Anthropic message params.

    System messages are dropped (the system prompt travels separately) and
    consecutive tool results are merged into one user turn of
    ``tool_result`` blocks, which is what the API requires after a
    multi-call assistant turn.
    """
    result: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id or "", "content": msg.content}
            previous = result[-1] if result else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                result.append({"role": "user", "content": [block]})
            continue
        if msg.role == "assistant" and msg.tool_calls:
            content: List[Dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls:
                content.append({"type": "tool_use", "id": call.id, "name": call.name, "input": dict(call.arguments)})
            result.append({"role": "assistant", "content": content})
            continue
        result.append({"role": msg.role, "content": msg.content})
    return result
