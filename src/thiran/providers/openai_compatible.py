"""OpenAI-compatible chat-completions adapter (structured tool calling).

Talks to ``POST {base_url}/chat/completions`` with ``stream: true`` over
``httpx``. Tool-call fragments are keyed by their ``index`` in the delta and
flushed as complete calls when a choice reports ``finish_reason``.

Configuration via environment variables (or explicit constructor args):
  OPENAI_API_KEY      – required
  OPENAI_MODEL        – default: gpt-5
  OPENAI_BASE_URL     – default: https://api.openai.com/v1
  OPENAI_TIMEOUT_SEC  – default: 120
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

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
from thiran.providers.transport import build_httpx_client, ensure_success, iter_sse_data

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"

KNOWN_MODELS = [
    "gpt-5",
    "gpt-5-mini",
    "gpt-5-nano",
    "gpt-5.1",
    "gpt-5.1-mini",
    "gpt-5.1-nano",
    "gpt-4.1",
    "gpt-4.1-mini",
    "gpt-4.1-nano",
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4-turbo",
    "gpt-4",
    "gpt-3.5-turbo",
]


def _normalize_base_url(value: str) -> str:
    return (value or "").strip().rstrip("/")


class OpenAICompatibleProvider(BaseProvider):
    """Generic OpenAI-compatible chat-completions provider."""

    def __init__(
        self,
        provider_name: str = "openai",
        api_key_env: str = "OPENAI_API_KEY",
        default_base_url: str = DEFAULT_BASE_URL,
        default_model: str = "gpt-5",
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_sec: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        prefix = provider_name.upper()
        self.name = provider_name
        self._api_key = (api_key or os.environ.get(api_key_env) or "").strip()
        self.default_model = (model or os.environ.get(f"{prefix}_MODEL") or default_model).strip()
        self._base_url = _normalize_base_url(
            base_url or os.environ.get(f"{prefix}_BASE_URL") or default_base_url
        )
        self._timeout_sec = timeout_sec or _env_int(f"{prefix}_TIMEOUT_SEC", 120)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return build_httpx_client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            connect_timeout_sec=10.0,
            read_timeout_sec=float(self._timeout_sec),
            transport=self._transport,
        )

    async def _stream(self, messages: List[Message], options: ChatOptions, model: str) -> AsyncIterator[StreamEvent]:
        if not self._api_key:
            yield ErrorEvent(ProviderError(f"{self.name.upper()} API key not configured.", self.name))
            return

        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": convert_messages(messages, self.build_system_prompt(options.system_prompt)),
            "stream": True,
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.tools:
            payload["tools"] = [
                {"type": "function", "function": d} for d in self.tool_descriptors(options.tools)
            ]

        # index -> {"id", "name", "arguments"}
        pending: Dict[int, Dict[str, str]] = {}
        async with self._client() as client:
            async with client.stream("POST", "/chat/completions", json=payload) as response:
                await ensure_success(response, self.name)
                async for chunk in iter_sse_data(response):
                    if chunk.get("error"):
                        raise ProviderError(f"{self.name} API error: {chunk['error']}", self.name)
                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0] or {}
                    delta = choice.get("delta") or {}
                    if delta.get("content"):
                        yield TextEvent(delta["content"])
                    for fragment in delta.get("tool_calls") or []:
                        slot = pending.setdefault(int(fragment.get("index") or 0), {"id": "", "name": "", "arguments": ""})
                        if fragment.get("id"):
                            slot["id"] = fragment["id"]
                        function = fragment.get("function") or {}
                        if function.get("name"):
                            slot["name"] = function["name"]
                        if function.get("arguments"):
                            slot["arguments"] += function["arguments"]
                            yield ToolCallDeltaEvent(function["arguments"])
                    if choice.get("finish_reason"):
                        for event in self._flush(pending):
                            yield event
                        return

        # Some compatible servers close the stream without a finish_reason.
        for event in self._flush(pending):
            yield event

    def _flush(self, pending: Dict[int, Dict[str, str]]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for index in sorted(pending):
            slot = pending[index]
            try:
                arguments = json.loads(slot["arguments"] or "{}")
            except ValueError:
                arguments = None
            if not isinstance(arguments, dict):
                events.append(ErrorEvent(ToolArgumentsError(slot["arguments"], self.name)))
                return events
            events.append(ToolCallEvent(ToolCall(id=slot["id"], name=slot["name"], arguments=arguments)))
        pending.clear()
        events.append(DoneEvent())
        return events

    async def list_models(self) -> List[str]:
        if not self._api_key:
            return list(KNOWN_MODELS)
        try:
            async with self._client() as client:
                response = await client.get("/models")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("model listing failed for %s: %s", self.name, exc)
            return list(KNOWN_MODELS)
        ids = [str(m.get("id")) for m in data.get("data") or [] if isinstance(m, dict) and m.get("id")]
        if self.name == "openai":
            ids = [m for m in ids if "gpt" in m]
        return sorted(ids) or list(KNOWN_MODELS)


def convert_messages(messages: List[Message], system_prompt: str) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "tool":
            result.append({"role": "tool", "tool_call_id": msg.tool_call_id or "", "content": msg.content})
        elif msg.role == "assistant" and msg.tool_calls:
            result.append({
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in msg.tool_calls
                ],
            })
        else:
            result.append({"role": msg.role, "content": msg.content})
    return result
