"""Google Gemini adapter (structured tool calling).

Uses the REST ``streamGenerateContent`` endpoint in SSE mode. Gemini has no
argument deltas: every ``functionCall`` part arrives whole, so calls are
collected while text streams and emitted after the last chunk.

Configuration via environment variables (or explicit constructor args):
  GOOGLE_API_KEY / GEMINI_API_KEY  – required
  GEMINI_MODEL                     – default: gemini-2.5-flash
  GEMINI_TIMEOUT_SEC               – default: 120
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from thiran.domain.contracts import (
    ChatOptions,
    DoneEvent,
    ErrorEvent,
    Message,
    StreamEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
)
from thiran.domain.errors import ProviderError, ToolArgumentsError
from thiran.providers.base import DEFAULT_MAX_TOKENS, BaseProvider, _env_int
from thiran.providers.tool_call_extraction import new_call_id
from thiran.providers.transport import build_httpx_client, ensure_success, iter_sse_data

logger = logging.getLogger(__name__)

BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

KNOWN_MODELS = [
    "gemini-3-pro",
    "gemini-3-pro-image",
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.0-flash",
    "gemini-2.0-flash-lite",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
    "gemini-1.5-flash-8b",
]

_GEMINI_TYPES = {
    "string": "STRING",
    "number": "NUMBER",
    "boolean": "BOOLEAN",
    "array": "ARRAY",
    "object": "OBJECT",
}


class GeminiProvider(BaseProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_sec: Optional[int] = None,
        base_url: str = BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = (
            api_key
            or os.environ.get("GOOGLE_API_KEY")
            or os.environ.get("GEMINI_API_KEY")
            or ""
        ).strip()
        self.default_model = (model or os.environ.get("GEMINI_MODEL") or "gemini-2.5-flash").strip()
        self._timeout_sec = timeout_sec or _env_int("GEMINI_TIMEOUT_SEC", 120)
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def list_models(self) -> List[str]:
        return list(KNOWN_MODELS)

    async def _stream(self, messages: List[Message], options: ChatOptions, model: str) -> AsyncIterator[StreamEvent]:
        if not self._api_key:
            yield ErrorEvent(ProviderError("Google API key is required (GOOGLE_API_KEY or GEMINI_API_KEY)", self.name))
            return

        payload: Dict[str, Any] = {
            "contents": convert_messages(messages),
            "systemInstruction": {"parts": [{"text": self.build_system_prompt(options.system_prompt)}]},
            "generationConfig": {"maxOutputTokens": options.max_tokens or DEFAULT_MAX_TOKENS},
        }
        if options.temperature is not None:
            payload["generationConfig"]["temperature"] = options.temperature
        if options.tools:
            payload["tools"] = [{"functionDeclarations": [function_declaration(d) for d in self.tool_descriptors(options.tools)]}]

        client = build_httpx_client(
            base_url=self._base_url,
            headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
            connect_timeout_sec=10.0,
            read_timeout_sec=float(self._timeout_sec),
            transport=self._transport,
        )
        calls: List[Tuple[str, Dict[str, Any]]] = []
        async with client:
            async with client.stream(
                "POST", f"/models/{model}:streamGenerateContent", params={"alt": "sse"}, json=payload
            ) as response:
                await ensure_success(response, self.name)
                async for chunk in iter_sse_data(response):
                    if chunk.get("error"):
                        raise ProviderError(f"{self.name} API error: {chunk['error']}", self.name)
                    candidates = chunk.get("candidates") or []
                    if not candidates:
                        continue
                    for part in (candidates[0].get("content") or {}).get("parts") or []:
                        if part.get("text"):
                            yield TextEvent(part["text"])
                        function_call = part.get("functionCall")
                        if function_call:
                            args = function_call.get("args")
                            if args is not None and not isinstance(args, dict):
                                yield ErrorEvent(ToolArgumentsError(json.dumps(args), self.name))
                                return
                            calls.append((str(function_call.get("name") or ""), args or {}))

        for name, args in calls:
            yield ToolCallEvent(ToolCall(id=new_call_id("gemini"), name=name, arguments=args))
        yield DoneEvent()


def function_declaration(descriptor: Dict[str, Any]) -> Dict[str, Any]:
    params = descriptor.get("parameters") or {}
    properties: Dict[str, Any] = {}
    for key, prop in (params.get("properties") or {}).items():
        prop = prop or {}
        if prop.get("enum"):
            properties[key] = {
                "type": "STRING",
                "format": "enum",
                "enum": [str(v) for v in prop["enum"]],
                "description": prop.get("description", ""),
            }
            continue
        schema: Dict[str, Any] = {
            "type": _GEMINI_TYPES.get(str(prop.get("type")), "STRING"),
            "description": prop.get("description", ""),
        }
        if schema["type"] == "ARRAY":
            item_type = (prop.get("items") or {}).get("type")
            schema["items"] = {"type": _GEMINI_TYPES.get(str(item_type), "STRING")}
        properties[key] = schema
    return {
        "name": descriptor["name"],
        "description": descriptor.get("description", ""),
        "parameters": {
            "type": "OBJECT",
            "properties": properties,
            "required": list(params.get("required") or []),
        },
    }


def convert_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Map history onto Gemini ``contents``.

    A function response must carry the function *name*; it is looked up from
    the assistant turn that proposed the call with the same id.
    """
    names_by_id: Dict[str, str] = {}
    contents: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "user":
            contents.append({"role": "user", "parts": [{"text": msg.content}]})
        elif msg.role == "assistant":
            parts: List[Dict[str, Any]] = []
            if msg.content:
                parts.append({"text": msg.content})
            for call in msg.tool_calls or []:
                names_by_id[call.id] = call.name
                parts.append({"functionCall": {"name": call.name, "args": dict(call.arguments)}})
            if parts:
                contents.append({"role": "model", "parts": parts})
        elif msg.role == "tool":
            part = {
                "functionResponse": {
                    "name": names_by_id.get(msg.tool_call_id or "", msg.tool_call_id or "unknown"),
                    "response": {"result": msg.content},
                }
            }
            previous = contents[-1] if contents else None
            if previous is not None and previous["role"] == "user" and all("functionResponse" in p for p in previous["parts"]):
                previous["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part]})
    if not contents:
        contents.append({"role": "user", "parts": [{"text": ""}]})
    return contents
