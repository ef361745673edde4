"""Ollama adapter (prompt-based tool calling).

Local models served by Ollama get the tool catalogue and the fenced
```` ```tool ```` convention appended to the system prompt. Text streams live
(with vendor special tokens replaced); once the NDJSON stream finishes, the
accumulated response is scanned for tool invocations.

Configuration via environment variables (or explicit constructor args):
  OLLAMA_BASE_URL     – default: http://localhost:11434
  OLLAMA_MODEL        – default: llama3.2
  OLLAMA_TIMEOUT_SEC  – default: 300
"""
from __future__ import annotations

import logging
import os
import re
from typing import AsyncIterator, Callable, Dict, List, Optional

import httpx

from thiran.config import DEFAULT_OLLAMA_BASE_URL
from thiran.domain.contracts import (
    ChatOptions,
    DoneEvent,
    Message,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
)
from thiran.domain.errors import ProviderError
from thiran.providers.base import DEFAULT_MAX_TOKENS, BaseProvider, _env_int
from thiran.providers.tool_call_extraction import (
    clean_response_text,
    clean_stream_content,
    extract_tool_calls,
    format_tool_call_block,
    format_tools_prompt,
)
from thiran.providers.transport import build_httpx_client, ensure_success, iter_ndjson

logger = logging.getLogger(__name__)

FALLBACK_MODELS = ["llama3.2", "llama3.1", "mistral", "codellama", "deepseek-coder"]

POPULAR_MODELS = [
    "kimi-k2:latest",
    "qwen3:latest",
    "qwen2.5-coder:latest",
    "llama3.3:latest",
    "llama3.2:latest",
    "gemma3:latest",
    "phi4:latest",
    "deepseek-r1:latest",
    "deepseek-coder-v2:latest",
    "mistral:latest",
    "codellama:latest",
    "starcoder2:latest",
    "nomic-embed-text:latest",
    "llava:latest",
    "granite-code:latest",
    "dolphin-mixtral:latest",
]

LIBRARY_SEARCH_URL = "https://ollama.com/search"
_LIBRARY_LINK_RE = re.compile(r'href="/library/([^"]+)"')

PullProgressCallback = Callable[[str, Optional[int], Optional[int]], None]


class OllamaProvider(BaseProvider):
    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_sec: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or os.environ.get("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL).rstrip("/")
        self.default_model = (model or os.environ.get("OLLAMA_MODEL") or "llama3.2").strip()
        self._timeout_sec = timeout_sec or _env_int("OLLAMA_TIMEOUT_SEC", 300)
        self._transport = transport

    def _client(self, read_timeout_sec: Optional[float] = None) -> httpx.AsyncClient:
        return build_httpx_client(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            connect_timeout_sec=5.0,
            read_timeout_sec=read_timeout_sec or float(self._timeout_sec),
            transport=self._transport,
        )

    async def _stream(self, messages: List[Message], options: ChatOptions, model: str) -> AsyncIterator[StreamEvent]:
        tools = list(options.tools or ())
        system_prompt = self.build_system_prompt(options.system_prompt)
        tools_prompt = format_tools_prompt(tools)
        if tools_prompt:
            system_prompt = f"{system_prompt}\n\n{tools_prompt}"

        request_options: Dict[str, object] = {"num_predict": options.max_tokens or DEFAULT_MAX_TOKENS}
        if options.temperature is not None:
            request_options["temperature"] = options.temperature
        payload = {
            "model": model,
            "messages": convert_messages(messages, system_prompt),
            "stream": True,
            "options": request_options,
        }

        chunks: List[str] = []
        async with self._client() as client:
            async with client.stream("POST", "/api/chat", json=payload) as response:
                await ensure_success(response, self.name)
                async for data in iter_ndjson(response):
                    if data.get("error"):
                        raise ProviderError(f"Ollama API error: {data['error']}", self.name)
                    content = (data.get("message") or {}).get("content") or ""
                    if not content:
                        continue
                    chunks.append(content)
                    cleaned = clean_stream_content(content)
                    if cleaned:
                        yield TextEvent(cleaned)

        known = {tool.name for tool in tools}
        for call in extract_tool_calls("".join(chunks), known, id_prefix="ollama"):
            yield ToolCallEvent(call)
        yield DoneEvent()

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    async def list_models(self) -> List[str]:
        try:
            return await self._fetch_tags()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("ollama model listing failed: %s", exc)
            return list(FALLBACK_MODELS)

    async def list_local_models(self) -> List[str]:
        try:
            return await self._fetch_tags()
        except (httpx.HTTPError, ValueError):
            return []

    async def is_model_available(self, model: str) -> bool:
        wanted = model.split(":")[0]
        for local in await self.list_local_models():
            if local == model or local.split(":")[0] == wanted:
                return True
        return False

    async def is_server_running(self) -> bool:
        try:
            async with self._client(read_timeout_sec=5.0) as client:
                response = await client.get("/api/tags")
        except httpx.HTTPError:
            return False
        return response.is_success

    async def pull_model(self, model: str, on_progress: Optional[PullProgressCallback] = None) -> None:
        async with self._client() as client:
            async with client.stream("POST", "/api/pull", json={"name": model, "stream": True}) as response:
                if not response.is_success:
                    raise ProviderError(
                        f"Failed to pull model: {response.status_code} {response.reason_phrase}",
                        self.name,
                        response.status_code,
                    )
                async for data in iter_ndjson(response):
                    if data.get("error"):
                        raise ProviderError(f"Failed to pull model: {data['error']}", self.name)
                    status = str(data.get("status") or "")
                    if on_progress is not None:
                        on_progress(status, data.get("completed"), data.get("total"))
                    if status == "success":
                        return

    async def search_models(self, query: str) -> List[str]:
        """Search the public model library, falling back to the popular list."""
        needle = query.lower()
        fallback = [m for m in POPULAR_MODELS if needle in m.lower()]
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.get(LIBRARY_SEARCH_URL, params={"q": query})
        except httpx.HTTPError:
            return fallback
        if not response.is_success:
            return fallback
        found: List[str] = []
        for name in _LIBRARY_LINK_RE.findall(response.text):
            if name not in found:
                found.append(name)
        return found[:20] or fallback

    def get_popular_models(self) -> List[str]:
        return list(POPULAR_MODELS)

    async def _fetch_tags(self) -> List[str]:
        async with self._client(read_timeout_sec=10.0) as client:
            response = await client.get("/api/tags")
            response.raise_for_status()
            data = response.json()
        return [str(m["name"]) for m in data.get("models") or [] if isinstance(m, dict) and m.get("name")]


def convert_messages(messages: List[Message], system_prompt: str) -> List[Dict[str, str]]:
    """Ollama chat history. Assistant turns that proposed calls are rewritten so
    the calls appear once, in the fenced ``tool`` convention the prompt asks for.
    """
    result = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "tool":
            result.append({"role": "user", "content": f"Tool result: {msg.content}"})
        elif msg.role == "assistant" and msg.tool_calls:
            blocks = [clean_response_text(msg.content)] + [format_tool_call_block(c) for c in msg.tool_calls]
            result.append({"role": "assistant", "content": "\n\n".join(b for b in blocks if b)})
        elif msg.role in ("user", "assistant"):
            result.append({"role": msg.role, "content": msg.content})
    return result
