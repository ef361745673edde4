from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from thiran.domain.contracts import (
    Capability,
    ChatOptions,
    DoneEvent,
    ErrorEvent,
    Message,
    StreamEvent,
)
from thiran.domain.errors import ProviderError
from thiran.observability.structured_log import log_json
from thiran.tools.base import describe

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096

BASE_SYSTEM_PROMPT = """You are Thiran, an AI-powered coding assistant running in the terminal.
You help users with software engineering tasks including writing code, debugging, refactoring, and explaining code.

Guidelines:
- Be concise and direct in your responses
- Use the available tools to read, write, and edit files
- Always read a file before attempting to edit it
- Ask for clarification when requirements are ambiguous
- Prefer editing existing files over creating new ones
- Be careful with destructive operations"""


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return max(1, int(raw)) if raw else default
    except ValueError:
        return default


class BaseProvider:
    """Common adapter plumbing.

    Subclasses implement ``_stream`` as an async generator of canonical
    events. ``chat`` wraps it so that every stream ends with exactly one
    ``DoneEvent`` or ``ErrorEvent``: exceptions become an error event,
    anything after the first terminal event is dropped, and a stream that
    simply runs out is closed with ``DoneEvent``.
    """

    name: str = ""
    default_model: str = ""

    async def chat(self, messages: Sequence[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        model = options.model or self.default_model
        log_json(logger, "provider.stream.start", provider=self.name, model=model, messages=len(messages))
        inner = self._stream(list(messages), options, model)
        try:
            async for event in inner:
                if isinstance(event, (DoneEvent, ErrorEvent)):
                    if isinstance(event, ErrorEvent):
                        self._log_error(event.error)
                    yield event
                    return
                yield event
        except Exception as exc:
            error = exc if isinstance(exc, ProviderError) else ProviderError(str(exc) or type(exc).__name__, self.name)
            if error is not exc:
                error.__cause__ = exc
            self._log_error(error)
            yield ErrorEvent(error)
            return
        finally:
            await inner.aclose()
        yield DoneEvent()

    def _stream(self, messages: List[Message], options: ChatOptions, model: str) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    async def list_models(self) -> List[str]:
        return []

    def supports_tools(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def build_system_prompt(self, custom_prompt: Optional[str] = None) -> str:
        if custom_prompt:
            return f"{BASE_SYSTEM_PROMPT}\n\n{custom_prompt}"
        return BASE_SYSTEM_PROMPT

    def tool_descriptors(self, tools: Sequence[Capability]) -> List[Dict[str, Any]]:
        return [describe(tool) for tool in tools or ()]

    def _log_error(self, error: BaseException) -> None:
        log_json(
            logger, "provider.stream.error", level=logging.WARNING,
            provider=self.name, kind=type(error).__name__, error=str(error),
        )
