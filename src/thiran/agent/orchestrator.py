"""Conversation loop.

One ``Agent`` owns one conversation: its history, its permission gate and its
capability registry. ``run`` drives turns until the model stops proposing
tool calls, the provider fails, the iteration cap is hit, or ``cancel`` is
called. Proposed calls are dispatched one at a time in proposal order and
each produces exactly one ``tool`` message.

Callbacks may be plain functions or coroutines; an exception raised by a
callback is logged and never interrupts the loop.
"""
from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from thiran.domain.contracts import (
    ApprovalMode,
    Capability,
    ChatOptions,
    DoneEvent,
    ErrorEvent,
    ExecutionContext,
    Message,
    PermissionAction,
    PermissionKind,
    ProviderAdapter,
    TextEvent,
    ToolCall,
    ToolCallEvent,
)
from thiran.domain.errors import IterationLimitExceeded
from thiran.observability.structured_log import log_json
from thiran.security.permissions import PermissionGate
from thiran.tools.base import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20

TOOL_NOT_FOUND = "Tool not found: {name}"
TOOL_DENIED = "Tool execution denied by user"
TOOL_FAILED = "Tool execution failed: {error}"
TOOL_CANCELLED = "Tool execution cancelled"

_GATED_KINDS = frozenset([PermissionKind.WRITE, PermissionKind.EXECUTE, PermissionKind.FETCH])


class AgentState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    DISPATCHING_TOOLS = "dispatching_tools"
    CANCELLED = "cancelled"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AgentCallbacks:
    on_text: Optional[Callable[[str], Any]] = None
    on_tool_call_start: Optional[Callable[[ToolCall], Any]] = None
    on_tool_call_end: Optional[Callable[[ToolCall, str], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    on_done: Optional[Callable[[], Any]] = None


def needs_approval(tool: Capability, action: Optional[PermissionAction], mode: ApprovalMode) -> bool:
    """Whether a call must pass through the permission gate before running."""
    if mode == ApprovalMode.FULL_AUTO:
        return False
    if mode == ApprovalMode.SUGGEST and getattr(tool, "read_only", False):
        return False
    if action is None:
        return False
    return action.kind in _GATED_KINDS


def build_default_system_prompt(working_directory: Path) -> str:
    return f"""You are Thiran, an AI-powered coding assistant running in the terminal.
You help users with software engineering tasks including writing code, debugging, refactoring, and explaining code.

Current working directory: {working_directory}

IMPORTANT: You have access to tools to interact with the file system. When the user asks about files, code, or the project:
1. Use the read_file tool to read files
2. Use the glob tool to find files by pattern
3. Use the grep tool to search for content
4. Use the bash tool to run commands
5. Use the write_file or edit_file tools to modify files

DO NOT ask the user to provide file paths or content - use your tools to explore and read the file system yourself.

Guidelines:
- Be concise and direct in your responses
- Always read a file before attempting to edit it
- Ask for clarification only when requirements are truly ambiguous
- Prefer editing existing files over creating new ones
- Be careful with destructive operations"""


class Agent:
    def __init__(
        self,
        provider: ProviderAdapter,
        registry: ToolRegistry,
        gate: PermissionGate,
        working_directory: Optional[Path] = None,
        config: Any = None,
        model: Optional[str] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._gate = gate
        self._working_directory = Path(working_directory) if working_directory is not None else gate.working_directory
        self._config = config
        self._model = model if model is not None else getattr(config, "model", None)
        self._max_iterations = max(1, int(max_iterations))
        self._messages: List[Message] = []
        self._state = AgentState.IDLE
        self._iterations = 0
        self._cancel_event = asyncio.Event()

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def iterations(self) -> int:
        return self._iterations

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_messages(self) -> List[Message]:
        return list(self._messages)

    def clear_history(self) -> None:
        self._messages = []

    def set_system_prompt(self, prompt: str) -> None:
        self._messages = [m for m in self._messages if m.role != "system"]
        self._messages.insert(0, Message(role="system", content=prompt))

    def _system_prompt(self) -> str:
        for message in self._messages:
            if message.role == "system":
                return message.content
        return build_default_system_prompt(self._working_directory)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, user_input: str, callbacks: Optional[AgentCallbacks] = None) -> AgentState:
        callbacks = callbacks or AgentCallbacks()
        self._iterations = 0
        self._messages.append(Message(role="user", content=user_input))

        while self._iterations < self._max_iterations:
            if self.cancelled:
                return self._finish(AgentState.CANCELLED)
            self._iterations += 1
            self._state = AgentState.AWAITING_PROVIDER
            log_json(logger, "agent.turn.start", iteration=self._iterations, provider=self._provider.name)

            text_parts: List[str] = []
            calls: List[ToolCall] = []
            error: Optional[BaseException] = None
            stream = self._provider.chat(self.get_messages(), self._chat_options())
            try:
                async for event in stream:
                    if self.cancelled:
                        break
                    if isinstance(event, TextEvent):
                        if event.content:
                            text_parts.append(event.content)
                            await self._notify(callbacks.on_text, event.content)
                    elif isinstance(event, ToolCallEvent):
                        calls.append(event.tool_call)
                        await self._notify(callbacks.on_tool_call_start, event.tool_call)
                    elif isinstance(event, ErrorEvent):
                        error = event.error
                        break
                    elif isinstance(event, DoneEvent):
                        break
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if self.cancelled:
                if calls:
                    self._messages.append(Message(role="assistant", content="".join(text_parts), tool_calls=list(calls)))
                    for call in calls:
                        self._record(call, TOOL_CANCELLED)
                return self._finish(AgentState.CANCELLED)
            if error is not None:
                await self._notify(callbacks.on_error, error)
                return self._finish(AgentState.FAILED)

            text = "".join(text_parts)
            if text or calls:
                self._messages.append(Message(role="assistant", content=text, tool_calls=list(calls) or None))
            if not calls:
                await self._notify(callbacks.on_done)
                return self._finish(AgentState.DONE)

            self._state = AgentState.DISPATCHING_TOOLS
            await self._dispatch_all(calls, callbacks)
            if self.cancelled:
                return self._finish(AgentState.CANCELLED)

        log_json(logger, "agent.loop.cap_exceeded", level=logging.WARNING, limit=self._max_iterations)
        await self._notify(callbacks.on_error, IterationLimitExceeded(self._max_iterations))
        return self._finish(AgentState.FAILED)

    def _chat_options(self) -> ChatOptions:
        return ChatOptions(
            model=self._model,
            tools=self._registry.tools(),
            system_prompt=self._system_prompt(),
        )

    def _finish(self, state: AgentState) -> AgentState:
        self._state = state
        self._cancel_event.clear()
        return state

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch_all(self, calls: List[ToolCall], callbacks: AgentCallbacks) -> None:
        context = ExecutionContext(
            working_directory=self._working_directory,
            permissions=self._gate,
            config=self._config,
        )
        for call in calls:
            if self.cancelled:
                self._record(call, TOOL_CANCELLED)
                continue
            result = await self._dispatch(call, context)
            self._record(call, result)
            if not self.cancelled:
                await self._notify(callbacks.on_tool_call_end, call, result)

    async def _dispatch(self, call: ToolCall, context: ExecutionContext) -> str:
        tool = self._registry.get(call.name)
        if tool is None:
            return TOOL_NOT_FOUND.format(name=call.name)

        args = dict(call.arguments)
        try:
            action = tool.permission_action(args, context)
        except Exception as exc:
            return TOOL_FAILED.format(error=exc)

        if needs_approval(tool, action, self._gate.approval_mode):
            permission = await self._gate.check_permission(action)
            if not permission.granted:
                log_json(logger, "agent.tool.denied", tool=call.name, reason=permission.reason or "")
                return TOOL_DENIED
            if self.cancelled:
                return TOOL_CANCELLED

        log_json(logger, "agent.tool.dispatch", tool=call.name, call_id=call.id)
        try:
            result = await tool.run(args, context)
        except Exception as exc:
            logger.debug("tool %s raised", call.name, exc_info=True)
            return TOOL_FAILED.format(error=exc)
        if result.success:
            return result.output
        return f"Error: {result.error}\n{result.output}"

    def _record(self, call: ToolCall, content: str) -> None:
        self._messages.append(Message(role="tool", content=content, tool_call_id=call.id))

    async def _notify(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("agent callback failed")
