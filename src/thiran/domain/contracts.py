from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union


class ApprovalMode(str, enum.Enum):
    SUGGEST = "suggest"
    AUTO_EDIT = "auto-edit"
    FULL_AUTO = "full-auto"

    @classmethod
    def parse(cls, raw: Any, default: Optional["ApprovalMode"] = None) -> "ApprovalMode":
        if isinstance(raw, cls):
            return raw
        text = str(raw or "").strip().lower().replace("_", "-")
        for mode in cls:
            if mode.value == text:
                return mode
        return default if default is not None else cls.SUGGEST


class PermissionKind(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    FETCH = "fetch"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    role: str  # user | assistant | system | tool
    content: str
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


@dataclass(frozen=True)
class ToolResult:
    success: bool
    output: str
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionAction:
    kind: PermissionKind
    target: str
    tool_name: str = ""
    tool_args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PermissionResult:
    granted: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ApprovalDecision:
    allow: bool
    remember: bool = False


ApprovalCallback = Callable[[PermissionAction], Awaitable[ApprovalDecision]]


class PermissionChecker(Protocol):
    async def check_permission(self, action: PermissionAction) -> PermissionResult:
        ...

    def add_to_allow_list(self, action: PermissionAction) -> None:
        ...


# ---------------------------------------------------------------------------
# Canonical stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextEvent:
    content: str
    type: str = "text"


@dataclass(frozen=True)
class ToolCallEvent:
    tool_call: ToolCall
    type: str = "tool_call"


@dataclass(frozen=True)
class ToolCallDeltaEvent:
    """Raw argument fragment, for live display only."""

    delta: str
    type: str = "tool_call_delta"


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException
    type: str = "error"


@dataclass(frozen=True)
class DoneEvent:
    type: str = "done"


StreamEvent = Union[TextEvent, ToolCallEvent, ToolCallDeltaEvent, ErrorEvent, DoneEvent]


# ---------------------------------------------------------------------------
# Capabilities and providers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionContext:
    working_directory: Path
    permissions: Optional[PermissionChecker] = None
    config: Any = None


class Capability(Protocol):
    name: str
    description: str
    parameters: Dict[str, Any]
    read_only: bool

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        ...

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        ...


@dataclass
class ChatOptions:
    model: Optional[str] = None
    tools: Sequence[Capability] = ()
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


class ProviderAdapter(Protocol):
    name: str
    default_model: str

    def chat(self, messages: Sequence[Message], options: ChatOptions) -> AsyncIterator[StreamEvent]:
        ...

    async def list_models(self) -> List[str]:
        ...

    def supports_tools(self) -> bool:
        ...
