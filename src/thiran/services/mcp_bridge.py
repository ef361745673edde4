"""MCP (Model Context Protocol) bridge.

Connects configured stdio MCP servers through the ``mcp`` client library and
exposes their tools as capabilities named ``mcp__<server>__<tool>`` so they
never collide with built-ins. Remote JSON schemas are narrowed to the
descriptor vocabulary (string, number, boolean, array, object).

Servers come from ``ThiranConfig.mcp_servers``; each entry may set
``timeout`` (ms, default 30000) which bounds every request to that server.
"""
from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import get_default_environment, stdio_client

from thiran.config import McpServerConfig
from thiran.domain.contracts import ExecutionContext, PermissionAction, PermissionKind, ToolResult
from thiran.domain.errors import ThiranError
from thiran.observability.structured_log import log_json
from thiran.tools.base import PARAMETER_TYPES, BaseTool

logger = logging.getLogger(__name__)

CLIENT_NAME = "thiran"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class McpError(ThiranError):
    def __init__(self, message: str, server_name: str, code: str = "") -> None:
        super().__init__(f"[MCP {server_name}] {message}")
        self.server_name = server_name
        self.code = code


class McpConnectionError(McpError):
    def __init__(self, server_name: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to connect: {cause or 'Unknown error'}", server_name, "CONNECTION_ERROR")


class McpToolExecutionError(McpError):
    def __init__(self, server_name: str, tool_name: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Tool {tool_name} failed: {cause or 'Unknown error'}", server_name, "TOOL_ERROR")
        self.tool_name = tool_name


class McpTimeoutError(McpError):
    def __init__(self, server_name: str, operation: str) -> None:
        super().__init__(f"Timeout during {operation}", server_name, "TIMEOUT")


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------


def convert_mcp_property(prop: Dict[str, Any]) -> Dict[str, Any]:
    raw_type = prop.get("type")
    if raw_type == "integer":
        kind = "number"
    elif raw_type in PARAMETER_TYPES:
        kind = raw_type
    else:
        kind = "string"
    out: Dict[str, Any] = {"type": kind, "description": str(prop.get("description") or "")}
    if prop.get("enum"):
        out["enum"] = list(prop["enum"])
    if "default" in prop:
        out["default"] = prop["default"]
    if kind == "array" and isinstance(prop.get("items"), dict):
        out["items"] = convert_mcp_property(prop["items"])
    return out


def convert_mcp_schema(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    schema = schema or {}
    properties = schema.get("properties") if isinstance(schema.get("properties"), dict) else {}
    return {
        "type": "object",
        "properties": {
            str(key): convert_mcp_property(value if isinstance(value, dict) else {})
            for key, value in properties.items()
        },
        "required": [str(r) for r in schema.get("required") or []],
    }


# ---------------------------------------------------------------------------
# Client manager
# ---------------------------------------------------------------------------


@dataclass
class McpToolSpec:
    server_name: str
    name: str
    description: str
    input_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass
class McpServerStatus:
    name: str
    connected: bool
    tool_count: int
    tools: List[str]
    error: Optional[str] = None


@dataclass
class McpCallOutcome:
    content: str
    is_error: bool


@dataclass
class _ServerState:
    config: McpServerConfig
    session: Any = None
    stack: Optional[AsyncExitStack] = None
    tools: List[McpToolSpec] = field(default_factory=list)
    error: Optional[str] = None


@asynccontextmanager
async def open_stdio_session(config: McpServerConfig) -> AsyncIterator[Any]:
    env = dict(get_default_environment())
    env.update(config.env)
    params = StdioServerParameters(command=config.command, args=list(config.args), env=env)
    async with stdio_client(params) as (read_stream, write_stream):
        async with ClientSession(
            read_stream,
            write_stream,
            read_timeout_seconds=timedelta(milliseconds=config.timeout_ms),
        ) as session:
            yield session


SessionFactory = Callable[[McpServerConfig], Any]


class McpClientManager:
    """Owns one client session per configured MCP server."""

    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self._session_factory = session_factory or open_stdio_session
        self._servers: Dict[str, _ServerState] = {}
        self._configs: Dict[str, McpServerConfig] = {}

    async def connect_server(self, config: McpServerConfig) -> None:
        if not config.enabled:
            return
        self._configs[config.name] = config
        stack = AsyncExitStack()
        try:
            session = await stack.enter_async_context(self._session_factory(config))
            await session.initialize()
            listed = await session.list_tools()
        except Exception as exc:
            await _close_quietly(stack, config.name)
            self._servers[config.name] = _ServerState(config=config, error=str(exc))
            log_json(logger, "mcp.server.failed", level=logging.WARNING, server=config.name, error=str(exc))
            if _is_timeout(exc):
                raise McpTimeoutError(config.name, "connect") from exc
            raise McpConnectionError(config.name, exc) from exc

        tools = [
            McpToolSpec(
                server_name=config.name,
                name=str(getattr(tool, "name", "")),
                description=str(getattr(tool, "description", "") or ""),
                input_schema=dict(getattr(tool, "inputSchema", None) or {}),
            )
            for tool in getattr(listed, "tools", None) or []
            if getattr(tool, "name", None)
        ]
        self._servers[config.name] = _ServerState(config=config, session=session, stack=stack, tools=tools)
        log_json(logger, "mcp.server.connected", server=config.name, tool_count=len(tools))

    async def connect_all(self, configs: Sequence[McpServerConfig]) -> int:
        """Connect every enabled server; failures are logged, not raised."""
        failures = 0
        for config in configs:
            if not config.enabled:
                continue
            try:
                await self.connect_server(config)
            except McpError as exc:
                failures += 1
                logger.warning("%s", exc)
        if failures:
            logger.warning("%d MCP server(s) failed to connect", failures)
        return failures

    async def disconnect_server(self, server_name: str) -> None:
        state = self._servers.pop(server_name, None)
        if state is not None and state.stack is not None:
            await _close_quietly(state.stack, server_name)

    async def disconnect_all(self) -> None:
        for name in list(self._servers.keys()):
            await self.disconnect_server(name)

    async def reconnect_server(self, server_name: str) -> None:
        config = self._configs.get(server_name)
        if config is None:
            raise McpError("Unknown server", server_name, "UNKNOWN_SERVER")
        await self.disconnect_server(server_name)
        await self.connect_server(config)

    def get_server_status(self, server_name: str) -> Optional[McpServerStatus]:
        state = self._servers.get(server_name)
        if state is None:
            return None
        return McpServerStatus(
            name=server_name,
            connected=state.session is not None and not state.error,
            tool_count=len(state.tools),
            tools=[t.name for t in state.tools],
            error=state.error,
        )

    def get_all_server_status(self) -> List[McpServerStatus]:
        return [s for s in (self.get_server_status(n) for n in self._servers) if s is not None]

    def get_mcp_tools(self) -> List[McpToolSpec]:
        tools: List[McpToolSpec] = []
        for state in self._servers.values():
            if not state.error:
                tools.extend(state.tools)
        return tools

    def has_servers(self) -> bool:
        return bool(self._servers)

    def connected_count(self) -> int:
        return sum(1 for s in self._servers.values() if not s.error)

    async def call_tool(self, server_name: str, tool_name: str, args: Dict[str, Any]) -> McpCallOutcome:
        state = self._servers.get(server_name)
        if state is None or state.session is None:
            raise McpToolExecutionError(server_name, tool_name, RuntimeError("Server not connected"))
        try:
            result = await state.session.call_tool(tool_name, arguments=dict(args or {}))
        except Exception as exc:
            if _is_timeout(exc):
                raise McpTimeoutError(server_name, f"call {tool_name}") from exc
            raise McpToolExecutionError(server_name, tool_name, exc) from exc
        return McpCallOutcome(
            content=_render_content(getattr(result, "content", None) or []),
            is_error=bool(getattr(result, "isError", False)),
        )


def _render_content(blocks: Sequence[Any]) -> str:
    parts: List[str] = []
    for block in blocks:
        text = getattr(block, "text", None)
        if getattr(block, "type", None) == "text" and isinstance(text, str):
            parts.append(text)
            continue
        dump = getattr(block, "model_dump", None)
        parts.append(json.dumps(dump() if callable(dump) else str(block), default=str))
    return "\n".join(parts)


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, TimeoutError) or "timed out" in str(exc).lower()


async def _close_quietly(stack: AsyncExitStack, server_name: str) -> None:
    try:
        await stack.aclose()
    except Exception:
        logger.debug("error while closing MCP server %s", server_name, exc_info=True)


# ---------------------------------------------------------------------------
# Capability wrappers
# ---------------------------------------------------------------------------


class McpToolWrapper(BaseTool):
    def __init__(self, spec: McpToolSpec, manager: McpClientManager) -> None:
        self.name = f"mcp__{spec.server_name}__{spec.name}"
        self.description = f"[MCP: {spec.server_name}] {spec.description}"
        self.parameters = convert_mcp_schema(spec.input_schema)
        self._spec = spec
        self._manager = manager

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        return PermissionAction(PermissionKind.EXECUTE, self.name, self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        try:
            outcome = await self._manager.call_tool(self._spec.server_name, self._spec.name, args)
        except McpError as exc:
            return self.error(str(exc))
        if outcome.is_error:
            return self.error(outcome.content)
        return self.success(outcome.content)


def create_mcp_tools(manager: McpClientManager) -> List[McpToolWrapper]:
    return [McpToolWrapper(spec, manager) for spec in manager.get_mcp_tools()]
