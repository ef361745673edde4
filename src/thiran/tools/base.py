from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from thiran.domain.contracts import (
    Capability,
    ExecutionContext,
    PermissionAction,
    ToolResult,
)

PARAMETER_TYPES = frozenset(["string", "number", "boolean", "array", "object"])


class BaseTool:
    """Shared plumbing for built-in capabilities.

    Subclasses set ``name``, ``description`` and ``parameters`` and implement
    ``run``. ``read_only`` capabilities skip approval in suggest mode;
    ``permission_action`` maps call arguments onto the gate's vocabulary.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    read_only: bool = False

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        return None

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        raise NotImplementedError

    def success(self, output: str) -> ToolResult:
        return ToolResult(success=True, output=output)

    def error(self, message: str, output: str = "") -> ToolResult:
        return ToolResult(success=False, output=output, error=message)


def resolve_path(working_directory: Path, raw_path: str) -> Path:
    candidate = Path(str(raw_path or "").strip()).expanduser()
    if not candidate.is_absolute():
        candidate = working_directory / candidate
    return candidate.resolve()


def describe(tool: Capability) -> Dict[str, Any]:
    """Vendor-neutral descriptor: ``{name, description, parameters}``."""
    params = tool.parameters or {}
    return {
        "name": tool.name,
        "description": tool.description,
        "parameters": {
            "type": "object",
            "properties": dict(params.get("properties") or {}),
            "required": list(params.get("required") or []),
        },
    }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, Capability] = {}

    def register(self, tool: Capability) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[Capability]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools.keys())

    def tools(self) -> List[Capability]:
        return list(self._tools.values())

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [describe(tool) for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
