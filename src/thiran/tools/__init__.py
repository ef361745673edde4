from __future__ import annotations

from typing import Iterable, Optional

from thiran.domain.contracts import Capability
from thiran.tools.base import BaseTool, ToolRegistry, describe
from thiran.tools.files import EditFileTool, ReadFileTool, WriteFileTool
from thiran.tools.search import GlobTool, GrepTool
from thiran.tools.shell import BashTool
from thiran.tools.web import WebFetchTool, WebSearchTool

__all__ = [
    "BaseTool",
    "BashTool",
    "EditFileTool",
    "GlobTool",
    "GrepTool",
    "ReadFileTool",
    "ToolRegistry",
    "WebFetchTool",
    "WebSearchTool",
    "WriteFileTool",
    "build_default_tool_registry",
    "describe",
]


def build_default_tool_registry(extra_tools: Optional[Iterable[Capability]] = None) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
    registry.register(EditFileTool())
    registry.register(GlobTool())
    registry.register(GrepTool())
    registry.register(BashTool())
    registry.register(WebFetchTool())
    registry.register(WebSearchTool())
    for tool in extra_tools or ():
        registry.register(tool)
    return registry
