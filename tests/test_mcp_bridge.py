import asyncio
import unittest
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List

from thiran.config import McpServerConfig
from thiran.domain.contracts import ExecutionContext, PermissionKind
from thiran.services.mcp_bridge import (
    McpClientManager,
    McpConnectionError,
    McpTimeoutError,
    convert_mcp_schema,
    create_mcp_tools,
)


class FakeSession:
    def __init__(self, tools: List[Any], results: Dict[str, Any]) -> None:
        self._tools = tools
        self._results = results
        self.calls: List[tuple] = []
        self.closed = False

    async def initialize(self) -> None:
        return None

    async def list_tools(self) -> Any:
        return SimpleNamespace(tools=self._tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        result = self._results[name]
        if isinstance(result, BaseException):
            raise result
        return result


def _tool(name: str, description: str = "", schema: Dict[str, Any] = None) -> Any:
    return SimpleNamespace(name=name, description=description, inputSchema=schema or {"type": "object"})


def _text(text: str) -> Any:
    return SimpleNamespace(type="text", text=text)


def make_factory(sessions: Dict[str, Any]):
    @asynccontextmanager
    async def factory(config: McpServerConfig):
        session = sessions[config.name]
        if isinstance(session, BaseException):
            raise session
        try:
            yield session
        finally:
            session.closed = True

    return factory


class TestSchemaConversion(unittest.TestCase):
    def test_types_are_narrowed(self):
        schema = convert_mcp_schema(
            {
                "type": "object",
                "properties": {
                    "count": {"type": "integer", "description": "How many"},
                    "mode": {"type": "string", "enum": ["a", "b"], "default": "a"},
                    "tags": {"type": "array", "items": {"type": "integer"}},
                    "blob": {"type": "null"},
                },
                "required": ["count"],
            }
        )
        props = schema["properties"]
        self.assertEqual(props["count"], {"type": "number", "description": "How many"})
        self.assertEqual(props["mode"]["enum"], ["a", "b"])
        self.assertEqual(props["mode"]["default"], "a")
        self.assertEqual(props["tags"]["items"]["type"], "number")
        self.assertEqual(props["blob"]["type"], "string")
        self.assertEqual(schema["required"], ["count"])

    def test_missing_schema(self):
        self.assertEqual(convert_mcp_schema(None), {"type": "object", "properties": {}, "required": []})


class TestMcpClientManager(unittest.TestCase):
    def test_tools_are_wrapped_and_dispatched(self):
        session = FakeSession(
            tools=[_tool("search", "Search issues", {"type": "object", "properties": {"q": {"type": "string"}}})],
            results={"search": SimpleNamespace(content=[_text("issue #1"), _text("issue #2")], isError=False)},
        )
        manager = McpClientManager(session_factory=make_factory({"github": session}))

        async def scenario():
            await manager.connect_server(McpServerConfig(name="github", command="gh-mcp"))
            tools = create_mcp_tools(manager)
            result = await tools[0].run({"q": "bug"}, ExecutionContext(working_directory=Path("/work")))
            await manager.disconnect_all()
            return tools, result

        tools, result = asyncio.run(scenario())
        self.assertEqual([t.name for t in tools], ["mcp__github__search"])
        self.assertEqual(tools[0].description, "[MCP: github] Search issues")
        self.assertEqual(tools[0].parameters["properties"]["q"]["type"], "string")
        self.assertTrue(result.success)
        self.assertEqual(result.output, "issue #1\nissue #2")
        self.assertEqual(session.calls, [("search", {"q": "bug"})])
        self.assertTrue(session.closed)
        self.assertFalse(manager.has_servers())

    def test_wrapper_requires_execute_permission(self):
        session = FakeSession(tools=[_tool("run")], results={})
        manager = McpClientManager(session_factory=make_factory({"ci": session}))
        asyncio.run(manager.connect_server(McpServerConfig(name="ci", command="ci-mcp")))
        tool = create_mcp_tools(manager)[0]
        action = tool.permission_action({"job": "lint"}, ExecutionContext(working_directory=Path("/work")))
        self.assertEqual(action.kind, PermissionKind.EXECUTE)
        self.assertEqual(action.target, "mcp__ci__run")
        self.assertEqual(action.tool_args, {"job": "lint"})

    def test_error_results_and_failed_calls(self):
        session = FakeSession(
            tools=[_tool("deploy"), _tool("status")],
            results={
                "deploy": SimpleNamespace(content=[_text("not allowed")], isError=True),
                "status": RuntimeError("pipe closed"),
            },
        )
        manager = McpClientManager(session_factory=make_factory({"ops": session}))
        ctx = ExecutionContext(working_directory=Path("/work"))

        async def scenario():
            await manager.connect_server(McpServerConfig(name="ops", command="ops-mcp"))
            deploy, status = create_mcp_tools(manager)
            return await deploy.run({}, ctx), await status.run({}, ctx)

        deploy_result, status_result = asyncio.run(scenario())
        self.assertFalse(deploy_result.success)
        self.assertEqual(deploy_result.error, "not allowed")
        self.assertFalse(status_result.success)
        self.assertIn("[MCP ops] Tool status failed: pipe closed", status_result.error)

    def test_connect_all_counts_failures_and_reports_status(self):
        good = FakeSession(tools=[_tool("a"), _tool("b")], results={})
        manager = McpClientManager(
            session_factory=make_factory(
                {
                    "good": good,
                    "bad": OSError("command not found"),
                    "slow": TimeoutError("timed out"),
                }
            )
        )
        configs = [
            McpServerConfig(name="good", command="good"),
            McpServerConfig(name="bad", command="bad"),
            McpServerConfig(name="slow", command="slow"),
            McpServerConfig(name="off", command="off", enabled=False),
        ]
        with self.assertLogs("thiran.services.mcp_bridge", level="WARNING"):
            failures = asyncio.run(manager.connect_all(configs))

        self.assertEqual(failures, 2)
        self.assertEqual(manager.connected_count(), 1)
        self.assertEqual([t.name for t in manager.get_mcp_tools()], ["a", "b"])
        good_status = manager.get_server_status("good")
        self.assertTrue(good_status.connected)
        self.assertEqual(good_status.tools, ["a", "b"])
        bad_status = manager.get_server_status("bad")
        self.assertFalse(bad_status.connected)
        self.assertEqual(bad_status.error, "command not found")
        self.assertIsNone(manager.get_server_status("off"))
        self.assertEqual(len(manager.get_all_server_status()), 3)

    def test_connect_server_raises_typed_errors(self):
        manager = McpClientManager(
            session_factory=make_factory({"bad": OSError("nope"), "slow": TimeoutError("timed out")})
        )
        with self.assertRaises(McpConnectionError):
            asyncio.run(manager.connect_server(McpServerConfig(name="bad", command="bad")))
        with self.assertRaises(McpTimeoutError):
            asyncio.run(manager.connect_server(McpServerConfig(name="slow", command="slow")))


if __name__ == "__main__":
    unittest.main()
