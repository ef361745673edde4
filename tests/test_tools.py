import asyncio
import tempfile
import time
import unittest
from pathlib import Path
from types import SimpleNamespace

import httpx

from thiran.domain.contracts import ExecutionContext, PermissionKind
from thiran.tools import build_default_tool_registry, describe
from thiran.tools.files import EditFileTool, ReadFileTool, WriteFileTool
from thiran.tools.search import GlobTool, GrepTool, find_files
from thiran.tools.shell import BashTool
from thiran.tools.web import WebFetchTool, WebSearchTool, html_to_text, parse_search_results


def _ctx(root: Path, config=None) -> ExecutionContext:
    return ExecutionContext(working_directory=root, config=config)


class TestRegistry(unittest.TestCase):
    def test_default_registry_names(self):
        registry = build_default_tool_registry()
        self.assertEqual(
            registry.names(),
            ["bash", "edit_file", "glob", "grep", "read_file", "web_fetch", "web_search", "write_file"],
        )
        self.assertIn("bash", registry)
        self.assertEqual(len(registry), 8)
        self.assertIsNone(registry.get("delete_universe"))

    def test_descriptor_shape(self):
        desc = describe(ReadFileTool())
        self.assertEqual(desc["name"], "read_file")
        self.assertEqual(desc["parameters"]["type"], "object")
        self.assertEqual(desc["parameters"]["required"], ["file_path"])
        self.assertIn("offset", desc["parameters"]["properties"])

    def test_unregister(self):
        registry = build_default_tool_registry()
        registry.unregister("bash")
        self.assertNotIn("bash", registry)


class TestFileTools(unittest.TestCase):
    def test_read_numbers_lines_and_pages(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "a.txt").write_text("one\ntwo\nthree\nfour", encoding="utf-8")
            full = asyncio.run(ReadFileTool().run({"file_path": "a.txt"}, _ctx(root)))
            self.assertTrue(full.success)
            self.assertIn("Total lines: 4", full.output)
            self.assertIn("1\tone", full.output)

            page = asyncio.run(ReadFileTool().run({"file_path": "a.txt", "offset": 2, "limit": 2}, _ctx(root)))
            self.assertIn("Lines 2-3 of 4", page.output)
            self.assertIn("2\ttwo", page.output)
            self.assertNotIn("four", page.output)

    def test_read_missing_and_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            missing = asyncio.run(ReadFileTool().run({"file_path": "nope.txt"}, _ctx(root)))
            self.assertFalse(missing.success)
            self.assertIn("File not found", missing.error)
            (root / "sub").mkdir()
            directory = asyncio.run(ReadFileTool().run({"file_path": "sub"}, _ctx(root)))
            self.assertFalse(directory.success)
            self.assertIn("Not a file", directory.error)

    def test_write_creates_then_updates(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            created = asyncio.run(WriteFileTool().run({"file_path": "nested/x.txt", "content": "a\nb"}, _ctx(root)))
            self.assertTrue(created.success)
            self.assertIn("Created", created.output)
            self.assertIn("(2 lines)", created.output)
            updated = asyncio.run(WriteFileTool().run({"file_path": "nested/x.txt", "content": "c"}, _ctx(root)))
            self.assertIn("Updated", updated.output)
            self.assertEqual((root / "nested" / "x.txt").read_text(encoding="utf-8"), "c")

    def test_edit_unique_and_replace_all(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            target = root / "f.py"
            target.write_text("x = 1\nx = 1\ny = 2\n", encoding="utf-8")
            tool = EditFileTool()

            ambiguous = asyncio.run(tool.run({"file_path": "f.py", "old_string": "x = 1", "new_string": "x = 3"}, _ctx(root)))
            self.assertFalse(ambiguous.success)
            self.assertIn("Found 2 occurrences", ambiguous.error)

            done = asyncio.run(
                tool.run({"file_path": "f.py", "old_string": "x = 1", "new_string": "x = 3", "replace_all": True}, _ctx(root))
            )
            self.assertTrue(done.success)
            self.assertIn("2 replacement(s)", done.output)
            self.assertEqual(target.read_text(encoding="utf-8"), "x = 3\nx = 3\ny = 2\n")

    def test_edit_rejects_identical_and_missing(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "f.py").write_text("def handler(request):\n    return None\n", encoding="utf-8")
            tool = EditFileTool()
            same = asyncio.run(tool.run({"file_path": "f.py", "old_string": "a", "new_string": "a"}, _ctx(root)))
            self.assertFalse(same.success)
            miss = asyncio.run(
                tool.run(
                    {"file_path": "f.py", "old_string": "def handler(request):\n  return 1", "new_string": "z"},
                    _ctx(root),
                )
            )
            self.assertFalse(miss.success)
            self.assertIn("Did you mean", miss.error)

    def test_permission_actions(self):
        root = Path("/work")
        ctx = _ctx(root)
        self.assertEqual(ReadFileTool().permission_action({"file_path": "a"}, ctx).kind, PermissionKind.READ)
        write = WriteFileTool().permission_action({"file_path": "a"}, ctx)
        self.assertEqual(write.kind, PermissionKind.WRITE)
        self.assertTrue(write.target.endswith("a"))
        self.assertEqual(BashTool().permission_action({"command": "ls"}, ctx).kind, PermissionKind.EXECUTE)
        self.assertEqual(WebFetchTool().permission_action({"url": "https://x.io"}, ctx).kind, PermissionKind.FETCH)


class TestSearchTools(unittest.TestCase):
    def _tree(self, root: Path) -> None:
        (root / "src").mkdir()
        (root / "src" / "app.py").write_text("import os\ndef main():\n    return os.getcwd()\n", encoding="utf-8")
        (root / "src" / "util.py").write_text("VALUE = 1\n", encoding="utf-8")
        (root / "node_modules").mkdir()
        (root / "node_modules" / "dep.py").write_text("def main(): pass\n", encoding="utf-8")
        (root / ".hidden").mkdir()
        (root / ".hidden" / "x.py").write_text("def main(): pass\n", encoding="utf-8")

    def test_find_files_skips_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            self._tree(root)
            self.assertEqual(find_files(root, "**/*.py"), ["src/app.py", "src/util.py"])

    def test_glob_output(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            self._tree(root)
            found = asyncio.run(GlobTool().run({"pattern": "**/*.py"}, _ctx(root)))
            self.assertIn('Found 2 file(s) matching "**/*.py"', found.output)
            none = asyncio.run(GlobTool().run({"pattern": "**/*.rs"}, _ctx(root)))
            self.assertIn("No files found matching pattern", none.output)

    def test_grep_matches_and_context(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            self._tree(root)
            plain = asyncio.run(GrepTool().run({"pattern": r"def \w+"}, _ctx(root)))
            self.assertIn("Found 1 match(es)", plain.output)
            self.assertIn("src/app.py:2: def main():", plain.output)

            ctx_out = asyncio.run(GrepTool().run({"pattern": "getcwd", "context_lines": 1}, _ctx(root)))
            self.assertIn(">3:", ctx_out.output)
            self.assertIn(" 2:", ctx_out.output)

    def test_grep_invalid_regex(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = asyncio.run(GrepTool().run({"pattern": "([unclosed"}, _ctx(Path(tmp))))
            self.assertFalse(result.success)
            self.assertIn("Invalid regex pattern", result.error)


class TestBashTool(unittest.TestCase):
    def test_runs_command_and_reports_stderr(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = asyncio.run(BashTool().run({"command": "echo hello; echo oops 1>&2"}, _ctx(Path(tmp))))
            self.assertTrue(result.success)
            self.assertIn("hello", result.output)
            self.assertIn("STDERR:\noops", result.output)

    def test_non_zero_exit_is_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = asyncio.run(BashTool().run({"command": "exit 3"}, _ctx(Path(tmp))))
            self.assertFalse(result.success)
            self.assertEqual(result.error, "Command exited with code 3")

    def test_blocked_patterns_and_configured_blocks(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            unsafe = asyncio.run(BashTool().run({"command": "rm -rf /"}, _ctx(root)))
            self.assertIn("blocked for safety", unsafe.error)
            config = SimpleNamespace(blocked_commands=["npm publish"])
            configured = asyncio.run(BashTool().run({"command": "npm publish --dry-run"}, _ctx(root, config)))
            self.assertIn("blocked by configuration", configured.error)

    def test_timeout_terminates_process(self):
        with tempfile.TemporaryDirectory() as tmp:
            tool = BashTool(kill_grace_sec=1.0)
            result = asyncio.run(tool.run({"command": "sleep 5", "timeout": 200}, _ctx(Path(tmp))))
            self.assertFalse(result.success)
            self.assertEqual(result.error, "Command timed out after 200ms")

    def test_timeout_stops_background_children(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            tool = BashTool(kill_grace_sec=1.0)
            result = asyncio.run(
                tool.run({"command": "(sleep 1; touch late.txt) & sleep 5", "timeout": 300}, _ctx(root))
            )
            self.assertEqual(result.error, "Command timed out after 300ms")
            time.sleep(1.5)
            self.assertFalse((root / "late.txt").exists())

    def test_output_is_redacted(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = asyncio.run(BashTool().run({"command": "echo sk-abcdef1234567890xyz"}, _ctx(Path(tmp))))
            self.assertNotIn("abcdef1234567890xyz", result.output)


class TestWebFetchTool(unittest.TestCase):
    def test_html_is_converted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            html = "<html><head><style>p{}</style></head><body><h1>Title</h1><p>Hello <a href='/x'>link</a></p></body></html>"
            return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=html)

        tool = WebFetchTool(transport=httpx.MockTransport(handler))
        result = asyncio.run(tool.run({"url": "https://example.com/page"}, _ctx(Path("/tmp"))))
        self.assertTrue(result.success)
        self.assertIn("URL: https://example.com/page", result.output)
        self.assertIn("Title", result.output)
        self.assertIn("Hello link [/x]", result.output)
        self.assertNotIn("p{}", result.output)

    def test_http_error_and_truncation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/missing":
                return httpx.Response(404)
            return httpx.Response(200, headers={"content-type": "text/plain"}, content=b"a" * (200 * 1024))

        tool = WebFetchTool(transport=httpx.MockTransport(handler))
        missing = asyncio.run(tool.run({"url": "https://example.com/missing"}, _ctx(Path("/tmp"))))
        self.assertFalse(missing.success)
        self.assertTrue(missing.error.startswith("HTTP 404"))

        big = asyncio.run(tool.run({"url": "https://example.com/big"}, _ctx(Path("/tmp"))))
        self.assertIn("(truncated)", big.output)
        self.assertIn("[Content truncated at 100KB]", big.output)

    def test_rejects_bad_urls(self):
        tool = WebFetchTool()
        bad = asyncio.run(tool.run({"url": "not a url"}, _ctx(Path("/tmp"))))
        self.assertIn("Invalid URL", bad.error)
        ftp = asyncio.run(tool.run({"url": "ftp://example.com/file"}, _ctx(Path("/tmp"))))
        self.assertEqual(ftp.error, "URL must use http:// or https:// protocol")

    def test_html_to_text_skips_scripts(self):
        self.assertEqual(html_to_text("<p>a</p><script>evil()</script><p>b</p>"), "a\n\nb")


SEARCH_PAGE = """
<div class="result results_links web-result"><div class="links_main">
<h2><a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fdocs.python.org%2F3%2F&amp;rut=x">Python &amp; <b>Docs</b></a></h2>
<a class="result__snippet" href="#">The <b>official</b> documentation.</a>
</div></div>
<div class="result results_links web-result"><div class="links_main">
<h2><a class="result__a" href="https://pypi.org/">PyPI</a></h2>
</div></div>
"""


class TestWebSearchTool(unittest.TestCase):
    def test_parses_results_and_unwraps_redirects(self):
        results = parse_search_results(SEARCH_PAGE, 5)
        self.assertEqual(
            results,
            [
                {"title": "Python & Docs", "url": "https://docs.python.org/3/", "snippet": "The official documentation."},
                {"title": "PyPI", "url": "https://pypi.org/", "snippet": ""},
            ],
        )
        self.assertEqual(len(parse_search_results(SEARCH_PAGE, 1)), 1)

    def test_fallback_uses_result_links(self):
        page = '<a class="result__url" href="https://example.org/a">example.org/a</a>'
        self.assertEqual(parse_search_results(page, 5), [{"title": "example.org", "url": "https://example.org/a", "snippet": ""}])

    def test_run_formats_output(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["q"] = request.url.params.get("q")
            return httpx.Response(200, text=SEARCH_PAGE)

        tool = WebSearchTool(transport=httpx.MockTransport(handler))
        result = asyncio.run(tool.run({"query": "python docs", "max_results": 50}, _ctx(Path("/tmp"))))
        self.assertTrue(result.success)
        self.assertEqual(seen["q"], "python docs")
        self.assertTrue(result.output.startswith('Search results for: "python docs"\nFound 2 result(s)'))
        self.assertIn("1. Python & Docs\n   URL: https://docs.python.org/3/", result.output)

    def test_empty_query_and_no_results(self):
        tool = WebSearchTool(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html></html>")))
        empty = asyncio.run(tool.run({"query": "  "}, _ctx(Path("/tmp"))))
        self.assertEqual(empty.error, "Search query cannot be empty")
        none = asyncio.run(tool.run({"query": "zzz"}, _ctx(Path("/tmp"))))
        self.assertEqual(none.output, 'No results found for: "zzz"')

    def test_permission_is_a_fetch(self):
        action = WebSearchTool().permission_action({"query": "a b"}, _ctx(Path("/work")))
        self.assertEqual(action.kind, PermissionKind.FETCH)
        self.assertTrue(action.target.startswith("https://html.duckduckgo.com/html/?q=a+b"))


if __name__ == "__main__":
    unittest.main()
