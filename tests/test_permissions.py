import asyncio
import tempfile
import unittest
from pathlib import Path
from typing import List

from thiran.domain.contracts import ApprovalDecision, ApprovalMode, ExecutionContext, PermissionAction, PermissionKind
from thiran.security.permissions import (
    DENIED_REASON,
    INVALID_URL_REASON,
    PermissionGate,
    command_prefix,
    parse_hostname,
)
from thiran.tools.files import WriteFileTool


class RecordingApprover:
    def __init__(self, *decisions: ApprovalDecision) -> None:
        self._decisions = list(decisions)
        self.calls: List[PermissionAction] = []

    async def __call__(self, action: PermissionAction) -> ApprovalDecision:
        self.calls.append(action)
        if self._decisions:
            return self._decisions.pop(0)
        return ApprovalDecision(allow=False)


def _action(kind: PermissionKind, target: str) -> PermissionAction:
    return PermissionAction(kind=kind, target=target, tool_name="test")


class TestPathBoundaries(unittest.TestCase):
    def test_allow_list_respects_directory_boundary(self):
        approver = RecordingApprover()
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)

        inside = asyncio.run(gate.check_permission(_action(PermissionKind.READ, "/work/file.txt")))
        self.assertTrue(inside.granted)
        self.assertEqual(approver.calls, [])

        sibling = asyncio.run(gate.check_permission(_action(PermissionKind.READ, "/workshop/file.txt")))
        self.assertFalse(sibling.granted)
        self.assertEqual(len(approver.calls), 1)

    def test_relative_paths_resolve_against_working_directory(self):
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"))
        self.assertTrue(gate.is_path_allowed("src/../README.md"))
        self.assertFalse(gate.is_path_allowed("../elsewhere/x"))
        self.assertEqual(gate.normalize_path("a/./b"), "/work/a/b")

    def test_configured_allowed_paths(self):
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), allowed_paths=["/opt/shared"])
        self.assertTrue(gate.is_path_allowed("/opt/shared/lib.py"))
        self.assertFalse(gate.is_path_allowed("/opt/sharedother"))

    def test_symlinked_working_directory_matches_resolved_targets(self):
        with tempfile.TemporaryDirectory() as tmp:
            real = Path(tmp) / "real"
            real.mkdir()
            link = Path(tmp) / "link"
            link.symlink_to(real, target_is_directory=True)
            approver = RecordingApprover()
            gate = PermissionGate(ApprovalMode.AUTO_EDIT, link, approver)
            ctx = ExecutionContext(working_directory=link, permissions=gate)

            action = WriteFileTool().permission_action({"file_path": "a.txt"}, ctx)
            self.assertTrue(asyncio.run(gate.check_permission(action)).granted)
            via_link = asyncio.run(gate.check_permission(_action(PermissionKind.WRITE, str(link / "b.txt"))))
            self.assertTrue(via_link.granted)
            self.assertEqual(approver.calls, [])

    def test_dot_dot_segments_cannot_escape_boundary(self):
        gate = PermissionGate(ApprovalMode.AUTO_EDIT, Path("/work"), RecordingApprover())
        self.assertTrue(gate.is_path_allowed("/work/sub/../a.txt"))
        self.assertFalse(gate.is_path_allowed("/work/sub/../../workshop/x"))
        escaped = asyncio.run(gate.check_permission(_action(PermissionKind.WRITE, "/work/../etc/passwd")))
        self.assertFalse(escaped.granted)



class TestApprovalFlow(unittest.TestCase):
    def test_full_auto_always_grants(self):
        approver = RecordingApprover()
        gate = PermissionGate(ApprovalMode.FULL_AUTO, Path("/work"), approver)
        for action in (
            _action(PermissionKind.WRITE, "/etc/passwd"),
            _action(PermissionKind.EXECUTE, "rm -rf /tmp/x"),
            _action(PermissionKind.FETCH, "not a url"),
        ):
            self.assertTrue(asyncio.run(gate.check_permission(action)).granted)
        self.assertEqual(approver.calls, [])

    def test_denials_without_remember_are_not_memoized(self):
        approver = RecordingApprover(ApprovalDecision(allow=False), ApprovalDecision(allow=False))
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        action = _action(PermissionKind.EXECUTE, "npm test")
        first = asyncio.run(gate.check_permission(action))
        second = asyncio.run(gate.check_permission(action))
        self.assertFalse(first.granted)
        self.assertFalse(second.granted)
        self.assertEqual(first.reason, DENIED_REASON)
        self.assertEqual(len(approver.calls), 2)

    def test_allow_once_is_not_memoized(self):
        approver = RecordingApprover(ApprovalDecision(allow=True), ApprovalDecision(allow=False))
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        action = _action(PermissionKind.EXECUTE, "npm test")
        self.assertTrue(asyncio.run(gate.check_permission(action)).granted)
        self.assertFalse(asyncio.run(gate.check_permission(action)).granted)

    def test_remembered_command_prefix_skips_prompt(self):
        approver = RecordingApprover(ApprovalDecision(allow=True, remember=True))
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        self.assertTrue(asyncio.run(gate.check_permission(_action(PermissionKind.EXECUTE, "npm test"))).granted)
        self.assertTrue(asyncio.run(gate.check_permission(_action(PermissionKind.EXECUTE, "npm run build"))).granted)
        self.assertEqual(len(approver.calls), 1)

    def test_safe_commands_bypass_prompt(self):
        approver = RecordingApprover()
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        for command in ("ls -la", "pwd", "git status", "cat README.md"):
            self.assertTrue(asyncio.run(gate.check_permission(_action(PermissionKind.EXECUTE, command))).granted)
        self.assertEqual(approver.calls, [])

    def test_missing_callback_denies(self):
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"))
        result = asyncio.run(gate.check_permission(_action(PermissionKind.EXECUTE, "make")))
        self.assertFalse(result.granted)


class TestModes(unittest.TestCase):
    def test_auto_edit_grants_writes_under_allowed_path(self):
        approver = RecordingApprover()
        gate = PermissionGate(ApprovalMode.AUTO_EDIT, Path("/work"), approver)
        inside = asyncio.run(gate.check_permission(_action(PermissionKind.WRITE, "/work/src/app.py")))
        self.assertTrue(inside.granted)
        outside = asyncio.run(gate.check_permission(_action(PermissionKind.WRITE, "/etc/hosts")))
        self.assertFalse(outside.granted)
        self.assertEqual(len(approver.calls), 1)

    def test_auto_edit_still_prompts_for_execute(self):
        approver = RecordingApprover(ApprovalDecision(allow=True))
        gate = PermissionGate(ApprovalMode.AUTO_EDIT, Path("/work"), approver)
        result = asyncio.run(gate.check_permission(_action(PermissionKind.EXECUTE, "make build")))
        self.assertTrue(result.granted)
        self.assertEqual(len(approver.calls), 1)

    def test_suggest_prompts_for_writes_even_in_working_directory(self):
        approver = RecordingApprover(ApprovalDecision(allow=False))
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        result = asyncio.run(gate.check_permission(_action(PermissionKind.WRITE, "/work/a.txt")))
        self.assertFalse(result.granted)
        self.assertEqual(len(approver.calls), 1)

    def test_mode_parsing(self):
        self.assertEqual(ApprovalMode.parse("auto_edit"), ApprovalMode.AUTO_EDIT)
        self.assertEqual(ApprovalMode.parse("FULL-AUTO"), ApprovalMode.FULL_AUTO)
        self.assertEqual(ApprovalMode.parse("yolo"), ApprovalMode.SUGGEST)


class TestUrls(unittest.TestCase):
    def test_unparsable_url_fails_closed(self):
        approver = RecordingApprover(ApprovalDecision(allow=True))
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        result = asyncio.run(gate.check_permission(_action(PermissionKind.FETCH, "::nonsense::")))
        self.assertFalse(result.granted)
        self.assertEqual(result.reason, INVALID_URL_REASON)
        self.assertEqual(approver.calls, [])

    def test_remembered_host(self):
        approver = RecordingApprover(ApprovalDecision(allow=True, remember=True))
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        asyncio.run(gate.check_permission(_action(PermissionKind.FETCH, "https://Docs.Python.org/3/")))
        again = asyncio.run(gate.check_permission(_action(PermissionKind.FETCH, "http://docs.python.org/other")))
        self.assertTrue(again.granted)
        self.assertEqual(len(approver.calls), 1)

    def test_add_to_allow_list_preseeds(self):
        approver = RecordingApprover()
        gate = PermissionGate(ApprovalMode.SUGGEST, Path("/work"), approver)
        gate.add_to_allow_list(_action(PermissionKind.FETCH, "https://pypi.org/simple"))
        gate.add_to_allow_list(_action(PermissionKind.EXECUTE, "pytest -q"))
        self.assertTrue(asyncio.run(gate.check_permission(_action(PermissionKind.FETCH, "https://pypi.org/x"))).granted)
        self.assertTrue(asyncio.run(gate.check_permission(_action(PermissionKind.EXECUTE, "pytest tests/"))).granted)
        self.assertEqual(approver.calls, [])


class TestHelpers(unittest.TestCase):
    def test_command_prefix(self):
        self.assertEqual(command_prefix("  git   commit -m x"), "git")
        self.assertEqual(command_prefix(""), "")

    def test_parse_hostname(self):
        self.assertEqual(parse_hostname("https://Example.COM:8443/a"), "example.com")
        self.assertEqual(parse_hostname("example.com/path"), "")


if __name__ == "__main__":
    unittest.main()
