from __future__ import annotations

from typing import Any, Dict, Optional

from thiran.domain.contracts import ExecutionContext, PermissionAction, PermissionKind, ToolResult
from thiran.tools.base import BaseTool, resolve_path

DEFAULT_LINE_LIMIT = 2000
MAX_READ_BYTES = 5_000_000


def _coerce_int(value: Any, default: int, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, parsed)


class ReadFileTool(BaseTool):
    name = "read_file"
    description = (
        "Read the contents of a file. Returns the file contents with line numbers. "
        "Use this before editing a file."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "The absolute or relative path to the file to read"},
            "offset": {"type": "number", "description": "Line number to start reading from (1-indexed). Optional."},
            "limit": {"type": "number", "description": "Maximum number of lines to read. Optional."},
        },
        "required": ["file_path"],
    }
    read_only = True

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        target = resolve_path(context.working_directory, str(args.get("file_path") or ""))
        return PermissionAction(PermissionKind.READ, str(target), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        raw_path = str(args.get("file_path") or "").strip()
        if not raw_path:
            return self.error("Missing required argument 'file_path'.")
        target = resolve_path(context.working_directory, raw_path)
        if not target.exists():
            return self.error(f"File not found: {target}")
        if not target.is_file():
            return self.error(f"Not a file: {target}")
        try:
            data = target.read_bytes()[:MAX_READ_BYTES]
        except OSError as exc:
            return self.error(f"Failed to read file: {exc}")

        lines = data.decode("utf-8", errors="replace").split("\n")
        total = len(lines)
        offset = _coerce_int(args.get("offset"), 1, minimum=1)
        limit = _coerce_int(args.get("limit"), DEFAULT_LINE_LIMIT, minimum=1)
        start = offset - 1
        end = min(total, start + limit)
        width = len(str(end)) if end else 1
        numbered = [f"{str(idx + 1).rjust(width)}\t{lines[idx]}" for idx in range(start, end)]

        header = f"File: {target}\n"
        if start > 0 or end < total:
            header += f"Lines {start + 1}-{end} of {total}\n"
        else:
            header += f"Total lines: {total}\n"
        header += "---\n"
        return self.success(header + "\n".join(numbered))


class WriteFileTool(BaseTool):
    name = "write_file"
    description = (
        "Write content to a file. Creates the file if it does not exist, or overwrites if it does. "
        "Use edit_file for modifying existing files."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "The absolute or relative path to the file to write"},
            "content": {"type": "string", "description": "The content to write to the file"},
        },
        "required": ["file_path", "content"],
    }

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        target = resolve_path(context.working_directory, str(args.get("file_path") or ""))
        return PermissionAction(PermissionKind.WRITE, str(target), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        raw_path = str(args.get("file_path") or "").strip()
        if not raw_path:
            return self.error("Missing required argument 'file_path'.")
        content = args.get("content")
        if not isinstance(content, str):
            return self.error("Argument 'content' must be a string.")
        target = resolve_path(context.working_directory, raw_path)
        existed = target.exists()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as exc:
            return self.error(f"Failed to write file: {exc}")
        action = "Updated" if existed else "Created"
        line_count = content.count("\n") + 1
        return self.success(f"{action} {target} ({line_count} lines)")


class EditFileTool(BaseTool):
    name = "edit_file"
    description = (
        "Edit a file by replacing a specific string with new content.\n"
        "You MUST read the file first before editing to ensure you have the exact content to match.\n"
        "The old_string must be unique in the file - if it appears multiple times, the edit will fail.\n"
        "Use replace_all: true to replace all occurrences."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "The absolute or relative path to the file to edit"},
            "old_string": {
                "type": "string",
                "description": "The exact string to find and replace. Must match exactly including whitespace.",
            },
            "new_string": {"type": "string", "description": "The string to replace old_string with"},
            "replace_all": {
                "type": "boolean",
                "description": "If true, replace all occurrences. Default is false.",
                "default": False,
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        target = resolve_path(context.working_directory, str(args.get("file_path") or ""))
        return PermissionAction(PermissionKind.WRITE, str(target), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        raw_path = str(args.get("file_path") or "").strip()
        old = args.get("old_string")
        new = args.get("new_string")
        if not raw_path:
            return self.error("Missing required argument 'file_path'.")
        if not isinstance(old, str) or not isinstance(new, str) or not old:
            return self.error("Arguments 'old_string' and 'new_string' must be non-empty strings.")
        if old == new:
            return self.error("old_string and new_string are identical; nothing to change.")
        replace_all = bool(args.get("replace_all"))

        target = resolve_path(context.working_directory, raw_path)
        try:
            content = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self.error(f"File not found: {target}")
        except OSError as exc:
            return self.error(f"Failed to edit file: {exc}")

        occurrences = content.count(old)
        if occurrences == 0:
            hint = _find_near_match(content, old)
            if hint:
                return self.error(
                    f"String not found in file. Did you mean:\n{hint}\n\n"
                    "Make sure to read the file first and copy the exact content."
                )
            return self.error(
                "String not found in file. Make sure to read the file first "
                "and use the exact content including whitespace."
            )
        if occurrences > 1 and not replace_all:
            return self.error(
                f"Found {occurrences} occurrences of the string. Use replace_all: true to replace all, "
                "or provide more context to make the match unique."
            )

        if replace_all:
            updated = content.replace(old, new)
            replacements = occurrences
        else:
            updated = content.replace(old, new, 1)
            replacements = 1
        try:
            target.write_text(updated, encoding="utf-8")
        except OSError as exc:
            return self.error(f"Failed to edit file: {exc}")

        line_diff = new.count("\n") - old.count("\n")
        suffix = ""
        if line_diff > 0:
            suffix = f" (+{line_diff} lines)"
        elif line_diff < 0:
            suffix = f" ({line_diff} lines)"
        return self.success(f"Edited {target}: {replacements} replacement(s){suffix}")


def _find_near_match(content: str, needle: str) -> str:
    """Locate the first line of ``needle`` ignoring surrounding whitespace."""
    needle_lines = needle.strip().split("\n")
    first = needle_lines[0].strip()
    if len(first) < 10:
        return ""
    content_lines = content.split("\n")
    for idx, line in enumerate(content_lines):
        if first in line:
            end = min(len(content_lines), idx + len(needle_lines) + 2)
            return "\n".join(content_lines[idx:end])
    return ""
