from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from thiran.domain.contracts import ExecutionContext, PermissionAction, PermissionKind, ToolResult
from thiran.tools.base import BaseTool, resolve_path

IGNORED_DIRS = frozenset(["node_modules", ".git", "dist", "build"])
MAX_GLOB_RESULTS = 100
MAX_GREP_MATCHES = 200
MAX_GREP_FILES = 500


def find_files(base_dir: Path, pattern: str) -> List[str]:
    """Relative POSIX paths under ``base_dir`` matching ``pattern``, sorted.

    Hidden entries and ``IGNORED_DIRS`` are skipped.
    """
    found: List[str] = []
    for candidate in base_dir.glob(pattern):
        try:
            rel = candidate.relative_to(base_dir)
        except ValueError:
            continue
        parts = rel.parts
        if any(part in IGNORED_DIRS or part.startswith(".") for part in parts):
            continue
        if not candidate.is_file():
            continue
        found.append(rel.as_posix())
    found.sort()
    return found


def _search_root(args: Dict[str, Any], context: ExecutionContext) -> Path:
    raw = str(args.get("path") or "").strip()
    if not raw:
        return Path(context.working_directory).resolve()
    return resolve_path(context.working_directory, raw)


class GlobTool(BaseTool):
    name = "glob"
    description = (
        "Find files matching a glob pattern.\n"
        'Use patterns like "**/*.py" to find all Python files, or "src/**/*.js" for JS files in src.\n'
        "Returns matching file paths sorted by path."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": 'The glob pattern to match files against (e.g., "**/*.py", "src/**/*.js")',
            },
            "path": {
                "type": "string",
                "description": "The directory to search in. Defaults to current working directory.",
            },
        },
        "required": ["pattern"],
    }
    read_only = True

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        return PermissionAction(PermissionKind.READ, str(_search_root(args, context)), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        pattern = str(args.get("pattern") or "").strip()
        if not pattern:
            return self.error("Missing required argument 'pattern'.")
        base_dir = _search_root(args, context)
        if not base_dir.is_dir():
            return self.error(f"Directory not found: {base_dir}")
        try:
            files = find_files(base_dir, pattern)
        except (ValueError, NotImplementedError, OSError) as exc:
            return self.error(f"Glob search failed: {exc}")

        if not files:
            return self.success(f"No files found matching pattern: {pattern}")
        shown = files[:MAX_GLOB_RESULTS]
        output = f'Found {len(files)} file(s) matching "{pattern}":\n\n' + "\n".join(shown)
        if len(files) > MAX_GLOB_RESULTS:
            output += f"\n\n... and {len(files) - MAX_GLOB_RESULTS} more files (showing first {MAX_GLOB_RESULTS})"
        return self.success(output)


class GrepTool(BaseTool):
    name = "grep"
    description = (
        "Search for a pattern in files.\n"
        "Supports regular expressions. Returns matching lines with file paths and line numbers.\n"
        "Use the glob_pattern parameter to filter which files to search."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "The regex pattern to search for in file contents"},
            "glob_pattern": {
                "type": "string",
                "description": 'Glob pattern to filter files (e.g., "**/*.py"). Defaults to all files.',
            },
            "path": {
                "type": "string",
                "description": "Directory to search in. Defaults to current working directory.",
            },
            "case_insensitive": {
                "type": "boolean",
                "description": "If true, search is case-insensitive. Default is false.",
            },
            "context_lines": {
                "type": "number",
                "description": "Number of context lines to show before and after matches. Default is 0.",
            },
        },
        "required": ["pattern"],
    }
    read_only = True

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        return PermissionAction(PermissionKind.READ, str(_search_root(args, context)), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        pattern = str(args.get("pattern") or "")
        if not pattern:
            return self.error("Missing required argument 'pattern'.")
        glob_pattern = str(args.get("glob_pattern") or "**/*")
        flags = re.IGNORECASE if args.get("case_insensitive") else 0
        try:
            context_lines = max(0, int(args.get("context_lines") or 0))
        except (TypeError, ValueError):
            context_lines = 0
        try:
            regex = re.compile(pattern, flags)
        except re.error:
            return self.error(f"Invalid regex pattern: {pattern}")

        base_dir = _search_root(args, context)
        if not base_dir.is_dir():
            return self.error(f"Directory not found: {base_dir}")
        try:
            files = [f for f in find_files(base_dir, glob_pattern) if not f.endswith(".min.js")]
        except (ValueError, NotImplementedError, OSError) as exc:
            return self.error(f"Grep search failed: {exc}")

        chunks: List[str] = []
        match_count = 0
        for rel in files[:MAX_GREP_FILES]:
            if match_count >= MAX_GREP_MATCHES:
                break
            try:
                lines = (base_dir / rel).read_text(encoding="utf-8").split("\n")
            except (OSError, UnicodeDecodeError):
                continue
            for idx, line in enumerate(lines):
                if match_count >= MAX_GREP_MATCHES:
                    break
                if not regex.search(line):
                    continue
                match_count += 1
                if context_lines <= 0:
                    chunks.append(f"{rel}:{idx + 1}: {line}\n")
                    continue
                start = max(0, idx - context_lines)
                end = min(len(lines), idx + context_lines + 1)
                block = [
                    f"{'>' if n == idx else ' '}{n + 1}: {lines[n]}"
                    for n in range(start, end)
                ]
                chunks.append(f"{rel}:{idx + 1}\n" + "\n".join(block) + "\n\n")

        if match_count == 0:
            return self.success(f"No matches found for pattern: {pattern}")
        output = f'Found {match_count} match(es) for "{pattern}":\n\n' + "".join(chunks)
        if match_count >= MAX_GREP_MATCHES:
            output += f"\n... (showing first {MAX_GREP_MATCHES} matches)"
        if len(files) > MAX_GREP_FILES:
            output += f"\n(searched first {MAX_GREP_FILES} of {len(files)} files)"
        return self.success(output)
