from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from typing import Any, Dict, List, Optional

from thiran.config import DEFAULT_BLOCKED_COMMANDS
from thiran.domain.contracts import ExecutionContext, PermissionAction, PermissionKind, ToolResult
from thiran.observability.structured_log import log_json
from thiran.tools.base import BaseTool
from thiran.util import clip, redact_with_audit

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60_000
MAX_TIMEOUT_MS = 300_000
KILL_GRACE_SEC = 5.0
MAX_OUTPUT_CHARS = 50_000

BLOCKED_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/(?!\w)"),
    re.compile(r"rm\s+-rf\s+~/"),
    re.compile(r"mkfs\."),
    re.compile(r"dd\s+if=.*of=/dev"),
    re.compile(r":\(\)\{\s*:\|:&\s*\};:"),
    re.compile(r"chmod\s+-R\s+777\s+/"),
    re.compile(r">\s*/dev/sd[a-z]"),
]


class BashTool(BaseTool):
    name = "bash"
    description = (
        "Execute a bash command in the shell.\n"
        "Use this for running builds, tests, git commands, and other terminal operations.\n"
        "Do NOT use this for file operations like reading or writing files - use the dedicated tools instead.\n"
        "Commands run in the current working directory."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The bash command to execute"},
            "timeout": {
                "type": "number",
                "description": "Timeout in milliseconds. Default is 60000 (1 minute). Max is 300000 (5 minutes).",
            },
        },
        "required": ["command"],
    }

    def __init__(self, shell: str = "bash", kill_grace_sec: float = KILL_GRACE_SEC) -> None:
        self._shell = shell
        self._kill_grace_sec = kill_grace_sec

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        return PermissionAction(PermissionKind.EXECUTE, str(args.get("command") or ""), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        command = str(args.get("command") or "").strip()
        if not command:
            return self.error("Missing required argument 'command'.")
        timeout_ms = _coerce_timeout(args.get("timeout"))

        for pattern in BLOCKED_PATTERNS:
            if pattern.search(command):
                return self.error(f"Command blocked for safety: {command}")
        for blocked in _blocked_commands(context):
            if blocked and blocked in command:
                return self.error(f"Command blocked by configuration: {command}")

        try:
            proc = await asyncio.create_subprocess_exec(
                self._shell,
                "-c",
                command,
                cwd=str(context.working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(os.environ),
                start_new_session=True,
            )
        except OSError as exc:
            return self.error(f"Failed to spawn process: {exc}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            return self.error(f"Command timed out after {timeout_ms}ms")
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        out = clip(stdout.decode("utf-8", errors="replace") if stdout else "", MAX_OUTPUT_CHARS)
        err = clip(stderr.decode("utf-8", errors="replace") if stderr else "", MAX_OUTPUT_CHARS)
        output = out
        if err:
            output += ("\n\nSTDERR:\n" if output else "STDERR:\n") + err
        scrubbed = redact_with_audit(output)
        if scrubbed.redacted:
            log_json(logger, "tool.bash.redacted", replacements=scrubbed.replacements)
        output = scrubbed.text or "(no output)"

        if proc.returncode == 0:
            return self.success(output)
        return ToolResult(success=False, output=output, error=f"Command exited with code {proc.returncode}")

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        # The shell leads its own session, so the group id is its pid and
        # background children are signalled with it.
        if not _signal_group(proc.pid, signal.SIGTERM):
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace_sec)
        except asyncio.TimeoutError:
            logger.warning("bash: process group %s ignored SIGTERM, sending SIGKILL", proc.pid)
        _signal_group(proc.pid, signal.SIGKILL)
        await proc.wait()


def _signal_group(pgid: int, sig: int) -> bool:
    try:
        os.killpg(pgid, sig)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def _coerce_timeout(value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_MS
    if parsed <= 0:
        return DEFAULT_TIMEOUT_MS
    return min(parsed, MAX_TIMEOUT_MS)


def _blocked_commands(context: ExecutionContext) -> List[str]:
    configured = getattr(context.config, "blocked_commands", None)
    if configured is None:
        return list(DEFAULT_BLOCKED_COMMANDS)
    return [str(c) for c in configured]
