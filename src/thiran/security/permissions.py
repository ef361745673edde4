"""Permission gate for capability invocations.

One gate instance owns the allow-lists for one working directory/session:

  paths     - normalized absolute paths; an entry covers itself and anything
              below it (``/work`` covers ``/work/a`` but not ``/workshop``)
  commands  - first whitespace-delimited token of a shell command
  hosts     - hostname of a fetched URL

Misses are delegated to the injected approval callback. Only decisions with
both ``allow`` and ``remember`` set are memoized.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional, Set
from urllib.parse import urlsplit

from thiran.domain.contracts import (
    ApprovalCallback,
    ApprovalDecision,
    ApprovalMode,
    PermissionAction,
    PermissionKind,
    PermissionResult,
)
from thiran.observability.structured_log import log_json

logger = logging.getLogger(__name__)

DENIED_REASON = "User denied permission"
INVALID_URL_REASON = "Invalid URL"

# Read-only commands that never need approval.
SAFE_COMMANDS: frozenset[str] = frozenset(
    [
        "ls",
        "pwd",
        "echo",
        "cat",
        "head",
        "tail",
        "wc",
        "date",
        "whoami",
        "which",
        "type",
        "file",
        "git status",
        "git diff",
        "git log",
        "git branch",
    ]
)


async def deny_all(action: PermissionAction) -> ApprovalDecision:
    return ApprovalDecision(allow=False, remember=False)


class PermissionGate:
    def __init__(
        self,
        approval_mode: ApprovalMode,
        working_directory: Path,
        approval_callback: Optional[ApprovalCallback] = None,
        allowed_paths: Iterable[str] = (),
    ) -> None:
        self._approval_mode = ApprovalMode.parse(approval_mode)
        self._working_directory = _normalize_path(str(working_directory), Path("/"))
        self._approval_callback: ApprovalCallback = approval_callback or deny_all
        self._allowed_paths: Set[str] = {self._working_directory}
        self._allowed_commands: Set[str] = set()
        self._allowed_hosts: Set[str] = set()
        for raw in allowed_paths:
            self._allowed_paths.add(self.normalize_path(raw))

    @property
    def approval_mode(self) -> ApprovalMode:
        return self._approval_mode

    @property
    def working_directory(self) -> Path:
        return Path(self._working_directory)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check_permission(self, action: PermissionAction) -> PermissionResult:
        if self._approval_mode == ApprovalMode.FULL_AUTO:
            return PermissionResult(granted=True)

        kind = action.kind
        if kind == PermissionKind.READ:
            return await self._check_read(action)
        if kind == PermissionKind.WRITE:
            return await self._check_write(action)
        if kind == PermissionKind.EXECUTE:
            return await self._check_execute(action)
        if kind == PermissionKind.FETCH:
            return await self._check_fetch(action)
        return PermissionResult(granted=False, reason="Unknown action type")

    def add_to_allow_list(self, action: PermissionAction) -> None:
        kind = action.kind
        if kind in (PermissionKind.READ, PermissionKind.WRITE):
            if action.target:
                self._allowed_paths.add(self.normalize_path(action.target))
        elif kind == PermissionKind.EXECUTE:
            prefix = command_prefix(action.target)
            if prefix:
                self._allowed_commands.add(prefix)
        elif kind == PermissionKind.FETCH:
            host = parse_hostname(action.target)
            if host:
                self._allowed_hosts.add(host)

    def is_path_allowed(self, raw_path: str) -> bool:
        target = self.normalize_path(raw_path)
        for allowed in self._allowed_paths:
            if target == allowed:
                return True
            boundary = allowed if allowed.endswith(os.sep) else allowed + os.sep
            if target.startswith(boundary):
                return True
        return False

    def normalize_path(self, raw_path: str) -> str:
        return _normalize_path(raw_path, Path(self._working_directory))

    # ------------------------------------------------------------------
    # Per-kind checks
    # ------------------------------------------------------------------

    async def _check_read(self, action: PermissionAction) -> PermissionResult:
        if self.is_path_allowed(action.target):
            return PermissionResult(granted=True)
        return await self._ask(action)

    async def _check_write(self, action: PermissionAction) -> PermissionResult:
        if self._approval_mode == ApprovalMode.AUTO_EDIT and self.is_path_allowed(action.target):
            return PermissionResult(granted=True)
        return await self._ask(action)

    async def _check_execute(self, action: PermissionAction) -> PermissionResult:
        command = action.target or ""
        prefix = command_prefix(command)
        if prefix in self._allowed_commands:
            return PermissionResult(granted=True)
        first_line = command.split("\n", 1)[0].strip()
        if prefix in SAFE_COMMANDS or first_line in SAFE_COMMANDS:
            return PermissionResult(granted=True)
        return await self._ask(action)

    async def _check_fetch(self, action: PermissionAction) -> PermissionResult:
        host = parse_hostname(action.target)
        if not host:
            return PermissionResult(granted=False, reason=INVALID_URL_REASON)
        if host in self._allowed_hosts:
            return PermissionResult(granted=True)
        return await self._ask(action)

    async def _ask(self, action: PermissionAction) -> PermissionResult:
        log_json(
            logger, "permission.prompt",
            kind=action.kind.value, target=action.target, tool=action.tool_name,
        )
        decision = await self._approval_callback(action)
        if decision.allow and decision.remember:
            self.add_to_allow_list(action)
            log_json(logger, "permission.remember", kind=action.kind.value, target=action.target)
        if decision.allow:
            return PermissionResult(granted=True)
        return PermissionResult(granted=False, reason=DENIED_REASON)


def command_prefix(command: str) -> str:
    for token in str(command or "").split():
        if token:
            return token
    return ""


def parse_hostname(raw_url: str) -> str:
    try:
        parsed = urlsplit(str(raw_url or "").strip())
        host = parsed.hostname or ""
    except ValueError:
        return ""
    if not parsed.scheme or not host:
        return ""
    return host.lower()


def _normalize_path(raw_path: str, base: Path) -> str:
    candidate = Path(os.path.expanduser(str(raw_path or "").strip() or "."))
    if not candidate.is_absolute():
        candidate = base / candidate
    return os.path.realpath(str(candidate))
