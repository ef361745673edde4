import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"sk-ant-[A-Za-z0-9_-]{10,}", "sk-ant-REDACTED"),
    (r"sk-(?!ant-)[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"AIza[0-9A-Za-z_-]{30,}", "AIza-REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"AKIA[0-9A-Z]{16}", "AKIA_REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "THIRAN_REDACTION_PATTERNS"


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns(os.environ.get(_EXTRA_PATTERNS_ENV) or ""):
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


def clip(text: str, limit: int, notice: str = "\n... (output truncated)") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + notice


@lru_cache(maxsize=4)
def _compiled_patterns(extra_raw: str) -> List[tuple]:
    items: List[tuple] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    for token in extra_raw.strip().split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items
