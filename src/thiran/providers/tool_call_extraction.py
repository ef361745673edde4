"""Free-text tool-call mining for models without native tool calling.

The model is told (see ``format_tools_prompt``) to emit invocations as::

    ```tool
    {"tool": "read_file", "arguments": {"file_path": "src/app.py"}}
    ```

``extract_tool_calls`` recognises that block plus two conventions some local
models fall back to:

  * DeepSeek special tokens:
    ``<｜tool▁call▁begin｜>function<｜tool▁sep｜>NAME ```json {...}``` <｜tool▁call▁end｜>``
  * ``<function=NAME>{...}</function>``

Extraction is best-effort. Unknown tool names are treated as prose, and a
candidate with an unparsable payload is skipped without affecting the others.
"""
from __future__ import annotations

import itertools
import json
import re
import time
from typing import Any, Collection, Dict, Iterator, List, Optional, Sequence, Tuple

from thiran.domain.contracts import Capability, ToolCall

TOOL_BLOCK_RE = re.compile(r"```tool\s*([\s\S]*?)```")
DEEPSEEK_CALL_RE = re.compile(
    r"<｜tool▁call▁begin｜>function<｜tool▁sep｜>(\w+)\s*[\s\S]*?```(?:json)?\s*([\s\S]*?)```[\s\S]*?<｜tool▁call▁end｜>"
)
FUNCTION_TAG_RE = re.compile(r"<function=(\w+)>([\s\S]*?)</function>")

_STREAM_TOKEN_REPLACEMENTS: Tuple[Tuple[str, str], ...] = (
    ("<｜tool▁calls▁begin｜>", "\n"),
    ("<｜tool▁calls▁end｜>", "\n"),
    ("<｜tool▁call▁begin｜>", ""),
    ("<｜tool▁call▁end｜>", "\n"),
    ("<｜tool▁outputs▁begin｜>", ""),
    ("<｜tool▁outputs▁end｜>", "\n"),
    ("<｜tool▁output▁begin｜>", ""),
    ("<｜tool▁output▁end｜>", ""),
    ("<｜tool▁sep｜>", ": "),
    ("<think>", "\n[thinking]\n"),
    ("</think>", "\n[/thinking]\n"),
    ("<｜begin▁of▁thought｜>", "\n[thinking]\n"),
    ("<｜end▁of▁thought｜>", "\n[/thinking]\n"),
)

_RESPONSE_STRIP_RES = (
    re.compile(r"<｜tool▁call▁begin｜>[\s\S]*?<｜tool▁call▁end｜>"),
    re.compile(r"<｜tool▁outputs▁begin｜>[\s\S]*?<｜tool▁outputs▁end｜>"),
    re.compile(r"<｜tool▁calls▁(?:begin|end)｜>|<｜tool▁sep｜>"),
    FUNCTION_TAG_RE,
    re.compile(r"```tool[\s\S]*?```"),
    re.compile(r"<think>[\s\S]*?</think>"),
    re.compile(r"<｜begin▁of▁thought｜>[\s\S]*?<｜end▁of▁thought｜>"),
)

_id_sequence = itertools.count()


def new_call_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{next(_id_sequence)}"


def format_tools_prompt(tools: Sequence[Capability]) -> str:
    if not tools:
        return ""
    blocks: List[str] = []
    for tool in tools:
        params = tool.parameters or {}
        required = set(params.get("required") or [])
        lines = [f"  {tool.name}: {tool.description}"]
        for pname, prop in (params.get("properties") or {}).items():
            marker = " (required)" if pname in required else ""
            lines.append(f"    - {pname}{marker}: {(prop or {}).get('description', '')}")
        blocks.append("\n".join(lines))
    catalogue = "\n\n".join(blocks)
    return f"""
=== AVAILABLE TOOLS ===
You MUST use these tools to interact with the file system. Do NOT ask the user for file contents.

{catalogue}

=== HOW TO USE TOOLS ===
To use a tool, include a JSON block in EXACTLY this format:

```tool
{{"tool": "tool_name", "arguments": {{"param1": "value1"}}}}
```

EXAMPLES:
To read a file:
```tool
{{"tool": "read_file", "arguments": {{"file_path": "src/main.py"}}}}
```

To list files:
```tool
{{"tool": "glob", "arguments": {{"pattern": "**/*.py"}}}}
```

To search for content:
```tool
{{"tool": "grep", "arguments": {{"pattern": "def ", "path": "src"}}}}
```

To run a command:
```tool
{{"tool": "bash", "arguments": {{"command": "ls -la"}}}}
```

IMPORTANT: Start by using tools to explore the codebase. Do NOT ask the user to provide file paths or content."""


def extract_tool_calls(text: str, known_tools: Collection[str], id_prefix: str = "ollama") -> List[ToolCall]:
    calls: List[ToolCall] = []
    for name, arguments in _candidates(text or ""):
        if name not in known_tools:
            continue
        calls.append(ToolCall(id=new_call_id(id_prefix), name=name, arguments=arguments))
    return calls


def _candidates(text: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
    for match in TOOL_BLOCK_RE.finditer(text):
        payload = _load_object(match.group(1))
        if payload is None:
            continue
        name = payload.get("tool") or payload.get("name")
        arguments = payload.get("arguments", payload.get("parameters", {}))
        if not isinstance(name, str) or not isinstance(arguments, dict):
            continue
        yield name.strip(), arguments

    for pattern in (DEEPSEEK_CALL_RE, FUNCTION_TAG_RE):
        for match in pattern.finditer(text):
            arguments = _load_object(match.group(2))
            if arguments is None:
                continue
            yield match.group(1).strip(), arguments


def _load_object(raw: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(raw.strip())
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def clean_stream_content(content: str) -> str:
    """Replace vendor special tokens in a live text chunk with readable markers."""
    cleaned = content
    for token, replacement in _STREAM_TOKEN_REPLACEMENTS:
        cleaned = cleaned.replace(token, replacement)
    return cleaned


def clean_response_text(text: str) -> str:
    """Strip tool invocations and thinking blocks from a finished response."""
    cleaned = text
    for pattern in _RESPONSE_STRIP_RES:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def format_tool_call_block(call: ToolCall) -> str:
    payload = json.dumps({"tool": call.name, "arguments": dict(call.arguments)}, ensure_ascii=False)
    return f"```tool\n{payload}\n```"
