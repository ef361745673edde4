from __future__ import annotations

import html as html_lib
import re
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlencode, urlsplit

import httpx

from thiran.domain.contracts import ExecutionContext, PermissionAction, PermissionKind, ToolResult
from thiran.tools.base import BaseTool

MAX_CONTENT_BYTES = 100 * 1024
DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 60_000
USER_AGENT = "Thiran/1.0 (AI Coding Assistant)"

_BLOCK_TAGS = {"p", "div", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr", "pre", "table"}


class _ReadableHtmlParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._skip_depth = 0
        self._href: Optional[str] = None
        self.parts: List[str] = []

    def handle_starttag(self, tag: str, attrs: Sequence[Tuple[str, Optional[str]]]) -> None:
        t = (tag or "").lower()
        if t in {"script", "style", "noscript", "svg"}:
            self._skip_depth += 1
            return
        if t == "br":
            self.parts.append("\n")
        elif t in {"td", "th"}:
            self.parts.append("\t")
        elif t == "a":
            self._href = dict(attrs).get("href") or None

    def handle_endtag(self, tag: str) -> None:
        t = (tag or "").lower()
        if t in {"script", "style", "noscript", "svg"}:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if t == "a" and self._href:
            self.parts.append(f" [{self._href}]")
            self._href = None
        elif t in _BLOCK_TAGS:
            self.parts.append("\n\n" if t in {"p", "h1", "h2", "h3", "h4", "h5", "h6"} else "\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        self.parts.append(data)


def html_to_text(html: str) -> str:
    parser = _ReadableHtmlParser()
    parser.feed(html or "")
    parser.close()
    text = "".join(parser.parts)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class WebFetchTool(BaseTool):
    name = "web_fetch"
    description = (
        "Fetch content from a URL and return the text content. Useful for reading web pages, "
        "API responses, documentation, etc. HTML is converted to readable text. "
        "Large responses are truncated to 100KB."
    )
    parameters = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "The URL to fetch (must be http:// or https://)"},
            "timeout": {
                "type": "number",
                "description": "Timeout in milliseconds (default: 30000, max: 60000)",
            },
            "raw": {
                "type": "boolean",
                "description": "If true, return raw content without HTML-to-text conversion (default: false)",
            },
        },
        "required": ["url"],
    }

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        return PermissionAction(PermissionKind.FETCH, str(args.get("url") or ""), self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        url = str(args.get("url") or "").strip()
        raw = bool(args.get("raw"))
        try:
            timeout_ms = min(int(args.get("timeout") or DEFAULT_TIMEOUT_MS), MAX_TIMEOUT_MS)
        except (TypeError, ValueError):
            timeout_ms = DEFAULT_TIMEOUT_MS
        timeout_ms = max(1, timeout_ms)

        parsed = urlsplit(url)
        if not parsed.scheme or not parsed.netloc:
            return self.error(f"Invalid URL: {url}")
        if parsed.scheme not in {"http", "https"}:
            return self.error("URL must use http:// or https:// protocol")

        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,text/plain;q=0.8,*/*;q=0.7",
        }
        try:
            async with httpx.AsyncClient(
                timeout=timeout_ms / 1000.0,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code >= 400:
                        return self.error(f"HTTP {response.status_code}: {response.reason_phrase}")
                    content_type = response.headers.get("content-type", "")
                    body, truncated = await _read_capped(response)
                    charset = response.charset_encoding or "utf-8"
        except httpx.TimeoutException:
            return self.error(f"Request timed out after {timeout_ms}ms")
        except httpx.HTTPError as exc:
            return self.error(f"Fetch failed: {exc}")

        try:
            text = body.decode(charset, errors="replace")
        except LookupError:
            text = body.decode("utf-8", errors="replace")
        stripped = text.lstrip()
        is_html = "text/html" in content_type or stripped.startswith("<!") or stripped.startswith("<html")
        content = html_to_text(text) if is_html and not raw else text

        output = (
            f"URL: {url}\n"
            f"Content-Type: {content_type}\n"
            f"Size: {len(body)} bytes{' (truncated)' if truncated else ''}\n"
            "---\n"
            f"{content}"
        )
        if truncated:
            output += "\n\n[Content truncated at 100KB]"
        return self.success(output)


async def _read_capped(response: httpx.Response) -> Tuple[bytes, bool]:
    chunks: List[bytes] = []
    total = 0
    async for chunk in response.aiter_bytes():
        if total + len(chunk) > MAX_CONTENT_BYTES:
            remaining = MAX_CONTENT_BYTES - total
            if remaining > 0:
                chunks.append(chunk[:remaining])
                total += remaining
            return b"".join(chunks), True
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks), False


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

SEARCH_URL = "https://html.duckduckgo.com/html/"
MAX_SEARCH_RESULTS = 10
DEFAULT_SEARCH_RESULTS = 5
SEARCH_USER_AGENT = "Mozilla/5.0 (compatible; Thiran/1.0; AI Coding Assistant)"

_RESULT_BLOCK_RE = re.compile(r'<div[^>]*class="[^"]*result[^"]*"[^>]*>([\s\S]*?)</div>\s*</div>', re.IGNORECASE)
_RESULT_TITLE_RE = re.compile(r'<a[^>]*class="[^"]*result__a[^"]*"[^>]*href="([^"]*)"[^>]*>([\s\S]*?)</a>', re.IGNORECASE)
_RESULT_SNIPPET_RE = re.compile(r'<a[^>]*class="[^"]*result__snippet[^"]*"[^>]*>([\s\S]*?)</a>', re.IGNORECASE)
_RESULT_URL_RE = re.compile(r'<a[^>]*class="[^"]*result__url[^"]*"[^>]*href="([^"]*)"[^>]*>', re.IGNORECASE)
_UDDG_RE = re.compile(r"uddg=([^&]+)")
_TAG_RE = re.compile(r"<[^>]+>")


def _strip_tags(fragment: str) -> str:
    return re.sub(r"\s+", " ", html_lib.unescape(_TAG_RE.sub("", fragment))).strip()


def _unwrap_redirect(url: str) -> str:
    match = _UDDG_RE.search(url)
    return unquote(match.group(1)) if match else html_lib.unescape(url)


def parse_search_results(page: str, max_results: int) -> List[Dict[str, str]]:
    """Pull ``title``/``url``/``snippet`` entries out of a DuckDuckGo HTML page."""
    results: List[Dict[str, str]] = []
    for block in _RESULT_BLOCK_RE.findall(page):
        if len(results) >= max_results:
            break
        title_match = _RESULT_TITLE_RE.search(block)
        if not title_match:
            continue
        url = _unwrap_redirect(title_match.group(1))
        title = _strip_tags(title_match.group(2))
        snippet_match = _RESULT_SNIPPET_RE.search(block)
        snippet = _strip_tags(snippet_match.group(1)) if snippet_match else ""
        if title and url.startswith("http"):
            results.append({"title": title, "url": url, "snippet": snippet})
    if results:
        return results

    # Layout fallback: bare result links, hostname as title.
    for href in _RESULT_URL_RE.findall(page):
        url = _unwrap_redirect(href)
        host = urlsplit(url).hostname if url.startswith("http") else None
        if host:
            results.append({"title": host, "url": url, "snippet": ""})
        if len(results) >= max_results:
            break
    return results


class WebSearchTool(BaseTool):
    name = "web_search"
    description = (
        "Search the web for information. Returns a list of search results with titles, URLs, "
        "and snippets. Useful for finding current information, documentation, tutorials, and more. "
        "Uses DuckDuckGo search."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query"},
            "max_results": {
                "type": "number",
                "description": f"Maximum number of results to return (default: {DEFAULT_SEARCH_RESULTS}, max: {MAX_SEARCH_RESULTS})",
            },
        },
        "required": ["query"],
    }

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def permission_action(self, args: Dict[str, Any], context: ExecutionContext) -> Optional[PermissionAction]:
        query = str(args.get("query") or "")
        return PermissionAction(PermissionKind.FETCH, f"{SEARCH_URL}?{urlencode({'q': query})}", self.name, dict(args))

    async def run(self, args: Dict[str, Any], context: ExecutionContext) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return self.error("Search query cannot be empty")
        try:
            max_results = int(args.get("max_results") or DEFAULT_SEARCH_RESULTS)
        except (TypeError, ValueError):
            max_results = DEFAULT_SEARCH_RESULTS
        max_results = max(1, min(max_results, MAX_SEARCH_RESULTS))

        headers = {"User-Agent": SEARCH_USER_AGENT, "Accept": "text/html"}
        try:
            async with httpx.AsyncClient(
                timeout=DEFAULT_TIMEOUT_MS / 1000.0,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(SEARCH_URL, params={"q": query}, headers=headers)
        except httpx.TimeoutException:
            return self.error("Search failed: Search request timed out")
        except httpx.HTTPError as exc:
            return self.error(f"Search failed: {exc}")
        if response.status_code >= 400:
            return self.error(f"Search failed: HTTP {response.status_code}: {response.reason_phrase}")

        results = parse_search_results(response.text, max_results)
        if not results:
            return self.success(f'No results found for: "{query}"')

        lines = [f'Search results for: "{query}"', f"Found {len(results)} result(s)", "---", ""]
        for i, item in enumerate(results, start=1):
            lines.append(f"{i}. {item['title']}")
            lines.append(f"   URL: {item['url']}")
            lines.append(f"   {item['snippet']}")
            lines.append("")
        return self.success("\n".join(lines).strip())
