from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from thiran.domain.errors import ProviderError

logger = logging.getLogger(__name__)


def build_httpx_client(
    *,
    base_url: str,
    headers: Dict[str, str],
    connect_timeout_sec: float,
    read_timeout_sec: float,
    max_connections: int = 10,
    max_keepalive_connections: int = 5,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    timeout = httpx.Timeout(connect=connect_timeout_sec, read=read_timeout_sec, write=read_timeout_sec, pool=5.0)
    limits = httpx.Limits(
        max_connections=max(1, int(max_connections)),
        max_keepalive_connections=max(1, int(max_keepalive_connections)),
    )
    return httpx.AsyncClient(
        base_url=base_url,
        headers=headers,
        timeout=timeout,
        limits=limits,
        transport=transport,
    )


async def ensure_success(response: httpx.Response, provider: str) -> None:
    """Raise ProviderError for a non-2xx streamed response, with a body excerpt."""
    if response.status_code < 400:
        return
    try:
        body = (await response.aread()).decode("utf-8", errors="replace")
    except httpx.HTTPError:
        body = ""
    detail = _error_detail(body) or response.reason_phrase
    raise ProviderError(
        f"{provider} API error: {response.status_code} {detail}".strip(),
        provider=provider,
        status_code=response.status_code,
    )


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded JSON payloads of ``data:`` lines until ``[DONE]``."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        raw = line[len("data:"):].strip()
        if not raw:
            continue
        if raw == "[DONE]":
            return
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.debug("skipping undecodable SSE line: %.200s", raw)
            continue
        if isinstance(payload, dict):
            yield payload


async def iter_ndjson(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    async for line in response.aiter_lines():
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            logger.debug("skipping undecodable NDJSON line: %.200s", line)
            continue
        if isinstance(payload, dict):
            yield payload


def _error_detail(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()[:300]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)[:300]
        if err:
            return str(err)[:300]
    return body.strip()[:300]
