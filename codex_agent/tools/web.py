"""
Web Tools — fetch_url and web_search over httpx.
Includes retry with exponential backoff for transient network errors and a
guard against requests to private or metadata addresses.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Optional
from urllib.parse import parse_qs, unquote, urlparse

import httpx
from bs4 import BeautifulSoup

from .base import BaseTool
from ..core.arguments import FetchUrlArgs, WebSearchArgs
from ..core.models import ToolResult
from ..core.tool_context import ToolContext

logger = logging.getLogger(__name__)

# Retry settings
MAX_RETRIES = 3
BASE_DELAY = 1.0  # seconds
BACKOFF_FACTOR = 2.0

FETCH_TIMEOUT = 30.0
MAX_PAGE_CHARS = 20000
SEARCH_URL = "https://html.duckduckgo.com/html/"
USER_AGENT = "Mozilla/5.0 (compatible; codex-agent/0.1)"

BLOCKED_HOSTS = {
    "localhost", "127.0.0.1", "0.0.0.0", "::1",
    "metadata.google.internal",
    "169.254.169.254",
}
BLOCKED_IP_PREFIXES = (
    "10.", "172.16.", "172.17.", "172.18.", "172.19.",
    "172.20.", "172.21.", "172.22.", "172.23.", "172.24.",
    "172.25.", "172.26.", "172.27.", "172.28.", "172.29.",
    "172.30.", "172.31.", "192.168.", "169.254.",
    "fc00:", "fd00:", "fe80:",
)


def is_blocked_url(url: str) -> bool:
    """True for non-HTTP(S) URLs and private/internal hosts."""
    if not url.lower().startswith(("http://", "https://")):
        return True
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return True
    if host in BLOCKED_HOSTS:
        return True
    return any(host.startswith(prefix) for prefix in BLOCKED_IP_PREFIXES)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (429, 502, 503, 504)
    return False


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg", "header", "footer", "nav"]):
        tag.decompose()
    text = soup.get_text("\n")
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


class _HttpTool(BaseTool):
    """Shared client construction and retry loop."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None,
                 base_delay: float = BASE_DELAY):
        self._transport = transport
        self._base_delay = base_delay

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=FETCH_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def _get(self, url: str, ctx: ToolContext, params: Optional[dict] = None) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                async with self._client() as client:
                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    return response
            except httpx.HTTPError as e:
                last_error = e
                if not _is_transient(e) or attempt == MAX_RETRIES or ctx.abort_signal.aborted:
                    raise
                delay = self._base_delay * (BACKOFF_FACTOR ** (attempt - 1))
                logger.info(
                    f"{self.name} transient error (attempt {attempt}/{MAX_RETRIES}): "
                    f"{e}. Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
        raise last_error  # type: ignore[misc]


class FetchUrlTool(_HttpTool):
    name = "fetch_url"
    description = "Fetch a public web page and return its readable text."
    input_schema = {
        "type": "object",
        "properties": {"url": {"type": "string", "description": "HTTP(S) URL"}},
        "required": ["url"],
    }

    async def execute(self, args: FetchUrlArgs, ctx: ToolContext) -> ToolResult:
        if is_blocked_url(args.url):
            return self._error(
                "Blocked: URL targets a private/internal network address. "
                "Only public HTTP(S) URLs are allowed.",
                ctx, url=args.url,
            )
        try:
            response = await self._get(args.url, ctx)
        except httpx.HTTPError as e:
            return self._error(f"Error fetching URL: {e}", ctx, url=args.url)

        content_type = response.headers.get("content-type", "")
        text = html_to_text(response.text) if "html" in content_type else response.text
        truncated = len(text) > MAX_PAGE_CHARS
        if truncated:
            text = text[:MAX_PAGE_CHARS] + "\n[Content truncated]"
        return self._success(
            text, ctx, url=str(response.url), status=response.status_code,
            type="web_fetch", truncated=truncated,
        )


class WebSearchTool(_HttpTool):
    name = "web_search"
    description = "Search the web and return titles, URLs and snippets."
    input_schema = {
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "max_results": {"type": "number", "description": "Default 5"},
        },
        "required": ["query"],
    }

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None,
                 base_delay: float = BASE_DELAY, search_url: str = SEARCH_URL):
        super().__init__(transport, base_delay)
        self._search_url = search_url

    async def execute(self, args: WebSearchArgs, ctx: ToolContext) -> ToolResult:
        try:
            response = await self._get(self._search_url, ctx, params={"q": args.query})
        except httpx.HTTPError as e:
            return self._error(f"Error performing web search: {e}", ctx, query=args.query)

        results = parse_search_results(response.text)[: max(1, args.max_results)]
        if not results:
            return self._success(f"No results found for '{args.query}'.", ctx,
                                 query=args.query, type="web_search", count=0)
        lines = []
        for i, (title, url, snippet) in enumerate(results, start=1):
            lines.append(f"{i}. {title}\n   {url}")
            if snippet:
                lines.append(f"   {snippet}")
        return self._success("\n".join(lines), ctx, query=args.query,
                             type="web_search", count=len(results))


def _unwrap_redirect(href: str) -> str:
    """DuckDuckGo wraps result links as /l/?uddg=<encoded url>."""
    parsed = urlparse(href)
    target = parse_qs(parsed.query).get("uddg")
    if target:
        return unquote(target[0])
    if href.startswith("//"):
        return "https:" + href
    return href


def parse_search_results(html: str) -> list[tuple[str, str, str]]:
    soup = BeautifulSoup(html, "html.parser")
    results = []
    for block in soup.select(".result"):
        link = block.select_one("a.result__a")
        if link is None or not link.get("href"):
            continue
        snippet = block.select_one(".result__snippet")
        results.append((
            link.get_text(" ", strip=True),
            _unwrap_redirect(link["href"]),
            snippet.get_text(" ", strip=True) if snippet else "",
        ))
    return results
