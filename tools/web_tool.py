"""
Web tools: web_search (Brave Search API) and web_fetch (URL -> readable text).

Both are async and go through a shared ``httpx.AsyncClient``; tests inject
one backed by ``httpx.MockTransport``. HTML is reduced to text with
BeautifulSoup, preferring ``<article>``/``<main>`` over the whole body.

Requires BRAVE_API_KEY (or ``brave_api_key`` in config) for search only.
"""

import json
import logging
import os
import re
from typing import Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from agent.errors import ToolFailed
from nanobot_constants import BRAVE_SEARCH_URL

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_7_2) AppleWebKit/537.36"
MAX_REDIRECTS = 5
DEFAULT_MAX_CHARS = 50_000
DEFAULT_MAX_RESULTS = 5

_SPACES_RE = re.compile(r"[ \t]+")
_NEWLINES_RE = re.compile(r"\n{3,}")


def normalize_whitespace(text: str) -> str:
    text = _SPACES_RE.sub(" ", text)
    return _NEWLINES_RE.sub("\n\n", text).strip()


def validate_url(url: str) -> Optional[str]:
    """Return an error message, or None when the URL is fetchable."""
    try:
        parsed = urlparse(url)
    except ValueError as e:
        return f"Invalid URL: {e}"
    if parsed.scheme not in ("http", "https"):
        return f"Only http/https allowed, got '{parsed.scheme or 'none'}'"
    if not parsed.netloc:
        return "Missing domain"
    return None


def extract_html(html: str, mode: str = "markdown") -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    title = soup.title.get_text(strip=True) if soup.title else ""
    root = soup.find("article") or soup.find("main") or soup.find(attrs={"role": "main"}) or soup.body or soup

    if mode == "markdown":
        for level in range(1, 7):
            for heading in root.find_all(f"h{level}"):
                heading.replace_with(f"\n{'#' * level} {heading.get_text(strip=True)}\n")
        for link in root.find_all("a", href=True):
            text = link.get_text(strip=True)
            if text:
                link.replace_with(f"[{text}]({link['href']})")
        for item in root.find_all("li"):
            item.replace_with(f"\n- {item.get_text(' ', strip=True)}\n")

    body = normalize_whitespace(root.get_text("\n"))
    if title and mode == "markdown":
        return f"# {title}\n\n{body}"
    return body


class WebTools:
    """Holds the shared HTTP client and settings for both web tools."""

    def __init__(self, *, api_key: Optional[str] = None, max_results: int = DEFAULT_MAX_RESULTS,
                 max_chars: int = DEFAULT_MAX_CHARS, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key or os.getenv("BRAVE_API_KEY", "")
        self.max_results = max_results
        self.max_chars = max_chars
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                headers={"User-Agent": USER_AGENT},
                timeout=30.0,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def has_api_key(self) -> bool:
        return bool(self.api_key)

    async def web_search(self, args: dict, **kwargs) -> str:
        query = args["query"]
        if not self.api_key:
            raise ToolFailed("BRAVE_API_KEY not configured")
        count = max(1, min(int(args.get("count") or self.max_results), 10))

        try:
            response = await self.client.get(
                BRAVE_SEARCH_URL,
                params={"q": query, "count": str(count)},
                headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            raise ToolFailed(f"Search request failed: {e}") from e
        if response.status_code != 200:
            raise ToolFailed(f"Brave Search returned HTTP {response.status_code}: {response.text[:500]}")

        try:
            results = (response.json().get("web") or {}).get("results") or []
        except ValueError as e:
            raise ToolFailed(f"Error parsing search results: {e}") from e
        if not results:
            return f"No results for: {query}"

        lines = [f"Results for: {query}\n"]
        for i, item in enumerate(results[:count], 1):
            lines.append(f"{i}. {item.get('title', '')}\n   {item.get('url', '')}")
            if item.get("description"):
                lines.append(f"   {item['description']}")
        return "\n".join(lines)

    async def web_fetch(self, args: dict, **kwargs) -> str:
        url = args["url"]
        mode = args.get("extractMode") or "markdown"
        max_chars = args.get("maxChars") or self.max_chars

        error = validate_url(url)
        if error:
            raise ToolFailed(f"URL validation failed: {error}")

        try:
            response = await self.client.get(url)
        except httpx.TooManyRedirects:
            raise ToolFailed(f"Too many redirects (>{MAX_REDIRECTS})") from None
        except httpx.HTTPError as e:
            raise ToolFailed(f"Fetch failed: {e}") from e

        content_type = response.headers.get("content-type", "")
        body = response.text
        head = body.lstrip()[:20].lower()
        if "application/json" in content_type:
            try:
                text, extractor = json.dumps(response.json(), indent=2, ensure_ascii=False), "json"
            except ValueError:
                text, extractor = body, "raw"
        elif "text/html" in content_type or head.startswith("<!doctype") or head.startswith("<html"):
            text, extractor = extract_html(body, mode), "html"
        else:
            text, extractor = body, "raw"

        truncated = len(text) > max_chars
        if truncated:
            text = text[:max_chars]
        return json.dumps({
            "url": url,
            "finalUrl": str(response.url),
            "status": response.status_code,
            "extractor": extractor,
            "truncated": truncated,
            "length": len(text),
            "text": text,
        }, ensure_ascii=False)


def register(registry, *, api_key: Optional[str] = None, max_results: int = DEFAULT_MAX_RESULTS,
             max_chars: int = DEFAULT_MAX_CHARS, http_client: Optional[httpx.AsyncClient] = None) -> WebTools:
    """Register web tools with the tool registry."""
    tools = WebTools(api_key=api_key, max_results=max_results, max_chars=max_chars, http_client=http_client)

    registry.register(
        name="web_search",
        capability="network",
        description="Search the web. Returns titles, URLs, and snippets.",
        schema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "count": {"type": "integer", "description": "Results (1-10)", "minimum": 1, "maximum": 10},
            },
            "required": ["query"],
        },
        handler=tools.web_search,
        check_fn=tools.has_api_key,
    )

    registry.register(
        name="web_fetch",
        capability="network",
        description="Fetch URL and extract readable content (HTML -> markdown/text).",
        schema={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to fetch"},
                "extractMode": {"type": "string", "enum": ["markdown", "text"], "default": "markdown"},
                "maxChars": {"type": "integer", "minimum": 100},
            },
            "required": ["url"],
        },
        handler=tools.web_fetch,
    )
    return tools
