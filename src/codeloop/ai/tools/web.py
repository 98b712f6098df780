"""``read_url``: fetch a page over HTTP and reduce it to readable text."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from html.parser import HTMLParser
from urllib.parse import urlparse

import httpx

from ..orchestration.tools.types import ToolContext, ToolResult
from .args import ReadUrlArgs

__all__ = ["ReadUrlTool", "html_to_text"]

LOGGER = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 50_000
_SKIPPED_TAGS = frozenset({"script", "style", "noscript", "template", "svg"})
_BLOCK_TAGS = frozenset({"p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "pre", "section", "article"})


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.title = ""
        self._parts: list[str] = []
        self._skip_depth = 0
        self._in_title = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag == "title":
            self._in_title = True
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIPPED_TAGS and self._skip_depth:
            self._skip_depth -= 1
        elif tag == "title":
            self._in_title = False
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self.title += data
            return
        if not self._skip_depth:
            self._parts.append(data)

    def text(self) -> str:
        lines = (" ".join(line.split()) for line in "".join(self._parts).split("\n"))
        return "\n".join(line for line in lines if line)


def html_to_text(html: str) -> tuple[str, str]:
    """Return ``(title, text)`` extracted from ``html``."""
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return parser.title.strip(), parser.text()


@dataclass(slots=True)
class ReadUrlTool:
    """Fetch ``http``/``https`` URLs with a shared :class:`httpx.AsyncClient`."""

    client: httpx.AsyncClient
    max_chars: int = MAX_CONTENT_CHARS

    async def run(self, args: ReadUrlArgs, context: ToolContext) -> ToolResult:
        parsed = urlparse(args.url)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            return ToolResult.fail("URL must be http or https")
        try:
            response = await self.client.get(args.url, timeout=args.timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            return ToolResult.fail(f"HTTP {exc.response.status_code} while reading {args.url}")
        except httpx.TimeoutException:
            return ToolResult.fail(f"Request timed out after {args.timeout:g}s")
        except httpx.HTTPError as exc:
            LOGGER.debug("read_url failed for %s", args.url, exc_info=True)
            return ToolResult.fail(f"Failed to read URL: {exc}")

        content_type = response.headers.get("content-type", "")
        if "html" in content_type:
            title, text = html_to_text(response.text)
        else:
            title, text = "", response.text
        if not text.strip():
            return ToolResult.fail("Failed to read URL: empty response")
        if len(text) > self.max_chars:
            text = text[: self.max_chars] + "\n... (content truncated)"
        return ToolResult.ok(f"Title: {title or args.url}\n\n{text}", url=str(response.url))
