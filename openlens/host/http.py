"""Read-only host executor that fetches pages over HTTP, for the command line."""

import logging
import re
import uuid
from typing import Dict, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from openlens.host.base import (
    FIND_TEXT,
    NAVIGATE,
    READ_CONTENT,
    HostError,
    HostExecutor,
    HostRequest,
    HostResponse,
)

logger = logging.getLogger(__name__)

# Elements that never carry readable page content
NON_CONTENT_TAGS = ["script", "style", "noscript", "template", "iframe", "title"]


def parse_page(markup: str) -> Tuple[str, str]:
    """Return ``(title, text)`` for an HTML document."""
    soup = BeautifulSoup(markup, "html.parser")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    for element in soup(NON_CONTENT_TAGS):
        element.decompose()

    # Comments are skipped by get_text
    text = soup.get_text(separator="\n", strip=True)
    return title, re.sub(r"\n{2,}", "\n", text)


def html_to_text(markup: str) -> str:
    return parse_page(markup)[1]


class HttpPageHost(HostExecutor):
    """
    Each handle points at a URL; reading fetches it with httpx.

    Clicking and filling forms need a real browser and are reported as
    unsupported.
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 15.0):
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self._pages: Dict[str, str] = {}

    def open(self, url: str, handle: Optional[str] = None) -> str:
        """Point ``handle`` (or a new one) at ``url`` and return the handle."""
        handle = handle or f"page-{uuid.uuid4().hex[:8]}"
        self._pages[handle] = url
        return handle

    def close(self, handle: str) -> None:
        self._pages.pop(handle, None)

    def current_url(self, handle: str) -> Optional[str]:
        return self._pages.get(handle)

    def invoke(self, handle: str, request: HostRequest) -> HostResponse:
        url = self._pages.get(handle)
        if request.command == NAVIGATE:
            target = request.params.get("url")
            if not target:
                return HostResponse(success=False, error="No URL provided")
            self._pages[handle] = target
            return HostResponse(success=True, url=target, data={"navigated": target})

        if not url:
            return HostResponse(success=False, error=f"No page open for handle {handle}")

        if request.command == READ_CONTENT:
            title, text = self._fetch(url)
            max_chars = (request.max_tokens or 2000) * 4
            text = text[:max_chars]
            return HostResponse(
                success=True,
                url=url,
                title=title,
                summary=f"{title}\n{text}" if title else text,
                data={"title": title, "url": url, "text": text, "token_estimate": len(text) // 4},
            )

        if request.command == FIND_TEXT:
            query = str(request.params.get("query", "")).lower()
            if not query:
                return HostResponse(success=False, error="No query provided")
            _, text = self._fetch(url)
            matches = [line for line in text.splitlines() if query in line.lower()][:20]
            return HostResponse(
                success=True,
                url=url,
                summary=f"{len(matches)} matches for {query!r}",
                data={"query": query, "matches": matches},
            )

        return HostResponse(success=False, url=url, error=f"{request.command} is not supported by the HTTP host")

    def _fetch(self, url: str):
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise HostError(f"Could not fetch {url}: {exc}")

        return parse_page(response.text)
