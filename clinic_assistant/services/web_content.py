"""Long-form clinic content: Tavily web extraction with a bundled fallback.

The bundled ``CLINIC_CONTENT.md`` is loaded once at import time and used
whenever the web service is unconfigured or unreachable, so the assistant
always has *some* clinic description to ground general answers on.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel

from clinic_assistant.config import (
    CLINIC_NAME,
    TAVILY_BASE_URL,
    TAVILY_TIMEOUT_SECONDS,
    optional_secret,
)
from clinic_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)

NO_CONTENT = "No content extracted"

# ── Bundled clinic content ──────────────────────────────────────────

_CONTENT_PATH = Path(__file__).resolve().parent.parent / "CLINIC_CONTENT.md"


def _load_static_content() -> str:
    try:
        return _CONTENT_PATH.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.error("CLINIC_CONTENT.md not found at %s", _CONTENT_PATH)
        return ""


_STATIC_CONTENT: str = _load_static_content()


def load_static_clinic_content() -> str:
    return _STATIC_CONTENT


class WebContentError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class WebContent(BaseModel):
    url: str
    title: str = CLINIC_NAME
    content: str = NO_CONTENT
    summary: str = "No summary available"

    @property
    def has_content(self) -> bool:
        return bool(self.content) and self.content != NO_CONTENT


def _summarize(content: str | None) -> str:
    """First two sentences of *content*."""
    if not content:
        return "No summary available"
    return ".".join(content.split(".")[:2]).strip() + "."


def _to_web_content(raw: dict[str, Any], fallback_url: str) -> WebContent:
    body = raw.get("raw_content") or raw.get("content") or NO_CONTENT
    return WebContent(
        url=raw.get("url") or fallback_url,
        title=raw.get("title") or CLINIC_NAME,
        content=body,
        summary=_summarize(body if body != NO_CONTENT else None),
    )


class WebContentClient:
    """Tavily REST client (extract / crawl / search)."""

    def __init__(self, api_key: str | None = None, *, timeout: float = TAVILY_TIMEOUT_SECONDS):
        self._api_key = api_key if api_key is not None else optional_secret("TAVILY_API_KEY")
        self._client = httpx.AsyncClient(
            base_url=TAVILY_BASE_URL,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        if not self.enabled:
            raise WebContentError("TAVILY_API_KEY is not configured")
        with metrics.track("web_content", f"POST {path}"):
            response = await self._client.post(
                path, json=body, headers={"Authorization": f"Bearer {self._api_key}"},
            )
            if response.status_code >= 400:
                raise WebContentError(
                    f"Tavily error {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise WebContentError("Tavily returned a non-JSON body") from exc

    async def extract_content(self, urls: list[str]) -> list[WebContent]:
        """Extract page content for *urls*; one fallback item on failure."""
        try:
            data = await self._post("/extract", {"urls": urls})
        except (WebContentError, httpx.HTTPError) as exc:
            logger.warning("Content extraction failed: %s", exc)
            return [WebContent(url=urls[0] if urls else "", content=_STATIC_CONTENT or NO_CONTENT)]

        results = data if isinstance(data, list) else (data or {}).get("results", [])
        fallback_url = urls[0] if urls else ""
        return [_to_web_content(item, fallback_url) for item in results if isinstance(item, dict)]

    async def crawl_website(self, url: str) -> WebContent:
        try:
            data = await self._post(
                "/crawl",
                {"url": url, "instructions": "Get all page information", "extract_depth": "advanced"},
            )
        except (WebContentError, httpx.HTTPError) as exc:
            logger.warning("Website crawl failed for %s: %s", url, exc)
            return WebContent(url=url)

        if isinstance(data, dict) and isinstance(data.get("results"), list):
            pages = [_to_web_content(item, url) for item in data["results"] if isinstance(item, dict)]
            joined = "\n\n".join(p.content for p in pages if p.has_content)
            return WebContent(url=url, content=joined or NO_CONTENT, summary=_summarize(joined))
        return _to_web_content(data if isinstance(data, dict) else {}, url)

    async def search_and_extract(self, query: str, max_results: int = 3) -> list[WebContent]:
        try:
            data = await self._post("/search", {"query": query, "max_results": max_results})
        except (WebContentError, httpx.HTTPError) as exc:
            logger.warning("Web search failed: %s", exc)
            return []
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            logger.warning("Unexpected web search payload: %s", type(data).__name__)
            return []
        urls = [r["url"] for r in results if isinstance(r, dict) and r.get("url")]
        if not urls:
            return []
        return await self.extract_content(urls)
