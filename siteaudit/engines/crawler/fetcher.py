"""
Page Fetcher - single HTTP fetches and the parsed context built from them.

- fetch_page(): one GET with timeout; network failures come back as a
  FetchedPage with status 0 and an error string, never as an exception
- check_link(): HEAD, falling back to GET when the server rejects HEAD
- build_audit_context(): BeautifulSoup/lxml parse plus link and image
  extraction, the input every rule reads
- LinkChecker: checks link targets through the shared link cache
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urldefrag, urljoin, urlparse

import httpx
import structlog
from bs4 import BeautifulSoup

from siteaudit.engines.base import AuditContext, FetchedPage, ImageInfo, LinkInfo
from siteaudit.storage.link_cache import LinkCache

logger = structlog.get_logger(__name__)

SKIPPED_HREF_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "sms:")
TEXT_CONTENT_TYPES = ("text/", "application/xhtml", "application/xml", "application/json", "application/ld+json")


def _is_textual(content_type: str) -> bool:
    content_type = content_type.lower()
    return not content_type or content_type.startswith(TEXT_CONTENT_TYPES) or "+xml" in content_type


def _bare_host(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


# ─────────────────────────────────────────────
# Fetching
# ─────────────────────────────────────────────

async def fetch_page(
    client: httpx.AsyncClient,
    url: str,
    timeout: float,
    depth: int = 0,
) -> FetchedPage:
    """GET a page, following redirects and recording the chain."""
    start = time.perf_counter()
    try:
        response = await client.get(url, follow_redirects=True, timeout=timeout)
    except httpx.TimeoutException:
        return FetchedPage(url=url, depth=depth, error=f"Timeout after {timeout}s",
                           response_time_ms=(time.perf_counter() - start) * 1000)
    except httpx.TooManyRedirects:
        return FetchedPage(url=url, depth=depth, error="Too many redirects",
                           response_time_ms=(time.perf_counter() - start) * 1000)
    except httpx.HTTPError as exc:
        logger.debug("HTTP fetch failed", url=url, error=str(exc))
        reason = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        return FetchedPage(url=url, depth=depth, error=reason,
                           response_time_ms=(time.perf_counter() - start) * 1000)

    elapsed = (time.perf_counter() - start) * 1000
    content_type = response.headers.get("content-type", "")
    return FetchedPage(
        url=url,
        status_code=response.status_code,
        final_url=str(response.url),
        headers={k.lower(): v for k, v in response.headers.items()},
        body=response.text if _is_textual(content_type) else "",
        content_type=content_type,
        response_time_ms=elapsed,
        redirect_chain=[str(r.url) for r in response.history],
        depth=depth,
    )


async def check_link(client: httpx.AsyncClient, url: str, timeout: float) -> tuple[int | None, str | None]:
    """Return (status_code, error) for a link target."""
    try:
        response = await client.head(url, follow_redirects=True, timeout=timeout)
        if response.status_code in (405, 501):
            response = await client.get(url, follow_redirects=True, timeout=timeout)
        return response.status_code, None
    except httpx.TimeoutException:
        return None, "timeout"
    except httpx.HTTPError as exc:
        return None, type(exc).__name__


# ─────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────

def extract_links(soup: BeautifulSoup, base_url: str) -> list[LinkInfo]:
    base_tag = soup.find("base", href=True)
    if base_tag:
        base_url = urljoin(base_url, base_tag["href"].strip())
    site_host = _bare_host(base_url)

    links: list[LinkInfo] = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES):
            continue
        absolute, _ = urldefrag(urljoin(base_url, href))
        if urlparse(absolute).scheme not in ("http", "https"):
            continue
        rel = a.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        links.append(LinkInfo(
            url=absolute,
            href=href,
            text=a.get_text(" ", strip=True),
            is_internal=_bare_host(absolute) == site_host,
            is_nofollow="nofollow" in [r.lower() for r in rel],
        ))
    return links


def extract_images(soup: BeautifulSoup, base_url: str) -> list[ImageInfo]:
    images: list[ImageInfo] = []
    for img in soup.find_all("img"):
        src = (img.get("src") or img.get("data-src") or "").strip()
        if not src:
            continue
        images.append(ImageInfo(
            src=urljoin(base_url, src),
            alt=img.get("alt"),
            width=img.get("width"),
            height=img.get("height"),
            loading=img.get("loading"),
        ))
    return images


def page_title(soup: BeautifulSoup) -> str | None:
    tag = soup.find("title")
    return tag.get_text(strip=True) if tag else None


def build_audit_context(
    page: FetchedPage,
    robots_txt: str | None = None,
    sitemap_urls: list[str] | None = None,
) -> AuditContext:
    base_url = page.final_url or page.url
    soup = BeautifulSoup(page.body or "", "lxml")
    return AuditContext(
        url=page.url,
        page=page,
        soup=soup,
        links=extract_links(soup, base_url),
        images=extract_images(soup, base_url),
        robots_txt=robots_txt,
        sitemap_urls=list(sitemap_urls or []),
    )


# ─────────────────────────────────────────────
# Link checking
# ─────────────────────────────────────────────

@dataclass
class LinkCheckStats:
    checked: int = 0
    from_cache: int = 0
    broken: int = 0


class LinkChecker:
    """
    Resolves link status codes, reusing cache entries within their TTL.

    Only stale or unseen URLs hit the network; fresh results are written
    back to the cache in one batch.
    """

    def __init__(self, client: httpx.AsyncClient, cache: LinkCache, concurrency: int = 5, timeout: float = 10):
        self.client = client
        self.cache = cache
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _check(self, url: str) -> tuple[str, int | None, str | None]:
        async with self._semaphore:
            status, error = await check_link(self.client, url, self.timeout)
            return url, status, error

    async def check(self, links: Iterable[LinkInfo]) -> LinkCheckStats:
        links = list(links)
        urls = list(dict.fromkeys(link.url for link in links))
        stats = LinkCheckStats()
        if not urls:
            return stats

        stored = await asyncio.to_thread(self.cache.get_many, urls)
        cached = {url: entry for url, entry in stored.items() if entry.is_valid}
        outcomes: dict[str, tuple[int | None, str | None]] = {
            url: (entry.status_code, entry.error) for url, entry in cached.items()
        }
        stats.from_cache = len(cached)

        pending = [url for url in urls if url not in cached]
        if pending:
            checked = await asyncio.gather(*[self._check(url) for url in pending])
            await asyncio.to_thread(self.cache.set_many, checked)
            for url, status, error in checked:
                outcomes[url] = (status, error)
            stats.checked = len(checked)

        for link in links:
            link.status_code, link.error = outcomes.get(link.url, (None, None))
        stats.broken = sum(
            1 for status, error in outcomes.values()
            if error is not None or status is None or status >= 400
        )
        logger.debug("Links checked", checked=stats.checked, cached=stats.from_cache, broken=stats.broken)
        return stats
