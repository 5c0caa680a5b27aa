"""
Crawler Engine - bounded-concurrency site crawler with resumable state.

Architecture:
- Seed URL fetched first; a network failure on it aborts the crawl
- Frontier is an asyncio.Queue drained by exactly `concurrency` workers
- A live-request semaphore caps simultaneous fetches at `concurrency`
- Token bucket rate limiting; robots.txt crawl-delay overrides the rate
- robots.txt fetched once before the frontier drains; disallowed URLs skipped
- URL normalization is the single source of truth for "same page"
- Per page: fetch -> extract links -> enqueue unseen -> on_page -> persist state
- Resume reads a crawl_state snapshot taken at start; refresh ignores it
- Project database calls run in worker threads (asyncio.to_thread)

The frontier, the seen-set and the page counter are only touched by
coroutines on the crawler's event loop and never across an await, so
every check-and-update on them is atomic.
"""

from __future__ import annotations

import asyncio
import inspect
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse
from urllib.robotparser import RobotFileParser

import httpx
import structlog
from bs4 import BeautifulSoup

from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import ConfigurationError, SeedUnreachableError
from siteaudit.engines.base import AuditContext, FetchedPage
from siteaudit.engines.crawler.fetcher import build_audit_context, fetch_page, page_title
from siteaudit.models.models import Crawl
from siteaudit.storage.paths import hash_content, hash_url
from siteaudit.storage.project_db import CrawlStateEntry, ProjectDatabase

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Data Structures
# ─────────────────────────────────────────────

@dataclass
class CrawlStats:
    """Live crawl statistics."""
    total_queued: int = 0
    total_crawled: int = 0      # Pages handed to on_page (fetched or resumed)
    total_fetched: int = 0      # Network fetches actually made
    total_failed: int = 0
    total_skipped: int = 0      # robots.txt disallow, filter, over the page limit
    total_resumed: int = 0
    total_duplicates: int = 0
    max_in_flight: int = 0
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None

    @property
    def elapsed_seconds(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def pages_per_second(self) -> float:
        elapsed = self.elapsed_seconds
        return self.total_crawled / elapsed if elapsed > 0 else 0


@dataclass
class CrawledPage:
    context: AuditContext
    content_hash: str | None = None
    duplicate_of: str | None = None
    resumed: bool = False

    @property
    def url(self) -> str:
        return self.context.url

    @property
    def page(self) -> FetchedPage:
        return self.context.page


@dataclass
class CrawlResult:
    seed_url: str
    pages: list[CrawledPage]
    stats: CrawlStats
    fetched_urls: list[str] = field(default_factory=list)
    robots_txt: str | None = None
    sitemap_urls: list[str] = field(default_factory=list)


PageCallback = Callable[[CrawledPage], Awaitable[None] | None]
Fetcher = Callable[[httpx.AsyncClient, str, float, int], Awaitable[FetchedPage]]


@dataclass
class RateLimiter:
    """
    Token bucket rate limiter.
    Allows burst up to max_tokens then enforces steady rate.
    """
    rate: float  # Tokens per second
    max_tokens: float
    tokens: float = field(init=False)
    last_refill: float = field(default_factory=time.monotonic, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self):
        self.tokens = self.max_tokens

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self.tokens = min(self.max_tokens, self.tokens + (now - self.last_refill) * self.rate)
            self.last_refill = now

            if self.tokens < 1:
                await asyncio.sleep((1 - self.tokens) / self.rate)
                self.last_refill = time.monotonic()
                self.tokens = 0
            else:
                self.tokens -= 1


# ─────────────────────────────────────────────
# URL Utilities
# ─────────────────────────────────────────────

class URLNormalizer:
    """Normalizes URLs for deduplication and comparison."""

    DROP_QUERY_PREFIXES = ("utm_", "gclid", "fbclid", "mc_", "_ga")
    IGNORED_EXTENSIONS = {
        ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".css", ".js",
        ".woff", ".woff2", ".ttf", ".eot", ".zip", ".tar", ".gz", ".rar", ".mp4", ".mp3",
        ".wav", ".avi", ".mov", ".xml", ".json", ".txt", ".doc", ".docx", ".xls", ".xlsx",
    }
    DEFAULT_PORTS = {"http": 80, "https": 443}

    @classmethod
    def normalize(
        cls,
        url: str,
        base_url: str | None = None,
        drop_query_prefixes: tuple[str, ...] | None = None,
        allow_query_params: frozenset[str] | None = None,
        check_extension: bool = True,
    ) -> str | None:
        """
        Normalize a URL (optionally relative to base_url).
        Returns None if the URL should never be crawled. Start URLs pass
        check_extension=False: a seed is fetched whatever its extension.
        """
        url = url.strip()
        if base_url:
            url = urljoin(base_url, url)
        try:
            parsed = urlparse(url)
            port = parsed.port
        except ValueError:
            return None

        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https") or not parsed.hostname:
            return None

        path = parsed.path or "/"
        if check_extension and any(path.lower().endswith(ext) for ext in cls.IGNORED_EXTENSIONS):
            return None
        if path != "/" and path.endswith("/"):
            path = path.rstrip("/") or "/"

        host = parsed.hostname.lower()
        if port and port != cls.DEFAULT_PORTS.get(scheme):
            host = f"{host}:{port}"

        prefixes = cls.DROP_QUERY_PREFIXES if drop_query_prefixes is None else drop_query_prefixes
        params = []
        for key, value in parse_qsl(parsed.query, keep_blank_values=True):
            if allow_query_params is not None:
                if key in allow_query_params:
                    params.append((key, value))
            elif not key.lower().startswith(prefixes):
                params.append((key, value))
        params.sort()

        return urlunparse((scheme, host, path, "", urlencode(params), ""))

    @staticmethod
    def site_host(url: str) -> str:
        host = (urlparse(url).hostname or "").lower()
        return host[4:] if host.startswith("www.") else host

    @classmethod
    def is_same_site(cls, url: str, site_host: str, allow_subdomains: bool = False) -> bool:
        """Same host as the seed (www-insensitive), optionally including subdomains."""
        host = cls.site_host(url)
        if host == site_host:
            return True
        return allow_subdomains and host.endswith(f".{site_host}")


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """
    Path glob to regex: `*` stays within one segment, `**` spans segments,
    `?` is one character, and a trailing `/**` also matches the bare base.
    """
    regex = re.sub(r"[.+^${}()|\[\]\\]", lambda m: "\\" + m.group(0), pattern)
    regex = regex.replace("**", "\x00")
    regex = regex.replace("*", "[^/]*").replace("?", ".")
    regex = regex.replace("\x00", ".*")
    if pattern.endswith("/**"):
        regex = regex[:-3] + "(/.*)?"
    return re.compile(f"^{regex}$")


class UrlFilter:
    """Include/exclude path globs plus query parameter policy."""

    def __init__(
        self,
        include: list[str] | None = None,
        exclude: list[str] | None = None,
        allow_query_params: list[str] | None = None,
        drop_query_prefixes: list[str] | None = None,
    ):
        self.include = [glob_to_regex(p) for p in include or []]
        self.exclude = [glob_to_regex(p) for p in exclude or []]
        self.allow_query_params = frozenset(allow_query_params) if allow_query_params else None
        self.drop_query_prefixes = tuple(p.lower() for p in drop_query_prefixes) if drop_query_prefixes else None

    def should_crawl(self, url: str) -> bool:
        path = urlparse(url).path or "/"
        if self.include and not any(p.match(path) for p in self.include):
            return False
        return not any(p.match(path) for p in self.exclude)

    def normalize(self, url: str, base_url: str | None = None, check_extension: bool = True) -> str | None:
        return URLNormalizer.normalize(
            url,
            base_url,
            drop_query_prefixes=self.drop_query_prefixes,
            allow_query_params=self.allow_query_params,
            check_extension=check_extension,
        )


# ─────────────────────────────────────────────
# Robots.txt Handler
# ─────────────────────────────────────────────

class RobotsHandler:
    """robots.txt for the seed origin, fetched once per crawl."""

    def __init__(self, user_agent: str):
        self.user_agent = user_agent
        self.parser: RobotFileParser | None = None
        self.text: str | None = None

    async def fetch_and_parse(self, origin: str, client: httpx.AsyncClient, timeout: float) -> None:
        robots_url = f"{origin}/robots.txt"
        try:
            response = await client.get(robots_url, timeout=timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.debug("Could not fetch robots.txt", url=robots_url, error=str(e))
            return

        if response.status_code == 200:
            self.text = response.text
            parser = RobotFileParser(robots_url)
            parser.parse(self.text.splitlines())
            self.parser = parser

    def can_fetch(self, url: str) -> bool:
        if self.parser is None:
            return True  # No robots.txt = allow all
        return self.parser.can_fetch(self.user_agent, url)

    def crawl_delay(self) -> float | None:
        if self.parser is None:
            return None
        delay = self.parser.crawl_delay(self.user_agent)
        return float(delay) if delay else None

    def sitemaps(self) -> list[str]:
        if self.parser is None:
            return []
        return list(self.parser.site_maps() or [])


# ─────────────────────────────────────────────
# Sitemap Parser
# ─────────────────────────────────────────────

class SitemapParser:
    """Discover and parse XML sitemaps."""

    MAX_NESTING = 3
    MAX_URLS = 10_000

    async def discover(
        self,
        origin: str,
        client: httpx.AsyncClient,
        timeout: float,
        declared: list[str] | None = None,
    ) -> list[str]:
        candidates = list(dict.fromkeys((declared or []) + [f"{origin}/sitemap.xml"]))
        urls: list[str] = []
        for candidate in candidates:
            urls.extend(await self._fetch_sitemap(candidate, client, timeout, 0))
            if len(urls) >= self.MAX_URLS:
                break
        return list(dict.fromkeys(urls))[: self.MAX_URLS]

    async def _fetch_sitemap(self, url: str, client: httpx.AsyncClient, timeout: float, level: int) -> list[str]:
        try:
            response = await client.get(url, timeout=timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.debug("Sitemap fetch failed", url=url, error=str(e))
            return []
        if response.status_code != 200:
            return []

        content = response.text
        soup = BeautifulSoup(content, "xml")
        locs = [loc.get_text(strip=True) for loc in soup.find_all("loc")]

        if soup.find("sitemapindex") is not None:
            if level >= self.MAX_NESTING:
                return []
            urls: list[str] = []
            for nested in locs:
                urls.extend(await self._fetch_sitemap(nested, client, timeout, level + 1))
            return urls
        if soup.find("urlset") is not None:
            return locs
        return []


# ─────────────────────────────────────────────
# Main Crawler
# ─────────────────────────────────────────────

class Crawler:
    """
    Queue-based crawler.

    Flow:
    1. Normalize the seed; load the resume snapshot unless refreshing
    2. Fetch robots.txt once; crawl-delay sets the rate limiter
    3. Process the seed (fatal if unreachable), then sitemap URLs
    4. `concurrency` workers drain the frontier until it is empty or
       max_pages pages have been claimed; queue.join() lets in-flight
       pages finish before workers are cancelled
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        project_db: ProjectDatabase | None = None,
        crawl: Crawl | None = None,
        on_page: PageCallback | None = None,
        url_filter: UrlFilter | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
        rate_limit_rps: float | None = None,
        max_depth: int | None = None,
        respect_robots: bool = True,
        use_sitemap: bool = True,
        allow_subdomains: bool = False,
        resume: bool = False,
        refresh: bool = False,
        state_ttl: timedelta | None = None,
        fetcher: Fetcher = fetch_page,
    ):
        settings = get_settings()
        self.client = client
        self.project_db = project_db
        self.crawl_record = crawl
        self.on_page = on_page
        self.url_filter = url_filter or UrlFilter()
        self.timeout = float(timeout if timeout is not None else settings.CRAWLER_REQUEST_TIMEOUT)
        self.user_agent = user_agent or settings.CRAWLER_USER_AGENT
        self.rate_limit_rps = rate_limit_rps
        self.max_depth = max_depth
        self.respect_robots = respect_robots
        self.use_sitemap = use_sitemap
        self.allow_subdomains = allow_subdomains
        self.resume = resume
        self.refresh = refresh
        self.state_ttl = state_ttl or timedelta(hours=settings.CRAWL_STATE_TTL_HOURS)
        self.fetcher = fetcher
        self.logger = structlog.get_logger(self.__class__.__name__)

        if not 1 <= self.timeout <= 120:
            raise ConfigurationError(f"Request timeout must be between 1 and 120 seconds, got {self.timeout}")

    async def crawl(self, seed_url: str, max_pages: int, concurrency: int) -> CrawlResult:
        if max_pages < 1:
            raise ConfigurationError(f"max_pages must be at least 1, got {max_pages}")
        if not 1 <= concurrency <= 20:
            raise ConfigurationError(f"concurrency must be between 1 and 20, got {concurrency}")

        seed = self.url_filter.normalize(seed_url, check_extension=False)
        if seed is None:
            raise ConfigurationError(f"Not a crawlable URL: {seed_url}")

        own_client = self.client is None
        client = self.client or httpx.AsyncClient(
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            limits=httpx.Limits(max_connections=concurrency + 5, max_keepalive_connections=20),
        )
        try:
            run = _CrawlRun(self, client, seed, max_pages, concurrency)
            return await run.execute()
        finally:
            if own_client:
                await client.aclose()


class _CrawlRun:
    """State of a single crawl() call."""

    def __init__(self, crawler: Crawler, client: httpx.AsyncClient, seed: str, max_pages: int, concurrency: int):
        self.crawler = crawler
        self.client = client
        self.seed = seed
        self.max_pages = max_pages
        self.concurrency = concurrency
        self.logger = crawler.logger

        self.stats = CrawlStats()
        self.frontier: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
        self.seen: set[str] = set()
        self.claimed = 0
        self.in_flight = 0
        self.pages: list[CrawledPage] = []
        self.fetched_urls: list[str] = []
        self.content_hashes: dict[str, str] = {}
        self.live_requests = asyncio.Semaphore(concurrency)
        self.rate_limiter: RateLimiter | None = None
        self.robots = RobotsHandler(crawler.user_agent)
        self.sitemap_urls: list[str] = []
        self.snapshot: dict[str, CrawlStateEntry] = {}
        self.site_host = URLNormalizer.site_host(seed)
        self.fatal: BaseException | None = None

    async def execute(self) -> CrawlResult:
        crawler = self.crawler
        parsed = urlparse(self.seed)
        origin = f"{parsed.scheme}://{parsed.netloc}"

        if crawler.project_db is not None and crawler.resume and not crawler.refresh:
            self.snapshot = await asyncio.to_thread(
                crawler.project_db.get_crawl_state_snapshot, self.seed, crawler.state_ttl,
            )
            self.logger.info("Resume snapshot loaded", seed=self.seed, entries=len(self.snapshot))

        if crawler.rate_limit_rps:
            self.rate_limiter = RateLimiter(rate=crawler.rate_limit_rps, max_tokens=max(1.0, crawler.rate_limit_rps))

        if crawler.respect_robots:
            await self.robots.fetch_and_parse(origin, self.client, crawler.timeout)
            delay = self.robots.crawl_delay()
            if delay:
                self.rate_limiter = RateLimiter(rate=1.0 / delay, max_tokens=1)
                self.logger.info("Respecting crawl-delay", delay=delay, origin=origin)

        # Seed first: it decides whether the site is reachable at all
        self.seen.add(self.seed)
        self.claimed = 1
        seed_page = await self.process(self.seed, 0)
        if seed_page.page.final_url:
            self.site_host = URLNormalizer.site_host(seed_page.page.final_url)

        if crawler.use_sitemap:
            self.sitemap_urls = await SitemapParser().discover(
                origin, self.client, crawler.timeout, declared=self.robots.sitemaps(),
            )
            for url in self.sitemap_urls:
                self.enqueue(url, 1)

        workers = [asyncio.create_task(self.worker(i)) for i in range(self.concurrency)]
        try:
            await self.frontier.join()
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        if self.fatal is not None:
            raise self.fatal

        self.stats.end_time = time.time()
        self.logger.info(
            "Crawl complete",
            seed=self.seed,
            crawled=self.stats.total_crawled,
            fetched=self.stats.total_fetched,
            failed=self.stats.total_failed,
            skipped=self.stats.total_skipped,
            resumed=self.stats.total_resumed,
            max_in_flight=self.stats.max_in_flight,
            elapsed_s=round(self.stats.elapsed_seconds, 2),
        )
        return CrawlResult(
            seed_url=self.seed,
            pages=self.pages,
            stats=self.stats,
            fetched_urls=self.fetched_urls,
            robots_txt=self.robots.text,
            sitemap_urls=self.sitemap_urls,
        )

    # ── Frontier ─────────────────────────────

    def enqueue(self, url: str, depth: int, base_url: str | None = None) -> None:
        crawler = self.crawler
        normalized = crawler.url_filter.normalize(url, base_url)
        if normalized is None or normalized in self.seen:
            return
        if not URLNormalizer.is_same_site(normalized, self.site_host, crawler.allow_subdomains):
            return
        if crawler.max_depth is not None and depth > crawler.max_depth:
            return
        self.seen.add(normalized)
        if not crawler.url_filter.should_crawl(normalized):
            self.stats.total_skipped += 1
            return
        self.frontier.put_nowait((normalized, depth))
        self.stats.total_queued += 1

    async def worker(self, worker_id: int) -> None:
        while True:
            url, depth = await self.frontier.get()
            try:
                if self.fatal is not None or self.claimed >= self.max_pages:
                    self.stats.total_skipped += 1
                    continue
                if self.crawler.respect_robots and not self.robots.can_fetch(url):
                    self.stats.total_skipped += 1
                    self.logger.debug("Blocked by robots.txt", url=url)
                    continue
                self.claimed += 1
                await self.process(url, depth)
            except Exception as exc:
                if self.fatal is None:
                    self.fatal = exc
                self.logger.error("Crawl worker failed", worker=worker_id, url=url, error=str(exc))
            finally:
                self.frontier.task_done()

    # ── Per-page pipeline ────────────────────

    async def process(self, url: str, depth: int) -> CrawledPage:
        crawler = self.crawler
        page, resumed = await self.load_resumed(url)
        if page is None:
            page = await self.fetch(url, depth)
            if url == self.seed and page.status_code == 0:
                raise SeedUnreachableError(self.seed, page.error or "no response")
        page.depth = depth

        context = build_audit_context(page, robots_txt=self.robots.text, sitemap_urls=self.sitemap_urls)
        crawled = CrawledPage(context=context, resumed=resumed)

        if page.ok and page.body:
            crawled.content_hash = hash_content(page.body)
            first = self.content_hashes.setdefault(crawled.content_hash, url)
            if first != url:
                crawled.duplicate_of = first
                context.extra["duplicate_of"] = first
                self.stats.total_duplicates += 1

        if page.ok:
            for link in context.links:
                if link.is_internal or crawler.allow_subdomains:
                    self.enqueue(link.url, depth + 1)
        else:
            self.stats.total_failed += 1
            self.logger.warning("Page fetch failed", url=url, status=page.status_code, error=page.error)

        if crawler.on_page is not None:
            outcome = crawler.on_page(crawled)
            if inspect.isawaitable(outcome):
                await outcome

        if crawler.project_db is not None and crawler.crawl_record is not None:
            await asyncio.to_thread(
                crawler.project_db.save_crawled_page,
                crawler.crawl_record,
                page,
                links=context.links,
                images=context.images,
                content_hash=crawled.content_hash,
                title=page_title(context.soup),
                seed_url=None if resumed else self.seed,
            )

        self.stats.total_crawled += 1
        if resumed:
            self.stats.total_resumed += 1
        self.pages.append(crawled)

        if self.stats.total_crawled % 50 == 0:
            self.logger.info(
                "Crawl progress",
                crawled=self.stats.total_crawled,
                queued=self.frontier.qsize(),
                pps=round(self.stats.pages_per_second, 2),
            )
        return crawled

    async def load_resumed(self, url: str) -> tuple[FetchedPage | None, bool]:
        entry = self.snapshot.get(hash_url(url))
        if entry is None or entry.status != "ok" or self.crawler.project_db is None:
            return None, False
        page = await asyncio.to_thread(self.crawler.project_db.load_stored_page, entry.crawl_id, url)
        if page is None:
            return None, False
        return page, True

    async def fetch(self, url: str, depth: int) -> FetchedPage:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        async with self.live_requests:
            self.in_flight += 1
            self.stats.max_in_flight = max(self.stats.max_in_flight, self.in_flight)
            self.fetched_urls.append(url)
            try:
                page = await self.crawler.fetcher(self.client, url, self.crawler.timeout, depth)
            finally:
                self.in_flight -= 1
        self.stats.total_fetched += 1
        return page


def normalize_url(url: str, base_url: str | None = None, check_extension: bool = True) -> str | None:
    """Default normalization (tracking parameters dropped)."""
    return URLNormalizer.normalize(url, base_url, check_extension=check_extension)
