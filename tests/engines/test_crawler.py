"""
Tests for the Crawler Engine.
Uses httpx MockTransport to avoid real network calls.
"""

import asyncio

import httpx
import pytest

from siteaudit.core.exceptions import ConfigurationError, SeedUnreachableError
from siteaudit.engines.base import FetchedPage
from siteaudit.engines.crawler.engine import (
    Crawler,
    RateLimiter,
    URLNormalizer,
    UrlFilter,
    glob_to_regex,
    normalize_url,
)
from siteaudit.storage.project_db import ProjectDatabase

SEED = "https://example.com/"


def html_page(*links: str, title: str = "Page", body: str = "") -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body>{body}{anchors}</body></html>"


def mock_site(pages: dict[str, str], robots: str | None = None, sitemap: str | None = None,
              calls: list[str] | None = None) -> httpx.AsyncClient:
    """Client whose transport serves `pages` keyed by path (404 for anything else)."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/robots.txt":
            if robots is None:
                return httpx.Response(404)
            return httpx.Response(200, text=robots, headers={"content-type": "text/plain"})
        if path == "/sitemap.xml":
            if sitemap is None:
                return httpx.Response(404)
            return httpx.Response(200, text=sitemap, headers={"content-type": "application/xml"})

        if calls is not None:
            calls.append(str(request.url))
        target = path + (f"?{request.url.query.decode()}" if request.url.query else "")
        html = pages.get(target, pages.get(path))
        if html is None:
            return httpx.Response(404, text="<html><body>Not found</body></html>", headers={"content-type": "text/html"})
        return httpx.Response(200, text=html, headers={"content-type": "text/html; charset=utf-8"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ─────────────────────────────────────────────
# URL Normalizer Tests
# ─────────────────────────────────────────────

class TestURLNormalizer:

    def test_normalizes_relative_url(self):
        result = URLNormalizer.normalize("/about", "https://example.com/")
        assert result == "https://example.com/about"

    def test_removes_fragment(self):
        result = URLNormalizer.normalize("https://example.com/page#section", "https://example.com")
        assert result == "https://example.com/page"

    def test_removes_tracking_params(self):
        result = URLNormalizer.normalize(
            "https://example.com/page?utm_source=google&id=123&gclid=x&fbclid=y&mc_cid=z&_ga=1",
            "https://example.com",
        )
        assert result == "https://example.com/page?id=123"

    def test_sorts_query_params(self):
        assert normalize_url("https://example.com/s?b=2&a=1") == "https://example.com/s?a=1&b=2"

    def test_lowercases_scheme_and_host(self):
        assert normalize_url("HTTPS://Example.COM/Path") == "https://example.com/Path"

    def test_drops_default_port(self):
        assert normalize_url("https://example.com:443/a") == "https://example.com/a"
        assert normalize_url("http://example.com:8080/a") == "http://example.com:8080/a"

    def test_skips_pdf(self):
        result = URLNormalizer.normalize("https://example.com/doc.pdf", "https://example.com")
        assert result is None

    def test_extension_check_can_be_disabled(self):
        assert normalize_url("https://example.com/feed.xml") is None
        assert normalize_url("https://example.com/feed.xml", check_extension=False) == "https://example.com/feed.xml"

    def test_skips_mailto(self):
        result = URLNormalizer.normalize("mailto:test@example.com", "https://example.com")
        assert result is None

    def test_normalizes_trailing_slash(self):
        result = URLNormalizer.normalize("https://example.com/page/", "https://example.com")
        assert result == "https://example.com/page"

    def test_root_trailing_slash_preserved(self):
        result = URLNormalizer.normalize("https://example.com", "https://example.com")
        assert result == "https://example.com/"

    def test_same_site_check(self):
        assert URLNormalizer.is_same_site("https://www.example.com/page", "example.com")
        assert not URLNormalizer.is_same_site("https://sub.example.com/page", "example.com")
        assert URLNormalizer.is_same_site("https://sub.example.com/page", "example.com", allow_subdomains=True)
        assert not URLNormalizer.is_same_site("https://other.com/page", "example.com")


# ─────────────────────────────────────────────
# URL Filter Tests
# ─────────────────────────────────────────────

class TestUrlFilter:

    def test_single_star_stays_in_segment(self):
        pattern = glob_to_regex("/blog/*")
        assert pattern.match("/blog/post")
        assert not pattern.match("/blog/2024/post")

    def test_double_star_spans_segments(self):
        pattern = glob_to_regex("/docs/**/intro")
        assert pattern.match("/docs/v1/guide/intro")

    def test_trailing_double_star_matches_base(self):
        pattern = glob_to_regex("/blog/**")
        assert pattern.match("/blog")
        assert pattern.match("/blog/a/b")
        assert not pattern.match("/blogger")

    def test_question_mark_is_one_char(self):
        pattern = glob_to_regex("/p?ge")
        assert pattern.match("/page")
        assert not pattern.match("/paage")

    def test_dots_are_literal(self):
        assert not glob_to_regex("/index.html").match("/indexxhtml")

    def test_include_and_exclude(self):
        url_filter = UrlFilter(include=["/shop/**"], exclude=["/shop/cart"])
        assert url_filter.should_crawl("https://example.com/shop/shoes")
        assert not url_filter.should_crawl("https://example.com/shop/cart")
        assert not url_filter.should_crawl("https://example.com/about")

    def test_allowed_query_params(self):
        url_filter = UrlFilter(allow_query_params=["page"])
        assert url_filter.normalize("https://example.com/list?page=2&sort=asc") == "https://example.com/list?page=2"


# ─────────────────────────────────────────────
# Rate Limiter Tests
# ─────────────────────────────────────────────

class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_acquire_does_not_raise(self):
        limiter = RateLimiter(rate=100.0, max_tokens=10)
        # Should not raise or sleep with high rate
        await limiter.acquire()

    @pytest.mark.asyncio
    async def test_tokens_decrease_on_acquire(self):
        limiter = RateLimiter(rate=100.0, max_tokens=5)
        initial_tokens = limiter.tokens
        await limiter.acquire()
        assert limiter.tokens < initial_tokens


# ─────────────────────────────────────────────
# Crawler Tests
# ─────────────────────────────────────────────

class TestCrawler:

    @pytest.mark.asyncio
    async def test_crawls_linked_pages(self):
        client = mock_site({
            "/": html_page("/a", "/b", "https://other.com/x"),
            "/a": html_page("/b", "/c"),
            "/b": html_page("/"),
            "/c": html_page(),
        })
        result = await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=10, concurrency=2)

        urls = sorted(p.url for p in result.pages)
        assert urls == [
            "https://example.com/",
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/c",
        ]
        assert result.stats.total_failed == 0

    @pytest.mark.asyncio
    async def test_respects_max_pages(self):
        links = [f"/p{n}" for n in range(20)]
        client = mock_site({"/": html_page(*links), **{link: html_page() for link in links}})
        result = await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=5, concurrency=3)

        assert len(result.pages) == 5
        assert len({p.url for p in result.pages}) == 5

    @pytest.mark.asyncio
    async def test_seed_with_ignored_extension_is_crawled(self):
        client = mock_site({"/docs.txt": html_page("/a"), "/a": html_page()})
        result = await Crawler(client, use_sitemap=False).crawl("https://example.com/docs.txt", max_pages=5, concurrency=1)

        urls = sorted(p.url for p in result.pages)
        assert urls == ["https://example.com/a", "https://example.com/docs.txt"]

    @pytest.mark.asyncio
    async def test_equivalent_urls_fetched_once(self):
        calls: list[str] = []
        client = mock_site(
            {"/": html_page("/a", "/a/", "/a#top", "/a?utm_source=mail", "https://EXAMPLE.com/a"), "/a": html_page()},
            calls=calls,
        )
        await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=10, concurrency=3)
        assert sum(1 for c in calls if c.startswith("https://example.com/a")) == 1

    @pytest.mark.asyncio
    async def test_robots_disallow_skipped(self):
        calls: list[str] = []
        client = mock_site(
            {"/": html_page("/private/data", "/public"), "/public": html_page(), "/private/data": html_page()},
            robots="User-agent: *\nDisallow: /private\n",
            calls=calls,
        )
        result = await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=10, concurrency=2)

        assert "https://example.com/private/data" not in calls
        assert result.stats.total_skipped >= 1
        assert result.robots_txt.startswith("User-agent")

    @pytest.mark.asyncio
    async def test_exclude_filter(self):
        calls: list[str] = []
        client = mock_site(
            {"/": html_page("/blog", "/blog/post", "/about"), "/about": html_page(), "/blog": html_page(),
             "/blog/post": html_page()},
            calls=calls,
        )
        crawler = Crawler(client, use_sitemap=False, url_filter=UrlFilter(exclude=["/blog/**"]))
        await crawler.crawl(SEED, max_pages=10, concurrency=2)
        assert sorted(calls) == ["https://example.com/", "https://example.com/about"]

    @pytest.mark.asyncio
    async def test_max_depth(self):
        client = mock_site({"/": html_page("/a"), "/a": html_page("/b"), "/b": html_page()})
        result = await Crawler(client, use_sitemap=False, max_depth=1).crawl(SEED, max_pages=10, concurrency=1)
        assert sorted(p.url for p in result.pages) == ["https://example.com/", "https://example.com/a"]

    @pytest.mark.asyncio
    async def test_sitemap_urls_enqueued(self):
        sitemap = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.com/orphan</loc></url>"
            "</urlset>"
        )
        client = mock_site({"/": html_page(), "/orphan": html_page()}, sitemap=sitemap)
        result = await Crawler(client).crawl(SEED, max_pages=10, concurrency=2)

        assert "https://example.com/orphan" in {p.url for p in result.pages}
        assert result.sitemap_urls == ["https://example.com/orphan"]

    @pytest.mark.asyncio
    async def test_failed_page_does_not_abort(self):
        client = mock_site({"/": html_page("/missing", "/ok"), "/ok": html_page()})
        result = await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=10, concurrency=2)

        assert len(result.pages) == 3
        assert result.stats.total_failed == 1
        missing = next(p for p in result.pages if p.url.endswith("/missing"))
        assert missing.page.status_code == 404

    @pytest.mark.asyncio
    async def test_seed_network_error_is_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(SeedUnreachableError) as exc_info:
            await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=5, concurrency=1)
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_seed_http_error_is_not_fatal(self):
        client = mock_site({})
        result = await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=5, concurrency=1)
        assert len(result.pages) == 1
        assert result.pages[0].page.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicate_content_detected(self):
        same = html_page(title="Same", body="identical body")
        client = mock_site({"/": html_page("/one", "/two"), "/one": same, "/two": same})
        result = await Crawler(client, use_sitemap=False).crawl(SEED, max_pages=10, concurrency=1)

        assert result.stats.total_duplicates == 1
        duplicate = next(p for p in result.pages if p.duplicate_of)
        assert duplicate.context.extra["duplicate_of"] == "https://example.com/one"

    @pytest.mark.asyncio
    async def test_on_page_callback(self):
        seen: list[str] = []

        async def on_page(crawled):
            seen.append(crawled.url)

        client = mock_site({"/": html_page("/a"), "/a": html_page()})
        await Crawler(client, use_sitemap=False, on_page=on_page).crawl(SEED, max_pages=10, concurrency=1)
        assert seen == ["https://example.com/", "https://example.com/a"]

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        crawler = Crawler(mock_site({}))
        with pytest.raises(ConfigurationError):
            await crawler.crawl(SEED, max_pages=0, concurrency=1)
        with pytest.raises(ConfigurationError):
            await crawler.crawl(SEED, max_pages=1, concurrency=21)
        with pytest.raises(ConfigurationError):
            await crawler.crawl("ftp://example.com/", max_pages=1, concurrency=1)
        with pytest.raises(ConfigurationError):
            Crawler(mock_site({}), timeout=0.5)


class TestConcurrencyBound:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [1, 4])
    async def test_in_flight_never_exceeds_concurrency(self, concurrency):
        in_flight = 0
        peak = 0
        links = [f"/p{n}" for n in range(30)]

        async def fetcher(client, url, timeout, depth=0):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1
            body = html_page(*links) if url == SEED else html_page()
            return FetchedPage(url=url, status_code=200, final_url=url, body=body, content_type="text/html")

        crawler = Crawler(mock_site({}), use_sitemap=False, respect_robots=False, fetcher=fetcher)
        result = await crawler.crawl(SEED, max_pages=31, concurrency=concurrency)

        assert len(result.pages) == 31
        assert peak <= concurrency
        assert result.stats.max_in_flight == peak


class TestResume:

    PAGES = {
        "/": html_page("/a", "/b", "/c"),
        "/a": html_page(title="A"),
        "/b": html_page(title="B"),
        "/c": html_page(title="C"),
    }

    @pytest.fixture
    def project_db(self, tmp_path):
        db = ProjectDatabase(tmp_path / "project.db", "example.com")
        yield db
        db.close()

    async def run(self, project_db, calls, max_pages=10, **kwargs):
        crawl = project_db.create_crawl(start_url=SEED)
        crawler = Crawler(
            mock_site(self.PAGES, calls=calls),
            project_db=project_db,
            crawl=crawl,
            use_sitemap=False,
            **kwargs,
        )
        return await crawler.crawl(SEED, max_pages=max_pages, concurrency=1)

    @pytest.mark.asyncio
    async def test_resume_skips_visited_urls(self, project_db):
        first_calls: list[str] = []
        interrupted = await self.run(project_db, first_calls, max_pages=2)
        assert len(interrupted.pages) == 2

        calls: list[str] = []
        resumed = await self.run(project_db, calls, resume=True)

        assert not set(first_calls) & set(calls)
        assert resumed.stats.total_resumed == 2
        assert sorted(p.url for p in resumed.pages) == [
            "https://example.com/",
            "https://example.com/a",
            "https://example.com/b",
            "https://example.com/c",
        ]

    @pytest.mark.asyncio
    async def test_refresh_refetches_everything(self, project_db):
        await self.run(project_db, [], max_pages=10)

        calls: list[str] = []
        refreshed = await self.run(project_db, calls, resume=True, refresh=True)
        assert len(calls) == 4
        assert refreshed.stats.total_resumed == 0

    @pytest.mark.asyncio
    async def test_without_resume_flag_everything_is_fetched(self, project_db):
        await self.run(project_db, [], max_pages=10)

        calls: list[str] = []
        await self.run(project_db, calls)
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_pages_persisted(self, project_db):
        result = await self.run(project_db, [])
        crawl = project_db.get_latest_crawl(completed_only=False)
        assert project_db.count_pages(crawl) == len(result.pages) == 4
        stored = project_db.get_page(crawl, "https://example.com/a")
        assert "<title>A</title>" in stored.body
