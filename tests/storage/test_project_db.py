"""Tests for per-domain crawl storage and the resume state table."""

from datetime import timedelta

import pytest

from siteaudit.core.exceptions import AuditNotFoundError
from siteaudit.engines.base import FetchedPage, ImageInfo, LinkInfo
from siteaudit.storage.paths import hash_url, sanitize_domain

SEED = "https://example.com/"


def page(url: str, status: int = 200, body: str = "<html><title>T</title></html>", **kwargs) -> FetchedPage:
    return FetchedPage(url=url, status_code=status, body=body, content_type="text/html", **kwargs)


@pytest.fixture
def project_db(handles):
    return handles.project("example.com")


class TestCrawls:

    def test_create_and_complete(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED, project_name="Marketing site", config={"max_pages": 10})
        assert project_db.get_crawl(crawl.crawl_id).status == "running"

        project_db.complete_crawl(crawl.crawl_id, total_pages=3, error_count=1, duration_ms=1500)
        stored = project_db.get_crawl(crawl.crawl_id)
        assert (stored.status, stored.total_pages, stored.error_count) == ("completed", 3, 1)
        assert project_db.get_or_create_project().name == "Marketing site"

    def test_latest_crawl(self, project_db):
        first = project_db.create_crawl(start_url=SEED)
        project_db.complete_crawl(first.crawl_id, total_pages=1, error_count=0, duration_ms=1)
        project_db.create_crawl(start_url=SEED)

        assert project_db.get_latest_crawl().crawl_id == first.crawl_id
        assert project_db.get_latest_crawl(completed_only=False).crawl_id != first.crawl_id
        assert len(project_db.list_crawls()) == 2

    def test_fail_unknown_crawl(self, project_db):
        with pytest.raises(AuditNotFoundError):
            project_db.fail_crawl("missing")

    def test_delete_cascades_to_pages(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.save_crawled_page(crawl, page(SEED), links=[LinkInfo(url=SEED + "a", href="/a")])

        assert project_db.delete_crawl(crawl.crawl_id)
        assert project_db.get_crawl(crawl.crawl_id) is None
        assert project_db.get_links(crawl) == []
        assert project_db.count_pages(crawl) == 0


class TestPages:

    def test_page_round_trip(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        original = page(
            SEED + "old",
            final_url=SEED + "new",
            headers={"content-type": "text/html", "x-robots-tag": "noindex"},
            redirect_chain=[SEED + "old"],
            response_time_ms=123.0,
            depth=2,
        )
        project_db.save_crawled_page(crawl, original, title="T", content_hash="abc")

        stored = project_db.get_page(crawl, SEED + "old")
        assert stored.body == original.body
        assert stored.headers == original.headers
        assert stored.final_url == SEED + "new"
        assert stored.redirect_chain == [SEED + "old"]
        assert stored.depth == 2
        assert stored.response_time_ms == 123.0

    def test_fetch_error_preserved(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.save_crawled_page(crawl, FetchedPage(url=SEED, error="Timeout after 30.0s"))
        stored = project_db.get_page(crawl, SEED)
        assert stored.status_code == 0
        assert stored.error == "Timeout after 30.0s"
        assert stored.body == ""

    def test_links_and_images(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.save_crawled_page(
            crawl,
            page(SEED),
            links=[
                LinkInfo(url=SEED + "a", href="/a", text="A", is_internal=True, status_code=200),
                LinkInfo(url="https://other.com/", href="https://other.com/", is_nofollow=True),
            ],
            images=[ImageInfo(src=SEED + "logo.png", alt="Logo", width="40")],
        )
        project_db.save_crawled_page(crawl, page(SEED + "a"), links=[LinkInfo(url=SEED, href="/")])

        links = project_db.get_links(crawl, SEED)
        assert [(l.target_url, l.is_internal, l.is_nofollow, l.status_code) for l in links] == [
            (SEED + "a", True, False, 200),
            ("https://other.com/", False, True, None),
        ]
        assert len(project_db.get_links(crawl)) == 3
        [image] = project_db.get_images(crawl, SEED)
        assert (image.alt, image.width) == ("Logo", "40")

    def test_resave_replaces_page(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.save_crawled_page(crawl, page(SEED, body="first"))
        project_db.save_crawled_page(crawl, page(SEED, body="second"))
        assert project_db.count_pages(crawl) == 1
        assert project_db.get_page(crawl, SEED).body == "second"

    def test_iter_pages_in_insertion_order(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.insert_pages(crawl, [page(SEED + str(n)) for n in range(5)])
        assert [p.url for p in project_db.iter_pages(crawl)] == [SEED + str(n) for n in range(5)]

    def test_stats(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        body = "<html>" + "x" * 5000 + "</html>"
        project_db.save_crawled_page(crawl, page(SEED, body=body), seed_url=SEED)
        stats = project_db.get_stats()
        assert (stats.crawls, stats.pages, stats.crawl_state_entries) == (1, 1, 1)
        assert stats.html_bytes_raw == len(body)
        assert stats.html_bytes_compressed < stats.html_bytes_raw


class TestCrawlState:

    def test_snapshot_keyed_by_url_hash(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.save_crawled_page(crawl, page(SEED), seed_url=SEED, content_hash="h1")
        project_db.save_crawled_page(crawl, page(SEED + "gone", status=404), seed_url=SEED)

        snapshot = project_db.get_crawl_state_snapshot(SEED, timedelta(hours=1))
        assert set(snapshot) == {hash_url(SEED), hash_url(SEED + "gone")}
        assert snapshot[hash_url(SEED)].status == "ok"
        assert snapshot[hash_url(SEED)].content_hash == "h1"
        assert snapshot[hash_url(SEED + "gone")].status == "failed"
        assert snapshot[hash_url(SEED)].crawl_id == crawl.crawl_id

    def test_page_without_seed_writes_no_state(self, project_db):
        crawl = project_db.create_crawl(start_url=SEED)
        project_db.save_crawled_page(crawl, page(SEED))
        assert project_db.get_crawl_state_snapshot(SEED, timedelta(hours=1)) == {}

    def test_state_is_per_seed(self, project_db):
        project_db.record_crawl_state(SEED, "c1", page(SEED))
        project_db.record_crawl_state(SEED + "blog", "c1", page(SEED))
        assert len(project_db.get_crawl_state_snapshot(SEED, timedelta(hours=1))) == 1

    def test_upsert_overwrites(self, project_db):
        project_db.record_crawl_state(SEED, "c1", page(SEED, status=500))
        project_db.record_crawl_state(SEED, "c2", page(SEED))
        [entry] = project_db.get_crawl_state_snapshot(SEED, timedelta(hours=1)).values()
        assert (entry.crawl_id, entry.status) == ("c2", "ok")

    def test_expired_entries_excluded(self, project_db):
        project_db.record_crawl_state(SEED, "c1", page(SEED))
        assert project_db.get_crawl_state_snapshot(SEED, timedelta(0)) == {}

    def test_clear(self, project_db):
        project_db.record_crawl_state(SEED, "c1", page(SEED))
        project_db.record_crawl_state(SEED + "x", "c1", page(SEED))
        assert project_db.clear_crawl_state(SEED) == 1
        assert project_db.clear_crawl_state() == 1


class TestHandles:

    def test_project_handles_cached(self, handles):
        assert handles.project("example.com") is handles.project("example.com")

    def test_list_project_domains(self, handles):
        handles.project("Example.com")
        handles.project("shop.example.org")
        assert handles.list_project_domains() == ["example.com", "shop.example.org"]

    def test_sanitize_domain(self):
        assert sanitize_domain("Example.COM") == "example.com"
        assert sanitize_domain("host:8080") == "host_8080"
        assert sanitize_domain("..weird..name..") == "weird.name"
