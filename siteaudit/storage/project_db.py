"""
Project Database - crawl data for one domain.

Holds crawls with their pages, links and images so a site can be
re-analyzed without re-crawling, plus the crawl_state table the crawler
uses to resume an interrupted run.
"""

from __future__ import annotations

import json
import zlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import timedelta, timezone
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from siteaudit.core.database import ProjectBase, SQLiteStore, utcnow
from siteaudit.core.exceptions import AuditNotFoundError
from siteaudit.engines.base import FetchedPage, ImageInfo, LinkInfo
from siteaudit.models.models import (
    Crawl,
    CrawlStateRecord,
    ImageRecord,
    LinkRecord,
    PageRecord,
    Project,
)
from siteaudit.storage.paths import generate_id, hash_url

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CrawlStateEntry:
    """Point-in-time copy of one crawl_state row."""
    url: str
    url_hash: str
    crawl_id: str
    status: str           # ok | failed
    status_code: int
    content_hash: str | None


@dataclass(frozen=True)
class ProjectDbStats:
    domain: str
    crawls: int
    pages: int
    links: int
    images: int
    crawl_state_entries: int
    html_bytes_compressed: int
    html_bytes_raw: int
    file_size_bytes: int


def compress_html(html: str) -> bytes | None:
    if not html:
        return None
    return zlib.compress(html.encode("utf-8"), 6)


def decompress_html(data: bytes | None) -> str:
    if not data:
        return ""
    return zlib.decompress(data).decode("utf-8")


def to_fetched_page(row: PageRecord) -> FetchedPage:
    headers = json.loads(row.headers_json) if row.headers_json else {}
    return FetchedPage(
        url=row.url,
        status_code=row.status_code,
        final_url=row.final_url,
        headers=headers,
        body=decompress_html(row.html_compressed),
        content_type=row.content_type or headers.get("content-type", ""),
        response_time_ms=row.load_time_ms,
        redirect_chain=json.loads(row.redirect_chain_json) if row.redirect_chain_json else [],
        error=row.fetch_error,
        depth=row.depth,
        fetched_at=row.fetched_at.replace(tzinfo=timezone.utc).timestamp(),
    )


class ProjectDatabase(SQLiteStore):

    def __init__(self, path: Path, domain: str):
        super().__init__(path, ProjectBase)
        self.domain = domain

    # ── Projects ─────────────────────────────

    def get_or_create_project(self, name: str | None = None) -> Project:
        with self.transaction() as session:
            project = session.scalar(select(Project).where(Project.domain == self.domain))
            if project is None:
                project = Project(domain=self.domain, name=name or self.domain)
                session.add(project)
                session.flush()
            elif name and project.name != name:
                project.name = name
        return project

    # ── Crawls ───────────────────────────────

    def create_crawl(
        self,
        *,
        start_url: str,
        crawl_id: str | None = None,
        project_name: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> Crawl:
        project = self.get_or_create_project(project_name)
        crawl = Crawl(
            crawl_id=crawl_id or generate_id(),
            project_id=project.id,
            start_url=start_url,
            status="running",
            config_json=json.dumps(config, default=str) if config is not None else None,
            started_at=utcnow(),
        )
        with self.transaction() as session:
            session.add(crawl)
            session.flush()
        return crawl

    def complete_crawl(self, crawl_id: str, *, total_pages: int, error_count: int, duration_ms: int) -> Crawl:
        with self.transaction() as session:
            crawl = self._require_crawl(session, crawl_id)
            crawl.status = "completed"
            crawl.total_pages = total_pages
            crawl.error_count = error_count
            crawl.duration_ms = duration_ms
            crawl.completed_at = utcnow()
        return crawl

    def fail_crawl(self, crawl_id: str) -> Crawl:
        with self.transaction() as session:
            crawl = self._require_crawl(session, crawl_id)
            crawl.status = "failed"
            crawl.completed_at = utcnow()
        return crawl

    def get_crawl(self, crawl_id: str) -> Crawl | None:
        with self.session() as session:
            return session.scalar(select(Crawl).where(Crawl.crawl_id == crawl_id))

    def get_latest_crawl(self, completed_only: bool = True) -> Crawl | None:
        query = select(Crawl)
        if completed_only:
            query = query.where(Crawl.status == "completed")
        with self.session() as session:
            return session.scalar(query.order_by(Crawl.started_at.desc(), Crawl.id.desc()).limit(1))

    def list_crawls(self, limit: int = 20) -> list[Crawl]:
        with self.session() as session:
            return list(session.scalars(select(Crawl).order_by(Crawl.started_at.desc(), Crawl.id.desc()).limit(limit)))

    def delete_crawl(self, crawl_id: str) -> bool:
        with self.transaction() as session:
            result = session.execute(delete(Crawl).where(Crawl.crawl_id == crawl_id))
        return result.rowcount > 0

    # ── Pages, links, images ─────────────────

    def save_crawled_page(
        self,
        crawl: Crawl,
        page: FetchedPage,
        *,
        links: Iterable[LinkInfo] = (),
        images: Iterable[ImageInfo] = (),
        content_hash: str | None = None,
        title: str | None = None,
        seed_url: str | None = None,
    ) -> None:
        """
        Store one page with its links and images in a single transaction.

        When seed_url is given the page's crawl_state entry is upserted in
        the same transaction, so the resume cache never points at a page
        that was not stored.
        """
        url_hash = hash_url(page.url)
        with self.transaction() as session:
            session.execute(delete(PageRecord).where(
                PageRecord.crawl_id == crawl.id, PageRecord.url_hash == url_hash,
            ))
            session.add(self._page_row(crawl.id, page, content_hash, title))
            session.add_all([
                LinkRecord(
                    crawl_id=crawl.id,
                    source_url=page.url,
                    target_url=link.url,
                    anchor_text=link.text or None,
                    is_internal=link.is_internal,
                    is_nofollow=link.is_nofollow,
                    status_code=link.status_code,
                )
                for link in links
            ])
            session.add_all([
                ImageRecord(
                    crawl_id=crawl.id,
                    page_url=page.url,
                    src=image.src,
                    alt=image.alt,
                    width=image.width,
                    height=image.height,
                )
                for image in images
            ])
            if seed_url is not None:
                session.execute(self._state_upsert(seed_url, crawl.crawl_id, page, url_hash, content_hash))

    def insert_pages(self, crawl: Crawl, pages: Iterable[FetchedPage]) -> int:
        """Batch insert without links or images (legacy imports)."""
        rows = [self._page_row(crawl.id, page, None, None) for page in pages]
        with self.transaction() as session:
            session.add_all(rows)
        return len(rows)

    def get_page(self, crawl: Crawl, url: str) -> FetchedPage | None:
        with self.session() as session:
            row = session.scalar(select(PageRecord).where(
                PageRecord.crawl_id == crawl.id, PageRecord.url_hash == hash_url(url),
            ))
            return to_fetched_page(row) if row else None

    def load_stored_page(self, crawl_id: str, url: str) -> FetchedPage | None:
        crawl = self.get_crawl(crawl_id)
        return self.get_page(crawl, url) if crawl else None

    def iter_pages(self, crawl: Crawl) -> Iterator[FetchedPage]:
        with self.session() as session:
            ids = list(session.scalars(
                select(PageRecord.id).where(PageRecord.crawl_id == crawl.id).order_by(PageRecord.id)
            ))
        for page_id in ids:
            with self.session() as session:
                row = session.get(PageRecord, page_id)
                if row is not None:
                    yield to_fetched_page(row)

    def count_pages(self, crawl: Crawl) -> int:
        with self.session() as session:
            return session.scalar(select(func.count()).select_from(PageRecord).where(PageRecord.crawl_id == crawl.id)) or 0

    def get_links(self, crawl: Crawl, source_url: str | None = None) -> list[LinkRecord]:
        query = select(LinkRecord).where(LinkRecord.crawl_id == crawl.id)
        if source_url:
            query = query.where(LinkRecord.source_url == source_url)
        with self.session() as session:
            return list(session.scalars(query.order_by(LinkRecord.id)))

    def get_images(self, crawl: Crawl, page_url: str | None = None) -> list[ImageRecord]:
        query = select(ImageRecord).where(ImageRecord.crawl_id == crawl.id)
        if page_url:
            query = query.where(ImageRecord.page_url == page_url)
        with self.session() as session:
            return list(session.scalars(query.order_by(ImageRecord.id)))

    # ── Crawl state ──────────────────────────

    def record_crawl_state(
        self,
        seed_url: str,
        crawl_id: str,
        page: FetchedPage,
        content_hash: str | None = None,
    ) -> None:
        with self.transaction() as session:
            session.execute(self._state_upsert(seed_url, crawl_id, page, hash_url(page.url), content_hash))

    def get_crawl_state_snapshot(self, seed_url: str, max_age: timedelta) -> dict[str, CrawlStateEntry]:
        """Unexpired crawl_state entries for a seed, keyed by URL hash."""
        cutoff = utcnow() - max_age
        with self.session() as session:
            rows = session.scalars(select(CrawlStateRecord).where(
                CrawlStateRecord.seed_url == seed_url,
                CrawlStateRecord.visited_at > cutoff,
            ))
            return {
                row.url_hash: CrawlStateEntry(
                    url=row.url,
                    url_hash=row.url_hash,
                    crawl_id=row.crawl_id,
                    status=row.status,
                    status_code=row.status_code,
                    content_hash=row.content_hash,
                )
                for row in rows
            }

    def clear_crawl_state(self, seed_url: str | None = None) -> int:
        stmt = delete(CrawlStateRecord)
        if seed_url is not None:
            stmt = stmt.where(CrawlStateRecord.seed_url == seed_url)
        with self.transaction() as session:
            result = session.execute(stmt)
        return result.rowcount

    # ── Stats ────────────────────────────────

    def get_stats(self) -> ProjectDbStats:
        with self.session() as session:
            def count(model) -> int:
                return session.scalar(select(func.count()).select_from(model)) or 0

            compressed, raw = session.execute(
                select(
                    func.coalesce(func.sum(func.length(PageRecord.html_compressed)), 0),
                    func.coalesce(func.sum(PageRecord.html_size), 0),
                )
            ).one()
            return ProjectDbStats(
                domain=self.domain,
                crawls=count(Crawl),
                pages=count(PageRecord),
                links=count(LinkRecord),
                images=count(ImageRecord),
                crawl_state_entries=count(CrawlStateRecord),
                html_bytes_compressed=int(compressed),
                html_bytes_raw=int(raw),
                file_size_bytes=self.path.stat().st_size if self.path.exists() else 0,
            )

    # ── Internals ────────────────────────────

    @staticmethod
    def _page_row(crawl_pk: int, page: FetchedPage, content_hash: str | None, title: str | None) -> PageRecord:
        return PageRecord(
            crawl_id=crawl_pk,
            url=page.url,
            url_hash=hash_url(page.url),
            final_url=page.final_url,
            status_code=page.status_code,
            depth=page.depth,
            content_type=page.content_type or None,
            html_compressed=compress_html(page.body),
            html_size=len(page.body.encode("utf-8")),
            content_hash=content_hash,
            headers_json=json.dumps(page.headers) if page.headers else None,
            redirect_chain_json=json.dumps(page.redirect_chain) if page.redirect_chain else None,
            load_time_ms=page.response_time_ms,
            fetch_error=page.error,
            title=title,
            fetched_at=utcnow(),
        )

    @staticmethod
    def _state_upsert(seed_url: str, crawl_id: str, page: FetchedPage, url_hash: str, content_hash: str | None):
        values = {
            "seed_url": seed_url,
            "url": page.url,
            "url_hash": url_hash,
            "crawl_id": crawl_id,
            "status": "ok" if page.ok else "failed",
            "status_code": page.status_code,
            "content_hash": content_hash,
            "visited_at": utcnow(),
        }
        stmt = sqlite_insert(CrawlStateRecord).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[CrawlStateRecord.seed_url, CrawlStateRecord.url_hash],
            set_={k: stmt.excluded[k] for k in ("url", "crawl_id", "status", "status_code", "content_hash", "visited_at")},
        )

    @staticmethod
    def _require_crawl(session, crawl_id: str) -> Crawl:
        crawl = session.scalar(select(Crawl).where(Crawl.crawl_id == crawl_id))
        if crawl is None:
            raise AuditNotFoundError("Crawl", crawl_id)
        return crawl
