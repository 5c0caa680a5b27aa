"""
Audit Tasks - orchestration of full audits, crawl-only runs and re-analysis.

Flow of audit_url():
1. Validate options (ConfigurationError before any network activity)
2. Create the crawl record and the audit record (or adopt the running
   record made by start_audit()); the audit gets its own RuleState
3. Crawl; every page is audited as it arrives and its results are stored
   in one transaction
4. Pool page results per category, store categories, complete the audit
5. Generate issues, then compare with the previous completed audit

Error handling:
- Page and rule failures are folded into the results by the crawler and
  the audit engine
- Anything that escapes (unreachable seed, storage failure) marks the
  audit failed; the partial AuditResult comes back with failed=True

The stores are synchronous SQLite; every call made from a coroutine goes
through asyncio.to_thread so a transaction never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from siteaudit.core.categories import validate_category_ids
from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import AuditNotFoundError, ConfigurationError
from siteaudit.core.rule_engine import RuleRegistry, RuleState, get_rule_registry
from siteaudit.engines.audit.engine import AuditCallbacks, AuditEngine
from siteaudit.engines.base import AuditResult, AuditStatus, CategoryResult, CrawlSummary, FetchedPage
from siteaudit.engines.crawler.engine import CrawledPage, Crawler, UrlFilter, normalize_url
from siteaudit.engines.crawler.fetcher import LinkChecker, build_audit_context
from siteaudit.engines.scoring.engine import build_audit_result, merge_category_results
from siteaudit.models.models import Audit, Crawl
from siteaudit.storage.handles import DatabaseHandles
from siteaudit.storage.paths import extract_domain, hash_content
from siteaudit.storage.project_db import ProjectDatabase

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Options
# ─────────────────────────────────────────────

class AuditOptions(BaseModel):
    """Per-run options shared by audit_url() and crawl_only()."""
    model_config = ConfigDict(extra="forbid")

    categories: list[str] | None = None
    max_pages: int = Field(default=1, ge=1)
    concurrency: int = Field(default_factory=lambda: get_settings().CRAWLER_DEFAULT_CONCURRENCY, ge=1, le=20)
    timeout: float = Field(default_factory=lambda: get_settings().CRAWLER_REQUEST_TIMEOUT, ge=1, le=120)
    max_depth: int | None = Field(default=None, ge=0)
    resume: bool = False
    refresh: bool = False
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    allow_query_params: list[str] | None = None
    respect_robots: bool = True
    use_sitemap: bool = True
    allow_subdomains: bool = False
    project_name: str | None = None
    check_links: bool = False
    compare: bool = True

    @field_validator("categories")
    @classmethod
    def known_categories(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        unknown = validate_category_ids(v)
        if unknown:
            raise ValueError(f"Unknown categories: {', '.join(unknown)}")
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def within_crawler_limits(self) -> "AuditOptions":
        settings = get_settings()
        if self.concurrency > settings.CRAWLER_MAX_CONCURRENCY:
            raise ValueError(
                f"concurrency {self.concurrency} exceeds CRAWLER_MAX_CONCURRENCY={settings.CRAWLER_MAX_CONCURRENCY}"
            )
        if self.max_pages > settings.CRAWLER_MAX_PAGES:
            raise ValueError(f"max_pages {self.max_pages} exceeds CRAWLER_MAX_PAGES={settings.CRAWLER_MAX_PAGES}")
        return self


def validate_options(options: AuditOptions | dict[str, Any] | None) -> AuditOptions:
    if isinstance(options, AuditOptions):
        return options
    try:
        return AuditOptions.model_validate(options or {})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid audit options: {problems}") from exc


def _seed_url(url: str) -> str:
    seed = normalize_url(url, check_extension=False)
    if seed is None:
        raise ConfigurationError(f"Not a crawlable http(s) URL: {url}")
    return seed


def _build_crawler(
    opts: AuditOptions,
    client: httpx.AsyncClient | None,
    project_db: ProjectDatabase,
    crawl: Crawl,
    on_page=None,
) -> Crawler:
    return Crawler(
        client,
        project_db=project_db,
        crawl=crawl,
        on_page=on_page,
        url_filter=UrlFilter(
            include=opts.include,
            exclude=opts.exclude,
            allow_query_params=opts.allow_query_params,
        ),
        timeout=opts.timeout,
        rate_limit_rps=get_settings().CRAWLER_RATE_LIMIT_RPS,
        max_depth=opts.max_depth,
        respect_robots=opts.respect_robots,
        use_sitemap=opts.use_sitemap and opts.max_pages > 1,
        allow_subdomains=opts.allow_subdomains,
        resume=opts.resume,
        refresh=opts.refresh,
    )



# ─────────────────────────────────────────────
# Full audit
# ─────────────────────────────────────────────

def start_audit(
    url: str,
    options: AuditOptions | dict[str, Any] | None,
    handles: DatabaseHandles,
    *,
    audit_id: str | None = None,
) -> Audit:
    """
    Validate the request and create the running audit record up front.

    Callers that run audit_url() in the background use this so the id they
    hand out can be polled at once; audit_url() adopts the record.
    """
    opts = validate_options(options)
    seed = _seed_url(url)
    return handles.audits.create_audit(
        audit_id=audit_id,
        domain=extract_domain(seed),
        start_url=seed,
        project_name=opts.project_name,
        config=opts.model_dump(mode="json"),
    )


async def audit_url(
    url: str,
    options: AuditOptions | dict[str, Any] | None = None,
    handles: DatabaseHandles | None = None,
    *,
    registry: RuleRegistry | None = None,
    callbacks: AuditCallbacks | None = None,
    client: httpx.AsyncClient | None = None,
    audit_id: str | None = None,
) -> AuditResult:
    """
    Crawl from url (a single page when max_pages is 1) and audit every page.

    When audit_id names a running audit created by start_audit(), that
    record is used instead of a new one.
    """
    opts = validate_options(options)
    seed = _seed_url(url)
    own_handles = handles is None
    handles = handles or DatabaseHandles.open()
    try:
        return await _run_audit(seed, opts, handles, registry or get_rule_registry(), callbacks, client, audit_id)
    finally:
        if own_handles:
            handles.close()


async def _open_audit(
    handles: DatabaseHandles,
    audit_id: str | None,
    crawl: Crawl,
    seed: str,
    domain: str,
    opts: AuditOptions,
    config: dict[str, Any],
) -> Audit:
    if audit_id is not None:
        existing = await asyncio.to_thread(handles.audits.get_audit, audit_id)
        if existing is not None and existing.status == AuditStatus.RUNNING.value:
            return await asyncio.to_thread(handles.audits.attach_crawl, audit_id, crawl.crawl_id)
    return await asyncio.to_thread(
        handles.audits.create_audit,
        audit_id=audit_id,
        domain=domain,
        start_url=seed,
        project_name=opts.project_name,
        crawl_id=crawl.crawl_id,
        config=config,
    )


async def _run_audit(
    seed: str,
    opts: AuditOptions,
    handles: DatabaseHandles,
    registry: RuleRegistry,
    callbacks: AuditCallbacks | None,
    client: httpx.AsyncClient | None,
    audit_id: str | None,
) -> AuditResult:
    settings = get_settings()
    domain = extract_domain(seed)
    project_db = await asyncio.to_thread(handles.project, domain)
    audits = handles.audits
    config = opts.model_dump(mode="json")

    crawl = await asyncio.to_thread(
        project_db.create_crawl, start_url=seed, project_name=opts.project_name, config=config
    )
    try:
        audit = await _open_audit(handles, audit_id, crawl, seed, domain, opts, config)
    except Exception:
        await asyncio.to_thread(project_db.fail_crawl, crawl.crawl_id)
        raise
    log = logger.bind(audit_id=audit.audit_id, crawl_id=crawl.crawl_id, domain=domain)
    log.info("Audit started", url=seed, max_pages=opts.max_pages, concurrency=opts.concurrency)

    # Cross-page rule memory belongs to this audit alone
    engine = AuditEngine(registry, callbacks, state=RuleState())
    page_results: list[list[CategoryResult]] = []

    own_client = client is None
    client = client or httpx.AsyncClient(headers={"User-Agent": settings.CRAWLER_USER_AGENT})
    link_checker = None
    if opts.check_links:
        link_checker = LinkChecker(
            client,
            handles.link_cache,
            concurrency=settings.LINK_CHECK_CONCURRENCY,
            timeout=settings.LINK_CHECK_TIMEOUT,
        )

    async def on_page(crawled: CrawledPage) -> None:
        context = crawled.context
        if link_checker is not None and not context.fetch_failed:
            await link_checker.check(context.links)
        categories = await engine.audit_page(context, opts.categories)
        page_results.append(categories)
        await asyncio.to_thread(audits.insert_results, audit.id, [r for c in categories for r in c.results])

    crawler = _build_crawler(opts, client, project_db, crawl, on_page=on_page)
    try:
        crawl_result = await crawler.crawl(seed, opts.max_pages, opts.concurrency)

        categories = merge_category_results(page_results)
        result = build_audit_result(seed, categories, crawled_pages=len(page_results))
        await asyncio.to_thread(audits.insert_categories, audit.id, categories)
        await asyncio.to_thread(
            audits.complete_audit,
            audit.audit_id,
            overall_score=result.overall_score,
            total_rules=result.total_rules,
            passed_count=result.passed_count,
            warning_count=result.warning_count,
            failed_count=result.failed_count,
            pages_audited=result.crawled_pages,
        )
        await asyncio.to_thread(
            project_db.complete_crawl,
            crawl.crawl_id,
            total_pages=crawl_result.stats.total_crawled,
            error_count=crawl_result.stats.total_failed,
            duration_ms=round(crawl_result.stats.elapsed_seconds * 1000),
        )
        issues = await asyncio.to_thread(audits.generate_issues_from_results, audit.id)

        comparison = None
        if opts.compare:
            previous = await asyncio.to_thread(audits.get_previous_audit, domain, audit.audit_id)
            if previous is not None:
                comparison = await asyncio.to_thread(audits.compare_audits, audit.id, previous.id)

        log.info(
            "Audit complete",
            score=result.overall_score,
            pages=result.crawled_pages,
            issues=issues,
            score_delta=comparison.score_delta if comparison else None,
        )
        return result.model_copy(update={
            "audit_id": audit.audit_id,
            "crawl_id": crawl.crawl_id,
            "comparison": comparison,
        })

    except Exception as exc:
        log.error("Audit failed", error=str(exc), error_type=type(exc).__name__)
        await asyncio.to_thread(audits.fail_audit, audit.audit_id, str(exc))
        await asyncio.to_thread(project_db.fail_crawl, crawl.crawl_id)
        partial = build_audit_result(seed, merge_category_results(page_results), crawled_pages=len(page_results))
        return partial.model_copy(update={
            "audit_id": audit.audit_id,
            "crawl_id": crawl.crawl_id,
            "failed": True,
            "error": str(exc),
        })

    finally:
        if own_client:
            await client.aclose()


# ─────────────────────────────────────────────
# Crawl only
# ─────────────────────────────────────────────

async def crawl_only(
    url: str,
    options: AuditOptions | dict[str, Any] | None = None,
    handles: DatabaseHandles | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> CrawlSummary:
    """Crawl and store pages without running rules (analyze later)."""
    opts = validate_options(options)
    seed = _seed_url(url)
    own_handles = handles is None
    handles = handles or DatabaseHandles.open()
    domain = extract_domain(seed)
    try:
        project_db = await asyncio.to_thread(handles.project, domain)
        crawl = await asyncio.to_thread(
            project_db.create_crawl,
            start_url=seed, project_name=opts.project_name, config=opts.model_dump(mode="json"),
        )
        crawler = _build_crawler(opts, client, project_db, crawl)
        try:
            result = await crawler.crawl(seed, opts.max_pages, opts.concurrency)
        except Exception:
            await asyncio.to_thread(project_db.fail_crawl, crawl.crawl_id)
            raise

        duration_ms = round(result.stats.elapsed_seconds * 1000)
        await asyncio.to_thread(
            project_db.complete_crawl,
            crawl.crawl_id,
            total_pages=result.stats.total_crawled,
            error_count=result.stats.total_failed,
            duration_ms=duration_ms,
        )
        logger.info("Crawl stored", crawl_id=crawl.crawl_id, domain=domain, pages=result.stats.total_crawled)
        return CrawlSummary(
            crawl_id=crawl.crawl_id,
            start_url=seed,
            domain=domain,
            pages_crawled=result.stats.total_crawled,
            pages_failed=result.stats.total_failed,
            pages_skipped=result.stats.total_skipped,
            pages_resumed=result.stats.total_resumed,
            duplicate_pages=result.stats.total_duplicates,
            duration_ms=duration_ms,
            urls=[p.url for p in result.pages],
        )
    finally:
        if own_handles:
            handles.close()


# ─────────────────────────────────────────────
# Analyze stored crawl
# ─────────────────────────────────────────────

async def analyze_stored_crawl(
    domain: str,
    crawl_id: str | None = None,
    categories: list[str] | None = None,
    handles: DatabaseHandles | None = None,
    *,
    registry: RuleRegistry | None = None,
    callbacks: AuditCallbacks | None = None,
    project_name: str | None = None,
) -> AuditResult:
    """
    Run the rules against pages stored by an earlier crawl; nothing is fetched.

    crawl_id defaults to the latest completed crawl of the domain. Link
    statuses recorded at crawl time are carried over onto the parsed links.
    """
    opts = validate_options({"categories": categories, "project_name": project_name})
    domain = extract_domain(domain)
    own_handles = handles is None
    handles = handles or DatabaseHandles.open()
    registry = registry or get_rule_registry()
    try:
        project_db = await asyncio.to_thread(handles.project, domain)
        if crawl_id:
            crawl = await asyncio.to_thread(project_db.get_crawl, crawl_id)
        else:
            crawl = await asyncio.to_thread(project_db.get_latest_crawl)
        if crawl is None:
            raise AuditNotFoundError("Crawl", crawl_id or f"latest for {domain}")

        audits = handles.audits
        audit = await asyncio.to_thread(
            audits.create_audit,
            domain=domain,
            start_url=crawl.start_url,
            project_name=opts.project_name,
            crawl_id=crawl.crawl_id,
            config={"categories": opts.categories, "analyze": True},
        )
        engine = AuditEngine(registry, callbacks, state=RuleState())
        page_results: list[list[CategoryResult]] = []
        content_hashes: dict[str, str] = {}
        start = time.perf_counter()

        try:
            pages = project_db.iter_pages(crawl)
            while (page := await asyncio.to_thread(next, pages, None)) is not None:
                context = await asyncio.to_thread(_stored_context, project_db, crawl, page, content_hashes)
                page_categories = await engine.audit_page(context, opts.categories)
                page_results.append(page_categories)
                await asyncio.to_thread(
                    audits.insert_results, audit.id, [r for c in page_categories for r in c.results],
                )

            merged = merge_category_results(page_results)
            result = build_audit_result(crawl.start_url, merged, crawled_pages=len(page_results))
            await asyncio.to_thread(audits.insert_categories, audit.id, merged)
            await asyncio.to_thread(
                audits.complete_audit,
                audit.audit_id,
                overall_score=result.overall_score,
                total_rules=result.total_rules,
                passed_count=result.passed_count,
                warning_count=result.warning_count,
                failed_count=result.failed_count,
                pages_audited=result.crawled_pages,
            )
            await asyncio.to_thread(audits.generate_issues_from_results, audit.id)
        except Exception as exc:
            logger.error("Stored crawl analysis failed", audit_id=audit.audit_id, error=str(exc))
            await asyncio.to_thread(audits.fail_audit, audit.audit_id, str(exc))
            partial = build_audit_result(
                crawl.start_url, merge_category_results(page_results), crawled_pages=len(page_results),
            )
            return partial.model_copy(update={
                "audit_id": audit.audit_id, "crawl_id": crawl.crawl_id, "failed": True, "error": str(exc),
            })

        logger.info(
            "Stored crawl analyzed",
            audit_id=audit.audit_id,
            crawl_id=crawl.crawl_id,
            pages=result.crawled_pages,
            score=result.overall_score,
            elapsed_ms=round((time.perf_counter() - start) * 1000),
        )
        return result.model_copy(update={"audit_id": audit.audit_id, "crawl_id": crawl.crawl_id})
    finally:
        if own_handles:
            handles.close()


def _stored_context(project_db: ProjectDatabase, crawl: Crawl, page: FetchedPage, content_hashes: dict[str, str]):
    context = build_audit_context(page)
    statuses = {link.target_url: link.status_code for link in project_db.get_links(crawl, page.url)}
    for link in context.links:
        link.status_code = statuses.get(link.url)

    if page.ok and page.body:
        first = content_hashes.setdefault(hash_content(page.body), page.url)
        if first != page.url:
            context.extra["duplicate_of"] = first
    return context
