"""Crawl API Routes: crawl without auditing, list stored crawls, re-analyze."""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Query, status
from pydantic import BaseModel, ConfigDict, HttpUrl

from siteaudit.api.deps import Handles
from siteaudit.core.exceptions import AuditNotFoundError
from siteaudit.engines.base import AuditResult
from siteaudit.storage.handles import DatabaseHandles
from siteaudit.storage.paths import extract_domain, sanitize_domain
from siteaudit.workers.audit_tasks import AuditOptions, analyze_stored_crawl, crawl_only, validate_options

logger = structlog.get_logger(__name__)
router = APIRouter()


class CreateCrawlRequest(AuditOptions):
    url: HttpUrl


class CrawlAccepted(BaseModel):
    domain: str
    url: str
    message: str = ""


class CrawlResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    crawl_id: str
    start_url: str
    status: str
    total_pages: int
    error_count: int
    duration_ms: int
    started_at: datetime
    completed_at: datetime | None


class AnalyzeRequest(BaseModel):
    categories: list[str] | None = None
    project_name: str | None = None


async def _run_crawl_task(url: str, options: AuditOptions, handles: DatabaseHandles) -> None:
    try:
        summary = await crawl_only(url, options, handles)
    except Exception as exc:
        logger.error("Background crawl failed", url=url, error=str(exc))
        return
    logger.info("Background crawl finished", crawl_id=summary.crawl_id, pages=summary.pages_crawled)


@router.post(
    "",
    response_model=CrawlAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Crawl a site without running rules",
)
async def create_crawl(
    request: CreateCrawlRequest,
    background_tasks: BackgroundTasks,
    handles: Handles,
) -> CrawlAccepted:
    url = str(request.url)
    options = validate_options(request.model_dump(exclude={"url"}))
    background_tasks.add_task(_run_crawl_task, url, options, handles)
    domain = extract_domain(url)
    return CrawlAccepted(
        domain=domain,
        url=url,
        message=f"Crawl started. Poll /api/v1/crawls/{domain} for stored crawls.",
    )


@router.get("/{domain}", response_model=list[CrawlResponse], summary="Stored crawls for a domain")
def list_crawls(
    domain: str,
    handles: Handles,
    limit: int = Query(20, ge=1, le=200),
) -> list[CrawlResponse]:
    domain = extract_domain(domain)
    if sanitize_domain(domain) not in handles.list_project_domains():
        raise AuditNotFoundError("Project", domain)
    return [CrawlResponse.model_validate(c) for c in handles.project(domain).list_crawls(limit=limit)]


@router.post(
    "/{domain}/{crawl_id}/analyze",
    response_model=AuditResult,
    summary="Run rules against a stored crawl",
)
async def analyze_crawl(
    domain: str,
    crawl_id: str,
    handles: Handles,
    request: AnalyzeRequest | None = None,
) -> AuditResult:
    request = request or AnalyzeRequest()
    return await analyze_stored_crawl(
        domain,
        crawl_id,
        request.categories,
        handles,
        project_name=request.project_name,
    )
