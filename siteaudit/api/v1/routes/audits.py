"""
Audit API Routes

No business logic lives here.
Routes validate input, call the orchestration layer, return responses.
Handlers that only read or write the SQLite stores are plain functions,
so FastAPI runs them in its threadpool instead of on the event loop.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Query, status
from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from siteaudit.api.deps import Handles
from siteaudit.core.exceptions import AuditNotFoundError
from siteaudit.engines.base import AuditComparison, AuditStatus, Issue, IssueSeverity
from siteaudit.models.models import Audit
from siteaudit.storage.audits_db import AuditFilters, ScoreTrendPoint
from siteaudit.storage.handles import DatabaseHandles
from siteaudit.storage.paths import extract_domain
from siteaudit.workers.audit_tasks import AuditOptions, audit_url, start_audit, validate_options

logger = structlog.get_logger(__name__)
router = APIRouter()


# ─────────────────────────────────────────────
# Request / Response Schemas
# ─────────────────────────────────────────────

class CreateAuditRequest(AuditOptions):
    url: HttpUrl


class AuditAccepted(BaseModel):
    audit_id: str
    domain: str
    status: str
    message: str = ""


class AuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    audit_id: str
    domain: str
    project_name: str | None
    crawl_id: str | None
    start_url: str
    status: str
    overall_score: int
    total_rules: int
    passed_count: int
    warning_count: int
    failed_count: int
    pages_audited: int
    error_message: str | None
    started_at: datetime
    completed_at: datetime | None


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: str
    category_name: str
    score: int
    weight: float
    pass_count: int
    warn_count: int
    fail_count: int


class IssueResponse(BaseModel):
    rule_id: str
    rule_name: str
    category_id: str
    severity: IssueSeverity
    message: str
    affected_pages: list[str]
    affected_count: int
    fix_suggestion: str | None
    priority_score: int

    @classmethod
    def from_issue(cls, issue: Issue) -> "IssueResponse":
        return cls(**issue.model_dump(), affected_count=issue.affected_count)


class IssuesPage(BaseModel):
    audit_id: str
    total: int
    items: list[IssueResponse] = Field(default_factory=list)


def _require_audit(handles: DatabaseHandles, audit_id: str) -> Audit:
    audit = handles.audits.get_audit(audit_id)
    if audit is None:
        raise AuditNotFoundError("Audit", audit_id)
    return audit


async def _run_audit_task(url: str, options: AuditOptions, handles: DatabaseHandles, audit_id: str) -> None:
    result = await audit_url(url, options, handles, audit_id=audit_id)
    if result.failed:
        logger.warning("Background audit failed", audit_id=audit_id, error=result.error)


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────

@router.post(
    "",
    response_model=AuditAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a new audit",
    description="Creates the audit record, then runs the audit in the background.",
)
def create_audit(
    request: CreateAuditRequest,
    background_tasks: BackgroundTasks,
    handles: Handles,
) -> AuditAccepted:
    url = str(request.url)
    options = validate_options(request.model_dump(exclude={"url"}))
    audit = start_audit(url, options, handles)
    audit_id = audit.audit_id
    background_tasks.add_task(_run_audit_task, url, options, handles, audit_id)

    logger.info("Audit queued", audit_id=audit_id, url=url, max_pages=options.max_pages)
    return AuditAccepted(
        audit_id=audit_id,
        domain=audit.domain,
        status=audit.status,
        message=f"Audit started. Poll /api/v1/audits/{audit_id} for status.",
    )


@router.get("", response_model=list[AuditResponse], summary="List audits")
def list_audits(
    handles: Handles,
    domain: str | None = Query(None),
    project: str | None = Query(None, description="Project name"),
    audit_status: AuditStatus | None = Query(None, alias="status"),
    since: datetime | None = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> list[AuditResponse]:
    filters = AuditFilters(
        domain=extract_domain(domain) if domain else None,
        project_name=project,
        status=audit_status,
        since=since,
        limit=limit,
        offset=offset,
    )
    return [AuditResponse.model_validate(a) for a in handles.audits.list_audits(filters)]


@router.get("/trend/{domain}", response_model=list[ScoreTrendPoint], summary="Score history for a domain")
def get_score_trend(
    domain: str,
    handles: Handles,
    limit: int = Query(10, ge=1, le=100),
) -> list[ScoreTrendPoint]:
    return handles.audits.get_score_trend(extract_domain(domain), limit=limit)


@router.get("/{audit_id}", response_model=AuditResponse, summary="Get audit status and summary")
def get_audit(audit_id: str, handles: Handles) -> AuditResponse:
    return AuditResponse.model_validate(_require_audit(handles, audit_id))


@router.get("/{audit_id}/categories", response_model=list[CategoryResponse], summary="Category scores")
def get_audit_categories(audit_id: str, handles: Handles) -> list[CategoryResponse]:
    audit = _require_audit(handles, audit_id)
    return [CategoryResponse.model_validate(c) for c in handles.audits.get_categories(audit.id)]


@router.get("/{audit_id}/issues", response_model=IssuesPage, summary="Prioritized issues")
def get_audit_issues(
    audit_id: str,
    handles: Handles,
    severity: IssueSeverity | None = Query(None),
    min_priority: int | None = Query(None, ge=0),
    limit: int | None = Query(None, ge=1, le=1000),
) -> IssuesPage:
    audit = _require_audit(handles, audit_id)
    issues = handles.audits.get_issues(
        audit.id,
        severity=severity.value if severity else None,
        min_priority=min_priority,
        limit=limit,
    )
    return IssuesPage(
        audit_id=audit_id,
        total=len(issues),
        items=[IssueResponse.from_issue(i) for i in issues],
    )


@router.get("/{audit_id}/comparison", response_model=AuditComparison, summary="Comparison with the previous audit")
def get_audit_comparison(audit_id: str, handles: Handles) -> AuditComparison:
    audit = _require_audit(handles, audit_id)
    comparison = handles.audits.get_comparison(audit.id)
    if comparison is None:
        previous = handles.audits.get_previous_audit(audit.domain, audit.audit_id)
        if previous is None or audit.status != AuditStatus.COMPLETED.value:
            raise AuditNotFoundError("Comparison", audit_id)
        comparison = handles.audits.compare_audits(audit.id, previous.id)
    return comparison


@router.delete("/{audit_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an audit")
def delete_audit(audit_id: str, handles: Handles) -> None:
    if not handles.audits.delete_audit(audit_id):
        raise AuditNotFoundError("Audit", audit_id)
    logger.info("Audit deleted", audit_id=audit_id)
