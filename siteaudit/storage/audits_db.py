"""
Audits Database - durable history of every audit run.

Tables: audits, audit_categories, audit_results, issues, audit_comparisons.
Child tables are keyed by the audit's integer primary key and cascade on
delete. Batch inserts run in one transaction each, so a reader never sees
half of a page's results.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select

from siteaudit.core.database import AuditsBase, SQLiteStore, utcnow
from siteaudit.core.exceptions import AuditNotFoundError, StorageError
from siteaudit.engines.base import (
    AuditComparison,
    AuditStatus,
    CategoryDelta,
    CategoryResult,
    Issue,
    RuleResult,
    RuleStatus,
)
from siteaudit.engines.prioritization.engine import build_issues
from siteaudit.models.models import (
    Audit,
    AuditCategory,
    AuditComparisonRecord,
    AuditResultRecord,
    IssueRecord,
)
from siteaudit.storage.paths import generate_id, hash_url

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Query / stats models
# ─────────────────────────────────────────────

class AuditFilters(BaseModel):
    domain: str | None = None
    project_name: str | None = None
    status: AuditStatus | None = None
    since: datetime | None = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ScoreTrendPoint(BaseModel):
    audit_id: str
    score: int
    date: datetime


class AuditsDbStats(BaseModel):
    total_audits: int
    completed_audits: int
    failed_audits: int
    running_audits: int
    domains: int
    total_results: int
    total_issues: int
    file_size_bytes: int


def to_rule_result(row: AuditResultRecord) -> RuleResult:
    return RuleResult(
        status=RuleStatus(row.status),
        score=row.score,
        message=row.message,
        details=json.loads(row.details_json) if row.details_json else {},
        rule_id=row.rule_id,
        rule_name=row.rule_name,
        category_id=row.category_id,
        weight=row.weight,
        page_url=row.page_url,
    )


def to_comparison(row: AuditComparisonRecord) -> AuditComparison:
    return AuditComparison(
        current_audit_id=row.current_audit_id,
        previous_audit_id=row.previous_audit_id,
        domain=row.domain,
        score_delta=row.score_delta,
        category_deltas=[CategoryDelta.model_validate(d) for d in json.loads(row.category_deltas_json)],
        new_issues_count=row.new_issues_count,
        fixed_issues_count=row.fixed_issues_count,
        compared_at=row.compared_at,
    )


def issue_row(audit_pk: int, issue: Issue) -> IssueRecord:
    return IssueRecord(
        audit_id=audit_pk,
        rule_id=issue.rule_id,
        rule_name=issue.rule_name,
        category_id=issue.category_id,
        severity=issue.severity.value,
        message=issue.message,
        affected_pages_json=json.dumps(issue.affected_pages),
        affected_pages_count=issue.affected_count,
        fix_suggestion=issue.fix_suggestion,
        priority_score=issue.priority_score,
    )


def to_issue(row: IssueRecord) -> Issue:
    return Issue(
        rule_id=row.rule_id,
        rule_name=row.rule_name,
        category_id=row.category_id,
        severity=row.severity,
        message=row.message,
        affected_pages=json.loads(row.affected_pages_json),
        fix_suggestion=row.fix_suggestion,
        priority_score=row.priority_score,
    )


# ─────────────────────────────────────────────
# Audits Database
# ─────────────────────────────────────────────

class AuditsDatabase(SQLiteStore):

    def __init__(self, path: Path):
        super().__init__(path, AuditsBase)

    # ── Audit lifecycle ──────────────────────

    def create_audit(
        self,
        *,
        domain: str,
        start_url: str,
        audit_id: str | None = None,
        project_name: str | None = None,
        crawl_id: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> Audit:
        audit = Audit(
            audit_id=audit_id or generate_id(),
            domain=domain,
            project_name=project_name,
            crawl_id=crawl_id,
            start_url=start_url,
            status=AuditStatus.RUNNING.value,
            overall_score=0,
            config_json=json.dumps(config, default=str) if config is not None else None,
            started_at=utcnow(),
        )
        with self.transaction() as session:
            session.add(audit)
            session.flush()
        logger.info("Audit created", audit_id=audit.audit_id, domain=domain)
        return audit

    def complete_audit(
        self,
        audit_id: str,
        *,
        overall_score: int,
        total_rules: int = 0,
        passed_count: int = 0,
        warning_count: int = 0,
        failed_count: int = 0,
        pages_audited: int = 0,
    ) -> Audit:
        with self.transaction() as session:
            audit = self._require(session, audit_id)
            if audit.status != AuditStatus.RUNNING.value:
                raise StorageError(f"Audit {audit_id} is already {audit.status}")
            audit.overall_score = overall_score
            audit.total_rules = total_rules
            audit.passed_count = passed_count
            audit.warning_count = warning_count
            audit.failed_count = failed_count
            audit.pages_audited = pages_audited
            audit.status = AuditStatus.COMPLETED.value
            audit.completed_at = utcnow()
        logger.info("Audit completed", audit_id=audit_id, score=overall_score, pages=pages_audited)
        return audit

    def fail_audit(self, audit_id: str, error: str | None = None) -> Audit:
        with self.transaction() as session:
            audit = self._require(session, audit_id)
            if audit.status != AuditStatus.RUNNING.value:
                logger.warning("Audit already finalized", audit_id=audit_id, status=audit.status)
                return audit
            audit.status = AuditStatus.FAILED.value
            audit.error_message = error
            audit.completed_at = utcnow()
        logger.info("Audit failed", audit_id=audit_id, error=error)
        return audit

    def attach_crawl(self, audit_id: str, crawl_id: str) -> Audit:
        """Link a running audit (created before its crawl) to the crawl feeding it."""
        with self.transaction() as session:
            audit = self._require(session, audit_id)
            if audit.status != AuditStatus.RUNNING.value:
                raise StorageError(f"Audit {audit_id} is already {audit.status}")
            audit.crawl_id = crawl_id
        return audit

    def delete_audit(self, audit_id: str) -> bool:
        with self.transaction() as session:
            result = session.execute(delete(Audit).where(Audit.audit_id == audit_id))
        return result.rowcount > 0

    # ── Audit lookups ────────────────────────

    def get_audit(self, audit_id: str) -> Audit | None:
        with self.session() as session:
            return session.scalar(select(Audit).where(Audit.audit_id == audit_id))

    def get_audit_by_id(self, pk: int) -> Audit | None:
        with self.session() as session:
            return session.get(Audit, pk)

    def get_latest_audit(self, domain: str) -> Audit | None:
        with self.session() as session:
            return session.scalar(
                select(Audit)
                .where(Audit.domain == domain, Audit.status == AuditStatus.COMPLETED.value)
                .order_by(Audit.started_at.desc(), Audit.id.desc())
                .limit(1)
            )

    def get_previous_audit(self, domain: str, before_audit_id: str) -> Audit | None:
        """Most recent completed audit for the domain other than before_audit_id."""
        with self.session() as session:
            current = session.scalar(select(Audit).where(Audit.audit_id == before_audit_id))
            query = select(Audit).where(
                Audit.domain == domain,
                Audit.status == AuditStatus.COMPLETED.value,
                Audit.audit_id != before_audit_id,
            )
            if current is not None:
                query = query.where(Audit.id < current.id)
            return session.scalar(query.order_by(Audit.started_at.desc(), Audit.id.desc()).limit(1))

    def list_audits(self, filters: AuditFilters | None = None) -> list[Audit]:
        filters = filters or AuditFilters()
        query = select(Audit)
        if filters.domain:
            query = query.where(Audit.domain == filters.domain)
        if filters.project_name:
            query = query.where(Audit.project_name == filters.project_name)
        if filters.status:
            query = query.where(Audit.status == filters.status.value)
        if filters.since:
            query = query.where(Audit.started_at >= filters.since)
        query = query.order_by(Audit.started_at.desc(), Audit.id.desc()).offset(filters.offset).limit(filters.limit)

        with self.session() as session:
            return list(session.scalars(query))

    # ── Child rows ───────────────────────────

    def insert_categories(self, audit_pk: int, categories: Iterable[CategoryResult]) -> int:
        rows = [
            AuditCategory(
                audit_id=audit_pk,
                category_id=c.category_id,
                category_name=c.category_name,
                score=c.score,
                weight=c.weight,
                pass_count=c.pass_count,
                warn_count=c.warn_count,
                fail_count=c.fail_count,
            )
            for c in categories
        ]
        with self.transaction() as session:
            self._require_pk(session, audit_pk)
            session.add_all(rows)
        return len(rows)

    def insert_results(self, audit_pk: int, results: Iterable[RuleResult]) -> int:
        rows = [
            AuditResultRecord(
                audit_id=audit_pk,
                category_id=r.category_id,
                rule_id=r.rule_id,
                rule_name=r.rule_name or r.rule_id,
                page_url=r.page_url,
                page_url_hash=hash_url(r.page_url) if r.page_url else None,
                status=RuleStatus(r.status).value,
                score=r.score,
                weight=r.weight,
                message=r.message,
                details_json=json.dumps(r.details) if r.details else None,
            )
            for r in results
        ]
        with self.transaction() as session:
            self._require_pk(session, audit_pk)
            session.add_all(rows)
        return len(rows)

    def insert_issues(self, audit_pk: int, issues: Iterable[Issue]) -> int:
        rows = [issue_row(audit_pk, i) for i in issues]
        with self.transaction() as session:
            self._require_pk(session, audit_pk)
            session.add_all(rows)
        return len(rows)

    def get_categories(self, audit_pk: int) -> list[AuditCategory]:
        with self.session() as session:
            return list(session.scalars(
                select(AuditCategory).where(AuditCategory.audit_id == audit_pk).order_by(AuditCategory.id)
            ))

    def get_results(
        self,
        audit_pk: int,
        status: RuleStatus | None = None,
        category_id: str | None = None,
        rule_id: str | None = None,
    ) -> list[RuleResult]:
        query = select(AuditResultRecord).where(AuditResultRecord.audit_id == audit_pk)
        if status:
            query = query.where(AuditResultRecord.status == RuleStatus(status).value)
        if category_id:
            query = query.where(AuditResultRecord.category_id == category_id)
        if rule_id:
            query = query.where(AuditResultRecord.rule_id == rule_id)

        with self.session() as session:
            return [to_rule_result(row) for row in session.scalars(query.order_by(AuditResultRecord.id))]

    def get_issues(
        self,
        audit_pk: int,
        severity: str | None = None,
        min_priority: int | None = None,
        limit: int | None = None,
    ) -> list[Issue]:
        query = select(IssueRecord).where(IssueRecord.audit_id == audit_pk)
        if severity:
            query = query.where(IssueRecord.severity == severity)
        if min_priority is not None:
            query = query.where(IssueRecord.priority_score >= min_priority)
        query = query.order_by(IssueRecord.priority_score.desc(), IssueRecord.affected_pages_count.desc())
        if limit:
            query = query.limit(limit)

        with self.session() as session:
            return [to_issue(row) for row in session.scalars(query)]

    def generate_issues_from_results(self, audit_pk: int) -> int:
        """Rebuild the audit's issues from its stored warn/fail results."""
        results = [
            r for r in self.get_results(audit_pk)
            if r.status in (RuleStatus.WARN, RuleStatus.FAIL)
        ]
        issues = build_issues(results)
        with self.transaction() as session:
            self._require_pk(session, audit_pk)
            session.execute(delete(IssueRecord).where(IssueRecord.audit_id == audit_pk))
            session.add_all([issue_row(audit_pk, i) for i in issues])
        logger.debug("Issues generated", audit_pk=audit_pk, count=len(issues))
        return len(issues)

    # ── Comparisons ──────────────────────────

    def compare_audits(self, current_pk: int, previous_pk: int) -> AuditComparison:
        """
        Diff two audits and store the comparison.

        A rule id is a new issue when it has a fail result in the current
        audit and none in the previous one; fixed is the reverse.
        """
        current = self.get_audit_by_id(current_pk)
        if current is None:
            raise AuditNotFoundError("Audit", current_pk)
        previous = self.get_audit_by_id(previous_pk)
        if previous is None:
            raise AuditNotFoundError("Audit", previous_pk)

        previous_scores = {c.category_id: c.score for c in self.get_categories(previous_pk)}
        deltas = [
            CategoryDelta(
                category_id=c.category_id,
                category_name=c.category_name,
                previous_score=previous_scores.get(c.category_id, 0),
                current_score=c.score,
                delta=c.score - previous_scores.get(c.category_id, 0),
            )
            for c in self.get_categories(current_pk)
        ]

        current_failing = self._failing_rule_ids(current_pk)
        previous_failing = self._failing_rule_ids(previous_pk)

        comparison = AuditComparison(
            current_audit_id=current_pk,
            previous_audit_id=previous_pk,
            domain=current.domain,
            score_delta=current.overall_score - previous.overall_score,
            category_deltas=deltas,
            new_issues_count=len(current_failing - previous_failing),
            fixed_issues_count=len(previous_failing - current_failing),
        )

        with self.transaction() as session:
            session.add(AuditComparisonRecord(
                current_audit_id=current_pk,
                previous_audit_id=previous_pk,
                domain=comparison.domain,
                score_delta=comparison.score_delta,
                category_deltas_json=json.dumps([d.model_dump() for d in deltas]),
                new_issues_count=comparison.new_issues_count,
                fixed_issues_count=comparison.fixed_issues_count,
                compared_at=comparison.compared_at,
            ))
        return comparison

    def get_comparison(self, current_pk: int) -> AuditComparison | None:
        with self.session() as session:
            row = session.scalar(
                select(AuditComparisonRecord)
                .where(AuditComparisonRecord.current_audit_id == current_pk)
                .order_by(AuditComparisonRecord.id.desc())
                .limit(1)
            )
            return to_comparison(row) if row else None

    def get_score_trend(self, domain: str, limit: int = 10) -> list[ScoreTrendPoint]:
        """Scores of the last completed audits for a domain, oldest first."""
        with self.session() as session:
            rows = session.execute(
                select(Audit.audit_id, Audit.overall_score, Audit.started_at)
                .where(Audit.domain == domain, Audit.status == AuditStatus.COMPLETED.value)
                .order_by(Audit.started_at.desc(), Audit.id.desc())
                .limit(limit)
            ).all()
        return [ScoreTrendPoint(audit_id=a, score=s, date=d) for a, s, d in reversed(rows)]

    def get_stats(self) -> AuditsDbStats:
        with self.session() as session:
            by_status = dict(session.execute(select(Audit.status, func.count()).group_by(Audit.status)).all())
            return AuditsDbStats(
                total_audits=sum(by_status.values()),
                completed_audits=by_status.get(AuditStatus.COMPLETED.value, 0),
                failed_audits=by_status.get(AuditStatus.FAILED.value, 0),
                running_audits=by_status.get(AuditStatus.RUNNING.value, 0),
                domains=session.scalar(select(func.count(func.distinct(Audit.domain)))) or 0,
                total_results=session.scalar(select(func.count()).select_from(AuditResultRecord)) or 0,
                total_issues=session.scalar(select(func.count()).select_from(IssueRecord)) or 0,
                file_size_bytes=self.path.stat().st_size if self.path.exists() else 0,
            )

    # ── Internals ────────────────────────────

    def _failing_rule_ids(self, audit_pk: int) -> set[str]:
        with self.session() as session:
            return set(session.scalars(
                select(AuditResultRecord.rule_id).where(
                    AuditResultRecord.audit_id == audit_pk,
                    AuditResultRecord.status == RuleStatus.FAIL.value,
                ).distinct()
            ))

    @staticmethod
    def _require(session, audit_id: str) -> Audit:
        audit = session.scalar(select(Audit).where(Audit.audit_id == audit_id))
        if audit is None:
            raise AuditNotFoundError("Audit", audit_id)
        return audit

    @staticmethod
    def _require_pk(session, audit_pk: int) -> None:
        if session.get(Audit, audit_pk) is None:
            raise AuditNotFoundError("Audit", audit_pk)
