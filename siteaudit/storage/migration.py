"""
JSON -> SQLite migration for the legacy flat-file layout.

Legacy layout under a base directory:
- .siteaudit/crawls/<crawl-id>.json   one crawl with its pages
- .siteaudit/reports/<report-id>.json one audit report

Each file is imported independently: a bad file is reported and skipped,
a record whose id already exists is skipped (re-running is safe), and a
record that fails halfway is deleted again so the next run retries it.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from siteaudit.core.categories import get_category
from siteaudit.engines.base import CategoryResult, FetchedPage, RuleResult, RuleStatus
from siteaudit.storage.handles import DatabaseHandles
from siteaudit.storage.paths import extract_domain, legacy_crawls_dir, legacy_reports_dir

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Legacy file formats
# ─────────────────────────────────────────────

class _LegacyModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LegacyPage(_LegacyModel):
    url: str
    status: int = 0
    depth: int = 0
    html: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    load_time: float = Field(default=0.0, alias="loadTime")


class LegacyCrawlStats(_LegacyModel):
    total_pages: int | None = Field(default=None, alias="totalPages")
    duration: int = 0
    error_count: int = Field(default=0, alias="errorCount")


class LegacyCrawl(_LegacyModel):
    id: str
    url: str
    project: str | None = None
    config: dict[str, Any] | None = None
    pages: list[LegacyPage] = Field(default_factory=list)
    stats: LegacyCrawlStats | None = None


class LegacyRuleResult(_LegacyModel):
    rule_id: str = Field(alias="ruleId")
    status: RuleStatus
    score: int = Field(ge=0, le=100)
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class LegacyCategoryResult(_LegacyModel):
    category_id: str = Field(alias="categoryId")
    score: int = Field(ge=0, le=100)
    pass_count: int = Field(default=0, alias="passCount")
    warn_count: int = Field(default=0, alias="warnCount")
    fail_count: int = Field(default=0, alias="failCount")
    results: list[LegacyRuleResult] = Field(default_factory=list)


class LegacyReportStats(_LegacyModel):
    total_rules: int = Field(default=0, alias="totalRules")
    passed: int = 0
    warnings: int = 0
    failed: int = 0


class LegacyReport(_LegacyModel):
    id: str
    url: str
    project: str | None = None
    crawl_id: str | None = Field(default=None, alias="crawlId")
    config: dict[str, Any] | None = None
    overall_score: int = Field(default=0, ge=0, le=100, alias="overallScore")
    category_results: list[LegacyCategoryResult] = Field(default_factory=list, alias="categoryResults")
    stats: LegacyReportStats | None = None


# ─────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────

class JsonFileDetection(BaseModel):
    crawl_count: int = 0
    report_count: int = 0

    @property
    def has_crawls(self) -> bool:
        return self.crawl_count > 0

    @property
    def has_reports(self) -> bool:
        return self.report_count > 0


class MigrationStats(BaseModel):
    crawls_migrated: int = 0
    crawls_skipped: int = 0
    crawl_errors: list[str] = Field(default_factory=list)
    reports_migrated: int = 0
    reports_skipped: int = 0
    report_errors: list[str] = Field(default_factory=list)
    backup_created: bool = False


class MigrationStatus(BaseModel):
    needs_migration: bool
    crawls_to_migrate: int
    reports_to_migrate: int
    has_backup: bool


def _json_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.suffix == ".json" and p.is_file())


def detect_json_files(base_dir: Path) -> JsonFileDetection:
    return JsonFileDetection(
        crawl_count=len(_json_files(legacy_crawls_dir(base_dir))),
        report_count=len(_json_files(legacy_reports_dir(base_dir))),
    )


def get_migration_status(base_dir: Path) -> MigrationStatus:
    detection = detect_json_files(base_dir)
    return MigrationStatus(
        needs_migration=detection.has_crawls or detection.has_reports,
        crawls_to_migrate=detection.crawl_count,
        reports_to_migrate=detection.report_count,
        has_backup=any(_backup_path(d).exists() for d in (legacy_crawls_dir(base_dir), legacy_reports_dir(base_dir))),
    )


# ─────────────────────────────────────────────
# Per-file importers
# ─────────────────────────────────────────────

def _load(path: Path, model: type[_LegacyModel]):
    return model.model_validate(json.loads(path.read_text(encoding="utf-8")))


def migrate_crawl_file(path: Path, handles: DatabaseHandles) -> bool:
    """Import one crawl file. Returns False when the crawl already exists."""
    crawl = _load(path, LegacyCrawl)
    project_db = handles.project(extract_domain(crawl.url))
    if project_db.get_crawl(crawl.id) is not None:
        return False

    record = project_db.create_crawl(
        start_url=crawl.url, crawl_id=crawl.id, project_name=crawl.project, config=crawl.config,
    )
    try:
        project_db.insert_pages(record, [
            FetchedPage(
                url=page.url,
                status_code=page.status,
                depth=page.depth,
                body=page.html,
                headers={k.lower(): v for k, v in page.headers.items()},
                content_type=page.headers.get("content-type", page.headers.get("Content-Type", "")),
                response_time_ms=page.load_time,
            )
            for page in crawl.pages
        ])
        stats = crawl.stats or LegacyCrawlStats()
        project_db.complete_crawl(
            crawl.id,
            total_pages=stats.total_pages if stats.total_pages is not None else len(crawl.pages),
            error_count=stats.error_count,
            duration_ms=stats.duration,
        )
    except Exception:
        project_db.delete_crawl(crawl.id)
        raise
    return True


def migrate_report_file(path: Path, handles: DatabaseHandles) -> bool:
    """Import one report file. Returns False when the audit already exists."""
    report = _load(path, LegacyReport)
    audits = handles.audits
    if audits.get_audit(report.id) is not None:
        return False

    audit = audits.create_audit(
        audit_id=report.id,
        domain=extract_domain(report.url),
        start_url=report.url,
        project_name=report.project,
        crawl_id=report.crawl_id,
        config=report.config,
    )
    try:
        # Legacy reports carry neither category weights nor rule names
        weight = round(100 / len(report.category_results)) if report.category_results else 0
        categories = []
        for cat in report.category_results:
            definition = get_category(cat.category_id)
            categories.append(CategoryResult(
                category_id=cat.category_id,
                category_name=definition.name if definition else cat.category_id,
                score=cat.score,
                weight=weight,
                pass_count=cat.pass_count,
                warn_count=cat.warn_count,
                fail_count=cat.fail_count,
                results=[
                    RuleResult(
                        status=r.status,
                        score=r.score,
                        message=r.message,
                        details=r.details,
                        rule_id=r.rule_id,
                        rule_name=r.rule_id,
                        category_id=cat.category_id,
                        page_url=report.url,
                    )
                    for r in cat.results
                ],
            ))

        audits.insert_categories(audit.id, categories)
        audits.insert_results(audit.id, [r for c in categories for r in c.results])
        stats = report.stats or LegacyReportStats()
        audits.complete_audit(
            report.id,
            overall_score=report.overall_score,
            total_rules=stats.total_rules,
            passed_count=stats.passed,
            warning_count=stats.warnings,
            failed_count=stats.failed,
            pages_audited=1,
        )
        audits.generate_issues_from_results(audit.id)
    except Exception:
        audits.delete_audit(report.id)
        raise
    return True


# ─────────────────────────────────────────────
# Migration entry points
# ─────────────────────────────────────────────

def _backup_path(directory: Path) -> Path:
    return directory.with_name(f"{directory.name}.bak")


def _backup_directory(directory: Path) -> bool:
    """Rename directory to <name>.bak, replacing an older backup."""
    if not directory.exists():
        return False
    backup = _backup_path(directory)
    if backup.exists():
        shutil.rmtree(backup)
    directory.rename(backup)
    return True


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return f"invalid format ({exc.error_count()} errors)"
    if isinstance(exc, json.JSONDecodeError):
        return f"invalid JSON: {exc.msg} at line {exc.lineno}"
    return str(exc)


def migrate_json_to_sqlite(
    base_dir: Path,
    handles: DatabaseHandles,
    *,
    dry_run: bool = False,
    backup: bool = True,
) -> MigrationStats:
    """
    Import every legacy crawl and report file under base_dir.

    dry_run only counts the files. With backup, each directory that had at
    least one successful import is renamed to <dir>.bak afterwards.
    """
    stats = MigrationStats()
    if dry_run:
        detection = detect_json_files(base_dir)
        stats.crawls_migrated = detection.crawl_count
        stats.reports_migrated = detection.report_count
        return stats

    crawls_dir = legacy_crawls_dir(base_dir)
    for path in _json_files(crawls_dir):
        try:
            if migrate_crawl_file(path, handles):
                stats.crawls_migrated += 1
            else:
                stats.crawls_skipped += 1
        except Exception as exc:
            logger.warning("Crawl file migration failed", file=path.name, error=str(exc))
            stats.crawl_errors.append(f"{path.name}: {_describe(exc)}")
    if backup and stats.crawls_migrated > 0 and _backup_directory(crawls_dir):
        stats.backup_created = True

    reports_dir = legacy_reports_dir(base_dir)
    for path in _json_files(reports_dir):
        try:
            if migrate_report_file(path, handles):
                stats.reports_migrated += 1
            else:
                stats.reports_skipped += 1
        except Exception as exc:
            logger.warning("Report file migration failed", file=path.name, error=str(exc))
            stats.report_errors.append(f"{path.name}: {_describe(exc)}")
    if backup and stats.reports_migrated > 0 and _backup_directory(reports_dir):
        stats.backup_created = True

    logger.info(
        "JSON migration finished",
        crawls=stats.crawls_migrated,
        crawls_skipped=stats.crawls_skipped,
        reports=stats.reports_migrated,
        reports_skipped=stats.reports_skipped,
        errors=len(stats.crawl_errors) + len(stats.report_errors),
    )
    return stats


def restore_from_backup(base_dir: Path) -> bool:
    """Move *.bak directories back into place (undo a migration's backup)."""
    restored = False
    for directory in (legacy_crawls_dir(base_dir), legacy_reports_dir(base_dir)):
        backup = _backup_path(directory)
        if backup.exists():
            if directory.exists():
                shutil.rmtree(directory)
            backup.rename(directory)
            restored = True
    return restored
