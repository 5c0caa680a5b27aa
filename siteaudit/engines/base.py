"""
Type contracts shared by the crawler, the audit engine and the storage layer.

Design principles:
- Rule results are pydantic models so they serialize straight into the
  details_json / category_deltas_json columns
- Fetched pages and parsed contexts are plain dataclasses: they carry
  parser objects and are never serialized as a whole
- A page-level fetch failure is data (FetchedPage.error), never an exception
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from bs4 import BeautifulSoup
from pydantic import BaseModel, Field, JsonValue

from siteaudit.core.database import utcnow


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class RuleStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class AuditStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"   # At least one page fails the rule
    WARNING = "warning"     # Only warnings
    INFO = "info"


# ─────────────────────────────────────────────
# Rule / category / audit results
# ─────────────────────────────────────────────

class RuleResult(BaseModel):
    """
    Outcome of one rule on one page.

    Rule bodies fill status, score, message and details; the audit engine
    stamps the identity fields (rule_id, rule_name, category_id, weight,
    page_url) before the result leaves the engine.
    """
    status: RuleStatus
    score: int = Field(ge=0, le=100)
    message: str = ""
    details: dict[str, JsonValue] = Field(default_factory=dict)
    rule_id: str = ""
    rule_name: str = ""
    category_id: str = ""
    weight: int = Field(ge=0, le=100, default=1)
    page_url: str | None = None


class CategoryResult(BaseModel):
    category_id: str
    category_name: str
    score: int = Field(ge=0, le=100)
    weight: int
    pass_count: int = 0
    warn_count: int = 0
    fail_count: int = 0
    results: list[RuleResult] = Field(default_factory=list)


class CategoryDelta(BaseModel):
    category_id: str
    category_name: str
    previous_score: int
    current_score: int
    delta: int


class AuditComparison(BaseModel):
    current_audit_id: int
    previous_audit_id: int
    domain: str
    score_delta: int
    category_deltas: list[CategoryDelta] = Field(default_factory=list)
    new_issues_count: int = 0
    fixed_issues_count: int = 0
    compared_at: datetime = Field(default_factory=utcnow)


class Issue(BaseModel):
    """One rule's warnings/failures aggregated across every affected page."""
    rule_id: str
    rule_name: str
    category_id: str
    severity: IssueSeverity
    message: str
    affected_pages: list[str] = Field(default_factory=list)
    fix_suggestion: str | None = None
    priority_score: int = 0

    @property
    def affected_count(self) -> int:
        return len(self.affected_pages)


class AuditResult(BaseModel):
    """The complete, internally consistent result handed to renderers."""
    url: str
    timestamp: datetime = Field(default_factory=utcnow)
    crawled_pages: int = 0
    overall_score: int = Field(ge=0, le=100, default=0)
    category_results: list[CategoryResult] = Field(default_factory=list)
    total_rules: int = 0
    passed_count: int = 0
    warning_count: int = 0
    failed_count: int = 0
    audit_id: str | None = None
    crawl_id: str | None = None
    comparison: AuditComparison | None = None
    failed: bool = False
    error: str | None = None


class CrawlSummary(BaseModel):
    """Result of a crawl that ran no rules."""
    crawl_id: str
    start_url: str
    domain: str
    pages_crawled: int
    pages_failed: int
    pages_skipped: int
    pages_resumed: int = 0
    duplicate_pages: int = 0
    duration_ms: int = 0
    urls: list[str] = Field(default_factory=list)


# ─────────────────────────────────────────────
# Fetched page and parsed audit context
# ─────────────────────────────────────────────

@dataclass
class FetchedPage:
    """Raw outcome of a single HTTP fetch."""
    url: str
    status_code: int = 0
    final_url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    content_type: str = ""
    response_time_ms: float = 0.0
    redirect_chain: list[str] = field(default_factory=list)
    error: str | None = None
    depth: int = 0
    fetched_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 400

    @property
    def is_html(self) -> bool:
        return "html" in self.content_type.lower() or (not self.content_type and bool(self.body))


@dataclass
class LinkInfo:
    url: str                  # Absolute URL
    href: str                 # As written in the document
    text: str = ""
    is_internal: bool = False
    is_nofollow: bool = False
    status_code: int | None = None   # Filled by the link checker
    error: str | None = None


@dataclass
class ImageInfo:
    src: str
    alt: str | None = None
    width: str | None = None
    height: str | None = None
    loading: str | None = None


@dataclass
class AuditContext:
    """
    Everything a rule may read about one page.

    Built once per page and shared read-only by every rule run against it.
    """
    url: str
    page: FetchedPage
    soup: BeautifulSoup
    links: list[LinkInfo] = field(default_factory=list)
    images: list[ImageInfo] = field(default_factory=list)
    robots_txt: str | None = None
    sitemap_urls: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def html(self) -> str:
        return self.page.body

    @property
    def headers(self) -> dict[str, str]:
        return self.page.headers

    @property
    def status_code(self) -> int:
        return self.page.status_code

    @property
    def response_time_ms(self) -> float:
        return self.page.response_time_ms

    @property
    def redirect_chain(self) -> list[str]:
        return self.page.redirect_chain

    @property
    def fetch_error(self) -> str | None:
        return self.page.error

    @property
    def fetch_failed(self) -> bool:
        return not self.page.ok
