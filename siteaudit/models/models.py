"""
Database Models - relational schema for the three SQLite stores.

Design decisions:
- Integer primary keys; the public identifiers (audit_id, crawl_id) are
  separate unique text columns
- Child rows reference their parent with ON DELETE CASCADE and the
  connection enforces foreign keys, so deleting an audit or crawl leaves
  no orphans
- JSON payloads live in *_json TEXT columns (SQLite has no JSONB)
- Page HTML is zlib-compressed into a BLOB
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from siteaudit.core.database import AuditsBase, LinkCacheBase, ProjectBase, utcnow


# ─────────────────────────────────────────────
# Audits database
# ─────────────────────────────────────────────

class Audit(AuditsBase):
    """A complete audit run for a domain."""
    __tablename__ = "audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    crawl_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)
    # running | completed | failed

    overall_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_rules: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    passed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warning_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_audited: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    config_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    categories: Mapped[list["AuditCategory"]] = relationship(
        "AuditCategory", back_populates="audit", passive_deletes=True, order_by="AuditCategory.id",
    )

    __table_args__ = (
        Index("ix_audits_domain", "domain"),
        Index("ix_audits_started_at", "started_at"),
        Index("ix_audits_status", "status"),
    )


class AuditCategory(AuditsBase):
    __tablename__ = "audit_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[str] = mapped_column(String(50), nullable=False)
    category_name: Mapped[str] = mapped_column(String(255), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    pass_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warn_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fail_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    audit: Mapped[Audit] = relationship("Audit", back_populates="categories")

    __table_args__ = (
        UniqueConstraint("audit_id", "category_id", name="uq_audit_categories_audit_category"),
        Index("ix_audit_categories_audit_id", "audit_id"),
    )


class AuditResultRecord(AuditsBase):
    """One rule outcome on one page."""
    __tablename__ = "audit_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[str] = mapped_column(String(50), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    page_url_hash: Mapped[str | None] = mapped_column(String(16), nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False)   # pass | warn | fail
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_results_audit_id", "audit_id"),
        Index("ix_audit_results_rule", "audit_id", "rule_id"),
        Index("ix_audit_results_status", "audit_id", "status"),
    )


class IssueRecord(AuditsBase):
    __tablename__ = "issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category_id: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)   # critical | warning | info
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    affected_pages_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    affected_pages_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fix_suggestion: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_issues_audit_id", "audit_id"),
        Index("ix_issues_priority", "audit_id", "priority_score"),
    )


class AuditComparisonRecord(AuditsBase):
    __tablename__ = "audit_comparisons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    current_audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    previous_audit_id: Mapped[int] = mapped_column(Integer, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    score_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    category_deltas_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    new_issues_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fixed_issues_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    compared_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_comparisons_current", "current_audit_id"),
        Index("ix_audit_comparisons_domain", "domain"),
    )


# ─────────────────────────────────────────────
# Project database (one file per domain)
# ─────────────────────────────────────────────

class Project(ProjectBase):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Crawl(ProjectBase):
    __tablename__ = "crawls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crawl_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    start_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)
    # running | completed | failed
    config_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_pages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_crawls_project_id", "project_id"),
        Index("ix_crawls_started_at", "started_at"),
    )


class PageRecord(ProjectBase):
    __tablename__ = "pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crawl_id: Mapped[int] = mapped_column(Integer, ForeignKey("crawls.id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    url_hash: Mapped[str] = mapped_column(String(16), nullable=False)
    final_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_code: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    html_compressed: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    html_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    headers_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    redirect_chain_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    load_time_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    fetch_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("crawl_id", "url_hash", name="uq_pages_crawl_url"),
        Index("ix_pages_crawl_id", "crawl_id"),
        Index("ix_pages_status_code", "crawl_id", "status_code"),
    )


class LinkRecord(ProjectBase):
    __tablename__ = "links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crawl_id: Mapped[int] = mapped_column(Integer, ForeignKey("crawls.id", ondelete="CASCADE"), nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    anchor_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_nofollow: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_links_crawl_id", "crawl_id"),
        Index("ix_links_target", "crawl_id", "target_url"),
    )


class ImageRecord(ProjectBase):
    __tablename__ = "images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crawl_id: Mapped[int] = mapped_column(Integer, ForeignKey("crawls.id", ondelete="CASCADE"), nullable=False)
    page_url: Mapped[str] = mapped_column(Text, nullable=False)
    src: Mapped[str] = mapped_column(Text, nullable=False)
    alt: Mapped[str | None] = mapped_column(Text, nullable=True)
    width: Mapped[str | None] = mapped_column(String(32), nullable=True)
    height: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_images_crawl_id", "crawl_id"),
    )


class CrawlStateRecord(ProjectBase):
    """Last fetch outcome per (seed, URL); the resume cache."""
    __tablename__ = "crawl_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seed_url: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    url_hash: Mapped[str] = mapped_column(String(16), nullable=False)
    crawl_id: Mapped[str] = mapped_column(String(64), nullable=False)   # Crawl holding the stored page
    status: Mapped[str] = mapped_column(String(10), nullable=False)     # ok | failed
    status_code: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    visited_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("seed_url", "url_hash", name="uq_crawl_state_seed_url"),
    )


# ─────────────────────────────────────────────
# Link cache database
# ─────────────────────────────────────────────

class LinkCacheEntry(LinkCacheBase):
    __tablename__ = "link_cache"

    url: Mapped[str] = mapped_column(Text, primary_key=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    checked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_link_cache_checked_at", "checked_at"),
    )
