"""
Audit category definitions.

Category weights are relative: the overall score is the weight-normalized
mean of category scores, so the table does not have to sum to 100 (it does).
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CategoryDefinition:
    id: str
    name: str
    description: str
    weight: int


CATEGORIES: tuple[CategoryDefinition, ...] = (
    CategoryDefinition("core", "Core", "Meta tags, canonical, H1, indexing directives, title uniqueness", 12),
    CategoryDefinition("technical", "Technical SEO", "robots.txt, sitemap, SSL, status codes", 7),
    CategoryDefinition("perf", "Performance", "Response time, compression, caching, page weight", 12),
    CategoryDefinition("links", "Links", "Internal and external links, anchor text, broken links", 8),
    CategoryDefinition("images", "Images", "Alt attributes, dimensions, lazy loading, formats", 8),
    CategoryDefinition("security", "Security", "HTTPS, security headers, mixed content", 8),
    CategoryDefinition("crawl", "Crawlability", "Sitemap, pagination, indexability signals", 5),
    CategoryDefinition("schema", "Structured Data", "JSON-LD and Schema.org markup", 5),
    CategoryDefinition("a11y", "Accessibility", "WCAG signals, screen reader support", 4),
    CategoryDefinition("content", "Content", "Text quality, duplicate content, heading structure", 5),
    CategoryDefinition("social", "Social", "Open Graph and Twitter Card metadata", 3),
    CategoryDefinition("eeat", "E-E-A-T", "Experience, expertise, authority and trust signals", 3),
    CategoryDefinition("url", "URL Structure", "URL length, parameters, slug quality", 3),
    CategoryDefinition("mobile", "Mobile", "Viewport, font size, tap targets", 2),
    CategoryDefinition("i18n", "Internationalization", "Language declarations and hreflang", 2),
    CategoryDefinition("legal", "Legal Compliance", "Privacy policy and cookie consent", 1),
    CategoryDefinition("js", "JavaScript Rendering", "Server-rendered content signals", 5),
    CategoryDefinition("redirect", "Redirects", "Redirect types, chains and loops", 3),
    CategoryDefinition("htmlval", "HTML Validation", "DOCTYPE, charset, head integrity, document size", 2),
    CategoryDefinition("geo", "AI/GEO Readiness", "Semantic HTML and AI crawler access", 2),
)

_BY_ID = {c.id: c for c in CATEGORIES}


def get_category(category_id: str) -> CategoryDefinition | None:
    return _BY_ID.get(category_id)


def get_category_ids() -> list[str]:
    return [c.id for c in CATEGORIES]


def validate_category_ids(category_ids: list[str]) -> list[str]:
    """Return the ids that are not known categories."""
    return [c for c in category_ids if c not in _BY_ID]
