"""
Built-in rules.

A compact set of page-level checks covering the core, technical, content,
links, images, security, performance and redirect categories. Each rule
puts a `recommendation` in its details when it does not pass; issue
generation surfaces it as the fix suggestion.
"""

from __future__ import annotations

from urllib.parse import urlparse

from bs4 import Comment

from siteaudit.core.rule_engine import define_rule, fail_result, pass_result, warn_result
from siteaudit.engines.base import AuditContext, RuleResult

# Thresholds
TITLE_MIN_LENGTH = 30
TITLE_MAX_LENGTH = 60
META_DESC_MIN_LENGTH = 70
META_DESC_MAX_LENGTH = 160
MIN_WORD_COUNT = 300
URL_MAX_LENGTH = 115
SLOW_RESPONSE_MS = 1000
VERY_SLOW_RESPONSE_MS = 3000

NON_CONTENT_TAGS = {"script", "style", "noscript", "template"}

SECURITY_HEADERS = (
    "strict-transport-security",
    "x-content-type-options",
    "x-frame-options",
    "content-security-policy",
)


def _meta_content(context: AuditContext, name: str) -> str:
    tag = context.soup.find("meta", attrs={"name": lambda v: v is not None and v.lower() == name})
    return (tag.get("content") or "").strip() if tag else ""


# ── Core ───────────────────────────────────────────────────

@define_rule(
    id="core-title",
    name="Title tag",
    category="core",
    description="Page has a title between 30 and 60 characters.",
    weight=3,
)
def title_tag(context: AuditContext) -> RuleResult:
    tag = context.soup.find("title")
    title = tag.get_text(strip=True) if tag else ""
    if not title:
        return fail_result("Missing title tag", {
            "recommendation": "Add a unique, descriptive title tag (30-60 chars).",
        })
    details = {"title": title, "length": len(title)}
    if len(title) < TITLE_MIN_LENGTH:
        return warn_result(f"Title too short ({len(title)} chars)", {
            **details, "recommendation": f"Expand the title to {TITLE_MIN_LENGTH}-{TITLE_MAX_LENGTH} characters.",
        })
    if len(title) > TITLE_MAX_LENGTH:
        return warn_result(f"Title too long ({len(title)} chars)", {
            **details, "recommendation": f"Shorten the title to under {TITLE_MAX_LENGTH} characters.",
        })
    return pass_result("Title length is good", details)


@define_rule(
    id="core-meta-description",
    name="Meta description",
    category="core",
    description="Page has a meta description between 70 and 160 characters.",
    weight=2,
)
def meta_description(context: AuditContext) -> RuleResult:
    desc = _meta_content(context, "description")
    if not desc:
        return fail_result("Missing meta description", {
            "recommendation": "Write a compelling meta description (70-160 chars).",
        })
    details = {"length": len(desc)}
    if len(desc) < META_DESC_MIN_LENGTH:
        return warn_result(f"Meta description too short ({len(desc)} chars)", {
            **details, "recommendation": f"Expand the description to {META_DESC_MIN_LENGTH}-{META_DESC_MAX_LENGTH} characters.",
        })
    if len(desc) > META_DESC_MAX_LENGTH:
        return warn_result(f"Meta description too long ({len(desc)} chars)", {
            **details, "recommendation": f"Keep the description under {META_DESC_MAX_LENGTH} characters.",
        })
    return pass_result("Meta description length is good", details)


@define_rule(
    id="core-h1",
    name="Single H1",
    category="core",
    description="Page has exactly one H1 heading.",
    weight=2,
)
def single_h1(context: AuditContext) -> RuleResult:
    count = len(context.soup.find_all("h1"))
    if count == 0:
        return fail_result("No H1 heading", {"recommendation": "Add one H1 that states the page topic."})
    if count > 1:
        return warn_result(f"{count} H1 headings", {
            "count": count, "recommendation": "Use a single H1; demote the others to H2.",
        })
    return pass_result("Exactly one H1")


@define_rule(
    id="core-duplicate-description",
    name="Unique meta description",
    category="core",
    description="Meta description is not reused by another page of the same audit.",
    stateful=True,
)
def duplicate_description(context: AuditContext, state: dict) -> RuleResult:
    desc = _meta_content(context, "description")
    if not desc:
        return pass_result("No meta description to compare")
    seen: dict[str, str] = state.setdefault("descriptions", {})
    first = seen.setdefault(desc.lower(), context.url)
    if first != context.url:
        return fail_result("Meta description duplicates another page", {
            "duplicate_of": first,
            "recommendation": "Write a unique meta description for every page.",
        })
    return pass_result("Meta description is unique")


# ── Technical ──────────────────────────────────────────────

@define_rule(
    id="technical-indexable",
    name="Indexable",
    category="technical",
    description="Page is not excluded by a noindex meta tag or X-Robots-Tag header.",
    weight=3,
)
def indexable(context: AuditContext) -> RuleResult:
    header = context.headers.get("x-robots-tag", "").lower()
    meta = _meta_content(context, "robots").lower()
    if "noindex" in header or "noindex" in meta:
        source = "X-Robots-Tag header" if "noindex" in header else "meta robots"
        return fail_result(f"Page is noindex via {source}", {
            "recommendation": "Remove noindex if this page should appear in search results.",
        })
    return pass_result("Page is indexable")


@define_rule(
    id="technical-canonical",
    name="Canonical tag",
    category="technical",
    description="Page declares an absolute canonical URL.",
)
def canonical(context: AuditContext) -> RuleResult:
    tag = context.soup.find("link", rel=lambda v: v is not None and "canonical" in v)
    href = (tag.get("href") or "").strip() if tag else ""
    if not href:
        return warn_result("No canonical tag", {
            "recommendation": "Add <link rel=\"canonical\"> pointing to the preferred URL.",
        })
    if not urlparse(href).scheme:
        return warn_result("Canonical URL is relative", {
            "canonical": href, "recommendation": "Use an absolute canonical URL.",
        })
    return pass_result("Canonical tag present", {"canonical": href})


# ── Content ────────────────────────────────────────────────

@define_rule(
    id="content-word-count",
    name="Content length",
    category="content",
    description="Page body has at least 300 words.",
    weight=2,
)
def word_count(context: AuditContext) -> RuleResult:
    body = context.soup.find("body") or context.soup
    words = sum(
        len(text.split())
        for text in body.find_all(string=True)
        if not isinstance(text, Comment) and text.parent.name not in NON_CONTENT_TAGS
    )
    if words < MIN_WORD_COUNT:
        return warn_result(f"Thin content ({words} words)", {
            "words": words, "recommendation": f"Expand the page to at least {MIN_WORD_COUNT} words.",
        })
    return pass_result(f"{words} words", {"words": words})


@define_rule(
    id="content-duplicate",
    name="Unique content",
    category="content",
    description="Page body is not byte-identical to an earlier page of the crawl.",
    weight=2,
)
def duplicate_content(context: AuditContext) -> RuleResult:
    first = context.extra.get("duplicate_of")
    if first:
        return fail_result("Content duplicates another page", {
            "duplicate_of": first,
            "recommendation": "Consolidate duplicates or point a canonical tag at the original.",
        })
    return pass_result("Content is unique")


# ── Links ──────────────────────────────────────────────────

@define_rule(
    id="links-broken",
    name="Broken links",
    category="links",
    description="No link on the page resolves to a 4xx/5xx status or a network error.",
    weight=3,
)
def broken_links(context: AuditContext) -> RuleResult:
    checked = [link for link in context.links if link.status_code is not None or link.error is not None]
    if not checked:
        return pass_result("No checked links", {"links": len(context.links)})
    broken = [
        link.url for link in checked
        if link.error is not None or link.status_code is None or link.status_code >= 400
    ]
    if broken:
        return fail_result(f"{len(broken)} broken link(s)", {
            "broken": broken[:20],
            "recommendation": "Fix or remove links that return errors.",
        })
    return pass_result(f"All {len(checked)} checked links resolve")


@define_rule(
    id="links-internal",
    name="Internal links",
    category="links",
    description="Page links to at least one other page of the site.",
)
def internal_links(context: AuditContext) -> RuleResult:
    internal = sum(1 for link in context.links if link.is_internal)
    if internal == 0:
        return warn_result("No internal links", {
            "recommendation": "Link to related pages so crawlers can discover them.",
        })
    return pass_result(f"{internal} internal links", {"internal": internal})


# ── Images ─────────────────────────────────────────────────

@define_rule(
    id="images-alt",
    name="Image alt text",
    category="images",
    description="Every image has an alt attribute.",
    weight=2,
)
def image_alt(context: AuditContext) -> RuleResult:
    if not context.images:
        return pass_result("No images")
    missing = [img.src for img in context.images if img.alt is None]
    if missing:
        ratio = len(missing) / len(context.images)
        details = {"missing": missing[:20], "recommendation": "Add descriptive alt text to every image."}
        if ratio > 0.5:
            return fail_result(f"{len(missing)} of {len(context.images)} images lack alt text", details)
        return warn_result(f"{len(missing)} of {len(context.images)} images lack alt text", details)
    return pass_result("All images have alt text")


# ── Security ───────────────────────────────────────────────

@define_rule(
    id="security-https",
    name="HTTPS",
    category="security",
    description="Page is served over HTTPS.",
    weight=3,
)
def https(context: AuditContext) -> RuleResult:
    final = context.page.final_url or context.url
    if urlparse(final).scheme != "https":
        return fail_result("Page served over HTTP", {
            "recommendation": "Serve the site over HTTPS and 301 redirect HTTP to HTTPS.",
        })
    return pass_result("Served over HTTPS")


@define_rule(
    id="security-headers",
    name="Security headers",
    category="security",
    description="Common security response headers are present.",
)
def security_headers(context: AuditContext) -> RuleResult:
    missing = [h for h in SECURITY_HEADERS if h not in context.headers]
    if not missing:
        return pass_result("All security headers present")
    details = {"missing": missing, "recommendation": f"Add the missing headers: {', '.join(missing)}."}
    if len(missing) == len(SECURITY_HEADERS):
        return fail_result("No security headers", details)
    return warn_result(f"{len(missing)} security header(s) missing", details)


# ── Performance ────────────────────────────────────────────

@define_rule(
    id="perf-response-time",
    name="Server response time",
    category="perf",
    description="Server responds in under one second.",
    weight=2,
)
def response_time(context: AuditContext) -> RuleResult:
    ms = round(context.response_time_ms)
    if ms > VERY_SLOW_RESPONSE_MS:
        return fail_result(f"Slow response ({ms} ms)", {
            "ms": ms, "recommendation": "Investigate server processing time and caching.",
        })
    if ms > SLOW_RESPONSE_MS:
        return warn_result(f"Response took {ms} ms", {
            "ms": ms, "recommendation": "Aim for a server response under 1 second.",
        })
    return pass_result(f"Response took {ms} ms", {"ms": ms})


# ── URL / Redirects ────────────────────────────────────────

@define_rule(
    id="url-length",
    name="URL length",
    category="url",
    description="URL is short, lowercase and not parameter heavy.",
    requires_fetch=False,
)
def url_length(context: AuditContext) -> RuleResult:
    parsed = urlparse(context.url)
    if len(context.url) > URL_MAX_LENGTH:
        return warn_result(f"URL is {len(context.url)} characters", {
            "recommendation": f"Keep URLs under {URL_MAX_LENGTH} characters.",
        })
    if parsed.path != parsed.path.lower():
        return warn_result("URL contains uppercase characters", {
            "recommendation": "Use lowercase URLs to avoid duplicate content.",
        })
    if parsed.query and len(parsed.query.split("&")) > 3:
        return warn_result("URL has many query parameters", {
            "recommendation": "Prefer descriptive paths over parameter-heavy URLs.",
        })
    return pass_result("URL is clean")


@define_rule(
    id="redirect-chain",
    name="Redirect chain",
    category="redirect",
    description="Page is reached in at most one redirect.",
    weight=2,
)
def redirect_chain(context: AuditContext) -> RuleResult:
    hops = len(context.redirect_chain)
    if hops > 1:
        return fail_result(f"Redirect chain of {hops} hops", {
            "chain": context.redirect_chain,
            "recommendation": "Update links to point directly to the final URL.",
        })
    if hops == 1:
        return warn_result("Page is reached through a redirect", {
            "chain": context.redirect_chain,
            "recommendation": "Link to the final URL to save a round trip.",
        })
    return pass_result("No redirects")


BUILTIN_RULES = [
    title_tag,
    meta_description,
    single_h1,
    duplicate_description,
    indexable,
    canonical,
    word_count,
    duplicate_content,
    broken_links,
    internal_links,
    image_alt,
    https,
    security_headers,
    response_time,
    url_length,
    redirect_chain,
]
