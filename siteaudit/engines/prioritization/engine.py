"""
Prioritization Engine

Groups rule warnings and failures into issues and ranks them.

Priority Score Formula:
  P = round(Severity_Base × log10(affected_pages + 1))

Where:
  Severity_Base = critical 100, warning 50, info 10

One issue per (rule, severity): failures of a rule form a critical issue,
its warnings a separate warning issue. Passing results never form issues.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

import structlog

from siteaudit.engines.base import Issue, IssueSeverity, RuleResult, RuleStatus
from siteaudit.engines.scoring.engine import round_half_up

logger = structlog.get_logger(__name__)


SEVERITY_BASE_SCORES = {
    IssueSeverity.CRITICAL: 100,
    IssueSeverity.WARNING: 50,
    IssueSeverity.INFO: 10,
}

STATUS_SEVERITY = {
    RuleStatus.FAIL: IssueSeverity.CRITICAL,
    RuleStatus.WARN: IssueSeverity.WARNING,
}


def calculate_priority_score(severity: IssueSeverity, affected_count: int) -> int:
    base = SEVERITY_BASE_SCORES.get(severity, 0)
    return round_half_up(base * math.log10(affected_count + 1))


def build_issues(results: Iterable[RuleResult]) -> list[Issue]:
    """
    Aggregate per-page results into issues, highest priority first.

    Affected pages keep first-seen order without duplicates. The fix
    suggestion comes from a rule's details["recommendation"] when present.
    """
    grouped: dict[tuple[str, IssueSeverity], Issue] = {}

    for result in results:
        severity = STATUS_SEVERITY.get(RuleStatus(result.status))
        if severity is None:
            continue

        key = (result.rule_id, severity)
        issue = grouped.get(key)
        if issue is None:
            recommendation = result.details.get("recommendation")
            issue = Issue(
                rule_id=result.rule_id,
                rule_name=result.rule_name or result.rule_id,
                category_id=result.category_id,
                severity=severity,
                message=result.message,
                fix_suggestion=recommendation if isinstance(recommendation, str) else None,
            )
            grouped[key] = issue

        page = result.page_url
        if page and page not in issue.affected_pages:
            issue.affected_pages.append(page)

    issues = list(grouped.values())
    for issue in issues:
        issue.priority_score = calculate_priority_score(issue.severity, max(issue.affected_count, 1))

    issues.sort(key=lambda i: (-i.priority_score, -i.affected_count, i.rule_id))
    logger.debug("Issues built", count=len(issues))
    return issues
