"""
Scoring Engine - turns rule results into category and overall scores.

Scoring Model:
- Category score = round(Σ(rule score × rule weight) / Σ rule weight)
- Overall score  = round(Σ(category score × category weight) / Σ category weight)
- Rounding happens at both levels (category first, then overall); the
  overall score is computed from already-rounded category scores
- Rounding is half-up, so 62.5 -> 63 and 37.5 -> 38
- A category whose rules all weigh 0 scores 0; categories of weight 0 are
  left out of the overall mean; no weighted category at all -> overall 0

Results from several pages in the same category are pooled before the
weighted mean, so a rule failing on 3 of 4 pages counts 3 times.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from siteaudit.core.categories import get_category
from siteaudit.engines.base import AuditResult, CategoryResult, RuleResult, RuleStatus


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_category_score(results: Iterable[RuleResult]) -> int:
    total_weight = 0
    weighted_sum = 0
    for result in results:
        total_weight += result.weight
        weighted_sum += result.score * result.weight

    if total_weight == 0:
        return 0
    return round_half_up(weighted_sum / total_weight)


def calculate_overall_score(categories: Iterable[CategoryResult]) -> int:
    """
    Weighted mean of category scores.

    Sums are taken over integers, so the result does not depend on the
    order categories were evaluated in.
    """
    total_weight = 0
    weighted_sum = 0
    for category in categories:
        if category.weight <= 0:
            continue
        total_weight += category.weight
        weighted_sum += category.score * category.weight

    if total_weight == 0:
        return 0
    return round_half_up(weighted_sum / total_weight)


def build_category_result(
    category_id: str,
    results: list[RuleResult],
    category_name: str | None = None,
    weight: int | None = None,
) -> CategoryResult:
    definition = get_category(category_id)
    if category_name is None:
        category_name = definition.name if definition else category_id
    if weight is None:
        weight = definition.weight if definition else 0

    return CategoryResult(
        category_id=category_id,
        category_name=category_name,
        score=calculate_category_score(results),
        weight=weight,
        pass_count=sum(1 for r in results if r.status == RuleStatus.PASS),
        warn_count=sum(1 for r in results if r.status == RuleStatus.WARN),
        fail_count=sum(1 for r in results if r.status == RuleStatus.FAIL),
        results=list(results),
    )


def merge_category_results(page_results: Iterable[list[CategoryResult]]) -> list[CategoryResult]:
    """
    Pool per-page category results into one result per category.

    Category order is first-seen order; rule results keep page order.
    """
    pooled: dict[str, list[RuleResult]] = {}
    names: dict[str, tuple[str, int]] = {}
    for categories in page_results:
        for category in categories:
            pooled.setdefault(category.category_id, []).extend(category.results)
            names.setdefault(category.category_id, (category.category_name, category.weight))

    return [
        build_category_result(cid, results, category_name=names[cid][0], weight=names[cid][1])
        for cid, results in pooled.items()
    ]


def build_audit_result(
    url: str,
    category_results: list[CategoryResult],
    crawled_pages: int,
) -> AuditResult:
    all_results = [r for c in category_results for r in c.results]
    return AuditResult(
        url=url,
        crawled_pages=crawled_pages,
        overall_score=calculate_overall_score(category_results),
        category_results=category_results,
        total_rules=len(all_results),
        passed_count=sum(1 for r in all_results if r.status == RuleStatus.PASS),
        warning_count=sum(1 for r in all_results if r.status == RuleStatus.WARN),
        failed_count=sum(1 for r in all_results if r.status == RuleStatus.FAIL),
    )
