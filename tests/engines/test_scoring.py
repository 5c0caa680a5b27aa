"""
Tests for category/overall scoring and issue prioritization.

Scores are rounded half-up at the category level and again at the
overall level (the overall mean uses rounded category scores).
"""

import itertools

import pytest

from siteaudit.engines.base import CategoryResult, IssueSeverity, RuleResult, RuleStatus
from siteaudit.engines.prioritization.engine import build_issues, calculate_priority_score
from siteaudit.engines.scoring.engine import (
    build_audit_result,
    build_category_result,
    calculate_category_score,
    calculate_overall_score,
    merge_category_results,
    round_half_up,
)


def result(score: int, weight: int = 1, status: RuleStatus | None = None, **kwargs) -> RuleResult:
    if status is None:
        status = RuleStatus.PASS if score >= 80 else RuleStatus.WARN if score >= 50 else RuleStatus.FAIL
    return RuleResult(status=status, score=score, weight=weight, **kwargs)


def category(category_id: str, score: int, weight: int) -> CategoryResult:
    return CategoryResult(category_id=category_id, category_name=category_id, score=score, weight=weight)


class TestRounding:

    @pytest.mark.parametrize("value,expected", [(62.5, 63), (37.5, 38), (0.49, 0), (99.5, 100), (25.0, 25)])
    def test_half_up(self, value, expected):
        assert round_half_up(value) == expected


class TestCategoryScore:

    def test_weighted_mean(self):
        assert calculate_category_score([result(100, weight=1), result(0, weight=3)]) == 25

    def test_equal_weights(self):
        assert calculate_category_score([result(100), result(50), result(0)]) == 50

    def test_half_rounds_up(self):
        # (100 + 25) / 2 = 62.5
        assert calculate_category_score([result(100), result(25)]) == 63

    def test_zero_total_weight_scores_zero(self):
        assert calculate_category_score([result(100, weight=0), result(80, weight=0)]) == 0

    def test_empty_scores_zero(self):
        assert calculate_category_score([]) == 0

    def test_build_category_result_counts(self):
        cat = build_category_result("core", [result(100), result(50), result(0), result(0)])
        assert (cat.pass_count, cat.warn_count, cat.fail_count) == (1, 1, 2)
        assert cat.category_name == "Core"
        assert cat.weight == 12


class TestOverallScore:

    def test_weighted_by_category(self):
        assert calculate_overall_score([category("a", 100, 1), category("b", 0, 3)]) == 25

    def test_order_independent(self):
        cats = [category("a", 91, 12), category("b", 47, 7), category("c", 66, 5), category("d", 13, 3)]
        scores = {calculate_overall_score(list(p)) for p in itertools.permutations(cats)}
        assert len(scores) == 1

    def test_zero_weight_categories_skipped(self):
        assert calculate_overall_score([category("a", 80, 2), category("b", 0, 0)]) == 80

    def test_no_weighted_categories(self):
        assert calculate_overall_score([category("a", 80, 0)]) == 0
        assert calculate_overall_score([]) == 0

    def test_two_stage_rounding(self):
        # Category a: (100 + 25) / 2 = 62.5 -> 63; category b: 37.5 -> 38
        a = build_category_result("a", [result(100), result(25)], weight=1)
        b = build_category_result("b", [result(50), result(25)], weight=1)
        assert (a.score, b.score) == (63, 38)
        # (63 + 38) / 2 = 50.5 -> 51; a single pass over all four rules would give 50
        assert calculate_overall_score([a, b]) == 51
        assert calculate_category_score([result(100), result(25), result(50), result(25)]) == 50


class TestMerging:

    def test_pages_pooled_per_category(self):
        page1 = [build_category_result("core", [result(100)]), build_category_result("links", [result(0)])]
        page2 = [build_category_result("core", [result(0), result(0), result(0)])]
        merged = merge_category_results([page1, page2])
        assert [c.category_id for c in merged] == ["core", "links"]
        core = merged[0]
        assert len(core.results) == 4
        assert core.score == 25

    def test_audit_result_counts(self):
        cats = [build_category_result("core", [result(100), result(50)]), build_category_result("links", [result(0)])]
        audit = build_audit_result("https://example.com/", cats, crawled_pages=1)
        assert audit.total_rules == 3
        assert (audit.passed_count, audit.warning_count, audit.failed_count) == (1, 1, 1)
        assert audit.crawled_pages == 1


class TestIssues:

    def test_priority_formula(self):
        assert calculate_priority_score(IssueSeverity.CRITICAL, 9) == 100
        assert calculate_priority_score(IssueSeverity.WARNING, 9) == 50
        assert calculate_priority_score(IssueSeverity.INFO, 99) == 20
        assert calculate_priority_score(IssueSeverity.CRITICAL, 1) == 30

    def test_grouped_by_rule_and_severity(self):
        results = [
            result(0, rule_id="core-title", page_url="https://a.com/1", category_id="core"),
            result(0, rule_id="core-title", page_url="https://a.com/2", category_id="core"),
            result(50, rule_id="core-title", page_url="https://a.com/3", category_id="core"),
            result(100, rule_id="core-h1", page_url="https://a.com/1", category_id="core"),
        ]
        issues = build_issues(results)
        assert [(i.rule_id, i.severity) for i in issues] == [
            ("core-title", IssueSeverity.CRITICAL),
            ("core-title", IssueSeverity.WARNING),
        ]
        assert issues[0].affected_pages == ["https://a.com/1", "https://a.com/2"]

    def test_affected_pages_deduplicated(self):
        results = [result(0, rule_id="links-broken", page_url="https://a.com/") for _ in range(3)]
        issue = build_issues(results)[0]
        assert issue.affected_count == 1

    def test_fix_suggestion_from_recommendation(self):
        issue = build_issues([
            result(0, rule_id="images-alt", page_url="https://a.com/", details={"recommendation": "Add alt text."}),
        ])[0]
        assert issue.fix_suggestion == "Add alt text."

    def test_sorted_by_priority(self):
        results = [result(50, rule_id="core-h1", page_url=f"https://a.com/{n}") for n in range(20)]
        results.append(result(0, rule_id="core-title", page_url="https://a.com/0"))
        issues = build_issues(results)
        # warning on 20 pages: 50 * log10(21) = 66; critical on 1 page: 30
        assert [i.rule_id for i in issues] == ["core-h1", "core-title"]
        assert issues[0].priority_score == 66
