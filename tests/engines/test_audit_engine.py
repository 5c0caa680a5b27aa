"""Tests for the per-page audit engine: isolation, async rules, callbacks."""

import asyncio

import pytest
from bs4 import BeautifulSoup

from siteaudit.core.rule_engine import RuleRegistry, RuleState, define_rule, fail_result, pass_result, warn_result
from siteaudit.engines.audit.engine import AuditCallbacks, AuditEngine
from siteaudit.engines.base import AuditContext, FetchedPage, RuleStatus


def make_context(url: str = "https://example.com/", status_code: int = 200, error: str | None = None,
                 html: str = "<html><head><title>Example</title></head><body></body></html>") -> AuditContext:
    page = FetchedPage(url=url, status_code=status_code, body=html, error=error, content_type="text/html")
    return AuditContext(url=url, page=page, soup=BeautifulSoup(html, "lxml"))


@define_rule(id="core-ok", name="OK", category="core", weight=1)
def ok_rule(context):
    return pass_result("fine")


@define_rule(id="core-boom", name="Boom", category="core", weight=3)
def boom_rule(context):
    raise RuntimeError("parser exploded")


@define_rule(id="links-async", name="Async", category="links", weight=2)
async def async_rule(context):
    await asyncio.sleep(0)
    return warn_result("slow but done")


@define_rule(id="url-offline", name="Offline", category="url", requires_fetch=False)
def offline_rule(context):
    return fail_result("checked without the page")


@define_rule(id="core-bad-return", name="Bad return", category="core")
def bad_return_rule(context):
    return {"status": "pass"}


@define_rule(id="core-seen", name="Seen", category="core", stateful=True)
def seen_rule(context, state):
    seen = state.setdefault("titles", set())
    title = context.soup.title.string
    if title in seen:
        return fail_result("duplicate title")
    seen.add(title)
    return pass_result("unique title")


def registry_with(*rules) -> RuleRegistry:
    registry = RuleRegistry()
    registry.register_all(rules)
    return registry


class TestRuleExecution:

    @pytest.mark.asyncio
    async def test_results_stamped_with_identity(self):
        engine = AuditEngine(registry_with(ok_rule))
        [category] = await engine.audit_page(make_context())
        [res] = category.results
        assert res.rule_id == "core-ok"
        assert res.rule_name == "OK"
        assert res.category_id == "core"
        assert res.page_url == "https://example.com/"
        assert category.category_name == "Core"

    @pytest.mark.asyncio
    async def test_raising_rule_isolated(self):
        engine = AuditEngine(registry_with(ok_rule, boom_rule, async_rule))
        categories = await engine.audit_page(make_context())

        core = next(c for c in categories if c.category_id == "core")
        statuses = {r.rule_id: r.status for r in core.results}
        assert statuses == {"core-ok": RuleStatus.PASS, "core-boom": RuleStatus.FAIL}

        boom = next(r for r in core.results if r.rule_id == "core-boom")
        assert "parser exploded" in boom.message
        assert boom.details == {"error": "RuntimeError"}
        # weights 1 and 3, scores 100 and 0
        assert core.score == 25

        links = next(c for c in categories if c.category_id == "links")
        assert links.results[0].status == RuleStatus.WARN

    @pytest.mark.asyncio
    async def test_non_result_return_becomes_failure(self):
        engine = AuditEngine(registry_with(bad_return_rule))
        [category] = await engine.audit_page(make_context())
        assert category.results[0].status == RuleStatus.FAIL

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_fetch_dependent_rules(self):
        engine = AuditEngine(registry_with(ok_rule, offline_rule))
        context = make_context(status_code=0, error="Timeout after 30.0s", html="")
        categories = await engine.audit_page(context)

        core = next(c for c in categories if c.category_id == "core")
        assert core.results[0].status == RuleStatus.WARN
        assert "could not be fetched" in core.results[0].message

        url = next(c for c in categories if c.category_id == "url")
        assert url.results[0].message == "checked without the page"

    @pytest.mark.asyncio
    async def test_http_error_status_counts_as_fetch_failure(self):
        engine = AuditEngine(registry_with(ok_rule))
        [category] = await engine.audit_page(make_context(status_code=500))
        assert category.results[0].status == RuleStatus.WARN
        assert "HTTP 500" in category.results[0].message

    @pytest.mark.asyncio
    async def test_category_selection(self):
        engine = AuditEngine(registry_with(ok_rule, async_rule))
        categories = await engine.audit_page(make_context(), ["links"])
        assert [c.category_id for c in categories] == ["links"]

    @pytest.mark.asyncio
    async def test_stateful_rule_sees_previous_pages(self):
        registry = registry_with(seen_rule)
        engine = AuditEngine(registry)
        await engine.audit_page(make_context("https://example.com/a"))
        [category] = await engine.audit_page(make_context("https://example.com/b"))
        assert category.results[0].status == RuleStatus.FAIL

        registry.reset_stateful_rules()
        [category] = await engine.audit_page(make_context("https://example.com/c"))
        assert category.results[0].status == RuleStatus.PASS

    @pytest.mark.asyncio
    async def test_engines_with_own_state_do_not_share_pages(self):
        registry = registry_with(seen_rule)
        first = AuditEngine(registry, state=RuleState())
        second = AuditEngine(registry, state=RuleState())

        [a], [b] = await asyncio.gather(
            first.audit_page(make_context("https://site-a.com/")),
            second.audit_page(make_context("https://site-b.com/")),
        )

        assert a.results[0].status == RuleStatus.PASS
        assert b.results[0].status == RuleStatus.PASS
        assert "core-seen" not in registry.state

    @pytest.mark.asyncio
    async def test_registry_reset_leaves_own_state_alone(self):
        registry = registry_with(seen_rule)
        engine = AuditEngine(registry, state=RuleState())
        await engine.audit_page(make_context("https://example.com/a"))

        registry.reset_stateful_rules()

        [category] = await engine.audit_page(make_context("https://example.com/b"))
        assert category.results[0].status == RuleStatus.FAIL


class TestCallbacks:

    @pytest.mark.asyncio
    async def test_callback_order(self):
        events = []
        callbacks = AuditCallbacks(
            on_category_start=lambda url, cid: events.append(("start", cid)),
            on_rule_complete=lambda url, res: events.append(("rule", res.rule_id)),
            on_category_complete=lambda url, cat: events.append(("done", cat.category_id)),
            on_page_complete=lambda url, cats: events.append(("page", len(cats))),
        )
        engine = AuditEngine(registry_with(ok_rule, boom_rule, async_rule), callbacks)
        await engine.audit_page(make_context())

        assert events == [
            ("start", "core"),
            ("rule", "core-ok"),
            ("rule", "core-boom"),
            ("done", "core"),
            ("start", "links"),
            ("rule", "links-async"),
            ("done", "links"),
            ("page", 2),
        ]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort(self):
        def explode(url, cid):
            raise ValueError("listener broke")

        engine = AuditEngine(registry_with(ok_rule), AuditCallbacks(on_category_start=explode))
        [category] = await engine.audit_page(make_context())
        assert category.results[0].status == RuleStatus.PASS
