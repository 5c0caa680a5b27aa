"""
Audit Engine - runs the registered rules for one page.

Flow per page:
1. For each selected category (canonical order): fire on_category_start
2. Run every rule of the category concurrently; await coroutine rules
3. Fire on_rule_complete per rule (registration order), then
   on_category_complete with the aggregated CategoryResult
4. After the last category: fire on_page_complete

Isolation:
- A rule that raises becomes a synthetic fail result; the other rules and
  categories still run
- A rule that needs a fetched page gets a synthetic warn when the fetch
  failed, instead of running against an empty document
- Stateful rules get their bucket of the engine's RuleState as a second
  argument and run under that bucket's lock; an engine per audit keeps
  concurrent audits apart
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from siteaudit.core.categories import get_category
from siteaudit.core.rule_engine import Rule, RuleRegistry, RuleState, fail_result, warn_result
from siteaudit.engines.base import AuditContext, CategoryResult, RuleResult
from siteaudit.engines.scoring.engine import build_category_result

logger = structlog.get_logger(__name__)


@dataclass
class AuditCallbacks:
    """Optional lifecycle hooks; progress reporters subscribe here."""
    on_category_start: Callable[[str, str], None] | None = None                 # (url, category_id)
    on_rule_complete: Callable[[str, RuleResult], None] | None = None           # (url, result)
    on_category_complete: Callable[[str, CategoryResult], None] | None = None   # (url, category)
    on_page_complete: Callable[[str, list[CategoryResult]], None] | None = None


class AuditEngine:
    """Executes rules from a registry against parsed pages."""

    def __init__(
        self,
        registry: RuleRegistry,
        callbacks: AuditCallbacks | None = None,
        state: RuleState | None = None,
    ):
        self.registry = registry
        self.callbacks = callbacks or AuditCallbacks()
        self.state = state if state is not None else registry.state
        self.logger = structlog.get_logger(self.__class__.__name__)

    def resolve_categories(self, category_ids: list[str] | None) -> list[str]:
        available = self.registry.get_category_ids()
        if not category_ids:
            return available
        return [c for c in available if c in set(category_ids)]

    async def audit_page(
        self,
        context: AuditContext,
        category_ids: list[str] | None = None,
    ) -> list[CategoryResult]:
        start = time.perf_counter()
        url = context.url
        categories: list[CategoryResult] = []

        for category_id in self.resolve_categories(category_ids):
            rules = self.registry.get_rules_by_category(category_id)
            if not rules:
                continue
            self._emit(self.callbacks.on_category_start, url, category_id)

            results = await asyncio.gather(*[self.run_rule(rule, context) for rule in rules])
            for result in results:
                self._emit(self.callbacks.on_rule_complete, url, result)

            definition = get_category(category_id)
            category = build_category_result(
                category_id,
                list(results),
                category_name=definition.name if definition else category_id,
                weight=definition.weight if definition else 0,
            )
            categories.append(category)
            self._emit(self.callbacks.on_category_complete, url, category)

        self._emit(self.callbacks.on_page_complete, url, categories)
        self.logger.debug(
            "Page audited",
            url=url,
            categories=len(categories),
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return categories

    async def run_rule(self, rule: Rule, context: AuditContext) -> RuleResult:
        if rule.requires_fetch and context.fetch_failed:
            reason = context.fetch_error or f"HTTP {context.status_code}"
            result = warn_result(
                f"Skipped: page could not be fetched ({reason})",
                {"fetch_error": context.fetch_error, "status_code": context.status_code},
            )
            return self._stamp(result, rule, context)

        try:
            if rule.stateful:
                async with self.state.lock(rule.id):
                    result = await self._invoke(rule, context, self.state.bucket(rule.id))
            else:
                result = await self._invoke(rule, context)
        except Exception as exc:
            self.logger.warning(
                "Rule execution failed",
                rule_id=rule.id,
                url=context.url,
                error=str(exc),
            )
            result = fail_result(
                f"Rule execution failed: {exc}",
                {"error": type(exc).__name__},
            )
        return self._stamp(result, rule, context)

    @staticmethod
    async def _invoke(rule: Rule, context: AuditContext, state: dict | None = None) -> RuleResult:
        output = rule.run(context, state) if rule.stateful else rule.run(context)
        if inspect.isawaitable(output):
            output = await output
        if not isinstance(output, RuleResult):
            raise TypeError(f"rule returned {type(output).__name__}, expected RuleResult")
        return output

    @staticmethod
    def _stamp(result: RuleResult, rule: Rule, context: AuditContext) -> RuleResult:
        return result.model_copy(update={
            "rule_id": rule.id,
            "rule_name": rule.name,
            "category_id": rule.category,
            "weight": rule.weight,
            "page_url": context.url,
        })

    def _emit(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            self.logger.warning("Audit callback failed", callback=getattr(callback, "__name__", "?"), error=str(exc))
