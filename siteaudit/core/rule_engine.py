"""
Rule Engine - the registry every audit runs against.

Design:
- A rule is data (id, name, category, weight) plus one polymorphic run()
- run() may be a plain function or a coroutine function
- Rules are registered once at startup; a duplicate id is a boot failure
- Cross-page state lives in a RuleState passed to each stateful run, never
  on the rule object or in module globals; every audit owns a fresh one,
  so audits running side by side never see each other's pages
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from functools import lru_cache
from typing import Any

import structlog

from siteaudit.core.categories import get_category_ids as ordered_category_ids
from siteaudit.core.exceptions import ConfigurationError, DuplicateRuleError
from siteaudit.engines.base import AuditContext, RuleResult, RuleStatus

logger = structlog.get_logger(__name__)

RULE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{2,63}$")

RuleOutput = RuleResult | Awaitable[RuleResult]


# ─────────────────────────────────────────────
# Result helpers
# ─────────────────────────────────────────────

def pass_result(message: str, details: dict[str, Any] | None = None) -> RuleResult:
    return RuleResult(status=RuleStatus.PASS, score=100, message=message, details=details or {})


def warn_result(message: str, details: dict[str, Any] | None = None) -> RuleResult:
    return RuleResult(status=RuleStatus.WARN, score=50, message=message, details=details or {})


def fail_result(message: str, details: dict[str, Any] | None = None) -> RuleResult:
    return RuleResult(status=RuleStatus.FAIL, score=0, message=message, details=details or {})


# ─────────────────────────────────────────────
# Rule state
# ─────────────────────────────────────────────

class RuleState:
    """
    Cross-page memory for stateful rules, one bucket per rule id.

    Each bucket has an asyncio.Lock; the audit engine holds it while a
    stateful rule runs, so pages audited concurrently never interleave
    writes to the same bucket. reset() empties the buckets in place and
    keeps the locks, so a rule mid-run stays serialized.
    """

    def __init__(self) -> None:
        self._buckets: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def bucket(self, rule_id: str) -> dict[str, Any]:
        return self._buckets.setdefault(rule_id, {})

    def lock(self, rule_id: str) -> asyncio.Lock:
        if rule_id not in self._locks:
            self._locks[rule_id] = asyncio.Lock()
        return self._locks[rule_id]

    def reset(self) -> None:
        for bucket in self._buckets.values():
            bucket.clear()

    def __contains__(self, rule_id: str) -> bool:
        return bool(self._buckets.get(rule_id))


# ─────────────────────────────────────────────
# Rule types
# ─────────────────────────────────────────────

class Rule(ABC):
    """
    A single named check against one page.

    Subclasses set the class attributes and implement run(). Stateful rules
    implement run(context, state) and get their bucket of the audit's
    RuleState on every call.
    """

    id: str
    name: str
    category: str
    description: str = ""
    weight: int = 1
    requires_fetch: bool = True   # Needs a successfully fetched page
    stateful: bool = False

    @abstractmethod
    def run(self, context: AuditContext) -> RuleOutput:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.id} [{self.category}] w={self.weight}>"


class FunctionRule(Rule):
    """Rule backed by a plain or async function (built by define_rule)."""

    def __init__(
        self,
        fn: Callable[..., RuleOutput],
        *,
        id: str,
        name: str,
        category: str,
        description: str = "",
        weight: int = 1,
        requires_fetch: bool = True,
        stateful: bool = False,
    ):
        self._fn = fn
        self.id = id
        self.name = name
        self.category = category
        self.description = description or (fn.__doc__ or "").strip()
        self.weight = weight
        self.requires_fetch = requires_fetch
        self.stateful = stateful

    def run(self, context: AuditContext, state: dict[str, Any] | None = None) -> RuleOutput:
        if self.stateful:
            if state is None:
                raise TypeError(f"Stateful rule '{self.id}' needs its state bucket")
            return self._fn(context, state)
        return self._fn(context)


def define_rule(
    *,
    id: str,
    name: str,
    category: str,
    description: str = "",
    weight: int = 1,
    requires_fetch: bool = True,
    stateful: bool = False,
) -> Callable[[Callable[..., RuleOutput]], FunctionRule]:
    """
    Decorator turning a function into a Rule.

    Stateless rule functions take (context); stateful ones take
    (context, state) where state is the rule's bucket in the running
    audit's RuleState.
    """
    def decorator(fn: Callable[..., RuleOutput]) -> FunctionRule:
        return FunctionRule(
            fn,
            id=id,
            name=name,
            category=category,
            description=description,
            weight=weight,
            requires_fetch=requires_fetch,
            stateful=stateful,
        )
    return decorator


# ─────────────────────────────────────────────
# Rule Registry
# ─────────────────────────────────────────────

class RuleRegistry:
    """
    Holds every rule, indexed by id and grouped by category.

    `state` is the default memory for engines built without their own
    RuleState (one-off page checks); orchestrated audits always bring a
    fresh one.
    """

    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {}
        self.state = RuleState()

    def register(self, rule: Rule) -> Rule:
        if not RULE_ID_PATTERN.match(rule.id):
            raise ConfigurationError(
                f"Rule ID '{rule.id}' must be lowercase alphanumeric with hyphens/underscores"
            )
        if not 0 <= rule.weight <= 100:
            raise ConfigurationError(f"Rule '{rule.id}' weight must be between 0 and 100")
        if rule.id in self._rules:
            raise DuplicateRuleError(rule.id)

        self._rules[rule.id] = rule
        return rule

    def register_all(self, rules: Iterable[Rule]) -> None:
        for rule in rules:
            self.register(rule)

    def get_rule_by_id(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def get_rules_by_category(self, category_id: str) -> list[Rule]:
        return [r for r in self._rules.values() if r.category == category_id]

    def get_all(self) -> list[Rule]:
        return list(self._rules.values())

    def get_category_ids(self) -> list[str]:
        """Categories that have at least one rule, in the canonical order."""
        present = {r.category for r in self._rules.values()}
        ordered = [c for c in ordered_category_ids() if c in present]
        extra = sorted(present.difference(ordered))
        return ordered + extra

    def clear_registry(self) -> None:
        self._rules.clear()
        self.state.reset()

    def reset_stateful_rules(self) -> None:
        """Drop the default cross-page memory shared by engines without their own state."""
        self.state.reset()
        logger.debug("Stateful rules reset", count=sum(1 for r in self._rules.values() if r.stateful))

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules


# ─────────────────────────────────────────────
# Default Registry
# ─────────────────────────────────────────────

@lru_cache()
def get_rule_registry() -> RuleRegistry:
    """Registry preloaded with the built-in rules, created once per process."""
    from siteaudit.rules import builtin

    registry = RuleRegistry()
    registry.register_all(builtin.BUILTIN_RULES)
    logger.info("Rules loaded", total=len(registry), categories=len(registry.get_category_ids()))
    return registry
