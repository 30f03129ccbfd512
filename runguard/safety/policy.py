from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from runguard.runbooks.schema import RunbookStep
from .models import DangerLevel


# ---------------------------------------------------------------------------
# Danger classification policy
# - Keywords are matched as case-insensitive substrings of step name + command.
# - Rules are evaluated in order; the first matching row decides the level.
# - None in a rule column means "any".
# ---------------------------------------------------------------------------

DANGEROUS_KEYWORDS: FrozenSet[str] = frozenset({
    "delete", "remove", "drop", "truncate", "destroy", "terminate",
    "shutdown", "kill", "purge", "wipe", "format",
})

CRITICAL_CONTEXT_KEYWORDS: FrozenSet[str] = frozenset({
    "production", "prod", "database", "cluster", "all",
})


@dataclass(frozen=True)
class StepSignals:
    has_dangerous: bool
    has_critical_context: bool
    affects_production: bool


@dataclass(frozen=True)
class DangerRule:
    level: DangerLevel
    has_dangerous: Optional[bool] = None
    has_critical_context: Optional[bool] = None
    affects_production: Optional[bool] = None

    def matches(self, signals: StepSignals) -> bool:
        return (
            _column_matches(self.has_dangerous, signals.has_dangerous)
            and _column_matches(self.has_critical_context, signals.has_critical_context)
            and _column_matches(self.affects_production, signals.affects_production)
        )


def _column_matches(expected: Optional[bool], actual: bool) -> bool:
    return expected is None or expected == actual


DEFAULT_RULES: Tuple[DangerRule, ...] = (
    DangerRule(DangerLevel.CRITICAL, has_dangerous=True, has_critical_context=True, affects_production=True),
    DangerRule(DangerLevel.HIGH, has_dangerous=True, affects_production=True),
    DangerRule(DangerLevel.HIGH, has_dangerous=True, has_critical_context=True),
    DangerRule(DangerLevel.MEDIUM, has_dangerous=True),
    DangerRule(DangerLevel.MEDIUM, affects_production=True),
)


@dataclass(frozen=True)
class DangerPolicy:
    """Keyword sets plus an ordered rule table mapping step signals to a danger level."""

    dangerous_keywords: FrozenSet[str] = DANGEROUS_KEYWORDS
    critical_keywords: FrozenSet[str] = CRITICAL_CONTEXT_KEYWORDS
    rules: Tuple[DangerRule, ...] = field(default=DEFAULT_RULES)
    default_level: DangerLevel = DangerLevel.NONE

    def signals(self, step: RunbookStep) -> StepSignals:
        name = step.name.lower()
        command = (step.command or "").lower()
        return StepSignals(
            has_dangerous=_contains_any(self.dangerous_keywords, name, command),
            has_critical_context=_contains_any(self.critical_keywords, name, command),
            affects_production=step.affects_production,
        )

    def classify(self, step: RunbookStep) -> DangerLevel:
        signals = self.signals(step)
        for rule in self.rules:
            if rule.matches(signals):
                return rule.level
        return self.default_level


def _contains_any(keywords: FrozenSet[str], *texts: str) -> bool:
    return any(k in text for k in keywords for text in texts)
