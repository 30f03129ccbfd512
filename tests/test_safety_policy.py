"""Tests for the danger classification rule table."""

import pytest

from runguard.safety.models import DangerLevel
from runguard.safety.policy import DangerPolicy, DangerRule

from conftest import make_step


@pytest.fixture
def policy() -> DangerPolicy:
    return DangerPolicy()


class TestDangerPolicy:
    def test_dangerous_critical_context_and_production_is_critical(self, policy):
        step = make_step("s1", "Drop production database", affects_production=True)
        assert policy.classify(step) == DangerLevel.CRITICAL

    @pytest.mark.parametrize(
        "name,command,prod,expected",
        [
            ("Delete temp files", None, True, DangerLevel.HIGH),
            ("Delete temp files", "rm -rf /tmp/cluster-cache", False, DangerLevel.HIGH),
            ("Kill stuck worker", None, False, DangerLevel.MEDIUM),
            ("Restart service", None, True, DangerLevel.MEDIUM),
            ("Restart service", "systemctl restart api", False, DangerLevel.NONE),
            ("Check database size", None, False, DangerLevel.NONE),
        ],
    )
    def test_decision_table(self, policy, name, command, prod, expected):
        step = make_step("s1", name, command=command, affects_production=prod)
        assert policy.classify(step) == expected

    def test_only_full_combination_yields_critical(self, policy):
        combos = [
            ("Purge cache", "prod", True),
            ("Purge cache", "", True),
            ("Purge cache", "prod", False),
            ("Inspect", "prod", True),
        ]
        levels = [
            policy.classify(make_step("s", name, command=cmd, affects_production=prod))
            for name, cmd, prod in combos
        ]
        assert levels[0] == DangerLevel.CRITICAL
        assert DangerLevel.CRITICAL not in levels[1:]

    def test_matching_is_case_insensitive_and_uses_command(self, policy):
        step = make_step("s1", "Maintenance", command="TRUNCATE TABLE sessions")
        signals = policy.signals(step)
        assert signals.has_dangerous is True
        assert signals.has_critical_context is False

    def test_substring_matching(self, policy):
        # "all" is matched as a substring, e.g. inside "install"
        step = make_step("s1", "Uninstall agent")
        assert policy.signals(step).has_critical_context is True

    def test_custom_rule_table(self):
        policy = DangerPolicy(
            dangerous_keywords=frozenset({"reboot"}),
            rules=(DangerRule(DangerLevel.LOW, has_dangerous=True),),
        )
        assert policy.classify(make_step("s1", "Reboot host")) == DangerLevel.LOW
        assert policy.classify(make_step("s2", "Delete host")) == DangerLevel.NONE
