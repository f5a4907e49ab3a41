"""
Unit tests for the permission chain.

Steps, in order: hook veto, read-only veto, tenant tool rules, permission
mode, fallback.
"""

import pytest

from pm_agents.governance import (
    Decision,
    PermissionInput,
    PermissionMode,
    ToolRules,
    evaluate_permission,
)


def _input(
    hook=Decision.ALLOW,
    rules=None,
    mode=PermissionMode.DEFAULT,
    tool="pm-db.mutate",
    mutation=True,
    read_only=False,
) -> PermissionInput:
    return PermissionInput(
        hook_decision=hook,
        agent_config_rules=rules,
        agent_permission_mode=mode,
        tool_name=tool,
        is_mutation=mutation,
        read_only=read_only,
    )


@pytest.mark.parametrize(
    "mode, mutation, expected, step",
    [
        (PermissionMode.DEFAULT, True, Decision.DENY, "permission_mode"),
        (PermissionMode.DEFAULT, False, Decision.ALLOW, "fallback"),
        (PermissionMode.ACCEPT_EDITS, True, Decision.ALLOW, "permission_mode"),
        (PermissionMode.ACCEPT_EDITS, False, Decision.ALLOW, "fallback"),
        (PermissionMode.BYPASS_PERMISSIONS, True, Decision.ALLOW, "permission_mode"),
        (PermissionMode.BYPASS_PERMISSIONS, False, Decision.ALLOW, "permission_mode"),
    ],
)
def test_permission_mode_truth_table(mode, mutation, expected, step):
    decision = evaluate_permission(_input(mode=mode, mutation=mutation))

    assert decision.decision == expected
    assert decision.step == step


@pytest.mark.parametrize("mode", list(PermissionMode))
@pytest.mark.parametrize("mutation", [True, False])
def test_hook_deny_is_final(mode, mutation):
    """A hook deny wins over every rule and mode."""
    rules = ToolRules(allow=["*"])
    decision = evaluate_permission(_input(hook=Decision.DENY, rules=rules, mode=mode, mutation=mutation))

    assert decision.decision == Decision.DENY
    assert decision.step == "hook"


def test_tenant_rule_allow_overrides_default_mode():
    rules = ToolRules(allow=["pm-db.mutate"])
    decision = evaluate_permission(_input(rules=rules))

    assert decision.allowed
    assert decision.step == "agent_config"


def test_tenant_rule_deny_overrides_bypass():
    rules = ToolRules(deny=["pm-db.*"])
    decision = evaluate_permission(_input(rules=rules, mode=PermissionMode.BYPASS_PERMISSIONS))

    assert not decision.allowed
    assert decision.step == "agent_config"


def test_deny_pattern_checked_before_allow():
    rules = ToolRules(allow=["pm-db.*"], deny=["pm-db.mutate"])

    assert rules.match("pm-db.mutate") == Decision.DENY
    assert rules.match("pm-db.query") == Decision.ALLOW
    assert rules.match("pgvector.search") is None


def test_unmatched_rules_fall_through_to_mode():
    rules = ToolRules(allow=["pgvector.*"])
    decision = evaluate_permission(_input(rules=rules, mode=PermissionMode.ACCEPT_EDITS))

    assert decision.allowed
    assert decision.step == "permission_mode"


def test_read_only_vetoes_mutation_even_with_allow_rule():
    rules = ToolRules(allow=["*"])
    decision = evaluate_permission(
        _input(rules=rules, mode=PermissionMode.ACCEPT_EDITS, read_only=True)
    )

    assert not decision.allowed
    assert decision.step == "read_only"


def test_read_only_allows_reads():
    decision = evaluate_permission(_input(tool="pm-db.query", mutation=False, read_only=True))

    assert decision.allowed


def test_tool_rules_from_dict():
    assert ToolRules.from_dict(None) is None
    assert ToolRules.from_dict({}) is None
    rules = ToolRules.from_dict({"allow": ["pm-db.query"], "deny": ["pm-nats.*"]})
    assert rules.allow == ["pm-db.query"]
    assert rules.deny == ["pm-nats.*"]
