from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ttc_core.policy import (
    DEFAULT_ALLOW_RULE_ID,
    PolicyDecision,
    PolicyEngine,
    PolicyRule,
    default_rules,
)
from ttc_core.state import CommandContext, MissionPhase


def build_context(**overrides) -> CommandContext:
    values = {
        "command": "health_check",
        "operator_role": "operator",
        "mission_phase": MissionPhase.NORMAL,
    }
    values.update(overrides)
    return CommandContext(**values)


@pytest.mark.parametrize("command", ["deorbit", "disable_power", "format_memory", "orbit_change"])
def test_dangerous_commands_require_admin(command: str) -> None:
    engine = PolicyEngine()

    denied = engine.evaluate(build_context(command=command, operator_role="operator"))
    assert not denied.allowed
    assert denied.severity == "high"
    assert denied.rule_id == "dangerous-command-admin-only"
    assert denied.decision == "denied"

    allowed = engine.evaluate(build_context(command=command, operator_role="admin"))
    assert allowed.allowed
    assert allowed.rule_id == "dangerous-command-admin-only"


def test_first_match_wins_over_engineer_rule() -> None:
    engine = PolicyEngine()
    decision = engine.evaluate(
        build_context(command="deorbit", operator_role="engineer", mission_phase="critical")
    )
    assert not decision.allowed
    assert decision.rule_id == "dangerous-command-admin-only"


def test_safe_mode_denies_payload_toggle_for_operator() -> None:
    decision = PolicyEngine().evaluate(
        build_context(command="payload_toggle", mission_phase=MissionPhase.SAFE_MODE)
    )
    assert not decision.allowed
    assert decision.rule_id == "safe-mode-restrictions"
    assert decision.severity == "high"


@pytest.mark.parametrize(
    "command, role, allowed",
    [
        ("health_check", "operator", True),
        ("emergency_safe_mode", "operator", True),
        ("payload_toggle", "operator", False),
        ("payload_toggle", "admin", True),
    ],
)
def test_critical_phase_restrictions(command: str, role: str, allowed: bool) -> None:
    decision = PolicyEngine().evaluate(
        build_context(command=command, operator_role=role, mission_phase="critical")
    )
    assert decision.allowed is allowed
    assert decision.rule_id == "critical-phase-restrictions"
    assert decision.severity == "medium"


@pytest.mark.parametrize(
    "command, allowed, severity",
    [("diagnostics", True, "low"), ("maintenance_mode", True, "low"), ("capture_image", False, "medium")],
)
def test_engineer_scope(command: str, allowed: bool, severity: str) -> None:
    decision = PolicyEngine().evaluate(build_context(command=command, operator_role="engineer"))
    assert decision.allowed is allowed
    assert decision.severity == severity
    assert decision.rule_id == "engineer-role-restrictions"


def test_unknown_command_and_role_default_allow() -> None:
    decision = PolicyEngine().evaluate(build_context(command="capture_image", operator_role="guest"))
    assert decision.allowed
    assert decision.rule_id == DEFAULT_ALLOW_RULE_ID
    assert decision.severity == "low"


@pytest.mark.parametrize(
    "context",
    [
        build_context(),
        build_context(command="deorbit"),
        build_context(command="capture_image", mission_phase="safe_mode"),
        build_context(command="diagnostics", operator_role="engineer", mission_phase="critical"),
        build_context(command="system_status", operator_role="engineer", mission_phase="maintenance"),
    ],
)
def test_decision_matches_first_true_predicate(context: CommandContext) -> None:
    engine = PolicyEngine()
    expected = next(
        (rule.rule_id for rule in engine.rules if rule.condition(context)),
        DEFAULT_ALLOW_RULE_ID,
    )
    assert engine.evaluate(context).rule_id == expected


def test_custom_rules_are_stamped_and_unique() -> None:
    deny_all = PolicyRule(
        rule_id="deny-all",
        description="Deny everything",
        condition=lambda context: True,
        action=lambda context: PolicyDecision(allowed=False, reason="nope", severity="critical"),
    )
    engine = PolicyEngine([deny_all])
    assert engine.evaluate(build_context()).rule_id == "deny-all"

    with pytest.raises(ValueError):
        PolicyEngine([deny_all, deny_all])
    with pytest.raises(ValueError):
        PolicyEngine([PolicyRule(DEFAULT_ALLOW_RULE_ID, "", deny_all.condition, deny_all.action)])


def test_describe_lists_rules_in_order() -> None:
    described = PolicyEngine().describe()
    assert [item["id"] for item in described] == [rule.rule_id for rule in default_rules()]
    assert described[0]["id"] == "dangerous-command-admin-only"
