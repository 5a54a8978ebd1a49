"""Ordered, first-match command authorization policy."""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .state import (
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    CommandContext,
    MissionPhase,
)

DEFAULT_ALLOW_RULE_ID = "default-allow"

DANGEROUS_COMMANDS = frozenset({"deorbit", "disable_power", "format_memory", "orbit_change"})
CRITICAL_PHASE_COMMANDS = frozenset({"emergency_safe_mode", "health_check"})
SAFE_MODE_COMMANDS = frozenset({"health_check", "exit_safe_mode", "emergency_safe_mode"})
ENGINEER_COMMANDS = frozenset(
    {"health_check", "diagnostics", "system_status", "payload_toggle", "maintenance_mode"}
)

ADMIN_ROLE = "admin"
ENGINEER_ROLE = "engineer"


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of evaluating one command against the rule table."""

    allowed: bool
    reason: str
    severity: str
    rule_id: str = ""

    @property
    def decision(self) -> str:
        return "allowed" if self.allowed else "denied"

    def as_dict(self) -> Dict[str, object]:
        return {
            "allowed": self.allowed,
            "decision": self.decision,
            "reason": self.reason,
            "rule_id": self.rule_id,
            "severity": self.severity,
        }


@dataclass(frozen=True)
class PolicyRule:
    """A rule descriptor: when ``condition`` holds, ``action`` decides."""

    rule_id: str
    description: str
    condition: Callable[[CommandContext], bool]
    action: Callable[[CommandContext], PolicyDecision]


class PolicyEngine:
    """Evaluates commands against an immutable, ordered rule table.

    Rules are consulted in registration order and the first rule whose
    condition holds is authoritative; later rules are never looked at. When no
    rule matches the command is allowed under ``default-allow``.
    """

    def __init__(self, rules: Optional[Iterable[PolicyRule]] = None) -> None:
        table = tuple(rules) if rules is not None else default_rules()
        seen = set()
        for rule in table:
            if rule.rule_id in seen or rule.rule_id == DEFAULT_ALLOW_RULE_ID:
                raise ValueError(f"duplicate or reserved policy rule id '{rule.rule_id}'")
            seen.add(rule.rule_id)
        self._rules: Tuple[PolicyRule, ...] = table

    @property
    def rules(self) -> Tuple[PolicyRule, ...]:
        return self._rules

    def evaluate(self, context: CommandContext) -> PolicyDecision:
        for rule in self._rules:
            if rule.condition(context):
                return replace(rule.action(context), rule_id=rule.rule_id)

        return PolicyDecision(
            allowed=True,
            reason="no matching policy rule, default allow",
            severity=SEVERITY_LOW,
            rule_id=DEFAULT_ALLOW_RULE_ID,
        )

    def describe(self) -> List[Dict[str, str]]:
        return [{"id": rule.rule_id, "description": rule.description} for rule in self._rules]


# ----------------------------------------------------------------------
# Default rule table
# ----------------------------------------------------------------------
def _is_dangerous(context: CommandContext) -> bool:
    return context.command in DANGEROUS_COMMANDS


def _admin_only(context: CommandContext) -> PolicyDecision:
    if context.operator_role != ADMIN_ROLE:
        return PolicyDecision(
            allowed=False,
            reason=(
                f"command '{context.command}' requires admin role, "
                f"got '{context.operator_role}'"
            ),
            severity=SEVERITY_HIGH,
        )
    return PolicyDecision(
        allowed=True,
        reason=f"admin role authorized for dangerous command '{context.command}'",
        severity=SEVERITY_HIGH,
    )


def _in_critical_phase(context: CommandContext) -> bool:
    return context.mission_phase is MissionPhase.CRITICAL


def _critical_phase(context: CommandContext) -> PolicyDecision:
    if context.command not in CRITICAL_PHASE_COMMANDS and context.operator_role != ADMIN_ROLE:
        return PolicyDecision(
            allowed=False,
            reason=f"mission phase '{context.mission_phase.value}' restricts non-critical commands",
            severity=SEVERITY_MEDIUM,
        )
    return PolicyDecision(
        allowed=True,
        reason="command allowed in critical phase",
        severity=SEVERITY_MEDIUM,
    )


def _in_safe_mode(context: CommandContext) -> bool:
    return context.mission_phase is MissionPhase.SAFE_MODE


def _safe_mode(context: CommandContext) -> PolicyDecision:
    if context.command not in SAFE_MODE_COMMANDS:
        return PolicyDecision(
            allowed=False,
            reason=f"command '{context.command}' not allowed in safe mode",
            severity=SEVERITY_HIGH,
        )
    return PolicyDecision(
        allowed=True,
        reason="command allowed in safe mode",
        severity=SEVERITY_MEDIUM,
    )


def _is_engineer(context: CommandContext) -> bool:
    return context.operator_role == ENGINEER_ROLE


def _engineer_scope(context: CommandContext) -> PolicyDecision:
    if context.command not in ENGINEER_COMMANDS:
        return PolicyDecision(
            allowed=False,
            reason=f"engineer role not authorized for command '{context.command}'",
            severity=SEVERITY_MEDIUM,
        )
    return PolicyDecision(
        allowed=True,
        reason="engineer role authorized",
        severity=SEVERITY_LOW,
    )


def default_rules() -> Tuple[PolicyRule, ...]:
    """Return the gateway's rule table. Order is significant."""

    return (
        PolicyRule(
            rule_id="dangerous-command-admin-only",
            description="Dangerous commands may only be issued by the admin role",
            condition=_is_dangerous,
            action=_admin_only,
        ),
        PolicyRule(
            rule_id="critical-phase-restrictions",
            description="During a critical mission phase only critical commands are accepted",
            condition=_in_critical_phase,
            action=_critical_phase,
        ),
        PolicyRule(
            rule_id="safe-mode-restrictions",
            description="Safe mode only accepts basic recovery commands",
            condition=_in_safe_mode,
            action=_safe_mode,
        ),
        PolicyRule(
            rule_id="engineer-role-restrictions",
            description="Engineers are limited to maintenance commands",
            condition=_is_engineer,
            action=_engineer_scope,
        ),
    )


__all__ = [
    "DEFAULT_ALLOW_RULE_ID",
    "DANGEROUS_COMMANDS",
    "CRITICAL_PHASE_COMMANDS",
    "SAFE_MODE_COMMANDS",
    "ENGINEER_COMMANDS",
    "PolicyDecision",
    "PolicyRule",
    "PolicyEngine",
    "default_rules",
]
