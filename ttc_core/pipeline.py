"""TT&C command pipeline orchestration."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional, Protocol, Sequence

from .baseline import AnomalyScore, BaselineScorer
from .policy import PolicyDecision, PolicyEngine
from .state import CommandContext, utcnow
from .windows import Anomaly, WindowDetector

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_DENIED = "denied"
STATUS_FORWARD_ERROR = "forward_error"

EVENT_ANOMALY = "anomaly_detected"
EVENT_POLICY_DECISION = "policy_decision"
EVENT_COMMAND_FORWARDED = "command_forwarded"
EVENT_FORWARD_ERROR = "forward_error"

BASELINE_ANOMALY_TYPE = "baseline_score"


class GatewayError(Exception):
    """Base class for collaborator failures surfaced by the pipeline."""


class ForwardError(GatewayError):
    """The remote asset could not be reached or answered badly."""


class ForwardTimeout(ForwardError):
    """The remote asset did not answer within the allotted time."""


class AuditDeliveryError(GatewayError):
    """An audit event could not be delivered to the operations centre."""


@dataclass(frozen=True)
class ForwardReply:
    """Status/message pair returned by the remote asset."""

    status: str
    message: str


class CommandForwarder(Protocol):
    def forward(self, payload: Mapping[str, object], *, timeout: float) -> ForwardReply:
        ...


class AuditSink(Protocol):
    def emit(self, event: Mapping[str, object], *, timeout: float) -> None:
        ...


@dataclass(frozen=True)
class ForwardOutcome:
    """What happened when an allowed command was handed to the asset."""

    forwarded: bool
    status: str
    message: str
    error: Optional[str] = None
    timed_out: bool = False

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "forwarded": self.forwarded,
            "status": self.status,
            "message": self.message,
            "timed_out": self.timed_out,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class PipelineResult:
    """Full decision artifact returned by :class:`CommandPipeline`."""

    context: CommandContext
    decision: PolicyDecision
    anomalies: Sequence[Anomaly]
    score: AnomalyScore
    outcome: Optional[ForwardOutcome] = None
    processed_at: datetime = field(default_factory=utcnow)

    @property
    def status(self) -> str:
        if not self.decision.allowed:
            return STATUS_DENIED
        if self.outcome is not None and not self.outcome.forwarded:
            return STATUS_FORWARD_ERROR
        return STATUS_SUCCESS

    @property
    def message(self) -> str:
        if not self.decision.allowed:
            return "command rejected by policy"
        if self.outcome is None:
            return "command authorized"
        if not self.outcome.forwarded:
            return "failed to forward command to satellite"
        return "command forwarded to satellite"

    def as_response(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "message": self.message,
            "decision": self.decision.decision,
            "reason": self.decision.reason,
            "processedAt": self.processed_at,
        }

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "context": self.context.as_dict(),
            "status": self.status,
            "decision": self.decision.as_dict(),
            "anomalies": [anomaly.as_dict() for anomaly in self.anomalies],
            "score": self.score.as_dict(),
            "processed_at": self.processed_at.isoformat(),
        }
        if self.outcome is not None:
            payload["outcome"] = self.outcome.as_dict()
        return payload


class CommandPipeline:
    """Runs one inbound command through detection, policy, forwarding and audit.

    Every anomaly and the policy decision are offered to the audit sink before
    :meth:`process` returns, whatever the final outcome. The baseline scorer
    learns from every command, denied ones included.
    """

    def __init__(
        self,
        *,
        policy: Optional[PolicyEngine] = None,
        windows: Optional[WindowDetector] = None,
        scorer: Optional[BaselineScorer] = None,
        forwarder: Optional[CommandForwarder] = None,
        audit: Optional[AuditSink] = None,
        forward_timeout: float = 5.0,
        audit_timeout: float = 2.0,
        component: str = "ttc-gateway",
    ) -> None:
        self.policy = policy or PolicyEngine()
        self.windows = windows or WindowDetector()
        self.scorer = scorer or BaselineScorer()
        self.forwarder = forwarder
        self.audit = audit
        self._forward_timeout = forward_timeout
        self._audit_timeout = audit_timeout
        self._component = component

    def process(
        self,
        context: CommandContext,
        params: Optional[Mapping[str, object]] = None,
        *,
        deadline: Optional[float] = None,
    ) -> PipelineResult:
        """Process ``context``.

        ``deadline`` is an optional :func:`time.monotonic` instant bounding the
        forwarding step; once it has passed the command is reported as a
        forwarding timeout while the audit trail already produced is kept.
        """

        anomalies = self.windows.check_command(
            context.command, context.operator_role, context.timestamp
        )
        score = self.scorer.observe(
            context.command, context.operator_role, params, timestamp=context.timestamp
        )

        for anomaly in anomalies:
            self._emit(self._anomaly_event(context, anomaly))
        if score.is_anomaly:
            self._emit(self._score_event(context, score))

        decision = self.policy.evaluate(context)
        self._emit(self._decision_event(context, decision))

        if not decision.allowed:
            return PipelineResult(context=context, decision=decision, anomalies=anomalies, score=score)

        outcome = None
        if self.forwarder is not None:
            outcome = self._forward(context, params, deadline)
            self._emit(self._outcome_event(context, outcome))

        return PipelineResult(
            context=context,
            decision=decision,
            anomalies=anomalies,
            score=score,
            outcome=outcome,
        )

    def close(self) -> None:
        self.scorer.close()

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------
    def _forward(
        self,
        context: CommandContext,
        params: Optional[Mapping[str, object]],
        deadline: Optional[float],
    ) -> ForwardOutcome:
        timeout = self._forward_timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return ForwardOutcome(
                    forwarded=False,
                    status=STATUS_FORWARD_ERROR,
                    message="request deadline exceeded before forwarding",
                    error="deadline exceeded",
                    timed_out=True,
                )
            timeout = min(timeout, remaining)

        payload: Dict[str, object] = {"command": context.command}
        if params:
            payload["params"] = dict(params)
        if context.satellite_id:
            payload["satelliteId"] = context.satellite_id

        try:
            reply = self.forwarder.forward(payload, timeout=timeout)
        except ForwardTimeout as exc:
            logger.warning("Forwarding '%s' timed out after %.2fs: %s", context.command, timeout, exc)
            return ForwardOutcome(
                forwarded=False,
                status=STATUS_FORWARD_ERROR,
                message="satellite did not answer in time",
                error=str(exc),
                timed_out=True,
            )
        except ForwardError as exc:
            logger.warning("Forwarding '%s' failed: %s", context.command, exc)
            return ForwardOutcome(
                forwarded=False,
                status=STATUS_FORWARD_ERROR,
                message="satellite unreachable",
                error=str(exc),
            )

        return ForwardOutcome(forwarded=True, status=reply.status, message=reply.message)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    def _emit(self, event: Dict[str, object]) -> None:
        logger.info("%s", json.dumps(event, default=str, separators=(",", ":")))
        if self.audit is None:
            return
        try:
            self.audit.emit(event, timeout=self._audit_timeout)
        except AuditDeliveryError as exc:
            logger.warning("Dropping %s audit event: %s", event.get("eventType"), exc)
        except Exception:
            logger.exception("Unexpected error while delivering %s audit event", event.get("eventType"))

    def _base_event(self, event_type: str, context: CommandContext) -> Dict[str, object]:
        return {
            "component": self._component,
            "eventType": event_type,
            "command": context.command,
            "operatorRole": context.operator_role,
        }

    def _anomaly_event(self, context: CommandContext, anomaly: Anomaly) -> Dict[str, object]:
        event = self._base_event(EVENT_ANOMALY, context)
        event.update(
            anomalyType=anomaly.anomaly_type,
            message=anomaly.message,
            severity=anomaly.severity,
            metadata=dict(anomaly.metadata),
        )
        return event

    def _score_event(self, context: CommandContext, score: AnomalyScore) -> Dict[str, object]:
        event = self._base_event(EVENT_ANOMALY, context)
        event.update(
            anomalyType=BASELINE_ANOMALY_TYPE,
            message="; ".join(score.reasons) or "composite anomaly score above threshold",
            severity=score.severity,
            metadata=score.as_dict(),
        )
        return event

    def _decision_event(self, context: CommandContext, decision: PolicyDecision) -> Dict[str, object]:
        event = self._base_event(EVENT_POLICY_DECISION, context)
        event.update(
            decision=decision.decision,
            reason=decision.reason,
            ruleId=decision.rule_id,
            severity=decision.severity,
        )
        return event

    def _outcome_event(self, context: CommandContext, outcome: ForwardOutcome) -> Dict[str, object]:
        event_type = EVENT_COMMAND_FORWARDED if outcome.forwarded else EVENT_FORWARD_ERROR
        event = self._base_event(event_type, context)
        event.update(status=outcome.status, message=outcome.message)
        if outcome.error is not None:
            event["metadata"] = {"error": outcome.error, "timedOut": outcome.timed_out}
        return event


__all__ = [
    "STATUS_SUCCESS",
    "STATUS_DENIED",
    "STATUS_FORWARD_ERROR",
    "AuditDeliveryError",
    "AuditSink",
    "CommandForwarder",
    "CommandPipeline",
    "ForwardError",
    "ForwardOutcome",
    "ForwardReply",
    "ForwardTimeout",
    "GatewayError",
    "PipelineResult",
]
