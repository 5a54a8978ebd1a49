"""TT&C gateway core exports."""

from .baseline import AnomalyScore, BaselineScorer
from .config import ScorerConfig, ScoringWeights, WindowConfig
from .persistence import ModelStore, ModelStoreError
from .pipeline import (
    AuditDeliveryError,
    AuditSink,
    CommandForwarder,
    CommandPipeline,
    ForwardError,
    ForwardOutcome,
    ForwardReply,
    ForwardTimeout,
    GatewayError,
    PipelineResult,
)
from .policy import PolicyDecision, PolicyEngine, PolicyRule, default_rules
from .state import CommandContext, CountHistogram, MissionPhase, TimestampWindow
from .windows import Anomaly, WindowDetector

__all__ = [
    "Anomaly",
    "AnomalyScore",
    "AuditDeliveryError",
    "AuditSink",
    "BaselineScorer",
    "CommandContext",
    "CommandForwarder",
    "CommandPipeline",
    "CountHistogram",
    "ForwardError",
    "ForwardOutcome",
    "ForwardReply",
    "ForwardTimeout",
    "GatewayError",
    "MissionPhase",
    "ModelStore",
    "ModelStoreError",
    "PipelineResult",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyRule",
    "ScorerConfig",
    "ScoringWeights",
    "TimestampWindow",
    "WindowConfig",
    "WindowDetector",
    "default_rules",
]
