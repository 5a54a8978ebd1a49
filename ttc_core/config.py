"""Detector and scorer configuration for the TT&C gateway."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Dict, Mapping, Tuple


def _default_rate_limits() -> Dict[str, int]:
    return {
        "deorbit": 1,
        "orbit_change": 2,
        "payload_toggle": 10,
    }


def _check_hour(name: str, value: int) -> None:
    if not 0 <= value <= 23:
        raise ValueError(f"{name} must be an hour between 0 and 23, got {value}")


def _check_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")


@dataclass(frozen=True)
class WindowConfig:
    """Thresholds for the sliding-window anomaly checks.

    ``rate_limits`` caps individual commands per ``rate_window``; anything not
    listed falls back to ``default_rate_limit``. Normal hours may wrap past
    midnight (``normal_hours_start > normal_hours_end``).
    """

    default_rate_limit: int = 30
    rate_limits: Mapping[str, int] = field(default_factory=_default_rate_limits)
    rate_window: timedelta = timedelta(minutes=1)
    retention: timedelta = timedelta(minutes=5)
    normal_hours_start: int = 8
    normal_hours_end: int = 20
    burst_threshold: int = 10
    burst_window: timedelta = timedelta(seconds=10)
    role_activity_threshold: int = 50
    role_activity_window: timedelta = timedelta(hours=1)
    active_hours_start: int = 6
    active_hours_end: int = 22

    def __post_init__(self) -> None:
        _check_positive("default_rate_limit", self.default_rate_limit)
        for command, limit in self.rate_limits.items():
            _check_positive(f"rate limit for '{command}'", limit)
        object.__setattr__(self, "rate_limits", MappingProxyType(dict(self.rate_limits)))

        for name in ("rate_window", "retention", "burst_window", "role_activity_window"):
            _check_positive(name, getattr(self, name).total_seconds())
        if self.rate_window > self.retention:
            raise ValueError("rate_window must not exceed the retention horizon")
        if self.burst_window > self.retention:
            raise ValueError("burst_window must not exceed the retention horizon")

        for name in ("normal_hours_start", "normal_hours_end", "active_hours_start", "active_hours_end"):
            _check_hour(name, getattr(self, name))
        if self.normal_hours_start == self.normal_hours_end:
            raise ValueError("normal hours window is empty (start equals end)")

        _check_positive("burst_threshold", self.burst_threshold)
        _check_positive("role_activity_threshold", self.role_activity_threshold)

    def rate_limit_for(self, command: str) -> int:
        return self.rate_limits.get(command, self.default_rate_limit)

    def as_dict(self) -> Dict[str, object]:
        return {
            "default_rate_limit": self.default_rate_limit,
            "rate_limits": dict(self.rate_limits),
            "rate_window_seconds": self.rate_window.total_seconds(),
            "retention_seconds": self.retention.total_seconds(),
            "normal_hours": [self.normal_hours_start, self.normal_hours_end],
            "burst_threshold": self.burst_threshold,
            "burst_window_seconds": self.burst_window.total_seconds(),
            "role_activity_threshold": self.role_activity_threshold,
            "role_activity_window_seconds": self.role_activity_window.total_seconds(),
            "active_hours": [self.active_hours_start, self.active_hours_end],
        }


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the four sub-scores in the composite anomaly score."""

    command: float = 0.30
    role: float = 0.25
    temporal: float = 0.25
    frequency: float = 0.20

    def __post_init__(self) -> None:
        values = self.as_dict()
        for name, value in values.items():
            if value < 0:
                raise ValueError(f"weight '{name}' must not be negative")
        if not math.isclose(sum(values.values()), 1.0, abs_tol=1e-6):
            raise ValueError(f"score weights must sum to 1.0, got {sum(values.values()):.6f}")

    def combine(self, *, command: float, role: float, temporal: float, frequency: float) -> float:
        return (
            self.command * command
            + self.role * role
            + self.temporal * temporal
            + self.frequency * frequency
        )

    def as_dict(self) -> Dict[str, float]:
        return {
            "command": self.command,
            "role": self.role,
            "temporal": self.temporal,
            "frequency": self.frequency,
        }


@dataclass(frozen=True)
class ScorerConfig:
    """Parameters of the statistical baseline scorer."""

    weights: ScoringWeights = field(default_factory=ScoringWeights)
    anomaly_threshold: float = 0.7
    alert_threshold: float = 0.8
    block_threshold: float = 0.9
    min_history: int = 10
    max_history: int = 1000
    frequency_window: timedelta = timedelta(minutes=5)
    unusual_hours: Tuple[int, int] = (2, 5)
    save_interval: int = 100
    confidence_tiers: Tuple[Tuple[int, float], ...] = ((10, 0.1), (50, 0.5), (200, 0.7))
    top_confidence: float = 0.9

    def __post_init__(self) -> None:
        for name in ("anomaly_threshold", "alert_threshold", "block_threshold", "top_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must lie in [0, 1], got {value}")
        if not self.anomaly_threshold <= self.alert_threshold <= self.block_threshold:
            raise ValueError("thresholds must be ordered anomaly <= alert <= block")
        if self.min_history < 1:
            raise ValueError("min_history must be at least 1")
        if self.max_history < self.min_history:
            raise ValueError("max_history must not be smaller than min_history")
        if self.save_interval < 1:
            raise ValueError("save_interval must be at least 1")
        _check_positive("frequency_window", self.frequency_window.total_seconds())
        start, end = self.unusual_hours
        _check_hour("unusual_hours start", start)
        _check_hour("unusual_hours end", end)
        bounds = [bound for bound, _ in self.confidence_tiers]
        if bounds != sorted(bounds):
            raise ValueError("confidence tiers must be ordered by history size")

    @property
    def floor_confidence(self) -> float:
        if self.confidence_tiers:
            return self.confidence_tiers[0][1]
        return self.top_confidence

    def confidence_for(self, history_size: int) -> float:
        for bound, confidence in self.confidence_tiers:
            if history_size < bound:
                return confidence
        return self.top_confidence

    def as_dict(self) -> Dict[str, object]:
        return {
            "weights": self.weights.as_dict(),
            "anomaly_threshold": self.anomaly_threshold,
            "alert_threshold": self.alert_threshold,
            "block_threshold": self.block_threshold,
            "min_history": self.min_history,
            "max_history": self.max_history,
            "frequency_window_seconds": self.frequency_window.total_seconds(),
            "unusual_hours": list(self.unusual_hours),
            "save_interval": self.save_interval,
            "confidence_tiers": [list(tier) for tier in self.confidence_tiers],
            "top_confidence": self.top_confidence,
        }


__all__ = ["WindowConfig", "ScoringWeights", "ScorerConfig"]
