"""Sliding-window anomaly checks for inbound commands."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import RLock
from typing import Dict, List, Mapping, Optional

from .config import WindowConfig
from .state import SEVERITY_HIGH, SEVERITY_MEDIUM, TimestampWindow, as_utc

ANOMALY_RATE_LIMIT = "rate_limit"
ANOMALY_TIME_OF_DAY = "time_of_day"
ANOMALY_COMMAND_BURST = "command_burst"
ANOMALY_UNUSUAL_ROLE = "unusual_role"


@dataclass(frozen=True)
class Anomaly:
    """A behavioural observation. Anomalies never block a command on their own."""

    anomaly_type: str
    command: str
    role: str
    message: str
    severity: str
    timestamp: datetime
    metadata: Mapping[str, object] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "type": self.anomaly_type,
            "command": self.command,
            "role": self.role,
            "message": self.message,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }


def _format_window(window: timedelta) -> str:
    return f"{window.total_seconds():g}s"


class WindowDetector:
    """Tracks recent commands per name and per role and flags unusual patterns."""

    def __init__(self, config: Optional[WindowConfig] = None) -> None:
        self._config = config or WindowConfig()
        self._lock = RLock()
        self._commands: Dict[str, TimestampWindow] = {}
        self._roles: Dict[str, TimestampWindow] = {}

    @property
    def config(self) -> WindowConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def check_command(self, command: str, role: str, timestamp: datetime) -> List[Anomaly]:
        """Run every window check for ``command`` and then record it."""

        now = as_utc(timestamp)
        with self._lock:
            self._prune(now)

            anomalies: List[Anomaly] = []
            for check in (
                self._check_rate_limit(command, role, now),
                self._check_time_of_day(command, role, now),
                self._check_command_burst(command, role, now),
                self._check_role_activity(command, role, now),
            ):
                if check is not None:
                    anomalies.append(check)

            self._record(command, role, now)
        return anomalies

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {
                "commands": {name: len(series) for name, series in self._commands.items()},
                "roles": {name: len(series) for name, series in self._roles.items()},
            }

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def _check_rate_limit(self, command: str, role: str, now: datetime) -> Optional[Anomaly]:
        limit = self._config.rate_limit_for(command)
        series = self._commands.get(command)
        count = series.count_since(now - self._config.rate_window) if series else 0
        if count < limit:
            return None

        return Anomaly(
            anomaly_type=ANOMALY_RATE_LIMIT,
            command=command,
            role=role,
            message=(
                f"command '{command}' rate limit exceeded: {count + 1} commands in last "
                f"{_format_window(self._config.rate_window)} (limit: {limit})"
            ),
            severity=SEVERITY_HIGH,
            timestamp=now,
            metadata={"count": count + 1, "limit": limit},
        )

    def _check_time_of_day(self, command: str, role: str, now: datetime) -> Optional[Anomaly]:
        hour = now.hour
        start = self._config.normal_hours_start
        end = self._config.normal_hours_end
        if start <= end:
            in_normal_hours = start <= hour < end
        else:
            in_normal_hours = hour >= start or hour < end
        if in_normal_hours:
            return None

        return Anomaly(
            anomaly_type=ANOMALY_TIME_OF_DAY,
            command=command,
            role=role,
            message=(
                f"command executed outside normal hours (current: {hour:02d}:00 UTC, "
                f"normal: {start:02d}:00-{end:02d}:00 UTC)"
            ),
            severity=SEVERITY_MEDIUM,
            timestamp=now,
            metadata={"hour": hour, "normal_start": start, "normal_end": end},
        )

    def _check_command_burst(self, command: str, role: str, now: datetime) -> Optional[Anomaly]:
        window = self._config.burst_window
        window_start = now - window
        count = sum(series.count_since(window_start) for series in self._commands.values())
        threshold = self._config.burst_threshold
        if count < threshold:
            return None

        return Anomaly(
            anomaly_type=ANOMALY_COMMAND_BURST,
            command=command,
            role=role,
            message=(
                f"command burst detected: {count + 1} commands in last "
                f"{_format_window(window)} (threshold: {threshold})"
            ),
            severity=SEVERITY_HIGH,
            timestamp=now,
            metadata={
                "count": count + 1,
                "threshold": threshold,
                "window": _format_window(window),
            },
        )

    def _check_role_activity(self, command: str, role: str, now: datetime) -> Optional[Anomaly]:
        series = self._roles.get(role)
        count = series.count_since(now - self._config.role_activity_window) if series else 0
        hour = now.hour
        off_hours = hour < self._config.active_hours_start or hour > self._config.active_hours_end
        if count <= self._config.role_activity_threshold or not off_hours:
            return None

        return Anomaly(
            anomaly_type=ANOMALY_UNUSUAL_ROLE,
            command=command,
            role=role,
            message=(
                f"unusual activity for role '{role}': {count} commands in last hour "
                "during off-hours"
            ),
            severity=SEVERITY_MEDIUM,
            timestamp=now,
            metadata={"activity_count": count, "hour": hour},
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _record(self, command: str, role: str, now: datetime) -> None:
        self._commands.setdefault(command, TimestampWindow()).append(now)
        self._roles.setdefault(role, TimestampWindow()).append(now)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self._config.retention
        _compact(self._commands, cutoff)
        _compact(self._roles, cutoff)


def _compact(series_by_key: Dict[str, TimestampWindow], cutoff: datetime) -> None:
    for key in list(series_by_key):
        series = series_by_key[key]
        series.prune(cutoff)
        if not series:
            del series_by_key[key]


__all__ = [
    "ANOMALY_RATE_LIMIT",
    "ANOMALY_TIME_OF_DAY",
    "ANOMALY_COMMAND_BURST",
    "ANOMALY_UNUSUAL_ROLE",
    "Anomaly",
    "WindowDetector",
]
