"""Statistical baselines and composite anomaly scoring for command traffic.

The scorer learns two families of running baselines from every recorded
command:

* per command name: how often it was seen, the running mean and spread of the
  hour of day it arrives at, the spread of the gap since the previous command,
  and which roles issue it;
* per role: which commands the role issues and at which hours it is active.

Scoring compares a new command with those baselines from four perspectives
(command pattern, role behaviour, timing and frequency) and folds the
sub-scores into one weighted value in ``[0, 1]``. Confidence grows with the
amount of history observed.
"""
from __future__ import annotations

import logging
import math
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

from .config import ScorerConfig
from .persistence import ModelStore, ModelStoreError
from .state import (
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    CountHistogram,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

ACTION_ALLOW = "allow"
ACTION_LOG_FOR_REVIEW = "log_for_review"
ACTION_ALERT_AND_LOG = "alert_and_log"
ACTION_BLOCK_AND_ALERT = "block_and_alert"
ACTION_COLLECT_MORE_DATA = "collect_more_data"

_ACTION_SEVERITY = {
    ACTION_BLOCK_AND_ALERT: SEVERITY_CRITICAL,
    ACTION_ALERT_AND_LOG: SEVERITY_HIGH,
    ACTION_LOG_FOR_REVIEW: SEVERITY_MEDIUM,
}

_HOURS = range(24)
_SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class CommandFeatures:
    """Features extracted from one command observation."""

    command: str
    role: str
    hour_of_day: int
    day_of_week: int  # Monday == 0
    time_since_last: float
    command_length: int
    has_params: bool

    @property
    def is_weekend(self) -> bool:
        return self.day_of_week >= 5

    def as_dict(self) -> Dict[str, object]:
        return {
            "command": self.command,
            "role": self.role,
            "hour_of_day": self.hour_of_day,
            "day_of_week": self.day_of_week,
            "time_since_last": self.time_since_last,
            "command_length": self.command_length,
            "has_params": self.has_params,
        }


@dataclass(frozen=True)
class CommandHistory:
    """One entry of the rolling observation history."""

    timestamp: datetime
    command: str
    role: str
    features: CommandFeatures
    params: Mapping[str, object] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "command": self.command,
            "role": self.role,
            "features": self.features.as_dict(),
            "params": dict(self.params),
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, object]) -> "CommandHistory":
        features = snapshot.get("features") or {}
        timestamp = _parse_timestamp(snapshot.get("timestamp"))
        command = str(snapshot["command"])
        role = str(snapshot["role"])
        return cls(
            timestamp=timestamp,
            command=command,
            role=role,
            features=CommandFeatures(
                command=command,
                role=role,
                hour_of_day=int(features.get("hour_of_day", timestamp.hour)),
                day_of_week=int(features.get("day_of_week", timestamp.weekday())),
                time_since_last=float(features.get("time_since_last", 0.0)),
                command_length=int(features.get("command_length", len(command))),
                has_params=bool(features.get("has_params", False)),
            ),
            params=dict(snapshot.get("params") or {}),
        )


@dataclass
class CommandBaseline:
    """Running statistics for one command name."""

    command: str
    count: int = 0
    mean_hour: float = 0.0
    m2_hour: float = 0.0
    interval_count: int = 0
    mean_interval: float = 0.0
    m2_interval: float = 0.0
    roles: CountHistogram[str] = field(default_factory=CountHistogram)
    last_seen: Optional[datetime] = None

    def observe(self, features: CommandFeatures, timestamp: datetime) -> None:
        self.count += 1
        self.roles.increment(features.role)
        self.last_seen = timestamp

        hour = float(features.hour_of_day)
        delta = hour - self.mean_hour
        self.mean_hour += delta / self.count
        self.m2_hour += delta * (hour - self.mean_hour)

        # The first command ever recorded has no predecessor to measure against.
        if features.time_since_last > 0:
            self.interval_count += 1
            gap = features.time_since_last
            delta = gap - self.mean_interval
            self.mean_interval += delta / self.interval_count
            self.m2_interval += delta * (gap - self.mean_interval)

    @property
    def hour_std(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(max(self.m2_hour, 0.0) / self.count)

    @property
    def interval_std(self) -> float:
        if self.interval_count < 2:
            return 0.0
        return math.sqrt(max(self.m2_interval, 0.0) / self.interval_count)

    def role_share(self, role: str) -> float:
        if not self.count:
            return 0.0
        return self.roles.count(role) / self.count

    def snapshot(self) -> Dict[str, object]:
        return {
            "command": self.command,
            "count": self.count,
            "mean_hour": self.mean_hour,
            "m2_hour": self.m2_hour,
            "interval_count": self.interval_count,
            "mean_interval": self.mean_interval,
            "m2_interval": self.m2_interval,
            "roles": self.roles.as_dict(),
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, object]) -> "CommandBaseline":
        last_seen = snapshot.get("last_seen")
        return cls(
            command=str(snapshot["command"]),
            count=int(snapshot.get("count", 0)),
            mean_hour=float(snapshot.get("mean_hour", 0.0)),
            m2_hour=float(snapshot.get("m2_hour", 0.0)),
            interval_count=int(snapshot.get("interval_count", 0)),
            mean_interval=float(snapshot.get("mean_interval", 0.0)),
            m2_interval=float(snapshot.get("m2_interval", 0.0)),
            roles=CountHistogram.from_mapping(snapshot.get("roles") or {}),
            last_seen=_parse_timestamp(last_seen) if last_seen else None,
        )


@dataclass
class RoleBaseline:
    """Running statistics for one operator role."""

    role: str
    commands: CountHistogram[str] = field(default_factory=CountHistogram)
    hours: CountHistogram[int] = field(default_factory=lambda: CountHistogram(categories=_HOURS))
    last_activity: Optional[datetime] = None

    def observe(self, features: CommandFeatures, timestamp: datetime) -> None:
        self.commands.increment(features.command)
        self.hours.increment(features.hour_of_day)
        self.last_activity = timestamp

    def command_share(self, command: str) -> float:
        total = self.commands.total()
        if not total:
            return 0.0
        return self.commands.count(command) / total

    def snapshot(self) -> Dict[str, object]:
        return {
            "role": self.role,
            "commands": self.commands.as_dict(),
            "hours": {str(hour): count for hour, count in self.hours.items()},
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, object]) -> "RoleBaseline":
        last_activity = snapshot.get("last_activity")
        return cls(
            role=str(snapshot["role"]),
            commands=CountHistogram.from_mapping(snapshot.get("commands") or {}),
            hours=CountHistogram.from_mapping(snapshot.get("hours") or {}, key_type=int, categories=_HOURS),
            last_activity=_parse_timestamp(last_activity) if last_activity else None,
        )


@dataclass(frozen=True)
class AnomalyScore:
    """Composite anomaly score for one command."""

    score: float
    is_anomaly: bool
    threshold: float
    confidence: float
    reasons: Tuple[str, ...] = ()
    recommended_action: str = ACTION_ALLOW
    components: Mapping[str, float] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return _ACTION_SEVERITY.get(self.recommended_action, SEVERITY_LOW)

    def as_dict(self) -> Dict[str, object]:
        return {
            "score": round(self.score, 4),
            "is_anomaly": self.is_anomaly,
            "threshold": self.threshold,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "recommended_action": self.recommended_action,
            "components": {name: round(value, 4) for name, value in self.components.items()},
        }


class BaselineScorer:
    """Learns command/role baselines and scores new commands against them."""

    def __init__(
        self,
        config: Optional[ScorerConfig] = None,
        *,
        store: Optional[ModelStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or ScorerConfig()
        self._store = store
        self._clock = clock
        self._lock = RLock()
        self._history: Deque[CommandHistory] = deque(maxlen=self._config.max_history)
        self._commands: Dict[str, CommandBaseline] = {}
        self._roles: Dict[str, RoleBaseline] = {}
        self._recorded = 0
        self._closed = False
        self._executor: Optional[ThreadPoolExecutor] = None
        if store is not None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="baseline-model")
            self._load()

    @property
    def config(self) -> ScorerConfig:
        return self._config

    @property
    def history_size(self) -> int:
        with self._lock:
            return len(self._history)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def record_command(
        self,
        command: str,
        role: str,
        params: Optional[Mapping[str, object]] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Learn from ``command`` without scoring it."""

        now = self._now(timestamp)
        with self._lock:
            features = self._extract_features(command, role, now, params)
            snapshot = self._record(features, now, params)
        if snapshot is not None:
            self._schedule_save(snapshot)

    def detect_anomaly(
        self,
        command: str,
        role: str,
        params: Optional[Mapping[str, object]] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> AnomalyScore:
        """Score ``command`` against the baselines without learning from it."""

        now = self._now(timestamp)
        with self._lock:
            features = self._extract_features(command, role, now, params)
            return self._score(features, now)

    def observe(
        self,
        command: str,
        role: str,
        params: Optional[Mapping[str, object]] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> AnomalyScore:
        """Score ``command`` and then learn from it, as one atomic step."""

        now = self._now(timestamp)
        with self._lock:
            features = self._extract_features(command, role, now, params)
            result = self._score(features, now)
            snapshot = self._record(features, now, params)
        if snapshot is not None:
            self._schedule_save(snapshot)
        return result

    def command_baseline(self, command: str) -> Optional[CommandBaseline]:
        with self._lock:
            baseline = self._commands.get(command)
            return CommandBaseline.from_snapshot(baseline.snapshot()) if baseline else None

    def role_baseline(self, role: str) -> Optional[RoleBaseline]:
        with self._lock:
            baseline = self._roles.get(role)
            return RoleBaseline.from_snapshot(baseline.snapshot()) if baseline else None

    def statistics(self) -> Dict[str, object]:
        with self._lock:
            return {
                "history_size": len(self._history),
                "command_baselines": len(self._commands),
                "role_baselines": len(self._roles),
                "recorded_since_start": self._recorded,
                "confidence": self._config.confidence_for(len(self._history)),
                "model_path": str(self._store.path) if self._store else None,
            }

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "version": _SNAPSHOT_VERSION,
                "history": [entry.snapshot() for entry in self._history],
                "command_baselines": {
                    name: baseline.snapshot() for name, baseline in self._commands.items()
                },
                "role_baselines": {
                    name: baseline.snapshot() for name, baseline in self._roles.items()
                },
            }

    def restore(self, snapshot: Mapping[str, object]) -> None:
        history = deque(
            (CommandHistory.from_snapshot(item) for item in snapshot.get("history") or []),
            maxlen=self._config.max_history,
        )
        commands = {
            str(name): CommandBaseline.from_snapshot(item)
            for name, item in (snapshot.get("command_baselines") or {}).items()
        }
        roles = {
            str(name): RoleBaseline.from_snapshot(item)
            for name, item in (snapshot.get("role_baselines") or {}).items()
        }
        with self._lock:
            self._history = history
            self._commands = commands
            self._roles = roles

    def save(self) -> None:
        """Write the model synchronously. Raises :class:`ModelStoreError`."""

        if self._store is None:
            return
        self._store.save(self.snapshot())

    def close(self) -> None:
        """Flush a final snapshot and stop the background writer."""

        if self._closed:
            return
        self._closed = True
        if self._executor is None:
            return
        self._executor.submit(self._persist, self.snapshot())
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------
    def _record(
        self,
        features: CommandFeatures,
        now: datetime,
        params: Optional[Mapping[str, object]],
    ) -> Optional[Dict[str, object]]:
        entry = CommandHistory(
            timestamp=now,
            command=features.command,
            role=features.role,
            features=features,
            params=dict(params or {}),
        )
        self._history.append(entry)

        baseline = self._commands.get(features.command)
        if baseline is None:
            baseline = self._commands[features.command] = CommandBaseline(command=features.command)
        baseline.observe(features, now)

        role_baseline = self._roles.get(features.role)
        if role_baseline is None:
            role_baseline = self._roles[features.role] = RoleBaseline(role=features.role)
        role_baseline.observe(features, now)

        self._recorded += 1
        if self._store is not None and self._recorded % self._config.save_interval == 0:
            return self.snapshot()
        return None

    def _extract_features(
        self,
        command: str,
        role: str,
        now: datetime,
        params: Optional[Mapping[str, object]],
    ) -> CommandFeatures:
        time_since_last = 0.0
        if self._history:
            time_since_last = max(0.0, (now - self._history[-1].timestamp).total_seconds())
        return CommandFeatures(
            command=command,
            role=role,
            hour_of_day=now.hour,
            day_of_week=now.weekday(),
            time_since_last=time_since_last,
            command_length=len(command),
            has_params=bool(params),
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def _score(self, features: CommandFeatures, now: datetime) -> AnomalyScore:
        config = self._config
        history_size = len(self._history)
        if history_size < config.min_history:
            return AnomalyScore(
                score=0.0,
                is_anomaly=False,
                threshold=config.anomaly_threshold,
                confidence=config.floor_confidence,
                recommended_action=ACTION_COLLECT_MORE_DATA,
            )

        components = {
            "command_pattern": self._command_score(features),
            "role_behavior": self._role_score(features),
            "temporal": self._temporal_score(features),
            "frequency": self._frequency_score(now),
        }
        score = config.weights.combine(
            command=components["command_pattern"],
            role=components["role_behavior"],
            temporal=components["temporal"],
            frequency=components["frequency"],
        )
        score = max(0.0, min(1.0, score))
        is_anomaly = score > config.anomaly_threshold

        reasons = tuple(
            f"unusual_{label} (score: {components[name]:.2f})"
            for name, label in (
                ("command_pattern", "command_pattern"),
                ("role_behavior", "role_behavior"),
                ("temporal", "timing"),
                ("frequency", "frequency"),
            )
            if components[name] > 0.5
        )

        return AnomalyScore(
            score=score,
            is_anomaly=is_anomaly,
            threshold=config.anomaly_threshold,
            confidence=config.confidence_for(history_size),
            reasons=reasons,
            recommended_action=self._recommend(score, is_anomaly),
            components=components,
        )

    def _recommend(self, score: float, is_anomaly: bool) -> str:
        if not is_anomaly:
            return ACTION_ALLOW
        if score > self._config.block_threshold:
            return ACTION_BLOCK_AND_ALERT
        if score > self._config.alert_threshold:
            return ACTION_ALERT_AND_LOG
        return ACTION_LOG_FOR_REVIEW

    def _command_score(self, features: CommandFeatures) -> float:
        baseline = self._commands.get(features.command)
        if baseline is None:
            return 0.6

        score = 0.0
        role_count = baseline.roles.count(features.role)
        if role_count == 0:
            score += 0.4
        elif role_count / baseline.count < 0.1:
            score += 0.2

        hour_std = baseline.hour_std
        if hour_std > 0:
            z_score = _hour_distance(features.hour_of_day, baseline.mean_hour) / hour_std
            if z_score > 2:
                score += 0.3
            elif z_score > 1:
                score += 0.15

        interval_std = baseline.interval_std
        if features.time_since_last > 0 and interval_std > 0:
            z_score = abs(features.time_since_last - baseline.mean_interval) / interval_std
            if z_score > 2:
                score += 0.3

        return min(score, 1.0)

    def _role_score(self, features: CommandFeatures) -> float:
        baseline = self._roles.get(features.role)
        if baseline is None:
            return 0.5

        score = 0.0
        if baseline.commands.count(features.command) == 0:
            score += 0.5
        elif baseline.command_share(features.command) < 0.05:
            score += 0.25

        if baseline.hours.count(features.hour_of_day) == 0:
            score += 0.3

        return min(score, 1.0)

    def _temporal_score(self, features: CommandFeatures) -> float:
        score = 0.0
        start, end = self._config.unusual_hours
        if start <= features.hour_of_day <= end:
            score += 0.4

        if features.is_weekend:
            weekend = sum(1 for entry in self._history if entry.features.is_weekend)
            weekday = len(self._history) - weekend
            if weekday > 0 and weekend / weekday < 0.1:
                score += 0.3

        return min(score, 1.0)

    def _frequency_score(self, now: datetime) -> float:
        cutoff = now - self._config.frequency_window
        recent = 0
        for entry in reversed(self._history):
            if entry.timestamp < cutoff:
                break
            recent += 1

        if recent > 20:
            return 0.8
        if recent > 10:
            return 0.5
        if recent > 5:
            return 0.3
        return 0.0

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _schedule_save(self, snapshot: Dict[str, object]) -> None:
        if self._executor is None or self._closed:
            return
        try:
            self._executor.submit(self._persist, snapshot)
        except RuntimeError:
            logger.debug("Baseline model writer already stopped; skipping periodic save")

    def _persist(self, snapshot: Mapping[str, object]) -> None:
        if self._store is None:
            return
        try:
            self._store.save(snapshot)
        except ModelStoreError as exc:
            logger.warning("Baseline model save failed, keeping in-memory state: %s", exc)
        except Exception:
            logger.exception("Baseline model save crashed, keeping in-memory state")
        else:
            logger.debug("Baseline model saved to %s", self._store.path)

    def _load(self) -> None:
        if self._store is None:
            return
        try:
            data = self._store.load()
        except ModelStoreError as exc:
            logger.warning("Baseline model could not be loaded, starting empty: %s", exc)
            return
        if data is None:
            return
        try:
            self.restore(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Baseline model at %s is malformed, starting empty: %s", self._store.path, exc)
            return
        logger.info(
            "Loaded baseline model from %s (%d observations, %d commands, %d roles)",
            self._store.path,
            len(self._history),
            len(self._commands),
            len(self._roles),
        )

    def _now(self, timestamp: Optional[datetime]) -> datetime:
        return as_utc(timestamp if timestamp is not None else self._clock())


def _hour_distance(hour: int, mean_hour: float) -> float:
    """Circular distance on the 24-hour clock."""

    diff = abs(hour - mean_hour)
    if diff > 12:
        diff = 24 - diff
    return diff


def _parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"invalid timestamp {value!r}")


__all__ = [
    "ACTION_ALLOW",
    "ACTION_LOG_FOR_REVIEW",
    "ACTION_ALERT_AND_LOG",
    "ACTION_BLOCK_AND_ALERT",
    "ACTION_COLLECT_MORE_DATA",
    "AnomalyScore",
    "BaselineScorer",
    "CommandBaseline",
    "CommandFeatures",
    "CommandHistory",
    "RoleBaseline",
]
