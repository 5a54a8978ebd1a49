from __future__ import annotations

from bisect import bisect_right, insort
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Generic, Hashable, Iterable, Iterator, Mapping, Optional, Tuple, TypeVar


__all__ = [
    "SEVERITY_LOW",
    "SEVERITY_MEDIUM",
    "SEVERITY_HIGH",
    "SEVERITY_CRITICAL",
    "SEVERITIES",
    "MissionPhase",
    "CommandContext",
    "CountHistogram",
    "TimestampWindow",
    "as_utc",
    "utcnow",
]

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"
SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MissionPhase(Enum):
    """Operational mode of the asset, gating which commands are permissible."""

    NORMAL = "normal"
    CRITICAL = "critical"
    SAFE_MODE = "safe_mode"
    MAINTENANCE = "maintenance"

    @classmethod
    def coerce(cls, value: "MissionPhase | str") -> "MissionPhase":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            known = ", ".join(phase.value for phase in cls)
            raise ValueError(f"unknown mission phase '{value}' (expected one of: {known})") from None


@dataclass(frozen=True)
class CommandContext:
    """Everything the gateway knows about one inbound command."""

    command: str
    operator_role: str
    satellite_id: str = ""
    mission_phase: MissionPhase = MissionPhase.NORMAL
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.command or not self.command.strip():
            raise ValueError("command must not be empty")
        object.__setattr__(self, "mission_phase", MissionPhase.coerce(self.mission_phase))
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))

    def as_dict(self) -> Dict[str, object]:
        return {
            "command": self.command,
            "operator_role": self.operator_role,
            "satellite_id": self.satellite_id,
            "mission_phase": self.mission_phase.value,
            "timestamp": self.timestamp.isoformat(),
        }


K = TypeVar("K", bound=Hashable)


class CountHistogram(Generic[K]):
    """Mapping of category to a non-negative observation count.

    When ``categories`` is given the histogram is closed: incrementing a key
    outside that set raises :class:`KeyError`.
    """

    def __init__(self, *, categories: Optional[Iterable[K]] = None) -> None:
        self._counts: Dict[K, int] = {}
        self._categories = frozenset(categories) if categories is not None else None

    def increment(self, key: K, amount: int = 1) -> int:
        if amount < 0:
            raise ValueError("histogram counts only grow")
        self._check_key(key)
        self._counts[key] = self._counts.get(key, 0) + amount
        return self._counts[key]

    def count(self, key: K) -> int:
        return self._counts.get(key, 0)

    def total(self) -> int:
        return sum(self._counts.values())

    def items(self) -> Iterator[Tuple[K, int]]:
        return iter(self._counts.items())

    def __contains__(self, key: object) -> bool:
        return key in self._counts

    def __len__(self) -> int:
        return len(self._counts)

    def as_dict(self) -> Dict[K, int]:
        return dict(self._counts)

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[object, object],
        *,
        key_type: Callable[[object], K] = str,  # type: ignore[assignment]
        categories: Optional[Iterable[K]] = None,
    ) -> "CountHistogram[K]":
        histogram: CountHistogram[K] = cls(categories=categories)
        for raw_key, raw_count in mapping.items():
            count = int(raw_count)  # type: ignore[arg-type]
            if count < 0:
                raise ValueError(f"negative count for '{raw_key}'")
            if count:
                histogram.increment(key_type(raw_key), count)
        return histogram

    def _check_key(self, key: K) -> None:
        if self._categories is not None and key not in self._categories:
            raise KeyError(f"'{key}' is not a known category")

    def __repr__(self) -> str:
        return f"CountHistogram({self._counts!r})"


@dataclass
class TimestampWindow:
    """Ordered timestamps for one tracked series, compacted from the left."""

    items: Deque[datetime] = field(default_factory=deque)

    def append(self, timestamp: datetime) -> None:
        if not self.items or timestamp >= self.items[-1]:
            self.items.append(timestamp)
        else:
            # late arrival from a concurrent request
            insort(self.items, timestamp)

    def prune(self, cutoff: datetime) -> int:
        removed = 0
        while self.items and self.items[0] <= cutoff:
            self.items.popleft()
            removed += 1
        return removed

    def count_since(self, start: datetime) -> int:
        """Number of timestamps strictly after ``start``."""

        return len(self.items) - bisect_right(self.items, start)

    def __len__(self) -> int:
        return len(self.items)
