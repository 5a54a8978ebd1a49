from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ttc_core.baseline import (
    ACTION_ALERT_AND_LOG,
    ACTION_ALLOW,
    ACTION_COLLECT_MORE_DATA,
    ACTION_LOG_FOR_REVIEW,
    BaselineScorer,
    _hour_distance,
)
from ttc_core.config import ScorerConfig
from ttc_core.persistence import ModelStore


MONDAY = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


def _feed(scorer: BaselineScorer, count: int, *, command: str = "health_check", role: str = "operator", start: datetime = MONDAY, step: float = 1.0) -> None:
    for index in range(count):
        scorer.record_command(command, role, timestamp=start + timedelta(seconds=index * step))


def test_below_min_history_collects_more_data() -> None:
    scorer = BaselineScorer()
    _feed(scorer, 9)
    result = scorer.detect_anomaly("deorbit", "guest", timestamp=MONDAY.replace(hour=3))
    assert result.confidence == 0.1
    assert result.is_anomaly is False
    assert result.recommended_action == ACTION_COLLECT_MORE_DATA
    assert result.components == {}


@pytest.mark.parametrize(
    "history, expected",
    [(9, 0.1), (10, 0.5), (49, 0.5), (50, 0.7), (199, 0.7), (200, 0.9)],
)
def test_confidence_transitions(history: int, expected: float) -> None:
    scorer = BaselineScorer()
    _feed(scorer, history, step=60.0)
    result = scorer.detect_anomaly("health_check", "operator", timestamp=MONDAY + timedelta(days=1))
    assert result.confidence == expected


def test_recording_does_not_leak_into_other_baselines() -> None:
    scorer = BaselineScorer()
    _feed(scorer, 20)
    before = scorer.command_baseline("health_check").snapshot()

    scorer.record_command("deorbit", "admin", {"reason": "test"}, timestamp=MONDAY + timedelta(minutes=1))

    assert scorer.command_baseline("health_check").snapshot() == before
    assert scorer.command_baseline("deorbit").count == 1
    assert scorer.role_baseline("operator").commands.count("deorbit") == 0


def test_detect_anomaly_does_not_learn() -> None:
    scorer = BaselineScorer()
    _feed(scorer, 12)
    scorer.detect_anomaly("deorbit", "operator", timestamp=MONDAY + timedelta(seconds=30))
    assert scorer.history_size == 12
    assert scorer.command_baseline("deorbit") is None


def test_observe_scores_before_learning() -> None:
    scorer = BaselineScorer()
    _feed(scorer, 12)
    result = scorer.observe("deorbit", "operator", timestamp=MONDAY + timedelta(seconds=30))
    assert result.components["command_pattern"] == pytest.approx(0.6)
    assert scorer.history_size == 13
    assert scorer.command_baseline("deorbit").count == 1


def test_established_operator_issuing_new_command() -> None:
    scorer = BaselineScorer()
    _feed(scorer, 50)

    result = scorer.detect_anomaly("deorbit", "operator", timestamp=MONDAY + timedelta(seconds=50))

    assert result.components["command_pattern"] == pytest.approx(0.6)
    assert result.components["role_behavior"] == pytest.approx(0.5)
    assert result.components["temporal"] == pytest.approx(0.0)
    assert result.components["frequency"] == pytest.approx(0.8)
    assert result.score == pytest.approx(0.465)
    assert result.is_anomaly is False
    assert result.recommended_action == ACTION_ALLOW
    assert result.confidence == 0.7
    assert result.reasons == (
        "unusual_command_pattern (score: 0.60)",
        "unusual_frequency (score: 0.80)",
    )


def test_recommended_action_follows_thresholds() -> None:
    config = ScorerConfig(anomaly_threshold=0.4, alert_threshold=0.45, block_threshold=0.5)
    scorer = BaselineScorer(config)
    _feed(scorer, 50)
    result = scorer.detect_anomaly("deorbit", "operator", timestamp=MONDAY + timedelta(seconds=50))
    assert result.is_anomaly
    assert result.recommended_action == ACTION_ALERT_AND_LOG
    assert result.severity == "high"


def _seed_downlink_day(scorer: BaselineScorer) -> None:
    # Alternating 20/40 minute gaps from 08:00 to 17:20.
    offset = 0
    for index in range(20):
        scorer.record_command("downlink", "operator", timestamp=MONDAY + timedelta(minutes=offset))
        offset += 20 if index % 2 == 0 else 40


def test_composite_anomaly_for_unusual_role_hour_and_interval() -> None:
    scorer = BaselineScorer()
    _seed_downlink_day(scorer)

    night = datetime(2025, 1, 7, 2, 58, tzinfo=timezone.utc)
    for index in range(25):
        scorer.record_command("ping", "guest", timestamp=night + timedelta(seconds=index * 4))

    result = scorer.detect_anomaly("downlink", "guest", timestamp=datetime(2025, 1, 7, 3, 0, tzinfo=timezone.utc))

    assert result.components == {
        "command_pattern": pytest.approx(1.0),
        "role_behavior": pytest.approx(0.8),
        "temporal": pytest.approx(0.4),
        "frequency": pytest.approx(0.8),
    }
    assert result.score == pytest.approx(0.76)
    assert result.is_anomaly
    assert result.recommended_action == ACTION_LOG_FOR_REVIEW
    assert result.severity == "medium"
    assert len(result.reasons) == 3


def test_weekend_activity_scores_when_history_is_weekday_only() -> None:
    scorer = BaselineScorer()
    _feed(scorer, 30, step=600.0)
    saturday = datetime(2025, 1, 11, 12, 0, tzinfo=timezone.utc)
    result = scorer.detect_anomaly("health_check", "operator", timestamp=saturday)
    assert result.components["temporal"] == pytest.approx(0.3)


def test_running_hour_statistics() -> None:
    scorer = BaselineScorer()
    scorer.record_command("downlink", "operator", timestamp=MONDAY)
    scorer.record_command("downlink", "operator", timestamp=MONDAY.replace(hour=10))

    baseline = scorer.command_baseline("downlink")
    assert baseline.mean_hour == pytest.approx(9.0)
    assert baseline.hour_std == pytest.approx(1.0)
    assert baseline.interval_count == 1
    assert baseline.last_seen == MONDAY.replace(hour=10)
    assert scorer.role_baseline("operator").last_activity == MONDAY.replace(hour=10)


@pytest.mark.parametrize("hour, mean, expected", [(1, 23.0, 2.0), (23, 1.0, 2.0), (3, 12.5, 9.5), (12, 12.0, 0.0)])
def test_hour_distance_wraps_on_24_hour_clock(hour: int, mean: float, expected: float) -> None:
    assert _hour_distance(hour, mean) == pytest.approx(expected)


def test_history_is_capped_but_baselines_keep_counting() -> None:
    scorer = BaselineScorer(ScorerConfig(max_history=20))
    _feed(scorer, 25)
    assert scorer.history_size == 20
    assert scorer.command_baseline("health_check").count == 25
    assert scorer.statistics()["recorded_since_start"] == 25


def test_model_is_saved_in_background_and_reloaded(tmp_path: Path) -> None:
    store = ModelStore(tmp_path / "model.json")
    scorer = BaselineScorer(ScorerConfig(save_interval=5), store=store)
    _feed(scorer, 12)
    scorer.close()

    restored = BaselineScorer(store=ModelStore(tmp_path / "model.json"))
    assert restored.history_size == 12
    assert restored.command_baseline("health_check").count == 12
    assert restored.role_baseline("operator").hours.count(8) == 12
    assert restored.statistics()["model_path"] == str(tmp_path / "model.json")
    restored.close()


def test_persistence_failure_is_not_fatal(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    blocked = tmp_path / "model"
    blocked.mkdir()

    with caplog.at_level(logging.WARNING, logger="ttc_core.baseline"):
        scorer = BaselineScorer(ScorerConfig(save_interval=1), store=ModelStore(blocked))
        _feed(scorer, 3)
        scorer.close()

    assert scorer.history_size == 3
    assert any("save failed" in record.getMessage() for record in caplog.records)
    assert any("could not be loaded" in record.getMessage() for record in caplog.records)


def test_unserializable_params_fail_the_save_loudly(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "model.json"

    with caplog.at_level(logging.WARNING, logger="ttc_core.baseline"):
        scorer = BaselineScorer(ScorerConfig(save_interval=1), store=ModelStore(path))
        scorer.record_command("health_check", "operator", {"ids": {1, 2}}, timestamp=MONDAY)
        scorer.close()

    assert scorer.history_size == 1
    assert not path.exists()
    assert any("save failed" in record.getMessage() and "not serializable" in record.getMessage() for record in caplog.records)


def test_raised_min_history_reports_floor_confidence() -> None:
    scorer = BaselineScorer(ScorerConfig(min_history=60))
    _feed(scorer, 55)
    result = scorer.detect_anomaly("health_check", "operator", timestamp=MONDAY + timedelta(minutes=2))
    assert result.confidence == 0.1
    assert result.is_anomaly is False
    assert result.recommended_action == ACTION_COLLECT_MORE_DATA
