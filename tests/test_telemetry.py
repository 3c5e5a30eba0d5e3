"""Tests for narrative telemetry."""
from __future__ import annotations

import sqlite3
import time

import narrative_bot.telemetry as telemetry_module
from narrative_bot.telemetry import MetricEvent, MetricType, TelemetryCollector, get_telemetry


def test_metric_event_row_omits_empty_details():
    event = MetricEvent(
        recorded_at=time.time(),
        metric_type=MetricType.NUDGE,
        name="new_user.tutorial_poll",
        user_id=42,
    )
    row = event.as_row()
    assert row[1:] == ("nudge", "new_user.tutorial_poll", None, 42, 1.0, None)


def test_events_are_buffered_until_flush(tmp_path):
    collector = TelemetryCollector(tmp_path / "telemetry.db")
    collector.track_reset("new_user", 42)

    assert collector.pending == 1
    assert collector.flush() == 1
    assert collector.pending == 0
    assert collector.flush() == 0

    with sqlite3.connect(collector.db_path) as conn:
        rows = conn.execute("SELECT metric_type, name, track, user_id FROM narrative_events").fetchall()
    assert rows == [("reset", "new_user", "new_user", 42)]


def test_full_batch_flushes_itself(tmp_path):
    collector = TelemetryCollector(tmp_path / "telemetry.db")
    for user_id in range(TelemetryCollector.BATCH_SIZE):
        collector.track_completion("new_user", user_id)
    assert collector.pending == 0


def test_summary_aggregates_per_name(telemetry):
    telemetry.track_transition("new_user", "tutorial_onebox", "tutorial_images", 1, "reply")
    telemetry.track_transition("new_user", "tutorial_onebox", "tutorial_images", 2, "skip")
    telemetry.track_nudge("advanced_user", "tutorial_poll", 1, sent=True)
    telemetry.track_nudge("advanced_user", "tutorial_poll", 1, sent=False)
    telemetry.track_reclassification("new_user", "confused", 1)

    assert telemetry.summary(MetricType.TRANSITION) == {"new_user.tutorial_images": 2.0}
    assert telemetry.summary(MetricType.NUDGE) == {"advanced_user.tutorial_poll": 1.0}
    assert telemetry.summary(MetricType.RECLASSIFICATION) == {"new_user.confused": 1.0}


def test_user_history_keeps_error_details(telemetry):
    telemetry.track_timeout("new_user", 42, delivered=True)
    telemetry.track_error("InvalidTransitionError", "new_user", 42, "No transition")
    telemetry.track_reset("new_user", 7)

    history = telemetry.user_history(42)

    assert [entry["metric_type"] for entry in history] == ["error_rate", "timeout"]
    assert history[0]["details"] == {"error": "No transition"}
    assert history[1]["details"] == {}


def test_get_telemetry_is_a_singleton(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(telemetry_module, "_telemetry", None)
    assert get_telemetry() is get_telemetry()
