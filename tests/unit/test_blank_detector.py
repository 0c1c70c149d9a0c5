from __future__ import annotations

from typing import List

from kioskguard.models import BlankDetectionResult, BlankReason, RecoveryEvent
from kioskguard.recovery.blank_detector import BlankDetector, normalize_probe_result
from kioskguard.recovery.surface import blank_detection_script
from kioskguard.runtime.timers import ManualScheduler


def test_threshold_fires_once_and_resets_counter(make_surface) -> None:
    s = ManualScheduler()
    bd = BlankDetector(scheduler=s)
    ui = make_surface(probe={"isBlank": True, "reason": "empty-body"})
    fired: List[BlankDetectionResult] = []
    bd.start(ui, {"check_interval_ms": 100, "blank_threshold": 3}, on_blank_detected=fired.append)

    s.advance(0.2)
    assert bd.get_state(ui).consecutive_blank_count == 2
    assert fired == []

    s.advance(0.1)
    assert len(fired) == 1
    assert fired[0].reason == BlankReason.empty_body
    assert bd.get_state(ui).consecutive_blank_count == 0


def test_permanently_blank_surface_is_reported_every_threshold_cycles(make_surface) -> None:
    s = ManualScheduler()
    bd = BlankDetector(scheduler=s)
    ui = make_surface(probe={"isBlank": True, "reason": "no-body"})
    events: List[RecoveryEvent] = []
    bd.on_event(events.append)
    bd.start(ui, {"check_interval_ms": 100, "blank_threshold": 2})

    s.advance(0.6)
    assert [e.type for e in events] == ["blank-detected"] * 3
    assert events[0].data == {"consecutive": 2}


def test_content_resets_consecutive_count(make_surface) -> None:
    s = ManualScheduler()
    bd = BlankDetector(scheduler=s)
    ui = make_surface(probe={"isBlank": True, "reason": "no-content", "height": 10})
    fired: List[BlankDetectionResult] = []
    bd.start(ui, {"check_interval_ms": 100, "blank_threshold": 3}, on_blank_detected=fired.append)

    s.advance(0.2)
    ui.probe_result = {"isBlank": False, "height": 900}
    s.advance(0.1)
    assert bd.get_state(ui).consecutive_blank_count == 0
    ui.probe_result = {"isBlank": True, "reason": "no-content", "height": 10}
    s.advance(0.2)
    assert fired == []


def test_probe_errors_count_as_blank(make_surface) -> None:
    s = ManualScheduler()
    bd = BlankDetector(scheduler=s)
    ui = make_surface()
    ui.probe_result = RuntimeError("script timed out")
    bd.start(ui, {"check_interval_ms": 100, "blank_threshold": 5})

    s.advance(0.1)
    last = bd.get_last_result(ui)
    assert last.is_blank is True
    assert last.reason == BlankReason.error
    assert "timed out" in last.details


def test_normalize_probe_result_variants() -> None:
    r = normalize_probe_result("nope", min_content_height=100, timestamp=1)
    assert r.is_blank and r.reason == BlankReason.error

    r = normalize_probe_result({"isBlank": False, "height": 40}, min_content_height=100, timestamp=1)
    assert r.is_blank and r.reason == BlankReason.no_content
    assert r.details == "height: 40"

    r = normalize_probe_result({"isBlank": True, "reason": "weird"}, min_content_height=100, timestamp=1)
    assert r.reason == BlankReason.error

    r = normalize_probe_result({"isBlank": False, "height": 500}, min_content_height=100, timestamp=1)
    assert not r.is_blank and r.reason is None


def test_update_config_reschedules_and_check_now_leaves_counter(make_surface) -> None:
    s = ManualScheduler()
    bd = BlankDetector(scheduler=s)
    ui = make_surface(probe={"isBlank": True, "reason": "empty-body"})
    bd.start(ui, {"check_interval_ms": 1_000, "blank_threshold": 10})

    bd.update_config(ui, {"check_interval_ms": 100})
    s.advance(0.3)
    assert bd.get_state(ui).consecutive_blank_count == 3

    result = bd.check_now(ui)
    assert result.is_blank
    assert bd.get_state(ui).consecutive_blank_count == 3
    assert "100" in ui.scripts[-1]

    bd.stop(ui)
    s.advance(1.0)
    assert bd.get_state(ui).consecutive_blank_count == 3
    assert bd.get_state(ui).active is False


def test_blank_detection_script_embeds_min_height() -> None:
    js = blank_detection_script(250)
    assert "height < 250" in js
    assert "no-body" in js
