from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from relay.contracts import EventSink, GenerationCompletedEvent, GenerationSkippedEvent, write_event
from relay.event_log import append_event, create_run_id, events_of_type, make_log_path, read_events


def test_append_and_read_events_round_trip(tmp_path: Path) -> None:
    log_path = make_log_path("test", tmp_path)

    append_event(log_path, {"type": "generation_started", "run_id": "test"})
    append_event(log_path, {"type": "dispatch", "run_id": "test", "step": 1})

    events = read_events(log_path)
    assert len(events) == 2
    assert events[0]["type"] == "generation_started"
    assert events[1]["step"] == 1
    assert "ts_utc" in events[0]


def test_read_events_ignores_partial_last_line(tmp_path: Path) -> None:
    log_path = make_log_path("partial", tmp_path)
    append_event(log_path, {"type": "generation_started"})

    # Simulate a crash during append (partial JSON line at EOF).
    with log_path.open("a", encoding="utf-8") as f:
        f.write('{"type": "dispatch"')

    events = read_events(log_path)
    assert [e["type"] for e in events] == ["generation_started"]


def test_read_events_keeps_last_n(tmp_path: Path) -> None:
    log_path = make_log_path("many", tmp_path)
    for i in range(5):
        append_event(log_path, {"type": "dispatch", "step": i})

    assert [e["step"] for e in read_events(log_path, max_events=2)] == [3, 4]
    assert read_events(tmp_path / "missing.jsonl") == []


def test_make_log_path_sanitizes_run_id(tmp_path: Path) -> None:
    assert make_log_path("a/b c", tmp_path).name == "relay_a_b_c.jsonl"


def test_create_run_id_is_sortable_utc() -> None:
    ts = datetime(2024, 3, 5, 7, 8, 9, tzinfo=timezone.utc)
    assert create_run_id(ts) == "20240305T070809Z"


def test_typed_events_carry_their_type(tmp_path: Path) -> None:
    log_path = tmp_path / "relay.jsonl"
    write_event(log_path, GenerationCompletedEvent(run_id="r", generation_id="g", n_images=3))
    EventSink("r", log_path).emit(GenerationSkippedEvent(run_id="r", reason="no_workers"))

    events = read_events(log_path)
    assert events_of_type(events, "generation_completed")[0]["n_images"] == 3
    assert events_of_type(events, "generation_skipped")[0]["reason"] == "no_workers"


def test_sink_without_path_writes_nothing(tmp_path: Path) -> None:
    sink = EventSink("r")
    sink.emit(GenerationSkippedEvent(run_id="r", reason="in_progress"))
    assert list(tmp_path.iterdir()) == []
