"""HTTP and WebSocket edge tests for api.main.

The periodic trigger is disabled (interval 0) so generations only start from
an observer's ``manual-start``.
"""

from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from api.main import BackgroundWriter, QueuedConnection, create_app
from relay.config import (
    EngineConfig,
    RelaySettings,
    SchedulerConfig,
    SeedConfig,
    ServerConfig,
    SnapshotConfig,
)
from relay.event_log import events_of_type, read_events


def _settings(tmp_path: Path, *, seed: SeedConfig | None = None) -> RelaySettings:
    return RelaySettings(
        engine=EngineConfig(dispatch_timeout_s=5.0, max_consecutive_failures=None, max_image_side=256),
        scheduler=SchedulerConfig(interval_s=0),
        snapshots=SnapshotConfig(
            history_cap=500, replay_count=10, persist=True, snapshots_dir=str(tmp_path / "snapshots")
        ),
        seed=seed or SeedConfig(mode="gray", width=3, height=2, path=None),
        server=ServerConfig(host="127.0.0.1", port=3000, log_events=True, event_log_dir=str(tmp_path / "logs")),
    )


def _image(width: int, height: int, value: float) -> dict:
    return {
        "width": width,
        "height": height,
        "data": [[{"r": value, "g": value, "b": value} for _ in range(width)] for _ in range(height)],
    }


@pytest.fixture
def client(tmp_path: Path):
    with TestClient(create_app(_settings(tmp_path))) as c:
        yield c


def _ready(ws) -> None:  # noqa: ANN001
    ws.send_text(json.dumps({"event": "set-ready", "data": {"isReady": True}}))
    # Messages on one socket are handled in order: once the ack arrives the
    # ready flag is set.
    ws.send_text(json.dumps({"event": "get-image", "ack": 1}))
    reply = ws.receive_json()
    assert reply["event"] == "get-image"
    assert reply["ack"] == 1


def test_health_check(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_status_reports_idle_runtime(client: TestClient) -> None:
    body = client.get("/status").json()
    assert body["in_progress"] is False
    assert body["workers_connected"] == 0
    assert body["history_length"] == 0


def test_get_image_returns_starting_image(client: TestClient) -> None:
    with client.websocket_connect("/worker") as ws:
        ws.send_text(json.dumps({"event": "get-image", "ack": "abc"}))
        reply = ws.receive_json()

    assert reply == {"event": "get-image", "data": _image(3, 2, 0.5), "ack": "abc"}


def test_manual_start_without_workers_publishes_nothing(client: TestClient) -> None:
    with client.websocket_connect("/admin") as admin:
        admin.send_text(json.dumps({"event": "manual-start"}))

    assert client.get("/generations").json() == []
    assert client.get("/status").json()["in_progress"] is False


def test_single_worker_end_to_end(client: TestClient, tmp_path: Path) -> None:
    with client.websocket_connect("/worker") as worker, client.websocket_connect("/admin") as admin:
        _ready(worker)

        admin.send_text(json.dumps({"event": "manual-start"}))

        dispatch = worker.receive_json()
        assert dispatch == {"event": "process-image", "data": _image(3, 2, 0.5)}

        worker.send_text(json.dumps({"event": "processed-image", "data": _image(3, 2, 0.25)}))

        done = admin.receive_json()
        assert done["event"] == "generation-completed"
        seq = done["data"]["imageSequence"]
        assert seq == [_image(3, 2, 0.5), _image(3, 2, 0.25)]
        gen_id = done["data"]["generationId"]

    # The new starting image is the last one of the completed generation.
    with client.websocket_connect("/worker") as ws:
        ws.send_text(json.dumps({"event": "get-image", "ack": 2}))
        assert ws.receive_json()["data"] == _image(3, 2, 0.25)

    history = client.get("/generations", params={"limit": 5}).json()
    assert [g["generationId"] for g in history] == [gen_id]
    assert client.get(f"/generations/{gen_id}").json()["generationId"] == gen_id
    assert client.get("/generations/nope").status_code == 404

    (log_path,) = list((tmp_path / "logs").glob("relay_*.jsonl"))
    events = read_events(log_path)
    assert len(events_of_type(events, "generation_completed")) == 1


def test_invalid_result_is_reported_to_worker(client: TestClient) -> None:
    with client.websocket_connect("/worker") as worker, client.websocket_connect("/admin") as admin:
        _ready(worker)
        admin.send_text(json.dumps({"event": "manual-start"}))
        assert worker.receive_json()["event"] == "process-image"

        bad = _image(3, 2, 0.5)
        bad["data"][1][0]["r"] = 1.5
        worker.send_text(json.dumps({"event": "processed-image", "data": bad}))

        assert worker.receive_json() == {"event": "update-ready", "data": {"isReady": False}}
        assert worker.receive_json() == {
            "event": "invalid-image",
            "data": {"coordinates": [0, 1], "error": "Invalid red value 1.5"},
        }

        # No other worker is ready: the generation closes on the seed alone.
        done = admin.receive_json()
        assert done["data"]["imageSequence"] == [_image(3, 2, 0.5)]


def test_processing_error_is_reported_to_worker(client: TestClient) -> None:
    with client.websocket_connect("/worker") as worker, client.websocket_connect("/admin") as admin:
        _ready(worker)
        admin.send_text(json.dumps({"event": "manual-start"}))
        assert worker.receive_json()["event"] == "process-image"

        worker.send_text(json.dumps({"event": "error-processing"}))

        assert worker.receive_json() == {"event": "update-ready", "data": {"isReady": False}}
        assert worker.receive_json() == {
            "event": "invalid-image",
            "data": {"coordinates": [0, 0], "error": "Worker failed to process the image"},
        }
        done = admin.receive_json()
        assert done["data"]["imageSequence"] == [_image(3, 2, 0.5)]


def test_snapshots_are_on_disk_once_the_app_shuts_down(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as c:
        with c.websocket_connect("/worker") as worker, c.websocket_connect("/admin") as admin:
            _ready(worker)
            admin.send_text(json.dumps({"event": "manual-start"}))
            assert worker.receive_json()["event"] == "process-image"
            worker.send_text(json.dumps({"event": "processed-image", "data": _image(3, 2, 0.25)}))
            gen_id = admin.receive_json()["data"]["generationId"]

    # Shutdown waits for the background writes.
    (run_dir,) = list((tmp_path / "snapshots").iterdir())
    gen_dir = run_dir / gen_id
    assert sorted(p.name for p in gen_dir.iterdir()) == ["0000.json", "0001.json", "generation.json"]
    assert json.loads((gen_dir / "0001.json").read_text(encoding="utf-8")) == _image(3, 2, 0.25)


def test_new_observer_gets_recent_generations_replayed(client: TestClient) -> None:
    with client.websocket_connect("/worker") as worker:
        for i in range(2):
            with client.websocket_connect("/admin") as admin:
                _ready(worker)
                admin.send_text(json.dumps({"event": "manual-start"}))
                assert worker.receive_json()["event"] == "process-image"
                worker.send_text(json.dumps({"event": "processed-image", "data": _image(1, 1, 0.1 * (i + 1))}))
                # Replays of earlier generations arrive first, then the new one.
                for _ in range(i + 1):
                    last = admin.receive_json()
                assert last["event"] == "generation-completed"

    with client.websocket_connect("/admin") as late:
        replayed = [late.receive_json() for _ in range(2)]

    assert [r["data"]["imageSequence"][-1] for r in replayed] == [_image(1, 1, 0.1), _image(1, 1, 0.2)]


def test_malformed_messages_are_dropped(client: TestClient) -> None:
    with client.websocket_connect("/worker") as ws:
        ws.send_text("not json")
        ws.send_text(json.dumps({"event": "unknown"}))
        ws.send_text(json.dumps({"event": "set-ready", "data": {"isReady": "maybe"}}))
        ws.send_text(json.dumps({"event": "get-image", "ack": 9}))
        assert ws.receive_json()["ack"] == 9

    assert client.get("/status").json()["workers_ready"] == 0


def test_bad_seed_prevents_startup(tmp_path: Path) -> None:
    seed_file = tmp_path / "seed.json"
    seed_file.write_text(json.dumps([[[0.1, 0.2, -0.3]]]), encoding="utf-8")
    app = create_app(_settings(tmp_path, seed=SeedConfig(mode="file", width=1, height=1, path=str(seed_file))))

    with pytest.raises(ValueError, match="Invalid blue value -0.3"):
        with TestClient(app):
            pass


class _RecordingSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send_json(self, msg: dict) -> None:
        self.sent.append(msg)


def test_outbound_queue_drops_messages_past_its_limit() -> None:
    async def main() -> list[dict]:
        conn = QueuedConnection(maxsize=2)
        for i in range(5):
            conn.send("generation-completed", i)
        assert conn.dropped == 3
        # Closing still works with a full queue.
        conn.close()
        conn.send("generation-completed", 99)
        ws = _RecordingSocket()
        await conn.pump(ws)
        return ws.sent

    assert asyncio.run(main()) == []


def test_outbound_queue_delivers_in_order_within_its_limit() -> None:
    async def main() -> list[dict]:
        conn = QueuedConnection(maxsize=3)
        conn.send("get-image", {"w": 1}, ack=7)
        conn.send("update-ready", {"isReady": False})
        conn.close()
        ws = _RecordingSocket()
        await conn.pump(ws)
        return ws.sent

    assert asyncio.run(main()) == [
        {"event": "get-image", "data": {"w": 1}, "ack": 7},
        {"event": "update-ready", "data": {"isReady": False}},
    ]


def test_background_writer_runs_jobs_off_the_loop_thread() -> None:
    seen: list[int] = []

    async def main() -> int:
        writer = BackgroundWriter()
        writer.submit(lambda: seen.append(threading.get_ident()))
        writer.submit(lambda: 1 / 0)
        await writer.drain()
        assert len(writer) == 0
        return threading.get_ident()

    loop_thread = asyncio.run(main())
    assert len(seen) == 1
    assert seen[0] != loop_thread
