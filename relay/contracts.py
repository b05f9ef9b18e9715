"""Typed events for the relay event log.

Event Types:
- WorkerConnectedEvent / WorkerReadyEvent / WorkerDisconnectedEvent
- GenerationSkippedEvent: trigger ignored (already running / no workers)
- GenerationStartedEvent: seeded and relaying
- DispatchEvent: image sent to a worker
- AttemptFailedEvent: timeout or invalid result, image will be retried
- ImageAppendedEvent: valid result added to the sequence
- GenerationCompletedEvent: no eligible worker left, sequence published
- GenerationAbortedEvent: in-flight generation discarded
- PersistFailedEvent: snapshot artifact could not be written
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from relay.event_log import append_event as _append_event_raw


@dataclass
class WorkerConnectedEvent:
    run_id: str
    worker_id: str
    n_workers: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "worker_connected", **asdict(self)}


@dataclass
class WorkerReadyEvent:
    run_id: str
    worker_id: str
    is_ready: bool

    def to_dict(self) -> dict[str, Any]:
        return {"type": "worker_ready", **asdict(self)}


@dataclass
class WorkerDisconnectedEvent:
    run_id: str
    worker_id: str
    reason: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "worker_disconnected", **asdict(self)}


@dataclass
class GenerationSkippedEvent:
    """Trigger did not start a generation."""

    run_id: str
    reason: str  # "in_progress" | "no_workers"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "generation_skipped", **asdict(self)}


@dataclass
class GenerationStartedEvent:
    run_id: str
    generation_id: str
    seed_width: int
    seed_height: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "generation_started", **asdict(self)}


@dataclass
class DispatchEvent:
    run_id: str
    generation_id: str
    worker_id: str
    step: int
    attempt: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "dispatch", **asdict(self)}


@dataclass
class AttemptFailedEvent:
    run_id: str
    generation_id: str
    worker_id: str
    kind: str  # "timeout" | "invalid"
    error: str | None = None
    coordinates: list[int] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "attempt_failed", **asdict(self)}


@dataclass
class ImageAppendedEvent:
    run_id: str
    generation_id: str
    worker_id: str
    index: int
    width: int
    height: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "image_appended", **asdict(self)}


@dataclass
class GenerationCompletedEvent:
    run_id: str
    generation_id: str
    n_images: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": "generation_completed", **asdict(self)}


@dataclass
class GenerationAbortedEvent:
    run_id: str
    generation_id: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "generation_aborted", **asdict(self)}


@dataclass
class PersistFailedEvent:
    run_id: str
    generation_id: str
    path: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "persist_failed", **asdict(self)}


RelayEvent = (
    WorkerConnectedEvent
    | WorkerReadyEvent
    | WorkerDisconnectedEvent
    | GenerationSkippedEvent
    | GenerationStartedEvent
    | DispatchEvent
    | AttemptFailedEvent
    | ImageAppendedEvent
    | GenerationCompletedEvent
    | GenerationAbortedEvent
    | PersistFailedEvent
)


def write_event(log_path: Path, event: RelayEvent) -> None:
    """Write a typed event to the relay log."""
    _append_event_raw(log_path, event.to_dict())


class EventSink:
    """Run-scoped event writer; a sink without a path only keeps the run id."""

    def __init__(self, run_id: str, log_path: Path | None = None) -> None:
        self.run_id = run_id
        self.log_path = log_path

    def emit(self, event: RelayEvent) -> None:
        if self.log_path is None:
            return
        try:
            write_event(self.log_path, event)
        except OSError as exc:
            print(f"[relay] Event log write failed ({self.log_path}): {exc}")
