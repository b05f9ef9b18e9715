"""Bounded history of completed generations with an optional on-disk copy.

Layout when persistence is enabled::

    <snapshots_dir>/<run_id>/<generation_id>/generation.json
    <snapshots_dir>/<run_id>/<generation_id>/0000.json
    <snapshots_dir>/<run_id>/<generation_id>/0001.json
    ...

``run_id`` identifies the process execution. Artifacts are created with
exclusive-create semantics, so a file that already exists is never rewritten.
Each one is written to a hidden temp file and linked into place only once it
is complete.
"""

from __future__ import annotations

import json
import os
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

from relay.config import SnapshotConfig
from relay.contracts import EventSink, PersistFailedEvent
from relay.event_log import create_run_id, utc_now_iso
from relay.images import Image, image_to_payload


@dataclass(frozen=True, eq=False)
class Generation:
    """A completed relay sequence, seed first."""

    generation_id: str
    image_sequence: tuple[Image, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "generationId": self.generation_id,
            "imageSequence": [image_to_payload(img) for img in self.image_sequence],
        }


def _write_once(path: Path, obj: Any) -> bool:
    """Create ``path`` with ``obj`` as JSON; False if it already existed.

    The JSON goes to a temp file first and is hard-linked into place, so a
    failed write never leaves a partial file at ``path``.
    """
    if path.exists():
        return False
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with tmp.open("x", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False)
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
    finally:
        tmp.unlink(missing_ok=True)
    return True


def _run_inline(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)


class SnapshotStore:
    """History of completed generations.

    ``submit`` decides where disk writes run. By default they run inline; the
    API runtime hands them to a thread so the event loop is never blocked.
    """

    def __init__(
        self,
        config: SnapshotConfig | None = None,
        *,
        events: EventSink | None = None,
        submit: Callable[..., Any] | None = None,
    ) -> None:
        self.config = config or SnapshotConfig()
        self._events = events or EventSink(run_id=create_run_id())
        self._submit = submit or _run_inline
        self._history: deque[Generation] = deque(maxlen=self.config.history_cap)

    @property
    def run_id(self) -> str:
        return self._events.run_id

    def insert(self, generation: Generation) -> None:
        """Append to history (oldest evicted past the cap), then persist if enabled.

        Persistence problems are reported and swallowed; the in-memory history
        is always updated first.
        """
        self._history.append(generation)
        if self.config.persist:
            self._submit(self.persist, generation)

    def recent(self, n: int | None = None) -> list[Generation]:
        """Most recent ``n`` generations, oldest first."""
        items = list(self._history)
        if n is None:
            return items
        if n <= 0:
            return []
        return items[-n:]

    def latest(self) -> Generation | None:
        return self._history[-1] if self._history else None

    def generation_dir(self, generation_id: str) -> Path:
        return Path(self.config.snapshots_dir) / self.run_id / generation_id

    def image_path(self, generation_id: str, index: int) -> Path:
        return self.generation_dir(generation_id) / f"{index:04d}.json"

    def persist(self, generation: Generation) -> list[str]:
        """Write every artifact of ``generation`` that does not exist yet.

        Returns the paths actually written in this call.
        """
        written: list[str] = []
        d = self.generation_dir(generation.generation_id)
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._persist_failed(generation, d, exc)
            return written

        manifest = {
            "generationId": generation.generation_id,
            "runId": self.run_id,
            "nImages": len(generation.image_sequence),
            "createdAtUtc": utc_now_iso(),
        }
        artifacts: list[tuple[Path, Any]] = [(d / "generation.json", manifest)]
        for i, img in enumerate(generation.image_sequence):
            artifacts.append((self.image_path(generation.generation_id, i), image_to_payload(img)))

        for path, obj in artifacts:
            try:
                if _write_once(path, obj):
                    written.append(str(path))
            except OSError as exc:
                self._persist_failed(generation, path, exc)
        return written

    def _persist_failed(self, generation: Generation, path: Path, exc: OSError) -> None:
        print(f"[relay] Failed to persist generation {generation.generation_id} to {path}: {exc}")
        self._events.emit(
            PersistFailedEvent(
                run_id=self.run_id,
                generation_id=generation.generation_id,
                path=str(path),
                error=repr(exc),
            )
        )

    def __len__(self) -> int:
        return len(self._history)

    def __iter__(self) -> Iterator[Generation]:
        return iter(list(self._history))
