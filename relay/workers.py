"""Registry of connected workers and their readiness."""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Protocol


class WorkerConnection(Protocol):
    """Outbound half of a worker stream.

    ``send`` must not block and must not raise once the peer is gone; the
    transport drops messages for closed streams.
    """

    def send(self, event: str, data: Any = None) -> None: ...


@dataclass(eq=False)
class Worker:
    id: str
    connection: WorkerConnection
    is_ready: bool = False


class WorkerRegistry:
    """Workers keyed by id for the lifetime of their connection.

    Selection among eligible workers is uniformly random.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._workers: dict[str, Worker] = {}
        self._rng = rng or random.Random()

    def register(self, connection: WorkerConnection) -> Worker:
        worker = Worker(id=str(uuid.uuid4()), connection=connection)
        self._workers[worker.id] = worker
        return worker

    def unregister(self, worker_id: str) -> Worker | None:
        return self._workers.pop(worker_id, None)

    def get(self, worker_id: str) -> Worker | None:
        return self._workers.get(worker_id)

    def set_ready(self, worker_id: str, is_ready: bool) -> bool:
        """Update readiness; returns False if the worker is no longer registered."""
        worker = self._workers.get(worker_id)
        if worker is None:
            return False
        worker.is_ready = bool(is_ready)
        return True

    def eligible(self, exclude: Iterable[str] = ()) -> list[Worker]:
        skip = set(exclude)
        return [w for w in self._workers.values() if w.is_ready and w.id not in skip]

    def has_eligible(self, exclude: Iterable[str] = ()) -> bool:
        return bool(self.eligible(exclude))

    def pick_eligible(self, exclude: Iterable[str] = ()) -> Worker | None:
        candidates = self.eligible(exclude)
        if not candidates:
            return None
        return self._rng.choice(candidates)

    def ready_count(self) -> int:
        return sum(1 for w in self._workers.values() if w.is_ready)

    def __len__(self) -> int:
        return len(self._workers)

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers
