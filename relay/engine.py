"""Generation sequence engine.

Drives one generation at a time through the worker relay:

1. A trigger seeds a new generation with the current starting image, unless
   one is already running or no worker is ready.
2. Each relay step picks a random ready worker that has not yet contributed
   an image to this generation, claims it (ready flag cleared), sends it the
   current image and arms a timeout.
3. The first of {timeout, response} resolves the dispatch:
   - timeout: the worker is told it is not ready; the same image is retried
   - invalid or malformed response, or a reported processing error: the
     worker gets the reason; retry
   - valid response: the worker is released (ready again) and excluded for
     the rest of the generation, the image is appended and becomes the input
     of the next step
4. When no eligible worker is left, the generation is complete: its last image
   becomes the next starting image, it goes to the snapshot store and the
   observers are notified.

All methods run on a single event loop thread. Each dispatch carries a
:class:`Dispatch` token that is resolved exactly once; whichever of the timer
or the response handler claims it first wins and the other becomes a no-op.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from relay.config import EngineConfig
from relay.contracts import (
    AttemptFailedEvent,
    DispatchEvent,
    EventSink,
    GenerationAbortedEvent,
    GenerationCompletedEvent,
    GenerationSkippedEvent,
    GenerationStartedEvent,
    ImageAppendedEvent,
    WorkerConnectedEvent,
    WorkerDisconnectedEvent,
    WorkerReadyEvent,
)
from relay.images import Image, InvalidReason, image_from_payload, image_to_payload, validate_image
from relay.snapshots import Generation, SnapshotStore
from relay.workers import Worker, WorkerConnection, WorkerRegistry


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


CallLater = Callable[..., TimerHandle]
Observer = Callable[[Generation], None]


def _loop_call_later(delay: float, fn: Callable[..., None], *args: Any) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, fn, *args)


@dataclass(eq=False)
class Dispatch:
    """One image sent to one worker, awaiting exactly one resolution."""

    generation_id: str
    worker_id: str
    image: Image
    timer: TimerHandle | None = None
    resolved: bool = False

    def claim(self) -> bool:
        """Mark resolved; False if something else already resolved it."""
        if self.resolved:
            return False
        self.resolved = True
        if self.timer is not None:
            self.timer.cancel()
        return True


@dataclass
class _RelayRun:
    generation_id: str
    sequence: list[Image]
    used_worker_ids: set[str] = field(default_factory=set)
    attempts: int = 0
    consecutive_failures: int = 0


class GenerationEngine:
    """Owns the starting image, the in-flight generation and its dispatches."""

    def __init__(
        self,
        registry: WorkerRegistry,
        store: SnapshotStore,
        *,
        starting_image: Image,
        config: EngineConfig | None = None,
        call_later: CallLater | None = None,
        events: EventSink | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.config = config or EngineConfig()
        self._starting_image = starting_image
        self._call_later = call_later or _loop_call_later
        self._events = events or EventSink(run_id=store.run_id)
        self._observers: list[Observer] = []
        self._run: _RelayRun | None = None
        self._pending: dict[str, Dispatch] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def starting_image(self) -> Image:
        return self._starting_image

    @property
    def in_progress(self) -> bool:
        return self._run is not None

    @property
    def current_generation_id(self) -> str | None:
        return self._run.generation_id if self._run is not None else None

    def current_sequence(self) -> list[Image]:
        return list(self._run.sequence) if self._run is not None else []

    def pending_dispatch(self, worker_id: str) -> Dispatch | None:
        return self._pending.get(worker_id)

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Worker channel
    # ------------------------------------------------------------------

    def connect_worker(self, connection: WorkerConnection) -> Worker:
        worker = self.registry.register(connection)
        print(f"[relay] Worker {worker.id} connected")
        self._events.emit(
            WorkerConnectedEvent(run_id=self._events.run_id, worker_id=worker.id, n_workers=len(self.registry))
        )
        return worker

    def set_worker_ready(self, worker_id: str, is_ready: bool) -> None:
        if not self.registry.set_ready(worker_id, is_ready):
            return
        print(f"[relay] Worker {worker_id} updated ready state to {bool(is_ready)}")
        self._events.emit(WorkerReadyEvent(run_id=self._events.run_id, worker_id=worker_id, is_ready=bool(is_ready)))

    def disconnect_worker(self, worker_id: str, reason: str | None = None) -> None:
        """Forget the worker. An in-flight dispatch to it is left to its timeout."""
        if self.registry.unregister(worker_id) is None:
            return
        print(f"[relay] Worker {worker_id} disconnected because of {reason}")
        self._events.emit(WorkerDisconnectedEvent(run_id=self._events.run_id, worker_id=worker_id, reason=reason))

    def handle_processed_image(self, worker_id: str, payload: Any) -> None:
        """Resolve the worker's current dispatch with its (untrusted) result."""
        dispatch = self._pending.get(worker_id)
        if dispatch is None or not dispatch.claim():
            print(f"[relay] Ignoring unsolicited or late image from worker {worker_id}")
            return
        del self._pending[worker_id]
        print(f"[relay] Received processed image from worker {worker_id}")

        image: Image | None = None
        try:
            image = image_from_payload(payload, max_side=self.config.max_image_side)
            reason = validate_image(image)
        except Exception as exc:  # noqa: BLE001
            reason = InvalidReason(coordinates=(0, 0), error=str(exc) or repr(exc))

        if reason is not None:
            self._on_invalid(dispatch, reason)
        else:
            self._on_valid(dispatch, image)

    def handle_processing_error(self, worker_id: str, detail: Any = None) -> None:
        """The worker gave up on its current dispatch; treat it as an invalid result."""
        dispatch = self._pending.get(worker_id)
        if dispatch is None or not dispatch.claim():
            print(f"[relay] Ignoring processing error from worker {worker_id} with nothing pending")
            return
        del self._pending[worker_id]
        message = "Worker failed to process the image"
        if detail:
            message = f"{message}: {detail}"
        self._on_invalid(dispatch, InvalidReason(coordinates=(0, 0), error=message))

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------

    def start_generation(self) -> str | None:
        """Start a generation; returns its id, or None if nothing was started."""
        print("[relay] Initiating generation sequence")
        if self._run is not None:
            print(f"[relay] Generation {self._run.generation_id} still in progress, trigger dropped")
            self._events.emit(GenerationSkippedEvent(run_id=self._events.run_id, reason="in_progress"))
            return None
        if not self.registry.has_eligible():
            print("[relay] No workers available, generation sequence aborted")
            self._events.emit(GenerationSkippedEvent(run_id=self._events.run_id, reason="no_workers"))
            return None

        seed = self._starting_image
        run = _RelayRun(generation_id=str(uuid.uuid4()), sequence=[seed])
        self._run = run
        self._events.emit(
            GenerationStartedEvent(
                run_id=self._events.run_id,
                generation_id=run.generation_id,
                seed_width=seed.width,
                seed_height=seed.height,
            )
        )
        self._relay(seed)
        return run.generation_id

    def reset(self, reason: str = "reset") -> bool:
        """Discard the in-flight generation without publishing it."""
        run = self._run
        if run is None:
            return False
        pending = list(self._pending.values())
        self._pending.clear()
        for dispatch in pending:
            if dispatch.claim():
                self._notify(dispatch.worker_id, "update-ready", {"isReady": False})
        self._run = None
        print(f"[relay] Generation {run.generation_id} aborted ({reason})")
        self._events.emit(
            GenerationAbortedEvent(run_id=self._events.run_id, generation_id=run.generation_id, reason=reason)
        )
        return True

    def _relay(self, image: Image) -> None:
        run = self._run
        if run is None:
            return

        worker = self.registry.pick_eligible(run.used_worker_ids)
        if worker is None:
            self._complete(run)
            return

        self.registry.set_ready(worker.id, False)
        run.attempts += 1
        dispatch = Dispatch(generation_id=run.generation_id, worker_id=worker.id, image=image)
        self._pending[worker.id] = dispatch
        dispatch.timer = self._call_later(self.config.dispatch_timeout_s, self._on_timeout, dispatch)

        print(f"[relay] Sending image to worker {worker.id}")
        self._events.emit(
            DispatchEvent(
                run_id=self._events.run_id,
                generation_id=run.generation_id,
                worker_id=worker.id,
                step=len(run.sequence),
                attempt=run.attempts,
            )
        )
        worker.connection.send("process-image", image_to_payload(image))

    def _on_timeout(self, dispatch: Dispatch) -> None:
        if not dispatch.claim():
            return
        if self._pending.get(dispatch.worker_id) is dispatch:
            del self._pending[dispatch.worker_id]

        print(f"[relay] Worker {dispatch.worker_id} timed out")
        self._emit_failure(dispatch, kind="timeout")
        self._notify(dispatch.worker_id, "update-ready", {"isReady": False})
        self._retry(dispatch)

    def _on_invalid(self, dispatch: Dispatch, reason: InvalidReason) -> None:
        print(f"[relay] Received invalid image from worker {dispatch.worker_id}: {reason.error}")
        self._emit_failure(dispatch, kind="invalid", reason=reason)
        self._notify(dispatch.worker_id, "update-ready", {"isReady": False})
        self._notify(dispatch.worker_id, "invalid-image", reason.to_dict())
        self._retry(dispatch)

    def _on_valid(self, dispatch: Dispatch, image: Image) -> None:
        run = self._run
        if run is None or run.generation_id != dispatch.generation_id:
            return

        self.registry.set_ready(dispatch.worker_id, True)
        run.used_worker_ids.add(dispatch.worker_id)
        run.sequence.append(image)
        run.consecutive_failures = 0
        self._events.emit(
            ImageAppendedEvent(
                run_id=self._events.run_id,
                generation_id=run.generation_id,
                worker_id=dispatch.worker_id,
                index=len(run.sequence) - 1,
                width=image.width,
                height=image.height,
            )
        )
        self._relay(image)

    def _retry(self, dispatch: Dispatch) -> None:
        run = self._run
        if run is None or run.generation_id != dispatch.generation_id:
            return

        run.consecutive_failures += 1
        limit = self.config.max_consecutive_failures
        if limit is not None and run.consecutive_failures >= limit:
            self.reset(reason=f"{run.consecutive_failures} consecutive failed attempts")
            return
        self._relay(dispatch.image)

    def _complete(self, run: _RelayRun) -> None:
        generation = Generation(generation_id=run.generation_id, image_sequence=tuple(run.sequence))
        self._starting_image = generation.image_sequence[-1]
        self._run = None

        print(f"[relay] No workers available, generation sequence {run.generation_id} completed")
        self._events.emit(
            GenerationCompletedEvent(
                run_id=self._events.run_id,
                generation_id=generation.generation_id,
                n_images=len(generation.image_sequence),
            )
        )
        self.store.insert(generation)

        for observer in list(self._observers):
            try:
                observer(generation)
            except Exception as exc:  # noqa: BLE001
                print(f"[relay] Observer notification failed: {exc}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _notify(self, worker_id: str, event: str, data: Any) -> None:
        worker = self.registry.get(worker_id)
        if worker is None:
            return
        worker.connection.send(event, data)

    def _emit_failure(self, dispatch: Dispatch, *, kind: str, reason: InvalidReason | None = None) -> None:
        self._events.emit(
            AttemptFailedEvent(
                run_id=self._events.run_id,
                generation_id=dispatch.generation_id,
                worker_id=dispatch.worker_id,
                kind=kind,
                error=reason.error if reason is not None else None,
                coordinates=list(reason.coordinates) if reason is not None else None,
            )
        )
