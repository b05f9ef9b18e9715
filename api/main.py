import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Literal, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from relay.config import RelaySettings, load_settings
from relay.contracts import EventSink
from relay.engine import GenerationEngine
from relay.event_log import create_run_id, make_log_path
from relay.images import image_to_payload
from relay.scheduler import TriggerScheduler
from relay.snapshots import Generation, SnapshotStore
from relay.workers import WorkerRegistry


# Pydantic models for the message envelopes on both channels
class WorkerMessage(BaseModel):
    event: Literal["set-ready", "processed-image", "error-processing", "get-image"]
    data: Any = None
    ack: Optional[Union[int, str]] = None


class SetReadyPayload(BaseModel):
    isReady: bool


class ObserverMessage(BaseModel):
    event: Literal["manual-start"]
    data: Any = None


class StatusResponse(BaseModel):
    run_id: str
    in_progress: bool
    current_generation_id: Optional[str]
    current_length: int
    workers_connected: int
    workers_ready: int
    history_length: int


class QueuedConnection:
    """Non-blocking outbound stream; a pump task drains it into the socket.

    At most ``maxsize`` messages wait in the queue. A peer that stops reading
    loses whatever does not fit instead of growing the queue without bound.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._queue: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def send(self, event: str, data: Any = None, *, ack: Any = None) -> None:
        if self.closed:
            return
        msg: dict[str, Any] = {"event": event, "data": data}
        if ack is not None:
            msg["ack"] = ack
        try:
            self._queue.put_nowait(msg)
        except asyncio.QueueFull:
            self.dropped += 1
            print(f"[relay] Outbound queue full, dropping {event!r} ({self.dropped} dropped so far)")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Make room for the stop marker; pending messages are discarded.
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def pump(self, ws: WebSocket) -> None:
        while True:
            msg = await self._queue.get()
            if msg is None:
                return
            try:
                await ws.send_json(msg)
            except (WebSocketDisconnect, RuntimeError, OSError):
                self.closed = True
                return


class ObserverHub:
    def __init__(self) -> None:
        self._connections: set[QueuedConnection] = set()

    def add(self, conn: QueuedConnection) -> None:
        self._connections.add(conn)

    def remove(self, conn: QueuedConnection) -> None:
        self._connections.discard(conn)

    def broadcast(self, generation: Generation) -> None:
        if not self._connections:
            return
        payload = generation.to_payload()
        for conn in list(self._connections):
            conn.send("generation-completed", payload)

    def __len__(self) -> int:
        return len(self._connections)


class BackgroundWriter:
    """Runs blocking disk writes in worker threads, off the event loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(fn, *args))
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            print(f"[relay] Background write failed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for every submitted write to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)


@dataclass
class RelayRuntime:
    settings: RelaySettings
    registry: WorkerRegistry
    store: SnapshotStore
    engine: GenerationEngine
    scheduler: TriggerScheduler
    observers: ObserverHub
    writer: BackgroundWriter


def build_runtime(settings: RelaySettings) -> RelayRuntime:
    """Wire the relay together. Raises ``ValueError`` if the seed image is unusable."""
    seed = settings.seed.load()

    run_id = create_run_id()
    log_path: Path | None = None
    if settings.server.log_events:
        log_path = make_log_path(run_id, Path(settings.server.event_log_dir))
    events = EventSink(run_id=run_id, log_path=log_path)

    registry = WorkerRegistry()
    writer = BackgroundWriter()
    store = SnapshotStore(settings.snapshots, events=events, submit=writer.submit)
    engine = GenerationEngine(
        registry,
        store,
        starting_image=seed,
        config=settings.engine,
        events=events,
    )
    observers = ObserverHub()
    engine.add_observer(observers.broadcast)
    scheduler = TriggerScheduler(engine, settings.scheduler)
    return RelayRuntime(
        settings=settings,
        registry=registry,
        store=store,
        engine=engine,
        scheduler=scheduler,
        observers=observers,
        writer=writer,
    )


def _validate(obj: Any, model: type[BaseModel]) -> BaseModel | None:
    try:
        return model.model_validate(obj)
    except ValidationError as exc:
        print(f"[relay] Dropping malformed message: {exc}")
        return None


def _parse(raw: str, model: type[BaseModel]) -> BaseModel | None:
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as exc:
        print(f"[relay] Dropping non-JSON message: {exc}")
        return None
    return _validate(obj, model)


def create_app(settings: RelaySettings | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = build_runtime(settings or load_settings())
        app.state.runtime = runtime
        runtime.scheduler.start()
        print(f"[relay] Runtime started (run_id={runtime.store.run_id})")
        try:
            yield
        finally:
            await runtime.scheduler.stop()
            runtime.engine.reset(reason="shutdown")
            await runtime.writer.drain()

    app = FastAPI(
        title="Image Relay",
        description="Chains image transformations across connected workers and publishes completed generations.",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health", summary="Health check", response_description="API health status")
    async def health_check():
        return {"status": "ok"}

    @app.get("/status", response_model=StatusResponse, summary="Relay status")
    async def status(request: Request):
        runtime: RelayRuntime = request.app.state.runtime
        engine = runtime.engine
        return StatusResponse(
            run_id=runtime.store.run_id,
            in_progress=engine.in_progress,
            current_generation_id=engine.current_generation_id,
            current_length=len(engine.current_sequence()),
            workers_connected=len(runtime.registry),
            workers_ready=runtime.registry.ready_count(),
            history_length=len(runtime.store),
        )

    @app.get("/generations", summary="Recent completed generations")
    async def generations(request: Request, limit: int = Query(default=10, ge=0, le=500)) -> List[dict]:
        """
        Returns up to `limit` most recent completed generations, oldest first.
        """
        runtime: RelayRuntime = request.app.state.runtime
        return [g.to_payload() for g in runtime.store.recent(limit)]

    @app.get("/generations/{generation_id}", summary="One completed generation")
    async def generation(request: Request, generation_id: str) -> dict:
        runtime: RelayRuntime = request.app.state.runtime
        for g in runtime.store:
            if g.generation_id == generation_id:
                return g.to_payload()
        raise HTTPException(status_code=404, detail=f"Generation {generation_id} not found")

    @app.websocket("/worker")
    async def worker_channel(ws: WebSocket):
        runtime: RelayRuntime = ws.app.state.runtime
        engine = runtime.engine
        await ws.accept()

        conn = QueuedConnection(runtime.settings.server.outbound_queue_size)
        pump = asyncio.create_task(conn.pump(ws))
        worker = engine.connect_worker(conn)
        reason = "server shutting down"
        try:
            while True:
                msg = _parse(await ws.receive_text(), WorkerMessage)
                if msg is None:
                    continue
                if msg.event == "set-ready":
                    ready = _validate(msg.data, SetReadyPayload)
                    if ready is not None:
                        engine.set_worker_ready(worker.id, ready.isReady)
                elif msg.event == "processed-image":
                    engine.handle_processed_image(worker.id, msg.data)
                elif msg.event == "error-processing":
                    engine.handle_processing_error(worker.id, msg.data)
                elif msg.event == "get-image":
                    conn.send("get-image", image_to_payload(engine.starting_image), ack=msg.ack)
        except WebSocketDisconnect as exc:
            reason = f"client disconnect (code {exc.code})"
        finally:
            engine.disconnect_worker(worker.id, reason)
            conn.close()
            await pump

    @app.websocket("/admin")
    async def observer_channel(ws: WebSocket):
        runtime: RelayRuntime = ws.app.state.runtime
        await ws.accept()
        print("[relay] Admin UI connected")

        conn = QueuedConnection(runtime.settings.server.outbound_queue_size)
        pump = asyncio.create_task(conn.pump(ws))
        for g in runtime.store.recent(runtime.settings.snapshots.replay_count):
            conn.send("generation-completed", g.to_payload())
        runtime.observers.add(conn)
        try:
            while True:
                msg = _parse(await ws.receive_text(), ObserverMessage)
                if msg is not None and msg.event == "manual-start":
                    runtime.scheduler.trigger()
        except WebSocketDisconnect:
            print("[relay] Admin UI disconnected")
        finally:
            runtime.observers.remove(conn)
            conn.close()
            await pump

    return app


app = create_app()

# To run this API:
# uvicorn api.main:app --port 3000
# or: python -m relay.server
