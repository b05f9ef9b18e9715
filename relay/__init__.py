"""Image relay orchestrator.

This package coordinates a pool of remote, untrusted workers that each apply
an image transformation, chaining their outputs into a generation of images:

- relay.images: image model, validation and payload reconstruction
- relay.workers: connected worker registry
- relay.engine: the generation sequence state machine
- relay.snapshots: bounded history of completed generations
- relay.scheduler: periodic / manual triggering

It does not import FastAPI or start any I/O at import time; the network edge
lives in api.main.
"""

from __future__ import annotations

__all__ = ["config", "contracts", "engine", "event_log", "images", "scheduler", "server", "snapshots", "workers"]
