"""Relay server (CLI shim).

Parses command-line overrides on top of the environment settings and serves
``api.main`` with uvicorn.

Usage example:
    python -m relay.server --port 3000 --seed-image blaine.json --interval 5
"""

from __future__ import annotations

import argparse
from dataclasses import replace

import uvicorn

from relay.config import RelaySettings, load_settings


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Run the image relay server.")
    p.add_argument("--host", type=str, default=None)
    p.add_argument("--port", type=int, default=None, help="Defaults to $PORT or 3000.")
    p.add_argument(
        "--seed-image",
        type=str,
        default=None,
        help="JSON file of [[[r, g, b], ...], ...] rows used as the first starting image.",
    )
    p.add_argument("--seed-mode", choices=["gray", "random", "file"], default=None)
    p.add_argument("--interval", type=float, default=None, help="Seconds between scheduled triggers (0 = manual only).")
    p.add_argument("--timeout", type=float, default=None, help="Seconds to wait for a worker result.")
    p.add_argument(
        "--max-consecutive-failures",
        type=int,
        default=None,
        help="Abort a generation after this many failed attempts in a row (default: never).",
    )
    p.add_argument("--history-cap", type=int, default=None)
    p.add_argument("--persist", action="store_true", help="Write completed generations under the snapshots dir.")
    p.add_argument("--snapshots-dir", type=str, default=None)
    return p


def settings_from_args(args: argparse.Namespace, base: RelaySettings | None = None) -> RelaySettings:
    s = base or load_settings()

    server = s.server
    if args.host is not None:
        server = replace(server, host=args.host)
    if args.port is not None:
        server = replace(server, port=args.port)

    seed = s.seed
    if args.seed_image is not None:
        seed = replace(seed, mode="file", path=args.seed_image)
    elif args.seed_mode is not None:
        seed = replace(seed, mode=args.seed_mode)

    engine = s.engine
    if args.timeout is not None:
        engine = replace(engine, dispatch_timeout_s=args.timeout)
    if args.max_consecutive_failures is not None:
        engine = replace(engine, max_consecutive_failures=args.max_consecutive_failures)

    scheduler = s.scheduler
    if args.interval is not None:
        scheduler = replace(scheduler, interval_s=args.interval)

    snapshots = s.snapshots
    if args.history_cap is not None:
        snapshots = replace(snapshots, history_cap=args.history_cap)
    if args.persist:
        snapshots = replace(snapshots, persist=True)
    if args.snapshots_dir is not None:
        snapshots = replace(snapshots, snapshots_dir=args.snapshots_dir)

    return RelaySettings(engine=engine, scheduler=scheduler, snapshots=snapshots, seed=seed, server=server)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)

    # Fail fast on a bad seed before binding the port.
    settings.seed.load()

    from api.main import create_app

    print(f"[relay] Server listening on port {settings.server.port}")
    uvicorn.run(create_app(settings), host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":  # pragma: no cover
    main()
