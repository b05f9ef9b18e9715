"""Append-only JSONL event log for relay runs.

One file per process execution (``relay_<run_id>.jsonl``). The server
appends a line per state transition; tools and tests read them back.

- Writes: single line, flush, fsync (best effort).
- Reads: tolerant, malformed or partial lines are skipped.
"""

from __future__ import annotations

import json
import os
from collections import deque
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_run_id(ts: datetime | None = None) -> str:
    """Sortable identifier for one process execution (UTC)."""

    t = ts or datetime.now(timezone.utc)
    return t.strftime("%Y%m%dT%H%M%SZ")


def make_log_path(run_id: str, log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    safe = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in str(run_id))
    return log_dir / f"relay_{safe}.jsonl"


def json_friendly(obj: Any) -> Any:
    """Convert dataclasses, datetimes, paths and containers into JSON types.

    Unknown objects are stringified.
    """

    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.astimezone(timezone.utc).isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "__dataclass_fields__"):
        return json_friendly(asdict(obj))
    if isinstance(obj, dict):
        return {str(k): json_friendly(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [json_friendly(v) for v in obj]
    return str(obj)


def append_event(path: Path, event: dict[str, Any]) -> None:
    if "ts_utc" not in event:
        event = {**event, "ts_utc": utc_now_iso()}

    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(json_friendly(event), ensure_ascii=False)

    with path.open("a", encoding="utf-8", newline="\n") as f:
        f.write(line)
        f.write("\n")
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            # Not every filesystem supports fsync.
            pass


def read_events(path: Path, *, max_events: int | None = None) -> list[dict[str, Any]]:
    """Read events back, keeping only the last ``max_events`` if given."""

    if not path.exists():
        return []

    acc: deque[dict[str, Any]] = deque(maxlen=max_events)
    with path.open("r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict):
                acc.append(obj)
    return list(acc)


def events_of_type(events: Iterable[dict[str, Any]], event_type: str) -> list[dict[str, Any]]:
    return [e for e in events if e.get("type") == event_type]
