# relay/config.py

import os
from dataclasses import dataclass, field

from relay.images import Image, create_gray_image, create_random_image, load_image_from_json_file

# --- Base paths ---
# Project root can be overridden (e.g. for tests or deployment)
BASE_DIR = os.path.abspath(os.getenv("RELAY_BASE_DIR", os.path.join(os.path.dirname(__file__), "..")))

SEED_MODES = ("gray", "random", "file")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------
# Structured configuration
# ---------------------------

@dataclass(frozen=True)
class EngineConfig:
    """Relay behaviour.

    ``max_consecutive_failures`` is a safety valve: when set, a generation is
    aborted after that many failed attempts in a row. ``None`` retries forever.
    """

    dispatch_timeout_s: float = field(default_factory=lambda: _env_float("RELAY_DISPATCH_TIMEOUT_S", 5.0))
    max_consecutive_failures: int | None = field(
        default_factory=lambda: _env_int("RELAY_MAX_CONSECUTIVE_FAILURES", None)
    )
    max_image_side: int | None = field(default_factory=lambda: _env_int("RELAY_MAX_IMAGE_SIDE", 1024))

    def __post_init__(self) -> None:
        if self.dispatch_timeout_s <= 0:
            raise ValueError(f"dispatch_timeout_s must be positive, got {self.dispatch_timeout_s}")
        if self.max_consecutive_failures is not None and self.max_consecutive_failures < 1:
            raise ValueError(
                f"max_consecutive_failures must be >= 1 or unset, got {self.max_consecutive_failures}"
            )
        if self.max_image_side is not None and self.max_image_side < 1:
            raise ValueError(f"max_image_side must be >= 1 or unset, got {self.max_image_side}")


@dataclass(frozen=True)
class SchedulerConfig:
    """Periodic trigger; ``interval_s == 0`` leaves manual triggers only."""

    interval_s: float = field(default_factory=lambda: _env_float("RELAY_TRIGGER_INTERVAL_S", 5.0))

    def __post_init__(self) -> None:
        if self.interval_s < 0:
            raise ValueError(f"interval_s must be >= 0, got {self.interval_s}")


@dataclass(frozen=True)
class SnapshotConfig:
    """Completed generation history and its optional on-disk copy.

    Values can be overridden via environment variables:
    - RELAY_HISTORY_CAP
    - RELAY_REPLAY_COUNT
    - RELAY_PERSIST_SNAPSHOTS
    - RELAY_SNAPSHOTS_DIR
    """

    history_cap: int = field(default_factory=lambda: _env_int("RELAY_HISTORY_CAP", 500))
    replay_count: int = field(default_factory=lambda: _env_int("RELAY_REPLAY_COUNT", 10))
    persist: bool = field(default_factory=lambda: _env_bool("RELAY_PERSIST_SNAPSHOTS", False))
    snapshots_dir: str = field(
        default_factory=lambda: os.getenv("RELAY_SNAPSHOTS_DIR", os.path.join(BASE_DIR, "snapshots"))
    )

    def __post_init__(self) -> None:
        if self.history_cap < 1:
            raise ValueError(f"history_cap must be >= 1, got {self.history_cap}")
        if self.replay_count < 0:
            raise ValueError(f"replay_count must be >= 0, got {self.replay_count}")


@dataclass(frozen=True)
class SeedConfig:
    """Where the very first starting image comes from."""

    mode: str = field(default_factory=lambda: os.getenv("RELAY_SEED_MODE", "gray"))
    width: int = field(default_factory=lambda: _env_int("RELAY_SEED_WIDTH", 100))
    height: int = field(default_factory=lambda: _env_int("RELAY_SEED_HEIGHT", 100))
    path: str | None = field(default_factory=lambda: os.getenv("RELAY_SEED_IMAGE_PATH") or None)

    def __post_init__(self) -> None:
        if self.mode not in SEED_MODES:
            raise ValueError(f"seed mode must be one of {SEED_MODES}, got {self.mode!r}")
        if self.mode == "file" and not self.path:
            raise ValueError("seed mode 'file' requires RELAY_SEED_IMAGE_PATH")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"seed size must be positive, got {self.width}x{self.height}")

    def load(self) -> Image:
        """Build the seed image; raises ``ValueError`` if it is unusable."""
        if self.mode == "file":
            return load_image_from_json_file(self.path)
        if self.mode == "random":
            return create_random_image(self.width, self.height)
        return create_gray_image(self.width, self.height)


@dataclass(frozen=True)
class ServerConfig:
    host: str = field(default_factory=lambda: os.getenv("RELAY_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 3000))
    log_events: bool = field(default_factory=lambda: _env_bool("RELAY_LOG_EVENTS", True))
    event_log_dir: str = field(
        default_factory=lambda: os.getenv(
            "RELAY_EVENT_LOG_DIR", os.path.join(BASE_DIR, "ui_state", "relay")
        )
    )
    # Messages buffered per socket before further ones are dropped
    outbound_queue_size: int = field(default_factory=lambda: _env_int("RELAY_OUTBOUND_QUEUE_SIZE", 100))

    def __post_init__(self) -> None:
        if self.outbound_queue_size < 1:
            raise ValueError(f"outbound_queue_size must be >= 1, got {self.outbound_queue_size}")


@dataclass(frozen=True)
class RelaySettings:
    engine: EngineConfig = field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def load_settings() -> RelaySettings:
    """Read settings from the environment (fresh on every call)."""
    return RelaySettings()
