"""Image model, validation and payload codec.

Images produced by workers are untrusted. Every payload received from a
worker is rebuilt from scratch by :func:`image_from_payload` (shape checks)
and then checked by :func:`validate_image` (channel bounds) before the engine
uses it.

Pixels are stored as a read-only ``float64`` array of shape
``(height, width, 3)`` with channels in red, green, blue order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

CHANNELS: tuple[str, str, str] = ("r", "g", "b")
CHANNEL_NAMES: tuple[str, str, str] = ("red", "green", "blue")


@dataclass(frozen=True, eq=False)
class Image:
    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self) -> None:
        expected = (self.height, self.width, 3)
        if self.pixels.shape != expected:
            raise ValueError(f"pixel array has shape {self.pixels.shape}, expected {expected}")
        self.pixels.flags.writeable = False

    def pixel(self, x: int, y: int) -> dict[str, float]:
        r, g, b = (float(v) for v in self.pixels[y, x])
        return {"r": r, "g": g, "b": b}

    def same_as(self, other: "Image") -> bool:
        return (
            self.width == other.width
            and self.height == other.height
            and np.array_equal(self.pixels, other.pixels)
        )

    def __repr__(self) -> str:
        return f"Image(width={self.width}, height={self.height})"


@dataclass(frozen=True)
class InvalidReason:
    """First out-of-bounds pixel found in an image.

    Only relayed back to the worker that produced the image; never stored.
    """

    coordinates: tuple[int, int]
    error: str

    def to_dict(self) -> dict[str, Any]:
        x, y = self.coordinates
        return {"coordinates": [x, y], "error": self.error}


def validate_image(image: Image) -> InvalidReason | None:
    """Return the first channel outside ``[0, 1]``, or None if the image is valid.

    Scan order is row-major (top to bottom, left to right) and red, green,
    blue within a pixel. NaN counts as out of range.
    """

    in_range = (image.pixels >= 0.0) & (image.pixels <= 1.0)
    if in_range.all():
        return None

    # argwhere yields indices in C order: (y, x, channel).
    y, x, c = (int(v) for v in np.argwhere(~in_range)[0])
    value = float(image.pixels[y, x, c])
    return InvalidReason(coordinates=(x, y), error=f"Invalid {CHANNEL_NAMES[c]} value {value}")


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _dimension(payload: dict[str, Any], key: str, max_side: int | None) -> int:
    v = payload.get(key)
    if not isinstance(v, int) or isinstance(v, bool):
        raise ValueError(f"image {key} must be an integer, got {v!r}")
    if v <= 0:
        raise ValueError(f"image {key} must be positive, got {v}")
    if max_side is not None and v > max_side:
        raise ValueError(f"image {key} {v} exceeds the maximum of {max_side}")
    return v


def _pixel_channels(px: Any, x: int, y: int) -> tuple[float, float, float]:
    if not isinstance(px, dict):
        raise ValueError(f"pixel ({x}, {y}) must be an object with r, g, b")
    out = []
    for ch in CHANNELS:
        if ch not in px:
            raise ValueError(f"pixel ({x}, {y}) is missing channel {ch!r}")
        v = px[ch]
        if not _is_number(v):
            raise ValueError(f"pixel ({x}, {y}) channel {ch!r} must be a number, got {v!r}")
        out.append(float(v))
    return out[0], out[1], out[2]


def image_from_payload(payload: Any, *, max_side: int | None = None) -> Image:
    """Rebuild an :class:`Image` from an untrusted JSON payload.

    Expected shape: ``{"width": W, "height": H, "data": [[{"r","g","b"}, ...], ...]}``
    with exactly H rows of exactly W pixels. Dimensions are not required to
    match the image that was dispatched.

    Raises ``ValueError`` / ``TypeError`` on any shape violation. Channel
    bounds are not checked here; see :func:`validate_image`.
    """

    if not isinstance(payload, dict):
        raise TypeError(f"image payload must be an object, got {type(payload).__name__}")

    width = _dimension(payload, "width", max_side)
    height = _dimension(payload, "height", max_side)

    rows = payload.get("data")
    if not isinstance(rows, list) or not rows:
        raise ValueError("image data must be a non-empty list of rows")
    if len(rows) != height:
        raise ValueError(f"image declares height {height} but has {len(rows)} rows")

    pixels = np.empty((height, width, 3), dtype=np.float64)
    for y, row in enumerate(rows):
        if not isinstance(row, list) or len(row) != width:
            raise ValueError(f"row {y} must contain exactly {width} pixels")
        for x, px in enumerate(row):
            pixels[y, x] = _pixel_channels(px, x, y)

    return Image(width=width, height=height, pixels=pixels)


def image_to_payload(image: Image) -> dict[str, Any]:
    return {
        "width": image.width,
        "height": image.height,
        "data": [[{"r": r, "g": g, "b": b} for r, g, b in row] for row in image.pixels.tolist()],
    }


def create_gray_image(width: int, height: int, level: float = 0.5) -> Image:
    return Image(width=width, height=height, pixels=np.full((height, width, 3), float(level)))


def create_random_image(width: int, height: int, rng: np.random.Generator | None = None) -> Image:
    gen = rng or np.random.default_rng()
    return Image(width=width, height=height, pixels=gen.random((height, width, 3)))


def load_image_from_json_file(path: str | Path) -> Image:
    """Load a seed image stored as ``[[[r, g, b], ...], ...]`` with channels in [0, 1].

    Raises ``ValueError`` for malformed or out-of-range data; callers treat
    that as fatal at startup.
    """

    p = Path(path)
    try:
        rows = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"seed image {p} is not valid JSON: {exc}") from exc

    if not isinstance(rows, list) or not rows or not isinstance(rows[0], list) or not rows[0]:
        raise ValueError(f"seed image {p} must be a non-empty list of non-empty rows")

    height = len(rows)
    width = len(rows[0])
    try:
        pixels = np.asarray(rows, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"seed image {p} has ragged or non-numeric rows: {exc}") from exc
    if pixels.shape != (height, width, 3):
        raise ValueError(f"seed image {p} must have shape (height, width, 3), got {pixels.shape}")

    image = Image(width=width, height=height, pixels=pixels)
    reason = validate_image(image)
    if reason is not None:
        x, y = reason.coordinates
        raise ValueError(f"seed image {p} is invalid at ({x}, {y}): {reason.error}")

    print(f"[relay] Loaded image from {p}: {width}x{height}")
    return image
