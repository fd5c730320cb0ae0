"""Frame filters and a background worker that applies them to incoming frames.

Images are ``numpy`` arrays of shape ``(height, width, 3)`` with ``uint8``
RGB pixels. Grey (2-D) and RGBA inputs are accepted and converted first.
"""

from __future__ import annotations

import logging
import threading
from enum import IntEnum
from typing import Callable, Optional

import numpy as np
from scipy import ndimage

log = logging.getLogger(__name__)

__all__ = [
    "ProcessMode",
    "FrameProcessor",
    "process_none",
    "gaussian_blur",
    "edge_detect",
    "grayscale",
    "sharpen",
    "emboss",
    "cartoon",
    "process_frame",
]


class ProcessMode(IntEnum):
    """Processing applied to each frame; values match the mode selector index."""

    NONE = 0
    GAUSSIAN_BLUR = 1
    EDGE_DETECT = 2
    GRAYSCALE = 3
    SHARPEN = 4
    EMBOSS = 5
    CARTOON = 6


_SMALL_GAUSSIAN = {
    1: [1.0],
    3: [0.25, 0.5, 0.25],
    5: [0.0625, 0.25, 0.375, 0.25, 0.0625],
    7: [0.03125, 0.109375, 0.21875, 0.28125, 0.21875, 0.109375, 0.03125],
}

_SHARPEN_KERNEL = np.array(
    [[0, -1, 0],
     [-1, 5, -1],
     [0, -1, 0]],
    dtype=np.float64,
)

_EMBOSS_KERNEL = np.array(
    [[-2, -1, 0],
     [-1, 1, 1],
     [0, 1, 2]],
    dtype=np.float64,
)

_SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
_SOBEL_Y = _SOBEL_X.T.copy()

_TAN_22_5 = 0.4142135623730951
_TAN_67_5 = 2.414213562373095


def _as_rgb(image) -> np.ndarray:
    """Return ``image`` as a contiguous ``(h, w, 3)`` uint8 array."""
    arr = np.asarray(image)
    if arr.ndim == 2:
        arr = np.stack([arr, arr, arr], axis=2)
    elif arr.ndim == 3 and arr.shape[2] == 4:
        arr = arr[:, :, :3]
    elif arr.ndim == 3 and arr.shape[2] == 1:
        arr = np.repeat(arr, 3, axis=2)
    elif not (arr.ndim == 3 and arr.shape[2] == 3):
        raise ValueError(f"unsupported image shape {arr.shape}")
    if arr.size == 0:
        raise ValueError("empty image")
    if arr.dtype != np.uint8:
        arr = np.clip(np.rint(arr.astype(np.float64)), 0, 255).astype(np.uint8)
    return np.ascontiguousarray(arr)


def _saturate(values: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def _gaussian_kernel(size: int, sigma: float = 0.0) -> np.ndarray:
    if sigma <= 0 and size in _SMALL_GAUSSIAN:
        return np.array(_SMALL_GAUSSIAN[size], dtype=np.float64)
    if sigma <= 0:
        sigma = 0.3 * ((size - 1) * 0.5 - 1) + 0.8
    x = np.arange(size, dtype=np.float64) - (size - 1) / 2.0
    weights = np.exp(-(x * x) / (2.0 * sigma * sigma))
    return weights / weights.sum()


def _blur(values: np.ndarray, size: int) -> np.ndarray:
    """Separable Gaussian blur over the first two axes, reflect-101 borders."""
    kernel = _gaussian_kernel(size)
    out = ndimage.correlate1d(values.astype(np.float64), kernel, axis=0, mode="mirror")
    return ndimage.correlate1d(out, kernel, axis=1, mode="mirror")


def _gray(rgb: np.ndarray) -> np.ndarray:
    r = rgb[:, :, 0].astype(np.float64)
    g = rgb[:, :, 1].astype(np.float64)
    b = rgb[:, :, 2].astype(np.float64)
    return _saturate(0.299 * r + 0.587 * g + 0.114 * b)


def _gray_to_rgb(gray: np.ndarray) -> np.ndarray:
    return np.ascontiguousarray(np.stack([gray, gray, gray], axis=2))


def _canny(gray: np.ndarray, low: float, high: float) -> np.ndarray:
    src = gray.astype(np.float64)
    gx = ndimage.correlate(src, _SOBEL_X, mode="nearest")
    gy = ndimage.correlate(src, _SOBEL_Y, mode="nearest")
    ax, ay = np.abs(gx), np.abs(gy)
    mag = ax + ay

    h, w = mag.shape
    padded = np.pad(mag, 1, mode="constant")

    def neighbour(dr: int, dc: int) -> np.ndarray:
        return padded[1 + dr:1 + dr + h, 1 + dc:1 + dc + w]

    horizontal = ay <= ax * _TAN_22_5
    vertical = ay > ax * _TAN_67_5
    diagonal = ~horizontal & ~vertical
    same_sign = (gx * gy) > 0

    keep = horizontal & (mag > neighbour(0, -1)) & (mag >= neighbour(0, 1))
    keep |= vertical & (mag > neighbour(-1, 0)) & (mag >= neighbour(1, 0))
    keep |= diagonal & same_sign & (mag > neighbour(-1, -1)) & (mag >= neighbour(1, 1))
    keep |= diagonal & ~same_sign & (mag > neighbour(-1, 1)) & (mag >= neighbour(1, -1))

    candidates = keep & (mag > low)
    strong = candidates & (mag > high)
    labels, count = ndimage.label(candidates, structure=np.ones((3, 3), dtype=bool))
    if count == 0:
        return np.zeros_like(gray, dtype=np.uint8)
    kept = np.unique(labels[strong])
    kept = kept[kept > 0]
    edges = np.isin(labels, kept)
    return np.where(edges, 255, 0).astype(np.uint8)


def _bilateral(rgb: np.ndarray, diameter: int, sigma_color: float,
               sigma_space: float) -> np.ndarray:
    radius = diameter // 2
    src = rgb.astype(np.float64)
    h, w = src.shape[:2]
    padded = np.pad(src, ((radius, radius), (radius, radius), (0, 0)), mode="reflect")
    acc = np.zeros_like(src)
    total = np.zeros((h, w), dtype=np.float64)
    color_coeff = -0.5 / (sigma_color * sigma_color)
    space_coeff = -0.5 / (sigma_space * sigma_space)
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            dist2 = dy * dy + dx * dx
            if dist2 > radius * radius:
                continue
            neighbour = padded[radius + dy:radius + dy + h, radius + dx:radius + dx + w]
            diff = np.abs(neighbour - src).sum(axis=2)
            weight = np.exp(dist2 * space_coeff + diff * diff * color_coeff)
            acc += neighbour * weight[:, :, None]
            total += weight
    return _saturate(acc / total[:, :, None])


def process_none(image) -> np.ndarray:
    """Return an unmodified copy of the frame."""
    return _as_rgb(image).copy()


def gaussian_blur(image) -> np.ndarray:
    """Blur with a 15x15 Gaussian kernel whose sigma follows from its size."""
    rgb = _as_rgb(image)
    return _saturate(_blur(rgb, 15))


def edge_detect(image) -> np.ndarray:
    """Canny edges (thresholds 50 and 150) of the lightly blurred grey frame."""
    gray = _gray(_as_rgb(image))
    smoothed = _saturate(_blur(gray, 5))
    return _gray_to_rgb(_canny(smoothed, 50, 150))


def grayscale(image) -> np.ndarray:
    """Luma of the frame, kept as three equal channels."""
    return _gray_to_rgb(_gray(_as_rgb(image)))


def sharpen(image) -> np.ndarray:
    """Apply a 3x3 sharpening kernel to every channel."""
    rgb = _as_rgb(image)
    kernel = _SHARPEN_KERNEL[:, :, None]
    return _saturate(ndimage.correlate(rgb.astype(np.float64), kernel, mode="mirror"))


def emboss(image) -> np.ndarray:
    """Emboss the grey frame and lift it by 128 so flat areas stay visible."""
    gray = _gray(_as_rgb(image))
    filtered = _saturate(ndimage.correlate(gray.astype(np.float64), _EMBOSS_KERNEL, mode="mirror"))
    lifted = np.minimum(filtered.astype(np.int32) + 128, 255).astype(np.uint8)
    return _gray_to_rgb(lifted)


def cartoon(image) -> np.ndarray:
    """Smooth colours with a bilateral filter and mask them with adaptive edges."""
    rgb = _as_rgb(image)
    gray = ndimage.median_filter(_gray(rgb), size=7, mode="nearest")
    mean = _saturate(ndimage.uniform_filter(gray.astype(np.float64), size=9, mode="nearest"))
    edges = np.where(gray.astype(np.int32) - mean.astype(np.int32) > -2, 255, 0).astype(np.uint8)
    color = _bilateral(rgb, 9, 300.0, 300.0)
    return np.bitwise_and(color, _gray_to_rgb(edges))


_PROCESSORS: dict[ProcessMode, Callable[[np.ndarray], np.ndarray]] = {
    ProcessMode.NONE: process_none,
    ProcessMode.GAUSSIAN_BLUR: gaussian_blur,
    ProcessMode.EDGE_DETECT: edge_detect,
    ProcessMode.GRAYSCALE: grayscale,
    ProcessMode.SHARPEN: sharpen,
    ProcessMode.EMBOSS: emboss,
    ProcessMode.CARTOON: cartoon,
}


def process_frame(image, mode) -> np.ndarray:
    """Apply the filter selected by ``mode`` (a ProcessMode or its index)."""
    return _PROCESSORS[ProcessMode(mode)](image)


class FrameProcessor:
    """Processes the most recent frame on a worker thread.

    Only the newest frame is kept; frames added while one is being processed
    replace each other. Results go to ``on_frame``, failures to ``on_error``.
    """

    def __init__(self, on_frame: Callable[[np.ndarray], None],
                 on_error: Optional[Callable[[str], None]] = None):
        self._on_frame = on_frame
        self._on_error = on_error
        self._lock = threading.Lock()
        self._mode = ProcessMode.NONE
        self._frame = None
        self._has_new_frame = False
        self._running = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def mode(self) -> ProcessMode:
        """The processing mode currently in effect."""
        with self._lock:
            return self._mode

    def set_mode(self, mode) -> None:
        """Switch to ``mode`` (a ProcessMode or its index)."""
        new_mode = ProcessMode(mode)
        with self._lock:
            self._mode = new_mode
        log.debug("processing mode: %s", new_mode.name)

    def add_frame(self, image) -> None:
        """Queue ``image`` for processing, replacing any frame not yet taken."""
        with self._lock:
            self._frame = image
            self._has_new_frame = True
        self._wake.set()

    def start(self) -> None:
        """Start the worker thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("frame processor already running")
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="frame-processor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 3.0) -> bool:
        """Stop the worker; return True once it has finished within ``timeout``."""
        self._running.clear()
        self._wake.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            log.warning("frame processor did not stop within %.1f s", timeout)
            return False
        self._thread = None
        return True

    def _take(self):
        with self._lock:
            if not self._has_new_frame:
                return None
            self._has_new_frame = False
            return self._frame, self._mode

    def _run(self) -> None:
        while self._running.is_set():
            job = self._take()
            if job is None:
                self._wake.wait(0.01)
                self._wake.clear()
                continue
            frame, mode = job
            if np.asarray(frame).size == 0:
                log.warning("skipping empty frame")
                continue
            try:
                result = process_frame(frame, mode)
            except Exception as exc:  # reported to the caller, worker keeps going
                log.error("processing error: %s", exc)
                if self._on_error is not None:
                    self._on_error(f"processing error: {exc}")
                continue
            self._on_frame(result)