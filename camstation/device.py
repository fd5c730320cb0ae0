"""Video capture devices: setup, memory-mapped streaming and a capture thread.

``VideoDevice`` drives the kernel's video capture interface directly with
``ioctl`` and ``mmap``. It asks for MJPEG frames at a fixed resolution.
``CaptureThread`` keeps pulling frames off the device, decodes them and
hands them to a callback.
"""

from __future__ import annotations

import fcntl
import io
import itertools
import logging
import mmap
import os
import struct
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

log = logging.getLogger(__name__)

__all__ = [
    "DeviceError",
    "FormatInfo",
    "VideoDevice",
    "CaptureThread",
    "fourcc",
    "fourcc_to_str",
    "decode_frame",
    "DEFAULT_DEVICE",
    "VIDEO_WIDTH",
    "VIDEO_HEIGHT",
    "BUFFER_COUNT",
]

DEFAULT_DEVICE = "/dev/video1"
VIDEO_WIDTH = 640
VIDEO_HEIGHT = 480
BUFFER_COUNT = 4


class DeviceError(OSError):
    """Raised when the capture device cannot be opened, set up or read."""


def fourcc(code: str) -> int:
    """Pack a four-character pixel format code into its integer value."""
    if not isinstance(code, str) or len(code) != 4:
        raise ValueError(f"a fourcc code has exactly four characters, got {code!r}")
    try:
        raw = code.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ValueError(f"fourcc code must be ASCII: {code!r}") from exc
    return int.from_bytes(raw, "little")


def fourcc_to_str(value: int) -> str:
    """Unpack an integer pixel format into its four characters."""
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"fourcc value out of range: {value}")
    return "".join(chr((value >> shift) & 0xFF) for shift in (0, 8, 16, 24))


def decode_frame(data: bytes) -> np.ndarray:
    """Decode a compressed frame (MJPEG, PNG, ...) into an RGB uint8 array."""
    if not data:
        raise ValueError("empty frame")
    try:
        with Image.open(io.BytesIO(bytes(data))) as img:
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError(f"cannot decode frame: {exc}") from exc
    return np.asarray(rgb, dtype=np.uint8).copy()


# ---------------------------------------------------------------------------
# Kernel interface: request numbers and structure layouts.

_IOC_WRITE = 1
_IOC_READ = 2


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (ord("V") << 8) | nr


_BUF_TYPE_VIDEO_CAPTURE = 1
_MEMORY_MMAP = 1
_FIELD_ANY = 0
_CAP_VIDEO_CAPTURE = 0x00000001
_FRMSIZE_TYPE_DISCRETE = 1
_PIX_FMT_MJPEG = fourcc("MJPG")

_CAPABILITY = struct.Struct("@16s32s32s6I")
_FMTDESC = struct.Struct("@3I32s5I")
_STREAMPARM = struct.Struct("@I200s")
_CAPTUREPARM = struct.Struct("@6I")
_FRMSIZE = struct.Struct("@3I6I2I")
_REQBUFS = struct.Struct("@5I")

# struct v4l2_format: a u32 type followed by a 200-byte union that holds pointers.
_FORMAT_UNION_OFFSET = struct.calcsize("@I0P")
_FORMAT_SIZE = _FORMAT_UNION_OFFSET + 200
_PIX_FORMAT = struct.Struct("@12I")

# struct v4l2_buffer, laid out with native alignment.
_BUFFER_PREFIX = "@5Ill2I8B2I"
_BUFFER = struct.Struct(_BUFFER_PREFIX + "L3I0L")
_BUFFER_M_OFFSET = struct.calcsize(_BUFFER_PREFIX + "0L")
_BUFFER_FIELD_INDEX = 0
_BUFFER_FIELD_BYTESUSED = 2
_BUFFER_FIELD_LENGTH = 20

_VIDIOC_QUERYCAP = _ioc(_IOC_READ, 0, _CAPABILITY.size)
_VIDIOC_ENUM_FMT = _ioc(_IOC_READ | _IOC_WRITE, 2, _FMTDESC.size)
_VIDIOC_S_FMT = _ioc(_IOC_READ | _IOC_WRITE, 5, _FORMAT_SIZE)
_VIDIOC_REQBUFS = _ioc(_IOC_READ | _IOC_WRITE, 8, _REQBUFS.size)
_VIDIOC_QUERYBUF = _ioc(_IOC_READ | _IOC_WRITE, 9, _BUFFER.size)
_VIDIOC_QBUF = _ioc(_IOC_READ | _IOC_WRITE, 15, _BUFFER.size)
_VIDIOC_DQBUF = _ioc(_IOC_READ | _IOC_WRITE, 17, _BUFFER.size)
_VIDIOC_STREAMON = _ioc(_IOC_WRITE, 18, struct.calcsize("@i"))
_VIDIOC_STREAMOFF = _ioc(_IOC_WRITE, 19, struct.calcsize("@i"))
_VIDIOC_G_PARM = _ioc(_IOC_READ | _IOC_WRITE, 21, _STREAMPARM.size)
_VIDIOC_ENUM_FRAMESIZES = _ioc(_IOC_READ | _IOC_WRITE, 74, _FRMSIZE.size)


def _buffer_request(index: int = 0) -> bytearray:
    values = [0] * 23
    values[0] = index
    values[1] = _BUF_TYPE_VIDEO_CAPTURE
    values[18] = _MEMORY_MMAP
    return bytearray(_BUFFER.pack(*values))


def _buffer_type_arg() -> bytearray:
    return bytearray(struct.pack("@i", _BUF_TYPE_VIDEO_CAPTURE))


@dataclass(frozen=True)
class FormatInfo:
    """A pixel format offered by the device and the frame sizes it supports."""

    index: int
    description: str
    pixelformat: int
    default_fps: Optional[int] = None
    sizes: tuple[tuple[int, int], ...] = ()

    @property
    def fourcc(self) -> str:
        """The format's four-character code."""
        return fourcc_to_str(self.pixelformat)


class VideoDevice:
    """A capture device streaming MJPEG frames through memory-mapped buffers."""

    def __init__(self, path: str = DEFAULT_DEVICE, width: int = VIDEO_WIDTH,
                 height: int = VIDEO_HEIGHT, buffer_count: int = BUFFER_COUNT):
        self.path = path
        self.width = width
        self.height = height
        self.buffer_count = buffer_count
        self._fd: Optional[int] = None
        self._buffers: list[mmap.mmap] = []

    @property
    def is_open(self) -> bool:
        """Whether the device is open and streaming."""
        return self._fd is not None

    def _require_fd(self) -> int:
        if self._fd is None:
            raise DeviceError(f"camera device {self.path} is not open")
        return self._fd

    def open(self) -> "VideoDevice":
        """Open the device, set the format, map the buffers and start streaming."""
        if self._fd is not None:
            return self
        try:
            self._fd = os.open(self.path, os.O_RDWR)
        except OSError as exc:
            raise DeviceError(f"cannot open camera device {self.path}: {exc}") from exc
        try:
            self._configure()
        except BaseException:
            self._release()
            raise
        log.info("camera %s opened", self.path)
        return self

    def _configure(self) -> None:
        fd = self._require_fd()

        cap = bytearray(_CAPABILITY.size)
        try:
            fcntl.ioctl(fd, _VIDIOC_QUERYCAP, cap, True)
        except OSError:
            pass
        else:
            capabilities = _CAPABILITY.unpack(cap)[4]
            if not capabilities & _CAP_VIDEO_CAPTURE:
                raise DeviceError(f"{self.path} does not support video capture")

        for info in self.enumerate_formats():
            log.info("format %s (%s), default %s fps, sizes %s",
                     info.description, info.fourcc, info.default_fps,
                     ", ".join(f"{w}x{h}" for w, h in info.sizes))

        fmt = bytearray(_FORMAT_SIZE)
        struct.pack_into("@I", fmt, 0, _BUF_TYPE_VIDEO_CAPTURE)
        _PIX_FORMAT.pack_into(fmt, _FORMAT_UNION_OFFSET, self.width, self.height,
                              _PIX_FMT_MJPEG, _FIELD_ANY, 0, 0, 0, 0, 0, 0, 0, 0)
        try:
            fcntl.ioctl(fd, _VIDIOC_S_FMT, fmt, True)
        except OSError as exc:
            raise DeviceError(f"cannot set camera format: {exc}") from exc

        req = bytearray(_REQBUFS.pack(self.buffer_count, _BUF_TYPE_VIDEO_CAPTURE,
                                      _MEMORY_MMAP, 0, 0))
        try:
            fcntl.ioctl(fd, _VIDIOC_REQBUFS, req, True)
        except OSError as exc:
            raise DeviceError(f"cannot request capture buffers: {exc}") from exc
        granted = _REQBUFS.unpack(req)[0]

        for index in range(granted):
            buf = _buffer_request(index)
            try:
                fcntl.ioctl(fd, _VIDIOC_QUERYBUF, buf, True)
                length = _BUFFER.unpack(buf)[_BUFFER_FIELD_LENGTH]
                (offset,) = struct.unpack_from("@I", buf, _BUFFER_M_OFFSET)
                self._buffers.append(mmap.mmap(
                    fd, length, flags=mmap.MAP_SHARED,
                    prot=mmap.PROT_READ | mmap.PROT_WRITE, offset=offset))
                fcntl.ioctl(fd, _VIDIOC_QBUF, buf, True)
            except OSError as exc:
                raise DeviceError(f"cannot map capture buffer {index}: {exc}") from exc

        try:
            fcntl.ioctl(fd, _VIDIOC_STREAMON, _buffer_type_arg(), True)
        except OSError as exc:
            raise DeviceError(f"cannot start video stream: {exc}") from exc

    def _release(self) -> None:
        for buffer in self._buffers:
            try:
                buffer.close()
            except (BufferError, OSError):
                pass
        self._buffers = []
        if self._fd is not None:
            try:
                os.close(self._fd)
            finally:
                self._fd = None

    def _stream_off(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.ioctl(self._fd, _VIDIOC_STREAMOFF, _buffer_type_arg(), True)
        except OSError:
            pass

    def close(self) -> None:
        """Stop streaming, unmap the buffers and close the device."""
        if self._fd is None:
            return
        try:
            fcntl.ioctl(self._fd, _VIDIOC_STREAMOFF, _buffer_type_arg(), True)
        except OSError as exc:
            raise DeviceError(f"cannot stop video stream: {exc}") from exc
        self._release()
        log.info("camera %s closed", self.path)

    def enumerate_formats(self) -> list[FormatInfo]:
        """List the pixel formats the device offers, with their frame sizes."""
        fd = self._require_fd()
        formats = []
        for index in itertools.count():
            desc = bytearray(_FMTDESC.pack(index, _BUF_TYPE_VIDEO_CAPTURE, 0, b"",
                                           0, 0, 0, 0, 0))
            try:
                fcntl.ioctl(fd, _VIDIOC_ENUM_FMT, desc, True)
            except OSError:
                break
            fields = _FMTDESC.unpack(desc)
            description = fields[3].split(b"\0", 1)[0].decode("utf-8", "replace")
            pixelformat = fields[4]
            formats.append(FormatInfo(
                index=index,
                description=description,
                pixelformat=pixelformat,
                default_fps=self._default_fps(fd),
                sizes=self._frame_sizes(fd, pixelformat),
            ))
        return formats

    @staticmethod
    def _default_fps(fd: int) -> Optional[int]:
        parm = bytearray(_STREAMPARM.pack(_BUF_TYPE_VIDEO_CAPTURE, b""))
        try:
            fcntl.ioctl(fd, _VIDIOC_G_PARM, parm, True)
        except OSError:
            return None
        return _CAPTUREPARM.unpack_from(parm, 4)[3]

    @staticmethod
    def _frame_sizes(fd: int, pixelformat: int) -> tuple[tuple[int, int], ...]:
        sizes = []
        for index in itertools.count():
            req = bytearray(_FRMSIZE.pack(index, pixelformat, 0, 0, 0, 0, 0, 0, 0, 0, 0))
            try:
                fcntl.ioctl(fd, _VIDIOC_ENUM_FRAMESIZES, req, True)
            except OSError:
                break
            fields = _FRMSIZE.unpack(req)
            if fields[2] == _FRMSIZE_TYPE_DISCRETE:
                sizes.append((fields[3], fields[4]))
            else:
                sizes.append((fields[4], fields[7]))
                break
        return tuple(sizes)

    def dequeue(self) -> tuple[int, bytes]:
        """Take a filled buffer from the device; return its index and frame bytes.

        Blocks until a frame is ready. The buffer must be given back with
        ``requeue``.
        """
        fd = self._require_fd()
        buf = _buffer_request()
        try:
            fcntl.ioctl(fd, _VIDIOC_DQBUF, buf, True)
        except InterruptedError:
            raise
        except OSError as exc:
            raise DeviceError(str(exc)) from exc
        fields = _BUFFER.unpack(buf)
        index = fields[_BUFFER_FIELD_INDEX]
        used = fields[_BUFFER_FIELD_BYTESUSED]
        return index, bytes(self._buffers[index][:used])

    def requeue(self, index: int) -> None:
        """Give buffer ``index`` back to the device for refilling."""
        fd = self._require_fd()
        buf = _buffer_request(index)
        try:
            fcntl.ioctl(fd, _VIDIOC_QBUF, buf, True)
        except OSError as exc:
            raise DeviceError(str(exc)) from exc

    def __enter__(self) -> "VideoDevice":
        return self.open()

    def __exit__(self, *args) -> None:
        self.close()


class CaptureThread:
    """Pulls frames from a device on a worker thread and decodes them.

    Decoded frames go to ``on_frame``. A failure to take a frame is reported
    to ``on_error`` and ends the thread; a failure to give a buffer back is
    reported and capture goes on.
    """

    def __init__(self, device, on_frame: Callable[[np.ndarray], None],
                 on_error: Optional[Callable[[str], None]] = None):
        self._device = device
        self._on_frame = on_frame
        self._on_error = on_error
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start capturing."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("capture thread already running")
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="capture", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 3.0) -> bool:
        """Stop capturing; return True once the worker has finished."""
        self._running.clear()
        thread = self._thread
        if thread is None:
            return True
        if thread is threading.current_thread():
            return True
        thread.join(timeout)
        if thread.is_alive():
            log.warning("capture thread did not stop within %.1f s, halting stream", timeout)
            halt = getattr(self._device, "_stream_off", None)
            if halt is not None:
                halt()
            thread.join(timeout)
            if thread.is_alive():
                return False
        self._thread = None
        return True

    def _report(self, message: str) -> None:
        log.error("%s", message)
        if self._on_error is not None:
            self._on_error(message)

    def _run(self) -> None:
        while self._running.is_set():
            try:
                index, data = self._device.dequeue()
            except InterruptedError:
                continue
            except OSError as exc:
                self._report(f"DQBUF failed: {exc}")
                break

            try:
                image = decode_frame(data)
            except ValueError as exc:
                log.warning("cannot decode MJPEG frame: %s", exc)
            else:
                self._on_frame(image)

            try:
                self._device.requeue(index)
            except OSError as exc:
                self._report(f"QBUF failed: {exc}")