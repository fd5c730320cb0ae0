"""Camera application: controller logic, the main window and the entry point."""

from __future__ import annotations

import argparse
import functools
import logging
import random
import threading
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np
from PIL import Image

from .device import DEFAULT_DEVICE, CaptureThread, DeviceError, VideoDevice
from .gallery import PhotoGallery
from .imaging import FrameProcessor, ProcessMode

log = logging.getLogger(__name__)

__all__ = [
    "CameraController",
    "CameraWindow",
    "random_photo_name",
    "ensure_photo_dir",
    "main",
    "PHOTO_DIR_NAME",
]

PHOTO_DIR_NAME = "photo"
_NAME_DIGITS = 10
_VIEW_WIDTH = 640
_VIEW_HEIGHT = 480
_POLL_MS = 15


def random_photo_name(rng=None) -> str:
    """Return a file name made of ten random digits, e.g. ``photo_0123456789.jpg``."""
    source = rng if rng is not None else random
    digits = "".join(str(source.randrange(10)) for _ in range(_NAME_DIGITS))
    return f"photo_{digits}.jpg"


def ensure_photo_dir(base: Union[str, Path, None] = None) -> Path:
    """Make sure ``<base>/photo`` exists and return its path.

    ``base`` defaults to the current directory. A failure to create the
    directory is logged, not raised.
    """
    root = Path(base) if base is not None else Path.cwd()
    photo_dir = root / PHOTO_DIR_NAME
    if photo_dir.is_dir():
        log.info("photo directory already exists: %s", photo_dir)
        return photo_dir
    try:
        photo_dir.mkdir()
    except OSError as exc:
        log.error("cannot create photo directory %s: %s", photo_dir, exc)
    else:
        log.info("created photo directory %s", photo_dir)
    return photo_dir


class CameraController:
    """Owns the camera, the capture thread and the frame processor.

    Frames to be shown are passed to ``on_display``; capture errors to
    ``on_error``. Both callbacks may be called from worker threads.
    """

    def __init__(self, device_factory: Optional[Callable[[], object]] = None,
                 photo_dir: Union[str, Path, None] = None, rng=None):
        self._factory = device_factory if device_factory is not None else VideoDevice
        self._rng = rng if rng is not None else random
        self._lock = threading.RLock()
        self._device = None
        self._capture: Optional[CaptureThread] = None
        self._processor: Optional[FrameProcessor] = None
        self._use_processing = False
        self.on_display: Optional[Callable[[np.ndarray], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.last_error: Optional[str] = None

        if self._open_device():
            self._processor = FrameProcessor(self._show, self._processing_error)
            self._processor.start()
            self._start_capture()

        if photo_dir is None:
            self.photo_dir = ensure_photo_dir(Path.cwd())
        else:
            self.photo_dir = Path(photo_dir)
            self.photo_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_open(self) -> bool:
        """Whether the camera is open and capturing."""
        with self._lock:
            return self._device is not None

    @property
    def use_processing(self) -> bool:
        """Whether frames are routed through the frame processor."""
        with self._lock:
            return self._use_processing

    def _open_device(self) -> bool:
        device = self._factory()
        try:
            device.open()
        except OSError as exc:
            log.error("cannot open camera: %s", exc)
            return False
        self._device = device
        log.info("camera opened")
        return True

    def _start_capture(self) -> None:
        self._capture = CaptureThread(self._device, self.handle_frame, self._capture_error)
        self._capture.start()

    def _stop_capture(self) -> None:
        if self._capture is not None:
            self._capture.stop()
            self._capture = None

    def toggle(self) -> bool:
        """Open the camera if it is closed, close it if it is open.

        Returns whether the camera is open afterwards.
        """
        with self._lock:
            if self._device is None:
                if self._open_device():
                    self._start_capture()
            else:
                self._stop_capture()
                try:
                    self._device.close()
                except OSError as exc:
                    log.error("cannot close camera: %s", exc)
                else:
                    self._device = None
            return self._device is not None

    def take_photo(self) -> Path:
        """Save the next captured frame under a random name; return its path."""
        with self._lock:
            device = self._device
        if device is None:
            raise DeviceError("camera is not open")
        path = self.photo_dir / random_photo_name(self._rng)
        index, data = device.dequeue()
        try:
            path.write_bytes(data)
        finally:
            try:
                device.requeue(index)
            except OSError as exc:
                log.error("cannot return buffer to the queue: %s", exc)
        log.info("saved %s", path)
        return path

    def set_mode(self, index) -> None:
        """Select the processing mode by its index; NONE turns processing off."""
        with self._lock:
            if self._processor is None:
                return
            mode = ProcessMode(index)
            self._processor.set_mode(mode)
            self._use_processing = mode != ProcessMode.NONE
        log.debug("processing mode %s, enabled: %s", mode.name, self._use_processing)

    def handle_frame(self, image) -> Optional[np.ndarray]:
        """Route a captured frame to the processor or straight to the display.

        Returns the frame when it was shown directly, None when it was queued.
        """
        with self._lock:
            processor = self._processor
            use = self._use_processing
        if use and processor is not None:
            processor.add_frame(image)
            return None
        self._show(image)
        return image

    def _show(self, image) -> None:
        callback = self.on_display
        if callback is not None:
            callback(image)

    def _processing_error(self, message: str) -> None:
        log.error("%s", message)

    def _capture_error(self, message: str) -> None:
        self.last_error = message
        log.error("capture error: %s", message)
        callback = self.on_error
        if callback is not None:
            callback(message)
        if self.is_open:
            self.toggle()

    def shutdown(self) -> None:
        """Stop all workers and close the camera."""
        with self._lock:
            if self._processor is not None:
                self._processor.stop()
                self._processor = None
            self._stop_capture()
            if self._device is not None:
                try:
                    self._device.close()
                except OSError as exc:
                    log.error("cannot close camera: %s", exc)
                self._device = None


def _fit(image: Image.Image, width: int, height: int) -> Image.Image:
    """Scale ``image`` to fit ``width`` x ``height``, keeping its aspect ratio."""
    iw, ih = image.size
    scale = min(width / iw, height / ih)
    size = (max(1, round(iw * scale)), max(1, round(ih * scale)))
    return image.resize(size, Image.LANCZOS)


class CameraWindow:
    """Tk window with the live view, the camera controls and a photo viewer."""

    def __init__(self, controller: CameraController):
        import tkinter as tk
        from tkinter import ttk

        self.controller = controller
        self.gallery = PhotoGallery(controller.photo_dir)
        self._frame_lock = threading.Lock()
        self._pending_frame = None
        self._pending_errors: list[str] = []
        self._video_image = None
        self._photo_image = None

        self.root = tk.Tk()
        self.root.title("camera")
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)

        self._main = tk.Frame(self.root)
        view = tk.Frame(self._main, width=_VIEW_WIDTH, height=_VIEW_HEIGHT, bg="black")
        view.pack_propagate(False)
        view.pack(side=tk.TOP)
        self._video = tk.Label(view, bg="black")
        self._video.pack(fill=tk.BOTH, expand=True)

        controls = tk.Frame(self._main)
        controls.pack(side=tk.TOP, fill=tk.X)
        self._open_button = tk.Button(controls, command=self._on_open)
        self._open_button.pack(side=tk.LEFT)
        tk.Button(controls, text="Take photo", command=self._on_take).pack(side=tk.LEFT)
        tk.Button(controls, text="Photos", command=self._on_photos).pack(side=tk.LEFT)
        self._mode_box = ttk.Combobox(
            controls, state="readonly",
            values=[mode.name.replace("_", " ").capitalize() for mode in ProcessMode])
        self._mode_box.current(0)
        self._mode_box.bind("<<ComboboxSelected>>", self._on_mode)
        self._mode_box.pack(side=tk.LEFT)

        self._viewer = tk.Frame(self.root)
        self._photo = tk.Label(self._viewer)
        self._photo.pack(side=tk.TOP, fill=tk.BOTH, expand=True)
        nav = tk.Frame(self._viewer)
        nav.pack(side=tk.TOP, fill=tk.X)
        tk.Button(nav, text="Back", command=self._on_back).pack(side=tk.LEFT)
        tk.Button(nav, text="Previous", command=self._on_previous).pack(side=tk.LEFT)
        tk.Button(nav, text="Next", command=self._on_next).pack(side=tk.LEFT)
        self._display_photo(self.gallery.current)

        controller.on_display = self._post_frame
        controller.on_error = self._post_error
        self._update_open_button()
        self._main.pack(fill=tk.BOTH, expand=True)

    def run(self) -> None:
        """Run the window's event loop until it is closed."""
        self.root.after(_POLL_MS, self._poll)
        self.root.mainloop()

    def _post_frame(self, image) -> None:
        with self._frame_lock:
            self._pending_frame = image

    def _post_error(self, message: str) -> None:
        with self._frame_lock:
            self._pending_errors.append(message)

    def _poll(self) -> None:
        from tkinter import messagebox

        with self._frame_lock:
            frame, self._pending_frame = self._pending_frame, None
            errors, self._pending_errors = self._pending_errors, []
        if frame is not None:
            self._display_frame(frame)
        for message in errors:
            messagebox.showerror("Capture error", message, parent=self.root)
        self._update_open_button()
        self.root.after(_POLL_MS, self._poll)

    def _display_frame(self, frame) -> None:
        from PIL import ImageTk

        image = _fit(Image.fromarray(np.asarray(frame, dtype=np.uint8)),
                     _VIEW_WIDTH, _VIEW_HEIGHT)
        self._video_image = ImageTk.PhotoImage(image)
        self._video.configure(image=self._video_image)

    def _display_photo(self, path: Optional[Path]) -> None:
        from PIL import ImageTk

        if path is None:
            self._photo_image = None
            self._photo.configure(image="", text="")
            return
        try:
            with Image.open(path) as img:
                self._photo_image = ImageTk.PhotoImage(img.convert("RGB"))
        except OSError as exc:
            log.warning("cannot show %s: %s", path, exc)
            self._photo_image = None
            self._photo.configure(image="", text=path.name)
            return
        self._photo.configure(image=self._photo_image, text="")

    def _update_open_button(self) -> None:
        self._open_button.configure(text="Close" if self.controller.is_open else "Open")

    def _on_open(self) -> None:
        self.controller.toggle()
        self._update_open_button()

    def _on_take(self) -> None:
        try:
            path = self.controller.take_photo()
        except OSError as exc:
            log.error("cannot take photo: %s", exc)
        else:
            print(path)
        self._video_image = None
        self._video.configure(image="")

    def _on_mode(self, _event=None) -> None:
        self.controller.set_mode(self._mode_box.current())

    def _on_photos(self) -> None:
        self._main.pack_forget()
        self._viewer.pack(fill="both", expand=True)

    def _on_back(self) -> None:
        self._viewer.pack_forget()
        self._main.pack(fill="both", expand=True)

    def _on_next(self) -> None:
        shown = self.gallery.show_next()
        if shown is not None:
            self._display_photo(shown)

    def _on_previous(self) -> None:
        shown = self.gallery.show_previous()
        if shown is not None:
            self._display_photo(shown)

    def _on_close(self) -> None:
        self.controller.shutdown()
        self.root.destroy()


def main(argv=None) -> int:
    """Start the camera application."""
    parser = argparse.ArgumentParser(description="Capture, filter and browse camera photos.")
    parser.add_argument("--device", default=DEFAULT_DEVICE, help="video capture device")
    parser.add_argument("--photo-dir", default=None,
                        help="directory for saved photos (default: ./photo)")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    controller = CameraController(functools.partial(VideoDevice, args.device), args.photo_dir)
    try:
        window = CameraWindow(controller)
        window.run()
    finally:
        controller.shutdown()
    return 0