import io
import threading

import numpy as np
import pytest
from PIL import Image

from camstation.device import (
    CaptureThread,
    DeviceError,
    FormatInfo,
    VideoDevice,
    decode_frame,
    fourcc,
    fourcc_to_str,
)


def _jpeg(width, height, color):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, "JPEG")
    return buf.getvalue()


class FakeDevice:
    def __init__(self, frames, fail_requeue=False):
        self._frames = list(frames)
        self.fail_requeue = fail_requeue
        self.requeued = []

    def dequeue(self):
        if not self._frames:
            raise DeviceError("no more frames")
        item = self._frames.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def requeue(self, index):
        self.requeued.append(index)
        if self.fail_requeue:
            raise DeviceError("queue full")


def _run_until_error(fake):
    frames, errors = [], []
    done = threading.Event()

    def on_error(message):
        errors.append(message)
        if message.startswith("DQBUF"):
            done.set()

    thread = CaptureThread(fake, frames.append, on_error)
    thread.start()
    assert done.wait(5)
    assert thread.stop() is True
    return frames, errors


def test_fourcc_mjpeg_matches_kernel_constant():
    assert fourcc("MJPG") == 0x47504A4D


@pytest.mark.parametrize("code", ["MJPG", "YUYV", "RGB3"])
def test_fourcc_round_trip(code):
    assert fourcc_to_str(fourcc(code)) == code


@pytest.mark.parametrize("code", ["MJP", "MJPEG", ""])
def test_fourcc_rejects_wrong_length(code):
    with pytest.raises(ValueError):
        fourcc(code)


def test_fourcc_to_str_rejects_out_of_range():
    with pytest.raises(ValueError):
        fourcc_to_str(-1)


def test_format_info_fourcc():
    info = FormatInfo(index=0, description="Motion-JPEG",
                      pixelformat=fourcc("MJPG"), default_fps=30,
                      sizes=((640, 480),))
    assert info.fourcc == "MJPG"
    assert info.sizes == ((640, 480),)


def test_decode_frame_returns_rgb_array():
    image = decode_frame(_jpeg(8, 6, (200, 10, 10)))
    assert image.shape == (6, 8, 3)
    assert image.dtype == np.uint8
    assert abs(int(image[:, :, 0].mean()) - 200) < 10


@pytest.mark.parametrize("data", [b"", b"not a jpeg"])
def test_decode_frame_rejects_bad_data(data):
    with pytest.raises(ValueError):
        decode_frame(data)


def test_defaults_follow_capture_settings():
    dev = VideoDevice()
    assert (dev.path, dev.width, dev.height, dev.buffer_count) == (
        "/dev/video1", 640, 480, 4)
    assert dev.is_open is False


def test_open_missing_device_raises(tmp_path):
    dev = VideoDevice(str(tmp_path / "video9"))
    with pytest.raises(DeviceError):
        dev.open()
    assert dev.is_open is False


def test_open_regular_file_fails_to_set_format(tmp_path):
    path = tmp_path / "not_a_camera"
    path.write_bytes(b"\0" * 64)
    dev = VideoDevice(str(path))
    with pytest.raises(DeviceError, match="format"):
        dev.open()
    assert dev.is_open is False


def test_context_manager_propagates_open_failure(tmp_path):
    with pytest.raises(DeviceError):
        with VideoDevice(str(tmp_path / "absent")):
            pass


def test_operations_on_closed_device_raise():
    dev = VideoDevice("/nonexistent/video")
    with pytest.raises(DeviceError):
        dev.enumerate_formats()
    with pytest.raises(DeviceError):
        dev.dequeue()
    with pytest.raises(DeviceError):
        dev.requeue(0)


def test_close_on_unopened_device_keeps_it_closed():
    dev = VideoDevice("/nonexistent/video")
    dev.close()
    assert dev.is_open is False


def test_capture_thread_delivers_frames_and_requeues():
    data = _jpeg(8, 6, (10, 200, 10))
    fake = FakeDevice([(0, data), (1, data)])
    frames, errors = _run_until_error(fake)
    assert len(frames) == 2
    assert frames[0].shape == (6, 8, 3)
    assert fake.requeued == [0, 1]
    assert errors == ["DQBUF failed: no more frames"]


def test_capture_thread_skips_undecodable_frames_but_requeues():
    fake = FakeDevice([(2, b"garbage")])
    frames, errors = _run_until_error(fake)
    assert frames == []
    assert fake.requeued == [2]
    assert len(errors) == 1


def test_capture_thread_reports_requeue_failure_and_continues():
    data = _jpeg(4, 4, (0, 0, 255))
    fake = FakeDevice([(0, data), (1, data)], fail_requeue=True)
    frames, errors = _run_until_error(fake)
    assert len(frames) == 2
    assert errors[:2] == ["QBUF failed: queue full", "QBUF failed: queue full"]
    assert errors[-1].startswith("DQBUF failed")


def test_capture_thread_retries_after_interruption():
    data = _jpeg(4, 4, (255, 255, 0))
    fake = FakeDevice([InterruptedError(), (3, data)])
    frames, errors = _run_until_error(fake)
    assert len(frames) == 1
    assert fake.requeued == [3]
    assert len(errors) == 1


def test_capture_thread_cannot_start_twice():
    blocker = threading.Event()

    class BlockingDevice:
        def dequeue(self):
            blocker.wait(5)
            raise DeviceError("stopped")

        def requeue(self, index):
            pass

    thread = CaptureThread(BlockingDevice(), lambda image: None)
    thread.start()
    try:
        with pytest.raises(RuntimeError):
            thread.start()
    finally:
        blocker.set()
        assert thread.stop() is True


def test_stop_without_start_returns_true():
    thread = CaptureThread(FakeDevice([]), lambda image: None)
    assert thread.stop() is True


@pytest.mark.parametrize("value,code", [(0x47504A4D, "MJPG"),
                                        (0x56595559, "YUYV")])
def test_fourcc_to_str_matches_kernel_constants(value, code):
    assert fourcc_to_str(value) == code