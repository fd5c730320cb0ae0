import threading

import numpy as np
import pytest

from camstation.imaging import (
    FrameProcessor,
    ProcessMode,
    cartoon,
    edge_detect,
    emboss,
    gaussian_blur,
    grayscale,
    process_frame,
    process_none,
    sharpen,
)


def _uniform(value, shape=(12, 16)):
    return np.full(shape + (3,), value, dtype=np.uint8)


def _random(seed=0, shape=(20, 24)):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=shape + (3,), dtype=np.uint8)


def _step():
    img = np.zeros((20, 20, 3), dtype=np.uint8)
    img[:, 10:] = 255
    return img


def test_mode_values_follow_selector_order():
    assert ProcessMode(0) is ProcessMode.NONE
    assert ProcessMode(3) is ProcessMode.GRAYSCALE
    assert ProcessMode(6) is ProcessMode.CARTOON
    assert len(ProcessMode) == 7


def test_process_none_returns_equal_copy():
    img = _random()
    out = process_none(img)
    assert np.array_equal(out, img)
    out[0, 0, 0] ^= 1
    assert not np.array_equal(out, img)


@pytest.mark.parametrize("func", [process_none, gaussian_blur, edge_detect,
                                  grayscale, sharpen, emboss, cartoon])
def test_filters_keep_shape_and_dtype(func):
    img = _random(1, (9, 13))
    out = func(img)
    assert out.shape == img.shape
    assert out.dtype == np.uint8


@pytest.mark.parametrize("func", [gaussian_blur, sharpen, process_none, cartoon])
def test_uniform_image_is_unchanged(func):
    img = _uniform(100)
    assert np.array_equal(func(img), img)


def test_gaussian_blur_reduces_variation():
    img = _random(2)
    out = gaussian_blur(img)
    assert out.astype(float).std() < img.astype(float).std()


def test_grayscale_channels_are_equal():
    out = grayscale(_random(3))
    assert np.array_equal(out[:, :, 0], out[:, :, 1])
    assert np.array_equal(out[:, :, 1], out[:, :, 2])


def test_grayscale_of_white_is_white():
    out = grayscale(_uniform(255))
    assert np.array_equal(out, _uniform(255))


def test_grayscale_of_gray_keeps_level():
    out = grayscale(_uniform(77))
    assert np.array_equal(out, _uniform(77))


def test_edge_detect_uniform_has_no_edges():
    out = edge_detect(_uniform(120))
    assert not out.any()


def test_edge_detect_step_finds_binary_edges():
    out = edge_detect(_step())
    assert set(np.unique(out)).issubset({0, 255})
    assert out.any()
    assert not out[:, 0].any()
    assert not out[:, -1].any()


def test_emboss_saturates_bright_flat_image():
    out = emboss(_uniform(200))
    assert np.array_equal(out, _uniform(255))


def test_emboss_channels_are_equal():
    out = emboss(_random(4))
    assert np.array_equal(out[:, :, 0], out[:, :, 2])


def test_grey_input_is_accepted():
    gray = np.full((6, 7), 90, dtype=np.uint8)
    assert np.array_equal(process_none(gray), _uniform(90, (6, 7)))


def test_rgba_input_drops_alpha():
    rgba = np.zeros((4, 5, 4), dtype=np.uint8)
    rgba[..., :3] = 33
    rgba[..., 3] = 200
    assert np.array_equal(process_none(rgba), _uniform(33, (4, 5)))


@pytest.mark.parametrize("bad", [np.zeros((3, 3, 5), dtype=np.uint8),
                                 np.zeros((0, 0, 3), dtype=np.uint8),
                                 np.zeros(7, dtype=np.uint8)])
def test_bad_images_raise(bad):
    with pytest.raises(ValueError):
        process_frame(bad, ProcessMode.NONE)


@pytest.mark.parametrize("mode,func", [(ProcessMode.GRAYSCALE, grayscale),
                                       (ProcessMode.SHARPEN, sharpen),
                                       (1, gaussian_blur),
                                       (5, emboss)])
def test_process_frame_dispatches(mode, func):
    img = _random(5)
    assert np.array_equal(process_frame(img, mode), func(img))


def test_process_frame_rejects_unknown_mode():
    with pytest.raises(ValueError):
        process_frame(_random(), 42)


def test_processor_mode_defaults_and_changes():
    proc = FrameProcessor(lambda image: None)
    assert proc.mode is ProcessMode.NONE
    proc.set_mode(2)
    assert proc.mode is ProcessMode.EDGE_DETECT
    with pytest.raises(ValueError):
        proc.set_mode(99)


def test_processor_delivers_processed_frame():
    results = []
    done = threading.Event()

    def on_frame(image):
        results.append(image)
        done.set()

    proc = FrameProcessor(on_frame)
    proc.set_mode(ProcessMode.GRAYSCALE)
    img = _random(6)
    proc.start()
    try:
        proc.add_frame(img)
        assert done.wait(5.0)
    finally:
        assert proc.stop() is True
    assert np.array_equal(results[0], grayscale(img))


def test_processor_reports_errors():
    errors = []
    frames = []
    done = threading.Event()

    def on_error(message):
        errors.append(message)
        done.set()

    proc = FrameProcessor(frames.append, on_error)
    proc.start()
    try:
        proc.add_frame(np.zeros((2, 2, 5), dtype=np.uint8))
        assert done.wait(5.0)
    finally:
        stopped = proc.stop()
    assert stopped is True
    assert frames == []
    assert len(errors) == 1
    assert errors[0].startswith("processing error")


def test_processor_cannot_start_twice():
    proc = FrameProcessor(lambda image: None)
    proc.start()
    try:
        with pytest.raises(RuntimeError):
            proc.start()
    finally:
        assert proc.stop() is True