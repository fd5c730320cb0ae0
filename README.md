# camstation

A small camera station for Linux video capture devices. It opens a capture
device, streams MJPEG frames on a background thread, can run each frame
through a live image effect, saves photos to a `photo` directory and lets
you page through the photos you have taken.

## Installation

```
pip install .
```

The window uses Tk (`tkinter`), which some Linux distributions ship as a
separate system package.

For running the tests:

```
pip install .[test]
pytest
```

## Running

```
camstation [--device PATH] [--photo-dir DIR]
```

By default this opens `/dev/video1`, asks for 640x480 MJPEG frames, creates
`./photo` if it does not exist yet and starts the camera window. From the
window you can turn the camera on and off, take a photo, choose an effect
and switch to the photo viewer (Back / Previous / Next). A photo is the raw
bytes of the next frame from the device, written to
`<photo dir>/photo_<ten random digits>.jpg`; its path is printed.

If the camera cannot be opened, the window still starts with the camera
closed, and the Open button tries again. Capture errors are shown in a
message box and close the camera.

## Effects

`camstation.imaging.ProcessMode` lists the effects; their values are the
positions in the window's effect selector:

| Mode            | What it does                                           |
|-----------------|--------------------------------------------------------|
| `NONE`          | frame passes through unchanged                         |
| `GAUSSIAN_BLUR` | 15x15 Gaussian blur                                    |
| `EDGE_DETECT`   | grayscale, 5x5 blur, Canny edges (thresholds 50/150)   |
| `GRAYSCALE`     | luma kept as three equal channels                      |
| `SHARPEN`       | 3x3 sharpening kernel on every channel                 |
| `EMBOSS`        | emboss kernel on grayscale, lifted by 128              |
| `CARTOON`       | median blur, adaptive mean threshold, bilateral filter |

The functions (`process_none`, `gaussian_blur`, `edge_detect`, `grayscale`,
`sharpen`, `emboss`, `cartoon`) take RGB `numpy` arrays of shape
`(height, width, 3)` and `uint8` type and return a new array of that shape.
Grey (2-D) and RGBA inputs are converted first; an empty image raises
`ValueError`.

```python
import numpy as np
from camstation.imaging import ProcessMode, process_frame, edge_detect

frame = np.zeros((480, 640, 3), dtype=np.uint8)
edges = edge_detect(frame)
blurred = process_frame(frame, ProcessMode.GAUSSIAN_BLUR)
```

`FrameProcessor(on_frame, on_error)` runs the effects on a worker thread:
`start()` starts it, `add_frame()` hands it the newest frame (an older frame
not yet taken is dropped), `set_mode()` switches the effect, `mode` reports
it, and `stop(timeout)` ends the worker. Results arrive through `on_frame`;
failures are reported as text through `on_error`.

## Device access

`camstation.device.VideoDevice` opens a capture device, lists its formats
and frame sizes, maps the driver buffers and streams frames:

```python
from camstation.device import VideoDevice, decode_frame

with VideoDevice("/dev/video1", 640, 480, 4) as device:
    for info in device.enumerate_formats():
        print(info.fourcc, info.description, info.default_fps, info.sizes)
    index, data = device.dequeue()
    image = decode_frame(data)
    device.requeue(index)
```

Failures to open, set up, read or close the device raise `DeviceError` (a
subclass of `OSError`). `fourcc()` and `fourcc_to_str()` convert between
four-character codes and their integer values. `CaptureThread(device,
on_frame, on_error)` runs the dequeue/decode/requeue loop in the background
and passes decoded RGB frames to `on_frame`; a failed dequeue is reported
and ends the thread, a failed requeue is reported and capture goes on.

## Gallery

`camstation.gallery.list_photos(directory)` returns the `*.jpg` files of a
directory, oldest first. `PhotoGallery` pages through them: on creation it
shows the first photo, and each `show_next()` / `show_previous()` shows the
photo at its cursor and then moves the cursor forward or back, wrapping
around. `current` is the photo on display; `refresh()` re-reads the
directory.

```python
from camstation.gallery import PhotoGallery

gallery = PhotoGallery("./photo")
print(gallery.current)
path = gallery.show_next()
```

## Application pieces

`camstation.app.CameraController` owns the device, the capture thread and
the frame processor: `toggle()` opens or closes the camera, `take_photo()`
saves a frame, `set_mode(index)` selects an effect (`NONE` turns processing
off) and `shutdown()` stops everything. `CameraWindow` is the Tk window
around it, and `main()` is the `camstation` command.

## Limits

Only Linux capture devices are supported, and only in MJPEG with
memory-mapped buffers; there is no other pixel format, no still-image or
video file recording beyond single saved frames, and no way to delete or
rename photos from the viewer.