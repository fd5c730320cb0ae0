"""Camera station: video device streaming, live image effects, photo capture and a photo gallery."""

__version__ = "0.1.0"
__all__ = ["app", "device", "gallery", "imaging"]