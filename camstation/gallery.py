"""Browsing of the JPEG photos saved in the photo directory."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

__all__ = ["list_photos", "PhotoGallery"]


def list_photos(directory: Union[str, Path]) -> list[Path]:
    """Return the ``*.jpg`` files in ``directory``, oldest first.

    Matching ignores case; hidden files and sub-directories are skipped.
    A missing directory yields an empty list.
    """
    root = Path(directory)
    if not root.is_dir():
        return []
    photos = [
        entry for entry in root.iterdir()
        if entry.is_file()
        and not entry.name.startswith(".")
        and entry.name.lower().endswith(".jpg")
    ]
    photos.sort(key=lambda p: (p.stat().st_mtime, p.name))
    return photos


class PhotoGallery:
    """Cycles through saved photos the way the viewer's buttons do.

    ``current`` is the photo on display. Each step shows the photo at the
    cursor and then moves the cursor forward or back, wrapping around.
    """

    def __init__(self, directory: Union[str, Path] = "photo"):
        self.directory = Path(directory)
        self.current: Optional[Path] = None
        self._files: list[Path] = []
        self._index = 0
        self.refresh()
        self.show_next()

    def refresh(self) -> None:
        """Re-read the directory, keeping the cursor in range."""
        self._files = list_photos(self.directory)
        if self._index >= len(self._files):
            self._index = 0

    @property
    def files(self) -> list[Path]:
        """The photos known to the gallery, oldest first."""
        return list(self._files)

    def _show_at_cursor(self) -> Path:
        self.current = self._files[self._index]
        return self.current

    def show_next(self) -> Optional[Path]:
        """Show the photo at the cursor, then advance it; None if there are none."""
        if not self._files:
            return None
        shown = self._show_at_cursor()
        self._index += 1
        if self._index >= len(self._files):
            self._index = 0
        return shown

    def show_previous(self) -> Optional[Path]:
        """Show the photo at the cursor, then step it back; None if there are none."""
        if not self._files:
            return None
        shown = self._show_at_cursor()
        self._index -= 1
        if self._index < 0:
            self._index = len(self._files) - 1
        return shown