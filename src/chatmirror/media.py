"""Summary: Media storage writer and local storage reference helpers.

Importance: Owns how attachment bytes are named on disk and how stored references look.
Alternatives: Let each downloader build paths and URLs ad hoc.
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path
from urllib.parse import urlsplit

from PIL import Image


logger = logging.getLogger(__name__)

_INVALID_CHARACTERS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")
_SERVED_PREFIX = re.compile(r"(?:^|/)(?:api/)*media/(?:files/)?", re.IGNORECASE)
MAX_FILENAME_LENGTH = 100


class MediaWriter(ABC):
    """Summary: Abstract interface for persisting attachment bytes.

    Importance: Lets the download pipeline target local disk or object storage.
    Alternatives: Write files directly inside the download pipeline.
    """

    @abstractmethod
    def write(self, name: str, content: bytes) -> str:
        """Summary: Persist bytes under a canonical name and return the stored reference.

        Importance: The returned reference is what the lifecycle store records.
        Alternatives: Return an absolute filesystem path.
        """

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Summary: Check whether a canonical name is already taken.

        Importance: Prevents two downloads from overwriting each other.
        Alternatives: Rely on timestamp uniqueness alone.
        """

    @abstractmethod
    def remove_empty(self) -> list[str]:
        """Summary: Delete zero-byte stored files and return their names.

        Importance: Interrupted writers from older releases left empty files behind.
        Alternatives: Leave empty files for an operator to find.
        """


class LocalMediaWriter(MediaWriter):
    """Summary: Stores attachment bytes in a local media directory.

    Importance: Default storage for local-first deployments and tests.
    Alternatives: Upload to a bucket through a CDN helper.
    """

    def __init__(self, media_dir: str | Path) -> None:
        self._media_dir = Path(media_dir)

    def write(self, name: str, content: bytes) -> str:
        """Summary: Write bytes atomically and return the bare filename.

        Importance: A partially written file is never visible under its final name.
        Alternatives: Stream directly into the final path.
        """

        self._media_dir.mkdir(parents=True, exist_ok=True)
        target = self._media_dir / name
        partial = self._media_dir / f".{name}.part"
        partial.write_bytes(content)
        partial.replace(target)
        return name

    def exists(self, name: str) -> bool:
        """Summary: Report whether a name is taken, clearing a zero-byte file under it.

        Importance: An empty file never blocks a name a real download could use.
        Alternatives: Treat any directory entry as taken.
        """

        path = self._media_dir / name
        if not path.is_file():
            return path.exists()
        if path.stat().st_size == 0:
            path.unlink()
            logger.warning("Removed empty media file %s", name)
            return False
        return True

    def remove_empty(self) -> list[str]:
        if not self._media_dir.is_dir():
            return []
        removed: list[str] = []
        for path in sorted(self._media_dir.iterdir()):
            if path.is_file() and path.stat().st_size == 0:
                path.unlink()
                removed.append(path.name)
        if removed:
            logger.info("Removed %s empty media files from %s", len(removed), self._media_dir)
        return removed


def sanitize_filename(filename: str) -> str:
    """Summary: Make a display filename safe for storage.

    Importance: Removes path separators and characters most filesystems reject.
    Alternatives: Hash the filename and drop the readable name.
    """

    cleaned = _INVALID_CHARACTERS.sub("_", filename)
    cleaned = _WHITESPACE.sub("_", cleaned).strip("._")
    return (cleaned or "attachment")[:MAX_FILENAME_LENGTH]


def canonical_name(filename: str, writer: MediaWriter) -> str:
    """Summary: Build a collision-resistant, time-ordered storage name.

    Importance: Concurrent downloads of identically named files never collide.
    Alternatives: Use random UUID names without the original filename.
    """

    safe_name = sanitize_filename(filename)
    while True:
        candidate = f"{time.time_ns()}_{safe_name}"
        if not writer.exists(candidate):
            return candidate


def is_legacy_served_path(value: str | None) -> bool:
    """Summary: Detect a stored reference that is a previously served URL.

    Importance: Finds records polluted by the old media route format.
    Alternatives: Rewrite references at display time instead of in storage.
    """

    if not value:
        return False
    if "://" in value:
        return True
    return bool(_SERVED_PREFIX.search(value))


def bare_filename(value: str) -> str:
    """Summary: Reduce a served URL or path to its bare filename.

    Importance: Restores the canonical storage reference format.
    Alternatives: Keep the last two path segments.
    """

    path = urlsplit(value).path if "://" in value else value.split("?", 1)[0]
    return path.rstrip("/").rsplit("/", 1)[-1]


def image_dimensions(content: bytes) -> tuple[int, int] | None:
    """Summary: Read the pixel width and height of an image.

    Importance: Only the header is parsed; bytes Pillow cannot identify yield None.
    Alternatives: Store dimensions reported by the remote API.
    """

    try:
        with Image.open(BytesIO(content)) as image:
            width, height = image.size
    except (OSError, Image.DecompressionBombError) as exc:
        logger.info("Could not read image dimensions: %s", exc)
        return None
    return width, height
