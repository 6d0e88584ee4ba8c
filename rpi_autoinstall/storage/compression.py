"""Compression detection and extraction of source images."""

from __future__ import annotations

import gzip
import lzma
import os
import shutil
import zlib
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from rpi_autoinstall.exceptions import MountError
from rpi_autoinstall.logging import LoggerFactory


log = LoggerFactory.for_mount()

COPY_BUFFER_SIZE = 4 * 1024 * 1024

_OPENERS: dict[str, Callable[[Path], BinaryIO]] = {
    "xz": lambda path: lzma.open(path, "rb"),
    "gzip": lambda path: gzip.open(path, "rb"),
}


def is_xz_compressed(image: Path) -> bool:
    return image.name.endswith(".xz")


def is_gzip_compressed(image: Path) -> bool:
    return image.name.endswith(".gz")


def get_compression_type(image: Path) -> Optional[str]:
    """Detect compression of an image file from its name.

    Returns:
        "xz" if xz compressed
        "gzip" if gzip compressed
        None if uncompressed
    """
    if is_xz_compressed(image):
        return "xz"
    if is_gzip_compressed(image):
        return "gzip"
    return None


def extract_image(source: Path, destination: Path) -> Path:
    """Write the raw bytes of ``source`` to ``destination``.

    Compressed sources are decompressed, raw sources are copied; ``source`` is
    never modified. Output goes to a ``.part`` sibling first so a failure never
    leaves a truncated image at ``destination``.

    Raises:
        MountError: If the source cannot be read or decompressed, or the
            destination cannot be written
    """
    source = Path(source)
    destination = Path(destination)
    if source.resolve() == destination.resolve():
        raise MountError(f"Refusing to extract {source} onto itself")
    compression = get_compression_type(source)
    staging = destination.with_name(destination.name + ".part")
    log.info(f"🔧 Extracting image {source.name}...")
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if compression is None:
            shutil.copyfile(source, staging)
        else:
            with _OPENERS[compression](source) as reader, open(staging, "wb") as writer:
                shutil.copyfileobj(reader, writer, COPY_BUFFER_SIZE)
        os.replace(staging, destination)
    except (OSError, EOFError, lzma.LZMAError, zlib.error) as error:
        _discard(staging)
        raise MountError(f"Cannot extract {source} to {destination}: {error}") from error
    except BaseException:
        _discard(staging)
        raise
    log.debug(f"Extracted {source} -> {destination}")
    return destination


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
