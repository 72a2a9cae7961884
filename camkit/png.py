"""Save RGB frames as PNG files."""

from __future__ import annotations

import contextlib
import logging
import sys
from collections.abc import Iterator, Sequence
from typing import BinaryIO

import numpy as np
from PIL import Image

from camkit.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _open_output(filename: str) -> Iterator[BinaryIO]:
    if filename == "-":
        yield sys.stdout.buffer
        sys.stdout.buffer.flush()
        return
    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError(f"failed to open file {filename}") from exc
    with fp:
        yield fp


def png_save(mem: Sequence, info: StreamInfo, filename: str, options: StillOptions | None = None) -> None:
    """Write the first plane of a BGR888 frame (R, G, B in memory) as a PNG ("-" is stdout)."""
    if info.pixel_format is not PixelFormat.BGR888:
        raise ValueError("pixel format for png should be BGR")

    data = np.frombuffer(memoryview(mem[0]).cast("B"), dtype=np.uint8)
    line = info.width * 3
    if info.height and (info.height - 1) * info.stride + line > data.size:
        raise ValueError("buffer too small for image")
    rows = np.lib.stride_tricks.as_strided(
        data, shape=(info.height, line), strides=(info.stride, 1), writeable=False
    )
    image = Image.frombytes("RGB", (info.width, info.height), rows.tobytes())

    with _open_output(filename) as fp:
        # A low compression level gets most of the gain at a fraction of the cost.
        try:
            image.save(fp, format="PNG", compress_level=1)
        except OSError as exc:
            raise RuntimeError("failed to write png file") from exc
    logger.debug("Wrote PNG file %s", filename)