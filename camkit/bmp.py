"""Save RGB frames as uncompressed 24-bit BMP files."""

from __future__ import annotations

import contextlib
import logging
import struct
import sys
from collections.abc import Iterator, Sequence
from typing import BinaryIO

from camkit.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)

# 'BM', file size, two reserved words, offset of the pixel data.
_FILE_HEADER = struct.Struct("<2sIHHI")
# size, width, height, planes, bit count, compression, image size,
# horizontal and vertical resolution, colours used, colours important.
_IMAGE_HEADER = struct.Struct("<IiiHHIIIIII")

_PIXEL_OFFSET = _FILE_HEADER.size + _IMAGE_HEADER.size


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


def bmp_save(
    mem: Sequence,
    info: StreamInfo,
    filename: str,
    options: StillOptions | None = None,
) -> None:
    """Write the first plane of an RGB888 frame as a top-down BMP file ("-" is stdout)."""
    if info.pixel_format is not PixelFormat.RGB888:
        raise ValueError("pixel format for bmp should be RGB")

    data = memoryview(mem[0]).cast("B")
    line = info.width * 3
    pitch = (line + 3) & ~3  # rows are padded to multiples of 4 bytes
    padding = bytes(pitch - line)
    if info.height and (info.height - 1) * info.stride + line > len(data):
        raise ValueError("buffer too small for image")

    filesize = _PIXEL_OFFSET + info.height * pitch
    file_header = _FILE_HEADER.pack(b"BM", filesize, 0, 0, _PIXEL_OFFSET)
    # A negative height makes the image come out the right way up.
    image_header = _IMAGE_HEADER.pack(
        _IMAGE_HEADER.size, info.width, -info.height, 1, 24, 0, 0, 100000, 100000, 0, 0
    )

    with _open_output(filename) as fp:
        try:
            fp.write(file_header)
            fp.write(image_header)
        except OSError as exc:
            raise RuntimeError("failed to write BMP file") from exc
        for row in range(info.height):
            start = row * info.stride
            try:
                fp.write(data[start:start + line])
                if padding:
                    fp.write(padding)
            except OSError as exc:
                raise RuntimeError(f"failed to write BMP file, row {row}") from exc

    logger.debug("Wrote %d bytes to BMP file", filesize)