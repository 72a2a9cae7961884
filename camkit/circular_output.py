"""Keep recent frames in a ring buffer and write them out when closed."""

from __future__ import annotations

import logging
import struct
import sys

from camkit.output import Output, OutputFlag
from camkit.types import VideoOptions

logger = logging.getLogger(__name__)

# Frames are aligned to this many bytes in the buffer (a power of two).
ALIGN = 16

# length, keyframe, padding, timestamp
_HEADER = struct.Struct("<I?3xq")


class CircularBuffer:
    """A byte ring buffer of fixed size."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    def empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        if self._wptr == self._rptr:
            return self._size - 1
        return (self._size - self._wptr + self._rptr) % self._size - 1

    def skip(self, n: int) -> None:
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        """Remove and return the next n bytes."""
        parts = []
        if self._rptr + n >= self._size:
            parts.append(bytes(self._buf[self._rptr:self._size]))
            n -= self._size - self._rptr
            self._rptr = 0
        parts.append(bytes(self._buf[self._rptr:self._rptr + n]))
        self._rptr += n
        return b"".join(parts)

    def pad(self, n: int) -> None:
        self._wptr = (self._wptr + n) % self._size

    def write(self, data) -> None:
        view = memoryview(data).cast("B") if not isinstance(data, (bytes, bytearray)) else memoryview(data)
        n = len(view)
        if self._wptr + n >= self._size:
            first = self._size - self._wptr
            self._buf[self._wptr:self._size] = view[:first]
            view = view[first:]
            n -= first
            self._wptr = 0
        self._buf[self._wptr:self._wptr + n] = view
        self._wptr += n


class CircularOutput(Output):
    """Buffers the most recent frames and saves them, from the first keyframe, on close."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._cb = CircularBuffer(options.circular << 20)
        self._owns_file = False
        if options.output == "-":
            self._fp = sys.stdout.buffer
        elif options.output:
            try:
                self._fp = open(options.output, "wb")
            except OSError as exc:
                raise RuntimeError("could not open output file") from exc
            self._owns_file = True
        else:
            raise RuntimeError("could not open output file")

    def _output_buffer(self, mem: memoryview, timestamp_us: int, flags: OutputFlag) -> None:
        size = len(mem)
        pad = (ALIGN - size) & (ALIGN - 1)
        while size + pad + _HEADER.size > self._cb.available():
            if self._cb.empty():
                raise RuntimeError("circular buffer too small")
            length, _, _ = _HEADER.unpack(self._cb.read(_HEADER.size))
            self._cb.skip((length + ALIGN - 1) & ~(ALIGN - 1))
        header = _HEADER.pack(size, bool(flags & OutputFlag.KEYFRAME), timestamp_us)
        self._cb.write(header)
        self._cb.write(mem)
        self._cb.pad(pad)

    def _timestamp_ready(self, timestamp: int) -> None:
        # Timestamps are only written out with the frames at the end.
        pass

    def close(self) -> None:
        """Write the buffered frames, starting from the first keyframe, and close."""
        if self._closed:
            return
        total = frames = 0
        seen_keyframe = False
        while not self._cb.empty():
            length, keyframe, timestamp = _HEADER.unpack(self._cb.read(_HEADER.size))
            seen_keyframe |= keyframe
            if seen_keyframe:
                self._fp.write(self._cb.read(length))
                self._cb.skip((ALIGN - length) & (ALIGN - 1))
                total += length
                if self._timestamps is not None:
                    Output._timestamp_ready(self, timestamp)
                frames += 1
            else:
                self._cb.skip((length + ALIGN - 1) & ~(ALIGN - 1))
        if self._owns_file:
            self._fp.close()
        else:
            self._fp.flush()
        logger.info("Wrote %d bytes (%d frames)", total, frames)
        super().close()