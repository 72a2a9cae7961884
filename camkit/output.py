"""Base video output: pause handling, timestamp files and frame metadata."""

from __future__ import annotations

import enum
import sys
from collections import deque
from collections.abc import Mapping
from typing import Any, TextIO

from camkit.types import VideoOptions


class OutputFlag(enum.IntFlag):
    """Flags passed along with each output buffer."""

    NONE = 0
    KEYFRAME = 1
    RESTART = 2


class _State(enum.Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


def format_control_value(value: Any) -> str:
    """Render a metadata value the way the camera stack prints control values."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:f}"
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return "[ " + ", ".join(format_control_value(v) for v in value) + " ]"
    return str(value)


def start_metadata_output(stream: TextIO, fmt: str) -> None:
    """Write whatever opens a metadata document in the given format."""
    if fmt == "json":
        stream.write("[\n")


def write_metadata(stream: TextIO, fmt: str, metadata: Mapping[str, Any], first_write: bool) -> None:
    """Write one frame's metadata as text lines or as a JSON object."""
    if fmt == "txt":
        for name, value in metadata.items():
            stream.write(f"{name}={format_control_value(value)}\n")
        stream.write("\n")
        return

    if not first_write:
        stream.write(",\n")
    stream.write("{")
    first_done = False
    for name, value in metadata.items():
        text = format_control_value(value)
        quote = '"' if "/" in text else ""
        stream.write(("," if first_done else "") + "\n")
        stream.write(f'    "{name}": {quote}{text}{quote}')
        first_done = True
    stream.write("\n}")


def stop_metadata_output(stream: TextIO, fmt: str) -> None:
    """Write whatever closes a metadata document in the given format."""
    if fmt == "json":
        stream.write("\n]\n")


class Output:
    """An output that accepts encoded buffers; this base class discards them."""

    def __init__(self, options: VideoOptions) -> None:
        self._options = options
        self._timestamps: TextIO | None = None
        self._state = _State.WAITING_KEYFRAME
        self._time_offset = 0
        self._last_timestamp = 0
        self._metadata_stream: TextIO = sys.stdout
        self._metadata_file: TextIO | None = None
        self._metadata_started = False
        self._metadata_queue: deque[dict[str, Any]] = deque()
        self._closed = False

        if options.save_pts:
            try:
                self._timestamps = open(options.save_pts, "w")
            except OSError as exc:
                raise RuntimeError(f"Failed to open timestamp file {options.save_pts}") from exc
            self._timestamps.write("# timecode format v2\n")

        if options.metadata and options.metadata != "-":
            self._metadata_file = open(options.metadata, "w")
            self._metadata_stream = self._metadata_file
            start_metadata_output(self._metadata_stream, options.metadata_format)

        self._enable = not options.pause

    def signal(self) -> None:
        """Toggle between paused and running."""
        self._enable = not self._enable

    def output_ready(self, mem, timestamp_us: int, keyframe: bool) -> None:
        """Accept one encoded buffer, honouring pauses and keyframe restarts."""
        data = memoryview(mem)
        if data.format != "B" or data.ndim != 1:
            data = data.cast("B")

        flags = OutputFlag.KEYFRAME if keyframe else OutputFlag.NONE
        if not self._enable:
            self._state = _State.DISABLED
        elif self._state is _State.DISABLED:
            self._state = _State.WAITING_KEYFRAME
        if self._state is _State.WAITING_KEYFRAME and keyframe:
            self._state = _State.RUNNING
            flags |= OutputFlag.RESTART
        if self._state is not _State.RUNNING:
            return

        # Keep timestamps continuous across a pause.
        if flags & OutputFlag.RESTART:
            self._time_offset = timestamp_us - self._last_timestamp
        self._last_timestamp = timestamp_us - self._time_offset

        self._output_buffer(data, self._last_timestamp, flags)

        if self._timestamps is not None:
            self._timestamp_ready(self._last_timestamp)

        if self._options.metadata:
            if not self._metadata_queue:
                raise RuntimeError("no metadata available for output frame")
            metadata = self._metadata_queue.popleft()
            write_metadata(
                self._metadata_stream, self._options.metadata_format, metadata, not self._metadata_started
            )
            self._metadata_started = True

    def metadata_ready(self, metadata: Mapping[str, Any]) -> None:
        """Queue metadata for the next frame that is output."""
        if not self._options.metadata:
            return
        self._metadata_queue.append(dict(metadata))

    def _timestamp_ready(self, timestamp: int) -> None:
        assert self._timestamps is not None
        self._timestamps.write(f"{timestamp // 1000}.{timestamp % 1000:03d}\n")
        if self._options.flush:
            self._timestamps.flush()

    def _output_buffer(self, mem: memoryview, timestamp_us: int, flags: OutputFlag) -> None:
        """Deliver a buffer; the base output drops it."""

    def close(self) -> None:
        """Finish the timestamp and metadata files."""
        if self._closed:
            return
        self._closed = True
        if self._timestamps is not None:
            self._timestamps.close()
        if self._options.metadata:
            stop_metadata_output(self._metadata_stream, self._options.metadata_format)
            if self._metadata_file is not None:
                self._metadata_file.close()
            else:
                self._metadata_stream.flush()

    def __enter__(self) -> Output:
        return self

    def __exit__(self, *args) -> None:
        self.close()