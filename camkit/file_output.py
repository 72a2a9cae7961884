"""Write encoded frames to files, optionally split into segments."""

from __future__ import annotations

import logging
import sys

from camkit.output import Output, OutputFlag
from camkit.types import VideoOptions

logger = logging.getLogger(__name__)

_MAX_FILENAME = 255


def _format_filename(pattern: str, count: int) -> str:
    try:
        name = pattern % (count,)
    except TypeError:
        # No conversion in the pattern: the counter is simply ignored.
        try:
            name = pattern % ()
        except (TypeError, ValueError) as exc:
            raise RuntimeError("failed to generate filename") from exc
    except ValueError as exc:
        raise RuntimeError("failed to generate filename") from exc
    return name[:_MAX_FILENAME]


class FileOutput(Output):
    """Writes frames to a file, or to numbered files in segment and split modes."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._fp = None
        self._owns_file = False
        self._count = 0
        self._file_start_time_ms = 0

    def _output_buffer(self, mem: memoryview, timestamp_us: int, flags: OutputFlag) -> None:
        options = self._options
        if (
            self._fp is None
            or (
                options.segment
                and flags & OutputFlag.KEYFRAME
                and timestamp_us // 1000 - self._file_start_time_ms > options.segment
            )
            or (options.split and flags & OutputFlag.RESTART)
        ):
            self._close_file()
            self._open_file(timestamp_us)

        logger.debug("FileOutput: output buffer size %d", len(mem))
        if self._fp is not None and len(mem):
            try:
                self._fp.write(mem)
            except OSError as exc:
                raise RuntimeError("failed to write output bytes") from exc
            if options.flush:
                self._fp.flush()

    def _open_file(self, timestamp_us: int) -> None:
        options = self._options
        if options.output == "-":
            self._fp = sys.stdout.buffer
            self._owns_file = False
        elif options.output:
            filename = _format_filename(options.output, self._count)
            self._count += 1
            if options.wrap:
                self._count %= options.wrap
            try:
                self._fp = open(filename, "wb")
            except OSError as exc:
                raise RuntimeError(f"failed to open output file {filename}") from exc
            self._owns_file = True
            logger.debug("FileOutput: opened output file %s", filename)
            self._file_start_time_ms = timestamp_us // 1000

    def _close_file(self) -> None:
        if self._fp is None:
            return
        if self._options.flush:
            self._fp.flush()
        if self._owns_file:
            self._fp.close()
        self._fp = None

    def close(self) -> None:
        """Close the current file and finish the base output."""
        self._close_file()
        super().close()