"""Save YUV frames as JPEG files with an EXIF block and an optional thumbnail."""

from __future__ import annotations

import contextlib
import io
import logging
import re
import struct
import sys
import time
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, BinaryIO

import numpy as np
from PIL import Image

from camkit.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE = "rpicam-apps"

EXIF_HEADER = b"\xff\xd8\xff\xe1"

# EXIF value formats.
BYTE, ASCII, SHORT, LONG, RATIONAL, SBYTE, UNDEFINED, SSHORT, SLONG, SRATIONAL = 1, 2, 3, 4, 5, 6, 7, 8, 9, 10

_FORMAT_SIZE = {BYTE: 1, ASCII: 1, SHORT: 2, LONG: 4, RATIONAL: 8, SBYTE: 1, UNDEFINED: 1,
                SSHORT: 2, SLONG: 4, SRATIONAL: 8}

IFD_NAMES = ("IFD0", "EXIF", "GPS", "EINT", "IFD1")

# Known tags: name -> (tag id, format, components; 0 means variable).
_TAGS: dict[str, tuple[int, int, int]] = {
    "ImageWidth": (0x0100, SHORT, 1),
    "ImageLength": (0x0101, SHORT, 1),
    "Compression": (0x0103, SHORT, 1),
    "ImageDescription": (0x010E, ASCII, 0),
    "Make": (0x010F, ASCII, 0),
    "Model": (0x0110, ASCII, 0),
    "Orientation": (0x0112, SHORT, 1),
    "XResolution": (0x011A, RATIONAL, 1),
    "YResolution": (0x011B, RATIONAL, 1),
    "ResolutionUnit": (0x0128, SHORT, 1),
    "Software": (0x0131, ASCII, 0),
    "DateTime": (0x0132, ASCII, 0),
    "Artist": (0x013B, ASCII, 0),
    "JPEGInterchangeFormat": (0x0201, LONG, 1),
    "JPEGInterchangeFormatLength": (0x0202, LONG, 1),
    "YCbCrCoefficients": (0x0211, UNDEFINED, 0),
    "Copyright": (0x8298, ASCII, 0),
    "ExposureTime": (0x829A, RATIONAL, 1),
    "FNumber": (0x829D, RATIONAL, 1),
    "ISOSpeedRatings": (0x8827, SHORT, 1),
    "DateTimeOriginal": (0x9003, ASCII, 0),
    "DateTimeDigitized": (0x9004, ASCII, 0),
    "ShutterSpeedValue": (0x9201, SRATIONAL, 1),
    "ApertureValue": (0x9202, RATIONAL, 1),
    "ExposureBiasValue": (0x9204, SRATIONAL, 1),
    "SubjectDistance": (0x9206, RATIONAL, 1),
    "FocalLength": (0x920A, RATIONAL, 1),
    "UserComment": (0x9286, UNDEFINED, 0),
    "GPSLatitudeRef": (0x0001, ASCII, 0),
    "GPSLatitude": (0x0002, RATIONAL, 3),
    "GPSLongitudeRef": (0x0003, ASCII, 0),
    "GPSLongitude": (0x0004, RATIONAL, 3),
    "GPSAltitude": (0x0006, RATIONAL, 1),
}

# Tags whose format is undefined in the tag table but known here.
_EXCEPTIONS: dict[str, tuple[int, int]] = {
    "YCbCrCoefficients": (RATIONAL, 3),
}

_POINTER_EXIF, _POINTER_GPS, _POINTER_INTEROP = 0x8769, 0x8825, 0xA005

_TAG_RE = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")
_INT_RE = re.compile(r"\s*([+-]?\d+)")
_RATIONAL_RE = re.compile(r"\s*([+-]?\d+)/\s*([+-]?\d+)")


def _signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >> (bits - 1) else value


@dataclass
class _Entry:
    format: int
    values: Any


class ExifData:
    """EXIF tags grouped by IFD, serialised in Intel byte order."""

    def __init__(self) -> None:
        self.ifds: dict[str, dict[str, _Entry]] = {name: {} for name in IFD_NAMES}

    def _put(self, ifd: str, tag: str, fmt: int, values: Any) -> None:
        self.ifds[ifd][tag] = _Entry(fmt, values)

    def set(self, ifd: str, tag: str, value: Any) -> None:
        """Set a known tag in the named IFD."""
        if ifd not in self.ifds:
            raise ValueError(f"bad IFD name {ifd}")
        if tag not in _TAGS:
            raise KeyError(f"no EXIF tag {tag}")
        _, fmt, _ = _TAGS[tag]
        if fmt == UNDEFINED:
            fmt = _EXCEPTIONS.get(tag, (ASCII, 0))[0]
        if fmt == ASCII:
            self._put(ifd, tag, fmt, str(value))
            return
        if isinstance(value, (list, tuple)) and not (
            fmt in (RATIONAL, SRATIONAL) and len(value) == 2 and all(isinstance(v, int) for v in value)
        ):
            values = list(value)
        else:
            values = [value]
        self._put(ifd, tag, fmt, values)

    @staticmethod
    def _payload(entry: _Entry) -> tuple[int, bytes]:
        fmt = entry.format
        if fmt == ASCII:
            data = entry.values.encode()
            return len(data), data
        values = entry.values
        if fmt == SHORT:
            data = b"".join(struct.pack("<H", v & 0xFFFF) for v in values)
        elif fmt == SSHORT:
            data = b"".join(struct.pack("<h", _signed(v, 16)) for v in values)
        elif fmt == LONG:
            data = b"".join(struct.pack("<I", v & 0xFFFFFFFF) for v in values)
        elif fmt == SLONG:
            data = b"".join(struct.pack("<i", _signed(v, 32)) for v in values)
        elif fmt == RATIONAL:
            data = b"".join(struct.pack("<II", n & 0xFFFFFFFF, d & 0xFFFFFFFF) for n, d in values)
        elif fmt == SRATIONAL:
            data = b"".join(struct.pack("<ii", _signed(n, 32), _signed(d, 32)) for n, d in values)
        else:
            data = bytes(values)
        return len(values), data

    @staticmethod
    def _size(entries: list[tuple[int, int, int, bytes]]) -> int:
        extra = sum(len(p) + len(p) % 2 for _, _, _, p in entries if len(p) > 4)
        return 2 + 12 * len(entries) + 4 + extra

    @staticmethod
    def _serialize(entries: list[tuple[int, int, int, bytes]], offset: int, next_ifd: int) -> bytes:
        out = bytearray(struct.pack("<H", len(entries)))
        extra = bytearray()
        extra_base = offset + 2 + 12 * len(entries) + 4
        for tag_id, fmt, count, payload in entries:
            if len(payload) <= 4:
                value = payload.ljust(4, b"\0")
            else:
                value = struct.pack("<I", extra_base + len(extra))
                extra += payload
                if len(extra) % 2:
                    extra += b"\0"
            out += struct.pack("<HHI", tag_id, fmt, count) + value
        out += struct.pack("<I", next_ifd)
        return bytes(out + extra)

    def to_bytes(self) -> bytes:
        """Serialise as an APP1 payload starting with 'Exif\\0\\0'."""
        tables: dict[str, list[tuple[int, int, int, bytes]]] = {}
        for name in IFD_NAMES:
            tables[name] = [
                (_TAGS[tag][0], entry.format, *self._payload(entry))
                for tag, entry in self.ifds[name].items()
            ]
        has_eint = bool(tables["EINT"])
        has_exif = bool(tables["EXIF"]) or has_eint
        has_gps = bool(tables["GPS"])
        has_ifd1 = bool(tables["IFD1"])
        placeholder = b"\0\0\0\0"
        if has_exif:
            tables["IFD0"].append((_POINTER_EXIF, LONG, 1, placeholder))
        if has_gps:
            tables["IFD0"].append((_POINTER_GPS, LONG, 1, placeholder))
        if has_eint:
            tables["EXIF"].append((_POINTER_INTEROP, LONG, 1, placeholder))

        present = ["IFD0"] + [n for n, ok in (("EXIF", has_exif), ("GPS", has_gps),
                                               ("EINT", has_eint), ("IFD1", has_ifd1)) if ok]
        offsets: dict[str, int] = {}
        pos = 8
        for name in present:
            offsets[name] = pos
            pos += self._size(tables[name])

        pointers = {_POINTER_EXIF: "EXIF", _POINTER_GPS: "GPS", _POINTER_INTEROP: "EINT"}
        body = bytearray()
        for name in present:
            entries = sorted(
                (
                    (t, f, c, struct.pack("<I", offsets[pointers[t]]) if t in pointers and name in ("IFD0", "EXIF")
                     and p == placeholder and f == LONG else p)
                    for t, f, c, p in tables[name]
                ),
                key=lambda e: e[0],
            )
            next_ifd = offsets["IFD1"] if name == "IFD0" and has_ifd1 else 0
            body += self._serialize(entries, offsets[name], next_ifd)
        return b"Exif\0\0" + b"II*\0" + struct.pack("<I", 8) + bytes(body)


def _read_value(fmt: int, text: str, pos: int) -> tuple[Any, int]:
    if fmt in (RATIONAL, SRATIONAL):
        match = _RATIONAL_RE.match(text, pos)
        if match is None:
            kind = "unsigned" if fmt == RATIONAL else "signed"
            raise ValueError(f"failed to read EXIF {kind} rational")
        num, den = int(match.group(1)), int(match.group(2))
        if fmt == RATIONAL:
            value = (num & 0xFFFFFFFF, den & 0xFFFFFFFF)
        else:
            value = (_signed(num, 32), _signed(den, 32))
        return value, match.end() - pos
    match = _INT_RE.match(text, pos)
    if match is None:
        names = {SHORT: "unsigned short", SSHORT: "signed short", LONG: "unsigned long", SLONG: "signed long"}
        raise ValueError(f"failed to read EXIF {names.get(fmt, 'value')}")
    raw = int(match.group(1))
    value = {SHORT: raw & 0xFFFF, SSHORT: _signed(raw, 16), LONG: raw & 0xFFFFFFFF}.get(fmt, _signed(raw, 32))
    return value, match.end() - pos


def exif_read_tag(exif: ExifData, text: str) -> None:
    """Apply a tag given as 'IFD.Tag=value[,value...]'."""
    match = _TAG_RE.match(text)
    if match is None:
        raise ValueError("failed to read EXIF IFD and tag")
    ifd, tag = match.group(1), match.group(2)
    if ifd not in IFD_NAMES:
        raise ValueError(f"bad IFD name {ifd}")
    spec = _TAGS.get(tag)
    if spec is None:
        logger.warning("no EXIF tag %s found - ignoring", tag)
        return
    _, fmt, components = spec
    if fmt == UNDEFINED:
        if tag in _EXCEPTIONS:
            fmt, components = _EXCEPTIONS[tag]
        else:
            logger.warning("libexif format for tag %s undefined - treating as ASCII", tag)
            fmt = ASCII

    pos = match.end()
    if fmt == ASCII:
        exif._put(ifd, tag, fmt, text[pos:])
        return
    if components == 0:
        components = text[pos:].count(",") + 1
    values = []
    for _ in range(components):
        if pos >= len(text):
            raise ValueError(f"too few parameters for EXIF tag {tag}")
        value, consumed = _read_value(fmt, text, pos)
        values.append(value)
        pos += consumed + 1  # allow a comma
    exif._put(ifd, tag, fmt, values)


def yuv_to_jpeg(data, info: StreamInfo, output_width: int, output_height: int,
                quality: int, restart: int = 0) -> bytes:
    """Encode a YUYV or YUV420 frame, resampled to the output size, as a JPEG."""
    arr = np.frombuffer(memoryview(data).cast("B"), dtype=np.uint8)
    ys = np.arange(output_height)
    xs = np.arange(output_width)
    row = (((ys * info.height) // output_height) * info.stride)[:, None]
    if info.pixel_format is PixelFormat.YUYV:
        off = ((xs * info.width) // output_width) * 2
        aligned = off & ~3
        indices = [row + off, row + aligned + 1, row + aligned + 3]
    elif info.pixel_format is PixelFormat.YUV420:
        half = info.stride // 2
        u_base = info.stride * info.height
        v_base = u_base + half * (info.height // 2)
        row_uv = ((((ys // 2) * info.height) // output_height) * half)[:, None]
        off = (xs * info.width) // output_width
        indices = [row + off, u_base + row_uv + off // 2, v_base + row_uv + off // 2]
    else:
        raise ValueError("unsupported YUV format in JPEG encode")
    if any(idx.size and int(idx.max()) >= arr.size for idx in indices):
        raise ValueError("buffer too small for image")
    planes = np.dstack([arr[idx] for idx in indices]).astype(np.uint8)
    image = Image.frombytes("YCbCr", (output_width, output_height), planes.tobytes())
    out = io.BytesIO()
    params: dict[str, Any] = {"quality": quality}
    if restart:
        params["restart_marker_blocks"] = restart
    image.save(out, format="JPEG", **params)
    return out.getvalue()


def create_exif_data(mem: Sequence, info: StreamInfo, metadata: Mapping[str, Any],
                     cam_model: str, options: StillOptions) -> tuple[bytes, bytes]:
    """Build the EXIF block and the thumbnail JPEG (empty when not wanted)."""
    exif = ExifData()
    exif.set("EXIF", "Make", MAKE_STRING)
    exif.set("EXIF", "Model", cam_model)
    exif.set("EXIF", "Software", SOFTWARE)
    now = time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())
    exif.set("EXIF", "DateTime", now)
    exif.set("EXIF", "DateTimeOriginal", now)
    exif.set("EXIF", "DateTimeDigitized", now)

    exposure = metadata.get("ExposureTime")
    if exposure is not None:
        exif.set("EXIF", "ExposureTime", (int(exposure), 1000000))
    gain = metadata.get("AnalogueGain")
    if gain is not None:
        digital = metadata.get("DigitalGain")
        total = gain * (digital if digital is not None else 1.0)
        exif.set("EXIF", "ISOSpeedRatings", int(100 * total))
    lens = metadata.get("LensPosition")
    if lens is not None:
        exif.set("EXIF", "SubjectDistance", (1000, int(1000.0 * lens)))

    for item in options.exif:
        logger.debug("Processing EXIF item: %s", item)
        exif_read_tag(exif, item)

    thumb = b""
    if options.thumb_quality:
        exif.set("IFD1", "ImageWidth", options.thumb_width)
        exif.set("IFD1", "ImageLength", options.thumb_height)
        exif.set("IFD1", "Compression", 6)
        exif.set("IFD1", "JPEGInterchangeFormat", 0)
        exif.set("IFD1", "JPEGInterchangeFormatLength", 0)
        exif_len = len(exif.to_bytes())

        q = options.thumb_quality
        while q > 0:
            thumb = yuv_to_jpeg(mem[0], info, options.thumb_width, options.thumb_height, q, 0)
            if len(thumb) < 60000:
                break
            q -= 5
        if q <= 0:
            raise RuntimeError("failed to make acceptable thumbnail")
        # The thumbnail follows the EXIF block; offsets count from the TIFF header.
        exif.set("IFD1", "JPEGInterchangeFormat", exif_len - 6)
        exif.set("IFD1", "JPEGInterchangeFormatLength", len(thumb))

    return exif.to_bytes(), thumb


def _strip_header(jpeg: bytes) -> bytes:
    """Drop the SOI marker and any leading APP0 segment."""
    body = jpeg[2:]
    if body[:2] == b"\xff\xe0":
        body = body[2 + struct.unpack(">H", body[2:4])[0]:]
    return body


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


def jpeg_save(mem: Sequence, info: StreamInfo, metadata: Mapping[str, Any], filename: str,
              cam_model: str, options: StillOptions) -> None:
    """Write a YUV frame as a JPEG with EXIF data ("-" is stdout)."""
    if info.width & 1 or info.height & 1:
        raise ValueError("both width and height must be even")
    if len(mem) != 1:
        raise ValueError("only single plane YUV supported")

    exif_bytes, thumb = create_exif_data(mem, info, metadata, cam_model, options)
    jpeg = yuv_to_jpeg(mem[0], info, info.width, info.height, options.quality, options.restart)
    logger.debug("JPEG size is %d", len(jpeg))

    length = len(exif_bytes) + len(thumb) + 2
    with _open_output(filename) as fp:
        try:
            fp.write(EXIF_HEADER)
            fp.write(bytes([(length >> 8) & 0xFF, length & 0xFF]))
            fp.write(exif_bytes)
            fp.write(thumb)
            fp.write(_strip_header(jpeg))
        except OSError as exc:
            raise RuntimeError("failed to write file - output probably corrupt") from exc