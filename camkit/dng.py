"""Save raw Bayer frames as DNG files."""

from __future__ import annotations

import logging
import math
import struct
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from fractions import Fraction
from typing import Any

import numpy as np

from camkit.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE = "rpicam-still"

TIFF_RGGB = (0, 1, 1, 2)
TIFF_GRBG = (1, 0, 2, 1)
TIFF_BGGR = (2, 1, 1, 0)
TIFF_GBRG = (1, 2, 0, 1)

# Compression parameters that are always used for compressed raw frames.
COMPRESS_OFFSET = 2048
COMPRESS_MODE = 1


@dataclass(frozen=True)
class BayerFormat:
    """How a raw pixel format is laid out in memory."""

    name: str
    bits: int
    order: tuple[int, int, int, int]
    packed: bool
    compressed: bool


BAYER_FORMATS: dict[PixelFormat, BayerFormat] = {
    PixelFormat.SRGGB10_CSI2P: BayerFormat("RGGB-10", 10, TIFF_RGGB, True, False),
    PixelFormat.SGRBG10_CSI2P: BayerFormat("GRBG-10", 10, TIFF_GRBG, True, False),
    PixelFormat.SBGGR10_CSI2P: BayerFormat("BGGR-10", 10, TIFF_BGGR, True, False),
    PixelFormat.SGBRG10_CSI2P: BayerFormat("GBRG-10", 10, TIFF_GBRG, True, False),
    PixelFormat.SRGGB10: BayerFormat("RGGB-10", 10, TIFF_RGGB, False, False),
    PixelFormat.SGRBG10: BayerFormat("GRBG-10", 10, TIFF_GRBG, False, False),
    PixelFormat.SBGGR10: BayerFormat("BGGR-10", 10, TIFF_BGGR, False, False),
    PixelFormat.SGBRG10: BayerFormat("GBRG-10", 10, TIFF_GBRG, False, False),
    PixelFormat.SRGGB12_CSI2P: BayerFormat("RGGB-12", 12, TIFF_RGGB, True, False),
    PixelFormat.SGRBG12_CSI2P: BayerFormat("GRBG-12", 12, TIFF_GRBG, True, False),
    PixelFormat.SBGGR12_CSI2P: BayerFormat("BGGR-12", 12, TIFF_BGGR, True, False),
    PixelFormat.SGBRG12_CSI2P: BayerFormat("GBRG-12", 12, TIFF_GBRG, True, False),
    PixelFormat.SRGGB12: BayerFormat("RGGB-12", 12, TIFF_RGGB, False, False),
    PixelFormat.SGRBG12: BayerFormat("GRBG-12", 12, TIFF_GRBG, False, False),
    PixelFormat.SBGGR12: BayerFormat("BGGR-12", 12, TIFF_BGGR, False, False),
    PixelFormat.SGBRG12: BayerFormat("GBRG-12", 12, TIFF_GBRG, False, False),
    PixelFormat.SRGGB16: BayerFormat("RGGB-16", 16, TIFF_RGGB, False, False),
    PixelFormat.SGRBG16: BayerFormat("GRBG-16", 16, TIFF_GRBG, False, False),
    PixelFormat.SBGGR16: BayerFormat("BGGR-16", 16, TIFF_BGGR, False, False),
    PixelFormat.SGBRG16: BayerFormat("GBRG-16", 16, TIFF_GBRG, False, False),
    PixelFormat.R10_CSI2P: BayerFormat("BGGR-10", 10, TIFF_BGGR, True, False),
    PixelFormat.R10: BayerFormat("BGGR-10", 10, TIFF_BGGR, False, False),
    PixelFormat.R12: BayerFormat("BGGR-12", 12, TIFF_BGGR, False, False),
    PixelFormat.RGGB_PISP_COMP1: BayerFormat("RGGB-16-PISP", 16, TIFF_RGGB, False, True),
    PixelFormat.GRBG_PISP_COMP1: BayerFormat("GRBG-16-PISP", 16, TIFF_GRBG, False, True),
    PixelFormat.GBRG_PISP_COMP1: BayerFormat("GBRG-16-PISP", 16, TIFF_GBRG, False, True),
    PixelFormat.BGGR_PISP_COMP1: BayerFormat("BGGR-16-PISP", 16, TIFF_BGGR, False, True),
}


def _rows(src, info: StreamInfo, row_bytes: int) -> np.ndarray:
    """Return a (height, row_bytes) array of the bytes at the start of each row."""
    data = np.frombuffer(memoryview(src).cast("B"), dtype=np.uint8)
    if info.height == 0 or row_bytes == 0:
        return np.zeros((info.height, row_bytes), dtype=np.uint8)
    needed = (info.height - 1) * info.stride + row_bytes
    if data.size < needed:
        data = np.concatenate([data, np.zeros(needed - data.size, dtype=np.uint8)])
    index = np.arange(info.height)[:, None] * info.stride + np.arange(row_bytes)[None, :]
    return data[index]


def unpack_10bit(src, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 packed 10-bit pixels (4 pixels in 5 bytes) to a (height, width) array."""
    rows = _rows(src, info, ((info.width + 3) // 4) * 5).astype(np.int64)
    x = np.arange(info.width)
    base = (x // 4) * 5
    high = rows[:, base + (x & 3)] << 2
    low = (rows[:, base + 4] >> ((x & 3) * 2)) & 3
    return (high | low).astype(np.uint16)


def unpack_12bit(src, info: StreamInfo) -> np.ndarray:
    """Unpack CSI-2 packed 12-bit pixels (2 pixels in 3 bytes) to a (height, width) array."""
    rows = _rows(src, info, ((info.width + 1) // 2) * 3).astype(np.int64)
    x = np.arange(info.width)
    base = (x // 2) * 3
    high = rows[:, base + (x & 1)] << 4
    low = (rows[:, base + 2] >> ((x & 1) * 4)) & 15
    return (high | low).astype(np.uint16)


def unpack_16bit(src, info: StreamInfo) -> np.ndarray:
    """Copy 16-bit native-order pixels into a (height, width) array."""
    rows = _rows(src, info, 2 * info.width)
    return np.ascontiguousarray(rows).view(np.dtype("=u2")).reshape(info.height, info.width)


def _dequantize(q: np.ndarray, qmode: np.ndarray) -> np.ndarray:
    values = np.select(
        [qmode == 0, qmode == 1, qmode == 2],
        [np.where(q < 320, 16 * q, 32 * (q - 160)), 64 * q, 128 * q],
        default=np.where(q < 94, 256 * q, np.minimum(0xFFFF, 512 * (q - 47))),
    )
    return values & 0xFFFF


def _sub_block(w: np.ndarray) -> np.ndarray:
    """Decode 32-bit words into four samples each, along a new last axis."""
    qmode = w & 3

    field0 = (w >> 2) & 511
    field1 = (w >> 11) & 127
    field2 = (w >> 18) & 127
    field3 = (w >> 25) & 127
    wide = (qmode == 2) & (field0 >= 384)
    q1 = np.where(wide, field0, np.where(field1 >= 64, field0, field0 + 64 - field1))
    q2 = np.where(wide, field1 + 384, np.where(field1 >= 64, field0 + field1 - 64, field0))
    p1 = np.maximum(0, q1 - 64)
    p1 = np.where(qmode == 2, np.minimum(384, p1), p1)
    p2 = np.maximum(0, q2 - 64)
    p2 = np.where(qmode == 2, np.minimum(384, p2), p2)
    q0 = p1 + field2
    q3 = p2 + field3

    pack0 = (w >> 2) & 32767
    pack1 = (w >> 17) & 32767
    is_packed = qmode == 3
    q0 = np.where(is_packed, (pack0 & 15) + 16 * ((pack0 >> 8) // 11), q0)
    q1 = np.where(is_packed, (pack0 >> 4) % 176, q1)
    q2 = np.where(is_packed, (pack1 & 15) + 16 * ((pack1 >> 8) // 11), q2)
    q3 = np.where(is_packed, (pack1 >> 4) % 176, q3)

    return np.stack([_dequantize(q, qmode) for q in (q0, q1, q2, q3)], axis=-1)


def _postprocess(a: np.ndarray) -> np.ndarray:
    return np.minimum(0xFFFF, a + COMPRESS_OFFSET)


def uncompress(src, info: StreamInfo) -> np.ndarray:
    """Decompress a compressed raw frame; rows come out padded to a multiple of 8 pixels."""
    blocks = (info.width + 7) // 8
    rows = _rows(src, info, blocks * 8).astype(np.int64)
    if COMPRESS_MODE & 1:
        words = rows.reshape(info.height, blocks, 2, 4)
        w = words[..., 0] | (words[..., 1] << 8) | (words[..., 2] << 16) | (words[..., 3] << 24)
        samples = _postprocess(_sub_block(w))  # (height, blocks, word, quarter)
        out = samples.transpose(0, 1, 3, 2).reshape(info.height, blocks * 8)
    else:
        out = _postprocess(rows << 8)
    return out.astype(np.uint16)


@dataclass(frozen=True)
class Matrix:
    """A 3x3 matrix stored row by row."""

    m: tuple[float, ...]

    def __post_init__(self) -> None:
        values = tuple(float(v) for v in self.m)
        if len(values) != 9:
            raise ValueError("a matrix needs exactly 9 values")
        object.__setattr__(self, "m", values)

    @classmethod
    def diagonal(cls, d0: float, d1: float, d2: float) -> Matrix:
        return cls((d0, 0, 0, 0, d1, 0, 0, 0, d2))

    def transpose(self) -> Matrix:
        m = self.m
        return Matrix((m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8]))

    def cofactor(self) -> Matrix:
        m = self.m
        return Matrix((
            m[4] * m[8] - m[5] * m[7], -(m[3] * m[8] - m[5] * m[6]), m[3] * m[7] - m[4] * m[6],
            -(m[1] * m[8] - m[2] * m[7]), m[0] * m[8] - m[2] * m[6], -(m[0] * m[7] - m[1] * m[6]),
            m[1] * m[5] - m[2] * m[4], -(m[0] * m[5] - m[2] * m[3]), m[0] * m[4] - m[1] * m[3],
        ))

    def adjugate(self) -> Matrix:
        return self.cofactor().transpose()

    def det(self) -> float:
        m = self.m
        return (
            m[0] * (m[4] * m[8] - m[5] * m[7])
            - m[1] * (m[3] * m[8] - m[5] * m[6])
            + m[2] * (m[3] * m[7] - m[4] * m[6])
        )

    def inverse(self) -> Matrix:
        det = self.det()
        if det == 0:
            raise ValueError("matrix is singular")
        return self.adjugate() * (1.0 / det)

    def __matmul__(self, other: Matrix) -> Matrix:
        a, b = self.m, other.m
        return Matrix(tuple(
            a[i * 3] * b[j] + a[i * 3 + 1] * b[3 + j] + a[i * 3 + 2] * b[6 + j]
            for i in range(3)
            for j in range(3)
        ))

    def __mul__(self, factor: float) -> Matrix:
        return Matrix(tuple(v * factor for v in self.m))


_RGB2XYZ = Matrix((
    0.4124564, 0.3575761, 0.1804375,
    0.2126729, 0.7151522, 0.0721750,
    0.0193339, 0.1191920, 0.9503041,
))

_DEFAULT_CCM = Matrix((
    1.90255, -0.77478, -0.12777,
    -0.31338, 1.88197, -0.56858,
    -0.06001, -0.61785, 1.67786,
))

# TIFF field types.
_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _SRATIONAL = 1, 2, 3, 4, 5, 10


def _rational(value: float, signed: bool) -> tuple[int, int]:
    limit = 0x7FFFFFFF if signed else 0xFFFFFFFF
    if not signed and value < 0:
        value = 0.0
    if math.isinf(value):
        return (limit if value > 0 else -limit), 1
    if math.isnan(value):
        return 0, 1
    magnitude = abs(value)
    max_den = limit if magnitude <= 1 else max(1, int(limit / magnitude))
    frac = Fraction(value).limit_denominator(max_den)
    return max(-limit, min(limit, frac.numerator)), frac.denominator


def _encode(field_type: int, values: Any) -> tuple[int, bytes]:
    if field_type == _ASCII:
        payload = str(values).encode() + b"\0"
        return len(payload), payload
    values = list(values)
    count = len(values)
    if field_type == _BYTE:
        return count, bytes(values)
    if field_type == _SHORT:
        return count, struct.pack(f"<{count}H", *values)
    if field_type == _LONG:
        return count, struct.pack(f"<{count}I", *values)
    signed = field_type == _SRATIONAL
    pairs = [n for v in values for n in _rational(v, signed)]
    return count, struct.pack(f"<{2 * count}{'i' if signed else 'I'}", *pairs)


def _serialize_ifd(entries: list[tuple[int, int, Any]], offset: int, next_ifd: int = 0) -> bytes:
    """Build an IFD to sit at the given file offset, with its out-of-line data after it."""
    entries = sorted(entries, key=lambda entry: entry[0])
    directory = bytearray(struct.pack("<H", len(entries)))
    extra = bytearray()
    extra_base = offset + 2 + 12 * len(entries) + 4
    for tag, field_type, values in entries:
        count, payload = _encode(field_type, values)
        if len(payload) <= 4:
            value = payload.ljust(4, b"\0")
        else:
            value = struct.pack("<I", extra_base + len(extra))
            extra += payload
            if len(extra) % 2:
                extra += b"\0"
        directory += struct.pack("<HHI", tag, field_type, count) + value
    directory += struct.pack("<I", next_ifd)
    return bytes(directory + extra)


def _thumbnail(buf: np.ndarray, stride_px: int, info: StreamInfo, bits: int) -> bytes:
    thumb_w, thumb_h = info.width >> 4, info.height >> 4
    if thumb_w == 0 or thumb_h == 0:
        return b""
    flat = buf.reshape(-1).astype(np.uint64)
    off = ((np.arange(thumb_h)[:, None] * stride_px + np.arange(thumb_w)[None, :]) << 4).astype(np.int64)
    grey = flat[off] + flat[off + 1] + flat[off + stride_px] + flat[off + stride_px + 1]
    grey = ((grey << np.uint64(14)) & np.uint64(0xFFFFFFFF)) >> np.uint64(bits)
    grey = np.sqrt(grey.astype(np.float64)).astype(np.uint32) & 0xFF  # simple gamma
    return np.repeat(grey.astype(np.uint8)[..., None], 3, axis=2).tobytes()


def dng_save(
    mem: Sequence,
    info: StreamInfo,
    metadata: Mapping[str, Any],
    filename: str,
    cam_model: str,
    options: StillOptions | None = None,
) -> None:
    """Write a raw Bayer frame, with a small greyscale thumbnail, as a DNG file."""
    bayer = BAYER_FORMATS.get(info.pixel_format)
    if bayer is None:
        raise ValueError("unsupported Bayer format")
    logger.info("Bayer format is %s", bayer.name)

    stride_px = info.width
    if bayer.compressed:
        buf = uncompress(mem[0], info)
        stride_px = (info.width + 7) & ~7
    elif bayer.packed and bayer.bits == 10:
        buf = unpack_10bit(mem[0], info)
    elif bayer.packed and bayer.bits == 12:
        buf = unpack_12bit(mem[0], info)
    else:
        buf = unpack_16bit(mem[0], info)

    scale = (1 << bayer.bits) / 65536.0
    black = 4096 * scale
    black_levels = [black] * 4
    levels = metadata.get("SensorBlackLevels")
    if levels is not None:
        # Levels come as R, Gr, Gb, B; re-order them for the actual Bayer order.
        order = bayer.order
        for i in range(4):
            j = order[i]
            j = 0 if j == 0 else (3 if j == 2 else 1 + bool(order[i ^ 1]))
            black_levels[j] = levels[i] * scale
    else:
        logger.warning("no black level found, using default")

    exposure = metadata.get("ExposureTime")
    exp_time = 10000.0
    if exposure is not None:
        exp_time = float(exposure)
    else:
        logger.warning("default to exposure time of %gus", exp_time)
    exp_time /= 1e6

    gain = metadata.get("AnalogueGain")
    iso = 100
    if gain is not None:
        iso = int(gain * 100.0) & 0xFFFF
    else:
        logger.warning("default to ISO value of %d", iso)

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix.diagonal(1, 1, 1)
    colour_gains = metadata.get("ColourGains")
    if colour_gains is not None:
        neutral[0] = 1.0 / colour_gains[0]
        neutral[2] = 1.0 / colour_gains[1]
        wb_gains = Matrix.diagonal(colour_gains[0], 1, colour_gains[1])

    ccm = _DEFAULT_CCM
    ccm_values = metadata.get("ColourCorrectionMatrix")
    if ccm_values is not None:
        ccm = Matrix(tuple(ccm_values[:9]))
    else:
        logger.warning("no CCM metadata found")

    cam_xyz = (_RGB2XYZ @ ccm @ wb_gains).inverse()
    logger.debug(
        "Black levels %s, exposure time %gus, ISO %d", black_levels, exp_time * 1e6, iso
    )
    logger.debug("Neutral %s", neutral)
    logger.debug("Cam_XYZ: %s", cam_xyz.m)

    thumb = _thumbnail(buf, stride_px, info, bayer.bits)
    raw = np.ascontiguousarray(buf[:, :info.width]).astype("<u2").tobytes()
    white = (1 << bayer.bits) - 1

    exif_entries: list[tuple[int, int, Any]] = [
        (33434, _RATIONAL, [exp_time]),
        (34855, _SHORT, [iso]),
        (36867, _ASCII, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())),
    ]
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        distance = 1.0 / lens_position if lens_position > 0.0 else math.inf
        exif_entries.append((37382, _RATIONAL, [distance]))

    pos = 8
    thumb_off = pos
    pos += len(thumb) + len(thumb) % 2
    raw_off = pos
    pos += len(raw) + len(raw) % 2

    raw_ifd_off = pos
    raw_ifd = _serialize_ifd([
        (254, _LONG, [0]),
        (256, _LONG, [info.width]),
        (257, _LONG, [info.height]),
        (258, _SHORT, [16]),
        (259, _SHORT, [1]),
        (262, _SHORT, [32803]),
        (273, _LONG, [raw_off]),
        (277, _SHORT, [1]),
        (278, _LONG, [max(info.height, 1)]),
        (279, _LONG, [len(raw)]),
        (284, _SHORT, [1]),
        (33421, _SHORT, [2, 2]),
        (33422, _BYTE, bayer.order),
        (50713, _SHORT, [2, 2]),
        (50714, _RATIONAL, black_levels),
        (50717, _LONG, [white]),
    ], raw_ifd_off)
    pos += len(raw_ifd)

    exif_ifd_off = pos
    exif_ifd = _serialize_ifd(exif_entries, exif_ifd_off)
    pos += len(exif_ifd)

    ifd0_off = pos
    ifd0 = _serialize_ifd([
        (254, _LONG, [1]),
        (256, _LONG, [info.width >> 4]),
        (257, _LONG, [info.height >> 4]),
        (258, _SHORT, [8, 8, 8]),
        (259, _SHORT, [1]),
        (262, _SHORT, [2]),
        (271, _ASCII, MAKE_STRING),
        (272, _ASCII, cam_model),
        (273, _LONG, [thumb_off]),
        (274, _SHORT, [1]),
        (277, _SHORT, [3]),
        (278, _LONG, [max(info.height >> 4, 1)]),
        (279, _LONG, [len(thumb)]),
        (284, _SHORT, [1]),
        (305, _ASCII, SOFTWARE),
        (330, _LONG, [raw_ifd_off]),
        (34665, _LONG, [exif_ifd_off]),
        (50706, _BYTE, [1, 1, 0, 0]),
        (50707, _BYTE, [1, 0, 0, 0]),
        (50708, _ASCII, f"{MAKE_STRING} {cam_model}"),
        (50721, _SRATIONAL, cam_xyz.m),
        (50728, _RATIONAL, neutral),
        (50778, _SHORT, [21]),
    ], ifd0_off)

    header = b"II" + struct.pack("<HI", 42, ifd0_off)
    parts = [
        header,
        thumb, b"\0" * (len(thumb) % 2),
        raw, b"\0" * (len(raw) % 2),
        raw_ifd, exif_ifd, ifd0,
    ]
    try:
        fp = open(filename, "wb")
    except OSError as exc:
        raise RuntimeError(f"could not open file {filename}") from exc
    with fp:
        try:
            for part in parts:
                fp.write(part)
        except OSError as exc:
            raise RuntimeError("error writing DNG image data") from exc