import struct

import pytest
from PIL import Image

from camkit.bmp import bmp_save
from camkit.types import PixelFormat, StillOptions, StreamInfo


def _frame(width, height, stride):
    return bytes((i * 7 + 3) % 256 for i in range(stride * height))


def test_rejects_non_rgb_format(tmp_path):
    info = StreamInfo(4, 2, 12, PixelFormat.BGR888)
    with pytest.raises(ValueError):
        bmp_save([bytes(24)], info, str(tmp_path / "x.bmp"), StillOptions())


def test_header_fields(tmp_path):
    info = StreamInfo(3, 2, 12, PixelFormat.RGB888)
    path = tmp_path / "out.bmp"
    bmp_save([_frame(3, 2, 12)], info, str(path), StillOptions())
    data = path.read_bytes()
    assert data[:2] == b"BM"
    (filesize,) = struct.unpack_from("<I", data, 2)
    assert filesize == len(data)
    (offset,) = struct.unpack_from("<I", data, 10)
    assert offset == 54
    width, height = struct.unpack_from("<ii", data, 18)
    assert (width, height) == (info.width, -info.height)
    (bitcount,) = struct.unpack_from("<H", data, 28)
    assert bitcount == 24


def test_rows_are_padded_and_stride_is_skipped(tmp_path):
    width, height, stride = 3, 2, 16
    frame = _frame(width, height, stride)
    info = StreamInfo(width, height, stride, PixelFormat.RGB888)
    path = tmp_path / "out.bmp"
    bmp_save([frame], info, str(path), StillOptions())
    data = path.read_bytes()
    line = width * 3
    pitch = (line + 3) & ~3
    for row in range(height):
        start = 54 + row * pitch
        assert data[start:start + line] == frame[row * stride:row * stride + line]
        assert data[start + line:start + pitch] == bytes(pitch - line)


def test_pillow_reads_back_pixels(tmp_path):
    width, height, stride = 5, 3, 16
    frame = _frame(width, height, stride)
    info = StreamInfo(width, height, stride, PixelFormat.RGB888)
    path = tmp_path / "out.bmp"
    bmp_save([frame], info, str(path), StillOptions())
    with Image.open(path) as image:
        assert image.size == (width, height)
        for y in range(height):
            for x in range(width):
                p = y * stride + 3 * x
                assert image.getpixel((x, y)) == (frame[p + 2], frame[p + 1], frame[p])


def test_write_to_stdout(capsysbinary):
    info = StreamInfo(4, 1, 12, PixelFormat.RGB888)
    frame = _frame(4, 1, 12)
    bmp_save([frame], info, "-", StillOptions())
    out = capsysbinary.readouterr().out
    assert out[:2] == b"BM"
    assert out[54:66] == frame


def test_unopenable_file_raises(tmp_path):
    info = StreamInfo(4, 1, 12, PixelFormat.RGB888)
    with pytest.raises(RuntimeError):
        bmp_save([bytes(12)], info, str(tmp_path / "missing" / "x.bmp"), StillOptions())


def test_short_buffer_raises(tmp_path):
    info = StreamInfo(4, 4, 12, PixelFormat.RGB888)
    with pytest.raises(ValueError):
        bmp_save([bytes(20)], info, str(tmp_path / "x.bmp"), StillOptions())