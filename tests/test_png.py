import io

import pytest
from PIL import Image

from camkit.png import png_save
from camkit.types import PixelFormat, StreamInfo

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _frame():
    # 2x2 pixels, stride 8 (two padding bytes per row).
    data = bytes([1, 2, 3, 4, 5, 6, 0, 0, 7, 8, 9, 10, 11, 12, 0, 0])
    info = StreamInfo(width=2, height=2, stride=8, pixel_format=PixelFormat.BGR888)
    return data, info


def test_round_trip(tmp_path):
    data, info = _frame()
    out = tmp_path / "img.png"
    png_save([data], info, str(out))
    with Image.open(out) as img:
        assert img.size == (2, 2)
        assert img.mode == "RGB"
        assert list(img.getdata()) == [(1, 2, 3), (4, 5, 6), (7, 8, 9), (10, 11, 12)]


def test_file_signature(tmp_path):
    data, info = _frame()
    out = tmp_path / "img.png"
    png_save([data], info, str(out))
    assert out.read_bytes().startswith(PNG_SIGNATURE)


def test_stdout(capsysbinary):
    data, info = _frame()
    png_save([data], info, "-")
    written = capsysbinary.readouterr().out
    with Image.open(io.BytesIO(written)) as img:
        assert img.getpixel((1, 1)) == (10, 11, 12)


def test_wrong_format(tmp_path):
    data, _ = _frame()
    info = StreamInfo(width=2, height=2, stride=8, pixel_format=PixelFormat.RGB888)
    with pytest.raises(ValueError, match="BGR"):
        png_save([data], info, str(tmp_path / "x.png"))


def test_buffer_too_small(tmp_path):
    info = StreamInfo(width=4, height=4, stride=12, pixel_format=PixelFormat.BGR888)
    with pytest.raises(ValueError, match="too small"):
        png_save([bytes(10)], info, str(tmp_path / "x.png"))


def test_unwritable_path(tmp_path):
    data, info = _frame()
    with pytest.raises(RuntimeError, match="failed to open"):
        png_save([data], info, str(tmp_path / "missing" / "x.png"))