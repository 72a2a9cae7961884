import pytest

from camkit.circular_output import CircularBuffer, CircularOutput
from camkit.types import VideoOptions


def test_new_buffer_is_empty():
    cb = CircularBuffer(16)
    assert cb.empty()
    assert cb.available() == 15


def test_write_then_read_round_trip():
    cb = CircularBuffer(16)
    cb.write(b"abc")
    assert not cb.empty()
    assert cb.available() == 12
    assert cb.read(3) == b"abc"
    assert cb.empty()


def test_wraparound_round_trip():
    cb = CircularBuffer(16)
    cb.write(b"0123456789")
    assert cb.read(10) == b"0123456789"
    cb.write(b"abcdefghij")
    assert cb.read(10) == b"abcdefghij"
    assert cb.empty()


def test_skip_and_pad_move_pointers():
    cb = CircularBuffer(16)
    cb.write(b"xyz")
    cb.pad(5)
    cb.write(b"Q")
    cb.skip(8)
    assert cb.read(1) == b"Q"
    assert cb.empty()


def test_frames_from_first_keyframe_are_saved(tmp_path):
    path = tmp_path / "out.h264"
    out = CircularOutput(VideoOptions(circular=1, output=str(path)))
    out.output_ready(b"KEY", 0, True)
    out.output_ready(b"xyz", 1000, False)
    out.close()
    assert path.read_bytes() == b"KEYxyz"


def test_evicted_keyframe_leaves_nothing_before_next_keyframe(tmp_path):
    path = tmp_path / "out.h264"
    out = CircularOutput(VideoOptions(circular=1, output=str(path)))
    out.output_ready(b"A" * 600000, 0, True)
    out.output_ready(b"B" * 600000, 1000, False)
    out.output_ready(b"C" * 100, 2000, True)
    out.close()
    assert path.read_bytes() == b"C" * 100


def test_no_keyframe_left_writes_nothing(tmp_path):
    path = tmp_path / "out.h264"
    out = CircularOutput(VideoOptions(circular=1, output=str(path)))
    out.output_ready(b"A" * 600000, 0, True)
    out.output_ready(b"B" * 600000, 1000, False)
    out.close()
    assert path.read_bytes() == b""


def test_timestamps_written_on_close(tmp_path):
    path = tmp_path / "out.h264"
    pts = tmp_path / "pts.txt"
    out = CircularOutput(VideoOptions(circular=1, output=str(path), save_pts=str(pts)))
    out.output_ready(b"k", 0, True)
    out.output_ready(b"n", 1000, False)
    out.close()
    assert pts.read_text().splitlines() == ["# timecode format v2", "0.000", "1.000"]


def test_frame_larger_than_buffer_raises(tmp_path):
    out = CircularOutput(VideoOptions(circular=1, output=str(tmp_path / "o")))
    with pytest.raises(RuntimeError):
        out.output_ready(bytes(2 << 20), 0, True)
    out.close()


def test_missing_output_name_raises():
    with pytest.raises(RuntimeError):
        CircularOutput(VideoOptions(circular=1, output=""))