from pathlib import Path

import pytest

from camkit.file_output import FileOutput
from camkit.types import VideoOptions


def test_frames_written_in_order(tmp_path):
    path = tmp_path / "out.h264"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"abc", 0, True)
        out.output_ready(b"def", 1000, False)
    assert path.read_bytes() == b"abcdef"


def test_frames_before_first_keyframe_dropped(tmp_path):
    path = tmp_path / "out.h264"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"early", 0, False)
        out.output_ready(b"key", 1000, True)
    assert path.read_bytes() == b"key"


def test_segments_start_on_keyframe_after_limit(tmp_path):
    pattern = str(tmp_path / "seg%03d.h264")
    with FileOutput(VideoOptions(output=pattern, segment=1000)) as out:
        out.output_ready(b"k0", 0, True)
        out.output_ready(b"n0", 500000, False)
        out.output_ready(b"k1", 900000, True)
        out.output_ready(b"k2", 2000000, True)
    assert Path(pattern % 0).read_bytes() == b"k0n0k1"
    assert Path(pattern % 1).read_bytes() == b"k2"


def test_wrap_reuses_file_names(tmp_path):
    pattern = str(tmp_path / "seg%03d.h264")
    with FileOutput(VideoOptions(output=pattern, segment=1, wrap=2)) as out:
        out.output_ready(b"first", 0, True)
        out.output_ready(b"second", 10000, True)
        out.output_ready(b"third", 20000, True)
    assert Path(pattern % 0).read_bytes() == b"third"
    assert Path(pattern % 1).read_bytes() == b"second"
    assert Path(pattern % 2).exists() is False


def test_split_opens_new_file_on_restart(tmp_path):
    pattern = str(tmp_path / "part%d.h264")
    with FileOutput(VideoOptions(output=pattern, split=True)) as out:
        out.output_ready(b"a", 0, True)
        out.signal()
        out.output_ready(b"skip", 1000, True)
        out.signal()
        out.output_ready(b"b", 2000, True)
    assert Path(pattern % 0).read_bytes() == b"a"
    assert Path(pattern % 1).read_bytes() == b"b"


def test_empty_buffer_opens_but_writes_nothing(tmp_path):
    path = tmp_path / "empty.bin"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"", 0, True)
    assert path.read_bytes() == b""


def test_unopenable_file_raises(tmp_path):
    out = FileOutput(VideoOptions(output=str(tmp_path / "missing" / "out.h264")))
    with pytest.raises(RuntimeError):
        out.output_ready(b"x", 0, True)
    out.close()