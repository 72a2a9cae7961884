# camkit

Building blocks for a camera capture pipeline: outputs that take encoded
video frames and write them away, and writers that save single frames as
image files. Everything is driven by plain Python data: frames are any
bytes-like object, frame metadata is a mapping of names to values.

## Installation

```
pip install camkit
```

## Options and stream description

`camkit.types` holds the value types the rest of the package works with:

- `StreamInfo`: width, height, stride (bytes per row), `pixel_format` and
  colour space of a frame;
- `PixelFormat`: YUV420, YUYV, RGB888, BGR888, the 48-bit RGB formats and the
  raw Bayer formats (10, 12 and 16 bit, packed and unpacked, and the
  compressed `*_PISP_COMP1` formats);
- `Platform`;
- `VideoOptions`: settings for video outputs (`output`, `circular`, `segment`,
  `split`, `wrap`, `flush`, `save_pts`, `metadata`, `metadata_format`,
  `pause`, ...);
- `StillOptions`: settings for still images (`quality`, `restart`,
  `thumb_width`, `thumb_height`, `thumb_quality`, `exif`, ...).

## Video outputs

All outputs share the behaviour of `camkit.output.Output`:

- `output_ready(mem, timestamp_us, keyframe)` hands over one encoded frame.
  Nothing is recorded until the first keyframe; `signal()` toggles a pause,
  and after a pause recording resumes at the next keyframe with timestamps
  kept continuous.
- With `save_pts` set, timestamps are written to that file in
  "timecode format v2" (milliseconds with three decimals).
- With `metadata` set (a file name, or `"-"` for standard output), each
  frame's metadata, queued beforehand with `metadata_ready(mapping)`, is
  written as `txt` (`name=value` lines) or `json` according to
  `metadata_format`. The helpers `start_metadata_output`, `write_metadata`,
  `stop_metadata_output` and `format_control_value` can be used directly.
- `close()` finishes the files; every output is a context manager.

The base `Output` drops the frames themselves. Two outputs keep them:

- `camkit.file_output.FileOutput` writes frames to `options.output` (`"-"`
  is standard output). The name may hold a `%`-style counter such as
  `clip%04d.h264`; a new file is started when `segment` milliseconds have
  passed (at the next keyframe) or, with `split`, whenever recording
  restarts after a pause. `wrap` makes the counter wrap around.
- `camkit.circular_output.CircularOutput` keeps the most recent frames in a
  ring buffer of `options.circular` megabytes and, on `close()`, writes them
  starting from the first keyframe still held. The ring buffer itself is
  available as `CircularBuffer`.

```python
from camkit.file_output import FileOutput
from camkit.types import VideoOptions

options = VideoOptions(output="clip%02d.mjpeg", segment=5000, save_pts="pts.txt")
with FileOutput(options) as output:
    for timestamp_us, frame, keyframe in encoded_frames():
        output.output_ready(frame, timestamp_us, keyframe)
```

## Still images

Each writer takes a sequence of planes (`mem`, only the first is used), a
`StreamInfo` and a file name (`"-"` writes to standard output, except for
DNG):

- `camkit.bmp.bmp_save(mem, info, filename, options)`: RGB888 frames as
  24-bit BMP;
- `camkit.png.png_save(mem, info, filename, options)`: BGR888 frames as PNG;
- `camkit.jpeg.jpeg_save(mem, info, metadata, filename, cam_model, options)`:
  YUV420 or YUYV frames (even width and height) as JPEG with an EXIF block
  and, when `thumb_quality` is non-zero, an embedded thumbnail. Extra EXIF
  tags are given in `options.exif` as `"IFD.Tag=value[,value...]"`, for
  example `"EXIF.FNumber=28/10"`. `yuv_to_jpeg`, `create_exif_data`,
  `exif_read_tag` and `ExifData` are available on their own;
- `camkit.dng.dng_save(mem, info, metadata, filename, cam_model, options)`:
  raw Bayer frames as DNG with a small greyscale thumbnail. The unpacking
  helpers `unpack_10bit`, `unpack_12bit`, `unpack_16bit` and `uncompress`
  return numpy arrays, and `Matrix` is a small 3x3 matrix type
  (`a @ b`, `m * factor`, `inverse()`, `det()`).

The metadata mapping may hold `ExposureTime` (microseconds), `AnalogueGain`,
`DigitalGain`, `LensPosition`, and for DNG also `SensorBlackLevels`,
`ColourGains` and `ColourCorrectionMatrix`; missing values fall back to
defaults.

```python
from camkit.jpeg import jpeg_save
from camkit.types import PixelFormat, StillOptions, StreamInfo

info = StreamInfo(width=640, height=480, stride=640, pixel_format=PixelFormat.YUV420)
options = StillOptions(quality=90, exif=["IFD0.Artist=Someone"])
jpeg_save([yuv_bytes], info, {"ExposureTime": 10000, "AnalogueGain": 2.0},
          "still.jpg", "camera", options)
```

## What the package does not do

- It has no video encoders: frames passed to an output must already be
  encoded by the caller.
- It has no network output and no function that picks an output from the
  options; create `FileOutput`, `CircularOutput` or `Output` yourself.
- It does not save uncompressed YUV or RGB frames as raw files.
- It has no command-line program and does not capture from a camera.

## Running the tests

```
pip install camkit[test]
pytest
```