"""Value types shared across the package: pixel formats, stream descriptions and options."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class PixelFormat(enum.Enum):
    """Pixel layouts that image and video buffers may carry."""

    YUV420 = "YUV420"
    YUYV = "YUYV"
    RGB888 = "RGB888"
    BGR888 = "BGR888"
    RGB161616 = "RGB161616"
    BGR161616 = "BGR161616"

    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB10 = "SRGGB10"
    SGRBG10 = "SGRBG10"
    SBGGR10 = "SBGGR10"
    SGBRG10 = "SGBRG10"
    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"
    SRGGB12 = "SRGGB12"
    SGRBG12 = "SGRBG12"
    SBGGR12 = "SBGGR12"
    SGBRG12 = "SGBRG12"
    SRGGB16 = "SRGGB16"
    SGRBG16 = "SGRBG16"
    SBGGR16 = "SBGGR16"
    SGBRG16 = "SGBRG16"
    R10_CSI2P = "R10_CSI2P"
    R10 = "R10"
    R12 = "R12"
    RGGB_PISP_COMP1 = "RGGB_PISP_COMP1"
    GRBG_PISP_COMP1 = "GRBG_PISP_COMP1"
    GBRG_PISP_COMP1 = "GBRG_PISP_COMP1"
    BGGR_PISP_COMP1 = "BGGR_PISP_COMP1"


class Platform(enum.Enum):
    """The camera platform the frames come from."""

    VC4 = "vc4"
    PISP = "pisp"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry and format of one image stream."""

    width: int = 0
    height: int = 0
    stride: int = 0
    pixel_format: PixelFormat | None = None
    colour_space: str | None = None


@dataclass
class VideoOptions:
    """Settings that control video encoding and output."""

    codec: str = "h264"
    platform: Platform = Platform.VC4
    output: str = ""
    circular: int = 0
    segment: int = 0
    split: bool = False
    wrap: int = 0
    flush: bool = False
    save_pts: str = ""
    metadata: str = ""
    metadata_format: str = "json"
    pause: bool = False
    listen: bool = False
    width: int = 0
    height: int = 0
    framerate: float | None = None
    quality: int = 50


@dataclass
class StillOptions:
    """Settings that control still image saving."""

    output: str = ""
    encoding: str = "jpg"
    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: list[str] = field(default_factory=list)