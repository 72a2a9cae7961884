"""Camera still image writers (BMP, PNG, JPEG, DNG) and video stream outputs."""

__version__ = "1.6.0"