[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "camkit"
version = "1.6.0"
description = "Camera still image writers and video stream outputs"
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "pillow",
]
keywords = ["camera", "video", "jpeg", "exif", "dng", "bmp", "png", "circular buffer"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Capture",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["camkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
