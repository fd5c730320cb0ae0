[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "camstation"
version = "0.1.0"
description = "Camera station for Linux video devices: stream MJPEG frames, apply live image effects, take photos and page through them."
requires-python = ">=3.10"
keywords = ["camera", "v4l2", "mjpeg", "capture", "image-processing", "photo"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: X11 Applications",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Capture",
    "Topic :: Multimedia :: Graphics",
]
dependencies = [
    "numpy",
    "scipy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
camstation = "camstation.app:main"

[tool.hatch.build.targets.wheel]
packages = ["camstation"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
