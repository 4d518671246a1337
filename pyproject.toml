[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "framestages"
version = "0.1.0"
description = "Per-frame camera post-processing: HDR accumulation, negation, classification results and decoding of inference outputs"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["camera", "image-processing", "hdr", "pose-estimation", "object-detection", "yuv420"]
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
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Multimedia :: Graphics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["framestages"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
