[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tinywhisper"
version = "0.1.0"
description = "Speech recognition model building blocks in NumPy: log-mel audio features, encoder/decoder transformer, weight loading and beam search"
requires-python = ">=3.10"
dependencies = ["numpy"]
keywords = ["whisper", "speech", "asr", "mel-spectrogram", "stft", "beam-search", "transformer", "numpy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Sound/Audio :: Speech",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
tinywhisper-convert = "tinywhisper.convert:main"

[tool.hatch.build.targets.wheel]
packages = ["tinywhisper"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
