[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sendspin"
version = "0.1.0"
description = "Synchronized audio streaming: a WebSocket audio server, clock synchronization, a playback scheduler and player state tracking"
requires-python = ">=3.10"
dependencies = [
    "websockets>=13.0",
]
keywords = ["audio", "streaming", "multi-room", "synchronization", "websocket", "pcm"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Multimedia :: Sound/Audio :: Players",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "websockets>=13.0",
]

[tool.hatch.build.targets.wheel]
packages = ["sendspin"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
