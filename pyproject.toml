[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cgoro"
version = "0.1.0"
description = "Go-style coroutines, channels, select, timers and non-blocking sockets on a multi-threaded scheduler"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "coroutine",
    "channel",
    "select",
    "scheduler",
    "concurrency",
    "csp",
    "timer",
    "socket",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cgoro"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
