[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvpersist"
version = "0.1.0"
description = "Write-ahead log and snapshot persistence for a Raft-replicated key-value store"
requires-python = ">=3.10"
dependencies = []
keywords = ["raft", "wal", "write-ahead-log", "snapshot", "key-value", "persistence"]
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
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kvpersist"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
