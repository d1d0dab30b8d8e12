[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chainindex"
version = "0.1.0"
description = "Building blocks for a key-value index of blockchain data: row layouts, block-file reading, metrics and an asset registry"
requires-python = ">=3.10"
dependencies = [
    "pyzmq",
]
keywords = [
    "blockchain",
    "index",
    "key-value",
    "sqlite",
    "script history",
    "blk files",
    "zmq",
    "prometheus",
]
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
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["chainindex"]

[tool.hatch.build.targets.sdist]
include = [
    "chainindex",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
