[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pagekv"
version = "0.1.0"
description = "A small copy-on-write B+tree key-value store with a free list, snapshot transactions and relational tables"
requires-python = ">=3.10"
dependencies = []
keywords = ["database", "b-tree", "key-value", "storage-engine", "transactions", "snapshot-isolation"]
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
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pagekv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
