[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ngmonitor"
version = "0.1.0"
description = "Continuous profiling, profile storage and cluster topology tracking for distributed database clusters"
requires-python = ">=3.10"
keywords = [
    "monitoring",
    "profiling",
    "pprof",
    "continuous-profiling",
    "topology",
    "etcd",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "zstandard",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["ngmonitor"]

[tool.hatch.build.targets.sdist]
include = [
    "ngmonitor",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
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
