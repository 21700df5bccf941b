[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meterflow"
version = "0.1.0"
description = "Decode smart-meter telemetry messages, store the readings and archive raw messages in daily gzip batches."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "telemetry",
    "iot",
    "lorawan",
    "pubsub",
    "bigquery",
    "archival",
    "meter",
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["meterflow"]

[tool.hatch.build.targets.sdist]
include = ["meterflow", "tests", "README.md"]

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
