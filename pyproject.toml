[build-system]
requires = ["hatchling>=1.18"]
build-backend = "hatchling.build"

[project]
name = "takrelay"
version = "0.0.1"
description = "CoT firehose relay pieces: asyncio accept loops, batched Postgres persistence, certificate group policy and a wall-clock soak harness."
requires-python = ">=3.11"
keywords = ["tak", "cot", "cursor-on-target", "firehose", "pubsub", "postgis", "soak-test"]
classifiers = [
    "Development Status :: 2 - Pre-Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Communications",
    "Topic :: System :: Benchmark",
]
dependencies = [
    "cryptography>=41",
    "sqlalchemy>=2.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
takrelay-soak = "takrelay.soak_cli:main"

[tool.hatch.build.targets.wheel]
packages = ["takrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true
