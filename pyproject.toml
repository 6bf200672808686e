[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "anvilnotify"
version = "0.1.0"
description = "Building blocks for a transactional e-mail notification service: delivery log store, template and block-list caches, recipient filtering and send rate limiting."
requires-python = ">=3.10"
keywords = [
    "email",
    "notifications",
    "rate-limiting",
    "blocklist",
    "allowlist",
    "outbox",
    "templates",
    "sqlite",
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
    "Framework :: AsyncIO",
    "Topic :: Communications :: Email",
]
dependencies = [
    "cachetools>=5.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["anvilnotify"]

[tool.hatch.build.targets.sdist]
include = ["anvilnotify", "tests", "pyproject.toml"]

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
