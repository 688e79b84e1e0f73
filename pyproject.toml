[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "humrun"
version = "0.1.0"
description = "Building blocks for managing local development apps: apps.json configuration, dependency ordering, app detection, config watching, health checks and Unix-socket IPC"
requires-python = ">=3.10"
keywords = ["development", "monorepo", "dev-server", "apps.json", "health-check", "ipc"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["humrun"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
