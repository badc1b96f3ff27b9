[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshsub"
version = "0.1.0"
description = "Building blocks for a gossip publish/subscribe router: score parameters, seen-message caches, subscription filters, tracers, connection tagging and a validation pipeline"
requires-python = ">=3.10"
dependencies = []
keywords = ["pubsub", "gossip", "peer-to-peer", "mesh", "validation", "tracing"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["meshsub"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
