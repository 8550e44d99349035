[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "agentorch"
version = "0.1.0"
description = "Building blocks for orchestrating coding agents: message dispatch, rate limiting, event logs, context management and a coder state machine."
requires-python = ">=3.10"
dependencies = []
keywords = ["agents", "orchestration", "dispatcher", "rate-limiting", "state-machine", "event-log"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["agentorch"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
