[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "waspbroker"
version = "0.1.0"
description = "Core of a clustered MQTT broker: topic trees, subscriptions, sessions, retained messages and a replicated state machine."
requires-python = ">=3.10"
dependencies = []
keywords = ["mqtt", "broker", "pubsub", "iot", "messaging", "retained-messages"]
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
    "Topic :: Communications",
    "Topic :: Internet",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["waspbroker"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
