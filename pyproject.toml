[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rollnet"
version = "1.0.0"
description = "Rollback netcode building blocks: input queues, prediction, state rollback and a UDP peer protocol"
requires-python = ">=3.10"
dependencies = []
keywords = ["rollback", "netcode", "networking", "games", "udp", "prediction"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Games/Entertainment",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rollnet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
