[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "iceconn"
version = "0.1.0"
description = "ICE transport building blocks: STUN/TURN URLs, minimal STUN messages, and UDP/TCP connection multiplexing by ufrag"
requires-python = ">=3.10"
keywords = ["ice", "stun", "turn", "webrtc", "nat", "multiplexing", "udp", "tcp"]
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
    "Topic :: Internet",
    "Topic :: System :: Networking",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["iceconn"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
