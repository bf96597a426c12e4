[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wgtun"
version = "0.1.0"
description = "Packet offload helpers for TUN devices: virtio-net headers, GRO coalescing and GSO splitting"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "gro", "gso", "virtio", "checksum", "networking", "offload"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
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
packages = ["wgtun"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
