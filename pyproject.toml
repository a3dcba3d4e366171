[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rtpsprobe"
version = "0.1.0"
description = "RTPS/DDS traffic inspection on captured frames: filtering, IP fragment reassembly and topic statistics"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "rtps",
    "dds",
    "ros2",
    "packet-filter",
    "ip-fragmentation",
    "network-monitoring",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rtpsprobe"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
