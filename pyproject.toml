[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bmlb"
version = "0.1.0"
description = "Load-balancer address allocation from IP pools and a minimal BGP speaker to announce them"
requires-python = ">=3.10"
dependencies = ["psutil"]
keywords = ["bgp", "load-balancer", "ip-allocation", "ipam", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
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
packages = ["bmlb"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
