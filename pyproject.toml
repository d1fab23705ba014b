[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nfsproxy"
version = "0.1.0"
description = "ONC RPC proxy for NFSv3 with policy-driven delay and drop injection, plus a minimal rpcbind service and client"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "nfs",
    "onc-rpc",
    "sunrpc",
    "rpcbind",
    "portmap",
    "proxy",
    "fault-injection",
    "latency",
]
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
    "Topic :: Software Development :: Testing",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nfsproxy"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
