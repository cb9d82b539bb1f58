[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "konnect"
version = "0.1.0"
description = "Network proxy tunnel client and agent: multiplex TCP connections over a packet stream"
requires-python = ">=3.10"
dependencies = []
keywords = ["proxy", "tunnel", "agent", "network", "multiplexing", "metrics"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["konnect*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
