[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "lookupd"
version = "1.0.0"
description = "Directory daemon for message queue nodes: nodes register topics and channels over TCP, and consumers look them up over HTTP."
requires-python = ">=3.10"
dependencies = []
keywords = ["lookup", "service discovery", "message queue", "registry", "topics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
lookupd = "lookupd.server:main"

[tool.setuptools.packages.find]
include = ["lookupd*"]

[tool.pytest.ini_options]
addopts = "-ra"
